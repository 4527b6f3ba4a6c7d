"""
Logging for the maker bot.

Every component logs one JSON object per event (see `log_event`). The console
renders them through rich; the file gets one flat JSON line per record, written
by a QueueListener thread so a slow disk never stalls the event loop.
"""

from __future__ import annotations

import atexit
import json
import logging
import queue
import time
from datetime import datetime
from logging.handlers import QueueHandler, QueueListener
from typing import Any, Dict, Iterable, Optional, Tuple

from rich.logging import RichHandler


LOGGER_NAME = "makerbot"

# Events that can fire on every tick; the console keeps one per side per window.
NOISY_EVENTS = frozenset({
    "ws_stale_detected",
    "spread_guard_cooldown_skip",
    "replace_throttled",
    "no_reference_price",
})


def dumps_event(event: str, **data) -> str:
    """Serialize a structured event; Decimals and enums render as strings."""
    return json.dumps({"event": event, **data}, default=str)


def event_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Decode a record produced by `dumps_event`; plain-text records give {}."""
    try:
        data = json.loads(record.getMessage())
    except (ValueError, TypeError):
        return {}
    return data if isinstance(data, dict) else {}


class JsonFormatter(logging.Formatter):
    """Flattens structured events into the line next to ts/level/logger."""

    def format(self, record: logging.LogRecord) -> str:
        line: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
        }
        fields = event_fields(record)
        if fields:
            line.update(fields)
        else:
            line["msg"] = record.getMessage()
        if record.exc_info:
            line["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(line, separators=(",", ":"), default=str)


class ThrottledFilter(logging.Filter):
    """Passes the first (event, side) record, then drops repeats for `cooldown_sec`."""

    def __init__(self, cooldown_sec: float = 30.0, events: Optional[Iterable[str]] = None):
        super().__init__()
        self.cooldown_sec = cooldown_sec
        self.events = frozenset(events) if events is not None else NOISY_EVENTS
        self._last: Dict[Tuple[str, str], float] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        fields = event_fields(record)
        event = fields.get("event")
        if event not in self.events:
            return True
        key = (event, str(fields.get("side", "")))
        now = time.monotonic()
        last = self._last.get(key)
        if last is not None and now - last < self.cooldown_sec:
            return False
        self._last[key] = now
        return True


class _DroppingQueueHandler(QueueHandler):
    """QueueHandler that counts and drops records when the writer falls behind."""

    def __init__(self, q: queue.Queue):
        super().__init__(q)
        self.dropped = 0

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1


def _file_handler(path: str, level: int, max_queue: int) -> logging.Handler:
    target = logging.FileHandler(path)
    target.setFormatter(JsonFormatter())
    q: queue.Queue = queue.Queue(maxsize=max_queue)
    listener = QueueListener(q, target, respect_handler_level=False)
    listener.start()
    atexit.register(listener.stop)
    handler = _DroppingQueueHandler(q)
    handler.setLevel(level)
    return handler


def build_logger(
    name: str = LOGGER_NAME,
    level: int = logging.INFO,
    file_path: Optional[str] = "makerbot.log",
    throttle: bool = True,
    max_queue: int = 10000,
) -> logging.Logger:
    """
    Configure the bot logger once; later calls only adjust the level.

    Console: rich, with noisy events throttled when `throttle` is set.
    File: JSON lines through a background writer (skipped when file_path is None).
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    console = RichHandler(show_path=False, markup=False, rich_tracebacks=False)
    console.setLevel(level)
    console.setFormatter(logging.Formatter("%(message)s"))
    if throttle:
        console.addFilter(ThrottledFilter())
    logger.addHandler(console)

    if file_path:
        logger.addHandler(_file_handler(file_path, level, max_queue))

    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **data) -> None:
    """
    Log a structured event.

        log_event(log, "order_placed", side="buy", px=Decimal("93586.3"))
    """
    logger.log(level, dumps_event(event, **data))
