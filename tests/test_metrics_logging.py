"""Unit tests for rich metrics, structured logging and the status board."""

import json
import logging
from decimal import Decimal

import pytest
from prometheus_client import CollectorRegistry

from makerbot.core.models import BotState, Order, Side
from makerbot.infra.logging_cfg import JsonFormatter, ThrottledFilter, build_logger, dumps_event, log_event
from makerbot.monitoring.metrics_rich import RichMetrics, start_metrics_server
from makerbot.monitoring.status import StatusBoard, format_uptime


def _record(msg, level=logging.WARNING):
    return logging.LogRecord("makerbot", level, __file__, 1, msg, None, None)


class TestRichMetrics:
    def test_counters_and_gauges(self):
        metrics = RichMetrics(registry=CollectorRegistry())
        metrics.orders_placed.labels(coin="BTC", side="buy").inc()
        metrics.orders_placed.labels(coin="BTC", side="buy").inc()
        metrics.flattens.labels(coin="BTC", outcome="closed").inc()
        metrics.quoting_suspended.labels(coin="BTC").set(1)

        reg = metrics.get_registry()
        assert reg.get_sample_value("orders_placed_total", {"coin": "BTC", "side": "buy"}) == 2
        assert reg.get_sample_value("flattens_total", {"coin": "BTC", "outcome": "closed"}) == 1
        assert reg.get_sample_value("quoting_suspended", {"coin": "BTC"}) == 1

    def test_separate_instances_do_not_collide(self):
        RichMetrics()
        RichMetrics()

    def test_metrics_server_disabled_on_port_zero(self):
        assert start_metrics_server(RichMetrics(), 0) is False


class TestStructuredLogging:
    def test_dumps_event_stringifies_decimals(self):
        data = json.loads(dumps_event("order_placed", px=Decimal("93586.3"), side=Side.BUY))
        assert data == {"event": "order_placed", "px": "93586.3", "side": "buy"}

    def test_json_formatter_flattens_events(self):
        out = json.loads(JsonFormatter().format(_record(dumps_event("fill_detected", side="buy"))))
        assert out["level"] == "WARNING"
        assert out["logger"] == "makerbot"
        assert out["event"] == "fill_detected"
        assert out["side"] == "buy"

    def test_json_formatter_plain_text(self):
        out = json.loads(JsonFormatter().format(_record("ws thread exited")))
        assert out["msg"] == "ws thread exited"
        assert "event" not in out

    def test_log_event_uses_level(self, caplog):
        logger = logging.getLogger("makerbot.test")
        with caplog.at_level(logging.DEBUG, logger="makerbot.test"):
            log_event(logger, "flatten_failed", level=logging.CRITICAL, err="rejected")
        assert caplog.records[-1].levelno == logging.CRITICAL
        assert json.loads(caplog.records[-1].getMessage())["err"] == "rejected"

    def test_build_logger_is_idempotent(self):
        logger = build_logger("makerbot.idempotent", file_path=None)
        handlers = list(logger.handlers)
        again = build_logger("makerbot.idempotent", level=logging.DEBUG, file_path=None)
        assert again is logger
        assert again.handlers == handlers
        assert all(h.level == logging.DEBUG for h in again.handlers)


class TestThrottledFilter:
    def test_repeats_suppressed_per_side(self):
        f = ThrottledFilter(cooldown_sec=60)
        buy = _record(dumps_event("replace_throttled", side="buy"))
        sell = _record(dumps_event("replace_throttled", side="sell"))

        assert f.filter(buy)
        assert not f.filter(buy)
        assert f.filter(sell)

    def test_other_events_pass(self):
        f = ThrottledFilter(cooldown_sec=60)
        rec = _record(dumps_event("fill_detected", side="buy"))
        assert f.filter(rec)
        assert f.filter(rec)
        assert f.filter(_record("plain text"))


class TestStatusBoard:
    def test_format_uptime(self):
        assert format_uptime(0, now=3_725_000) == "1h 2m"
        assert format_uptime(10, now=0) == "0h 0m"

    @pytest.mark.asyncio
    async def test_publish_snapshot(self):
        board = StatusBoard()
        state = BotState(symbol="BTC", reference_price=Decimal("93680"))
        state.set_order(Side.SELL, Order(order_id="s1", side=Side.SELL, price=Decimal("93773.7"), qty=Decimal("0.001")))

        await board.publish(state)
        snap = await board.snapshot()

        assert snap["BTC"]["reference_price"] == "93680"
        assert snap["BTC"]["sell_order"]["price"] == "93773.7"
        assert snap["BTC"]["buy_order"] is None
        assert "uptime" in snap["BTC"]

        # snapshots are copies
        state.reference_price = Decimal(1)
        assert (await board.snapshot())["BTC"]["reference_price"] == "93680"
