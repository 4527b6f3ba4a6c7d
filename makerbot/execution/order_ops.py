"""
Order operations shared by the engines.

The engines never call each other; when more than one of them needs the same
venue operation (cancel-all on a spread trip, on a flatten, on a halt) it
lives here and works on the borrowed BotState.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set, TypeVar, TYPE_CHECKING

from makerbot.core.models import BotState
from makerbot.infra.logging_cfg import dumps_event

if TYPE_CHECKING:
    from makerbot.core.interfaces import ExchangeGateway
    from makerbot.monitoring.metrics_rich import RichMetrics

log = logging.getLogger("makerbot")

T = TypeVar("T")

LogEventFn = Callable[..., None]


def default_log_event(event: str, level: int = logging.INFO, **kwargs: Any) -> None:
    log.log(level, dumps_event(event, **kwargs))


async def venue_call(awaitable: Awaitable[T], timeout_s: float) -> T:
    """Bound a single venue call; retries belong to the transport adapter."""
    return await asyncio.wait_for(awaitable, timeout=timeout_s)


async def cancel_all_orders(
    gateway: "ExchangeGateway",
    state: BotState,
    reason: str,
    timeout_s: float,
    log_event: Optional[LogEventFn] = None,
    metrics: Optional["RichMetrics"] = None,
) -> int:
    """
    Cancel every open order for the symbol plus whatever the slots hold,
    then clear both slots. Individual failures are logged and skipped.

    Returns:
        Number of orders the venue confirmed canceled
    """
    emit = log_event or default_log_event
    order_ids: Set[str] = set()
    venue_listed = False
    try:
        open_orders = await venue_call(gateway.get_open_orders(state.symbol), timeout_s)
        order_ids.update(o.order_id for o in open_orders)
        venue_listed = True
    except Exception as exc:
        emit("cancel_all_query_failed", level=logging.WARNING, reason=reason, err=str(exc))
    for order in state.orders.values():
        if order is not None and not order.status.is_terminal:
            order_ids.add(order.order_id)

    canceled = 0
    for order_id in sorted(order_ids):
        try:
            ok = await venue_call(gateway.cancel_order(order_id), timeout_s)
        except Exception as exc:
            emit("cancel_failed", level=logging.WARNING, order_id=order_id, reason=reason, err=str(exc))
            continue
        if ok:
            canceled += 1
        else:
            emit("cancel_rejected", level=logging.WARNING, order_id=order_id, reason=reason)

    state.clear_orders()
    if venue_listed:
        # Every order the venue knew about was just canceled.
        for side in state.placement_unconfirmed:
            state.placement_unconfirmed[side] = False
    state.stats.orders_canceled += canceled
    if metrics and canceled:
        metrics.orders_canceled.labels(coin=state.symbol, reason=reason).inc(canceled)
    emit("cancel_all", reason=reason, requested=len(order_ids), canceled=canceled)
    return canceled
