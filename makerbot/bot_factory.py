"""
BotFactory: wires engines, adapters and observability into a BotOrchestrator.

Usage:
    from makerbot.bot_factory import build_bot, BotDependencies

    deps = BotDependencies(
        cfg=settings,
        gateway=gateway,
        market_data=stream,
        spread_source=binance,
    )
    orchestrator = build_bot(deps)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, TYPE_CHECKING

from makerbot.execution.order_lifecycle import LifecycleConfig, OrderLifecycleManager
from makerbot.monitoring.metrics_rich import RichMetrics
from makerbot.monitoring.status import StatusBoard
from makerbot.orchestrator.bot_orchestrator import BotOrchestrator, OrchestratorConfig
from makerbot.risk.position_guard import PositionGuard, PositionGuardConfig
from makerbot.risk.spread_guard import SpreadAnomalyGuard, SpreadGuardConfig
from makerbot.utils import now_ms

if TYPE_CHECKING:
    from makerbot.config.config import Settings
    from makerbot.core.interfaces import ExchangeGateway, MarketDataSource, ReferenceSpreadSource

log = logging.getLogger("makerbot")


@dataclass
class BotDependencies:
    """Everything needed to create a BotOrchestrator."""
    cfg: "Settings"
    gateway: "ExchangeGateway"
    market_data: "MarketDataSource"
    spread_source: Optional["ReferenceSpreadSource"] = None
    metrics: RichMetrics = field(default_factory=RichMetrics)
    status_board: StatusBoard = field(default_factory=StatusBoard)
    clock: Callable[[], int] = now_ms
    log_event: Optional[Callable[..., None]] = None


def build_bot(deps: BotDependencies) -> BotOrchestrator:
    cfg = deps.cfg
    emit = deps.log_event

    lifecycle = OrderLifecycleManager(
        LifecycleConfig.from_settings(cfg),
        deps.gateway,
        metrics=deps.metrics,
        clock=deps.clock,
        log_event=emit,
    )
    position_guard = PositionGuard(
        PositionGuardConfig.from_settings(cfg),
        deps.gateway,
        metrics=deps.metrics,
        clock=deps.clock,
        log_event=emit,
    )
    spread_guard = SpreadAnomalyGuard(
        SpreadGuardConfig.from_settings(cfg),
        deps.gateway,
        source=deps.spread_source if cfg.spread_guard_enabled else None,
        metrics=deps.metrics,
        clock=deps.clock,
        log_event=emit,
    )
    return BotOrchestrator(
        OrchestratorConfig.from_settings(cfg),
        deps.gateway,
        deps.market_data,
        lifecycle,
        position_guard,
        spread_guard,
        metrics=deps.metrics,
        status_board=deps.status_board,
        clock=deps.clock,
        log_event=emit,
    )
