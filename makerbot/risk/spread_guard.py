"""
SpreadAnomalyGuard: suspends quoting when the reference market's spread blows out.

Circuit-breaker style: an anomaly trips the guard into a cooldown during which
quoting is forbidden; it resets on its own once the deadline passes.

Thresholds adapt to the recent sample window:
- Baseline: mean of the latest lookback samples (jump detection)
- Dynamic max: quantile of the latest quantile samples, linear interpolation
- Regime: sample std-dev of the latest vol samples -> low / normal / high,
  each with its own jump/max multipliers
- Basis diff: when the venue mark drifts from the reference mid by more than
  a configured amount, thresholds are relaxed further

The guard never touches target distances; restoring quotes after a cooldown
is the orchestrator's call.
"""

from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Optional, Sequence, TYPE_CHECKING

from makerbot.core.models import BidAsk, BotState, Side, SpreadSample
from makerbot.core.rounding import BP
from makerbot.execution.order_ops import cancel_all_orders, default_log_event, venue_call
from makerbot.utils import ms_to_sec, now_ms

if TYPE_CHECKING:
    from makerbot.config.config import Settings
    from makerbot.core.interfaces import ExchangeGateway, ReferenceSpreadSource
    from makerbot.monitoring.metrics_rich import RichMetrics

log = logging.getLogger("makerbot")

ONE = Decimal(1)


class Regime(Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


def spread_bp(quote: BidAsk) -> Decimal:
    """(ask - bid) / mid in basis points."""
    mid = quote.mid
    if mid <= 0:
        return Decimal(0)
    return (quote.ask - quote.bid) / mid * BP


def quantile(values: Sequence[Decimal], q: Decimal) -> Decimal:
    """
    Linear-interpolated quantile at rank (n - 1) * q over the sorted values.

    quantile([1, 2, 3, 4, 5], 0.9) == 4.6
    """
    if not values:
        return Decimal(0)
    q = min(ONE, max(Decimal(0), q))
    ordered = sorted(values)
    if len(ordered) == 1:
        return ordered[0]
    position = (len(ordered) - 1) * q
    lower = int(position)
    upper = min(lower + 1, len(ordered) - 1)
    weight = position - lower
    return ordered[lower] + (ordered[upper] - ordered[lower]) * weight


def sample_stdev(values: Sequence[Decimal]) -> Decimal:
    if len(values) < 2:
        return Decimal(0)
    return statistics.stdev(values)


@dataclass(frozen=True)
class SpreadGuardConfig:
    """Configuration for spread guard behavior."""
    enabled: bool = True
    symbol: str = "BTCUSDT"  # Reference market symbol
    jump_spread_bp: Decimal = Decimal(20)
    max_spread_bp: Decimal = Decimal(40)  # Absolute max, fallback for the dynamic max
    lookback_samples: int = 50
    quantile_samples: int = 50
    quantile_min_samples: int = 10
    max_quantile: Decimal = Decimal("0.95")
    vol_lookback_samples: int = 50
    vol_high_threshold_bp: Decimal = Decimal(15)
    vol_low_threshold_bp: Decimal = Decimal(5)
    high_vol_jump_multiplier: Decimal = Decimal("1.5")
    high_vol_max_multiplier: Decimal = Decimal("1.5")
    low_vol_jump_multiplier: Decimal = Decimal("0.8")
    low_vol_max_multiplier: Decimal = Decimal("0.8")
    basis_diff_bp: Decimal = Decimal(0)  # 0 disables basis-diff softening
    basis_diff_multiplier: Decimal = Decimal(2)
    basis_diff_policy: str = "multiply"  # multiply | override
    max_threshold_policy: str = "quantile"  # quantile | quantile_floor
    poll_interval_ms: int = 1000
    cooldown_ms: int = 30000
    call_timeout_ms: int = 10000

    @classmethod
    def from_settings(cls, cfg: "Settings") -> "SpreadGuardConfig":
        return cls(
            enabled=cfg.spread_guard_enabled,
            symbol=cfg.spread_guard_symbol,
            jump_spread_bp=cfg.jump_spread_bp,
            max_spread_bp=cfg.max_spread_bp,
            lookback_samples=cfg.lookback_samples,
            quantile_samples=cfg.quantile_samples,
            quantile_min_samples=cfg.quantile_min_samples,
            max_quantile=cfg.max_quantile,
            vol_lookback_samples=cfg.vol_lookback_samples,
            vol_high_threshold_bp=cfg.vol_high_threshold_bp,
            vol_low_threshold_bp=cfg.vol_low_threshold_bp,
            high_vol_jump_multiplier=cfg.high_vol_jump_multiplier,
            high_vol_max_multiplier=cfg.high_vol_max_multiplier,
            low_vol_jump_multiplier=cfg.low_vol_jump_multiplier,
            low_vol_max_multiplier=cfg.low_vol_max_multiplier,
            basis_diff_bp=cfg.basis_diff_bp,
            basis_diff_multiplier=cfg.basis_diff_multiplier,
            basis_diff_policy=cfg.basis_diff_policy,
            max_threshold_policy=cfg.max_threshold_policy,
            poll_interval_ms=cfg.spread_poll_interval_ms,
            cooldown_ms=cfg.spread_cooldown_ms,
            call_timeout_ms=cfg.call_timeout_ms,
        )

    @property
    def capacity(self) -> int:
        return max(self.lookback_samples, self.quantile_samples, self.vol_lookback_samples)


@dataclass(frozen=True)
class SpreadThresholds:
    baseline_bp: Decimal
    jump_bp: Decimal
    max_bp: Decimal
    regime: Regime
    volatility_bp: Decimal
    basis_diff_bp: Decimal
    basis_diff_active: bool


@dataclass(frozen=True)
class SpreadCheck:
    """Result of one spread poll."""
    spread_bp: Decimal
    thresholds: SpreadThresholds
    jumped: bool
    too_wide: bool
    tripped: bool = False  # True only when this poll moved the guard into cooldown

    @property
    def anomalous(self) -> bool:
        return self.jumped or self.too_wide

    @property
    def reason(self) -> Optional[str]:
        t = self.thresholds
        if self.too_wide:
            return f"spread {self.spread_bp:.2f} bp >= max {t.max_bp:.2f} bp"
        if self.jumped:
            return (
                f"spread jumped to {self.spread_bp:.2f} bp "
                f"(baseline {t.baseline_bp:.2f} bp, jump {t.jump_bp:.2f} bp)"
            )
        return None


class SpreadAnomalyGuard:
    """
    Active <-> Suspended state machine over quoting availability.

    The cooldown deadline lives in BotState; is_suspended() is true strictly
    before the deadline, so quoting may resume at cooldown_start + cooldown_ms.
    """

    def __init__(
        self,
        config: SpreadGuardConfig,
        gateway: "ExchangeGateway",
        source: Optional["ReferenceSpreadSource"] = None,
        metrics: Optional["RichMetrics"] = None,
        clock: Callable[[], int] = now_ms,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.source = source
        self.metrics = metrics
        self._clock = clock
        self._log_event = log_event or default_log_event

    @property
    def enabled(self) -> bool:
        return self.config.enabled and self.source is not None

    # ========== State machine ==========

    def is_suspended(self, state: BotState, now: Optional[int] = None) -> bool:
        now = self._clock() if now is None else now
        return now < state.spread_cooldown_until_ms

    def cooldown_remaining_ms(self, state: BotState) -> int:
        return max(0, state.spread_cooldown_until_ms - self._clock())

    def sides_to_restore(self, state: BotState, sides: Sequence[Side]) -> List[Side]:
        """
        Sides whose slot is empty while quoting is allowed again.

        Also closes out a finished cooldown (logged once).
        """
        if self.is_suspended(state):
            return []
        if state.quoting_suspended:
            state.quoting_suspended = False
            self._log_event("spread_guard_resumed", coin=state.symbol)
            if self.metrics:
                self.metrics.quoting_suspended.labels(coin=state.symbol).set(0)
        if state.reference_price <= 0 or state.flatten_in_flight:
            return []
        return [side for side in sides if state.order_for(side) is None]

    # ========== Statistics ==========

    def record(self, state: BotState, value_bp: Decimal) -> None:
        state.spread_samples.append(SpreadSample(timestamp_ms=self._clock(), spread_bp=value_bp))
        while len(state.spread_samples) > self.config.capacity:
            state.spread_samples.popleft()

    @staticmethod
    def _recent(state: BotState, limit: int) -> List[Decimal]:
        if limit <= 0:
            return []
        values = [s.spread_bp for s in state.spread_samples]
        return values[-limit:]

    def baseline(self, state: BotState) -> Decimal:
        samples = self._recent(state, self.config.lookback_samples)
        if not samples:
            return Decimal(0)
        return statistics.mean(samples)

    def dynamic_max(self, state: BotState) -> Decimal:
        cfg = self.config
        samples = self._recent(state, cfg.quantile_samples)
        if len(samples) < max(1, cfg.quantile_min_samples):
            return cfg.max_spread_bp
        value = quantile(samples, cfg.max_quantile)
        if cfg.max_threshold_policy == "quantile_floor":
            return max(value, cfg.max_spread_bp)
        return value

    def volatility(self, state: BotState) -> Decimal:
        return sample_stdev(self._recent(state, self.config.vol_lookback_samples))

    def classify_regime(self, volatility: Decimal) -> Regime:
        if volatility >= self.config.vol_high_threshold_bp:
            return Regime.HIGH
        if volatility <= self.config.vol_low_threshold_bp:
            return Regime.LOW
        return Regime.NORMAL

    def _regime_multipliers(self, regime: Regime) -> tuple:
        cfg = self.config
        if regime is Regime.HIGH:
            return cfg.high_vol_jump_multiplier, cfg.high_vol_max_multiplier
        if regime is Regime.LOW:
            return cfg.low_vol_jump_multiplier, cfg.low_vol_max_multiplier
        return ONE, ONE

    def thresholds(self, state: BotState, reference_mid: Decimal) -> SpreadThresholds:
        cfg = self.config
        volatility = self.volatility(state)
        regime = self.classify_regime(volatility)
        jump_mult, max_mult = self._regime_multipliers(regime)

        basis_bp = Decimal(0)
        if state.reference_price > 0 and reference_mid > 0:
            basis_bp = abs(state.reference_price - reference_mid) / reference_mid * BP
        basis_active = cfg.basis_diff_bp > 0 and basis_bp >= cfg.basis_diff_bp
        if basis_active:
            if cfg.basis_diff_policy == "override":
                jump_mult = max_mult = cfg.basis_diff_multiplier
            else:
                jump_mult *= cfg.basis_diff_multiplier
                max_mult *= cfg.basis_diff_multiplier

        return SpreadThresholds(
            baseline_bp=self.baseline(state),
            jump_bp=cfg.jump_spread_bp * jump_mult,
            max_bp=self.dynamic_max(state) * max_mult,
            regime=regime,
            volatility_bp=volatility,
            basis_diff_bp=basis_bp,
            basis_diff_active=basis_active,
        )

    # ========== Decision ==========

    def evaluate(self, state: BotState, quote: BidAsk) -> SpreadCheck:
        """Record the sample and test it against the adaptive thresholds (no side effects beyond the sample)."""
        value = spread_bp(quote)
        self.record(state, value)
        t = self.thresholds(state, quote.mid)
        jumped = t.baseline_bp > 0 and value - t.baseline_bp >= t.jump_bp
        too_wide = value >= t.max_bp
        return SpreadCheck(spread_bp=value, thresholds=t, jumped=jumped, too_wide=too_wide)

    async def poll(self, state: BotState) -> Optional[SpreadCheck]:
        """
        Fetch the reference BBO, sample it, and trip the guard on an anomaly.

        Transient failures and invalid quotes are logged and skipped; the next
        poll tries again.
        """
        if not self.enabled:
            return None
        try:
            quote = await venue_call(
                self.source.poll_best_bid_ask(self.config.symbol),
                ms_to_sec(self.config.call_timeout_ms),
            )
        except Exception as exc:
            self._log_event("spread_poll_error", level=logging.WARNING, symbol=self.config.symbol, err=str(exc))
            if self.metrics:
                self.metrics.api_errors_total.labels(coin=state.symbol, where="reference_bbo").inc()
            return None
        if not quote.is_valid:
            self._log_event("spread_guard_invalid_bbo", level=logging.WARNING, bid=quote.bid, ask=quote.ask)
            return None

        check = self.evaluate(state, quote)
        self._publish(state, check)

        if self.is_suspended(state):
            self._log_event("spread_guard_cooldown_skip", level=logging.DEBUG, remaining_ms=self.cooldown_remaining_ms(state))
            return check
        if not check.anomalous:
            return check

        await self._trip(state, check)
        return SpreadCheck(
            spread_bp=check.spread_bp,
            thresholds=check.thresholds,
            jumped=check.jumped,
            too_wide=check.too_wide,
            tripped=True,
        )

    async def _trip(self, state: BotState, check: SpreadCheck) -> None:
        t = check.thresholds
        self._log_event(
            "spread_guard_triggered",
            level=logging.WARNING,
            reason=check.reason,
            regime=t.regime.value,
            volatility_bp=round(t.volatility_bp, 2),
            basis_diff_bp=round(t.basis_diff_bp, 2),
            basis_diff_active=t.basis_diff_active,
            cooldown_ms=self.config.cooldown_ms,
        )
        await cancel_all_orders(
            self.gateway,
            state,
            reason="spread_guard",
            timeout_s=ms_to_sec(self.config.call_timeout_ms),
            log_event=self._log_event,
            metrics=self.metrics,
        )
        state.spread_cooldown_until_ms = self._clock() + self.config.cooldown_ms
        state.quoting_suspended = True
        if self.metrics:
            self.metrics.spread_guard_trips.labels(coin=state.symbol, regime=t.regime.value).inc()
            self.metrics.quoting_suspended.labels(coin=state.symbol).set(1)

    def _publish(self, state: BotState, check: SpreadCheck) -> None:
        if not self.metrics:
            return
        t = check.thresholds
        self.metrics.spread_bp.labels(coin=state.symbol).set(float(check.spread_bp))
        self.metrics.spread_jump_threshold_bp.labels(coin=state.symbol).set(float(t.jump_bp))
        self.metrics.spread_max_threshold_bp.labels(coin=state.symbol).set(float(t.max_bp))
        self.metrics.spread_volatility_bp.labels(coin=state.symbol).set(float(t.volatility_bp))
