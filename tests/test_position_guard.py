"""Tests for PositionGuard: fill detection, flatten policies, reconciliation."""

from decimal import Decimal

import pytest

from makerbot.core.models import RETIRED_ORDER_LIMIT, Order, OrderStatus, OrderStatusEvent, OrderType, PlaceResult, Side
from makerbot.risk.position_guard import (
    FlattenError,
    FlattenOutcome,
    PositionGuard,
    PositionGuardConfig,
)


def _guard(gateway, clock, log_event=None, **overrides):
    params = dict(
        close_limit_timeout_ms=50,
        close_fill_timeout_ms=50,
        close_poll_interval_ms=5,
        position_check_interval_ms=2000,
        tick_size=Decimal("0.1"),
    )
    params.update(overrides)
    return PositionGuard(PositionGuardConfig(**params), gateway, clock=clock, log_event=log_event)


def _quote(order_id, side, price, qty="0.0001"):
    return Order(order_id=order_id, side=side, price=Decimal(price), qty=Decimal(qty))


@pytest.fixture
def quoted(state):
    state.reference_price = Decimal("93580")
    state.set_order(Side.BUY, _quote("b1", Side.BUY, "93486.4"))
    state.set_order(Side.SELL, _quote("s1", Side.SELL, "93673.6"))
    return state


class TestFillHandling:
    """Fills on a tracked quote trigger a flatten."""

    @pytest.mark.asyncio
    async def test_buy_fill_closes_with_reduce_only_sell(self, gateway, clock, quoted):
        gateway.get_position.return_value = Decimal("0.0001")
        guard = _guard(gateway, clock)

        result = await guard.on_fill(quoted, OrderStatusEvent("b1", OrderStatus.FILLED, Decimal("0.0001")))

        assert result.outcome is FlattenOutcome.CLOSED
        assert result.method == "market"
        gateway.place_order.assert_awaited_once_with(
            Side.SELL, Decimal("0.0001"), Decimal("93580"), True, OrderType.MARKET
        )
        # the filled buy is terminal; only the resting sell needed canceling
        gateway.cancel_order.assert_awaited_once_with("s1")
        assert quoted.position == 0
        assert quoted.order_for(Side.BUY) is None
        assert quoted.order_for(Side.SELL) is None
        assert quoted.stats.orders_filled == 1
        assert quoted.stats.flattens == 1
        assert quoted.stats.last_trade_time_ms == clock.now
        assert quoted.flatten_in_flight is False

    @pytest.mark.asyncio
    async def test_short_position_closes_with_buy(self, gateway, clock, quoted):
        gateway.get_position.return_value = Decimal("-0.0001")
        guard = _guard(gateway, clock)

        result = await guard.on_fill(quoted, OrderStatusEvent("s1", OrderStatus.FILLED, Decimal("0.0001")))

        assert result.flat
        args = gateway.place_order.await_args.args
        assert args[0] is Side.BUY
        assert args[1] == Decimal("0.0001")

    @pytest.mark.asyncio
    async def test_partial_fill_without_new_volume_is_ignored(self, gateway, clock, quoted):
        guard = _guard(gateway, clock)
        quoted.set_order(Side.BUY, quoted.order_for(Side.BUY).with_status(OrderStatus.PARTIALLY_FILLED, Decimal("0.00005")))

        result = await guard.on_fill(quoted, OrderStatusEvent("b1", OrderStatus.PARTIALLY_FILLED, Decimal("0.00005")))

        assert result is None
        gateway.place_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_filled_without_quantity_uses_order_size(self, gateway, clock, quoted):
        gateway.get_position.return_value = Decimal("0.0001")
        guard = _guard(gateway, clock)

        await guard.on_fill(quoted, OrderStatusEvent("b1", OrderStatus.FILLED))

        assert quoted.stats.orders_filled == 1
        gateway.place_order.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_untracked_order_is_ignored(self, gateway, clock, quoted):
        guard = _guard(gateway, clock)
        assert await guard.on_fill(quoted, OrderStatusEvent("other", OrderStatus.FILLED, Decimal(1))) is None

    @pytest.mark.asyncio
    async def test_non_fill_status_is_ignored(self, gateway, clock, quoted):
        guard = _guard(gateway, clock)
        assert await guard.on_fill(quoted, OrderStatusEvent("b1", OrderStatus.CANCELED)) is None

    @pytest.mark.asyncio
    async def test_late_fill_on_retired_order_flattens(self, gateway, clock, quoted):
        guard = _guard(gateway, clock)
        quoted.retire_order(Side.SELL)
        quoted.set_order(Side.SELL, _quote("s2", Side.SELL, "93680.0"))
        gateway.get_position.return_value = Decimal("-0.0001")

        result = await guard.on_fill(quoted, OrderStatusEvent("s1", OrderStatus.FILLED, Decimal("0.0001")))

        assert result.outcome is FlattenOutcome.CLOSED
        assert gateway.place_order.await_args.args[0] is Side.BUY
        assert quoted.stats.orders_filled == 1
        # a repeat of the same event carries no new volume
        assert await guard.on_fill(quoted, OrderStatusEvent("s1", OrderStatus.FILLED, Decimal("0.0001"))) is None

    def test_retired_orders_are_bounded(self, state):
        for i in range(RETIRED_ORDER_LIMIT + 4):
            state.set_order(Side.BUY, _quote(f"b{i}", Side.BUY, "93486.4"))
            state.retire_order(Side.BUY)

        assert len(state.retired_orders) == RETIRED_ORDER_LIMIT
        assert state.find_retired("b0") is None
        assert state.find_retired(f"b{RETIRED_ORDER_LIMIT + 3}") is not None



class TestFlatten:
    """Flatten protocol and close policies."""

    @pytest.mark.asyncio
    async def test_already_flat_sends_nothing(self, gateway, clock, quoted):
        guard = _guard(gateway, clock)
        quoted.position = Decimal("0.0001")
        gateway.get_position.return_value = Decimal(0)

        result = await guard.flatten(quoted, "test")

        assert result.outcome is FlattenOutcome.ALREADY_FLAT
        gateway.place_order.assert_not_awaited()
        assert quoted.position == 0

    @pytest.mark.asyncio
    async def test_single_flight(self, gateway, clock, quoted):
        guard = _guard(gateway, clock)
        quoted.flatten_in_flight = True

        result = await guard.flatten(quoted, "test")

        assert result.outcome is FlattenOutcome.SKIPPED
        gateway.cancel_order.assert_not_awaited()
        assert quoted.flatten_in_flight is True

    @pytest.mark.asyncio
    async def test_position_query_failure_falls_back_to_local(self, gateway, clock, quoted):
        guard = _guard(gateway, clock)
        quoted.position = Decimal("0.0002")
        gateway.get_position.side_effect = ConnectionError("down")

        result = await guard.flatten(quoted, "test")

        assert result.outcome is FlattenOutcome.CLOSED
        assert gateway.place_order.await_args.args[1] == Decimal("0.0002")

    @pytest.mark.asyncio
    async def test_market_rejection_is_fatal(self, gateway, clock, quoted, log_event, events):
        guard = _guard(gateway, clock, log_event=log_event)
        gateway.get_position.return_value = Decimal("0.0001")
        gateway.place_order.side_effect = None
        gateway.place_order.return_value = PlaceResult(success=False, error_message="insufficient margin")

        result = await guard.flatten(quoted, "fill")

        assert result.fatal
        assert "insufficient margin" in result.error
        assert "flatten_failed" in [e for e, _ in events]
        assert quoted.flatten_in_flight is False
        assert quoted.stats.flattens == 0

    @pytest.mark.asyncio
    async def test_market_confirmed_by_polling(self, gateway, clock, quoted):
        guard = _guard(gateway, clock)
        gateway.get_position.return_value = Decimal("0.0001")
        gateway.place_order.side_effect = None
        gateway.place_order.return_value = PlaceResult(success=True, order_id="m1", status=OrderStatus.OPEN)
        gateway.get_order_info.return_value = Order(
            order_id="m1", side=Side.SELL, price=Decimal("93000"), qty=Decimal("0.0001"),
            filled_qty=Decimal("0.0001"), status=OrderStatus.FILLED,
        )

        result = await guard.flatten(quoted, "fill")

        assert result.outcome is FlattenOutcome.CLOSED
        gateway.get_order_info.assert_awaited_with("m1")

    @pytest.mark.asyncio
    async def test_market_never_confirmed_is_fatal(self, gateway, clock, quoted):
        guard = _guard(gateway, clock)
        gateway.get_position.return_value = Decimal("0.0001")
        gateway.place_order.side_effect = None
        gateway.place_order.return_value = PlaceResult(success=True, order_id="m1", status=OrderStatus.OPEN)
        gateway.get_order_info.return_value = None

        result = await guard.flatten(quoted, "fill")

        assert result.fatal

    @pytest.mark.asyncio
    async def test_limit_close_fills(self, gateway, clock, quoted):
        guard = _guard(gateway, clock, close_mode="limit", close_limit_offset_bp=Decimal(1))
        gateway.get_position.return_value = Decimal("0.0001")
        gateway.get_order_info.return_value = Order(
            order_id="oid-1", side=Side.SELL, price=Decimal("93589.4"), qty=Decimal("0.0001"),
            filled_qty=Decimal("0.0001"), status=OrderStatus.FILLED,
        )

        result = await guard.flatten(quoted, "fill")

        assert result.outcome is FlattenOutcome.CLOSED
        assert result.method == "limit"
        # 93580 * 1.0001 = 93589.358 -> 93589.4
        gateway.place_order.assert_awaited_once_with(
            Side.SELL, Decimal("0.0001"), Decimal("93589.4"), True, OrderType.LIMIT
        )

    @pytest.mark.asyncio
    async def test_limit_timeout_cancels_then_market(self, gateway, clock, quoted):
        guard = _guard(gateway, clock, close_mode="limit")
        gateway.get_position.return_value = Decimal("0.0001")
        gateway.get_order_info.return_value = Order(
            order_id="oid-1", side=Side.SELL, price=Decimal("93580"), qty=Decimal("0.0001"),
        )

        result = await guard.flatten(quoted, "fill")

        assert result.outcome is FlattenOutcome.CLOSED
        assert result.method == "market"
        order_types = [c.args[4] for c in gateway.place_order.await_args_list]
        assert order_types == [OrderType.LIMIT, OrderType.MARKET]
        canceled = [c.args[0] for c in gateway.cancel_order.await_args_list]
        assert canceled[-1] == "oid-1"

    @pytest.mark.asyncio
    async def test_limit_without_reference_degrades_to_market(self, gateway, clock, state):
        guard = _guard(gateway, clock, close_mode="limit")
        gateway.get_position.return_value = Decimal("0.0001")

        result = await guard.flatten(state, "reconcile")

        assert result.method == "market"
        assert gateway.place_order.await_args.args[4] is OrderType.MARKET


class TestReconcile:
    @pytest.mark.asyncio
    async def test_nonzero_position_triggers_flatten(self, gateway, clock, quoted):
        guard = _guard(gateway, clock)
        gateway.get_position.return_value = Decimal("0.0003")

        result = await guard.reconcile(quoted)

        assert result.outcome is FlattenOutcome.CLOSED
        assert quoted.last_position_check_ms == clock.now

    @pytest.mark.asyncio
    async def test_flat_position_is_quiet(self, gateway, clock, quoted):
        guard = _guard(gateway, clock)
        assert await guard.reconcile(quoted) is None
        gateway.cancel_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dust_below_epsilon_is_flat(self, gateway, clock, quoted):
        guard = _guard(gateway, clock)
        gateway.get_position.return_value = Decimal("0.000001")
        assert await guard.reconcile(quoted) is None

    @pytest.mark.asyncio
    async def test_query_failure_is_transient(self, gateway, clock, quoted):
        guard = _guard(gateway, clock)
        gateway.get_position.side_effect = TimeoutError()
        assert await guard.reconcile(quoted) is None

    def test_reconcile_due(self, gateway, clock, state):
        guard = _guard(gateway, clock)
        state.last_position_check_ms = clock.now
        assert not guard.reconcile_due(state)
        clock.advance(2000)
        assert guard.reconcile_due(state)

    @pytest.mark.asyncio
    async def test_position_event(self, gateway, clock, quoted):
        guard = _guard(gateway, clock)
        assert await guard.on_position_changed(quoted, Decimal(0)) is None

        gateway.get_position.return_value = Decimal("-0.0001")
        result = await guard.on_position_changed(quoted, Decimal("-0.0001"))
        assert result.flat

    @pytest.mark.asyncio
    async def test_stale_position_event_is_ignored(self, gateway, clock, quoted):
        guard = _guard(gateway, clock)

        assert await guard.on_position_changed(quoted, Decimal("0.0001")) is None

        gateway.get_position.assert_awaited_once_with("BTC")
        gateway.cancel_order.assert_not_awaited()
        assert quoted.position == 0
        assert quoted.order_for(Side.BUY).order_id == "b1"

    @pytest.mark.asyncio
    async def test_position_event_trusted_when_venue_unreachable(self, gateway, clock, quoted):
        guard = _guard(gateway, clock)
        gateway.get_position.side_effect = [TimeoutError(), Decimal("0.0001")]

        result = await guard.on_position_changed(quoted, Decimal("0.0001"))

        assert result.outcome is FlattenOutcome.CLOSED
        assert gateway.place_order.await_args.args[0] is Side.SELL


class TestStartup:
    @pytest.mark.asyncio
    async def test_flat_account(self, gateway, clock, state):
        guard = _guard(gateway, clock)
        result = await guard.ensure_flat(state)
        assert result.outcome is FlattenOutcome.ALREADY_FLAT

    @pytest.mark.asyncio
    async def test_existing_position_is_closed(self, gateway, clock, state):
        guard = _guard(gateway, clock)
        gateway.get_position.return_value = Decimal("0.002")
        result = await guard.ensure_flat(state)
        assert result.outcome is FlattenOutcome.CLOSED
        assert state.position == 0

    @pytest.mark.asyncio
    async def test_failed_close_aborts(self, gateway, clock, state):
        guard = _guard(gateway, clock)
        gateway.get_position.return_value = Decimal("0.002")
        gateway.place_order.side_effect = None
        gateway.place_order.return_value = PlaceResult(success=False, error_message="rejected")
        with pytest.raises(FlattenError):
            await guard.ensure_flat(state)

    @pytest.mark.asyncio
    async def test_query_failure_aborts(self, gateway, clock, state):
        guard = _guard(gateway, clock)
        gateway.get_position.side_effect = ConnectionError("down")
        with pytest.raises(FlattenError):
            await guard.ensure_flat(state)
