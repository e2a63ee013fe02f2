"""
Tests for PositionManager.

Tests cover:
- Opening, updating and closing positions
- Exit rules and their priority order
- Sell failures and retry on the next tick
- Partial take-profit ladder
- Monitor self-stop and persistence
"""

import pytest

from conftest import MemoryStore
from events import PartialSellExecuted, PositionClosed, PositionUpdated, SellExecuted, SellFailed
from models import (
    CloseReason,
    PartialTakeProfitLevel,
    Position,
    PositionOptions,
    PositionStatus,
    SwapDirection,
)
from position_manager import PositionManager

TOKEN = "So1TokenMint111"


# =============================================================================
# Basic lifecycle
# =============================================================================


class TestPositionLifecycle:
    """Opening, reading, updating and closing positions."""

    @pytest.mark.asyncio
    async def test_add_position_opens_and_persists(self, manager, position_store, recorder):
        """Should create an OPEN position with highest_price = entry_price."""
        position = manager.add_position(TOKEN, 1.0, 500.0, PositionOptions(stop_loss=10))

        assert position.status == PositionStatus.OPEN
        assert position.highest_price == 1.0
        assert position.exit_price is None
        assert position.profit is None
        assert position.closed_at is None
        assert position.close_reason is None
        assert position_store.items == [position]
        assert recorder.names() == ["positionCreated"]

    @pytest.mark.asyncio
    async def test_add_position_starts_monitor(self, manager):
        """Should start the monitor loop lazily on the first add."""
        assert not manager.monitoring
        manager.add_position(TOKEN, 1.0, 1.0)
        assert manager.monitoring

    @pytest.mark.asyncio
    async def test_read_accessors(self, manager):
        """Should expose open, all, by id and by token views."""
        a = manager.add_position(TOKEN, 1.0, 1.0)
        b = manager.add_position("OtherMint", 2.0, 1.0)
        manager.close_position(b.id, 2.0, CloseReason.MANUAL)

        assert manager.get_open_positions() == [a]
        assert len(manager.get_all_positions()) == 2
        assert manager.get_position(b.id) is b
        assert manager.get_positions_by_token(TOKEN) == [a]
        assert manager.get_position("missing") is None

    @pytest.mark.asyncio
    async def test_update_position_merges_top_level_fields(self, manager, recorder):
        """Should overwrite known fields and ignore unknown ones."""
        position = manager.add_position(TOKEN, 1.0, 1.0, PositionOptions(stop_loss=10))

        updated = manager.update_position(position.id, {"stop_loss": 20, "bogus": 1})

        assert updated is position
        assert position.stop_loss == 20
        assert not hasattr(position, "bogus")
        assert recorder.names()[-1] == "positionUpdated"

    @pytest.mark.asyncio
    async def test_update_unknown_position_returns_none(self, manager, recorder):
        """Should return None for an unknown id without emitting."""
        assert manager.update_position("missing", {"stop_loss": 1}) is None
        assert recorder.events == []

    @pytest.mark.asyncio
    async def test_closed_position_cannot_be_updated(self, manager, position_store, recorder):
        """Should leave a closed record untouched."""
        position = manager.add_position(TOKEN, 1.0, 1.0)
        manager.close_position(position.id, 2.0, CloseReason.MANUAL)
        saves = position_store.saves

        assert manager.update_position(position.id, {"exit_price": 99.0, "profit": -50.0}) is None

        assert position.exit_price == 2.0
        assert position.profit == pytest.approx(100.0)
        assert position_store.saves == saves
        assert recorder.of_type(PositionUpdated) == []

    @pytest.mark.asyncio
    async def test_update_cannot_close_position(self, manager):
        """Lifecycle fields are ignored; only close_position closes."""
        position = manager.add_position(TOKEN, 1.0, 1.0, PositionOptions(stop_loss=10))

        manager.update_position(
            position.id,
            {"status": "CLOSED", "exit_price": 5.0, "close_reason": "MANUAL", "take_profit": 40},
        )

        assert position.status == PositionStatus.OPEN
        assert position.exit_price is None
        assert position.close_reason is None
        assert position.take_profit == 40
        assert manager.get_open_positions() == [position]

    @pytest.mark.asyncio
    async def test_close_position_sets_exit_fields(self, manager):
        """Should compute profit as a percentage of the entry price."""
        position = manager.add_position(TOKEN, 2.0, 1.0)

        closed = manager.close_position(position.id, 3.0, CloseReason.MANUAL)

        assert closed.status == PositionStatus.CLOSED
        assert closed.exit_price == 3.0
        assert closed.profit == pytest.approx(50.0)
        assert closed.closed_at is not None
        assert closed.close_reason == CloseReason.MANUAL

    @pytest.mark.asyncio
    async def test_double_close_is_noop(self, manager, position_store, recorder):
        """Should ignore a second close and emit positionClosed only once."""
        position = manager.add_position(TOKEN, 1.0, 1.0)
        manager.close_position(position.id, 1.5, CloseReason.MANUAL)
        saves = position_store.saves

        assert manager.close_position(position.id, 0.5, CloseReason.STOP_LOSS) is None

        assert position.exit_price == 1.5
        assert position.close_reason == CloseReason.MANUAL
        assert position_store.saves == saves
        assert len(recorder.of_type(PositionClosed)) == 1

    def test_loads_positions_from_store(self, config, oracle, swap, bus):
        """Should restore positions persisted by a previous run."""
        saved = Position(id="1-a", token_address=TOKEN, entry_price=1.0, amount=5.0, highest_price=1.2)
        pm = PositionManager(config, oracle, swap, MemoryStore([saved]), bus)

        assert pm.get_open_positions() == [saved]


# =============================================================================
# Monitor ticks
# =============================================================================


class TestMonitorTick:
    """Exit rule evaluation inside one monitor tick."""

    @pytest.mark.asyncio
    async def test_stop_loss_closes_position(self, manager, oracle, swap, recorder):
        """Entry 1.0, SL 10%, price 0.89 closes with STOP_LOSS at about -11%."""
        position = manager.add_position(TOKEN, 1.0, 100.0, PositionOptions(stop_loss=10))
        oracle.set_price(TOKEN, 0.89)

        await manager.check_positions()

        assert position.status == PositionStatus.CLOSED
        assert position.close_reason == CloseReason.STOP_LOSS
        assert position.profit == pytest.approx(-11.0)
        direction, token, amount, slippage = swap.calls[0]
        assert direction == SwapDirection.SELL
        assert amount == 100.0
        assert slippage == 5.0
        assert recorder.names()[-2:] == ["positionClosed", "sellExecuted"]

    @pytest.mark.asyncio
    async def test_trailing_stop_follows_high_water_mark(self, manager, oracle):
        """Prices 1.0 -> 1.2 -> 1.1 with a 5% trailing stop close on the third tick."""
        position = manager.add_position(TOKEN, 1.0, 1.0, PositionOptions(trailing_stop=5))

        for price in (1.0, 1.2):
            oracle.set_price(TOKEN, price)
            await manager.check_positions()
            assert position.is_open

        oracle.set_price(TOKEN, 1.1)
        await manager.check_positions()

        assert position.highest_price == 1.2
        assert position.status == PositionStatus.CLOSED
        assert position.close_reason == CloseReason.TRAILING_STOP

    @pytest.mark.asyncio
    async def test_take_profit_wins_over_stop_loss(self, manager, oracle):
        """Should record TAKE_PROFIT when both thresholds are satisfied."""
        position = manager.add_position(
            TOKEN, 1.0, 1.0, PositionOptions(take_profit=10, stop_loss=-20)
        )
        oracle.set_price(TOKEN, 1.15)

        await manager.check_positions()

        assert position.close_reason == CloseReason.TAKE_PROFIT

    @pytest.mark.asyncio
    async def test_take_profit_uses_normal_slippage(self, manager, oracle, swap):
        """Should sell with the regular sell slippage outside stop-loss exits."""
        manager.add_position(TOKEN, 1.0, 1.0, PositionOptions(take_profit=30))
        oracle.set_price(TOKEN, 1.5)

        await manager.check_positions()

        assert swap.calls[0][3] == 2.0

    @pytest.mark.asyncio
    async def test_max_hold_time_is_lowest_priority(self, manager, oracle):
        """Should close on MAX_HOLD_TIME when no price rule fires."""
        position = manager.add_position(
            TOKEN, 1.0, 1.0, PositionOptions(stop_loss=50, max_hold_minutes=0)
        )
        oracle.set_price(TOKEN, 1.0)

        await manager.check_positions()

        assert position.close_reason == CloseReason.MAX_HOLD_TIME

    @pytest.mark.asyncio
    async def test_no_rules_keeps_position_open(self, manager, oracle):
        """Should only track the high-water mark when no rule is configured."""
        position = manager.add_position(TOKEN, 1.0, 1.0)
        oracle.set_price(TOKEN, 3.0)

        await manager.check_positions()

        assert position.is_open
        assert position.highest_price == 3.0
        assert position.last_checked is not None

    @pytest.mark.asyncio
    async def test_one_price_fetch_per_token(self, manager, oracle):
        """Should group positions by token before fetching prices."""
        manager.add_position(TOKEN, 1.0, 1.0)
        manager.add_position(TOKEN, 1.1, 2.0)
        manager.add_position("OtherMint", 1.0, 1.0)
        oracle.set_price(TOKEN, 1.0)
        oracle.set_price("OtherMint", 1.0)

        await manager.check_positions()

        assert sorted(oracle.calls) == ["OtherMint", TOKEN]

    @pytest.mark.asyncio
    async def test_missing_price_skips_group(self, manager, oracle, swap):
        """Should leave positions untouched when no price is available."""
        position = manager.add_position(TOKEN, 1.0, 1.0, PositionOptions(stop_loss=10))
        oracle.set_price(TOKEN, None)

        await manager.check_positions()

        assert position.is_open
        assert swap.calls == []

    @pytest.mark.asyncio
    async def test_oracle_exception_does_not_propagate(self, manager, oracle):
        """Should catch oracle errors inside the tick."""
        position = manager.add_position(TOKEN, 1.0, 1.0, PositionOptions(stop_loss=10))
        oracle.error = RuntimeError("boom")

        await manager.check_positions()

        assert position.is_open

    @pytest.mark.asyncio
    async def test_highest_price_never_below_entry(self, manager, oracle):
        """highest_price >= entry_price holds after every tick."""
        position = manager.add_position(TOKEN, 1.0, 1.0)
        for price in (0.5, 0.7, 0.95):
            oracle.set_price(TOKEN, price)
            await manager.check_positions()
            assert position.highest_price >= position.entry_price

    @pytest.mark.asyncio
    async def test_monitor_stops_without_open_positions(self, manager, oracle):
        """Should stop itself once every position is closed."""
        manager.add_position(TOKEN, 1.0, 1.0, PositionOptions(stop_loss=10))
        oracle.set_price(TOKEN, 0.5)
        await manager.check_positions()
        assert manager.monitoring

        await manager.check_positions()

        assert not manager.monitoring


# =============================================================================
# Sell failures
# =============================================================================


class TestSellFailures:
    """Exit swaps that fail leave the position open for the next tick."""

    @pytest.mark.asyncio
    async def test_failed_sell_keeps_position_open(self, manager, oracle, swap, recorder):
        """Should record the attempt and emit sellFailed."""
        position = manager.add_position(TOKEN, 1.0, 1.0, PositionOptions(stop_loss=10))
        oracle.set_price(TOKEN, 0.5)
        swap.fail_next = 1

        await manager.check_positions()

        assert position.is_open
        assert position.sell_attempts == 1
        assert position.sell_error == "swap failed"
        failed = recorder.of_type(SellFailed)
        assert len(failed) == 1
        assert failed[0].reason == "STOP_LOSS"
        assert recorder.of_type(SellExecuted) == []

    @pytest.mark.asyncio
    async def test_failed_sell_retried_next_tick(self, manager, oracle, swap):
        """Should close on the following tick once the swap succeeds."""
        position = manager.add_position(TOKEN, 1.0, 1.0, PositionOptions(stop_loss=10))
        oracle.set_price(TOKEN, 0.5)
        swap.fail_next = 1

        await manager.check_positions()
        await manager.check_positions()

        assert position.status == PositionStatus.CLOSED
        assert position.sell_attempts == 1
        assert position.exit_tx == "tx-2"
        assert position.exit_amount_sol == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_swap_exception_is_caught(self, manager, oracle, swap):
        """Should treat a raising swap provider as a failed sell."""

        async def broken_swap(*args, **kwargs):
            raise ConnectionError("rpc down")

        swap.swap = broken_swap
        position = manager.add_position(TOKEN, 1.0, 1.0, PositionOptions(stop_loss=10))
        oracle.set_price(TOKEN, 0.5)

        await manager.check_positions()

        assert position.is_open
        assert "rpc down" in position.sell_error

    @pytest.mark.asyncio
    async def test_partial_sell_failure_keeps_level_pending(self, manager, oracle, swap, recorder):
        """A failed partial sell is retried on the next tick."""
        position = manager.add_position(TOKEN, 1.0, 100.0)
        oracle.set_price(TOKEN, 1.35)
        swap.fail_next = 1

        await manager.check_positions()

        assert position.amount == 100.0
        assert position.executed_partial_levels == []
        assert recorder.of_type(SellFailed)[0].reason == "PARTIAL_TP_30"

        await manager.check_positions()

        assert position.amount == pytest.approx(80.0)
        assert position.executed_partial_levels == [30]


# =============================================================================
# Partial take profits
# =============================================================================


class TestPartialTakeProfit:
    """Ladder of partial sells while no full exit rule fires."""

    @pytest.mark.asyncio
    async def test_default_ladder_sells_a_slice(self, manager, oracle, swap, recorder):
        """At +35% the 30% level sells 20% of the position once."""
        position = manager.add_position(TOKEN, 1.0, 100.0)
        oracle.set_price(TOKEN, 1.35)

        await manager.check_positions()
        await manager.check_positions()

        assert position.is_open
        assert position.amount == pytest.approx(80.0)
        assert position.executed_partial_levels == [30]
        assert len(swap.calls) == 1
        direction, _, amount, slippage = swap.calls[0]
        assert direction == SwapDirection.SELL
        assert amount == pytest.approx(20.0)
        assert slippage == 2.0

        (event,) = recorder.of_type(PartialSellExecuted)
        assert event.reason == "PARTIAL_TP_30"
        assert event.amount_remaining == pytest.approx(80.0)
        sale = position.partial_sells[0]
        assert sale.sol_received == pytest.approx(20.0 * 1.35)
        assert sale.tx_reference == "tx-1"

    @pytest.mark.asyncio
    async def test_one_level_per_tick_highest_first(self, manager, oracle, swap):
        """Reached levels fire one per tick, starting from the highest."""
        position = manager.add_position(TOKEN, 1.0, 100.0)
        oracle.set_price(TOKEN, 2.1)

        for _ in range(4):
            await manager.check_positions()

        assert position.executed_partial_levels == [100, 50, 30]
        assert len(swap.calls) == 3
        assert position.amount == pytest.approx(100.0 * 0.6 * 0.7 * 0.8)

    @pytest.mark.asyncio
    async def test_full_exit_sells_what_is_left(self, manager, oracle, swap):
        """A later stop loss sells the remaining amount only."""
        position = manager.add_position(TOKEN, 1.0, 100.0, PositionOptions(stop_loss=10))
        oracle.set_price(TOKEN, 1.35)
        await manager.check_positions()

        oracle.set_price(TOKEN, 0.8)
        await manager.check_positions()

        assert position.close_reason == CloseReason.STOP_LOSS
        assert swap.calls[-1][2] == pytest.approx(80.0)

    @pytest.mark.asyncio
    async def test_full_exit_takes_precedence(self, manager, oracle, swap):
        """When take profit fires the whole position is sold in one swap."""
        position = manager.add_position(TOKEN, 1.0, 100.0, PositionOptions(take_profit=30))
        oracle.set_price(TOKEN, 1.5)

        await manager.check_positions()

        assert position.close_reason == CloseReason.TAKE_PROFIT
        assert len(swap.calls) == 1
        assert swap.calls[0][2] == 100.0
        assert position.partial_sells == []

    @pytest.mark.asyncio
    async def test_custom_and_empty_ladders(self, manager, oracle, swap):
        """Positions can carry their own ladder or none at all."""
        custom = manager.add_position(
            TOKEN,
            1.0,
            10.0,
            PositionOptions(partial_take_profit_levels=(PartialTakeProfitLevel(10, 50),)),
        )
        bare = manager.add_position("OtherMint", 1.0, 10.0, PositionOptions(partial_take_profit_levels=()))
        oracle.set_price(TOKEN, 1.2)
        oracle.set_price("OtherMint", 3.0)

        await manager.check_positions()

        assert custom.amount == pytest.approx(5.0)
        assert bare.amount == 10.0
        assert len(swap.calls) == 1


# =============================================================================
# Persistence on ticks
# =============================================================================


class TestTickPersistence:
    """The monitor only writes to the store when something changed."""

    @pytest.mark.asyncio
    async def test_quiet_tick_does_not_save(self, manager, oracle, position_store):
        """Should skip the write when no high-water mark moved."""
        manager.add_position(TOKEN, 1.0, 1.0, PositionOptions(stop_loss=50))
        saves = position_store.saves
        oracle.set_price(TOKEN, 1.0)

        await manager.check_positions()
        assert position_store.saves == saves

        oracle.set_price(TOKEN, 1.1)
        await manager.check_positions()
        assert position_store.saves == saves + 1

        oracle.set_price(TOKEN, 1.05)
        await manager.check_positions()
        assert position_store.saves == saves + 1

    @pytest.mark.asyncio
    async def test_failed_sell_is_saved(self, manager, oracle, swap, position_store):
        """Sell attempt bookkeeping reaches the store."""
        manager.add_position(TOKEN, 1.0, 1.0, PositionOptions(stop_loss=10))
        saves = position_store.saves
        oracle.set_price(TOKEN, 0.5)
        swap.fail_next = 1

        await manager.check_positions()

        assert position_store.saves == saves + 1
        assert position_store.items[0].sell_attempts == 1
