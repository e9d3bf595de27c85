"""Unit tests for database storage."""
import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from basket_trader.core.models import (
    Alert,
    AlertLevel,
    CloseReason,
    Position,
    PositionStatus,
    TradeAction,
    TradeRecord,
)


def make_position(signal, status=PositionStatus.SIMULATED, quantity=Decimal("3.6")):
    position = Position(signal=signal, quantity=quantity, stop_loss=Decimal("95"))
    position.transition_to(status)
    if status != PositionStatus.FAILED:
        position.entry_price = signal.current_price
    return position


def make_trade(token="SOL", kind="open", timestamp=None):
    return TradeRecord(
        position_id="pos-1",
        token=token,
        action=TradeAction.BUY,
        kind=kind,
        quantity=Decimal("3.6"),
        reference_price=Decimal("100"),
        execution_price=Decimal("100.5"),
        status=PositionStatus.SIMULATED,
        timestamp=timestamp or datetime.utcnow(),
    )


# =============================================================================
# Position Tests
# =============================================================================

class TestPositions:

    @pytest.mark.asyncio
    async def test_save_and_get(self, test_database, signal_factory):
        position = make_position(signal_factory())
        await test_database.save_position(position)

        loaded = await test_database.get_position(position.id)

        assert loaded.id == position.id
        assert loaded.token == "SOL"
        assert loaded.status == PositionStatus.SIMULATED
        assert loaded.status_history == [PositionStatus.PENDING, PositionStatus.SIMULATED]
        assert loaded.quantity == Decimal("3.6")
        assert loaded.entry_price == Decimal("100")
        assert loaded.stop_loss == Decimal("95")
        assert loaded.signal.confidence == 0.9

    @pytest.mark.asyncio
    async def test_get_unknown(self, test_database):
        assert await test_database.get_position("missing") is None

    @pytest.mark.asyncio
    async def test_open_positions_only(self, test_database, signal_factory):
        open_position = make_position(signal_factory())
        failed = make_position(signal_factory(token="BONK"), status=PositionStatus.FAILED)
        await test_database.save_position(open_position)
        await test_database.save_position(failed)

        positions = await test_database.get_open_positions()

        assert [p.id for p in positions] == [open_position.id]

    @pytest.mark.asyncio
    async def test_update_on_close(self, test_database, signal_factory):
        position = make_position(signal_factory())
        await test_database.save_position(position)

        position.transition_to(PositionStatus.CLOSED)
        position.close_reason = CloseReason.TAKE_PROFIT
        position.close_price = Decimal("110")
        position.realized_pnl = Decimal("36")
        position.closed_at = datetime.utcnow()
        await test_database.save_position(position)

        loaded = await test_database.get_position(position.id)
        assert loaded.status == PositionStatus.CLOSED
        assert loaded.close_reason == CloseReason.TAKE_PROFIT
        assert loaded.realized_pnl == Decimal("36")
        assert await test_database.get_open_positions() == []


# =============================================================================
# Trade History Tests
# =============================================================================

class TestTrades:

    @pytest.mark.asyncio
    async def test_newest_first(self, test_database):
        now = datetime(2024, 1, 1, 12, 0)
        older = make_trade(kind="open", timestamp=now)
        newer = make_trade(kind="close", timestamp=now + timedelta(minutes=5))
        await test_database.append_trade(older)
        await test_database.append_trade(newer)

        trades = await test_database.get_trades()

        assert [t.id for t in trades] == [newer.id, older.id]
        assert trades[0].execution_price == Decimal("100.5")
        assert trades[0].status == PositionStatus.SIMULATED

    @pytest.mark.asyncio
    async def test_filter_and_limit(self, test_database):
        now = datetime(2024, 1, 1)
        for i in range(3):
            await test_database.append_trade(make_trade(token="SOL", timestamp=now + timedelta(minutes=i)))
        await test_database.append_trade(make_trade(token="BONK", timestamp=now))

        assert len(await test_database.get_trades(token="SOL")) == 3
        assert len(await test_database.get_trades(token="BONK")) == 1
        assert len(await test_database.get_trades(limit=2)) == 2


# =============================================================================
# Alert Tests
# =============================================================================

class TestAlerts:

    @pytest.mark.asyncio
    async def test_acknowledge_updates_existing(self, test_database):
        alert = Alert(level=AlertLevel.WARNING, type="drawdown", message="Drawdown at 12%")
        await test_database.save_alert(alert)

        alert.acknowledged = True
        await test_database.save_alert(alert)

        alerts = await test_database.get_alerts()
        assert len(alerts) == 1
        assert alerts[0].acknowledged

    @pytest.mark.asyncio
    async def test_unacknowledged_filter(self, test_database):
        now = datetime(2024, 1, 1)
        seen = Alert(timestamp=now, level=AlertLevel.WARNING, type="volatility", message="v", acknowledged=True)
        fresh = Alert(timestamp=now + timedelta(minutes=1), level=AlertLevel.CRITICAL, type="drawdown", message="d")
        await test_database.save_alert(seen)
        await test_database.save_alert(fresh)

        assert [a.id for a in await test_database.get_alerts()] == [fresh.id, seen.id]
        unacknowledged = await test_database.get_alerts(unacknowledged_only=True)
        assert [a.id for a in unacknowledged] == [fresh.id]
        assert unacknowledged[0].level == AlertLevel.CRITICAL


# =============================================================================
# Snapshot & Config Tests
# =============================================================================

class TestSnapshots:

    @pytest.mark.asyncio
    async def test_latest_snapshot(self, test_database):
        assert await test_database.get_latest_snapshot() is None

        await test_database.save_snapshot({"total_value": "10000", "cash": "10000"})
        await test_database.save_snapshot({"total_value": "10500", "cash": "5000"})

        latest = await test_database.get_latest_snapshot()
        assert latest["total_value"] == "10500"
        assert latest["cash"] == "5000"


class TestConfig:

    @pytest.mark.asyncio
    async def test_set_get_overwrite(self, test_database):
        assert await test_database.get_config("target_allocation", {"CASH": 1.0}) == {"CASH": 1.0}

        await test_database.set_config("target_allocation", {"SOL": 0.5, "CASH": 0.5})
        assert await test_database.get_config("target_allocation") == {"SOL": 0.5, "CASH": 0.5}

        await test_database.set_config("target_allocation", {"CASH": 1.0})
        assert await test_database.get_config("target_allocation") == {"CASH": 1.0}
