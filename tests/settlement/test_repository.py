"""
Tests for Settlement Persistence.

============================================================
PURPOSE
============================================================
Repository round trips against a file-backed SQLite database
and engine restart recovery.

TEST CATEGORIES:
1. Position save/load
2. History queries and pruning
3. Activity records
4. Restart: expiry settlement, SETTLING recovery

============================================================
"""

import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from settlement_engine.clock import MockClock
from settlement_engine.config import SettlementEngineConfig
from settlement_engine.engine import SettlementEngine
from settlement_engine.ledger import InMemoryBalanceLedger
from settlement_engine.outcome import FixedProbabilityModel
from settlement_engine.price_source import StaticPriceSource
from settlement_engine.repository import PositionRepository
from settlement_engine.types import (
    ActivityRecord,
    ActivityStatus,
    Direction,
    ExitReason,
    InstrumentType,
    Outcome,
    OptionStrategy,
    PersistenceError,
    Position,
    PositionStatus,
    TradeAction,
    TradeRequest,
    TriggerType,
)


T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}"


@pytest_asyncio.fixture
async def repository(database_url):
    """Repository with tables created."""
    repository = PositionRepository.from_url(database_url)
    await repository.create_tables()
    yield repository
    await repository.close()


def make_position(status=PositionStatus.OPEN, settled_at=None, **overrides):
    fields = dict(
        user_id="default",
        instrument_type=InstrumentType.SPOT,
        symbol="BTC",
        amount=Decimal("100"),
        entry_price=Decimal("45000"),
        reserved_funds=Decimal("100"),
        profit_percentage=Decimal("7.5"),
        duration_seconds=300,
        status=status,
        created_at=T0,
        opened_at=T0,
        expires_at=T0 + timedelta(seconds=300),
        settled_at=settled_at,
    )
    if status.is_terminal() and status != PositionStatus.CANCELLED:
        fields.update(outcome=Outcome.LOSE, payout=Decimal("0"), exit_reason=ExitReason.TIMER)
    fields.update(overrides)
    return Position(**fields)


def make_engine(ledger, prices, clock, repository):
    return SettlementEngine(
        ledger,
        prices,
        config=SettlementEngineConfig.for_testing(),
        clock=clock,
        probability_model=FixedProbabilityModel(),
        repository=repository,
    )


# ============================================================
# POSITION TESTS
# ============================================================

class TestPositionPersistence:
    """Tests for position save/load."""

    @pytest.mark.asyncio
    async def test_round_trip(self, repository):
        """Test every field survives a save/load."""
        position = make_position(
            instrument_type=InstrumentType.OPTIONS,
            direction=Direction.SELL,
            option_strategy=OptionStrategy.COVERED_CALL,
            strike_price=Decimal("46000"),
            take_profit=Decimal("44000"),
            last_price=Decimal("45010.5"),
        )
        await repository.save_position(position)

        loaded = await repository.get_position(position.id)

        assert loaded.id == position.id
        assert loaded.instrument_type == InstrumentType.OPTIONS
        assert loaded.direction == Direction.SELL
        assert loaded.option_strategy == OptionStrategy.COVERED_CALL
        assert loaded.strike_price == Decimal("46000")
        assert loaded.take_profit == Decimal("44000")
        assert loaded.last_price == Decimal("45010.5")
        assert loaded.profit_percentage == Decimal("7.5")
        assert loaded.status == PositionStatus.OPEN
        assert loaded.expires_at == position.expires_at
        assert loaded.expires_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_save_updates_in_place(self, repository):
        """Test saving again updates the same row."""
        position = make_position()
        await repository.save_position(position)

        position.status = PositionStatus.WON
        position.outcome = Outcome.WIN
        position.payout = Decimal("107.50")
        position.settled_at = T0 + timedelta(seconds=300)
        await repository.save_position(position)

        loaded = await repository.get_position(position.id)
        assert loaded.status == PositionStatus.WON
        assert loaded.payout == Decimal("107.50")
        assert await repository.load_active_positions() == []

    @pytest.mark.asyncio
    async def test_missing_position(self, repository):
        """Test an unknown id loads as None."""
        assert await repository.get_position("POS_MISSING") is None

    @pytest.mark.asyncio
    async def test_load_active(self, repository):
        """Test only pending, open and settling positions are active."""
        pending = make_position(
            PositionStatus.PENDING_ORDER,
            trigger_type=TriggerType.LIMIT,
            trigger_price=Decimal("44000"),
            expires_at=None,
        )
        opened = make_position()
        settled = make_position(PositionStatus.LOST, settled_at=T0)
        written = await repository.save_positions([pending, opened, settled])

        active = await repository.load_active_positions()

        assert written == 3
        assert {p.id for p in active} == {pending.id, opened.id}
        restored = next(p for p in active if p.id == pending.id)
        assert restored.trigger_type == TriggerType.LIMIT

    @pytest.mark.asyncio
    async def test_save_nothing(self, repository):
        """Test an empty batch is a no-op."""
        assert await repository.save_positions([]) == 0


# ============================================================
# HISTORY TESTS
# ============================================================

class TestHistoryPersistence:
    """Tests for history queries and pruning."""

    @pytest.mark.asyncio
    async def test_history_newest_first(self, repository):
        """Test history is ordered by settlement time."""
        older = make_position(PositionStatus.LOST, settled_at=T0)
        newer = make_position(PositionStatus.LOST, settled_at=T0 + timedelta(hours=1))
        await repository.save_positions([older, newer, make_position()])

        history = await repository.load_history()
        assert [p.id for p in history] == [newer.id, older.id]

        limited = await repository.load_history(limit=1)
        assert [p.id for p in limited] == [newer.id]

        recent = await repository.load_history(since=T0 + timedelta(minutes=30))
        assert [p.id for p in recent] == [newer.id]

    @pytest.mark.asyncio
    async def test_delete_settled_before(self, repository):
        """Test pruning deletes only old terminal rows."""
        old = make_position(PositionStatus.LOST, settled_at=T0 - timedelta(days=10))
        recent = make_position(PositionStatus.LOST, settled_at=T0)
        active = make_position()
        await repository.save_positions([old, recent, active])

        deleted = await repository.delete_settled_before(T0 - timedelta(days=7))

        assert deleted == 1
        assert await repository.get_position(old.id) is None
        assert await repository.get_position(recent.id) is not None
        assert await repository.get_position(active.id) is not None


# ============================================================
# ACTIVITY TESTS
# ============================================================

class TestActivityPersistence:
    """Tests for activity records."""

    @pytest.mark.asyncio
    async def test_round_trip(self, repository):
        """Test activities load newest first with their metadata."""
        records = [
            ActivityRecord(
                user_id="default",
                category="trade",
                action="buy",
                description=f"record {n}",
                status=ActivityStatus.PENDING,
                amount=Decimal("100"),
                meta={"position_id": f"POS_{n}"},
                timestamp=T0 + timedelta(seconds=n),
            )
            for n in range(3)
        ]
        await repository.save_activities(records)

        loaded = await repository.load_activities("default", limit=2)

        assert [r.description for r in loaded] == ["record 2", "record 1"]
        assert loaded[0].meta == {"position_id": "POS_2"}
        assert loaded[0].status == ActivityStatus.PENDING
        assert await repository.load_activities("someone-else") == []


# ============================================================
# FAILURE TESTS
# ============================================================

class TestRepositoryFailures:
    """Tests for error wrapping."""

    @pytest.mark.asyncio
    async def test_read_without_tables(self, database_url):
        """Test a failed read raises PersistenceError with the read code."""
        repository = PositionRepository.from_url(database_url)
        try:
            with pytest.raises(PersistenceError) as exc_info:
                await repository.load_active_positions()
            assert exc_info.value.code == "PER_READ_FAILED"
        finally:
            await repository.close()

    @pytest.mark.asyncio
    async def test_write_without_tables(self, database_url):
        """Test a failed write raises PersistenceError with the write code."""
        repository = PositionRepository.from_url(database_url)
        try:
            with pytest.raises(PersistenceError) as exc_info:
                await repository.save_position(make_position())
            assert exc_info.value.code == "PER_WRITE_FAILED"
        finally:
            await repository.close()


# ============================================================
# RESTART TESTS
# ============================================================

class TestRestart:
    """Tests for engine restart against a persisted store."""

    @pytest.mark.asyncio
    async def test_expired_position_settled_on_load(self, repository):
        """Test a position that expired while offline settles from its last price."""
        clock = MockClock(T0)
        ledger = InMemoryBalanceLedger({"USDT": Decimal("10000")})
        prices = StaticPriceSource({"BTC": Decimal("45000")})

        first = make_engine(ledger, prices, clock, repository)
        position = await first.open_position(TradeRequest(
            instrument_type=InstrumentType.SPOT,
            action=TradeAction.BUY,
            symbol="BTC",
            amount=Decimal("100"),
            duration_seconds=300,
        ))
        prices.set_price("BTC", Decimal("46000"))
        clock.advance(100)
        await first.tick()

        # Process down past expiry; no price feed on restart.
        clock.advance(600)
        second = make_engine(ledger, StaticPriceSource(), clock, repository)
        restored = await second.load()

        settled = second.get_position(position.id)
        assert restored == 1
        assert settled.status == PositionStatus.WON
        assert settled.exit_price == Decimal("46000")
        assert settled.payout == Decimal("107.50")
        assert ledger.available("USDT") == Decimal("10007.50")

        stored = await repository.get_position(position.id)
        assert stored.status == PositionStatus.WON

    @pytest.mark.asyncio
    async def test_settling_recovered_to_open(self, repository):
        """Test a position caught mid-settlement is retried."""
        clock = MockClock(T0)
        position = make_position(PositionStatus.SETTLING)
        await repository.save_position(position)

        engine = make_engine(
            InMemoryBalanceLedger({"USDT": Decimal("0")}),
            StaticPriceSource({"BTC": Decimal("45000")}),
            clock,
            repository,
        )
        await engine.load()

        assert engine.get_position(position.id).status == PositionStatus.OPEN
        stored = await repository.get_position(position.id)
        assert stored.status == PositionStatus.OPEN

    @pytest.mark.asyncio
    async def test_history_and_activities_restored(self, repository):
        """Test history and activity log survive a restart."""
        clock = MockClock(T0)
        ledger = InMemoryBalanceLedger({"USDT": Decimal("10000")})
        prices = StaticPriceSource({"BTC": Decimal("45000")})

        first = make_engine(ledger, prices, clock, repository)
        position = await first.open_position(TradeRequest(
            instrument_type=InstrumentType.SPOT,
            action=TradeAction.BUY,
            symbol="BTC",
            amount=Decimal("100"),
            duration_seconds=300,
        ))
        await first.override(position.id, Outcome.LOSE)

        second = make_engine(ledger, prices, clock, repository)
        await second.load()

        history = second.list_history()
        assert [p.id for p in history] == [position.id]
        assert history[0].status == PositionStatus.ADMIN_OVERRIDDEN
        assert len(second.get_activities()) == 2
