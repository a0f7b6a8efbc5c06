"""
Tests for the Trade Request Router.

============================================================
PURPOSE
============================================================
Validation, fund reservation and position creation.

TEST PRINCIPLES:
- A rejection never changes the balance
- A rejection never creates a position
- Every insufficient-funds rejection notifies the user
- Pending orders reserve nothing

============================================================
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from settlement_engine.clock import MockClock
from settlement_engine.config import SettlementEngineConfig
from settlement_engine.events import EventEmitter
from settlement_engine.ledger import InMemoryBalanceLedger
from settlement_engine.price_source import StaticPriceSource
from settlement_engine.router import TradeRequestRouter, compute_reservation
from settlement_engine.store import ActivityLog, PositionStore
from settlement_engine.types import (
    ActivityStatus,
    Direction,
    InstrumentType,
    InsufficientFunds,
    NotificationKind,
    OptionStrategy,
    PositionStatus,
    PriceUnavailable,
    TradeAction,
    TradeRequest,
    TriggerType,
)


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    return MockClock()


@pytest.fixture
def ledger():
    """Ledger seeded with 10000 USDT."""
    return InMemoryBalanceLedger({"USDT": Decimal("10000")})


@pytest.fixture
def store():
    return PositionStore()


@pytest.fixture
def emitter():
    return EventEmitter(ActivityLog())


@pytest.fixture
def router(store, ledger, emitter, clock):
    """Router with BTC at 45000 and ETH at 3000."""
    prices = StaticPriceSource({"BTC": Decimal("45000"), "ETH": Decimal("3000")})
    return TradeRequestRouter(
        store=store,
        ledger=ledger,
        price_source=prices,
        emitter=emitter,
        clock=clock,
        config=SettlementEngineConfig.for_testing(),
    )


def spot_buy(amount="100", **overrides):
    fields = dict(
        instrument_type=InstrumentType.SPOT,
        action=TradeAction.BUY,
        symbol="BTC",
        amount=Decimal(amount),
    )
    fields.update(overrides)
    return TradeRequest(**fields)


# ============================================================
# RESERVATION TESTS
# ============================================================

class TestComputeReservation:
    """Tests for compute_reservation."""

    def test_formulas(self):
        """Test R per instrument."""
        rate = Decimal("0.10")
        assert compute_reservation(InstrumentType.SPOT, Decimal("100"), Decimal("45000"), Decimal("1"), rate) == Decimal("100")
        assert compute_reservation(InstrumentType.FUTURES, Decimal("1"), Decimal("45000"), Decimal("10"), rate) == Decimal("4500")
        assert compute_reservation(InstrumentType.OPTIONS, Decimal("2"), Decimal("3000"), Decimal("1"), rate) == Decimal("600")
        assert compute_reservation(InstrumentType.BINARY, Decimal("50"), Decimal("45000"), Decimal("1"), rate) == Decimal("50")
        assert compute_reservation(InstrumentType.STAKING, Decimal("500"), None, Decimal("1"), rate) == Decimal("500")


# ============================================================
# OPENING TESTS
# ============================================================

class TestOpenPosition:
    """Tests for accepted requests."""

    @pytest.mark.asyncio
    async def test_spot_buy(self, router, ledger, store, emitter, clock):
        """Test spot buy 100 BTC-notional reserves 100 and fixes 7.5%."""
        result = await router.submit(spot_buy(duration_seconds=300))

        assert result.accepted
        position = result.position
        assert position.status == PositionStatus.OPEN
        assert position.entry_price == Decimal("45000")
        assert position.reserved_funds == Decimal("100")
        assert position.profit_percentage == Decimal("7.5")
        assert position.expires_at == clock.now() + timedelta(seconds=300)
        assert ledger.available("USDT") == Decimal("9900")
        assert store.get(position.id) is position

        notification = emitter.notifications()[0]
        assert notification.kind == NotificationKind.TRADE_PLACED
        activity = emitter.activities(position.user_id)[0]
        assert activity.status == ActivityStatus.PENDING

    @pytest.mark.asyncio
    async def test_request_price_is_entry(self, router):
        """Test an explicit price is used as the entry price."""
        position = await router.open_position(spot_buy(price=Decimal("44000")))
        assert position.entry_price == Decimal("44000")

    @pytest.mark.asyncio
    async def test_futures_reserves_margin(self, router, ledger):
        """Test futures reserve amount * price / leverage."""
        request = TradeRequest(
            instrument_type=InstrumentType.FUTURES,
            action=TradeAction.SELL,
            symbol="BTC",
            amount=Decimal("1"),
            leverage=Decimal("10"),
        )
        position = await router.open_position(request)

        assert position.reserved_funds == Decimal("4500")
        assert position.direction == Direction.SHORT
        assert position.duration_seconds == 3600
        assert position.profit_percentage == Decimal("36")
        assert ledger.available("USDT") == Decimal("5500")

    @pytest.mark.asyncio
    async def test_options_reserve_premium(self, router):
        """Test options reserve the premium and default the strike."""
        request = TradeRequest(
            instrument_type=InstrumentType.OPTIONS,
            action=TradeAction.BUY,
            symbol="ETH",
            amount=Decimal("2"),
            expiry_seconds=600,
        )
        position = await router.open_position(request)

        assert position.reserved_funds == Decimal("600")
        assert position.strike_price == Decimal("3000")
        assert position.option_strategy == OptionStrategy.LONG_CALL
        assert position.duration_seconds == 600

    @pytest.mark.asyncio
    async def test_option_strategy_sets_direction(self, router):
        """Test a covered call is bearish."""
        request = TradeRequest(
            instrument_type=InstrumentType.OPTIONS,
            action=TradeAction.SELL,
            symbol="ETH",
            amount=Decimal("1"),
            option_strategy=OptionStrategy.COVERED_CALL,
            strike_price=Decimal("3100"),
        )
        position = await router.open_position(request)
        assert position.direction == Direction.SELL
        assert position.strike_price == Decimal("3100")

    @pytest.mark.asyncio
    async def test_binary_defaults(self, router):
        """Test binary default payout rate and direction words."""
        request = TradeRequest(
            instrument_type=InstrumentType.BINARY,
            action=TradeAction.BUY,
            symbol="BTC",
            amount=Decimal("50"),
            direction="down",
        )
        position = await router.open_position(request)

        assert position.payout_rate == Decimal("85")
        assert position.direction == Direction.LOWER
        assert position.duration_seconds == 60

    @pytest.mark.asyncio
    async def test_staking_without_symbol(self, router, emitter):
        """Test staking needs no symbol or price."""
        request = TradeRequest(
            instrument_type=InstrumentType.STAKING,
            action=TradeAction.STAKE,
            amount=Decimal("1000"),
            pool_id="eth-pool",
        )
        position = await router.open_position(request)

        assert position.entry_price is None
        assert position.reserved_funds == Decimal("1000")
        assert position.duration_seconds == 7 * 86400
        assert emitter.notifications()[0].kind == NotificationKind.STAKE_INITIATED

    @pytest.mark.asyncio
    async def test_bot_activity_running(self, router, emitter):
        """Test a bot subscription is recorded as running."""
        request = TradeRequest(
            instrument_type=InstrumentType.BOT,
            action=TradeAction.BUY,
            amount=Decimal("200"),
            bot_id="grid-1",
        )
        position = await router.open_position(request)
        assert emitter.activities(position.user_id)[0].status == ActivityStatus.RUNNING


# ============================================================
# PENDING ORDER TESTS
# ============================================================

class TestPendingOrders:
    """Tests for limit/stop futures orders."""

    @pytest.mark.asyncio
    async def test_limit_order_reserves_nothing(self, router, ledger, emitter):
        """Test a pending order holds no funds."""
        request = TradeRequest(
            instrument_type=InstrumentType.FUTURES,
            action=TradeAction.BUY,
            symbol="BTC",
            amount=Decimal("1"),
            price=Decimal("44000"),
            leverage=Decimal("10"),
            trigger_type=TriggerType.LIMIT,
        )
        position = await router.open_position(request)

        assert position.status == PositionStatus.PENDING_ORDER
        assert position.trigger_price == Decimal("44000")
        assert position.reserved_funds == Decimal("0")
        assert position.entry_price is None
        assert ledger.available("USDT") == Decimal("10000")
        assert emitter.notifications()[0].title == "Order Placed"

    @pytest.mark.asyncio
    async def test_unaffordable_order_rejected(self, router, ledger):
        """Test affordability is checked at the trigger price."""
        request = TradeRequest(
            instrument_type=InstrumentType.FUTURES,
            action=TradeAction.BUY,
            symbol="BTC",
            amount=Decimal("10"),
            price=Decimal("44000"),
            trigger_type=TriggerType.STOP,
        )
        result = await router.submit(request)
        assert result.error_code == "VAL_INSUFFICIENT_BALANCE"

    @pytest.mark.asyncio
    async def test_trigger_requires_price(self, router):
        """Test a limit order without a trigger price is invalid."""
        request = TradeRequest(
            instrument_type=InstrumentType.FUTURES,
            action=TradeAction.BUY,
            symbol="BTC",
            amount=Decimal("1"),
            trigger_type=TriggerType.LIMIT,
        )
        result = await router.submit(request)
        assert result.error_code == "VAL_MISSING_FIELD"


# ============================================================
# REJECTION TESTS
# ============================================================

class TestRejections:
    """Tests for rejected requests."""

    @pytest.mark.asyncio
    async def test_insufficient_funds_is_idempotent(self, router, ledger, store, emitter):
        """Test repeated rejections leave balance and store unchanged."""
        for attempt in range(2):
            result = await router.submit(spot_buy("20000"))

            assert not result.accepted
            assert result.error_code == "VAL_INSUFFICIENT_BALANCE"
            assert ledger.available("USDT") == Decimal("10000")
            assert len(store) == 0

        notifications = emitter.notifications()
        assert len(notifications) == 2
        assert all(n.kind == NotificationKind.INSUFFICIENT_BALANCE for n in notifications)
        assert notifications[0].payload["required"] == "20000"
        assert emitter.activities("default")[0].status == ActivityStatus.ERROR

    @pytest.mark.asyncio
    async def test_open_position_raises(self, router):
        """Test the raising variant carries required/available."""
        with pytest.raises(InsufficientFunds) as exc_info:
            await router.open_position(spot_buy("10000.01"))
        assert exc_info.value.required == Decimal("10000.01")
        assert exc_info.value.available == Decimal("10000")

    @pytest.mark.asyncio
    async def test_price_unavailable(self, router, ledger, store):
        """Test an unpriced symbol is rejected without side effects."""
        with pytest.raises(PriceUnavailable):
            await router.open_position(spot_buy(symbol="DOGE"))

        result = await router.submit(spot_buy(symbol="DOGE"))
        assert result.error_code == "PRC_UNAVAILABLE"
        assert ledger.available("USDT") == Decimal("10000")
        assert len(store) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("request_fields, code", [
        ({"instrument_type": InstrumentType.SPOT, "action": TradeAction.STAKE}, "VAL_UNSUPPORTED_ACTION"),
        ({"instrument_type": InstrumentType.SPOT, "action": TradeAction.CLAIM}, "VAL_UNSUPPORTED_ACTION"),
        ({"instrument_type": InstrumentType.STAKING, "action": TradeAction.UNSTAKE}, "VAL_UNSUPPORTED_ACTION"),
        ({"instrument_type": InstrumentType.BOT, "action": TradeAction.PAUSE, "bot_id": "b"}, "VAL_UNSUPPORTED_ACTION"),
        ({"amount": Decimal("0")}, "VAL_INVALID_AMOUNT"),
        ({"amount": Decimal("-5")}, "VAL_INVALID_AMOUNT"),
        ({"symbol": ""}, "VAL_MISSING_FIELD"),
        ({"leverage": Decimal("5")}, "VAL_INVALID_LEVERAGE"),
        ({"instrument_type": InstrumentType.FUTURES, "leverage": Decimal("500")}, "VAL_INVALID_LEVERAGE"),
        ({"payout_rate": Decimal("80")}, "VAL_INVALID_FIELD"),
        ({"instrument_type": InstrumentType.BINARY, "payout_rate": Decimal("150")}, "VAL_INVALID_FIELD"),
        ({"duration_seconds": -1}, "VAL_INVALID_FIELD"),
        ({"direction": "sideways"}, "VAL_INVALID_FIELD"),
        ({"take_profit": Decimal("0")}, "VAL_INVALID_FIELD"),
        ({"amount": Decimal("NaN")}, "VAL_INVALID_FIELD"),
        ({"amount": Decimal("Infinity")}, "VAL_INVALID_FIELD"),
        ({"price": Decimal("NaN")}, "VAL_INVALID_FIELD"),
        ({"instrument_type": InstrumentType.FUTURES, "leverage": Decimal("NaN")}, "VAL_INVALID_FIELD"),
        ({"instrument_type": InstrumentType.BINARY, "payout_rate": Decimal("-Infinity")}, "VAL_INVALID_FIELD"),
        ({"stop_loss": Decimal("NaN")}, "VAL_INVALID_FIELD"),
        ({"instrument_type": InstrumentType.OPTIONS, "strike_price": Decimal("Infinity")}, "VAL_INVALID_FIELD"),
        ({"instrument_type": InstrumentType.BOT}, "VAL_MISSING_FIELD"),
    ])
    async def test_invalid_requests(self, router, ledger, store, request_fields, code):
        """Test validation failures carry their error code."""
        result = await router.submit(spot_buy(**request_fields))

        assert not result.accepted
        assert result.error_code == code
        assert ledger.available("USDT") == Decimal("10000")
        assert len(store) == 0


# ============================================================
# DIRECTION TESTS
# ============================================================

class TestDirection:
    """Tests for direction normalization."""

    @pytest.mark.parametrize("instrument, word, expected", [
        (InstrumentType.SPOT, None, Direction.BUY),
        (InstrumentType.SPOT, "sell", Direction.SELL),
        (InstrumentType.FUTURES, "long", Direction.LONG),
        (InstrumentType.FUTURES, "short", Direction.SHORT),
        (InstrumentType.BINARY, "up", Direction.HIGHER),
        (InstrumentType.BINARY, "LOWER", Direction.LOWER),
        (InstrumentType.OPTIONS, "put", Direction.SELL),
    ])
    def test_resolve_direction(self, router, instrument, word, expected):
        """Test each instrument's vocabulary."""
        request = TradeRequest(
            instrument_type=instrument,
            action=TradeAction.BUY,
            symbol="BTC",
            amount=Decimal("1"),
            direction=word,
        )
        assert router.resolve_direction(request) == expected
