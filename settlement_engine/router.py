"""
Settlement Engine - Trade Request Router.

============================================================
PURPOSE
============================================================
Turns a TradeRequest into an OPEN (or PENDING_ORDER) position.

FLOW:
    1. Validate per instrument type        -> InvalidRequest
    2. Resolve reference price             -> PriceUnavailable
    3. Compute reservation R
    4. available < R                       -> InsufficientFunds
                                              + insufficient_balance
    5. Reserve R, create position, insert
    6. Emit trade_placed / stake_initiated + activity

RESERVATION R:
    spot, quant, bot, staking, strategy   amount
    futures                               amount * price / leverage
    options                               amount * price * premium_rate
    binary                                amount

Pending limit/stop futures orders reserve nothing until they
trigger.

============================================================
"""

import logging
from decimal import Decimal
from typing import Optional

from .clock import ClockProtocol
from .config import SettlementEngineConfig
from .events import EventEmitter
from .ledger import BalanceLedger
from .outcome import compute_profit_percentage
from .price_source import PriceSource
from .store import PositionStore
from .types import (
    Direction,
    InstrumentType,
    InsufficientFunds,
    InvalidRequest,
    OptionStrategy,
    Position,
    PositionStatus,
    SettlementEngineError,
    SubmitResult,
    TradeAction,
    TradeRequest,
)


logger = logging.getLogger(__name__)


# Actions that open a position, per instrument.
OPENING_ACTIONS = {
    InstrumentType.SPOT: {TradeAction.BUY, TradeAction.SELL},
    InstrumentType.FUTURES: {TradeAction.BUY, TradeAction.SELL},
    InstrumentType.OPTIONS: {TradeAction.BUY, TradeAction.SELL},
    InstrumentType.BINARY: {TradeAction.BUY, TradeAction.SELL},
    InstrumentType.QUANT: {TradeAction.BUY},
    InstrumentType.BOT: {TradeAction.BUY},
    InstrumentType.STAKING: {TradeAction.STAKE},
    InstrumentType.STRATEGY: {TradeAction.BUY},
}

NUMERIC_FIELDS = (
    "amount", "price", "leverage", "payout_rate",
    "stop_loss", "take_profit", "strike_price",
)

BULLISH_WORDS ={"buy", "long", "higher", "up", "call"}
BEARISH_WORDS = {"sell", "short", "lower", "down", "put"}

# Direction vocabulary per instrument: (bullish, bearish)
DIRECTION_VOCABULARY = {
    InstrumentType.SPOT: (Direction.BUY, Direction.SELL),
    InstrumentType.FUTURES: (Direction.LONG, Direction.SHORT),
    InstrumentType.OPTIONS: (Direction.BUY, Direction.SELL),
    InstrumentType.BINARY: (Direction.HIGHER, Direction.LOWER),
}


def compute_reservation(
    instrument: InstrumentType,
    amount: Decimal,
    price: Optional[Decimal],
    leverage: Decimal,
    premium_rate: Decimal,
) -> Decimal:
    """Funds reserved when a position opens."""
    if instrument == InstrumentType.FUTURES:
        return amount * price / leverage
    if instrument == InstrumentType.OPTIONS:
        return amount * price * premium_rate
    return amount


# ============================================================
# TRADE REQUEST ROUTER
# ============================================================

class TradeRequestRouter:
    """
    Validates requests, reserves funds and creates positions.

    `submit` never raises for domain errors; `open_position` is the
    raising variant.
    """

    def __init__(
        self,
        store: PositionStore,
        ledger: BalanceLedger,
        price_source: PriceSource,
        emitter: EventEmitter,
        clock: ClockProtocol,
        config: SettlementEngineConfig,
    ):
        self._store = store
        self._ledger = ledger
        self._prices = price_source
        self._emitter = emitter
        self._clock = clock
        self._config = config

    @property
    def asset(self) -> str:
        return self._config.reservation.settlement_asset

    async def submit(self, request: TradeRequest) -> SubmitResult:
        """
        Submit a trade request.

        Returns:
            SubmitResult with the accepted position or a rejection reason
        """
        try:
            position = await self.open_position(request)
        except SettlementEngineError as e:
            logger.warning(
                f"Rejected {request.instrument_type.value} {request.action.value} "
                f"{request.symbol}: [{e.code}] {e}"
            )
            return SubmitResult(reason=str(e), error_code=e.code)

        return SubmitResult(position=position)

    async def open_position(self, request: TradeRequest) -> Position:
        """
        Open a position, raising on rejection.

        Raises:
            InvalidRequest: Malformed request
            PriceUnavailable: No reference price for a price-driven instrument
            InsufficientFunds: Available balance below the reservation
        """
        self.validate(request)

        instrument = request.instrument_type
        direction = self.resolve_direction(request)
        leverage = request.leverage or Decimal("1")
        pending = request.trigger_type is not None

        # The only await: everything after it is synchronous.
        if pending:
            reference_price = request.price
        else:
            reference_price = await self._reference_price(request)

        required = compute_reservation(
            instrument,
            request.amount,
            reference_price,
            leverage,
            self._config.reservation.options_premium_rate,
        )

        available = self._ledger.available(self.asset)
        if available < required:
            self._reject_funds(request, required, available)

        duration = self._duration(request)
        position = Position(
            user_id=self._config.user_id,
            instrument_type=instrument,
            action=request.action,
            symbol=request.symbol,
            direction=direction,
            amount=request.amount,
            leverage=leverage,
            duration_seconds=duration,
            stop_loss=request.stop_loss,
            take_profit=request.take_profit,
            bot_id=request.bot_id,
            pool_id=request.pool_id,
            created_at=self._clock.now(),
        )
        self._apply_pricing_terms(position, request)

        if pending:
            position.status = PositionStatus.PENDING_ORDER
            position.trigger_type = request.trigger_type
            position.trigger_price = request.price
            self._store.insert(position)
            self._emitter.order_placed(position)
            logger.info(
                f"Pending {position.trigger_type.value} order {position.id}: "
                f"{position.direction.value} {position.amount} {position.symbol} @ {position.trigger_price}"
            )
            return position

        if not self._ledger.reserve(self.asset, required, reference=position.id):
            self._reject_funds(request, required, self._ledger.available(self.asset))

        now = self._clock.now()
        position.entry_price = reference_price
        position.last_price = reference_price
        position.reserved_funds = required
        position.opened_at = now
        position.expires_at = self._clock.after(duration)
        if instrument == InstrumentType.OPTIONS and position.strike_price is None:
            position.strike_price = reference_price

        self._store.insert(position)
        self._emitter.position_opened(position)

        logger.info(
            f"Opened {instrument.value} position {position.id}: {direction.value} "
            f"{position.symbol} reserved={required} entry={reference_price} "
            f"expires={position.expires_at.isoformat()}"
        )
        return position

    # --------------------------------------------------------
    # VALIDATION
    # --------------------------------------------------------

    def validate(self, request: TradeRequest) -> None:
        """
        Validate a request for its instrument type.

        Raises:
            InvalidRequest: With a registry error code
        """
        instrument = request.instrument_type

        if request.action not in OPENING_ACTIONS[instrument]:
            raise InvalidRequest(
                f"Action {request.action.value} does not open a {instrument.value} position",
                code="VAL_UNSUPPORTED_ACTION",
            )

        for name in NUMERIC_FIELDS:
            value = getattr(request, name)
            if value is not None and not value.is_finite():
                raise InvalidRequest(f"{name} must be a finite number", code="VAL_INVALID_FIELD")

        if request.amount is None or request.amount <= 0:
            raise InvalidRequest("amount must be greater than 0", code="VAL_INVALID_AMOUNT")

        if instrument.is_price_driven() and not request.symbol:
            raise InvalidRequest(f"symbol is required for {instrument.value}", code="VAL_MISSING_FIELD")

        if request.leverage is not None:
            if instrument != InstrumentType.FUTURES:
                raise InvalidRequest("leverage is only valid for futures", code="VAL_INVALID_LEVERAGE")
            max_leverage = self._config.reservation.max_leverage
            if request.leverage < 1 or request.leverage > max_leverage:
                raise InvalidRequest(
                    f"leverage must be between 1 and {max_leverage}",
                    code="VAL_INVALID_LEVERAGE",
                )

        for name in ("duration_seconds", "expiry_seconds"):
            value = getattr(request, name)
            if value is not None and (
                value <= 0 or value > self._config.durations.max_duration_seconds
            ):
                raise InvalidRequest(f"{name} out of range", code="VAL_INVALID_FIELD")

        for name in ("price", "stop_loss", "take_profit", "strike_price"):
            value = getattr(request, name)
            if value is not None and value <= 0:
                raise InvalidRequest(f"{name} must be greater than 0", code="VAL_INVALID_FIELD")

        if request.payout_rate is not None:
            if instrument != InstrumentType.BINARY:
                raise InvalidRequest("payout_rate is only valid for binary", code="VAL_INVALID_FIELD")
            if request.payout_rate <= 0 or request.payout_rate > 100:
                raise InvalidRequest("payout_rate must be in (0, 100]", code="VAL_INVALID_FIELD")

        if request.trigger_type is not None:
            if instrument != InstrumentType.FUTURES:
                raise InvalidRequest("trigger_type is only valid for futures", code="VAL_INVALID_FIELD")
            if request.price is None:
                raise InvalidRequest("price is required for limit/stop orders", code="VAL_MISSING_FIELD")

        if request.option_strategy is not None and instrument != InstrumentType.OPTIONS:
            raise InvalidRequest("option_strategy is only valid for options", code="VAL_INVALID_FIELD")

        if instrument == InstrumentType.BOT and not request.bot_id:
            raise InvalidRequest("bot_id is required for bot subscriptions", code="VAL_MISSING_FIELD")

        if request.direction is not None:
            word = str(request.direction).lower()
            if word not in BULLISH_WORDS | BEARISH_WORDS:
                raise InvalidRequest(f"Unsupported direction: {request.direction}", code="VAL_INVALID_FIELD")

    def resolve_direction(self, request: TradeRequest) -> Direction:
        """Normalize direction words to the instrument's vocabulary."""
        vocabulary = DIRECTION_VOCABULARY.get(request.instrument_type)
        if vocabulary is None:
            return Direction.BUY

        if request.instrument_type == InstrumentType.OPTIONS and request.option_strategy:
            bullish = request.option_strategy in (
                OptionStrategy.LONG_CALL,
                OptionStrategy.CASH_SECURED_PUT,
            )
        elif request.direction is not None:
            bullish = str(request.direction).lower() in BULLISH_WORDS
        else:
            bullish = request.action == TradeAction.BUY

        return vocabulary[0] if bullish else vocabulary[1]

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    async def _reference_price(self, request: TradeRequest) -> Optional[Decimal]:
        if request.instrument_type.is_probabilistic():
            if not request.symbol:
                return request.price
            try:
                return request.price or await self._prices.get_price(request.symbol)
            except SettlementEngineError as e:
                logger.debug(f"No reference price for {request.symbol}: {e}")
                return None

        if request.price is not None:
            return request.price
        return await self._prices.get_price(request.symbol)

    def _duration(self, request: TradeRequest) -> int:
        instrument = request.instrument_type
        if instrument in (InstrumentType.OPTIONS, InstrumentType.BINARY) and request.expiry_seconds:
            return request.expiry_seconds
        if request.duration_seconds:
            return request.duration_seconds
        if request.expiry_seconds:
            return request.expiry_seconds
        return self._config.durations.default_for(instrument.value)

    def _apply_pricing_terms(self, position: Position, request: TradeRequest) -> None:
        """Fix profit percentage / payout rate at open time."""
        profit = self._config.profit
        instrument = position.instrument_type

        if instrument in (InstrumentType.SPOT, InstrumentType.FUTURES):
            position.profit_percentage = compute_profit_percentage(
                instrument, position.duration_seconds, position.leverage, profit
            )
        elif instrument == InstrumentType.OPTIONS:
            position.profit_percentage = profit.options_percentage
            position.option_strategy = request.option_strategy or (
                OptionStrategy.LONG_CALL if position.direction.is_bullish else OptionStrategy.LONG_PUT
            )
            position.strike_price = request.strike_price
        elif instrument == InstrumentType.BINARY:
            position.payout_rate = request.payout_rate or profit.binary_payout_rate

    def _reject_funds(self, request: TradeRequest, required: Decimal, available: Decimal) -> None:
        self._emitter.insufficient_balance(
            self._config.user_id,
            required,
            available,
            symbol=request.symbol,
            meta={"instrument_type": request.instrument_type.value},
        )
        raise InsufficientFunds(
            f"Insufficient balance: required {required} {self.asset}, available {available}",
            required=required,
            available=available,
        )
