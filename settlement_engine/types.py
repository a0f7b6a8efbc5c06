"""
Settlement Engine - Types.

============================================================
PURPOSE
============================================================
All type definitions for the Settlement Engine.

- Trade requests (input, immutable)
- Positions (engine-owned, mutable until terminal)
- Notifications and activity records (output)
- Exception taxonomy

CRITICAL PRINCIPLE:
    "A position leaves OPEN exactly once."

============================================================
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from enum import Enum
from decimal import Decimal
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16].upper()}"


# ============================================================
# INSTRUMENTS
# ============================================================

class InstrumentType(Enum):
    """Instrument kinds a position can be opened on."""

    SPOT = "spot"
    FUTURES = "futures"
    OPTIONS = "options"
    BINARY = "binary"
    QUANT = "quant"
    BOT = "bot"
    STAKING = "staking"
    STRATEGY = "strategy"

    def is_probabilistic(self) -> bool:
        """Outcome comes from the probability model, not the price."""
        return self in {
            InstrumentType.QUANT,
            InstrumentType.BOT,
            InstrumentType.STAKING,
            InstrumentType.STRATEGY,
        }

    def is_price_driven(self) -> bool:
        """Outcome is decided by comparing entry and exit prices."""
        return not self.is_probabilistic()


class TradeAction(Enum):
    """Requested action."""

    BUY = "buy"
    SELL = "sell"
    STAKE = "stake"
    UNSTAKE = "unstake"
    CLAIM = "claim"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"


class Direction(Enum):
    """
    Position direction.

    Each instrument family uses its own vocabulary; all of them
    collapse to a bullish or bearish side.
    """

    BUY = "buy"
    SELL = "sell"
    LONG = "long"
    SHORT = "short"
    HIGHER = "higher"
    LOWER = "lower"

    @property
    def is_bullish(self) -> bool:
        """Whether the position profits from a rising price."""
        return self in {Direction.BUY, Direction.LONG, Direction.HIGHER}


class TriggerType(Enum):
    """Trigger for pending futures orders."""

    LIMIT = "limit"
    """Opens when price <= trigger price."""

    STOP = "stop"
    """Opens when price >= trigger price."""


class OptionStrategy(Enum):
    """Supported option strategies."""

    LONG_CALL = "long_call"
    LONG_PUT = "long_put"
    COVERED_CALL = "covered_call"
    CASH_SECURED_PUT = "cash_secured_put"


# ============================================================
# POSITION LIFECYCLE STATES
# ============================================================

class PositionStatus(Enum):
    """
    Position lifecycle state.

    State Machine:

    PENDING_ORDER ──────► CANCELLED
           │
           ▼
         OPEN ──────────► ADMIN_OVERRIDDEN
           │
           ▼
       SETTLING ────────► WON / LOST
    """

    PENDING_ORDER = "PENDING_ORDER"
    """Untriggered limit/stop order, no funds reserved."""

    OPEN = "OPEN"
    """Funds reserved, awaiting trigger or expiry."""

    SETTLING = "SETTLING"
    """Claimed by one evaluation, settlement in progress."""

    WON = "WON"
    LOST = "LOST"
    CANCELLED = "CANCELLED"
    ADMIN_OVERRIDDEN = "ADMIN_OVERRIDDEN"

    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in {
            PositionStatus.WON,
            PositionStatus.LOST,
            PositionStatus.CANCELLED,
            PositionStatus.ADMIN_OVERRIDDEN,
        }

    def is_active(self) -> bool:
        """Check if the scheduler still has work for this position."""
        return self in {
            PositionStatus.PENDING_ORDER,
            PositionStatus.OPEN,
        }


class Outcome(Enum):
    """Settlement outcome."""

    WIN = "win"
    LOSE = "lose"


class ExitReason(Enum):
    """Why a position left OPEN/PENDING_ORDER."""

    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    TIMER = "timer"
    ADMIN_OVERRIDE = "admin_override"
    OUTCOME_MODE = "outcome_mode"
    USER_CANCELLED = "user_cancelled"
    INSUFFICIENT_FUNDS = "insufficient_funds"


class OutcomeMode(Enum):
    """Per-user administrative outcome mode."""

    DEFAULT = "default"
    FORCE_WIN = "force_win"
    FORCE_LOSS = "force_loss"


class OutcomeModeScope(Enum):
    """Which positions an outcome mode applies to."""

    ALL_TRADES = "all_trades"
    NEW_TRADES = "new_trades"


# ============================================================
# EVENTS
# ============================================================

class NotificationKind(Enum):
    """Notification kinds published by the engine."""

    TRADE_PLACED = "trade_placed"
    TRADE_WON = "trade_won"
    TRADE_LOST = "trade_lost"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    STAKE_INITIATED = "stake_initiated"
    STAKE_COMPLETED = "stake_completed"


class ActivityStatus(Enum):
    """Status shown on an activity record."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    SUCCESS = "success"
    ERROR = "error"


# ============================================================
# TRADE REQUEST
# ============================================================

@dataclass(frozen=True)
class TradeRequest:
    """
    A request to open a position.

    This is the INPUT to the Settlement Engine.
    """

    instrument_type: InstrumentType
    """Instrument kind."""

    action: TradeAction
    """Requested action."""

    symbol: str = ""
    """Trading symbol (e.g., BTC)."""

    amount: Decimal = Decimal("0")
    """Notional, stake, or contract quantity (futures/options)."""

    price: Optional[Decimal] = None
    """Reference price, or trigger price for pending futures orders."""

    leverage: Optional[Decimal] = None
    """Leverage (futures only, >= 1)."""

    duration_seconds: Optional[int] = None
    """Position lifetime."""

    stop_loss: Optional[Decimal] = None
    """Absolute stop-loss price level."""

    take_profit: Optional[Decimal] = None
    """Absolute take-profit price level."""

    direction: Optional[str] = None
    """buy/sell, long/short, higher/lower or up/down."""

    expiry_seconds: Optional[int] = None
    """Expiry for options and binary trades."""

    payout_rate: Optional[Decimal] = None
    """Payout percentage (binary only)."""

    bot_id: Optional[str] = None
    pool_id: Optional[str] = None

    trigger_type: Optional[TriggerType] = None
    """Limit/stop trigger for pending futures orders."""

    option_strategy: Optional[OptionStrategy] = None
    """Option strategy (options only)."""

    strike_price: Optional[Decimal] = None
    """Option strike, defaults to the entry price."""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeRequest":
        """
        Build a request from loosely typed input (HTTP bodies, scripts).

        Raises:
            InvalidRequest: If an enum or number field cannot be parsed
        """
        def dec(key: str) -> Optional[Decimal]:
            value = data.get(key)
            if value is None or value == "":
                return None
            try:
                result = Decimal(str(value))
            except ArithmeticError as e:
                raise InvalidRequest(f"{key} must be numeric", code="VAL_INVALID_FIELD") from e
            if not result.is_finite():
                raise InvalidRequest(f"{key} must be a finite number", code="VAL_INVALID_FIELD")
            return result

        def integer(key: str) -> Optional[int]:
            value = data.get(key)
            if value is None or value == "":
                return None
            if isinstance(value, float) and not value.is_integer():
                raise InvalidRequest(f"{key} must be a whole number", code="VAL_INVALID_FIELD")
            try:
                return int(value)
            except (TypeError, ValueError, OverflowError) as e:
                raise InvalidRequest(f"{key} must be an integer", code="VAL_INVALID_FIELD") from e

        def enum(enum_cls, key: str, required: bool = False):
            value = data.get(key)
            if value is None or value == "":
                if required:
                    raise InvalidRequest(f"{key} is required", code="VAL_MISSING_FIELD")
                return None
            try:
                return enum_cls(str(value).lower())
            except ValueError as e:
                raise InvalidRequest(f"Unsupported {key}: {value}", code="VAL_INVALID_FIELD") from e

        return cls(
            instrument_type=enum(InstrumentType, "instrument_type", required=True),
            action=enum(TradeAction, "action", required=True),
            symbol=str(data.get("symbol") or ""),
            amount=dec("amount") or Decimal("0"),
            price=dec("price"),
            leverage=dec("leverage"),
            duration_seconds=integer("duration_seconds"),
            stop_loss=dec("stop_loss"),
            take_profit=dec("take_profit"),
            direction=data.get("direction"),
            expiry_seconds=integer("expiry_seconds"),
            payout_rate=dec("payout_rate"),
            bot_id=data.get("bot_id"),
            pool_id=data.get("pool_id"),
            trigger_type=enum(TriggerType, "trigger_type"),
            option_strategy=enum(OptionStrategy, "option_strategy"),
            strike_price=dec("strike_price"),
        )


# ============================================================
# POSITION
# ============================================================

@dataclass
class Position:
    """
    Engine-owned position with full lifecycle tracking.

    Mutated only by the scheduler or an admin override, and only
    through the store's compare-and-set.
    """

    # Identifiers
    id: str = field(default_factory=lambda: _new_id("POS"))
    user_id: str = ""

    # Parameters
    instrument_type: InstrumentType = InstrumentType.SPOT
    action: TradeAction = TradeAction.BUY
    symbol: str = ""
    direction: Direction = Direction.BUY
    amount: Decimal = Decimal("0")
    leverage: Decimal = Decimal("1")
    duration_seconds: int = 0

    # Funds
    entry_price: Optional[Decimal] = None
    reserved_funds: Decimal = Decimal("0")
    profit_percentage: Optional[Decimal] = None
    payout_rate: Optional[Decimal] = None

    # Triggers
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    trigger_type: Optional[TriggerType] = None
    trigger_price: Optional[Decimal] = None

    # Options
    option_strategy: Optional[OptionStrategy] = None
    strike_price: Optional[Decimal] = None

    # Subscriptions
    bot_id: Optional[str] = None
    pool_id: Optional[str] = None

    # State
    status: PositionStatus = PositionStatus.OPEN
    outcome: Optional[Outcome] = None
    exit_reason: Optional[ExitReason] = None
    exit_price: Optional[Decimal] = None
    payout: Optional[Decimal] = None
    last_price: Optional[Decimal] = None

    # Timestamps
    created_at: datetime = field(default_factory=_utcnow)
    opened_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal()

    @property
    def profit(self) -> Decimal:
        """Realized profit (negative for a loss). Zero until settled."""
        if not self.is_terminal or self.payout is None:
            return Decimal("0")
        return self.payout - self.reserved_funds

    def time_remaining(self, now: datetime) -> Optional[float]:
        """Seconds until expiry, never negative."""
        if self.expires_at is None:
            return None
        return max(0.0, (self.expires_at - now).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        def s(value):
            return str(value) if value is not None else None

        def ts(value):
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "user_id": self.user_id,
            "instrument_type": self.instrument_type.value,
            "action": self.action.value,
            "symbol": self.symbol,
            "direction": self.direction.value,
            "amount": str(self.amount),
            "leverage": str(self.leverage),
            "duration_seconds": self.duration_seconds,
            "entry_price": s(self.entry_price),
            "reserved_funds": str(self.reserved_funds),
            "profit_percentage": s(self.profit_percentage),
            "payout_rate": s(self.payout_rate),
            "stop_loss": s(self.stop_loss),
            "take_profit": s(self.take_profit),
            "trigger_type": self.trigger_type.value if self.trigger_type else None,
            "trigger_price": s(self.trigger_price),
            "option_strategy": self.option_strategy.value if self.option_strategy else None,
            "strike_price": s(self.strike_price),
            "bot_id": self.bot_id,
            "pool_id": self.pool_id,
            "status": self.status.value,
            "outcome": self.outcome.value if self.outcome else None,
            "exit_reason": self.exit_reason.value if self.exit_reason else None,
            "exit_price": s(self.exit_price),
            "payout": s(self.payout),
            "last_price": s(self.last_price),
            "created_at": ts(self.created_at),
            "opened_at": ts(self.opened_at),
            "expires_at": ts(self.expires_at),
            "settled_at": ts(self.settled_at),
        }


# ============================================================
# OUTPUT RECORDS
# ============================================================

@dataclass
class Notification:
    """User-facing notification."""

    kind: NotificationKind
    title: str
    message: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: _new_id("NTF"))
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def is_admin_action(self) -> bool:
        return bool(self.payload.get("admin_override"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "title": self.title,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }


@dataclass
class ActivityRecord:
    """Audit/activity log entry."""

    user_id: str
    category: str
    action: str
    description: str
    status: ActivityStatus
    amount: Optional[Decimal] = None
    symbol: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: _new_id("ACT"))
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "category": self.category,
            "action": self.action,
            "description": self.description,
            "amount": str(self.amount) if self.amount is not None else None,
            "symbol": self.symbol,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "meta": self.meta,
        }


@dataclass
class SubmitResult:
    """
    Result of a trade submission.

    Exactly one of `position` / `reason` is set.
    """

    position: Optional[Position] = None
    """Accepted position."""

    reason: Optional[str] = None
    """Rejection reason shown to the user."""

    error_code: Optional[str] = None
    """Registry error code for rejections."""

    @property
    def accepted(self) -> bool:
        return self.position is not None


@dataclass
class HistoryFilter:
    """Filter for position history queries."""

    instrument_type: Optional[InstrumentType] = None
    status: Optional[PositionStatus] = None
    symbol: Optional[str] = None
    since: Optional[datetime] = None
    limit: Optional[int] = None

    def matches(self, position: Position) -> bool:
        if self.instrument_type and position.instrument_type != self.instrument_type:
            return False
        if self.status and position.status != self.status:
            return False
        if self.symbol and position.symbol != self.symbol:
            return False
        if self.since and position.created_at < self.since:
            return False
        return True


@dataclass
class TradeStatistics:
    """Aggregate win/loss statistics."""

    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    net_profit: Decimal = Decimal("0")
    active_trades: int = 0
    by_type: Dict[str, "TradeStatistics"] = field(default_factory=dict)

    @property
    def win_rate(self) -> Decimal:
        """Win rate in percent over settled trades."""
        settled = self.wins + self.losses
        if settled == 0:
            return Decimal("0")
        return (Decimal(self.wins) / Decimal(settled) * 100).quantize(Decimal("0.01"))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "total_trades": self.total_trades,
            "wins": self.wins,
            "losses": self.losses,
            "net_profit": str(self.net_profit),
            "win_rate": str(self.win_rate),
            "active_trades": self.active_trades,
        }
        if self.by_type:
            data["by_type"] = {k: v.to_dict() for k, v in self.by_type.items()}
        return data


# ============================================================
# EXCEPTIONS
# ============================================================

class SettlementEngineError(Exception):
    """Base exception for the Settlement Engine."""

    default_code = "INT_UNEXPECTED"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code or self.default_code


class InvalidRequest(SettlementEngineError):
    """Malformed or missing request fields."""

    default_code = "VAL_INVALID_REQUEST"


class InsufficientFunds(SettlementEngineError):
    """Reservation would exceed the available balance."""

    default_code = "VAL_INSUFFICIENT_BALANCE"

    def __init__(
        self,
        message: str,
        required: Decimal = Decimal("0"),
        available: Decimal = Decimal("0"),
    ):
        super().__init__(message)
        self.required = required
        self.available = available


class PositionNotFound(SettlementEngineError):
    """No position with the given id."""

    default_code = "POS_NOT_FOUND"


class PositionAlreadyTerminal(SettlementEngineError):
    """Position has already left its active state."""

    default_code = "POS_ALREADY_TERMINAL"


class PriceUnavailable(SettlementEngineError):
    """No current or last-known price for a symbol."""

    default_code = "PRC_UNAVAILABLE"


class LedgerError(SettlementEngineError):
    """Ledger rejected a credit or reservation."""

    default_code = "LED_OPERATION_FAILED"


class PersistenceError(SettlementEngineError):
    """Repository read/write failed."""

    default_code = "PER_WRITE_FAILED"


ACTIVE_STATUSES: List[PositionStatus] = [
    PositionStatus.PENDING_ORDER,
    PositionStatus.OPEN,
    PositionStatus.SETTLING,
]
