"""
Settlement Engine Package.

============================================================
PURPOSE
============================================================
Opens time-bounded speculative positions against one internal
cash balance and settles each one when its timer or a price
trigger fires.

CRITICAL PRINCIPLE:
    "A position leaves OPEN exactly once."

AUTHORITY BOUNDARIES:
    CAN:
        - Reserve funds for new positions
        - Settle positions and credit payouts
        - Cancel untriggered limit/stop orders

    MUST NOT:
        - Settle a position twice
        - Reserve funds for an untriggered order
        - Close an OPEN position early on the user's behalf

============================================================
MODULES
============================================================
- types: Requests, positions, events, exceptions
- errors: Error codes
- config: Configuration
- clock: Time source
- ledger: Balance ledger
- price_source: Reference prices
- outcome: Win/loss rules and probability model
- state_machine: Position lifecycle rules
- store: Position store and activity log
- events: Notifications and activity records
- router: Trade request router
- scheduler: Settlement scheduler
- engine: Facade
- models: ORM models for persistence
- repository: Database operations
- alerting: Telegram forwarding
- api: HTTP API

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    # Enums
    InstrumentType,
    TradeAction,
    Direction,
    TriggerType,
    OptionStrategy,
    PositionStatus,
    Outcome,
    ExitReason,
    OutcomeMode,
    OutcomeModeScope,
    NotificationKind,
    ActivityStatus,
    # Dataclasses
    TradeRequest,
    Position,
    Notification,
    ActivityRecord,
    SubmitResult,
    HistoryFilter,
    TradeStatistics,
    # Exceptions
    SettlementEngineError,
    InvalidRequest,
    InsufficientFunds,
    PositionNotFound,
    PositionAlreadyTerminal,
    PriceUnavailable,
    LedgerError,
    PersistenceError,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorCodeInfo,
    ERROR_CODES,
    get_error_info,
    is_retryable,
)

# ============================================================
# CONFIG
# ============================================================
from .config import SettlementEngineConfig

# ============================================================
# COLLABORATORS
# ============================================================
from .clock import ClockProtocol, SystemClock, MockClock
from .ledger import BalanceLedger, InMemoryBalanceLedger
from .price_source import (
    PriceSource,
    StaticPriceSource,
    CallablePriceSource,
    LastKnownPriceSource,
)

# ============================================================
# ENGINE
# ============================================================
from .outcome import (
    OutcomeCalculator,
    ProbabilityModel,
    RandomProbabilityModel,
    FixedProbabilityModel,
)
from .store import PositionStore, ActivityLog
from .events import EventEmitter
from .router import TradeRequestRouter
from .scheduler import SettlementScheduler, OutcomeModeSetting
from .engine import SettlementEngine


__all__ = [
    # Types
    "InstrumentType",
    "TradeAction",
    "Direction",
    "TriggerType",
    "OptionStrategy",
    "PositionStatus",
    "Outcome",
    "ExitReason",
    "OutcomeMode",
    "OutcomeModeScope",
    "NotificationKind",
    "ActivityStatus",
    "TradeRequest",
    "Position",
    "Notification",
    "ActivityRecord",
    "SubmitResult",
    "HistoryFilter",
    "TradeStatistics",
    # Exceptions
    "SettlementEngineError",
    "InvalidRequest",
    "InsufficientFunds",
    "PositionNotFound",
    "PositionAlreadyTerminal",
    "PriceUnavailable",
    "LedgerError",
    "PersistenceError",
    # Errors
    "ErrorCategory",
    "ErrorSeverity",
    "ErrorCodeInfo",
    "ERROR_CODES",
    "get_error_info",
    "is_retryable",
    # Config
    "SettlementEngineConfig",
    # Collaborators
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "BalanceLedger",
    "InMemoryBalanceLedger",
    "PriceSource",
    "StaticPriceSource",
    "CallablePriceSource",
    "LastKnownPriceSource",
    # Engine
    "OutcomeCalculator",
    "ProbabilityModel",
    "RandomProbabilityModel",
    "FixedProbabilityModel",
    "PositionStore",
    "ActivityLog",
    "EventEmitter",
    "TradeRequestRouter",
    "SettlementScheduler",
    "OutcomeModeSetting",
    "SettlementEngine",
]
