"""
Settlement Engine - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the Settlement Engine.

CRITICAL CONSTRAINTS:
- Every OPEN position has a bounded lifetime
- Profit percentages are fixed at open time
- Deterministic behavior under test configuration

============================================================
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv


# ============================================================
# PROFIT CONFIGURATION
# ============================================================

@dataclass
class ProfitConfig:
    """
    Profit percentage rules applied when a position opens.

    spot:    base + duration_minutes * per_minute
    futures: base + duration_minutes * per_minute + leverage * leverage_rate
    """

    base_percentage: Decimal = Decimal("5.0")
    """Base profit percentage."""

    per_minute_rate: Decimal = Decimal("0.5")
    """Added per minute of duration."""

    leverage_rate: Decimal = Decimal("0.1")
    """Added per unit of leverage (futures)."""

    options_percentage: Decimal = Decimal("200")
    """Nominal options profit (2x premium), used by overrides and take-profit."""

    binary_payout_rate: Decimal = Decimal("85")
    """Default binary payout rate."""


# ============================================================
# RESERVATION CONFIGURATION
# ============================================================

@dataclass
class ReservationConfig:
    """Fund reservation rules."""

    settlement_asset: str = "USDT"
    """Asset all reservations and credits use."""

    options_premium_rate: Decimal = Decimal("0.10")
    """Premium as a fraction of underlying value."""

    max_leverage: Decimal = Decimal("125")
    """Maximum futures leverage."""


# ============================================================
# DURATION CONFIGURATION
# ============================================================

@dataclass
class DurationConfig:
    """
    Default lifetimes, in seconds, when a request omits one.

    SAFETY: no position may stay OPEN indefinitely.
    """

    defaults: Dict[str, int] = field(default_factory=lambda: {
        "spot": 300,
        "futures": 3600,
        "options": 300,
        "binary": 60,
        "quant": 86400,
        "bot": 86400,
        "staking": 7 * 86400,
        "strategy": 3600,
    })

    max_duration_seconds: int = 365 * 86400
    """Upper bound for any requested duration."""

    def default_for(self, instrument: str) -> int:
        return self.defaults.get(instrument, 300)


# ============================================================
# PROBABILITY CONFIGURATION
# ============================================================

@dataclass
class ProbabilityConfig:
    """
    Probability model for quant/bot/staking/strategy positions.

    These are NOT price-driven.
    """

    win_rates: Dict[str, Decimal] = field(default_factory=lambda: {
        "quant": Decimal("0.60"),
        "bot": Decimal("0.60"),
        "staking": Decimal("0.90"),
        "strategy": Decimal("0.65"),
    })
    """Probability of a win per instrument."""

    win_percentage_ranges: Dict[str, Tuple[Decimal, Decimal]] = field(default_factory=lambda: {
        "quant": (Decimal("0.10"), Decimal("0.30")),
        "bot": (Decimal("0.10"), Decimal("0.30")),
        "staking": (Decimal("0.01"), Decimal("0.13")),
        "strategy": (Decimal("0.05"), Decimal("0.20")),
    })
    """Profit fraction range drawn on a win."""

    loss_payout_range: Tuple[Decimal, Decimal] = (Decimal("0.85"), Decimal("0.95"))
    """Fraction of the stake returned on a loss."""

    seed: Optional[int] = None
    """Random seed (None for non-deterministic)."""


# ============================================================
# SCHEDULER CONFIGURATION
# ============================================================

@dataclass
class SchedulerConfig:
    """Settlement scheduler cadence."""

    tick_interval_seconds: float = 1.0
    """Interval between settlement ticks."""

    cleanup_interval_seconds: float = 3600.0
    """Interval between history cleanup passes."""

    settle_expired_on_load: bool = True
    """Settle positions that expired while the process was down."""


# ============================================================
# HISTORY CONFIGURATION
# ============================================================

@dataclass
class HistoryConfig:
    """Retention for positions, activities and notifications."""

    max_activities_per_user: int = 20
    max_notifications: int = 100
    max_position_history: int = 1000
    retention_days: int = 7


# ============================================================
# PERSISTENCE CONFIGURATION
# ============================================================

@dataclass
class PersistenceConfig:
    """Database persistence."""

    enabled: bool = True
    database_url: str = "sqlite+aiosqlite:///settlement.db"
    echo: bool = False


# ============================================================
# ALERTING CONFIGURATION
# ============================================================

@dataclass
class AlertingConfig:
    """Telegram notification forwarding."""

    enabled: bool = False
    telegram_bot_token_env: str = "TELEGRAM_BOT_TOKEN"
    telegram_chat_id_env: str = "TELEGRAM_CHAT_ID"
    min_interval_seconds: float = 1.0
    max_alerts_per_minute: int = 20


# ============================================================
# API CONFIGURATION
# ============================================================

@dataclass
class ApiConfig:
    """HTTP surface."""

    host: str = "127.0.0.1"
    port: int = 8080


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class SettlementEngineConfig:
    """
    Master configuration for the Settlement Engine.
    """

    profit: ProfitConfig = field(default_factory=ProfitConfig)
    reservation: ReservationConfig = field(default_factory=ReservationConfig)
    durations: DurationConfig = field(default_factory=DurationConfig)
    probability: ProbabilityConfig = field(default_factory=ProbabilityConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    alerting: AlertingConfig = field(default_factory=AlertingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    user_id: str = "default"
    """Owner of the single ledger handle."""

    initial_balance: Decimal = Decimal("10000")
    """Starting balance for the in-memory ledger."""

    @classmethod
    def for_testing(cls) -> "SettlementEngineConfig":
        """Get configuration for testing."""
        return cls(
            probability=ProbabilityConfig(seed=42),
            persistence=PersistenceConfig(enabled=False, database_url="sqlite+aiosqlite:///:memory:"),
            alerting=AlertingConfig(enabled=False),
            scheduler=SchedulerConfig(tick_interval_seconds=0.01),
        )

    @classmethod
    def for_production(cls) -> "SettlementEngineConfig":
        """Get configuration for production."""
        return cls(
            persistence=PersistenceConfig(enabled=True),
            alerting=AlertingConfig(enabled=True),
        )

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "SettlementEngineConfig":
        """
        Build configuration from environment variables.

        Reads a .env file first when present.
        """
        load_dotenv(env_file)
        config = cls()

        config.user_id = os.getenv("SETTLEMENT_USER_ID", config.user_id)
        config.initial_balance = Decimal(os.getenv("SETTLEMENT_INITIAL_BALANCE", str(config.initial_balance)))
        config.reservation.settlement_asset = os.getenv(
            "SETTLEMENT_ASSET", config.reservation.settlement_asset
        )
        config.scheduler.tick_interval_seconds = float(
            os.getenv("SETTLEMENT_TICK_SECONDS", config.scheduler.tick_interval_seconds)
        )
        config.history.retention_days = int(
            os.getenv("SETTLEMENT_RETENTION_DAYS", config.history.retention_days)
        )
        config.persistence.database_url = os.getenv("DATABASE_URL", config.persistence.database_url)
        config.persistence.enabled = os.getenv("SETTLEMENT_PERSISTENCE", "true").lower() == "true"
        config.alerting.enabled = os.getenv("SETTLEMENT_TELEGRAM_ALERTS", "false").lower() == "true"
        config.api.host = os.getenv("SETTLEMENT_API_HOST", config.api.host)
        config.api.port = int(os.getenv("SETTLEMENT_API_PORT", config.api.port))

        seed = os.getenv("SETTLEMENT_RANDOM_SEED")
        if seed:
            config.probability.seed = int(seed)

        return config
