"""
Settlement Engine - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for settlement persistence.

TABLES:
- settlement_positions: Position records (all states)
- settlement_activities: Activity log entries

Positions survive restarts; expired ones settle on load
from their stored last price.

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ============================================================
# BASE
# ============================================================

class Base(DeclarativeBase):
    """Declarative base for settlement models."""

    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


# ============================================================
# POSITION MODEL
# ============================================================

class PositionModel(Base):
    """
    Persisted position.

    One row per position, updated in place as it moves through
    its lifecycle.
    """

    __tablename__ = "settlement_positions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Parameters
    instrument_type: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    symbol: Mapped[str] = mapped_column(String(32), default="")
    direction: Mapped[str] = mapped_column(String(8), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    leverage: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("1"))
    duration_seconds: Mapped[int] = mapped_column(Integer, default=0)

    # Funds
    entry_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    reserved_funds: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=Decimal("0"))
    profit_percentage: Mapped[Optional[Decimal]] = mapped_column(Numeric(16, 8))
    payout_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(16, 8))

    # Triggers
    stop_loss: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    take_profit: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    trigger_type: Mapped[Optional[str]] = mapped_column(String(8))
    trigger_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))

    # Options / subscriptions
    option_strategy: Mapped[Optional[str]] = mapped_column(String(32))
    strike_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    bot_id: Mapped[Optional[str]] = mapped_column(String(64))
    pool_id: Mapped[Optional[str]] = mapped_column(String(64))

    # State
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    outcome: Mapped[Optional[str]] = mapped_column(String(8))
    exit_reason: Mapped[Optional[str]] = mapped_column(String(32))
    exit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    payout: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    last_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    opened_at: Mapped[Optional[datetime]] = mapped_column()
    expires_at: Mapped[Optional[datetime]] = mapped_column()
    settled_at: Mapped[Optional[datetime]] = mapped_column(index=True)

    __table_args__ = (
        Index("ix_settlement_positions_user_status", "user_id", "status"),
    )


# ============================================================
# ACTIVITY MODEL
# ============================================================

class ActivityRecordModel(Base):
    """Persisted activity log entry."""

    __tablename__ = "settlement_activities"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    symbol: Mapped[Optional[str]] = mapped_column(String(32))
    meta: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    timestamp: Mapped[datetime] = mapped_column(nullable=False, index=True)
