"""
Settlement Engine - Repository.

============================================================
PURPOSE
============================================================
Database operations for settlement persistence.

RESPONSIBILITIES:
- Save/load positions
- Save/load activity records
- Query settled history
- Prune settled positions past retention

CRITICAL REQUIREMENTS:
- Each batch is one transaction
- Failures surface as PersistenceError

============================================================
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import and_, delete, desc, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import ActivityRecordModel, Base, PositionModel
from .types import (
    ACTIVE_STATUSES,
    ActivityRecord,
    ActivityStatus,
    Direction,
    ExitReason,
    InstrumentType,
    OptionStrategy,
    Outcome,
    PersistenceError,
    Position,
    PositionStatus,
    TradeAction,
    TriggerType,
)


logger = logging.getLogger(__name__)


TERMINAL_STATUSES = [s.value for s in PositionStatus if s.is_terminal()]


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _enum(enum_cls, value):
    return enum_cls(value) if value is not None else None


def create_engine_and_session_factory(database_url: str, echo: bool = False):
    """
    Create an async engine and session factory.

    Returns:
        Tuple of (AsyncEngine, async_sessionmaker)
    """
    engine = create_async_engine(database_url, echo=echo, future=True)
    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    logger.info(f"Created settlement database engine for: {database_url.split('@')[-1]}")
    return engine, factory


# ============================================================
# POSITION REPOSITORY
# ============================================================

class PositionRepository:
    """
    Repository for settlement data persistence.

    Each public method runs in its own session.
    """

    def __init__(self, session_factory: async_sessionmaker, engine: Optional[AsyncEngine] = None):
        self._session_factory = session_factory
        self._engine = engine

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> "PositionRepository":
        engine, factory = create_engine_and_session_factory(database_url, echo)
        return cls(factory, engine)

    async def create_tables(self) -> None:
        """Create tables if they do not exist."""
        if self._engine is None:
            raise PersistenceError("No engine bound to repository")
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    # --------------------------------------------------------
    # POSITION OPERATIONS
    # --------------------------------------------------------

    async def save_position(self, position: Position) -> None:
        """Insert or update one position."""
        await self.save_positions([position])

    async def save_positions(self, positions: Iterable[Position]) -> int:
        """
        Insert or update positions in one transaction.

        Returns:
            Number of rows written
        """
        models = [self._position_to_model(p) for p in positions]
        if not models:
            return 0

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    for model in models:
                        await session.merge(model)
        except SQLAlchemyError as e:
            logger.error(f"Failed to save {len(models)} positions: {e}")
            raise PersistenceError(f"Failed to save positions: {e}") from e

        logger.debug(f"Saved {len(models)} positions")
        return len(models)

    async def get_position(self, position_id: str) -> Optional[Position]:
        try:
            async with self._session_factory() as session:
                model = await session.get(PositionModel, position_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load position {position_id}: {e}", code="PER_READ_FAILED") from e

        return self._model_to_position(model) if model else None

    async def load_active_positions(self) -> List[Position]:
        """Positions still pending, open or settling."""
        stmt = select(PositionModel).where(
            PositionModel.status.in_([s.value for s in ACTIVE_STATUSES])
        ).order_by(PositionModel.created_at)
        return await self._load_positions(stmt)

    async def load_history(
        self,
        limit: int = 1000,
        since: Optional[datetime] = None,
        user_id: Optional[str] = None,
    ) -> List[Position]:
        """Terminal positions, newest first."""
        conditions = [PositionModel.status.in_(TERMINAL_STATUSES)]
        if since is not None:
            conditions.append(PositionModel.settled_at >= since)
        if user_id is not None:
            conditions.append(PositionModel.user_id == user_id)

        stmt = (
            select(PositionModel)
            .where(and_(*conditions))
            .order_by(desc(PositionModel.settled_at))
            .limit(limit)
        )
        return await self._load_positions(stmt)

    async def delete_settled_before(self, cutoff: datetime) -> int:
        """
        Delete terminal positions settled before `cutoff`.

        Returns:
            Number of rows deleted
        """
        stmt = delete(PositionModel).where(
            and_(
                PositionModel.status.in_(TERMINAL_STATUSES),
                PositionModel.settled_at < cutoff,
            )
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to prune positions: {e}") from e

        count = result.rowcount or 0
        if count:
            logger.info(f"Deleted {count} settled positions older than {cutoff.isoformat()}")
        return count

    # --------------------------------------------------------
    # ACTIVITY OPERATIONS
    # --------------------------------------------------------

    async def save_activity(self, record: ActivityRecord) -> None:
        await self.save_activities([record])

    async def save_activities(self, records: Iterable[ActivityRecord]) -> int:
        models = [self._activity_to_model(r) for r in records]
        if not models:
            return 0

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    for model in models:
                        await session.merge(model)
        except SQLAlchemyError as e:
            logger.error(f"Failed to save {len(models)} activity records: {e}")
            raise PersistenceError(f"Failed to save activities: {e}") from e

        return len(models)

    async def load_activities(self, user_id: str, limit: int = 20) -> List[ActivityRecord]:
        """Most recent activity records for a user, newest first."""
        stmt = (
            select(ActivityRecordModel)
            .where(ActivityRecordModel.user_id == user_id)
            .order_by(desc(ActivityRecordModel.timestamp))
            .limit(limit)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                models = result.scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load activities: {e}", code="PER_READ_FAILED") from e

        return [self._model_to_activity(m) for m in models]

    # --------------------------------------------------------
    # MAPPING
    # --------------------------------------------------------

    async def _load_positions(self, stmt) -> List[Position]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                models = result.scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load positions: {e}", code="PER_READ_FAILED") from e

        return [self._model_to_position(m) for m in models]

    @staticmethod
    def _position_to_model(position: Position) -> PositionModel:
        return PositionModel(
            id=position.id,
            user_id=position.user_id,
            instrument_type=position.instrument_type.value,
            action=position.action.value,
            symbol=position.symbol,
            direction=position.direction.value,
            amount=position.amount,
            leverage=position.leverage,
            duration_seconds=position.duration_seconds,
            entry_price=position.entry_price,
            reserved_funds=position.reserved_funds,
            profit_percentage=position.profit_percentage,
            payout_rate=position.payout_rate,
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
            trigger_type=position.trigger_type.value if position.trigger_type else None,
            trigger_price=position.trigger_price,
            option_strategy=position.option_strategy.value if position.option_strategy else None,
            strike_price=position.strike_price,
            bot_id=position.bot_id,
            pool_id=position.pool_id,
            status=position.status.value,
            outcome=position.outcome.value if position.outcome else None,
            exit_reason=position.exit_reason.value if position.exit_reason else None,
            exit_price=position.exit_price,
            payout=position.payout,
            last_price=position.last_price,
            created_at=position.created_at,
            opened_at=position.opened_at,
            expires_at=position.expires_at,
            settled_at=position.settled_at,
        )

    @staticmethod
    def _model_to_position(model: PositionModel) -> Position:
        return Position(
            id=model.id,
            user_id=model.user_id,
            instrument_type=InstrumentType(model.instrument_type),
            action=TradeAction(model.action),
            symbol=model.symbol or "",
            direction=Direction(model.direction),
            amount=model.amount,
            leverage=model.leverage,
            duration_seconds=model.duration_seconds,
            entry_price=model.entry_price,
            reserved_funds=model.reserved_funds,
            profit_percentage=model.profit_percentage,
            payout_rate=model.payout_rate,
            stop_loss=model.stop_loss,
            take_profit=model.take_profit,
            trigger_type=_enum(TriggerType, model.trigger_type),
            trigger_price=model.trigger_price,
            option_strategy=_enum(OptionStrategy, model.option_strategy),
            strike_price=model.strike_price,
            bot_id=model.bot_id,
            pool_id=model.pool_id,
            status=PositionStatus(model.status),
            outcome=_enum(Outcome, model.outcome),
            exit_reason=_enum(ExitReason, model.exit_reason),
            exit_price=model.exit_price,
            payout=model.payout,
            last_price=model.last_price,
            created_at=_aware(model.created_at),
            opened_at=_aware(model.opened_at),
            expires_at=_aware(model.expires_at),
            settled_at=_aware(model.settled_at),
        )

    @staticmethod
    def _activity_to_model(record: ActivityRecord) -> ActivityRecordModel:
        return ActivityRecordModel(
            id=record.id,
            user_id=record.user_id,
            category=record.category,
            action=record.action,
            description=record.description,
            status=record.status.value,
            amount=record.amount,
            symbol=record.symbol,
            meta=record.meta,
            timestamp=record.timestamp,
        )

    @staticmethod
    def _model_to_activity(model: ActivityRecordModel) -> ActivityRecord:
        return ActivityRecord(
            id=model.id,
            user_id=model.user_id,
            category=model.category,
            action=model.action,
            description=model.description or "",
            status=ActivityStatus(model.status),
            amount=model.amount,
            symbol=model.symbol,
            meta=dict(model.meta or {}),
            timestamp=_aware(model.timestamp),
        )
