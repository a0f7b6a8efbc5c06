"""
Settlement Engine - Engine.

============================================================
PURPOSE
============================================================
Main entry point for timed-settlement trading.

RESPONSIBILITIES:
- Wire router, scheduler, store, emitter and calculator
- Admin override and pending-order cancellation
- Statistics and read-only views
- Persistence (load on start, flush after every change)

AUTHORITY:
- CAN: Open positions, settle them, credit payouts
- CANNOT: Close an OPEN position early on the user's behalf
- CANNOT: Refund a position outside settlement

============================================================
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from .alerting import TelegramNotifier
from .clock import ClockProtocol, SystemClock
from .config import SettlementEngineConfig
from .events import EventEmitter, Subscriber
from .ledger import BalanceLedger
from .outcome import OutcomeCalculator, ProbabilityModel, RandomProbabilityModel
from .price_source import CallablePriceSource, LastKnownPriceSource, PriceSource
from .repository import PositionRepository
from .router import TradeRequestRouter
from .scheduler import OutcomeModeSetting, SettlementScheduler, TickResult
from .store import ActivityLog, PositionStore
from .types import (
    ActivityRecord,
    ExitReason,
    HistoryFilter,
    InstrumentType,
    InvalidRequest,
    Notification,
    Outcome,
    OutcomeMode,
    OutcomeModeScope,
    PersistenceError,
    Position,
    PositionAlreadyTerminal,
    PositionStatus,
    SubmitResult,
    TradeRequest,
    TradeStatistics,
)


logger = logging.getLogger(__name__)


# ============================================================
# SETTLEMENT ENGINE
# ============================================================

class SettlementEngine:
    """
    Facade over the settlement components.

    Usage:
        engine = SettlementEngine(ledger, StaticPriceSource(prices))
        await engine.start()
        result = await engine.submit(TradeRequest(...))
        ...
        await engine.stop()
    """

    def __init__(
        self,
        ledger: BalanceLedger,
        price_source: Union[PriceSource, Any],
        config: Optional[SettlementEngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        probability_model: Optional[ProbabilityModel] = None,
        repository: Optional[PositionRepository] = None,
        notifier: Optional[TelegramNotifier] = None,
    ):
        """
        Initialize the engine.

        Args:
            ledger: Balance ledger (reserve/credit/available)
            price_source: PriceSource or a plain `get_price(symbol)` callable
            config: Engine configuration
            clock: Time source
            probability_model: Outcome source for probabilistic instruments
            repository: Persistence; None keeps everything in memory
            notifier: Telegram forwarding for notifications
        """
        self._config = config or SettlementEngineConfig()
        self._ledger = ledger
        self._clock = clock or SystemClock()
        self._repository = repository
        self._notifier = notifier

        if not isinstance(price_source, PriceSource):
            price_source = CallablePriceSource(price_source)
        if not isinstance(price_source, LastKnownPriceSource):
            price_source = LastKnownPriceSource(price_source)
        self._prices = price_source

        history = self._config.history
        self._store = PositionStore(max_history=history.max_position_history)
        self._activity_log = ActivityLog(max_per_user=history.max_activities_per_user)
        self._emitter = EventEmitter(
            self._activity_log,
            settlement_asset=self._config.reservation.settlement_asset,
            max_notifications=history.max_notifications,
        )
        self._calculator = OutcomeCalculator(
            probability_model or RandomProbabilityModel(self._config.probability)
        )
        self._router = TradeRequestRouter(
            store=self._store,
            ledger=ledger,
            price_source=self._prices,
            emitter=self._emitter,
            clock=self._clock,
            config=self._config,
        )
        self._scheduler = SettlementScheduler(
            store=self._store,
            ledger=ledger,
            price_source=self._prices,
            calculator=self._calculator,
            emitter=self._emitter,
            clock=self._clock,
            config=self._config,
            on_tick=self._after_tick,
            on_cleanup=self._after_cleanup,
        )

        if notifier is not None:
            self._emitter.subscribe(notifier)

        self._loaded = False
        self._running = False

        self._stats = {
            "submitted": 0,
            "accepted": 0,
            "rejected": 0,
            "overrides": 0,
            "cancelled": 0,
            "persistence_errors": 0,
        }

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def config(self) -> SettlementEngineConfig:
        return self._config

    @property
    def store(self) -> PositionStore:
        return self._store

    @property
    def scheduler(self) -> SettlementScheduler:
        return self._scheduler

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def user_id(self) -> str:
        return self._config.user_id

    def now(self) -> datetime:
        """Current engine time."""
        return self._clock.now()

    def available_balance(self) -> Decimal:
        return self._ledger.available(self._config.reservation.settlement_asset)

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self._stats)
        stats["scheduler"] = self._scheduler.get_stats()
        stats["positions"] = len(self._store)
        return stats

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def load(self) -> int:
        """
        Restore positions and activities from the repository.

        Positions that expired while the process was down are
        settled immediately from their last stored price.

        Returns:
            Number of positions restored
        """
        if self._loaded:
            return 0
        self._loaded = True

        if self._repository is None:
            return 0

        active = await self._repository.load_active_positions()
        history = await self._repository.load_history(
            limit=self._config.history.max_position_history
        )
        restored = self._store.load(history + active)

        for position in active:
            price = position.last_price or position.entry_price
            if price is not None and position.symbol:
                self._prices.seed(position.symbol, price)

            if position.status == PositionStatus.SETTLING:
                # A crash between claim and terminal write; the claim is retried.
                logger.warning(f"Recovering {position.id} from SETTLING")
                self._store.compare_and_set(
                    position.id,
                    PositionStatus.SETTLING,
                    PositionStatus.OPEN,
                    reason="recovered on load",
                )

        self._activity_log.load(
            await self._repository.load_activities(
                self.user_id, limit=self._config.history.max_activities_per_user
            )
        )
        logger.info(f"Restored {restored} positions ({len(active)} active)")

        if self._config.scheduler.settle_expired_on_load:
            self._scheduler.settle_expired()

        await self.flush()
        return restored

    async def start(self) -> None:
        """Load state and start the settlement scheduler."""
        if self._running:
            return

        logger.info("Starting Settlement Engine...")
        await self.load()
        await self._scheduler.start()
        self._running = True
        logger.info("Settlement Engine started")

    async def stop(self) -> None:
        """Stop the scheduler and flush pending writes."""
        if not self._running:
            return

        logger.info("Stopping Settlement Engine...")
        self._running = False
        await self._scheduler.stop()
        await self.flush()
        await self._emitter.wait_for_subscribers()
        if self._notifier is not None:
            await self._notifier.close()
        logger.info("Settlement Engine stopped")

    # --------------------------------------------------------
    # TRADING
    # --------------------------------------------------------

    async def submit(self, request: Union[TradeRequest, Dict[str, Any]]) -> SubmitResult:
        """
        Submit a trade request.

        Never raises for validation, funds or price errors; the
        rejection is returned in the result.
        """
        self._stats["submitted"] += 1

        if not isinstance(request, TradeRequest):
            try:
                request = TradeRequest.from_dict(request)
            except InvalidRequest as e:
                self._stats["rejected"] += 1
                logger.warning(f"Rejected malformed request: [{e.code}] {e}")
                return SubmitResult(reason=str(e), error_code=e.code)

        result = await self._router.submit(request)
        if result.accepted:
            self._stats["accepted"] += 1
        else:
            self._stats["rejected"] += 1

        await self.flush()
        return result

    async def open_position(self, request: TradeRequest) -> Position:
        """Raising variant of `submit`."""
        self._stats["submitted"] += 1
        try:
            position = await self._router.open_position(request)
        except Exception:
            self._stats["rejected"] += 1
            await self.flush()
            raise

        self._stats["accepted"] += 1
        await self.flush()
        return position

    async def override(self, position_id: str, outcome: Outcome) -> Position:
        """
        Force the outcome of an OPEN position.

        Credits reserved funds * (1 + stored pct / 100) on a win.

        Raises:
            PositionNotFound: Unknown id
            PositionAlreadyTerminal: Already settled, cancelled or overridden
            InvalidRequest: Position is a pending order
        """
        position = self._store.get(position_id)

        if position.is_terminal or position.status == PositionStatus.SETTLING:
            raise PositionAlreadyTerminal(
                f"Position {position_id} is already {position.status.value}"
            )
        if position.status == PositionStatus.PENDING_ORDER:
            raise InvalidRequest(
                f"Position {position_id} is a pending order; cancel it instead",
                code="VAL_UNSUPPORTED_ACTION",
            )

        decision = self._calculator.forced(position, outcome)
        settled = self._scheduler.settle(
            position,
            decision,
            position.last_price,
            ExitReason.ADMIN_OVERRIDE,
            admin=True,
        )
        if not settled:
            raise PositionAlreadyTerminal(f"Position {position_id} was settled concurrently")

        self._stats["overrides"] += 1
        logger.warning(f"Admin override on {position_id}: {outcome.value} payout={decision.payout}")

        await self.flush()
        return position

    async def cancel_pending_order(self, position_id: str) -> Position:
        """
        Cancel an untriggered limit/stop order.

        Nothing was reserved, so nothing is refunded.

        Raises:
            PositionNotFound: Unknown id
            PositionAlreadyTerminal: Already cancelled or settled
            InvalidRequest: Position is OPEN (runs to settlement)
        """
        position = self._store.get(position_id)

        if position.is_terminal:
            raise PositionAlreadyTerminal(
                f"Position {position_id} is already {position.status.value}"
            )
        if position.status != PositionStatus.PENDING_ORDER:
            raise InvalidRequest(
                f"Position {position_id} is {position.status.value}; only pending orders can be cancelled",
                code="VAL_UNSUPPORTED_ACTION",
            )

        event = self._store.mark_terminal(
            position_id,
            PositionStatus.PENDING_ORDER,
            PositionStatus.CANCELLED,
            reason="user cancelled",
            exit_reason=ExitReason.USER_CANCELLED,
            settled_at=self._clock.now(),
        )
        if event is None:
            raise PositionAlreadyTerminal(f"Position {position_id} changed state concurrently")

        self._emitter.order_cancelled(position, "user cancelled")
        self._stats["cancelled"] += 1
        logger.info(f"Cancelled pending order {position_id}")

        await self.flush()
        return position

    async def tick(self) -> TickResult:
        """Run one settlement pass and persist the result."""
        result = await self._scheduler.tick()
        await self._after_tick(result)
        return result

    async def cleanup(self) -> List[str]:
        return await self._scheduler.cleanup()

    # --------------------------------------------------------
    # OUTCOME MODE
    # --------------------------------------------------------

    def set_outcome_mode(
        self,
        mode: OutcomeMode,
        scope: OutcomeModeScope = OutcomeModeScope.ALL_TRADES,
        user_id: Optional[str] = None,
    ) -> OutcomeModeSetting:
        """Force the outcome of timer settlements (administrative)."""
        return self._scheduler.set_outcome_mode(user_id or self.user_id, mode, scope)

    def get_outcome_mode(self, user_id: Optional[str] = None) -> OutcomeModeSetting:
        return self._scheduler.get_outcome_mode(user_id or self.user_id)

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    def get_position(self, position_id: str) -> Position:
        return self._store.get(position_id)

    def list_open(self, include_pending: bool = False) -> List[Position]:
        if include_pending:
            return self._store.list_active()
        return self._store.list_open()

    def list_pending(self) -> List[Position]:
        return self._store.list_pending()

    def list_history(self, history_filter: Optional[HistoryFilter] = None) -> List[Position]:
        return self._store.list_history(history_filter)

    def get_statistics(self, instrument_type: Optional[InstrumentType] = None) -> TradeStatistics:
        """
        Win/loss statistics over known positions.

        Without a type filter the result carries a per-type breakdown.
        """
        positions = [
            p for p in self._store.all()
            if p.status != PositionStatus.CANCELLED
            and (instrument_type is None or p.instrument_type == instrument_type)
        ]

        stats = self._aggregate(positions)
        if instrument_type is None:
            for kind in InstrumentType:
                subset = [p for p in positions if p.instrument_type == kind]
                if subset:
                    stats.by_type[kind.value] = self._aggregate(subset)
        return stats

    @staticmethod
    def _aggregate(positions: List[Position]) -> TradeStatistics:
        stats = TradeStatistics()
        for position in positions:
            stats.total_trades += 1
            if not position.is_terminal:
                stats.active_trades += 1
                continue
            if position.outcome == Outcome.WIN:
                stats.wins += 1
            elif position.outcome == Outcome.LOSE:
                stats.losses += 1
            stats.net_profit += position.profit
        return stats

    def get_notifications(self, limit: Optional[int] = None) -> List[Notification]:
        return self._emitter.notifications(limit)

    def get_activities(
        self,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ActivityRecord]:
        return self._emitter.activities(user_id or self.user_id, limit)

    def subscribe(self, subscriber: Subscriber) -> None:
        """Push notifications to `subscriber` (sync callable or coroutine function)."""
        self._emitter.subscribe(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self._emitter.unsubscribe(subscriber)

    # --------------------------------------------------------
    # PERSISTENCE
    # --------------------------------------------------------

    async def flush(self) -> None:
        """Write changed positions and new activity records."""
        positions = self._store.drain_dirty()
        activities = self._emitter.drain_activities()

        if self._repository is None:
            return

        try:
            await self._repository.save_positions(positions)
        except PersistenceError as e:
            self._store.mark_dirty(positions)
            self._emitter.requeue_activities(activities)
            await self._persistence_failed(e)
            return

        try:
            await self._repository.save_activities(activities)
        except PersistenceError as e:
            self._emitter.requeue_activities(activities)
            await self._persistence_failed(e)

    async def _after_tick(self, result: TickResult) -> None:
        await self.flush()

    async def _after_cleanup(self, cutoff: datetime) -> None:
        if self._repository is None:
            return
        try:
            await self._repository.delete_settled_before(cutoff)
        except PersistenceError as e:
            await self._persistence_failed(e)

    async def _persistence_failed(self, error: PersistenceError) -> None:
        self._stats["persistence_errors"] += 1
        logger.error(f"Persistence failure [{error.code}]: {error}")
        if self._notifier is not None:
            try:
                await self._notifier.send_system_alert(
                    "ERROR", "Settlement persistence failure", {"error": str(error)}
                )
            except Exception as e:
                logger.error(f"Failed to send alert: {e}")
