"""
Settlement Engine - Settlement Scheduler.

============================================================
PURPOSE
============================================================
Periodic evaluation of every non-terminal position.

PER TICK, PER POSITION:
    PENDING_ORDER  trigger hit        -> reserve, OPEN
                   reserve fails      -> CANCELLED (insufficient_funds)
    OPEN           take-profit hit    -> WON  (take_profit)
                   stop-loss hit      -> LOST (stop_loss)
                   now >= expires_at  -> outcome calculator (timer)
                   otherwise          -> last_price update only

SETTLEMENT (synchronous once the price is known):
    OPEN -> SETTLING (CAS) -> credit payout -> WON / LOST

A failure on one position is logged and retried next tick;
the other positions are unaffected.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .clock import ClockProtocol
from .config import SettlementEngineConfig
from .events import EventEmitter
from .ledger import BalanceLedger
from .outcome import OutcomeCalculator, OutcomeDecision
from .price_source import PriceSource
from .router import compute_reservation
from .store import PositionStore
from .types import (
    ExitReason,
    InstrumentType,
    Outcome,
    OutcomeMode,
    OutcomeModeScope,
    Position,
    PositionStatus,
    TriggerType,
)


logger = logging.getLogger(__name__)


# ============================================================
# OUTCOME MODE
# ============================================================

@dataclass
class OutcomeModeSetting:
    """Administrative outcome mode for one user."""

    mode: OutcomeMode = OutcomeMode.DEFAULT
    scope: OutcomeModeScope = OutcomeModeScope.ALL_TRADES
    set_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def forced_outcome(self, position: Position) -> Optional[Outcome]:
        """Outcome to force on `position`, or None to use the calculator."""
        if self.mode == OutcomeMode.DEFAULT:
            return None
        if self.scope == OutcomeModeScope.NEW_TRADES:
            opened = position.opened_at or position.created_at
            if opened < self.set_at:
                return None
        return Outcome.WIN if self.mode == OutcomeMode.FORCE_WIN else Outcome.LOSE

    def to_dict(self) -> Dict[str, str]:
        return {
            "mode": self.mode.value,
            "scope": self.scope.value,
            "set_at": self.set_at.isoformat(),
        }


@dataclass
class TickResult:
    """Summary of one scheduler tick."""

    evaluated: int = 0
    triggered: int = 0
    settled: int = 0
    cancelled: int = 0
    errors: int = 0


# ============================================================
# SETTLEMENT SCHEDULER
# ============================================================

class SettlementScheduler:
    """
    One consolidated scheduler for all instrument types.

    `tick()` is the unit of work; `start()` runs it at a fixed
    cadence as an asyncio task.
    """

    def __init__(
        self,
        store: PositionStore,
        ledger: BalanceLedger,
        price_source: PriceSource,
        calculator: OutcomeCalculator,
        emitter: EventEmitter,
        clock: ClockProtocol,
        config: SettlementEngineConfig,
        on_tick: Optional[Callable[[TickResult], Awaitable[None]]] = None,
        on_cleanup: Optional[Callable[[datetime], Awaitable[None]]] = None,
    ):
        self._store = store
        self._ledger = ledger
        self._prices = price_source
        self._calculator = calculator
        self._emitter = emitter
        self._clock = clock
        self._config = config
        self._on_tick = on_tick
        self._on_cleanup = on_cleanup

        self._outcome_modes: Dict[str, OutcomeModeSetting] = {}

        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._last_cleanup: Optional[datetime] = None

        self._stats = {
            "ticks": 0,
            "settled": 0,
            "triggered": 0,
            "cancelled": 0,
            "errors": 0,
        }

    @property
    def asset(self) -> str:
        return self._config.reservation.settlement_asset

    @property
    def is_running(self) -> bool:
        return self._running

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)

    # --------------------------------------------------------
    # OUTCOME MODE
    # --------------------------------------------------------

    def set_outcome_mode(
        self,
        user_id: str,
        mode: OutcomeMode,
        scope: OutcomeModeScope = OutcomeModeScope.ALL_TRADES,
    ) -> OutcomeModeSetting:
        setting = OutcomeModeSetting(mode=mode, scope=scope, set_at=self._clock.now())
        self._outcome_modes[user_id] = setting
        logger.warning(f"Outcome mode for {user_id} set to {mode.value} ({scope.value})")
        return setting

    def get_outcome_mode(self, user_id: str) -> OutcomeModeSetting:
        return self._outcome_modes.get(user_id) or OutcomeModeSetting(set_at=self._clock.now())

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def start(self) -> None:
        """Start the tick loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self.run_forever())
        logger.info(
            f"Settlement scheduler started (tick={self._config.scheduler.tick_interval_seconds}s)"
        )

    async def stop(self) -> None:
        """Stop the tick loop."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Settlement scheduler stopped")

    async def run_forever(self) -> None:
        """Tick at a fixed cadence until stopped."""
        interval = self._config.scheduler.tick_interval_seconds

        while self._running:
            try:
                result = await self.tick()
                if self._on_tick:
                    await self._on_tick(result)

                if self._cleanup_due():
                    await self.cleanup()

                await asyncio.sleep(interval)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Scheduler loop error: {e}")
                await asyncio.sleep(interval)

    # --------------------------------------------------------
    # TICK
    # --------------------------------------------------------

    async def tick(self) -> TickResult:
        """Evaluate every active position once."""
        result = TickResult()
        self._stats["ticks"] += 1

        for position in self._store.list_active():
            result.evaluated += 1
            try:
                await self._evaluate(position, result)
            except Exception as e:
                result.errors += 1
                self._stats["errors"] += 1
                logger.error(f"Settlement evaluation failed for {position.id} ({position.symbol}): {e}")

        if result.settled or result.triggered or result.cancelled:
            logger.debug(
                f"Tick: evaluated={result.evaluated} settled={result.settled} "
                f"triggered={result.triggered} cancelled={result.cancelled}"
            )
        return result

    async def _evaluate(self, position: Position, result: TickResult) -> None:
        if position.status == PositionStatus.PENDING_ORDER:
            price = await self._prices.get_price(position.symbol)
            # Re-validate after the await.
            if position.status != PositionStatus.PENDING_ORDER:
                return
            if self._trigger_hit(position, price):
                if self._activate(position, price):
                    result.triggered += 1
                    self._stats["triggered"] += 1
                else:
                    result.cancelled += 1
                    self._stats["cancelled"] += 1
            return

        if position.status != PositionStatus.OPEN:
            return

        if position.instrument_type.is_probabilistic():
            if self._clock.now() >= position.expires_at:
                if self._settle_at_expiry(position, position.last_price):
                    result.settled += 1
            return

        price = await self._prices.get_price(position.symbol)
        if position.status != PositionStatus.OPEN:
            return

        self._store.update(position.id, last_price=price)

        hit = self._tp_sl_hit(position, price)
        if hit is not None:
            outcome, reason = hit
            decision = self._calculator.forced(position, outcome)
            if self.settle(position, decision, price, reason):
                result.settled += 1
            return

        if self._clock.now() >= position.expires_at:
            if self._settle_at_expiry(position, price):
                result.settled += 1

    # --------------------------------------------------------
    # TRIGGERS
    # --------------------------------------------------------

    @staticmethod
    def _trigger_hit(position: Position, price: Decimal) -> bool:
        """Limit: price <= trigger. Stop: price >= trigger."""
        if position.trigger_type is None or position.trigger_price is None:
            return False
        if position.trigger_type == TriggerType.LIMIT:
            return price <= position.trigger_price
        return price >= position.trigger_price

    @staticmethod
    def _tp_sl_hit(position: Position, price: Decimal) -> Optional[Tuple[Outcome, ExitReason]]:
        """Take-profit is checked first, so it wins when both levels are crossed."""
        bullish = position.direction.is_bullish
        tp = position.take_profit
        sl = position.stop_loss

        if tp is not None and (price >= tp if bullish else price <= tp):
            return Outcome.WIN, ExitReason.TAKE_PROFIT
        if sl is not None and (price <= sl if bullish else price >= sl):
            return Outcome.LOSE, ExitReason.STOP_LOSS
        return None

    def _activate(self, position: Position, price: Decimal) -> bool:
        """
        Turn a triggered pending order into an OPEN position.

        Returns:
            True if opened, False if cancelled for lack of funds
        """
        required = compute_reservation(
            InstrumentType.FUTURES,
            position.amount,
            price,
            position.leverage,
            self._config.reservation.options_premium_rate,
        )
        now = self._clock.now()

        if not self._ledger.reserve(self.asset, required, reference=position.id):
            available = self._ledger.available(self.asset)
            self._store.mark_terminal(
                position.id,
                PositionStatus.PENDING_ORDER,
                PositionStatus.CANCELLED,
                reason="insufficient funds at trigger",
                exit_reason=ExitReason.INSUFFICIENT_FUNDS,
                last_price=price,
                settled_at=now,
            )
            self._emitter.insufficient_balance(
                position.user_id,
                required,
                available,
                symbol=position.symbol,
                meta={"position_id": position.id, "instrument_type": position.instrument_type.value},
            )
            self._emitter.order_cancelled(position, "insufficient funds")
            logger.warning(
                f"Pending order {position.id} cancelled at trigger: "
                f"required {required}, available {available}"
            )
            return False

        event = self._store.compare_and_set(
            position.id,
            PositionStatus.PENDING_ORDER,
            PositionStatus.OPEN,
            reason=f"{position.trigger_type.value} triggered at {price}",
            entry_price=price,
            last_price=price,
            reserved_funds=required,
            opened_at=now,
            expires_at=self._clock.after(position.duration_seconds),
        )
        if event is None:
            self._ledger.credit(self.asset, required, reference=f"{position.id}:refund")
            return False

        self._emitter.position_opened(position)
        logger.info(f"Pending order {position.id} triggered at {price}, reserved {required}")
        return True

    # --------------------------------------------------------
    # SETTLEMENT
    # --------------------------------------------------------

    def _settle_at_expiry(self, position: Position, price: Optional[Decimal]) -> bool:
        forced = self.get_outcome_mode(position.user_id).forced_outcome(position)
        if forced is not None:
            decision = self._calculator.forced(position, forced)
            return self.settle(position, decision, price, ExitReason.OUTCOME_MODE)

        decision = self._calculator.evaluate(position, price)
        return self.settle(position, decision, price, ExitReason.TIMER)

    def settle(
        self,
        position: Position,
        decision: OutcomeDecision,
        exit_price: Optional[Decimal],
        exit_reason: ExitReason,
        admin: bool = False,
    ) -> bool:
        """
        Settle an OPEN position with a decided outcome.

        Returns:
            True if this call settled the position, False if it was
            already claimed or the credit failed (retried next tick)
        """
        claimed = self._store.compare_and_set(
            position.id,
            PositionStatus.OPEN,
            PositionStatus.SETTLING,
            reason=exit_reason.value,
        )
        if claimed is None:
            return False

        try:
            if decision.payout > 0:
                self._ledger.credit(self.asset, decision.payout, reference=position.id)
        except Exception as e:
            self._store.compare_and_set(
                position.id,
                PositionStatus.SETTLING,
                PositionStatus.OPEN,
                reason=f"credit failed: {e}",
            )
            raise

        if admin:
            status = PositionStatus.ADMIN_OVERRIDDEN
        elif decision.outcome == Outcome.WIN:
            status = PositionStatus.WON
        else:
            status = PositionStatus.LOST

        fields = dict(
            outcome=decision.outcome,
            payout=decision.payout,
            exit_price=exit_price,
            exit_reason=exit_reason,
            settled_at=self._clock.now(),
        )
        if position.profit_percentage is None and decision.profit_percentage is not None:
            fields["profit_percentage"] = decision.profit_percentage

        self._store.mark_terminal(
            position.id,
            PositionStatus.SETTLING,
            status,
            reason=exit_reason.value,
            **fields,
        )
        self._stats["settled"] += 1

        self._emitter.position_settled(position, admin=admin)
        logger.info(
            f"Settled {position.id} {position.instrument_type.value} {position.symbol}: "
            f"{status.value} payout={decision.payout} reason={exit_reason.value}"
        )
        return True

    def settle_expired(self) -> int:
        """
        Settle positions that expired while the process was down.

        Uses the last stored price; no price lookup.

        Returns:
            Number of positions settled
        """
        now = self._clock.now()
        settled = 0

        for position in self._store.list_open():
            if position.expires_at is None or now < position.expires_at:
                continue
            price = position.last_price if position.last_price is not None else position.entry_price
            try:
                if self._settle_at_expiry(position, price):
                    settled += 1
            except Exception as e:
                self._stats["errors"] += 1
                logger.error(f"Restart settlement failed for {position.id}: {e}")

        if settled:
            logger.info(f"Settled {settled} positions that expired while offline")
        return settled

    # --------------------------------------------------------
    # CLEANUP
    # --------------------------------------------------------

    def _cleanup_due(self) -> bool:
        if self._last_cleanup is None:
            return True
        elapsed = (self._clock.now() - self._last_cleanup).total_seconds()
        return elapsed >= self._config.scheduler.cleanup_interval_seconds

    async def cleanup(self) -> List[str]:
        """Prune terminal positions older than the retention window."""
        now = self._clock.now()
        self._last_cleanup = now
        cutoff = now - timedelta(days=self._config.history.retention_days)

        removed = self._store.prune_older_than(cutoff)
        if self._on_cleanup:
            await self._on_cleanup(cutoff)
        return removed
