"""
Settlement Engine - Notification/Activity Emitter.

============================================================
PURPOSE
============================================================
Publishes user-facing notifications and activity records.

RESPONSIBILITIES:
- Build notifications with exact profit/loss figures
- Keep the most recent notifications (bounded)
- Append activity records to the per-user log
- Fan out to subscribers (sync callables or coroutines)

Subscriber failures are logged and never reach the
settlement path.

============================================================
"""

import asyncio
import inspect
import logging
from collections import deque
from decimal import Decimal
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from .store import ActivityLog
from .types import (
    ActivityRecord,
    ActivityStatus,
    InstrumentType,
    Notification,
    NotificationKind,
    Outcome,
    Position,
)


logger = logging.getLogger(__name__)


Subscriber = Callable[[Notification], Any]

CENT = Decimal("0.01")


def format_amount(value: Optional[Decimal]) -> str:
    """Money figure for messages (2 decimal places)."""
    if value is None:
        return "-"
    return f"{value.quantize(CENT):,}"


def position_label(position: Position) -> str:
    """e.g. "Spot BTC" or "Bot grid-1"."""
    subject = position.symbol or position.bot_id or position.pool_id
    name = position.instrument_type.value.capitalize()
    return f"{name} {subject}" if subject else name


def activity_category(position: Position) -> str:
    if position.instrument_type == InstrumentType.STAKING:
        return "staking"
    if position.instrument_type == InstrumentType.BOT:
        return "bot"
    return "trade"


# ============================================================
# EVENT EMITTER
# ============================================================

class EventEmitter:
    """
    Notification sink and activity log front end.

    Keeps the newest `max_notifications` notifications for polling
    and pushes each one to the subscribers.
    """

    def __init__(
        self,
        activity_log: ActivityLog,
        settlement_asset: str = "USDT",
        max_notifications: int = 100,
    ):
        self._activity_log = activity_log
        self._asset = settlement_asset
        self._notifications: Deque[Notification] = deque(maxlen=max_notifications)
        self._subscribers: List[Subscriber] = []
        self._pending_tasks: Set[asyncio.Task] = set()
        self._unsaved_activities: List[ActivityRecord] = []

    # --------------------------------------------------------
    # SUBSCRIPTION
    # --------------------------------------------------------

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def notifications(self, limit: Optional[int] = None) -> List[Notification]:
        """Newest first."""
        result = list(reversed(self._notifications))
        if limit is not None:
            result = result[:limit]
        return result

    def activities(self, user_id: str, limit: Optional[int] = None) -> List[ActivityRecord]:
        return self._activity_log.list(user_id, limit)

    def drain_activities(self) -> List[ActivityRecord]:
        """Activity records not yet handed to the persistence layer."""
        records, self._unsaved_activities = self._unsaved_activities, []
        return records

    def requeue_activities(self, records: List[ActivityRecord]) -> None:
        """Put back records whose write failed."""
        self._unsaved_activities = list(records) + self._unsaved_activities

    async def wait_for_subscribers(self) -> None:
        """Wait for in-flight async subscriber calls."""
        if self._pending_tasks:
            await asyncio.gather(*list(self._pending_tasks), return_exceptions=True)

    # --------------------------------------------------------
    # LOW-LEVEL EMIT
    # --------------------------------------------------------

    def notify(self, notification: Notification) -> Notification:
        self._notifications.append(notification)
        logger.info(f"[{notification.kind.value}] {notification.message}")

        for subscriber in list(self._subscribers):
            try:
                result = subscriber(notification)
                if inspect.isawaitable(result):
                    self._schedule(result)
            except Exception as e:
                logger.error(f"Notification subscriber error: {e}")

        return notification

    def record(self, record: ActivityRecord) -> ActivityRecord:
        self._activity_log.add(record)
        self._unsaved_activities.append(record)
        return record

    def _schedule(self, awaitable) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, dropping async notification subscriber call")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = loop.create_task(awaitable)
        self._pending_tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._pending_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Notification subscriber error: {error}")

    # --------------------------------------------------------
    # DOMAIN EVENTS
    # --------------------------------------------------------

    def position_opened(self, position: Position) -> None:
        """trade_placed / stake_initiated plus a pending (running for bots) activity."""
        payload = self._position_payload(position)

        if position.instrument_type == InstrumentType.STAKING:
            kind = NotificationKind.STAKE_INITIATED
            title = "Stake Initiated"
            message = (
                f"Staked {format_amount(position.amount)} {self._asset}"
                f"{' in pool ' + position.pool_id if position.pool_id else ''}"
            )
        else:
            kind = NotificationKind.TRADE_PLACED
            title = "Trade Placed"
            message = (
                f"{position_label(position)} {position.direction.value} "
                f"for {format_amount(position.reserved_funds)} {self._asset}"
            )
            if position.entry_price is not None:
                message += f" at {position.entry_price}"

        self.notify(Notification(kind=kind, title=title, message=message, payload=payload))

        status = (
            ActivityStatus.RUNNING
            if position.instrument_type == InstrumentType.BOT
            else ActivityStatus.PENDING
        )
        self.record(ActivityRecord(
            user_id=position.user_id,
            category=activity_category(position),
            action=position.action.value,
            description=message,
            status=status,
            amount=position.amount,
            symbol=position.symbol or None,
            meta={"position_id": position.id, "instrument_type": position.instrument_type.value},
        ))

    def order_placed(self, position: Position) -> None:
        """A pending futures order was accepted (no funds held)."""
        message = (
            f"{position.trigger_type.value.capitalize()} order {position.direction.value} "
            f"{position.amount} {position.symbol} at {position.trigger_price}"
        )
        self.notify(Notification(
            kind=NotificationKind.TRADE_PLACED,
            title="Order Placed",
            message=message,
            payload=self._position_payload(position),
        ))
        self.record(ActivityRecord(
            user_id=position.user_id,
            category="order",
            action=position.action.value,
            description=message,
            status=ActivityStatus.PENDING,
            amount=position.amount,
            symbol=position.symbol,
            meta={"position_id": position.id},
        ))

    def order_cancelled(self, position: Position, reason: str) -> None:
        self.record(ActivityRecord(
            user_id=position.user_id,
            category="order",
            action="cancel",
            description=f"Order {position.id} cancelled: {reason}",
            status=ActivityStatus.COMPLETED,
            amount=position.amount,
            symbol=position.symbol,
            meta={"position_id": position.id, "reason": reason},
        ))

    def position_settled(self, position: Position, admin: bool = False) -> None:
        """trade_won / trade_lost (stake_completed for staking) with exact figures."""
        won = position.outcome == Outcome.WIN
        profit = position.profit
        payload = self._position_payload(position)
        if admin:
            payload["admin_override"] = True

        label = position_label(position)
        if won:
            figure = f"+{format_amount(profit)} {self._asset}"
        else:
            figure = f"-{format_amount(-profit)} {self._asset}"

        if position.instrument_type == InstrumentType.STAKING:
            kind = NotificationKind.STAKE_COMPLETED
            title = "Stake Completed"
            message = f"Stake of {format_amount(position.amount)} {self._asset} completed: {figure}"
        elif won:
            kind = NotificationKind.TRADE_WON
            title = "Trade Won"
            message = f"{label} won: {figure}"
        else:
            kind = NotificationKind.TRADE_LOST
            title = "Trade Lost"
            message = f"{label} lost: {figure}"

        if admin:
            title = f"{title} (Admin)"

        self.notify(Notification(kind=kind, title=title, message=message, payload=payload))

        self.record(ActivityRecord(
            user_id=position.user_id,
            category="admin" if admin else activity_category(position),
            action="override" if admin else "settle",
            description=message,
            status=ActivityStatus.SUCCESS if won else ActivityStatus.COMPLETED,
            amount=position.payout,
            symbol=position.symbol or None,
            meta={
                "position_id": position.id,
                "outcome": position.outcome.value if position.outcome else None,
                "exit_reason": position.exit_reason.value if position.exit_reason else None,
                "profit": str(profit),
                "admin_override": admin,
            },
        ))

    def insufficient_balance(
        self,
        user_id: str,
        required: Decimal,
        available: Decimal,
        symbol: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        message = (
            f"Insufficient balance: required {format_amount(required)} {self._asset}, "
            f"available {format_amount(available)} {self._asset}"
        )
        payload = {"required": str(required), "available": str(available), "asset": self._asset}
        payload.update(meta or {})

        self.notify(Notification(
            kind=NotificationKind.INSUFFICIENT_BALANCE,
            title="Insufficient Balance",
            message=message,
            payload=payload,
        ))
        self.record(ActivityRecord(
            user_id=user_id,
            category="trade",
            action="reject",
            description=message,
            status=ActivityStatus.ERROR,
            amount=required,
            symbol=symbol or None,
            meta=payload,
        ))

    def _position_payload(self, position: Position) -> Dict[str, Any]:
        return {
            "position_id": position.id,
            "instrument_type": position.instrument_type.value,
            "symbol": position.symbol,
            "direction": position.direction.value,
            "amount": str(position.amount),
            "reserved_funds": str(position.reserved_funds),
            "entry_price": str(position.entry_price) if position.entry_price is not None else None,
            "exit_price": str(position.exit_price) if position.exit_price is not None else None,
            "payout": str(position.payout) if position.payout is not None else None,
            "profit": str(position.profit),
            "status": position.status.value,
            "exit_reason": position.exit_reason.value if position.exit_reason else None,
        }
