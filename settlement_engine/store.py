"""
Settlement Engine - Position Store.

============================================================
PURPOSE
============================================================
In-memory registry of positions and the per-user activity log.

RESPONSIBILITIES:
- Single owner of Position status changes (compare-and-set)
- Open / pending / history views
- Bounded history (FIFO of terminal entries, age pruning)
- Dirty tracking for the persistence layer

INVARIANTS:
- A status only changes from the expected value
- No await between check and write
- Non-terminal positions are never evicted

============================================================
"""

import logging
from collections import OrderedDict, deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from .state_machine import StateTransitionEvent, TransitionGuard
from .types import (
    ActivityRecord,
    HistoryFilter,
    InstrumentType,
    Position,
    PositionNotFound,
    PositionStatus,
)


logger = logging.getLogger(__name__)


TransitionListener = Callable[[StateTransitionEvent, Position], None]


# ============================================================
# POSITION STORE
# ============================================================

class PositionStore:
    """
    Position registry with compare-and-set status transitions.

    Terminal positions stay queryable as history until they are
    evicted (capacity) or pruned (age).
    """

    def __init__(self, max_history: int = 1000):
        self._max_history = max_history
        self._positions: "OrderedDict[str, Position]" = OrderedDict()
        self._terminal_ids: Deque[str] = deque()
        self._dirty: Dict[str, Position] = {}
        self._listeners: List[TransitionListener] = []

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, position_id: str) -> bool:
        return position_id in self._positions

    def add_listener(self, listener: TransitionListener) -> None:
        """Add a transition listener."""
        self._listeners.append(listener)

    # --------------------------------------------------------
    # WRITES
    # --------------------------------------------------------

    def insert(self, position: Position) -> None:
        """
        Add a new position.

        Raises:
            ValueError: If the id already exists
        """
        if position.id in self._positions:
            raise ValueError(f"Position {position.id} already exists")

        self._positions[position.id] = position
        if position.is_terminal:
            self._track_terminal(position.id)
        self._dirty[position.id] = position

    def load(self, positions: Iterable[Position]) -> int:
        """
        Bulk insert positions restored from storage.

        Returns:
            Number of positions loaded
        """
        loaded = 0
        ordered = sorted(positions, key=lambda p: p.settled_at or p.created_at)
        for position in ordered:
            if position.id in self._positions:
                continue
            self._positions[position.id] = position
            if position.is_terminal:
                self._track_terminal(position.id)
            loaded += 1
        return loaded

    def compare_and_set(
        self,
        position_id: str,
        expected: PositionStatus,
        new_status: PositionStatus,
        reason: str = "",
        **fields: Any,
    ) -> Optional[StateTransitionEvent]:
        """
        Move a position from `expected` to `new_status`.

        Field updates are applied together with the status change.

        Returns:
            The transition event, or None if the position is no
            longer in `expected` or the transition is not allowed

        Raises:
            PositionNotFound: If the position does not exist
            ValueError: If the new field values are invalid for the state
        """
        position = self.get(position_id)

        if position.status != expected:
            logger.debug(
                f"CAS miss on {position_id}: expected {expected.value}, "
                f"found {position.status.value}"
            )
            return None

        allowed, why = TransitionGuard.can_transition(expected, new_status)
        if not allowed:
            logger.warning(f"Rejected transition for {position_id}: {why}")
            return None

        previous = {name: getattr(position, name) for name in fields}
        for name, value in fields.items():
            setattr(position, name, value)

        valid, why = TransitionGuard.validate_position_for_state(position, new_status)
        if not valid:
            for name, value in previous.items():
                setattr(position, name, value)
            raise ValueError(f"Position {position_id}: {why}")

        position.status = new_status
        self._dirty[position_id] = position

        event = StateTransitionEvent(
            position_id=position_id,
            from_state=expected,
            to_state=new_status,
            reason=reason,
        )
        logger.debug(f"Position {position_id}: {expected.value} -> {new_status.value} ({reason})")

        if new_status.is_terminal():
            self._track_terminal(position_id)

        for listener in self._listeners:
            try:
                listener(event, position)
            except Exception as e:
                logger.error(f"Transition listener error: {e}")

        return event

    def mark_terminal(
        self,
        position_id: str,
        expected: PositionStatus,
        new_status: PositionStatus,
        reason: str = "",
        **fields: Any,
    ) -> Optional[StateTransitionEvent]:
        """Compare-and-set into a terminal state."""
        if not new_status.is_terminal():
            raise ValueError(f"{new_status.value} is not a terminal state")
        return self.compare_and_set(position_id, expected, new_status, reason, **fields)

    def update(self, position_id: str, **fields: Any) -> Position:
        """Update non-status fields of an active position (e.g. last_price)."""
        position = self.get(position_id)
        if position.is_terminal:
            return position
        for name, value in fields.items():
            setattr(position, name, value)
        self._dirty[position_id] = position
        return position

    def prune_older_than(self, cutoff: datetime) -> List[str]:
        """
        Remove terminal positions settled before `cutoff`.

        Returns:
            Removed position ids
        """
        removed = []
        for position_id in list(self._terminal_ids):
            position = self._positions.get(position_id)
            settled_at = position.settled_at or position.created_at if position else None
            if settled_at is not None and settled_at < cutoff:
                self._terminal_ids.remove(position_id)
                del self._positions[position_id]
                self._dirty.pop(position_id, None)
                removed.append(position_id)

        if removed:
            logger.info(f"Pruned {len(removed)} settled positions older than {cutoff.isoformat()}")
        return removed

    def drain_dirty(self) -> List[Position]:
        """Positions changed since the last drain (evicted ones included)."""
        dirty = list(self._dirty.values())
        self._dirty.clear()
        return dirty

    def mark_dirty(self, positions: Iterable[Position]) -> None:
        """Re-queue positions whose write failed."""
        for position in positions:
            self._dirty.setdefault(position.id, position)

    def _track_terminal(self, position_id: str) -> None:
        self._terminal_ids.append(position_id)
        while len(self._terminal_ids) > self._max_history:
            evicted = self._terminal_ids.popleft()
            self._positions.pop(evicted, None)
            logger.debug(f"Evicted {evicted} from position history")

    # --------------------------------------------------------
    # READS
    # --------------------------------------------------------

    def find(self, position_id: str) -> Optional[Position]:
        return self._positions.get(position_id)

    def get(self, position_id: str) -> Position:
        """
        Get a position by id.

        Raises:
            PositionNotFound: If no such position exists
        """
        position = self._positions.get(position_id)
        if position is None:
            raise PositionNotFound(f"Position {position_id} not found")
        return position

    def list_open(self) -> List[Position]:
        return self._with_status(PositionStatus.OPEN)

    def list_pending(self) -> List[Position]:
        return self._with_status(PositionStatus.PENDING_ORDER)

    def list_active(self) -> List[Position]:
        """Positions the scheduler still has work for."""
        return [p for p in self._positions.values() if p.status.is_active()]

    def list_by_type(
        self,
        instrument_type: InstrumentType,
        include_terminal: bool = False,
    ) -> List[Position]:
        return [
            p for p in self._positions.values()
            if p.instrument_type == instrument_type and (include_terminal or not p.is_terminal)
        ]

    def list_history(self, history_filter: Optional[HistoryFilter] = None) -> List[Position]:
        """Terminal positions, newest first."""
        history_filter = history_filter or HistoryFilter()
        result = [
            self._positions[pid]
            for pid in reversed(self._terminal_ids)
            if history_filter.matches(self._positions[pid])
        ]
        if history_filter.limit is not None:
            result = result[:history_filter.limit]
        return result

    def all(self) -> List[Position]:
        return list(self._positions.values())

    def _with_status(self, status: PositionStatus) -> List[Position]:
        return [p for p in self._positions.values() if p.status == status]


# ============================================================
# ACTIVITY LOG
# ============================================================

class ActivityLog:
    """Per-user activity records, newest kept, oldest dropped."""

    def __init__(self, max_per_user: int = 20):
        self._max_per_user = max_per_user
        self._records: Dict[str, Deque[ActivityRecord]] = {}

    def add(self, record: ActivityRecord) -> None:
        records = self._records.get(record.user_id)
        if records is None:
            records = deque(maxlen=self._max_per_user)
            self._records[record.user_id] = records
        records.append(record)

    def load(self, records: Iterable[ActivityRecord]) -> None:
        for record in sorted(records, key=lambda r: r.timestamp):
            self.add(record)

    def list(self, user_id: str, limit: Optional[int] = None) -> List[ActivityRecord]:
        """Activity records for a user, newest first."""
        records = list(reversed(self._records.get(user_id, ())))
        if limit is not None:
            records = records[:limit]
        return records
