"""
Settlement Engine - Position State Machine.

============================================================
PURPOSE
============================================================
Transition rules for the position lifecycle.

STATE MACHINE:

    PENDING_ORDER ──────► CANCELLED
           │
           ▼
         OPEN ◄──────────┐  (credit failed, retry next tick)
           │             │
           ▼             │
       SETTLING ─────────┘
           │
           ├──► WON
           ├──► LOST
           └──► ADMIN_OVERRIDDEN

INVARIANTS:
- Terminal states are final
- A state never transitions to itself
- Every terminal state carries an outcome and a payout
  (CANCELLED excepted)

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Set, Tuple

from .types import Position, PositionStatus


logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

VALID_TRANSITIONS: Dict[PositionStatus, Set[PositionStatus]] = {
    PositionStatus.PENDING_ORDER: {
        PositionStatus.OPEN,
        PositionStatus.CANCELLED,
    },
    PositionStatus.OPEN: {
        PositionStatus.SETTLING,
    },
    PositionStatus.SETTLING: {
        PositionStatus.WON,
        PositionStatus.LOST,
        PositionStatus.ADMIN_OVERRIDDEN,
        PositionStatus.OPEN,
    },
    # Terminal states - no transitions out
    PositionStatus.WON: set(),
    PositionStatus.LOST: set(),
    PositionStatus.CANCELLED: set(),
    PositionStatus.ADMIN_OVERRIDDEN: set(),
}


# ============================================================
# STATE TRANSITION EVENT
# ============================================================

@dataclass
class StateTransitionEvent:
    """Event representing a state transition."""

    position_id: str
    from_state: PositionStatus
    to_state: PositionStatus
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    reason: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


# ============================================================
# STATE TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """
    Guard for status transitions.

    Ensures transitions are valid and provides reason for denial.
    """

    @staticmethod
    def can_transition(
        from_state: PositionStatus,
        to_state: PositionStatus,
    ) -> Tuple[bool, str]:
        """
        Check if a transition is allowed.

        Returns:
            Tuple of (allowed, reason)
        """
        if to_state in VALID_TRANSITIONS.get(from_state, set()):
            return True, "Valid transition"

        if from_state.is_terminal():
            return False, f"Cannot transition from terminal state {from_state.value}"

        return False, f"Invalid transition: {from_state.value} -> {to_state.value}"

    @staticmethod
    def validate_position_for_state(
        position: Position,
        target_state: PositionStatus,
    ) -> Tuple[bool, str]:
        """
        Validate position data for the target state.

        Checked after the new field values are applied.
        """
        if target_state == PositionStatus.OPEN:
            if position.expires_at is None:
                return False, "Missing expires_at for OPEN state"
            if position.reserved_funds < 0:
                return False, "reserved_funds must not be negative"

        if target_state in (
            PositionStatus.WON,
            PositionStatus.LOST,
            PositionStatus.ADMIN_OVERRIDDEN,
        ):
            if position.outcome is None:
                return False, f"Missing outcome for {target_state.value} state"
            if position.payout is None:
                return False, f"Missing payout for {target_state.value} state"

        return True, "Position valid for state"
