"""
Settlement Engine - Balance Ledger.

============================================================
PURPOSE
============================================================
The single shared mutable resource: one available balance
per asset.

CONTRACT:
    available(asset) -> Decimal
    reserve(asset, amount) -> bool     (atomic check-and-debit)
    credit(asset, amount) -> None

Every mutation is serialized. The engine never reads the
balance and debits in two steps; `reserve` does both.

============================================================
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from .types import LedgerError


logger = logging.getLogger(__name__)


# ============================================================
# LEDGER INTERFACE
# ============================================================

class BalanceLedger(ABC):
    """Balance ledger consumed by the engine."""

    @abstractmethod
    def available(self, asset: str) -> Decimal:
        """Available balance for an asset."""
        pass

    @abstractmethod
    def reserve(self, asset: str, amount: Decimal, reference: Optional[str] = None) -> bool:
        """
        Debit `amount` if and only if it is available.

        Returns:
            True if the debit happened
        """
        pass

    @abstractmethod
    def credit(self, asset: str, amount: Decimal, reference: Optional[str] = None) -> None:
        """Credit `amount` to the available balance."""
        pass


# ============================================================
# LEDGER JOURNAL
# ============================================================

@dataclass
class LedgerEntry:
    """One ledger mutation."""

    asset: str
    delta: Decimal
    balance_after: Decimal
    reference: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ============================================================
# IN-MEMORY LEDGER
# ============================================================

class InMemoryBalanceLedger(BalanceLedger):
    """
    Process-local ledger.

    A lock gives each mutation exclusive access to the balances.
    """

    def __init__(self, balances: Optional[Dict[str, Decimal]] = None):
        self._balances: Dict[str, Decimal] = {
            asset: Decimal(str(value)) for asset, value in (balances or {}).items()
        }
        self._journal: List[LedgerEntry] = []
        self._lock = threading.Lock()

    @property
    def journal(self) -> List[LedgerEntry]:
        """Copy of all mutations, oldest first."""
        with self._lock:
            return list(self._journal)

    def available(self, asset: str) -> Decimal:
        with self._lock:
            return self._balances.get(asset, Decimal("0"))

    def deposit(self, asset: str, amount: Decimal) -> None:
        """Seed or top up a balance (outside the trade flow)."""
        self.credit(asset, amount, reference="deposit")

    def reserve(self, asset: str, amount: Decimal, reference: Optional[str] = None) -> bool:
        if amount < 0:
            raise LedgerError(f"Cannot reserve negative amount {amount}")

        with self._lock:
            balance = self._balances.get(asset, Decimal("0"))
            if balance < amount:
                logger.info(
                    f"Reservation refused: {amount} {asset} requested, {balance} available"
                )
                return False

            self._balances[asset] = balance - amount
            self._journal.append(LedgerEntry(asset, -amount, self._balances[asset], reference))

        logger.debug(f"Reserved {amount} {asset} ({reference})")
        return True

    def credit(self, asset: str, amount: Decimal, reference: Optional[str] = None) -> None:
        if amount < 0:
            raise LedgerError(f"Cannot credit negative amount {amount}")

        with self._lock:
            self._balances[asset] = self._balances.get(asset, Decimal("0")) + amount
            self._journal.append(LedgerEntry(asset, amount, self._balances[asset], reference))

        logger.debug(f"Credited {amount} {asset} ({reference})")
