"""
Settlement Engine - Price Source.

============================================================
PURPOSE
============================================================
Reference prices for entry, triggers and settlement.

RULES:
- Lookups may be synchronous or awaited
- A missing price falls back to the last-known value
- Only a symbol that has never been priced raises
  PriceUnavailable

============================================================
"""

import inspect
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Optional, Union

from .types import PriceUnavailable


logger = logging.getLogger(__name__)


# Reference prices for the demo runtime.
DEFAULT_REFERENCE_PRICES: Dict[str, Decimal] = {
    "BTC": Decimal("48500"),
    "ETH": Decimal("3200"),
    "SOL": Decimal("485"),
    "ADA": Decimal("1"),
    "XRP": Decimal("2.34"),
    "USDT": Decimal("1"),
}


# ============================================================
# PRICE SOURCE INTERFACE
# ============================================================

class PriceSource(ABC):
    """Current reference price for a symbol."""

    @abstractmethod
    async def get_price(self, symbol: str) -> Decimal:
        """
        Get the current price.

        Raises:
            PriceUnavailable: If no price can be produced
        """
        pass


# ============================================================
# IMPLEMENTATIONS
# ============================================================

class StaticPriceSource(PriceSource):
    """Dictionary-backed prices, set explicitly."""

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None):
        self._prices: Dict[str, Decimal] = {
            symbol: Decimal(str(price)) for symbol, price in (prices or {}).items()
        }

    def set_price(self, symbol: str, price: Decimal) -> None:
        self._prices[symbol] = Decimal(str(price))

    def remove_price(self, symbol: str) -> None:
        self._prices.pop(symbol, None)

    async def get_price(self, symbol: str) -> Decimal:
        try:
            return self._prices[symbol]
        except KeyError:
            raise PriceUnavailable(f"No price for {symbol}") from None


PriceCallable = Callable[[str], Union[Decimal, float, None, Awaitable[Union[Decimal, float, None]]]]


class CallablePriceSource(PriceSource):
    """
    Adapts a plain `get_price(symbol)` function.

    The function may be sync or async and may return None when
    it has no price.
    """

    def __init__(self, func: PriceCallable):
        self._func = func

    async def get_price(self, symbol: str) -> Decimal:
        result = self._func(symbol)
        if inspect.isawaitable(result):
            result = await result
        if result is None:
            raise PriceUnavailable(f"No price for {symbol}")
        return Decimal(str(result))


class LastKnownPriceSource(PriceSource):
    """
    Wraps another source and remembers the last good price.

    Upstream failures are answered with the cached value so a
    flaky feed never blocks settlement.
    """

    def __init__(self, upstream: PriceSource):
        self._upstream = upstream
        self._last_known: Dict[str, Decimal] = {}

    def seed(self, symbol: str, price: Decimal) -> None:
        """Prime the cache (e.g. from persisted positions)."""
        self._last_known.setdefault(symbol, Decimal(str(price)))

    def last_known(self, symbol: str) -> Optional[Decimal]:
        return self._last_known.get(symbol)

    async def get_price(self, symbol: str) -> Decimal:
        try:
            price = await self._upstream.get_price(symbol)
        except Exception as e:
            cached = self._last_known.get(symbol)
            if cached is None:
                if isinstance(e, PriceUnavailable):
                    raise
                raise PriceUnavailable(f"No price for {symbol}: {e}") from e
            logger.warning(f"Price lookup failed for {symbol}, using last known {cached}: {e}")
            return cached

        self._last_known[symbol] = price
        return price
