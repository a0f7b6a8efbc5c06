"""
Settlement Engine - Outcome Calculator.

============================================================
PURPOSE
============================================================
Pure per-instrument decision rules:

    (position, exit price) -> (WIN | LOSE, payout)

RULES:
    spot      buy: exit > entry     sell: exit < entry
    futures   long: exit > entry    short: exit < entry
    binary    higher: exit > entry  lower: exit < entry
    options   long_call:        exit > strike + premium/unit
              long_put:         exit < strike - premium/unit
              covered_call:     exit < strike
              cash_secured_put: exit > strike
    quant / bot / staking / strategy: probability model

A tie (exit == entry) is a LOSE.

Win payout is basis * (1 + pct / 100), where basis is the
reserved funds and pct is the percentage fixed at open time.

Randomness lives only in the ProbabilityModel, which tests
replace with a fixed model.

============================================================
"""

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .config import ProbabilityConfig, ProfitConfig
from .types import (
    InstrumentType,
    OptionStrategy,
    Outcome,
    Position,
)


HUNDRED = Decimal("100")
ZERO = Decimal("0")


@dataclass
class OutcomeDecision:
    """Result of evaluating a position."""

    outcome: Outcome
    payout: Decimal
    profit_percentage: Optional[Decimal] = None
    """Realized profit percentage when it differs from the stored one."""

    @property
    def is_win(self) -> bool:
        return self.outcome == Outcome.WIN


# ============================================================
# PROFIT PERCENTAGE (OPEN TIME)
# ============================================================

def compute_profit_percentage(
    instrument: InstrumentType,
    duration_seconds: int,
    leverage: Decimal,
    config: ProfitConfig,
) -> Decimal:
    """
    Profit percentage fixed when a spot/futures position opens.

    Never recomputed at settlement.
    """
    minutes = Decimal(duration_seconds) / Decimal(60)
    pct = config.base_percentage + minutes * config.per_minute_rate
    if instrument == InstrumentType.FUTURES:
        pct += leverage * config.leverage_rate
    return pct


# ============================================================
# PROBABILITY MODEL
# ============================================================

class ProbabilityModel(ABC):
    """Outcome source for instruments that are not price-driven."""

    @abstractmethod
    def is_win(self, instrument: InstrumentType) -> bool:
        pass

    @abstractmethod
    def win_fraction(self, instrument: InstrumentType) -> Decimal:
        """Profit as a fraction of the stake on a win."""
        pass

    @abstractmethod
    def loss_payout_fraction(self, instrument: InstrumentType) -> Decimal:
        """Fraction of the stake paid back on a loss."""
        pass


class RandomProbabilityModel(ProbabilityModel):
    """Configured win rates with uniformly drawn returns."""

    def __init__(self, config: ProbabilityConfig):
        self._config = config
        self._rng = random.Random(config.seed)

    def _draw(self, low: Decimal, high: Decimal) -> Decimal:
        value = self._rng.uniform(float(low), float(high))
        return Decimal(str(round(value, 4)))

    def is_win(self, instrument: InstrumentType) -> bool:
        rate = self._config.win_rates.get(instrument.value, Decimal("0.5"))
        return Decimal(str(self._rng.random())) < rate

    def win_fraction(self, instrument: InstrumentType) -> Decimal:
        low, high = self._config.win_percentage_ranges.get(
            instrument.value, (Decimal("0.05"), Decimal("0.20"))
        )
        return self._draw(low, high)

    def loss_payout_fraction(self, instrument: InstrumentType) -> Decimal:
        low, high = self._config.loss_payout_range
        return self._draw(low, high)


class FixedProbabilityModel(ProbabilityModel):
    """Deterministic model for tests and replays."""

    def __init__(
        self,
        win: bool = True,
        win_fraction: Decimal = Decimal("0.20"),
        loss_payout_fraction: Decimal = Decimal("0.90"),
    ):
        self.win = win
        self._win_fraction = win_fraction
        self._loss_payout_fraction = loss_payout_fraction

    def is_win(self, instrument: InstrumentType) -> bool:
        return self.win

    def win_fraction(self, instrument: InstrumentType) -> Decimal:
        return self._win_fraction

    def loss_payout_fraction(self, instrument: InstrumentType) -> Decimal:
        return self._loss_payout_fraction


# ============================================================
# OUTCOME CALCULATOR
# ============================================================

class OutcomeCalculator:
    """
    Maps a position and an exit price to an outcome and payout.

    Dispatches on instrument type. Does not touch the ledger or
    the store.
    """

    def __init__(self, probability_model: ProbabilityModel):
        self._probability = probability_model

    def evaluate(self, position: Position, exit_price: Optional[Decimal]) -> OutcomeDecision:
        """
        Decide the outcome of a position at `exit_price`.

        Raises:
            ValueError: If a price-driven position has no entry or exit price
        """
        instrument = position.instrument_type

        if instrument.is_probabilistic():
            return self._evaluate_probabilistic(position)

        if position.entry_price is None or exit_price is None:
            raise ValueError(f"Position {position.id} needs entry and exit prices")

        if instrument == InstrumentType.OPTIONS:
            return self._evaluate_option(position, exit_price)

        if instrument == InstrumentType.BINARY:
            pct = position.payout_rate
        else:
            pct = position.profit_percentage

        if self._direction_won(position, exit_price):
            return OutcomeDecision(Outcome.WIN, self.win_payout(position, pct))
        return OutcomeDecision(Outcome.LOSE, ZERO)

    def forced(self, position: Position, outcome: Outcome) -> OutcomeDecision:
        """
        Payout for an outcome decided outside the rules table
        (take-profit, stop-loss, admin override, outcome mode).

        Uses the percentage stored on the position.
        """
        if outcome == Outcome.LOSE:
            return OutcomeDecision(Outcome.LOSE, ZERO)

        if position.instrument_type.is_probabilistic():
            fraction = self._probability.win_fraction(position.instrument_type)
            return OutcomeDecision(
                Outcome.WIN,
                position.reserved_funds * (1 + fraction),
                profit_percentage=fraction * HUNDRED,
            )

        if position.instrument_type == InstrumentType.BINARY:
            pct = position.payout_rate
        else:
            pct = position.profit_percentage
        return OutcomeDecision(Outcome.WIN, self.win_payout(position, pct))

    @staticmethod
    def win_payout(position: Position, pct: Optional[Decimal]) -> Decimal:
        # Basis is reserved_funds: for futures that is the margin, since amount is a contract quantity.
        return position.reserved_funds * (1 + (pct or ZERO) / HUNDRED)

    # --------------------------------------------------------
    # PRICE-DRIVEN RULES
    # --------------------------------------------------------

    @staticmethod
    def _direction_won(position: Position, exit_price: Decimal) -> bool:
        if position.direction.is_bullish:
            return exit_price > position.entry_price
        return exit_price < position.entry_price

    def _evaluate_option(self, position: Position, exit_price: Decimal) -> OutcomeDecision:
        premium = position.reserved_funds
        strike = position.strike_price if position.strike_price is not None else position.entry_price
        premium_per_unit = premium / position.amount if position.amount else ZERO
        strategy = position.option_strategy or (
            OptionStrategy.LONG_CALL if position.direction.is_bullish else OptionStrategy.LONG_PUT
        )

        if strategy in (OptionStrategy.LONG_CALL, OptionStrategy.LONG_PUT):
            if strategy == OptionStrategy.LONG_CALL:
                won = exit_price > strike + premium_per_unit
                intrinsic = exit_price - strike
            else:
                won = exit_price < strike - premium_per_unit
                intrinsic = strike - exit_price

            if not won:
                return OutcomeDecision(Outcome.LOSE, ZERO)

            payout = intrinsic * position.amount
            realized_pct = (payout - premium) / premium * HUNDRED if premium else ZERO
            return OutcomeDecision(Outcome.WIN, payout, profit_percentage=realized_pct)

        # Written options: the premium is kept on a win, the loss is capped at it.
        if strategy == OptionStrategy.COVERED_CALL:
            won = exit_price < strike
        else:
            won = exit_price > strike

        if won:
            return OutcomeDecision(Outcome.WIN, premium * 2, profit_percentage=HUNDRED)
        return OutcomeDecision(Outcome.LOSE, ZERO)

    # --------------------------------------------------------
    # PROBABILISTIC RULES
    # --------------------------------------------------------

    def _evaluate_probabilistic(self, position: Position) -> OutcomeDecision:
        instrument = position.instrument_type
        stake = position.reserved_funds

        if self._probability.is_win(instrument):
            fraction = self._probability.win_fraction(instrument)
            return OutcomeDecision(
                Outcome.WIN,
                stake * (1 + fraction),
                profit_percentage=fraction * HUNDRED,
            )

        fraction = self._probability.loss_payout_fraction(instrument)
        return OutcomeDecision(
            Outcome.LOSE,
            stake * fraction,
            profit_percentage=(fraction - 1) * HUNDRED,
        )
