"""Decimal odds arithmetic.

Pure helpers shared by the fair price model, the edge detector and the
trading engine. Everything here works in floating point and never rounds,
except the exchange tick helpers which must produce prices the exchange
accepts.
"""

from collections.abc import Sequence
from decimal import ROUND_HALF_UP, Decimal

MIN_EXCHANGE_PRICE = 1.01
MAX_EXCHANGE_PRICE = 1000.0

# (upper bound of band, tick increment)
BETFAIR_TICK_BANDS: tuple[tuple[float, float], ...] = (
    (2.0, 0.01),
    (3.0, 0.02),
    (4.0, 0.05),
    (6.0, 0.1),
    (10.0, 0.2),
    (20.0, 0.5),
    (30.0, 1.0),
    (50.0, 2.0),
    (100.0, 5.0),
    (1000.0, 10.0),
)


def implied_probability(decimal_odds: float) -> float:
    """Convert decimal odds to implied probability."""
    if decimal_odds <= 1.0:
        raise ValueError(f"Decimal odds must be greater than 1.0, got {decimal_odds}")
    return 1.0 / decimal_odds


def probability_to_odds(probability: float) -> float:
    """Convert a probability to fair decimal odds."""
    if not 0.0 < probability < 1.0:
        raise ValueError(f"Probability must be in (0, 1), got {probability}")
    return 1.0 / probability


def clamp_probability(probability: float, epsilon: float) -> float:
    """Clamp a probability into the open interval (epsilon, 1 - epsilon)."""
    return min(max(probability, epsilon), 1.0 - epsilon)


def overround(prices: Sequence[float]) -> float:
    """Sum of raw implied probabilities across a complete market."""
    return sum(implied_probability(p) for p in prices)


def devig(prices: Sequence[float]) -> list[float]:
    """
    Remove the bookmaker margin proportionally.

    Converts each outcome to its implied probability and normalizes so the
    outcomes of the market sum to 1.
    """
    raw = [implied_probability(p) for p in prices]
    total = sum(raw)
    return [p / total for p in raw]


def apply_exchange_commission(decimal_odds: float, commission: float) -> float:
    """Effective odds after the exchange takes commission on net winnings."""
    return 1.0 + (decimal_odds - 1.0) * (1.0 - commission)


def _band_for(price: float) -> tuple[float, float]:
    """(lower bound, tick increment) of the band containing price."""
    lower = 1.0
    for upper, step in BETFAIR_TICK_BANDS:
        if price <= upper:
            return lower, step
        lower = upper
    return BETFAIR_TICK_BANDS[-2][0], BETFAIR_TICK_BANDS[-1][1]


def round_to_tick(price: float | Decimal) -> Decimal:
    """
    Round a price to the nearest valid Betfair tick.

    Prices are clamped to [1.01, 1000] first. Returned as a 2dp Decimal so it
    can go straight into an order instruction.
    """
    clamped = max(MIN_EXCHANGE_PRICE, min(float(price), MAX_EXCHANGE_PRICE))
    lower, step = (Decimal(str(v)) for v in _band_for(clamped))
    ticks = ((Decimal(str(clamped)) - lower) / step).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    rounded = lower + ticks * step
    return rounded.quantize(Decimal("0.01"))


def is_valid_tick(price: float | Decimal) -> bool:
    """Check whether a price lies exactly on the Betfair ladder."""
    value = Decimal(str(price))
    if not Decimal(str(MIN_EXCHANGE_PRICE)) <= value <= Decimal(str(MAX_EXCHANGE_PRICE)):
        return False
    return round_to_tick(value) == value
