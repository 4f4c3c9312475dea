"""Hedge arithmetic.

All money math is Decimal. For a back of S_b at P_b hedged by a lay of S_l
at P_l with commission rate c:

    lay stake   = round2(S_b * P_b / P_l)
    commission  = c * max(0, max(S_b * (P_b - 1), S_l))
    margin      = S_b * (P_b - 1) - S_l * (P_l - 1) - commission

S_b * (P_b - 1) is the back leg's gross win and S_l is the lay leg's gross
win; commission is charged on whichever leg would be the profitable one.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from edgeline.config.trading import StrategyConfig
from edgeline.services.trading.errors import TradeValidationError
from edgeline.services.trading.gateway import RunnerOutcome

CENT = Decimal("0.01")
ZERO = Decimal("0")


def round_money(value: Decimal) -> Decimal:
    """Round to pennies, half up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _check_leg(stake: Decimal, price: Decimal, leg: str) -> None:
    if stake <= 0:
        raise TradeValidationError(f"{leg} stake must be positive, got {stake}")
    if price <= 1:
        raise TradeValidationError(f"{leg} price must be greater than 1, got {price}")


def lay_stake_for(back_stake: Decimal, back_price: Decimal, lay_price: Decimal) -> Decimal:
    """Lay stake that equalizes the position across outcomes."""
    _check_leg(back_stake, back_price, "Back")
    _check_leg(Decimal(1), lay_price, "Lay")
    return round_money(back_stake * back_price / lay_price)


def projected_commission(
    back_stake: Decimal,
    back_price: Decimal,
    lay_stake: Decimal,
    commission_rate: Decimal,
) -> Decimal:
    """Commission on the profitable leg's gross win."""
    back_leg_win = back_stake * (back_price - 1)
    lay_leg_win = lay_stake
    return round_money(commission_rate * max(ZERO, max(back_leg_win, lay_leg_win)))


def locked_margin(
    back_stake: Decimal,
    back_price: Decimal,
    lay_stake: Decimal,
    lay_price: Decimal,
    commission: Decimal,
) -> Decimal:
    """Margin locked in by the hedge, net of commission."""
    return back_stake * (back_price - 1) - lay_stake * (lay_price - 1) - commission


@dataclass(frozen=True)
class HedgeQuote:
    """What laying off at a given price would lock in."""

    lay_price: Decimal
    lay_stake: Decimal
    commission: Decimal
    margin: Decimal


def quote_hedge(
    back_stake: Decimal,
    back_price: Decimal,
    lay_price: Decimal,
    commission_rate: Decimal,
    lay_stake: Decimal | None = None,
) -> HedgeQuote:
    """Price a hedge. The lay stake defaults to the balanced stake."""
    if lay_stake is None:
        lay_stake = lay_stake_for(back_stake, back_price, lay_price)
    commission = projected_commission(back_stake, back_price, lay_stake, commission_rate)
    return HedgeQuote(
        lay_price=lay_price,
        lay_stake=lay_stake,
        commission=commission,
        margin=round_money(
            locked_margin(back_stake, back_price, lay_stake, lay_price, commission)
        ),
    )


class HedgeReason(str, Enum):
    MARGIN = "margin"
    CUTOFF = "cutoff"


def hedge_trigger(
    quote: HedgeQuote, minutes_to_kickoff: float, config: StrategyConfig
) -> HedgeReason | None:
    """
    Decide whether to lay off now.

    Fires on margin >= min_margin, or unconditionally once inside the hedge
    cutoff. The margin check wins when both hold.
    """
    if quote.margin >= config.min_margin:
        return HedgeReason.MARGIN
    if minutes_to_kickoff <= config.hedge_cutoff_minutes:
        return HedgeReason.CUTOFF
    return None


def unhedged_pnl(
    back_stake: Decimal,
    back_price: Decimal,
    outcome: RunnerOutcome,
    commission_rate: Decimal,
    lay_stake: Decimal = ZERO,
    lay_price: Decimal | None = None,
) -> Decimal:
    """
    Realised P&L of a back position that was not fully laid off.

    lay_stake is whatever part of a lay matched before the trade was
    abandoned. Commission is charged on net winnings in the market.
    """
    if outcome == RunnerOutcome.VOID:
        return ZERO.quantize(CENT)
    if lay_stake > 0 and lay_price is None:
        raise TradeValidationError("A matched lay stake needs its price")

    if outcome == RunnerOutcome.WIN:
        net = back_stake * (back_price - 1)
        if lay_stake > 0:
            net -= lay_stake * (lay_price - 1)
    else:
        net = lay_stake - back_stake
    return round_money(net - commission_rate * max(ZERO, net))
