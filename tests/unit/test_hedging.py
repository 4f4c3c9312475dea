"""Unit tests for hedge arithmetic and the hedge trigger."""

from decimal import Decimal

import pytest

from edgeline.config.trading import StrategyConfig
from edgeline.services.trading.errors import TradeValidationError
from edgeline.services.trading.gateway import RunnerOutcome
from edgeline.services.trading.hedging import (
    HedgeReason,
    hedge_trigger,
    lay_stake_for,
    locked_margin,
    projected_commission,
    quote_hedge,
    unhedged_pnl,
)

D = Decimal
RATE = D("0.02")


class TestMarginFormula:
    """margin = Sb*(Pb-1) - Sl*(Pl-1) - commission"""

    def test_reference_example(self):
        # 10 x 1.08 - 11 x 0.90 - 0.22 = 10.8 - 9.9 - 0.22 = 0.68
        margin = locked_margin(D("10"), D("2.08"), D("11"), D("1.90"), D("0.22"))
        assert margin == D("0.68")

    def test_reference_example_commission(self):
        # Lay leg wins 11, back leg wins 10.80: commission on the larger
        assert projected_commission(D("10"), D("2.08"), D("11"), RATE) == D("0.22")

    def test_quote_with_explicit_lay_stake(self):
        quote = quote_hedge(D("10"), D("2.08"), D("1.90"), RATE, lay_stake=D("11"))
        assert quote.commission == D("0.22")
        assert quote.margin == D("0.68")


class TestLayStake:
    def test_balanced_lay_stake(self):
        assert lay_stake_for(D("10"), D("2.10"), D("1.90")) == D("11.05")

    def test_rounded_to_pennies(self):
        assert lay_stake_for(D("10"), D("2.10"), D("2.50")) == D("8.40")

    def test_invalid_inputs(self):
        with pytest.raises(TradeValidationError):
            lay_stake_for(D("0"), D("2.10"), D("1.90"))
        with pytest.raises(TradeValidationError):
            lay_stake_for(D("10"), D("2.10"), D("1.00"))


class TestQuoteHedge:
    def test_favourable_move(self):
        quote = quote_hedge(D("10"), D("2.10"), D("1.90"), RATE)
        # 11 - 11.05 * 0.9 - 0.22 = 0.835
        assert quote.lay_stake == D("11.05")
        assert quote.commission == D("0.22")
        assert quote.margin == D("0.84")

    def test_unfavourable_move(self):
        quote = quote_hedge(D("10"), D("2.10"), D("2.50"), RATE)
        # 11 - 8.40 * 1.5 - 0.02 * 11
        assert quote.lay_stake == D("8.40")
        assert quote.commission == D("0.22")
        assert quote.margin == D("-1.82")


class TestHedgeTrigger:
    @pytest.fixture
    def config(self):
        return StrategyConfig(min_margin=D("0.50"), hedge_cutoff_minutes=30, back_lead_minutes=60)

    def test_fires_on_margin(self, config):
        quote = quote_hedge(D("10"), D("2.10"), D("1.90"), RATE)
        assert hedge_trigger(quote, 45, config) == HedgeReason.MARGIN

    def test_waits_when_margin_too_small(self, config):
        quote = quote_hedge(D("10"), D("2.10"), D("2.50"), RATE)
        assert hedge_trigger(quote, 35, config) is None

    def test_cutoff_fires_regardless_of_margin(self, config):
        quote = quote_hedge(D("10"), D("2.10"), D("2.50"), RATE)
        assert hedge_trigger(quote, 30, config) == HedgeReason.CUTOFF
        assert hedge_trigger(quote, 5, config) == HedgeReason.CUTOFF

    def test_margin_reason_wins_inside_cutoff(self, config):
        quote = quote_hedge(D("10"), D("2.10"), D("1.90"), RATE)
        assert hedge_trigger(quote, 10, config) == HedgeReason.MARGIN


class TestUnhedgedPnl:
    def test_win_less_commission(self):
        assert unhedged_pnl(D("10"), D("2.10"), RunnerOutcome.WIN, RATE) == D("10.78")

    def test_lose(self):
        assert unhedged_pnl(D("10"), D("2.10"), RunnerOutcome.LOSE, RATE) == D("-10.00")

    def test_void(self):
        assert unhedged_pnl(D("10"), D("2.10"), RunnerOutcome.VOID, RATE) == D("0.00")

    def test_partial_lay_win(self):
        # 10 x 1.10 - 4.20 x 1.50 = 4.70, less 2% = 4.61
        pnl = unhedged_pnl(D("10"), D("2.10"), RunnerOutcome.WIN, RATE, lay_stake=D("4.20"), lay_price=D("2.50"))
        assert pnl == D("4.61")

    def test_partial_lay_lose(self):
        pnl = unhedged_pnl(D("10"), D("2.10"), RunnerOutcome.LOSE, RATE, lay_stake=D("4.20"), lay_price=D("2.50"))
        assert pnl == D("-5.80")

    def test_lay_stake_without_price_rejected(self):
        with pytest.raises(TradeValidationError):
            unhedged_pnl(D("10"), D("2.10"), RunnerOutcome.WIN, RATE, lay_stake=D("4.20"))
