"""Unit tests for decimal odds arithmetic and the exchange tick ladder."""

from decimal import Decimal

import pytest

from edgeline.services.pricing.odds import (
    apply_exchange_commission,
    devig,
    implied_probability,
    is_valid_tick,
    overround,
    probability_to_odds,
    round_to_tick,
)


class TestImpliedProbability:
    """Conversions between decimal odds and probability."""

    def test_evens(self):
        assert implied_probability(2.0) == pytest.approx(0.5)

    def test_rejects_odds_of_one_or_less(self):
        with pytest.raises(ValueError):
            implied_probability(1.0)
        with pytest.raises(ValueError):
            implied_probability(0.5)

    def test_probability_to_odds_round_trip(self):
        assert probability_to_odds(0.25) == pytest.approx(4.0)

    def test_probability_out_of_range(self):
        with pytest.raises(ValueError):
            probability_to_odds(1.0)


class TestDevig:
    """Proportional margin removal."""

    def test_devigged_market_sums_to_one(self):
        probs = devig([1.9, 2.0])
        assert sum(probs) == pytest.approx(1.0)

    def test_three_way_market(self):
        probs = devig([2.5, 3.4, 2.9])
        assert sum(probs) == pytest.approx(1.0)
        assert probs[0] > probs[2] > probs[1]

    def test_overround_of_fair_book_is_one(self):
        assert overround([2.0, 2.0]) == pytest.approx(1.0)


class TestExchangeCommission:
    def test_commission_reduces_net_winnings(self):
        assert apply_exchange_commission(3.0, 0.02) == pytest.approx(2.96)

    def test_zero_commission_unchanged(self):
        assert apply_exchange_commission(2.5, 0.0) == pytest.approx(2.5)


class TestTickLadder:
    """Betfair price ladder rounding."""

    @pytest.mark.parametrize(
        "price,expected",
        [
            (2.10, "2.10"),
            (2.013, "2.02"),
            (3.03, "3.05"),
            (4.56, "4.60"),
            (7.1, "7.20"),
            (12.3, "12.50"),
            (33.0, "34.00"),
            (57.0, "55.00"),
            (123.0, "120.00"),
        ],
    )
    def test_rounds_to_nearest_tick(self, price, expected):
        assert round_to_tick(price) == Decimal(expected)

    def test_clamps_to_ladder_bounds(self):
        assert round_to_tick(1.0) == Decimal("1.01")
        assert round_to_tick(5000) == Decimal("1000.00")

    def test_rounded_prices_are_valid_ticks(self):
        for raw in (1.337, 2.222, 3.333, 5.55, 8.88, 17.7, 26.6, 41.0, 77.0, 555.0):
            assert is_valid_tick(round_to_tick(raw))

    def test_off_ladder_price_is_invalid(self):
        assert is_valid_tick(Decimal("2.01")) is False
        assert is_valid_tick(Decimal("1.00")) is False
