"""Tests for Kelly math and the position sizer."""

import math

import pytest

from evotrader.core.types import Direction
from evotrader.risk.kelly_criterion import expected_edge, kelly_fraction, raw_kelly_fraction
from evotrader.risk.position_sizer import PositionSizer
from factories import make_context, make_intent


class TestKellyFraction:
    """Pure Kelly formula."""

    def test_positive_edge(self) -> None:
        # f = 0.6 - 0.4 / 2.0 = 0.4
        assert kelly_fraction(0.6, 2.0, max_position_cap=0.5) == pytest.approx(0.4)

    def test_cap_applies(self) -> None:
        assert kelly_fraction(0.6, 2.0, max_position_cap=0.2) == pytest.approx(0.2)

    def test_negative_edge_is_zero(self) -> None:
        # f = 0.3 - 0.7 / 1.0 = -0.4
        assert raw_kelly_fraction(0.3, 1.0) == pytest.approx(-0.4)
        assert kelly_fraction(0.3, 1.0, max_position_cap=0.5) == 0.0

    @pytest.mark.parametrize("p,b", [(0.6, 0.0), (0.6, -1.0), (0.0, 2.0), (math.nan, 2.0), (0.6, math.inf)])
    def test_degenerate_inputs_are_zero(self, p: float, b: float) -> None:
        assert kelly_fraction(p, b, max_position_cap=0.5) == 0.0

    def test_fractional_kelly(self) -> None:
        assert kelly_fraction(0.6, 2.0, max_position_cap=0.5, kelly_multiplier=0.5) == pytest.approx(0.2)

    def test_expected_edge(self) -> None:
        assert expected_edge(0.6, 2.0) == pytest.approx(0.8)
        assert expected_edge(0.3, 1.0) == pytest.approx(-0.4)


class TestPositionSizer:
    """Sizing against the governor's equity."""

    @pytest.mark.asyncio
    async def test_size_from_stop_distance(self, governor) -> None:
        sizer = PositionSizer(governor, max_position_cap=0.5, kelly_multiplier=1.0, max_leverage=10)
        intent = make_intent(win_probability=0.6, payoff_ratio=2.0, stop_loss_pct=0.02, leverage=10)
        context = make_context(price=100.0)

        order = sizer.size(intent, context)

        # risk = 0.4 * 1000 = 400; stop distance = 2.0; size = 200, capped at 1000 * 10 / 100 = 100
        assert order is not None
        assert order.capital_fraction == pytest.approx(0.4)
        assert order.stop_distance == pytest.approx(2.0)
        assert order.size == pytest.approx(100.0)
        assert order.initial_margin <= governor.current_equity + 1e-9

    @pytest.mark.asyncio
    async def test_atr_stop_when_no_stop_pct(self, governor) -> None:
        sizer = PositionSizer(governor, max_position_cap=0.1, stop_atr_multiple=2.0, max_leverage=5)
        intent = make_intent(stop_loss_pct=None, take_profit_pct=None, leverage=5)
        context = make_context(price=100.0, atr=1.5)

        order = sizer.size(intent, context)

        # risk = 0.1 * 1000 = 100; stop = 3.0; size = 33.33 (< 1000 * 5 / 100 = 50)
        assert order is not None
        assert order.stop_distance == pytest.approx(3.0)
        assert order.size == pytest.approx(100.0 / 3.0)
        assert order.risk_amount == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_win_probability_is_capped_before_sizing(self, governor) -> None:
        sizer = PositionSizer(governor, max_position_cap=1.0)
        high = sizer.capital_fraction(make_intent(win_probability=0.95, payoff_ratio=2.0))
        capped = sizer.capital_fraction(make_intent(win_probability=0.75, payoff_ratio=2.0))

        assert high == pytest.approx(capped)
        assert high == pytest.approx(0.75 - 0.25 / 2.0)

    @pytest.mark.asyncio
    async def test_capped_probability_sizes_identical_orders(self, governor) -> None:
        sizer = PositionSizer(governor, max_position_cap=1.0, kelly_multiplier=1.0, max_leverage=100)
        context = make_context()

        high = sizer.size(make_intent(win_probability=0.95, payoff_ratio=2.0, leverage=50), context)
        capped = sizer.size(make_intent(win_probability=0.75, payoff_ratio=2.0, leverage=50), context)

        # f = 0.625, stop = 2% of 50000 = 1000; margin room = 1000 * 50 / 50000 = 1.0
        assert high.capital_fraction == pytest.approx(capped.capital_fraction)
        assert high.risk_amount == pytest.approx(capped.risk_amount)
        assert high.size == pytest.approx(capped.size)
        assert high.risk_amount == pytest.approx(625.0)
        assert high.size == pytest.approx(0.625)

    @pytest.mark.asyncio
    async def test_close_sized_to_open_position(self, governor) -> None:
        sizer = PositionSizer(governor)

        order = sizer.size_close(make_intent(reduce_only=True), make_context(), open_size=0.04)

        assert order.size == pytest.approx(0.04)
        assert order.reduce_only
        assert order.capital_fraction == 0.0
        assert order.risk_amount == 0.0
        assert sizer.size_close(make_intent(reduce_only=True), make_context(price=0.0), 0.04) is None

    @pytest.mark.asyncio
    async def test_negative_edge_sizes_to_zero(self, governor) -> None:
        sizer = PositionSizer(governor)
        order = sizer.size(make_intent(win_probability=0.3, payoff_ratio=1.0), make_context())

        assert order is not None
        assert order.size == 0.0
        assert not order.is_sendable

    @pytest.mark.asyncio
    async def test_leverage_clamped(self, governor) -> None:
        sizer = PositionSizer(governor, max_leverage=3)
        order = sizer.size(make_intent(leverage=20), make_context())

        assert order is not None
        assert order.leverage == 3

    @pytest.mark.asyncio
    async def test_invalid_price_returns_none(self, governor) -> None:
        sizer = PositionSizer(governor)
        assert sizer.size(make_intent(), make_context(price=0.0)) is None

    @pytest.mark.asyncio
    async def test_flat_intent_has_no_fraction(self, governor) -> None:
        sizer = PositionSizer(governor)
        assert sizer.capital_fraction(make_intent(direction=Direction.FLAT)) == 0.0
