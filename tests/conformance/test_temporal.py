"""
Temporal Conformance Tests

INVARIANT: Time only moves forward, and so does everything derived from it.

    ∀ market M, t1 <= t2:
        borrow_index(accrue(M, t2)) >= borrow_index(accrue(M, t1))
        supply_index(accrue(M, t2)) >= supply_index(accrue(M, t1))
        exchange_rate never decreases through accrual

    accrue(M, t) with t < M.last_accrual_time raises ClockRegression
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from lending import ClockRegression, accrue, exchange_rate
from tests.conftest import make_market


@st.composite
def markets(draw):
    supplied = draw(st.integers(min_value=1, max_value=10 ** 15))
    borrowed = draw(st.integers(min_value=0, max_value=supplied))
    shares = draw(st.integers(min_value=1, max_value=supplied))
    return make_market(total_supplied=supplied, total_borrowed=borrowed, total_supply_shares=shares)


class TestTemporalProperties:
    """Property-based time-ordering tests."""

    @given(markets(), st.lists(st.integers(min_value=0, max_value=10 ** 6), min_size=1, max_size=10))
    @settings(max_examples=200)
    def test_indices_and_rate_never_decrease(self, market, steps):
        """
        PROPERTY: Across any forward sequence of accruals nothing derived from time decreases.
        """
        now = 0
        current = market
        for step in steps:
            now += step
            updated = accrue(current, now).market
            assert updated.cumulative_borrow_index >= current.cumulative_borrow_index
            assert updated.cumulative_supply_index >= current.cumulative_supply_index
            assert updated.total_borrowed >= current.total_borrowed
            assert exchange_rate(updated) >= exchange_rate(current)
            assert updated.last_accrual_time == now
            current = updated

    @given(markets(), st.integers(min_value=1, max_value=10 ** 6))
    @settings(max_examples=100)
    def test_regression_always_rejected(self, market, back):
        later = accrue(market, 10 ** 7).market
        with pytest.raises(ClockRegression):
            accrue(later, 10 ** 7 - back)

    @given(markets(), st.integers(min_value=1, max_value=10 ** 6))
    @settings(max_examples=100)
    def test_longer_wait_costs_more(self, market, elapsed):
        short = accrue(market, elapsed).market
        long = accrue(market, elapsed + 1).market
        assert long.cumulative_borrow_index >= short.cumulative_borrow_index
        assert long.total_borrowed >= short.total_borrowed


class TestTemporalExamples:

    def test_operation_timestamps_are_ordered(self, parity_engine, clock):
        eng = parity_engine
        eng.supply("alice", 0, 10_000_000_000)
        clock.advance(10)
        eng.supply("bob", 1, 10_000_000_000)
        clock.advance(10)
        eng.borrow("bob", 0, 1_000_000_000)

        stamps = [r.timestamp for r in eng.operation_log]
        assert stamps == sorted(stamps)
        assert eng.get_market(0).last_accrual_time == clock.now()
