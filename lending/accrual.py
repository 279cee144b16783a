"""
accrual.py - Interest Accrual State Transition

accrue(market, now) advances a market's cumulative indices and aggregate
totals by the time elapsed since its last accrual. It is a pure function:
the caller receives a new Market inside an AccrualResult and decides whether
to commit it.

Per call, with elapsed = now - last_accrual_time:

    growth_b = SCALE + borrow_rate * elapsed
    growth_s = SCALE + supply_rate * elapsed

    cumulative_borrow_index = cumulative_borrow_index * growth_b / SCALE
    cumulative_supply_index = cumulative_supply_index * growth_s / SCALE
    total_borrowed          = total_borrowed * growth_b / SCALE

Simple interest within one call, multiplicative across calls. Lenders'
existing claim grows by growth_s. The rest of the borrow interest (the
protocol fee) is added to total_supplied as newly minted treasury shares, so

    total_supplied grows by exactly the borrow interest

and the reserve's cash always equals total_supplied - total_borrowed.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Optional

from .config import ProtocolParams, DEFAULT_PARAMS
from .core import SCALE, ClockRegression
from .fixed_point import (
    U128_MAX, checked_add, checked_mul, checked_sub, mul_div,
)
from .rate_model import utilization_rate, borrow_rate, supply_rate
from .records import Market
from .shares import mint_for_value


@dataclass(frozen=True, slots=True)
class AccrualResult:
    """
    Outcome of one accrual step.

    Attributes:
        market: Market after accrual (unchanged when nothing elapsed)
        elapsed: Seconds accrued over
        utilization_bps: Utilization the rates were taken at
        borrow_rate: Per-second borrow rate used
        supply_rate: Per-second supply rate used
        borrow_interest: Increase in total_borrowed
        supply_interest: Increase in the lenders' claim on total_supplied
        protocol_fee: Interest retained by the protocol
        protocol_shares: Shares minted to the treasury for protocol_fee
    """
    market: Market
    elapsed: int = 0
    utilization_bps: int = 0
    borrow_rate: int = 0
    supply_rate: int = 0
    borrow_interest: int = 0
    supply_interest: int = 0
    protocol_fee: int = 0
    protocol_shares: int = 0

    @property
    def accrued(self) -> bool:
        return self.elapsed > 0


def growth_factor(rate_per_second: int, elapsed: int) -> int:
    """SCALE + rate * elapsed, checked against u128."""
    return checked_add(SCALE, checked_mul(rate_per_second, elapsed, U128_MAX), U128_MAX)


def accrue(
    market: Market,
    now: int,
    params: ProtocolParams = DEFAULT_PARAMS,
    protocol_fee_bps: Optional[int] = None,
) -> AccrualResult:
    """
    Advance a market to `now`.

    PURE FUNCTION - returns a new Market; the input is untouched.

    Args:
        market: Market to accrue
        now: Current time in seconds
        params: Rate curve parameters
        protocol_fee_bps: Fee override (defaults to params.protocol_fee_bps)

    Returns:
        AccrualResult with the accrued market and a breakdown of interest

    Raises:
        ClockRegression: If now is before the market's last accrual
        ArithmeticOverflow: If any product leaves its range
    """
    fee_bps = params.protocol_fee_bps if protocol_fee_bps is None else protocol_fee_bps

    if market.total_supplied == 0 and market.total_borrowed == 0:
        if now == market.last_accrual_time:
            return AccrualResult(market=market)
        if now < market.last_accrual_time:
            raise ClockRegression(
                f"{market.asset}: accrual at {now} precedes last accrual {market.last_accrual_time}"
            )
        return AccrualResult(market=replace(market, last_accrual_time=now))

    elapsed = now - market.last_accrual_time
    if elapsed == 0:
        return AccrualResult(market=market)
    if elapsed < 0:
        raise ClockRegression(
            f"{market.asset}: accrual at {now} precedes last accrual {market.last_accrual_time}"
        )

    utilization = utilization_rate(market.total_borrowed, market.total_supplied)
    b_rate = borrow_rate(utilization, params)
    s_rate = supply_rate(b_rate, utilization, fee_bps)

    growth_b = growth_factor(b_rate, elapsed)
    growth_s = growth_factor(s_rate, elapsed)

    borrow_index = mul_div(market.cumulative_borrow_index, growth_b, SCALE, U128_MAX)
    supply_index = mul_div(market.cumulative_supply_index, growth_s, SCALE, U128_MAX)

    new_borrowed = mul_div(market.total_borrowed, growth_b, SCALE)
    lenders_supplied = mul_div(market.total_supplied, growth_s, SCALE)

    borrow_interest = checked_sub(new_borrowed, market.total_borrowed)
    supply_interest = checked_sub(lenders_supplied, market.total_supplied)
    protocol_fee = checked_sub(borrow_interest, supply_interest)

    accrued = replace(
        market,
        total_borrowed=new_borrowed,
        cumulative_borrow_index=borrow_index,
        cumulative_supply_index=supply_index,
        last_accrual_time=now,
    )
    accrued, protocol_shares = mint_for_value(
        accrued, protocol_fee, checked_add(lenders_supplied, protocol_fee)
    )

    return AccrualResult(
        market=accrued,
        elapsed=elapsed,
        utilization_bps=utilization,
        borrow_rate=b_rate,
        supply_rate=s_rate,
        borrow_interest=borrow_interest,
        supply_interest=supply_interest,
        protocol_fee=protocol_fee,
        protocol_shares=protocol_shares,
    )


def project(market: Market, at: int, params: ProtocolParams = DEFAULT_PARAMS,
            protocol_fee_bps: Optional[int] = None) -> Market:
    """
    Market as it would look if accrued at `at`, for read-only queries.

    Times at or before the last accrual return the market unchanged.
    """
    if at <= market.last_accrual_time:
        return market
    return accrue(market, at, params, protocol_fee_bps).market
