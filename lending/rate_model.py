"""
rate_model.py - Utilization-Kinked Interest Rate Curve

Pure functions mapping a market's utilization to per-second borrow and supply
rates. No state, no ledger access.

Rates are per-second fractions scaled by SCALE (1e18). Utilization is in basis
points. The borrow curve is piecewise linear with a kink at the optimal
utilization:

    u <  U*:  rate = base + slope1 * u / U*
    u >= U*:  rate = base + slope1 + slope2 * (u - U*) / (10000 - U*)

Both branches equal base + slope1 at u == U*, so the curve is continuous and
non-decreasing. Lenders earn the borrow rate scaled by utilization, less the
protocol fee:

    supply = borrow * u / 10000 * (10000 - fee) / 10000

The float helpers at the bottom (annual_rate, rate_curve) are for reporting
only; nothing that moves balances reads them.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Dict, Optional, Sequence, Union

import numpy as np

from .config import ProtocolParams, DEFAULT_PARAMS
from .core import SCALE, BPS_SCALE, SECONDS_PER_YEAR
from .fixed_point import (
    U128_MAX, checked, checked_add, checked_sub, mul_div,
)


Numeric = Union[float, np.ndarray]


# ============================================================================
# PURE RATE FUNCTIONS
# ============================================================================

def utilization_rate(total_borrowed: int, total_supplied: int) -> int:
    """
    Fraction of supplied assets currently lent out, in bps.

    Returns 0 when nothing is supplied and never more than 10000.
    """
    if total_supplied == 0:
        return 0
    utilization = mul_div(total_borrowed, BPS_SCALE, total_supplied, U128_MAX)
    return min(utilization, BPS_SCALE)


def borrow_rate(utilization_bps: int, params: ProtocolParams = DEFAULT_PARAMS) -> int:
    """
    Per-second borrow rate (scaled by SCALE) at a given utilization.

    Args:
        utilization_bps: Utilization in [0, 10000]
        params: Curve parameters

    Raises:
        ArithmeticOverflow: If utilization is outside [0, 10000] or any step
            leaves u128
    """
    checked(utilization_bps, BPS_SCALE)
    optimal = params.optimal_utilization_bps

    if utilization_bps < optimal:
        variable = mul_div(params.slope_1_per_second, utilization_bps, optimal, U128_MAX)
        return checked_add(params.base_rate_per_second, variable, U128_MAX)

    excess = checked_sub(utilization_bps, optimal, U128_MAX)
    steep = mul_div(params.slope_2_per_second, excess, BPS_SCALE - optimal, U128_MAX)
    at_kink = checked_add(params.base_rate_per_second, params.slope_1_per_second, U128_MAX)
    return checked_add(at_kink, steep, U128_MAX)


def supply_rate(borrow_rate_per_second: int, utilization_bps: int, protocol_fee_bps: int) -> int:
    """Per-second rate earned by lenders after the protocol's cut."""
    gross = mul_div(borrow_rate_per_second, utilization_bps, BPS_SCALE, U128_MAX)
    return mul_div(gross, checked_sub(BPS_SCALE, protocol_fee_bps, U128_MAX), BPS_SCALE, U128_MAX)


def rates_for(total_borrowed: int, total_supplied: int,
              params: ProtocolParams = DEFAULT_PARAMS,
              protocol_fee_bps: Optional[int] = None) -> Dict[str, int]:
    """Utilization, borrow rate and supply rate for a pair of market totals."""
    fee = params.protocol_fee_bps if protocol_fee_bps is None else protocol_fee_bps
    utilization = utilization_rate(total_borrowed, total_supplied)
    borrow = borrow_rate(utilization, params)
    return {
        'utilization_bps': utilization,
        'borrow_rate': borrow,
        'supply_rate': supply_rate(borrow, utilization, fee),
    }


# ============================================================================
# REPORTING
# ============================================================================

def annual_rate(rate_per_second: int) -> Decimal:
    """
    Simple annual rate (APR) for a per-second scaled rate.

    Example:
        annual_rate(BASE_RATE_PER_SECOND)  # Decimal('0.02000000...')
    """
    return Decimal(rate_per_second) * SECONDS_PER_YEAR / Decimal(SCALE)


def compounded_apy(rate_per_second: Numeric) -> Numeric:
    """APY of a per-second rate (float fraction) compounded every second for a year."""
    r = np.asarray(rate_per_second, dtype=float)
    return np.expm1(SECONDS_PER_YEAR * np.log1p(r))


def rate_curve(utilizations: Sequence[int],
               params: ProtocolParams = DEFAULT_PARAMS) -> Dict[str, np.ndarray]:
    """
    Evaluate the rate curve over many utilization points.

    Exact integer rates are computed per point and then converted to float
    arrays for analysis or plotting.

    Args:
        utilizations: Utilization values in bps
        params: Curve parameters

    Returns:
        Dict of numpy arrays keyed by utilization_bps, borrow_apr, supply_apr
        and borrow_apy
    """
    points = np.asarray(utilizations, dtype=np.int64)
    if points.ndim != 1:
        raise ValueError("utilizations must be one-dimensional")
    if np.any(points < 0) or np.any(points > BPS_SCALE):
        raise ValueError(f"utilizations must be in [0, {BPS_SCALE}]")

    borrow = np.array([borrow_rate(int(u), params) for u in points], dtype=float)
    supply = np.array(
        [supply_rate(borrow_rate(int(u), params), int(u), params.protocol_fee_bps) for u in points],
        dtype=float,
    )
    per_second_borrow = borrow / SCALE
    return {
        'utilization_bps': points,
        'borrow_apr': per_second_borrow * SECONDS_PER_YEAR,
        'supply_apr': supply / SCALE * SECONDS_PER_YEAR,
        'borrow_apy': compounded_apy(per_second_borrow),
    }
