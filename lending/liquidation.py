"""
liquidation.py - Health Factor and Liquidation Math

Pure functions over values and prices. Values are in quote units:

    value = amount * price / PRICE_SCALE

Health factor, in bps (10000 == 1.0):

    health_factor_bps = collateral_value * liquidation_threshold_bps / borrowed_value

An account with no debt reports MAX_HEALTH_FACTOR. An account is liquidatable
below 10000. For accounts with collateral in several markets the
threshold-weighted values are summed first (risk_adjusted_value) and divided
once by total debt value.

A liquidator repaying `repay_amount` of debt receives collateral worth the
repayment plus a bonus, converted through both oracle prices:

    bonus            = repay_amount * bonus_bps / 10000
    collateral_seized = (repay_amount + bonus) * debt_price / collateral_price
"""

from __future__ import annotations
from decimal import Decimal
from typing import Iterable, Tuple

from .core import (
    BPS_SCALE, PRICE_SCALE, LIQUIDATION_BONUS_BPS, MAX_HEALTH_FACTOR, MIN_HEALTH_FACTOR_BPS,
    InvalidOracle, SlippageExceeded,
)
from .fixed_point import U128_MAX, checked_add, checked_div, checked_mul, mul_div


def asset_value(amount: int, price: int) -> int:
    """Quote-unit value of `amount` at an oracle price."""
    if price <= 0:
        raise InvalidOracle(f"price must be positive, got {price}")
    return mul_div(amount, price, PRICE_SCALE, U128_MAX)


def risk_adjusted_value(value: int, threshold_bps: int) -> int:
    """value * threshold, kept in bps-scaled units to defer rounding to one division."""
    return checked_mul(value, threshold_bps, U128_MAX)


def health_factor_bps(collateral_value: int, liquidation_threshold_bps: int, borrowed_value: int) -> int:
    """
    Health factor for a single collateral/debt pair.

    Example:
        health_factor_bps(100, 8500, 85)  # 10000, exactly at the boundary
    """
    if borrowed_value == 0:
        return MAX_HEALTH_FACTOR
    return health_factor_from_adjusted(
        risk_adjusted_value(collateral_value, liquidation_threshold_bps), borrowed_value
    )


def health_factor_from_adjusted(adjusted_collateral: int, borrowed_value: int) -> int:
    """Health factor from a summed risk-adjusted collateral value."""
    if borrowed_value == 0:
        return MAX_HEALTH_FACTOR
    return min(checked_div(adjusted_collateral, borrowed_value, U128_MAX), MAX_HEALTH_FACTOR)


def account_health(
    collateral: Iterable[Tuple[int, int]],
    debts: Iterable[int],
) -> int:
    """
    Health factor across markets.

    Args:
        collateral: (value, liquidation_threshold_bps) per collateral market
        debts: debt value per borrow market
    """
    adjusted = 0
    for value, threshold in collateral:
        adjusted = checked_add(adjusted, risk_adjusted_value(value, threshold), U128_MAX)
    borrowed = 0
    for value in debts:
        borrowed = checked_add(borrowed, value, U128_MAX)
    return health_factor_from_adjusted(adjusted, borrowed)


def borrow_capacity(collateral: Iterable[Tuple[int, int]]) -> int:
    """Total debt value an account may carry: sum of value * ltv / 10000."""
    total = 0
    for value, ltv_bps in collateral:
        total = checked_add(total, risk_adjusted_value(value, ltv_bps), U128_MAX)
    return total // BPS_SCALE


def max_borrow(collateral_value: int, ltv_bps: int, token_price: int) -> int:
    """Largest amount of a token (at `token_price`) that `collateral_value` supports."""
    if token_price <= 0:
        raise InvalidOracle(f"price must be positive, got {token_price}")
    capacity = mul_div(collateral_value, ltv_bps, BPS_SCALE, U128_MAX)
    return mul_div(capacity, PRICE_SCALE, token_price, U128_MAX)


def is_liquidatable(health_bps: int) -> bool:
    return health_bps < MIN_HEALTH_FACTOR_BPS


def liquidation_bonus(repay_amount: int, bonus_bps: int = LIQUIDATION_BONUS_BPS) -> int:
    return mul_div(repay_amount, bonus_bps, BPS_SCALE)


def collateral_to_seize(
    repay_amount: int,
    debt_price: int,
    collateral_price: int,
    bonus_bps: int = LIQUIDATION_BONUS_BPS,
) -> int:
    """
    Collateral owed to a liquidator for repaying `repay_amount` of debt.

    With equal prices this is repay_amount + bonus.

    Example:
        collateral_to_seize(1_000_000, PRICE_SCALE, PRICE_SCALE)  # 1_050_000
    """
    if debt_price <= 0 or collateral_price <= 0:
        raise InvalidOracle(
            f"prices must be positive, got debt={debt_price} collateral={collateral_price}"
        )
    gross = checked_add(repay_amount, liquidation_bonus(repay_amount, bonus_bps))
    return mul_div(gross, debt_price, collateral_price)


def check_slippage(collateral_seized: int, min_collateral_amount: int) -> None:
    """Raise SlippageExceeded when the payout is below the caller's floor."""
    if collateral_seized < min_collateral_amount:
        raise SlippageExceeded(
            f"collateral seized {collateral_seized} below minimum {min_collateral_amount}"
        )


def health_factor_ratio(health_bps: int) -> Decimal:
    """Health factor as a plain ratio (1.0 == liquidation boundary), for display."""
    return Decimal(health_bps) / BPS_SCALE
