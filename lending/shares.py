"""
shares.py - Lender Share Accounting

Lenders hold shares of a market's total_supplied. Shares are issued and
redeemed at the market's exchange rate:

    exchange_rate = total_supplied * SCALE / total_supply_shares   (SCALE when no shares)

Conversions are computed straight from the two totals rather than through the
already-floored rate, and always floor in the protocol's favour:

    shares_minted     = amount * total_supply_shares / total_supplied
    underlying_paid   = shares * total_supplied / total_supply_shares
    shares_burned_for = ceil(amount * total_supply_shares / total_supplied)

Minting and burning at the current rate never lowers it; only accrual raises
it. Burning the last outstanding share pays out the whole of total_supplied,
so a market with no shares always has nothing supplied.
"""

from __future__ import annotations
from dataclasses import replace
from typing import Tuple

from .core import (
    SCALE, InsufficientLiquidity, InsufficientShares, InvalidAmount,
)
from .fixed_point import (
    U128_MAX, checked_add, checked_sub, mul_div, mul_div_ceil,
)
from .records import Market


def exchange_rate(market: Market) -> int:
    """Underlying per share, scaled by SCALE."""
    if market.total_supply_shares == 0:
        return SCALE
    return mul_div(market.total_supplied, SCALE, market.total_supply_shares, U128_MAX)


def available_liquidity(market: Market) -> int:
    """Supplied value not currently lent out."""
    return checked_sub(market.total_supplied, market.total_borrowed)


def shares_for_deposit(market: Market, amount: int) -> int:
    """Shares a deposit of `amount` would mint (floor)."""
    if market.total_supply_shares == 0:
        return amount
    return mul_div(amount, market.total_supply_shares, market.total_supplied)


def underlying_for_shares(market: Market, shares: int) -> int:
    """Underlying paid for redeeming `shares` (floor; all of it for the last share)."""
    if shares == market.total_supply_shares:
        return market.total_supplied
    return mul_div(shares, market.total_supplied, market.total_supply_shares)


def shares_for_withdrawal(market: Market, amount: int) -> int:
    """Shares that must be burned to release exactly `amount` (ceil)."""
    if market.total_supply_shares == 0:
        raise InsufficientShares(f"{market.share_token}: no shares outstanding")
    return mul_div_ceil(amount, market.total_supply_shares, market.total_supplied)


def mint(market: Market, amount: int) -> Tuple[Market, int]:
    """
    Record a deposit and issue shares for it.

    Args:
        market: Market after accrual
        amount: Underlying deposited

    Returns:
        Tuple of (updated market, shares minted)

    Raises:
        InvalidAmount: If amount is not positive or too small to mint a share
        ArithmeticOverflow: If a total would leave u64
    """
    if amount <= 0:
        raise InvalidAmount(f"deposit must be positive, got {amount}")
    shares = shares_for_deposit(market, amount)
    if shares == 0:
        raise InvalidAmount(f"deposit of {amount} is worth less than one {market.share_token} share")
    updated = replace(
        market,
        total_supplied=checked_add(market.total_supplied, amount),
        total_supply_shares=checked_add(market.total_supply_shares, shares),
    )
    return updated, shares


def mint_for_value(market: Market, value: int, value_supplied_after: int) -> Tuple[Market, int]:
    """
    Issue shares for value already added to total_supplied.

    Used by accrual when the protocol's cut of interest becomes treasury
    shares: `value` is priced against the supply that existing holders own
    (`value_supplied_after - value`), so they are never diluted.
    """
    if value <= 0 or market.total_supply_shares == 0:
        return replace(market, total_supplied=value_supplied_after), 0
    holders_value = checked_sub(value_supplied_after, value)
    shares = mul_div(value, market.total_supply_shares, holders_value)
    updated = replace(
        market,
        total_supplied=value_supplied_after,
        total_supply_shares=checked_add(market.total_supply_shares, shares),
    )
    return updated, shares


def burn(market: Market, shares: int) -> Tuple[Market, int]:
    """
    Redeem shares for underlying.

    Returns:
        Tuple of (updated market, underlying paid out)

    Raises:
        InvalidAmount: If shares is not positive
        InsufficientShares: If more shares are burned than exist
        InsufficientLiquidity: If the payout exceeds unlent liquidity
    """
    if shares <= 0:
        raise InvalidAmount(f"shares to burn must be positive, got {shares}")
    if shares > market.total_supply_shares:
        raise InsufficientShares(
            f"{market.share_token}: burning {shares} of {market.total_supply_shares} outstanding"
        )
    underlying = underlying_for_shares(market, shares)
    available = available_liquidity(market)
    if underlying > available:
        raise InsufficientLiquidity(
            f"{market.asset}: withdrawal of {underlying} exceeds available liquidity {available}"
        )
    updated = replace(
        market,
        total_supplied=checked_sub(market.total_supplied, underlying),
        total_supply_shares=checked_sub(market.total_supply_shares, shares),
    )
    return updated, underlying


def burn_for_amount(market: Market, amount: int) -> Tuple[Market, int, int]:
    """
    Release at least `amount` of underlying, burning shares rounded up.

    Returns:
        Tuple of (updated market, shares burned, underlying released). The
        underlying equals `amount` unless the burn retires the last share,
        in which case it is the whole remaining supply.
    """
    if amount <= 0:
        raise InvalidAmount(f"amount must be positive, got {amount}")
    available = available_liquidity(market)
    if amount > available:
        raise InsufficientLiquidity(
            f"{market.asset}: payout of {amount} exceeds available liquidity {available}"
        )
    shares = shares_for_withdrawal(market, amount)
    if shares > market.total_supply_shares:
        raise InsufficientShares(
            f"{market.share_token}: {shares} shares needed, {market.total_supply_shares} outstanding"
        )
    released = market.total_supplied if shares == market.total_supply_shares else amount
    if released > available:
        raise InsufficientLiquidity(
            f"{market.asset}: payout of {released} exceeds available liquidity {available}"
        )
    updated = replace(
        market,
        total_supplied=checked_sub(market.total_supplied, released),
        total_supply_shares=checked_sub(market.total_supply_shares, shares),
    )
    return updated, shares, released
