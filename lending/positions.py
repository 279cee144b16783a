"""
positions.py - Borrow Position Debt Scaling

A BorrowPosition stores the debt realized at its last update (principal) and
the market's cumulative borrow index at that moment (snapshot). Its current
debt is:

    current_debt = principal * cumulative_borrow_index / borrow_index_snapshot

Every update realizes current debt first, applies the delta, and resets the
snapshot to the market's index, so interest already folded into principal is
never counted twice.

The market-side helpers (add_borrow, apply_repayment) keep the aggregate
total_borrowed in step with the positions.
"""

from __future__ import annotations
from dataclasses import replace
from typing import Optional, Tuple

from .core import InsufficientLiquidity, InvalidAmount
from .fixed_point import checked_add, checked_sub, mul_div
from .records import BorrowPosition, Market


def current_debt(position: BorrowPosition, market: Market) -> int:
    """Debt owed now, including interest since the last snapshot."""
    if position.principal == 0:
        return 0
    return mul_div(
        position.principal, market.cumulative_borrow_index, position.borrow_index_snapshot
    )


def open_position(user: str, market: Market, amount: int, now: int) -> BorrowPosition:
    """New position for a first borrow, snapshotted at the market's index."""
    if amount <= 0:
        raise InvalidAmount(f"borrow must be positive, got {amount}")
    return BorrowPosition(
        user=user,
        market_id=market.market_id,
        principal=amount,
        borrow_index_snapshot=market.cumulative_borrow_index,
        created_at=now,
        last_updated=now,
    )


def increase_debt(position: BorrowPosition, market: Market, amount: int, now: int) -> BorrowPosition:
    """
    Add a borrow to an existing position.

    PURE FUNCTION - realizes current debt, adds amount, resets the snapshot.
    """
    if amount <= 0:
        raise InvalidAmount(f"borrow must be positive, got {amount}")
    realized = current_debt(position, market)
    return replace(
        position,
        principal=checked_add(realized, amount),
        borrow_index_snapshot=market.cumulative_borrow_index,
        last_updated=now,
    )


def decrease_debt(
    position: BorrowPosition, market: Market, amount: int, now: int
) -> Optional[BorrowPosition]:
    """
    Apply a repayment to a position.

    Returns:
        The updated position, or None once the debt is fully repaid

    Raises:
        InvalidAmount: If amount is not positive or exceeds current debt
    """
    if amount <= 0:
        raise InvalidAmount(f"repayment must be positive, got {amount}")
    realized = current_debt(position, market)
    if amount > realized:
        raise InvalidAmount(f"repayment {amount} exceeds current debt {realized}")
    remaining = realized - amount
    if remaining == 0:
        return None
    return replace(
        position,
        principal=remaining,
        borrow_index_snapshot=market.cumulative_borrow_index,
        last_updated=now,
    )


def add_borrow(market: Market, amount: int) -> Market:
    """Lend `amount` out of the reserve."""
    available = checked_sub(market.total_supplied, market.total_borrowed)
    if amount > available:
        raise InsufficientLiquidity(
            f"{market.asset}: borrow of {amount} exceeds available liquidity {available}"
        )
    return replace(market, total_borrowed=checked_add(market.total_borrowed, amount))


def apply_repayment(market: Market, amount: int) -> Tuple[Market, int]:
    """
    Return `amount` to the reserve.

    Positions and the aggregate are floored independently, so a full repayment
    can exceed total_borrowed by a few units. That excess is credited through
    total_supplied, keeping reserve cash equal to total_supplied -
    total_borrowed. With shares outstanding it accrues to their holders; with
    none left it is issued at par as treasury shares, so supplied value never
    exists without shares.

    Returns:
        Tuple of (updated market, shares owed to the treasury)
    """
    if amount <= market.total_borrowed:
        return replace(market, total_borrowed=market.total_borrowed - amount), 0
    excess = amount - market.total_borrowed
    orphaned = excess if market.total_supply_shares == 0 else 0
    updated = replace(
        market,
        total_borrowed=0,
        total_supplied=checked_add(market.total_supplied, excess),
        total_supply_shares=checked_add(market.total_supply_shares, orphaned),
    )
    return updated, orphaned
