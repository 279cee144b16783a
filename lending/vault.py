"""
vault.py - Allocation Vaults

A vault records an owner's target split of assets across markets. Only the
bookkeeping lives here: creating the record, validating allocations and
stamping rebalances. Choosing allocations is left to the owner; rebalance
does not move funds.
"""

from __future__ import annotations
from dataclasses import replace
from typing import Container, Mapping

from .core import BPS_SCALE, MarketId, VaultStrategy, InvalidVaultAllocation
from .records import Vault


def create_vault(
    owner: str,
    strategy: VaultStrategy,
    now: int,
    rebalance_threshold_bps: int = 500,
) -> Vault:
    if not owner:
        raise ValueError("Vault owner cannot be empty")
    if not 0 <= rebalance_threshold_bps <= BPS_SCALE:
        raise InvalidVaultAllocation(
            f"rebalance threshold {rebalance_threshold_bps} outside [0, {BPS_SCALE}]"
        )
    return Vault(
        owner=owner,
        strategy=strategy,
        created_at=now,
        rebalance_threshold_bps=rebalance_threshold_bps,
        last_rebalance=now,
    )


def validate_allocations(allocations: Mapping[MarketId, int], known_markets: Container[MarketId]) -> None:
    """
    Raises:
        InvalidVaultAllocation: On unknown markets, negative weights, or a
            total above 10000 bps
    """
    total = 0
    for market_id, bps in allocations.items():
        if market_id not in known_markets:
            raise InvalidVaultAllocation(f"allocation references unknown market {market_id}")
        if bps < 0:
            raise InvalidVaultAllocation(f"allocation for market {market_id} is negative")
        total += bps
    if total > BPS_SCALE:
        raise InvalidVaultAllocation(f"allocations sum to {total} bps, above {BPS_SCALE}")


def set_allocations(
    vault: Vault,
    allocations: Mapping[MarketId, int],
    known_markets: Container[MarketId],
) -> Vault:
    validate_allocations(allocations, known_markets)
    return replace(vault, allocations=dict(allocations))


def rebalance(vault: Vault, now: int) -> Vault:
    """Stamp a rebalance. Funds are not moved."""
    return replace(vault, last_rebalance=now)


def allocation_drift_bps(vault: Vault, current: Mapping[MarketId, int]) -> int:
    """Largest absolute gap between target and current weights, in bps."""
    markets = set(vault.allocations) | set(current)
    if not markets:
        return 0
    return max(abs(vault.allocations.get(m, 0) - current.get(m, 0)) for m in markets)


def needs_rebalance(vault: Vault, current: Mapping[MarketId, int]) -> bool:
    return allocation_drift_bps(vault, current) > vault.rebalance_threshold_bps
