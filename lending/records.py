"""
records.py - Stored Records and Storage Adapters

Frozen dataclasses for everything the lending core persists, plus the adapter
functions that convert them to and from plain state dicts at the storage
boundary.

ARCHITECTURE:
=============

1. FROZEN RECORDS (value semantics):
   - GlobalConfig: protocol authority, treasury, fee, market count
   - Market: one per listed asset; risk config, totals, interest indices
   - BorrowPosition: one per (user, market) with outstanding debt
   - Vault: one per owner; strategy tag and target allocations

   Every change produces a NEW instance via dataclasses.replace(); nothing
   is mutated in place, so an operation can compute all of its new records
   before committing any of them.

2. ADAPTERS (to_state_dict / load_*):
   - The ONLY place records are flattened for a record store.
   - Vault allocations become canonical JSON bytes here and nowhere else.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping
import json

from .core import (
    SCALE, BPS_SCALE, PROTOCOL_FEE_BPS, VaultStrategy, MarketId, InvalidVaultAllocation,
)


# ============================================================================
# RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class GlobalConfig:
    """
    Protocol-wide configuration, created once at initialization.

    Passed explicitly into market creation, which returns a replacement
    rather than mutating it.
    """
    authority: str
    treasury: str
    protocol_fee_bps: int = PROTOCOL_FEE_BPS
    market_count: int = 0

    def __post_init__(self):
        if not self.authority:
            raise ValueError("GlobalConfig authority cannot be empty")
        if not self.treasury:
            raise ValueError("GlobalConfig treasury cannot be empty")
        if not 0 <= self.protocol_fee_bps <= BPS_SCALE:
            raise ValueError(f"protocol_fee_bps must be in [0, {BPS_SCALE}], got {self.protocol_fee_bps}")


@dataclass(frozen=True, slots=True)
class Market:
    """
    Immutable snapshot of one lending market.

    Invariants:
        total_supplied >= total_borrowed
        total_supply_shares == 0 implies total_supplied == 0
        cumulative indices never decrease
    """
    market_id: MarketId
    asset: str
    share_token: str
    ltv_bps: int
    liquidation_threshold_bps: int
    oracle: str = ""
    creator: str = ""
    created_at: int = 0
    total_supplied: int = 0
    total_borrowed: int = 0
    total_supply_shares: int = 0
    cumulative_borrow_index: int = SCALE
    cumulative_supply_index: int = SCALE
    last_accrual_time: int = 0
    paused: bool = False

    def __post_init__(self):
        if not self.oracle:
            object.__setattr__(self, 'oracle', self.asset)

    @property
    def available_liquidity(self) -> int:
        """Unlent underlying held by the reserve."""
        return self.total_supplied - self.total_borrowed

    @property
    def key(self) -> str:
        return f"market:{self.market_id}"


@dataclass(frozen=True, slots=True)
class BorrowPosition:
    """
    A user's debt in one market.

    principal already includes all interest up to the moment the snapshot
    was taken; current debt is principal scaled by index growth since then.
    """
    user: str
    market_id: MarketId
    principal: int
    borrow_index_snapshot: int
    created_at: int
    last_updated: int

    @property
    def key(self) -> str:
        return f"position:{self.user}:{self.market_id}"


@dataclass(frozen=True, slots=True)
class Vault:
    """Owner-managed allocation targets across markets."""
    owner: str
    strategy: VaultStrategy
    created_at: int
    allocations: Mapping[MarketId, int] = field(default_factory=dict)
    total_assets: int = 0
    rebalance_threshold_bps: int = 500
    last_rebalance: int = 0

    def __post_init__(self):
        if not isinstance(self.strategy, VaultStrategy):
            object.__setattr__(self, 'strategy', VaultStrategy(self.strategy))
        object.__setattr__(self, 'allocations', {int(k): int(v) for k, v in self.allocations.items()})

    @property
    def key(self) -> str:
        return f"vault:{self.owner}"


# ============================================================================
# ADAPTER FUNCTIONS
# ============================================================================

def encode_allocations(allocations: Mapping[MarketId, int]) -> bytes:
    """Canonical byte encoding of an allocation map (sorted keys, no whitespace)."""
    payload = {str(k): int(v) for k, v in sorted(allocations.items())}
    return json.dumps(payload, sort_keys=True, separators=(',', ':')).encode('utf-8')


def decode_allocations(raw: bytes) -> Dict[MarketId, int]:
    """
    Inverse of encode_allocations.

    Raises:
        InvalidVaultAllocation: If the bytes are not a JSON object of
            integer market ids to integer bps
    """
    if not raw:
        return {}
    try:
        payload = json.loads(raw.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidVaultAllocation(f"allocations are not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise InvalidVaultAllocation("allocations must encode an object")
    try:
        return {int(k): int(v) for k, v in payload.items()}
    except (TypeError, ValueError) as exc:
        raise InvalidVaultAllocation(f"allocations must map ints to ints: {exc}") from exc


def to_state_dict(record: Any) -> Dict[str, Any]:
    """
    Flatten a record into a state dict for a record store.

    Args:
        record: GlobalConfig, Market, BorrowPosition or Vault

    Returns:
        Dictionary of primitive values
    """
    if isinstance(record, GlobalConfig):
        return {
            'authority': record.authority,
            'treasury': record.treasury,
            'protocol_fee_bps': record.protocol_fee_bps,
            'market_count': record.market_count,
        }
    if isinstance(record, Market):
        return {
            'market_id': record.market_id,
            'asset': record.asset,
            'share_token': record.share_token,
            'oracle': record.oracle,
            'ltv_bps': record.ltv_bps,
            'liquidation_threshold_bps': record.liquidation_threshold_bps,
            'creator': record.creator,
            'created_at': record.created_at,
            'total_supplied': record.total_supplied,
            'total_borrowed': record.total_borrowed,
            'total_supply_shares': record.total_supply_shares,
            'cumulative_borrow_index': record.cumulative_borrow_index,
            'cumulative_supply_index': record.cumulative_supply_index,
            'last_accrual_time': record.last_accrual_time,
            'paused': record.paused,
        }
    if isinstance(record, BorrowPosition):
        return {
            'user': record.user,
            'market_id': record.market_id,
            'principal': record.principal,
            'borrow_index_snapshot': record.borrow_index_snapshot,
            'created_at': record.created_at,
            'last_updated': record.last_updated,
        }
    if isinstance(record, Vault):
        return {
            'owner': record.owner,
            'strategy': record.strategy.value,
            'total_assets': record.total_assets,
            'allocations': encode_allocations(record.allocations),
            'rebalance_threshold_bps': record.rebalance_threshold_bps,
            'last_rebalance': record.last_rebalance,
            'created_at': record.created_at,
        }
    raise TypeError(f"Cannot convert {type(record).__name__} to a state dict")


def load_global_config(raw: Mapping[str, Any]) -> GlobalConfig:
    return GlobalConfig(
        authority=raw['authority'],
        treasury=raw['treasury'],
        protocol_fee_bps=int(raw.get('protocol_fee_bps', PROTOCOL_FEE_BPS)),
        market_count=int(raw.get('market_count', 0)),
    )


def load_market(raw: Mapping[str, Any]) -> Market:
    """
    Rebuild a Market from its state dict.

    Example:
        market = load_market(store['market:0'])
        rate = exchange_rate(market)
    """
    return Market(
        market_id=int(raw['market_id']),
        asset=raw['asset'],
        share_token=raw['share_token'],
        oracle=raw.get('oracle', ''),
        ltv_bps=int(raw['ltv_bps']),
        liquidation_threshold_bps=int(raw['liquidation_threshold_bps']),
        creator=raw.get('creator', ''),
        created_at=int(raw.get('created_at', 0)),
        total_supplied=int(raw.get('total_supplied', 0)),
        total_borrowed=int(raw.get('total_borrowed', 0)),
        total_supply_shares=int(raw.get('total_supply_shares', 0)),
        cumulative_borrow_index=int(raw.get('cumulative_borrow_index', SCALE)),
        cumulative_supply_index=int(raw.get('cumulative_supply_index', SCALE)),
        last_accrual_time=int(raw.get('last_accrual_time', 0)),
        paused=bool(raw.get('paused', False)),
    )


def load_position(raw: Mapping[str, Any]) -> BorrowPosition:
    return BorrowPosition(
        user=raw['user'],
        market_id=int(raw['market_id']),
        principal=int(raw['principal']),
        borrow_index_snapshot=int(raw['borrow_index_snapshot']),
        created_at=int(raw.get('created_at', 0)),
        last_updated=int(raw.get('last_updated', 0)),
    )


def load_vault(raw: Mapping[str, Any]) -> Vault:
    return Vault(
        owner=raw['owner'],
        strategy=VaultStrategy(int(raw['strategy'])),
        created_at=int(raw.get('created_at', 0)),
        allocations=decode_allocations(raw.get('allocations', b'')),
        total_assets=int(raw.get('total_assets', 0)),
        rebalance_threshold_bps=int(raw.get('rebalance_threshold_bps', 500)),
        last_rebalance=int(raw.get('last_rebalance', 0)),
    )
