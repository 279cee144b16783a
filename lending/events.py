"""
events.py - Observable Mutation Events

One frozen record per externally observable change, each carrying the
post-mutation aggregates and the time it happened. The engine hands them to
an EventSink; nothing in the core reads them back.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, List, Mapping, Type


@dataclass(frozen=True, slots=True)
class ProtocolInitialized:
    authority: str
    treasury: str
    protocol_fee_bps: int
    timestamp: int


@dataclass(frozen=True, slots=True)
class MarketCreated:
    market_id: int
    asset: str
    share_token: str
    ltv_bps: int
    liquidation_threshold_bps: int
    creator: str
    timestamp: int


@dataclass(frozen=True, slots=True)
class MarketPauseChanged:
    market_id: int
    paused: bool
    caller: str
    timestamp: int


@dataclass(frozen=True, slots=True)
class InterestAccrued:
    market_id: int
    borrow_interest: int
    protocol_fee: int
    cumulative_borrow_index: int
    cumulative_supply_index: int
    total_supplied: int
    total_borrowed: int
    timestamp: int


@dataclass(frozen=True, slots=True)
class Supplied:
    user: str
    market_id: int
    amount: int
    shares_minted: int
    total_supplied: int
    total_borrowed: int
    timestamp: int


@dataclass(frozen=True, slots=True)
class Borrowed:
    user: str
    market_id: int
    amount: int
    total_supplied: int
    total_borrowed: int
    timestamp: int


@dataclass(frozen=True, slots=True)
class Repaid:
    user: str
    market_id: int
    amount: int
    remaining_debt: int
    total_supplied: int
    total_borrowed: int
    timestamp: int


@dataclass(frozen=True, slots=True)
class Withdrawn:
    user: str
    market_id: int
    amount: int
    shares_burned: int
    total_supplied: int
    total_borrowed: int
    timestamp: int


@dataclass(frozen=True, slots=True)
class Liquidated:
    liquidator: str
    borrower: str
    debt_market_id: int
    collateral_market_id: int
    repay_amount: int
    collateral_seized: int
    health_factor_bps: int
    timestamp: int


@dataclass(frozen=True, slots=True)
class VaultCreated:
    owner: str
    strategy: int
    timestamp: int


@dataclass(frozen=True, slots=True)
class VaultRebalanced:
    owner: str
    allocations: Mapping[int, int]
    timestamp: int


class RecordingEventSink:
    """EventSink that keeps every event in emission order."""

    def __init__(self):
        self.events: List[Any] = []

    def emit(self, event: Any) -> None:
        self.events.append(event)

    def of_type(self, event_type: Type) -> List[Any]:
        return [e for e in self.events if isinstance(e, event_type)]

    def clear(self) -> None:
        self.events.clear()

    def __len__(self):
        return len(self.events)


class NullEventSink:
    def emit(self, event: Any) -> None:
        pass
