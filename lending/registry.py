"""
registry.py - Protocol Configuration and Market Catalog

GlobalConfig is an explicit record: market creation takes the current config
and returns a replacement alongside the new Market, instead of bumping a
counter on shared state. Markets live in a MarketCatalog arena and are
addressed by the integer handle returned at creation.

Market creation validates, before anything is built:
    1. liquidation_threshold_bps > ltv_bps            (LiquidationThresholdTooLow)
    2. ltv_bps <= max_ltv_bps                         (InvalidLtvRatio)
    3. min_lt <= liquidation_threshold_bps <= 10000   (InvalidLiquidationThreshold)
"""

from __future__ import annotations
from dataclasses import replace
from typing import Dict, Iterator, List, Optional, Tuple

from .config import ProtocolParams, DEFAULT_PARAMS
from .core import (
    BPS_SCALE, MarketId,
    InvalidConfig, InvalidLiquidationThreshold, InvalidLtvRatio, LiquidationThresholdTooLow,
    MarketAlreadyInitialized, MarketLimitReached, MarketNotFound,
)
from .records import GlobalConfig, Market


def validate_market_config(
    ltv_bps: int,
    liquidation_threshold_bps: int,
    params: ProtocolParams = DEFAULT_PARAMS,
) -> None:
    """
    Check a market's risk parameters.

    Raises:
        LiquidationThresholdTooLow: If the threshold is not above the LTV
        InvalidLtvRatio: If the LTV is negative or above the protocol maximum
        InvalidLiquidationThreshold: If the threshold is outside
            [min_liquidation_threshold_bps, 10000]
    """
    if liquidation_threshold_bps <= ltv_bps:
        raise LiquidationThresholdTooLow(
            f"liquidation threshold {liquidation_threshold_bps} must exceed LTV {ltv_bps}"
        )
    if ltv_bps < 0 or ltv_bps > params.max_ltv_bps:
        raise InvalidLtvRatio(f"LTV {ltv_bps} outside [0, {params.max_ltv_bps}]")
    if not params.min_liquidation_threshold_bps <= liquidation_threshold_bps <= BPS_SCALE:
        raise InvalidLiquidationThreshold(
            f"liquidation threshold {liquidation_threshold_bps} outside "
            f"[{params.min_liquidation_threshold_bps}, {BPS_SCALE}]"
        )


def initialize_protocol(
    authority: str,
    treasury: str,
    protocol_fee_bps: Optional[int] = None,
    params: ProtocolParams = DEFAULT_PARAMS,
) -> GlobalConfig:
    fee = params.protocol_fee_bps if protocol_fee_bps is None else protocol_fee_bps
    if not 0 <= fee <= BPS_SCALE:
        raise InvalidConfig(f"protocol fee {fee} outside [0, {BPS_SCALE}]")
    return GlobalConfig(authority=authority, treasury=treasury, protocol_fee_bps=fee)


def create_market(
    config: GlobalConfig,
    asset: str,
    ltv_bps: int,
    liquidation_threshold_bps: int,
    creator: str,
    now: int,
    params: ProtocolParams = DEFAULT_PARAMS,
    share_token: Optional[str] = None,
    oracle: Optional[str] = None,
) -> Tuple[GlobalConfig, Market]:
    """
    Build a new market and the config that counts it.

    PURE FUNCTION - neither input is modified. The market id is the config's
    market_count before creation.

    Returns:
        Tuple of (updated GlobalConfig, new Market)
    """
    validate_market_config(ltv_bps, liquidation_threshold_bps, params)
    if config.market_count >= params.max_markets:
        raise MarketLimitReached(f"protocol already has {config.market_count} markets")
    if not asset:
        raise InvalidConfig("market asset cannot be empty")

    market_id = config.market_count
    market = Market(
        market_id=market_id,
        asset=asset,
        share_token=share_token or f"s{asset}",
        oracle=oracle or asset,
        ltv_bps=ltv_bps,
        liquidation_threshold_bps=liquidation_threshold_bps,
        creator=creator,
        created_at=now,
        last_accrual_time=now,
    )
    return replace(config, market_count=market_id + 1), market


class MarketCatalog:
    """
    Arena of markets addressed by id, with an index by asset.

    Mutated only by LendingEngine's commit step.
    """

    def __init__(self, markets: Optional[List[Market]] = None):
        self._markets: List[Market] = []
        self._by_asset: Dict[str, MarketId] = {}
        for market in markets or []:
            self.insert(market)

    def __len__(self) -> int:
        return len(self._markets)

    def __iter__(self) -> Iterator[Market]:
        return iter(self._markets)

    def __contains__(self, market_id: object) -> bool:
        return isinstance(market_id, int) and 0 <= market_id < len(self._markets)

    def get(self, market_id: MarketId) -> Market:
        if market_id not in self:
            raise MarketNotFound(f"no market with id {market_id}")
        return self._markets[market_id]

    def find(self, asset: str) -> Market:
        if asset not in self._by_asset:
            raise MarketNotFound(f"no market for asset {asset}")
        return self._markets[self._by_asset[asset]]

    def has_asset(self, asset: str) -> bool:
        return asset in self._by_asset

    def insert(self, market: Market) -> MarketId:
        if market.asset in self._by_asset:
            raise MarketAlreadyInitialized(f"market for {market.asset} already exists")
        if market.market_id != len(self._markets):
            raise InvalidConfig(
                f"market id {market.market_id} does not match next slot {len(self._markets)}"
            )
        self._markets.append(market)
        self._by_asset[market.asset] = market.market_id
        return market.market_id

    def update(self, market: Market) -> None:
        current = self.get(market.market_id)
        if current.asset != market.asset:
            raise InvalidConfig(f"market {market.market_id} cannot change asset")
        self._markets[market.market_id] = market

    def copy(self) -> MarketCatalog:
        return MarketCatalog(list(self._markets))
