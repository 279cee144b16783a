"""
config.py - Protocol Parameters

ProtocolParams groups every tunable the core reads. The module-level constants
in lending.core are the reference configuration and DEFAULT_PARAMS bundles
them; an engine or a pure function takes a ProtocolParams explicitly rather
than reading ambient globals.
"""

from __future__ import annotations
from dataclasses import dataclass

from .core import (
    BASE_RATE_PER_SECOND, SLOPE_1_PER_SECOND, SLOPE_2_PER_SECOND,
    OPTIMAL_UTILIZATION_BPS, PROTOCOL_FEE_BPS, LIQUIDATION_BONUS_BPS,
    MIN_LIQUIDATION_THRESHOLD_BPS, MAX_LTV_BPS, MIN_HEALTH_FACTOR_BPS,
    MIN_BORROW_AMOUNT, MIN_SUPPLY_AMOUNT, ORACLE_STALENESS_THRESHOLD,
    MAX_MARKETS, BPS_SCALE,
)


@dataclass(frozen=True, slots=True)
class ProtocolParams:
    """
    Immutable protocol configuration.

    Rate fields are per-second rates scaled by SCALE; *_bps fields are basis
    points; amounts are in base units of the asset.
    """
    base_rate_per_second: int = BASE_RATE_PER_SECOND
    slope_1_per_second: int = SLOPE_1_PER_SECOND
    slope_2_per_second: int = SLOPE_2_PER_SECOND
    optimal_utilization_bps: int = OPTIMAL_UTILIZATION_BPS
    protocol_fee_bps: int = PROTOCOL_FEE_BPS
    liquidation_bonus_bps: int = LIQUIDATION_BONUS_BPS
    min_liquidation_threshold_bps: int = MIN_LIQUIDATION_THRESHOLD_BPS
    max_ltv_bps: int = MAX_LTV_BPS
    min_health_factor_bps: int = MIN_HEALTH_FACTOR_BPS
    min_borrow_amount: int = MIN_BORROW_AMOUNT
    min_supply_amount: int = MIN_SUPPLY_AMOUNT
    oracle_staleness_seconds: int = ORACLE_STALENESS_THRESHOLD
    max_markets: int = MAX_MARKETS

    def __post_init__(self):
        if not 0 < self.optimal_utilization_bps < BPS_SCALE:
            raise ValueError(
                f"optimal_utilization_bps must be in (0, {BPS_SCALE}), "
                f"got {self.optimal_utilization_bps}"
            )
        for name in ("protocol_fee_bps", "liquidation_bonus_bps",
                     "min_liquidation_threshold_bps", "max_ltv_bps"):
            value = getattr(self, name)
            if not 0 <= value <= BPS_SCALE:
                raise ValueError(f"{name} must be in [0, {BPS_SCALE}], got {value}")
        for name in ("base_rate_per_second", "slope_1_per_second", "slope_2_per_second",
                     "min_borrow_amount", "min_supply_amount", "oracle_staleness_seconds"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")
        if self.max_markets <= 0:
            raise ValueError(f"max_markets must be positive, got {self.max_markets}")


DEFAULT_PARAMS = ProtocolParams()
