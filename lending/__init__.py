"""
lending - Collateralized Lending Ledger

Accounting core for pooled lending markets: kinked interest rates, compounding
accrual, lender shares, per-user debt positions, health factors and
liquidations.

Usage:
    from lending import (
        LendingEngine, ManualClock, StaticPriceOracle, PRICE_SCALE,
    )

    clock = ManualClock(0)
    oracle = StaticPriceOracle({"USDC": PRICE_SCALE, "SOL": 150 * PRICE_SCALE})
    engine = LendingEngine("main", clock, oracle)

    engine.initialize("admin", treasury="treasury")
    usdc = engine.create_market("admin", "USDC")
    sol = engine.create_market("admin", "SOL")

    # Lenders supply, borrowers post collateral and borrow
    engine.supply("alice", usdc, 10_000_000_000)
    engine.supply("bob", sol, 1_000_000_000)
    receipt = engine.borrow("bob", usdc, 500_000_000)

    # Settle receipt.moves with a custodian; interest accrues on every touch
    clock.advance(86_400)
    engine.accrue("keeper")
    oracle.update_price("SOL", 140 * PRICE_SCALE, as_of=clock.now())
    oracle.update_price("USDC", PRICE_SCALE, as_of=clock.now())
    engine.health_factor("bob")
"""

# Core types
from .core import (
    ClockSource,
    PriceOracle,
    PriceQuote,
    ValueTransfer,
    ShareToken,
    EventSink,
    CapabilityChecker,
    Move,
    RecordChange,
    OperationRecord,
    OperationKind,
    Capability,
    VaultStrategy,
    LendingError,
    ArithmeticOverflow,
    InvalidConfig,
    LiquidationThresholdTooLow,
    InvalidLtvRatio,
    InvalidLiquidationThreshold,
    MarketLimitReached,
    MarketAlreadyInitialized,
    InsufficientLiquidity,
    BelowMinimum,
    InvalidAmount,
    StalePrice,
    InvalidOracle,
    Unauthorized,
    MarketPaused,
    MarketNotFound,
    PositionNotFound,
    InsufficientShares,
    InsufficientCollateral,
    SlippageExceeded,
    HealthFactorTooLow,
    BorrowWouldCauseLiquidation,
    WithdrawWouldCauseLiquidation,
    LiquidationNotNeeded,
    InvalidLiquidationAmount,
    InvalidTimestamp,
    ClockRegression,
    InvalidVaultAllocation,
    SCALE,
    BPS_SCALE,
    PRICE_SCALE,
    SECONDS_PER_YEAR,
    MAX_HEALTH_FACTOR,
    SYSTEM_WALLET,
    reserve_wallet,
    market_authority,
)

# Configuration and records
from .config import ProtocolParams, DEFAULT_PARAMS
from .records import (
    GlobalConfig,
    Market,
    BorrowPosition,
    Vault,
    to_state_dict,
    load_global_config,
    load_market,
    load_position,
    load_vault,
    encode_allocations,
    decode_allocations,
)

# Pure components
from .rate_model import (
    utilization_rate,
    borrow_rate,
    supply_rate,
    annual_rate,
    rate_curve,
)
from .accrual import AccrualResult, accrue, project
from .shares import (
    exchange_rate,
    available_liquidity,
    shares_for_deposit,
    underlying_for_shares,
    mint,
    burn,
)
from .positions import current_debt, open_position, increase_debt, decrease_debt
from .liquidation import (
    health_factor_bps,
    account_health,
    is_liquidatable,
    liquidation_bonus,
    collateral_to_seize,
    check_slippage,
    max_borrow,
)
from .registry import validate_market_config, initialize_protocol, create_market, MarketCatalog

# Collaborators
from .oracle import fetch_price, StaticPriceOracle, TimeSeriesPriceOracle, ParityPriceOracle
from .clock import ManualClock, SystemClock
from .events import RecordingEventSink, NullEventSink
from .auth import AuthorityCapabilities, AllowAll

# Engine
from .engine import LendingEngine, Receipt, AccountSnapshot


__all__ = [
    # Protocols
    'ClockSource', 'PriceOracle', 'ValueTransfer', 'ShareToken', 'EventSink', 'CapabilityChecker',
    # Types
    'PriceQuote', 'Move', 'RecordChange', 'OperationRecord',
    'OperationKind', 'Capability', 'VaultStrategy',
    # Exceptions
    'LendingError', 'ArithmeticOverflow', 'InvalidConfig', 'LiquidationThresholdTooLow',
    'InvalidLtvRatio', 'InvalidLiquidationThreshold', 'MarketLimitReached',
    'MarketAlreadyInitialized', 'InsufficientLiquidity', 'BelowMinimum', 'InvalidAmount',
    'StalePrice', 'InvalidOracle', 'Unauthorized', 'MarketPaused', 'MarketNotFound',
    'PositionNotFound', 'InsufficientShares', 'InsufficientCollateral', 'SlippageExceeded',
    'HealthFactorTooLow', 'BorrowWouldCauseLiquidation', 'WithdrawWouldCauseLiquidation',
    'LiquidationNotNeeded', 'InvalidLiquidationAmount', 'InvalidTimestamp', 'ClockRegression',
    'InvalidVaultAllocation',
    # Constants
    'SCALE', 'BPS_SCALE', 'PRICE_SCALE', 'SECONDS_PER_YEAR', 'MAX_HEALTH_FACTOR',
    'SYSTEM_WALLET', 'reserve_wallet', 'market_authority',
    # Configuration and records
    'ProtocolParams', 'DEFAULT_PARAMS',
    'GlobalConfig', 'Market', 'BorrowPosition', 'Vault',
    'to_state_dict', 'load_global_config', 'load_market', 'load_position', 'load_vault',
    'encode_allocations', 'decode_allocations',
    # Rate model
    'utilization_rate', 'borrow_rate', 'supply_rate', 'annual_rate', 'rate_curve',
    # Accrual
    'AccrualResult', 'accrue', 'project',
    # Shares
    'exchange_rate', 'available_liquidity', 'shares_for_deposit', 'underlying_for_shares',
    'mint', 'burn',
    # Positions
    'current_debt', 'open_position', 'increase_debt', 'decrease_debt',
    # Liquidation
    'health_factor_bps', 'account_health', 'is_liquidatable', 'liquidation_bonus',
    'collateral_to_seize', 'check_slippage', 'max_borrow',
    # Registry
    'validate_market_config', 'initialize_protocol', 'create_market', 'MarketCatalog',
    # Collaborators
    'fetch_price', 'StaticPriceOracle', 'TimeSeriesPriceOracle', 'ParityPriceOracle',
    'ManualClock', 'SystemClock', 'RecordingEventSink', 'NullEventSink',
    'AuthorityCapabilities', 'AllowAll',
    # Engine
    'LendingEngine', 'Receipt', 'AccountSnapshot',
]

__version__ = '1.0.0'
