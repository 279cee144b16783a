"""
Core types and constants for the lending ledger.

This module provides the foundational definitions shared by every component:
1. Constants: fixed-point scale, basis-point scale, protocol defaults
2. Protocols: the external collaborators the core is written against
   (ClockSource, PriceOracle, ValueTransfer, ShareToken, EventSink,
   CapabilityChecker)
3. Enums: OperationKind, Capability, VaultStrategy
4. Exceptions: LendingError and domain-specific error types
5. Immutable records: Move, RecordChange, OperationRecord

Nothing in this module holds state. All amounts are plain Python ints that
model unsigned fixed-width integers; the bounds are enforced by
lending.fixed_point.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Tuple, runtime_checkable


# ============================================================================
# CONSTANTS
# ============================================================================

# Fixed-point unit for rates, indices and exchange rates (1.0 == SCALE).
SCALE = 10 ** 18

# Basis-point unit (10000 bps == 100%).
BPS_SCALE = 10_000

SECONDS_PER_YEAR = 31_536_000

# Risk parameter defaults and bounds
DEFAULT_LTV_BPS = 7_500
DEFAULT_LIQUIDATION_THRESHOLD_BPS = 8_500
MIN_LIQUIDATION_THRESHOLD_BPS = 8_000
MAX_LTV_BPS = 8_000
LIQUIDATION_BONUS_BPS = 500
MIN_HEALTH_FACTOR_BPS = 10_000

# Fee taken from interest before it reaches lenders
PROTOCOL_FEE_BPS = 500

# Kinked rate curve, per second, scaled by SCALE (2% / 10% / 100% APR).
BASE_RATE_PER_SECOND = 634_195_839
SLOPE_1_PER_SECOND = 3_170_979_196
SLOPE_2_PER_SECOND = 31_709_791_959
OPTIMAL_UTILIZATION_BPS = 8_000

# Oracle prices are integers with this many implied decimals.
PRICE_DECIMALS = 8
PRICE_SCALE = 10 ** PRICE_DECIMALS
ORACLE_STALENESS_THRESHOLD = 300

# Smallest accepted operation sizes, in base units of the asset.
MIN_BORROW_AMOUNT = 10_000_000
MIN_SUPPLY_AMOUNT = 100_000_000

MAX_MARKETS = 50

# Health factor reported for an account with no debt.
MAX_HEALTH_FACTOR = 2 ** 64 - 1

# Reserved wallet that share tokens are minted from and burned into.
SYSTEM_WALLET = "system"


def reserve_wallet(market_id: int) -> str:
    """Custodial wallet holding a market's unlent underlying."""
    return f"reserve:{market_id}"


def market_authority(market_id: int) -> str:
    """Identity that signs share mints/burns and reserve payouts for a market."""
    return f"market:{market_id}"


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Market handle returned by market creation.
MarketId = int

# (user, market_id) key for borrow positions and share balances.
AccountKey = Tuple[str, MarketId]

# Mapping from market id to target allocation in bps.
AllocationMap = Dict[MarketId, int]


# ============================================================================
# ENUMS
# ============================================================================

class OperationKind(Enum):
    """Every state-changing operation the engine logs."""
    INITIALIZE = "initialize"
    CREATE_MARKET = "create_market"
    SET_PAUSED = "set_paused"
    SUPPLY = "supply"
    BORROW = "borrow"
    REPAY = "repay"
    WITHDRAW = "withdraw"
    LIQUIDATE = "liquidate"
    ACCRUE = "accrue"
    CREATE_VAULT = "create_vault"
    SET_ALLOCATIONS = "set_allocations"
    REBALANCE = "rebalance"


class Capability(Enum):
    """
    Privileges a caller can hold over a resource.

    CREATE_MARKET and PAUSE_MARKET are held over the protocol or a market;
    MANAGE_VAULT is held over a single vault.
    """
    CREATE_MARKET = "create_market"
    PAUSE_MARKET = "pause_market"
    MANAGE_VAULT = "manage_vault"


class VaultStrategy(Enum):
    CONSERVATIVE = 0
    BALANCED = 1
    AGGRESSIVE = 2


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LendingError(Exception):
    """Base exception for all lending-related errors."""
    pass


class ArithmeticOverflow(LendingError):
    """Raised when a checked operation would leave its integer range or divide by zero."""
    pass


class InvalidConfig(LendingError):
    """Raised when market or protocol configuration violates its bounds."""
    pass


class LiquidationThresholdTooLow(InvalidConfig):
    """Raised when the liquidation threshold is not above the LTV."""
    pass


class InvalidLtvRatio(InvalidConfig):
    """Raised when the LTV exceeds the protocol maximum."""
    pass


class InvalidLiquidationThreshold(InvalidConfig):
    """Raised when the liquidation threshold is outside [minimum, 10000]."""
    pass


class MarketLimitReached(InvalidConfig):
    """Raised when the protocol already holds the maximum number of markets."""
    pass


class MarketAlreadyInitialized(InvalidConfig):
    """Raised when a market already exists for the asset, or the protocol is initialized twice."""
    pass


class InsufficientLiquidity(LendingError):
    """Raised when a borrow or withdrawal exceeds the market's unlent balance."""
    pass


class BelowMinimum(LendingError):
    """Raised when an amount is under the configured floor for the operation."""
    pass


class InvalidAmount(LendingError):
    """Raised for zero amounts and repayments larger than the outstanding debt."""
    pass


class StalePrice(LendingError):
    """Raised when an oracle quote is older than the staleness threshold."""
    pass


class InvalidOracle(LendingError):
    """Raised when an oracle has no price for an asset or reports a non-positive price."""
    pass


class Unauthorized(LendingError):
    """Raised when the caller lacks the capability required by an operation."""
    pass


class MarketPaused(LendingError):
    """Raised when supplying to or borrowing from a paused market."""
    pass


class MarketNotFound(LendingError):
    """Raised when a market id or asset is not registered."""
    pass


class PositionNotFound(LendingError):
    """Raised when a user has no borrow position in a market."""
    pass


class InsufficientShares(LendingError):
    """Raised when burning more shares than the holder owns."""
    pass


class InsufficientCollateral(LendingError):
    """Raised when a borrower's collateral cannot cover the seizure."""
    pass


class SlippageExceeded(LendingError):
    """Raised when a liquidation pays out less than the caller's floor."""
    pass


class HealthFactorTooLow(LendingError):
    """Raised when an action would leave an account below its solvency bound."""
    pass


class BorrowWouldCauseLiquidation(HealthFactorTooLow):
    """Raised when a borrow would exceed the account's LTV capacity."""
    pass


class WithdrawWouldCauseLiquidation(HealthFactorTooLow):
    """Raised when a withdrawal would drop the health factor below 1.0."""
    pass


class LiquidationNotNeeded(LendingError):
    """Raised when liquidating an account whose health factor is at or above 1.0."""
    pass


class InvalidLiquidationAmount(LendingError):
    """Raised when a liquidation repays nothing or more than the position's debt."""
    pass


class InvalidTimestamp(LendingError):
    """Raised for timestamps that cannot be applied to the current state."""
    pass


class ClockRegression(InvalidTimestamp):
    """Raised when accrual is asked to move a market backwards in time."""
    pass


class InvalidVaultAllocation(LendingError):
    """Raised when vault allocations reference unknown markets or exceed 100%."""
    pass


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class ClockSource(Protocol):
    """Monotonic source of the current time in integer seconds."""

    def now(self) -> int:
        ...


@dataclass(frozen=True, slots=True)
class PriceQuote:
    """
    A price observation for one asset.

    Attributes:
        price: Price in quote units, scaled by PRICE_SCALE.
        as_of: Timestamp (seconds) the price was published.
    """
    price: int
    as_of: int


@runtime_checkable
class PriceOracle(Protocol):
    """
    Price feed for listed assets.

    Callers never use a quote directly; lending.oracle.fetch_price applies
    the staleness and sanity checks first.
    """

    def price_of(self, asset: str) -> PriceQuote:
        ...


@runtime_checkable
class ValueTransfer(Protocol):
    """
    Custody interface that settles movements of underlying assets.

    The engine only decides amounts. It returns Moves on each receipt and a
    host settles them through an implementation of this protocol.
    """

    def move(self, source: str, dest: str, amount: int, asset: str, authority: str) -> None:
        ...


@runtime_checkable
class ShareToken(Protocol):
    """Mint/burn interface for a market's share token, signed by the market authority."""

    def mint(self, to: str, amount: int) -> None:
        ...

    def burn(self, from_: str, amount: int) -> None:
        ...


class EventSink(Protocol):
    """Fire-and-forget receiver of externally observable mutations."""

    def emit(self, event: Any) -> None:
        ...


@runtime_checkable
class CapabilityChecker(Protocol):
    """Answers: does `caller` hold `capability` over `resource`?"""

    def has_capability(self, caller: str, capability: Capability, resource: str) -> bool:
        ...


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer the host must settle.

    Attributes:
        amount: Integer quantity in base units (positive).
        asset: Asset or share-token identifier being moved.
        source: Wallet debited.
        dest: Wallet credited.
        authority: Identity that authorizes the movement.

    Share mints are Moves from SYSTEM_WALLET and burns are Moves into it.
    """
    amount: int
    asset: str
    source: str
    dest: str
    authority: str

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.asset or not self.asset.strip():
            raise ValueError("Move asset cannot be empty")
        if not self.authority or not self.authority.strip():
            raise ValueError("Move authority cannot be empty")
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise ValueError(f"Move amount must be int, got {type(self.amount)}")
        if self.amount <= 0:
            raise ValueError(f"Move amount must be positive, got {self.amount}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.amount} {self.asset}: {self.source}→{self.dest})"


@dataclass(frozen=True, slots=True)
class RecordChange:
    """
    Before/after snapshot of one stored record touched by an operation.

    Attributes:
        key: Record key, e.g. "market:0" or "position:alice:1"
        old_state: State dict before the change (None when created)
        new_state: State dict after the change (None when deleted)
    """
    key: str
    old_state: Optional[Dict[str, Any]]
    new_state: Optional[Dict[str, Any]]

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        old = self.old_state or {}
        new = self.new_state or {}
        changes = {}
        for name in set(old) | set(new):
            if old.get(name) != new.get(name):
                changes[name] = (old.get(name), new.get(name))
        return changes


@dataclass(frozen=True, slots=True)
class OperationRecord:
    """
    An applied operation in the engine's audit log.

    Attributes:
        kind: Which operation ran
        caller: Identity that invoked it
        timestamp: Clock reading the operation ran at
        exec_id: Unique execution identifier (engine + sequence + time)
        sequence_number: Monotonic within the engine
        moves: Settlements the host must perform
        changes: Record snapshots before and after
    """
    kind: OperationKind
    caller: str
    timestamp: int
    exec_id: str
    sequence_number: int
    moves: Tuple[Move, ...]
    changes: Tuple[RecordChange, ...]

    def __repr__(self) -> str:
        w = 90
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        lines = [
            f"┌{bar}┐",
            f"│{pad(' ' + self.kind.value.upper() + ': ' + self.exec_id)}│",
            f"│{pad('   caller    : ' + self.caller)}│",
            f"│{pad('   timestamp : ' + str(self.timestamp))}│",
            f"├{bar}┤",
            f"│{pad(' Moves (' + str(len(self.moves)) + '):')}│",
        ]
        for i, move in enumerate(self.moves):
            lines.append(f"│{pad(f'   [{i}] {move.amount} {move.asset}: {move.source} → {move.dest}')}│")
        if self.changes:
            lines.append(f"├{bar}┤")
            lines.append(f"│{pad(' Changes (' + str(len(self.changes)) + '):')}│")
            for change in self.changes:
                lines.append(f"│{pad('   [' + change.key + ']')}│")
                for name, (old_val, new_val) in sorted(change.changed_fields().items()):
                    lines.append(f"│{pad(f'      {name}: {old_val!r} → {new_val!r}')}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)
