"""
engine.py - Stateful Lending Engine

LendingEngine is the only object in the package that holds mutable state. It
orchestrates the pure components (accrual, shares, positions, liquidation,
registry) and applies their results atomically.

Key responsibilities:
    - Accrues every market an operation touches before computing its effect
    - Evaluates every check against post-accrual values, before any mutation
    - Commits all new records of an operation in one step, or none of them
    - Logs every applied operation with a sequence number and exec_id
    - Returns the Moves a custodian must settle; never moves value itself
    - Hands events to the sink only after the commit

Each operation builds its new records in a _Batch of working copies. If any
step raises, the batch is discarded and the engine is exactly as it was.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from .accrual import AccrualResult, accrue
from .auth import AuthorityCapabilities, PROTOCOL_RESOURCE
from .config import ProtocolParams, DEFAULT_PARAMS
from .core import (
    # Types
    Move, OperationRecord, RecordChange, OperationKind, Capability, VaultStrategy,
    ClockSource, PriceOracle, EventSink, CapabilityChecker, MarketId, AccountKey,
    # Constants
    DEFAULT_LTV_BPS, DEFAULT_LIQUIDATION_THRESHOLD_BPS, MAX_HEALTH_FACTOR, SYSTEM_WALLET,
    reserve_wallet, market_authority,
    # Exceptions
    LendingError, InvalidAmount, BelowMinimum, MarketPaused, Unauthorized, InvalidConfig,
    MarketAlreadyInitialized, PositionNotFound, InsufficientShares, InsufficientCollateral,
    BorrowWouldCauseLiquidation, WithdrawWouldCauseLiquidation, LiquidationNotNeeded,
    InvalidLiquidationAmount,
)
from .events import (
    NullEventSink, ProtocolInitialized, MarketCreated, MarketPauseChanged, InterestAccrued,
    Supplied, Borrowed, Repaid, Withdrawn, Liquidated, VaultCreated, VaultRebalanced,
)
from .liquidation import (
    account_health, asset_value, borrow_capacity, check_slippage, collateral_to_seize,
    is_liquidatable,
)
from .oracle import fetch_price
from .positions import (
    add_borrow, apply_repayment, current_debt, decrease_debt, increase_debt, open_position,
)
from .rate_model import rates_for
from .records import BorrowPosition, GlobalConfig, Market, Vault, to_state_dict
from .registry import MarketCatalog, create_market as build_market, initialize_protocol
from .shares import burn, burn_for_amount, exchange_rate, mint, shares_for_withdrawal, underlying_for_shares
from . import vault as vaults


@dataclass(frozen=True, slots=True)
class Receipt:
    """
    Result of an applied operation.

    Attributes:
        record: The operation log entry (moves and record changes)
        amount: Underlying supplied, borrowed, repaid, withdrawn or seized
        shares: Share tokens minted or burned
    """
    record: OperationRecord
    amount: int = 0
    shares: int = 0

    @property
    def moves(self) -> Tuple[Move, ...]:
        return self.record.moves


@dataclass(frozen=True, slots=True)
class AccountSnapshot:
    """
    Valuation of one user's account across all markets, in quote units.

    adjusted_collateral is the liquidation-threshold weighted collateral in
    bps-scaled units; health_factor_bps = adjusted_collateral / debt_value.
    """
    user: str
    collateral_value: int
    adjusted_collateral: int
    borrow_capacity: int
    debt_value: int
    health_factor_bps: int

    @property
    def is_liquidatable(self) -> bool:
        return is_liquidatable(self.health_factor_bps)


class _Batch:
    """Working copies for one operation. Reads fall through to the engine."""

    def __init__(self, engine: LendingEngine, now: int):
        self.engine = engine
        self.now = now
        self.config: Optional[GlobalConfig] = engine.config
        self.markets: Dict[MarketId, Market] = {}
        self.new_markets: List[Market] = []
        self.accruals: Dict[MarketId, AccrualResult] = {}
        self.positions: Dict[AccountKey, Optional[BorrowPosition]] = {}
        self.shares: Dict[AccountKey, int] = {}
        self.vaults: Dict[str, Vault] = {}
        self.moves: List[Move] = []
        self.events: List[Any] = []
        self._prices: Dict[str, int] = {}

    # -- markets ------------------------------------------------------------

    def market(self, market_id: MarketId) -> Market:
        """Working copy of a market, accrued to now on first touch."""
        if market_id in self.markets:
            return self.markets[market_id]
        stored = self.engine.markets.get(market_id)
        fee_bps = self.config.protocol_fee_bps if self.config else None
        result = accrue(stored, self.now, self.engine.params, fee_bps)
        self.markets[market_id] = result.market
        self.accruals[market_id] = result
        if result.protocol_shares:
            self.add_shares(self.config.treasury, market_id, result.protocol_shares)
            self.moves.append(Move(
                result.protocol_shares, stored.share_token, SYSTEM_WALLET,
                self.config.treasury, market_authority(market_id),
            ))
        if result.accrued:
            m = result.market
            self.events.append(InterestAccrued(
                market_id=market_id,
                borrow_interest=result.borrow_interest,
                protocol_fee=result.protocol_fee,
                cumulative_borrow_index=m.cumulative_borrow_index,
                cumulative_supply_index=m.cumulative_supply_index,
                total_supplied=m.total_supplied,
                total_borrowed=m.total_borrowed,
                timestamp=self.now,
            ))
        return result.market

    def set_market(self, market: Market) -> None:
        self.markets[market.market_id] = market

    def repay_into(self, market: Market, amount: int) -> Market:
        """Apply a repayment; dust landing in an empty pool is issued to the treasury."""
        market, orphaned = apply_repayment(market, amount)
        self.set_market(market)
        if orphaned:
            self.add_shares(self.config.treasury, market.market_id, orphaned)
            self.moves.append(Move(
                orphaned, market.share_token, SYSTEM_WALLET,
                self.config.treasury, market_authority(market.market_id),
            ))
        return market

    def price(self, market: Market) -> int:
        if market.oracle not in self._prices:
            quote = fetch_price(
                self.engine.oracle, market.oracle, self.now, self.engine.params.oracle_staleness_seconds
            )
            self._prices[market.oracle] = quote.price
        return self._prices[market.oracle]

    # -- accounts -----------------------------------------------------------

    def position(self, user: str, market_id: MarketId) -> Optional[BorrowPosition]:
        key = (user, market_id)
        if key in self.positions:
            return self.positions[key]
        return self.engine.positions.get(key)

    def set_position(self, user: str, market_id: MarketId, position: Optional[BorrowPosition]) -> None:
        self.positions[(user, market_id)] = position

    def shares_of(self, user: str, market_id: MarketId) -> int:
        key = (user, market_id)
        if key in self.shares:
            return self.shares[key]
        return self.engine.share_balances.get(key, 0)

    def add_shares(self, user: str, market_id: MarketId, delta: int) -> None:
        balance = self.shares_of(user, market_id) + delta
        if balance < 0:
            raise InsufficientShares(f"{user} holds {balance - delta} shares of market {market_id}")
        self.shares[(user, market_id)] = balance

    def markets_of(self, user: str) -> Set[MarketId]:
        ids = {mid for (u, mid) in self.engine.share_balances if u == user}
        ids |= {mid for (u, mid) in self.engine.positions if u == user}
        ids |= {mid for (u, mid) in self.shares if u == user}
        ids |= {mid for (u, mid) in self.positions if u == user}
        return ids

    def has_debt(self, user: str) -> bool:
        return any(self.position(user, mid) is not None for mid in self.markets_of(user))

    def account(self, user: str) -> AccountSnapshot:
        """Value the account against working copies (accruing what it reads)."""
        weighted = []
        capacity = []
        debts = []
        collateral_value = 0
        for market_id in sorted(self.markets_of(user)):
            held = self.shares_of(user, market_id)
            position = self.position(user, market_id)
            if held == 0 and position is None:
                continue
            market = self.market(market_id)
            price = self.price(market)
            if held:
                value = asset_value(underlying_for_shares(market, held), price)
                collateral_value += value
                weighted.append((value, market.liquidation_threshold_bps))
                capacity.append((value, market.ltv_bps))
            if position is not None:
                debts.append(asset_value(current_debt(position, market), price))
        health = account_health(weighted, debts)
        return AccountSnapshot(
            user=user,
            collateral_value=collateral_value,
            adjusted_collateral=sum(v * t for v, t in weighted),
            borrow_capacity=borrow_capacity(capacity),
            debt_value=sum(debts),
            health_factor_bps=health,
        )


class LendingEngine:
    """
    Collateralized lending markets with atomic operations and an audit log.

    Design Principles:
        - Accrue first: every market an operation reads is accrued to the
          clock's current time before any check runs.
        - All or nothing: records are replaced only after every check passes.
        - Always logs: every applied operation is appended to operation_log.

    Thread Safety:
        Not thread-safe. The host serializes operations.

    Example:
        clock = ManualClock(0)
        engine = LendingEngine("main", clock, StaticPriceOracle({"USDC": PRICE_SCALE}))
        engine.initialize("admin", treasury="treasury")
        usdc = engine.create_market("admin", "USDC")
        engine.supply("alice", usdc, 500_000_000)
    """

    def __init__(
        self,
        name: str,
        clock: ClockSource,
        oracle: PriceOracle,
        params: ProtocolParams = DEFAULT_PARAMS,
        capabilities: Optional[CapabilityChecker] = None,
        event_sink: Optional[EventSink] = None,
        verbose: bool = True,
    ):
        """
        Create an engine.

        Args:
            name: Engine identifier (appears in exec_ids)
            clock: Source of the current time
            oracle: Price feed for health and liquidation math
            params: Protocol parameters (default: DEFAULT_PARAMS)
            capabilities: Authorization policy (default: AuthorityCapabilities)
            event_sink: Receiver for events (default: discard)
            verbose: Print a line per applied or rejected operation (default: True)
        """
        self.name = name
        self.clock = clock
        self.oracle = oracle
        self.params = params
        self.capabilities = capabilities if capabilities is not None else AuthorityCapabilities()
        self.event_sink = event_sink if event_sink is not None else NullEventSink()
        self.verbose = verbose
        self.config: Optional[GlobalConfig] = None
        self.markets = MarketCatalog()
        self.positions: Dict[AccountKey, BorrowPosition] = {}
        self.share_balances: Dict[AccountKey, int] = {}
        self.vaults: Dict[str, Vault] = {}
        self.operation_log: List[OperationRecord] = []
        self.undelivered: List[Tuple[Any, Exception]] = []
        self._next_sequence: int = 0

    # ========================================================================
    # QUERIES (read-only, projected to the current time)
    # ========================================================================

    def get_market(self, market_id: MarketId) -> Market:
        """Stored market, as of its last accrual."""
        return self.markets.get(market_id)

    def market_now(self, market_id: MarketId) -> Market:
        """Market projected to the current time without committing the accrual."""
        return _Batch(self, self.clock.now()).market(market_id)

    def exchange_rate(self, market_id: MarketId) -> int:
        return exchange_rate(self.market_now(market_id))

    def market_rates(self, market_id: MarketId) -> Dict[str, int]:
        market = self.get_market(market_id)
        fee = self.config.protocol_fee_bps if self.config else None
        return rates_for(market.total_borrowed, market.total_supplied, self.params, fee)

    def share_balance(self, user: str, market_id: MarketId) -> int:
        return self.share_balances.get((user, market_id), 0)

    def underlying_balance(self, user: str, market_id: MarketId) -> int:
        """Underlying the user's shares redeem for at the current time."""
        held = self.share_balance(user, market_id)
        if held == 0:
            return 0
        return underlying_for_shares(self.market_now(market_id), held)

    def get_position(self, user: str, market_id: MarketId) -> Optional[BorrowPosition]:
        return self.positions.get((user, market_id))

    def current_debt(self, user: str, market_id: MarketId) -> int:
        position = self.get_position(user, market_id)
        if position is None:
            return 0
        return current_debt(position, self.market_now(market_id))

    def account_snapshot(self, user: str) -> AccountSnapshot:
        return _Batch(self, self.clock.now()).account(user)

    def health_factor(self, user: str) -> int:
        """Health factor in bps at the current time (MAX_HEALTH_FACTOR without debt)."""
        batch = _Batch(self, self.clock.now())
        if not batch.has_debt(user):
            return MAX_HEALTH_FACTOR
        return batch.account(user).health_factor_bps

    # ========================================================================
    # PROTOCOL ADMINISTRATION (Mutating)
    # ========================================================================

    def initialize(self, caller: str, treasury: str, protocol_fee_bps: Optional[int] = None) -> Receipt:
        """
        Create the protocol configuration with `caller` as authority.

        Raises:
            MarketAlreadyInitialized: If the protocol is already initialized
        """
        def build(batch: _Batch) -> Tuple[int, int]:
            if batch.config is not None:
                raise MarketAlreadyInitialized("protocol is already initialized")
            batch.config = initialize_protocol(caller, treasury, protocol_fee_bps, self.params)
            batch.events.append(ProtocolInitialized(
                authority=caller, treasury=treasury,
                protocol_fee_bps=batch.config.protocol_fee_bps, timestamp=batch.now,
            ))
            return 0, 0

        receipt = self._run(OperationKind.INITIALIZE, caller, build)
        if isinstance(self.capabilities, AuthorityCapabilities):
            self.capabilities.bind(self.config)
        return receipt

    def create_market(
        self,
        caller: str,
        asset: str,
        ltv_bps: int = DEFAULT_LTV_BPS,
        liquidation_threshold_bps: int = DEFAULT_LIQUIDATION_THRESHOLD_BPS,
        share_token: Optional[str] = None,
        oracle: Optional[str] = None,
    ) -> MarketId:
        """
        List a new asset.

        Returns:
            The new market's id

        Raises:
            Unauthorized: If caller lacks CREATE_MARKET
            InvalidConfig: If the risk parameters are out of bounds, the
                protocol is full, or the asset is already listed
        """
        def build(batch: _Batch) -> Tuple[int, int]:
            config = self._require_config(batch)
            self._require(caller, Capability.CREATE_MARKET, PROTOCOL_RESOURCE)
            if self.markets.has_asset(asset):
                raise MarketAlreadyInitialized(f"market for {asset} already exists")
            batch.config, market = build_market(
                config, asset, ltv_bps, liquidation_threshold_bps, caller, batch.now,
                self.params, share_token, oracle,
            )
            batch.new_markets.append(market)
            batch.events.append(MarketCreated(
                market_id=market.market_id, asset=market.asset, share_token=market.share_token,
                ltv_bps=market.ltv_bps, liquidation_threshold_bps=market.liquidation_threshold_bps,
                creator=caller, timestamp=batch.now,
            ))
            return 0, 0

        self._run(OperationKind.CREATE_MARKET, caller, build)
        market = self.markets.find(asset)
        if self.verbose:
            print(f"📝 Registered: market {market.market_id} {market.asset} "
                  f"[ltv={market.ltv_bps}, lt={market.liquidation_threshold_bps}]")
        return market.market_id

    def set_paused(self, caller: str, market_id: MarketId, paused: bool) -> Receipt:
        """Pause or unpause supply and borrow on a market. Repay, withdraw and liquidate stay open."""
        def build(batch: _Batch) -> Tuple[int, int]:
            self._require(caller, Capability.PAUSE_MARKET, f"market:{market_id}")
            market = batch.market(market_id)
            batch.set_market(replace(market, paused=paused))
            batch.events.append(MarketPauseChanged(
                market_id=market_id, paused=paused, caller=caller, timestamp=batch.now,
            ))
            return 0, 0

        return self._run(OperationKind.SET_PAUSED, caller, build)

    # ========================================================================
    # MARKET OPERATIONS (Mutating)
    # ========================================================================

    def accrue(self, caller: str, market_id: Optional[MarketId] = None) -> Receipt:
        """Accrue one market, or every market when market_id is None."""
        def build(batch: _Batch) -> Tuple[int, int]:
            ids = [market_id] if market_id is not None else [m.market_id for m in self.markets]
            interest = 0
            for mid in ids:
                batch.market(mid)
                interest += batch.accruals[mid].borrow_interest
            return interest, 0

        return self._run(OperationKind.ACCRUE, caller, build)

    def supply(self, user: str, market_id: MarketId, amount: int) -> Receipt:
        """
        Deposit underlying and receive shares.

        Raises:
            InvalidAmount, BelowMinimum: On a non-positive or too small amount
            MarketPaused: If the market is paused
        """
        def build(batch: _Batch) -> Tuple[int, int]:
            self._require_amount(amount, self.params.min_supply_amount, "supply")
            market = batch.market(market_id)
            if market.paused:
                raise MarketPaused(f"market {market_id} ({market.asset}) is paused")
            market, minted = mint(market, amount)
            batch.set_market(market)
            batch.add_shares(user, market_id, minted)
            batch.moves.append(Move(amount, market.asset, user, reserve_wallet(market_id), user))
            batch.moves.append(Move(
                minted, market.share_token, SYSTEM_WALLET, user, market_authority(market_id)
            ))
            batch.events.append(Supplied(
                user=user, market_id=market_id, amount=amount, shares_minted=minted,
                total_supplied=market.total_supplied, total_borrowed=market.total_borrowed,
                timestamp=batch.now,
            ))
            return amount, minted

        return self._run(OperationKind.SUPPLY, user, build)

    def borrow(self, user: str, market_id: MarketId, amount: int) -> Receipt:
        """
        Borrow underlying against the user's supplied collateral.

        Raises:
            InvalidAmount, BelowMinimum: On a non-positive or too small amount
            MarketPaused: If the market is paused
            InsufficientLiquidity: If the reserve cannot cover the amount
            BorrowWouldCauseLiquidation: If debt would exceed LTV capacity
            StalePrice, InvalidOracle: If a price needed for valuation is unusable
        """
        def build(batch: _Batch) -> Tuple[int, int]:
            self._require_amount(amount, self.params.min_borrow_amount, "borrow")
            market = batch.market(market_id)
            if market.paused:
                raise MarketPaused(f"market {market_id} ({market.asset}) is paused")
            existing = batch.position(user, market_id)
            if existing is None:
                position = open_position(user, market, amount, batch.now)
            else:
                position = increase_debt(existing, market, amount, batch.now)
            market = add_borrow(market, amount)
            batch.set_market(market)
            batch.set_position(user, market_id, position)

            account = batch.account(user)
            if account.debt_value > account.borrow_capacity:
                raise BorrowWouldCauseLiquidation(
                    f"{user}: debt value {account.debt_value} would exceed "
                    f"borrow capacity {account.borrow_capacity}"
                )

            batch.moves.append(Move(
                amount, market.asset, reserve_wallet(market_id), user, market_authority(market_id)
            ))
            batch.events.append(Borrowed(
                user=user, market_id=market_id, amount=amount,
                total_supplied=market.total_supplied, total_borrowed=market.total_borrowed,
                timestamp=batch.now,
            ))
            return amount, 0

        return self._run(OperationKind.BORROW, user, build)

    def repay(self, user: str, market_id: MarketId, amount: Optional[int] = None) -> Receipt:
        """
        Repay debt; amount=None repays all of it.

        Raises:
            PositionNotFound: If the user has no debt in the market
            InvalidAmount: If amount is not positive or exceeds current debt
        """
        def build(batch: _Batch) -> Tuple[int, int]:
            market = batch.market(market_id)
            position = batch.position(user, market_id)
            if position is None:
                raise PositionNotFound(f"{user} has no borrow position in market {market_id}")
            paid = current_debt(position, market) if amount is None else amount
            remaining = decrease_debt(position, market, paid, batch.now)
            market = batch.repay_into(market, paid)
            batch.set_position(user, market_id, remaining)
            batch.moves.append(Move(paid, market.asset, user, reserve_wallet(market_id), user))
            batch.events.append(Repaid(
                user=user, market_id=market_id, amount=paid,
                remaining_debt=remaining.principal if remaining else 0,
                total_supplied=market.total_supplied, total_borrowed=market.total_borrowed,
                timestamp=batch.now,
            ))
            return paid, 0

        return self._run(OperationKind.REPAY, user, build)

    def withdraw(self, user: str, market_id: MarketId, shares: Optional[int] = None) -> Receipt:
        """
        Redeem shares for underlying; shares=None redeems the whole balance.

        Raises:
            InvalidAmount: If no shares would be burned
            InsufficientShares: If the user holds fewer shares
            InsufficientLiquidity: If the reserve cannot pay out
            WithdrawWouldCauseLiquidation: If the user's health factor
                would fall below 1.0
        """
        def build(batch: _Batch) -> Tuple[int, int]:
            market = batch.market(market_id)
            held = batch.shares_of(user, market_id)
            to_burn = held if shares is None else shares
            if to_burn <= 0:
                raise InvalidAmount(f"{user}: nothing to withdraw from market {market_id}")
            if to_burn > held:
                raise InsufficientShares(f"{user} holds {held} shares, tried to burn {to_burn}")
            market, underlying = burn(market, to_burn)
            batch.set_market(market)
            batch.add_shares(user, market_id, -to_burn)

            if batch.has_debt(user):
                health = batch.account(user).health_factor_bps
                if health < self.params.min_health_factor_bps:
                    raise WithdrawWouldCauseLiquidation(
                        f"{user}: health factor would fall to {health} bps"
                    )

            authority = market_authority(market_id)
            batch.moves.append(Move(to_burn, market.share_token, user, SYSTEM_WALLET, authority))
            if underlying:
                batch.moves.append(Move(underlying, market.asset, reserve_wallet(market_id), user, authority))
            batch.events.append(Withdrawn(
                user=user, market_id=market_id, amount=underlying, shares_burned=to_burn,
                total_supplied=market.total_supplied, total_borrowed=market.total_borrowed,
                timestamp=batch.now,
            ))
            return underlying, to_burn

        return self._run(OperationKind.WITHDRAW, user, build)

    def liquidate(
        self,
        liquidator: str,
        borrower: str,
        debt_market_id: MarketId,
        collateral_market_id: MarketId,
        repay_amount: int,
        min_collateral_amount: int = 0,
    ) -> Receipt:
        """
        Repay part of an unhealthy borrower's debt in exchange for collateral plus a bonus.

        Both markets are accrued and updated together; a failure at any step
        leaves both untouched.

        Returns:
            Receipt whose amount is the collateral paid to the liquidator and
            whose shares are the borrower's shares burned

        Raises:
            LiquidationNotNeeded: If the borrower's health factor is >= 1.0
            PositionNotFound: If the borrower has no debt in debt_market_id
            InvalidLiquidationAmount: If repay_amount is not in (0, debt]
            SlippageExceeded: If the collateral is below min_collateral_amount
            InsufficientCollateral: If the borrower's shares cannot cover it
            InsufficientLiquidity: If the collateral reserve cannot pay out
        """
        def build(batch: _Batch) -> Tuple[int, int]:
            debt_market = batch.market(debt_market_id)
            collateral_market = batch.market(collateral_market_id)
            position = batch.position(borrower, debt_market_id)
            if position is None:
                raise PositionNotFound(f"{borrower} has no borrow position in market {debt_market_id}")

            health = batch.account(borrower).health_factor_bps
            if not is_liquidatable(health):
                raise LiquidationNotNeeded(f"{borrower}: health factor {health} bps is not below 10000")

            debt = current_debt(position, debt_market)
            if repay_amount <= 0 or repay_amount > debt:
                raise InvalidLiquidationAmount(f"repay amount {repay_amount} outside (0, {debt}]")

            seized = collateral_to_seize(
                repay_amount,
                batch.price(debt_market),
                batch.price(collateral_market),
                self.params.liquidation_bonus_bps,
            )
            check_slippage(seized, min_collateral_amount)

            remaining = decrease_debt(position, debt_market, repay_amount, batch.now)
            batch.repay_into(debt_market, repay_amount)
            batch.set_position(borrower, debt_market_id, remaining)

            collateral_market = batch.market(collateral_market_id)
            needed = shares_for_withdrawal(collateral_market, seized)
            held = batch.shares_of(borrower, collateral_market_id)
            if needed > held:
                raise InsufficientCollateral(
                    f"{borrower}: seizing {seized} needs {needed} shares, holds {held}"
                )
            collateral_market, burned, released = burn_for_amount(collateral_market, seized)
            batch.set_market(collateral_market)
            batch.add_shares(borrower, collateral_market_id, -burned)

            debt_asset = batch.market(debt_market_id).asset
            authority = market_authority(collateral_market_id)
            batch.moves.append(Move(
                repay_amount, debt_asset, liquidator, reserve_wallet(debt_market_id), liquidator
            ))
            batch.moves.append(Move(
                burned, collateral_market.share_token, borrower, SYSTEM_WALLET, authority
            ))
            batch.moves.append(Move(
                released, collateral_market.asset, reserve_wallet(collateral_market_id), liquidator, authority
            ))
            batch.events.append(Liquidated(
                liquidator=liquidator, borrower=borrower,
                debt_market_id=debt_market_id, collateral_market_id=collateral_market_id,
                repay_amount=repay_amount, collateral_seized=released,
                health_factor_bps=health, timestamp=batch.now,
            ))
            return released, burned

        return self._run(OperationKind.LIQUIDATE, liquidator, build)

    # ========================================================================
    # VAULTS (Mutating)
    # ========================================================================

    def create_vault(
        self, owner: str, strategy: VaultStrategy, rebalance_threshold_bps: int = 500
    ) -> Receipt:
        def build(batch: _Batch) -> Tuple[int, int]:
            if owner in self.vaults:
                raise InvalidConfig(f"vault for {owner} already exists")
            batch.vaults[owner] = vaults.create_vault(owner, strategy, batch.now, rebalance_threshold_bps)
            batch.events.append(VaultCreated(owner=owner, strategy=strategy.value, timestamp=batch.now))
            return 0, 0

        return self._run(OperationKind.CREATE_VAULT, owner, build)

    def set_vault_allocations(self, caller: str, owner: str, allocations: Mapping[MarketId, int]) -> Receipt:
        def build(batch: _Batch) -> Tuple[int, int]:
            vault = self._vault_for(caller, owner)
            batch.vaults[owner] = vaults.set_allocations(vault, allocations, self.markets)
            return 0, 0

        return self._run(OperationKind.SET_ALLOCATIONS, caller, build)

    def rebalance_vault(self, caller: str, owner: str) -> Receipt:
        """Record a rebalance of the owner's vault. No funds move."""
        def build(batch: _Batch) -> Tuple[int, int]:
            vault = vaults.rebalance(self._vault_for(caller, owner), batch.now)
            batch.vaults[owner] = vault
            batch.events.append(VaultRebalanced(
                owner=owner, allocations=dict(vault.allocations), timestamp=batch.now,
            ))
            return 0, 0

        return self._run(OperationKind.REBALANCE, caller, build)

    def get_vault(self, owner: str) -> Vault:
        if owner not in self.vaults:
            raise InvalidConfig(f"no vault for {owner}")
        return self.vaults[owner]

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def _require(self, caller: str, capability: Capability, resource: str) -> None:
        if not self.capabilities.has_capability(caller, capability, resource):
            raise Unauthorized(f"{caller} lacks {capability.value} on {resource}")

    @staticmethod
    def _require_config(batch: _Batch) -> GlobalConfig:
        if batch.config is None:
            raise InvalidConfig("protocol is not initialized")
        return batch.config

    @staticmethod
    def _require_amount(amount: int, minimum: int, what: str) -> None:
        if amount <= 0:
            raise InvalidAmount(f"{what} amount must be positive, got {amount}")
        if amount < minimum:
            raise BelowMinimum(f"{what} amount {amount} is below the minimum {minimum}")

    def _vault_for(self, caller: str, owner: str) -> Vault:
        vault = self.get_vault(owner)
        self._require(caller, Capability.MANAGE_VAULT, vault.key)
        return vault

    def _generate_exec_id(self, sequence: int, now: int) -> str:
        """Format: exec:{engine_name}:{sequence:012d}:{timestamp}"""
        return f"exec:{self.name}:{sequence:012d}:{now}"

    def _run(self, kind: OperationKind, caller: str, build: Callable[[_Batch], Tuple[int, int]]) -> Receipt:
        """
        Build an operation against working copies, then commit it.

        Any LendingError raised by `build` discards the batch and propagates
        unchanged.
        """
        batch = _Batch(self, self.clock.now())
        try:
            amount, shares = build(batch)
        except LendingError as exc:
            if self.verbose:
                print(f"✗ REJECTED {kind.value} by {caller}: {type(exc).__name__}: {exc}")
            raise
        record = self._commit(batch, kind, caller)
        return Receipt(record=record, amount=amount, shares=shares)

    def _record_changes(self, batch: _Batch) -> List[RecordChange]:
        changes: List[RecordChange] = []
        if batch.config is not self.config:
            changes.append(RecordChange(
                "config",
                to_state_dict(self.config) if self.config else None,
                to_state_dict(batch.config),
            ))
        for market in batch.new_markets:
            changes.append(RecordChange(market.key, None, to_state_dict(market)))
        for market_id, market in sorted(batch.markets.items()):
            old = self.markets.get(market_id)
            if old != market:
                changes.append(RecordChange(market.key, to_state_dict(old), to_state_dict(market)))
        for (user, market_id), position in sorted(batch.positions.items()):
            old = self.positions.get((user, market_id))
            if old != position:
                changes.append(RecordChange(
                    f"position:{user}:{market_id}",
                    to_state_dict(old) if old else None,
                    to_state_dict(position) if position else None,
                ))
        for (user, market_id), balance in sorted(batch.shares.items()):
            old = self.share_balances.get((user, market_id), 0)
            if old != balance:
                changes.append(RecordChange(
                    f"shares:{user}:{market_id}", {'shares': old}, {'shares': balance}
                ))
        for owner, vault in sorted(batch.vaults.items()):
            old = self.vaults.get(owner)
            changes.append(RecordChange(
                vault.key, to_state_dict(old) if old else None, to_state_dict(vault)
            ))
        return changes

    def _commit(self, batch: _Batch, kind: OperationKind, caller: str) -> OperationRecord:
        sequence = self._next_sequence
        record = OperationRecord(
            kind=kind,
            caller=caller,
            timestamp=batch.now,
            exec_id=self._generate_exec_id(sequence, batch.now),
            sequence_number=sequence,
            moves=tuple(batch.moves),
            changes=tuple(self._record_changes(batch)),
        )

        self._next_sequence += 1
        self.config = batch.config
        for market in batch.new_markets:
            self.markets.insert(market)
        for market in batch.markets.values():
            self.markets.update(market)
        for key, position in batch.positions.items():
            if position is None:
                self.positions.pop(key, None)
            else:
                self.positions[key] = position
        for key, balance in batch.shares.items():
            if balance == 0:
                self.share_balances.pop(key, None)
            else:
                self.share_balances[key] = balance
        self.vaults.update(batch.vaults)
        self.operation_log.append(record)

        if self.verbose:
            self._print_record(record, "APPLIED", "✓")
        self._deliver(batch.events)
        return record

    def _deliver(self, events: List[Any]) -> None:
        """
        Hand committed events to the sink.

        The operation is already applied, so a failing sink cannot undo it.
        Each failure is kept in `undelivered` with its exception and the
        remaining events are still delivered.
        """
        for event in events:
            try:
                self.event_sink.emit(event)
            except Exception as exc:
                self.undelivered.append((event, exc))
                if self.verbose:
                    print(f"⚠ UNDELIVERED {type(event).__name__}: {type(exc).__name__}: {exc}")

    def _print_record(self, record: OperationRecord, result: str, icon: str) -> None:
        lines = repr(record).split('\n')
        w = 90
        bar = "─" * w
        text = ' ' + icon + ' ' + result
        lines[-1] = f"├{bar}┤"
        lines.append(f"│{text + ' ' * (w - len(text))}│")
        lines.append(f"└{bar}┘")
        print("\n".join(lines))

    # ========================================================================
    # COPYING
    # ========================================================================

    def clone(self) -> LendingEngine:
        """
        Independent copy for what-if analysis.

        Records are immutable, so copying the containers is enough. The clone
        shares the clock, oracle and capability policy, and discards events.
        """
        cloned = LendingEngine.__new__(LendingEngine)
        cloned.name = self.name
        cloned.clock = self.clock
        cloned.oracle = self.oracle
        cloned.params = self.params
        cloned.capabilities = self.capabilities
        cloned.event_sink = NullEventSink()
        cloned.verbose = self.verbose
        cloned.config = self.config
        cloned.markets = self.markets.copy()
        cloned.positions = dict(self.positions)
        cloned.share_balances = dict(self.share_balances)
        cloned.vaults = dict(self.vaults)
        cloned.operation_log = list(self.operation_log)
        cloned.undelivered = []
        cloned._next_sequence = self._next_sequence
        return cloned

