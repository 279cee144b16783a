"""
test_engine_operations.py - Unit tests for LendingEngine operations

Tests:
- Initialization and market creation (authorization, duplicates)
- Supply, borrow, repay and withdraw checks and effects
- Liquidation preconditions and payouts
- Pausing, vault bookkeeping, events, the operation log and clone()
"""

import pytest

from lending import (
    LendingEngine, ManualClock, StaticPriceOracle, RecordingEventSink, Move, VaultStrategy, AllowAll,
    OperationKind, PRICE_SCALE, SCALE, MAX_HEALTH_FACTOR,
    InvalidConfig, Unauthorized, MarketAlreadyInitialized, InvalidLtvRatio, MarketNotFound,
    InvalidAmount, BelowMinimum, MarketPaused, InsufficientLiquidity, InsufficientShares,
    PositionNotFound, BorrowWouldCauseLiquidation, WithdrawWouldCauseLiquidation,
    HealthFactorTooLow, LiquidationNotNeeded, InvalidLiquidationAmount, SlippageExceeded,
    InsufficientCollateral, StalePrice, InvalidVaultAllocation,
)
from lending.events import (
    ProtocolInitialized, MarketCreated, Supplied, Borrowed, Repaid, Withdrawn, Liquidated,
    InterestAccrued, MarketPauseChanged, VaultCreated, VaultRebalanced,
)
from tests.conftest import START, ALICE_SUPPLY, BOB_COLLATERAL, set_prices, engine_state


class TestInitialization:

    def test_initialize_sets_authority(self, engine):
        assert engine.config.authority == "admin"
        assert engine.config.treasury == "treasury"
        assert engine.config.market_count == 2

    def test_initialize_twice(self, engine):
        with pytest.raises(MarketAlreadyInitialized):
            engine.initialize("admin", treasury="treasury")

    def test_create_market_before_initialize(self, clock, oracle):
        fresh = LendingEngine("fresh", clock, oracle, verbose=False)
        with pytest.raises(InvalidConfig):
            fresh.create_market("admin", "USDC")
        assert len(fresh.markets) == 0

    def test_only_authority_creates_markets(self, engine):
        with pytest.raises(Unauthorized):
            engine.create_market("mallory", "BTC")
        assert not engine.markets.has_asset("BTC")

    def test_open_policy_lets_anyone_list_and_pause(self, clock, oracle):
        open_engine = LendingEngine("open", clock, oracle, capabilities=AllowAll(), verbose=False)
        open_engine.initialize("admin", treasury="treasury")
        market_id = open_engine.create_market("mallory", "BTC")
        open_engine.set_paused("mallory", market_id, True)
        market = open_engine.get_market(market_id)
        assert market.creator == "mallory"
        assert market.paused

    def test_duplicate_asset(self, engine):
        with pytest.raises(MarketAlreadyInitialized):
            engine.create_market("admin", "USDC")
        assert engine.config.market_count == 2

    def test_invalid_risk_config_leaves_count(self, engine):
        with pytest.raises(InvalidLtvRatio):
            engine.create_market("admin", "BTC", ltv_bps=8001, liquidation_threshold_bps=8500)
        assert engine.config.market_count == 2

    def test_fresh_market_state(self, engine, usdc):
        market = engine.get_market(usdc)
        assert market.cumulative_borrow_index == SCALE
        assert market.cumulative_supply_index == SCALE
        assert market.last_accrual_time == START
        assert market.creator == "admin"

    def test_unknown_market(self, engine):
        with pytest.raises(MarketNotFound):
            engine.supply("alice", 9, ALICE_SUPPLY)


class TestSupply:

    def test_first_supply_is_one_to_one(self, engine, usdc):
        receipt = engine.supply("alice", usdc, ALICE_SUPPLY)
        assert receipt.shares == ALICE_SUPPLY
        assert engine.share_balance("alice", usdc) == ALICE_SUPPLY
        assert engine.get_market(usdc).total_supplied == ALICE_SUPPLY
        assert receipt.moves == (
            Move(ALICE_SUPPLY, "USDC", "alice", "reserve:0", "alice"),
            Move(ALICE_SUPPLY, "sUSDC", "system", "alice", "market:0"),
        )

    def test_amount_checks(self, engine, usdc):
        with pytest.raises(InvalidAmount):
            engine.supply("alice", usdc, 0)
        with pytest.raises(BelowMinimum):
            engine.supply("alice", usdc, 99_999_999)
        assert engine.get_market(usdc).total_supplied == 0

    def test_paused_market_rejects_supply(self, engine, usdc):
        engine.set_paused("admin", usdc, True)
        with pytest.raises(MarketPaused):
            engine.supply("alice", usdc, ALICE_SUPPLY)
        engine.set_paused("admin", usdc, False)
        engine.supply("alice", usdc, ALICE_SUPPLY)

    def test_only_authority_pauses(self, engine, usdc):
        with pytest.raises(Unauthorized):
            engine.set_paused("mallory", usdc, True)
        assert not engine.get_market(usdc).paused


class TestBorrow:

    def test_borrow_within_capacity(self, funded, usdc):
        receipt = funded.borrow("bob", usdc, 7_000_000_000)
        assert receipt.amount == 7_000_000_000
        assert funded.current_debt("bob", usdc) == 7_000_000_000
        assert funded.get_market(usdc).total_borrowed == 7_000_000_000
        assert receipt.moves == (
            Move(7_000_000_000, "USDC", "reserve:0", "bob", "market:0"),
        )
        assert funded.health_factor("bob") == 12_142

    def test_borrow_beyond_capacity(self, funded, usdc):
        before = engine_state(funded)
        with pytest.raises(BorrowWouldCauseLiquidation):
            funded.borrow("bob", usdc, 8_000_000_000)
        assert engine_state(funded) == before

    def test_borrow_without_collateral(self, funded, usdc):
        with pytest.raises(HealthFactorTooLow):
            funded.borrow("carol", usdc, 100_000_000)
        assert funded.get_position("carol", usdc) is None

    def test_borrow_below_minimum(self, funded, usdc):
        with pytest.raises(BelowMinimum):
            funded.borrow("bob", usdc, 9_999_999)

    def test_borrow_beyond_liquidity(self, funded, usdc, sol):
        with pytest.raises(InsufficientLiquidity):
            funded.borrow("alice", sol, 2 * BOB_COLLATERAL)

    def test_paused_market_rejects_borrow(self, funded, usdc):
        funded.set_paused("admin", usdc, True)
        with pytest.raises(MarketPaused):
            funded.borrow("bob", usdc, 1_000_000_000)

    def test_stale_price_blocks_borrow(self, funded, usdc, clock):
        clock.advance(301)
        with pytest.raises(StalePrice):
            funded.borrow("bob", usdc, 1_000_000_000)

    def test_second_borrow_accumulates(self, funded, usdc):
        funded.borrow("bob", usdc, 3_000_000_000)
        funded.borrow("bob", usdc, 2_000_000_000)
        assert funded.get_position("bob", usdc).principal == 5_000_000_000


class TestRepay:

    def test_full_repay_closes_position(self, funded, usdc):
        funded.borrow("bob", usdc, 7_000_000_000)
        receipt = funded.repay("bob", usdc)
        assert receipt.amount == 7_000_000_000
        assert funded.get_position("bob", usdc) is None
        assert funded.get_market(usdc).total_borrowed == 0
        assert funded.health_factor("bob") == MAX_HEALTH_FACTOR

    def test_partial_repay(self, funded, usdc):
        funded.borrow("bob", usdc, 7_000_000_000)
        funded.repay("bob", usdc, 2_000_000_000)
        assert funded.current_debt("bob", usdc) == 5_000_000_000

    def test_over_repay(self, funded, usdc):
        funded.borrow("bob", usdc, 7_000_000_000)
        with pytest.raises(InvalidAmount):
            funded.repay("bob", usdc, 7_000_000_001)

    def test_repay_without_position(self, funded, usdc):
        with pytest.raises(PositionNotFound):
            funded.repay("carol", usdc, 100)

    def test_repay_allowed_while_paused(self, funded, usdc):
        funded.borrow("bob", usdc, 1_000_000_000)
        funded.set_paused("admin", usdc, True)
        funded.repay("bob", usdc)
        assert funded.get_position("bob", usdc) is None


class TestWithdraw:

    def test_withdraw_everything(self, funded, usdc):
        receipt = funded.withdraw("alice", usdc)
        assert receipt.amount == ALICE_SUPPLY
        assert receipt.shares == ALICE_SUPPLY
        assert funded.share_balance("alice", usdc) == 0
        assert funded.get_market(usdc).total_supplied == 0

    def test_more_shares_than_held(self, funded, usdc):
        with pytest.raises(InsufficientShares):
            funded.withdraw("alice", usdc, ALICE_SUPPLY + 1)

    def test_nothing_to_withdraw(self, funded, usdc):
        with pytest.raises(InvalidAmount):
            funded.withdraw("carol", usdc)

    def test_lent_out_funds(self, funded, usdc):
        funded.borrow("bob", usdc, 7_000_000_000)
        with pytest.raises(InsufficientLiquidity):
            funded.withdraw("alice", usdc)

    def test_collateral_withdrawal_guarded_by_health(self, funded, usdc, sol):
        funded.borrow("bob", usdc, 7_000_000_000)
        with pytest.raises(WithdrawWouldCauseLiquidation):
            funded.withdraw("bob", sol, 200_000_000)
        funded.withdraw("bob", sol, 100_000_000)
        assert funded.health_factor("bob") == 10_928


class TestLiquidate:

    @pytest.fixture
    def underwater(self, funded, usdc, oracle, clock):
        funded.borrow("bob", usdc, 7_000_000_000)
        set_prices(oracle, clock, sol=8 * PRICE_SCALE)
        assert funded.health_factor("bob") == 9_714
        return funded

    def test_healthy_borrower(self, funded, usdc, sol):
        funded.borrow("bob", usdc, 7_000_000_000)
        with pytest.raises(LiquidationNotNeeded):
            funded.liquidate("carol", "bob", usdc, sol, 1_000_000_000)

    def test_seizes_collateral_with_bonus(self, underwater, usdc, sol):
        receipt = underwater.liquidate("carol", "bob", usdc, sol, 1_000_000_000)
        assert receipt.amount == 131_250_000
        assert receipt.shares == 131_250_000
        assert underwater.share_balance("bob", sol) == 868_750_000
        assert underwater.current_debt("bob", usdc) == 6_000_000_000
        assert receipt.moves == (
            Move(1_000_000_000, "USDC", "carol", "reserve:0", "carol"),
            Move(131_250_000, "sSOL", "bob", "system", "market:1"),
            Move(131_250_000, "SOL", "reserve:1", "carol", "market:1"),
        )

    def test_slippage_floor(self, underwater, usdc, sol):
        before = engine_state(underwater)
        with pytest.raises(SlippageExceeded):
            underwater.liquidate("carol", "bob", usdc, sol, 1_000_000_000, min_collateral_amount=131_250_001)
        assert engine_state(underwater) == before

    def test_repay_amount_bounds(self, underwater, usdc, sol):
        with pytest.raises(InvalidLiquidationAmount):
            underwater.liquidate("carol", "bob", usdc, sol, 0)
        with pytest.raises(InvalidLiquidationAmount):
            underwater.liquidate("carol", "bob", usdc, sol, 7_000_000_001)

    def test_no_position(self, underwater, usdc, sol):
        with pytest.raises(PositionNotFound):
            underwater.liquidate("carol", "alice", usdc, sol, 1_000_000_000)

    def test_collateral_market_without_shares(self, underwater, usdc):
        before = engine_state(underwater)
        with pytest.raises(InsufficientCollateral):
            underwater.liquidate("carol", "bob", usdc, usdc, 1_000_000_000)
        assert engine_state(underwater) == before

    def test_liquidation_allowed_while_paused(self, underwater, usdc, sol):
        underwater.set_paused("admin", usdc, True)
        underwater.set_paused("admin", sol, True)
        underwater.liquidate("carol", "bob", usdc, sol, 1_000_000_000)


class TestInterest:

    def test_debt_and_rate_grow_over_time(self, parity_engine):
        eng = parity_engine
        eng.supply("alice", 0, ALICE_SUPPLY)
        eng.supply("bob", 1, BOB_COLLATERAL)
        eng.borrow("bob", 0, 500_000_000)
        eng.clock.advance(86_400)

        assert eng.current_debt("bob", 0) > 500_000_000
        assert eng.exchange_rate(0) > SCALE
        assert eng.get_market(0).last_accrual_time == START

        receipt = eng.accrue("keeper")
        assert receipt.amount > 0
        assert eng.get_market(0).last_accrual_time == START + 86_400
        assert eng.share_balance("treasury", 0) > 0
        assert any(m.dest == "treasury" and m.asset == "sUSDC" for m in receipt.moves)

    def test_accrue_twice_at_same_time(self, parity_engine):
        eng = parity_engine
        eng.supply("alice", 0, ALICE_SUPPLY)
        eng.supply("bob", 1, BOB_COLLATERAL)
        eng.borrow("bob", 0, 500_000_000)
        eng.clock.advance(3_600)
        eng.accrue("keeper", 0)
        market = eng.get_market(0)
        eng.accrue("keeper", 0)
        assert eng.get_market(0) == market

    def test_market_rates(self, funded, usdc):
        funded.borrow("bob", usdc, 7_000_000_000)
        rates = funded.market_rates(usdc)
        assert rates['utilization_bps'] == 7_000
        assert rates['supply_rate'] < rates['borrow_rate']


class TestVaults:

    def test_lifecycle(self, engine, clock, events):
        engine.create_vault("carol", VaultStrategy.BALANCED)
        engine.set_vault_allocations("carol", "carol", {0: 6_000, 1: 4_000})
        clock.advance(60)
        engine.rebalance_vault("carol", "carol")
        vault = engine.get_vault("carol")
        assert vault.allocations == {0: 6_000, 1: 4_000}
        assert vault.last_rebalance == START + 60
        assert events.of_type(VaultCreated)[0].strategy == 1
        assert events.of_type(VaultRebalanced)[0].allocations == {0: 6_000, 1: 4_000}

    def test_only_owner_manages(self, engine):
        engine.create_vault("carol", VaultStrategy.CONSERVATIVE)
        with pytest.raises(Unauthorized):
            engine.set_vault_allocations("mallory", "carol", {0: 10_000})

    def test_unknown_market_allocation(self, engine):
        engine.create_vault("carol", VaultStrategy.CONSERVATIVE)
        with pytest.raises(InvalidVaultAllocation):
            engine.set_vault_allocations("carol", "carol", {9: 10_000})

    def test_duplicate_and_missing(self, engine):
        engine.create_vault("carol", VaultStrategy.CONSERVATIVE)
        with pytest.raises(InvalidConfig):
            engine.create_vault("carol", VaultStrategy.AGGRESSIVE)
        with pytest.raises(InvalidConfig):
            engine.get_vault("dave")


class TestEventsAndLog:

    def test_setup_events(self, engine, events):
        assert isinstance(events.events[0], ProtocolInitialized)
        assert [e.asset for e in events.of_type(MarketCreated)] == ["USDC", "SOL"]

    def test_operation_events_carry_totals(self, funded, usdc, sol, events, oracle, clock):
        events.clear()
        funded.borrow("bob", usdc, 7_000_000_000)
        funded.repay("bob", usdc, 1_000_000_000)
        set_prices(oracle, clock, sol=7 * PRICE_SCALE)
        funded.liquidate("carol", "bob", usdc, sol, 1_000_000_000)
        funded.withdraw("alice", usdc, 1_000_000_000)

        borrowed = events.of_type(Borrowed)[0]
        assert borrowed.total_borrowed == 7_000_000_000
        repaid = events.of_type(Repaid)[0]
        assert repaid.remaining_debt == 6_000_000_000
        liquidated = events.of_type(Liquidated)[0]
        assert liquidated.health_factor_bps < 10_000
        assert liquidated.collateral_seized == 150_000_000
        withdrawn = events.of_type(Withdrawn)[0]
        assert withdrawn.amount == 1_000_000_000
        assert not events.of_type(Supplied)
        assert not events.of_type(InterestAccrued)

    def test_pause_event(self, engine, usdc, events):
        engine.set_paused("admin", usdc, True)
        event = events.of_type(MarketPauseChanged)[0]
        assert event.paused and event.caller == "admin"

    def test_failed_sink_does_not_undo_operation(self, funded, usdc):
        class ExplodingSink:
            def emit(self, event):
                raise RuntimeError("sink down")

        funded.event_sink = ExplodingSink()
        receipt = funded.supply("carol", usdc, ALICE_SUPPLY)

        assert funded.share_balance("carol", usdc) == receipt.shares
        assert funded.operation_log[-1] is receipt.record
        [(event, exc)] = funded.undelivered
        assert isinstance(event, Supplied)
        assert isinstance(exc, RuntimeError)

    def test_events_describe_committed_state(self, parity_engine, clock):
        class RejectsSupplies:
            def __init__(self):
                self.seen = []

            def emit(self, event):
                if isinstance(event, Supplied):
                    raise RuntimeError("supplies not accepted")
                self.seen.append(event)

        eng = parity_engine
        eng.supply("alice", 0, ALICE_SUPPLY)
        eng.supply("bob", 1, ALICE_SUPPLY)
        eng.borrow("bob", 0, ALICE_SUPPLY // 2)
        clock.advance(3_600)

        sink = RejectsSupplies()
        eng.event_sink = sink
        eng.supply("carol", 0, ALICE_SUPPLY)

        [accrued] = [e for e in sink.seen if isinstance(e, InterestAccrued)]
        assert accrued.borrow_interest > 0
        assert accrued.total_supplied + ALICE_SUPPLY == eng.get_market(0).total_supplied
        assert [type(e) for e, _ in eng.undelivered] == [Supplied]
        assert eng.share_balance("carol", 0) > 0

    def test_log_sequence_and_exec_ids(self, funded):
        log = funded.operation_log
        assert [r.sequence_number for r in log] == list(range(len(log)))
        assert [r.kind for r in log[:3]] == [
            OperationKind.INITIALIZE, OperationKind.CREATE_MARKET, OperationKind.CREATE_MARKET,
        ]
        assert log[0].exec_id == f"exec:test:000000000000:{START}"
        assert len({r.exec_id for r in log}) == len(log)

    def test_rejected_operations_are_not_logged(self, funded, usdc):
        before = len(funded.operation_log)
        with pytest.raises(BorrowWouldCauseLiquidation):
            funded.borrow("bob", usdc, 9_000_000_000)
        assert len(funded.operation_log) == before

    def test_changes_recorded(self, funded, usdc):
        receipt = funded.borrow("bob", usdc, 1_000_000_000)
        keys = [c.key for c in receipt.record.changes]
        assert "market:0" in keys
        assert "position:bob:0" in keys
        market_change = next(c for c in receipt.record.changes if c.key == "market:0")
        assert market_change.changed_fields()['total_borrowed'] == (0, 1_000_000_000)

    def test_clone_is_independent(self, funded, usdc):
        copy = funded.clone()
        copy.borrow("bob", usdc, 1_000_000_000)
        assert funded.get_position("bob", usdc) is None
        assert copy.get_position("bob", usdc).principal == 1_000_000_000
        assert len(copy.operation_log) == len(funded.operation_log) + 1


class TestVerboseOutput:

    def test_applied_and_rejected(self, capsys):
        clock = ManualClock(START)
        oracle = StaticPriceOracle({"USDC": PRICE_SCALE}, as_of=START)
        eng = LendingEngine("loud", clock, oracle, event_sink=RecordingEventSink())
        eng.initialize("admin", treasury="treasury")
        eng.create_market("admin", "USDC")
        with pytest.raises(BelowMinimum):
            eng.supply("alice", 0, 1)

        out = capsys.readouterr().out
        assert f"INITIALIZE: exec:loud:000000000000:{START}" in out
        assert "✓ APPLIED" in out
        assert "📝 Registered: market 0 USDC" in out
        assert "✗ REJECTED supply by alice: BelowMinimum" in out


class TestQueries:

    def test_account_snapshot(self, funded, usdc):
        funded.borrow("bob", usdc, 7_000_000_000)
        snap = funded.account_snapshot("bob")
        assert snap.collateral_value == 10_000_000_000
        assert snap.borrow_capacity == 7_500_000_000
        assert snap.debt_value == 7_000_000_000
        assert snap.health_factor_bps == 12_142
        assert not snap.is_liquidatable

    def test_no_debt_health(self, funded):
        assert funded.health_factor("alice") == MAX_HEALTH_FACTOR
        assert funded.health_factor("nobody") == MAX_HEALTH_FACTOR

    def test_underlying_balance(self, funded, usdc):
        assert funded.underlying_balance("alice", usdc) == ALICE_SUPPLY
        assert funded.underlying_balance("carol", usdc) == 0
