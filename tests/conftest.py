"""
conftest.py - Shared pytest fixtures for lending tests

Provides common fixtures used across unit, functional and conformance tests:
- Clocks and oracles pinned to a fixed start time
- An initialized engine with USDC and SOL markets
- A funded two-user setup (alice lends USDC, bob posts SOL)
- Plain Market records for the pure-function tests
"""

import pytest

from lending import (
    LendingEngine, ManualClock, StaticPriceOracle, ParityPriceOracle, RecordingEventSink,
    Market, SCALE, PRICE_SCALE,
)

from tests.fake_custody import FakeCustody


START = 1_700_000_000

USDC_PRICE = PRICE_SCALE
SOL_PRICE = 10 * PRICE_SCALE

ALICE_SUPPLY = 10_000_000_000
BOB_COLLATERAL = 1_000_000_000


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def make_market(
    total_supplied: int = 0,
    total_borrowed: int = 0,
    total_supply_shares: int = None,
    last_accrual_time: int = 0,
    **kwargs,
) -> Market:
    """Market record with sensible defaults; shares default to 1:1 with supply."""
    if total_supply_shares is None:
        total_supply_shares = total_supplied
    fields = dict(
        market_id=0,
        asset="USDC",
        share_token="sUSDC",
        ltv_bps=7500,
        liquidation_threshold_bps=8500,
        total_supplied=total_supplied,
        total_borrowed=total_borrowed,
        total_supply_shares=total_supply_shares,
        last_accrual_time=last_accrual_time,
        cumulative_borrow_index=SCALE,
        cumulative_supply_index=SCALE,
    )
    fields.update(kwargs)
    return Market(**fields)


def set_prices(oracle: StaticPriceOracle, clock: ManualClock, sol: int = SOL_PRICE, usdc: int = USDC_PRICE) -> None:
    """Re-publish prices at the clock's current time."""
    oracle.update_prices({"USDC": usdc, "SOL": sol}, as_of=clock.now())


def engine_state(engine: LendingEngine) -> tuple:
    """Everything an operation may change, for before/after comparisons."""
    return (
        engine.config,
        tuple(engine.markets),
        dict(engine.positions),
        dict(engine.share_balances),
        dict(engine.vaults),
        len(engine.operation_log),
    )


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def oracle(clock):
    return StaticPriceOracle({"USDC": USDC_PRICE, "SOL": SOL_PRICE}, as_of=clock.now())


@pytest.fixture
def events():
    return RecordingEventSink()


@pytest.fixture
def engine(clock, oracle, events):
    """Initialized engine with USDC (market 0) and SOL (market 1)."""
    eng = LendingEngine("test", clock, oracle, event_sink=events, verbose=False)
    eng.initialize("admin", treasury="treasury")
    eng.create_market("admin", "USDC")
    eng.create_market("admin", "SOL")
    return eng


@pytest.fixture
def usdc(engine):
    return engine.markets.find("USDC").market_id


@pytest.fixture
def sol(engine):
    return engine.markets.find("SOL").market_id


@pytest.fixture
def custody():
    c = FakeCustody()
    c.fund("alice", "USDC", 100 * ALICE_SUPPLY)
    c.fund("bob", "SOL", 10 * BOB_COLLATERAL)
    c.fund("bob", "USDC", ALICE_SUPPLY)
    c.fund("carol", "USDC", ALICE_SUPPLY)
    return c


@pytest.fixture
def funded(engine, custody, usdc, sol):
    """alice supplies USDC liquidity, bob posts SOL collateral. Nothing borrowed yet."""
    custody.settle(engine.supply("alice", usdc, ALICE_SUPPLY))
    custody.settle(engine.supply("bob", sol, BOB_COLLATERAL))
    return engine


@pytest.fixture
def parity_engine(clock, events):
    """Engine pricing every asset at 1.0, so time can advance without stale prices."""
    eng = LendingEngine("parity", clock, ParityPriceOracle(clock), event_sink=events, verbose=False)
    eng.initialize("admin", treasury="treasury")
    eng.create_market("admin", "USDC")
    eng.create_market("admin", "SOL")
    return eng
