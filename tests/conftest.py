"""
conftest.py - Shared pytest fixtures for lendcore tests

Provides common fixtures used across unit, functional and conformance tests:
- Config and reserve factories (session-scoped, so hypothesis tests may use them)
- A two-reserve market (USDC collateral, SUI liquidity) with a static price source
"""

import pytest

from lendcore import (
    Fixed,
    InterestRateCurve,
    LendingMarket,
    PriceReading,
    RateLimiterConfig,
    ReserveConfig,
    StaticPriceSource,
    UNLIMITED,
    create_reserve,
    unlimited_rate_limiter_config,
)


# =============================================================================
# CURVES
# =============================================================================

# 0% at 0 utilization, 10% at 80%, 100% at 100%
DEFAULT_CURVE = InterestRateCurve(utils=(0, 80, 100), aprs_bps=(0, 1000, 10000))

# 10% regardless of utilization
FLAT_10_PCT = InterestRateCurve(utils=(0, 100), aprs_bps=(1000, 1000))


@pytest.fixture(scope="session")
def default_curve():
    return DEFAULT_CURVE


@pytest.fixture(scope="session")
def flat_curve():
    return FLAT_10_PCT


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture(scope="session")
def make_config():
    """Factory: ReserveConfig with permissive defaults, overridable by keyword."""
    def _make(**overrides) -> ReserveConfig:
        params = dict(
            open_ltv_pct=80,
            close_ltv_pct=85,
            borrow_weight_bps=10_000,
            deposit_limit=UNLIMITED,
            borrow_limit=UNLIMITED,
            liquidation_bonus_bps=500,
            interest_rate=DEFAULT_CURVE,
        )
        params.update(overrides)
        return ReserveConfig(**params)
    return _make


@pytest.fixture(scope="session")
def make_reserve(make_config):
    """
    Factory: a reserve priced exactly at `price` (a decimal string), optionally
    seeded with liquidity from an anonymous supplier.
    """
    def _make(index=0, coin_type="USDC", decimals=6, price="1", now=0,
              liquidity=0, config=None, **config_overrides):
        if config is None:
            config = make_config(**config_overrides)
        reading = PriceReading.exact(Fixed.from_decimal(price), now)
        reserve = create_reserve(index, coin_type, decimals, config, reading, now)
        if liquidity:
            reserve, _ = reserve.deposit_liquidity_and_mint_ctokens(liquidity)
        return reserve
    return _make


# =============================================================================
# MARKET
# =============================================================================

USDC = 10 ** 6
SUI = 10 ** 9


@pytest.fixture(scope="session")
def make_market(make_config):
    """
    Factory: a market with two reserves and 10,000 SUI of supplied liquidity.

        index 0  USDC  6 decimals  $1  open 80% / close 85%  bonus 5%  protocol fee 1%
        index 1  SUI   9 decimals  $2  open 70% / close 75%  bonus 5%

    Prices go stale after 0 seconds, so every test step must refresh them.
    """
    def _make(limiter_config: RateLimiterConfig = None, zero_reward_pairs=()):
        market = LendingMarket(
            "test",
            limiter_config or unlimited_rate_limiter_config(),
            now=0,
            zero_reward_pairs=zero_reward_pairs,
        )
        market.add_reserve(
            "USDC", 6,
            make_config(liquidation_bonus_bps=500, protocol_liquidation_fee_bps=100),
            PriceReading.exact(Fixed.from_int(1), 0), now=0,
        )
        market.add_reserve(
            "SUI", 9,
            make_config(open_ltv_pct=70, close_ltv_pct=75),
            PriceReading.exact(Fixed.from_int(2), 0), now=0,
        )
        market.deposit_liquidity_and_mint_ctokens(1, 10_000 * SUI, now=0)
        return market
    return _make


@pytest.fixture
def market(make_market):
    return make_market()


@pytest.fixture
def prices():
    return StaticPriceSource.from_prices({"USDC": Fixed.from_int(1), "SUI": Fixed.from_int(2)})


@pytest.fixture
def funded_obligation(market):
    """Alice posts 1,000 USDC of collateral at t=0. Returns the obligation id."""
    receipt = market.deposit_liquidity_and_mint_ctokens(0, 1_000 * USDC, now=0)
    obligation = market.create_obligation("alice", now=0)
    market.deposit_ctokens_into_obligation(obligation.obligation_id, 0, receipt.details["ctokens"], now=0)
    return obligation.obligation_id
