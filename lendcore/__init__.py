"""
lendcore - Risk-Accounting Core of a Collateralized Lending Market

Decides, for every asset pool (Reserve) and every borrower position
(Obligation), how much interest has accrued, whether a position is solvent,
how large a liquidation must be, and how fast funds may leave the market
(RateLimiter). All arithmetic is fixed-point; there are no floats.

Usage:
    from lendcore import (
        LendingMarket, RateLimiterConfig, ReserveConfig, InterestRateCurve,
        PriceReading, Fixed,
    )

    curve = InterestRateCurve(utils=(0, 80, 100), aprs_bps=(0, 1000, 10000))
    usdc = ReserveConfig(open_ltv_pct=80, close_ltv_pct=85, borrow_weight_bps=10_000,
                         deposit_limit=10**15, borrow_limit=10**15,
                         liquidation_bonus_bps=500, interest_rate=curve)

    market = LendingMarket("main", RateLimiterConfig(86_400, Fixed.from_int(10**6)), now=0)
    market.add_reserve("USDC", 6, usdc, PriceReading.exact(Fixed.from_int(1), 0), now=0)

    # Supply liquidity, post the ctokens as collateral
    minted = market.deposit_liquidity_and_mint_ctokens(0, 100_000_000, now=0).details["ctokens"]
    alice = market.create_obligation("alice", now=0)
    market.deposit_ctokens_into_obligation(alice.obligation_id, 0, minted, now=0)
"""

# Fixed-point
from .fixed import Fixed, ONE, ZERO, WAD

# Core types
from .core import (
    LendingError,
    ConfigError,
    StalePriceError,
    StaleObligationError,
    InvalidPriceError,
    InsufficientHealthError,
    NotLiquidatableError,
    NotForgivableError,
    AmountTooSmallError,
    AmountExceedsPositionError,
    RateLimitExceededError,
    RecordNotFoundError,
    LimitExceededError,
    InsufficientLiquidityError,
    IsolationModeError,
    SameAssetPositionError,
    Direction,
    Transfer,
    Receipt,
    ctoken_symbol,
    SECONDS_PER_YEAR,
    CLOSE_FACTOR_PCT,
    LIQUIDATION_DUST_USD,
    MAX_DEPOSITS,
    MAX_BORROWS,
)

# Configuration
from .config import (
    InterestRateCurve,
    EModeLtv,
    ReserveConfig,
    RateLimiterConfig,
    UNLIMITED,
    unlimited_rate_limiter_config,
    load_reserve_config,
    reserve_config_to_dict,
)

# Prices
from .oracle import (
    PriceReading,
    PriceSource,
    StaticPriceSource,
    TimeSeriesPriceSource,
)

# Aggregates
from .reserve import Reserve, FeeClaim, create_reserve
from .obligation import (
    Obligation,
    Deposit,
    Borrow,
    RewardShare,
    LiquidationOutcome,
)
from .rate_limiter import RateLimiter

# Market
from .market import LendingMarket


__all__ = [
    # Fixed-point
    'Fixed', 'ONE', 'ZERO', 'WAD',
    # Errors
    'LendingError', 'ConfigError', 'StalePriceError', 'StaleObligationError',
    'InvalidPriceError', 'InsufficientHealthError', 'NotLiquidatableError',
    'NotForgivableError', 'AmountTooSmallError', 'AmountExceedsPositionError',
    'RateLimitExceededError', 'RecordNotFoundError', 'LimitExceededError',
    'InsufficientLiquidityError', 'IsolationModeError', 'SameAssetPositionError',
    # Custody and receipts
    'Direction', 'Transfer', 'Receipt', 'ctoken_symbol',
    # Constants
    'SECONDS_PER_YEAR', 'CLOSE_FACTOR_PCT', 'LIQUIDATION_DUST_USD',
    'MAX_DEPOSITS', 'MAX_BORROWS', 'UNLIMITED',
    # Configuration
    'InterestRateCurve', 'EModeLtv', 'ReserveConfig', 'RateLimiterConfig',
    'unlimited_rate_limiter_config', 'load_reserve_config', 'reserve_config_to_dict',
    # Prices
    'PriceReading', 'PriceSource', 'StaticPriceSource', 'TimeSeriesPriceSource',
    # Aggregates
    'Reserve', 'FeeClaim', 'create_reserve',
    'Obligation', 'Deposit', 'Borrow', 'RewardShare', 'LiquidationOutcome',
    'RateLimiter',
    # Market
    'LendingMarket',
]

__version__ = '1.0.0'
