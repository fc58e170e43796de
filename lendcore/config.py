"""
config.py - Reserve and rate limiter configuration

Configuration is data: immutable dataclasses validated on construction, plus
adapter functions that build them from plain mappings (the shape an admin
tool produces after decoding JSON or YAML) and turn them back into mappings.

UNITS:
======

    *_pct   whole percent          (open_ltv_pct=80 means 0.80)
    *_bps   basis points           (borrow_fee_bps=10 means 0.001)
    limits  integer token units    (deposit_limit, borrow_limit)
    *_usd   whole USD              (deposit_limit_usd, borrow_limit_usd)

Every Fixed-valued property below converts from these integer fields, so a
config round-trips through a dict without any rounding.

Example:
    config = load_reserve_config({
        "open_ltv_pct": 80,
        "close_ltv_pct": 85,
        "borrow_weight_bps": 10_000,
        "deposit_limit": 10**15,
        "borrow_limit": 10**15,
        "liquidation_bonus_bps": 500,
        "interest_rate": {"utils": [0, 80, 100], "aprs_bps": [0, 1000, 10000]},
    })
    config.open_ltv  # Fixed(0.8)
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from .core import ConfigError, MAX_LIQUIDATION_INCENTIVE_BPS
from .fixed import Fixed


# No cap. Large enough for any realistic supply yet still an exact integer.
UNLIMITED = 2 ** 64 - 1


# ============================================================================
# INTEREST RATE CURVE
# ============================================================================

@dataclass(frozen=True, slots=True)
class InterestRateCurve:
    """
    Piecewise-linear borrow APR as a function of utilization.

    Attributes:
        utils: Breakpoints in whole percent, strictly increasing, 0 first and 100 last.
        aprs_bps: APR at each breakpoint in basis points, non-decreasing.
    """
    utils: Tuple[int, ...]
    aprs_bps: Tuple[int, ...]

    def __post_init__(self):
        object.__setattr__(self, 'utils', tuple(self.utils))
        object.__setattr__(self, 'aprs_bps', tuple(self.aprs_bps))
        if len(self.utils) < 2:
            raise ConfigError("Interest rate curve needs at least two breakpoints")
        if len(self.utils) != len(self.aprs_bps):
            raise ConfigError(
                f"Interest rate curve has {len(self.utils)} utils but {len(self.aprs_bps)} aprs"
            )
        if self.utils[0] != 0 or self.utils[-1] != 100:
            raise ConfigError(f"Interest rate curve must span 0..100 percent, got {self.utils}")
        for left, right in zip(self.utils, self.utils[1:]):
            if right <= left:
                raise ConfigError(f"Interest rate utils must be strictly increasing, got {self.utils}")
        for left, right in zip(self.aprs_bps, self.aprs_bps[1:]):
            if right < left:
                raise ConfigError(f"Interest rate aprs must be non-decreasing, got {self.aprs_bps}")
        if self.aprs_bps[0] < 0:
            raise ConfigError("Interest rate aprs cannot be negative")

    def apr(self, utilization: Fixed) -> Fixed:
        """
        Annual borrow rate at the given utilization (a fraction in [0, 1]).

        Linear interpolation between the two surrounding breakpoints;
        utilization above 100% is treated as 100%.
        """
        util_pct = utilization * 100
        for i in range(1, len(self.utils)):
            right_util = Fixed.from_int(self.utils[i])
            if util_pct > right_util:
                continue
            left_util = Fixed.from_int(self.utils[i - 1])
            left_apr = Fixed.from_bps(self.aprs_bps[i - 1])
            right_apr = Fixed.from_bps(self.aprs_bps[i])
            return left_apr + (util_pct - left_util) * (right_apr - left_apr) / (right_util - left_util)
        return Fixed.from_bps(self.aprs_bps[-1])


# ============================================================================
# E-MODE
# ============================================================================

@dataclass(frozen=True, slots=True)
class EModeLtv:
    """LTV pair that applies when a deposit backs a correlated borrow."""
    open_ltv_pct: int
    close_ltv_pct: int

    def __post_init__(self):
        if not 0 <= self.open_ltv_pct <= self.close_ltv_pct <= 100:
            raise ConfigError(
                f"E-mode LTVs must satisfy 0 <= open <= close <= 100, "
                f"got open={self.open_ltv_pct} close={self.close_ltv_pct}"
            )

    @property
    def open_ltv(self) -> Fixed:
        return Fixed.from_percent(self.open_ltv_pct)

    @property
    def close_ltv(self) -> Fixed:
        return Fixed.from_percent(self.close_ltv_pct)


# ============================================================================
# RESERVE CONFIG
# ============================================================================

@dataclass(frozen=True, slots=True)
class ReserveConfig:
    """
    Immutable risk parameters of one reserve.

    Replaced wholesale by update_reserve_config; a reserve never edits its
    config in place.

    The emode table is keyed by the array index of the BORROWED reserve and
    lives on the DEPOSIT reserve's config: "when this asset backs a borrow of
    reserve k, use these LTVs".
    """
    open_ltv_pct: int
    close_ltv_pct: int
    borrow_weight_bps: int
    deposit_limit: int
    borrow_limit: int
    liquidation_bonus_bps: int
    interest_rate: InterestRateCurve
    deposit_limit_usd: int = UNLIMITED
    borrow_limit_usd: int = UNLIMITED
    borrow_fee_bps: int = 0
    spread_fee_bps: int = 0
    protocol_liquidation_fee_bps: int = 0
    isolated: bool = False
    emode: Mapping[int, EModeLtv] = field(default_factory=dict)
    price_staleness_threshold_s: int = 0

    def __post_init__(self):
        if not 0 <= self.open_ltv_pct <= self.close_ltv_pct <= 100:
            raise ConfigError(
                f"LTVs must satisfy 0 <= open <= close <= 100, "
                f"got open={self.open_ltv_pct} close={self.close_ltv_pct}"
            )
        if self.borrow_weight_bps < 10_000:
            raise ConfigError(f"borrow_weight_bps must be >= 10000, got {self.borrow_weight_bps}")
        for name in ('borrow_fee_bps', 'spread_fee_bps',
                     'liquidation_bonus_bps', 'protocol_liquidation_fee_bps'):
            value = getattr(self, name)
            if not 0 <= value <= 10_000:
                raise ConfigError(f"{name} must be within 0..10000, got {value}")
        incentive = self.liquidation_bonus_bps + self.protocol_liquidation_fee_bps
        if incentive > MAX_LIQUIDATION_INCENTIVE_BPS:
            raise ConfigError(
                f"liquidation bonus + protocol fee must be <= {MAX_LIQUIDATION_INCENTIVE_BPS} bps, "
                f"got {incentive}"
            )
        for name in ('deposit_limit', 'borrow_limit', 'deposit_limit_usd',
                     'borrow_limit_usd', 'price_staleness_threshold_s'):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} cannot be negative")
        if not isinstance(self.interest_rate, InterestRateCurve):
            raise ConfigError(f"interest_rate must be an InterestRateCurve, got {type(self.interest_rate)}")
        emode = dict(self.emode)
        for index, ltv in emode.items():
            if not isinstance(ltv, EModeLtv):
                raise ConfigError(f"emode[{index}] must be an EModeLtv, got {type(ltv)}")
            if index < 0:
                raise ConfigError(f"emode reserve index cannot be negative, got {index}")
        object.__setattr__(self, 'emode', emode)

    # ------------------------------------------------------------------------
    # Fixed-point views
    # ------------------------------------------------------------------------

    @property
    def open_ltv(self) -> Fixed:
        return Fixed.from_percent(self.open_ltv_pct)

    @property
    def close_ltv(self) -> Fixed:
        return Fixed.from_percent(self.close_ltv_pct)

    @property
    def borrow_weight(self) -> Fixed:
        return Fixed.from_bps(self.borrow_weight_bps)

    @property
    def borrow_fee(self) -> Fixed:
        return Fixed.from_bps(self.borrow_fee_bps)

    @property
    def spread_fee(self) -> Fixed:
        return Fixed.from_bps(self.spread_fee_bps)

    @property
    def liquidation_bonus(self) -> Fixed:
        return Fixed.from_bps(self.liquidation_bonus_bps)

    @property
    def protocol_liquidation_fee(self) -> Fixed:
        return Fixed.from_bps(self.protocol_liquidation_fee_bps)

    def emode_ltv_for(self, borrow_reserve_index: int) -> Optional[EModeLtv]:
        return self.emode.get(borrow_reserve_index)


# ============================================================================
# RATE LIMITER CONFIG
# ============================================================================

@dataclass(frozen=True, slots=True)
class RateLimiterConfig:
    """
    Sliding-window outflow cap.

    Attributes:
        window_duration: Window length in seconds (must be positive).
        max_outflow: Largest outflow allowed within any window, in USD.
    """
    window_duration: int
    max_outflow: Fixed

    def __post_init__(self):
        if isinstance(self.max_outflow, int) and not isinstance(self.max_outflow, bool):
            object.__setattr__(self, 'max_outflow', Fixed.from_int(self.max_outflow))
        if not isinstance(self.max_outflow, Fixed):
            raise ConfigError(f"max_outflow must be Fixed or int, got {type(self.max_outflow)}")
        if self.window_duration <= 0:
            raise ConfigError(f"window_duration must be positive, got {self.window_duration}")


def unlimited_rate_limiter_config(window_duration: int = 86_400) -> RateLimiterConfig:
    return RateLimiterConfig(window_duration=window_duration, max_outflow=Fixed.from_int(UNLIMITED))


# ============================================================================
# ADAPTER FUNCTIONS
# ============================================================================

def load_reserve_config(raw: Mapping[str, Any]) -> ReserveConfig:
    """
    Build a validated ReserveConfig from a plain mapping.

    Missing optional keys take the dataclass defaults; missing required keys
    raise ConfigError. The emode table may use string keys (as JSON objects
    do); they are converted to reserve indices.

    Raises:
        ConfigError: if a key is missing, unknown, or a value is invalid.
    """
    required = ('open_ltv_pct', 'close_ltv_pct', 'borrow_weight_bps',
                'deposit_limit', 'borrow_limit', 'liquidation_bonus_bps', 'interest_rate')
    missing = [k for k in required if k not in raw]
    if missing:
        raise ConfigError(f"Reserve config is missing keys: {missing}")
    known = set(required) | {
        'deposit_limit_usd', 'borrow_limit_usd', 'borrow_fee_bps', 'spread_fee_bps',
        'protocol_liquidation_fee_bps', 'isolated', 'emode', 'price_staleness_threshold_s',
    }
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"Reserve config has unknown keys: {unknown}")

    curve_raw = raw['interest_rate']
    try:
        curve = InterestRateCurve(
            utils=tuple(int(u) for u in curve_raw['utils']),
            aprs_bps=tuple(int(a) for a in curve_raw['aprs_bps']),
        )
    except KeyError as e:
        raise ConfigError(f"interest_rate is missing {e}") from e

    emode = {
        int(index): EModeLtv(
            open_ltv_pct=int(ltv['open_ltv_pct']),
            close_ltv_pct=int(ltv['close_ltv_pct']),
        )
        for index, ltv in raw.get('emode', {}).items()
    }

    kwargs = {k: int(raw[k]) for k in known - {'interest_rate', 'emode', 'isolated'} if k in raw}
    return ReserveConfig(
        interest_rate=curve,
        emode=emode,
        isolated=bool(raw.get('isolated', False)),
        **kwargs,
    )


def reserve_config_to_dict(config: ReserveConfig) -> Dict[str, Any]:
    """
    Convert a ReserveConfig back to a plain mapping.

    This is the inverse of load_reserve_config().
    """
    return {
        'open_ltv_pct': config.open_ltv_pct,
        'close_ltv_pct': config.close_ltv_pct,
        'borrow_weight_bps': config.borrow_weight_bps,
        'deposit_limit': config.deposit_limit,
        'borrow_limit': config.borrow_limit,
        'deposit_limit_usd': config.deposit_limit_usd,
        'borrow_limit_usd': config.borrow_limit_usd,
        'borrow_fee_bps': config.borrow_fee_bps,
        'spread_fee_bps': config.spread_fee_bps,
        'liquidation_bonus_bps': config.liquidation_bonus_bps,
        'protocol_liquidation_fee_bps': config.protocol_liquidation_fee_bps,
        'interest_rate': {
            'utils': list(config.interest_rate.utils),
            'aprs_bps': list(config.interest_rate.aprs_bps),
        },
        'isolated': config.isolated,
        'emode': {
            index: {'open_ltv_pct': ltv.open_ltv_pct, 'close_ltv_pct': ltv.close_ltv_pct}
            for index, ltv in sorted(config.emode.items())
        },
        'price_staleness_threshold_s': config.price_staleness_threshold_s,
    }
