"""
Core types shared across the lending engine.

This module provides the foundational pieces every other module builds on:
1. Constants: protocol-wide parameters (close factor, dust threshold, limits)
2. Exceptions: LendingError and the domain-specific error taxonomy
3. Custody instructions: Direction, Transfer
4. Receipts: the immutable record returned by every committed market operation

Nothing in this module mutates state. Transfers are instructions for the
custody collaborator; the engine itself never moves funds.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
import hashlib
from typing import Any, Dict, Mapping, Optional, Tuple

from .fixed import Fixed


# ============================================================================
# CONSTANTS
# ============================================================================

SECONDS_PER_YEAR = 365 * 24 * 60 * 60

# At most this share of a position's weighted debt may be repaid in a single
# liquidation call (unless the borrow is dust).
CLOSE_FACTOR_PCT = 20

# Borrows worth at most this many USD are liquidated in full.
LIQUIDATION_DUST_USD = 1

# Bound on the combined liquidation bonus and protocol fee, in bps.
MAX_LIQUIDATION_INCENTIVE_BPS = 2000

# Positions per obligation.
MAX_DEPOSITS = 5
MAX_BORROWS = 5


def ctoken_symbol(coin_type: str) -> str:
    """Asset symbol for the receipt token of a reserve."""
    return f"CToken<{coin_type}>"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LendingError(Exception):
    """Base exception for all lending-engine errors."""
    pass


class ConfigError(LendingError):
    """Raised when a reserve or rate limiter configuration is invalid."""
    pass


class StalePriceError(LendingError):
    """Raised when a reserve price is older than its staleness threshold."""
    pass


class StaleObligationError(StalePriceError):
    """Raised when an obligation was not refreshed at the current timestamp."""
    pass


class InvalidPriceError(LendingError):
    """Raised when a price reading is flagged invalid or its bounds are inconsistent."""
    pass


class InsufficientHealthError(LendingError):
    """Raised when an operation would leave an obligation unhealthy."""
    pass


class NotLiquidatableError(LendingError):
    """Raised when liquidating an obligation whose debt is below its unhealthy threshold."""
    pass


class NotForgivableError(LendingError):
    """Raised when forgiving debt on an obligation that still holds collateral."""
    pass


class AmountTooSmallError(LendingError):
    """Raised when an amount is zero or rounds to zero."""
    pass


class AmountExceedsPositionError(LendingError):
    """Raised when withdrawing more ctokens than are deposited."""
    pass


class RateLimitExceededError(LendingError):
    """Raised when an outflow would exceed the rate limiter's window capacity."""
    pass


class RecordNotFoundError(LendingError):
    """Raised when a reserve, obligation, deposit or borrow does not exist."""
    pass


class LimitExceededError(LendingError):
    """Raised when a deposit or borrow cap (token or USD) would be exceeded."""
    pass


class InsufficientLiquidityError(LendingError):
    """Raised when a reserve does not hold enough available liquidity."""
    pass


class IsolationModeError(LendingError):
    """Raised when an isolated asset would be borrowed alongside another borrow."""
    pass


class SameAssetPositionError(LendingError):
    """Raised when an obligation would deposit and borrow the same reserve."""
    pass


# ============================================================================
# CUSTODY INSTRUCTIONS
# ============================================================================

class Direction(str, Enum):
    """
    Direction of a custody instruction.

    USER_TO_MARKET: the caller pays underlying into the reserve.
    MARKET_TO_USER: the reserve pays underlying out to the caller.
    MINT_TO_USER: newly minted ctokens go to the caller.
    BURN_FROM_USER: ctokens are taken from the caller and burned.
    MARKET_TO_FEE_RECEIVER: protocol fees leave the reserve.
    """
    USER_TO_MARKET = "user_to_market"
    MARKET_TO_USER = "market_to_user"
    MINT_TO_USER = "mint_to_user"
    BURN_FROM_USER = "burn_from_user"
    MARKET_TO_FEE_RECEIVER = "market_to_fee_receiver"


@dataclass(frozen=True, slots=True)
class Transfer:
    """
    A single custody instruction emitted by a committed operation.

    Attributes:
        asset: Coin type of the underlying, or the ctoken symbol.
        amount: Integer token units (always positive).
        direction: Which way the value moves.
    """
    asset: str
    amount: int
    direction: Direction

    def __post_init__(self):
        if not self.asset or not self.asset.strip():
            raise ValueError("Transfer asset cannot be empty")
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise ValueError(f"Transfer amount must be int, got {type(self.amount)}")
        if self.amount <= 0:
            raise ValueError(f"Transfer amount must be positive, got {self.amount}")

    def __repr__(self) -> str:
        return f"Transfer({self.amount} {self.asset}: {self.direction.value})"


# ============================================================================
# RECEIPTS
# ============================================================================

def _canonicalize(value: Any) -> str:
    """
    Produce a canonical string representation of a value for hashing.

    Dict key order never affects the output, so equal receipts built in
    different orders hash identically.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Fixed):
        return f"F:{value.scaled}"
    if isinstance(value, Enum):
        return f"E:{value.value}"
    if isinstance(value, int):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, Transfer):
        return f"X:{value.asset}|{value.amount}|{value.direction.value}"
    if isinstance(value, Mapping):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        serialized = ",".join(_canonicalize(item) for item in value)
        return f"[{serialized}]"
    return f"R:{repr(value)}"


@dataclass(frozen=True, slots=True)
class Receipt:
    """
    Immutable record of a committed market operation.

    Attributes:
        sequence_number: Monotonic position in the market's receipt log.
        operation: Name of the market operation (e.g. "borrow").
        timestamp: Caller-supplied time of the operation, in seconds.
        obligation_id: Obligation touched, if any.
        reserve_index: Primary reserve touched, if any.
        transfers: Custody instructions, in the order they must be executed.
        details: Operation-specific values (fees, seized ctokens, ...).
        content_id: Hash of everything above except the sequence number.
            Two replays of the same operations produce the same content ids.
    """
    sequence_number: int
    operation: str
    timestamp: int
    obligation_id: Optional[str] = None
    reserve_index: Optional[int] = None
    transfers: Tuple[Transfer, ...] = ()
    details: Mapping[str, Any] = field(default_factory=dict)
    content_id: str = ""

    def __post_init__(self):
        if not self.operation:
            raise ValueError("Receipt operation cannot be empty")
        if self.sequence_number < 0:
            raise ValueError(f"Receipt sequence_number must be non-negative, got {self.sequence_number}")
        if not self.content_id:
            object.__setattr__(self, 'content_id', _compute_content_id(
                self.operation, self.timestamp, self.obligation_id,
                self.reserve_index, self.transfers, self.details,
            ))

    def transfers_of(self, direction: Direction) -> Tuple[Transfer, ...]:
        return tuple(t for t in self.transfers if t.direction is direction)


def _compute_content_id(
    operation: str,
    timestamp: int,
    obligation_id: Optional[str],
    reserve_index: Optional[int],
    transfers: Tuple[Transfer, ...],
    details: Mapping[str, Any],
) -> str:
    content = "|".join([
        f"op:{operation}",
        f"ts:{timestamp}",
        f"obligation:{_canonicalize(obligation_id)}",
        f"reserve:{_canonicalize(reserve_index)}",
        f"transfers:{_canonicalize(transfers)}",
        f"details:{_canonicalize(dict(details))}",
    ])
    return hashlib.sha256(content.encode()).hexdigest()[:16]


def details_dict(**values: Any) -> Dict[str, Any]:
    """Drop None entries so receipts only carry values that apply."""
    return {k: v for k, v in values.items() if v is not None}
