"""
reserve.py - Asset pools: interest accrual, ctoken exchange, fees

A Reserve is the pool of one asset. Depositors receive ctokens, which are
claims on a share of the pool; borrowers draw liquidity from it and owe
debt that grows with a per-second compounding index.

ARCHITECTURE (Frozen State Pattern):
====================================

Reserve is a frozen dataclass. Every operation that changes it returns a NEW
Reserve (usually with the amount that resulted), leaving the original
untouched:

    reserve, ctokens = reserve.deposit_liquidity_and_mint_ctokens(1_000_000)

Callers decide when the new value becomes the committed one. A sequence of
operations that fails half-way therefore never leaves a partly-updated pool.

Key Formulas:
    total_supply  = available + borrowed - unclaimed_spread_fees
    ctoken_ratio  = total_supply / ctoken_supply          (1 when no ctokens)
    utilization   = borrowed / (borrowed + available)
    factor        = (1 + apr / SECONDS_PER_YEAR) ** elapsed_seconds
    market_value  = price * amount / 10**mint_decimals

Rounding always favours the pool: minted ctokens and redeemed liquidity are
floored, borrow fees and protocol liquidation fees are ceiled.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
import logging
from typing import Tuple, Union

from .config import ReserveConfig
from .core import (
    AmountExceedsPositionError, AmountTooSmallError, InsufficientLiquidityError,
    InvalidPriceError, LimitExceededError, StalePriceError, SECONDS_PER_YEAR,
)
from .fixed import Fixed, ONE, ZERO
from .oracle import PriceReading


logger = logging.getLogger(__name__)

Amount = Union[Fixed, int]


def _as_fixed(amount: Amount) -> Fixed:
    if isinstance(amount, Fixed):
        return amount
    return Fixed.from_int(amount)


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass(frozen=True, slots=True)
class FeeClaim:
    """
    Protocol revenue paid out by claim_fees().

    Attributes:
        spread_fees: Underlying units of accrued spread fees (bounded by available liquidity).
        borrow_fees: Underlying units of accumulated origination fees.
        liquidation_fee_ctokens: Ctokens seized as protocol liquidation fees.
    """
    spread_fees: int
    borrow_fees: int
    liquidation_fee_ctokens: int

    @property
    def liquidity(self) -> int:
        return self.spread_fees + self.borrow_fees

    def is_empty(self) -> bool:
        return self.liquidity == 0 and self.liquidation_fee_ctokens == 0


# ============================================================================
# RESERVE
# ============================================================================

@dataclass(frozen=True, slots=True)
class Reserve:
    """
    Immutable snapshot of one asset pool.

    Attributes:
        array_index: Position in the market's reserve array (stable forever).
        coin_type: Identifier of the underlying asset.
        mint_decimals: Decimals of the underlying token.
        config: Current risk parameters.
        price / price_lower_bound / price_upper_bound: Last accepted reading, USD per token.
        price_last_update_timestamp_s: Timestamp of that reading.
        interest_last_update_timestamp_s: Last time interest was compounded.
        available_amount: Underlying units held and lendable.
        ctoken_supply: Ctokens outstanding.
        borrowed_amount: Debt owed to the pool, underlying units, accruing.
        cumulative_borrow_rate: Compounding index, starts at 1, never decreases.
        unclaimed_spread_fees: Protocol's cut of accrued interest, underlying units.
        fees_accumulated: Borrow origination fees held for the protocol.
        liquidation_fees_ctokens: Ctokens held for the protocol from liquidations.
        deposit_reward_shares / borrow_reward_shares: Sum of obligation reward shares.
    """
    array_index: int
    coin_type: str
    mint_decimals: int
    config: ReserveConfig
    price: Fixed
    price_lower_bound: Fixed
    price_upper_bound: Fixed
    price_last_update_timestamp_s: int
    interest_last_update_timestamp_s: int
    available_amount: int = 0
    ctoken_supply: int = 0
    borrowed_amount: Fixed = ZERO
    cumulative_borrow_rate: Fixed = ONE
    unclaimed_spread_fees: Fixed = ZERO
    fees_accumulated: int = 0
    liquidation_fees_ctokens: int = 0
    deposit_reward_shares: Fixed = ZERO
    borrow_reward_shares: Fixed = ZERO

    def __post_init__(self):
        if self.array_index < 0:
            raise ValueError(f"Reserve array_index cannot be negative, got {self.array_index}")
        if not self.coin_type or not self.coin_type.strip():
            raise ValueError("Reserve coin_type cannot be empty")
        if not 0 <= self.mint_decimals <= 36:
            raise ValueError(f"Reserve mint_decimals must be within 0..36, got {self.mint_decimals}")
        for name in ('available_amount', 'ctoken_supply', 'fees_accumulated', 'liquidation_fees_ctokens'):
            if getattr(self, name) < 0:
                raise ValueError(f"Reserve {name} cannot be negative")
        if self.cumulative_borrow_rate < ONE:
            raise ValueError(f"Reserve cumulative_borrow_rate cannot be below 1, got {self.cumulative_borrow_rate}")

    # ------------------------------------------------------------------------
    # Derived quantities
    # ------------------------------------------------------------------------

    def total_supply(self) -> Fixed:
        return (Fixed.from_int(self.available_amount) + self.borrowed_amount).saturating_sub(
            self.unclaimed_spread_fees
        )

    def ctoken_ratio(self) -> Fixed:
        if self.ctoken_supply == 0:
            return ONE
        return self.total_supply() / self.ctoken_supply

    def utilization(self) -> Fixed:
        denominator = self.borrowed_amount + self.available_amount
        if denominator.is_zero():
            return ZERO
        return self.borrowed_amount / denominator

    def borrow_apr(self) -> Fixed:
        return self.config.interest_rate.apr(self.utilization())

    def deposit_apr(self) -> Fixed:
        """What ctoken holders earn: borrow APR scaled by utilization, less the spread fee."""
        return self.borrow_apr() * self.utilization() * (ONE - self.config.spread_fee)

    # ------------------------------------------------------------------------
    # Valuation
    # ------------------------------------------------------------------------

    def _scale(self) -> Fixed:
        return Fixed.from_int(10 ** self.mint_decimals)

    def market_value(self, amount: Amount) -> Fixed:
        return _as_fixed(amount) * self.price / self._scale()

    def market_value_lower_bound(self, amount: Amount) -> Fixed:
        return _as_fixed(amount) * self.price_lower_bound / self._scale()

    def market_value_upper_bound(self, amount: Amount) -> Fixed:
        return _as_fixed(amount) * self.price_upper_bound / self._scale()

    def usd_to_token_amount(self, usd: Fixed) -> Fixed:
        return usd * self._scale() / self.price

    def usd_to_token_amount_lower_bound(self, usd: Fixed) -> Fixed:
        """Fewest tokens the USD value could be worth (priced at the upper bound)."""
        return usd * self._scale() / self.price_upper_bound

    def usd_to_token_amount_upper_bound(self, usd: Fixed) -> Fixed:
        """Most tokens the USD value could be worth (priced at the lower bound)."""
        return usd * self._scale() / self.price_lower_bound

    def ctoken_market_value(self, ctokens: int) -> Fixed:
        return self.market_value(self.ctoken_ratio() * ctokens)

    def ctoken_market_value_lower_bound(self, ctokens: int) -> Fixed:
        return self.market_value_lower_bound(self.ctoken_ratio() * ctokens)

    def ctoken_market_value_upper_bound(self, ctokens: int) -> Fixed:
        return self.market_value_upper_bound(self.ctoken_ratio() * ctokens)

    # ------------------------------------------------------------------------
    # Price
    # ------------------------------------------------------------------------

    def update_price(self, reading: PriceReading) -> Reserve:
        """
        Accept a new oracle reading.

        Raises:
            InvalidPriceError: if the reading is flagged invalid, its bounds are
                not 0 < lower <= spot <= upper, or it is older than the
                current price.
        """
        if not reading.is_consistent():
            raise InvalidPriceError(
                f"Invalid price for {self.coin_type}: spot={reading.spot} "
                f"lower={reading.lower} upper={reading.upper} valid={reading.valid}"
            )
        if reading.timestamp_s < self.price_last_update_timestamp_s:
            raise InvalidPriceError(
                f"Price reading for {self.coin_type} at {reading.timestamp_s} is older than "
                f"the current price at {self.price_last_update_timestamp_s}"
            )
        return replace(
            self,
            price=reading.spot,
            price_lower_bound=reading.lower,
            price_upper_bound=reading.upper,
            price_last_update_timestamp_s=reading.timestamp_s,
        )

    def is_price_fresh(self, now: int) -> bool:
        return now - self.price_last_update_timestamp_s <= self.config.price_staleness_threshold_s

    def assert_price_is_fresh(self, now: int):
        if not self.is_price_fresh(now):
            raise StalePriceError(
                f"Price of {self.coin_type} last updated at {self.price_last_update_timestamp_s}, "
                f"now={now}, threshold={self.config.price_staleness_threshold_s}s"
            )

    # ------------------------------------------------------------------------
    # Interest
    # ------------------------------------------------------------------------

    def compound_interest(self, now: int) -> Reserve:
        """
        Accrue interest up to `now`.

        Idempotent for a given timestamp; a `now` at or before the last
        update changes nothing. The spread fee share of the new interest is
        set aside in unclaimed_spread_fees and never credited to ctoken
        holders.
        """
        elapsed = now - self.interest_last_update_timestamp_s
        if elapsed <= 0:
            return self

        apr = self.borrow_apr()
        factor = (ONE + apr / SECONDS_PER_YEAR).pow(elapsed)
        new_interest = self.borrowed_amount * (factor - ONE)
        spread = new_interest * self.config.spread_fee

        logger.debug(
            f"Compounded {self.coin_type} over {elapsed}s: apr={apr} "
            f"interest={new_interest} spread={spread}"
        )
        return replace(
            self,
            cumulative_borrow_rate=self.cumulative_borrow_rate * factor,
            borrowed_amount=self.borrowed_amount + new_interest,
            unclaimed_spread_fees=self.unclaimed_spread_fees + spread,
            interest_last_update_timestamp_s=now,
        )

    def update_config(self, config: ReserveConfig, now: int) -> Reserve:
        """Swap the config, after accruing interest under the old one."""
        return replace(self.compound_interest(now), config=config)

    # ------------------------------------------------------------------------
    # Ctokens
    # ------------------------------------------------------------------------

    def deposit_liquidity_and_mint_ctokens(self, amount: int) -> Tuple[Reserve, int]:
        """
        Add liquidity and mint ctokens at the current ratio.

        Returns:
            (new_reserve, ctokens_minted) with ctokens = floor(amount / ratio)

        Raises:
            AmountTooSmallError: if amount is zero or mints zero ctokens.
            LimitExceededError: if the total supply would exceed the deposit
                cap in tokens or in USD (valued at the upper price bound).
        """
        if amount <= 0:
            raise AmountTooSmallError(f"Deposit amount must be positive, got {amount}")
        ratio = self.ctoken_ratio()
        if ratio.is_zero():
            raise InsufficientLiquidityError(f"Reserve {self.coin_type} has no backing for its ctokens")
        ctokens = (Fixed.from_int(amount) / ratio).floor()
        if ctokens == 0:
            raise AmountTooSmallError(f"Deposit of {amount} {self.coin_type} mints zero ctokens")

        new = replace(
            self,
            available_amount=self.available_amount + amount,
            ctoken_supply=self.ctoken_supply + ctokens,
        )
        total_supply = new.total_supply()
        if total_supply > Fixed.from_int(self.config.deposit_limit):
            raise LimitExceededError(
                f"Deposit limit of {self.config.deposit_limit} {self.coin_type} exceeded"
            )
        if new.market_value_upper_bound(total_supply) > Fixed.from_int(self.config.deposit_limit_usd):
            raise LimitExceededError(
                f"Deposit limit of ${self.config.deposit_limit_usd} for {self.coin_type} exceeded"
            )
        return new, ctokens

    def redeem_ctokens(self, ctokens: int) -> Tuple[Reserve, int]:
        """
        Burn ctokens for liquidity at the current ratio.

        Returns:
            (new_reserve, liquidity) with liquidity = floor(ctokens * ratio)
        """
        if ctokens <= 0:
            raise AmountTooSmallError(f"Redeem amount must be positive, got {ctokens}")
        if ctokens > self.ctoken_supply:
            raise AmountExceedsPositionError(
                f"Cannot redeem {ctokens} ctokens, only {self.ctoken_supply} outstanding"
            )
        liquidity = (self.ctoken_ratio() * ctokens).floor()
        if liquidity == 0:
            raise AmountTooSmallError(f"Redeeming {ctokens} ctokens yields zero {self.coin_type}")
        if liquidity > self.available_amount:
            raise InsufficientLiquidityError(
                f"Redeem needs {liquidity} {self.coin_type}, only {self.available_amount} available"
            )
        new = replace(
            self,
            available_amount=self.available_amount - liquidity,
            ctoken_supply=self.ctoken_supply - ctokens,
        )
        return new, liquidity

    def max_redeem_amount(self) -> int:
        """Largest ctoken amount whose redemption fits the available liquidity."""
        ratio = self.ctoken_ratio()
        if ratio.is_zero():
            return 0
        by_liquidity = (Fixed.from_int(self.available_amount) / ratio).floor()
        return min(by_liquidity, self.ctoken_supply)

    # ------------------------------------------------------------------------
    # Borrowing
    # ------------------------------------------------------------------------

    def borrow_fee_for(self, requested: int) -> int:
        return (Fixed.from_int(requested) * self.config.borrow_fee).ceil()

    def borrow_liquidity(self, requested: int) -> Tuple[Reserve, int]:
        """
        Lend out `requested` units plus the origination fee.

        The borrower receives `requested`; the debt and the drop in available
        liquidity are both `requested + fee`, the fee being set aside in
        fees_accumulated.

        Returns:
            (new_reserve, fee)

        Raises:
            AmountTooSmallError: if requested is zero.
            InsufficientLiquidityError: if requested + fee exceeds available.
            LimitExceededError: if total debt would exceed the borrow cap in
                tokens or in USD (valued at the upper price bound).
        """
        if requested <= 0:
            raise AmountTooSmallError(f"Borrow amount must be positive, got {requested}")
        fee = self.borrow_fee_for(requested)
        debit = requested + fee
        if debit > self.available_amount:
            raise InsufficientLiquidityError(
                f"Borrow of {debit} {self.coin_type} (incl. fee {fee}) exceeds "
                f"available {self.available_amount}"
            )
        new = replace(
            self,
            available_amount=self.available_amount - debit,
            borrowed_amount=self.borrowed_amount + debit,
            fees_accumulated=self.fees_accumulated + fee,
        )
        if new.borrowed_amount > Fixed.from_int(self.config.borrow_limit):
            raise LimitExceededError(
                f"Borrow limit of {self.config.borrow_limit} {self.coin_type} exceeded"
            )
        if new.market_value_upper_bound(new.borrowed_amount) > Fixed.from_int(self.config.borrow_limit_usd):
            raise LimitExceededError(
                f"Borrow limit of ${self.config.borrow_limit_usd} for {self.coin_type} exceeded"
            )
        return new, fee

    def max_borrow_amount(self) -> int:
        """
        Largest `requested` amount borrow_liquidity() would accept.

        The fee-inclusive debit must fit the available liquidity and the
        remaining room under both borrow caps.
        """
        room_tokens = Fixed.from_int(self.config.borrow_limit).saturating_sub(self.borrowed_amount).floor()
        room_usd = Fixed.from_int(self.config.borrow_limit_usd).saturating_sub(
            self.market_value_upper_bound(self.borrowed_amount)
        )
        room_usd_tokens = self.usd_to_token_amount_lower_bound(room_usd).floor()
        return self.requested_amount_for_debit(min(self.available_amount, room_tokens, room_usd_tokens))

    def requested_amount_for_debit(self, debit_cap: int) -> int:
        """Largest `requested` whose fee-inclusive debit is at most debit_cap."""
        if debit_cap <= 0:
            return 0
        requested = (Fixed.from_int(debit_cap) / (ONE + self.config.borrow_fee)).floor()
        while requested > 0 and requested + self.borrow_fee_for(requested) > debit_cap:
            requested -= 1
        return requested

    def repay_liquidity(self, liquidity: int, settle_amount: Fixed) -> Reserve:
        """
        Take `liquidity` units back and settle `settle_amount` of debt.

        `liquidity` is the ceiling of the settled debt; the sub-unit excess
        stays in the pool.
        """
        if Fixed.from_int(liquidity) < settle_amount:
            raise ValueError(
                f"Repaid liquidity {liquidity} does not cover settled debt {settle_amount}"
            )
        return replace(
            self,
            available_amount=self.available_amount + liquidity,
            borrowed_amount=self.borrowed_amount.saturating_sub(settle_amount),
        )

    def forgive_debt(self, amount: Fixed) -> Reserve:
        """Write off bad debt. Depositors absorb the loss through the ctoken ratio."""
        return replace(self, borrowed_amount=self.borrowed_amount.saturating_sub(amount))

    # ------------------------------------------------------------------------
    # Protocol fees
    # ------------------------------------------------------------------------

    def deduct_liquidation_fee(self, ctokens: int) -> Tuple[Reserve, int]:
        """
        Carve the protocol's cut out of a liquidation seizure.

        A seizure sized as repay * (1 + bonus + fee) contains the protocol
        fee in proportion fee / (1 + bonus + fee).

        Returns:
            (new_reserve, protocol_fee_ctokens)
        """
        fee_rate = self.config.protocol_liquidation_fee
        if ctokens <= 0 or fee_rate.is_zero():
            return self, 0
        total_rate = ONE + self.config.liquidation_bonus + fee_rate
        fee = min((Fixed.from_int(ctokens) * fee_rate / total_rate).ceil(), ctokens)
        return replace(self, liquidation_fees_ctokens=self.liquidation_fees_ctokens + fee), fee

    def claim_fees(self) -> Tuple[Reserve, FeeClaim]:
        """
        Pay out everything owed to the protocol.

        Spread fees are paid only as far as available liquidity allows; the
        rest stays unclaimed until borrowers repay.
        """
        spread = min(self.unclaimed_spread_fees.floor(), self.available_amount)
        claim = FeeClaim(
            spread_fees=spread,
            borrow_fees=self.fees_accumulated,
            liquidation_fee_ctokens=self.liquidation_fees_ctokens,
        )
        new = replace(
            self,
            available_amount=self.available_amount - spread,
            unclaimed_spread_fees=self.unclaimed_spread_fees - spread,
            fees_accumulated=0,
            liquidation_fees_ctokens=0,
        )
        return new, claim

    # ------------------------------------------------------------------------
    # Reward shares
    # ------------------------------------------------------------------------

    def apply_reward_share_delta(
        self,
        old_deposit_share: Fixed,
        new_deposit_share: Fixed,
        old_borrow_share: Fixed,
        new_borrow_share: Fixed,
    ) -> Reserve:
        """Replace one obligation's contribution to the share totals."""
        if (old_deposit_share == new_deposit_share) and (old_borrow_share == new_borrow_share):
            return self
        return replace(
            self,
            deposit_reward_shares=self.deposit_reward_shares + new_deposit_share - old_deposit_share,
            borrow_reward_shares=self.borrow_reward_shares + new_borrow_share - old_borrow_share,
        )


# ============================================================================
# FACTORY
# ============================================================================

def create_reserve(
    array_index: int,
    coin_type: str,
    mint_decimals: int,
    config: ReserveConfig,
    reading: PriceReading,
    now: int,
) -> Reserve:
    """
    Create an empty reserve priced from an initial oracle reading.

    Raises:
        InvalidPriceError: if the reading is invalid or inconsistent.
    """
    if not reading.is_consistent():
        raise InvalidPriceError(f"Invalid initial price for {coin_type}")
    return Reserve(
        array_index=array_index,
        coin_type=coin_type,
        mint_decimals=mint_decimals,
        config=config,
        price=reading.spot,
        price_lower_bound=reading.lower,
        price_upper_bound=reading.upper,
        price_last_update_timestamp_s=reading.timestamp_s,
        interest_last_update_timestamp_s=now,
    )
