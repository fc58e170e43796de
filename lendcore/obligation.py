"""
obligation.py - Borrower positions: health, e-mode, liquidation

An Obligation is one borrower's set of collateral deposits (held as ctokens)
and debts, with six cached USD aggregates that decide its health:

    deposited_value_usd                       spot value of all collateral
    allowed_borrow_value_usd                  sum(lower-bound value * open LTV)
    unhealthy_borrow_value_usd                sum(spot value * close LTV)
    unweighted_borrowed_value_usd             spot value of all debt
    weighted_borrowed_value_usd               sum(spot value * borrow weight)
    weighted_borrowed_value_upper_bound_usd   sum(upper-bound value * borrow weight)

    healthy       <=>  weighted_upper <= allowed
    liquidatable  <=>  weighted > unhealthy

ARCHITECTURE (Frozen State Pattern):
====================================

Like Reserve, Obligation is frozen. Every operation returns a NEW
Obligation and never mutates the reserves it is handed; reserves are read
only, and any reserve-side change is the caller's job.

REFRESH IS MANDATORY:
=====================

refresh(reserves, now) recomputes every cached value from scratch and
stamps last_refresh_timestamp_s. borrow, withdraw and liquidate refuse to run
unless that stamp equals `now`. deposit and repay update the aggregates
incrementally and never check price freshness: adding collateral or paying
down debt can only help, and must stay possible while an oracle is down.

E-MODE:
=======

A deposit reserve's config may carry LTV overrides keyed by borrowed reserve
index. Each deposit's spot value is allocated against the weighted value of
eligible borrows, newest borrow first, and the deposit's effective LTV pair
becomes the value-weighted blend of the override LTVs (for the allocated
part) and its normal LTVs (for the rest). Unallocated borrow value carries
over to later deposits.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from .core import (
    AmountExceedsPositionError, AmountTooSmallError, InsufficientHealthError,
    IsolationModeError, LimitExceededError, NotForgivableError,
    NotLiquidatableError, RecordNotFoundError, SameAssetPositionError,
    StaleObligationError, CLOSE_FACTOR_PCT, LIQUIDATION_DUST_USD,
    MAX_BORROWS, MAX_DEPOSITS,
)
from .fixed import Fixed, ONE, ZERO
from .reserve import Reserve


# Unordered pairs of reserve indices whose looping earns no rewards.
ZeroRewardPairs = FrozenSet[FrozenSet[int]]


# ============================================================================
# POSITION RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Deposit:
    """
    Collateral held in one reserve.

    Attributes:
        reserve_array_index: Reserve the ctokens belong to.
        deposited_ctoken_amount: Ctokens held as collateral.
        market_value: Spot USD value at the last refresh (adjusted incrementally since).
        market_value_lower_bound: Same, at the lower price bound.
        open_ltv / close_ltv: Effective LTVs after e-mode blending.
    """
    reserve_array_index: int
    deposited_ctoken_amount: int
    market_value: Fixed = ZERO
    market_value_lower_bound: Fixed = ZERO
    open_ltv: Fixed = ZERO
    close_ltv: Fixed = ZERO

    def __post_init__(self):
        if self.deposited_ctoken_amount < 0:
            raise ValueError(f"Deposit ctoken amount cannot be negative, got {self.deposited_ctoken_amount}")


@dataclass(frozen=True, slots=True)
class Borrow:
    """
    Debt owed to one reserve.

    borrowed_amount is exact as of the snapshot cumulative_borrow_rate; it is
    brought current by scaling with the reserve's index growth since then.
    """
    reserve_array_index: int
    borrowed_amount: Fixed
    cumulative_borrow_rate: Fixed
    market_value: Fixed = ZERO


@dataclass(frozen=True, slots=True)
class RewardShare:
    deposit_share: Fixed = ZERO
    borrow_share: Fixed = ZERO


@dataclass(frozen=True, slots=True)
class LiquidationOutcome:
    """
    Result of a liquidation.

    Attributes:
        withdraw_ctokens: Ctokens seized from the obligation (bonus and protocol fee included).
        repay_amount: Debt settled, in underlying units. The liquidator pays its ceiling.
    """
    withdraw_ctokens: int
    repay_amount: Fixed

    @property
    def repay_liquidity(self) -> int:
        return self.repay_amount.ceil()


def _compound_debt(borrow: Borrow, reserve: Reserve) -> Borrow:
    """
    Bring a borrow's amount current with its reserve's cumulative index.

    Raises:
        StaleObligationError: if the reserve's index is behind the borrow's
            snapshot, i.e. the reserve was not compounded as far as the
            obligation's last refresh.
    """
    if borrow.cumulative_borrow_rate == reserve.cumulative_borrow_rate:
        return borrow
    if reserve.cumulative_borrow_rate < borrow.cumulative_borrow_rate:
        raise StaleObligationError(
            f"{reserve.coin_type} cumulative borrow rate {reserve.cumulative_borrow_rate} is behind "
            f"the borrow's snapshot {borrow.cumulative_borrow_rate}; compound the reserve first"
        )
    growth = reserve.cumulative_borrow_rate / borrow.cumulative_borrow_rate
    return replace(
        borrow,
        borrowed_amount=borrow.borrowed_amount * growth,
        cumulative_borrow_rate=reserve.cumulative_borrow_rate,
    )


def _adjust(value: Fixed, add: Fixed, sub: Fixed) -> Fixed:
    return (value + add).saturating_sub(sub)


# ============================================================================
# OBLIGATION
# ============================================================================

@dataclass(frozen=True, slots=True)
class Obligation:
    obligation_id: str
    owner: str
    deposits: Tuple[Deposit, ...] = ()
    borrows: Tuple[Borrow, ...] = ()
    deposited_value_usd: Fixed = ZERO
    allowed_borrow_value_usd: Fixed = ZERO
    unhealthy_borrow_value_usd: Fixed = ZERO
    unweighted_borrowed_value_usd: Fixed = ZERO
    weighted_borrowed_value_usd: Fixed = ZERO
    weighted_borrowed_value_upper_bound_usd: Fixed = ZERO
    borrowing_isolated_asset: bool = False
    last_refresh_timestamp_s: Optional[int] = None
    reward_shares: Tuple[RewardShare, ...] = ()

    def __post_init__(self):
        if not self.obligation_id or not self.obligation_id.strip():
            raise ValueError("Obligation id cannot be empty")
        if not self.owner or not self.owner.strip():
            raise ValueError("Obligation owner cannot be empty")
        object.__setattr__(self, 'deposits', tuple(self.deposits))
        object.__setattr__(self, 'borrows', tuple(self.borrows))
        object.__setattr__(self, 'reward_shares', tuple(self.reward_shares))
        deposit_indices = [d.reserve_array_index for d in self.deposits]
        borrow_indices = [b.reserve_array_index for b in self.borrows]
        if len(set(deposit_indices)) != len(deposit_indices):
            raise ValueError("Obligation holds two deposit records for the same reserve")
        if len(set(borrow_indices)) != len(borrow_indices):
            raise ValueError("Obligation holds two borrow records for the same reserve")

    # ------------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------------

    def find_deposit(self, reserve_index: int) -> Optional[Deposit]:
        for deposit in self.deposits:
            if deposit.reserve_array_index == reserve_index:
                return deposit
        return None

    def find_borrow(self, reserve_index: int) -> Optional[Borrow]:
        for borrow in self.borrows:
            if borrow.reserve_array_index == reserve_index:
                return borrow
        return None

    def _deposit_or_raise(self, reserve_index: int) -> Deposit:
        deposit = self.find_deposit(reserve_index)
        if deposit is None:
            raise RecordNotFoundError(
                f"Obligation {self.obligation_id} has no deposit in reserve {reserve_index}"
            )
        return deposit

    def _borrow_or_raise(self, reserve_index: int) -> Borrow:
        borrow = self.find_borrow(reserve_index)
        if borrow is None:
            raise RecordNotFoundError(
                f"Obligation {self.obligation_id} has no borrow in reserve {reserve_index}"
            )
        return borrow

    def _with_deposit(self, deposit: Deposit) -> Tuple[Deposit, ...]:
        """Replace (or append) the deposit for its reserve, dropping it at zero."""
        deposits = [d for d in self.deposits]
        for i, existing in enumerate(deposits):
            if existing.reserve_array_index == deposit.reserve_array_index:
                if deposit.deposited_ctoken_amount == 0:
                    del deposits[i]
                else:
                    deposits[i] = deposit
                return tuple(deposits)
        return tuple(deposits + [deposit])

    def _with_borrow(self, borrow: Borrow) -> Tuple[Borrow, ...]:
        """Replace (or append) the borrow for its reserve, dropping it at exactly zero."""
        borrows = [b for b in self.borrows]
        for i, existing in enumerate(borrows):
            if existing.reserve_array_index == borrow.reserve_array_index:
                if borrow.borrowed_amount.is_zero():
                    del borrows[i]
                else:
                    borrows[i] = borrow
                return tuple(borrows)
        return tuple(borrows + [borrow])

    def reserve_indices(self) -> Tuple[int, ...]:
        """Every reserve this obligation has a position or reward share in, ascending."""
        indices = {d.reserve_array_index for d in self.deposits}
        indices.update(b.reserve_array_index for b in self.borrows)
        indices.update(
            i for i, share in enumerate(self.reward_shares)
            if share.deposit_share or share.borrow_share
        )
        return tuple(sorted(indices))

    # ------------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------------

    def is_healthy(self) -> bool:
        return self.weighted_borrowed_value_upper_bound_usd <= self.allowed_borrow_value_usd

    def is_liquidatable(self) -> bool:
        return self.weighted_borrowed_value_usd > self.unhealthy_borrow_value_usd

    def _assert_refreshed(self, now: int):
        if self.last_refresh_timestamp_s != now:
            raise StaleObligationError(
                f"Obligation {self.obligation_id} was last refreshed at "
                f"{self.last_refresh_timestamp_s}, not at {now}"
            )

    def _assert_healthy(self):
        if not self.is_healthy():
            raise InsufficientHealthError(
                f"Obligation {self.obligation_id} would be unhealthy: weighted borrows "
                f"{self.weighted_borrowed_value_upper_bound_usd} > allowed {self.allowed_borrow_value_usd}"
            )

    # ------------------------------------------------------------------------
    # Refresh and e-mode
    # ------------------------------------------------------------------------

    def refresh(self, reserves: Sequence[Reserve], now: int) -> Obligation:
        """
        Recompute every cached value at `now`.

        Each touched reserve is compounded to `now` (locally; the passed
        reserves are not modified) and must have a fresh price. Debts are
        brought current with their reserve's cumulative index.

        Raises:
            StalePriceError: if any touched reserve's price is stale.
        """
        borrows = []
        unweighted = weighted = weighted_upper = ZERO
        isolated = False
        for borrow in self.borrows:
            reserve = reserves[borrow.reserve_array_index].compound_interest(now)
            reserve.assert_price_is_fresh(now)
            borrow = _compound_debt(borrow, reserve)
            market_value = reserve.market_value(borrow.borrowed_amount)
            weight = reserve.config.borrow_weight
            unweighted = unweighted + market_value
            weighted = weighted + market_value * weight
            weighted_upper = weighted_upper + reserve.market_value_upper_bound(borrow.borrowed_amount) * weight
            isolated = isolated or reserve.config.isolated
            borrows.append(replace(borrow, market_value=market_value))

        deposits = []
        deposited = ZERO
        for deposit in self.deposits:
            reserve = reserves[deposit.reserve_array_index].compound_interest(now)
            reserve.assert_price_is_fresh(now)
            market_value = reserve.ctoken_market_value(deposit.deposited_ctoken_amount)
            deposited = deposited + market_value
            deposits.append(replace(
                deposit,
                market_value=market_value,
                market_value_lower_bound=reserve.ctoken_market_value_lower_bound(deposit.deposited_ctoken_amount),
            ))

        refreshed = replace(
            self,
            deposits=tuple(deposits),
            borrows=tuple(borrows),
            deposited_value_usd=deposited,
            unweighted_borrowed_value_usd=unweighted,
            weighted_borrowed_value_usd=weighted,
            weighted_borrowed_value_upper_bound_usd=weighted_upper,
            borrowing_isolated_asset=isolated,
            last_refresh_timestamp_s=now,
        )
        return refreshed._blend(reserves)

    def _blend(self, reserves: Sequence[Reserve]) -> Obligation:
        """Apply e-mode LTV blending and recompute allowed/unhealthy values."""
        residual: Dict[int, Fixed] = {
            b.reserve_array_index: b.market_value * reserves[b.reserve_array_index].config.borrow_weight
            for b in self.borrows
        }
        deposits = []
        allowed = unhealthy = ZERO
        for deposit in self.deposits:
            config = reserves[deposit.reserve_array_index].config
            capacity = deposit.market_value
            allocations = []
            for borrow in reversed(self.borrows):
                if capacity.is_zero():
                    break
                override = config.emode_ltv_for(borrow.reserve_array_index)
                remaining = residual[borrow.reserve_array_index]
                if override is None or remaining.is_zero():
                    continue
                alloc = min(capacity, remaining)
                capacity = capacity - alloc
                residual[borrow.reserve_array_index] = remaining - alloc
                allocations.append((alloc, override))

            if allocations:
                open_total = capacity * config.open_ltv
                close_total = capacity * config.close_ltv
                for alloc, override in allocations:
                    open_total = open_total + alloc * override.open_ltv
                    close_total = close_total + alloc * override.close_ltv
                open_ltv = open_total / deposit.market_value
                close_ltv = close_total / deposit.market_value
            else:
                open_ltv, close_ltv = config.open_ltv, config.close_ltv

            deposits.append(replace(deposit, open_ltv=open_ltv, close_ltv=close_ltv))
            allowed = allowed + deposit.market_value_lower_bound * open_ltv
            unhealthy = unhealthy + deposit.market_value * close_ltv

        return replace(
            self,
            deposits=tuple(deposits),
            allowed_borrow_value_usd=allowed,
            unhealthy_borrow_value_usd=unhealthy,
        )

    # ------------------------------------------------------------------------
    # Deposit / withdraw
    # ------------------------------------------------------------------------

    def deposit(self, reserve: Reserve, ctokens: int) -> Obligation:
        """
        Add ctokens as collateral, valued at the reserve's current price.

        Never checks price freshness. New value counts at the reserve's normal
        LTVs until the next refresh blends it.

        Raises:
            SameAssetPositionError: if the obligation borrows from this reserve.
            LimitExceededError: if this would be a deposit beyond MAX_DEPOSITS.
        """
        if ctokens <= 0:
            raise AmountTooSmallError(f"Deposit ctokens must be positive, got {ctokens}")
        index = reserve.array_index
        if self.find_borrow(index) is not None:
            raise SameAssetPositionError(
                f"Obligation {self.obligation_id} borrows {reserve.coin_type}; cannot also deposit it"
            )
        deposit = self.find_deposit(index)
        if deposit is None:
            if len(self.deposits) >= MAX_DEPOSITS:
                raise LimitExceededError(f"Obligation {self.obligation_id} already has {MAX_DEPOSITS} deposits")
            deposit = Deposit(
                index, 0,
                open_ltv=reserve.config.open_ltv,
                close_ltv=reserve.config.close_ltv,
            )

        market_value = reserve.ctoken_market_value(ctokens)
        market_value_lower = reserve.ctoken_market_value_lower_bound(ctokens)
        deposit = replace(
            deposit,
            deposited_ctoken_amount=deposit.deposited_ctoken_amount + ctokens,
            market_value=deposit.market_value + market_value,
            market_value_lower_bound=deposit.market_value_lower_bound + market_value_lower,
        )
        return replace(
            self,
            deposits=self._with_deposit(deposit),
            deposited_value_usd=self.deposited_value_usd + market_value,
            allowed_borrow_value_usd=self.allowed_borrow_value_usd + market_value_lower * reserve.config.open_ltv,
            unhealthy_borrow_value_usd=self.unhealthy_borrow_value_usd + market_value * reserve.config.close_ltv,
        )

    def withdraw_unchecked(self, reserve: Reserve, ctokens: int) -> Obligation:
        """Remove collateral without any health check (liquidation uses this)."""
        if ctokens <= 0:
            raise AmountTooSmallError(f"Withdraw ctokens must be positive, got {ctokens}")
        deposit = self._deposit_or_raise(reserve.array_index)
        if ctokens > deposit.deposited_ctoken_amount:
            raise AmountExceedsPositionError(
                f"Cannot withdraw {ctokens} ctokens, obligation holds {deposit.deposited_ctoken_amount}"
            )
        market_value = reserve.ctoken_market_value(ctokens)
        market_value_lower = reserve.ctoken_market_value_lower_bound(ctokens)
        updated = replace(
            deposit,
            deposited_ctoken_amount=deposit.deposited_ctoken_amount - ctokens,
            market_value=deposit.market_value.saturating_sub(market_value),
            market_value_lower_bound=deposit.market_value_lower_bound.saturating_sub(market_value_lower),
        )
        return replace(
            self,
            deposits=self._with_deposit(updated),
            deposited_value_usd=self.deposited_value_usd.saturating_sub(market_value),
            allowed_borrow_value_usd=self.allowed_borrow_value_usd.saturating_sub(
                market_value_lower * deposit.open_ltv
            ),
            unhealthy_borrow_value_usd=self.unhealthy_borrow_value_usd.saturating_sub(
                market_value * deposit.close_ltv
            ),
        )

    def withdraw(self, reserves: Sequence[Reserve], reserve_index: int, ctokens: int, now: int) -> Obligation:
        """
        Remove collateral, keeping the obligation healthy.

        Raises:
            StaleObligationError: if not refreshed at `now`.
            InsufficientHealthError: if the remaining collateral does not cover the debt.
        """
        self._assert_refreshed(now)
        obligation = self.withdraw_unchecked(reserves[reserve_index], ctokens)._blend(reserves)
        obligation._assert_healthy()
        return obligation

    def max_withdraw_amount(self, reserves: Sequence[Reserve], reserve_index: int) -> int:
        """Most ctokens withdrawable from a reserve without breaking health."""
        deposit = self.find_deposit(reserve_index)
        if deposit is None:
            return 0
        if not self.borrows or deposit.open_ltv.is_zero():
            return deposit.deposited_ctoken_amount
        reserve = reserves[reserve_index]
        room = self.allowed_borrow_value_usd.saturating_sub(self.weighted_borrowed_value_upper_bound_usd)
        tokens = reserve.usd_to_token_amount_upper_bound(room / deposit.open_ltv)
        ratio = reserve.ctoken_ratio()
        if ratio.is_zero():
            return deposit.deposited_ctoken_amount
        return min((tokens / ratio).floor(), deposit.deposited_ctoken_amount)

    # ------------------------------------------------------------------------
    # Borrow / repay / forgive
    # ------------------------------------------------------------------------

    def borrow(self, reserves: Sequence[Reserve], reserve_index: int, amount: int, now: int) -> Obligation:
        """
        Add `amount` of debt (fee-inclusive) in a reserve.

        `reserves` must already reflect the reserve-side borrow; only prices,
        configs and cumulative indices are read from them.

        Raises:
            StaleObligationError: if not refreshed at `now`.
            SameAssetPositionError: if the obligation deposits this reserve.
            LimitExceededError: if this would be a borrow beyond MAX_BORROWS.
            IsolationModeError: if an isolated asset would share the obligation.
            InsufficientHealthError: if the new debt is not covered.
        """
        self._assert_refreshed(now)
        if amount <= 0:
            raise AmountTooSmallError(f"Borrow amount must be positive, got {amount}")
        reserve = reserves[reserve_index]
        if self.find_deposit(reserve_index) is not None:
            raise SameAssetPositionError(
                f"Obligation {self.obligation_id} deposits {reserve.coin_type}; cannot also borrow it"
            )

        borrow = self.find_borrow(reserve_index)
        if borrow is None:
            if len(self.borrows) >= MAX_BORROWS:
                raise LimitExceededError(f"Obligation {self.obligation_id} already has {MAX_BORROWS} borrows")
            borrow = Borrow(reserve_index, ZERO, reserve.cumulative_borrow_rate)
        else:
            borrow = _compound_debt(borrow, reserve)

        market_value = reserve.market_value(amount)
        weight = reserve.config.borrow_weight
        borrow = replace(
            borrow,
            borrowed_amount=borrow.borrowed_amount + amount,
            market_value=borrow.market_value + market_value,
        )
        borrows = self._with_borrow(borrow)

        if (reserve.config.isolated or self.borrowing_isolated_asset) and len(borrows) != 1:
            raise IsolationModeError(
                f"Obligation {self.obligation_id} cannot combine an isolated borrow with other borrows"
            )

        obligation = replace(
            self,
            borrows=borrows,
            unweighted_borrowed_value_usd=self.unweighted_borrowed_value_usd + market_value,
            weighted_borrowed_value_usd=self.weighted_borrowed_value_usd + market_value * weight,
            weighted_borrowed_value_upper_bound_usd=(
                self.weighted_borrowed_value_upper_bound_usd + reserve.market_value_upper_bound(amount) * weight
            ),
            borrowing_isolated_asset=self.borrowing_isolated_asset or reserve.config.isolated,
        )._blend(reserves)
        obligation._assert_healthy()
        return obligation

    def max_borrow_amount(self, reserves: Sequence[Reserve], reserve_index: int) -> int:
        """
        Largest fee-inclusive debt the obligation could take on in a reserve.

        Zero when the obligation already deposits that reserve.
        """
        if self.find_deposit(reserve_index) is not None:
            return 0
        reserve = reserves[reserve_index]
        room = self.allowed_borrow_value_usd.saturating_sub(self.weighted_borrowed_value_upper_bound_usd)
        return reserve.usd_to_token_amount_lower_bound(room / reserve.config.borrow_weight).floor()

    def _settle(self, reserve: Reserve, max_amount: Fixed) -> Tuple[Obligation, Fixed]:
        """
        Reduce a borrow by up to max_amount, after bringing it current.

        Interest accrued since the last refresh is added to the cached values
        at the same time the settled amount is taken off them.
        """
        borrow = self._borrow_or_raise(reserve.array_index)
        current = _compound_debt(borrow, reserve)
        settled = min(max_amount, current.borrowed_amount)
        interest = current.borrowed_amount - borrow.borrowed_amount

        weight = reserve.config.borrow_weight
        add_value = reserve.market_value(interest)
        sub_value = reserve.market_value(settled)
        add_upper = reserve.market_value_upper_bound(interest)
        sub_upper = reserve.market_value_upper_bound(settled)

        updated = replace(
            current,
            borrowed_amount=current.borrowed_amount - settled,
            market_value=_adjust(current.market_value, add_value, sub_value),
        )
        borrows = self._with_borrow(updated)
        obligation = replace(
            self,
            borrows=borrows,
            unweighted_borrowed_value_usd=_adjust(self.unweighted_borrowed_value_usd, add_value, sub_value),
            weighted_borrowed_value_usd=_adjust(
                self.weighted_borrowed_value_usd, add_value * weight, sub_value * weight
            ),
            weighted_borrowed_value_upper_bound_usd=_adjust(
                self.weighted_borrowed_value_upper_bound_usd, add_upper * weight, sub_upper * weight
            ),
            borrowing_isolated_asset=self.borrowing_isolated_asset and bool(borrows),
        )
        return obligation, settled

    def repay(self, reserve: Reserve, max_repay_amount: Fixed) -> Tuple[Obligation, Fixed]:
        """
        Pay down debt in a reserve. Never checks price freshness.

        Returns:
            (new_obligation, settled) where settled = min(max_repay_amount, current debt).
            The payer owes settled.ceil() units.

        Raises:
            StaleObligationError: if `reserve` is compounded less far than the borrow.
        """
        if max_repay_amount.is_zero():
            raise AmountTooSmallError("Repay amount must be positive")
        return self._settle(reserve, max_repay_amount)

    def forgive(self, reserve: Reserve, max_forgive_amount: Fixed) -> Tuple[Obligation, Fixed]:
        """
        Write off debt of an obligation that has no collateral left.

        Raises:
            NotForgivableError: if the obligation still holds deposits.
        """
        if self.deposits:
            raise NotForgivableError(
                f"Obligation {self.obligation_id} still holds {len(self.deposits)} deposits"
            )
        return self._settle(reserve, max_forgive_amount)

    # ------------------------------------------------------------------------
    # Liquidation
    # ------------------------------------------------------------------------

    def liquidate(
        self,
        reserves: Sequence[Reserve],
        repay_reserve_index: int,
        withdraw_reserve_index: int,
        repay_amount: int,
        now: int,
    ) -> Tuple[Obligation, LiquidationOutcome]:
        """
        Repay part of an unhealthy obligation's debt in exchange for collateral.

        At most CLOSE_FACTOR_PCT of the weighted debt is repaid per call,
        unless the borrow is worth LIQUIDATION_DUST_USD or less, in which case
        all of it may be. The seized collateral is worth the repaid value times
        (1 + bonus + protocol fee) of the withdraw reserve; if the deposit is
        worth less, it is seized entirely and the repayment scaled down.

        Raises:
            StaleObligationError: if not refreshed at `now`.
            NotLiquidatableError: if the obligation is not liquidatable.
            RecordNotFoundError: if either position does not exist.
        """
        self._assert_refreshed(now)
        if not self.is_liquidatable():
            raise NotLiquidatableError(
                f"Obligation {self.obligation_id} is not liquidatable: weighted borrows "
                f"{self.weighted_borrowed_value_usd} <= unhealthy {self.unhealthy_borrow_value_usd}"
            )
        if repay_amount <= 0:
            raise AmountTooSmallError(f"Liquidation repay amount must be positive, got {repay_amount}")
        borrow = self._borrow_or_raise(repay_reserve_index)
        deposit = self._deposit_or_raise(withdraw_reserve_index)
        repay_reserve = reserves[repay_reserve_index]
        withdraw_reserve = reserves[withdraw_reserve_index]

        if borrow.market_value <= Fixed.from_int(LIQUIDATION_DUST_USD):
            max_repay = borrow.borrowed_amount
        else:
            max_repay_value = min(
                self.weighted_borrowed_value_usd * Fixed.from_percent(CLOSE_FACTOR_PCT),
                borrow.market_value,
            )
            max_repay = min(repay_reserve.usd_to_token_amount(max_repay_value), borrow.borrowed_amount)

        settle = min(max_repay, Fixed.from_int(repay_amount))
        repay_value = repay_reserve.market_value(settle)
        incentive = ONE + withdraw_reserve.config.liquidation_bonus + withdraw_reserve.config.protocol_liquidation_fee
        withdraw_value = repay_value * incentive

        if deposit.market_value.is_zero():
            settle = ZERO
            withdraw_ctokens = deposit.deposited_ctoken_amount
        elif deposit.market_value < withdraw_value:
            settle = settle * (deposit.market_value / withdraw_value)
            withdraw_ctokens = deposit.deposited_ctoken_amount
        else:
            withdraw_pct = withdraw_value / deposit.market_value
            withdraw_ctokens = (Fixed.from_int(deposit.deposited_ctoken_amount) * withdraw_pct).floor()

        obligation = self
        if not settle.is_zero():
            obligation, settle = obligation._settle(repay_reserve, settle)
        if withdraw_ctokens > 0:
            obligation = obligation.withdraw_unchecked(withdraw_reserve, withdraw_ctokens)
        return obligation, LiquidationOutcome(withdraw_ctokens=withdraw_ctokens, repay_amount=settle)

    # ------------------------------------------------------------------------
    # Reward shares
    # ------------------------------------------------------------------------

    def sync_reward_shares(
        self,
        reserves: Sequence[Reserve],
        zero_reward_pairs: ZeroRewardPairs = frozenset(),
    ) -> Tuple[Obligation, Tuple[Tuple[int, RewardShare, RewardShare], ...]]:
        """
        Recompute this obligation's reward shares.

        Deposit share is the ctoken amount; borrow share is the debt divided
        by its cumulative index (so it does not grow with interest). Depositing
        one side of a zero-reward pair while borrowing the other earns nothing
        on either side.

        Returns:
            (new_obligation, changes) where changes lists
            (reserve_index, old_share, new_share) for every slot that moved.
        """
        size = max(
            [len(self.reward_shares)]
            + [d.reserve_array_index + 1 for d in self.deposits]
            + [b.reserve_array_index + 1 for b in self.borrows]
        )
        old: List[RewardShare] = list(self.reward_shares) + [RewardShare()] * (size - len(self.reward_shares))
        new: List[RewardShare] = [RewardShare() for _ in range(size)]

        deposited = {d.reserve_array_index for d in self.deposits}
        borrowed = {b.reserve_array_index for b in self.borrows}
        looped_deposits = set()
        looped_borrows = set()
        for pair in zero_reward_pairs:
            members = tuple(pair)
            if len(members) != 2:
                continue
            a, b = members
            if a in deposited and b in borrowed:
                looped_deposits.add(a)
                looped_borrows.add(b)
            if b in deposited and a in borrowed:
                looped_deposits.add(b)
                looped_borrows.add(a)

        for d in self.deposits:
            if d.reserve_array_index not in looped_deposits:
                new[d.reserve_array_index] = replace(
                    new[d.reserve_array_index], deposit_share=Fixed.from_int(d.deposited_ctoken_amount)
                )
        for b in self.borrows:
            if b.reserve_array_index not in looped_borrows:
                reserve = reserves[b.reserve_array_index]
                current = _compound_debt(b, reserve)
                new[b.reserve_array_index] = replace(
                    new[b.reserve_array_index],
                    borrow_share=current.borrowed_amount / current.cumulative_borrow_rate,
                )

        changes = tuple(
            (index, old[index], new[index])
            for index in range(size)
            if old[index] != new[index]
        )
        return replace(self, reward_shares=tuple(new)), changes
