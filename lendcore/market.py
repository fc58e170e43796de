"""
market.py - Stateful lending market

The LendingMarket class is the only mutable object in lendcore. Reserves,
obligations and the rate limiter are frozen values; the market holds the
committed ones and swaps in new values only after an operation has
succeeded end to end.

Key responsibilities:
    - Executes every operation atomically (all state changes commit or none do)
    - Serializes conflicting operations with per-object locks
    - Charges outflows to the rate limiter
    - Emits a Receipt with custody Transfers for every committed operation
    - Logs commits at INFO and rejections at WARNING

Locking:
    One lock per obligation, one per reserve, one for the rate limiter and a
    structural lock for the reserve array and obligation map. A mutating call
    takes the obligation lock first, then reserve locks in ascending index
    order, then the limiter lock. Reads return committed immutable snapshots
    without locking.

Example:
    market = LendingMarket("main", RateLimiterConfig(86_400, Fixed.from_int(10**6)), now=0)
    market.add_reserve("USDC", 6, usdc_config, PriceReading.exact(ONE, 0), now=0)
    receipt = market.deposit_liquidity_and_mint_ctokens(0, 100_000_000, now=0)
    receipt.details["ctokens"]  # 100000000
"""

from __future__ import annotations
from contextlib import ExitStack, contextmanager
import logging
import threading
from typing import Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from .config import RateLimiterConfig, ReserveConfig
from .core import (
    AmountTooSmallError, ConfigError, Direction, LendingError, Receipt,
    RecordNotFoundError, Transfer, ctoken_symbol, details_dict,
)
from .fixed import Fixed
from .obligation import Obligation
from .oracle import PriceReading, PriceSource
from .rate_limiter import RateLimiter
from .reserve import Reserve, create_reserve


logger = logging.getLogger(__name__)


def _transfers(*candidates: Tuple[str, int, Direction]) -> Tuple[Transfer, ...]:
    """Build Transfers, skipping zero amounts."""
    return tuple(
        Transfer(asset, amount, direction)
        for asset, amount, direction in candidates
        if amount > 0
    )


class LendingMarket:
    """
    A set of reserves and the obligations borrowing against them.

    Every mutating method takes the caller's current time `now` (integer
    seconds) and returns a Receipt. Failed operations raise a LendingError
    subclass and leave the market exactly as it was.

    Thread Safety:
        Safe for concurrent use. Operations on disjoint obligations and
        reserves proceed in parallel.
    """

    def __init__(
        self,
        name: str,
        rate_limiter_config: RateLimiterConfig,
        now: int,
        zero_reward_pairs: Iterable[Iterable[int]] = (),
    ):
        """
        Create an empty market.

        Args:
            name: Market identifier (used in log messages)
            rate_limiter_config: Outflow cap for the whole market
            now: Creation time; starts the first rate limiter window
            zero_reward_pairs: Pairs of reserve indices whose looping earns no rewards
        """
        self.name = name
        self._reserves: List[Reserve] = []
        self._obligations: Dict[str, Obligation] = {}
        self._rate_limiter = RateLimiter.create(rate_limiter_config, now)
        self._receipts: List[Receipt] = []
        self._zero_reward_pairs: FrozenSet[FrozenSet[int]] = frozenset(
            frozenset(pair) for pair in zero_reward_pairs
        )
        self._next_sequence = 0
        self._next_obligation = 0

        self._structure_lock = threading.RLock()
        self._reserve_locks: List[threading.Lock] = []
        self._obligation_locks: Dict[str, threading.Lock] = {}
        self._limiter_lock = threading.Lock()

    # ========================================================================
    # READ-ONLY ACCESS
    # ========================================================================

    @property
    def reserves(self) -> Tuple[Reserve, ...]:
        return tuple(self._reserves)

    @property
    def receipts(self) -> Tuple[Receipt, ...]:
        return tuple(self._receipts)

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def zero_reward_pairs(self) -> FrozenSet[FrozenSet[int]]:
        return self._zero_reward_pairs

    def get_reserve(self, reserve_index: int) -> Reserve:
        if not 0 <= reserve_index < len(self._reserves):
            raise RecordNotFoundError(f"No reserve at index {reserve_index}")
        return self._reserves[reserve_index]

    def find_reserve(self, coin_type: str) -> Optional[Reserve]:
        for reserve in self._reserves:
            if reserve.coin_type == coin_type:
                return reserve
        return None

    def get_obligation(self, obligation_id: str) -> Obligation:
        obligation = self._obligations.get(obligation_id)
        if obligation is None:
            raise RecordNotFoundError(f"No obligation {obligation_id!r}")
        return obligation

    def list_obligations(self) -> List[str]:
        return sorted(self._obligations)

    # ========================================================================
    # LOCKING, COMMIT, LOGGING
    # ========================================================================

    def _lock_obligation(self, stack: ExitStack, obligation_id: str) -> Obligation:
        with self._structure_lock:
            lock = self._obligation_locks.get(obligation_id)
        if lock is None:
            raise RecordNotFoundError(f"No obligation {obligation_id!r}")
        stack.enter_context(lock)
        return self._obligations[obligation_id]

    def _lock_reserves(self, stack: ExitStack, indices: Iterable[int]):
        with self._structure_lock:
            locks = []
            for index in sorted(set(indices)):
                if not 0 <= index < len(self._reserve_locks):
                    raise RecordNotFoundError(f"No reserve at index {index}")
                locks.append(self._reserve_locks[index])
        for lock in locks:
            stack.enter_context(lock)

    @contextmanager
    def _guard(self, operation: str, **context) -> Iterator[None]:
        """Log and re-raise rejected operations."""
        try:
            yield
        except LendingError as e:
            described = " ".join(f"{k}={v}" for k, v in context.items())
            logger.warning(f"{self.name}: REJECTED {operation} {described}: {type(e).__name__}: {e}")
            raise

    def _working_reserves(self, indices: Iterable[int], now: int) -> List[Reserve]:
        """Copy of the reserve array with the given reserves compounded to `now`."""
        work = list(self._reserves)
        for index in set(indices):
            work[index] = work[index].compound_interest(now)
        return work

    def _sync_rewards(self, obligation: Obligation, work: List[Reserve]) -> Obligation:
        obligation, changes = obligation.sync_reward_shares(work, self._zero_reward_pairs)
        for index, old, new in changes:
            work[index] = work[index].apply_reward_share_delta(
                old.deposit_share, new.deposit_share, old.borrow_share, new.borrow_share,
            )
        return obligation

    def _commit(
        self,
        operation: str,
        now: int,
        reserves: Mapping[int, Reserve] = None,
        obligation: Optional[Obligation] = None,
        limiter: Optional[RateLimiter] = None,
        reserve_index: Optional[int] = None,
        transfers: Tuple[Transfer, ...] = (),
        details: Optional[Mapping] = None,
    ) -> Receipt:
        """Swap in the new values and record the receipt. Caller holds every lock involved."""
        for index, reserve in (reserves or {}).items():
            self._reserves[index] = reserve
        if obligation is not None:
            self._obligations[obligation.obligation_id] = obligation
        if limiter is not None:
            self._rate_limiter = limiter

        with self._structure_lock:
            receipt = Receipt(
                sequence_number=self._next_sequence,
                operation=operation,
                timestamp=now,
                obligation_id=obligation.obligation_id if obligation is not None else None,
                reserve_index=reserve_index,
                transfers=transfers,
                details=dict(details or {}),
            )
            self._next_sequence += 1
            self._receipts.append(receipt)

        logger.info(
            f"{self.name}: #{receipt.sequence_number} {operation} "
            f"obligation={receipt.obligation_id} reserve={reserve_index} "
            f"transfers={list(transfers)}"
        )
        return receipt

    # ========================================================================
    # ADMINISTRATION
    # ========================================================================

    def add_reserve(
        self,
        coin_type: str,
        mint_decimals: int,
        config: ReserveConfig,
        reading: PriceReading,
        now: int,
    ) -> Receipt:
        """
        Append a reserve for a new asset. Its array index never changes.

        Raises:
            ConfigError: if a reserve for coin_type already exists.
            InvalidPriceError: if the initial reading is unusable.
        """
        with self._guard("add_reserve", coin_type=coin_type):
            with self._structure_lock:
                if self.find_reserve(coin_type) is not None:
                    raise ConfigError(f"Reserve for {coin_type} already exists")
                index = len(self._reserves)
                reserve = create_reserve(index, coin_type, mint_decimals, config, reading, now)
                self._reserves.append(reserve)
                self._reserve_locks.append(threading.Lock())
                return self._commit(
                    "add_reserve", now,
                    reserve_index=index,
                    details={"coin_type": coin_type, "mint_decimals": mint_decimals},
                )

    def update_reserve_config(self, reserve_index: int, config: ReserveConfig, now: int) -> Receipt:
        with self._guard("update_reserve_config", reserve=reserve_index), ExitStack() as stack:
            self._lock_reserves(stack, [reserve_index])
            reserve = self._reserves[reserve_index].update_config(config, now)
            return self._commit(
                "update_reserve_config", now,
                reserves={reserve_index: reserve},
                reserve_index=reserve_index,
            )

    def update_rate_limiter_config(self, config: RateLimiterConfig, now: int) -> Receipt:
        with self._guard("update_rate_limiter_config"), self._limiter_lock:
            limiter = self._rate_limiter.reconfigure(config, now)
            return self._commit(
                "update_rate_limiter_config", now,
                limiter=limiter,
                details={"window_duration": config.window_duration, "max_outflow": config.max_outflow},
            )

    # ========================================================================
    # PRICES AND INTEREST
    # ========================================================================

    def refresh_reserve_price(self, reserve_index: int, reading: PriceReading, now: int) -> Reserve:
        """Compound interest to `now` and accept a new price reading."""
        with self._guard("refresh_reserve_price", reserve=reserve_index), ExitStack() as stack:
            self._lock_reserves(stack, [reserve_index])
            reserve = self._reserves[reserve_index].compound_interest(now).update_price(reading)
            self._reserves[reserve_index] = reserve
            logger.debug(f"{self.name}: {reserve.coin_type} price={reading.spot} at {reading.timestamp_s}")
            return reserve

    def refresh_prices(self, source: PriceSource, now: int) -> Tuple[Reserve, ...]:
        """Refresh every reserve the source has a reading for."""
        refreshed = []
        for reserve in self.reserves:
            reading = source.get_reading(reserve.coin_type, now)
            if reading is None:
                continue
            refreshed.append(self.refresh_reserve_price(reserve.array_index, reading, now))
        return tuple(refreshed)

    def compound_interest(self, reserve_index: int, now: int) -> Reserve:
        with ExitStack() as stack:
            self._lock_reserves(stack, [reserve_index])
            reserve = self._reserves[reserve_index].compound_interest(now)
            self._reserves[reserve_index] = reserve
            return reserve

    # ========================================================================
    # LIQUIDITY
    # ========================================================================

    def deposit_liquidity_and_mint_ctokens(self, reserve_index: int, amount: int, now: int) -> Receipt:
        """Supply liquidity; the caller receives ctokens."""
        with self._guard("deposit_liquidity", reserve=reserve_index, amount=amount), ExitStack() as stack:
            self._lock_reserves(stack, [reserve_index])
            reserve = self._reserves[reserve_index].compound_interest(now)
            reserve, ctokens = reserve.deposit_liquidity_and_mint_ctokens(amount)
            return self._commit(
                "deposit_liquidity_and_mint_ctokens", now,
                reserves={reserve_index: reserve},
                reserve_index=reserve_index,
                transfers=_transfers(
                    (reserve.coin_type, amount, Direction.USER_TO_MARKET),
                    (ctoken_symbol(reserve.coin_type), ctokens, Direction.MINT_TO_USER),
                ),
                details={"ctokens": ctokens},
            )

    def _redeem(self, work: List[Reserve], limiter: RateLimiter, reserve_index: int,
                ctokens: int, now: int) -> Tuple[RateLimiter, int]:
        reserve = work[reserve_index]
        reserve.assert_price_is_fresh(now)
        reserve, liquidity = reserve.redeem_ctokens(ctokens)
        limiter = limiter.process_qty(now, reserve.market_value_upper_bound(liquidity))
        work[reserve_index] = reserve
        return limiter, liquidity

    def redeem_ctokens_and_withdraw_liquidity(self, reserve_index: int, ctokens: int, now: int) -> Receipt:
        """
        Burn ctokens for underlying liquidity.

        Raises:
            StalePriceError: if the reserve price is stale (the outflow is valued in USD).
            RateLimitExceededError: if the outflow exceeds the market's window cap.
        """
        with self._guard("redeem", reserve=reserve_index, ctokens=ctokens), ExitStack() as stack:
            self._lock_reserves(stack, [reserve_index])
            stack.enter_context(self._limiter_lock)
            work = self._working_reserves([reserve_index], now)
            limiter, liquidity = self._redeem(work, self._rate_limiter, reserve_index, ctokens, now)
            reserve = work[reserve_index]
            return self._commit(
                "redeem_ctokens_and_withdraw_liquidity", now,
                reserves={reserve_index: reserve},
                limiter=limiter,
                reserve_index=reserve_index,
                transfers=_transfers(
                    (ctoken_symbol(reserve.coin_type), ctokens, Direction.BURN_FROM_USER),
                    (reserve.coin_type, liquidity, Direction.MARKET_TO_USER),
                ),
                details={"liquidity": liquidity},
            )

    def claim_fees(self, reserve_index: int, now: int) -> Receipt:
        """Pay accumulated protocol fees of one reserve to the fee receiver."""
        with self._guard("claim_fees", reserve=reserve_index), ExitStack() as stack:
            self._lock_reserves(stack, [reserve_index])
            reserve, claim = self._reserves[reserve_index].compound_interest(now).claim_fees()
            return self._commit(
                "claim_fees", now,
                reserves={reserve_index: reserve},
                reserve_index=reserve_index,
                transfers=_transfers(
                    (reserve.coin_type, claim.liquidity, Direction.MARKET_TO_FEE_RECEIVER),
                    (ctoken_symbol(reserve.coin_type), claim.liquidation_fee_ctokens,
                     Direction.MARKET_TO_FEE_RECEIVER),
                ),
                details={
                    "spread_fees": claim.spread_fees,
                    "borrow_fees": claim.borrow_fees,
                    "liquidation_fee_ctokens": claim.liquidation_fee_ctokens,
                },
            )

    # ========================================================================
    # OBLIGATIONS
    # ========================================================================

    def create_obligation(self, owner: str, now: int, obligation_id: Optional[str] = None) -> Obligation:
        with self._guard("create_obligation", owner=owner), self._structure_lock:
            if obligation_id is None:
                obligation_id = f"obligation-{self._next_obligation}"
            if obligation_id in self._obligations:
                raise ConfigError(f"Obligation {obligation_id!r} already exists")
            self._next_obligation += 1
            obligation = Obligation(obligation_id=obligation_id, owner=owner)
            self._obligation_locks[obligation_id] = threading.Lock()
            self._commit("create_obligation", now, obligation=obligation, details={"owner": owner})
            return obligation

    def refresh_obligation(self, obligation_id: str, now: int) -> Obligation:
        """Compound the obligation's reserves to `now` and recompute its values."""
        with self._guard("refresh_obligation", obligation=obligation_id), ExitStack() as stack:
            obligation = self._lock_obligation(stack, obligation_id)
            indices = obligation.reserve_indices()
            self._lock_reserves(stack, indices)
            work = self._working_reserves(indices, now)
            obligation = obligation.refresh(work, now)
            for index in indices:
                self._reserves[index] = work[index]
            self._obligations[obligation_id] = obligation
            return obligation

    def deposit_ctokens_into_obligation(
        self, obligation_id: str, reserve_index: int, ctokens: int, now: int
    ) -> Receipt:
        """Post ctokens as collateral. Works even while prices are stale."""
        with self._guard("deposit_ctokens", obligation=obligation_id, reserve=reserve_index), \
                ExitStack() as stack:
            obligation = self._lock_obligation(stack, obligation_id)
            indices = set(obligation.reserve_indices()) | {reserve_index}
            self._lock_reserves(stack, indices)
            work = self._working_reserves([reserve_index], now)
            obligation = obligation.deposit(work[reserve_index], ctokens)
            obligation = self._sync_rewards(obligation, work)
            return self._commit(
                "deposit_ctokens_into_obligation", now,
                reserves={i: work[i] for i in indices},
                obligation=obligation,
                reserve_index=reserve_index,
                transfers=_transfers(
                    (ctoken_symbol(work[reserve_index].coin_type), ctokens, Direction.USER_TO_MARKET),
                ),
            )

    def borrow(
        self, obligation_id: str, reserve_index: int, amount: Optional[int], now: int
    ) -> Receipt:
        """
        Borrow liquidity against the obligation's collateral.

        The obligation's debt grows by amount plus the origination fee; the
        caller receives `amount`. Pass amount=None to borrow the most that
        health, reserve caps and the rate limiter allow.

        Raises:
            StalePriceError: if any involved price is stale.
            InsufficientHealthError: if the debt would not be covered.
            RateLimitExceededError: if the outflow exceeds the market's window cap.
        """
        with self._guard("borrow", obligation=obligation_id, reserve=reserve_index, amount=amount), \
                ExitStack() as stack:
            obligation = self._lock_obligation(stack, obligation_id)
            indices = set(obligation.reserve_indices()) | {reserve_index}
            self._lock_reserves(stack, indices)
            stack.enter_context(self._limiter_lock)

            work = self._working_reserves(indices, now)
            obligation = obligation.refresh(work, now)
            reserve = work[reserve_index]
            reserve.assert_price_is_fresh(now)

            if amount is None:
                amount = self._max_requested(obligation, work, self._rate_limiter, reserve_index, now)
                if amount == 0:
                    raise AmountTooSmallError(
                        f"Obligation {obligation_id} cannot borrow any {reserve.coin_type}"
                    )

            reserve, fee = reserve.borrow_liquidity(amount)
            work[reserve_index] = reserve
            debt = amount + fee
            obligation = obligation.borrow(work, reserve_index, debt, now)
            limiter = self._rate_limiter.process_qty(now, reserve.market_value_upper_bound(debt))
            obligation = self._sync_rewards(obligation, work)
            return self._commit(
                "borrow", now,
                reserves={i: work[i] for i in indices},
                obligation=obligation,
                limiter=limiter,
                reserve_index=reserve_index,
                transfers=_transfers((reserve.coin_type, amount, Direction.MARKET_TO_USER)),
                details={"amount": amount, "fee": fee},
            )

    def repay(self, obligation_id: str, reserve_index: int, max_amount: int, now: int) -> Receipt:
        """Repay up to max_amount of debt. Works even while prices are stale."""
        with self._guard("repay", obligation=obligation_id, reserve=reserve_index), ExitStack() as stack:
            if max_amount <= 0:
                raise AmountTooSmallError(f"Repay amount must be positive, got {max_amount}")
            obligation = self._lock_obligation(stack, obligation_id)
            indices = set(obligation.reserve_indices()) | {reserve_index}
            self._lock_reserves(stack, indices)
            work = self._working_reserves([reserve_index], now)
            obligation, settled = obligation.repay(work[reserve_index], Fixed.from_int(max_amount))
            liquidity = settled.ceil()
            work[reserve_index] = work[reserve_index].repay_liquidity(liquidity, settled)
            obligation = self._sync_rewards(obligation, work)
            return self._commit(
                "repay", now,
                reserves={i: work[i] for i in indices},
                obligation=obligation,
                reserve_index=reserve_index,
                transfers=_transfers((work[reserve_index].coin_type, liquidity, Direction.USER_TO_MARKET)),
                details={"settled": settled},
            )

    def _withdraw_ctokens(self, obligation: Obligation, work: List[Reserve], reserve_index: int,
                          ctokens: Optional[int], now: int) -> Tuple[Obligation, int]:
        obligation = obligation.refresh(work, now)
        if ctokens is None:
            ctokens = obligation.max_withdraw_amount(work, reserve_index)
            if ctokens == 0:
                raise AmountTooSmallError(
                    f"Obligation {obligation.obligation_id} cannot withdraw from reserve {reserve_index}"
                )
        obligation = obligation.withdraw(work, reserve_index, ctokens, now)
        return obligation, ctokens

    def withdraw_ctokens(
        self, obligation_id: str, reserve_index: int, ctokens: Optional[int], now: int
    ) -> Receipt:
        """Take ctokens out of the obligation (ctokens=None for the maximum)."""
        with self._guard("withdraw_ctokens", obligation=obligation_id, reserve=reserve_index), \
                ExitStack() as stack:
            obligation = self._lock_obligation(stack, obligation_id)
            indices = set(obligation.reserve_indices()) | {reserve_index}
            self._lock_reserves(stack, indices)
            work = self._working_reserves(indices, now)
            obligation, ctokens = self._withdraw_ctokens(obligation, work, reserve_index, ctokens, now)
            obligation = self._sync_rewards(obligation, work)
            return self._commit(
                "withdraw_ctokens", now,
                reserves={i: work[i] for i in indices},
                obligation=obligation,
                reserve_index=reserve_index,
                transfers=_transfers(
                    (ctoken_symbol(work[reserve_index].coin_type), ctokens, Direction.MARKET_TO_USER),
                ),
                details={"ctokens": ctokens},
            )

    def withdraw(
        self, obligation_id: str, reserve_index: int, ctokens: Optional[int], now: int
    ) -> Receipt:
        """Take ctokens out of the obligation and redeem them for liquidity, atomically."""
        with self._guard("withdraw", obligation=obligation_id, reserve=reserve_index), ExitStack() as stack:
            obligation = self._lock_obligation(stack, obligation_id)
            indices = set(obligation.reserve_indices()) | {reserve_index}
            self._lock_reserves(stack, indices)
            stack.enter_context(self._limiter_lock)
            work = self._working_reserves(indices, now)
            obligation, ctokens = self._withdraw_ctokens(obligation, work, reserve_index, ctokens, now)
            limiter, liquidity = self._redeem(work, self._rate_limiter, reserve_index, ctokens, now)
            obligation = self._sync_rewards(obligation, work)
            return self._commit(
                "withdraw", now,
                reserves={i: work[i] for i in indices},
                obligation=obligation,
                limiter=limiter,
                reserve_index=reserve_index,
                transfers=_transfers((work[reserve_index].coin_type, liquidity, Direction.MARKET_TO_USER)),
                details={"ctokens": ctokens, "liquidity": liquidity},
            )

    def liquidate(
        self,
        obligation_id: str,
        repay_reserve_index: int,
        withdraw_reserve_index: int,
        repay_amount: int,
        now: int,
    ) -> Receipt:
        """
        Repay an unhealthy obligation's debt and seize its collateral as ctokens.

        The protocol's liquidation fee is kept in the withdraw reserve; the
        liquidator receives the remaining seized ctokens.
        """
        with self._guard("liquidate", obligation=obligation_id,
                         repay=repay_reserve_index, withdraw=withdraw_reserve_index), ExitStack() as stack:
            obligation = self._lock_obligation(stack, obligation_id)
            indices = set(obligation.reserve_indices()) | {repay_reserve_index, withdraw_reserve_index}
            self._lock_reserves(stack, indices)
            work = self._working_reserves(indices, now)
            obligation = obligation.refresh(work, now)
            obligation, outcome = obligation.liquidate(
                work, repay_reserve_index, withdraw_reserve_index, repay_amount, now,
            )
            repay_liquidity = outcome.repay_liquidity
            work[repay_reserve_index] = work[repay_reserve_index].repay_liquidity(
                repay_liquidity, outcome.repay_amount,
            )
            # seizure was sized at 1 + bonus + fee, so the fee share is fee / (1 + bonus + fee)
            work[withdraw_reserve_index], protocol_fee = work[withdraw_reserve_index].deduct_liquidation_fee(
                outcome.withdraw_ctokens,
            )
            obligation = self._sync_rewards(obligation, work)
            return self._commit(
                "liquidate", now,
                reserves={i: work[i] for i in indices},
                obligation=obligation,
                reserve_index=withdraw_reserve_index,
                transfers=_transfers(
                    (work[repay_reserve_index].coin_type, repay_liquidity, Direction.USER_TO_MARKET),
                    (ctoken_symbol(work[withdraw_reserve_index].coin_type),
                     outcome.withdraw_ctokens - protocol_fee, Direction.MARKET_TO_USER),
                ),
                details={
                    "repay_reserve_index": repay_reserve_index,
                    "settled": outcome.repay_amount,
                    "withdraw_ctokens": outcome.withdraw_ctokens,
                    "protocol_fee_ctokens": protocol_fee,
                },
            )

    def forgive(
        self, obligation_id: str, reserve_index: int, max_amount: Optional[int], now: int
    ) -> Receipt:
        """Write off the debt of an obligation with no collateral left (max_amount=None for all)."""
        with self._guard("forgive", obligation=obligation_id, reserve=reserve_index), ExitStack() as stack:
            obligation = self._lock_obligation(stack, obligation_id)
            indices = set(obligation.reserve_indices()) | {reserve_index}
            self._lock_reserves(stack, indices)
            work = self._working_reserves(indices, now)
            obligation = obligation.refresh(work, now)
            if max_amount is None:
                borrow = obligation.find_borrow(reserve_index)
                if borrow is None:
                    raise RecordNotFoundError(
                        f"Obligation {obligation_id} has no borrow in reserve {reserve_index}"
                    )
                limit = borrow.borrowed_amount
            else:
                limit = Fixed.from_int(max_amount)
            obligation, forgiven = obligation.forgive(work[reserve_index], limit)
            work[reserve_index] = work[reserve_index].forgive_debt(forgiven)
            obligation = self._sync_rewards(obligation, work)
            return self._commit(
                "forgive", now,
                reserves={i: work[i] for i in indices},
                obligation=obligation,
                reserve_index=reserve_index,
                details=details_dict(forgiven=forgiven),
            )

    # ========================================================================
    # QUERIES
    # ========================================================================

    def _max_requested(self, obligation: Obligation, work: Sequence[Reserve],
                       limiter: RateLimiter, reserve_index: int, now: int) -> int:
        reserve = work[reserve_index]
        by_health = reserve.requested_amount_for_debit(obligation.max_borrow_amount(work, reserve_index))
        by_limiter = reserve.requested_amount_for_debit(
            reserve.usd_to_token_amount_lower_bound(limiter.remaining_outflow(now)).floor()
        )
        return min(by_health, reserve.max_borrow_amount(), by_limiter)

    def max_borrow_amount(self, obligation_id: str, reserve_index: int, now: int) -> int:
        """Largest amount borrow() would currently pay out (excluding the fee)."""
        obligation = self.get_obligation(obligation_id)
        indices = set(obligation.reserve_indices()) | {reserve_index}
        self.get_reserve(reserve_index)
        work = self._working_reserves(indices, now)
        obligation = obligation.refresh(work, now)
        return self._max_requested(obligation, work, self._rate_limiter, reserve_index, now)

    def max_withdraw_amount(self, obligation_id: str, reserve_index: int, now: int) -> int:
        """Most ctokens withdraw_ctokens() would currently release."""
        obligation = self.get_obligation(obligation_id)
        indices = obligation.reserve_indices()
        work = self._working_reserves(indices, now)
        return obligation.refresh(work, now).max_withdraw_amount(work, reserve_index)
