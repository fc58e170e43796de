"""
Unit tests for Reserve - interest accrual, ctoken exchange and fees.

Tests cover:
- Ctoken minting and redemption at the exchange ratio
- Deposit and borrow caps (token and USD)
- Origination fees and spread fees
- Per-second compounding
- Price acceptance and staleness
- Valuation at spot and at confidence bounds
- Protocol fee claims and liquidation fee carve-out
"""

from dataclasses import replace

import pytest

from lendcore import (
    AmountExceedsPositionError,
    AmountTooSmallError,
    Fixed,
    InsufficientLiquidityError,
    InvalidPriceError,
    LimitExceededError,
    ONE,
    PriceReading,
    SECONDS_PER_YEAR,
    StalePriceError,
    ZERO,
)


USDC = 10 ** 6
SUI = 10 ** 9


class TestCtokens:

    def test_first_deposit_mints_at_par(self, make_reserve):
        reserve = make_reserve()
        reserve, ctokens = reserve.deposit_liquidity_and_mint_ctokens(100 * USDC)
        assert ctokens == 100 * USDC
        assert reserve.available_amount == 100 * USDC
        assert reserve.ctoken_supply == 100 * USDC
        assert reserve.ctoken_ratio() == ONE

    def test_zero_deposit_rejected(self, make_reserve):
        with pytest.raises(AmountTooSmallError):
            make_reserve().deposit_liquidity_and_mint_ctokens(0)

    def test_deposit_minting_zero_ctokens_rejected(self, make_reserve):
        reserve = make_reserve(liquidity=10)
        # ratio 3: 10 underlying + 20 borrowed against 10 ctokens
        reserve = replace(reserve, borrowed_amount=Fixed.from_int(20))
        with pytest.raises(AmountTooSmallError):
            reserve.deposit_liquidity_and_mint_ctokens(2)

    def test_mint_at_ratio_above_one(self, make_reserve):
        reserve = make_reserve(liquidity=100)
        reserve = replace(reserve, borrowed_amount=Fixed.from_int(100))
        assert reserve.ctoken_ratio() == Fixed.from_int(2)
        reserve, ctokens = reserve.deposit_liquidity_and_mint_ctokens(7)
        assert ctokens == 3

    def test_redeem(self, make_reserve):
        reserve = make_reserve(liquidity=100 * USDC)
        reserve, liquidity = reserve.redeem_ctokens(40 * USDC)
        assert liquidity == 40 * USDC
        assert reserve.available_amount == 60 * USDC
        assert reserve.ctoken_supply == 60 * USDC

    def test_redeem_more_than_supply(self, make_reserve):
        with pytest.raises(AmountExceedsPositionError):
            make_reserve(liquidity=100).redeem_ctokens(101)

    def test_redeem_beyond_available_liquidity(self, make_reserve):
        reserve = make_reserve(liquidity=100 * USDC)
        reserve, _ = reserve.borrow_liquidity(80 * USDC)
        with pytest.raises(InsufficientLiquidityError):
            reserve.redeem_ctokens(21 * USDC)
        assert reserve.max_redeem_amount() == 20 * USDC

    def test_total_supply_excludes_spread_fees(self, make_reserve):
        reserve = make_reserve(liquidity=100)
        reserve = replace(reserve, borrowed_amount=Fixed.from_int(50), unclaimed_spread_fees=Fixed.from_int(10))
        assert reserve.total_supply() == Fixed.from_int(140)

    def test_utilization(self, make_reserve):
        reserve = make_reserve(liquidity=2_000 * USDC, borrow_fee_bps=10)
        reserve, _ = reserve.borrow_liquidity(1_000 * USDC)
        assert reserve.utilization() == Fixed.from_decimal("0.5005")

    def test_empty_reserve_has_zero_utilization(self, make_reserve):
        assert make_reserve().utilization() == ZERO


class TestDepositLimits:

    def test_token_limit(self, make_reserve):
        reserve = make_reserve(deposit_limit=1_000)
        reserve, _ = reserve.deposit_liquidity_and_mint_ctokens(1_000)
        with pytest.raises(LimitExceededError):
            reserve.deposit_liquidity_and_mint_ctokens(1)

    def test_usd_limit(self, make_reserve):
        reserve = make_reserve(deposit_limit_usd=100)
        reserve.deposit_liquidity_and_mint_ctokens(100 * USDC)
        with pytest.raises(LimitExceededError):
            reserve.deposit_liquidity_and_mint_ctokens(100 * USDC + 1)

    def test_usd_limit_uses_upper_price_bound(self, make_reserve):
        reserve = make_reserve(deposit_limit_usd=100)
        reserve = reserve.update_price(
            PriceReading.from_confidence(Fixed.from_int(1), Fixed.from_decimal("0.25"), 0)
        )
        # 100 USDC is worth 125 at the upper bound
        with pytest.raises(LimitExceededError):
            reserve.deposit_liquidity_and_mint_ctokens(100 * USDC)


class TestBorrowing:

    def test_borrow_with_origination_fee(self, make_reserve):
        reserve = make_reserve(liquidity=2_000 * USDC, borrow_fee_bps=10)
        reserve, fee = reserve.borrow_liquidity(1_000 * USDC)
        assert fee == 1 * USDC
        assert reserve.available_amount == 999 * USDC
        assert reserve.borrowed_amount == Fixed.from_int(1_001 * USDC)
        assert reserve.fees_accumulated == 1 * USDC

    def test_fee_rounds_up(self, make_reserve):
        reserve = make_reserve(liquidity=1_000, borrow_fee_bps=10)
        assert reserve.borrow_fee_for(1) == 1

    def test_borrow_beyond_liquidity(self, make_reserve):
        reserve = make_reserve(liquidity=1_000, borrow_fee_bps=10)
        with pytest.raises(InsufficientLiquidityError):
            reserve.borrow_liquidity(1_000)

    def test_zero_borrow_rejected(self, make_reserve):
        with pytest.raises(AmountTooSmallError):
            make_reserve(liquidity=1_000).borrow_liquidity(0)

    def test_borrow_token_limit(self, make_reserve):
        reserve = make_reserve(liquidity=1_000, borrow_limit=500)
        reserve, _ = reserve.borrow_liquidity(500)
        with pytest.raises(LimitExceededError):
            reserve.borrow_liquidity(1)

    def test_borrow_usd_limit(self, make_reserve):
        reserve = make_reserve(coin_type="SUI", decimals=9, price="2", liquidity=1_000 * SUI,
                               borrow_limit_usd=100)
        reserve.borrow_liquidity(50 * SUI)
        with pytest.raises(LimitExceededError):
            reserve.borrow_liquidity(50 * SUI + 1)

    def test_max_borrow_amount_accounts_for_fee(self, make_reserve):
        reserve = make_reserve(liquidity=1_001_000, borrow_fee_bps=10)
        assert reserve.max_borrow_amount() == 1_000_000
        reserve, fee = reserve.borrow_liquidity(1_000_000)
        assert fee == 1_000
        assert reserve.available_amount == 0

    def test_max_borrow_amount_respects_limit(self, make_reserve):
        reserve = make_reserve(liquidity=1_000, borrow_limit=300)
        assert reserve.max_borrow_amount() == 300

    def test_repay_liquidity(self, make_reserve):
        reserve = make_reserve(liquidity=1_000)
        reserve, _ = reserve.borrow_liquidity(400)
        reserve = reserve.repay_liquidity(101, Fixed.from_decimal("100.5"))
        assert reserve.available_amount == 701
        assert reserve.borrowed_amount == Fixed.from_decimal("299.5")

    def test_repay_liquidity_must_cover_settlement(self, make_reserve):
        reserve = make_reserve(liquidity=1_000)
        reserve, _ = reserve.borrow_liquidity(400)
        with pytest.raises(ValueError):
            reserve.repay_liquidity(100, Fixed.from_decimal("100.5"))

    def test_forgive_debt_lowers_ctoken_ratio(self, make_reserve):
        reserve = make_reserve(liquidity=1_000)
        reserve, _ = reserve.borrow_liquidity(400)
        reserve = reserve.forgive_debt(Fixed.from_int(100))
        assert reserve.borrowed_amount == Fixed.from_int(300)
        assert reserve.ctoken_ratio() == Fixed.from_decimal("0.9")


class TestInterest:

    def test_no_time_no_change(self, make_reserve):
        reserve = make_reserve(liquidity=1_000)
        assert reserve.compound_interest(0) is reserve

    def test_earlier_timestamp_is_ignored(self, make_reserve):
        reserve = make_reserve(liquidity=1_000, now=100)
        assert reserve.compound_interest(50) is reserve

    def test_one_second(self, make_reserve, flat_curve):
        reserve = make_reserve(liquidity=1_000 * USDC, interest_rate=flat_curve)
        reserve, _ = reserve.borrow_liquidity(500 * USDC)
        compounded = reserve.compound_interest(1)
        expected_rate = ONE + Fixed.from_bps(1000) / SECONDS_PER_YEAR
        assert compounded.cumulative_borrow_rate == expected_rate
        assert compounded.borrowed_amount == Fixed.from_int(500 * USDC) * expected_rate
        assert compounded.interest_last_update_timestamp_s == 1

    def test_one_year_is_continuous_compounding(self, make_reserve, flat_curve):
        reserve = make_reserve(liquidity=1_000 * USDC, interest_rate=flat_curve)
        reserve, _ = reserve.borrow_liquidity(500 * USDC)
        rate = reserve.compound_interest(SECONDS_PER_YEAR).cumulative_borrow_rate
        # e ** 0.1 = 1.10517...
        assert Fixed.from_decimal("1.1051") < rate < Fixed.from_decimal("1.1052")

    def test_idempotent_for_same_timestamp(self, make_reserve, flat_curve):
        reserve = make_reserve(liquidity=1_000 * USDC, interest_rate=flat_curve)
        reserve, _ = reserve.borrow_liquidity(500 * USDC)
        once = reserve.compound_interest(3_600)
        assert once.compound_interest(3_600) == once

    def test_spread_fee_set_aside(self, make_reserve, flat_curve):
        reserve = make_reserve(liquidity=1_000 * USDC, interest_rate=flat_curve, spread_fee_bps=2000)
        reserve, _ = reserve.borrow_liquidity(500 * USDC)
        compounded = reserve.compound_interest(86_400)
        interest = compounded.borrowed_amount - reserve.borrowed_amount
        assert not interest.is_zero()
        assert compounded.unclaimed_spread_fees == interest * Fixed.from_bps(2000)
        assert compounded.ctoken_ratio() > reserve.ctoken_ratio()

    def test_zero_utilization_accrues_nothing(self, make_reserve):
        reserve = make_reserve(liquidity=1_000)
        compounded = reserve.compound_interest(SECONDS_PER_YEAR)
        assert compounded.cumulative_borrow_rate == ONE
        assert compounded.interest_last_update_timestamp_s == SECONDS_PER_YEAR

    def test_update_config_compounds_first(self, make_reserve, make_config, flat_curve):
        reserve = make_reserve(liquidity=1_000 * USDC, interest_rate=flat_curve)
        reserve, _ = reserve.borrow_liquidity(500 * USDC)
        updated = reserve.update_config(make_config(), 100)
        assert updated.interest_last_update_timestamp_s == 100
        assert updated.cumulative_borrow_rate > ONE
        assert updated.config == make_config()

    def test_deposit_apr(self, make_reserve, flat_curve):
        reserve = make_reserve(liquidity=1_000, interest_rate=flat_curve, spread_fee_bps=2000)
        reserve, _ = reserve.borrow_liquidity(500)
        # 10% * 50% utilization * 80% after spread
        assert reserve.deposit_apr() == Fixed.from_decimal("0.04")


class TestPrice:

    def test_update_price(self, make_reserve):
        reserve = make_reserve().update_price(PriceReading.exact(Fixed.from_decimal("0.99"), 30))
        assert reserve.price == Fixed.from_decimal("0.99")
        assert reserve.price_last_update_timestamp_s == 30

    def test_invalid_reading_rejected(self, make_reserve):
        reading = PriceReading(ONE, ONE, ONE, 5, valid=False)
        with pytest.raises(InvalidPriceError):
            make_reserve().update_price(reading)

    def test_inconsistent_bounds_rejected(self, make_reserve):
        reading = PriceReading(ONE, Fixed.from_int(2), Fixed.from_int(3), 5)
        with pytest.raises(InvalidPriceError):
            make_reserve().update_price(reading)

    def test_older_reading_rejected(self, make_reserve):
        reserve = make_reserve(now=100)
        with pytest.raises(InvalidPriceError):
            reserve.update_price(PriceReading.exact(ONE, 99))

    def test_staleness_threshold_zero(self, make_reserve):
        reserve = make_reserve()
        reserve.assert_price_is_fresh(0)
        with pytest.raises(StalePriceError):
            reserve.assert_price_is_fresh(1)

    def test_staleness_threshold(self, make_reserve):
        reserve = make_reserve(price_staleness_threshold_s=60)
        assert reserve.is_price_fresh(60)
        assert not reserve.is_price_fresh(61)


class TestValuation:

    @pytest.fixture
    def sui(self, make_reserve):
        reserve = make_reserve(coin_type="SUI", decimals=9, price="2")
        return reserve.update_price(
            PriceReading.from_confidence(Fixed.from_int(2), Fixed.from_decimal("0.5"), 0)
        )

    def test_market_value(self, sui):
        assert sui.market_value(3 * SUI) == Fixed.from_int(6)
        assert sui.market_value_lower_bound(3 * SUI) == Fixed.from_decimal("4.5")
        assert sui.market_value_upper_bound(3 * SUI) == Fixed.from_decimal("7.5")

    def test_usd_to_tokens(self, sui):
        assert sui.usd_to_token_amount(Fixed.from_int(5)) == Fixed.from_decimal("2.5") * SUI
        assert sui.usd_to_token_amount_lower_bound(Fixed.from_int(5)) == Fixed.from_int(2 * SUI)
        assert sui.usd_to_token_amount_upper_bound(Fixed.from_int(5)).floor() == 3_333_333_333

    def test_ctoken_market_value(self, make_reserve):
        reserve = make_reserve(coin_type="SUI", decimals=9, price="2", liquidity=100 * SUI)
        reserve = replace(reserve, borrowed_amount=Fixed.from_int(50 * SUI))
        assert reserve.ctoken_market_value(10 * SUI) == Fixed.from_int(30)


class TestProtocolFees:

    def test_liquidation_fee_carve_out(self, make_reserve):
        reserve = make_reserve(liquidation_bonus_bps=500, protocol_liquidation_fee_bps=100)
        # 1_060 ctokens seized at 1 + 5% + 1%: the fee is 1_060 * 0.01 / 1.06, not / 1.05 (which rounds up to 11)
        reserve, fee = reserve.deduct_liquidation_fee(1_060)
        assert fee == 10
        assert reserve.liquidation_fees_ctokens == 10

    def test_liquidation_fee_rounds_up(self, make_reserve):
        reserve = make_reserve(liquidation_bonus_bps=500, protocol_liquidation_fee_bps=100)
        _, fee = reserve.deduct_liquidation_fee(1)
        assert fee == 1

    def test_no_protocol_fee(self, make_reserve):
        reserve = make_reserve()
        same, fee = reserve.deduct_liquidation_fee(1_000)
        assert fee == 0
        assert same is reserve

    def test_claim_fees(self, make_reserve, flat_curve):
        reserve = make_reserve(
            liquidity=1_000 * USDC, borrow_fee_bps=10, spread_fee_bps=2000,
            interest_rate=flat_curve, protocol_liquidation_fee_bps=100,
        )
        reserve, fee = reserve.borrow_liquidity(500 * USDC)
        reserve = reserve.compound_interest(SECONDS_PER_YEAR)
        reserve, _ = reserve.deduct_liquidation_fee(1_060)
        spread = reserve.unclaimed_spread_fees.floor()

        claimed, claim = reserve.claim_fees()
        assert claim.borrow_fees == fee
        assert claim.spread_fees == spread
        assert claim.liquidation_fee_ctokens == 10
        assert claim.liquidity == fee + spread
        assert claimed.fees_accumulated == 0
        assert claimed.liquidation_fees_ctokens == 0
        assert claimed.unclaimed_spread_fees < ONE
        assert claimed.available_amount == reserve.available_amount - spread

    def test_spread_claim_bounded_by_available(self, make_reserve):
        reserve = make_reserve(liquidity=100)
        reserve = replace(
            reserve, available_amount=5,
            borrowed_amount=Fixed.from_int(200), unclaimed_spread_fees=Fixed.from_int(20),
        )
        claimed, claim = reserve.claim_fees()
        assert claim.spread_fees == 5
        assert claimed.unclaimed_spread_fees == Fixed.from_int(15)
        assert claimed.available_amount == 0

    def test_empty_claim(self, make_reserve):
        _, claim = make_reserve().claim_fees()
        assert claim.is_empty()


class TestRewardShares:

    def test_apply_delta(self, make_reserve):
        reserve = make_reserve()
        reserve = reserve.apply_reward_share_delta(ZERO, Fixed.from_int(10), ZERO, Fixed.from_int(4))
        reserve = reserve.apply_reward_share_delta(Fixed.from_int(10), Fixed.from_int(3), Fixed.from_int(4), ZERO)
        assert reserve.deposit_reward_shares == Fixed.from_int(3)
        assert reserve.borrow_reward_shares == ZERO

    def test_unchanged_delta_is_identity(self, make_reserve):
        reserve = make_reserve()
        assert reserve.apply_reward_share_delta(ONE, ONE, ZERO, ZERO) is reserve

