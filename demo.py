#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: a Lending Market Step by Step

Walks one market through its life. Each step builds on the previous one.
Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3:  Supply       - Reserves, prices, deposits and ctokens
  4-6:  Borrowing    - Obligations, health, rejected borrows
  7-8:  Time         - Interest, stale prices
  9-10: Liquidation  - Price shock, liquidation, bad debt
  11:   Receipts     - The custody log and content ids

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
import logging
import sys

from lendcore import (
    Direction,
    Fixed,
    InterestRateCurve,
    LendingError,
    LendingMarket,
    PriceReading,
    RateLimiterConfig,
    ReserveConfig,
    StaticPriceSource,
    UNLIMITED,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    usdc_supply: int = 1_000
    sui_supply: int = 10_000
    sui_price: str = "2"
    shocked_sui_price: str = "3.25"
    crash_sui_price: str = "10"
    outflow_cap_usd: int = 1_000_000
    hours_elapsed: int = 24 * 30


CONFIG = DemoConfig()
QUICK_MODE = "--quick" in sys.argv

USDC = 10 ** 6
SUI = 10 ** 9


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"Objective: {objective}\n")


def show_obligation(market: LendingMarket, obligation_id: str):
    ob = market.get_obligation(obligation_id)
    print(f"  deposited       ${ob.deposited_value_usd.to_decimal():,.2f}")
    print(f"  allowed borrow  ${ob.allowed_borrow_value_usd.to_decimal():,.2f}")
    print(f"  unhealthy at    ${ob.unhealthy_borrow_value_usd.to_decimal():,.2f}")
    print(f"  weighted debt   ${ob.weighted_borrowed_value_usd.to_decimal():,.2f}")
    print(f"  healthy={ob.is_healthy()} liquidatable={ob.is_liquidatable()}")


def curve() -> InterestRateCurve:
    return InterestRateCurve(utils=(0, 80, 100), aprs_bps=(0, 1000, 10000))


# ============================================================================
# STEPS
# ============================================================================

def step_01_market() -> LendingMarket:
    step_header(1, "An Empty Market",
        "A market is a list of reserves plus one outflow limiter.")
    market = LendingMarket(
        "demo", RateLimiterConfig(86_400, CONFIG.outflow_cap_usd), now=0,
    )
    market.add_reserve(
        "USDC", 6,
        ReserveConfig(open_ltv_pct=80, close_ltv_pct=85, borrow_weight_bps=10_000,
                      deposit_limit=UNLIMITED, borrow_limit=UNLIMITED,
                      liquidation_bonus_bps=500, protocol_liquidation_fee_bps=100,
                      interest_rate=curve(), price_staleness_threshold_s=60),
        PriceReading.exact(Fixed.from_int(1), 0), now=0,
    )
    market.add_reserve(
        "SUI", 9,
        ReserveConfig(open_ltv_pct=70, close_ltv_pct=75, borrow_weight_bps=10_000,
                      deposit_limit=UNLIMITED, borrow_limit=UNLIMITED,
                      liquidation_bonus_bps=500, interest_rate=curve(),
                      price_staleness_threshold_s=60),
        PriceReading.exact(Fixed.from_decimal(CONFIG.sui_price), 0), now=0,
    )
    for reserve in market.reserves:
        print(f"  [{reserve.array_index}] {reserve.coin_type:5} price ${reserve.price.to_decimal()} "
              f"open LTV {reserve.config.open_ltv.to_decimal():.0%}")
    wait_for_enter()
    return market


def step_02_supply(market: LendingMarket):
    step_header(2, "Supplying Liquidity",
        "Suppliers deposit tokens and receive ctokens, claims on the pool.")
    receipt = market.deposit_liquidity_and_mint_ctokens(1, CONFIG.sui_supply * SUI, now=0)
    print(f"  bob supplies {CONFIG.sui_supply} SUI and receives {receipt.details['ctokens'] / SUI:,.0f} cSUI")
    print(f"  ctoken ratio: {market.get_reserve(1).ctoken_ratio().to_decimal()}")
    wait_for_enter()


def step_03_collateral(market: LendingMarket) -> str:
    step_header(3, "Posting Collateral",
        "Ctokens deposited into an obligation back its borrows.")
    minted = market.deposit_liquidity_and_mint_ctokens(0, CONFIG.usdc_supply * USDC, now=0).details["ctokens"]
    ob = market.create_obligation("alice", now=0).obligation_id
    market.deposit_ctokens_into_obligation(ob, 0, minted, now=0)
    market.refresh_obligation(ob, now=0)
    show_obligation(market, ob)
    wait_for_enter()
    return ob


def step_04_borrow(market: LendingMarket, ob: str):
    step_header(4, "Borrowing",
        "Debt may grow until its upper-bound value reaches the allowed value.")
    print(f"  max borrow: {market.max_borrow_amount(ob, 1, now=0) / SUI:,.3f} SUI")
    receipt = market.borrow(ob, 1, 300 * SUI, now=0)
    print(f"  alice borrows {receipt.details['amount'] / SUI:,.0f} SUI (fee {receipt.details['fee']})")
    show_obligation(market, ob)
    wait_for_enter()


def step_05_rejected(market: LendingMarket, ob: str):
    step_header(5, "Rejected Borrows",
        "An unhealthy borrow raises and the market is left exactly as it was.")
    before = market.get_obligation(ob)
    try:
        market.borrow(ob, 1, 1_000 * SUI, now=0)
    except LendingError as e:
        print(f"  rejected: {type(e).__name__}")
    print(f"  obligation unchanged: {market.get_obligation(ob) == before}")
    wait_for_enter()


def step_06_withdraw_limit(market: LendingMarket, ob: str):
    step_header(6, "Withdraw Limits",
        "Collateral can only leave while the remaining collateral covers the debt.")
    print(f"  max withdraw: {market.max_withdraw_amount(ob, 0, now=0) / USDC:,.2f} cUSDC")
    wait_for_enter()


def step_07_interest(market: LendingMarket, ob: str, prices: StaticPriceSource):
    step_header(7, "Interest Accrues",
        "Debt compounds per second with the reserve's cumulative borrow rate.")
    later = CONFIG.hours_elapsed * 3_600
    market.refresh_prices(prices, now=later)
    obligation = market.refresh_obligation(ob, now=later)
    sui = market.get_reserve(1)
    print(f"  {CONFIG.hours_elapsed} hours later, utilization {sui.utilization().to_decimal():.2%}, "
          f"borrow APR {sui.borrow_apr().to_decimal():.2%}")
    print(f"  debt now {obligation.find_borrow(1).borrowed_amount.to_decimal() / SUI:,.6f} SUI")
    print(f"  cSUI ratio {sui.ctoken_ratio().to_decimal():.9f}")
    wait_for_enter()
    return later


def step_08_stale(market: LendingMarket, ob: str, now: int):
    step_header(8, "Stale Prices",
        "Borrowing needs fresh prices; repaying never does.")
    try:
        market.borrow(ob, 1, 1 * SUI, now=now + 3_600)
    except LendingError as e:
        print(f"  borrow an hour after the last price: {type(e).__name__}")
    receipt = market.repay(ob, 1, 10 * SUI, now=now + 3_600)
    print(f"  repay still works: settled {receipt.details['settled'].to_decimal() / SUI:,.0f} SUI")
    wait_for_enter()
    return now + 3_600


def step_09_liquidation(market: LendingMarket, ob: str, prices: StaticPriceSource, now: int):
    step_header(9, "Liquidation",
        "When SUI rallies the debt outgrows the collateral; anyone may repay part of it.")
    prices.set_price("SUI", Fixed.from_decimal(CONFIG.shocked_sui_price))
    market.refresh_prices(prices, now=now)
    market.refresh_obligation(ob, now=now)
    show_obligation(market, ob)
    receipt = market.liquidate(ob, 1, 0, 10 ** 30, now=now)
    print(f"  settled {receipt.details['settled'].to_decimal() / SUI:,.3f} SUI, "
          f"seized {receipt.details['withdraw_ctokens'] / USDC:,.2f} cUSDC "
          f"(protocol fee {receipt.details['protocol_fee_ctokens'] / USDC:,.2f})")
    show_obligation(market, ob)
    wait_for_enter()


def step_10_bad_debt(market: LendingMarket, ob: str, prices: StaticPriceSource, now: int):
    step_header(10, "Bad Debt",
        "Once collateral is gone, leftover debt is forgiven and suppliers absorb it.")
    prices.set_price("SUI", Fixed.from_decimal(CONFIG.crash_sui_price))
    market.refresh_prices(prices, now=now)
    while market.get_obligation(ob).deposits:
        market.liquidate(ob, 1, 0, 10 ** 30, now=now)
    before = market.get_reserve(1).ctoken_ratio()
    receipt = market.forgive(ob, 1, None, now=now)
    print(f"  forgiven {receipt.details['forgiven'].to_decimal() / SUI:,.3f} SUI")
    print(f"  cSUI ratio {before.to_decimal():.9f} -> {market.get_reserve(1).ctoken_ratio().to_decimal():.9f}")
    wait_for_enter()


def step_11_receipts(market: LendingMarket):
    step_header(11, "Receipts",
        "Every committed operation leaves a receipt with custody transfers and a content id.")
    for receipt in market.receipts:
        moved = ", ".join(f"{t.amount} {t.asset} {t.direction.value}" for t in receipt.transfers)
        print(f"  #{receipt.sequence_number:<3} {receipt.content_id} {receipt.operation:<36} {moved}")
    fees = market.claim_fees(0, now=market.receipts[-1].timestamp)
    for transfer in fees.transfers_of(Direction.MARKET_TO_FEE_RECEIVER):
        print(f"  fee receiver collects {transfer.amount} {transfer.asset}")


def main():
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    prices = StaticPriceSource.from_prices({
        "USDC": Fixed.from_int(1), "SUI": Fixed.from_decimal(CONFIG.sui_price),
    })
    market = step_01_market()
    step_02_supply(market)
    ob = step_03_collateral(market)
    step_04_borrow(market, ob)
    step_05_rejected(market, ob)
    step_06_withdraw_limit(market, ob)
    now = step_07_interest(market, ob, prices)
    now = step_08_stale(market, ob, now)
    step_09_liquidation(market, ob, prices, now)
    step_10_bad_debt(market, ob, prices, now)
    step_11_receipts(market)


if __name__ == "__main__":
    main()
