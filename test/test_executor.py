"""
Tests for the atomic flash-loan liquidation executor.

Scenario: 10 WETH at 2000 against 18000 USDC, bonus 5%, 5 bps flash premium
and a 30 bps router fee. Liquidating the whole debt seizes 9.45 WETH, which
swaps to 18843.3 USDC; repaying 18009 leaves 834.3 USDC of profit.
"""

from dataclasses import replace

import pytest

from conftest import LIQUIDATOR, OWNER, USDC, USDC_UNIT, USER, WETH, make_position
from flashliq.liquidation.executor import AtomicLiquidationExecutor, RevertReason, min_amount_out
from flashliq.liquidation.simulation import SimulatedChain, TransactionReverted

NOW = 1_700_000_000
DEBT = 18_000 * USDC_UNIT
EXPECTED_PROFIT = 834_300_000


@pytest.fixture()
def chain():
    return SimulatedChain.for_position(make_position(), DEBT, flash_premium_bps=5, router_fee_bps=30, timestamp=NOW)


@pytest.fixture()
def executor(chain, settings):
    return AtomicLiquidationExecutor(chain, LIQUIDATOR, OWNER, settings)


def _execute(executor, caller=OWNER, amount=DEBT, slippage=100, deadline=NOW + 120, **kwargs):
    return executor.execute_liquidation(caller, USER, WETH, USDC, amount, slippage, deadline, **kwargs)


def _state(chain):
    return dict((k, dict(v)) for k, v in chain.balances.items()), list(chain.events)


def test_successful_liquidation_settles_profit(chain, executor):
    receipt = _execute(executor)

    assert receipt.success
    assert receipt.profit == EXPECTED_PROFIT
    assert receipt.settlement.debt_covered == DEBT
    assert receipt.settlement.collateral_seized == 945 * 10**16
    assert receipt.settlement.profit_asset == USDC
    assert chain.balance_of(LIQUIDATOR, USDC) == EXPECTED_PROFIT
    assert chain.balance_of(LIQUIDATOR, WETH) == 0
    assert chain.events[-1]["event"] == "LiquidationSettled"
    assert chain.events[-1]["args"]["profit"] == EXPECTED_PROFIT

    stats = executor.get_stats()
    assert stats.total_liquidations == 1
    assert stats.total_profit == {USDC: EXPECTED_PROFIT}


def test_slippage_beyond_tolerance_reverts_everything(chain, executor):
    chain.router.realized_slippage_bps = 200
    before = _state(chain)

    receipt = _execute(executor, slippage=100)

    assert not receipt.success
    assert receipt.reason is RevertReason.SLIPPAGE_EXCEEDED
    assert _state(chain) == before
    assert chain.pool.accounts[USER].debt[USDC] == DEBT
    assert executor.get_stats().total_liquidations == 0


def test_slippage_within_tolerance_succeeds(chain, executor):
    chain.router.realized_slippage_bps = 50
    receipt = _execute(executor, slippage=100)
    assert receipt.success
    assert receipt.profit < EXPECTED_PROFIT


def test_min_amount_out_rounds_down_without_underflow():
    assert min_amount_out(1, 1000) == 0
    assert min_amount_out(10_000, 100) == 9_900
    assert min_amount_out(10_000, 0) == 10_000
    with pytest.raises(ValueError):
        min_amount_out(10_000, 10_001)


@pytest.mark.parametrize(
    "kwargs, reason",
    [
        ({"caller": USER}, RevertReason.NOT_OWNER),
        ({"amount": 0}, RevertReason.ZERO_AMOUNT),
        ({"deadline": NOW - 1}, RevertReason.DEADLINE_EXPIRED),
        ({"slippage": 1001}, RevertReason.INVALID_SLIPPAGE),
    ],
)
def test_guard_checks_reject_before_borrowing(chain, executor, kwargs, reason):
    before = _state(chain)
    receipt = _execute(executor, **kwargs)
    assert receipt.reason is reason
    assert _state(chain) == before


def test_zero_address_rejected(executor):
    receipt = executor.execute_liquidation(OWNER, "0x" + "0" * 40, WETH, USDC, DEBT, 100, NOW + 120)
    assert receipt.reason is RevertReason.ZERO_ADDRESS


def test_deadline_is_inclusive(executor):
    assert _execute(executor, deadline=NOW).success


def test_paused_executor_rejects_until_unpaused(executor):
    executor.pause(OWNER)
    assert _execute(executor).reason is RevertReason.PAUSED
    assert executor.get_stats().is_paused

    executor.unpause(OWNER)
    assert _execute(executor).success


def test_only_owner_can_pause(executor):
    with pytest.raises(TransactionReverted) as exc_info:
        executor.pause(USER)
    assert exc_info.value.reason is RevertReason.NOT_OWNER


def test_flash_loan_rejected(chain, executor):
    chain.pool.flash_loans_enabled = False
    assert _execute(executor).reason is RevertReason.FLASH_LOAN_REJECTED


def test_healthy_borrower_cannot_be_liquidated(chain, executor):
    chain.pool.accounts[USER].health_factor = 1
    before = _state(chain)
    receipt = _execute(executor)
    assert receipt.reason is RevertReason.LIQUIDATION_FAILED
    assert _state(chain) == before


def test_broken_quote_reverts(chain, executor):
    chain.router.broken_quotes = True
    assert _execute(executor).reason is RevertReason.INVALID_QUOTE


def test_swap_short_of_repayment_reverts(chain, executor):
    # 18900 * 0.95 = 17955 < 18009 owed
    chain.router.fee_bps = 500
    assert _execute(executor, slippage=0).reason is RevertReason.INSUFFICIENT_BALANCE


def test_profit_below_minimum_reverts(chain, settings):
    greedy = replace(settings, min_profit_bps=1000)
    executor = AtomicLiquidationExecutor(chain, LIQUIDATOR, OWNER, greedy)
    receipt = _execute(executor)
    assert receipt.reason is RevertReason.INSUFFICIENT_PROFIT
    assert chain.balance_of(LIQUIDATOR, USDC) == 0


def test_profit_ignores_preexisting_balance(chain, executor):
    chain.mint(LIQUIDATOR, USDC, 5 * USDC_UNIT)
    receipt = _execute(executor)
    assert receipt.profit == EXPECTED_PROFIT
    assert chain.balance_of(LIQUIDATOR, USDC) == EXPECTED_PROFIT + 5 * USDC_UNIT


def test_flash_loan_cost_estimate(executor):
    assert executor.estimate_flash_loan_cost(DEBT) == 9 * USDC_UNIT


def test_withdraw_profits(chain, executor):
    _execute(executor)
    assert executor.withdraw_profits(OWNER, USDC, 0, OWNER) == EXPECTED_PROFIT
    assert chain.balance_of(OWNER, USDC) == EXPECTED_PROFIT
    assert chain.balance_of(LIQUIDATOR, USDC) == 0

    with pytest.raises(TransactionReverted):
        executor.withdraw_profits(OWNER, USDC, 1, OWNER)
    with pytest.raises(TransactionReverted):
        executor.withdraw_profits(USER, USDC, 0, USER)
