"""
Tests for health factor math, pair selection and liquidation sizing.
"""

from decimal import Decimal

import pytest

from conftest import USDC, USDC_UNIT, WAD, WBTC, WETH, make_position, usdc_entry, weth_entry
from flashliq.liquidation.exceptions import DataQualityError
from flashliq.liquidation.health_factor import (
    HEALTH_FACTOR_CEILING,
    SelectionPolicy,
    build_opportunity,
    compute_health_factor,
    projected_collateral_seized,
    select_liquidation_amount,
    select_position_pair,
)
from flashliq.liquidation.models import PositionEntry


def test_health_factor_weighted_by_threshold():
    result = compute_health_factor([weth_entry()], [usdc_entry()])
    assert result.total_collateral_value == Decimal("20000")
    assert result.total_debt_value == Decimal("18000")
    assert abs(result.health_factor - Decimal("0.9166666666666666")) < Decimal("1e-15")
    assert result.current_liquidation_threshold == Decimal("0.825")
    assert result.is_liquidatable


def test_zero_debt_reports_ceiling():
    result = compute_health_factor([weth_entry()], [])
    assert result.health_factor == HEALTH_FACTOR_CEILING
    assert not result.is_liquidatable
    assert HEALTH_FACTOR_CEILING > Decimal(10**59)


def test_current_threshold_stays_within_unit_interval():
    collateral = [
        weth_entry(),
        PositionEntry(WBTC, 10**8, 8, Decimal("60000"), Decimal("0.78"), Decimal("0.065")),
    ]
    result = compute_health_factor(collateral, [usdc_entry()])
    assert Decimal(0) <= result.current_liquidation_threshold <= Decimal(1)
    assert Decimal("0.78") < result.current_liquidation_threshold < Decimal("0.825")


def test_missing_price_excluded_not_zeroed():
    collateral = [weth_entry(), PositionEntry(WBTC, 10**8, 8, None, Decimal("0.78"))]
    result = compute_health_factor(collateral, [usdc_entry()])
    assert result.excluded_assets == (WBTC,)
    assert result.total_collateral_value == Decimal("20000")


def test_disabled_collateral_ignored():
    result = compute_health_factor([weth_entry(collateral_enabled=False)], [usdc_entry()])
    assert result.total_collateral_value == 0
    assert result.health_factor == 0


def test_largest_values_selected():
    small = PositionEntry(WBTC, 10**7, 8, Decimal("60000"), Decimal("0.78"))
    pair = select_position_pair([small, weth_entry()], [usdc_entry()])
    assert pair[0].asset == WETH
    assert pair[1].asset == USDC


def test_no_pair_without_priced_debt():
    assert select_position_pair([weth_entry()], [usdc_entry(price=None)]) is None
    assert select_position_pair([], [usdc_entry()]) is None


def test_tie_resolved_by_preferred_order():
    # 20000 of WETH vs 19950 of WBTC, within 50 bps
    wbtc = PositionEntry(WBTC, 3325 * 10**5, 8, Decimal("6000"), Decimal("0.78"))
    policy = SelectionPolicy(tie_tolerance_bps=50, preferred_assets=(WBTC, WETH))
    assert select_position_pair([weth_entry(), wbtc], [usdc_entry()], policy)[0].asset == WBTC

    # without tolerance the largest value wins outright
    assert select_position_pair([weth_entry(), wbtc], [usdc_entry()], SelectionPolicy(0, (WBTC,)))[0].asset == WETH


def test_exact_tie_falls_back_to_address_order():
    wbtc = PositionEntry(WBTC, 2 * 10**8, 8, Decimal("10000"), Decimal("0.78"))
    assert select_position_pair([wbtc, weth_entry()], [usdc_entry()])[0].asset == WETH


def test_amount_full_debt_when_deep_underwater(settings):
    assert select_liquidation_amount(1000, Decimal("0.90"), Decimal("18000"), settings) == 1000


def test_amount_close_factor_when_mildly_underwater(settings):
    assert select_liquidation_amount(1001, Decimal("0.97"), Decimal("18000"), settings) == 500


def test_amount_full_debt_when_position_small(settings):
    assert select_liquidation_amount(1000, Decimal("0.97"), Decimal("1500"), settings) == 1000


def test_amount_zero_without_debt(settings):
    assert select_liquidation_amount(0, Decimal("0.5"), Decimal("0"), settings) == 0


def test_seized_collateral_includes_bonus():
    seized = projected_collateral_seized(make_position(), 18_000 * USDC_UNIT)
    assert seized == 945 * WAD // 100


def test_seized_collateral_capped_at_holdings():
    position = make_position(collateral_amount=5 * WAD)
    assert projected_collateral_seized(position, 18_000 * USDC_UNIT) == 5 * WAD


def test_seized_collateral_needs_prices():
    with pytest.raises(DataQualityError):
        projected_collateral_seized(make_position(collateral_price=Decimal(0)), 1)


def test_build_opportunity(settings):
    opportunity = build_opportunity(make_position(), settings)
    assert opportunity.max_liquidatable_debt == 18_000 * USDC_UNIT
    assert opportunity.projected_collateral_seized == 945 * WAD // 100
    # 18900 seized - 18000 repaid - 9 premium
    assert opportunity.projected_profit == Decimal("891")
    assert opportunity.gas_cost_estimate == settings.default_gas_estimate
