from decimal import Decimal

import pytest
from dotenv import load_dotenv

from flashliq.liquidation.config_loader import ChainConfig, HealthFactorRange, PipelineSettings, load_chain_config
from flashliq.liquidation.models import PositionEntry, UserPosition

TEST_CHAIN_ID = 1
USER = "0x1111111111111111111111111111111111111111"
WETH = "0x2222222222222222222222222222222222222222"
USDC = "0x3333333333333333333333333333333333333333"
WBTC = "0x4444444444444444444444444444444444444444"
OWNER = "0x5555555555555555555555555555555555555555"
LIQUIDATOR = "0x6666666666666666666666666666666666666666"

WAD = 10**18
USDC_UNIT = 10**6


@pytest.fixture()
def config() -> ChainConfig:
    load_dotenv(dotenv_path=".env.example")
    return load_chain_config(TEST_CHAIN_ID)


@pytest.fixture()
def settings() -> PipelineSettings:
    return PipelineSettings(
        monitoring_range=HealthFactorRange.of("0.75", "1.05"),
        execution_range=HealthFactorRange.of("0.75", "0.9999"),
        connect_timeout=2,
    )


def weth_entry(amount=10 * WAD, price="2000", **overrides) -> PositionEntry:
    fields = dict(
        asset=WETH,
        amount=amount,
        decimals=18,
        price=None if price is None else Decimal(price),
        liquidation_threshold=Decimal("0.825"),
        liquidation_bonus=Decimal("0.05"),
    )
    fields.update(overrides)
    return PositionEntry(**fields)


def usdc_entry(amount=18_000 * USDC_UNIT, price="1", **overrides) -> PositionEntry:
    fields = dict(asset=USDC, amount=amount, decimals=6, price=None if price is None else Decimal(price))
    fields.update(overrides)
    return PositionEntry(**fields)


def make_position(**overrides) -> UserPosition:
    """10 WETH at 2000 against 18000 USDC, liquidation threshold 0.825, bonus 5%."""
    fields = dict(
        chain_id=TEST_CHAIN_ID,
        user=USER,
        collateral_asset=WETH,
        debt_asset=USDC,
        collateral_amount=10 * WAD,
        debt_amount=18_000 * USDC_UNIT,
        collateral_decimals=18,
        debt_decimals=6,
        collateral_price=Decimal("2000"),
        debt_price=Decimal("1"),
        health_factor=Decimal("0.9166666666666666666666666667"),
        liquidation_threshold=Decimal("0.825"),
        liquidation_bonus=Decimal("0.05"),
        total_debt_value=Decimal("18000"),
        updated_at=100.0,
    )
    fields.update(overrides)
    return UserPosition(**fields)
