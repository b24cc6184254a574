"""
Standalone script to inspect one Aave borrower and dry-run its liquidation.

Usage:
    python check_position.py <chain_id> <user_address>
"""

import logging
import sys
import time

from dotenv import load_dotenv
load_dotenv()

from flashliq.liquidation.classifier import OpportunityClass, classify
from flashliq.liquidation.config_loader import load_chain_config
from flashliq.liquidation.exceptions import DataQualityError
from flashliq.liquidation.executor import AtomicLiquidationExecutor
from flashliq.liquidation.health_factor import (
    SelectionPolicy,
    build_opportunity,
    compute_health_factor,
    select_position_pair,
)
from flashliq.liquidation.models import UserPosition
from flashliq.liquidation.reserve_reader import AaveReserveReader
from flashliq.liquidation.simulation import SimulatedChain

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
logger = logging.getLogger("check_position")


def main():
    if len(sys.argv) < 3:
        print("Usage: python check_position.py <chain_id> <user_address>")
        sys.exit(1)

    chain_id = int(sys.argv[1])
    user = sys.argv[2]
    config = load_chain_config(chain_id)
    settings = config.settings
    reader = AaveReserveReader(config)

    entries = reader.fetch_user_entries(user)
    if entries is None:
        logger.error("Could not read reserves of %s", user)
        sys.exit(1)
    collateral, debt = entries
    if not debt:
        logger.info("%s has no outstanding debt. Exiting.", user)
        return

    result = compute_health_factor(collateral, debt)
    logger.info("Collateral value: %s", result.total_collateral_value)
    logger.info("Debt value: %s", result.total_debt_value)
    logger.info("Health factor: %s (pool reports %s)", result.health_factor, reader.account_health_factor(user))
    if result.excluded_assets:
        logger.info("Excluded for missing prices: %s", result.excluded_assets)

    opportunity_class = classify(result.health_factor, settings.monitoring_range, settings.execution_range)
    logger.info("Classification: %s", opportunity_class.value)

    pair = select_position_pair(collateral, debt, SelectionPolicy.from_settings(settings))
    if pair is None:
        logger.info("No priced collateral/debt pair. Exiting.")
        return
    chosen_collateral, chosen_debt = pair
    position = UserPosition(
        chain_id=chain_id,
        user=user,
        collateral_asset=chosen_collateral.asset,
        debt_asset=chosen_debt.asset,
        collateral_amount=chosen_collateral.amount,
        debt_amount=chosen_debt.amount,
        collateral_decimals=chosen_collateral.decimals,
        debt_decimals=chosen_debt.decimals,
        collateral_price=chosen_collateral.price,
        debt_price=chosen_debt.price,
        health_factor=result.health_factor,
        liquidation_threshold=chosen_collateral.liquidation_threshold,
        liquidation_bonus=chosen_collateral.liquidation_bonus,
        total_debt_value=result.total_debt_value,
        updated_at=time.time(),
    )
    logger.info("Selected pair: collateral %s, debt %s", position.collateral_asset, position.debt_asset)

    if opportunity_class is not OpportunityClass.IN_EXECUTION_RANGE:
        logger.info("Position is not in the execution band. Exiting.")
        return

    try:
        opportunity = build_opportunity(position, settings)
    except DataQualityError as ex:
        logger.error("Cannot size liquidation: %s", ex)
        sys.exit(1)
    logger.info(
        "Debt to cover %s, collateral seized %s, projected profit %s",
        opportunity.max_liquidatable_debt, opportunity.projected_collateral_seized, opportunity.projected_profit,
    )

    chain = SimulatedChain.for_position(
        position,
        opportunity.max_liquidatable_debt,
        flash_premium_bps=settings.flash_loan_premium_bps,
        router_fee_bps=settings.router_fee_bps,
    )
    executor = AtomicLiquidationExecutor(chain, config.endpoint.liquidator_address, config.LIQUIDATOR_EOA, settings)
    receipt = executor.execute_liquidation(
        config.LIQUIDATOR_EOA,
        position.user,
        position.collateral_asset,
        position.debt_asset,
        opportunity.max_liquidatable_debt,
        settings.max_slippage_bps,
        chain.timestamp + settings.deadline_seconds,
    )
    if receipt.success:
        logger.info("Dry run succeeds with profit %s (debt asset units)", receipt.profit)
    else:
        logger.info("Dry run reverts: %s %s", receipt.reason.value, receipt.detail)


if __name__ == "__main__":
    main()
