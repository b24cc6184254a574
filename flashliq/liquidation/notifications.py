"""
Apprise notification functions for the liquidation pipeline.
"""

import time
from typing import Optional

from apprise import Apprise

from .config_loader import ChainConfig
from .logging_config import setup_logger
from .models import ActivityEvent

logger = setup_logger()


def setup_apprise_notification_object(config: ChainConfig) -> Apprise:
    """Set up the Apprise notification engine."""
    apprise = Apprise()
    apprise.add(config.NOTIFICATION_URL)
    return apprise


def _tx_link(tx_hash: Optional[str], config: ChainConfig) -> str:
    if not tx_hash:
        return "`not broadcast`"
    explorer_url = config.endpoint.explorer_url
    if not explorer_url:
        return f"`{tx_hash}`"
    return f"<{explorer_url}/tx/{tx_hash}|View Transaction on Explorer>"


def post_settlement_notification(event: ActivityEvent, config: ChainConfig) -> bool:
    """Post the terminal outcome of a liquidation attempt. ``event.data`` is the attempt's to_dict()."""
    attempt = event.data
    position = attempt["opportunity"]["position"]
    outcome = attempt["outcome"].upper()
    message = (
        f":moneybag: *Liquidation {outcome}*\n\n"
        f"*User*: `{position['user']}`\n"
        f"*Collateral / Debt*: `{position['collateral_asset']}` / `{position['debt_asset']}`\n"
        f"*Health Factor*: `{position['health_factor']}`\n"
        f"*Debt Covered*: `{attempt['debt_to_cover']}`\n"
        f"*Projected Profit*: `{attempt['opportunity']['projected_profit']}`\n"
        f"*Realized Profit*: `{attempt['realized_profit']}`\n"
        f"*Gas Estimate*: `{attempt.get('gas_estimate')}`\n"
        f"*Gas Used*: `{attempt['gas_used']}`\n"
        f"*Transaction*: {_tx_link(attempt['tx_hash'], config)}\n"
    )
    if attempt.get("error"):
        message += f"*Error*: `{attempt['error']}`\n"
    message += f"Time of settlement: {time.strftime('%Y-%m-%d %H:%M:%S')}\nNetwork: `{config.CHAIN_NAME}`"
    logger.info("Settlement notification:\n%s", message)

    apprise = setup_apprise_notification_object(config)
    return apprise.notify(body=message, title=f"Liquidation {outcome}")


def post_reconnect_exhausted_notification(event: ActivityEvent, config: ChainConfig) -> bool:
    message = (
        ":electric_plug: *Stream Connection Lost*\n\n"
        f"{event.message}\n"
        "Reconnection has stopped. A manual reconnect is required.\n"
        f"Time: {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(event.timestamp))}\n"
        f"Network: `{config.CHAIN_NAME}`"
    )
    logger.info("Reconnect exhausted notification:\n%s", message)

    apprise = setup_apprise_notification_object(config)
    return apprise.notify(body=message, title="Stream Connection Lost")


def post_error_notification(message: str, config: ChainConfig) -> bool:
    """Post an error notification."""
    error_message = f":rotating_light: *Error Notification* :rotating_light:\n\n{message}\n\n"
    error_message += f"Time: {time.strftime('%Y-%m-%d %H:%M:%S')}\n"
    error_message += f"Network: `{config.CHAIN_NAME}`"

    logger.info("Error notification:\n%s", error_message)

    apprise = setup_apprise_notification_object(config)
    return apprise.notify(body=error_message, title="Error Notification")
