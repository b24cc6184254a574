"""
Custom exceptions for the liquidation pipeline.
"""


class LiquidationBotError(Exception):
    """Base exception for all liquidation bot errors."""


class ConfigError(LiquidationBotError):
    """Raised for configuration-related errors. Startup aborts on these."""


class ConnectError(LiquidationBotError):
    """Raised when a chain streaming connection cannot be established."""


class DataQualityError(LiquidationBotError):
    """Raised when on-chain data for a position is missing or malformed."""


class ValidationError(LiquidationBotError):
    """Raised when liquidation parameters are rejected before submission."""


class LiquidationError(LiquidationBotError):
    """Raised for errors during liquidation execution."""


class SubmissionError(LiquidationError):
    """Raised when a liquidation transaction could not be broadcast."""


class SettlementError(LiquidationBotError):
    """Raised when a liquidation attempt is settled twice."""
