"""
Maps a health factor onto the configured monitoring and execution bands.
"""

from decimal import Decimal
from enum import Enum
from typing import Union

from .config_loader import HealthFactorRange, to_decimal

HealthFactorLike = Union[Decimal, int, float, str]


class OpportunityClass(Enum):
    SAFE = "safe"
    MONITORING = "monitoring"
    IN_EXECUTION_RANGE = "in_execution_range"


def classify(
    hf: HealthFactorLike,
    monitoring_range: HealthFactorRange,
    execution_range: HealthFactorRange,
) -> OpportunityClass:
    """
    Classify a health factor.

    Execution band bounds are inclusive. Anything else inside the monitoring
    band is MONITORING; outside both bands is SAFE.
    """
    value = to_decimal(hf)

    if execution_range.contains(value):
        return OpportunityClass.IN_EXECUTION_RANGE
    if monitoring_range.contains(value):
        return OpportunityClass.MONITORING
    return OpportunityClass.SAFE
