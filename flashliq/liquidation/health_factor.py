"""
Health factor math and liquidation opportunity sizing.

All values that gate execution are computed with ``decimal.Decimal`` under a
wide local context. Prices are expressed in the oracle's common base unit
(USD for Aave V3), amounts in native integer token units.
"""

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal, localcontext
from typing import Iterable, Optional, Sequence, Tuple

from .config_loader import PipelineSettings
from .exceptions import DataQualityError
from .logging_config import setup_logger
from .models import HealthFactorResult, LiquidationOpportunity, PositionEntry, UserPosition

logger = setup_logger()

PRECISION = 60
UINT256_MAX = 2**256 - 1
BPS = 10_000

with localcontext() as _ctx:
    _ctx.prec = 100
    HEALTH_FACTOR_CEILING = Decimal(UINT256_MAX) / Decimal(10**18)


def asset_value(amount: int, decimals: int, price: Decimal) -> Decimal:
    """Value of ``amount`` native units in the common price unit."""
    with localcontext() as ctx:
        ctx.prec = PRECISION
        return Decimal(amount) / (Decimal(10) ** decimals) * price


def _has_price(entry: PositionEntry) -> bool:
    return entry.price is not None and entry.price > 0


def compute_health_factor(
    collateral_entries: Iterable[PositionEntry],
    debt_entries: Iterable[PositionEntry],
) -> HealthFactorResult:
    """
    Aggregate a user's reserves into a health factor.

    Entries without a usable price are left out of the totals and reported in
    ``excluded_assets``; a zero price is never substituted.
    """
    excluded = []
    total_collateral = Decimal(0)
    weighted_threshold = Decimal(0)
    total_debt = Decimal(0)

    with localcontext() as ctx:
        ctx.prec = PRECISION

        for entry in collateral_entries:
            if not entry.collateral_enabled:
                continue
            if not _has_price(entry):
                excluded.append(entry.asset)
                continue
            value = asset_value(entry.amount, entry.decimals, entry.price)
            total_collateral += value
            weighted_threshold += value * entry.liquidation_threshold

        for entry in debt_entries:
            if not _has_price(entry):
                excluded.append(entry.asset)
                continue
            total_debt += asset_value(entry.amount, entry.decimals, entry.price)

        health_factor = weighted_threshold / total_debt if total_debt > 0 else HEALTH_FACTOR_CEILING
        current_lt = weighted_threshold / total_collateral if total_collateral > 0 else Decimal(0)

    if excluded:
        logger.warning("Excluded assets without a valid price from health factor: %s", ", ".join(excluded))

    return HealthFactorResult(
        total_collateral_value=total_collateral,
        total_debt_value=total_debt,
        weighted_threshold=weighted_threshold,
        health_factor=health_factor,
        current_liquidation_threshold=current_lt,
        is_liquidatable=health_factor < 1,
        excluded_assets=tuple(excluded),
    )


@dataclass(frozen=True)
class SelectionPolicy:
    """How to choose between collateral (or debt) assets of similar value."""

    tie_tolerance_bps: int = 0
    preferred_assets: Tuple[str, ...] = ()

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "SelectionPolicy":
        return cls(settings.tie_tolerance_bps, settings.preferred_collateral)

    def rank(self, asset: str) -> int:
        preferred = [a.lower() for a in self.preferred_assets]
        try:
            return preferred.index(asset.lower())
        except ValueError:
            return len(preferred)


def _pick_largest(entries: Sequence[PositionEntry], policy: SelectionPolicy) -> Optional[PositionEntry]:
    valued = [(asset_value(e.amount, e.decimals, e.price), e) for e in entries if e.amount > 0 and _has_price(e)]
    if not valued:
        return None

    best_value = max(value for value, _ in valued)
    floor = best_value * (BPS - policy.tie_tolerance_bps) / BPS
    tied = [(value, e) for value, e in valued if value >= floor]

    tied.sort(key=lambda item: (policy.rank(item[1].asset), -item[0], item[1].asset.lower()))
    return tied[0][1]


def select_position_pair(
    collateral_entries: Sequence[PositionEntry],
    debt_entries: Sequence[PositionEntry],
    policy: Optional[SelectionPolicy] = None,
) -> Optional[Tuple[PositionEntry, PositionEntry]]:
    """
    Choose the (collateral, debt) reserves to liquidate.

    The largest value wins on each side. Assets within ``tie_tolerance_bps``
    of the largest are ranked by the policy's preferred order, then value,
    then address.
    """
    policy = policy or SelectionPolicy()
    collateral = _pick_largest([e for e in collateral_entries if e.collateral_enabled], policy)
    debt = _pick_largest(list(debt_entries), policy)
    if collateral is None or debt is None:
        return None
    return collateral, debt


def select_liquidation_amount(
    debt_amount: int,
    health_factor: Decimal,
    total_debt_value: Decimal,
    settings: PipelineSettings,
) -> int:
    """
    Debt to cover: the larger of the close-factor share and the protocol cap,
    never more than the outstanding debt.

    The protocol cap is the whole debt when the position is deep underwater
    (HF below ``full_close_factor_hf``) or too small to be worth splitting.
    """
    if debt_amount <= 0:
        return 0

    with localcontext() as ctx:
        ctx.prec = PRECISION
        close_factor_share = int((Decimal(debt_amount) * settings.close_factor).to_integral_value(ROUND_FLOOR))

    if health_factor < settings.full_close_factor_hf or total_debt_value < settings.min_close_factor_debt_value:
        protocol_cap = debt_amount
    else:
        protocol_cap = 0

    return min(max(close_factor_share, protocol_cap), debt_amount)


def projected_collateral_seized(position: UserPosition, debt_to_cover: int) -> int:
    """Collateral units received for repaying ``debt_to_cover``, bonus included."""
    if position.collateral_price <= 0 or position.debt_price <= 0:
        raise DataQualityError(f"Missing price for position {position.key}")

    with localcontext() as ctx:
        ctx.prec = PRECISION
        debt_value = asset_value(debt_to_cover, position.debt_decimals, position.debt_price)
        seized = (
            debt_value
            * (1 + position.liquidation_bonus)
            / position.collateral_price
            * (Decimal(10) ** position.collateral_decimals)
        )
        seized_units = int(seized.to_integral_value(ROUND_FLOOR))

    return min(seized_units, position.collateral_amount)


def build_opportunity(
    position: UserPosition,
    settings: PipelineSettings,
    gas_estimate: Optional[int] = None,
) -> LiquidationOpportunity:
    debt_to_cover = select_liquidation_amount(
        position.debt_amount, position.health_factor, position.total_debt_value, settings
    )
    seized = projected_collateral_seized(position, debt_to_cover)

    with localcontext() as ctx:
        ctx.prec = PRECISION
        seized_value = asset_value(seized, position.collateral_decimals, position.collateral_price)
        repaid_value = asset_value(debt_to_cover, position.debt_decimals, position.debt_price)
        premium_value = repaid_value * settings.flash_loan_premium_bps / BPS
        profit = seized_value - repaid_value - premium_value

    return LiquidationOpportunity(
        position=position,
        max_liquidatable_debt=debt_to_cover,
        projected_collateral_seized=seized,
        projected_profit=profit,
        gas_cost_estimate=gas_estimate or settings.default_gas_estimate,
    )
