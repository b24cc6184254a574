"""
Reads a user's Aave V3 reserves and oracle prices through web3 contracts.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from web3.exceptions import ContractLogicError

from .config_loader import ChainConfig
from .decorators import retry_rpc
from .logging_config import setup_logger
from .models import PositionEntry

logger = setup_logger()

BPS = Decimal(10_000)
# Aave V3 oracles quote in USD with 8 decimals
BASE_CURRENCY_UNIT = Decimal(10**8)


@dataclass(frozen=True)
class ReserveConfig:
    decimals: int
    liquidation_threshold: Decimal
    liquidation_bonus: Decimal
    usage_as_collateral_enabled: bool
    is_active: bool


class AaveReserveReader:
    def __init__(self, config: ChainConfig):
        self.chain_name = config.CHAIN_NAME
        self.pool = config.pool
        self.data_provider = config.data_provider
        self.oracle = config.oracle
        self._reserves: Optional[List[str]] = None
        self._configs: Dict[str, ReserveConfig] = {}

        settings = config.settings
        self._call = retry_rpc(logger, settings.rpc_max_retries, settings.retry_delay)(self._raw_call)

    @staticmethod
    def _raw_call(function_call: Any) -> Any:
        return function_call.call()

    def reserves(self) -> Optional[List[str]]:
        if self._reserves is None:
            reserves = self._call(self.pool.functions.getReservesList())
            if reserves is None:
                return None
            self._reserves = list(reserves)
            logger.info("AaveReserveReader %s: %s reserves listed", self.chain_name, len(self._reserves))
        return self._reserves

    def reserve_config(self, asset: str) -> Optional[ReserveConfig]:
        if asset not in self._configs:
            data = self._call(self.data_provider.functions.getReserveConfigurationData(asset))
            if data is None:
                return None
            # (decimals, ltv, liquidationThreshold, liquidationBonus, reserveFactor,
            #  usageAsCollateralEnabled, borrowingEnabled, stableBorrowRateEnabled, isActive, isFrozen)
            self._configs[asset] = ReserveConfig(
                decimals=int(data[0]),
                liquidation_threshold=Decimal(data[2]) / BPS,
                liquidation_bonus=max(Decimal(data[3]) - BPS, Decimal(0)) / BPS,
                usage_as_collateral_enabled=bool(data[5]),
                is_active=bool(data[8]),
            )
        return self._configs[asset]

    def price(self, asset: str) -> Optional[Decimal]:
        """Oracle price in USD, or None when the oracle has no usable answer."""
        try:
            raw = self._call(self.oracle.functions.getAssetPrice(asset))
        except ContractLogicError as ex:
            logger.warning("AaveReserveReader %s: price call for %s reverted: %s", self.chain_name, asset, ex)
            return None
        if not raw:
            return None
        return Decimal(raw) / BASE_CURRENCY_UNIT

    def fetch_user_entries(self, user: str) -> Optional[Tuple[List[PositionEntry], List[PositionEntry]]]:
        """
        Collateral and debt entries of ``user``, or None when an RPC call
        could not be completed and the user should be skipped this round.
        """
        reserves = self.reserves()
        if reserves is None:
            return None

        collateral: List[PositionEntry] = []
        debt: List[PositionEntry] = []
        for asset in reserves:
            data = self._call(self.data_provider.functions.getUserReserveData(asset, user))
            if data is None:
                return None
            # (currentATokenBalance, currentStableDebt, currentVariableDebt, ..., usageAsCollateralEnabled)
            supplied = int(data[0])
            borrowed = int(data[1]) + int(data[2])
            if supplied == 0 and borrowed == 0:
                continue

            reserve = self.reserve_config(asset)
            if reserve is None:
                return None
            price = self.price(asset)

            if supplied > 0:
                collateral.append(
                    PositionEntry(
                        asset=asset,
                        amount=supplied,
                        decimals=reserve.decimals,
                        price=price,
                        liquidation_threshold=reserve.liquidation_threshold,
                        liquidation_bonus=reserve.liquidation_bonus,
                        collateral_enabled=bool(data[8]) and reserve.usage_as_collateral_enabled,
                    )
                )
            if borrowed > 0:
                debt.append(PositionEntry(asset=asset, amount=borrowed, decimals=reserve.decimals, price=price))

        return collateral, debt

    def account_health_factor(self, user: str) -> Optional[Decimal]:
        """Health factor as reported by the pool itself, for cross-checking."""
        data = self._call(self.pool.functions.getUserAccountData(user))
        if data is None:
            return None
        return Decimal(data[5]) / Decimal(10**18)
