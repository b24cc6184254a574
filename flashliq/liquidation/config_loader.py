"""
Config Loader module - static per-chain and pipeline configuration, read once at startup.
"""

import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

import yaml
from web3 import Web3

from .contracts import create_contract_instance
from .exceptions import ConfigError
from .models import ChainEndpoint

PACKAGE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DEFAULT_CONFIG_PATH = os.path.join(PACKAGE_DIR, "config.yaml")


def to_decimal(value: Any) -> Decimal:
    """Convert a config or on-chain value to Decimal without going through binary floats."""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ConfigError(f"Not a decimal value: {value!r}") from exc


@dataclass(frozen=True)
class HealthFactorRange:
    """Closed health factor interval [min_hf, max_hf]."""

    min_hf: Decimal
    max_hf: Decimal

    def __post_init__(self) -> None:
        if self.min_hf > self.max_hf:
            raise ConfigError(f"Invalid health factor range: min {self.min_hf} > max {self.max_hf}")

    @classmethod
    def of(cls, min_hf: Any, max_hf: Any) -> "HealthFactorRange":
        return cls(to_decimal(min_hf), to_decimal(max_hf))

    @classmethod
    def from_config(cls, raw: Any) -> "HealthFactorRange":
        if isinstance(raw, Mapping):
            return cls.of(raw["min"], raw["max"])
        if isinstance(raw, (list, tuple)) and len(raw) == 2:
            return cls.of(raw[0], raw[1])
        raise ConfigError(f"Health factor range must be [min, max] or {{min, max}}, got {raw!r}")

    def contains(self, hf: Decimal) -> bool:
        return self.min_hf <= hf <= self.max_hf


def validate_bands(monitoring: HealthFactorRange, execution: HealthFactorRange) -> None:
    """
    The execution band must sit inside the monitoring band.

    Raises:
        ConfigError: if execution_min < monitoring_min or execution_max > monitoring_max.
    """
    if execution.min_hf < monitoring.min_hf or execution.max_hf > monitoring.max_hf:
        raise ConfigError(
            f"Execution range [{execution.min_hf}, {execution.max_hf}] is not inside "
            f"monitoring range [{monitoring.min_hf}, {monitoring.max_hf}]"
        )


@dataclass(frozen=True)
class PipelineSettings:
    """Typed view of the tunables consumed by the pipeline components."""

    monitoring_range: HealthFactorRange
    execution_range: HealthFactorRange
    scan_interval: float = 12
    reconnect_base_delay: float = 5
    max_reconnect_attempts: int = 5
    heartbeat_interval: float = 30
    probe_timeout: float = 10
    connect_timeout: float = 15
    max_slippage_bps: int = 100
    slippage_ceiling_bps: int = 1000
    min_profit_bps: int = 10
    flash_loan_premium_bps: int = 5
    router_fee_bps: int = 30
    close_factor: Decimal = Decimal("0.5")
    full_close_factor_hf: Decimal = Decimal("0.95")
    min_close_factor_debt_value: Decimal = Decimal("2000")
    deadline_seconds: int = 120
    gas_limit_multiplier: Decimal = Decimal("1.2")
    default_gas_estimate: int = 900_000
    settlement_poll_interval: float = 5
    tie_tolerance_bps: int = 50
    preferred_collateral: Tuple[str, ...] = field(default_factory=tuple)
    rpc_max_retries: int = 3
    retry_delay: float = 2
    save_interval: float = 300
    activity_history: int = 500
    attempt_history: int = 1000

    def __post_init__(self) -> None:
        validate_bands(self.monitoring_range, self.execution_range)
        if not 0 <= self.max_slippage_bps <= self.slippage_ceiling_bps <= 10_000:
            raise ConfigError(
                f"Slippage {self.max_slippage_bps} bps must be within [0, {self.slippage_ceiling_bps}] bps"
            )
        if self.max_reconnect_attempts < 1:
            raise ConfigError("MAX_RECONNECT_ATTEMPTS must be at least 1")

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "PipelineSettings":
        """Build settings from the upper-case keys of config.yaml."""
        try:
            monitoring = HealthFactorRange.from_config(raw["MONITORING_RANGE"])
            execution = HealthFactorRange.from_config(raw["EXECUTION_RANGE"])
        except KeyError as exc:
            raise ConfigError(f"Missing required setting {exc}") from exc

        kwargs: Dict[str, Any] = {}
        for name, spec in cls.__dataclass_fields__.items():
            key = name.upper()
            if name in ("monitoring_range", "execution_range") or key not in raw:
                continue
            value = raw[key]
            if spec.type is Decimal:
                value = to_decimal(value)
            elif spec.type is int:
                value = int(value)
            elif spec.type is float:
                value = float(value)
            elif name == "preferred_collateral":
                value = tuple(Web3.to_checksum_address(asset) for asset in value or ())
            kwargs[name] = value

        return cls(monitoring_range=monitoring, execution_range=execution, **kwargs)


class SecretHandle:
    """
    Holds the signing credential once and lends it out per transaction.
    The key never appears in reprs or logs.
    """

    def __init__(self, secret: str):
        if not secret:
            raise ConfigError("Signing credential is empty")
        self.__secret = secret

    def __repr__(self) -> str:
        return "SecretHandle(****)"

    __str__ = __repr__

    @contextmanager
    def lend(self) -> Iterator[str]:
        yield self.__secret


class Web3Singleton:
    """
    Singleton class to manage w3 object creation per RPC URL
    """

    _instances: Dict[str, Web3] = {}

    @staticmethod
    def get_instance(rpc_url: Optional[str] = None) -> Web3:
        if rpc_url not in Web3Singleton._instances:
            Web3Singleton._instances[rpc_url] = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 20}))

        return Web3Singleton._instances[rpc_url]


def setup_w3(rpc_url: Optional[str] = None) -> Web3:
    return Web3Singleton.get_instance(rpc_url)


class ChainConfig:
    """
    Chain Config object to access config variables
    """

    required_env_vars = [
        "LIQUIDATOR_EOA",
        "LIQUIDATOR_PRIVATE_KEY",
    ]

    def __init__(self, chain_id: int, global_config: Dict[str, Any], chain_config: Dict[str, Any]):
        self.CHAIN_ID = chain_id
        self.CHAIN_NAME = chain_config["name"]
        self._global = global_config
        self._chain = chain_config

        self.validate()
        self.LIQUIDATOR_EOA = Web3.to_checksum_address(os.environ["LIQUIDATOR_EOA"])
        self.signer = SecretHandle(os.environ["LIQUIDATOR_PRIVATE_KEY"])
        self.NOTIFICATION_URL = os.environ.get("NOTIFICATION_URL", "")

        self.RPC_URL = os.environ[self._chain["RPC_NAME"]]
        self.WS_URL = os.environ[self._chain["WS_NAME"]]
        liquidator_address = os.environ[self._chain["LIQUIDATOR_NAME"]]

        contracts = self._chain.get("contracts", {})
        self.endpoint = ChainEndpoint(
            chain_id=chain_id,
            name=self.CHAIN_NAME,
            ws_url=self.WS_URL,
            rpc_url=self.RPC_URL,
            pool_address=Web3.to_checksum_address(contracts["POOL"]),
            data_provider_address=Web3.to_checksum_address(contracts["DATA_PROVIDER"]),
            oracle_address=Web3.to_checksum_address(contracts["ORACLE"]),
            liquidator_address=Web3.to_checksum_address(liquidator_address),
            wrapped_native_address=Web3.to_checksum_address(contracts["WRAPPED_NATIVE"]),
            explorer_url=self._chain.get("EXPLORER_URL", ""),
        )

        # chain-level keys override global ones
        self.settings = PipelineSettings.from_mapping({**self._global, **self._chain})

        self.TRACKED_USERS = [Web3.to_checksum_address(u) for u in self._chain.get("TRACKED_USERS", []) or []]
        self.SAVE_STATE_PATH = f"{self._global['SAVE_STATE_PATH']}/{self.CHAIN_NAME}_positions.json"

        self.w3 = setup_w3(self.RPC_URL)

        self.pool = create_contract_instance(self.endpoint.pool_address, self.abi_path("POOL_ABI_PATH"), self)
        self.data_provider = create_contract_instance(
            self.endpoint.data_provider_address, self.abi_path("DATA_PROVIDER_ABI_PATH"), self
        )
        self.oracle = create_contract_instance(self.endpoint.oracle_address, self.abi_path("ORACLE_ABI_PATH"), self)
        self.liquidator = create_contract_instance(
            self.endpoint.liquidator_address, self.abi_path("LIQUIDATOR_ABI_PATH"), self
        )

    def __getattr__(self, name: str) -> Any:
        """Look up config values in chain-specific, then contracts, then global config."""
        if name.startswith("_"):
            raise AttributeError(name)
        if name in self._chain:
            return self._chain[name]
        if name in self._chain.get("contracts", {}):
            return self._chain["contracts"][name]
        if name in self._global:
            return self._global[name]
        raise AttributeError(f"Config has no attribute '{name}'")

    def abi_path(self, key: str) -> str:
        path = self._global[key]
        return path if os.path.isabs(path) else os.path.join(PACKAGE_DIR, path)

    def validate(self) -> None:
        """
        Validates that all required environment variables are set.
        Raises an error if any are missing.
        """
        required = self.required_env_vars + [
            self._chain["RPC_NAME"],
            self._chain["WS_NAME"],
            self._chain["LIQUIDATOR_NAME"],
        ]
        missing_keys = [key for key in required if not os.getenv(key)]
        if missing_keys:
            raise EnvironmentError(f"Missing required environment variables: {', '.join(missing_keys)}")


def read_config_file(config_path: Optional[str] = None) -> Dict[str, Any]:
    config_path = config_path or DEFAULT_CONFIG_PATH
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f)
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"Config file not found at {config_path}") from exc
    except yaml.YAMLError as e:
        raise ValueError(f"Error parsing YAML file: {e}") from e


def load_chain_config(chain_id: int, config_path: Optional[str] = None) -> ChainConfig:
    config = read_config_file(config_path)

    if chain_id not in config["chains"]:
        raise ValueError(f"No configuration found for chain ID {chain_id}")

    return ChainConfig(chain_id=chain_id, global_config=config["global"], chain_config=config["chains"][chain_id])


def configured_chain_ids(config_path: Optional[str] = None) -> list:
    """Chain ids listed under `chains:` with `enabled: true`."""
    config = read_config_file(config_path)
    return [chain_id for chain_id, chain in config["chains"].items() if chain.get("enabled", True)]
