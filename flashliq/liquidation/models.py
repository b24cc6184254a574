"""
Data classes for the detection-and-execution pipeline.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .exceptions import SettlementError

PositionKey = Tuple[int, str, str, str]


def position_key(chain_id: int, user: str, collateral_asset: str, debt_asset: str) -> PositionKey:
    """Build the unique key of a position. Addresses are compared case-insensitively."""
    return (int(chain_id), user.lower(), collateral_asset.lower(), debt_asset.lower())


@dataclass(frozen=True)
class ChainEndpoint:
    """Static per-chain endpoint data, loaded once at startup."""

    chain_id: int
    name: str
    ws_url: str
    rpc_url: str
    pool_address: str
    data_provider_address: str
    oracle_address: str
    liquidator_address: str
    wrapped_native_address: str
    explorer_url: str = ""


class ConnectionStatus(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"
    EXHAUSTED = "exhausted"


@dataclass
class ConnectionState:
    """Mutable connection bookkeeping. Only the owning ChainConnection writes to it."""

    chain_id: int
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    reconnect_attempts: int = 0
    last_heartbeat: Optional[float] = None
    subscription_ids: Dict[str, str] = field(default_factory=dict)

    @property
    def connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "status": self.status.value,
            "connected": self.connected,
            "reconnect_attempts": self.reconnect_attempts,
            "last_heartbeat": self.last_heartbeat,
            "subscriptions": sorted(self.subscription_ids.values()),
        }


@dataclass(frozen=True)
class PositionEntry:
    """One reserve of a user, either as collateral or as debt."""

    asset: str
    amount: int
    decimals: int
    price: Optional[Decimal]
    liquidation_threshold: Decimal = Decimal(0)
    liquidation_bonus: Decimal = Decimal(0)
    collateral_enabled: bool = True


@dataclass(frozen=True)
class HealthFactorResult:
    total_collateral_value: Decimal
    total_debt_value: Decimal
    weighted_threshold: Decimal
    health_factor: Decimal
    current_liquidation_threshold: Decimal
    is_liquidatable: bool
    excluded_assets: Tuple[str, ...] = ()


@dataclass
class UserPosition:
    """Latest known state of a (chain, user, collateral, debt) position."""

    chain_id: int
    user: str
    collateral_asset: str
    debt_asset: str
    collateral_amount: int
    debt_amount: int
    collateral_decimals: int
    debt_decimals: int
    collateral_price: Decimal
    debt_price: Decimal
    health_factor: Decimal
    liquidation_threshold: Decimal
    liquidation_bonus: Decimal
    total_debt_value: Decimal
    updated_at: float

    @property
    def key(self) -> PositionKey:
        return position_key(self.chain_id, self.user, self.collateral_asset, self.debt_asset)

    @property
    def is_liquidatable(self) -> bool:
        return self.health_factor < 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "user": self.user,
            "collateral_asset": self.collateral_asset,
            "debt_asset": self.debt_asset,
            "collateral_amount": str(self.collateral_amount),
            "debt_amount": str(self.debt_amount),
            "collateral_decimals": self.collateral_decimals,
            "debt_decimals": self.debt_decimals,
            "collateral_price": str(self.collateral_price),
            "debt_price": str(self.debt_price),
            "health_factor": str(self.health_factor),
            "liquidation_threshold": str(self.liquidation_threshold),
            "liquidation_bonus": str(self.liquidation_bonus),
            "total_debt_value": str(self.total_debt_value),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserPosition":
        return cls(
            chain_id=int(data["chain_id"]),
            user=data["user"],
            collateral_asset=data["collateral_asset"],
            debt_asset=data["debt_asset"],
            collateral_amount=int(data["collateral_amount"]),
            debt_amount=int(data["debt_amount"]),
            collateral_decimals=int(data["collateral_decimals"]),
            debt_decimals=int(data["debt_decimals"]),
            collateral_price=Decimal(data["collateral_price"]),
            debt_price=Decimal(data["debt_price"]),
            health_factor=Decimal(data["health_factor"]),
            liquidation_threshold=Decimal(data["liquidation_threshold"]),
            liquidation_bonus=Decimal(data["liquidation_bonus"]),
            total_debt_value=Decimal(data["total_debt_value"]),
            updated_at=float(data["updated_at"]),
        )


@dataclass(frozen=True)
class LiquidationOpportunity:
    """Derived view over a position. Recomputed on demand, never mutated."""

    position: UserPosition
    max_liquidatable_debt: int
    projected_collateral_seized: int
    projected_profit: Decimal
    gas_cost_estimate: int

    @property
    def key(self) -> PositionKey:
        return self.position.key

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position.to_dict(),
            "max_liquidatable_debt": str(self.max_liquidatable_debt),
            "projected_collateral_seized": str(self.projected_collateral_seized),
            "projected_profit": str(self.projected_profit),
            "gas_cost_estimate": self.gas_cost_estimate,
        }


class AttemptOutcome(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    REVERTED = "reverted"
    FAILED = "failed"


@dataclass
class LiquidationAttempt:
    """A submitted (or failed-to-submit) liquidation. Terminal state is set exactly once."""

    chain_id: int
    opportunity: LiquidationOpportunity
    debt_to_cover: int
    max_slippage_bps: int
    deadline: int
    tx_hash: Optional[str] = None
    outcome: AttemptOutcome = AttemptOutcome.PENDING
    realized_profit: Optional[int] = None
    gas_estimate: Optional[int] = None
    gas_used: Optional[int] = None
    error: Optional[str] = None
    submitted_at: float = field(default_factory=time.time)
    settled_at: Optional[float] = None

    @property
    def key(self) -> PositionKey:
        return self.opportunity.key

    @property
    def is_terminal(self) -> bool:
        return self.outcome is not AttemptOutcome.PENDING

    def settle(
        self,
        outcome: AttemptOutcome,
        realized_profit: Optional[int] = None,
        gas_used: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        if outcome is AttemptOutcome.PENDING:
            raise SettlementError("Cannot settle an attempt back to pending")
        if self.is_terminal:
            raise SettlementError(f"Attempt {self.tx_hash} already settled as {self.outcome.value}")
        self.outcome = outcome
        self.realized_profit = realized_profit
        self.gas_used = gas_used
        self.error = error
        self.settled_at = time.time()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "tx_hash": self.tx_hash,
            "outcome": self.outcome.value,
            "debt_to_cover": str(self.debt_to_cover),
            "max_slippage_bps": self.max_slippage_bps,
            "deadline": self.deadline,
            "realized_profit": None if self.realized_profit is None else str(self.realized_profit),
            "gas_estimate": self.gas_estimate,
            "gas_used": self.gas_used,
            "error": self.error,
            "submitted_at": self.submitted_at,
            "settled_at": self.settled_at,
            "opportunity": self.opportunity.to_dict(),
        }


@dataclass(frozen=True)
class ActivityEvent:
    """Observable event surfaced to logging and notification collaborators."""

    chain_id: Optional[int]
    kind: str
    message: str
    level: str = "info"
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "kind": self.kind,
            "level": self.level,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp,
        }
