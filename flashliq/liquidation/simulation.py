"""
In-memory EVM-like ledger used to replay a liquidation before it is broadcast.

State is kept in plain dicts so that ``SimulatedChain.transaction()`` can
snapshot it and restore it when a ``TransactionReverted`` escapes the block.
"""

import copy
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal, localcontext
from typing import Any, Dict, Iterator, List, Optional

from .exceptions import LiquidationError
from .models import UserPosition

BPS = 10_000


class TransactionReverted(LiquidationError):
    """A simulated transaction aborted. All state changes inside it are undone."""

    def __init__(self, reason: Any, detail: str = ""):
        name = str(getattr(reason, "value", reason))
        super().__init__(f"{name}: {detail}" if detail else name)
        self.reason = reason
        self.detail = detail


@dataclass
class Token:
    decimals: int
    price: Decimal


@dataclass
class BorrowerAccount:
    collateral: Dict[str, int] = field(default_factory=dict)
    debt: Dict[str, int] = field(default_factory=dict)
    health_factor: Decimal = Decimal(0)


@dataclass
class Quote:
    path: List[str]
    expected_out: int


@dataclass
class TransactionOutcome:
    reverted: Optional[TransactionReverted] = None

    @property
    def succeeded(self) -> bool:
        return self.reverted is None


def _lower(address: str) -> str:
    return address.lower()


class SimulatedPool:
    """Lending pool with flash loans and a liquidation entry point."""

    def __init__(self, chain: "SimulatedChain", address: str, flash_premium_bps: int = 5):
        self.chain = chain
        self.address = _lower(address)
        self.flash_premium_bps = flash_premium_bps
        self.flash_loans_enabled = True
        self.accounts: Dict[str, BorrowerAccount] = {}

    def set_account(self, user: str, collateral: Dict[str, int], debt: Dict[str, int], health_factor: Decimal) -> None:
        self.accounts[_lower(user)] = BorrowerAccount(
            {_lower(a): v for a, v in collateral.items()},
            {_lower(a): v for a, v in debt.items()},
            health_factor,
        )

    def flash_premium(self, amount: int) -> int:
        return amount * self.flash_premium_bps // BPS

    def flash_borrow(self, receiver: str, asset: str, amount: int) -> int:
        """Lend ``amount`` to ``receiver``. Returns the premium owed on top."""
        if not self.flash_loans_enabled:
            raise TransactionReverted("FLASH_LOANS_DISABLED")
        if self.chain.balance_of(self.address, asset) < amount:
            raise TransactionReverted("INSUFFICIENT_LIQUIDITY", f"pool holds less than {amount} of {asset}")
        self.chain.transfer(self.address, receiver, asset, amount)
        return self.flash_premium(amount)

    def flash_repay(self, payer: str, asset: str, amount: int) -> None:
        self.chain.transfer(payer, self.address, asset, amount)

    def liquidation_call(self, liquidator: str, collateral_asset: str, debt_asset: str, user: str, debt_to_cover: int) -> int:
        """Repay part of ``user``'s debt and hand the bonus-adjusted collateral to the liquidator.

        Returns the debt actually covered.
        """
        account = self.accounts.get(_lower(user))
        if account is None:
            raise TransactionReverted("USER_NOT_FOUND", user)
        if account.health_factor >= 1:
            raise TransactionReverted("HEALTH_FACTOR_NOT_BELOW_THRESHOLD", str(account.health_factor))

        collateral_asset, debt_asset = _lower(collateral_asset), _lower(debt_asset)
        user_debt = account.debt.get(debt_asset, 0)
        user_collateral = account.collateral.get(collateral_asset, 0)
        if user_debt == 0:
            raise TransactionReverted("SPECIFIED_CURRENCY_NOT_BORROWED_BY_USER")
        if user_collateral == 0:
            raise TransactionReverted("COLLATERAL_CANNOT_BE_LIQUIDATED")

        covered = min(debt_to_cover, user_debt)
        seized = self.chain.convert(covered, debt_asset, collateral_asset, bonus=self.chain.bonus(collateral_asset))
        if seized > user_collateral:
            # not enough collateral: scale the covered debt down to what it buys
            seized = user_collateral
            gross = self.chain.convert(seized, collateral_asset, debt_asset)
            covered = int((Decimal(gross) / (1 + self.chain.bonus(collateral_asset))).to_integral_value(ROUND_FLOOR))

        self.chain.transfer(liquidator, self.address, debt_asset, covered)
        self.chain.transfer(self.address, liquidator, collateral_asset, seized)
        account.debt[debt_asset] = user_debt - covered
        account.collateral[collateral_asset] = user_collateral - seized

        self.chain.emit(
            "LiquidationCall",
            collateralAsset=collateral_asset,
            debtAsset=debt_asset,
            user=_lower(user),
            debtToCover=covered,
            liquidatedCollateralAmount=seized,
            liquidator=_lower(liquidator),
        )
        return covered


class SimulatedRouter:
    """Swap router quoting at oracle prices minus a fee."""

    def __init__(self, chain: "SimulatedChain", address: str, fee_bps: int = 30, realized_slippage_bps: int = 0):
        self.chain = chain
        self.address = _lower(address)
        self.fee_bps = fee_bps
        self.realized_slippage_bps = realized_slippage_bps
        self.broken_quotes = False

    def get_quote(self, amount_in: int, token_in: str, token_out: str) -> Quote:
        if self.broken_quotes:
            return Quote(path=[_lower(token_in)], expected_out=0)
        gross = self.chain.convert(amount_in, token_in, token_out)
        return Quote(path=[_lower(token_in), _lower(token_out)], expected_out=gross * (BPS - self.fee_bps) // BPS)

    def swap(self, sender: str, amount_in: int, path: List[str]) -> int:
        """Swap along ``path``. The output includes the configured realized slippage."""
        quote = self.get_quote(amount_in, path[0], path[-1])
        amount_out = quote.expected_out * (BPS - self.realized_slippage_bps) // BPS
        if self.chain.balance_of(self.address, path[-1]) < amount_out:
            raise TransactionReverted("INSUFFICIENT_ROUTER_LIQUIDITY", path[-1])

        self.chain.transfer(sender, self.address, path[0], amount_in)
        self.chain.transfer(self.address, sender, path[-1], amount_out)
        self.chain.emit("Swap", sender=_lower(sender), amountIn=amount_in, amountOut=amount_out, path=list(path))
        return amount_out


class SimulatedChain:
    POOL_ADDRESS = "0x00000000000000000000000000000000000a0a0e"
    ROUTER_ADDRESS = "0x0000000000000000000000000000000000007007"

    def __init__(self, chain_id: int = 1, flash_premium_bps: int = 5, router_fee_bps: int = 30, timestamp: Optional[float] = None):
        self.chain_id = chain_id
        self.timestamp = int(timestamp if timestamp is not None else time.time())
        self.tokens: Dict[str, Token] = {}
        self.bonuses: Dict[str, Decimal] = {}
        self.balances: Dict[str, Dict[str, int]] = {}
        self.storage: Dict[str, Dict[str, Any]] = {}
        self.events: List[Dict[str, Any]] = []
        self.pool = SimulatedPool(self, self.POOL_ADDRESS, flash_premium_bps)
        self.router = SimulatedRouter(self, self.ROUTER_ADDRESS, router_fee_bps)

    def add_token(self, asset: str, decimals: int, price: Decimal, liquidation_bonus: Decimal = Decimal(0)) -> None:
        self.tokens[_lower(asset)] = Token(decimals, Decimal(price))
        self.bonuses[_lower(asset)] = Decimal(liquidation_bonus)

    def bonus(self, asset: str) -> Decimal:
        return self.bonuses.get(_lower(asset), Decimal(0))

    def balance_of(self, holder: str, asset: str) -> int:
        return self.balances.get(_lower(holder), {}).get(_lower(asset), 0)

    def mint(self, holder: str, asset: str, amount: int) -> None:
        holdings = self.balances.setdefault(_lower(holder), {})
        holdings[_lower(asset)] = holdings.get(_lower(asset), 0) + amount

    def transfer(self, sender: str, recipient: str, asset: str, amount: int) -> None:
        if amount < 0:
            raise TransactionReverted("NEGATIVE_TRANSFER", str(amount))
        available = self.balance_of(sender, asset)
        if available < amount:
            raise TransactionReverted("TRANSFER_AMOUNT_EXCEEDS_BALANCE", f"{sender} has {available} < {amount} of {asset}")
        self.balances[_lower(sender)][_lower(asset)] = available - amount
        self.mint(recipient, asset, amount)

    def convert(self, amount: int, asset_in: str, asset_out: str, bonus: Decimal = Decimal(0)) -> int:
        """Convert native units between assets at oracle prices, rounding down."""
        token_in, token_out = self.tokens[_lower(asset_in)], self.tokens[_lower(asset_out)]
        with localcontext() as ctx:
            ctx.prec = 60
            value = Decimal(amount) / (Decimal(10) ** token_in.decimals) * token_in.price * (1 + bonus)
            out = value / token_out.price * (Decimal(10) ** token_out.decimals)
            return int(out.to_integral_value(ROUND_FLOOR))

    def emit(self, name: str, **args: Any) -> None:
        self.events.append({"event": name, "args": args})

    def _snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(
            {
                "balances": self.balances,
                "storage": self.storage,
                "events": self.events,
                "accounts": self.pool.accounts,
            }
        )

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self.balances = snapshot["balances"]
        self.storage = snapshot["storage"]
        self.events = snapshot["events"]
        self.pool.accounts = snapshot["accounts"]

    @contextmanager
    def transaction(self) -> Iterator[TransactionOutcome]:
        """
        Run a block atomically. A TransactionReverted raised inside restores
        every balance, storage slot, account and event to its prior value and
        is reported on the yielded outcome instead of propagating.
        """
        snapshot = self._snapshot()
        outcome = TransactionOutcome()
        try:
            yield outcome
        except TransactionReverted as revert:
            self._restore(snapshot)
            outcome.reverted = revert

    @classmethod
    def for_position(
        cls,
        position: UserPosition,
        debt_to_cover: int,
        flash_premium_bps: int = 5,
        router_fee_bps: int = 30,
        timestamp: Optional[float] = None,
    ) -> "SimulatedChain":
        """Seed a chain with one borrower, enough pool liquidity to lend and router liquidity to swap."""
        chain = cls(position.chain_id, flash_premium_bps, router_fee_bps, timestamp)
        chain.add_token(position.collateral_asset, position.collateral_decimals, position.collateral_price, position.liquidation_bonus)
        if _lower(position.debt_asset) != _lower(position.collateral_asset):
            chain.add_token(position.debt_asset, position.debt_decimals, position.debt_price)

        chain.pool.set_account(
            position.user,
            {position.collateral_asset: position.collateral_amount},
            {position.debt_asset: position.debt_amount},
            position.health_factor,
        )
        chain.mint(chain.POOL_ADDRESS, position.collateral_asset, position.collateral_amount)
        chain.mint(chain.POOL_ADDRESS, position.debt_asset, max(debt_to_cover, position.debt_amount))
        router_liquidity = chain.convert(position.collateral_amount, position.collateral_asset, position.debt_asset)
        chain.mint(chain.ROUTER_ADDRESS, position.debt_asset, 2 * router_liquidity + 1)
        return chain
