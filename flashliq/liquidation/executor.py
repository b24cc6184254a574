"""
Reference model of the liquidator contract's flash-loan callback.

``AtomicLiquidationExecutor.execute_liquidation`` mirrors the deployed
contract's ``executeLiquidation``: guard checks, then a single atomic
transaction of borrow -> liquidate -> measure -> swap -> repay -> profit
check -> settle. Each step returns a ``StepResult``; the first failure
reverts the whole transaction through ``SimulatedChain.transaction()``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .config_loader import PipelineSettings
from .logging_config import setup_logger
from .simulation import SimulatedChain, TransactionReverted

logger = setup_logger()

BPS = 10_000
ZERO_ADDRESS = "0x" + "0" * 40


class RevertReason(Enum):
    # guard checks
    NOT_OWNER = "NotOwner"
    PAUSED = "EnforcedPause"
    ZERO_ADDRESS = "ZeroAddress"
    ZERO_AMOUNT = "ZeroAmount"
    DEADLINE_EXPIRED = "DeadlineExpired"
    INVALID_SLIPPAGE = "InvalidSlippage"
    # callback pipeline
    FLASH_LOAN_REJECTED = "FlashLoanRejected"
    LIQUIDATION_FAILED = "LiquidationFailed"
    NO_COLLATERAL_SEIZED = "NoCollateralSeized"
    INVALID_QUOTE = "InvalidQuote"
    SLIPPAGE_EXCEEDED = "SlippageExceeded"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    INSUFFICIENT_PROFIT = "InsufficientProfit"


@dataclass(frozen=True)
class StepResult:
    value: Any = None
    reason: Optional[RevertReason] = None
    detail: str = ""

    @classmethod
    def ok(cls, value: Any = None) -> "StepResult":
        return cls(value=value)

    @classmethod
    def fail(cls, reason: RevertReason, detail: str = "") -> "StepResult":
        return cls(reason=reason, detail=detail)

    @property
    def failed(self) -> bool:
        return self.reason is not None


@dataclass(frozen=True)
class SettlementRecord:
    executor: str
    target_user: str
    profit: int
    profit_asset: str
    debt_covered: int
    collateral_seized: int


@dataclass(frozen=True)
class ExecutionReceipt:
    success: bool
    reason: Optional[RevertReason] = None
    detail: str = ""
    settlement: Optional[SettlementRecord] = None

    @property
    def profit(self) -> int:
        return self.settlement.profit if self.settlement else 0


@dataclass(frozen=True)
class ExecutorStats:
    total_profit: Dict[str, int]
    total_liquidations: int
    is_paused: bool


@dataclass
class _CallbackContext:
    target_user: str
    collateral_asset: str
    debt_asset: str
    amount: int
    slippage_bps: int
    debt_balance_before: int
    premium: int = 0
    debt_covered: int = 0
    collateral_before: int = 0
    collateral_seized: int = 0
    amount_out: int = 0
    profit: int = 0
    steps: List[str] = field(default_factory=list)

    @property
    def same_asset(self) -> bool:
        return self.collateral_asset.lower() == self.debt_asset.lower()


def min_amount_out(expected_out: int, slippage_bps: int) -> int:
    """Lowest acceptable swap output. Multiplies before dividing so small outputs never underflow."""
    if expected_out < 0 or not 0 <= slippage_bps <= BPS:
        raise ValueError(f"Invalid quote {expected_out} or slippage {slippage_bps} bps")
    return expected_out * (BPS - slippage_bps) // BPS


def _is_zero_address(address: Optional[str]) -> bool:
    return not address or int(address, 16) == 0


class AtomicLiquidationExecutor:
    """Liquidator contract model bound to one SimulatedChain."""

    def __init__(self, chain: SimulatedChain, address: str, owner: str, settings: PipelineSettings):
        self.chain = chain
        self.address = address.lower()
        self.owner = owner.lower()
        self.max_slippage_bps = settings.slippage_ceiling_bps
        self.min_profit_bps = settings.min_profit_bps

        self.chain.storage.setdefault(
            self.address, {"paused": False, "total_profit": {}, "total_liquidations": 0}
        )

    @property
    def _storage(self) -> Dict[str, Any]:
        return self.chain.storage[self.address]

    def _only_owner(self, caller: str) -> None:
        if caller.lower() != self.owner:
            raise TransactionReverted(RevertReason.NOT_OWNER, caller)

    def _guard(self, caller: str, target_user: str, collateral_asset: str, debt_asset: str,
               debt_amount: int, max_slippage_bps: int, deadline: int, now: int) -> Optional[StepResult]:
        if caller.lower() != self.owner:
            return StepResult.fail(RevertReason.NOT_OWNER, caller)
        if self._storage["paused"]:
            return StepResult.fail(RevertReason.PAUSED)
        for address in (target_user, collateral_asset, debt_asset):
            if _is_zero_address(address):
                return StepResult.fail(RevertReason.ZERO_ADDRESS)
        if debt_amount <= 0:
            return StepResult.fail(RevertReason.ZERO_AMOUNT)
        if now > deadline:
            return StepResult.fail(RevertReason.DEADLINE_EXPIRED, f"now {now} > deadline {deadline}")
        if not 0 <= max_slippage_bps <= self.max_slippage_bps:
            return StepResult.fail(RevertReason.INVALID_SLIPPAGE, f"{max_slippage_bps} > {self.max_slippage_bps}")
        return None

    def execute_liquidation(
        self,
        caller: str,
        target_user: str,
        collateral_asset: str,
        debt_asset: str,
        debt_amount: int,
        max_slippage_bps: int,
        deadline: int,
        now: Optional[int] = None,
    ) -> ExecutionReceipt:
        now = self.chain.timestamp if now is None else now
        rejected = self._guard(caller, target_user, collateral_asset, debt_asset,
                               debt_amount, max_slippage_bps, deadline, now)
        if rejected is not None:
            logger.info("Executor: guard rejected liquidation of %s: %s %s", target_user, rejected.reason.value, rejected.detail)
            return ExecutionReceipt(success=False, reason=rejected.reason, detail=rejected.detail)

        ctx = _CallbackContext(
            target_user=target_user.lower(),
            collateral_asset=collateral_asset.lower(),
            debt_asset=debt_asset.lower(),
            amount=debt_amount,
            slippage_bps=max_slippage_bps,
            debt_balance_before=self.chain.balance_of(self.address, debt_asset),
        )
        pipeline: List[Callable[[_CallbackContext], StepResult]] = [
            self._borrow,
            self._liquidate,
            self._measure_seized,
            self._swap,
            self._repay,
            self._check_profit,
            self._settle,
        ]

        settlement = None
        with self.chain.transaction() as outcome:
            for step in pipeline:
                result = step(ctx)
                if result.failed:
                    raise TransactionReverted(result.reason, result.detail)
                ctx.steps.append(step.__name__.lstrip("_"))
                settlement = result.value

        if not outcome.succeeded:
            revert = outcome.reverted
            logger.info(
                "Executor: liquidation of %s reverted after %s: %s",
                target_user, ctx.steps or "no steps", revert,
            )
            return ExecutionReceipt(success=False, reason=revert.reason, detail=revert.detail)

        return ExecutionReceipt(success=True, settlement=settlement)

    def _borrow(self, ctx: _CallbackContext) -> StepResult:
        try:
            ctx.premium = self.chain.pool.flash_borrow(self.address, ctx.debt_asset, ctx.amount)
        except TransactionReverted as revert:
            return StepResult.fail(RevertReason.FLASH_LOAN_REJECTED, str(revert))
        return StepResult.ok(ctx.premium)

    def _liquidate(self, ctx: _CallbackContext) -> StepResult:
        ctx.collateral_before = self.chain.balance_of(self.address, ctx.collateral_asset)
        try:
            ctx.debt_covered = self.chain.pool.liquidation_call(
                self.address, ctx.collateral_asset, ctx.debt_asset, ctx.target_user, ctx.amount
            )
        except TransactionReverted as revert:
            return StepResult.fail(RevertReason.LIQUIDATION_FAILED, str(revert))
        return StepResult.ok(ctx.debt_covered)

    def _measure_seized(self, ctx: _CallbackContext) -> StepResult:
        collateral_after = self.chain.balance_of(self.address, ctx.collateral_asset)
        seized = collateral_after - ctx.collateral_before
        if ctx.same_asset:
            # the repaid debt left the same balance we are measuring
            seized += ctx.debt_covered
        if seized <= 0:
            return StepResult.fail(RevertReason.NO_COLLATERAL_SEIZED)
        ctx.collateral_seized = seized
        return StepResult.ok(seized)

    def _swap(self, ctx: _CallbackContext) -> StepResult:
        if ctx.same_asset:
            return StepResult.ok(0)

        quote = self.chain.router.get_quote(ctx.collateral_seized, ctx.collateral_asset, ctx.debt_asset)
        if len(quote.path) < 2 or quote.expected_out == 0:
            return StepResult.fail(RevertReason.INVALID_QUOTE, f"path {quote.path}, expected {quote.expected_out}")

        minimum = min_amount_out(quote.expected_out, ctx.slippage_bps)
        try:
            ctx.amount_out = self.chain.router.swap(self.address, ctx.collateral_seized, quote.path)
        except TransactionReverted as revert:
            return StepResult.fail(RevertReason.INVALID_QUOTE, str(revert))
        if ctx.amount_out < minimum:
            return StepResult.fail(RevertReason.SLIPPAGE_EXCEEDED, f"received {ctx.amount_out} < minimum {minimum}")
        return StepResult.ok(ctx.amount_out)

    def _repay(self, ctx: _CallbackContext) -> StepResult:
        total_repayment = ctx.amount + ctx.premium
        balance = self.chain.balance_of(self.address, ctx.debt_asset)
        if balance < total_repayment:
            return StepResult.fail(RevertReason.INSUFFICIENT_BALANCE, f"balance {balance} < repayment {total_repayment}")
        self.chain.pool.flash_repay(self.address, ctx.debt_asset, total_repayment)
        return StepResult.ok(total_repayment)

    def _check_profit(self, ctx: _CallbackContext) -> StepResult:
        ctx.profit = self.chain.balance_of(self.address, ctx.debt_asset) - ctx.debt_balance_before
        minimum = ctx.amount * self.min_profit_bps // BPS
        if ctx.profit < minimum:
            return StepResult.fail(RevertReason.INSUFFICIENT_PROFIT, f"profit {ctx.profit} < minimum {minimum}")
        return StepResult.ok(ctx.profit)

    def _settle(self, ctx: _CallbackContext) -> StepResult:
        record = SettlementRecord(
            executor=self.address,
            target_user=ctx.target_user,
            profit=ctx.profit,
            profit_asset=ctx.debt_asset,
            debt_covered=ctx.debt_covered,
            collateral_seized=ctx.collateral_seized,
        )
        totals = self._storage["total_profit"]
        totals[ctx.debt_asset] = totals.get(ctx.debt_asset, 0) + ctx.profit
        self._storage["total_liquidations"] += 1
        self.chain.emit(
            "LiquidationSettled",
            executor=record.executor,
            user=record.target_user,
            profit=record.profit,
            profitAsset=record.profit_asset,
        )
        return StepResult.ok(record)

    def estimate_flash_loan_cost(self, amount: int) -> int:
        return self.chain.pool.flash_premium(amount)

    def get_stats(self) -> ExecutorStats:
        return ExecutorStats(
            total_profit=dict(self._storage["total_profit"]),
            total_liquidations=self._storage["total_liquidations"],
            is_paused=self._storage["paused"],
        )

    def pause(self, caller: str) -> None:
        self._only_owner(caller)
        self._storage["paused"] = True

    def unpause(self, caller: str) -> None:
        self._only_owner(caller)
        self._storage["paused"] = False

    def withdraw_profits(self, caller: str, asset: str, amount: int, to: str) -> int:
        """Send ``amount`` of ``asset`` (0 means the whole balance) to ``to``."""
        self._only_owner(caller)
        if _is_zero_address(to) or _is_zero_address(asset):
            raise TransactionReverted(RevertReason.ZERO_ADDRESS)
        balance = self.chain.balance_of(self.address, asset)
        amount = amount or balance
        if amount == 0 or amount > balance:
            raise TransactionReverted(RevertReason.INSUFFICIENT_BALANCE, f"balance {balance} < {amount}")
        self.chain.transfer(self.address, to, asset, amount)
        return amount
