"""
Turns execution-band opportunities into liquidation transactions and
follows them until their on-chain outcome is known.
"""

import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from web3 import Web3
from web3.exceptions import TransactionNotFound
from web3.logs import DISCARD

from .config_loader import ChainConfig, PipelineSettings
from .exceptions import SubmissionError, ValidationError
from .executor import AtomicLiquidationExecutor, ExecutionReceipt
from .logging_config import setup_logger
from .models import ActivityEvent, AttemptOutcome, LiquidationAttempt, LiquidationOpportunity, PositionKey
from .simulation import SimulatedChain

logger = setup_logger()

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class Web3Submitter:
    """Builds, signs and broadcasts ``executeLiquidation`` calls to the deployed liquidator."""

    def __init__(self, config: ChainConfig):
        self.chain_id = config.CHAIN_ID
        self.w3 = config.w3
        self.contract = config.liquidator
        self.account = config.LIQUIDATOR_EOA
        self.contract_address = config.endpoint.liquidator_address
        self.signer = config.signer
        self.gas_limit_multiplier = config.settings.gas_limit_multiplier
        self._nonce_lock = threading.Lock()

    def submit(self, attempt: LiquidationAttempt) -> str:
        """Broadcast the liquidation and return its hash. Records the node's gas estimate on ``attempt``."""
        position = attempt.opportunity.position
        function_call = self.contract.functions.executeLiquidation(
            Web3.to_checksum_address(position.user),
            Web3.to_checksum_address(position.collateral_asset),
            Web3.to_checksum_address(position.debt_asset),
            attempt.debt_to_cover,
            attempt.max_slippage_bps,
            attempt.deadline,
        )

        with self._nonce_lock:
            tx = function_call.build_transaction(
                {
                    "chainId": self.chain_id,
                    "gasPrice": self.w3.eth.gas_price,
                    "from": self.account,
                    "nonce": self.w3.eth.get_transaction_count(self.account, "pending"),
                }
            )
            estimated_gas = self.w3.eth.estimate_gas(tx)
            attempt.gas_estimate = int(estimated_gas)
            tx["gas"] = int(estimated_gas * self.gas_limit_multiplier)
            logger.info("Web3Submitter: estimated gas %s for liquidation of %s", estimated_gas, position.user)

            with self.signer.lend() as private_key:
                signed_tx = self.w3.eth.account.sign_transaction(tx, private_key)
            tx_hash = self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)

        return self.w3.to_hex(tx_hash)

    def receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        try:
            return self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    def realized_profit(self, receipt: Dict[str, Any]) -> Optional[int]:
        events = self.contract.events.LiquidationSettled().process_receipt(receipt, errors=DISCARD)
        if not events:
            return None
        return int(events[0]["args"]["profit"])


class LiquidationOrchestrator:
    """
    At most one attempt is in flight per (chain, user, collateral, debt).
    A second opportunity for a busy key is dropped, not queued.
    """

    def __init__(
        self,
        chain_id: int,
        settings: PipelineSettings,
        submitter: Any,
        account: str,
        liquidator_address: str,
        activity: Optional[Callable[[ActivityEvent], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.chain_id = chain_id
        self.settings = settings
        self.submitter = submitter
        self.account = account
        self.liquidator_address = liquidator_address
        self._record = activity or (lambda event: None)
        self._clock = clock

        self._lock = threading.Lock()
        # None marks a key reserved while its attempt is being prepared
        self._in_flight: Dict[PositionKey, Optional[LiquidationAttempt]] = {}
        self._attempts: Deque[LiquidationAttempt] = deque(maxlen=settings.attempt_history)
        self._stop = threading.Event()
        self._watcher: Optional[threading.Thread] = None

    def start(self) -> None:
        self._watcher = threading.Thread(
            target=self._watch_settlements, name=f"settlement-{self.chain_id}", daemon=True
        )
        self._watcher.start()
        logger.info("LiquidationOrchestrator %s: settlement watcher started", self.chain_id)

    def stop(self) -> None:
        self._stop.set()
        if self._watcher is not None:
            self._watcher.join(timeout=self.settings.settlement_poll_interval + 1)

    def attempts(self, chain_id: Optional[int] = None) -> List[LiquidationAttempt]:
        with self._lock:
            attempts = list(self._attempts)
        if chain_id is not None:
            attempts = [a for a in attempts if a.chain_id == chain_id]
        return attempts

    def in_flight_keys(self) -> List[PositionKey]:
        with self._lock:
            return list(self._in_flight)

    def submit(self, opportunity: LiquidationOpportunity) -> Optional[LiquidationAttempt]:
        """
        Validate, project and broadcast a liquidation for ``opportunity``.

        Returns the attempt (PENDING, or FAILED if broadcasting raised), or
        None when the opportunity was dropped or rejected before submission.
        """
        key = opportunity.key
        position = opportunity.position
        with self._lock:
            if key in self._in_flight:
                busy = True
            else:
                busy = False
                self._in_flight[key] = None

        if busy:
            logger.info("LiquidationOrchestrator %s: attempt already in flight for %s, dropping", self.chain_id, key)
            self._event("liquidation_dropped", f"Attempt already in flight for {position.user}", key=list(key))
            return None

        try:
            attempt = self._prepare(opportunity)
            projected = self._project(attempt)
        except ValidationError as ex:
            self._release(key)
            logger.warning("LiquidationOrchestrator %s: rejected %s: %s", self.chain_id, position.user, ex)
            self._event("liquidation_rejected", str(ex), level="warning", user=position.user, reason="validation")
            return None
        except Exception as ex:
            self._release(key)
            logger.error(
                "LiquidationOrchestrator %s: could not project liquidation of %s: %s",
                self.chain_id, position.user, ex,
            )
            self._event(
                "liquidation_rejected",
                f"Projection failed for {position.user}: {ex}",
                level="error",
                user=position.user,
                reason="projection_error",
            )
            raise

        if not projected.success:
            self._release(key)
            logger.info(
                "LiquidationOrchestrator %s: projection of %s reverts with %s %s",
                self.chain_id, position.user, projected.reason.value, projected.detail,
            )
            self._event(
                "liquidation_rejected",
                f"Projected revert {projected.reason.value} for {position.user}",
                level="warning",
                user=position.user,
                reason=projected.reason.value,
                detail=projected.detail,
            )
            return None

        logger.info(
            "LiquidationOrchestrator %s: submitting liquidation of %s, debt %s, projected profit %s",
            self.chain_id, position.user, attempt.debt_to_cover, projected.profit,
        )
        try:
            attempt.tx_hash = self.submitter.submit(attempt)
        except Exception as ex:
            error = SubmissionError(f"Submission failed for {position.user}: {ex}")
            logger.error("LiquidationOrchestrator %s: %s", self.chain_id, error, exc_info=True)
            attempt.settle(AttemptOutcome.FAILED, error=str(error))
            with self._lock:
                self._attempts.append(attempt)
            self._finish(attempt)
            return attempt

        with self._lock:
            self._attempts.append(attempt)
            self._in_flight[key] = attempt
        self._event(
            "liquidation_submitted",
            f"Liquidation of {position.user} submitted as {attempt.tx_hash}",
            tx_hash=attempt.tx_hash,
            user=position.user,
            gas_estimate=attempt.gas_estimate,
        )
        return attempt

    def _prepare(self, opportunity: LiquidationOpportunity) -> LiquidationAttempt:
        position = opportunity.position
        if position.chain_id != self.chain_id:
            raise ValidationError(f"Opportunity for chain {position.chain_id} sent to chain {self.chain_id}")
        for address in (position.user, position.collateral_asset, position.debt_asset):
            if not Web3.is_address(address) or int(address, 16) == 0:
                raise ValidationError(f"Invalid address {address}")
        if not position.is_liquidatable:
            raise ValidationError(f"Health factor {position.health_factor} is not below 1")
        if opportunity.max_liquidatable_debt <= 0:
            raise ValidationError("Liquidation amount must be positive")
        if not 0 <= self.settings.max_slippage_bps <= self.settings.slippage_ceiling_bps:
            raise ValidationError(f"Slippage {self.settings.max_slippage_bps} bps out of bounds")

        now = int(self._clock())
        deadline = now + self.settings.deadline_seconds
        if deadline <= now:
            raise ValidationError(f"Deadline {deadline} is not in the future")

        return LiquidationAttempt(
            chain_id=self.chain_id,
            opportunity=opportunity,
            debt_to_cover=opportunity.max_liquidatable_debt,
            max_slippage_bps=self.settings.max_slippage_bps,
            deadline=deadline,
            submitted_at=now,
        )

    def _project(self, attempt: LiquidationAttempt) -> ExecutionReceipt:
        """Replay the liquidation against a ledger seeded from the position's own prices."""
        position = attempt.opportunity.position
        chain = SimulatedChain.for_position(
            position,
            attempt.debt_to_cover,
            flash_premium_bps=self.settings.flash_loan_premium_bps,
            router_fee_bps=self.settings.router_fee_bps,
            timestamp=attempt.submitted_at,
        )
        executor = AtomicLiquidationExecutor(chain, self.liquidator_address, self.account, self.settings)
        return executor.execute_liquidation(
            self.account,
            position.user,
            position.collateral_asset,
            position.debt_asset,
            attempt.debt_to_cover,
            attempt.max_slippage_bps,
            attempt.deadline,
        )

    def poll_settlements(self) -> int:
        """Check receipts of pending attempts. Returns how many settled."""
        with self._lock:
            pending = [a for a in self._in_flight.values() if a is not None and not a.is_terminal]

        settled = 0
        for attempt in pending:
            receipt = self.submitter.receipt(attempt.tx_hash)
            if receipt is None:
                continue

            gas_used = receipt.get("gasUsed")
            if receipt.get("status") == 1:
                attempt.settle(
                    AttemptOutcome.SUCCESS,
                    realized_profit=self.submitter.realized_profit(receipt),
                    gas_used=gas_used,
                )
            else:
                attempt.settle(AttemptOutcome.REVERTED, gas_used=gas_used, error="transaction reverted on-chain")
            self._finish(attempt)
            settled += 1
        return settled

    def _watch_settlements(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_settlements()
            except Exception as ex:
                logger.error("LiquidationOrchestrator %s: settlement poll failed: %s", self.chain_id, ex, exc_info=True)
            self._stop.wait(self.settings.settlement_poll_interval)

    def _finish(self, attempt: LiquidationAttempt) -> None:
        self._release(attempt.key)
        level = {
            AttemptOutcome.SUCCESS: "info",
            AttemptOutcome.REVERTED: "warning",
        }.get(attempt.outcome, "error")
        self._record(
            ActivityEvent(
                chain_id=self.chain_id,
                kind="settlement",
                message=f"Liquidation of {attempt.opportunity.position.user} {attempt.outcome.value}",
                level=level,
                data=attempt.to_dict(),
            )
        )

    def _release(self, key: PositionKey) -> None:
        with self._lock:
            self._in_flight.pop(key, None)

    def _event(self, kind: str, message: str, level: str = "info", **data: Any) -> None:
        self._record(ActivityEvent(chain_id=self.chain_id, kind=kind, message=message, level=level, data=data))
