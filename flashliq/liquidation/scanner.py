"""
PositionScanner - recomputes health factors on pool events and new blocks.
"""

import queue
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from web3 import Web3

from .activity import ActivityLog
from .classifier import OpportunityClass, classify
from .config_loader import PipelineSettings
from .connection import ChainConnection
from .exceptions import DataQualityError
from .health_factor import SelectionPolicy, build_opportunity, compute_health_factor, select_position_pair
from .logging_config import setup_logger
from .models import ActivityEvent, PositionKey, UserPosition
from .position_store import PositionStore
from .reserve_reader import AaveReserveReader

logger = setup_logger()

# event signature -> index of the topic holding the affected user
POOL_EVENTS = {
    "Supply(address,address,address,uint256,uint16)": 2,
    "Withdraw(address,address,address,uint256)": 2,
    "Borrow(address,address,address,uint256,uint8,uint256,uint16)": 2,
    "Repay(address,address,address,uint256,bool)": 2,
    "LiquidationCall(address,address,address,uint256,uint256,address,bool)": 3,
}
POOL_EVENT_TOPICS = {Web3.to_hex(Web3.keccak(text=signature)): index for signature, index in POOL_EVENTS.items()}


def user_from_log(log: Dict[str, Any]) -> str:
    """
    Extract the affected user from a pool log.

    Raises:
        DataQualityError: if the log is not one of the watched pool events or is malformed.
    """
    topics = log.get("topics") if isinstance(log, dict) else None
    if not topics:
        raise DataQualityError(f"Log without topics: {log!r}")
    index = POOL_EVENT_TOPICS.get(str(topics[0]).lower())
    if index is None:
        raise DataQualityError(f"Unwatched event topic {topics[0]}")
    if len(topics) <= index:
        raise DataQualityError(f"Log is missing topic {index}: {log!r}")
    topic = str(topics[index])
    return Web3.to_checksum_address("0x" + topic[-40:])


class PositionScanner:
    """
    One per chain. Stream notifications are handled in delivery order by a
    single worker thread reading a FIFO queue.
    """

    def __init__(
        self,
        chain_id: int,
        reader: AaveReserveReader,
        store: PositionStore,
        settings: PipelineSettings,
        activity: Optional[ActivityLog] = None,
        orchestrator: Any = None,
        clock: Callable[[], float] = time.time,
    ):
        self.chain_id = chain_id
        self.reader = reader
        self.store = store
        self.settings = settings
        self.activity = activity
        self.orchestrator = orchestrator
        self.policy = SelectionPolicy.from_settings(settings)
        self._clock = clock

        self.updates: "queue.Queue" = queue.Queue()
        self.running = False
        self.latest_block = 0
        self._last_rescan = 0.0
        self._classes: Dict[PositionKey, OpportunityClass] = {}
        self._worker: Optional[threading.Thread] = None

    def subscribe(self, connection: ChainConnection, pool_address: str) -> None:
        connection.subscribe_new_blocks(lambda head: self.updates.put(("block", head)))
        connection.subscribe_logs(pool_address, [list(POOL_EVENT_TOPICS)], lambda log: self.updates.put(("log", log)))

    def start(self) -> None:
        self.running = True
        self._worker = threading.Thread(target=self.run, name=f"scanner-{self.chain_id}", daemon=True)
        self._worker.start()
        logger.info("PositionScanner %s: worker started", self.chain_id)

    def stop(self) -> None:
        self.running = False
        self.updates.put(None)
        if self._worker is not None:
            self._worker.join(timeout=5)

    def track_users(self, users: Iterable[str]) -> None:
        for user in users:
            self.updates.put(("user", user))

    def run(self) -> None:
        while self.running:
            item = self.updates.get()
            try:
                if item is None:
                    break
                self.handle(*item)
            except Exception as ex:
                logger.error("PositionScanner %s: failed to handle %s: %s", self.chain_id, item, ex, exc_info=True)
            finally:
                self.updates.task_done()

    def handle(self, kind: str, payload: Any) -> None:
        if kind == "block":
            self.handle_block(payload)
        elif kind == "log":
            self.handle_log(payload)
        elif kind == "user":
            self.scan_user(payload)
        else:
            logger.warning("PositionScanner %s: unknown update kind %s", self.chain_id, kind)

    def handle_block(self, head: Dict[str, Any]) -> None:
        try:
            self.latest_block = int(head["number"], 16)
        except (KeyError, TypeError, ValueError):
            logger.warning("PositionScanner %s: block header without number: %s", self.chain_id, head)

        now = self._clock()
        if now - self._last_rescan < self.settings.scan_interval:
            return
        self._last_rescan = now
        self.rescan_monitoring_band()

    def handle_log(self, log: Dict[str, Any]) -> None:
        try:
            user = user_from_log(log)
        except DataQualityError as ex:
            logger.warning("PositionScanner %s: skipping log: %s", self.chain_id, ex)
            return
        self.scan_user(user)

    def rescan_monitoring_band(self) -> List[UserPosition]:
        band = self.settings.monitoring_range
        users = []
        for position in self.store.get_positions_in_range(self.chain_id, band.min_hf, band.max_hf):
            if position.user not in users:
                users.append(position.user)

        logger.info("PositionScanner %s: rescanning %s users in monitoring band", self.chain_id, len(users))
        scanned = []
        for user in users:
            position = self.scan_user(user)
            if position is not None:
                scanned.append(position)
        return scanned

    def scan_user(self, user: str, source_timestamp: Optional[float] = None) -> Optional[UserPosition]:
        """
        Read ``user``'s reserves, store the resulting position and hand it to
        the orchestrator when it falls in the execution band.
        """
        source_timestamp = self._clock() if source_timestamp is None else source_timestamp
        entries = self.reader.fetch_user_entries(user)
        if entries is None:
            logger.warning("PositionScanner %s: could not read reserves of %s, skipping this round", self.chain_id, user)
            return None

        collateral, debt = entries
        if not debt:
            removed = self.store.remove_user(self.chain_id, user)
            if removed:
                self._forget(user)
                self._event("position_closed", f"{user} has no outstanding debt", user=user)
            return None

        result = compute_health_factor(collateral, debt)
        if result.excluded_assets:
            # an unpriced reserve skews the health factor, skip until the oracle answers
            logger.warning(
                "PositionScanner %s: skipping %s, no valid price for %s",
                self.chain_id, user, ", ".join(result.excluded_assets),
            )
            self._event(
                "data_quality",
                f"{user} skipped, missing price for {', '.join(result.excluded_assets)}",
                level="warning",
                user=user,
                excluded_assets=list(result.excluded_assets),
            )
            return None

        pair = select_position_pair(collateral, debt, self.policy)
        if pair is None:
            logger.warning("PositionScanner %s: no priced collateral/debt pair for %s, skipping", self.chain_id, user)
            return None
        chosen_collateral, chosen_debt = pair

        position = UserPosition(
            chain_id=self.chain_id,
            user=user,
            collateral_asset=chosen_collateral.asset,
            debt_asset=chosen_debt.asset,
            collateral_amount=chosen_collateral.amount,
            debt_amount=chosen_debt.amount,
            collateral_decimals=chosen_collateral.decimals,
            debt_decimals=chosen_debt.decimals,
            collateral_price=chosen_collateral.price,
            debt_price=chosen_debt.price,
            health_factor=result.health_factor,
            liquidation_threshold=chosen_collateral.liquidation_threshold,
            liquidation_bonus=chosen_collateral.liquidation_bonus,
            total_debt_value=result.total_debt_value,
            updated_at=source_timestamp,
        )
        if not self.store.upsert_position(position):
            return None
        self._drop_other_pairs(position)

        opportunity_class = classify(position.health_factor, self.settings.monitoring_range, self.settings.execution_range)
        previous = self._classes.get(position.key)
        self._classes[position.key] = opportunity_class
        if previous is not opportunity_class:
            self._event(
                "classification_changed",
                f"{user} is {opportunity_class.value} at HF {position.health_factor:.4f}",
                user=user,
                previous=previous.value if previous else None,
                current=opportunity_class.value,
                health_factor=str(position.health_factor),
            )

        if opportunity_class is OpportunityClass.IN_EXECUTION_RANGE and self.orchestrator is not None:
            try:
                opportunity = build_opportunity(position, self.settings)
            except DataQualityError as ex:
                logger.warning("PositionScanner %s: cannot size liquidation of %s: %s", self.chain_id, user, ex)
                return position
            self.orchestrator.submit(opportunity)

        return position

    def _drop_other_pairs(self, position: UserPosition) -> None:
        user = position.user.lower()
        for other in self.store.all_positions(self.chain_id):
            if other.user.lower() == user and other.key != position.key and other.updated_at <= position.updated_at:
                self.store.remove(other.key)
                self._classes.pop(other.key, None)

    def _forget(self, user: str) -> None:
        user = user.lower()
        for key in [k for k in self._classes if k[1] == user]:
            del self._classes[key]

    def _event(self, kind: str, message: str, level: str = "info", **data: Any) -> None:
        if self.activity is not None:
            self.activity.record(
                ActivityEvent(chain_id=self.chain_id, kind=kind, message=message, level=level, data=data)
            )
