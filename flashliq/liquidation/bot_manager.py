import threading
from typing import Dict, List, Optional

from .activity import ActivityLog
from .config_loader import ChainConfig, load_chain_config
from .connection import ChainConnection, ConnectionRegistry
from .logging_config import setup_logger
from .orchestrator import LiquidationOrchestrator, Web3Submitter
from .position_store import PositionStore
from .reserve_reader import AaveReserveReader
from .scanner import PositionScanner

logger = setup_logger()


class ChainManager:
    """Wires one connection, scanner and orchestrator per chain around a shared position store"""

    def __init__(
        self,
        chain_ids: List[int],
        notify: bool = True,
        execute_liquidation: bool = True,
        config_path: Optional[str] = None,
    ):
        self.chain_ids = chain_ids
        self.notify = notify
        self.execute_liquidation = execute_liquidation
        self.config_path = config_path
        self.running = False

        self.configs: Dict[int, ChainConfig] = {
            chain_id: load_chain_config(chain_id, config_path) for chain_id in chain_ids
        }
        self.scanners: Dict[int, PositionScanner] = {}
        self.orchestrators: Dict[int, LiquidationOrchestrator] = {}
        self.store = PositionStore()
        self.registry = ConnectionRegistry()
        history = max((config.settings.activity_history for config in self.configs.values()), default=500)
        self.activity = ActivityLog(history=history, notify=notify, configs=self.configs)
        self._stopped = threading.Event()

        self._initialize_chains()

    def _initialize_chains(self):
        """Initialize components for each chain"""
        logger.info("Initializing chains: %s", self.chain_ids)
        for chain_id in self.chain_ids:
            config = self.configs[chain_id]

            connection = self.registry.register(ChainConnection(config.endpoint, config.settings, self.activity.record))

            orchestrator = None
            if self.execute_liquidation:
                orchestrator = LiquidationOrchestrator(
                    chain_id,
                    config.settings,
                    Web3Submitter(config),
                    account=config.LIQUIDATOR_EOA,
                    liquidator_address=config.endpoint.liquidator_address,
                    activity=self.activity.record,
                )
                self.orchestrators[chain_id] = orchestrator

            scanner = PositionScanner(
                chain_id,
                AaveReserveReader(config),
                self.store,
                config.settings,
                activity=self.activity,
                orchestrator=orchestrator,
            )
            scanner.subscribe(connection, config.endpoint.pool_address)
            self.scanners[chain_id] = scanner

            self.store.load_state(config.SAVE_STATE_PATH)

    def start(self):
        """Start every chain pipeline, then save state periodically until stopped"""
        self.running = True
        for chain_id in self.chain_ids:
            scanner = self.scanners[chain_id]
            scanner.start()
            if chain_id in self.orchestrators:
                self.orchestrators[chain_id].start()

            known_users = {p.user for p in self.store.all_positions(chain_id)}
            scanner.track_users(list(known_users) + self.configs[chain_id].TRACKED_USERS)

        for chain_id, connected in self.registry.connect_all().items():
            if not connected:
                logger.warning("ChainManager: chain %s started without a stream, reconnect scheduled", chain_id)

        self.periodic_save()

    def periodic_save(self):
        save_interval = min(config.settings.save_interval for config in self.configs.values())
        while not self._stopped.wait(save_interval):
            self.save_state()

    def save_state(self):
        for chain_id, config in self.configs.items():
            self.store.save_state(config.SAVE_STATE_PATH, chain_id)

    def stop(self):
        """Stop all chain instances"""
        self.running = False
        self._stopped.set()
        self.registry.disconnect_all()
        for scanner in self.scanners.values():
            scanner.stop()
        for orchestrator in self.orchestrators.values():
            orchestrator.stop()
        self.save_state()
