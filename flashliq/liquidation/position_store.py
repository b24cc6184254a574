"""
Thread-safe store of the latest known position per (chain, user, collateral, debt).
"""

import json
import os
import threading
import time
from decimal import Decimal
from typing import Dict, List, Optional

from .logging_config import setup_logger
from .models import PositionKey, UserPosition

logger = setup_logger()

STATE_VERSION = 1


class PositionStore:
    """
    Shared by every chain's scanner. Writes are last-write-wins by the
    position's source timestamp, so a stale read that lands late never
    replaces newer data.
    """

    def __init__(self):
        self._positions: Dict[PositionKey, UserPosition] = {}
        self._lock = threading.Lock()

    def upsert_position(self, position: UserPosition) -> bool:
        """Store ``position``. Returns False if a newer record for the key is already held."""
        key = position.key
        with self._lock:
            current = self._positions.get(key)
            if current is not None and current.updated_at > position.updated_at:
                logger.debug(
                    "PositionStore: Ignoring stale update for %s (%s < %s)",
                    key, position.updated_at, current.updated_at,
                )
                return False
            self._positions[key] = position
            return True

    def get(self, key: PositionKey) -> Optional[UserPosition]:
        with self._lock:
            return self._positions.get(key)

    def remove(self, key: PositionKey) -> Optional[UserPosition]:
        with self._lock:
            return self._positions.pop(key, None)

    def remove_user(self, chain_id: int, user: str) -> int:
        """Drop every position of a user on a chain. Returns the number removed."""
        user = user.lower()
        with self._lock:
            keys = [k for k in self._positions if k[0] == chain_id and k[1] == user]
            for key in keys:
                del self._positions[key]
        return len(keys)

    def all_positions(self, chain_id: Optional[int] = None) -> List[UserPosition]:
        with self._lock:
            positions = list(self._positions.values())
        if chain_id is not None:
            positions = [p for p in positions if p.chain_id == chain_id]
        return positions

    def get_positions_in_range(self, chain_id: int, min_hf: Decimal, max_hf: Decimal) -> List[UserPosition]:
        """Positions of a chain with min_hf <= HF <= max_hf, lowest HF first."""
        positions = [p for p in self.all_positions(chain_id) if min_hf <= p.health_factor <= max_hf]
        return sorted(positions, key=lambda p: p.health_factor)

    def __len__(self) -> int:
        with self._lock:
            return len(self._positions)

    def save_state(self, path: str, chain_id: Optional[int] = None) -> None:
        try:
            state = {
                "version": STATE_VERSION,
                "positions": [p.to_dict() for p in self.all_positions(chain_id)],
                "saved_at": time.time(),
            }
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(state, f)

            logger.info(
                "PositionStore: Saved %s positions to %s at %s",
                len(state["positions"]), path, time.strftime("%Y-%m-%d %H:%M:%S", time.localtime()),
            )
        except (OSError, TypeError) as ex:
            logger.error("PositionStore: Failed to save state: %s", ex, exc_info=True)

    def load_state(self, path: str) -> int:
        """Load a snapshot written by save_state. Returns the number of positions accepted."""
        if not os.path.exists(path):
            logger.info("PositionStore: No saved state found at %s.", path)
            return 0

        try:
            with open(path, "r", encoding="utf-8") as f:
                state = json.load(f)
        except (json.JSONDecodeError, IOError) as ex:
            logger.error("PositionStore: Corrupt state file, starting fresh: %s", ex)
            return 0

        state_version = state.get("version")
        if state_version != STATE_VERSION:
            logger.warning("PositionStore: State version mismatch (got %s, expected %s)", state_version, STATE_VERSION)

        loaded = 0
        for data in state.get("positions", []):
            try:
                if self.upsert_position(UserPosition.from_dict(data)):
                    loaded += 1
            except (KeyError, ValueError, ArithmeticError) as ex:
                logger.warning("PositionStore: Skipping malformed saved position %s: %s", data, ex)

        logger.info("PositionStore: Loaded %s positions from %s", loaded, path)
        return loaded
