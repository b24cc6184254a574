"""
Activity log sink. Every observable pipeline event passes through ``ActivityLog.record``.
"""

import logging
import threading
from collections import deque
from typing import Deque, Dict, List, Optional

from .config_loader import ChainConfig
from .logging_config import setup_logger
from .models import ActivityEvent
from .notifications import (
    post_error_notification,
    post_reconnect_exhausted_notification,
    post_settlement_notification,
)

logger = setup_logger()

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


class ActivityLog:
    """
    Logs events, keeps a bounded history for the status API and forwards
    terminal events to notifications when enabled.
    """

    def __init__(self, history: int = 500, notify: bool = False, configs: Optional[Dict[int, ChainConfig]] = None):
        self._events: Deque[ActivityEvent] = deque(maxlen=history)
        self._lock = threading.Lock()
        self.notify = notify
        self.configs = configs if configs is not None else {}

    def record(self, event: ActivityEvent) -> None:
        logger.log(LEVELS.get(event.level, logging.INFO), "[%s] %s: %s", event.chain_id, event.kind, event.message)
        with self._lock:
            self._events.append(event)

        if self.notify:
            self._forward(event)

    def _forward(self, event: ActivityEvent) -> None:
        config = self.configs.get(event.chain_id)
        if config is None or not config.NOTIFICATION_URL:
            return
        try:
            if event.kind == "settlement":
                post_settlement_notification(event, config)
            elif event.kind == "reconnect_exhausted":
                post_reconnect_exhausted_notification(event, config)
            elif event.level in ("error", "critical"):
                post_error_notification(event.message, config)
        except Exception as ex:
            logger.error("ActivityLog: failed to post notification for %s: %s", event.kind, ex, exc_info=True)

    def recent(self, limit: int = 100, chain_id: Optional[int] = None, kind: Optional[str] = None) -> List[ActivityEvent]:
        """Most recent events first."""
        with self._lock:
            events = list(self._events)
        events.reverse()
        if chain_id is not None:
            events = [e for e in events if e.chain_id == chain_id]
        if kind is not None:
            events = [e for e in events if e.kind == kind]
        return events[:limit]
