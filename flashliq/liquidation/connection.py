"""
Per-chain streaming JSON-RPC connection with subscription replay,
a liveness probe and exponential-backoff reconnection.
"""

import itertools
import json
import threading
import time
from dataclasses import dataclass, replace
from functools import partial
from typing import Any, Callable, Dict, Iterator, List, Optional

import websocket

from .config_loader import PipelineSettings
from .exceptions import ConfigError, ConnectError
from .logging_config import setup_logger
from .models import ActivityEvent, ChainEndpoint, ConnectionState, ConnectionStatus

logger = setup_logger()

EventSink = Callable[[ActivityEvent], None]
NotificationCallback = Callable[[Any], None]


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay before reconnect ``attempt`` (1-based): base, 2*base, 4*base, ..."""
    if attempt < 1:
        raise ValueError("attempt is 1-based")
    return base_delay * 2 ** (attempt - 1)


def default_transport_factory(url: str, on_open, on_message, on_error, on_close) -> websocket.WebSocketApp:
    return websocket.WebSocketApp(url, on_open=on_open, on_message=on_message, on_error=on_error, on_close=on_close)


def default_timer_factory(delay: float, function: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, function)
    timer.daemon = True
    return timer


@dataclass(frozen=True)
class _Registration:
    key: str
    params: List[Any]
    callback: NotificationCallback


class ChainConnection:
    """
    Owns the websocket of one chain. Every access to the transport and to
    ``ConnectionState`` happens under ``self._lock``; callbacks from a
    transport that has since been replaced are ignored by generation number.
    """

    def __init__(
        self,
        endpoint: ChainEndpoint,
        settings: PipelineSettings,
        event_sink: Optional[EventSink] = None,
        transport_factory: Optional[Callable[..., Any]] = None,
        timer_factory: Optional[Callable[[float, Callable[[], None]], Any]] = None,
    ):
        self.endpoint = endpoint
        self.chain_id = endpoint.chain_id
        self.settings = settings
        self._event_sink = event_sink
        self._transport_factory = transport_factory or default_transport_factory
        self._timer_factory = timer_factory or default_timer_factory

        self._lock = threading.RLock()
        self._state = ConnectionState(chain_id=self.chain_id)
        self._transport = None
        self._generation = 0
        self._settled = threading.Event()

        self._request_ids = itertools.count(1)
        self._registrations: Dict[str, _Registration] = {}
        self._pending_subscribes: Dict[int, str] = {}

        self._reconnect_timer = None
        self._probe_timer = None
        self._probe_deadline = None
        self._probe_id: Optional[int] = None

    def __repr__(self) -> str:
        return f"ChainConnection({self.endpoint.name}, {self._state.status.value})"

    def state(self) -> ConnectionState:
        with self._lock:
            return replace(self._state, subscription_ids=dict(self._state.subscription_ids))

    @property
    def connected(self) -> bool:
        with self._lock:
            return self._state.connected

    def connect(self) -> None:
        """
        Open the stream. No-op while already connected or connecting.

        Raises:
            ConnectError: if the handshake fails or times out. A reconnect is
            scheduled in that case.
        """
        with self._lock:
            if self._state.status in (ConnectionStatus.CONNECTED, ConnectionStatus.CONNECTING):
                return
            if self._state.status is ConnectionStatus.EXHAUSTED:
                logger.info("ChainConnection %s: manual reconnect after exhaustion, resetting attempts", self.endpoint.name)
                self._state.reconnect_attempts = 0
            self._cancel_timer("_reconnect_timer")

            self._state.status = ConnectionStatus.CONNECTING
            self._generation += 1
            generation = self._generation
            self._settled.clear()
            self._transport = self._transport_factory(
                self.endpoint.ws_url,
                on_open=partial(self._on_open, generation),
                on_message=partial(self._on_message, generation),
                on_error=partial(self._on_error, generation),
                on_close=partial(self._on_close, generation),
            )
            transport = self._transport

        logger.info("ChainConnection %s: connecting to stream", self.endpoint.name)
        threading.Thread(
            target=self._run_transport,
            args=(transport, generation),
            name=f"ws-{self.endpoint.name}",
            daemon=True,
        ).start()

        if not self._settled.wait(self.settings.connect_timeout):
            self._handle_loss(generation, "handshake timed out")

        with self._lock:
            if generation == self._generation and self._state.connected:
                return
        raise ConnectError(f"Could not connect to {self.endpoint.name} stream")

    def disconnect(self) -> None:
        """Close the stream and cancel any scheduled reconnect. No reconnect follows."""
        with self._lock:
            self._cancel_timer("_reconnect_timer")
            self._cancel_probe()
            self._state.status = ConnectionStatus.CLOSING
            self._generation += 1
            transport, self._transport = self._transport, None
            self._state.subscription_ids.clear()
            self._pending_subscribes.clear()

        if transport is not None:
            transport.close()

        with self._lock:
            self._state.status = ConnectionStatus.DISCONNECTED
            self._settled.set()
        self._emit("disconnected", f"{self.endpoint.name} stream closed by request")

    def subscribe_new_blocks(self, callback: NotificationCallback) -> str:
        return self._register("newHeads", ["newHeads"], callback)

    def subscribe_logs(self, address: str, topics: List[Any], callback: NotificationCallback) -> str:
        key = f"logs:{address.lower()}:{json.dumps(topics)}"
        return self._register(key, ["logs", {"address": address, "topics": topics}], callback)

    def _register(self, key: str, params: List[Any], callback: NotificationCallback) -> str:
        with self._lock:
            self._registrations[key] = _Registration(key, params, callback)
            if self._state.connected:
                self._send_subscribe(self._registrations[key])
        return key

    def schedule_reconnect(self) -> Optional[float]:
        """
        Arm the next reconnect attempt. Returns the delay, or None when no
        attempt is scheduled (already pending, or attempts exhausted).
        """
        with self._lock:
            if self._state.status is not ConnectionStatus.DISCONNECTED or self._reconnect_timer is not None:
                return None

            if self._state.reconnect_attempts >= self.settings.max_reconnect_attempts:
                self._state.status = ConnectionStatus.EXHAUSTED
                attempts = self._state.reconnect_attempts
                delay = None
            else:
                self._state.reconnect_attempts += 1
                attempts = self._state.reconnect_attempts
                delay = backoff_delay(attempts, self.settings.reconnect_base_delay)
                self._reconnect_timer = self._start_timer(delay, self._reconnect)

        if delay is None:
            logger.error("ChainConnection %s: giving up after %s reconnect attempts", self.endpoint.name, attempts)
            self._emit(
                "reconnect_exhausted",
                f"{self.endpoint.name} stream down after {attempts} reconnect attempts",
                level="error",
                attempts=attempts,
            )
            return None

        logger.info(
            "ChainConnection %s: reconnect attempt %s/%s in %ss",
            self.endpoint.name, attempts, self.settings.max_reconnect_attempts, delay,
        )
        self._emit("reconnect_scheduled", f"{self.endpoint.name} reconnecting in {delay}s", attempt=attempts, delay=delay)
        return delay

    def _reconnect(self) -> None:
        with self._lock:
            self._reconnect_timer = None
            if self._state.status is not ConnectionStatus.DISCONNECTED:
                return
        try:
            self.connect()
        except ConnectError as ex:
            logger.warning("ChainConnection %s: reconnect failed: %s", self.endpoint.name, ex)

    def _run_transport(self, transport: Any, generation: int) -> None:
        try:
            transport.run_forever()
        except (websocket.WebSocketException, OSError) as ex:
            logger.warning("ChainConnection %s: transport loop error: %s", self.endpoint.name, ex)
        self._handle_loss(generation, "transport loop exited")

    def _on_open(self, generation: int, _ws: Any) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._state.status = ConnectionStatus.CONNECTED
            self._state.reconnect_attempts = 0
            self._state.last_heartbeat = time.time()
            self._state.subscription_ids.clear()
            self._pending_subscribes.clear()
            for registration in self._registrations.values():
                self._send_subscribe(registration)
            self._arm_probe()

        logger.info("ChainConnection %s: connected", self.endpoint.name)
        self._emit("connected", f"{self.endpoint.name} stream connected")
        self._settled.set()

    def _on_message(self, generation: int, _ws: Any, message: Any) -> None:
        if generation != self._generation:
            return
        try:
            frame = json.loads(message)
        except (TypeError, ValueError):
            logger.warning("ChainConnection %s: dropping malformed frame: %.200r", self.endpoint.name, message)
            return
        if not isinstance(frame, dict):
            logger.warning("ChainConnection %s: dropping non-object frame: %.200r", self.endpoint.name, message)
            return

        if frame.get("method") == "eth_subscription":
            self._route_notification(frame)
        elif "id" in frame:
            self._handle_response(generation, frame)
        else:
            logger.warning("ChainConnection %s: dropping unroutable frame: %.200r", self.endpoint.name, message)

    def _route_notification(self, frame: Dict[str, Any]) -> None:
        params = frame.get("params")
        if not isinstance(params, dict):
            logger.warning("ChainConnection %s: notification without params dropped", self.endpoint.name)
            return
        with self._lock:
            key = self._state.subscription_ids.get(params.get("subscription"))
            registration = self._registrations.get(key) if key else None
        if registration is None:
            logger.warning(
                "ChainConnection %s: notification for unknown subscription %s dropped",
                self.endpoint.name, params.get("subscription"),
            )
            return
        try:
            registration.callback(params.get("result"))
        except Exception as ex:
            logger.error(
                "ChainConnection %s: subscriber for %s raised: %s", self.endpoint.name, key, ex, exc_info=True
            )

    def _handle_response(self, generation: int, frame: Dict[str, Any]) -> None:
        request_id = frame.get("id")
        with self._lock:
            if request_id is not None and request_id == self._probe_id:
                self._probe_id = None
                self._cancel_timer("_probe_deadline")
                if "error" in frame:
                    error = frame["error"]
                else:
                    self._state.last_heartbeat = time.time()
                    self._arm_probe()
                    return
            else:
                error = None
                key = self._pending_subscribes.pop(request_id, None)
                if key is None:
                    logger.warning("ChainConnection %s: response to unknown request %s dropped", self.endpoint.name, request_id)
                    return
                if "error" in frame or not isinstance(frame.get("result"), str):
                    logger.warning(
                        "ChainConnection %s: subscribe %s rejected: %s", self.endpoint.name, key, frame.get("error")
                    )
                    return
                self._state.subscription_ids[frame["result"]] = key
                logger.info("ChainConnection %s: subscribed %s as %s", self.endpoint.name, key, frame["result"])
                return

        self._handle_loss(generation, f"liveness probe failed: {error}")

    def _on_error(self, generation: int, _ws: Any, error: Any) -> None:
        logger.warning("ChainConnection %s: transport error: %s", self.endpoint.name, error)
        self._handle_loss(generation, f"transport error: {error}")

    def _on_close(self, generation: int, _ws: Any, status_code: Any = None, message: Any = None) -> None:
        self._handle_loss(generation, f"closed ({status_code}) {message or ''}".strip())

    def _handle_loss(self, generation: int, reason: str) -> None:
        with self._lock:
            if generation != self._generation or self._state.status not in (
                ConnectionStatus.CONNECTING,
                ConnectionStatus.CONNECTED,
            ):
                return
            self._state.status = ConnectionStatus.DISCONNECTED
            self._cancel_probe()
            self._state.subscription_ids.clear()
            self._pending_subscribes.clear()
            transport, self._transport = self._transport, None

        if transport is not None:
            transport.close()

        logger.warning("ChainConnection %s: disconnected: %s", self.endpoint.name, reason)
        self._emit("disconnected", f"{self.endpoint.name} stream lost: {reason}", level="warning", reason=reason)
        self.schedule_reconnect()
        self._settled.set()

    def _send_subscribe(self, registration: _Registration) -> None:
        request_id = next(self._request_ids)
        self._pending_subscribes[request_id] = registration.key
        self._send({"jsonrpc": "2.0", "id": request_id, "method": "eth_subscribe", "params": registration.params})

    def _send(self, payload: Dict[str, Any]) -> bool:
        if self._transport is None:
            return False
        try:
            self._transport.send(json.dumps(payload))
        except (websocket.WebSocketException, OSError) as ex:
            logger.warning("ChainConnection %s: send failed: %s", self.endpoint.name, ex)
            return False
        return True

    def _arm_probe(self) -> None:
        self._cancel_probe()
        self._probe_timer = self._start_timer(
            self.settings.heartbeat_interval, partial(self._send_probe, self._generation)
        )

    def _send_probe(self, generation: int) -> None:
        with self._lock:
            self._probe_timer = None
            if generation != self._generation or not self._state.connected:
                return
            probe_id = next(self._request_ids)
            self._probe_id = probe_id
            sent = self._send({"jsonrpc": "2.0", "id": probe_id, "method": "eth_blockNumber", "params": []})
            if sent:
                self._probe_deadline = self._start_timer(
                    self.settings.probe_timeout, partial(self._probe_expired, generation, probe_id)
                )
        if not sent:
            self._handle_loss(generation, "liveness probe could not be sent")

    def _probe_expired(self, generation: int, probe_id: int) -> None:
        with self._lock:
            if probe_id != self._probe_id:
                return
            self._probe_id = None
            self._probe_deadline = None
        self._handle_loss(generation, f"no probe response within {self.settings.probe_timeout}s")

    def _cancel_probe(self) -> None:
        self._probe_id = None
        self._cancel_timer("_probe_timer")
        self._cancel_timer("_probe_deadline")

    def _start_timer(self, delay: float, function: Callable[[], None]) -> Any:
        timer = self._timer_factory(delay, function)
        timer.start()
        return timer

    def _cancel_timer(self, attribute: str) -> None:
        timer = getattr(self, attribute)
        if timer is not None:
            timer.cancel()
            setattr(self, attribute, None)

    def _emit(self, kind: str, message: str, level: str = "info", **data: Any) -> None:
        if self._event_sink is None:
            return
        self._event_sink(ActivityEvent(chain_id=self.chain_id, kind=kind, message=message, level=level, data=data))


class ConnectionRegistry:
    """One ChainConnection per chain id, created at startup and shared by reference."""

    def __init__(self):
        self._connections: Dict[int, ChainConnection] = {}

    def register(self, connection: ChainConnection) -> ChainConnection:
        if connection.chain_id in self._connections:
            raise ConfigError(f"Chain {connection.chain_id} already has a connection")
        self._connections[connection.chain_id] = connection
        return connection

    def get(self, chain_id: int) -> ChainConnection:
        try:
            return self._connections[chain_id]
        except KeyError as exc:
            raise KeyError(f"No connection registered for chain {chain_id}") from exc

    def __contains__(self, chain_id: int) -> bool:
        return chain_id in self._connections

    def __iter__(self) -> Iterator[ChainConnection]:
        return iter(list(self._connections.values()))

    def __len__(self) -> int:
        return len(self._connections)

    def connect_all(self) -> Dict[int, bool]:
        results = {}
        for connection in self:
            try:
                connection.connect()
                results[connection.chain_id] = True
            except ConnectError as ex:
                logger.error("ConnectionRegistry: %s", ex)
                results[connection.chain_id] = False
        return results

    def disconnect_all(self) -> None:
        for connection in self:
            connection.disconnect()

    def statuses(self) -> Dict[int, ConnectionState]:
        return {connection.chain_id: connection.state() for connection in self}
