"""
One MQTT session bound to one broker config.

paho runs the socket on its own network thread and handles reconnects with
a fixed delay. Its callbacks do nothing but hand events to the asyncio loop;
a single consumer task per connection then applies them in arrival order.
That keeps the dedup memory, stats and store calls on the loop thread.

State machine:

    DISCONNECTED -> CONNECTING -> CONNECTED -> (OFFLINE | ERROR)
                 -> RECONNECTING -> CONNECTED ...

DISCONNECTED is reached again only through stop(), and is final.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import re
import uuid
from typing import Any, Callable

import paho.mqtt.client as mqtt

from .decoder import decode_message
from .dedup import PositionDeduplicator
from .exceptions import StoreError, ValidationError
from .models import BrokerConfig, Position
from .store.base import ConfigStore

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY = 5  # seconds
KEEPALIVE = 60  # seconds


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    OFFLINE = "offline"
    ERROR = "error"
    RECONNECTING = "reconnecting"


_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTED, ConnectionState.OFFLINE,
        ConnectionState.ERROR, ConnectionState.DISCONNECTED,
    },
    ConnectionState.CONNECTED: {
        ConnectionState.OFFLINE, ConnectionState.ERROR, ConnectionState.DISCONNECTED,
    },
    ConnectionState.OFFLINE: {ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED},
    ConnectionState.ERROR: {ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED},
    ConnectionState.RECONNECTING: {
        ConnectionState.CONNECTED, ConnectionState.OFFLINE,
        ConnectionState.ERROR, ConnectionState.DISCONNECTED,
    },
}


def create_mqtt_client(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
        clean_session=True,
    )


def make_client_id(name: str) -> str:
    """Unique per process, so two sessions never collide on the broker."""
    slug = re.sub(r"\s+", "-", name.strip()) or "broker"
    return f"meshtastic-bridge-{slug}-{uuid.uuid4().hex[:6]}"


class BrokerConnection:
    """
    Subscribes to one broker and persists the positions it delivers.

    Message pipeline: decode -> device allow-list -> dedup -> store insert
    (tagged with the broker id) -> dedup memory update.
    """

    def __init__(
        self,
        config: BrokerConfig,
        store: ConfigStore,
        dedup: PositionDeduplicator,
        channel_key: bytes | None = None,
        reconnect_delay: int = DEFAULT_RECONNECT_DELAY,
        client_factory: Callable[[str], Any] = create_mqtt_client,
    ) -> None:
        self.config = config
        self.store = store
        self.dedup = dedup
        self.channel_key = channel_key
        self.reconnect_delay = reconnect_delay
        self.client_id = make_client_id(config.name)
        self.state = ConnectionState.DISCONNECTED

        self._client_factory = client_factory
        self._client = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._consumer: asyncio.Task | None = None
        self._stopped = False

        self.stats = {
            "messages": 0,
            "positions": 0,
            "filtered": 0,
            "suppressed": 0,
            "stored": 0,
            "rejected": 0,
            "store_errors": 0,
            "connects": 0,
            "disconnects": 0,
        }

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def broker_id(self) -> str | None:
        return self.config.id

    @property
    def stopped(self) -> bool:
        return self._stopped

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Open the session. Returns immediately; connecting happens in the background."""
        if self._stopped:
            raise RuntimeError(f"Connection {self.name} was stopped and cannot be restarted")
        if self._client is not None:
            return

        self._loop = asyncio.get_running_loop()
        client = self._client_factory(self.client_id)
        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)
        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message
        client.reconnect_delay_set(min_delay=self.reconnect_delay, max_delay=self.reconnect_delay)
        self._client = client

        self._consumer = asyncio.create_task(self._consume(), name=f"mqtt-{self.client_id}")
        self._set_state(ConnectionState.CONNECTING)
        logger.info(
            "CONNECTING | broker=%s | url=mqtt://%s:%s | topic=%s | client_id=%s",
            self.name, self.config.broker, self.config.port, self.config.topic, self.client_id,
        )
        client.connect_async(self.config.broker, self.config.port, keepalive=KEEPALIVE)
        client.loop_start()

    async def stop(self) -> None:
        """Tear the session down. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        was_connected = self.state is ConnectionState.CONNECTED
        self._set_state(ConnectionState.DISCONNECTED)

        client, self._client = self._client, None
        try:
            if client is not None:
                if was_connected:
                    client.unsubscribe(self.config.topic)
                client.disconnect()
                # loop_stop joins paho's network thread
                await asyncio.to_thread(client.loop_stop)
        finally:
            consumer, self._consumer = self._consumer, None
            if consumer is not None:
                consumer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await consumer

        logger.info("STOPPED | broker=%s | id=%s", self.name, self.broker_id)

    # ── State machine ────────────────────────────────────────────────

    def _set_state(self, new_state: ConnectionState) -> bool:
        if new_state is self.state:
            return False
        if new_state not in _TRANSITIONS[self.state]:
            logger.warning(
                "ILLEGAL_STATE_TRANSITION | broker=%s | from=%s | to=%s",
                self.name, self.state.value, new_state.value,
            )
            return False
        logger.debug("STATE | broker=%s | %s -> %s", self.name, self.state.value, new_state.value)
        self.state = new_state
        return True

    # ── paho callbacks (network thread) ──────────────────────────────

    def _post(self, handler: Callable, *args: Any) -> None:
        loop = self._loop
        if self._stopped or loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._events.put_nowait, (handler, args))
        except RuntimeError:
            # loop closed between the check and the call
            logger.debug("EVENT_DROPPED | broker=%s | handler=%s", self.name, handler.__name__)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        self._post(self.handle_connect, not reason_code.is_failure, str(reason_code))

    def _on_connect_fail(self, client, userdata):
        self._post(self.handle_connect_failure, "connection attempt failed")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self._post(self.handle_disconnect, str(reason_code))

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        self._post(self.handle_subscribe, [str(rc) for rc in reason_code_list if rc.is_failure])

    def _on_message(self, client, userdata, message):
        self._post(self.handle_message, message.topic, bytes(message.payload))

    async def _consume(self) -> None:
        while True:
            handler, args = await self._events.get()
            try:
                result = handler(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("EVENT_FAILED | broker=%s | handler=%s", self.name, handler.__name__)

    # ── Event handlers (event loop) ──────────────────────────────────

    def handle_connect(self, success: bool, reason: str) -> None:
        if self._stopped:
            return
        if not success:
            logger.error("CONNECT_REFUSED | broker=%s | reason=%s | retry_in=%ss",
                         self.name, reason, self.reconnect_delay)
            self._set_state(ConnectionState.ERROR)
            self._set_state(ConnectionState.RECONNECTING)
            return

        self._set_state(ConnectionState.CONNECTED)
        self.stats["connects"] += 1
        logger.info("CONNECTED | broker=%s | subscribing=%s", self.name, self.config.topic)
        self._subscribe()

    def handle_connect_failure(self, reason: str) -> None:
        if self._stopped:
            return
        logger.error("CONNECT_FAILED | broker=%s | reason=%s | retry_in=%ss",
                     self.name, reason, self.reconnect_delay)
        self._set_state(ConnectionState.ERROR)
        self._set_state(ConnectionState.RECONNECTING)

    def handle_disconnect(self, reason: str) -> None:
        if self._stopped:
            return
        self.stats["disconnects"] += 1
        logger.warning("OFFLINE | broker=%s | reason=%s | retry_in=%ss",
                       self.name, reason, self.reconnect_delay)
        self._set_state(ConnectionState.OFFLINE)
        self._set_state(ConnectionState.RECONNECTING)

    def handle_subscribe(self, failures: list[str]) -> None:
        if failures:
            logger.error("SUBSCRIBE_REJECTED | broker=%s | topic=%s | reasons=%s",
                         self.name, self.config.topic, ",".join(failures))
            return
        logger.info("SUBSCRIBED | broker=%s | topic=%s", self.name, self.config.topic)
        if self.config.node_ids:
            logger.info("NODE_FILTER | broker=%s | nodes=%s", self.name, ",".join(self.config.node_ids))

    def _subscribe(self) -> None:
        # A failed subscribe leaves the session open; it just receives nothing.
        try:
            result, _mid = self._client.subscribe(self.config.topic)
        except ValueError as e:
            logger.error("SUBSCRIBE_FAILED | broker=%s | topic=%s | error=%s",
                         self.name, self.config.topic, e)
            return
        if result != mqtt.MQTT_ERR_SUCCESS:
            logger.error("SUBSCRIBE_FAILED | broker=%s | topic=%s | error=%s",
                         self.name, self.config.topic, mqtt.error_string(result))

    async def handle_message(self, topic: str, payload: bytes) -> None:
        if self._stopped or self.state is not ConnectionState.CONNECTED:
            return
        self.stats["messages"] += 1

        report = decode_message(topic, payload, self.channel_key)
        if report is None:
            logger.debug("NOT_A_POSITION | broker=%s | topic=%s | bytes=%d",
                         self.name, topic, len(payload))
            return
        self.stats["positions"] += 1

        if not self.config.accepts(report.device_id):
            self.stats["filtered"] += 1
            logger.debug("NODE_FILTERED | broker=%s | node=%s", self.name, report.device_id)
            return

        if self.dedup.should_suppress(
            report.device_id, report.latitude, report.longitude, report.timestamp,
        ):
            self.stats["suppressed"] += 1
            logger.debug("DUPLICATE_SKIPPED | broker=%s | node=%s | lat=%s | lon=%s",
                         self.name, report.device_id, report.latitude, report.longitude)
            return

        position = Position(
            device_id=report.device_id,
            latitude=report.latitude,
            longitude=report.longitude,
            timestamp=report.timestamp,
            altitude=report.altitude,
            accuracy=report.accuracy,
            battery_level=report.battery_level,
            raw_payload=report.raw,
            broker_id=self.broker_id,
        )
        try:
            position_id = await self.store.insert_position(position)
        except ValidationError as e:
            self.stats["rejected"] += 1
            logger.warning("POSITION_REJECTED | broker=%s | node=%s | error=%s",
                           self.name, report.device_id, e)
            return
        except StoreError as e:
            # No local buffer: this fix is lost.
            self.stats["store_errors"] += 1
            logger.error("STORE_WRITE_FAILED | broker=%s | node=%s | error=%s",
                         self.name, report.device_id, e)
            return

        self.dedup.record(report.device_id, report.latitude, report.longitude, report.timestamp)
        self.stats["stored"] += 1
        logger.info(
            "POSITION_STORED | broker=%s | node=%s | lat=%.6f | lon=%.6f | ts=%s | source=%s | id=%s",
            self.name, report.device_id, report.latitude, report.longitude,
            report.timestamp, report.encoding.value, position_id,
        )
