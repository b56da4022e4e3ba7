"""
Keeps the set of live broker connections in line with the enabled configs.

Each tick fetches the enabled configs, stops connections whose config is
gone or disabled, and starts connections for configs that have none.
Connections that already exist are never touched, so editing a config in
place takes effect only once its connection is cycled (disable, then enable).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Callable

from .connection import DEFAULT_RECONNECT_DELAY, BrokerConnection
from .dedup import PositionDeduplicator
from .models import BrokerConfig
from .store.base import ConfigStore

logger = logging.getLogger(__name__)

DEFAULT_SYNC_INTERVAL = 30  # seconds


@dataclass
class ReconcileResult:
    started: list[str] = field(default_factory=list)
    stopped: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.started or self.stopped)


class ConnectionSupervisor:

    def __init__(
        self,
        store: ConfigStore,
        dedup: PositionDeduplicator,
        interval: float = DEFAULT_SYNC_INTERVAL,
        channel_key: bytes | None = None,
        reconnect_delay: int = DEFAULT_RECONNECT_DELAY,
        connection_factory: Callable[..., BrokerConnection] | None = None,
    ) -> None:
        self.store = store
        self.dedup = dedup
        self.interval = interval
        self.channel_key = channel_key
        self.reconnect_delay = reconnect_delay
        self.connection_factory = connection_factory or BrokerConnection
        self.connections: dict[str, BrokerConnection] = {}
        self._timer: asyncio.Task | None = None
        self._closed = False

    def _create_connection(self, config: BrokerConfig) -> BrokerConnection:
        return self.connection_factory(
            config,
            self.store,
            self.dedup,
            channel_key=self.channel_key,
            reconnect_delay=self.reconnect_delay,
        )

    async def reconcile(self) -> ReconcileResult:
        """One reconciliation pass. Store failures are logged, never raised."""
        result = ReconcileResult()
        if self._closed:
            return result

        try:
            enabled = await self.store.list_enabled_broker_configs()
        except Exception as e:
            # Never stop running connections because the list is unavailable
            logger.error("SYNC_FAILED | error=%s | retry_in=%ss", e, self.interval)
            return result

        wanted = {config.id for config in enabled}

        for broker_id in [bid for bid in self.connections if bid not in wanted]:
            if await self.stop_connection(broker_id):
                result.stopped.append(broker_id)

        for summary in enabled:
            if summary.id in self.connections:
                continue
            if await self._start_connection(summary):
                result.started.append(summary.id)

        if result.changed:
            logger.info("SYNC | started=%d | stopped=%d | active=%d",
                        len(result.started), len(result.stopped), len(self.connections))
        return result

    async def _start_connection(self, summary: BrokerConfig) -> bool:
        try:
            config = await self.store.get_broker_config_with_secret(summary.id)
        except Exception as e:
            logger.error("BROKER_FETCH_FAILED | broker=%s | id=%s | error=%s",
                         summary.name, summary.id, e)
            return False
        if config is None:
            # Deleted between the list and the fetch
            logger.warning("BROKER_VANISHED | broker=%s | id=%s", summary.name, summary.id)
            return False

        connection = self._create_connection(config)
        self.connections[config.id] = connection
        try:
            await connection.start()
        except Exception as e:
            logger.error("CONNECTION_START_FAILED | broker=%s | id=%s | error=%s",
                         config.name, config.id, e)
            self.connections.pop(config.id, None)
            await connection.stop()
            return False
        return True

    async def stop_connection(self, broker_id: str) -> bool:
        """Stop and forget one connection. Returns False if it was not active."""
        connection = self.connections.pop(broker_id, None)
        if connection is None:
            return False
        logger.info("STOPPING | broker=%s | id=%s", connection.name, broker_id)
        await connection.stop()
        return True

    # ── Timer ────────────────────────────────────────────────────────

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.reconcile()

    def start(self) -> None:
        """Schedule the periodic reconcile; the first tick is one interval away."""
        if self._timer is None and not self._closed:
            self._timer = asyncio.create_task(self._run(), name="broker-sync")

    async def stop_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await timer

    async def shutdown(self) -> None:
        """Cancel the timer, then stop every connection."""
        self._closed = True
        await self.stop_timer()
        for broker_id in list(self.connections):
            await self.stop_connection(broker_id)
        logger.info("SUPERVISOR_STOPPED")
