#!/usr/bin/env python3
"""
Meshtastic Position Bridge

Subscribes to every enabled broker config in the config store, decodes
Meshtastic position reports (JSON and protobuf envelopes, encrypted or not),
drops redundant fixes and writes the rest back to the store.

BRIDGE_MODE=multi (default) follows the broker configs in the store and
re-syncs every SYNC_INTERVAL seconds. BRIDGE_MODE=single connects to the one
broker given by MQTT_BROKER / MQTT_TOPIC instead.
"""

import asyncio
import logging
import signal
import sys
import time
from urllib.parse import urlparse, urlunparse

from meshbridge.config import MODE_SINGLE, BridgeSettings
from meshbridge.connection import BrokerConnection
from meshbridge.decoder import channel_key_from_psk
from meshbridge.dedup import PositionDeduplicator
from meshbridge.exceptions import ConfigurationError, StoreError, ValidationError
from meshbridge.logging_setup import setup_logging
from meshbridge.store import open_store
from meshbridge.supervisor import ConnectionSupervisor

logger = logging.getLogger("meshbridge.bridge")


def redact_url(url: str) -> str:
    """Hide the password in a store URL before printing it."""
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.netloc.replace(f":{parsed.password}@", ":***@", 1)
    return urlunparse(parsed._replace(netloc=netloc))


class MeshtasticBridge:
    """Owns the store, the dedup memory and either a supervisor or one legacy connection."""

    def __init__(self, settings: BridgeSettings):
        self.settings = settings
        self.channel_key = channel_key_from_psk(settings.channel_psk)
        self.dedup = PositionDeduplicator(
            distance_threshold_m=settings.dedup_distance_m,
            time_threshold_s=settings.dedup_time_s,
        )
        self.store = None
        self.supervisor: ConnectionSupervisor | None = None
        self.legacy_connection: BrokerConnection | None = None
        self.start_time = time.time()
        self._stop_event: asyncio.Event | None = None
        self._stats_task: asyncio.Task | None = None
        self._shut_down = False

    @property
    def connections(self) -> list[BrokerConnection]:
        if self.supervisor is not None:
            return list(self.supervisor.connections.values())
        if self.legacy_connection is not None:
            return [self.legacy_connection]
        return []

    # ── Stats ────────────────────────────────────────────────────────

    def print_stats(self) -> None:
        """Print counters for every active connection plus dedup totals."""
        elapsed = time.time() - self.start_time

        print("\n" + "=" * 80)
        for conn in self.connections:
            s = conn.stats
            rate = s["messages"] / elapsed if elapsed > 0 else 0
            print(
                f"[{conn.name[:12]:12}] {conn.state.value:12} | Msgs: {s['messages']:6} | "
                f"Pos: {s['positions']:5} | Stored: {s['stored']:5} | "
                f"Filtered: {s['filtered']:4} | Rejected: {s['rejected']:3} | "
                f"Errors: {s['store_errors']:3} | Rate: {rate:5.1f}/s"
            )
        print("=" * 80)
        print(f"Active connections: {len(self.connections)}")

        dedup_stats = self.dedup.get_stats()
        total = dedup_stats["duplicates_blocked"] + dedup_stats["unique_processed"]
        block_rate = dedup_stats["duplicates_blocked"] / total * 100 if total > 0 else 0
        print(
            f"\nDEDUP: Total: {total} | Dups: {dedup_stats['duplicates_blocked']} "
            f"({block_rate:.1f}%) | Unique: {dedup_stats['unique_processed']} | "
            f"Devices: {dedup_stats['cache_size']}"
        )
        print("=" * 80)

    async def _stats_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.stats_interval)
            self.print_stats()

    # ── Lifecycle ────────────────────────────────────────────────────

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def shutdown(self) -> None:
        """Stop the sync timer first, then every connection, then close the store."""
        if self._shut_down:
            return
        self._shut_down = True

        print("\n" + "=" * 60)
        print("Shutting down gracefully...")

        if self._stats_task is not None:
            self._stats_task.cancel()
            try:
                await self._stats_task
            except asyncio.CancelledError:
                pass

        if self.supervisor is not None:
            print(f"  Stopping {len(self.supervisor.connections)} broker connection(s)...")
            await self.supervisor.shutdown()
        if self.legacy_connection is not None:
            print("  Stopping legacy connection...")
            await self.legacy_connection.stop()

        if self.store is not None:
            await self.store.close()

        logger.info("BRIDGE_STOPPED")
        print("Shutdown complete.")
        print("=" * 60)

    def _print_banner(self) -> None:
        print("=" * 60)
        print(f"Meshtastic Position Bridge (mode={self.settings.mode})")
        print("=" * 60)
        print(f"Config store: {redact_url(self.settings.store_url)}")
        if self.channel_key:
            psk = self.settings.channel_psk
            key_preview = psk[:8] + "..." if len(psk) > 8 else psk
            print(f"Decryption enabled (key: {key_preview})")
        else:
            print("Decryption disabled - encrypted packets will be skipped")
        print(
            f"Dedup: {self.dedup.distance_threshold_m}m / {self.dedup.time_threshold_s}s | "
            f"Reconnect: {self.settings.reconnect_delay}s"
        )
        print()

    async def _start_multi(self) -> None:
        self.supervisor = ConnectionSupervisor(
            self.store,
            self.dedup,
            interval=self.settings.sync_interval,
            channel_key=self.channel_key,
            reconnect_delay=self.settings.reconnect_delay,
        )
        result = await self.supervisor.reconcile()
        print(f"Started {len(result.started)} broker connection(s), "
              f"syncing every {self.settings.sync_interval}s")
        self.supervisor.start()

    async def _start_single(self) -> None:
        legacy = self.settings.legacy
        try:
            config = legacy.to_broker_config()
        except ValidationError as e:
            raise ConfigurationError(f"Invalid legacy broker settings: {e}") from e

        self.legacy_connection = BrokerConnection(
            config,
            self.store,
            self.dedup,
            channel_key=self.channel_key,
            reconnect_delay=self.settings.reconnect_delay,
        )
        await self.legacy_connection.start()
        print(f"[legacy] Connecting to {config.broker}:{config.port}, topic {config.topic}")
        if config.node_ids:
            print(f"[legacy] Device filter: {', '.join(config.node_ids)}")

    async def _open_store(self):
        """Open the config store, retrying every RECONNECT_DELAY seconds until it answers or we are stopped."""
        delay = self.settings.reconnect_delay
        while not self._stop_event.is_set():
            try:
                return await open_store(self.settings.store_url)
            except StoreError as e:
                logger.error("STORE_UNAVAILABLE | store=%s | error=%s | retry_in=%ss",
                             redact_url(self.settings.store_url), e, delay)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        return None

    async def run(self) -> None:
        """Open the store, start connections, and run until SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_stop)

        try:
            self.store = await self._open_store()
            if self.store is None:
                return
            self._print_banner()
            logger.info("BRIDGE_STARTED | mode=%s | store=%s", self.settings.mode, redact_url(self.settings.store_url))

            if self.settings.mode == MODE_SINGLE:
                await self._start_single()
            else:
                await self._start_multi()

            if self.settings.stats_interval > 0:
                self._stats_task = asyncio.create_task(self._stats_loop(), name="stats")

            print("\nBridge running. Press Ctrl+C to stop.")
            await self._stop_event.wait()
        finally:
            await self.shutdown()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)


def main():
    try:
        settings = BridgeSettings.from_env()
    except ConfigurationError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    setup_logging(
        "meshbridge",
        level=settings.log_level,
        log_dir=settings.log_dir,
        max_bytes=settings.log_max_bytes,
        backup_count=settings.log_backup_count,
    )

    bridge = MeshtasticBridge(settings)
    try:
        asyncio.run(bridge.run())
    except ConfigurationError as e:
        print(f"ERROR: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
