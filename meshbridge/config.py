"""
Process configuration from environment variables.

A ``.env`` file in the working directory is loaded first. Only
CONFIG_STORE_URL (or CONVEX_URL) is required. The MQTT_* / DEVICE_ID_FILTER /
DEDUPE_THRESHOLD_METERS knobs belong to the legacy single-broker mode and are
ignored when BRIDGE_MODE=multi.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping
from urllib.parse import urlparse

from dotenv import load_dotenv

from .dedup import DEFAULT_DISTANCE_THRESHOLD_M, DEFAULT_TIME_THRESHOLD_S
from .exceptions import ConfigurationError
from .models import DEFAULT_MQTT_PORT, BrokerConfig

MODE_MULTI = "multi"
MODE_SINGLE = "single"

DEFAULT_SYNC_INTERVAL = 30.0
DEFAULT_RECONNECT_DELAY = 5
DEFAULT_STATS_INTERVAL = 60
DEFAULT_CHANNEL_PSK = "AQ=="
DEFAULT_LEGACY_BROKER = "mqtt://mqtt.meshtastic.org"
DEFAULT_LEGACY_TOPIC = "msh/US/2/#"


def _number(environ: Mapping[str, str], name: str, default, cast=float):
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


def parse_broker_address(address: str) -> tuple[str, int]:
    """``mqtt://host:1883``, ``host:1883`` or ``host`` -> (host, port)."""
    parsed = urlparse(address if "://" in address else f"mqtt://{address}")
    try:
        port = parsed.port or DEFAULT_MQTT_PORT
    except ValueError:
        raise ConfigurationError(f"Invalid MQTT broker address: {address!r}") from None
    if not parsed.hostname:
        raise ConfigurationError(f"Invalid MQTT broker address: {address!r}")
    return parsed.hostname, port


@dataclass
class LegacyBrokerSettings:
    """The single broker used when BRIDGE_MODE=single."""

    broker: str = DEFAULT_LEGACY_BROKER
    topic: str = DEFAULT_LEGACY_TOPIC
    username: str | None = None
    password: str | None = None
    device_filter: list[str] = field(default_factory=list)
    dedup_distance_m: float = DEFAULT_DISTANCE_THRESHOLD_M

    def to_broker_config(self) -> BrokerConfig:
        host, port = parse_broker_address(self.broker)
        config = BrokerConfig(
            id=None,
            name="legacy",
            broker=host,
            port=port,
            topic=self.topic,
            username=self.username,
            password=self.password,
            node_ids=list(self.device_filter),
        )
        config.validate()
        return config


@dataclass
class BridgeSettings:
    store_url: str
    mode: str = MODE_MULTI
    sync_interval: float = DEFAULT_SYNC_INTERVAL
    reconnect_delay: int = DEFAULT_RECONNECT_DELAY
    stats_interval: int = DEFAULT_STATS_INTERVAL
    channel_psk: str = DEFAULT_CHANNEL_PSK
    dedup_time_s: float = DEFAULT_TIME_THRESHOLD_S
    log_level: str = "INFO"
    log_dir: str | None = "logs"
    log_max_bytes: int = 10 * 1024 * 1024
    log_backup_count: int = 5
    legacy: LegacyBrokerSettings = field(default_factory=LegacyBrokerSettings)

    @property
    def dedup_distance_m(self) -> float:
        if self.mode == MODE_SINGLE:
            return self.legacy.dedup_distance_m
        return DEFAULT_DISTANCE_THRESHOLD_M

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> BridgeSettings:
        if environ is None:
            load_dotenv()
            environ = os.environ

        store_url = (environ.get("CONFIG_STORE_URL") or environ.get("CONVEX_URL") or "").strip()
        if not store_url:
            raise ConfigurationError(
                "CONFIG_STORE_URL (or CONVEX_URL) environment variable is required"
            )

        mode = environ.get("BRIDGE_MODE", MODE_MULTI).strip().lower() or MODE_MULTI
        if mode not in (MODE_MULTI, MODE_SINGLE):
            raise ConfigurationError(f"BRIDGE_MODE must be 'multi' or 'single', got {mode!r}")

        sync_interval = _number(environ, "SYNC_INTERVAL", DEFAULT_SYNC_INTERVAL)
        if sync_interval <= 0:
            raise ConfigurationError("SYNC_INTERVAL must be positive")
        reconnect_delay = _number(environ, "RECONNECT_DELAY", DEFAULT_RECONNECT_DELAY, int)
        if reconnect_delay <= 0:
            raise ConfigurationError("RECONNECT_DELAY must be positive")

        device_filter = [
            device_id.strip()
            for device_id in environ.get("DEVICE_ID_FILTER", "").split(",")
            if device_id.strip()
        ]
        legacy = LegacyBrokerSettings(
            broker=environ.get("MQTT_BROKER", DEFAULT_LEGACY_BROKER),
            topic=environ.get("MQTT_TOPIC", DEFAULT_LEGACY_TOPIC),
            username=environ.get("MQTT_USERNAME") or None,
            password=environ.get("MQTT_PASSWORD") or None,
            device_filter=device_filter,
            dedup_distance_m=_number(environ, "DEDUPE_THRESHOLD_METERS", DEFAULT_DISTANCE_THRESHOLD_M),
        )

        return cls(
            store_url=store_url,
            mode=mode,
            sync_interval=sync_interval,
            reconnect_delay=reconnect_delay,
            stats_interval=_number(environ, "STATS_INTERVAL", DEFAULT_STATS_INTERVAL, int),
            channel_psk=environ.get("MESHTASTIC_CHANNEL_KEY", DEFAULT_CHANNEL_PSK),
            log_level=environ.get("LOG_LEVEL", "INFO").upper(),
            log_dir=environ.get("LOG_DIR", "logs") or None,
            log_max_bytes=_number(environ, "LOG_MAX_BYTES", 10 * 1024 * 1024, int),
            log_backup_count=_number(environ, "LOG_BACKUP_COUNT", 5, int),
            legacy=legacy,
        )
