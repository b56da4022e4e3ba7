"""
Data classes for broker configs and stored positions.

These carry no I/O. Validation lives here so every store backend rejects
the same values.
"""

from __future__ import annotations

import dataclasses
import math
import time
from dataclasses import dataclass, field
from typing import Any

from .exceptions import InvalidBrokerConfigError, InvalidPositionError

DEFAULT_MQTT_PORT = 1883

# Fields a caller may set on create / patch on update.
BROKER_CONFIG_FIELDS = (
    "name", "broker", "port", "username", "password",
    "topic", "node_ids", "enabled", "user_id",
)


def now_seconds() -> int:
    return int(time.time())


def validate_coordinates(latitude: float, longitude: float) -> None:
    """Raise InvalidPositionError unless lat is in [-90, 90] and lon in [-180, 180]."""
    if latitude is None or math.isnan(latitude) or not -90 <= latitude <= 90:
        raise InvalidPositionError(f"Invalid latitude: {latitude}")
    if longitude is None or math.isnan(longitude) or not -180 <= longitude <= 180:
        raise InvalidPositionError(f"Invalid longitude: {longitude}")


@dataclass
class BrokerConfig:
    """A user-managed MQTT subscription target."""

    id: str | None
    name: str
    broker: str
    topic: str
    port: int = DEFAULT_MQTT_PORT
    username: str | None = None
    password: str | None = None
    node_ids: list[str] = field(default_factory=list)
    enabled: bool = True
    user_id: str | None = None
    created_at: int = 0
    updated_at: int = 0

    def validate(self) -> None:
        """Check types and ranges as given. Nothing is coerced."""
        for label, value in (("Broker name", self.name), ("Broker host", self.broker), ("Topic", self.topic)):
            if not isinstance(value, str) or not value.strip():
                raise InvalidBrokerConfigError(f"{label} must be a non-empty string")
        if isinstance(self.port, bool) or not isinstance(self.port, int) or not 1 <= self.port <= 65535:
            raise InvalidBrokerConfigError(f"Port out of range: {self.port!r}")
        if not isinstance(self.enabled, bool):
            raise InvalidBrokerConfigError(f"enabled must be a boolean, got {self.enabled!r}")
        for name in ("username", "password", "user_id"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                raise InvalidBrokerConfigError(f"{name} must be a string")
        if not isinstance(self.node_ids, list) or not all(isinstance(n, str) for n in self.node_ids):
            raise InvalidBrokerConfigError("node_ids must be a list of strings")

    def redacted(self) -> BrokerConfig:
        """Copy without the password, as served by list / get-by-id."""
        return dataclasses.replace(self, password=None, node_ids=list(self.node_ids))

    def accepts(self, device_id: str) -> bool:
        """An empty allow-list accepts every device."""
        return not self.node_ids or device_id in self.node_ids

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BrokerConfig:
        return cls(
            id=data.get("id"),
            name=data.get("name", ""),
            broker=data.get("broker", ""),
            topic=data.get("topic", ""),
            port=int(data.get("port", DEFAULT_MQTT_PORT)),
            username=data.get("username") or None,
            password=data.get("password") or None,
            node_ids=list(data.get("node_ids") or []),
            enabled=bool(data.get("enabled", True)),
            user_id=data.get("user_id") or None,
            created_at=int(data.get("created_at") or 0),
            updated_at=int(data.get("updated_at") or 0),
        )


@dataclass
class Position:
    """One GPS fix attributed to a device. Immutable once stored."""

    device_id: str
    latitude: float
    longitude: float
    timestamp: int
    altitude: float | None = None
    accuracy: float | None = None
    battery_level: float | None = None
    raw_payload: Any = None
    broker_id: str | None = None
    id: str | None = None

    def validate(self) -> None:
        validate_coordinates(self.latitude, self.longitude)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)
