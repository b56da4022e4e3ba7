"""
Config store contract.

The bridge reads broker configs from the store and writes positions to it;
the UI uses the same store for config CRUD and position reads. Backends
implement the underscore-prefixed primitives. Validation is done here so
every backend rejects the same inputs.
"""

from __future__ import annotations

import abc
import dataclasses
from typing import Any

from ..exceptions import BrokerNotFoundError, InvalidBrokerConfigError
from ..models import BROKER_CONFIG_FIELDS, BrokerConfig, Position, now_seconds

DEFAULT_HISTORY_LIMIT = 100

OPTIONAL_TEXT_FIELDS = ("username", "password", "user_id")


class ConfigStore(abc.ABC):

    # ── Broker configs ───────────────────────────────────────────────

    async def create_broker_config(self, **fields: Any) -> str:
        """Create a broker config; enabled defaults to True. Returns its id."""
        unknown = set(fields) - set(BROKER_CONFIG_FIELDS)
        if unknown:
            raise InvalidBrokerConfigError(f"Unknown broker config fields: {sorted(unknown)}")
        now = now_seconds()
        config = BrokerConfig(
            id=None,
            name=fields.get("name", ""),
            broker=fields.get("broker", ""),
            topic=fields.get("topic", ""),
            port=fields.get("port", 1883),
            username=fields.get("username"),
            password=fields.get("password"),
            node_ids=[] if fields.get("node_ids") is None else fields["node_ids"],
            enabled=True if fields.get("enabled") is None else fields["enabled"],
            user_id=fields.get("user_id"),
            created_at=now,
            updated_at=now,
        )
        config.validate()
        config.node_ids = list(config.node_ids)
        return await self._create_broker_config(config)

    async def update_broker_config(self, broker_id: str, **patch: Any) -> str:
        """
        Apply a partial update: only the given fields change.

        Patched values are validated as given, without type coercion. An
        empty username, password or user_id clears it. Backends that cannot
        clear optional fields reject such patches with InvalidBrokerConfigError.
        """
        unknown = set(patch) - set(BROKER_CONFIG_FIELDS)
        if unknown:
            raise InvalidBrokerConfigError(f"Unknown broker config fields: {sorted(unknown)}")
        current = await self._get_broker_config(broker_id)
        if current is None:
            raise BrokerNotFoundError(broker_id)

        for name in OPTIONAL_TEXT_FIELDS:
            if patch.get(name) == "":
                patch[name] = None
        updated = dataclasses.replace(current, **patch, updated_at=now_seconds())
        updated.validate()
        updated.node_ids = list(updated.node_ids)
        await self._save_broker_config(updated)
        return broker_id

    async def delete_broker_config(self, broker_id: str) -> None:
        await self._delete_broker_config(broker_id)

    async def list_broker_configs(self) -> list[BrokerConfig]:
        """All configs, newest first, without passwords."""
        configs = await self._all_broker_configs()
        configs.sort(key=lambda c: c.created_at, reverse=True)
        return [c.redacted() for c in configs]

    async def list_enabled_broker_configs(self) -> list[BrokerConfig]:
        configs = await self._all_broker_configs()
        return [c.redacted() for c in configs if c.enabled]

    async def list_broker_configs_for_user(self, user_id: str) -> list[BrokerConfig]:
        configs = await self._all_broker_configs()
        return [c.redacted() for c in configs if c.user_id == user_id]

    async def get_broker_config(self, broker_id: str) -> BrokerConfig | None:
        config = await self._get_broker_config(broker_id)
        return config.redacted() if config else None

    async def get_broker_config_with_secret(self, broker_id: str) -> BrokerConfig | None:
        """Full config including the password. Only for opening connections."""
        return await self._get_broker_config(broker_id)

    # ── Positions ────────────────────────────────────────────────────

    async def insert_position(self, position: Position) -> str:
        """
        Store a position and return its id.

        Raises InvalidPositionError for out-of-range coordinates and
        BrokerNotFoundError when broker_id names a config that does not exist.
        """
        position.validate()
        if position.broker_id is not None:
            if await self._get_broker_config(position.broker_id) is None:
                raise BrokerNotFoundError(position.broker_id)
        return await self._insert_position(position)

    async def latest_position(self, device_id: str) -> Position | None:
        history = await self.position_history(device_id, limit=1)
        return history[0] if history else None

    async def position_history(self, device_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[Position]:
        return await self._query_positions(device_id=device_id, limit=limit)

    async def position_history_between(
        self, device_id: str, start: int, end: int, limit: int | None = None,
    ) -> list[Position]:
        """Fixes with start <= timestamp <= end, newest first."""
        return await self._query_positions(device_id=device_id, start=start, end=end, limit=limit)

    async def positions_for_broker(self, broker_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[Position]:
        return await self._query_positions(broker_id=broker_id, limit=limit)

    async def positions_for_broker_and_device(
        self, broker_id: str, device_id: str, limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> list[Position]:
        return await self._query_positions(broker_id=broker_id, device_id=device_id, limit=limit)

    async def close(self) -> None:
        pass

    # ── Backend primitives ───────────────────────────────────────────

    @abc.abstractmethod
    async def _create_broker_config(self, config: BrokerConfig) -> str:
        ...

    @abc.abstractmethod
    async def _save_broker_config(self, config: BrokerConfig) -> None:
        ...

    @abc.abstractmethod
    async def _delete_broker_config(self, broker_id: str) -> None:
        ...

    @abc.abstractmethod
    async def _get_broker_config(self, broker_id: str) -> BrokerConfig | None:
        ...

    @abc.abstractmethod
    async def _all_broker_configs(self) -> list[BrokerConfig]:
        ...

    @abc.abstractmethod
    async def _insert_position(self, position: Position) -> str:
        ...

    @abc.abstractmethod
    async def _query_positions(
        self,
        device_id: str | None = None,
        broker_id: str | None = None,
        start: int | None = None,
        end: int | None = None,
        limit: int | None = None,
    ) -> list[Position]:
        """Positions matching every given filter, newest first."""
