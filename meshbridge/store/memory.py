"""In-process store. Nothing survives a restart; meant for development and tests."""

from __future__ import annotations

import dataclasses
import uuid

from ..exceptions import BrokerNotFoundError
from ..models import BrokerConfig, Position
from .base import ConfigStore


class MemoryStore(ConfigStore):

    def __init__(self) -> None:
        self._brokers: dict[str, BrokerConfig] = {}
        self._positions: list[Position] = []

    async def _create_broker_config(self, config: BrokerConfig) -> str:
        broker_id = uuid.uuid4().hex
        self._brokers[broker_id] = dataclasses.replace(config, id=broker_id)
        return broker_id

    async def _save_broker_config(self, config: BrokerConfig) -> None:
        if config.id not in self._brokers:
            raise BrokerNotFoundError(config.id)
        self._brokers[config.id] = dataclasses.replace(config, node_ids=list(config.node_ids))

    async def _delete_broker_config(self, broker_id: str) -> None:
        self._brokers.pop(broker_id, None)

    async def _get_broker_config(self, broker_id: str) -> BrokerConfig | None:
        config = self._brokers.get(broker_id)
        return dataclasses.replace(config, node_ids=list(config.node_ids)) if config else None

    async def _all_broker_configs(self) -> list[BrokerConfig]:
        return [dataclasses.replace(c, node_ids=list(c.node_ids)) for c in self._brokers.values()]

    async def _insert_position(self, position: Position) -> str:
        position_id = uuid.uuid4().hex
        self._positions.append(dataclasses.replace(position, id=position_id))
        return position_id

    async def _query_positions(self, device_id=None, broker_id=None, start=None, end=None, limit=None):
        matches = [
            p for p in self._positions
            if (device_id is None or p.device_id == device_id)
            and (broker_id is None or p.broker_id == broker_id)
            and (start is None or p.timestamp >= start)
            and (end is None or p.timestamp <= end)
        ]
        # Stable sort keeps insertion order for equal timestamps; reverse it.
        matches = sorted(reversed(matches), key=lambda p: p.timestamp, reverse=True)
        return matches[:limit] if limit is not None else matches
