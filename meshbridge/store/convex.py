"""
Convex-backed store.

Talks to a Convex deployment over its HTTP function API
(POST /api/query and /api/mutation) and calls the ``brokers:*`` and
``positions:*`` functions deployed alongside the UI. Coordinate and broker
checks also run server-side in ``positions:logPosition``.

Convex documents use camelCase and ``_id``; they are mapped to the
snake_case dataclasses here. Convex optional arguments reject null, so
None values are dropped from every call.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from ..exceptions import BrokerNotFoundError, InvalidBrokerConfigError, StoreError, StoreUnavailableError
from ..models import BrokerConfig, Position
from .base import DEFAULT_HISTORY_LIMIT, OPTIONAL_TEXT_FIELDS, ConfigStore

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10  # seconds
MILLISECOND_CUTOFF = 10_000_000_000
# Newest fixes fetched per device when filtering a time window client side.
WINDOW_FETCH_LIMIT = 1000


def _seconds(value: Any) -> int:
    if not value:
        return 0
    value = float(value)
    return int(value / 1000) if value >= MILLISECOND_CUTOFF else int(value)


def _compact(args: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in args.items() if value is not None}


def broker_from_document(doc: dict[str, Any]) -> BrokerConfig:
    return BrokerConfig(
        id=doc["_id"],
        name=doc.get("name", ""),
        broker=doc.get("broker", ""),
        topic=doc.get("topic", ""),
        port=int(doc.get("port", 1883)),
        username=doc.get("username") or None,
        password=doc.get("password") or None,
        node_ids=list(doc.get("nodeIds") or []),
        enabled=bool(doc.get("enabled", False)),
        user_id=doc.get("userId") or None,
        created_at=_seconds(doc.get("createdAt") or doc.get("_creationTime")),
        updated_at=_seconds(doc.get("updatedAt")),
    )


def position_from_document(doc: dict[str, Any]) -> Position:
    return Position(
        id=doc.get("_id"),
        device_id=doc["deviceId"],
        latitude=doc["latitude"],
        longitude=doc["longitude"],
        altitude=doc.get("altitude"),
        accuracy=doc.get("accuracy"),
        battery_level=doc.get("batteryLevel"),
        timestamp=_seconds(doc.get("timestamp")),
        raw_payload=doc.get("rawPayload"),
        broker_id=doc.get("brokerId"),
    )


class ConvexStore(ConfigStore):

    def __init__(self, url: str, session: aiohttp.ClientSession | None = None) -> None:
        self.url = url.rstrip("/")
        self.session = session

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT),
            )
        return self.session

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()

    async def _call(self, kind: str, path: str, args: dict[str, Any] | None = None) -> Any:
        """Run a Convex query or mutation and return its value."""
        session = await self._ensure_session()
        body = {"path": path, "args": _compact(args or {}), "format": "json"}
        logger.debug("CONVEX_CALL | kind=%s | path=%s", kind, path)
        try:
            async with session.post(f"{self.url}/api/{kind}", json=body) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = None
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StoreUnavailableError(f"Convex unreachable at {self.url}: {e}") from e

        if isinstance(data, dict) and data.get("status") == "success":
            return data.get("value")
        if isinstance(data, dict) and data.get("status") == "error":
            message = data.get("errorMessage") or "unknown error"
            if "Broker config not found" in message:
                raise BrokerNotFoundError(args.get("brokerId") if args else None)
            raise StoreError(f"{path} failed: {message}")
        if status >= 500:
            raise StoreUnavailableError(f"{path} failed: HTTP {status}")
        raise StoreError(f"{path} failed: HTTP {status}")

    async def query(self, path: str, args: dict[str, Any] | None = None) -> Any:
        return await self._call("query", path, args)

    async def mutation(self, path: str, args: dict[str, Any] | None = None) -> Any:
        return await self._call("mutation", path, args)

    # ── Broker configs ───────────────────────────────────────────────

    def _broker_args(self, config: BrokerConfig) -> dict[str, Any]:
        return {
            "name": config.name,
            "broker": config.broker,
            "port": config.port,
            "username": config.username,
            "password": config.password,
            "topic": config.topic,
            "nodeIds": list(config.node_ids),
            "enabled": config.enabled,
            "userId": config.user_id,
        }

    async def update_broker_config(self, broker_id: str, **patch: Any) -> str:
        # brokers:updateBroker leaves omitted fields unchanged and rejects null,
        # so an optional field can be replaced but never cleared.
        cleared = sorted(name for name in OPTIONAL_TEXT_FIELDS if name in patch and patch[name] in (None, ""))
        if cleared:
            raise InvalidBrokerConfigError(f"Convex store cannot clear {', '.join(cleared)}")
        return await super().update_broker_config(broker_id, **patch)

    async def _create_broker_config(self, config: BrokerConfig) -> str:
        return await self.mutation("brokers:createBroker", self._broker_args(config))

    async def _save_broker_config(self, config: BrokerConfig) -> None:
        await self.mutation("brokers:updateBroker", {"id": config.id, **self._broker_args(config)})

    async def _delete_broker_config(self, broker_id: str) -> None:
        await self.mutation("brokers:deleteBroker", {"id": broker_id})

    async def _get_broker_config(self, broker_id: str) -> BrokerConfig | None:
        doc = await self.query("brokers:getBrokerWithPassword", {"id": broker_id})
        return broker_from_document(doc) if doc else None

    async def _all_broker_configs(self) -> list[BrokerConfig]:
        docs = await self.query("brokers:listBrokers")
        return [broker_from_document(doc) for doc in docs or []]

    async def list_enabled_broker_configs(self) -> list[BrokerConfig]:
        docs = await self.query("brokers:getEnabledBrokers")
        return [broker_from_document(doc).redacted() for doc in docs or []]

    async def list_broker_configs_for_user(self, user_id: str) -> list[BrokerConfig]:
        docs = await self.query("brokers:getBrokersByUser", {"userId": user_id})
        return [broker_from_document(doc).redacted() for doc in docs or []]

    # ── Positions ────────────────────────────────────────────────────

    async def insert_position(self, position: Position) -> str:
        # Broker existence is checked by logPosition itself.
        position.validate()
        return await self._insert_position(position)

    async def _insert_position(self, position: Position) -> str:
        return await self.mutation("positions:logPosition", {
            "deviceId": position.device_id,
            "latitude": position.latitude,
            "longitude": position.longitude,
            "altitude": position.altitude,
            "accuracy": position.accuracy,
            "batteryLevel": position.battery_level,
            "timestamp": position.timestamp,
            "rawPayload": position.raw_payload,
            "brokerId": position.broker_id,
        })

    async def latest_position(self, device_id: str) -> Position | None:
        doc = await self.query("positions:getLatestPosition", {"deviceId": device_id})
        return position_from_document(doc) if doc else None

    async def _query_positions(self, device_id=None, broker_id=None, start=None, end=None, limit=None):
        if start is not None or end is not None:
            return await self._window_from_history(device_id, start, end, limit)
        if broker_id is not None and device_id is not None:
            path = "positions:getPositionsByBrokerAndDevice"
            args = {"brokerId": broker_id, "deviceId": device_id, "limit": limit}
        elif broker_id is not None:
            path = "positions:getPositionsByBroker"
            args = {"brokerId": broker_id, "limit": limit}
        else:
            path = "positions:getHistory"
            args = {"deviceId": device_id, "limit": limit or DEFAULT_HISTORY_LIMIT}
        docs = await self.query(path, args)
        return [position_from_document(doc) for doc in docs or []]

    async def _window_from_history(self, device_id, start, end, limit):
        """
        Filter the device's newest fixes to start <= timestamp <= end.

        The deployment has no time-range query, so this reads the newest
        WINDOW_FETCH_LIMIT fixes (or ``limit`` if larger) through
        positions:getHistory. Fixes older than that are not returned.
        """
        fetch_limit = WINDOW_FETCH_LIMIT if limit is None else max(limit, WINDOW_FETCH_LIMIT)
        docs = await self.query("positions:getHistory", {"deviceId": device_id, "limit": fetch_limit})
        positions = [
            p for p in (position_from_document(doc) for doc in docs or [])
            if (start is None or p.timestamp >= start) and (end is None or p.timestamp <= end)
        ]
        positions.sort(key=lambda p: p.timestamp, reverse=True)
        return positions[:limit] if limit is not None else positions
