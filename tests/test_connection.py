"""
Unit tests for connection.py against a fake paho client.

Coverage:
- start(): client setup, credentials, fixed reconnect delay, async connect
- paho callbacks are marshalled onto the event loop in order
- state machine: connect, refusal, connect failure, drop and recovery, stop
- message pipeline: decode, allow-list, dedup, store insert tagged with the
  broker id, validation and store failures
- stop(): unsubscribe + disconnect, idempotent, final, consumer cancelled
  even when stop itself is cancelled
"""

from __future__ import annotations

import asyncio
import contextlib
import threading
import unittest
from unittest.mock import AsyncMock

from meshtastic.protobuf import portnums_pb2

from meshbridge.connection import BrokerConnection, ConnectionState, make_client_id
from meshbridge.dedup import PositionDeduplicator
from meshbridge.exceptions import StoreUnavailableError
from meshbridge.store import MemoryStore

from test_common import (
    JSON_TOPIC,
    NODE_ID,
    PROTOBUF_TOPIC,
    FakeMessage,
    FakeMQTTClient,
    FakeReasonCode,
    broker_fields,
    envelope_message,
    json_message,
    make_broker_config,
    settle,
)


class ConnectionTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.store = MemoryStore()
        self.broker_id = await self.store.create_broker_config(**broker_fields())
        self.config = await self.store.get_broker_config_with_secret(self.broker_id)
        self.dedup = PositionDeduplicator()
        self.clients: list[FakeMQTTClient] = []

    async def asyncTearDown(self):
        for conn in getattr(self, "_connections", []):
            await conn.stop()

    def _factory(self, client_id):
        client = FakeMQTTClient(client_id)
        self.clients.append(client)
        return client

    def make_connection(self, config=None, **kwargs) -> BrokerConnection:
        conn = BrokerConnection(
            config or self.config, self.store, self.dedup,
            client_factory=self._factory, **kwargs,
        )
        self._connections = getattr(self, "_connections", []) + [conn]
        return conn

    async def connected(self, config=None, **kwargs) -> BrokerConnection:
        conn = self.make_connection(config, **kwargs)
        await conn.start()
        conn.handle_connect(True, "Success")
        return conn


class TestStart(ConnectionTestCase):

    async def test_client_setup(self):
        conn = self.make_connection(reconnect_delay=7)
        await conn.start()
        client = self.clients[0]
        self.assertEqual(client.credentials, ("meshdev", "large4cats"))
        self.assertEqual(client.reconnect_delay, (7, 7))
        self.assertEqual(client.connect_args, ("mqtt.example.org", 1883, 60))
        self.assertTrue(client.loop_started)
        self.assertEqual(conn.state, ConnectionState.CONNECTING)

    async def test_anonymous_broker(self):
        config = make_broker_config(broker_id=self.broker_id, username=None, password=None)
        conn = self.make_connection(config)
        await conn.start()
        self.assertIsNone(self.clients[0].credentials)

    async def test_start_twice_keeps_one_client(self):
        conn = self.make_connection()
        await conn.start()
        await conn.start()
        self.assertEqual(len(self.clients), 1)

    async def test_client_id(self):
        client_id = make_client_id("My Home Broker")
        self.assertTrue(client_id.startswith("meshtastic-bridge-My-Home-Broker-"))
        self.assertEqual(len(client_id.rsplit("-", 1)[1]), 6)
        self.assertNotEqual(make_client_id("x"), make_client_id("x"))


class TestStateMachine(ConnectionTestCase):

    async def test_connect_subscribes(self):
        conn = await self.connected()
        self.assertEqual(conn.state, ConnectionState.CONNECTED)
        self.assertEqual(self.clients[0].subscriptions, ["msh/US/2/#"])
        self.assertEqual(conn.stats["connects"], 1)

    async def test_paho_callbacks_reach_the_loop(self):
        conn = self.make_connection()
        await conn.start()
        client = self.clients[0]
        client.on_connect(client, None, {}, FakeReasonCode(), None)
        client.on_message(client, None, FakeMessage(JSON_TOPIC, json_message()))
        await settle()
        self.assertEqual(conn.state, ConnectionState.CONNECTED)
        self.assertEqual(conn.stats["stored"], 1)

    async def test_refused(self):
        conn = self.make_connection()
        await conn.start()
        conn.handle_connect(False, "Not authorized")
        self.assertEqual(conn.state, ConnectionState.RECONNECTING)
        self.assertEqual(self.clients[0].subscriptions, [])

    async def test_connect_failure_retries(self):
        conn = self.make_connection()
        await conn.start()
        conn.handle_connect_failure("connection refused")
        self.assertEqual(conn.state, ConnectionState.RECONNECTING)
        conn.handle_connect_failure("connection refused")
        self.assertEqual(conn.state, ConnectionState.RECONNECTING)
        conn.handle_connect(True, "Success")
        self.assertEqual(conn.state, ConnectionState.CONNECTED)

    async def test_drop_and_recover(self):
        conn = await self.connected()
        conn.handle_disconnect("Unspecified error")
        self.assertEqual(conn.state, ConnectionState.RECONNECTING)
        conn.handle_connect(True, "Success")
        self.assertEqual(conn.state, ConnectionState.CONNECTED)
        self.assertEqual(conn.stats["connects"], 2)
        self.assertEqual(conn.stats["disconnects"], 1)
        self.assertEqual(self.clients[0].subscriptions, ["msh/US/2/#", "msh/US/2/#"])

    async def test_subscribe_error_keeps_session(self):
        conn = self.make_connection()
        await conn.start()
        self.clients[0].subscribe_result = 4
        conn.handle_connect(True, "Success")
        self.assertEqual(conn.state, ConnectionState.CONNECTED)

    async def test_events_after_stop_ignored(self):
        conn = await self.connected()
        await conn.stop()
        conn.handle_connect(True, "Success")
        conn.handle_disconnect("gone")
        self.assertEqual(conn.state, ConnectionState.DISCONNECTED)


class TestPipeline(ConnectionTestCase):

    async def test_json_position_stored_with_broker_id(self):
        conn = await self.connected()
        await conn.handle_message(JSON_TOPIC, json_message())
        history = await self.store.position_history(NODE_ID)
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].broker_id, self.broker_id)
        self.assertAlmostEqual(history[0].latitude, 35.9132, delta=1e-6)
        self.assertEqual(history[0].timestamp, 1_700_000_000)
        self.assertEqual(conn.stats["stored"], 1)
        self.assertIsNotNone(self.dedup.last_fix(NODE_ID))

    async def test_protobuf_position_stored(self):
        conn = await self.connected()
        await conn.handle_message(PROTOBUF_TOPIC, envelope_message())
        self.assertEqual(len(await self.store.position_history(NODE_ID)), 1)

    async def test_non_position_has_no_side_effects(self):
        conn = await self.connected()
        await conn.handle_message(JSON_TOPIC, json_message(msg_type="telemetry"))
        await conn.handle_message(
            PROTOBUF_TOPIC, envelope_message(portnum=portnums_pb2.PortNum.TELEMETRY_APP),
        )
        self.assertEqual(await self.store.position_history(NODE_ID), [])
        self.assertEqual(len(self.dedup), 0)
        self.assertEqual(self.dedup.get_stats()["unique_processed"], 0)
        self.assertEqual(conn.stats["messages"], 2)
        self.assertEqual(conn.stats["positions"], 0)

    async def test_allow_list(self):
        await self.store.update_broker_config(self.broker_id, node_ids=["!00000001"])
        config = await self.store.get_broker_config_with_secret(self.broker_id)
        conn = await self.connected(config)
        await conn.handle_message(JSON_TOPIC, json_message())
        self.assertEqual(await self.store.position_history(NODE_ID), [])
        self.assertEqual(conn.stats["filtered"], 1)

        await conn.handle_message(JSON_TOPIC, json_message(sender="!00000001"))
        self.assertEqual(len(await self.store.position_history("!00000001")), 1)

    async def test_duplicate_suppressed(self):
        conn = await self.connected()
        await conn.handle_message(JSON_TOPIC, json_message())
        await conn.handle_message(JSON_TOPIC, json_message(time=1_700_000_010))
        self.assertEqual(len(await self.store.position_history(NODE_ID)), 1)
        self.assertEqual(conn.stats["suppressed"], 1)

    async def test_dedup_shared_between_connections(self):
        first = await self.connected()
        second = await self.connected()
        await first.handle_message(JSON_TOPIC, json_message())
        await second.handle_message(JSON_TOPIC, json_message(time=1_700_000_010))
        self.assertEqual(len(await self.store.position_history(NODE_ID)), 1)

    async def test_invalid_coordinates_dropped_and_not_remembered(self):
        conn = await self.connected()
        await conn.handle_message(JSON_TOPIC, json_message(latitude_i=910000000))
        self.assertEqual(await self.store.position_history(NODE_ID), [])
        self.assertIsNone(self.dedup.last_fix(NODE_ID))
        self.assertEqual(conn.stats["rejected"], 1)

    async def test_store_outage_loses_message(self):
        conn = await self.connected()
        self.store.insert_position = AsyncMock(side_effect=StoreUnavailableError("down"))
        await conn.handle_message(JSON_TOPIC, json_message())
        self.assertEqual(conn.stats["store_errors"], 1)
        self.assertIsNone(self.dedup.last_fix(NODE_ID))

    async def test_deleted_broker_rejected_by_store(self):
        conn = await self.connected()
        await self.store.delete_broker_config(self.broker_id)
        await conn.handle_message(JSON_TOPIC, json_message())
        self.assertEqual(conn.stats["store_errors"], 1)
        self.assertEqual(await self.store.position_history(NODE_ID), [])

    async def test_messages_ignored_until_connected(self):
        conn = self.make_connection()
        await conn.start()
        await conn.handle_message(JSON_TOPIC, json_message())
        self.assertEqual(conn.stats["messages"], 0)

    async def test_legacy_connection_without_broker_id(self):
        config = make_broker_config(broker_id=None, name="legacy")
        conn = await self.connected(config)
        await conn.handle_message(JSON_TOPIC, json_message())
        history = await self.store.position_history(NODE_ID)
        self.assertEqual(len(history), 1)
        self.assertIsNone(history[0].broker_id)


class TestStop(ConnectionTestCase):

    async def test_stop_unsubscribes_and_disconnects(self):
        conn = await self.connected()
        await conn.stop()
        client = self.clients[0]
        self.assertEqual(client.unsubscriptions, ["msh/US/2/#"])
        self.assertEqual(client.disconnect_calls, 1)
        self.assertTrue(client.loop_stopped)
        self.assertEqual(conn.state, ConnectionState.DISCONNECTED)

    async def test_stop_twice(self):
        conn = await self.connected()
        await conn.stop()
        await conn.stop()
        self.assertEqual(self.clients[0].disconnect_calls, 1)
        self.assertTrue(conn.stopped)

    async def test_stop_before_start(self):
        conn = self.make_connection()
        await conn.stop()
        self.assertEqual(self.clients, [])

    async def test_no_restart_after_stop(self):
        conn = await self.connected()
        await conn.stop()
        with self.assertRaises(RuntimeError):
            await conn.start()

    async def test_callbacks_after_stop_dropped(self):
        conn = await self.connected()
        client = self.clients[0]
        await conn.stop()
        client.on_message(client, None, FakeMessage(JSON_TOPIC, json_message()))
        await settle()
        self.assertEqual(conn.stats["messages"], 0)

    async def test_cancelled_stop_still_cancels_consumer(self):
        conn = await self.connected()
        consumer = conn._consumer
        release = threading.Event()
        self.addCleanup(release.set)
        self.clients[0].loop_stop = lambda: release.wait(5)

        stopping = asyncio.create_task(conn.stop())
        await asyncio.sleep(0.05)
        stopping.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await stopping

        self.assertIsNone(conn._consumer)
        self.assertTrue(consumer.done())
        self.assertEqual(conn.state, ConnectionState.DISCONNECTED)
        release.set()


if __name__ == "__main__":
    unittest.main()
