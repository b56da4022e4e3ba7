"""
Shared helpers and factory functions for the bridge tests.
Import from this module in each test file to avoid duplication.
"""

from __future__ import annotations

import asyncio
import json

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from meshtastic.protobuf import mesh_pb2, mqtt_pb2, portnums_pb2

from meshbridge.models import BrokerConfig

JSON_TOPIC = "msh/US/2/json/LongFast/!9e75c710"
PROTOBUF_TOPIC = "msh/US/2/e/LongFast/!9e75c710"

NODE_NUM = 0x9E75C710
NODE_ID = "!9e75c710"

# lat/lon from a real node near Chapel Hill, NC
LAT_I = 359132000
LON_I = -790558000


def make_broker_config(broker_id: str | None = "broker-1", **kwargs) -> BrokerConfig:
    defaults = dict(
        id=broker_id,
        name="Test Broker",
        broker="mqtt.example.org",
        port=1883,
        topic="msh/US/2/#",
        username="meshdev",
        password="large4cats",
        node_ids=[],
        enabled=True,
        created_at=1_700_000_000,
        updated_at=1_700_000_000,
    )
    defaults.update(kwargs)
    return BrokerConfig(**defaults)


def broker_fields(**kwargs) -> dict:
    """Keyword arguments for ConfigStore.create_broker_config."""
    defaults = dict(
        name="Test Broker",
        broker="mqtt.example.org",
        port=1883,
        topic="msh/US/2/#",
        username="meshdev",
        password="large4cats",
    )
    defaults.update(kwargs)
    return defaults


def json_message(msg_type: str = "position", sender: str | None = NODE_ID, **payload) -> bytes:
    body = {
        "latitude_i": LAT_I,
        "longitude_i": LON_I,
        "altitude": 120,
        "time": 1_700_000_000,
    }
    body.update(payload)
    message = {
        "from": NODE_NUM,
        "type": msg_type,
        "payload": body,
        "timestamp": 1_700_000_005,
    }
    if sender is not None:
        message["sender"] = sender
    return json.dumps(message).encode()


def aes_ctr(data: bytes, packet_id: int, from_node: int, key: bytes) -> bytes:
    nonce = packet_id.to_bytes(8, "little") + from_node.to_bytes(4, "little") + bytes(4)
    encryptor = Cipher(algorithms.AES(key), modes.CTR(nonce)).encryptor()
    return encryptor.update(data) + encryptor.finalize()


def envelope_message(
    lat_i: int = LAT_I,
    lon_i: int = LON_I,
    node: int = NODE_NUM,
    portnum: int = portnums_pb2.PortNum.POSITION_APP,
    position_time: int = 1_700_000_000,
    rx_time: int = 0,
    packet_id: int = 0x1234ABCD,
    key: bytes | None = None,
) -> bytes:
    """A serialized ServiceEnvelope; encrypted with ``key`` when given."""
    position = mesh_pb2.Position(
        latitude_i=lat_i,
        longitude_i=lon_i,
        altitude=87,
        time=position_time,
        precision_bits=32,
    )
    data = mesh_pb2.Data(portnum=portnum, payload=position.SerializeToString())

    packet = mesh_pb2.MeshPacket(id=packet_id, rx_time=rx_time)
    setattr(packet, "from", node)
    if key is not None:
        packet.encrypted = aes_ctr(data.SerializeToString(), packet_id, node, key)
    else:
        packet.decoded.CopyFrom(data)

    envelope = mqtt_pb2.ServiceEnvelope(channel_id="LongFast", gateway_id="!aabbccdd")
    envelope.packet.CopyFrom(packet)
    return envelope.SerializeToString()


class FakeReasonCode:
    def __init__(self, failure: bool = False, name: str = "Success"):
        self.is_failure = failure
        self._name = name

    def __str__(self):
        return self._name


class FakeMQTTClient:
    """Records the paho calls BrokerConnection makes; never touches the network."""

    def __init__(self, client_id: str):
        self.client_id = client_id
        self.credentials = None
        self.reconnect_delay = None
        self.connect_args = None
        self.loop_started = False
        self.loop_stopped = False
        self.subscriptions: list[str] = []
        self.unsubscriptions: list[str] = []
        self.disconnect_calls = 0
        self.subscribe_result = 0
        self.on_connect = None
        self.on_connect_fail = None
        self.on_disconnect = None
        self.on_subscribe = None
        self.on_message = None

    def username_pw_set(self, username, password=None):
        self.credentials = (username, password)

    def reconnect_delay_set(self, min_delay=1, max_delay=120):
        self.reconnect_delay = (min_delay, max_delay)

    def connect_async(self, host, port=1883, keepalive=60):
        self.connect_args = (host, port, keepalive)

    def loop_start(self):
        self.loop_started = True

    def loop_stop(self):
        self.loop_stopped = True

    def subscribe(self, topic, qos=0):
        self.subscriptions.append(topic)
        return self.subscribe_result, 1

    def unsubscribe(self, topic):
        self.unsubscriptions.append(topic)
        return 0, 2

    def disconnect(self):
        self.disconnect_calls += 1
        return 0


class FakeMessage:
    def __init__(self, topic: str, payload: bytes):
        self.topic = topic
        self.payload = payload


class FakeConnection:
    """Stand-in for BrokerConnection in supervisor tests."""

    def __init__(self, config, store, dedup, channel_key=None, reconnect_delay=5, fail_start=False):
        self.config = config
        self.store = store
        self.dedup = dedup
        self.channel_key = channel_key
        self.reconnect_delay = reconnect_delay
        self.fail_start = fail_start
        self.start_calls = 0
        self.stop_calls = 0

    @property
    def name(self):
        return self.config.name

    async def start(self):
        self.start_calls += 1
        if self.fail_start:
            raise ValueError("Invalid host.")

    async def stop(self):
        self.stop_calls += 1


async def settle(rounds: int = 10) -> None:
    """Let queued callbacks and the connection consumer task run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
