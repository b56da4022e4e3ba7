"""
Meshtastic payload decoding.

Turns a raw MQTT message (topic + bytes) into a PositionReport, or None when
the message is not a usable position. Two wire formats are handled:

  - JSON, published by gateways on topics carrying a ``json`` segment
    (msh/US/2/json/LongFast/!9e75c710)
  - protobuf ServiceEnvelope on every other topic, optionally AES-CTR
    encrypted with the channel key

Most mesh traffic is telemetry, node info or text, so None is the common
outcome and never an error. Everything here is side-effect free.
"""

from __future__ import annotations

import base64
import binascii
import enum
import hashlib
import json
import math
import time
from dataclasses import dataclass
from typing import Any

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from google.protobuf import json_format
from google.protobuf.message import DecodeError
from meshtastic.protobuf import mesh_pb2, mqtt_pb2, portnums_pb2

JSON_TOPIC_SEGMENT = "json"
JSON_POSITION_TYPE = "position"
COORDINATE_SCALE = 1e7
# Anything at or above this is a millisecond epoch value.
MILLISECOND_CUTOFF = 10_000_000_000

# Meshtastic default channel key ("AQ==" expands to this).
DEFAULT_CHANNEL_KEY = bytes([
    0xD4, 0xF1, 0xBB, 0x3A, 0x20, 0x29, 0x07, 0x59,
    0xF0, 0xBC, 0xFF, 0xAB, 0xCF, 0x4E, 0x69, 0x01,
])


class PayloadEncoding(enum.Enum):
    JSON = "json"
    PROTOBUF = "protobuf"


@dataclass(frozen=True)
class PositionReport:
    """A decoded position candidate, tagged with the wire format it came from."""

    encoding: PayloadEncoding
    device_id: str
    latitude: float
    longitude: float
    timestamp: int
    altitude: float | None = None
    accuracy: float | None = None
    battery_level: float | None = None
    raw: Any = None


# ── Channel keys ─────────────────────────────────────────────────────

def channel_key_from_psk(psk_b64: str | None) -> bytes | None:
    """
    Derive the AES key from a Meshtastic channel PSK (base64-encoded).

    - empty, or the single byte 0: channel is unencrypted, returns None
    - single byte N: default key with its last byte bumped by N - 1
    - 16 or 32 bytes: used directly (AES-128 / AES-256)
    - other lengths: zero-padded to the next AES key size
    - not base64: SHA-256 of the text, truncated to 16 bytes
    """
    if not psk_b64:
        return None
    try:
        key_bytes = base64.b64decode(psk_b64, validate=True)
    except (binascii.Error, ValueError):
        return hashlib.sha256(psk_b64.encode()).digest()[:16]

    if len(key_bytes) == 0:
        return None
    if len(key_bytes) == 1:
        index = key_bytes[0]
        if index == 0:
            return None
        key = bytearray(DEFAULT_CHANNEL_KEY)
        key[-1] = (key[-1] + index - 1) & 0xFF
        return bytes(key)
    if len(key_bytes) in (16, 32):
        return key_bytes
    if len(key_bytes) < 16:
        return key_bytes.ljust(16, b"\x00")
    return key_bytes.ljust(32, b"\x00")[:32]


def decrypt_packet(encrypted: bytes, packet_id: int, from_node: int, key: bytes) -> bytes:
    """Decrypt a MeshPacket payload with AES-CTR."""
    nonce = packet_id.to_bytes(8, "little") + from_node.to_bytes(4, "little") + bytes(4)
    decryptor = Cipher(algorithms.AES(key), modes.CTR(nonce)).decryptor()
    return decryptor.update(encrypted) + decryptor.finalize()


# ── Helpers ──────────────────────────────────────────────────────────

def is_json_topic(topic: str) -> bool:
    return JSON_TOPIC_SEGMENT in topic.split("/")


def format_node_id(node_num: int) -> str:
    return f"!{node_num & 0xFFFFFFFF:08x}"


def fixed_point_to_degrees(value: int) -> float:
    return value / COORDINATE_SCALE


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_seconds(value: Any) -> int | None:
    """Whole epoch seconds from a device/broker timestamp, or None if unusable."""
    if not _is_number(value) or not math.isfinite(value) or value <= 0:
        return None
    if value >= MILLISECOND_CUTOFF:
        value = value / 1000
    return int(value)


def _first_timestamp(*candidates: Any) -> int | None:
    for candidate in candidates:
        seconds = _to_seconds(candidate)
        if seconds is not None:
            return seconds
    return None


def _optional_number(*candidates: Any) -> float | None:
    for candidate in candidates:
        if _is_number(candidate):
            return candidate
    return None


# ── JSON ─────────────────────────────────────────────────────────────

def decode_json_position(payload: bytes, received_at: int) -> PositionReport | None:
    try:
        data = json.loads(payload)
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(data, dict) or data.get("type") != JSON_POSITION_TYPE:
        return None

    pos = data.get("payload")
    if not isinstance(pos, dict):
        return None
    lat_i = pos.get("latitude_i")
    lon_i = pos.get("longitude_i")
    # Zero means "no fix" on Meshtastic.
    if not _is_number(lat_i) or not _is_number(lon_i) or not lat_i or not lon_i:
        return None

    device_id = data.get("sender")
    if not isinstance(device_id, str) or not device_id:
        sender_num = data.get("from")
        if not isinstance(sender_num, int) or isinstance(sender_num, bool):
            return None
        device_id = format_node_id(sender_num)

    timestamp = _first_timestamp(pos.get("timestamp"), pos.get("time"), data.get("timestamp"))

    return PositionReport(
        encoding=PayloadEncoding.JSON,
        device_id=device_id,
        latitude=fixed_point_to_degrees(lat_i),
        longitude=fixed_point_to_degrees(lon_i),
        timestamp=timestamp if timestamp is not None else received_at,
        altitude=_optional_number(pos.get("altitude")),
        accuracy=_optional_number(pos.get("precision_bits"), pos.get("PDOP")),
        battery_level=_optional_number(pos.get("battery_level"), pos.get("batteryLevel")),
        raw=data,
    )


# ── Protobuf ─────────────────────────────────────────────────────────

def decode_envelope_position(
    payload: bytes, received_at: int, channel_key: bytes | None = None,
) -> PositionReport | None:
    try:
        envelope = mqtt_pb2.ServiceEnvelope()
        envelope.ParseFromString(payload)
    except DecodeError:
        return None
    if not envelope.HasField("packet"):
        return None

    packet = envelope.packet
    from_id = getattr(packet, "from")

    if packet.HasField("decoded"):
        decoded = packet.decoded
    elif packet.HasField("encrypted") and channel_key:
        try:
            decoded = mesh_pb2.Data()
            decoded.ParseFromString(
                decrypt_packet(packet.encrypted, packet.id, from_id, channel_key)
            )
        except (DecodeError, ValueError):
            return None
    else:
        return None

    if decoded.portnum != portnums_pb2.PortNum.POSITION_APP:
        return None

    try:
        position = mesh_pb2.Position()
        position.ParseFromString(decoded.payload)
    except DecodeError:
        return None
    if not position.latitude_i or not position.longitude_i:
        return None

    timestamp = _first_timestamp(position.time, packet.rx_time)
    raw = {
        "envelope": json_format.MessageToDict(envelope, preserving_proto_field_name=True),
        "position": json_format.MessageToDict(position, preserving_proto_field_name=True),
    }

    return PositionReport(
        encoding=PayloadEncoding.PROTOBUF,
        device_id=format_node_id(from_id),
        latitude=fixed_point_to_degrees(position.latitude_i),
        longitude=fixed_point_to_degrees(position.longitude_i),
        timestamp=timestamp if timestamp is not None else received_at,
        altitude=position.altitude or None,
        accuracy=position.precision_bits or None,
        raw=raw,
    )


def decode_message(
    topic: str,
    payload: bytes,
    channel_key: bytes | None = None,
    received_at: int | None = None,
) -> PositionReport | None:
    """
    Decode one MQTT message into a PositionReport.

    Args:
        topic: topic the message arrived on; selects JSON vs protobuf
        payload: raw message bytes
        channel_key: AES key for encrypted envelopes (see channel_key_from_psk)
        received_at: receipt time in epoch seconds, used when the message
            carries no timestamp of its own (defaults to now)

    Returns:
        PositionReport, or None for anything that is not a usable position
    """
    if received_at is None:
        received_at = int(time.time())
    if is_json_topic(topic):
        return decode_json_position(payload, received_at)
    return decode_envelope_position(payload, received_at, channel_key)
