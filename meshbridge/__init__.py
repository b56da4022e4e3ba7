"""
Meshtastic position bridge.

Ingests Meshtastic position reports from any number of MQTT brokers,
drops redundant fixes, and persists the rest to a shared store.
"""

from .dedup import PositionDeduplicator
from .decoder import PayloadEncoding, PositionReport, decode_message
from .models import BrokerConfig, Position

__all__ = [
    "BrokerConfig",
    "PayloadEncoding",
    "Position",
    "PositionDeduplicator",
    "PositionReport",
    "decode_message",
]
