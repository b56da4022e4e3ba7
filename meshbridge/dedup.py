"""
Per-device position deduplication.

A report is suppressed only when it is both close to (distance threshold)
and soon after (time threshold) the last fix that was actually stored for
the same device. A stationary node still gets one stored fix per time
threshold, which keeps it visible as alive.

Memory is process-local and starts empty on every restart.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

EARTH_RADIUS_M = 6_371_000
DEFAULT_DISTANCE_THRESHOLD_M = 2.0
DEFAULT_TIME_THRESHOLD_S = 60


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points, in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


@dataclass(frozen=True)
class LastFix:
    latitude: float
    longitude: float
    timestamp: int


class PositionDeduplicator:
    """Last stored fix per device, and the suppression rule applied against it."""

    def __init__(
        self,
        distance_threshold_m: float = DEFAULT_DISTANCE_THRESHOLD_M,
        time_threshold_s: float = DEFAULT_TIME_THRESHOLD_S,
    ) -> None:
        self.distance_threshold_m = distance_threshold_m
        self.time_threshold_s = time_threshold_s
        self._last: dict[str, LastFix] = {}
        self._duplicates_blocked = 0
        self._unique_processed = 0

    def should_suppress(self, device_id: str, lat: float, lon: float, timestamp: int) -> bool:
        """True if this fix adds nothing over the last stored one for device_id."""
        last = self._last.get(device_id)
        if last is None:
            self._unique_processed += 1
            return False

        distance = haversine_m(last.latitude, last.longitude, lat, lon)
        elapsed = timestamp - last.timestamp
        if distance < self.distance_threshold_m and elapsed < self.time_threshold_s:
            self._duplicates_blocked += 1
            return True

        self._unique_processed += 1
        return False

    def record(self, device_id: str, lat: float, lon: float, timestamp: int) -> None:
        """Remember a fix once it has been stored."""
        self._last[device_id] = LastFix(lat, lon, timestamp)

    def last_fix(self, device_id: str) -> LastFix | None:
        return self._last.get(device_id)

    def __len__(self) -> int:
        return len(self._last)

    def get_stats(self) -> dict[str, int]:
        return {
            "duplicates_blocked": self._duplicates_blocked,
            "unique_processed": self._unique_processed,
            "cache_size": len(self._last),
        }
