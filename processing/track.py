"""
Per-subject telemetry track and geodesy helpers.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional

from contracts.validation import Position, TelemetryPoint

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_m(a: Position, b: Position) -> float:
    return haversine_m(a.lat, a.lon, b.lat, b.lon)


def is_valid_coordinate(point: TelemetryPoint) -> bool:
    """Reject the (0, 0) placeholder fix some receivers emit before lock."""
    lat, lon = point.position.lat, point.position.lon
    return lat != 0.0 and lon != 0.0 and abs(lat) <= 90.0 and abs(lon) <= 180.0


@dataclass
class Track:
    """
    Ordered telemetry for one subject.

    Timestamps never decrease: `append` refuses a point older than the tail.
    """
    subject_id: str
    points: List[TelemetryPoint] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.points)

    @property
    def last(self) -> Optional[TelemetryPoint]:
        return self.points[-1] if self.points else None

    def append(self, point: TelemetryPoint) -> bool:
        """Append point. Returns False if it would break time ordering."""
        if self.points and point.timestamp < self.points[-1].timestamp:
            return False
        self.points.append(point)
        return True

    def window(self, seconds: float) -> List[TelemetryPoint]:
        """Points within `seconds` of the most recent point."""
        if not self.points:
            return []
        start = self.points[-1].timestamp - seconds
        # Points are time-ordered, walk back from the tail
        i = len(self.points)
        while i > 0 and self.points[i - 1].timestamp >= start:
            i -= 1
        return self.points[i:]

    def recent(self, count: int) -> List[TelemetryPoint]:
        return self.points[-count:] if count > 0 else []

    def clear(self):
        self.points.clear()

    def to_records(self) -> list[dict]:
        """Serialize for persistence."""
        return [p.model_dump(mode="json") for p in self.points]

    @classmethod
    def from_records(cls, subject_id: str, records: list[dict]) -> "Track":
        """Rebuild a track, dropping invalid coordinates and out-of-order points."""
        track = cls(subject_id=subject_id)
        for record in records:
            try:
                point = TelemetryPoint(**record)
            except Exception as e:
                logger.debug(f"Skipping unreadable track record for {subject_id}: {e}")
                continue
            if is_valid_coordinate(point):
                track.append(point)
        return track
