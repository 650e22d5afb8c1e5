"""
Unit tests for the per-subject track and geodesy helpers.
"""

import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from contracts.constants import TelemetrySource
from contracts.validation import Position, TelemetryPoint
from processing.track import Track, distance_m, haversine_m, is_valid_coordinate


def make_point(ts: float, lat: float = 47.0, lon: float = 8.0, alt: float = 1000.0, subject: str = "S1") -> TelemetryPoint:
    return TelemetryPoint(
        source=TelemetrySource.PRIMARY,
        subject_id=subject,
        position=Position(lat=lat, lon=lon),
        altitude_m=alt,
        timestamp=ts,
    )


def test_haversine_one_degree_latitude():
    assert haversine_m(47.0, 8.0, 48.0, 8.0) == pytest.approx(111_195, rel=1e-3)


def test_distance_between_identical_positions_is_zero():
    p = Position(lat=47.0, lon=8.0)
    assert distance_m(p, p) == 0.0


@pytest.mark.parametrize("lat,lon,expected", [
    (47.0, 8.0, True),
    (0.0, 0.0, False),
    (0.0, 8.0, False),
    (47.0, 0.0, False),
])
def test_is_valid_coordinate(lat, lon, expected):
    assert is_valid_coordinate(make_point(0, lat=lat, lon=lon)) is expected


class TestTrack:

    def test_append_keeps_time_order(self):
        track = Track(subject_id="S1")
        assert track.append(make_point(10))
        assert track.append(make_point(10))  # equal timestamps tolerated
        assert not track.append(make_point(5))
        assert [p.timestamp for p in track.points] == [10, 10]

    def test_window_is_relative_to_latest_point(self):
        track = Track(subject_id="S1")
        for ts in range(0, 100, 10):
            track.append(make_point(ts))

        window = track.window(30)
        assert [p.timestamp for p in window] == [60, 70, 80, 90]

    def test_window_of_empty_track(self):
        assert Track(subject_id="S1").window(30) == []

    def test_recent(self):
        track = Track(subject_id="S1")
        for ts in range(5):
            track.append(make_point(ts))
        assert [p.timestamp for p in track.recent(2)] == [3, 4]
        assert track.recent(0) == []
        assert len(track.recent(50)) == 5

    def test_from_records_cleans_invalid_points(self):
        records = [
            make_point(1).model_dump(mode="json"),
            make_point(2, lat=0.0, lon=0.0).model_dump(mode="json"),
            {"garbage": True},
            make_point(3).model_dump(mode="json"),
            make_point(0).model_dump(mode="json"),  # out of order
        ]
        track = Track.from_records("S1", records)
        assert [p.timestamp for p in track.points] == [1, 3]

    def test_to_records_is_json_ready(self):
        track = Track(subject_id="S1")
        track.append(make_point(1))
        record = track.to_records()[0]
        assert record["source"] == "primary"
        assert record["position"] == {"lat": 47.0, "lon": 8.0}
