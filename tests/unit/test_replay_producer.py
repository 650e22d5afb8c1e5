"""
Unit tests for the telemetry replay producer.

Timing is observed through an injected sleep; Kafka is replaced by a fake producer.
"""

import json
import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from ingestion import replay_producer
from ingestion.replay_producer import publish_replay, rebase_envelope, replay_iterator

FIXTURE = Path(__file__).parent.parent.parent / "fixtures" / "sample_flight.jsonl"


def envelope(ts, source: str = "primary", subject: str = "S1") -> dict:
    return {
        "schema_version": 1,
        "type": "telemetry",
        "produced_at": "2026-06-14T09:12:03Z",
        "source": {"provider": "radio"},
        "payload": {
            "source": source,
            "subject_id": subject,
            "position": {"lat": 47.0, "lon": 8.0},
            "altitude_m": 1000.0,
            "timestamp": ts,
        },
    }


def write_jsonl(path: Path, lines) -> str:
    with open(path, "w") as f:
        for line in lines:
            f.write(line if isinstance(line, str) else json.dumps(line))
            f.write("\n")
    return str(path)


class SleepRecorder:
    def __init__(self):
        self.delays = []

    def __call__(self, seconds: float):
        self.delays.append(seconds)


class FakeProducer:
    def __init__(self):
        self.produced = []
        self.flushed = False

    def produce(self, topic, key=None, value=None, callback=None):
        self.produced.append({"topic": topic, "key": key, "value": json.loads(value)})

    def poll(self, timeout):
        return 0

    def flush(self, timeout=None):
        self.flushed = True


class TestReplayTiming:

    def test_recorded_gaps_are_slept(self, tmp_path):
        path = write_jsonl(tmp_path / "flight.jsonl", [envelope(100), envelope(102), envelope(105)])
        sleep = SleepRecorder()

        yielded = list(replay_iterator(path, 1.0, sleep=sleep))

        assert len(yielded) == 3
        assert sleep.delays == [2.0, 3.0]

    def test_speed_multiplier_shortens_gaps(self, tmp_path):
        path = write_jsonl(tmp_path / "flight.jsonl", [envelope(100), envelope(104)])
        sleep = SleepRecorder()

        list(replay_iterator(path, 2.0, sleep=sleep))

        assert sleep.delays == [2.0]

    def test_large_gap_is_capped(self, tmp_path):
        path = write_jsonl(tmp_path / "flight.jsonl", [envelope(100), envelope(1000)])
        sleep = SleepRecorder()

        list(replay_iterator(path, 1.0, sleep=sleep))

        assert sleep.delays == [replay_producer.MAX_REPLAY_DELAY_SECONDS]

    def test_out_of_order_sample_yielded_without_sleep(self, tmp_path):
        path = write_jsonl(tmp_path / "flight.jsonl", [envelope(100), envelope(90), envelope(101)])
        sleep = SleepRecorder()

        timestamps = [e["payload"]["timestamp"] for e in replay_iterator(path, 1.0, sleep=sleep)]

        assert timestamps == [100, 90, 101]
        assert sleep.delays == [1.0]

    def test_invalid_json_and_blank_lines_skipped(self, tmp_path):
        path = write_jsonl(tmp_path / "flight.jsonl", [envelope(100), "{broken", "", envelope(101)])

        yielded = list(replay_iterator(path, 1.0, sleep=SleepRecorder()))

        assert len(yielded) == 2

    def test_missing_timestamp_yielded_immediately(self, tmp_path):
        path = write_jsonl(tmp_path / "flight.jsonl", [envelope(100), envelope(None), envelope(100.005)])
        sleep = SleepRecorder()

        yielded = list(replay_iterator(path, 1.0, sleep=sleep))

        assert len(yielded) == 3
        # 5ms gap is below the sleep threshold
        assert sleep.delays == []


class TestRebase:

    def test_timestamp_shifted_and_provider_marked(self):
        original = envelope(100)
        rebased = rebase_envelope(original, 50.0)

        assert rebased["payload"]["timestamp"] == 150
        assert rebased["source"] == {"provider": "replay"}
        assert rebased["produced_at"] != original["produced_at"]
        # Original untouched
        assert original["payload"]["timestamp"] == 100


class TestPublishReplay:

    def test_sample_flight_routes_by_source(self):
        producer = FakeProducer()

        count = publish_replay(producer, str(FIXTURE), 1000.0, rebase=False, sleep=SleepRecorder())

        topics = [m["topic"] for m in producer.produced]
        assert count == len(producer.produced) == 23
        assert topics.count(replay_producer.KAFKA_TOPIC_PRIMARY) == 20
        assert topics.count(replay_producer.KAFKA_TOPIC_FALLBACK) == 3
        assert all(m["key"] == b"V3540241" for m in producer.produced)
        assert producer.flushed

    def test_rebase_moves_first_sample_to_now(self, tmp_path, monkeypatch):
        monkeypatch.setattr(replay_producer.time, "time", lambda: 5000.0)
        path = write_jsonl(tmp_path / "flight.jsonl", [envelope(100), envelope(110)])
        producer = FakeProducer()

        publish_replay(producer, path, 1.0, rebase=True, sleep=SleepRecorder())

        timestamps = [m["value"]["payload"]["timestamp"] for m in producer.produced]
        assert timestamps == [pytest.approx(5000.0), pytest.approx(5010.0)]

    def test_invalid_envelope_not_published(self, tmp_path):
        bad = envelope(101)
        del bad["payload"]["subject_id"]
        path = write_jsonl(tmp_path / "flight.jsonl", [envelope(100), bad])
        producer = FakeProducer()

        count = publish_replay(producer, path, 1.0, rebase=False, sleep=SleepRecorder())

        assert count == 1
