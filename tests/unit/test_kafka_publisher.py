"""
Unit tests for the Kafka event publisher, using a fake producer.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from prometheus_client import REGISTRY

from contracts.constants import Phase, TelemetrySource, TelemetryState
from contracts.validation import (
    LandingEvent,
    Position,
    PositionUpdate,
    PredictionResult,
    SmoothedSpeeds,
    StateTransition,
    validate_landing_event_envelope,
    validate_position_update_envelope,
    validate_prediction_result_envelope,
    validate_state_transition_envelope,
)
from processing import kafka_publisher
from processing.arbiter import flags_for
from processing.kafka_publisher import KafkaEventPublisher


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


class FakeMessage:
    def __init__(self, topic):
        self._topic = topic

    def topic(self):
        return self._topic


def make_update() -> PositionUpdate:
    return PositionUpdate(
        subject_id="V3540241",
        position=Position(lat=47.0, lon=8.0),
        altitude_m=12000.0,
        phase=Phase.ASCENDING,
        speeds=SmoothedSpeeds(horizontal_mps=10.0, vertical_mps=5.0),
        telemetry_state=TelemetryState.PRIMARY_FLYING,
        source=TelemetrySource.PRIMARY,
        timestamp=1781428323.0,
    )


def test_position_update_published_keyed_by_subject():
    producer = FakeProducer()
    KafkaEventPublisher(producer=producer).publish_position(make_update())

    message = producer.produced[0]
    assert message["topic"] == kafka_publisher.KAFKA_TOPIC_POSITIONS
    assert message["key"] == b"V3540241"
    is_valid, envelope, error = validate_position_update_envelope(message["value"])
    assert is_valid, error
    assert envelope.payload.phase == Phase.ASCENDING


def test_landing_event_published():
    producer = FakeProducer()
    event = LandingEvent(
        subject_id="V3540241",
        landed=True,
        position=Position(lat=47.0, lon=8.0),
        confidence=0.9,
        detected_at=datetime(2026, 6, 14, tzinfo=timezone.utc),
    )
    KafkaEventPublisher(producer=producer).publish_landing(event)

    message = producer.produced[0]
    assert message["topic"] == kafka_publisher.KAFKA_TOPIC_LANDINGS
    assert validate_landing_event_envelope(message["value"])[0]


def test_state_transition_published_without_key():
    producer = FakeProducer()
    transition = StateTransition(
        from_state=TelemetryState.STARTUP,
        to_state=TelemetryState.NO_TELEMETRY,
        at=1781428323.0,
        flags=flags_for(TelemetryState.NO_TELEMETRY),
    )
    KafkaEventPublisher(producer=producer).publish_transition(transition)

    message = producer.produced[0]
    assert message["topic"] == kafka_publisher.KAFKA_TOPIC_TRANSITIONS
    assert message["key"] is None
    assert validate_state_transition_envelope(message["value"])[0]


def test_prediction_published_with_subject():
    producer = FakeProducer()
    result = PredictionResult(path=[Position(lat=47.0, lon=8.0)], landing_point=Position(lat=47.5, lon=8.5))
    KafkaEventPublisher(producer=producer).publish_prediction("V3540241", result)

    message = producer.produced[0]
    assert message["topic"] == kafka_publisher.KAFKA_TOPIC_PREDICTIONS
    is_valid, envelope, error = validate_prediction_result_envelope(message["value"])
    assert is_valid, error
    assert envelope.subject_id == "V3540241"


def test_producer_failure_is_logged_not_raised():
    class BrokenProducer(FakeProducer):
        def produce(self, *args, **kwargs):
            raise BufferError("queue full")

    KafkaEventPublisher(producer=BrokenProducer()).publish_position(make_update())


def test_delivery_callback_counts_success():
    before = REGISTRY.get_sample_value("tracking_events_published_total", {"topic": "tracking.test"}) or 0.0
    KafkaEventPublisher._delivery_callback(None, FakeMessage("tracking.test"))
    after = REGISTRY.get_sample_value("tracking_events_published_total", {"topic": "tracking.test"})
    assert after == before + 1


def test_flush():
    producer = FakeProducer()
    KafkaEventPublisher(producer=producer).flush()
    assert producer.flushed
