"""
Kafka publisher for tracking events.

Publishes position updates, landing events, state transitions and
prediction results, each wrapped in its validated envelope.
"""

import os
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from confluent_kafka import Producer

from contracts.constants import (
    KAFKA_TOPIC_POSITIONS,
    KAFKA_TOPIC_LANDINGS,
    KAFKA_TOPIC_TRANSITIONS,
    KAFKA_TOPIC_PREDICTIONS,
    MESSAGE_TYPE_POSITION_UPDATE,
    MESSAGE_TYPE_LANDING_EVENT,
    MESSAGE_TYPE_STATE_TRANSITION,
    MESSAGE_TYPE_PREDICTION_RESULT,
    SCHEMA_VERSION,
    PROVIDER_SONDETRACK,
)
from contracts.validation import (
    LandingEvent,
    PositionUpdate,
    PredictionResult,
    StateTransition,
    validate_landing_event_envelope,
    validate_position_update_envelope,
    validate_prediction_result_envelope,
    validate_state_transition_envelope,
)
from processing.metrics import EVENTS_PUBLISHED

logger = logging.getLogger(__name__)

REDPANDA_BROKER = os.getenv("REDPANDA_BROKER", "redpanda:9092")
# Use constants from contracts, but allow override via env
KAFKA_TOPIC_POSITIONS = os.getenv("KAFKA_TOPIC_POSITIONS", KAFKA_TOPIC_POSITIONS)
KAFKA_TOPIC_LANDINGS = os.getenv("KAFKA_TOPIC_LANDINGS", KAFKA_TOPIC_LANDINGS)
KAFKA_TOPIC_TRANSITIONS = os.getenv("KAFKA_TOPIC_TRANSITIONS", KAFKA_TOPIC_TRANSITIONS)
KAFKA_TOPIC_PREDICTIONS = os.getenv("KAFKA_TOPIC_PREDICTIONS", KAFKA_TOPIC_PREDICTIONS)


class EventPublisher:
    """Outbound event sink. The base class discards everything."""

    def publish_position(self, update: PositionUpdate):
        pass

    def publish_landing(self, event: LandingEvent):
        pass

    def publish_transition(self, transition: StateTransition):
        pass

    def publish_prediction(self, subject_id: str, result: PredictionResult):
        pass


def build_envelope(message_type: str, payload, **extra) -> dict:
    """Wrap a payload model in the standard envelope dict."""
    return {
        "schema_version": SCHEMA_VERSION,
        "type": message_type,
        "produced_at": datetime.now(timezone.utc).isoformat(),
        "source": {"provider": PROVIDER_SONDETRACK},
        **extra,
        "payload": payload.model_dump(mode="json"),
    }


class KafkaEventPublisher(EventPublisher):
    """Publishes tracking events to Kafka, keyed by subject id."""

    def __init__(self, broker: str = REDPANDA_BROKER, producer: Optional[Producer] = None):
        self.producer = producer or Producer({
            "bootstrap.servers": broker,
            "client.id": "sondetrack-tracker"
        })

    def publish_position(self, update: PositionUpdate):
        envelope = build_envelope(MESSAGE_TYPE_POSITION_UPDATE, update)
        is_valid, _, error = validate_position_update_envelope(envelope)
        if not is_valid:
            logger.error(f"Invalid position envelope: {error}")
            return
        self._produce(KAFKA_TOPIC_POSITIONS, update.subject_id, envelope)

    def publish_landing(self, event: LandingEvent):
        envelope = build_envelope(MESSAGE_TYPE_LANDING_EVENT, event)
        is_valid, _, error = validate_landing_event_envelope(envelope)
        if not is_valid:
            logger.error(f"Invalid landing envelope: {error}")
            return
        self._produce(KAFKA_TOPIC_LANDINGS, event.subject_id, envelope)

    def publish_transition(self, transition: StateTransition):
        envelope = build_envelope(MESSAGE_TYPE_STATE_TRANSITION, transition)
        is_valid, _, error = validate_state_transition_envelope(envelope)
        if not is_valid:
            logger.error(f"Invalid transition envelope: {error}")
            return
        self._produce(KAFKA_TOPIC_TRANSITIONS, None, envelope)

    def publish_prediction(self, subject_id: str, result: PredictionResult):
        envelope = build_envelope(MESSAGE_TYPE_PREDICTION_RESULT, result, subject_id=subject_id)
        is_valid, _, error = validate_prediction_result_envelope(envelope)
        if not is_valid:
            logger.error(f"Invalid prediction envelope: {error}")
            return
        self._produce(KAFKA_TOPIC_PREDICTIONS, subject_id, envelope)

    def _produce(self, topic: str, key: Optional[str], envelope: dict):
        try:
            self.producer.produce(
                topic,
                key=key.encode() if key else None,
                value=json.dumps(envelope),
                callback=self._delivery_callback
            )
            self.producer.poll(0)  # Trigger delivery callbacks
        except Exception as e:
            logger.error(f"Error publishing to {topic}: {e}", exc_info=True)

    @staticmethod
    def _delivery_callback(err, msg):
        if err:
            logger.error(f"Delivery failed: {err}")
        else:
            EVENTS_PUBLISHED.labels(topic=msg.topic()).inc()

    def flush(self, timeout: float = 5.0):
        self.producer.flush(timeout)
