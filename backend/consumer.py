"""
Kafka consumer feeding the primary and fallback telemetry topics into the tracker.
"""

import os
import json
import logging
import threading
import time
from typing import Optional

from confluent_kafka import Consumer, KafkaError, KafkaException

from backend.metrics import CONSUMER_RUNNING, MESSAGES_PROCESSED, MESSAGES_REJECTED
from contracts.constants import KAFKA_TOPIC_FALLBACK, KAFKA_TOPIC_PRIMARY, TelemetrySource
from contracts.validation import TelemetryPoint, validate_telemetry_envelope
from processing.tracker import BalloonTracker

logger = logging.getLogger(__name__)

REDPANDA_BROKER = os.getenv("REDPANDA_BROKER", "redpanda:9092")
KAFKA_TOPIC_PRIMARY = os.getenv("KAFKA_TOPIC_PRIMARY", KAFKA_TOPIC_PRIMARY)
KAFKA_TOPIC_FALLBACK = os.getenv("KAFKA_TOPIC_FALLBACK", KAFKA_TOPIC_FALLBACK)
# Time given to both feeds to deliver before the arbiter leaves Startup
STARTUP_GRACE_SECONDS = float(os.getenv("STARTUP_GRACE_SECONDS", "5"))
POLL_TIMEOUT_SECONDS = 1.0


def deserialize_telemetry(msg_value: bytes) -> Optional[TelemetryPoint]:
    """Decode and validate a telemetry envelope. Returns None when rejected."""
    try:
        envelope_dict = json.loads(msg_value.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error(f"Failed to decode JSON: {e}")
        MESSAGES_REJECTED.labels(reason="invalid_json").inc()
        return None

    is_valid, envelope, error = validate_telemetry_envelope(envelope_dict)
    if not is_valid:
        logger.warning(f"Invalid envelope: {error}")
        MESSAGES_REJECTED.labels(reason="schema_validation_failed").inc()
        return None

    return envelope.payload


class TelemetryConsumer:
    """Consumes both telemetry topics on a background thread and drives the tracker's timer."""

    def __init__(self, tracker: BalloonTracker, startup_grace: float = STARTUP_GRACE_SECONDS):
        self.tracker = tracker
        self.startup_grace = startup_grace
        self.consumer = None
        self.running = False
        self._thread = None
        self._topic_sources = {
            KAFKA_TOPIC_PRIMARY: TelemetrySource.PRIMARY,
            KAFKA_TOPIC_FALLBACK: TelemetrySource.FALLBACK,
        }

    def _create_consumer(self) -> Consumer:
        config = {
            'bootstrap.servers': REDPANDA_BROKER,
            'group.id': 'sondetrack-backend',
            'auto.offset.reset': 'latest',  # Only live telemetry matters
            'enable.auto.commit': True,
            'auto.commit.interval.ms': 1000,
        }
        return Consumer(config)

    def dispatch(self, topic: str, msg_value: bytes):
        """Route one raw message to the tracker by the topic it arrived on."""
        source = self._topic_sources.get(topic)
        if source is None:
            logger.warning(f"Message from unexpected topic: {topic}")
            MESSAGES_REJECTED.labels(reason="unknown_topic").inc()
            return

        point = deserialize_telemetry(msg_value)
        if point is None:
            return

        if source == TelemetrySource.PRIMARY:
            self.tracker.on_primary_telemetry(point)
        else:
            self.tracker.on_fallback_telemetry(point)
        MESSAGES_PROCESSED.labels(source=source.value).inc()

    def _consume_loop(self):
        topics = list(self._topic_sources)
        logger.info(f"Starting consumer for topics: {topics}")

        self.consumer = self._create_consumer()
        self.consumer.subscribe(topics)
        started_at = time.monotonic()
        CONSUMER_RUNNING.set(1)

        try:
            while self.running:
                if not self.tracker.startup_complete and time.monotonic() - started_at >= self.startup_grace:
                    self.tracker.on_startup_complete()

                msg = self.consumer.poll(timeout=POLL_TIMEOUT_SECONDS)
                if msg is not None:
                    if msg.error():
                        if msg.error().code() != KafkaError._PARTITION_EOF:
                            logger.error(f"Consumer error: {msg.error()}")
                    else:
                        self.dispatch(msg.topic(), msg.value())

                self.tracker.tick()

        except KafkaException as e:
            logger.error(f"Kafka exception: {e}")
        except Exception as e:
            logger.error(f"Unexpected error in consumer loop: {e}", exc_info=True)
        finally:
            CONSUMER_RUNNING.set(0)
            if self.consumer:
                self.consumer.close()
                logger.info("Consumer closed")

    def start(self):
        """Start consumer in background thread."""
        if self.running:
            logger.warning("Consumer already running")
            return

        self.running = True
        self._thread = threading.Thread(target=self._consume_loop, daemon=True)
        self._thread.start()
        logger.info("Consumer started")

    def stop(self):
        if not self.running:
            return

        self.running = False
        if self._thread:
            self._thread.join(timeout=5.0)
        logger.info("Consumer stopped")
