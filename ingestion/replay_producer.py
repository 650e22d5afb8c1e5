#!/usr/bin/env python3
"""
Telemetry Replay Producer - publishes a recorded flight to Redpanda.

Reads a JSONL file of telemetry envelopes (one per line, payload.source set
to "primary" or "fallback") and publishes each to the matching telemetry
topic, keyed by subject id, with the recorded timing preserved.

Sample timestamps are shifted so the first sample is "now"; otherwise the
tracker would treat every replayed fallback sample as stale.
"""

import os
import sys
import time
import json
import logging
from datetime import datetime, timezone
from typing import Callable, Iterator
from pathlib import Path

# Add parent directory to path for contracts import
sys.path.insert(0, str(Path(__file__).parent.parent))

from confluent_kafka import Producer
from prometheus_client import Counter, start_http_server

from contracts.constants import (
    KAFKA_TOPIC_PRIMARY,
    KAFKA_TOPIC_FALLBACK,
    PROVIDER_REPLAY,
    TelemetrySource,
)
from contracts.validation import validate_telemetry_envelope

# ============================================
# Configuration
# ============================================

REPLAY_FILE = os.getenv("REPLAY_FILE", "fixtures/sample_flight.jsonl")
REPLAY_SPEED = float(os.getenv("REPLAY_SPEED", "1.0"))
REPLAY_REBASE_TIMESTAMPS = os.getenv("REPLAY_REBASE_TIMESTAMPS", "true").lower() == "true"
METRICS_PORT = int(os.getenv("REPLAY_METRICS_PORT", "8001"))
MAX_REPLAY_DELAY_SECONDS = 60

REDPANDA_BROKER = os.getenv("REDPANDA_BROKER", "redpanda:9092")
# Use constants from contracts, but allow override via env
KAFKA_TOPIC_PRIMARY = os.getenv("KAFKA_TOPIC_PRIMARY", KAFKA_TOPIC_PRIMARY)
KAFKA_TOPIC_FALLBACK = os.getenv("KAFKA_TOPIC_FALLBACK", KAFKA_TOPIC_FALLBACK)

logger = logging.getLogger(__name__)

# ============================================
# Prometheus Metrics
# ============================================

SAMPLES_PUBLISHED = Counter('replay_samples_published_total', 'Telemetry samples published', ['topic'])
DEADLETTER_TOTAL = Counter('replay_deadletter_total', 'Invalid replay lines')


def create_producer() -> Producer:
    """Create Kafka producer with delivery confirmation."""
    config = {
        "bootstrap.servers": REDPANDA_BROKER,
        "client.id": "sondetrack-replay",
        "acks": "all",
        "retries": 3,
        "retry.backoff.ms": 1000
    }
    return Producer(config)


def delivery_callback(err, msg):
    """Callback for delivery confirmation."""
    if err:
        logger.error(f"Delivery failed: {err}")
    else:
        SAMPLES_PUBLISHED.labels(topic=msg.topic()).inc()


def topic_for(source: str) -> str:
    return KAFKA_TOPIC_PRIMARY if source == TelemetrySource.PRIMARY.value else KAFKA_TOPIC_FALLBACK


# ============================================
# Replay
# ============================================

def replay_iterator(
    filepath: str,
    speed: float,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[dict]:
    """
    Read a recorded JSONL file and yield envelopes with timing preserved.

    - payload.timestamp drives the delay between consecutive samples
    - speed multiplier adjusts replay rate (1.0 = real-time, 2.0 = 2x speed)
    - gaps are capped at 60s of wall time
    - out-of-order samples are yielded immediately without moving the clock
    - unparseable lines are skipped
    """
    logger.info(f"Replay mode: reading from {filepath} at {speed}x speed")

    last_ts = None
    with open(filepath, 'r') as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue

            try:
                envelope = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning(f"Invalid JSON on line {line_num}: {e}")
                DEADLETTER_TOTAL.inc()
                continue

            ts = envelope.get("payload", {}).get("timestamp")
            if not isinstance(ts, (int, float)):
                logger.debug(f"Line {line_num}: No timestamp, yielding immediately")
                yield envelope
                continue

            if last_ts is None:
                last_ts = ts
            elif ts >= last_ts:
                delay_seconds = (ts - last_ts) / speed
                if delay_seconds > MAX_REPLAY_DELAY_SECONDS:
                    logger.warning(
                        f"Large time gap detected: {delay_seconds:.1f}s "
                        f"(capped at {MAX_REPLAY_DELAY_SECONDS}s). Timestamp jump: {last_ts} -> {ts}"
                    )
                    delay_seconds = MAX_REPLAY_DELAY_SECONDS
                # Only sleep if there's a meaningful delay (> 10ms)
                if delay_seconds > 0.01:
                    sleep(delay_seconds)
                last_ts = ts
            else:
                logger.warning(
                    f"Out-of-order timestamp detected at line {line_num}: "
                    f"{ts} < {last_ts} (diff: {last_ts - ts}s). Yielding immediately."
                )

            yield envelope


def rebase_envelope(envelope: dict, offset: float) -> dict:
    """Copy of the envelope with payload.timestamp shifted by offset and a fresh produced_at."""
    rebased = dict(envelope)
    payload = dict(envelope.get("payload", {}))
    if isinstance(payload.get("timestamp"), (int, float)):
        payload["timestamp"] = payload["timestamp"] + offset
    rebased["payload"] = payload
    rebased["produced_at"] = datetime.now(timezone.utc).isoformat()
    rebased["source"] = {"provider": PROVIDER_REPLAY}
    return rebased


def publish_replay(
    producer: Producer,
    filepath: str,
    speed: float,
    rebase: bool = True,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Publish every valid envelope of the recording. Returns the number published."""
    count = 0
    offset = None

    for envelope in replay_iterator(filepath, speed, sleep=sleep):
        if rebase:
            if offset is None:
                first_ts = envelope.get("payload", {}).get("timestamp")
                offset = time.time() - first_ts if isinstance(first_ts, (int, float)) else 0.0
            envelope = rebase_envelope(envelope, offset)

        is_valid, validated, error = validate_telemetry_envelope(envelope)
        if not is_valid:
            logger.warning(f"Invalid telemetry envelope: {error}")
            DEADLETTER_TOTAL.inc()
            continue

        point = validated.payload
        producer.produce(
            topic_for(point.source.value),
            key=point.subject_id.encode(),
            value=json.dumps(envelope).encode(),
            callback=delivery_callback
        )
        producer.poll(0)
        count += 1

    producer.flush(10)
    return count


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stdout
    )

    logger.info("=" * 50)
    logger.info("SondeTrack Telemetry Replay")
    logger.info(f"File: {REPLAY_FILE} at {REPLAY_SPEED}x")
    logger.info(f"Broker: {REDPANDA_BROKER}")
    logger.info("=" * 50)

    if not os.path.exists(REPLAY_FILE):
        logger.error(f"Replay file not found: {REPLAY_FILE}")
        sys.exit(1)

    start_http_server(METRICS_PORT)
    logger.info(f"Prometheus metrics available on :{METRICS_PORT}")

    producer = create_producer()
    count = publish_replay(producer, REPLAY_FILE, REPLAY_SPEED, REPLAY_REBASE_TIMESTAMPS)
    logger.info(f"Replay complete, published {count} samples")


if __name__ == "__main__":
    main()
