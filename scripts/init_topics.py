#!/usr/bin/env python3
"""
Initialize Kafka topics with correct configurations.

Creates:
- telemetry.primary / telemetry.fallback: inbound telemetry, 1d retention
- tracking.positions: position updates, 1d retention
- tracking.landings / tracking.transitions / tracking.predictions: 30d retention
"""

import os
import sys
import logging
import time
from pathlib import Path

# Add parent directory to path for contracts import
sys.path.insert(0, str(Path(__file__).parent.parent))

from confluent_kafka.admin import AdminClient, NewTopic, ConfigResource

from contracts.constants import (
    KAFKA_TOPIC_PRIMARY,
    KAFKA_TOPIC_FALLBACK,
    KAFKA_TOPIC_POSITIONS,
    KAFKA_TOPIC_LANDINGS,
    KAFKA_TOPIC_TRANSITIONS,
    KAFKA_TOPIC_PREDICTIONS,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

REDPANDA_BROKER = os.getenv("REDPANDA_BROKER", "redpanda:9092")

DAY_MS = 24 * 60 * 60 * 1000


def _topic(retention_days: int) -> dict:
    return {
        "num_partitions": 1,
        "replication_factor": 1,
        "config": {
            "cleanup.policy": "delete",  # Append-only with deletion
            "retention.ms": str(retention_days * DAY_MS),
            "min.insync.replicas": "1",
        }
    }


TOPICS = {
    KAFKA_TOPIC_PRIMARY: _topic(1),
    KAFKA_TOPIC_FALLBACK: _topic(1),
    KAFKA_TOPIC_POSITIONS: _topic(1),
    KAFKA_TOPIC_LANDINGS: _topic(30),
    KAFKA_TOPIC_TRANSITIONS: _topic(30),
    KAFKA_TOPIC_PREDICTIONS: _topic(30),
}


def wait_for_broker(admin_client: AdminClient, max_retries: int = 30, retry_delay: int = 2) -> bool:
    """Wait for broker to be available."""
    logger.info(f"Waiting for broker at {REDPANDA_BROKER}...")

    for attempt in range(1, max_retries + 1):
        try:
            admin_client.list_topics(timeout=5)
            logger.info("Broker is available")
            return True
        except Exception as e:
            logger.debug(f"Broker not ready (attempt {attempt}/{max_retries}): {e}")
            if attempt < max_retries:
                time.sleep(retry_delay)

    logger.error(f"Broker not available after {max_retries} attempts")
    return False


def missing_topics(existing: set) -> list[NewTopic]:
    """NewTopic definitions for every configured topic not in `existing`."""
    return [
        NewTopic(
            name,
            num_partitions=settings["num_partitions"],
            replication_factor=settings["replication_factor"],
            config=settings["config"],
        )
        for name, settings in TOPICS.items()
        if name not in existing
    ]


def create_topics(admin_client: AdminClient) -> bool:
    """Create topics if they don't exist."""
    try:
        existing = set(admin_client.list_topics(timeout=10).topics.keys())
    except Exception as e:
        logger.error(f"Failed to list topics: {e}")
        return False

    to_create = missing_topics(existing)
    if not to_create:
        logger.info("All topics already exist")
        return True

    futures = admin_client.create_topics(to_create, request_timeout=30)
    ok = True
    for topic_name, future in futures.items():
        try:
            future.result()
            logger.info(f"Created topic '{topic_name}'")
        except Exception as e:
            logger.error(f"Failed to create topic '{topic_name}': {e}")
            ok = False
    return ok


def verify_topic_configs(admin_client: AdminClient):
    """Log topics whose retention or cleanup policy differs from TOPICS."""
    resources = [ConfigResource(ConfigResource.Type.TOPIC, name) for name in TOPICS]
    for resource, future in admin_client.describe_configs(resources, request_timeout=10).items():
        expected = TOPICS[resource.name]["config"]
        try:
            config = future.result()
        except Exception as e:
            logger.warning(f"Could not verify config for '{resource.name}': {e}")
            continue

        for key in ("cleanup.policy", "retention.ms"):
            actual = config[key].value if key in config else None
            if actual != expected[key]:
                logger.warning(f"Topic '{resource.name}' {key}={actual} (expected {expected[key]})")


def main():
    logger.info("=" * 50)
    logger.info("SondeTrack Topic Initialization")
    logger.info("=" * 50)

    admin_client = AdminClient({
        "bootstrap.servers": REDPANDA_BROKER,
        "client.id": "sondetrack-topic-init"
    })

    if not wait_for_broker(admin_client):
        logger.error("Failed to connect to broker. Exiting.")
        sys.exit(1)

    if not create_topics(admin_client):
        logger.error("Failed to create topics. Exiting.")
        sys.exit(1)

    verify_topic_configs(admin_client)
    logger.info("Topic initialization complete")


if __name__ == "__main__":
    main()
