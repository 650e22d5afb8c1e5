"""
Shared constants for SondeTrack services.

This module provides a single source of truth for:
- Kafka topic names
- Message types
- Schema versions
- Telemetry source, phase and state vocabularies

All services should import from this module to ensure consistency.
"""

from enum import Enum

# Schema version
SCHEMA_VERSION = 1

# Kafka Topic Names
KAFKA_TOPIC_PRIMARY = "telemetry.primary"
KAFKA_TOPIC_FALLBACK = "telemetry.fallback"
KAFKA_TOPIC_POSITIONS = "tracking.positions"
KAFKA_TOPIC_LANDINGS = "tracking.landings"
KAFKA_TOPIC_TRANSITIONS = "tracking.transitions"
KAFKA_TOPIC_PREDICTIONS = "tracking.predictions"

# Message Types
MESSAGE_TYPE_TELEMETRY = "telemetry"
MESSAGE_TYPE_POSITION_UPDATE = "position_update"
MESSAGE_TYPE_LANDING_EVENT = "landing_event"
MESSAGE_TYPE_STATE_TRANSITION = "state_transition"
MESSAGE_TYPE_PREDICTION_RESULT = "prediction_result"

# Data Providers
PROVIDER_RADIO = "radio"
PROVIDER_SONDEHUB = "sondehub"
PROVIDER_SONDETRACK = "sondetrack"
PROVIDER_REPLAY = "replay"

# Prediction triggers
TRIGGER_PERIODIC = "periodic"
TRIGGER_MANUAL = "manual"
TRIGGER_FIRST_TELEMETRY = "first-telemetry"
TRIGGER_STATE_MACHINE = "state-machine"


class TelemetrySource(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


class Phase(str, Enum):
    ASCENDING = "ascending"
    DESCENDING_ABOVE_10K = "descending_above_10k"
    DESCENDING_BELOW_10K = "descending_below_10k"
    LANDED = "landed"
    UNKNOWN = "unknown"


class TelemetryState(str, Enum):
    STARTUP = "startup"
    PRIMARY_FLYING = "primary_flying"
    PRIMARY_LANDED = "primary_landed"
    FALLBACK_FLYING = "fallback_flying"
    FALLBACK_LANDED = "fallback_landed"
    NO_TELEMETRY = "no_telemetry"


FLYING_STATES = frozenset({TelemetryState.PRIMARY_FLYING, TelemetryState.FALLBACK_FLYING})
FALLBACK_STATES = frozenset({TelemetryState.FALLBACK_FLYING, TelemetryState.FALLBACK_LANDED})
PRIMARY_STATES = frozenset({TelemetryState.PRIMARY_FLYING, TelemetryState.PRIMARY_LANDED})

# Altitude separating the two descending phases (m)
DESCENT_PHASE_ALTITUDE_M = 10_000.0
