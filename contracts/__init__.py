"""
SondeTrack Contracts Package

Provides shared constants and validation for message contracts.
"""

from contracts.constants import *
from contracts.validation import (
    Position,
    TelemetryPoint,
    TelemetryEnvelope,
    SmoothedSpeeds,
    PositionUpdate,
    LandingEvent,
    ControlFlags,
    StateTransition,
    PredictionRequest,
    PredictionResult,
    SondehubResponse,
    PositionUpdateEnvelope,
    LandingEventEnvelope,
    StateTransitionEnvelope,
    PredictionResultEnvelope,
    validate_telemetry_envelope,
    validate_position_update_envelope,
    validate_landing_event_envelope,
    validate_state_transition_envelope,
    validate_prediction_result_envelope,
    validate_sondehub_response,
)

__all__ = [
    # Constants
    "SCHEMA_VERSION",
    "KAFKA_TOPIC_PRIMARY",
    "KAFKA_TOPIC_FALLBACK",
    "KAFKA_TOPIC_POSITIONS",
    "KAFKA_TOPIC_LANDINGS",
    "KAFKA_TOPIC_TRANSITIONS",
    "KAFKA_TOPIC_PREDICTIONS",
    "MESSAGE_TYPE_TELEMETRY",
    "MESSAGE_TYPE_POSITION_UPDATE",
    "MESSAGE_TYPE_LANDING_EVENT",
    "MESSAGE_TYPE_STATE_TRANSITION",
    "MESSAGE_TYPE_PREDICTION_RESULT",
    "TelemetrySource",
    "Phase",
    "TelemetryState",
    # Models
    "Position",
    "TelemetryPoint",
    "TelemetryEnvelope",
    "SmoothedSpeeds",
    "PositionUpdate",
    "LandingEvent",
    "ControlFlags",
    "StateTransition",
    "PredictionRequest",
    "PredictionResult",
    "SondehubResponse",
    "PositionUpdateEnvelope",
    "LandingEventEnvelope",
    "StateTransitionEnvelope",
    "PredictionResultEnvelope",
    # Validators
    "validate_telemetry_envelope",
    "validate_position_update_envelope",
    "validate_landing_event_envelope",
    "validate_state_transition_envelope",
    "validate_prediction_result_envelope",
    "validate_sondehub_response",
]
