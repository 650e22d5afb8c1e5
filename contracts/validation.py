"""
Validation library for SondeTrack message contracts.

Provides Pydantic models for runtime validation of everything that crosses a
process boundary: inbound telemetry, outbound tracking events, and the
SondeHub prediction API payloads.
All services should use these models to validate messages before processing.
"""

from typing import Optional, Literal
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator
from contracts.constants import (
    SCHEMA_VERSION,
    MESSAGE_TYPE_TELEMETRY,
    MESSAGE_TYPE_POSITION_UPDATE,
    MESSAGE_TYPE_LANDING_EVENT,
    MESSAGE_TYPE_STATE_TRANSITION,
    MESSAGE_TYPE_PREDICTION_RESULT,
    TelemetrySource,
    Phase,
    TelemetryState,
)


def _parse_iso_datetime(v):
    """Parse ISO 8601 datetime string."""
    if isinstance(v, str):
        return datetime.fromisoformat(v.replace("Z", "+00:00"))
    return v


# ============================================================================
# Shared Components
# ============================================================================

class Position(BaseModel):
    """Geographic position."""
    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90, le=90, description="Latitude in degrees (WGS84)")
    lon: float = Field(ge=-180, le=180, description="Longitude in degrees (WGS84)")


class SourceInfo(BaseModel):
    """Source information for envelope."""
    provider: Literal["radio", "sondehub", "sondetrack", "replay"]


# ============================================================================
# Telemetry
# ============================================================================

class TelemetryPoint(BaseModel):
    """
    One received telemetry sample.

    Immutable once built. Missing numeric fields degrade to zero here, at the
    ingestion boundary, so the tracking core never sees None.
    """
    model_config = ConfigDict(frozen=True)

    source: TelemetrySource
    subject_id: str = Field(min_length=1, description="Flight / sonde name")
    position: Position
    altitude_m: float = 0.0
    horizontal_speed_mps: float = 0.0
    vertical_speed_mps: float = 0.0
    timestamp: float = Field(description="Sample time, unix seconds")

    @field_validator("subject_id", mode="before")
    @classmethod
    def strip_subject_id(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("altitude_m", "horizontal_speed_mps", "vertical_speed_mps", mode="before")
    @classmethod
    def default_missing_numeric(cls, v):
        """Treat missing or non-numeric values as zero."""
        if v is None:
            return 0.0
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        if value != value or value in (float("inf"), float("-inf")):
            return 0.0
        return value

    @property
    def is_primary(self) -> bool:
        return self.source == TelemetrySource.PRIMARY


class TelemetryEnvelope(BaseModel):
    """Envelope for telemetry.primary / telemetry.fallback topics."""
    schema_version: Literal[1] = SCHEMA_VERSION
    type: Literal["telemetry"] = MESSAGE_TYPE_TELEMETRY
    produced_at: datetime
    source: SourceInfo
    payload: TelemetryPoint

    @field_validator("produced_at", mode="before")
    @classmethod
    def parse_produced_at(cls, v):
        return _parse_iso_datetime(v)


# ============================================================================
# Tracking outputs
# ============================================================================

class SmoothedSpeeds(BaseModel):
    """Smoothed motion figures attached to every position update."""
    horizontal_mps: float
    vertical_mps: float
    adjusted_descent_rate_mps: Optional[float] = None
    raw_horizontal_mps: float = 0.0
    raw_vertical_mps: float = 0.0


class PositionUpdate(BaseModel):
    """Authoritative position, emitted on every ingested point."""
    subject_id: str
    position: Position
    altitude_m: float
    phase: Phase
    speeds: SmoothedSpeeds
    telemetry_state: TelemetryState
    source: TelemetrySource
    timestamp: float


class LandingEvent(BaseModel):
    """Emitted when the landed flag is set or cleared."""
    subject_id: str
    landed: bool
    position: Optional[Position] = None
    confidence: float = Field(ge=0, le=1)
    forced: bool = False
    detected_at: datetime

    @field_validator("detected_at", mode="before")
    @classmethod
    def parse_detected_at(cls, v):
        return _parse_iso_datetime(v)


class ControlFlags(BaseModel):
    """Outputs derived from the telemetry state."""
    should_enable_predictions: bool
    should_enable_fallback_polling: bool
    is_in_fallback_mode: bool
    is_primary_stale: bool = True
    is_fallback_stale: bool = True


class StateTransition(BaseModel):
    """Telemetry arbiter state change."""
    from_state: TelemetryState
    to_state: TelemetryState
    at: float
    flags: ControlFlags


# ============================================================================
# Prediction
# ============================================================================

class PredictionRequest(BaseModel):
    """Parameters for one call to the trajectory prediction API."""
    subject_id: str
    position: Position
    altitude_m: float
    ascent_rate_mps: float = Field(gt=0)
    descent_rate_mps: float = Field(gt=0)
    burst_altitude_m: float
    balloon_descending: bool


class TrajectoryPoint(BaseModel):
    """Single point of a SondeHub trajectory stage."""
    altitude: float
    time: datetime = Field(alias="datetime")
    latitude: float
    longitude: float

    @field_validator("time", mode="before")
    @classmethod
    def parse_time(cls, v):
        return _parse_iso_datetime(v)

    @field_validator("longitude")
    @classmethod
    def normalize_longitude(cls, v: float) -> float:
        """Tawhiri reports longitudes in [0, 360)."""
        return v - 360.0 if v > 180.0 else v


class SondehubStage(BaseModel):
    stage: str
    trajectory: list[TrajectoryPoint]


class SondehubResponse(BaseModel):
    """Subset of the SondeHub Tawhiri v2 response we rely on."""
    prediction: list[SondehubStage]
    metadata: Optional[dict] = None
    request: Optional[dict] = None
    warnings: Optional[dict] = None


class PredictionResult(BaseModel):
    """Parsed (and cached) prediction."""
    path: list[Position]
    burst_point: Optional[Position] = None
    landing_point: Optional[Position] = None
    landing_time: Optional[datetime] = None
    launch_point: Optional[Position] = None
    burst_altitude_m: Optional[float] = None


# ============================================================================
# Outbound Envelopes (Kafka Topics)
# ============================================================================

class _OutboundEnvelope(BaseModel):
    schema_version: Literal[1] = SCHEMA_VERSION
    produced_at: datetime
    source: SourceInfo

    @field_validator("produced_at", mode="before")
    @classmethod
    def parse_produced_at(cls, v):
        return _parse_iso_datetime(v)


class PositionUpdateEnvelope(_OutboundEnvelope):
    """Envelope for tracking.positions topic."""
    type: Literal["position_update"] = MESSAGE_TYPE_POSITION_UPDATE
    payload: PositionUpdate


class LandingEventEnvelope(_OutboundEnvelope):
    """Envelope for tracking.landings topic."""
    type: Literal["landing_event"] = MESSAGE_TYPE_LANDING_EVENT
    payload: LandingEvent


class StateTransitionEnvelope(_OutboundEnvelope):
    """Envelope for tracking.transitions topic."""
    type: Literal["state_transition"] = MESSAGE_TYPE_STATE_TRANSITION
    payload: StateTransition


class PredictionResultEnvelope(_OutboundEnvelope):
    """Envelope for tracking.predictions topic."""
    type: Literal["prediction_result"] = MESSAGE_TYPE_PREDICTION_RESULT
    subject_id: str
    payload: PredictionResult


# ============================================================================
# Validation Functions
# ============================================================================

def validate_telemetry_envelope(data: dict) -> tuple[bool, Optional[TelemetryEnvelope], Optional[str]]:
    """
    Validate TelemetryEnvelope.

    Returns:
        (is_valid, envelope_or_none, error_message_or_none)
    """
    try:
        envelope = TelemetryEnvelope(**data)
        return True, envelope, None
    except Exception as e:
        return False, None, str(e)


def validate_position_update_envelope(data: dict) -> tuple[bool, Optional[PositionUpdateEnvelope], Optional[str]]:
    """
    Validate PositionUpdateEnvelope.

    Returns:
        (is_valid, envelope_or_none, error_message_or_none)
    """
    try:
        envelope = PositionUpdateEnvelope(**data)
        return True, envelope, None
    except Exception as e:
        return False, None, str(e)


def validate_landing_event_envelope(data: dict) -> tuple[bool, Optional[LandingEventEnvelope], Optional[str]]:
    """
    Validate LandingEventEnvelope.

    Returns:
        (is_valid, envelope_or_none, error_message_or_none)
    """
    try:
        envelope = LandingEventEnvelope(**data)
        return True, envelope, None
    except Exception as e:
        return False, None, str(e)


def validate_state_transition_envelope(data: dict) -> tuple[bool, Optional[StateTransitionEnvelope], Optional[str]]:
    """Validate StateTransitionEnvelope."""
    try:
        envelope = StateTransitionEnvelope(**data)
        return True, envelope, None
    except Exception as e:
        return False, None, str(e)


def validate_prediction_result_envelope(data: dict) -> tuple[bool, Optional[PredictionResultEnvelope], Optional[str]]:
    """Validate PredictionResultEnvelope."""
    try:
        envelope = PredictionResultEnvelope(**data)
        return True, envelope, None
    except Exception as e:
        return False, None, str(e)


def validate_sondehub_response(data: dict) -> tuple[bool, Optional[SondehubResponse], Optional[str]]:
    """
    Validate a raw SondeHub Tawhiri response body.

    Returns:
        (is_valid, response_or_none, error_message_or_none)
    """
    try:
        response = SondehubResponse(**data)
        return True, response, None
    except Exception as e:
        return False, None, str(e)
