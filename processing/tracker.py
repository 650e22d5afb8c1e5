"""
Balloon tracker: the single owner of track, motion filter, landing detector
and telemetry arbiter for the subject currently being followed.

Inbound calls come from the telemetry consumer thread and the HTTP handlers;
they are serialized by one lock so the per-subject state has a single writer
at a time. Prediction calls run on the prediction service's worker threads.
"""

import os
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from contracts.constants import (
    FLYING_STATES,
    TRIGGER_FIRST_TELEMETRY,
    TRIGGER_MANUAL,
    TRIGGER_PERIODIC,
    TRIGGER_STATE_MACHINE,
    Phase,
    TelemetrySource,
)
from contracts.validation import (
    ControlFlags,
    LandingEvent,
    PositionUpdate,
    PredictionResult,
    SmoothedSpeeds,
    StateTransition,
    TelemetryPoint,
)
from prediction.service import PredictionService, PredictionSettings, build_prediction_request
from processing.arbiter import (
    ArbiterInputs,
    ArbiterParams,
    FeedMonitor,
    TelemetryArbiter,
    TransitionEvent,
)
from processing.kafka_publisher import EventPublisher
from processing.landing_detector import LandingDecision, LandingDetector, LandingParams
from processing.metrics import (
    INGEST_LATENCY,
    LANDING_CONFIDENCE,
    LANDING_EVENTS,
    POINTS_IGNORED,
    POINTS_INGESTED,
    STATE_TRANSITIONS,
    TRACK_LENGTH,
)
from processing.smoothing import MotionEstimate, MotionFilter, SmoothingParams
from processing.track import is_valid_coordinate
from processing.track_store import InMemoryTrackStore, TrackStore

logger = logging.getLogger(__name__)

CHECKPOINT_EVERY_POINTS = int(os.getenv("CHECKPOINT_EVERY_POINTS", "10"))
PERIODIC_PREDICTION_SECONDS = float(os.getenv("PERIODIC_PREDICTION_SECONDS", "60"))


class BalloonTracker:
    """Fuses the primary and fallback feeds into one authoritative track."""

    def __init__(
        self,
        store: Optional[TrackStore] = None,
        publisher: Optional[EventPublisher] = None,
        prediction_service: Optional[PredictionService] = None,
        prediction_settings: Optional[PredictionSettings] = None,
        clock: Callable[[], float] = time.time,
        smoothing_params: Optional[SmoothingParams] = None,
        landing_params: Optional[LandingParams] = None,
        arbiter_params: Optional[ArbiterParams] = None,
        checkpoint_every: int = CHECKPOINT_EVERY_POINTS,
        periodic_prediction_s: float = PERIODIC_PREDICTION_SECONDS,
    ):
        self.store = store or InMemoryTrackStore()
        self.publisher = publisher or EventPublisher()
        self.prediction_service = prediction_service
        self.prediction_settings = prediction_settings or PredictionSettings()
        self._clock = clock
        self.checkpoint_every = checkpoint_every
        self.periodic_prediction_s = periodic_prediction_s

        self.motion = MotionFilter(smoothing_params)
        self.detector = LandingDetector(landing_params)
        self.feeds = FeedMonitor(arbiter_params)
        self.arbiter = TelemetryArbiter(arbiter_params, now=clock())

        self.subject_id: Optional[str] = None
        self.phase = Phase.UNKNOWN
        self.startup_complete = False
        self.latest_update: Optional[PositionUpdate] = None
        self.latest_landing: Optional[LandingEvent] = None
        self._latest_point: Optional[TelemetryPoint] = None
        self._points_since_checkpoint = 0
        self._first_point_pending = False
        self._next_periodic_at: Optional[float] = None
        self._lock = threading.RLock()

    # Inbound interface

    def on_primary_telemetry(self, point: TelemetryPoint):
        self._on_telemetry(self._tag(point, TelemetrySource.PRIMARY))

    def on_fallback_telemetry(self, point: TelemetryPoint):
        self._on_telemetry(self._tag(point, TelemetrySource.FALLBACK))

    def on_startup_complete(self):
        with self._lock:
            if self.startup_complete:
                return
            self.startup_complete = True
            now = self._clock()
            logger.info("Startup complete, selecting telemetry source")
            self._handle_transition(self._evaluate(now, self.phase))

    def tick(self):
        """Timer-driven re-evaluation: feed staleness, stale fallback data, periodic prediction."""
        with self._lock:
            now = self._clock()
            self._handle_transition(self._evaluate(now, self.phase))

            latest = self._latest_point
            if (
                latest is not None
                and not self.detector.landed
                and self.detector.is_stale_fallback(latest, now)
            ):
                try:
                    decision = self.detector.assess(
                        self.motion.track, self.phase, now=now, latest=latest
                    )
                except Exception as e:
                    logger.error(f"Landing re-evaluation failed for {self.subject_id}: {e}", exc_info=True)
                    self._evaluate(now, None)
                else:
                    self._apply_decision(decision, now)
                    transition = self._evaluate(now, self.phase)
                    if decision.landed_changed:
                        self._emit_landing(decision, now)
                    self._handle_transition(transition)

            if self._next_periodic_at is not None and now >= self._next_periodic_at:
                self._next_periodic_at = now + self.periodic_prediction_s
                self._trigger_prediction(TRIGGER_PERIODIC)

    def trigger_prediction(self):
        """Manual prediction trigger. Returns the dispatched Future, or None when dropped."""
        with self._lock:
            return self._trigger_prediction(TRIGGER_MANUAL, manual=True)

    # Read side

    @property
    def state(self):
        return self.arbiter.state

    @property
    def flags(self) -> ControlFlags:
        return self.arbiter.flags

    def latest_prediction(self) -> Optional[PredictionResult]:
        if self.prediction_service is None or self.subject_id is None:
            return None
        return self.prediction_service.latest(self.subject_id)

    def status(self) -> dict:
        with self._lock:
            return {
                "subject_id": self.subject_id,
                "telemetry_state": self.arbiter.state.value,
                "phase": self.phase.value,
                "startup_complete": self.startup_complete,
                "flags": self.arbiter.flags.model_dump(mode="json"),
                "track_points": len(self.motion.track) if self.motion.track is not None else 0,
                "landing_confidence": self.detector.confidence,
                "latest_update": self.latest_update.model_dump(mode="json") if self.latest_update else None,
                "latest_landing": self.latest_landing.model_dump(mode="json") if self.latest_landing else None,
            }

    # Internals

    @staticmethod
    def _tag(point: TelemetryPoint, source: TelemetrySource) -> TelemetryPoint:
        if point.source == source:
            return point
        logger.warning(f"Point for {point.subject_id} tagged {point.source.value} arrived on the {source.value} feed")
        return point.model_copy(update={"source": source})

    def _on_telemetry(self, point: TelemetryPoint):
        with self._lock, INGEST_LATENCY.time():
            now = self._clock()
            source = point.source
            subject_changed = (
                source == TelemetrySource.PRIMARY
                and self.subject_id is not None
                and point.subject_id != self.subject_id
            )

            self.feeds.record(source, now)
            self._handle_transition(self._evaluate(now, self.phase, subject_changed))

            if self.arbiter.authoritative_source != source:
                POINTS_IGNORED.labels(source=source.value, reason="not_authoritative").inc()
                logger.debug(
                    f"Ignoring {source.value} point for {point.subject_id} in {self.arbiter.state.value}"
                )
                return

            if not is_valid_coordinate(point):
                POINTS_IGNORED.labels(source=source.value, reason="invalid_coordinate").inc()
                logger.debug(
                    f"Ignoring point for {point.subject_id} with invalid coordinate "
                    f"({point.position.lat}, {point.position.lon})"
                )
                return

            self._ingest(point, now)

    def _ingest(self, point: TelemetryPoint, now: float):
        source = point.source
        if point.subject_id != self.subject_id:
            self._switch_subject(point.subject_id, now)

        try:
            estimate = self.motion.ingest(point)
            decision = self.detector.assess(
                self.motion.track,
                self.phase,
                estimate.slow_vertical_mps,
                now=now,
                latest=point,
            )
        except Exception as e:
            POINTS_IGNORED.labels(source=source.value, reason="processing_error").inc()
            logger.error(f"Failed to process point for {point.subject_id}: {e}", exc_info=True)
            self._evaluate(now, None)
            return

        self._latest_point = point
        self._apply_decision(decision, now)
        POINTS_INGESTED.labels(source=source.value).inc()
        TRACK_LENGTH.set(len(self.motion.track))

        transition = self._evaluate(now, self.phase)

        update = self._position_update(point, estimate)
        self.latest_update = update
        self.publisher.publish_position(update)
        if decision.landed_changed:
            self._emit_landing(decision, now)
        self._handle_transition(transition)

        self._points_since_checkpoint += 1
        if self._points_since_checkpoint >= self.checkpoint_every:
            self._points_since_checkpoint = 0
            self.store.save(self.subject_id, self.motion.track)
            logger.debug(f"Checkpointed {len(self.motion.track)} points for {self.subject_id}")

        if self._first_point_pending:
            self._first_point_pending = False
            self._next_periodic_at = now + self.periodic_prediction_s
            self._trigger_prediction(TRIGGER_FIRST_TELEMETRY)

    def _switch_subject(self, subject_id: str, now: float):
        if self.subject_id is not None and self.motion.track is not None and len(self.motion.track):
            self.store.save(self.subject_id, self.motion.track)

        track = self.store.load(subject_id)
        logger.info(
            f"Tracking subject {subject_id} (was {self.subject_id}), "
            f"restored {len(track) if track else 0} persisted points"
        )
        self.motion.reset(track)
        self.detector.reset()
        self.subject_id = subject_id
        self.phase = Phase.UNKNOWN
        self.latest_update = None
        self.latest_landing = None
        self._latest_point = None
        self._points_since_checkpoint = 0
        self._first_point_pending = True
        self._next_periodic_at = None

    def _apply_decision(self, decision: LandingDecision, now: float):
        if decision.phase == Phase.LANDED and self.phase != Phase.LANDED:
            self.motion.reset_smoothing()
        self.phase = decision.phase
        LANDING_CONFIDENCE.set(decision.confidence)

    def _evaluate(
        self,
        now: float,
        phase: Optional[Phase],
        primary_subject_changed: bool = False,
    ) -> Optional[TransitionEvent]:
        inputs = ArbiterInputs(
            now=now,
            startup_complete=self.startup_complete,
            primary_available=self.feeds.is_available(TelemetrySource.PRIMARY, now),
            fallback_available=self.feeds.is_available(TelemetrySource.FALLBACK, now),
            phase=phase,
            primary_subject_changed=primary_subject_changed,
        )
        return self.arbiter.on_inputs_changed(inputs)

    def _handle_transition(self, event: Optional[TransitionEvent]):
        if event is None:
            return
        STATE_TRANSITIONS.labels(from_state=event.from_state.value, to_state=event.to_state.value).inc()
        self.publisher.publish_transition(
            StateTransition(
                from_state=event.from_state,
                to_state=event.to_state,
                at=event.at,
                flags=event.flags,
            )
        )
        if event.to_state in FLYING_STATES and event.from_state not in FLYING_STATES:
            self._trigger_prediction(TRIGGER_STATE_MACHINE)

    def _emit_landing(self, decision: LandingDecision, now: float):
        if decision.forced:
            kind = "forced"
        elif self.detector.landed:
            kind = "landed"
        else:
            kind = "cleared"
        LANDING_EVENTS.labels(kind=kind).inc()

        event = LandingEvent(
            subject_id=self.subject_id,
            landed=self.detector.landed,
            position=self.detector.landing_position,
            confidence=min(1.0, max(0.0, decision.confidence)),
            forced=decision.forced,
            detected_at=datetime.fromtimestamp(now, tz=timezone.utc),
        )
        self.latest_landing = event
        self.publisher.publish_landing(event)

    def _position_update(self, point: TelemetryPoint, estimate: MotionEstimate) -> PositionUpdate:
        return PositionUpdate(
            subject_id=point.subject_id,
            position=point.position,
            altitude_m=point.altitude_m,
            phase=self.phase,
            speeds=SmoothedSpeeds(
                horizontal_mps=estimate.horizontal_mps,
                vertical_mps=estimate.vertical_mps,
                adjusted_descent_rate_mps=estimate.adjusted_descent_rate_mps,
                raw_horizontal_mps=estimate.raw_horizontal_mps,
                raw_vertical_mps=estimate.raw_vertical_mps,
            ),
            telemetry_state=self.arbiter.state,
            source=point.source,
            timestamp=point.timestamp,
        )

    def _trigger_prediction(self, trigger: str, manual: bool = False):
        if self.prediction_service is None:
            return None
        if not manual and not self.arbiter.flags.should_enable_predictions:
            logger.debug(f"Predictions disabled in {self.arbiter.state.value}, skipping {trigger} trigger")
            return None
        update = self.latest_update
        if update is None:
            logger.debug(f"No position yet, skipping {trigger} trigger")
            return None

        request = build_prediction_request(
            update.subject_id,
            update.position,
            update.altitude_m,
            update.phase,
            update.speeds.adjusted_descent_rate_mps,
            self.prediction_settings,
        )
        return self.prediction_service.trigger(request, trigger)
