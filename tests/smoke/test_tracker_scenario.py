"""
Smoke test: end-to-end flights through the balloon tracker.

Drives BalloonTracker with a controlled clock and verifies:
1. Telemetry state transitions between the primary and fallback feeds
2. Landing detection, including the forced landing on stale fallback data
3. Event publication order
4. Track checkpointing and restore
5. Prediction triggers
"""

import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from contracts.constants import (
    TRIGGER_FIRST_TELEMETRY,
    TRIGGER_MANUAL,
    TRIGGER_PERIODIC,
    TRIGGER_STATE_MACHINE,
    Phase,
    TelemetrySource,
    TelemetryState,
)
from contracts.validation import Position, TelemetryPoint
from processing.kafka_publisher import EventPublisher
from processing.track import Track
from processing.track_store import InMemoryTrackStore
from processing.tracker import BalloonTracker

T0 = 1781428323.0
SUBJECT = "V3540241"


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingPublisher(EventPublisher):
    """Keeps every outbound event, in order."""

    def __init__(self):
        self.events = []

    def publish_position(self, update):
        self.events.append(("position", update))

    def publish_landing(self, event):
        self.events.append(("landing", event))

    def publish_transition(self, transition):
        self.events.append(("transition", transition))

    def of_kind(self, kind: str) -> list:
        return [e for k, e in self.events if k == kind]


class RecordingPredictionService:
    """Records trigger calls instead of calling the prediction API."""

    def __init__(self):
        self.calls = []

    def trigger(self, request, trigger):
        self.calls.append((trigger, request))
        return object()

    def latest(self, subject_id):
        return None

    @property
    def triggers(self) -> list:
        return [trigger for trigger, _ in self.calls]


def point(
    source: TelemetrySource,
    timestamp: float,
    lat: float = 47.0,
    lon: float = 8.0,
    altitude_m: float = 1000.0,
    horizontal_speed_mps: float = 11.0,
    vertical_speed_mps: float = 5.0,
    subject_id: str = SUBJECT,
) -> TelemetryPoint:
    return TelemetryPoint(
        source=source,
        subject_id=subject_id,
        position=Position(lat=lat, lon=lon),
        altitude_m=altitude_m,
        horizontal_speed_mps=horizontal_speed_mps,
        vertical_speed_mps=vertical_speed_mps,
        timestamp=timestamp,
    )


def flying(t: float, source: TelemetrySource = TelemetrySource.PRIMARY, **kwargs) -> TelemetryPoint:
    """Ascending sample t seconds into the flight, moving north at ~11 m/s."""
    return point(source, T0 + t, lat=47.0 + t * 0.0001, altitude_m=1000.0 + t * 5.0, **kwargs)


def stationary(t: float, source: TelemetrySource = TelemetrySource.PRIMARY) -> TelemetryPoint:
    return point(
        source, T0 + t, lat=47.5, lon=8.5, altitude_m=412.0,
        horizontal_speed_mps=0.0, vertical_speed_mps=0.0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def predictions():
    return RecordingPredictionService()


@pytest.fixture
def store():
    return InMemoryTrackStore()


@pytest.fixture
def tracker(clock, publisher, predictions, store):
    return BalloonTracker(
        store=store,
        publisher=publisher,
        prediction_service=predictions,
        clock=clock,
    )


def send_primary(tracker, clock, sample: TelemetryPoint):
    clock.now = sample.timestamp
    tracker.on_primary_telemetry(sample)


def fly_primary(tracker, clock, seconds: range):
    for t in seconds:
        send_primary(tracker, clock, flying(t))


class TestPrimaryLossForcesFallbackLanding:
    """Primary link lost near the ground, fallback network reports an old fix."""

    def test_stale_fallback_fix_forces_landing(self, tracker, clock, publisher):
        tracker.on_startup_complete()
        assert tracker.state == TelemetryState.NO_TELEMETRY

        fly_primary(tracker, clock, range(0, 6))
        assert tracker.state == TelemetryState.PRIMARY_FLYING
        assert tracker.detector.confidence < 0.75
        assert tracker.phase == Phase.ASCENDING

        # Radio silent for 5s; the network's last fix is 150s old
        clock.now = T0 + 10
        last = flying(5)
        fix = point(
            TelemetrySource.FALLBACK,
            clock.now - 150,
            lat=last.position.lat,
            lon=last.position.lon,
            altitude_m=last.altitude_m,
            horizontal_speed_mps=0.0,
            vertical_speed_mps=0.0,
        )
        publisher.events.clear()
        tracker.on_fallback_telemetry(fix)

        assert tracker.state == TelemetryState.FALLBACK_LANDED
        assert tracker.phase == Phase.LANDED
        # Out-of-order fix is not appended
        assert len(tracker.motion.track) == 6

        kinds = [kind for kind, _ in publisher.events]
        assert kinds == ["transition", "position", "landing", "transition"]

        first, position, landing, second = [event for _, event in publisher.events]
        assert (first.from_state, first.to_state) == (
            TelemetryState.PRIMARY_FLYING, TelemetryState.FALLBACK_FLYING
        )
        assert position.phase == Phase.LANDED
        assert position.source == TelemetrySource.FALLBACK
        assert landing.landed and landing.forced
        assert landing.position == fix.position
        assert (second.from_state, second.to_state) == (
            TelemetryState.FALLBACK_FLYING, TelemetryState.FALLBACK_LANDED
        )

        flags = tracker.flags
        assert not flags.should_enable_predictions
        assert flags.is_in_fallback_mode
        assert flags.should_enable_fallback_polling
        assert flags.is_primary_stale

    def test_tick_forces_landing_when_fallback_fix_ages(self, tracker, clock, publisher):
        tracker.on_startup_complete()
        send_primary(tracker, clock, flying(0))

        clock.now = T0 + 5
        tracker.on_fallback_telemetry(flying(-95, TelemetrySource.FALLBACK))
        assert tracker.state == TelemetryState.FALLBACK_FLYING
        assert tracker.phase != Phase.LANDED

        clock.now = T0 + 30
        tracker.tick()

        assert tracker.state == TelemetryState.FALLBACK_LANDED
        landing = publisher.of_kind("landing")
        assert len(landing) == 1 and landing[0].forced


class TestTelemetryStates:

    def test_points_before_startup_are_ignored(self, tracker, clock, publisher):
        send_primary(tracker, clock, flying(0))

        assert tracker.state == TelemetryState.STARTUP
        assert tracker.subject_id is None
        assert publisher.of_kind("position") == []

        tracker.on_startup_complete()
        assert tracker.state == TelemetryState.PRIMARY_FLYING

    def test_startup_complete_runs_once(self, tracker, publisher):
        tracker.on_startup_complete()
        tracker.on_startup_complete()
        assert len(publisher.of_kind("transition")) == 1

    def test_primary_loss_without_fallback(self, tracker, clock, publisher, predictions):
        tracker.on_startup_complete()
        send_primary(tracker, clock, flying(0))

        clock.now = T0 + 4
        tracker.tick()
        assert tracker.state == TelemetryState.NO_TELEMETRY
        assert not tracker.flags.should_enable_predictions

        # Recovery re-enables predictions with a state-machine trigger
        send_primary(tracker, clock, flying(5))
        assert tracker.state == TelemetryState.PRIMARY_FLYING
        assert predictions.triggers[-1] == TRIGGER_STATE_MACHINE

    def test_fallback_ignored_while_primary_is_fresh(self, tracker, clock, publisher):
        tracker.on_startup_complete()
        send_primary(tracker, clock, flying(0))

        clock.now = T0 + 1
        tracker.on_fallback_telemetry(flying(1, TelemetrySource.FALLBACK))

        assert tracker.state == TelemetryState.PRIMARY_FLYING
        assert len(tracker.motion.track) == 1
        assert len(publisher.of_kind("position")) == 1

    def test_placeholder_coordinate_ignored(self, tracker, clock, publisher):
        tracker.on_startup_complete()
        send_primary(tracker, clock, point(TelemetrySource.PRIMARY, T0, lat=0.0, lon=0.0))

        assert tracker.state == TelemetryState.PRIMARY_FLYING
        assert tracker.subject_id is None
        assert publisher.of_kind("position") == []

    def test_primary_reacquire_is_held(self, tracker, clock):
        tracker.on_startup_complete()
        send_primary(tracker, clock, flying(0))

        clock.now = T0 + 5
        tracker.on_fallback_telemetry(flying(5, TelemetrySource.FALLBACK))
        assert tracker.state == TelemetryState.FALLBACK_FLYING

        states = {}
        for t in range(10, 40):
            clock.now = T0 + t
            tracker.on_fallback_telemetry(flying(t, TelemetrySource.FALLBACK))
            tracker.on_primary_telemetry(flying(t))
            states[t] = tracker.state

        # Fallback entered at t=5; primary back since t=10
        assert all(states[t] == TelemetryState.FALLBACK_FLYING for t in range(10, 35))
        assert all(states[t] == TelemetryState.PRIMARY_FLYING for t in range(35, 40))
        assert tracker.latest_update.source == TelemetrySource.PRIMARY

    def test_primary_returning_after_long_fallback_stint_is_used_at_once(self, tracker, clock):
        tracker.on_startup_complete()
        send_primary(tracker, clock, flying(0))

        for t in range(5, 300, 10):
            clock.now = T0 + t
            tracker.on_fallback_telemetry(flying(t, TelemetrySource.FALLBACK))
        assert tracker.state == TelemetryState.FALLBACK_FLYING

        send_primary(tracker, clock, flying(300))

        assert tracker.state == TelemetryState.PRIMARY_FLYING
        assert tracker.latest_update.source == TelemetrySource.PRIMARY
        assert tracker.latest_update.timestamp == T0 + 300

    def test_new_primary_subject_switches_immediately(self, tracker, clock, store):
        tracker.on_startup_complete()
        send_primary(tracker, clock, flying(0))

        clock.now = T0 + 5
        tracker.on_fallback_telemetry(flying(5, TelemetrySource.FALLBACK))
        assert tracker.state == TelemetryState.FALLBACK_FLYING

        send_primary(tracker, clock, flying(6, subject_id="S2"))

        assert tracker.state == TelemetryState.PRIMARY_FLYING
        assert tracker.subject_id == "S2"
        assert len(tracker.motion.track) == 1
        # Previous subject's track was persisted on switch
        assert len(store.load(SUBJECT)) == 2

    def test_detector_failure_holds_state(self, tracker, clock, publisher, monkeypatch):
        tracker.on_startup_complete()
        send_primary(tracker, clock, flying(0))
        positions_before = len(publisher.of_kind("position"))

        def broken(*args, **kwargs):
            raise RuntimeError("detector failure")

        monkeypatch.setattr(tracker.detector, "assess", broken)
        send_primary(tracker, clock, flying(1))

        assert tracker.state == TelemetryState.PRIMARY_FLYING
        assert len(publisher.of_kind("position")) == positions_before


class TestLanding:

    def test_stationary_primary_lands(self, tracker, clock, publisher):
        tracker.on_startup_complete()
        for t in range(0, 8):
            send_primary(tracker, clock, stationary(t))

        assert tracker.state == TelemetryState.PRIMARY_LANDED
        assert tracker.phase == Phase.LANDED

        landing = publisher.of_kind("landing")
        assert len(landing) == 1
        assert landing[0].landed and not landing[0].forced
        assert landing[0].confidence >= 0.75
        assert landing[0].position == Position(lat=47.5, lon=8.5)

        status = tracker.status()
        assert status["telemetry_state"] == "primary_landed"
        assert status["latest_landing"]["landed"] is True


class TestPersistence:

    def test_checkpoint_every_ten_points(self, tracker, clock, store):
        tracker.on_startup_complete()
        fly_primary(tracker, clock, range(0, 9))
        assert store.load(SUBJECT) is None

        send_primary(tracker, clock, flying(9))
        assert len(store.load(SUBJECT)) == 10

    def test_persisted_track_is_restored(self, tracker, clock, store):
        persisted = Track(subject_id=SUBJECT)
        for t in range(-10, -5):
            persisted.append(flying(t))
        store.save(SUBJECT, persisted)

        tracker.on_startup_complete()
        send_primary(tracker, clock, flying(0))

        assert len(tracker.motion.track) == 6
        assert tracker.status()["track_points"] == 6


class TestPredictionTriggers:

    def test_first_telemetry_and_periodic(self, tracker, clock, predictions):
        tracker.on_startup_complete()
        send_primary(tracker, clock, flying(0))
        assert predictions.triggers == [TRIGGER_FIRST_TELEMETRY]

        trigger, request = predictions.calls[0]
        assert request.subject_id == SUBJECT
        assert request.position == flying(0).position
        assert not request.balloon_descending

        for t in range(1, 61):
            send_primary(tracker, clock, flying(t))
            tracker.tick()

        assert predictions.triggers == [TRIGGER_FIRST_TELEMETRY, TRIGGER_PERIODIC]

    def test_manual_trigger(self, tracker, clock, predictions):
        tracker.on_startup_complete()
        assert tracker.trigger_prediction() is None

        send_primary(tracker, clock, flying(0))
        assert tracker.trigger_prediction() is not None
        assert predictions.triggers[-1] == TRIGGER_MANUAL

    def test_no_periodic_prediction_once_landed(self, tracker, clock, predictions):
        tracker.on_startup_complete()
        for t in range(0, 61):
            send_primary(tracker, clock, stationary(t))
            tracker.tick()

        assert tracker.state == TelemetryState.PRIMARY_LANDED
        assert predictions.triggers == [TRIGGER_FIRST_TELEMETRY]
