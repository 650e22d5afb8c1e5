"""
Telemetry source arbitration.

Decides which feed is authoritative from feed availability, the landing
detector's phase and the startup signal. `on_inputs_changed` is called
synchronously after every ingestion, phase recomputation and timer tick.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from contracts.constants import (
    FALLBACK_STATES,
    FLYING_STATES,
    PRIMARY_STATES,
    Phase,
    TelemetrySource,
    TelemetryState,
)
from contracts.validation import ControlFlags

logger = logging.getLogger(__name__)


@dataclass
class ArbiterParams:
    primary_stale_s: float = 3.0
    fallback_stale_s: float = 30.0
    primary_reacquire_hold_s: float = 30.0


@dataclass(frozen=True)
class ArbiterInputs:
    """
    Snapshot of everything the state machine depends on.

    `phase` is None when the landing detector could not produce one; the
    arbiter then holds its state.
    """
    now: float
    startup_complete: bool
    primary_available: bool
    fallback_available: bool
    phase: Optional[Phase]
    primary_subject_changed: bool = False


@dataclass(frozen=True)
class TransitionEvent:
    from_state: TelemetryState
    to_state: TelemetryState
    at: float
    flags: ControlFlags


class FeedMonitor:
    """Tracks when each feed last delivered a sample (receipt time)."""

    def __init__(self, params: Optional[ArbiterParams] = None):
        self.params = params or ArbiterParams()
        self.last_received: dict[TelemetrySource, float] = {}

    def record(self, source: TelemetrySource, now: float):
        self.last_received[source] = now

    def is_available(self, source: TelemetrySource, now: float) -> bool:
        last = self.last_received.get(source)
        if last is None:
            return False
        limit = (
            self.params.primary_stale_s
            if source == TelemetrySource.PRIMARY
            else self.params.fallback_stale_s
        )
        return now - last <= limit


def flags_for(state: TelemetryState, primary_stale: bool = True, fallback_stale: bool = True) -> ControlFlags:
    return ControlFlags(
        should_enable_predictions=state in FLYING_STATES,
        should_enable_fallback_polling=state in FALLBACK_STATES,
        is_in_fallback_mode=state in FALLBACK_STATES,
        is_primary_stale=primary_stale,
        is_fallback_stale=fallback_stale,
    )


class TelemetryArbiter:
    """State machine choosing the authoritative telemetry feed."""

    def __init__(self, params: Optional[ArbiterParams] = None, now: float = 0.0):
        self.params = params or ArbiterParams()
        self.state = TelemetryState.STARTUP
        self.entered_at = now
        self.fallback_entered_at: Optional[float] = None
        self.flags = flags_for(self.state)

    @property
    def authoritative_source(self) -> Optional[TelemetrySource]:
        if self.state in PRIMARY_STATES:
            return TelemetrySource.PRIMARY
        if self.state in FALLBACK_STATES:
            return TelemetrySource.FALLBACK
        return None

    def on_inputs_changed(self, inputs: ArbiterInputs) -> Optional[TransitionEvent]:
        """Apply the transition table. Returns the transition, if any."""
        self.flags = flags_for(
            self.state,
            primary_stale=not inputs.primary_available,
            fallback_stale=not inputs.fallback_available,
        )
        if inputs.phase is None:
            logger.debug(f"Phase unavailable, holding {self.state.value}")
            return None

        new_state = self.next_state(inputs)
        if new_state == self.state:
            return None

        old_state = self.state
        self.state = new_state
        self.entered_at = inputs.now
        if new_state in FALLBACK_STATES:
            if old_state not in FALLBACK_STATES:
                self.fallback_entered_at = inputs.now
        else:
            self.fallback_entered_at = None
        self.flags = flags_for(
            new_state,
            primary_stale=not inputs.primary_available,
            fallback_stale=not inputs.fallback_available,
        )

        logger.info(
            f"TelemetryState: {old_state.value} -> {new_state.value} | "
            f"primary={inputs.primary_available} fallback={inputs.fallback_available} "
            f"phase={inputs.phase.value} startup={inputs.startup_complete}"
        )
        return TransitionEvent(from_state=old_state, to_state=new_state, at=inputs.now, flags=self.flags)

    def next_state(self, inputs: ArbiterInputs) -> TelemetryState:
        landed = inputs.phase == Phase.LANDED
        state = self.state

        if state == TelemetryState.STARTUP:
            if not inputs.startup_complete:
                return TelemetryState.STARTUP
            return self._select_source(inputs, landed)

        if state == TelemetryState.PRIMARY_FLYING:
            if not inputs.primary_available:
                if inputs.fallback_available:
                    return TelemetryState.FALLBACK_LANDED if landed else TelemetryState.FALLBACK_FLYING
                return TelemetryState.NO_TELEMETRY
            return TelemetryState.PRIMARY_LANDED if landed else TelemetryState.PRIMARY_FLYING

        if state == TelemetryState.PRIMARY_LANDED:
            # The fallback feed never substitutes for a landed primary feed
            if not inputs.primary_available:
                return TelemetryState.NO_TELEMETRY
            return TelemetryState.PRIMARY_LANDED if landed else TelemetryState.PRIMARY_FLYING

        if state in FALLBACK_STATES:
            if inputs.primary_available and self._primary_switch_allowed(inputs):
                return TelemetryState.PRIMARY_LANDED if landed else TelemetryState.PRIMARY_FLYING
            if not inputs.fallback_available:
                return TelemetryState.NO_TELEMETRY
            return TelemetryState.FALLBACK_LANDED if landed else TelemetryState.FALLBACK_FLYING

        # NO_TELEMETRY
        return self._select_source(inputs, landed)

    def _select_source(self, inputs: ArbiterInputs, landed: bool) -> TelemetryState:
        if inputs.primary_available:
            return TelemetryState.PRIMARY_LANDED if landed else TelemetryState.PRIMARY_FLYING
        if inputs.fallback_available:
            return TelemetryState.FALLBACK_LANDED if landed else TelemetryState.FALLBACK_FLYING
        return TelemetryState.NO_TELEMETRY

    def _primary_switch_allowed(self, inputs: ArbiterInputs) -> bool:
        # A different balloon on the radio link is switched to immediately
        if inputs.primary_subject_changed:
            return True
        hold = self.params.primary_reacquire_hold_s
        in_fallback = inputs.now - (self.fallback_entered_at if self.fallback_entered_at is not None else self.entered_at)
        return in_fallback >= hold
