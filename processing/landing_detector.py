"""
Landing detection.

Statistical confidence scoring over the trailing track window, with
hysteresis between the landed and flying phases.
"""

import logging
import statistics
from dataclasses import dataclass
from typing import List, Optional, Tuple

from contracts.constants import DESCENT_PHASE_ALTITUDE_M, Phase, TelemetrySource
from contracts.validation import Position, TelemetryPoint
from processing.track import Track, distance_m

logger = logging.getLogger(__name__)


@dataclass
class LandingParams:
    """
    Thresholds and weights for the landing confidence score.

    The weights and set/clear thresholds are empirically tuned against past
    flights, not derived; recalibrate them against recorded flight data.
    """
    window_s: float = 30.0
    min_samples: int = 3
    altitude_tolerance_m: float = 12.0     # consumer GPS vertical error
    position_tolerance_m: float = 20.0
    speed_tolerance_mps: float = 2.0
    full_sample_count: int = 8
    weight_altitude: float = 0.2
    weight_position: float = 0.4
    weight_speed: float = 0.3
    weight_samples: float = 0.1
    landed_threshold: float = 0.75
    clear_threshold: float = 0.40
    clear_consecutive: int = 3
    landing_average_points: int = 100
    landing_average_min_points: int = 50
    fallback_stale_age_s: float = 120.0


@dataclass
class LandingDecision:
    """Result of one evaluation."""
    phase: Phase
    confidence: float
    landed_changed: bool = False
    forced: bool = False


class LandingDetector:
    """Stateful landed/flying classifier for a single subject."""

    def __init__(self, params: Optional[LandingParams] = None):
        self.params = params or LandingParams()
        self.landed = False
        self.landing_position: Optional[Position] = None
        self.confidence = 0.0
        self._low_confidence_count = 0

    def reset(self):
        self.landed = False
        self.landing_position = None
        self.confidence = 0.0
        self._low_confidence_count = 0

    def score(self, window: List[TelemetryPoint]) -> float:
        """Weighted [0, 1] landing confidence for a window of at least min_samples points."""
        p = self.params
        altitudes = [pt.altitude_m for pt in window]
        altitude_score = max(0.0, 1 - statistics.pstdev(altitudes) / p.altitude_tolerance_m)

        first = window[0].position
        max_distance = max(distance_m(first, pt.position) for pt in window)
        position_score = max(0.0, 1 - max_distance / p.position_tolerance_m)

        avg_h = sum(pt.horizontal_speed_mps for pt in window) / len(window)
        avg_v = sum(abs(pt.vertical_speed_mps) for pt in window) / len(window)
        speed_score = max(0.0, 1 - max(avg_h, avg_v) / p.speed_tolerance_mps)

        sample_score = min(1.0, len(window) / p.full_sample_count)

        return (
            p.weight_altitude * altitude_score
            + p.weight_position * position_score
            + p.weight_speed * speed_score
            + p.weight_samples * sample_score
        )

    def evaluate(
        self,
        track: Track,
        current_phase: Phase,
        vertical_speed_mps: float = 0.0,
        now: Optional[float] = None,
        latest: Optional[TelemetryPoint] = None,
    ) -> Tuple[Phase, float]:
        """Evaluate the track. Returns (phase, confidence)."""
        decision = self.assess(track, current_phase, vertical_speed_mps, now, latest)
        return decision.phase, decision.confidence

    def assess(
        self,
        track: Track,
        current_phase: Phase,
        vertical_speed_mps: float = 0.0,
        now: Optional[float] = None,
        latest: Optional[TelemetryPoint] = None,
    ) -> LandingDecision:
        """
        `latest` is the most recent sample received, which can be older than
        the track tail when it arrived out of order. Defaults to the tail.
        """
        p = self.params
        latest = latest or track.last
        if latest is None:
            return LandingDecision(phase=current_phase, confidence=0.0)

        was_landed = self.landed

        # Stale network data near the last fix means the payload stopped moving
        if self.is_stale_fallback(latest, now):
            self._low_confidence_count = 0
            if not self.landed:
                self.landed = True
                self.landing_position = latest.position
                logger.info(
                    f"Fallback data for {track.subject_id} is {now - latest.timestamp:.0f}s old, "
                    f"forcing LANDED at ({latest.position.lat:.5f}, {latest.position.lon:.5f})"
                )
            return LandingDecision(
                phase=Phase.LANDED,
                confidence=self.confidence,
                landed_changed=not was_landed,
                forced=not was_landed,
            )

        window = track.window(p.window_s)
        enough = len(window) >= p.min_samples
        self.confidence = self.score(window) if enough else 0.0

        if not self.landed:
            if enough and self.confidence >= p.landed_threshold:
                self.landed = True
                self._low_confidence_count = 0
                self.landing_position = self._landing_position(track)
                logger.info(
                    f"LANDED {track.subject_id} confidence={self.confidence:.2f} "
                    f"at ({self.landing_position.lat:.5f}, {self.landing_position.lon:.5f})"
                )
        else:
            if not enough or self.confidence < p.clear_threshold:
                self._low_confidence_count += 1
                if self._low_confidence_count >= p.clear_consecutive:
                    logger.info(
                        f"Landing cleared for {track.subject_id} after "
                        f"{self._low_confidence_count} low-confidence evaluations"
                    )
                    self.landed = False
                    self.landing_position = None
                    self._low_confidence_count = 0
            else:
                self._low_confidence_count = 0

        if self.landed:
            phase = Phase.LANDED
        else:
            phase = self.classify_flying(latest.altitude_m, vertical_speed_mps)

        return LandingDecision(
            phase=phase,
            confidence=self.confidence,
            landed_changed=self.landed != was_landed,
        )

    def is_stale_fallback(self, latest: TelemetryPoint, now: Optional[float]) -> bool:
        if now is None or latest.source != TelemetrySource.FALLBACK:
            return False
        return now - latest.timestamp > self.params.fallback_stale_age_s

    @staticmethod
    def classify_flying(altitude_m: float, vertical_speed_mps: float) -> Phase:
        if vertical_speed_mps >= 0:
            return Phase.ASCENDING
        if altitude_m < DESCENT_PHASE_ALTITUDE_M:
            return Phase.DESCENDING_BELOW_10K
        return Phase.DESCENDING_ABOVE_10K

    def _landing_position(self, track: Track) -> Position:
        """Mean of recent raw fixes, smoothing out final-approach GPS noise."""
        p = self.params
        if len(track) < p.landing_average_min_points:
            return track.last.position
        recent = track.recent(p.landing_average_points)
        return Position(
            lat=sum(pt.position.lat for pt in recent) / len(recent),
            lon=sum(pt.position.lon for pt in recent) / len(recent),
        )
