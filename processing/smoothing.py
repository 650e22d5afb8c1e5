"""
Motion smoothing for noisy balloon telemetry.

Per point: Hampel outlier rejection -> deadband -> fast and slow EMAs with
time-adaptive coefficients. Also derives a robust descent rate from the
trailing track window for the trajectory predictor.
"""

import logging
import statistics
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

from contracts.validation import TelemetryPoint
from processing.track import Track, haversine_m

logger = logging.getLogger(__name__)

# Scale factor turning MAD into a standard deviation estimate for Gaussian noise
MAD_TO_SIGMA = 1.4826


@dataclass
class SmoothingParams:
    """Tunable constants for the motion pipeline."""
    hampel_window: int = 10
    hampel_k: float = 3.0
    horizontal_deadband_mps: float = 0.2   # ~0.72 km/h
    vertical_deadband_mps: float = 0.05
    tau_fast_s: float = 3.0
    tau_slow_horizontal_s: float = 25.0
    tau_slow_vertical_s: float = 30.0
    min_dt_s: float = 0.01
    fallback_dt_s: float = 1.0
    descent_window_s: float = 60.0
    descent_min_points: int = 3
    descent_history: int = 20


@dataclass(frozen=True)
class MotionEstimate:
    """Smoothed motion for the latest point. Superseded on every ingest."""
    horizontal_mps: float
    vertical_mps: float
    slow_horizontal_mps: float
    slow_vertical_mps: float
    adjusted_descent_rate_mps: Optional[float]
    raw_horizontal_mps: float
    raw_vertical_mps: float
    outlier_rejected: bool = False


def _median(values) -> float:
    if not values:
        return 0.0
    return statistics.median(values)


class Ema:
    """Exponential moving average with alpha = dt / (tau + dt)."""

    def __init__(self, tau: float):
        self.tau = tau
        self.value: Optional[float] = None

    def update(self, sample: float, dt: float) -> float:
        if self.value is None:
            self.value = sample
        else:
            alpha = dt / (self.tau + dt)
            self.value = (1 - alpha) * self.value + alpha * sample
        return self.value

    def reset(self):
        self.value = None


class HampelFilter:
    """Sliding-window outlier replacement by the window median."""

    def __init__(self, window: int, k: float):
        self.k = k
        self.samples: Deque[float] = deque(maxlen=window)

    def filter(self, sample: float) -> tuple[float, bool]:
        """Returns (value, was_outlier)."""
        self.samples.append(sample)
        med = _median(self.samples)
        sigma = MAD_TO_SIGMA * _median([abs(s - med) for s in self.samples])
        if sigma > 0 and abs(sample - med) > self.k * sigma:
            return med, True
        return sample, False

    def reset(self):
        self.samples.clear()


class MotionFilter:
    """
    Per-subject motion smoothing state.

    Owns the subject's Track. A point for a different subject resets the track
    and every accumulator before it is ingested.
    """

    def __init__(self, params: Optional[SmoothingParams] = None):
        self.params = params or SmoothingParams()
        p = self.params
        self.track: Optional[Track] = None
        self._h_hampel = HampelFilter(p.hampel_window, p.hampel_k)
        self._v_hampel = HampelFilter(p.hampel_window, p.hampel_k)
        self._fast_h = Ema(p.tau_fast_s)
        self._fast_v = Ema(p.tau_fast_s)
        self._slow_h = Ema(p.tau_slow_horizontal_s)
        self._slow_v = Ema(p.tau_slow_vertical_s)
        self._descent_history: Deque[float] = deque(maxlen=p.descent_history)
        self._last_point: Optional[TelemetryPoint] = None
        self.estimate: Optional[MotionEstimate] = None

    @property
    def subject_id(self) -> Optional[str]:
        return self.track.subject_id if self.track else None

    def reset(self, track: Optional[Track] = None):
        """Start over for a new subject, optionally seeded with a persisted track."""
        self.track = track
        self._last_point = track.last if track else None
        self.reset_smoothing()

    def reset_smoothing(self):
        """Clear EMAs, outlier windows and descent history. The track is kept."""
        self._h_hampel.reset()
        self._v_hampel.reset()
        self._fast_h.reset()
        self._fast_v.reset()
        self._slow_h.reset()
        self._slow_v.reset()
        self._descent_history.clear()
        self.estimate = None

    def ingest(self, point: TelemetryPoint) -> MotionEstimate:
        p = self.params

        if self.track is None or self.track.subject_id != point.subject_id:
            logger.info(f"New subject {point.subject_id}, resetting motion state (was {self.subject_id})")
            self.reset(Track(subject_id=point.subject_id))

        prev = self._last_point
        dt = self._effective_dt(prev, point)

        # Prefer track-derived speeds when there is a usable interval
        raw_h, raw_v = point.horizontal_speed_mps, point.vertical_speed_mps
        inst_h, inst_v = raw_h, raw_v
        if prev is not None and point.timestamp - prev.timestamp > 0:
            span = point.timestamp - prev.timestamp
            inst_h = haversine_m(
                prev.position.lat, prev.position.lon, point.position.lat, point.position.lon
            ) / span
            inst_v = (point.altitude_m - prev.altitude_m) / span

        if not self.track.append(point):
            logger.debug(
                f"Out-of-order point for {point.subject_id}: "
                f"{point.timestamp} < {self.track.last.timestamp}, not added to track"
            )
        else:
            self._last_point = point

        xh, h_outlier = self._h_hampel.filter(inst_h)
        xv, v_outlier = self._v_hampel.filter(inst_v)
        if h_outlier or v_outlier:
            logger.debug(f"Hampel replaced sample for {point.subject_id}: h={inst_h:.2f} v={inst_v:.2f}")

        if abs(xh) < p.horizontal_deadband_mps:
            xh = 0.0
        if abs(xv) < p.vertical_deadband_mps:
            xv = 0.0

        fast_h = self._fast_h.update(xh, dt)
        fast_v = self._fast_v.update(xv, dt)
        slow_h = self._slow_h.update(xh, dt)
        slow_v = self._slow_v.update(xv, dt)

        self.estimate = MotionEstimate(
            horizontal_mps=fast_h,
            vertical_mps=fast_v,
            slow_horizontal_mps=slow_h,
            slow_vertical_mps=slow_v,
            adjusted_descent_rate_mps=self._adjusted_descent_rate(slow_v),
            raw_horizontal_mps=raw_h,
            raw_vertical_mps=raw_v,
            outlier_rejected=h_outlier or v_outlier,
        )
        return self.estimate

    def _effective_dt(self, prev: Optional[TelemetryPoint], point: TelemetryPoint) -> float:
        p = self.params
        if prev is None:
            return p.fallback_dt_s
        elapsed = point.timestamp - prev.timestamp
        if elapsed < 0:
            return p.fallback_dt_s
        return max(p.min_dt_s, elapsed)

    def _adjusted_descent_rate(self, slow_vertical: float) -> float:
        """Median interval rate over the trailing window, averaged over recent medians."""
        p = self.params
        window = self.track.window(p.descent_window_s)
        if len(window) < p.descent_min_points:
            return slow_vertical

        rates = []
        for a, b in zip(window, window[1:]):
            dt = b.timestamp - a.timestamp
            if dt <= 0:
                continue
            rates.append((b.altitude_m - a.altitude_m) / dt)
        if not rates:
            return slow_vertical

        self._descent_history.append(_median(rates))
        return sum(self._descent_history) / len(self._descent_history)
