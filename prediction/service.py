"""
Prediction service: throttle -> cache -> SondeHub client, on worker threads.

Dispatching never blocks the caller. Failed calls keep the last successful
prediction; in-flight calls are never cancelled and their results are cached
even if the tracker has moved on.
"""

import os
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from contracts.constants import DESCENT_PHASE_ALTITUDE_M, Phase
from contracts.validation import Position, PredictionRequest, PredictionResult
from prediction.cache import CacheKeyParams, PredictionCache, make_cache_key
from prediction.client import PredictionError, SondehubClient
from prediction.metrics import PREDICTION_TRIGGERS
from prediction.throttle import PredictionThrottle

logger = logging.getLogger(__name__)

ASCENT_RATE_MPS = float(os.getenv("ASCENT_RATE_MPS", "5.0"))
DESCENT_RATE_MPS = float(os.getenv("DESCENT_RATE_MPS", "5.0"))
BURST_ALTITUDE_M = float(os.getenv("BURST_ALTITUDE_M", "35000"))


@dataclass
class PredictionSettings:
    """User-configured flight profile."""
    ascent_rate_mps: float = ASCENT_RATE_MPS
    descent_rate_mps: float = DESCENT_RATE_MPS
    burst_altitude_m: float = BURST_ALTITUDE_M


DESCENDING_PHASES = (Phase.DESCENDING_ABOVE_10K, Phase.DESCENDING_BELOW_10K)


def build_prediction_request(
    subject_id: str,
    position: Position,
    altitude_m: float,
    phase: Phase,
    adjusted_descent_rate_mps: Optional[float],
    settings: PredictionSettings,
) -> PredictionRequest:
    """
    Descent rate: measured (adjusted) rate below 10 km while descending,
    else the configured rate. Burst altitude must stay above the current
    altitude, so a descending balloon bursts "now" at altitude + 10 m.
    """
    descending = phase in DESCENDING_PHASES
    descent_rate = settings.descent_rate_mps
    if (
        descending
        and altitude_m < DESCENT_PHASE_ALTITUDE_M
        and adjusted_descent_rate_mps
    ):
        descent_rate = abs(adjusted_descent_rate_mps)

    if descending:
        burst_altitude = altitude_m + 10.0
    else:
        burst_altitude = max(settings.burst_altitude_m, altitude_m + 100.0)

    return PredictionRequest(
        subject_id=subject_id,
        position=position,
        altitude_m=altitude_m,
        ascent_rate_mps=settings.ascent_rate_mps,
        descent_rate_mps=descent_rate,
        burst_altitude_m=burst_altitude,
        balloon_descending=descending,
    )


class PredictionService:
    """Runs prediction requests off the telemetry thread."""

    def __init__(
        self,
        client: Optional[SondehubClient] = None,
        cache: Optional[PredictionCache] = None,
        throttle: Optional[PredictionThrottle] = None,
        on_result: Optional[Callable[[str, PredictionResult], None]] = None,
        key_params: Optional[CacheKeyParams] = None,
        clock: Callable[[], float] = time.time,
        max_workers: int = 2,
    ):
        self.client = client or SondehubClient()
        self.cache = cache or PredictionCache()
        self.throttle = throttle or PredictionThrottle()
        self.on_result = on_result
        self.key_params = key_params or CacheKeyParams()
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="prediction")
        self._latest: Dict[str, PredictionResult] = {}
        self._lock = threading.Lock()
        self.api_call_count = 0

    def trigger(self, request: PredictionRequest, trigger: str) -> Optional[Future]:
        """
        Dispatch a prediction unless the throttle drops it.

        Returns the Future of the dispatched work, or None when dropped.
        """
        subject_id = request.subject_id
        rejection = self.throttle.acquire(subject_id)
        if rejection is not None:
            PREDICTION_TRIGGERS.labels(trigger=trigger, outcome=rejection).inc()
            logger.debug(f"Prediction trigger '{trigger}' for {subject_id} dropped ({rejection})")
            return None

        PREDICTION_TRIGGERS.labels(trigger=trigger, outcome="dispatched").inc()
        try:
            return self._executor.submit(self._run, request, trigger)
        except RuntimeError as e:
            self.throttle.complete(subject_id)
            logger.error(f"Prediction executor unavailable: {e}")
            return None

    def _run(self, request: PredictionRequest, trigger: str) -> Optional[PredictionResult]:
        subject_id = request.subject_id
        try:
            key = make_cache_key(
                subject_id,
                request.position.lat,
                request.position.lon,
                request.altitude_m,
                self._clock(),
                self.key_params,
            )
            result = self.cache.get(key)
            if result is not None:
                logger.info(f"Using cached prediction for {subject_id} (trigger={trigger})")
            else:
                with self._lock:
                    self.api_call_count += 1
                    call_number = self.api_call_count
                logger.debug(f"Prediction API call #{call_number} (trigger={trigger}, key={key})")
                result = self.client.fetch(request)
                self.cache.set(key, result)
        except PredictionError as e:
            logger.error(f"Prediction failed for {subject_id} from {trigger}: {e}")
            return None
        except Exception as e:
            logger.error(f"Unexpected prediction failure for {subject_id}: {e}", exc_info=True)
            return None
        finally:
            self.throttle.complete(subject_id)

        with self._lock:
            self._latest[subject_id] = result
        if self.on_result is not None:
            try:
                self.on_result(subject_id, result)
            except Exception as e:
                logger.error(f"Prediction result handler failed: {e}", exc_info=True)
        return result

    def latest(self, subject_id: str) -> Optional[PredictionResult]:
        """Last successful prediction for the subject, possibly stale."""
        with self._lock:
            return self._latest.get(subject_id)

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
