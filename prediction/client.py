"""
SondeHub Tawhiri (v2) trajectory prediction client.
"""

import os
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import requests

from contracts.validation import (
    Position,
    PredictionRequest,
    PredictionResult,
    SondehubResponse,
    validate_sondehub_response,
)
from prediction.metrics import PREDICTION_API_CALLS, PREDICTION_API_LATENCY

logger = logging.getLogger(__name__)

SONDEHUB_PREDICT_URL = os.getenv("SONDEHUB_PREDICT_URL", "https://api.v2.sondehub.org/tawhiri")
PREDICTION_TIMEOUT_SECONDS = float(os.getenv("PREDICTION_TIMEOUT_SECONDS", "30"))
# Predictions are launched slightly in the future, the API rejects past launch times
LAUNCH_LEAD_SECONDS = 60


class PredictionError(Exception):
    """Any failure to obtain a usable prediction."""

    def __init__(self, kind: str, message: str):
        super().__init__(f"{kind}: {message}")
        self.kind = kind


class SondehubClient:
    """Client for the SondeHub prediction API."""

    def __init__(
        self,
        base_url: str = SONDEHUB_PREDICT_URL,
        timeout: float = PREDICTION_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.session = session or requests.Session()

    @staticmethod
    def build_params(request: PredictionRequest, now: Optional[datetime] = None) -> dict:
        now = now or datetime.now(timezone.utc)
        launch_time = (now + timedelta(seconds=LAUNCH_LEAD_SECONDS)).strftime("%Y-%m-%dT%H:%M:%SZ")
        return {
            "launch_latitude": f"{request.position.lat:.4f}",
            "launch_longitude": f"{request.position.lon:.4f}",
            "launch_datetime": launch_time,
            "ascent_rate": f"{request.ascent_rate_mps:.2f}",
            "burst_altitude": f"{request.burst_altitude_m:.1f}",
            "descent_rate": f"{request.descent_rate_mps:.2f}",
            "launch_altitude": f"{request.altitude_m:.1f}",
            "profile": "standard_profile",
            "format": "json",
        }

    def fetch(self, request: PredictionRequest) -> PredictionResult:
        """Request a prediction. Raises PredictionError on any failure."""
        params = self.build_params(request)
        logger.debug(
            f"Prediction request lat={request.position.lat:.4f} lon={request.position.lon:.4f} "
            f"alt={request.altitude_m:.1f} ascent={request.ascent_rate_mps:.2f} "
            f"burst={request.burst_altitude_m:.1f} descent={request.descent_rate_mps:.2f} "
            f"descending={request.balloon_descending}"
        )

        try:
            with PREDICTION_API_LATENCY.time():
                response = self.session.get(self.base_url, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout:
            PREDICTION_API_CALLS.labels(status="timeout").inc()
            raise PredictionError("timeout", f"no response within {self.timeout}s")
        except requests.exceptions.RequestException as e:
            PREDICTION_API_CALLS.labels(status="connection_error").inc()
            raise PredictionError("connection", str(e))

        if response.status_code != 200:
            PREDICTION_API_CALLS.labels(status=f"http_{response.status_code}").inc()
            logger.error(f"Prediction API HTTP {response.status_code}: {response.text[:512]}")
            raise PredictionError("http", f"HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            PREDICTION_API_CALLS.labels(status="decode_error").inc()
            raise PredictionError("decode", f"invalid JSON: {e}")

        is_valid, parsed, error = validate_sondehub_response(body)
        if not is_valid:
            PREDICTION_API_CALLS.labels(status="decode_error").inc()
            raise PredictionError("decode", error)

        result = parse_prediction(parsed)
        PREDICTION_API_CALLS.labels(status="success").inc()
        logger.info(
            f"Prediction completed - landing: {_describe(result.landing_point)}, "
            f"burst: {_describe(result.burst_point)}"
        )
        return result


def parse_prediction(response: SondehubResponse) -> PredictionResult:
    """Derive burst/landing points from the ascent and descent stages."""
    stages = {stage.stage.lower(): stage for stage in response.prediction}
    ascent = stages.get("ascent")
    descent = stages.get("descent")
    if ascent is None or descent is None:
        raise PredictionError(
            "decode",
            f"missing ascent or descent stage (ascent={ascent is not None}, descent={descent is not None})"
        )

    path = [
        Position(lat=pt.latitude, lon=pt.longitude)
        for stage in response.prediction
        for pt in stage.trajectory
    ]
    ascent_first = ascent.trajectory[0] if ascent.trajectory else None
    ascent_last = ascent.trajectory[-1] if ascent.trajectory else None
    descent_last = descent.trajectory[-1] if descent.trajectory else None

    return PredictionResult(
        path=path,
        burst_point=Position(lat=ascent_last.latitude, lon=ascent_last.longitude) if ascent_last else None,
        landing_point=Position(lat=descent_last.latitude, lon=descent_last.longitude) if descent_last else None,
        landing_time=descent_last.time if descent_last else None,
        launch_point=Position(lat=ascent_first.latitude, lon=ascent_first.longitude) if ascent_first else None,
        burst_altitude_m=ascent_last.altitude if ascent_last else None,
    )


def _describe(position: Optional[Position]) -> str:
    return f"({position.lat:.4f}, {position.lon:.4f})" if position else "nil"
