"""
FastAPI backend - hosts the SondeTrack balloon tracker.

Serves:
- REST API for tracker status and the latest trajectory prediction
- Manual prediction trigger
- Prometheus metrics endpoint
"""

import os
import sys
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

# Allow `python backend/main.py` from a source checkout
sys.path.insert(0, str(Path(__file__).parent.parent))

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from backend.consumer import TelemetryConsumer
from backend.metrics import get_metrics, HTTP_REQUESTS
from prediction.cache import PredictionCache
from prediction.service import PredictionService
from prediction.throttle import PredictionThrottle
from processing.kafka_publisher import KafkaEventPublisher
from processing.track_store import InMemoryTrackStore, PostgresTrackStore
from processing.tracker import BalloonTracker

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Configuration
BACKEND_HOST = os.getenv("BACKEND_HOST", "0.0.0.0")
BACKEND_PORT = int(os.getenv("BACKEND_PORT", "8000"))
TRACK_STORE = os.getenv("TRACK_STORE", "postgres")  # postgres | memory
PREDICTION_CACHE_TTL_SECONDS = float(os.getenv("PREDICTION_CACHE_TTL_SECONDS", "300"))
PREDICTION_CACHE_CAPACITY = int(os.getenv("PREDICTION_CACHE_CAPACITY", "100"))
PREDICTION_MIN_INTERVAL_SECONDS = float(os.getenv("PREDICTION_MIN_INTERVAL_SECONDS", "30"))


# Global state
tracker: BalloonTracker = None
consumer: TelemetryConsumer = None
prediction_service: PredictionService = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global tracker, consumer, prediction_service

    logger.info("=" * 50)
    logger.info("SondeTrack Backend - Starting")
    logger.info("=" * 50)

    publisher = KafkaEventPublisher()
    store = PostgresTrackStore() if TRACK_STORE == "postgres" else InMemoryTrackStore()
    logger.info(f"Track store: {type(store).__name__}")

    prediction_service = PredictionService(
        cache=PredictionCache(ttl=PREDICTION_CACHE_TTL_SECONDS, capacity=PREDICTION_CACHE_CAPACITY),
        throttle=PredictionThrottle(min_interval=PREDICTION_MIN_INTERVAL_SECONDS),
        on_result=publisher.publish_prediction,
    )
    tracker = BalloonTracker(store=store, publisher=publisher, prediction_service=prediction_service)
    logger.info("BalloonTracker initialized")

    consumer = TelemetryConsumer(tracker)
    consumer.start()
    logger.info("Telemetry consumer started")

    yield

    # Cleanup
    logger.info("Shutting down...")
    if consumer:
        consumer.stop()
    if prediction_service:
        prediction_service.shutdown(wait=False)
    publisher.flush()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="SondeTrack Backend API",
    description="Balloon telemetry tracking and landing prediction",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify allowed origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Middleware to track HTTP requests."""
    response = await call_next(request)
    HTTP_REQUESTS.labels(
        method=request.method,
        path=request.url.path,
        status=response.status_code
    ).inc()
    return response


def _not_ready() -> JSONResponse:
    return JSONResponse(status_code=503, content={"error": "Service not ready"})


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "SondeTrack Backend",
        "version": "1.0.0",
        "endpoints": {
            "status": "/status",
            "prediction": "/prediction",
            "trigger_prediction": "/prediction/trigger",
            "health": "/health",
            "metrics": "/metrics"
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "telemetry_state": tracker.state.value if tracker else None,
        "consumer_running": bool(consumer and consumer.running),
    }


@app.get("/status")
async def status():
    """Current subject, telemetry state, control flags and latest position."""
    if not tracker:
        return _not_ready()
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **tracker.status(),
    }


@app.get("/prediction")
async def get_prediction():
    """
    Latest successful prediction for the tracked subject.

    May be older than the current position: failed prediction calls keep the
    previous result.
    """
    if not tracker:
        return _not_ready()

    result = tracker.latest_prediction()
    return {
        "subject_id": tracker.subject_id,
        "prediction": result.model_dump(mode="json") if result else None,
        "cache": prediction_service.cache.metrics() if prediction_service else None,
    }


@app.post("/prediction/trigger")
async def trigger_prediction():
    """Manual prediction trigger. Dropped while a request is in flight or too recent."""
    if not tracker:
        return _not_ready()

    future = tracker.trigger_prediction()
    return JSONResponse(
        status_code=202 if future is not None else 200,
        content={
            "subject_id": tracker.subject_id,
            "dispatched": future is not None,
        }
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return await get_metrics()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "backend.main:app",
        host=BACKEND_HOST,
        port=BACKEND_PORT,
        log_level="info"
    )
