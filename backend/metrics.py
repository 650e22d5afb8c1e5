"""
Prometheus metrics for the backend service.

Tracker and prediction metrics live in processing/metrics.py and
prediction/metrics.py; all of them land in the default registry.
"""

import os
from fastapi.responses import Response
from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.multiprocess import MultiProcessCollector


HTTP_REQUESTS = Counter(
    'backend_http_requests_total',
    'HTTP requests',
    ['method', 'path', 'status']
)

MESSAGES_PROCESSED = Counter(
    'backend_messages_processed_total',
    'Telemetry messages handed to the tracker',
    ['source']
)

MESSAGES_REJECTED = Counter(
    'backend_messages_rejected_total',
    'Telemetry messages rejected before reaching the tracker',
    ['reason']
)

CONSUMER_RUNNING = Gauge(
    'backend_consumer_running',
    'Whether the telemetry consumer loop is running'
)


async def get_metrics():
    """FastAPI handler for /metrics endpoint."""
    if 'PROMETHEUS_MULTIPROC_DIR' in os.environ:
        # Multi-process mode: aggregate the per-worker files into a scratch registry
        registry = CollectorRegistry()
        MultiProcessCollector(registry)
        output = generate_latest(registry)
    else:
        output = generate_latest()

    return Response(content=output, media_type=CONTENT_TYPE_LATEST)
