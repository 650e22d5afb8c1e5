"""
Prometheus metrics for the prediction service.
"""

from prometheus_client import Counter, Gauge, Histogram

PREDICTION_TRIGGERS = Counter(
    'prediction_triggers_total',
    'Prediction triggers by outcome',
    ['trigger', 'outcome']  # dispatched, in_flight, too_soon
)

PREDICTION_API_CALLS = Counter(
    'prediction_api_calls_total',
    'Calls to the trajectory prediction API',
    ['status']
)

PREDICTION_API_LATENCY = Histogram(
    'prediction_api_latency_seconds',
    'Trajectory prediction API latency',
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

CACHE_LOOKUPS = Counter(
    'prediction_cache_lookups_total',
    'Prediction cache lookups',
    ['result']  # hit, miss
)

CACHE_EVICTIONS = Counter(
    'prediction_cache_evictions_total',
    'Prediction cache removals',
    ['reason']  # lru, expired
)

CACHE_SIZE = Gauge(
    'prediction_cache_entries',
    'Entries currently held in the prediction cache'
)
