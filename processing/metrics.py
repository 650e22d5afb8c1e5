"""
Prometheus metrics for the tracking core.
"""

from prometheus_client import Counter, Gauge, Histogram

POINTS_INGESTED = Counter(
    'tracking_points_ingested_total',
    'Telemetry points ingested into the track',
    ['source']
)

POINTS_IGNORED = Counter(
    'tracking_points_ignored_total',
    'Telemetry points not ingested',
    ['source', 'reason']  # not_authoritative, invalid_coordinate, processing_error
)

STATE_TRANSITIONS = Counter(
    'tracking_state_transitions_total',
    'Telemetry arbiter state transitions',
    ['from_state', 'to_state']
)

LANDING_EVENTS = Counter(
    'tracking_landing_events_total',
    'Landing events emitted',
    ['kind']  # landed, cleared, forced
)

LANDING_CONFIDENCE = Gauge(
    'tracking_landing_confidence',
    'Latest landing confidence score'
)

TRACK_LENGTH = Gauge(
    'tracking_track_points',
    'Points in the current subject track'
)

INGEST_LATENCY = Histogram(
    'tracking_ingest_latency_seconds',
    'Time spent processing one telemetry point',
    buckets=[0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1]
)

EVENTS_PUBLISHED = Counter(
    'tracking_events_published_total',
    'Outbound events published',
    ['topic']
)
