"""Prometheus metrics shared by the relay and the HTTP layer."""

from prometheus_client import CollectorRegistry, Counter

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total HTTP requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total HTTP requests answered with an error", registry=CUSTOM_REGISTRY)
TURNS = Counter("turns_total", "Chat turns started", ["variant"], registry=CUSTOM_REGISTRY)
TURN_FAILURES = Counter("turn_failures_total", "Chat turns whose generation failed", registry=CUSTOM_REGISTRY)
PERSIST_FAILURES = Counter(
    "turn_persist_failures_total",
    "Completed chat turns whose exchange could not be saved",
    registry=CUSTOM_REGISTRY,
)
