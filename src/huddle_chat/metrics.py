"""Prometheus metrics on an isolated registry."""

from prometheus_client import CollectorRegistry, Counter, Gauge

CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total HTTP requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total failed HTTP requests", ["error_code"], registry=CUSTOM_REGISTRY)

EVENTS_PUBLISHED = Counter(
    "realtime_events_published_total", "Change events handed to the dispatcher", ["table"], registry=CUSTOM_REGISTRY
)
EVENTS_DELIVERED = Counter(
    "realtime_events_delivered_total", "Change events queued for a subscriber", registry=CUSTOM_REGISTRY
)
SUBSCRIBERS_EVICTED = Counter(
    "realtime_subscribers_evicted_total", "Subscribers disconnected by the server", ["reason"], registry=CUSTOM_REGISTRY
)
SUBSCRIBERS_CONNECTED = Gauge(
    "realtime_subscribers_connected", "Currently connected subscribers", registry=CUSTOM_REGISTRY
)
