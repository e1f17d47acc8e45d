"""Prometheus metric definitions shared by the service layer."""

from prometheus_client import Counter, Gauge

quota_reservations = Counter(
    "quota_reservations_total",
    "Quota reservation operations by outcome",
    ["operation", "outcome"],
)

quota_available = Gauge(
    "quota_available",
    "Available connections last observed in the quota store",
)

provisioning_outcomes = Counter(
    "provisioning_outcomes_total",
    "Provisioning pipeline runs by outcome",
    ["outcome"],
)

webhook_events = Counter(
    "webhook_events_total",
    "Inbound payment webhook events",
    ["provider", "status", "signature_ok"],
)

device_api_requests = Counter(
    "device_api_requests_total",
    "Requests to external provider APIs",
    ["service", "method", "status"],
)
