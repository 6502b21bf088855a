"""Prometheus metrics for the realtime hub.

All metric objects are defined at import time and registered on the default
registry exposed at ``/metrics``.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

realtime_sessions_active = Gauge(
    "realtime_sessions_active",
    "Currently open realtime sessions",
)
realtime_sessions_total = Counter(
    "realtime_sessions_total",
    "Session handshakes by outcome",
    ["status"],
)
realtime_events_published_total = Counter(
    "realtime_events_published_total",
    "Events accepted by the router",
    ["kind"],
)
realtime_events_delivered_total = Counter(
    "realtime_events_delivered_total",
    "Event copies enqueued to subscriber sessions",
    ["kind"],
)
realtime_requests_rejected_total = Counter(
    "realtime_requests_rejected_total",
    "Subscribe/publish requests rejected",
    ["code"],
)
realtime_malformed_frames_total = Counter(
    "realtime_malformed_frames_total",
    "Inbound frames dropped as undecodable",
)
realtime_subscriptions_revoked_total = Counter(
    "realtime_subscriptions_revoked_total",
    "Subscriptions dropped after a membership change",
    ["reason"],
)
