from prometheus_client import Counter, Histogram

REQUESTS_TOTAL = Counter(
    "apiproxy_requests_total",
    "Total proxy requests",
    ["method", "status"],
)

FORWARD_TOTAL = Counter(
    "apiproxy_forward_total",
    "Total outbound forward attempts",
    ["result"],
)

FORWARD_LATENCY_SECONDS = Histogram(
    "apiproxy_forward_latency_seconds",
    "Outbound forward latency in seconds",
)
