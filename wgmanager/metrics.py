from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP 5xx responses",
    ["method", "path", "status"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)

WIREGUARD_APPLY_TOTAL = Counter(
    "wireguard_apply_total",
    "Interface apply/stop operations against the kernel",
    ["operation", "status"],
)
WIREGUARD_APPLY_DURATION = Histogram(
    "wireguard_apply_duration_seconds",
    "Duration of interface apply/stop operations",
    ["operation"],
)
WIREGUARD_PEER_ALLOCATION_RETRIES = Counter(
    "wireguard_peer_allocation_retries_total",
    "Peer creation attempts retried after an address collision",
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)


def observe_apply(operation: str, status: str, duration: float) -> None:
    WIREGUARD_APPLY_TOTAL.labels(operation=operation, status=status).inc()
    WIREGUARD_APPLY_DURATION.labels(operation=operation).observe(duration)
