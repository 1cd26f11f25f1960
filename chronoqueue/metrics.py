from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

# Keep metrics module-level singletons
jobs_scheduled_total = Counter("jobs_scheduled_total", "Jobs written into the schedule")
jobs_unscheduled_total = Counter("jobs_unscheduled_total", "Jobs removed from the schedule by unschedule")
error_count = Counter("error_count", "Total errors encountered by the control plane")
request_latency_seconds = Histogram("request_latency_seconds", "HTTP request latency seconds")

# Claim / consumption metrics
jobs_claimed_total = Counter("jobs_claimed_total", "Due jobs moved into the processing set")
jobs_acknowledged_total = Counter("jobs_acknowledged_total", "Claimed jobs acknowledged after successful handling")
jobs_redelivered_total = Counter("jobs_redelivered_total", "Claimed jobs put back into the schedule")
transaction_conflicts_total = Counter(
    "transaction_conflicts_total",
    "Optimistic transactions aborted because a watched key changed",
    ["operation"],
)
handler_latency_seconds = Histogram("handler_latency_seconds", "Time spent in job handlers")


def metrics_response():
    # Return prometheus metrics as a Response
    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
