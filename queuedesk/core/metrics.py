"""
Prometheus metrics: status transitions, rejections, legacy status fallbacks.
"""
from prometheus_client import Counter, generate_latest

queue_status_transitions_total = Counter(
    "queue_status_transitions_total",
    "Total committed queue status transitions",
    ["from_status", "to_status"],
)

queue_status_rejections_total = Counter(
    "queue_status_rejections_total",
    "Total status change requests rejected by the transition engine",
    ["reason"],
)

# legacy/garbage status values replaced with 'waiting'
queue_status_fallbacks_total = Counter(
    "queue_status_fallbacks_total",
    "Total unknown queue status values that fell back to waiting",
)

side_effect_failures_total = Counter(
    "queue_side_effect_failures_total",
    "Total post-commit side effects (publish, analytics) that failed",
    ["side_effect"],
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
