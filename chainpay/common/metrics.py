"""Prometheus metric definitions for the deposit scanner."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


scan_passes_total = Counter("deposit_scan_passes_total", "Scan passes by outcome", ["service", "outcome"])
scan_pass_duration_seconds = Histogram(
    "deposit_scan_pass_duration_seconds",
    "Wall time of one reconciliation pass",
    ["service"],
)
blocks_scanned_total = Counter("deposit_blocks_scanned_total", "Blocks covered by scan passes", ["service"])
transfers_observed_total = Counter(
    "deposit_transfers_observed_total",
    "New treasury transfers recorded",
    ["service"],
)
confirmations_updated_total = Counter(
    "deposit_confirmations_updated_total",
    "Confirmation recomputations persisted",
    ["service"],
)
deposits_credited_total = Counter("deposits_credited_total", "Deposits credited to a balance", ["service"])
deposits_credited_units_total = Counter(
    "deposits_credited_units_total",
    "Token base units credited to balances",
    ["service"],
)
credit_deferred_total = Counter(
    "deposit_credit_deferred_total",
    "Credit attempts that did not apply, by reason",
    ["service", "reason"],
)
credit_errors_total = Counter("deposit_credit_errors_total", "Credit attempts rolled back on error", ["service"])
reorgs_detected_total = Counter("deposit_reorgs_detected_total", "Transfers flagged REORGED", ["service"])
rpc_errors_total = Counter("deposit_rpc_errors_total", "Chain RPC failures", ["service", "operation"])
transfer_record_errors_total = Counter(
    "deposit_transfer_record_errors_total",
    "Observed transfers that failed to record and will be re-read",
    ["service"],
)
scan_cursor_block = Gauge("deposit_scan_cursor_block", "Last fully scanned block", ["service"])
chain_height_block = Gauge("deposit_chain_height_block", "Chain height observed by the last pass", ["service"])
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
