"""Prometheus metrics for transfer lifecycle operations."""

from prometheus_client import CollectorRegistry, Counter, Gauge

registry = CollectorRegistry()

transfer_operations = Counter(
    "flowpay_transfer_operations_total",
    "Transfer lifecycle operations by outcome",
    ["operation", "outcome"],
    registry=registry,
)
job_runs = Counter(
    "flowpay_job_runs_total",
    "Scheduled job runs",
    ["job", "outcome"],
    registry=registry,
)
escrow_locked = Gauge(
    "flowpay_escrow_total_locked",
    "Total amount held in escrow as reported by the ledger",
    registry=registry,
)
escrow_balanced = Gauge(
    "flowpay_escrow_balanced",
    "1 if ledger custody matches the transfer store, else 0",
    registry=registry,
)


def record_operation(operation: str, result) -> None:
    """Count a ``TransferResult`` by its error code (``ok`` on success)."""
    outcome = "ok" if result.success else result.error.code
    transfer_operations.labels(operation=operation, outcome=outcome).inc()
