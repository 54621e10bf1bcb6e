"""
Prometheus metrics for reconciliation and SQL Server calls.
"""
from prometheus_client import Counter, Gauge, Histogram

# Reconciliation metrics
reconcile_total = Counter(
    "mssql_operator_reconcile_total",
    "Total number of reconciliation passes",
    ["action", "result"],
)

reconcile_duration_seconds = Histogram(
    "mssql_operator_reconcile_duration_seconds",
    "Time spent in a reconciliation pass",
    ["action"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
)

drift_fields_total = Counter(
    "mssql_operator_drift_fields_total",
    "Total number of drifted fields detected",
    ["field"],
)

# SQL Server metrics
sql_statements_total = Counter(
    "mssql_operator_sql_statements_total",
    "Total number of DDL statements executed",
    ["kind", "result"],
)

# Queue metrics
queue_depth = Gauge(
    "mssql_operator_queue_depth",
    "Number of resource keys waiting to be reconciled",
)


def record_reconcile(action: str, result: str, duration_seconds: float) -> None:
    """Record a finished reconciliation pass."""
    reconcile_total.labels(action=action, result=result).inc()
    reconcile_duration_seconds.labels(action=action).observe(duration_seconds)


def record_drift(fields) -> None:
    """Record drifted fields."""
    for field in fields:
        drift_fields_total.labels(field=field).inc()


def record_statement(kind: str, success: bool) -> None:
    """Record an executed DDL statement."""
    sql_statements_total.labels(kind=kind, result="success" if success else "error").inc()
