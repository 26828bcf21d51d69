"""
Prometheus metrics for payment orchestration.

Tracks:
- Orchestration outcomes by transaction kind
- Orchestration duration
- Payment intent and card confirmation calls
- Ledger rollbacks
- Reconciliation faults recorded and replayed
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Orchestration metrics
orchestrations_total = Counter(
    "payper_orchestrations_total",
    "Total payment orchestrations by outcome",
    ["kind", "outcome"],  # outcome: completed, failed, requires_action, rejected
)

orchestration_duration_seconds = Histogram(
    "payper_orchestration_duration_seconds",
    "Payment orchestration duration in seconds",
    ["kind"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

payment_amount_minor_units = Histogram(
    "payper_payment_amount_minor_units",
    "Submitted payment amounts in minor currency units",
    buckets=(100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

# External call metrics
gateway_requests_total = Counter(
    "payper_gateway_requests_total",
    "Total payment intent requests",
    ["status"],  # success, error
)

confirmation_requests_total = Counter(
    "payper_confirmation_requests_total",
    "Total card confirmation calls",
    ["outcome"],  # succeeded, requires_action, declined, fault
)

circuit_breaker_state = Gauge(
    "payper_stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Recovery metrics
ledger_rollbacks_total = Counter(
    "payper_ledger_rollbacks_total",
    "Total rollbacks of pending transactions",
    ["result"],  # rolled_back, already_terminal, error
)

resubmissions_refused_total = Counter(
    "payper_resubmissions_refused_total",
    "Resubmissions refused by the retry bound",
)

# Reconciliation metrics
reconciliation_faults_total = Counter(
    "payper_reconciliation_faults_total",
    "Processor-confirmed payments whose ledger finalize failed",
)

reconciliation_replays_total = Counter(
    "payper_reconciliation_replays_total",
    "Reconciliation replay attempts",
    ["result"],  # resolved, failed
)

reconciliation_queue_depth = Gauge(
    "payper_reconciliation_queue_depth",
    "Number of unresolved reconciliation faults",
)

reconciliation_last_run_timestamp = Gauge(
    "payper_reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation replay",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_orchestration(kind: str, outcome: str, duration_seconds: float) -> None:
        """Record a finished orchestration."""
        orchestrations_total.labels(kind=kind, outcome=outcome).inc()
        orchestration_duration_seconds.labels(kind=kind).observe(duration_seconds)

    @staticmethod
    def record_payment_amount(amount_minor_units: int) -> None:
        payment_amount_minor_units.observe(amount_minor_units)

    @staticmethod
    def record_gateway_request(status: str) -> None:
        """Record a payment intent request."""
        gateway_requests_total.labels(status=status).inc()

    @staticmethod
    def record_confirmation(outcome: str) -> None:
        """Record a card confirmation call."""
        confirmation_requests_total.labels(outcome=outcome).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_rollback(result: str) -> None:
        ledger_rollbacks_total.labels(result=result).inc()

    @staticmethod
    def record_resubmission_refused() -> None:
        resubmissions_refused_total.inc()

    @staticmethod
    def record_reconciliation_fault(queue_depth: int) -> None:
        """Record a processor success that the ledger did not capture."""
        reconciliation_faults_total.inc()
        reconciliation_queue_depth.set(queue_depth)

    @staticmethod
    def record_reconciliation_replay(resolved: int, failed: int, queue_depth: int) -> None:
        """Record the result of a reconciliation replay."""
        reconciliation_replays_total.labels(result="resolved").inc(resolved)
        reconciliation_replays_total.labels(result="failed").inc(failed)
        reconciliation_queue_depth.set(queue_depth)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
