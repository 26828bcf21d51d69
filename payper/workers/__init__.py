"""Background workers."""
from payper.workers.reconciliation_worker import (
    run_reconciliation_pass,
    start_reconciliation_worker,
)

__all__ = ["run_reconciliation_pass", "start_reconciliation_worker"]
