"""
Reconciliation background worker.

On a fixed interval it settles step-up authentications the user abandoned and
replays queued reconciliation faults. Both queues live in the API process, so
the worker runs as a task inside the application lifespan rather than as a
separate process.
"""
import asyncio
from typing import TYPE_CHECKING, Dict, Optional

import structlog

from payper.config import get_settings

if TYPE_CHECKING:
    from payper.core.orchestrator import PaymentOrchestrator

logger = structlog.get_logger(__name__)


async def run_reconciliation_pass(orchestrator: "PaymentOrchestrator") -> Dict[str, int]:
    """
    Resolve abandoned step-ups, then replay every queued fault once.

    Returns:
        Dict[str, int]: Abandoned step-ups settled plus the resolved, failed
        and pending fault counts
    """
    abandoned = await orchestrator.resolve_abandoned()
    result = {
        "abandoned_completed": abandoned["completed"],
        "abandoned_failed": abandoned["failed"],
        "resolved": 0,
        "failed": 0,
        "pending": 0,
    }

    recorder = orchestrator.reconciliation
    if not len(recorder):
        return result

    logger.info("reconciliation_pass_started", pending=len(recorder))
    result.update(await recorder.replay(orchestrator.ledger))

    if result["pending"]:
        logger.warning("reconciliation_faults_outstanding", **result)
    else:
        logger.info("reconciliation_pass_completed", **result)
    return result


async def start_reconciliation_worker(
    orchestrator: "PaymentOrchestrator",
    stop_event: asyncio.Event,
    interval_seconds: Optional[float] = None,
) -> None:
    """
    Run reconciliation passes until ``stop_event`` is set.

    Args:
        orchestrator: Controller owning the step-up and fault queues
        stop_event: Set at shutdown
        interval_seconds: Seconds between passes (default from settings)
    """
    interval = interval_seconds or get_settings().reconciliation_interval_seconds
    logger.info("reconciliation_worker_starting", interval_seconds=interval)

    try:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await run_reconciliation_pass(orchestrator)
            except Exception as e:
                # Keep the worker alive; the faults stay queued.
                logger.error("reconciliation_execution_error", error=str(e))
    finally:
        logger.info(
            "reconciliation_worker_stopped",
            pending=len(orchestrator.reconciliation),
            awaiting_action=orchestrator.awaiting_count(),
        )
