"""
Readiness and liveness reporting.

Readiness covers the three things a payment needs besides the processor:
the ledger database, the Redis attempt store, and the in-process queues of
confirmed charges awaiting reconciliation and unanswered step-ups. A
non-empty reconciliation queue reports ``degraded``: payments still work, but
the ledger is behind the processor.
"""
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text

from payper.config import get_settings
from payper.database.connection import get_session_factory

logger = structlog.get_logger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"


class HealthCheckError(Exception):
    """Raised when a dependency cannot be reached."""

    pass


class HealthCheck:
    """
    Readiness checks for the payment service.

    Args:
        orchestrator: Controller whose reconciliation and step-up queues are
            reported (the queue check is skipped when omitted)
    """

    def __init__(self, orchestrator: Optional[Any] = None) -> None:
        self.settings = get_settings()
        self.orchestrator = orchestrator

    async def check_ledger_database(self) -> Dict[str, Any]:
        try:
            async with get_session_factory()() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("ledger_database_unreachable", error=str(e))
            raise HealthCheckError(f"Ledger database unreachable: {e}") from e
        return {"status": HEALTHY}

    async def check_attempt_store(self) -> Dict[str, Any]:
        client = aioredis.from_url(self.settings.redis_url, decode_responses=True)
        try:
            await client.ping()
        except Exception as e:
            logger.error("attempt_store_unreachable", error=str(e))
            raise HealthCheckError(f"Attempt store unreachable: {e}") from e
        finally:
            await client.aclose()
        return {"status": HEALTHY}

    async def check_payment_queues(self) -> Dict[str, Any]:
        pending = len(self.orchestrator.reconciliation)
        awaiting_action = self.orchestrator.awaiting_count()
        if pending:
            logger.warning("reconciliation_backlog", pending=pending)
        return {
            "status": DEGRADED if pending else HEALTHY,
            "reconciliation_pending": pending,
            "awaiting_action": awaiting_action,
        }

    @staticmethod
    async def _timed(check: Callable[[], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            result = await check()
        except HealthCheckError as e:
            result = {"status": UNHEALTHY, "error": str(e)}
        result["latency_ms"] = round((time.perf_counter() - started) * 1000, 2)
        return result

    async def check_all(self) -> Dict[str, Any]:
        """
        Run every readiness check.

        Returns:
            Dict[str, Any]: Overall status (the worst of the individual
            statuses) and the per-check results
        """
        checks = {
            "database": await self._timed(self.check_ledger_database),
            "redis": await self._timed(self.check_attempt_store),
        }
        if self.orchestrator is not None:
            checks["payments"] = await self._timed(self.check_payment_queues)

        statuses = {check["status"] for check in checks.values()}
        if UNHEALTHY in statuses:
            overall = UNHEALTHY
        elif DEGRADED in statuses:
            overall = DEGRADED
        else:
            overall = HEALTHY
        return {"status": overall, "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        return {"status": "alive", "message": "payper is running"}
