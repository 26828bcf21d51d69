"""
Recovery policy.

Two rules sit on top of the ledger and the processor adapters:

- Rollback: a pending transaction whose downstream step cannot complete is
  moved to failed. Rolling back a record that is already terminal is a no-op,
  so duplicate failure signals are harmless and a completed record is never
  inverted.
- Bounded resubmission: a user action (identified by its submission id, e.g.
  the form session) may fail at most ``max_attempts`` times. Each resubmission
  creates a brand-new transaction; failed rows stay in the ledger. Only one
  orchestration may be active per submission id at a time.
"""
from typing import Dict, Optional, Protocol, Set

import redis.asyncio as aioredis
import structlog

from payper.config import get_settings
from payper.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    RetryLimitExceeded,
    SubmissionInProgressError,
)
from payper.core.ledger import TransactionLedger
from payper.core.models import Transaction, TransactionPatch, TransactionStatus
from payper.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class SubmissionStore(Protocol):
    """Per-submission bookkeeping kept outside the Transaction entity."""

    async def acquire(self, submission_id: str) -> bool:
        """Mark the submission active; False if it already is."""
        ...

    async def release(self, submission_id: str) -> None:
        ...

    async def failures(self, submission_id: str) -> int:
        ...

    async def record_failure(self, submission_id: str) -> int:
        """Count a failed attempt and return the new total."""
        ...


class InMemorySubmissionStore:
    """Submission bookkeeping for a single process."""

    def __init__(self) -> None:
        self._active: Set[str] = set()
        self._failures: Dict[str, int] = {}

    async def acquire(self, submission_id: str) -> bool:
        if submission_id in self._active:
            return False
        self._active.add(submission_id)
        return True

    async def release(self, submission_id: str) -> None:
        self._active.discard(submission_id)

    async def failures(self, submission_id: str) -> int:
        return self._failures.get(submission_id, 0)

    async def record_failure(self, submission_id: str) -> int:
        self._failures[submission_id] = self._failures.get(submission_id, 0) + 1
        return self._failures[submission_id]


class RedisSubmissionStore:
    """
    Submission bookkeeping in Redis, shared by every API worker.

    Keys expire after ``ttl_seconds`` so abandoned form sessions do not
    accumulate.
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        ttl_seconds: Optional[int] = None,
        prefix: str = "payper:submission",
    ):
        self.settings = get_settings()
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds or self.settings.submission_ttl_seconds
        self.prefix = prefix

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    def _key(self, submission_id: str, name: str) -> str:
        return f"{self.prefix}:{submission_id}:{name}"

    async def acquire(self, submission_id: str) -> bool:
        redis = await self._ensure_redis()
        acquired = await redis.set(
            self._key(submission_id, "active"), "1", nx=True, ex=self.ttl_seconds
        )
        return bool(acquired)

    async def release(self, submission_id: str) -> None:
        redis = await self._ensure_redis()
        await redis.delete(self._key(submission_id, "active"))

    async def failures(self, submission_id: str) -> int:
        redis = await self._ensure_redis()
        value = await redis.get(self._key(submission_id, "failures"))
        return int(value) if value else 0

    async def record_failure(self, submission_id: str) -> int:
        redis = await self._ensure_redis()
        key = self._key(submission_id, "failures")
        count = await redis.incr(key)
        await redis.expire(key, self.ttl_seconds)
        return int(count)


class RecoveryPolicy:
    """Rollback and bounded resubmission rules."""

    def __init__(
        self,
        store: Optional[SubmissionStore] = None,
        max_attempts: Optional[int] = None,
    ):
        self.store = store or InMemorySubmissionStore()
        self.max_attempts = (
            max_attempts if max_attempts is not None else get_settings().max_submission_attempts
        )

    async def begin_attempt(self, submission_id: str) -> int:
        """
        Claim the submission for a new orchestration.

        The claim is released again if the attempt count cannot be read.

        Returns:
            int: Failed attempts so far

        Raises:
            SubmissionInProgressError: If an orchestration is already active
            RetryLimitExceeded: If the submission has no attempts left
        """
        if not await self.store.acquire(submission_id):
            logger.warning("submission_already_in_progress", submission_id=submission_id)
            raise SubmissionInProgressError(
                "This payment is already being processed"
            )

        try:
            failures = await self.store.failures(submission_id)
        except Exception:
            await self.store.release(submission_id)
            raise

        if failures >= self.max_attempts:
            await self.store.release(submission_id)
            metrics.record_resubmission_refused()
            logger.warning(
                "submission_retry_limit_reached",
                submission_id=submission_id,
                failures=failures,
            )
            raise RetryLimitExceeded(
                f"Payment failed {failures} times; please start a new payment"
            )
        return failures

    async def end_attempt(self, submission_id: str, failed: bool) -> int:
        """
        Release the submission and count the attempt if it failed.

        The submission is released even when the count cannot be updated.

        Returns:
            int: Attempts remaining for this submission
        """
        try:
            failures = (
                await self.store.record_failure(submission_id)
                if failed
                else await self.store.failures(submission_id)
            )
        finally:
            await self.store.release(submission_id)
        return max(self.max_attempts - failures, 0)

    async def abandon_attempt(self, submission_id: str) -> int:
        """
        Release the submission without counting the attempt (e.g. invalid input).

        Returns:
            int: Attempts remaining for this submission
        """
        try:
            failures = await self.store.failures(submission_id)
        finally:
            await self.store.release(submission_id)
        return max(self.max_attempts - failures, 0)

    async def attempts_remaining(self, submission_id: str) -> int:
        failures = await self.store.failures(submission_id)
        return max(self.max_attempts - failures, 0)

    async def rollback(
        self,
        ledger: TransactionLedger,
        transaction_id: str,
        processor_reference: Optional[str] = None,
    ) -> Optional[Transaction]:
        """
        Move a pending transaction to failed.

        Already-terminal records are left untouched. Storage failures are
        logged rather than raised and the record stays pending.

        Returns:
            Optional[Transaction]: The record after rollback, None if the
            ledger could not be reached
        """
        try:
            current = await ledger.get(transaction_id)
            if current.status.is_terminal:
                metrics.record_rollback("already_terminal")
                logger.info(
                    "rollback_skipped_terminal",
                    transaction_id=transaction_id,
                    status=current.status.value,
                )
                return current

            patch = TransactionPatch(
                status=TransactionStatus.FAILED,
                processor_reference=processor_reference,
            )
            try:
                rolled_back = await ledger.update(transaction_id, patch)
            except InvalidTransitionError:
                # Became terminal between the read and the write.
                metrics.record_rollback("already_terminal")
                return await ledger.get(transaction_id)

        except (PersistenceError, NotFoundError) as e:
            metrics.record_rollback("error")
            logger.error("rollback_failed", transaction_id=transaction_id, error=str(e))
            return None

        metrics.record_rollback("rolled_back")
        logger.info("transaction_rolled_back", transaction_id=transaction_id)
        return rolled_back
