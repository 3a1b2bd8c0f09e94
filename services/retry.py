"""Retry/backoff decisions for failed sync operations."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from core.settings import SYNC_QUEUE, SyncQueueSettings
from datetime_utils import utc_now
from services.operation_store import OperationStore, SyncOperation


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000

    @classmethod
    def from_settings(cls, settings: SyncQueueSettings = SYNC_QUEUE) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            base_delay_ms=settings.base_delay_ms,
            max_delay_ms=settings.max_delay_ms,
        )

    def delay_ms(self, retry_count: int) -> int:
        return min(self.base_delay_ms * (2 ** max(retry_count, 0)), self.max_delay_ms)

    def exhausted(self, retry_count: int) -> bool:
        return retry_count + 1 >= self.max_retries


@dataclass
class RetryDecision:
    operation_id: str
    retry_count: int
    failed: bool
    delay_ms: int = 0
    next_attempt_at: Optional[datetime] = None


class RetryController:
    """Either reschedules an operation through ``next_attempt_at`` or fails it.

    Nothing is scheduled in memory: the worker loop re-claims the row once
    ``next_attempt_at`` has passed.
    """

    def __init__(
        self,
        store: OperationStore,
        policy: Optional[RetryPolicy] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.policy = policy or RetryPolicy.from_settings(store.settings)
        self._clock = clock

    def on_failure(self, operation: SyncOperation, error: BaseException) -> RetryDecision:
        message = str(error) or error.__class__.__name__
        retry_count = operation.retry_count + 1

        if self.policy.exhausted(operation.retry_count) or not getattr(error, "retryable", True):
            self.store.mark_failed(
                operation.id,
                {"error": message, "type": error.__class__.__name__},
                retry_count=min(retry_count, self.policy.max_retries),
            )
            return RetryDecision(operation.id, retry_count, failed=True)

        delay = self.policy.delay_ms(operation.retry_count)
        next_attempt_at = self._clock() + timedelta(milliseconds=delay)
        self.store.mark_pending_for_retry(
            operation.id, retry_count, next_attempt_at, error=message
        )
        return RetryDecision(operation.id, retry_count, failed=False, delay_ms=delay, next_attempt_at=next_attempt_at)


__all__ = ["RetryController", "RetryDecision", "RetryPolicy"]
