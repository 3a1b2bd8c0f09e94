from __future__ import annotations

import asyncio
import json
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlmodel import Session

from core.log import ensure_logger
from core.settings import SYNC_QUEUE, SyncQueueSettings
from datetime_utils import utc_now
from models.sync_operation import SyncLogEntry
from services.dispatcher import SyncDispatcher
from services.errors import UnsupportedOperationError
from services.operation_store import OperationStore, SyncOperation
from services.retry import RetryController
from storage.db import get_session


COMPLETED = "completed"
RETRY = "retry"
FAILED = "failed"
SKIPPED = "skipped"


class SyncWorker:
    """Drains the sync queue: one batch per tick, one operation at a time."""

    def __init__(
        self,
        store: OperationStore,
        *,
        dispatcher: Optional[SyncDispatcher] = None,
        retry: Optional[RetryController] = None,
        session_factory: Callable[[], Session] = get_session,
        settings: SyncQueueSettings = SYNC_QUEUE,
        clock: Callable[[], datetime] = utc_now,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher or SyncDispatcher()
        self.retry = retry or RetryController(store, clock=clock)
        self.settings = settings
        self._session_factory = session_factory
        self._clock = clock
        self.logger = logger or ensure_logger()
        self._guard = threading.Lock()
        self._stopping = False
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Batch processing
    def tick(self, *, scheduled: bool = False) -> int:
        """Process one batch; returns 0 without doing anything if a batch is in flight.

        Scheduled ticks also do nothing once ``stop()`` has begun.
        """

        if not self._guard.acquire(blocking=False):
            self.logger.debug("Sync batch still in flight, skipping tick")
            return 0

        processed = 0
        try:
            # checked under the guard so stop() cannot slip between check and batch
            if scheduled and self._stopping:
                return 0
            reclaimed = self.store.reclaim_stuck(self.settings.lease_timeout_sec)
            if reclaimed:
                self.logger.warning("Reclaimed %s sync operations with expired leases", reclaimed)

            batch = self.store.claim_pending_batch(self.settings.batch_size)
            if not batch:
                return 0

            self.logger.info("Processing %s sync operations", len(batch))
            for operation in batch:
                try:
                    outcome = self.process_operation(operation)
                except Exception as exc:
                    # row stays in ``processing`` until its lease expires
                    self.logger.error("Sync operation %s crashed: %s", operation.id, exc)
                    continue
                if outcome != SKIPPED:
                    processed += 1
        except Exception as exc:
            self.logger.error("Error processing sync queue: %s", exc)
        finally:
            self._guard.release()
        return processed

    def process_operation(self, operation: SyncOperation) -> str:
        if not self.store.mark_processing(operation.id):
            self.logger.debug("Sync operation %s already claimed", operation.id)
            return SKIPPED

        try:
            result = self._execute(operation)
        except UnsupportedOperationError as exc:
            self.logger.error(
                "Unsupported sync operation %s (%s %s): %s",
                operation.id,
                operation.kind,
                operation.entity_type,
                exc,
            )
            self.retry.on_failure(operation, exc)
            return FAILED
        except Exception as exc:
            decision = self.retry.on_failure(operation, exc)
            if decision.failed:
                self.logger.error(
                    "Sync operation %s failed after %s attempts: %s",
                    operation.id,
                    decision.retry_count,
                    exc,
                )
                return FAILED
            self.logger.warning(
                "Retrying sync operation %s in %sms (attempt %s/%s): %s",
                operation.id,
                decision.delay_ms,
                decision.retry_count,
                self.retry.policy.max_retries,
                exc,
            )
            return RETRY

        self.store.mark_completed(operation.id, result)
        self.logger.info(
            "Completed sync operation: %s %s:%s",
            operation.kind,
            operation.entity_type,
            operation.entity_id,
        )
        return COMPLETED

    def _execute(self, operation: SyncOperation) -> Dict[str, Any]:
        with self._session_factory() as session:
            logged = session.get(SyncLogEntry, operation.id)
            if logged is not None:
                self.logger.info("Sync operation %s already applied, reusing result", operation.id)
                return json.loads(logged.response_payload or "{}")

            result = self.dispatcher.dispatch(operation, session)
            session.add(
                SyncLogEntry(
                    idempotency_key=operation.id,
                    user_id=operation.user_id,
                    operation_type=f"{operation.kind}_{operation.entity_type}".upper(),
                    request_payload=json.dumps(operation.payload, ensure_ascii=False, default=str),
                    response_payload=json.dumps(result, ensure_ascii=False, default=str),
                    created_at=self._clock(),
                )
            )
            session.commit()
            return result

    # ------------------------------------------------------------------
    # Periodic loop
    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self.tick, scheduled=True)
            except Exception as exc:
                self.logger.error("Sync tick error: %s", exc)
            await asyncio.sleep(self.settings.interval_sec)

    def start(self) -> asyncio.Task:
        """Start the periodic loop on the running event loop."""

        if self.is_running:
            return self._task
        self.logger.info("Starting sync queue processor (every %ss)", self.settings.interval_sec)
        self._stopping = False
        self._task = asyncio.get_running_loop().create_task(self._loop())
        return self._task

    async def stop(self) -> None:
        self._stopping = True
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        # wait for a batch that is still running in its thread
        await asyncio.to_thread(self._guard.acquire)
        self._guard.release()
        self.logger.info("Sync queue processor stopped")


__all__ = ["SyncWorker", "COMPLETED", "RETRY", "FAILED", "SKIPPED"]
