from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from sqlmodel import Session

from core.log import ensure_logger
from core.settings import SyncQueueSettings
from datetime_utils import utc_now
from services.conflict_resolver import ConflictResolver
from services.dispatcher import SyncDispatcher
from services.errors import InvalidOperationError
from services.operation_store import OperationStore
from services.retry import RetryController, RetryPolicy
from services.sync_worker import SyncWorker
from storage.config import load_sync_settings
from storage.db import get_session


MAX_RETENTION_DAYS = 365


class SyncQueueService:
    """Entry point used by request handlers and the hosting process."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = get_session,
        *,
        settings: Optional[SyncQueueSettings] = None,
        dispatcher: Optional[SyncDispatcher] = None,
        resolver: Optional[ConflictResolver] = None,
        clock: Callable[[], datetime] = utc_now,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.settings = settings or load_sync_settings()
        self.logger = logger or ensure_logger()
        self.resolver = resolver or ConflictResolver()
        self.store = OperationStore(session_factory, settings=self.settings, clock=clock)
        self.retry = RetryController(self.store, RetryPolicy.from_settings(self.settings), clock=clock)
        self.worker = SyncWorker(
            self.store,
            dispatcher=dispatcher or SyncDispatcher(resolver=self.resolver),
            retry=self.retry,
            session_factory=session_factory,
            settings=self.settings,
            clock=clock,
            logger=self.logger,
        )

    # ------------------------------------------------------------------
    # Enqueue
    def queue_operation(
        self,
        user_id: str,
        entity_type: str,
        entity_id: str,
        operation: str,
        payload: Mapping[str, Any],
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> str:
        try:
            op_id = self.store.enqueue(user_id, entity_type, entity_id, operation, payload, metadata or {})
        except InvalidOperationError as exc:
            self.logger.warning("Rejected sync operation %s %s:%s: %s", operation, entity_type, entity_id, exc)
            raise
        self.logger.info(
            "Queued sync operation: %s %s:%s for user %s",
            str(operation).upper(),
            entity_type,
            entity_id,
            user_id,
        )
        return op_id

    # ------------------------------------------------------------------
    # Status
    def get_sync_status(self, user_id: str) -> Dict[str, int]:
        counts = self.store.count_by_status(user_id)
        return {"total": sum(counts.values()), **counts}

    def get_pending_operations(self, user_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        return [op.to_dict() for op in self.store.list_pending(user_id, limit)]

    def get_sync_stats(self) -> Dict[str, Any]:
        counts = self.store.count_all_by_status()
        return {
            "total": sum(counts.values()),
            **counts,
            "running": self.worker.is_running,
            "batchSize": self.settings.batch_size,
            "intervalSec": self.settings.interval_sec,
            "maxRetries": self.settings.max_retries,
        }

    # ------------------------------------------------------------------
    # Processing
    def start_processing(self):
        return self.worker.start()

    async def stop_processing(self) -> None:
        await self.worker.stop()

    def process_now(self) -> int:
        return self.worker.tick()

    def force_sync(self, user_id: str) -> Dict[str, int]:
        """Make the user's pending operations due and run a batch immediately."""

        made_due = self.store.make_due(user_id)
        self.logger.info("Force sync for user %s: %s operations due", user_id, made_due)
        return {"due": made_due, "processed": self.worker.tick()}

    # ------------------------------------------------------------------
    # Maintenance
    def clear_old_operations(self, days_old: Optional[int] = None) -> int:
        days = self.settings.retention_days if days_old is None else days_old
        if isinstance(days, bool) or not isinstance(days, int) or not 1 <= days <= MAX_RETENTION_DAYS:
            raise InvalidOperationError(f"days_old must be between 1 and {MAX_RETENTION_DAYS}")
        removed = self.store.purge_older_than(days)
        self.logger.info("Cleared %s old sync operations", removed)
        return removed

    def resolve_conflicts(self, user_id: str, conflicts: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        items = list(conflicts)
        resolved = self.resolver.resolve_many(items)
        self.logger.info("Resolved %s conflicts for user %s", len(resolved), user_id)
        return resolved


__all__ = ["SyncQueueService", "MAX_RETENTION_DAYS"]
