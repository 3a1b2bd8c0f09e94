from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import and_, delete, func, or_, update
from sqlmodel import Session, select

from core.settings import SYNC_QUEUE, SyncQueueSettings
from datetime_utils import ensure_utc, to_rfc3339_utc, utc_now
from models.sync_operation import (
    TERMINAL_STATUSES,
    EntityType,
    OperationKind,
    OperationStatus,
    SyncQueueEntry,
)
from services.errors import InvalidOperationError
from storage.db import get_session


STATUS_KEYS = tuple(status.value for status in OperationStatus)


def _encode(data: Optional[Mapping[str, Any]]) -> str:
    return json.dumps(dict(data or {}), ensure_ascii=False, default=str)


def _decode(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def validate_operation(
    user_id: str,
    entity_type: str,
    entity_id: str,
    kind: str,
    payload: Any,
    metadata: Any = None,
) -> Tuple[EntityType, OperationKind]:
    if not user_id:
        raise InvalidOperationError("user_id is required")
    if not entity_id:
        raise InvalidOperationError("entity_id is required")
    try:
        entity = EntityType(str(entity_type))
    except ValueError:
        raise InvalidOperationError(f"Unsupported entity type: {entity_type}") from None
    try:
        op_kind = OperationKind(str(kind).upper())
    except ValueError:
        raise InvalidOperationError(f"Unsupported operation: {kind}") from None
    if not isinstance(payload, Mapping):
        raise InvalidOperationError("payload must be a JSON object")
    if metadata is not None and not isinstance(metadata, Mapping):
        raise InvalidOperationError("metadata must be a JSON object")
    return entity, op_kind


@dataclass
class SyncOperation:
    id: str
    user_id: str
    entity_type: str
    entity_id: str
    kind: str
    payload: dict
    metadata: dict
    status: str
    retry_count: int
    last_error: Optional[str]
    result: Optional[dict]
    next_attempt_at: Optional[datetime]
    claimed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: SyncQueueEntry) -> "SyncOperation":
        return cls(
            id=row.id,
            user_id=row.user_id,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            kind=row.operation,
            payload=_decode(row.payload),
            metadata=_decode(row.meta_json),
            status=row.status,
            retry_count=row.retry_count,
            last_error=row.last_error,
            result=_decode(row.result) if row.result else None,
            next_attempt_at=ensure_utc(row.next_attempt_at),
            claimed_at=ensure_utc(row.claimed_at),
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("next_attempt_at", "claimed_at", "created_at", "updated_at"):
            data[key] = to_rfc3339_utc(data[key])
        return data


class OperationStore:
    """Durable ``sync_queue`` table; the only source of truth for queue state."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = get_session,
        *,
        settings: SyncQueueSettings = SYNC_QUEUE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self.settings = settings
        self._clock = clock

    def enqueue(
        self,
        user_id: str,
        entity_type: str,
        entity_id: str,
        kind: str,
        payload: Mapping[str, Any],
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> str:
        entity, op_kind = validate_operation(user_id, entity_type, entity_id, kind, payload, metadata)
        now = self._clock()
        record = SyncQueueEntry(
            user_id=str(user_id),
            entity_type=entity.value,
            entity_id=str(entity_id),
            operation=op_kind.value,
            payload=_encode(payload),
            meta_json=_encode(metadata),
            status=OperationStatus.PENDING.value,
            retry_count=0,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )
        with self._session_factory() as session:
            session.add(record)
            session.commit()
            return record.id

    def get(self, op_id: str) -> Optional[SyncOperation]:
        with self._session_factory() as session:
            row = session.get(SyncQueueEntry, op_id)
            return SyncOperation.from_row(row) if row else None

    def claim_pending_batch(self, limit: Optional[int] = None) -> List[SyncOperation]:
        """Due pending operations, oldest ``created_at`` first."""

        size = limit if limit is not None else self.settings.batch_size
        now = self._clock()
        with self._session_factory() as session:
            stmt = (
                select(SyncQueueEntry)
                .where(
                    SyncQueueEntry.status == OperationStatus.PENDING.value,
                    SyncQueueEntry.next_attempt_at <= now,
                )
                .order_by(SyncQueueEntry.created_at.asc(), SyncQueueEntry.id.asc())
                .limit(size)
            )
            return [SyncOperation.from_row(row) for row in session.exec(stmt)]

    def list_pending(self, user_id: str, limit: int = 100) -> List[SyncOperation]:
        with self._session_factory() as session:
            stmt = (
                select(SyncQueueEntry)
                .where(
                    SyncQueueEntry.user_id == user_id,
                    SyncQueueEntry.status == OperationStatus.PENDING.value,
                )
                .order_by(SyncQueueEntry.created_at.asc(), SyncQueueEntry.id.asc())
                .limit(limit)
            )
            return [SyncOperation.from_row(row) for row in session.exec(stmt)]

    # ----- transitions -----
    def _transition(self, op_id: str, allowed: Tuple[str, ...], **values: Any) -> bool:
        now = self._clock()
        values.setdefault("updated_at", now)
        stmt = (
            update(SyncQueueEntry)
            .where(SyncQueueEntry.id == op_id, SyncQueueEntry.status.in_(allowed))
            .values(**values)
        )
        with self._session_factory() as session:
            result = session.exec(stmt)  # type: ignore[call-overload]
            session.commit()
            return result.rowcount == 1

    def mark_processing(self, op_id: str) -> bool:
        """Conditional ``pending -> processing``; ``False`` when the row was not pending."""

        now = self._clock()
        return self._transition(
            op_id,
            (OperationStatus.PENDING.value,),
            status=OperationStatus.PROCESSING.value,
            claimed_at=now,
        )

    def mark_completed(self, op_id: str, result: Optional[Mapping[str, Any]] = None) -> bool:
        return self._transition(
            op_id,
            (OperationStatus.PROCESSING.value,),
            status=OperationStatus.COMPLETED.value,
            result=_encode(result),
            claimed_at=None,
        )

    def mark_failed(
        self,
        op_id: str,
        result: Optional[Mapping[str, Any]] = None,
        *,
        retry_count: Optional[int] = None,
    ) -> bool:
        values: Dict[str, Any] = {
            "status": OperationStatus.FAILED.value,
            "result": _encode(result),
            "claimed_at": None,
        }
        if result and result.get("error"):
            values["last_error"] = str(result["error"])[:1000]
        if retry_count is not None:
            values["retry_count"] = retry_count
        return self._transition(
            op_id,
            (OperationStatus.PENDING.value, OperationStatus.PROCESSING.value),
            **values,
        )

    def mark_pending_for_retry(
        self,
        op_id: str,
        retry_count: int,
        next_attempt_at: Optional[datetime] = None,
        *,
        error: Optional[str] = None,
    ) -> bool:
        values: Dict[str, Any] = {
            "status": OperationStatus.PENDING.value,
            "retry_count": retry_count,
            "next_attempt_at": next_attempt_at or self._clock(),
            "claimed_at": None,
        }
        if error is not None:
            values["last_error"] = error[:1000]
        return self._transition(op_id, (OperationStatus.PROCESSING.value,), **values)

    def reclaim_stuck(self, timeout_sec: Optional[int] = None) -> int:
        """Return ``processing`` rows whose lease expired back to ``pending``."""

        timeout = self.settings.lease_timeout_sec if timeout_sec is None else timeout_sec
        now = self._clock()
        cutoff = now - timedelta(seconds=timeout)
        stmt = (
            update(SyncQueueEntry)
            .where(
                SyncQueueEntry.status == OperationStatus.PROCESSING.value,
                or_(
                    SyncQueueEntry.claimed_at < cutoff,
                    and_(SyncQueueEntry.claimed_at == None, SyncQueueEntry.updated_at < cutoff),  # noqa: E711
                ),
            )
            .values(
                status=OperationStatus.PENDING.value,
                claimed_at=None,
                next_attempt_at=now,
                updated_at=now,
            )
        )
        with self._session_factory() as session:
            result = session.exec(stmt)  # type: ignore[call-overload]
            session.commit()
            return int(result.rowcount or 0)

    def make_due(self, user_id: str) -> int:
        now = self._clock()
        stmt = (
            update(SyncQueueEntry)
            .where(
                SyncQueueEntry.user_id == user_id,
                SyncQueueEntry.status == OperationStatus.PENDING.value,
            )
            .values(next_attempt_at=now)
        )
        with self._session_factory() as session:
            result = session.exec(stmt)  # type: ignore[call-overload]
            session.commit()
            return int(result.rowcount or 0)

    # ----- reporting -----
    def _counts(self, user_id: Optional[str]) -> Dict[str, int]:
        counts = {key: 0 for key in STATUS_KEYS}
        with self._session_factory() as session:
            stmt = select(SyncQueueEntry.status, func.count()).group_by(SyncQueueEntry.status)
            if user_id is not None:
                stmt = stmt.where(SyncQueueEntry.user_id == user_id)
            for status, count in session.exec(stmt):
                if status in counts:
                    counts[status] = int(count)
        return counts

    def count_by_status(self, user_id: str) -> Dict[str, int]:
        return self._counts(user_id)

    def count_all_by_status(self) -> Dict[str, int]:
        return self._counts(None)

    def purge_older_than(self, days: int) -> int:
        """Delete terminal rows last touched more than ``days`` ago."""

        cutoff = self._clock() - timedelta(days=days)
        stmt = delete(SyncQueueEntry).where(
            SyncQueueEntry.status.in_(TERMINAL_STATUSES),
            SyncQueueEntry.updated_at < cutoff,
        )
        with self._session_factory() as session:
            result = session.exec(stmt)  # type: ignore[call-overload]
            session.commit()
            return int(result.rowcount or 0)


__all__ = ["OperationStore", "SyncOperation", "STATUS_KEYS", "validate_operation"]
