"""SQLModel tables for queued synchronization operations."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


class EntityType(str, Enum):
    FLOW = "flow"
    FLOW_ENTRY = "flow_entry"
    USER_PROFILE = "user_profile"
    USER_SETTINGS = "user_settings"


class OperationKind(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class OperationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (OperationStatus.COMPLETED.value, OperationStatus.FAILED.value)


class SyncQueueEntry(SQLModel, table=True):
    __tablename__ = "sync_queue"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    user_id: str = Field(index=True)
    entity_type: str = Field(index=True)
    entity_id: str = Field(index=True)
    operation: str
    payload: str
    meta_json: str = "{}"
    status: str = Field(default=OperationStatus.PENDING.value, index=True)
    retry_count: int = Field(default=0)
    last_error: Optional[str] = None
    result: Optional[str] = None
    next_attempt_at: datetime = Field(default_factory=utc_now, index=True)
    claimed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now)


class SyncLogEntry(SQLModel, table=True):
    """Idempotency record written together with the entity change."""

    __tablename__ = "sync_log"

    idempotency_key: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    operation_type: str = Field(index=True)
    request_payload: Optional[str] = None
    response_payload: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now, index=True)


__all__ = [
    "EntityType",
    "OperationKind",
    "OperationStatus",
    "SyncLogEntry",
    "SyncQueueEntry",
    "TERMINAL_STATUSES",
]
