# flowsync/models/entities.py
"""System-of-record tables the sync worker writes to."""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from datetime_utils import to_rfc3339_utc, utc_now


def _new_id() -> str:
    return str(uuid.uuid4())


class Flow(SQLModel, table=True):
    __tablename__ = "flows"

    id: str = Field(default_factory=_new_id, primary_key=True)
    owner_id: str = Field(index=True)
    title: str
    description: Optional[str] = None
    tracking_type: str = "Binary"     # Binary / Quantitative / Time-based
    frequency: str = "Daily"          # Daily / Weekly / Monthly
    archived: bool = False
    streak_count: int = 0
    extra: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None


class FlowEntry(SQLModel, table=True):
    __tablename__ = "flow_entries"

    id: str = Field(default_factory=_new_id, primary_key=True)
    flow_id: str = Field(index=True)
    owner_id: str = Field(index=True)
    date: str = Field(index=True)     # YYYY-MM-DD
    status: str = "pending"           # done / missed / skipped / pending
    note: Optional[str] = None
    mood_score: Optional[int] = None
    value: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None


class UserProfile(SQLModel, table=True):
    __tablename__ = "user_profiles"

    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: str = Field(unique=True, index=True)
    display_name: str = ""
    bio: Optional[str] = None
    avatar_url: Optional[str] = None
    profile_theme: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None


class UserSettings(SQLModel, table=True):
    __tablename__ = "user_settings"

    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: str = Field(unique=True, index=True)
    settings: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None


def entity_snapshot(entity: SQLModel) -> Dict[str, Any]:
    """Plain dict view of a row with timestamps rendered as RFC3339 strings."""

    data = entity.model_dump()
    for key, value in list(data.items()):
        if isinstance(value, datetime):
            data[key] = to_rfc3339_utc(value)
    return data


__all__ = ["Flow", "FlowEntry", "UserProfile", "UserSettings", "entity_snapshot"]
