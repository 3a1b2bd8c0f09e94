"""Create/update/delete of system-of-record entities from queued operations.

Handlers run inside the worker's session and never commit themselves: the
worker commits the entity change together with its ``sync_log`` entry.

A stored entity conflicts with a queued change when it was soft-deleted, or
when the version the client based its edit on (``metadata.base_updated_at``,
falling back to ``metadata.client_updated_at``) is older than the server's
``updated_at``.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Tuple

from sqlmodel import Session, SQLModel, select

from datetime_utils import ensure_utc, parse_rfc3339, utc_now
from models.entities import Flow, FlowEntry, UserProfile, UserSettings, entity_snapshot
from models.sync_operation import EntityType, OperationKind
from services.conflict_resolver import ConflictResolver, ConflictType, Resolution
from services.errors import EntityNotFoundError, InvalidOperationError


ALL_KINDS: FrozenSet[OperationKind] = frozenset(OperationKind)
UPSERT_KINDS: FrozenSet[OperationKind] = frozenset({OperationKind.CREATE, OperationKind.UPDATE})


def _metadata_instant(metadata: Mapping[str, Any], *keys: str) -> Optional[datetime]:
    for key in keys:
        value = metadata.get(key)
        if isinstance(value, str):
            parsed = parse_rfc3339(value)
            if parsed is not None:
                return parsed
    return None


class EntityHandler:
    entity_type: EntityType
    model: type = SQLModel
    capabilities: FrozenSet[OperationKind] = ALL_KINDS
    writable: Tuple[str, ...] = ()

    def __init__(
        self,
        resolver: Optional[ConflictResolver] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.resolver = resolver or ConflictResolver()
        self._clock = clock

    # ----- hooks -----
    def load(self, session: Session, user_id: str, entity_id: str):
        return session.get(self.model, entity_id)

    def new_entity(self, session: Session, user_id: str, entity_id: str, payload: Mapping[str, Any]):
        raise NotImplementedError

    def to_document(self, entity) -> Dict[str, Any]:
        return entity_snapshot(entity)

    def from_document(self, document: Mapping[str, Any]) -> Dict[str, Any]:
        return {key: document[key] for key in self.writable if key in document}

    def to_local_document(self, payload: Mapping[str, Any], metadata: Mapping[str, Any]) -> Dict[str, Any]:
        """Queued payload in the shape the resolver compares against ``to_document``."""

        document = dict(payload)
        local_updated = metadata.get("client_updated_at") or payload.get("updated_at")
        if local_updated:
            document["updated_at"] = local_updated
        return document

    # ----- operations -----
    def create(
        self,
        session: Session,
        user_id: str,
        entity_id: str,
        payload: Mapping[str, Any],
        metadata: Mapping[str, Any],
    ) -> Dict[str, Any]:
        entity = self.load(session, user_id, entity_id)
        if entity is not None:
            # repeated delivery of a create acts as an update
            return self._apply(session, user_id, entity, payload, metadata)
        entity = self.new_entity(session, user_id, entity_id, payload)
        self._write(session, entity, self.from_document(payload))
        return {"id": entity.id, "status": "created"}

    def update(
        self,
        session: Session,
        user_id: str,
        entity_id: str,
        payload: Mapping[str, Any],
        metadata: Mapping[str, Any],
    ) -> Dict[str, Any]:
        entity = self.load(session, user_id, entity_id)
        if entity is None:
            raise EntityNotFoundError(f"{self.entity_type.value} {entity_id} not found")
        return self._apply(session, user_id, entity, payload, metadata)

    def delete(
        self,
        session: Session,
        user_id: str,
        entity_id: str,
        metadata: Mapping[str, Any],
    ) -> Dict[str, Any]:
        entity = self.load(session, user_id, entity_id)
        if entity is None or entity.deleted_at is not None:
            return {"id": entity_id, "status": "deleted"}
        self._check_owner(entity, user_id)
        now = self._clock()
        entity.deleted_at = now
        entity.updated_at = now
        session.add(entity)
        return {"id": entity.id, "status": "deleted"}

    # ----- internals -----
    def _check_owner(self, entity, user_id: str) -> None:
        owner = getattr(entity, "owner_id", None) or getattr(entity, "user_id", None)
        if owner is not None and owner != user_id:
            raise InvalidOperationError(
                f"{self.entity_type.value} {entity.id} belongs to another user"
            )

    def detect_conflict(self, entity, metadata: Mapping[str, Any]) -> Optional[str]:
        if entity.deleted_at is not None:
            return ConflictType.DELETION.value
        base = _metadata_instant(metadata, "base_updated_at", "client_updated_at")
        server_updated = ensure_utc(entity.updated_at)
        if base is None or server_updated is None or base >= server_updated:
            return None
        return str(metadata.get("conflict_type") or ConflictType.DATA.value)

    def _apply(
        self,
        session: Session,
        user_id: str,
        entity,
        payload: Mapping[str, Any],
        metadata: Mapping[str, Any],
    ) -> Dict[str, Any]:
        self._check_owner(entity, user_id)
        conflict_type = self.detect_conflict(entity, metadata)
        if conflict_type is None:
            self._write(session, entity, self.from_document(payload))
            return {"id": entity.id, "status": "updated"}

        resolved = self.resolver.resolve(
            {
                "entity_type": self.entity_type.value,
                "entity_id": entity.id,
                "local_data": self.to_local_document(payload, metadata),
                "server_data": self.to_document(entity),
                "conflict_type": conflict_type,
            }
        )
        if resolved["resolution"] == Resolution.SERVER.value:
            return {"id": entity.id, "status": "unchanged", "resolution": resolved["resolution"]}

        self._write(session, entity, self.from_document(resolved["resolved_data"]))
        return {"id": entity.id, "status": "updated", "resolution": resolved["resolution"]}

    def _write(self, session: Session, entity, changes: Mapping[str, Any]) -> None:
        for key, value in changes.items():
            setattr(entity, key, value)
        entity.updated_at = self._clock()
        session.add(entity)


class FlowHandler(EntityHandler):
    entity_type = EntityType.FLOW
    model = Flow
    writable = ("title", "description", "tracking_type", "frequency", "archived", "extra")

    def new_entity(self, session, user_id, entity_id, payload):
        title = payload.get("title") or payload.get("name")
        if not title:
            raise InvalidOperationError("flow title is required")
        return Flow(id=entity_id, owner_id=user_id, title=str(title).strip(), created_at=self._clock())

    # clients call the flow title ``name``
    def to_document(self, entity) -> Dict[str, Any]:
        document = entity_snapshot(entity)
        document["name"] = document.get("title")
        return document

    def to_local_document(self, payload, metadata):
        document = super().to_local_document(payload, metadata)
        if not document.get("name") and document.get("title"):
            document["name"] = document["title"]
        return document

    def from_document(self, document):
        changes = super().from_document(document)
        if document.get("name"):
            changes["title"] = str(document["name"]).strip()
        elif "title" in changes:
            changes["title"] = str(changes["title"]).strip()
        return changes


class FlowEntryHandler(EntityHandler):
    entity_type = EntityType.FLOW_ENTRY
    model = FlowEntry
    writable = ("status", "note", "mood_score", "value")

    def create(self, session, user_id, entity_id, payload, metadata):
        entity = self.load(session, user_id, entity_id)
        if entity is None and payload.get("flow_id") and payload.get("date"):
            stmt = select(FlowEntry).where(
                FlowEntry.flow_id == payload["flow_id"],
                FlowEntry.date == str(payload["date"]),
                FlowEntry.deleted_at == None,  # noqa: E711
            )
            existing = session.exec(stmt).first()
            if existing is not None:
                return self._apply(session, user_id, existing, payload, metadata)
        return super().create(session, user_id, entity_id, payload, metadata)

    def new_entity(self, session, user_id, entity_id, payload):
        flow_id = payload.get("flow_id")
        entry_date = payload.get("date")
        if not flow_id or not entry_date:
            raise InvalidOperationError("flow entry requires flow_id and date")
        flow = session.get(Flow, flow_id)
        if flow is None or flow.deleted_at is not None:
            raise EntityNotFoundError(f"flow {flow_id} not found")
        return FlowEntry(
            id=entity_id,
            flow_id=flow_id,
            owner_id=user_id,
            date=str(entry_date),
            created_at=self._clock(),
        )


class UserProfileHandler(EntityHandler):
    entity_type = EntityType.USER_PROFILE
    model = UserProfile
    capabilities = UPSERT_KINDS
    writable = ("display_name", "bio", "avatar_url", "profile_theme")

    def load(self, session, user_id, entity_id):
        return session.exec(select(UserProfile).where(UserProfile.user_id == user_id)).first()

    def new_entity(self, session, user_id, entity_id, payload):
        return UserProfile(id=entity_id, user_id=user_id, created_at=self._clock())


class UserSettingsHandler(EntityHandler):
    entity_type = EntityType.USER_SETTINGS
    model = UserSettings
    capabilities = UPSERT_KINDS
    writable = ("settings",)

    def load(self, session, user_id, entity_id):
        return session.exec(select(UserSettings).where(UserSettings.user_id == user_id)).first()

    def new_entity(self, session, user_id, entity_id, payload):
        return UserSettings(id=entity_id, user_id=user_id, settings={}, created_at=self._clock())

    def from_document(self, document):
        settings = document.get("settings")
        if settings is None:
            settings = {k: v for k, v in document.items() if k not in ("updated_at", "id", "user_id")}
        if not isinstance(settings, Mapping):
            raise InvalidOperationError("settings must be an object")
        return {"settings": dict(settings)}

    # flat payloads carry the settings keys at the top level
    def to_local_document(self, payload, metadata):
        document = super().to_local_document(payload, metadata)
        return {"settings": self.from_document(payload)["settings"], "updated_at": document.get("updated_at")}

    def _write(self, session, entity, changes):
        # settings updates are partial: merge on top of what is stored
        merged = dict(entity.settings or {})
        merged.update(changes.get("settings") or {})
        entity.settings = merged
        entity.updated_at = self._clock()
        session.add(entity)


__all__ = [
    "ALL_KINDS",
    "EntityHandler",
    "FlowEntryHandler",
    "FlowHandler",
    "UPSERT_KINDS",
    "UserProfileHandler",
    "UserSettingsHandler",
]
