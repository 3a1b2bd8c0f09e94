from __future__ import annotations

from typing import Any, Dict, Optional

from sqlmodel import Session

from models.sync_operation import EntityType, OperationKind
from services.conflict_resolver import ConflictResolver
from services.entity_handlers import (
    EntityHandler,
    FlowEntryHandler,
    FlowHandler,
    UserProfileHandler,
    UserSettingsHandler,
)
from services.errors import UnsupportedOperationError
from services.operation_store import SyncOperation


class SyncDispatcher:
    """Routes an operation to the handler of its entity type.

    Routing only: the session is owned by the caller, and so is the commit.
    """

    def __init__(
        self,
        *,
        flows: Optional[EntityHandler] = None,
        flow_entries: Optional[EntityHandler] = None,
        profiles: Optional[EntityHandler] = None,
        settings: Optional[EntityHandler] = None,
        resolver: Optional[ConflictResolver] = None,
    ) -> None:
        resolver = resolver or ConflictResolver()
        self.flows = flows or FlowHandler(resolver)
        self.flow_entries = flow_entries or FlowEntryHandler(resolver)
        self.profiles = profiles or UserProfileHandler(resolver)
        self.settings = settings or UserSettingsHandler(resolver)

    def handler_for(self, entity_type: EntityType) -> EntityHandler:
        if entity_type is EntityType.FLOW:
            return self.flows
        if entity_type is EntityType.FLOW_ENTRY:
            return self.flow_entries
        if entity_type is EntityType.USER_PROFILE:
            return self.profiles
        if entity_type is EntityType.USER_SETTINGS:
            return self.settings
        raise UnsupportedOperationError(f"Unknown entity type: {entity_type}")

    def resolve(self, operation: SyncOperation):
        try:
            entity_type = EntityType(operation.entity_type)
        except ValueError:
            raise UnsupportedOperationError(f"Unknown entity type: {operation.entity_type}") from None
        try:
            kind = OperationKind(operation.kind)
        except ValueError:
            raise UnsupportedOperationError(f"Unknown operation: {operation.kind}") from None

        handler = self.handler_for(entity_type)
        if kind not in handler.capabilities:
            raise UnsupportedOperationError(
                f"{kind.value} is not supported for {entity_type.value}"
            )
        return handler, kind

    def dispatch(self, operation: SyncOperation, session: Session) -> Dict[str, Any]:
        handler, kind = self.resolve(operation)
        payload = operation.payload or {}
        metadata = operation.metadata or {}

        if kind is OperationKind.CREATE:
            return handler.create(session, operation.user_id, operation.entity_id, payload, metadata)
        if kind is OperationKind.UPDATE:
            return handler.update(session, operation.user_id, operation.entity_id, payload, metadata)
        return handler.delete(session, operation.user_id, operation.entity_id, metadata)


__all__ = ["SyncDispatcher"]
