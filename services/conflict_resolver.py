"""Resolution of conflicts between queued (offline) data and server data.

``timestamp_conflict`` and ``deletion_conflict`` always keep the server copy.
``data_conflict`` merges field by field with a policy per entity type; the
server's timestamps always survive a merge.
"""
from __future__ import annotations

import copy
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping

from datetime_utils import as_instant
from models.sync_operation import EntityType
from services.errors import ConflictResolutionError


class ConflictType(str, Enum):
    TIMESTAMP = "timestamp_conflict"
    DATA = "data_conflict"
    DELETION = "deletion_conflict"


class Resolution(str, Enum):
    SERVER = "server"
    MERGE = "merge"


def _is_newer(local_value: Any, server_value: Any) -> bool:
    local_ts = as_instant(local_value)
    server_ts = as_instant(server_value)
    if local_ts is not None and server_ts is not None:
        return local_ts > server_ts
    if isinstance(local_value, str) and isinstance(server_value, str):
        return local_value > server_value
    return False


def merge_flow(local: Mapping[str, Any], server: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(server)
    merged["name"] = local.get("name") or server.get("name")
    merged["description"] = local.get("description") or server.get("description")
    merged["updated_at"] = server.get("updated_at")
    merged["streak_count"] = server.get("streak_count")
    return merged


def merge_flow_entry(local: Mapping[str, Any], server: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(server)
    if _is_newer(local.get("updated_at"), server.get("updated_at")):
        merged["status"] = local.get("status")
    else:
        merged["status"] = server.get("status")
    merged["note"] = local.get("note") or server.get("note")
    merged["updated_at"] = server.get("updated_at")
    return merged


def merge_user_profile(local: Mapping[str, Any], server: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(server)
    merged["display_name"] = local.get("display_name") or server.get("display_name")
    merged["profile_theme"] = local.get("profile_theme") or server.get("profile_theme")
    merged["updated_at"] = server.get("updated_at")
    return merged


def merge_user_settings(local: Mapping[str, Any], server: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(server)
    settings: Dict[str, Any] = {}
    settings.update(server.get("settings") or {})
    settings.update(local.get("settings") or {})
    merged["settings"] = settings
    merged["updated_at"] = server.get("updated_at")
    return merged


class ConflictResolver:
    def merge_data(
        self,
        entity_type: str,
        local_data: Mapping[str, Any],
        server_data: Mapping[str, Any],
    ) -> Dict[str, Any]:
        try:
            entity = EntityType(entity_type)
        except ValueError:
            return dict(server_data)

        if entity is EntityType.FLOW:
            return merge_flow(local_data, server_data)
        if entity is EntityType.FLOW_ENTRY:
            return merge_flow_entry(local_data, server_data)
        if entity is EntityType.USER_PROFILE:
            return merge_user_profile(local_data, server_data)
        return merge_user_settings(local_data, server_data)

    def resolve(self, conflict: Mapping[str, Any]) -> Dict[str, Any]:
        """Return ``conflict`` extended with ``resolution`` and ``resolved_data``.

        Inputs are deep-copied first, so callers may keep using them.
        """

        conflict = copy.deepcopy(dict(conflict))
        local_data = conflict.get("local_data") or {}
        server_data = conflict.get("server_data") or {}
        conflict_type = conflict.get("conflict_type")

        if conflict_type in (ConflictType.TIMESTAMP.value, ConflictType.DELETION.value):
            conflict["resolution"] = Resolution.SERVER.value
            conflict["resolved_data"] = server_data
            return conflict

        if conflict_type == ConflictType.DATA.value:
            conflict["resolution"] = Resolution.MERGE.value
            conflict["resolved_data"] = self.merge_data(
                str(conflict.get("entity_type")), local_data, server_data
            )
            return conflict

        raise ConflictResolutionError(f"Unknown conflict type: {conflict_type}")

    def resolve_many(self, conflicts: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        return [self.resolve(conflict) for conflict in conflicts]


__all__ = [
    "ConflictResolver",
    "ConflictType",
    "Resolution",
    "merge_flow",
    "merge_flow_entry",
    "merge_user_profile",
    "merge_user_settings",
]
