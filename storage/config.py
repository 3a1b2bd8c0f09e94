"""JSON-backed overrides for the sync queue configuration."""
from __future__ import annotations

import json
from dataclasses import asdict, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

from core.settings import CONFIG_PATH, SYNC_QUEUE, SyncQueueSettings


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _load_raw(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    if not isinstance(data, dict):
        return {}
    section = data.get("sync_queue", data)
    return section if isinstance(section, dict) else {}


def _coerce(name: str, value: Any, default: Any) -> Any:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be numeric")
    if isinstance(default, int):
        coerced = int(value)
    else:
        coerced = float(value)
    if coerced < 0:
        raise ValueError(f"{name} must not be negative")
    return coerced


def load_sync_settings(
    path: Optional[Path] = None,
    *,
    base: SyncQueueSettings = SYNC_QUEUE,
) -> SyncQueueSettings:
    """Return ``base`` with any valid overrides found in ``config.json``."""

    target = path or CONFIG_PATH
    data = _load_raw(target)
    known = {f.name for f in fields(SyncQueueSettings)}
    changes: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in known:
            continue
        try:
            changes[key] = _coerce(key, value, getattr(base, key))
        except (TypeError, ValueError):
            continue
    return replace(base, **changes) if changes else base


def save_sync_settings(settings: SyncQueueSettings, path: Optional[Path] = None) -> None:
    target = path or CONFIG_PATH
    _ensure_parent(target)
    payload = json.dumps({"sync_queue": asdict(settings)}, ensure_ascii=False, indent=2, sort_keys=True)
    tmp = target.with_suffix(".tmp")
    try:
        tmp.write_text(payload, encoding="utf-8")
        tmp.replace(target)
    finally:
        if tmp.exists():
            try:
                tmp.unlink()
            except OSError:
                pass


__all__ = ["load_sync_settings", "save_sync_settings"]
