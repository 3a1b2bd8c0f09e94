"""Sync-specific exceptions."""
from __future__ import annotations


class SyncError(Exception):
    """Base exception for sync errors."""

    retryable = True


class InvalidOperationError(SyncError, ValueError):
    """Raised synchronously when a mutation cannot be queued."""

    retryable = False


class UnsupportedOperationError(SyncError):
    """No handler exists for the ``(entity_type, kind)`` pair."""

    retryable = False


class ConflictResolutionError(SyncError):
    """Raised for conflict types the resolver does not know."""


class EntityNotFoundError(SyncError):
    """Raised when the target entity does not exist (yet)."""


__all__ = [
    "ConflictResolutionError",
    "EntityNotFoundError",
    "InvalidOperationError",
    "SyncError",
    "UnsupportedOperationError",
]
