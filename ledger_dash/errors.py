"""Error taxonomy shared by the client, the store and the sync engine.

Each failure mode has its own class so the web layer can render a specific
message: a missing token, a rejected request, a missing baseline and a broken
local database all need different advice.
"""
from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for every error raised by the ledger_dash core."""


class ConfigurationError(SyncError):
    """Credentials or settings are missing; raised before any network call."""


class RemoteApiError(SyncError):
    """The remote ledger answered with a non-2xx status or could not be reached.

    ``status`` is ``None`` when no HTTP response was received at all.
    """

    def __init__(self, message: str, status: Optional[int] = None, body: object = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is None:
            return base
        return f"{base} (HTTP {self.status})"


class NoPriorSyncError(SyncError):
    """An incremental sync was requested before any full sync completed."""

    def __init__(self, message: str = "No previous sync found. Please perform a full sync first.") -> None:
        super().__init__(message)


class StoreError(SyncError):
    """Writing to or reading from the local SQLite store failed."""


class TransformError(SyncError):
    """A remote payload did not have the shape the transformer expects."""


class SyncInProgressError(SyncError):
    """Another sync run currently holds the single-flight guard."""


__all__ = [
    "SyncError",
    "ConfigurationError",
    "RemoteApiError",
    "NoPriorSyncError",
    "StoreError",
    "TransformError",
    "SyncInProgressError",
]
