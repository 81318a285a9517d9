# src/battle_plan/core/errors.py

"""
Error taxonomy shared by the store, the remote adapters and the sync engine.

Background callers (debounced backup, startup restore check) catch these and log;
user-initiated callers let them propagate to the command layer.
"""

from __future__ import annotations


class BattlePlanError(Exception):
    """Base class for all application errors."""


class NotFoundError(BattlePlanError):
    """Referenced record (or remote backup) does not exist."""


class OwnershipError(BattlePlanError, ValueError):
    """A write tried to cross the local-owned / remote-owned boundary."""


class RemoteError(BattlePlanError):
    """Remote call failed in a way that is not worth retrying."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthExpiredError(RemoteError):
    """Remote rejected our credentials (or we have none). Forces a sign-out."""


class TransientError(RemoteError):
    """Network failure, rate limit or 5xx. Eligible for bounded retry."""


class SyncError(BattlePlanError):
    """A manual sync operation could not run."""


class RestoreNotConfirmedError(SyncError):
    """Manual restore is destructive and requires explicit confirmation."""


class CaptureError(BattlePlanError):
    """AI structuring failed. The message is safe to show to the user."""
