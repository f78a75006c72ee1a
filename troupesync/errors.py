"""
troupesync.errors — Exception Taxonomy
=======================================

Event-scoped source errors are caught at the adapter boundary and turned
into deletion markers.  Provider errors (bad credentials, outages) are not
event-scoped and abort the pass.  Everything else propagates to the sync
orchestrator, which releases the troupe lock before re-raising.
"""

from __future__ import annotations


class TroupeSyncError(Exception):
    """Base class for every error raised by troupesync."""


# ---------------------------------------------------------------------------
# Caller errors: never retried
# ---------------------------------------------------------------------------
class ClientError(TroupeSyncError):
    """The caller supplied invalid input."""


class QuotaExceeded(ClientError):
    """A quota pre-check failed; nothing was mutated."""

    def __init__(self, message: str = "Operation not within limits for this troupe") -> None:
        super().__init__(message)


class TroupeNotFound(ClientError):
    def __init__(self, troupe_id: str) -> None:
        super().__init__(f"Troupe not found: {troupe_id}")
        self.troupe_id = troupe_id


# ---------------------------------------------------------------------------
# Source errors: scoped to one event
# ---------------------------------------------------------------------------
class SourceError(TroupeSyncError):
    """An external data source could not supply an event's data."""


class SourceUnreachable(SourceError):
    """The source is gone or access to it was revoked."""


class SourceMalformed(SourceError):
    """The source answered with data that cannot be interpreted."""


# ---------------------------------------------------------------------------
# Provider errors: not scoped to one event
# ---------------------------------------------------------------------------
class ProviderUnavailable(TroupeSyncError):
    """The provider rejected our credentials or kept failing after retries.

    Says nothing about the event itself, so the pass is aborted instead of
    deleting the event.
    """


# ---------------------------------------------------------------------------
# Fatal errors
# ---------------------------------------------------------------------------
class DataIntegrityError(TroupeSyncError):
    """A step that must not fail did, e.g. quota accounting after a mutation."""


class LockConflict(TroupeSyncError):
    """The troupe's sync lock is held."""


class SyncInProgress(LockConflict):
    def __init__(self, troupe_id: str) -> None:
        super().__init__(f"Sync already in progress for troupe {troupe_id}")
        self.troupe_id = troupe_id


class PartialIngestFailure(TroupeSyncError):
    """One or more adapters failed unexpectedly; the sync wrote nothing.

    ``failures`` maps event id → the exception raised while ingesting it.
    """

    def __init__(self, failures: dict[str, BaseException]) -> None:
        super().__init__(
            f"{len(failures)} event(s) failed during ingestion: "
            + ", ".join(sorted(failures))
        )
        self.failures = failures
