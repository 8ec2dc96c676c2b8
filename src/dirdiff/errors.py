"""Error taxonomy for dirdiff."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import DiffResult


class DirdiffError(RuntimeError):
    """Raised when dirdiff encounters an unrecoverable state."""


class ScanError(DirdiffError):
    """A path under the scanned root could not be read or stat-ed."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Cannot scan '{path}': {reason}")
        self.path = path
        self.reason = reason


class RevisionNotFound(DirdiffError):
    """The requested revision does not exist in the store."""

    def __init__(self, revision_id: int | None) -> None:
        if revision_id is None:
            message = "No revisions recorded yet. Run 'dirdiff snapshot' first."
        else:
            message = f"Revision {revision_id} does not exist"
        super().__init__(message)
        self.revision_id = revision_id


class StoreCorruption(DirdiffError):
    """A persisted revision or resume log is unreadable or malformed."""


class PlanConflict(DirdiffError):
    """A sync plan cannot be ordered or has colliding destinations."""


class TransportError(DirdiffError):
    """A transport primitive failed.

    ``transient`` errors (dropped connections, timeouts) are retried by the
    executor; the rest halt the plan immediately.
    """

    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class StaleSourceError(DirdiffError):
    """A local file changed after the snapshot the plan was built from."""


class VerificationFailure(DirdiffError):
    """The remote tree differs from the intended target after a sync."""

    def __init__(self, mismatch: "DiffResult") -> None:
        count = (
            len(mismatch.added) + len(mismatch.removed) + len(mismatch.modified) + len(mismatch.moved)
        )
        super().__init__(f"Remote state diverges from the target in {count} place(s)")
        self.mismatch = mismatch
