"""Exception hierarchy for the SafeCase editor.

Command-level failures (validation, reference resolution, store writes) are
caught by the engine and recorded on the batch result.  Restore and refresh
failures propagate to the caller because the cached document can no longer
be trusted.
"""

from __future__ import annotations

from typing import List, Optional, Sequence


class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""


class NotFoundError(ApplicationError):
    """Raised when a requested case or entity does not exist."""


class CommandValidationError(ApplicationError):
    """A command is structurally unusable and was dropped before resolution."""


class ReferenceNotFound(ApplicationError):
    """A command's location could not be resolved against the current document."""


class StoreWriteFailure(ApplicationError):
    """The Document Store rejected a create / update / delete / reorder call."""


class RefreshFailure(ApplicationError):
    """The document could not be refetched after a mutation."""


class RestoreFailure(ApplicationError):
    """The undo bulk replace failed; the undo slot is kept for a retry."""

    retryable = True


class NothingToUndo(ApplicationError):
    """Undo was requested while the undo slot is empty."""


class PhaseBlocked(ApplicationError):
    """Forward phase navigation was refused by one or more completion predicates."""

    def __init__(self, target: str, blocking: Sequence[str], message: Optional[str] = None):
        self.target = target
        self.blocking: List[str] = list(blocking)
        super().__init__(
            message
            or f"Cannot move to {target}: incomplete phase(s) {', '.join(self.blocking)}."
        )
