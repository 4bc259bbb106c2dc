"""
undo.py

Single-slot snapshot undo for contextual-update batches.

Invariants
----------
- At most one snapshot is held, belonging to one case.
- capture() overwrites whatever the slot held before.
- The slot is cleared when the editor opens a different case, and after a
  successful undo (restore + refetch).
- A failed restore leaves the slot untouched so the user can retry.

Undo is a bulk replace of the whole document, never a reversal of individual
commands, so it is correct even when the batch was only partially applied.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from loguru import logger

from errors import NotFoundError, NothingToUndo, RestoreFailure, StoreWriteFailure
from model import CaseDocument

if TYPE_CHECKING:
    from application import AbstractDocumentStore


@dataclass(frozen=True)
class UndoSlot:
    case_id: uuid.UUID
    snapshot: CaseDocument
    summary: Optional[str]
    taken_at: datetime


class SnapshotUndoManager:
    """Owns the single undo slot of one editor session."""

    def __init__(self) -> None:
        self._slot: Optional[UndoSlot] = None

    @property
    def slot(self) -> Optional[UndoSlot]:
        return self._slot

    @property
    def can_undo(self) -> bool:
        return self._slot is not None

    def capture(self, document: CaseDocument, summary: Optional[str] = None) -> UndoSlot:
        """Deep-copy `document` into the slot, replacing any previous snapshot."""
        if self._slot is not None:
            logger.debug("Discarding undo snapshot for case {}", self._slot.case_id)
        self._slot = UndoSlot(
            case_id=document.id,
            snapshot=copy.deepcopy(document),
            summary=summary,
            taken_at=datetime.now(timezone.utc),
        )
        return self._slot

    def clear(self) -> None:
        self._slot = None

    def release_if_other_case(self, case_id: uuid.UUID) -> None:
        if self._slot is not None and self._slot.case_id != case_id:
            logger.debug("Case changed; dropping undo snapshot for {}", self._slot.case_id)
            self._slot = None

    async def restore(self, store: "AbstractDocumentStore") -> CaseDocument:
        """
        Post the snapshot back to the store as a bulk replace.  The slot is
        kept; the caller clears it once the refetch has succeeded.
        """
        slot = self._slot
        if slot is None:
            raise NothingToUndo("There is no contextual update to undo.")
        try:
            return await store.replace_case(copy.deepcopy(slot.snapshot))
        except (StoreWriteFailure, NotFoundError) as exc:
            logger.bind(case_id=str(slot.case_id)).error("Undo restore failed: {}", exc)
            raise RestoreFailure(f"Undo failed, the snapshot is kept for retry: {exc}") from exc
