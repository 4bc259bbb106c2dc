"""
application.py

Application layer for the SafeCase guided safety-assessment editor.

Overview
--------
The application layer sits between the presentation layer (API / UI) and the
command engine.  It is responsible for:

  1. Defining clean output DTOs (dataclasses) for cases, batch results,
     undo status and phase status.
  2. Declaring the abstract Document Store so that the engine remains fully
     persistence-agnostic (the in-memory implementation lives in
     infrastructure.py).
  3. Implementing the EditorSession: the engine facade used by the UI.  It
     holds the cached document, the single undo slot and the phase gate for
     one open case, and exposes apply_command / apply_batch /
     undo_last_batch / reorder / advance_phase / jump_to_phase.
  4. Small use cases for case creation and lookup.

Structure
---------
DTOs
    CaseDTO, CommandOutcomeDTO, BatchResultDTO, UndoStatusDTO,
    PhaseStatusDTO, PhaseTransitionDTO

Store interface
    AbstractDocumentStore

Engine facade
    EditorSession, SessionRegistry

Use Cases
    CreateCaseUseCase, GetCaseUseCase, ListCasesUseCase

Design notes
------------
- The cached document is only ever replaced wholesale: by a refetch after a
  batch, a reorder or a phase change, or by a refetch after an undo restore.
  Command results are never merged into it locally.
- Command-level failures never escape apply_batch; the caller always gets a
  settled BatchResultDTO.  Refresh and restore failures do propagate.
- Two batches started concurrently on one session race for the undo slot;
  the last caller wins.
"""

from __future__ import annotations

import abc
import dataclasses
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from loguru import logger

from applier import CommandApplier, CommandOutcome
from commands import (
    Command,
    Intent,
    Location,
    ParsedUpdate,
    ReorderData,
    Target,
    ValidatedCommand,
    validate_batch,
)
from errors import (
    ApplicationError,
    NotFoundError,
    RefreshFailure,
    StoreWriteFailure,
)
from model import SHAPES, CaseDocument, DeletePolicy, DocumentKind, EntityType
from phases import PhaseGate
from service import CaseTreeService
from undo import SnapshotUndoManager


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _plain(value: Any) -> Any:
    """Recursively convert UUIDs, enums and dates into JSON-friendly values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return _fmt(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

@dataclass
class CaseDTO:
    id: str
    kind: str
    title: str
    phase: str
    steps: List[Dict[str, Any]]
    hazards: List[Dict[str, Any]]
    controls: List[Dict[str, Any]]
    actions: List[Dict[str, Any]]
    timeline_events: List[Dict[str, Any]]
    causes: List[Dict[str, Any]]
    created_at: str
    updated_at: str


@dataclass
class CommandOutcomeDTO:
    intent: str
    target: str
    status: str
    explanation: str
    entity_id: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    children: List["CommandOutcomeDTO"] = field(default_factory=list)


@dataclass
class RejectionDTO:
    index: int
    reason: str


@dataclass
class BatchResultDTO:
    case_id: str
    summary: Optional[str]
    changed: bool
    applied: int
    failed: int
    rejected: int
    needs_clarification: bool
    clarification_prompt: Optional[str]
    undo_available: bool
    message: str
    outcomes: List[CommandOutcomeDTO] = field(default_factory=list)
    rejections: List[RejectionDTO] = field(default_factory=list)


@dataclass
class UndoStatusDTO:
    case_id: str
    available: bool
    summary: Optional[str]
    taken_at: Optional[str]


@dataclass
class PhaseStatusDTO:
    name: str
    label: str
    description: str
    complete: bool
    current: bool


@dataclass
class PhaseTransitionDTO:
    case_id: str
    previous_phase: str
    phase: str
    persisted: bool


class _Assembler:
    """Converts domain objects into DTOs."""

    @staticmethod
    def case(doc: CaseDocument) -> CaseDTO:
        tree = CaseTreeService()

        def ordered(entity_type: EntityType) -> List[Dict[str, Any]]:
            items = sorted(
                tree.collection(doc, entity_type),
                key=lambda e: (str(tree.parent_of(entity_type, e) or ""), e.order_index),
            )
            return [_plain(dataclasses.asdict(e)) for e in items]

        return CaseDTO(
            id=str(doc.id),
            kind=doc.kind.value,
            title=doc.title,
            phase=doc.phase,
            steps=ordered(EntityType.STEP),
            hazards=ordered(EntityType.HAZARD),
            controls=ordered(EntityType.CONTROL),
            actions=ordered(EntityType.ACTION),
            timeline_events=ordered(EntityType.TIMELINE_EVENT),
            causes=ordered(EntityType.CAUSE),
            created_at=_fmt(doc.created_at),
            updated_at=_fmt(doc.updated_at),
        )

    @staticmethod
    def outcome(o: CommandOutcome) -> CommandOutcomeDTO:
        return CommandOutcomeDTO(
            intent=o.command.intent.value,
            target=o.command.target.value,
            status=o.status.value,
            explanation=o.command.explanation,
            entity_id=str(o.entity_id) if o.entity_id else None,
            error=o.error,
            error_type=o.error_type,
            children=[_Assembler.outcome(c) for c in o.children],
        )


# ===========================================================================
# DOCUMENT STORE INTERFACE
# ===========================================================================

class AbstractDocumentStore(abc.ABC):
    """
    Request/response data store holding the canonical CaseDocuments.

    Every call is a round trip.  Write rejections raise StoreWriteFailure;
    unknown cases raise NotFoundError.  Returned objects are copies: nothing
    the caller does to them reaches the store.

    `update_entity` merges a RiskRating value into the stored rating and
    recomputes its band.
    """

    @abc.abstractmethod
    async def create_case(self, kind: DocumentKind, title: str) -> CaseDocument: ...
    @abc.abstractmethod
    async def list_cases(self) -> List[CaseDocument]: ...
    @abc.abstractmethod
    async def get_case(self, case_id: uuid.UUID) -> CaseDocument: ...

    @abc.abstractmethod
    async def create_entity(
        self,
        case_id: uuid.UUID,
        entity_type: EntityType,
        parent_id: Optional[uuid.UUID],
        position: Optional[int],
        data: Dict[str, Any],
    ) -> Any: ...
    @abc.abstractmethod
    async def update_entity(
        self,
        case_id: uuid.UUID,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        changes: Dict[str, Any],
    ) -> Any: ...
    @abc.abstractmethod
    async def delete_entity(
        self,
        case_id: uuid.UUID,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        policy: DeletePolicy = DeletePolicy.CASCADE,
    ) -> None: ...
    @abc.abstractmethod
    async def reorder_entities(
        self,
        case_id: uuid.UUID,
        entity_type: EntityType,
        parent_id: Optional[uuid.UUID],
        ordered_ids: Sequence[uuid.UUID],
    ) -> None: ...

    @abc.abstractmethod
    async def replace_case(self, document: CaseDocument) -> CaseDocument: ...
    @abc.abstractmethod
    async def set_phase(self, case_id: uuid.UUID, phase: str) -> CaseDocument: ...


# ===========================================================================
# EDITOR SESSION
# ===========================================================================

RawCommand = Union[Command, Dict[str, Any]]


class EditorSession:
    """
    Engine facade for one open case.

    Holds the cached document (read-mostly, replaced wholesale), the single
    undo slot and the phase gate.  Opening a different case drops the undo
    snapshot.
    """

    def __init__(
        self,
        store: AbstractDocumentStore,
        max_batch_commands: Optional[int] = None,
        undo: Optional[SnapshotUndoManager] = None,
    ):
        self._store = store
        self._applier = CommandApplier(store)
        self._undo = undo or SnapshotUndoManager()
        self._max_batch_commands = max_batch_commands
        self._document: Optional[CaseDocument] = None
        self._gate: Optional[PhaseGate] = None

    # -- state --------------------------------------------------------------

    @property
    def document(self) -> CaseDocument:
        if self._document is None:
            raise ApplicationError("No case is open in this session.")
        return self._document

    @property
    def case_id(self) -> Optional[uuid.UUID]:
        return self._document.id if self._document is not None else None

    @property
    def gate(self) -> PhaseGate:
        if self._gate is None:
            raise ApplicationError("No case is open in this session.")
        return self._gate

    @property
    def undo_manager(self) -> SnapshotUndoManager:
        return self._undo

    def _log(self):
        return logger.bind(case_id=str(self.case_id))

    async def open(self, case_id: uuid.UUID) -> CaseDocument:
        """Load `case_id` into the session; switching cases clears the undo slot."""
        self._undo.release_if_other_case(case_id)
        self._document = await self._store.get_case(case_id)
        self._gate = PhaseGate.for_document(self._document)
        return self._document

    async def refresh(self) -> CaseDocument:
        """Refetch the authoritative document and replace the cached copy."""
        case_id = self.document.id
        try:
            self._document = await self._store.get_case(case_id)
        except (NotFoundError, StoreWriteFailure) as exc:
            self._log().error("Refresh failed: {}", exc)
            raise RefreshFailure(f"Could not reload case {case_id}: {exc}") from exc
        self._gate = PhaseGate.for_document(self._document)
        return self._document

    # -- contextual updates ---------------------------------------------------

    async def apply_command(
        self, command: RawCommand, summary: Optional[str] = None
    ) -> BatchResultDTO:
        """Apply a single command as a one-command (undoable) batch."""
        return await self.apply_batch([command], summary)

    async def apply_parsed_update(self, parsed: ParsedUpdate) -> BatchResultDTO:
        return await self.apply_batch(
            parsed.commands,
            summary=parsed.summary,
            needs_clarification=parsed.needs_clarification,
            clarification_prompt=parsed.clarification_prompt,
        )

    async def apply_batch(
        self,
        commands: Sequence[RawCommand],
        summary: Optional[str] = None,
        needs_clarification: bool = False,
        clarification_prompt: Optional[str] = None,
    ) -> BatchResultDTO:
        """
        Validate, snapshot, apply sequentially, refetch once.

        A clarification (flagged on the envelope or carried by any CLARIFY
        command) mutates nothing and leaves the undo slot alone.  A batch with
        no valid command is reported as unchanged without touching the store.
        """
        document = self.document
        log = self._log()
        validation = validate_batch(commands, SHAPES[document.kind], self._max_batch_commands)
        rejections = [RejectionDTO(r.index, r.reason) for r in validation.rejected]

        clarify = [c for c in validation.commands if c.intent == Intent.CLARIFY]
        if needs_clarification or clarify:
            prompt = clarification_prompt or next(
                (c.clarification_prompt for c in clarify if c.clarification_prompt), None
            )
            log.info("Batch needs clarification: {}", prompt)
            return self._result(
                summary, changed=False, outcomes=[], rejections=rejections,
                needs_clarification=True, clarification_prompt=prompt,
            )

        if validation.is_empty:
            log.info("Batch had no applicable commands ({} rejected)", len(rejections))
            return self._result(summary, changed=False, outcomes=[], rejections=rejections)

        self._undo.capture(document, summary)
        outcomes = await self._applier.apply_all(document, validation.commands)
        await self.refresh()

        applied = sum(1 for o in outcomes if o.succeeded)
        log.info(
            "Batch applied: {} succeeded, {} failed, {} rejected",
            applied, len(outcomes) - applied, len(rejections),
        )
        return self._result(summary, changed=applied > 0, outcomes=outcomes, rejections=rejections)

    def _result(
        self,
        summary: Optional[str],
        changed: bool,
        outcomes: List[CommandOutcome],
        rejections: List[RejectionDTO],
        needs_clarification: bool = False,
        clarification_prompt: Optional[str] = None,
    ) -> BatchResultDTO:
        applied = sum(1 for o in outcomes if o.succeeded)
        failed = len(outcomes) - applied
        not_applied = failed + len(rejections)
        if needs_clarification:
            message = clarification_prompt or "More information is needed before applying changes."
        elif not outcomes:
            message = "Nothing changed."
        elif not_applied:
            message = f"{not_applied} command(s) could not be applied."
        else:
            message = f"{applied} command(s) applied."
        return BatchResultDTO(
            case_id=str(self.document.id),
            summary=summary,
            changed=changed,
            applied=applied,
            failed=failed,
            rejected=len(rejections),
            needs_clarification=needs_clarification,
            clarification_prompt=clarification_prompt,
            undo_available=self._undo.can_undo,
            message=message,
            outcomes=[_Assembler.outcome(o) for o in outcomes],
            rejections=rejections,
        )

    async def undo_last_batch(self) -> CaseDocument:
        """
        Restore the snapshot taken before the last batch.  RestoreFailure
        propagates and keeps the slot; success refetches and clears it.
        """
        slot = self._undo.slot
        if slot is not None and slot.case_id != self.document.id:
            self._undo.clear()
        await self._undo.restore(self._store)
        document = await self.refresh()
        self._undo.clear()
        self._log().info("Undid contextual update: {}", slot.summary if slot else None)
        return document

    def undo_status(self) -> UndoStatusDTO:
        slot = self._undo.slot
        if slot is not None and slot.case_id != self.document.id:
            slot = None
        return UndoStatusDTO(
            case_id=str(self.document.id),
            available=slot is not None,
            summary=slot.summary if slot else None,
            taken_at=_fmt(slot.taken_at) if slot else None,
        )

    async def reorder(
        self,
        target: Target,
        ordered_ids: Sequence[Union[str, uuid.UUID]],
        location: Optional[Location] = None,
    ) -> CommandOutcomeDTO:
        """
        Drag / keyboard reordering.  Goes through the REORDER command path
        but is not a contextual-update batch: the undo slot is untouched.
        """
        command = ValidatedCommand(
            intent=Intent.REORDER,
            target=target,
            location=location or Location(),
            payload=ReorderData(ordered_ids=[str(i) for i in ordered_ids]),
        )
        outcome = await self._applier.apply(self.document, command)
        await self.refresh()
        return _Assembler.outcome(outcome)

    # -- phases ---------------------------------------------------------------

    def phase_status(self) -> List[PhaseStatusDTO]:
        return [
            PhaseStatusDTO(s.name, s.label, s.description, s.complete, s.current)
            for s in self.gate.states(self.document)
        ]

    async def advance_phase(self) -> PhaseTransitionDTO:
        previous = self.gate.current
        phase = self.gate.advance(self.document)
        return await self._persist_phase(previous, phase)

    async def jump_to_phase(self, phase: str) -> PhaseTransitionDTO:
        previous = self.gate.current
        phase = self.gate.jump_to(self.document, phase)
        return await self._persist_phase(previous, phase)

    async def _persist_phase(self, previous: str, phase: str) -> PhaseTransitionDTO:
        log = self._log()
        try:
            await self._store.set_phase(self.document.id, phase)
        except StoreWriteFailure as exc:
            # The gate keeps the new phase locally; the cached document does not.
            log.warning("Phase {} not persisted: {}", phase, exc)
            return PhaseTransitionDTO(str(self.document.id), previous, phase, persisted=False)
        await self.refresh()
        log.info("Phase moved {} -> {}", previous, phase)
        return PhaseTransitionDTO(str(self.document.id), previous, phase, persisted=True)


class SessionRegistry:
    """
    One EditorSession per case id, created on first use.  All sessions share
    a single undo slot: reaching a different case drops it.
    """

    def __init__(self, store: AbstractDocumentStore, max_batch_commands: Optional[int] = None):
        self._store = store
        self._max_batch_commands = max_batch_commands
        self._undo = SnapshotUndoManager()
        self._sessions: Dict[uuid.UUID, EditorSession] = {}

    @property
    def store(self) -> AbstractDocumentStore:
        return self._store

    @property
    def undo_manager(self) -> SnapshotUndoManager:
        return self._undo

    async def get(self, case_id: uuid.UUID) -> EditorSession:
        session = self._sessions.get(case_id)
        if session is None:
            session = EditorSession(self._store, self._max_batch_commands, undo=self._undo)
            await session.open(case_id)
            self._sessions[case_id] = session
        else:
            self._undo.release_if_other_case(case_id)
        return session

    def discard(self, case_id: uuid.UUID) -> None:
        self._sessions.pop(case_id, None)


# ===========================================================================
# USE CASES - CASES
# ===========================================================================

@dataclass
class CreateCaseCommand:
    kind: DocumentKind
    title: str


class CreateCaseUseCase:
    async def execute(self, cmd: CreateCaseCommand, store: AbstractDocumentStore) -> CaseDTO:
        if not cmd.title.strip():
            raise ValueError("title must not be blank.")
        document = await store.create_case(cmd.kind, cmd.title.strip())
        logger.bind(case_id=str(document.id)).info("Created {} case", cmd.kind.value)
        return _Assembler.case(document)


class GetCaseUseCase:
    async def execute(self, case_id: uuid.UUID, store: AbstractDocumentStore) -> CaseDTO:
        return _Assembler.case(await store.get_case(case_id))


class ListCasesUseCase:
    async def execute(self, store: AbstractDocumentStore) -> List[CaseDTO]:
        cases = await store.list_cases()
        return [_Assembler.case(c) for c in sorted(cases, key=lambda c: c.created_at)]


def to_case_dto(document: CaseDocument) -> CaseDTO:
    return _Assembler.case(document)
