"""
applier.py

Command Applier: turns each validated, resolved command into exactly one
Document Store call and awaits it before moving on to the next command.

Batches are best-effort sequential.  A command whose reference cannot be
resolved, or whose write is rejected by the store, is recorded as failed and
the remaining commands still run.  Any other exception propagates.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from loguru import logger

from commands import AssessmentData, Intent, Target, ValidatedCommand
from errors import CommandValidationError, ReferenceNotFound, StoreWriteFailure
from model import SHAPES, CaseDocument, DeletePolicy, EntityType, RiskRating
from phases import RiskAssessmentPhase
from resolver import ReferenceResolver, Resolution

if TYPE_CHECKING:
    from application import AbstractDocumentStore


class OutcomeStatus(str, Enum):
    APPLIED = "applied"
    FAILED = "failed"


# Required text for new entities when the command does not supply it.
_CREATE_DEFAULTS: Dict[EntityType, Dict[str, Any]] = {
    EntityType.STEP: {"activity": "New step"},
    EntityType.HAZARD: {"label": "New hazard"},
    EntityType.CONTROL: {"description": "New control"},
    EntityType.ACTION: {"description": "New action"},
    EntityType.TIMELINE_EVENT: {"text": "New event"},
    EntityType.CAUSE: {"statement": "New cause"},
}


@dataclass
class CommandOutcome:
    command: ValidatedCommand
    status: OutcomeStatus
    entity_id: Optional[uuid.UUID] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    children: List["CommandOutcome"] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.APPLIED


class CommandApplier:
    """Dispatches resolved commands to the Document Store, one at a time."""

    def __init__(
        self,
        store: "AbstractDocumentStore",
        resolver: Optional[ReferenceResolver] = None,
    ):
        self._store = store
        self._resolver = resolver or ReferenceResolver()

    async def apply_all(
        self, document: CaseDocument, commands: Sequence[ValidatedCommand]
    ) -> List[CommandOutcome]:
        outcomes = []
        for command in commands:
            outcomes.append(await self.apply(document, command))
        return outcomes

    async def apply(self, document: CaseDocument, command: ValidatedCommand) -> CommandOutcome:
        log = logger.bind(case_id=str(document.id))
        if command.target == Target.MULTIPLE:
            return await self._apply_multiple(document, command)

        log.debug("Applying {} {}", command.intent.value, command.target.value)
        try:
            resolution = self._resolver.resolve(document, command)
            entity_id = await self._dispatch(document, command, resolution)
        except (CommandValidationError, ReferenceNotFound, StoreWriteFailure) as exc:
            log.warning(
                "{} {} skipped ({}): {}",
                command.intent.value, command.target.value, type(exc).__name__, exc,
            )
            return CommandOutcome(
                command=command,
                status=OutcomeStatus.FAILED,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        return CommandOutcome(command=command, status=OutcomeStatus.APPLIED, entity_id=entity_id)

    async def _apply_multiple(
        self, document: CaseDocument, command: ValidatedCommand
    ) -> CommandOutcome:
        children = await self.apply_all(document, command.children)
        failed = [c for c in children if not c.succeeded]
        if not failed:
            return CommandOutcome(command=command, status=OutcomeStatus.APPLIED, children=children)
        return CommandOutcome(
            command=command,
            status=OutcomeStatus.FAILED,
            error=f"{len(failed)} of {len(children)} sub-commands could not be applied.",
            error_type=failed[0].error_type,
            children=children,
        )

    # -- dispatch -----------------------------------------------------------

    async def _dispatch(
        self, document: CaseDocument, command: ValidatedCommand, resolution: Resolution
    ) -> Optional[uuid.UUID]:
        if command.target == Target.ASSESSMENT:
            return await self._assess(document, command, resolution)
        handler = {
            Intent.ADD: self._create,
            Intent.INSERT: self._create,
            Intent.MODIFY: self._modify,
            Intent.DELETE: self._delete,
            Intent.REORDER: self._reorder,
        }[command.intent]
        return await handler(document, command, resolution)

    async def _create(self, document, command, resolution) -> uuid.UUID:
        data = dict(_CREATE_DEFAULTS[resolution.entity_type])
        data.update(command.changes())
        entity = await self._store.create_entity(
            document.id, resolution.entity_type, resolution.parent_id, resolution.position, data
        )
        return entity.id

    async def _modify(self, document, command, resolution) -> uuid.UUID:
        await self._store.update_entity(
            document.id, resolution.entity_type, resolution.entity.id, command.changes()
        )
        return resolution.entity.id

    async def _delete(self, document, command, resolution) -> uuid.UUID:
        shape = SHAPES[document.kind]
        policy = (
            shape.top_level_delete
            if resolution.entity_type == shape.top_level
            else DeletePolicy.CASCADE
        )
        await self._store.delete_entity(
            document.id, resolution.entity_type, resolution.entity.id, policy
        )
        return resolution.entity.id

    async def _reorder(self, document, command, resolution) -> None:
        await self._store.reorder_entities(
            document.id, resolution.entity_type, resolution.parent_id, resolution.ordered_ids
        )
        return None

    async def _assess(self, document, command, resolution) -> uuid.UUID:
        hazard = resolution.entity
        payload = command.payload
        kind = payload.assessment_type if isinstance(payload, AssessmentData) else None
        if kind is None:
            in_residual = document.phase == RiskAssessmentPhase.RESIDUAL_RISK.value
            kind = "residual" if in_residual else "baseline"

        # Partial rating: the store merges it into the current one.
        if command.intent == Intent.DELETE:
            rating = None
        else:
            rating = RiskRating(severity=payload.severity, likelihood=payload.likelihood)
        await self._store.update_entity(
            document.id, resolution.entity_type, hazard.id, {kind: rating}
        )
        return hazard.id
