"""
resolver.py

Reference Resolver: maps a command's location bag onto concrete entities of
the editor's current in-memory CaseDocument.

Resolution order
----------------
1. explicit id field (stepId, hazardId, controlId, actionId)
2. positional field (stepIndex, hazardIndex) into the ordered sibling group
3. for insertAfter: the position right after the referenced sibling, or the
   end of the parent's group when the sibling cannot be found

Nothing is created or mutated here.  Failures raise ReferenceNotFound, which
the applier records against the single command.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, List, Optional

from commands import Intent, Location, ReorderData, Target, ValidatedCommand
from errors import CommandValidationError, ReferenceNotFound
from model import SHAPES, CaseDocument, DocumentShape, EntityType
from service import CaseTreeService


@dataclass
class Resolution:
    """
    Handle passed to the applier: either `entity` (MODIFY / DELETE /
    ASSESSMENT), or `parent_id` + `position` (ADD / INSERT; position None
    appends), or `parent_id` + `ordered_ids` (REORDER).
    """
    entity_type: EntityType
    entity: Any = None
    parent_id: Optional[uuid.UUID] = None
    position: Optional[int] = None
    ordered_ids: List[uuid.UUID] = field(default_factory=list)


def entity_type_for(target: Target, shape: DocumentShape) -> EntityType:
    mapping = {
        Target.STEP: shape.top_level,
        Target.HAZARD: shape.second_level,
        Target.CONTROL: shape.control,
        Target.ACTION: shape.action,
        Target.ASSESSMENT: shape.second_level,
    }
    entity_type = mapping.get(target)
    if entity_type is None:
        raise ReferenceNotFound(f"{target.value} has no collection in {shape.kind.value} documents.")
    return entity_type


class ReferenceResolver:
    """Resolves ValidatedCommands against one CaseDocument."""

    def __init__(self, tree: Optional[CaseTreeService] = None):
        self._tree = tree or CaseTreeService()

    def resolve(self, document: CaseDocument, command: ValidatedCommand) -> Resolution:
        shape = SHAPES[document.kind]
        entity_type = entity_type_for(command.target, shape)
        loc = command.location

        if command.target == Target.ASSESSMENT:
            return Resolution(entity_type, entity=self._assessed(document, shape, loc))
        if command.intent in (Intent.MODIFY, Intent.DELETE):
            return Resolution(entity_type, entity=self._existing(document, shape, entity_type, loc))
        if command.intent in (Intent.ADD, Intent.INSERT):
            return self._placement(document, shape, entity_type, command)
        if command.intent == Intent.REORDER:
            return self._ordering(document, shape, entity_type, command)
        raise ReferenceNotFound(f"{command.intent.value} does not address an entity.")

    # -- lookups ------------------------------------------------------------

    def _by_id(self, document: CaseDocument, entity_type: EntityType, ref: Optional[str]):
        if ref is None:
            return None
        return next(
            (e for e in self._tree.collection(document, entity_type) if str(e.id) == ref),
            None,
        )

    def _at(self, group: list, index: Optional[int]):
        if index is None or index >= len(group):
            return None
        return group[index]

    def _top(self, document: CaseDocument, shape: DocumentShape, loc: Location):
        """Top-level entity from stepId, falling back to stepIndex."""
        found = self._by_id(document, shape.top_level, loc.step_id)
        if found is None:
            found = self._at(self._tree.siblings(document, shape.top_level, None), loc.step_index)
        if found is None:
            raise ReferenceNotFound(
                f"No {shape.top_level.value} matches stepId={loc.step_id!r} "
                f"stepIndex={loc.step_index!r}."
            )
        return found

    def _second(self, document: CaseDocument, shape: DocumentShape, loc: Location):
        """Second-level entity from hazardId, falling back to step + hazardIndex."""
        found = self._by_id(document, shape.second_level, loc.hazard_id)
        if found is None and loc.hazard_index is not None and self._has_top_ref(loc):
            step = self._top(document, shape, loc)
            group = self._tree.siblings(document, shape.second_level, step.id)
            found = self._at(group, loc.hazard_index)
        if found is None:
            raise ReferenceNotFound(
                f"No {shape.second_level.value} matches hazardId={loc.hazard_id!r} "
                f"hazardIndex={loc.hazard_index!r}."
            )
        return found

    @staticmethod
    def _has_top_ref(loc: Location) -> bool:
        return loc.step_id is not None or loc.step_index is not None

    @staticmethod
    def _has_second_ref(loc: Location) -> bool:
        return loc.hazard_id is not None or loc.hazard_index is not None

    def _existing(
        self, document: CaseDocument, shape: DocumentShape, entity_type: EntityType, loc: Location
    ):
        if entity_type == shape.top_level:
            return self._top(document, shape, loc)
        if entity_type == shape.second_level:
            return self._second(document, shape, loc)
        ref = loc.control_id if entity_type == shape.control else loc.action_id
        found = self._by_id(document, entity_type, ref)
        if found is None:
            raise ReferenceNotFound(f"No {entity_type.value} with id {ref!r}.")
        return found

    def _assessed(self, document: CaseDocument, shape: DocumentShape, loc: Location):
        if self._has_second_ref(loc):
            return self._second(document, shape, loc)
        return self._default_second(document, shape, loc)

    # -- parents ------------------------------------------------------------

    def _default_top(self, document: CaseDocument, shape: DocumentShape):
        group = self._tree.siblings(document, shape.top_level, None)
        if not group:
            raise ReferenceNotFound(f"The document has no {shape.top_level.value} to attach to.")
        return group[0]

    def _default_second(self, document: CaseDocument, shape: DocumentShape, loc: Location):
        if self._has_top_ref(loc):
            step = self._top(document, shape, loc)
            group = self._tree.siblings(document, shape.second_level, step.id)
        else:
            group = sorted(
                self._tree.collection(document, shape.second_level),
                key=lambda e: (self._top_position(document, shape, e), e.order_index),
            )
        if not group:
            raise ReferenceNotFound(f"The document has no {shape.second_level.value} to attach to.")
        return group[0]

    def _top_position(self, document: CaseDocument, shape: DocumentShape, entity) -> int:
        parent = self._tree.find(
            document, shape.top_level, self._tree.parent_of(shape.second_level, entity)
        )
        return parent.order_index if parent is not None else -1

    def _parent_id(
        self, document: CaseDocument, shape: DocumentShape, entity_type: EntityType, loc: Location
    ) -> Optional[uuid.UUID]:
        if entity_type == shape.top_level:
            return None
        if entity_type == shape.second_level:
            if self._has_top_ref(loc):
                return self._top(document, shape, loc).id
            return self._default_top(document, shape).id
        if self._has_second_ref(loc):
            return self._second(document, shape, loc).id
        return self._default_second(document, shape, loc).id

    # -- placement ----------------------------------------------------------

    def _placement(
        self,
        document: CaseDocument,
        shape: DocumentShape,
        entity_type: EntityType,
        command: ValidatedCommand,
    ) -> Resolution:
        loc = command.location
        if loc.insert_after is not None:
            anchor = self._by_id(document, entity_type, loc.insert_after)
            if anchor is not None:
                return Resolution(
                    entity_type,
                    parent_id=self._tree.parent_of(entity_type, anchor),
                    position=anchor.order_index + 1,
                )

        parent_id = self._parent_id(document, shape, entity_type, loc)
        position = None
        if command.intent == Intent.INSERT and loc.insert_after is None:
            if entity_type == shape.top_level:
                position = loc.step_index
            elif entity_type == shape.second_level:
                position = loc.hazard_index
        return Resolution(entity_type, parent_id=parent_id, position=position)

    def _ordering(
        self,
        document: CaseDocument,
        shape: DocumentShape,
        entity_type: EntityType,
        command: ValidatedCommand,
    ) -> Resolution:
        payload = command.payload
        if not isinstance(payload, ReorderData):
            raise CommandValidationError("REORDER needs orderedIds.")
        loc = command.location

        entities = []
        for ref in payload.ordered_ids:
            entity = self._by_id(document, entity_type, ref)
            if entity is None:
                raise ReferenceNotFound(f"No {entity_type.value} with id {ref!r} to reorder.")
            entities.append(entity)

        if entity_type == shape.top_level:
            parent_id = None
        elif (entity_type == shape.second_level and self._has_top_ref(loc)) or (
            entity_type != shape.second_level and self._has_second_ref(loc)
        ):
            parent_id = self._parent_id(document, shape, entity_type, loc)
        else:
            parent_id = self._tree.parent_of(entity_type, entities[0])

        strays = [e for e in entities if self._tree.parent_of(entity_type, e) != parent_id]
        if strays:
            raise ReferenceNotFound(
                f"{entity_type.value} {strays[0].id} does not belong to the group being reordered."
            )
        return Resolution(entity_type, parent_id=parent_id, ordered_ids=[e.id for e in entities])
