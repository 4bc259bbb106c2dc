"""
infrastructure.py

In-memory implementation of the Document Store.

Cases are held in plain Python dicts keyed by UUID.  Every read returns a
deep copy and every write operates on the stored instance, so callers can
never mutate the canonical document by accident.  This mirrors the
request/response contract of a remote store: the editor only sees changes
after it refetches.

To swap in a real backend later, implement AbstractDocumentStore from
application.py and override get_store() in api.py:

    app.dependency_overrides[get_store] = lambda: HttpDocumentStore(base_url)
"""

from __future__ import annotations

import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from application import AbstractDocumentStore
from errors import NotFoundError, StoreWriteFailure
from model import SHAPES, CaseDocument, DeletePolicy, DocumentKind, EntityType
from phases import PHASES, first_phase
from service import CaseTreeService


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

class _Store(dict):
    """A plain dict with typed get/save/delete helpers."""

    def fetch(self, key: uuid.UUID):
        return self.get(key)

    def put(self, obj) -> None:
        self[obj.id] = obj

    def remove(self, key: uuid.UUID) -> None:
        self.pop(key, None)

    def all(self) -> list:
        return list(self.values())


# ---------------------------------------------------------------------------
# Shared in-memory database (module-level singleton)
# Persists for the lifetime of the process; restarting uvicorn resets it.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self):
        self.cases: _Store = _Store()


_db = InMemoryDatabase()


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Document store
# ---------------------------------------------------------------------------

class InMemoryDocumentStore(AbstractDocumentStore):
    """
    Document Store backed by InMemoryDatabase.

    Tree rule violations raised by CaseTreeService (unknown fields, missing
    parents, restricted deletes, bad reorder permutations) surface as
    StoreWriteFailure, the same way a remote store reports a rejected write.
    """

    def __init__(self, db: InMemoryDatabase = _db, tree: Optional[CaseTreeService] = None):
        self._cases = db.cases
        self._tree = tree or CaseTreeService()

    def _load(self, case_id: uuid.UUID) -> CaseDocument:
        document = self._cases.fetch(case_id)
        if document is None:
            raise NotFoundError(f"Case {case_id} not found.")
        return document

    def _touch(self, document: CaseDocument) -> None:
        document.updated_at = _now()

    # -- cases ----------------------------------------------------------------

    async def create_case(self, kind: DocumentKind, title: str) -> CaseDocument:
        document = CaseDocument(kind=kind, title=title, phase=first_phase(kind))
        self._cases.put(document)
        return copy.deepcopy(document)

    async def list_cases(self) -> List[CaseDocument]:
        return [copy.deepcopy(d) for d in self._cases.all()]

    async def get_case(self, case_id: uuid.UUID) -> CaseDocument:
        return copy.deepcopy(self._load(case_id))

    async def replace_case(self, document: CaseDocument) -> CaseDocument:
        current = self._load(document.id)
        if document.kind != current.kind:
            raise StoreWriteFailure(
                f"Cannot replace a {current.kind.value} case with a {document.kind.value} document."
            )
        replacement = copy.deepcopy(document)
        replacement.created_at = current.created_at
        self._touch(replacement)
        self._cases.put(replacement)
        logger.bind(case_id=str(document.id)).debug("Case replaced in bulk")
        return copy.deepcopy(replacement)

    async def set_phase(self, case_id: uuid.UUID, phase: str) -> CaseDocument:
        document = self._load(case_id)
        names = [p.name for p in PHASES[document.kind]]
        if phase not in names:
            raise StoreWriteFailure(f"{phase!r} is not a {document.kind.value} phase.")
        document.phase = phase
        self._touch(document)
        return copy.deepcopy(document)

    # -- entities -------------------------------------------------------------

    async def create_entity(
        self,
        case_id: uuid.UUID,
        entity_type: EntityType,
        parent_id: Optional[uuid.UUID],
        position: Optional[int],
        data: Dict[str, Any],
    ) -> Any:
        document = self._load(case_id)
        parent_type = self._parent_type(document, entity_type)
        if parent_type is not None and self._tree.find(document, parent_type, parent_id) is None:
            raise StoreWriteFailure(f"Parent {parent_type.value} {parent_id} does not exist.")
        try:
            entity = self._tree.build(entity_type, parent_id, copy.deepcopy(data))
            self._tree.insert(document, entity_type, entity, position)
        except (TypeError, ValueError) as exc:
            raise StoreWriteFailure(str(exc)) from exc
        self._touch(document)
        return copy.deepcopy(entity)

    async def update_entity(
        self,
        case_id: uuid.UUID,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        changes: Dict[str, Any],
    ) -> Any:
        document = self._load(case_id)
        entity = self._tree.find(document, entity_type, entity_id)
        if entity is None:
            raise StoreWriteFailure(f"{entity_type.value} {entity_id} does not exist.")
        try:
            self._tree.patch(entity_type, entity, copy.deepcopy(changes))
        except ValueError as exc:
            raise StoreWriteFailure(str(exc)) from exc
        self._touch(document)
        return copy.deepcopy(entity)

    async def delete_entity(
        self,
        case_id: uuid.UUID,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        policy: DeletePolicy = DeletePolicy.CASCADE,
    ) -> None:
        document = self._load(case_id)
        try:
            removed = self._tree.remove(
                document, SHAPES[document.kind], entity_type, entity_id, policy
            )
        except ValueError as exc:
            raise StoreWriteFailure(str(exc)) from exc
        self._touch(document)
        logger.bind(case_id=str(case_id)).debug(
            "Deleted {} {} ({} entities removed)", entity_type.value, entity_id, len(removed)
        )

    async def reorder_entities(
        self,
        case_id: uuid.UUID,
        entity_type: EntityType,
        parent_id: Optional[uuid.UUID],
        ordered_ids: Sequence[uuid.UUID],
    ) -> None:
        document = self._load(case_id)
        try:
            self._tree.reorder(document, entity_type, parent_id, list(ordered_ids))
        except ValueError as exc:
            raise StoreWriteFailure(str(exc)) from exc
        self._touch(document)

    @staticmethod
    def _parent_type(document: CaseDocument, entity_type: EntityType) -> Optional[EntityType]:
        shape = SHAPES[document.kind]
        for parent_type, child_types in shape.children.items():
            if entity_type in child_types:
                return parent_type
        return None
