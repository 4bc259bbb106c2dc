"""
service.py

Service layer for the SafeCase guided safety-assessment editor.

Responsibilities
----------------
Pure, persistence-free operations on a CaseDocument.  The in-memory
Document Store runs every write through these services; the command engine
uses the read helpers to inspect its cached copy.

Services
--------
- CaseTreeService     – sibling lookup, insert / remove / reorder with
                        renumbering, cascading deletes, partial updates
- RiskMatrixService   – severity / likelihood normalisation and the 5x5
                        template risk matrix

Design notes
------------
- Every mutating method leaves each touched sibling group with
  order_index values 0..n-1.
- Business rule violations raise a ValueError with a descriptive message.
- Methods mutate the document passed in; callers own copying.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, Iterator, List, Optional, Tuple

from model import (
    COLLECTIONS,
    ENTITY_CLASSES,
    PARENT_FIELDS,
    CaseDocument,
    DeletePolicy,
    DocumentShape,
    EntityType,
    Likelihood,
    RiskBand,
    RiskRating,
    Severity,
)


# Fields a partial update may never touch.
_PROTECTED_FIELDS = {"id", "order_index"}


# ---------------------------------------------------------------------------
# CaseTreeService
# ---------------------------------------------------------------------------

class CaseTreeService:
    """
    Ordered-tree operations over the flat collections of a CaseDocument.
    """

    def __init__(self, matrix: Optional["RiskMatrixService"] = None):
        self._matrix = matrix or RiskMatrixService()

    # -- reads --------------------------------------------------------------

    def collection(self, document: CaseDocument, entity_type: EntityType) -> list:
        return getattr(document, COLLECTIONS[entity_type])

    def find(self, document: CaseDocument, entity_type: EntityType, entity_id: uuid.UUID):
        return next(
            (e for e in self.collection(document, entity_type) if e.id == entity_id),
            None,
        )

    def parent_of(self, entity_type: EntityType, entity) -> Optional[uuid.UUID]:
        parent_field = PARENT_FIELDS[entity_type]
        return getattr(entity, parent_field) if parent_field else None

    def siblings(
        self,
        document: CaseDocument,
        entity_type: EntityType,
        parent_id: Optional[uuid.UUID],
    ) -> list:
        """Entities sharing `parent_id`, sorted by order_index."""
        parent_field = PARENT_FIELDS[entity_type]
        items = self.collection(document, entity_type)
        if parent_field is not None:
            items = [e for e in items if getattr(e, parent_field) == parent_id]
        return sorted(items, key=lambda e: e.order_index)

    def sibling_groups(self, document: CaseDocument) -> Iterator[Tuple[EntityType, list]]:
        """Yield every (entity_type, ordered sibling list) in the document."""
        for entity_type in EntityType:
            parent_field = PARENT_FIELDS[entity_type]
            items = self.collection(document, entity_type)
            if parent_field is None:
                if items:
                    yield entity_type, sorted(items, key=lambda e: e.order_index)
                continue
            for parent_id in {getattr(e, parent_field) for e in items}:
                yield entity_type, self.siblings(document, entity_type, parent_id)

    # -- writes -------------------------------------------------------------

    def renumber(self, ordered: list) -> list:
        for index, entity in enumerate(ordered):
            entity.order_index = index
        return ordered

    def build(
        self,
        entity_type: EntityType,
        parent_id: Optional[uuid.UUID],
        data: Dict[str, Any],
    ):
        """Create an (unsaved) entity of `entity_type` from a field mapping."""
        cls = ENTITY_CLASSES[entity_type]
        fields = set(cls.__dataclass_fields__)
        unknown = set(data) - fields
        if unknown:
            raise ValueError(f"Unknown {entity_type.value} fields: {sorted(unknown)}.")
        values = {k: v for k, v in data.items() if k not in _PROTECTED_FIELDS}
        parent_field = PARENT_FIELDS[entity_type]
        if parent_field is not None:
            if parent_id is None:
                raise ValueError(f"A {entity_type.value} requires a parent.")
            values[parent_field] = parent_id
        return cls(**values)

    def insert(
        self,
        document: CaseDocument,
        entity_type: EntityType,
        entity,
        position: Optional[int] = None,
    ):
        """
        Insert `entity` into its sibling group at `position` (clamped; None
        appends) and renumber the group.
        """
        group = self.siblings(document, entity_type, self.parent_of(entity_type, entity))
        if position is None or position > len(group):
            position = len(group)
        position = max(position, 0)
        group.insert(position, entity)
        self.collection(document, entity_type).append(entity)
        self.renumber(group)
        return entity

    def remove(
        self,
        document: CaseDocument,
        shape: DocumentShape,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        policy: DeletePolicy = DeletePolicy.CASCADE,
    ) -> list:
        """
        Remove an entity, applying `policy` to its direct children, and
        renumber the remaining siblings.  Returns every removed entity.
        """
        entity = self.find(document, entity_type, entity_id)
        if entity is None:
            raise ValueError(f"{entity_type.value} {entity_id} does not exist.")

        child_types = shape.children.get(entity_type, ())
        if policy == DeletePolicy.RESTRICT:
            for child_type in child_types:
                if self.siblings(document, child_type, entity_id):
                    raise ValueError(
                        f"{entity_type.value} {entity_id} still has "
                        f"{COLLECTIONS[child_type]}; remove them first."
                    )

        removed = []
        for child_type in child_types:
            for child in self.siblings(document, child_type, entity_id):
                removed.extend(
                    self.remove(document, shape, child_type, child.id, DeletePolicy.CASCADE)
                )

        parent_id = self.parent_of(entity_type, entity)
        collection = self.collection(document, entity_type)
        collection.remove(entity)
        removed.append(entity)
        self.renumber(self.siblings(document, entity_type, parent_id))
        return removed

    def reorder(
        self,
        document: CaseDocument,
        entity_type: EntityType,
        parent_id: Optional[uuid.UUID],
        ordered_ids: List[uuid.UUID],
    ) -> list:
        """
        Re-assign `order_index` values to a sibling group according to the
        provided id sequence.  Returns the group sorted by new order.
        """
        group = self.siblings(document, entity_type, parent_id)
        id_to_entity = {e.id: e for e in group}
        if len(ordered_ids) != len(set(ordered_ids)):
            raise ValueError("ordered_ids must not contain duplicates.")
        if set(ordered_ids) != set(id_to_entity.keys()):
            raise ValueError(
                f"ordered_ids must contain exactly the ids of all existing "
                f"{COLLECTIONS[entity_type]} in the group."
            )
        return self.renumber([id_to_entity[i] for i in ordered_ids])

    def patch(self, entity_type: EntityType, entity, changes: Dict[str, Any]):
        """
        Apply only the fields present in `changes`; others stay untouched.
        A RiskRating value is merged axis by axis into the stored rating and
        its band recomputed, so a half rating never clears the other axis.
        """
        fields = set(type(entity).__dataclass_fields__)
        blocked = _PROTECTED_FIELDS | {PARENT_FIELDS[entity_type]}
        for name, value in changes.items():
            if name not in fields or name in blocked:
                raise ValueError(f"Field '{name}' cannot be updated on a {entity_type.value}.")
            if isinstance(value, RiskRating):
                current = getattr(entity, name)
                value = self._matrix.rate(
                    current if isinstance(current, RiskRating) else None,
                    value.severity,
                    value.likelihood,
                )
            setattr(entity, name, value)
        return entity


# ---------------------------------------------------------------------------
# RiskMatrixService
# ---------------------------------------------------------------------------

# Template matrix: likelihood row → severity column → band.
_RISK_MATRIX: Dict[Likelihood, Dict[Severity, RiskBand]] = {
    Likelihood.CERTAIN: {
        Severity.E: RiskBand.MINOR, Severity.D: RiskBand.MODERATE, Severity.C: RiskBand.HIGH,
        Severity.B: RiskBand.EXTREME, Severity.A: RiskBand.EXTREME,
    },
    Likelihood.LIKELY: {
        Severity.E: RiskBand.NEGLIGIBLE, Severity.D: RiskBand.MINOR, Severity.C: RiskBand.MODERATE,
        Severity.B: RiskBand.HIGH, Severity.A: RiskBand.EXTREME,
    },
    Likelihood.POSSIBLE: {
        Severity.E: RiskBand.NEGLIGIBLE, Severity.D: RiskBand.MINOR, Severity.C: RiskBand.MODERATE,
        Severity.B: RiskBand.MODERATE, Severity.A: RiskBand.HIGH,
    },
    Likelihood.UNLIKELY: {
        Severity.E: RiskBand.NEGLIGIBLE, Severity.D: RiskBand.NEGLIGIBLE, Severity.C: RiskBand.MINOR,
        Severity.B: RiskBand.MODERATE, Severity.A: RiskBand.MODERATE,
    },
    Likelihood.EXTREMELY_UNLIKELY: {
        Severity.E: RiskBand.NEGLIGIBLE, Severity.D: RiskBand.NEGLIGIBLE, Severity.C: RiskBand.NEGLIGIBLE,
        Severity.B: RiskBand.MINOR, Severity.A: RiskBand.MINOR,
    },
}

_SEVERITY_WORDS = {
    "CATASTROPHIC": Severity.A,
    "HAZARDOUS": Severity.B,
    "MAJOR": Severity.C,
    "MINOR": Severity.D,
    "NEGLIGIBLE": Severity.E,
}

_LIKELIHOOD_WORDS = {
    "CERTAIN": Likelihood.CERTAIN,
    "ALMOST_CERTAIN": Likelihood.CERTAIN,
    "LIKELY": Likelihood.LIKELY,
    "POSSIBLE": Likelihood.POSSIBLE,
    "UNLIKELY": Likelihood.UNLIKELY,
    "RARE": Likelihood.EXTREMELY_UNLIKELY,
    "EXTREMELY_UNLIKELY": Likelihood.EXTREMELY_UNLIKELY,
}


def _token(value: Any) -> str:
    return str(value).strip().upper().replace("-", "_").replace(" ", "_")


class RiskMatrixService:
    """Normalises free-form rating input and derives risk bands."""

    def normalize_severity(self, value: Any) -> Severity:
        token = _token(value)
        if token in Severity.__members__:
            return Severity(token)
        if token in _SEVERITY_WORDS:
            return _SEVERITY_WORDS[token]
        raise ValueError(f"Unrecognised severity: {value!r}.")

    def normalize_likelihood(self, value: Any) -> Likelihood:
        token = _token(value)
        if token in {lk.value for lk in Likelihood}:
            return Likelihood(token)
        if token in _LIKELIHOOD_WORDS:
            return _LIKELIHOOD_WORDS[token]
        raise ValueError(f"Unrecognised likelihood: {value!r}.")

    def band(self, severity: Severity, likelihood: Likelihood) -> RiskBand:
        return _RISK_MATRIX[likelihood][severity]

    def rate(
        self,
        existing: Optional[RiskRating],
        severity: Optional[Severity] = None,
        likelihood: Optional[Likelihood] = None,
    ) -> RiskRating:
        """
        Merge a partial rating into `existing` and recompute the band.
        Axes not supplied keep their current value.
        """
        current = existing or RiskRating()
        merged = RiskRating(
            severity=severity or current.severity,
            likelihood=likelihood or current.likelihood,
        )
        if merged.severity and merged.likelihood:
            merged.risk_band = self.band(merged.severity, merged.likelihood)
        return merged
