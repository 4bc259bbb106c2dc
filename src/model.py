"""
model.py

Domain models for the SafeCase guided safety-assessment editor.

Entities
--------
- CaseDocument          (root aggregate: one risk assessment, JHA or incident)
- ProcessStep
- Hazard
- RiskRating            (value object embedded in a hazard)
- Control
- CorrectiveAction
- TimelineEvent
- Cause

Every entity other than the document carries an `order_index` that is unique
and gap-free inside its sibling group.  Parent links are plain UUID foreign
keys, the same way the store persists them.

All models use Python dataclasses for clean, framework-agnostic definitions.
UUID primary keys are used throughout for portability.
Timestamps are always stored in UTC.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class DocumentKind(str, Enum):
    """The three document shapes served by the editor."""
    RISK_ASSESSMENT = "risk_assessment"
    JOB_HAZARD_ANALYSIS = "job_hazard_analysis"
    INCIDENT = "incident"


class EntityType(str, Enum):
    """Store-level entity collections inside a CaseDocument."""
    STEP = "step"
    HAZARD = "hazard"
    CONTROL = "control"
    ACTION = "action"
    TIMELINE_EVENT = "timeline_event"
    CAUSE = "cause"


class DeletePolicy(str, Enum):
    """
    What happens to children when their parent is deleted.

    CASCADE   – children (and their children) are removed with the parent.
    RESTRICT  – the delete is rejected while the parent still has children.
    """
    CASCADE = "cascade"
    RESTRICT = "restrict"


class Severity(str, Enum):
    """Template severity scale, A (worst) to E."""
    A = "A"     # Catastrophic
    B = "B"     # Hazardous
    C = "C"     # Major
    D = "D"     # Minor
    E = "E"     # Negligible


class Likelihood(str, Enum):
    """Template likelihood scale, 1 (certain) to 5."""
    CERTAIN = "1"
    LIKELY = "2"
    POSSIBLE = "3"
    UNLIKELY = "4"
    EXTREMELY_UNLIKELY = "5"


class RiskBand(str, Enum):
    EXTREME = "EXTREME"
    HIGH = "HIGH"
    MODERATE = "MODERATE"
    MINOR = "MINOR"
    NEGLIGIBLE = "NEGLIGIBLE"


class ControlHierarchy(str, Enum):
    """S-T-O-P control hierarchy, most to least effective."""
    SUBSTITUTION = "SUBSTITUTION"
    TECHNICAL = "TECHNICAL"
    ORGANIZATIONAL = "ORGANIZATIONAL"
    PPE = "PPE"


class ActionStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"


class TimelineConfidence(str, Enum):
    CONFIRMED = "CONFIRMED"
    LIKELY = "LIKELY"
    UNCLEAR = "UNCLEAR"


# ---------------------------------------------------------------------------
# Tree entities
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RiskRating:
    """
    Severity / likelihood pair recorded against a hazard.

    `risk_band` is derived from the template matrix whenever both axes are
    set; it is None for a half-filled rating.
    """
    severity: Optional[Severity] = None
    likelihood: Optional[Likelihood] = None
    risk_band: Optional[RiskBand] = None


@dataclass
class ProcessStep:
    """A work step of a risk assessment or job hazard analysis."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    order_index: int = 0
    activity: str = ""
    equipment: List[str] = field(default_factory=list)
    substances: List[str] = field(default_factory=list)
    description: Optional[str] = None


@dataclass
class Hazard:
    """
    A hazard identified for a step.

    `existing_controls` are free-text controls already in place; proposed
    (additional) controls are separate Control entities.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    step_id: uuid.UUID = field(default_factory=uuid.uuid4)     # FK → ProcessStep.id
    order_index: int = 0
    label: str = ""
    description: Optional[str] = None
    category_code: Optional[str] = None     # e.g. "MECHANICAL", "FALLS"
    consequence: Optional[str] = None
    existing_controls: List[str] = field(default_factory=list)
    baseline: Optional[RiskRating] = None
    residual: Optional[RiskRating] = None


@dataclass
class Control:
    """A proposed control measure attached to a hazard."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    hazard_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → Hazard.id
    order_index: int = 0
    description: str = ""
    hierarchy: Optional[ControlHierarchy] = None


@dataclass
class CorrectiveAction:
    """
    An action item.  `parent_id` points at a Hazard for risk assessments and
    at a Cause for incident investigations.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    parent_id: uuid.UUID = field(default_factory=uuid.uuid4)
    order_index: int = 0
    description: str = ""
    owner: Optional[str] = None
    due_date: Optional[date] = None
    status: ActionStatus = ActionStatus.OPEN


@dataclass
class TimelineEvent:
    """A point on an incident's reconstructed timeline."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    order_index: int = 0
    text: str = ""
    time_label: Optional[str] = None
    confidence: TimelineConfidence = TimelineConfidence.LIKELY


@dataclass
class Cause:
    """A contributing (or root) cause attached to a timeline event."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    timeline_event_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → TimelineEvent.id
    order_index: int = 0
    statement: str = ""
    is_root_cause: bool = False


# ---------------------------------------------------------------------------
# Root aggregate
# ---------------------------------------------------------------------------


@dataclass
class CaseDocument:
    """
    One case as held by the Document Store.

    Collections are stored flat; the tree is expressed through the parent
    foreign keys and `order_index` of each entity.  Collections a document
    kind does not use simply stay empty.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    kind: DocumentKind = DocumentKind.RISK_ASSESSMENT
    title: str = ""
    phase: str = ""

    steps: List[ProcessStep] = field(default_factory=list)
    hazards: List[Hazard] = field(default_factory=list)
    controls: List[Control] = field(default_factory=list)
    actions: List[CorrectiveAction] = field(default_factory=list)
    timeline_events: List[TimelineEvent] = field(default_factory=list)
    causes: List[Cause] = field(default_factory=list)

    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


# Collection attribute on CaseDocument, parent FK attribute on the entity
# (None for top-level entities) and entity class, per entity type.
COLLECTIONS: Dict[EntityType, str] = {
    EntityType.STEP: "steps",
    EntityType.HAZARD: "hazards",
    EntityType.CONTROL: "controls",
    EntityType.ACTION: "actions",
    EntityType.TIMELINE_EVENT: "timeline_events",
    EntityType.CAUSE: "causes",
}

PARENT_FIELDS: Dict[EntityType, Optional[str]] = {
    EntityType.STEP: None,
    EntityType.HAZARD: "step_id",
    EntityType.CONTROL: "hazard_id",
    EntityType.ACTION: "parent_id",
    EntityType.TIMELINE_EVENT: None,
    EntityType.CAUSE: "timeline_event_id",
}

ENTITY_CLASSES = {
    EntityType.STEP: ProcessStep,
    EntityType.HAZARD: Hazard,
    EntityType.CONTROL: Control,
    EntityType.ACTION: CorrectiveAction,
    EntityType.TIMELINE_EVENT: TimelineEvent,
    EntityType.CAUSE: Cause,
}


# ---------------------------------------------------------------------------
# Document shapes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DocumentShape:
    """
    How the command vocabulary maps onto one document kind.

    `top_level` / `second_level` name the entity types addressed by the
    STEP and HAZARD command targets.  `control` / `action` are None when the
    kind has no such collection.  `children` drives cascading deletes.
    """
    kind: DocumentKind
    top_level: EntityType
    second_level: EntityType
    control: Optional[EntityType]
    action: Optional[EntityType]
    supports_assessment: bool
    top_level_delete: DeletePolicy
    children: Dict[EntityType, Tuple[EntityType, ...]]


SHAPES: Dict[DocumentKind, DocumentShape] = {
    DocumentKind.RISK_ASSESSMENT: DocumentShape(
        kind=DocumentKind.RISK_ASSESSMENT,
        top_level=EntityType.STEP,
        second_level=EntityType.HAZARD,
        control=EntityType.CONTROL,
        action=EntityType.ACTION,
        supports_assessment=True,
        top_level_delete=DeletePolicy.RESTRICT,
        children={
            EntityType.STEP: (EntityType.HAZARD,),
            EntityType.HAZARD: (EntityType.CONTROL, EntityType.ACTION),
        },
    ),
    DocumentKind.JOB_HAZARD_ANALYSIS: DocumentShape(
        kind=DocumentKind.JOB_HAZARD_ANALYSIS,
        top_level=EntityType.STEP,
        second_level=EntityType.HAZARD,
        control=EntityType.CONTROL,
        action=None,
        supports_assessment=False,
        top_level_delete=DeletePolicy.CASCADE,
        children={
            EntityType.STEP: (EntityType.HAZARD,),
            EntityType.HAZARD: (EntityType.CONTROL,),
        },
    ),
    DocumentKind.INCIDENT: DocumentShape(
        kind=DocumentKind.INCIDENT,
        top_level=EntityType.TIMELINE_EVENT,
        second_level=EntityType.CAUSE,
        control=None,
        action=EntityType.ACTION,
        supports_assessment=False,
        top_level_delete=DeletePolicy.CASCADE,
        children={
            EntityType.TIMELINE_EVENT: (EntityType.CAUSE,),
            EntityType.CAUSE: (EntityType.ACTION,),
        },
    ),
}
