"""
phases.py

Ordered workflow phases per document kind and the Phase Gate that guards
forward navigation through them.

The gate never blocks backward navigation and never blocks editing; it only
refuses to move forward past a phase whose completion predicate does not hold
against the live document.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from errors import ApplicationError, PhaseBlocked
from model import CaseDocument, DocumentKind, Hazard, RiskBand


# ---------------------------------------------------------------------------
# Phase enumerations
# ---------------------------------------------------------------------------


class RiskAssessmentPhase(str, Enum):
    PROCESS_STEPS = "PROCESS_STEPS"
    HAZARD_IDENTIFICATION = "HAZARD_IDENTIFICATION"
    RISK_RATING = "RISK_RATING"
    CONTROL_DISCUSSION = "CONTROL_DISCUSSION"
    RESIDUAL_RISK = "RESIDUAL_RISK"
    ACTIONS = "ACTIONS"
    COMPLETE = "COMPLETE"


class JhaPhase(str, Enum):
    STEPS = "STEPS"
    HAZARDS = "HAZARDS"
    CONTROLS = "CONTROLS"
    REVIEW = "REVIEW"
    COMPLETE = "COMPLETE"


class IncidentPhase(str, Enum):
    TIMELINE = "TIMELINE"
    CAUSES = "CAUSES"
    ACTIONS = "ACTIONS"
    REVIEW = "REVIEW"
    COMPLETE = "COMPLETE"


# ---------------------------------------------------------------------------
# Completion predicates
# ---------------------------------------------------------------------------


def _proposed(document: CaseDocument, hazard: Hazard) -> list:
    return [c for c in document.controls if c.hazard_id == hazard.id]


def _actions_for(document: CaseDocument, parent_id) -> list:
    return [a for a in document.actions if a.parent_id == parent_id]


def _always(document: CaseDocument) -> bool:
    return True


def _has_steps(document: CaseDocument) -> bool:
    return bool(document.steps)


def _hazards_have_existing_controls(document: CaseDocument) -> bool:
    return bool(document.hazards) and all(h.existing_controls for h in document.hazards)


def _hazards_rated(document: CaseDocument) -> bool:
    return all(
        h.baseline is not None and h.baseline.risk_band is not None for h in document.hazards
    )


def _serious_hazards_have_proposals(document: CaseDocument) -> bool:
    tolerable = {RiskBand.MINOR, RiskBand.NEGLIGIBLE}
    return all(
        _proposed(document, h)
        for h in document.hazards
        if h.baseline is None or h.baseline.risk_band not in tolerable
    )


def _residual_rated(document: CaseDocument) -> bool:
    return all(
        h.residual is not None and h.residual.risk_band is not None
        for h in document.hazards
        if _proposed(document, h)
    )


def _proposals_have_actions(document: CaseDocument) -> bool:
    return all(_actions_for(document, h.id) for h in document.hazards if _proposed(document, h))


def _steps_have_hazards(document: CaseDocument) -> bool:
    return bool(document.steps) and all(
        any(h.step_id == s.id for h in document.hazards) for s in document.steps
    )


def _hazards_have_controls(document: CaseDocument) -> bool:
    return all(_proposed(document, h) for h in document.hazards)


def _has_events(document: CaseDocument) -> bool:
    return bool(document.timeline_events)


def _has_causes(document: CaseDocument) -> bool:
    return bool(document.causes)


def _root_causes_have_actions(document: CaseDocument) -> bool:
    roots = [c for c in document.causes if c.is_root_cause] or document.causes
    return all(_actions_for(document, c.id) for c in roots)


# ---------------------------------------------------------------------------
# Phase definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PhaseDefinition:
    name: str
    label: str
    description: str
    is_complete: Callable[[CaseDocument], bool]


PHASES: Dict[DocumentKind, Tuple[PhaseDefinition, ...]] = {
    DocumentKind.RISK_ASSESSMENT: (
        PhaseDefinition(
            RiskAssessmentPhase.PROCESS_STEPS.value, "Process Description",
            "Describe the work process: activities, equipment, and substances involved.",
            _has_steps,
        ),
        PhaseDefinition(
            RiskAssessmentPhase.HAZARD_IDENTIFICATION.value, "Hazard Identification",
            "Identify hazards for each step, including what can go wrong and existing controls.",
            _hazards_have_existing_controls,
        ),
        PhaseDefinition(
            RiskAssessmentPhase.RISK_RATING.value, "Baseline Risk Assessment",
            "Rate current risk based on adherence to existing controls.",
            _hazards_rated,
        ),
        PhaseDefinition(
            RiskAssessmentPhase.CONTROL_DISCUSSION.value, "Controls",
            "Propose additional controls for every hazard above minor risk.",
            _serious_hazards_have_proposals,
        ),
        PhaseDefinition(
            RiskAssessmentPhase.RESIDUAL_RISK.value, "Residual Risk",
            "Rate the expected risk once the proposed controls are in place.",
            _residual_rated,
        ),
        PhaseDefinition(
            RiskAssessmentPhase.ACTIONS.value, "Action Plan",
            "Structure proposed controls into actionable tasks with owners and deadlines.",
            _proposals_have_actions,
        ),
        PhaseDefinition(
            RiskAssessmentPhase.COMPLETE.value, "Complete",
            "Assessment complete.",
            _always,
        ),
    ),
    DocumentKind.JOB_HAZARD_ANALYSIS: (
        PhaseDefinition(JhaPhase.STEPS.value, "Job Steps", "Break the job into steps.", _has_steps),
        PhaseDefinition(
            JhaPhase.HAZARDS.value, "Hazards", "Identify hazards for every step.", _steps_have_hazards
        ),
        PhaseDefinition(
            JhaPhase.CONTROLS.value, "Controls", "Define controls for every hazard.", _hazards_have_controls
        ),
        PhaseDefinition(JhaPhase.REVIEW.value, "Review", "Review and sign off.", _always),
        PhaseDefinition(JhaPhase.COMPLETE.value, "Complete", "Analysis complete.", _always),
    ),
    DocumentKind.INCIDENT: (
        PhaseDefinition(
            IncidentPhase.TIMELINE.value, "Timeline", "Reconstruct what happened.", _has_events
        ),
        PhaseDefinition(
            IncidentPhase.CAUSES.value, "Causes", "Identify contributing and root causes.", _has_causes
        ),
        PhaseDefinition(
            IncidentPhase.ACTIONS.value, "Corrective Actions",
            "Assign corrective actions to the root causes.", _root_causes_have_actions,
        ),
        PhaseDefinition(IncidentPhase.REVIEW.value, "Review", "Review the investigation.", _always),
        PhaseDefinition(IncidentPhase.COMPLETE.value, "Complete", "Investigation complete.", _always),
    ),
}


def first_phase(kind: DocumentKind) -> str:
    return PHASES[kind][0].name


# ---------------------------------------------------------------------------
# Phase gate
# ---------------------------------------------------------------------------


@dataclass
class PhaseState:
    name: str
    label: str
    description: str
    complete: bool
    current: bool


class PhaseGate:
    """
    State machine over an ordered phase sequence.

    Transitions: advance() to the next phase, guarded by the current phase's
    predicate; jump_to(P), unguarded backwards and guarded by every phase
    between the current one and P forwards.
    """

    def __init__(self, definitions: Sequence[PhaseDefinition], current: Optional[str] = None):
        if not definitions:
            raise ValueError("A phase gate needs at least one phase.")
        self._definitions = tuple(definitions)
        self._names = [d.name for d in self._definitions]
        self.current = current or self._names[0]
        self.index(self.current)

    @classmethod
    def for_document(cls, document: CaseDocument) -> "PhaseGate":
        return cls(PHASES[document.kind], document.phase or None)

    @property
    def names(self) -> List[str]:
        return list(self._names)

    @property
    def is_terminal(self) -> bool:
        return self.current == self._names[-1]

    def index(self, phase: str) -> int:
        try:
            return self._names.index(phase)
        except ValueError:
            raise ApplicationError(f"Unknown phase {phase!r}; expected one of {self._names}.") from None

    def is_complete(self, document: CaseDocument, phase: Optional[str] = None) -> bool:
        definition = self._definitions[self.index(phase or self.current)]
        return definition.is_complete(document)

    def blocking(self, document: CaseDocument, target: str) -> List[str]:
        """Phases between the current one (inclusive) and `target` (exclusive) that are incomplete."""
        start, end = self.index(self.current), self.index(target)
        return [
            d.name for d in self._definitions[start:end] if not d.is_complete(document)
        ]

    def can_advance(self, document: CaseDocument) -> bool:
        return not self.is_terminal and self.is_complete(document)

    def advance(self, document: CaseDocument) -> str:
        if self.is_terminal:
            raise ApplicationError(f"{self.current} is the final phase.")
        target = self._names[self.index(self.current) + 1]
        return self.jump_to(document, target)

    def jump_to(self, document: CaseDocument, phase: str) -> str:
        if self.index(phase) > self.index(self.current):
            blocking = self.blocking(document, phase)
            if blocking:
                raise PhaseBlocked(phase, blocking)
        self.current = phase
        return phase

    def states(self, document: CaseDocument) -> List[PhaseState]:
        return [
            PhaseState(
                name=d.name,
                label=d.label,
                description=d.description,
                complete=d.is_complete(document),
                current=d.name == self.current,
            )
            for d in self._definitions
        ]
