"""
commands.py

Command model for contextual (natural-language driven) updates.

The external text-understanding service returns a ParsedUpdate envelope whose
`commands` are loosely typed dictionaries.  This module turns each of them into
a ValidatedCommand whose `payload` is checked against a target-specific schema,
and drops the ones that are structurally unusable.

Wire shape of one command
-------------------------
    {
      "intent":      "ADD" | "MODIFY" | "DELETE" | "INSERT" | "REORDER" | "CLARIFY",
      "target":      "STEP" | "HAZARD" | "CONTROL" | "ACTION" | "ASSESSMENT" | "MULTIPLE",
      "location":    {"stepId", "stepIndex", "hazardId", "hazardIndex",
                      "actionId", "controlId", "insertAfter"},
      "data":        {...},
      "explanation": "..."
    }

Validation never raises out of validate_batch; rejected commands are counted
and reported with a reason.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from errors import CommandValidationError
from model import (
    ActionStatus,
    ControlHierarchy,
    DocumentShape,
    EntityType,
    Likelihood,
    Severity,
    TimelineConfidence,
)
from service import RiskMatrixService

_matrix = RiskMatrixService()


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Intent(str, Enum):
    ADD = "ADD"
    MODIFY = "MODIFY"
    DELETE = "DELETE"
    INSERT = "INSERT"
    REORDER = "REORDER"
    CLARIFY = "CLARIFY"


class Target(str, Enum):
    STEP = "STEP"
    HAZARD = "HAZARD"
    CONTROL = "CONTROL"
    ACTION = "ACTION"
    ASSESSMENT = "ASSESSMENT"    # severity / likelihood rating of a hazard
    MULTIPLE = "MULTIPLE"        # data.commands holds sub-edits applied as one unit


_INTENT_SYNONYMS = {"UPDATE": "MODIFY", "REMOVE": "DELETE"}

_DATA_REQUIRED = {Intent.ADD, Intent.MODIFY, Intent.INSERT}
_LOCATION_REQUIRED = {Intent.MODIFY, Intent.DELETE, Intent.REORDER}
_ASSESSMENT_INTENTS = {Intent.ADD, Intent.MODIFY, Intent.DELETE}


def _upper_token(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().upper().replace(" ", "_")
    return value


def _as_list(value: Any) -> Any:
    # Parsers sometimes send "drill, grinder" instead of a list.
    if isinstance(value, str):
        return [part.strip() for part in value.replace("\n", ",").split(",") if part.strip()]
    return value


# ---------------------------------------------------------------------------
# Base schema
# ---------------------------------------------------------------------------


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class Location(_WireModel):
    step_id: Optional[str] = None
    step_index: Optional[int] = Field(default=None, ge=0)
    hazard_id: Optional[str] = None
    hazard_index: Optional[int] = Field(default=None, ge=0)
    action_id: Optional[str] = None
    control_id: Optional[str] = None
    insert_after: Optional[str] = None

    @field_validator(
        "step_id", "hazard_id", "action_id", "control_id", "insert_after", mode="before"
    )
    @classmethod
    def stringify_ids(cls, v: Any) -> Any:
        if v is None or isinstance(v, str):
            return v or None
        return str(v)

    def has_reference(self) -> bool:
        return any(v is not None for v in self.model_dump().values())


# ---------------------------------------------------------------------------
# Target-specific payloads
# ---------------------------------------------------------------------------


class StepData(_WireModel):
    activity: Optional[str] = Field(default=None, min_length=1)
    equipment: Optional[List[str]] = None
    substances: Optional[List[str]] = None
    description: Optional[str] = None

    @field_validator("equipment", "substances", mode="before")
    @classmethod
    def split_lists(cls, v: Any) -> Any:
        return _as_list(v)


class TimelineEventData(_WireModel):
    text: Optional[str] = Field(default=None, min_length=1)
    time_label: Optional[str] = None
    confidence: Optional[TimelineConfidence] = None

    @field_validator("confidence", mode="before")
    @classmethod
    def normalize_confidence(cls, v: Any) -> Any:
        return _upper_token(v)


class HazardData(_WireModel):
    label: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    category_code: Optional[str] = None
    consequence: Optional[str] = None
    existing_controls: Optional[List[str]] = None

    @field_validator("existing_controls", mode="before")
    @classmethod
    def split_controls(cls, v: Any) -> Any:
        return _as_list(v)


class CauseData(_WireModel):
    statement: Optional[str] = Field(default=None, min_length=1)
    is_root_cause: Optional[bool] = None


class ControlData(_WireModel):
    description: Optional[str] = Field(default=None, min_length=1)
    hierarchy: Optional[ControlHierarchy] = None

    @field_validator("hierarchy", mode="before")
    @classmethod
    def normalize_hierarchy(cls, v: Any) -> Any:
        return _upper_token(v)


class ActionData(_WireModel):
    description: Optional[str] = Field(default=None, min_length=1)
    owner: Optional[str] = None
    due_date: Optional[date] = None
    status: Optional[ActionStatus] = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> Any:
        return _upper_token(v)


class AssessmentData(_WireModel):
    severity: Optional[Severity] = None
    likelihood: Optional[Likelihood] = None
    assessment_type: Optional[Literal["baseline", "residual"]] = None

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, v: Any) -> Any:
        return None if v is None else _matrix.normalize_severity(v)

    @field_validator("likelihood", mode="before")
    @classmethod
    def normalize_likelihood(cls, v: Any) -> Any:
        return None if v is None else _matrix.normalize_likelihood(v)

    @field_validator("assessment_type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


class ReorderData(_WireModel):
    ordered_ids: List[str] = Field(..., min_length=1)

    @field_validator("ordered_ids", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> Any:
        if isinstance(v, (list, tuple)):
            return [str(item) for item in v]
        return v


class ClarifyData(_WireModel):
    clarification_prompt: Optional[str] = None
    question: Optional[str] = None

    @property
    def prompt(self) -> Optional[str]:
        return self.clarification_prompt or self.question


class MultipleData(_WireModel):
    commands: List[Dict[str, Any]] = Field(..., min_length=1)


Payload = Union[
    StepData, TimelineEventData, HazardData, CauseData, ControlData,
    ActionData, AssessmentData, ReorderData, ClarifyData,
]


# ---------------------------------------------------------------------------
# Command wire model and parser envelope
# ---------------------------------------------------------------------------


class Command(_WireModel):
    """One command exactly as produced by the text-understanding service."""
    intent: Intent
    target: Target
    location: Optional[Location] = None
    data: Optional[Dict[str, Any]] = None
    explanation: str = ""

    @field_validator("intent", mode="before")
    @classmethod
    def normalize_intent(cls, v: Any) -> Any:
        token = _upper_token(v)
        if isinstance(token, str):
            return _INTENT_SYNONYMS.get(token, token)
        return token

    @field_validator("target", mode="before")
    @classmethod
    def normalize_target(cls, v: Any) -> Any:
        return _upper_token(v)

    @field_validator("explanation", mode="before")
    @classmethod
    def default_explanation(cls, v: Any) -> Any:
        return "" if v is None else v


class ParsedUpdate(_WireModel):
    """
    Output contract of the text-understanding collaborator.

    `commands` stays loosely typed so that one malformed command does not
    invalidate the whole envelope.
    """
    commands: List[Dict[str, Any]] = Field(default_factory=list)
    summary: Optional[str] = None
    needs_clarification: bool = False
    clarification_prompt: Optional[str] = None
    raw_response: Optional[str] = None


# ---------------------------------------------------------------------------
# Validated commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValidatedCommand:
    """A command whose payload has been checked against its target schema."""
    intent: Intent
    target: Target
    location: Location
    payload: Optional[BaseModel] = None
    explanation: str = ""
    children: Tuple["ValidatedCommand", ...] = ()

    def changes(self) -> Dict[str, Any]:
        """Fields supplied by the payload; absent and null fields are omitted."""
        if self.payload is None:
            return {}
        return self.payload.model_dump(exclude_unset=True, exclude_none=True)

    @property
    def clarification_prompt(self) -> Optional[str]:
        if isinstance(self.payload, ClarifyData):
            return self.payload.prompt
        return None


@dataclass
class Rejection:
    index: int
    reason: str


@dataclass
class BatchValidation:
    commands: List[ValidatedCommand] = field(default_factory=list)
    rejected: List[Rejection] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.commands


def _payload_schema(
    intent: Intent, target: Target, shape: DocumentShape
) -> Optional[Type[BaseModel]]:
    if intent == Intent.CLARIFY:
        return ClarifyData
    if intent == Intent.REORDER:
        return ReorderData
    if intent == Intent.DELETE:
        # assessmentType still selects which rating a delete clears
        return AssessmentData if target == Target.ASSESSMENT else None
    if target == Target.STEP:
        return StepData if shape.top_level == EntityType.STEP else TimelineEventData
    if target == Target.HAZARD:
        return HazardData if shape.second_level == EntityType.HAZARD else CauseData
    if target == Target.CONTROL:
        return ControlData
    if target == Target.ACTION:
        return ActionData
    if target == Target.ASSESSMENT:
        return AssessmentData
    return None


def _check_supported(target: Target, shape: DocumentShape) -> None:
    unsupported = (
        (target == Target.CONTROL and shape.control is None)
        or (target == Target.ACTION and shape.action is None)
        or (target == Target.ASSESSMENT and not shape.supports_assessment)
    )
    if unsupported:
        raise CommandValidationError(
            f"{target.value} commands are not supported for {shape.kind.value} documents."
        )


def validate_command(raw: Union[Command, Dict[str, Any]], shape: DocumentShape) -> ValidatedCommand:
    """
    Validate one command against `shape`.  Raises CommandValidationError.
    """
    try:
        command = raw if isinstance(raw, Command) else Command.model_validate(raw)
    except ValidationError as exc:
        raise CommandValidationError(f"Malformed command: {exc.errors()[0]['msg']}") from exc

    intent, target = command.intent, command.target
    location = command.location

    if intent == Intent.CLARIFY:
        try:
            payload = ClarifyData.model_validate(command.data or {})
        except ValidationError:
            payload = ClarifyData()
        return ValidatedCommand(intent, target, location or Location(), payload, command.explanation)

    if target == Target.MULTIPLE:
        return _validate_multiple(command, shape)

    _check_supported(target, shape)
    if target == Target.ASSESSMENT and intent not in _ASSESSMENT_INTENTS:
        raise CommandValidationError(f"{intent.value} is not valid for ASSESSMENT.")
    if intent in _DATA_REQUIRED and command.data is None:
        raise CommandValidationError(f"{intent.value} requires data.")
    if intent in _LOCATION_REQUIRED and location is None:
        raise CommandValidationError(f"{intent.value} requires a location.")
    if intent in (Intent.MODIFY, Intent.DELETE) and not location.has_reference():
        raise CommandValidationError(f"{intent.value} location carries no reference.")

    payload = None
    schema = _payload_schema(intent, target, shape)
    if schema is not None:
        try:
            payload = schema.model_validate(command.data or {})
        except ValidationError as exc:
            err = exc.errors()[0]
            where = ".".join(str(p) for p in err["loc"]) or "data"
            raise CommandValidationError(f"Invalid {target.value} data ({where}): {err['msg']}") from exc

    validated = ValidatedCommand(
        intent=intent,
        target=target,
        location=location or Location(),
        payload=payload,
        explanation=command.explanation,
    )
    if intent == Intent.MODIFY and not validated.changes():
        raise CommandValidationError("MODIFY data sets no recognised field.")
    if target == Target.ASSESSMENT and intent != Intent.DELETE:
        changes = validated.changes()
        if "severity" not in changes and "likelihood" not in changes:
            raise CommandValidationError("ASSESSMENT requires a severity or likelihood.")
    return validated


def _validate_multiple(command: Command, shape: DocumentShape) -> ValidatedCommand:
    try:
        bundle = MultipleData.model_validate(command.data or {})
    except ValidationError as exc:
        raise CommandValidationError("MULTIPLE requires data.commands.") from exc
    children = []
    for sub in bundle.commands:
        try:
            child = validate_command(sub, shape)
        except CommandValidationError:
            continue
        if child.target == Target.MULTIPLE or child.intent == Intent.CLARIFY:
            continue
        children.append(child)
    if not children:
        raise CommandValidationError("MULTIPLE contains no valid sub-command.")
    return ValidatedCommand(
        intent=command.intent,
        target=Target.MULTIPLE,
        location=command.location or Location(),
        explanation=command.explanation,
        children=tuple(children),
    )


def validate_batch(
    raw_commands: Sequence[Union[Command, Dict[str, Any]]],
    shape: DocumentShape,
    max_commands: Optional[int] = None,
) -> BatchValidation:
    """
    Pure filter over a parsed batch.  Commands failing validation are dropped
    and recorded; the remaining ones keep their original relative order.
    """
    result = BatchValidation()
    for index, raw in enumerate(raw_commands):
        if max_commands is not None and len(result.commands) >= max_commands:
            result.rejected.append(Rejection(index, "Batch exceeds the maximum number of commands."))
            continue
        try:
            result.commands.append(validate_command(raw, shape))
        except CommandValidationError as exc:
            result.rejected.append(Rejection(index, str(exc)))
    return result
