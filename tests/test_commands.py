"""
Tests for command validation.

Covers:
  - wire normalisation (case, synonyms, camelCase, list splitting)
  - per-intent data / location requirements
  - targets unsupported by a document kind
  - ASSESSMENT rating normalisation
  - MULTIPLE sub-command filtering
  - batch filtering, ordering and size limit
"""

import pytest

from commands import (
    AssessmentData,
    Intent,
    StepData,
    Target,
    TimelineEventData,
    validate_batch,
    validate_command,
)
from errors import CommandValidationError
from model import SHAPES, DocumentKind, Likelihood, Severity

RA = SHAPES[DocumentKind.RISK_ASSESSMENT]
JHA = SHAPES[DocumentKind.JOB_HAZARD_ANALYSIS]
INCIDENT = SHAPES[DocumentKind.INCIDENT]


# ── Tests: normalisation ────────────────────────────────────────────────

class TestNormalisation:

    def test_intent_synonyms_and_case(self):
        cmd = validate_command(
            {"intent": "update", "target": "step", "location": {"stepIndex": 0},
             "data": {"activity": "Lift"}},
            RA,
        )
        assert cmd.intent == Intent.MODIFY
        assert cmd.target == Target.STEP

    def test_remove_is_delete(self):
        cmd = validate_command(
            {"intent": "remove", "target": "HAZARD", "location": {"hazardId": "abc"}}, RA
        )
        assert cmd.intent == Intent.DELETE
        assert cmd.payload is None

    def test_camel_case_location_and_data(self):
        cmd = validate_command(
            {"intent": "ADD", "target": "HAZARD", "location": {"stepId": "s-1"},
             "data": {"label": "Noise", "existingControls": "Ear defenders, Rotation"}},
            RA,
        )
        assert cmd.location.step_id == "s-1"
        assert cmd.changes() == {"label": "Noise", "existing_controls": ["Ear defenders", "Rotation"]}

    def test_equipment_string_is_split(self):
        cmd = validate_command(
            {"intent": "ADD", "target": "STEP", "data": {"activity": "Cut", "equipment": "Saw, Clamp"}},
            RA,
        )
        assert isinstance(cmd.payload, StepData)
        assert cmd.changes()["equipment"] == ["Saw", "Clamp"]

    def test_step_payload_follows_document_kind(self):
        cmd = validate_command(
            {"intent": "ADD", "target": "STEP", "data": {"text": "Alarm sounded", "confidence": "confirmed"}},
            INCIDENT,
        )
        assert isinstance(cmd.payload, TimelineEventData)
        assert cmd.changes()["confidence"].value == "CONFIRMED"

    def test_missing_explanation_defaults_to_empty(self):
        cmd = validate_command(
            {"intent": "ADD", "target": "STEP", "data": {"activity": "Lift"}, "explanation": None}, RA
        )
        assert cmd.explanation == ""


# ── Tests: structural rules ─────────────────────────────────────────────

class TestStructuralRules:

    @pytest.mark.parametrize("intent", ["ADD", "MODIFY", "INSERT"])
    def test_data_required(self, intent):
        with pytest.raises(CommandValidationError):
            validate_command({"intent": intent, "target": "STEP", "location": {"stepIndex": 0}}, RA)

    @pytest.mark.parametrize("intent", ["MODIFY", "DELETE"])
    def test_location_required(self, intent):
        with pytest.raises(CommandValidationError):
            validate_command({"intent": intent, "target": "STEP", "data": {"activity": "x"}}, RA)

    def test_location_without_reference_rejected(self):
        with pytest.raises(CommandValidationError):
            validate_command({"intent": "DELETE", "target": "STEP", "location": {}}, RA)

    def test_modify_setting_nothing_rejected(self):
        with pytest.raises(CommandValidationError):
            validate_command(
                {"intent": "MODIFY", "target": "STEP", "location": {"stepIndex": 0},
                 "data": {"colour": "red"}},
                RA,
            )

    def test_blank_required_text_rejected(self):
        with pytest.raises(CommandValidationError):
            validate_command({"intent": "ADD", "target": "HAZARD", "data": {"label": ""}}, RA)

    def test_negative_index_rejected(self):
        with pytest.raises(CommandValidationError):
            validate_command(
                {"intent": "DELETE", "target": "STEP", "location": {"stepIndex": -1}}, RA
            )

    def test_unknown_target_rejected(self):
        with pytest.raises(CommandValidationError):
            validate_command({"intent": "ADD", "target": "PARAGRAPH", "data": {}}, RA)

    def test_action_not_supported_in_jha(self):
        with pytest.raises(CommandValidationError):
            validate_command({"intent": "ADD", "target": "ACTION", "data": {"description": "x"}}, JHA)

    def test_control_not_supported_in_incident(self):
        with pytest.raises(CommandValidationError):
            validate_command({"intent": "ADD", "target": "CONTROL", "data": {"description": "x"}}, INCIDENT)

    def test_action_due_date_parsed(self):
        cmd = validate_command(
            {"intent": "ADD", "target": "ACTION",
             "data": {"description": "Fix roof", "dueDate": "2026-11-30", "status": "in progress"}},
            INCIDENT,
        )
        changes = cmd.changes()
        assert changes["due_date"].isoformat() == "2026-11-30"
        assert changes["status"].value == "IN_PROGRESS"


# ── Tests: assessments ──────────────────────────────────────────────────

class TestAssessment:

    def test_words_are_normalised(self):
        cmd = validate_command(
            {"intent": "ADD", "target": "ASSESSMENT",
             "data": {"severity": "catastrophic", "likelihood": "rare"}},
            RA,
        )
        assert isinstance(cmd.payload, AssessmentData)
        assert cmd.payload.severity == Severity.A
        assert cmd.payload.likelihood == Likelihood.EXTREMELY_UNLIKELY

    def test_codes_are_accepted(self):
        cmd = validate_command(
            {"intent": "MODIFY", "target": "ASSESSMENT", "location": {"hazardIndex": 0, "stepIndex": 0},
             "data": {"severity": "c", "likelihood": 3, "assessmentType": "Residual"}},
            RA,
        )
        assert cmd.payload.severity == Severity.C
        assert cmd.payload.likelihood == Likelihood.POSSIBLE
        assert cmd.payload.assessment_type == "residual"

    def test_rating_required(self):
        with pytest.raises(CommandValidationError):
            validate_command({"intent": "ADD", "target": "ASSESSMENT", "data": {"assessmentType": "baseline"}}, RA)

    def test_unknown_severity_rejected(self):
        with pytest.raises(CommandValidationError):
            validate_command({"intent": "ADD", "target": "ASSESSMENT", "data": {"severity": "Z"}}, RA)

    def test_not_supported_for_incident(self):
        with pytest.raises(CommandValidationError):
            validate_command({"intent": "ADD", "target": "ASSESSMENT", "data": {"severity": "A"}}, INCIDENT)

    def test_reorder_not_valid_for_assessment(self):
        with pytest.raises(CommandValidationError):
            validate_command(
                {"intent": "REORDER", "target": "ASSESSMENT", "location": {},
                 "data": {"orderedIds": ["a"]}},
                RA,
            )


# ── Tests: MULTIPLE ─────────────────────────────────────────────────────

class TestMultiple:

    def test_invalid_children_are_dropped(self):
        cmd = validate_command(
            {"intent": "ADD", "target": "MULTIPLE", "data": {"commands": [
                {"intent": "ADD", "target": "STEP", "data": {"activity": "One"}},
                {"intent": "ADD", "target": "STEP"},
                {"intent": "CLARIFY", "target": "STEP"},
                {"intent": "ADD", "target": "HAZARD", "data": {"label": "Two"}},
            ]}},
            RA,
        )
        assert [c.target for c in cmd.children] == [Target.STEP, Target.HAZARD]

    def test_no_valid_children_rejected(self):
        with pytest.raises(CommandValidationError):
            validate_command(
                {"intent": "ADD", "target": "MULTIPLE",
                 "data": {"commands": [{"intent": "ADD", "target": "STEP"}]}},
                RA,
            )


# ── Tests: batches ──────────────────────────────────────────────────────

class TestBatch:

    def test_invalid_commands_dropped_in_order(self):
        result = validate_batch(
            [
                {"intent": "ADD", "target": "STEP", "data": {"activity": "A"}},
                {"intent": "DELETE", "target": "STEP"},
                {"intent": "ADD", "target": "STEP", "data": {"activity": "B"}},
            ],
            RA,
        )
        assert [c.changes()["activity"] for c in result.commands] == ["A", "B"]
        assert [r.index for r in result.rejected] == [1]
        assert not result.is_empty

    def test_all_invalid_is_empty(self):
        result = validate_batch([{"intent": "ADD"}, "not a command"], RA)
        assert result.is_empty
        assert len(result.rejected) == 2

    def test_max_commands(self):
        raw = [{"intent": "ADD", "target": "STEP", "data": {"activity": str(i)}} for i in range(3)]
        result = validate_batch(raw, RA, max_commands=2)
        assert len(result.commands) == 2
        assert [r.index for r in result.rejected] == [2]

    def test_clarify_payload_is_lenient(self):
        result = validate_batch(
            [{"intent": "CLARIFY", "target": "STEP", "data": {"question": "Which step?"}}], RA
        )
        assert result.commands[0].clarification_prompt == "Which step?"
