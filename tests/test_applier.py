"""
Tests for the Command Applier against the in-memory Document Store.

Covers ordering/renumbering, partial MODIFY, delete policies per document
kind, risk ratings and best-effort behaviour of failing commands.
"""

import pytest

from applier import CommandApplier, OutcomeStatus
from commands import validate_command
from model import SHAPES, EntityType, RiskBand, Severity
from phases import RiskAssessmentPhase


# ── Helpers ──────────────────────────────────────────────────────────────

async def _apply(store, case_id, *raw):
    document = await store.get_case(case_id)
    shape = SHAPES[document.kind]
    commands = [validate_command(r, shape) for r in raw]
    outcomes = await CommandApplier(store).apply_all(document, commands)
    return outcomes, await store.get_case(case_id)


def _ordered(items):
    return [getattr(i, "activity", None) or getattr(i, "label", None) or i.description
            for i in sorted(items, key=lambda i: i.order_index)]


# ── Tests: create / modify ──────────────────────────────────────────────

class TestCreateAndModify:

    async def test_add_step_appends_with_default_order(self, store, ra_case):
        outcomes, doc = await _apply(
            store, ra_case.id, {"intent": "ADD", "target": "STEP", "data": {"activity": "Wrap pallets"}}
        )
        assert outcomes[0].status == OutcomeStatus.APPLIED
        assert _ordered(doc.steps) == ["Unload truck", "Stack pallets", "Wrap pallets"]
        assert sorted(s.order_index for s in doc.steps) == [0, 1, 2]

    async def test_insert_at_front_renumbers(self, store, ra_case):
        _, doc = await _apply(
            store, ra_case.id,
            {"intent": "INSERT", "target": "STEP", "location": {"stepIndex": 0}, "data": {"activity": "Plan route"}},
        )
        assert _ordered(doc.steps) == ["Plan route", "Unload truck", "Stack pallets"]

    async def test_default_text_for_new_hazard(self, store, ra_case):
        outcomes, doc = await _apply(
            store, ra_case.id,
            {"intent": "ADD", "target": "HAZARD", "location": {"stepId": str(ra_case.s2)},
             "data": {"description": "Pallet may tip"}},
        )
        created = next(h for h in doc.hazards if h.id == outcomes[0].entity_id)
        assert created.label == "New hazard"
        assert created.step_id == ra_case.s2

    async def test_modify_is_partial(self, store, ra_case):
        _, doc = await _apply(
            store, ra_case.id,
            {"intent": "MODIFY", "target": "STEP", "location": {"stepId": str(ra_case.s1)},
             "data": {"description": "From the north dock"}},
        )
        s1 = next(s for s in doc.steps if s.id == ra_case.s1)
        assert s1.description == "From the north dock"
        assert s1.activity == "Unload truck"

    async def test_repeated_modify_is_idempotent(self, store, ra_case):
        await store.update_entity(ra_case.id, EntityType.HAZARD, ra_case.h1, {"description": "Reversing"})
        modify = {"intent": "MODIFY", "target": "HAZARD", "location": {"hazardId": str(ra_case.h1)},
                  "data": {"label": "X"}}
        _, once = await _apply(store, ra_case.id, modify)
        _, twice = await _apply(store, ra_case.id, modify)
        assert once.hazards == twice.hazards
        assert twice.hazards[0].label == "X"
        assert twice.hazards[0].description == "Reversing"


# ── Tests: delete policies ──────────────────────────────────────────────

class TestDelete:

    async def test_ra_step_with_hazards_is_restricted(self, store, ra_case):
        outcomes, doc = await _apply(
            store, ra_case.id, {"intent": "DELETE", "target": "STEP", "location": {"stepId": str(ra_case.s1)}}
        )
        assert outcomes[0].status == OutcomeStatus.FAILED
        assert outcomes[0].error_type == "StoreWriteFailure"
        assert len(doc.steps) == 2

    async def test_ra_empty_step_deleted_and_renumbered(self, store, ra_case):
        _, doc = await _apply(
            store, ra_case.id, {"intent": "DELETE", "target": "STEP", "location": {"stepIndex": 1}}
        )
        assert [(s.activity, s.order_index) for s in doc.steps] == [("Unload truck", 0)]

    async def test_hazard_delete_cascades(self, store, ra_case):
        await store.create_entity(ra_case.id, EntityType.CONTROL, ra_case.h1, None, {"description": "Barrier"})
        await store.create_entity(ra_case.id, EntityType.ACTION, ra_case.h1, None, {"description": "Install barrier"})
        _, doc = await _apply(
            store, ra_case.id, {"intent": "DELETE", "target": "HAZARD", "location": {"hazardId": str(ra_case.h1)}}
        )
        assert doc.hazards == []
        assert doc.controls == []
        assert doc.actions == []

    async def test_jha_step_delete_cascades(self, store, jha_case):
        _, doc = await _apply(
            store, jha_case.id, {"intent": "DELETE", "target": "STEP", "location": {"stepIndex": 0}}
        )
        assert doc.steps == [] and doc.hazards == [] and doc.controls == []

    async def test_incident_event_delete_cascades_to_actions(self, store, incident_case):
        await store.create_entity(
            incident_case.id, EntityType.ACTION, incident_case.cause, None, {"description": "Repair roof"}
        )
        _, doc = await _apply(
            store, incident_case.id, {"intent": "DELETE", "target": "STEP", "location": {"stepIndex": 0}}
        )
        assert doc.timeline_events == [] and doc.causes == [] and doc.actions == []


# ── Tests: ratings ──────────────────────────────────────────────────────

class TestAssessment:

    async def test_full_rating_computes_band(self, store, ra_case):
        _, doc = await _apply(
            store, ra_case.id,
            {"intent": "ADD", "target": "ASSESSMENT", "location": {"hazardId": str(ra_case.h1)},
             "data": {"severity": "B", "likelihood": "2"}},
        )
        h1 = doc.hazards[0]
        assert h1.baseline.risk_band == RiskBand.HIGH
        assert h1.residual is None

    async def test_partial_rating_is_merged(self, store, ra_case):
        _, doc = await _apply(
            store, ra_case.id,
            {"intent": "ADD", "target": "ASSESSMENT", "data": {"severity": "A"}},
        )
        assert doc.hazards[0].baseline.severity == Severity.A
        assert doc.hazards[0].baseline.risk_band is None

        _, doc = await _apply(
            store, ra_case.id,
            {"intent": "MODIFY", "target": "ASSESSMENT", "location": {"hazardId": str(ra_case.h1)},
             "data": {"likelihood": "unlikely"}},
        )
        assert doc.hazards[0].baseline.severity == Severity.A
        assert doc.hazards[0].baseline.risk_band == RiskBand.MODERATE

    async def test_residual_phase_defaults_to_residual(self, store, ra_case):
        await store.set_phase(ra_case.id, RiskAssessmentPhase.RESIDUAL_RISK.value)
        _, doc = await _apply(
            store, ra_case.id,
            {"intent": "ADD", "target": "ASSESSMENT", "data": {"severity": "D", "likelihood": "5"}},
        )
        assert doc.hazards[0].baseline is None
        assert doc.hazards[0].residual.risk_band == RiskBand.NEGLIGIBLE

    async def test_delete_clears_rating(self, store, ra_case):
        await _apply(
            store, ra_case.id,
            {"intent": "ADD", "target": "ASSESSMENT", "data": {"severity": "C", "likelihood": "3"}},
        )
        _, doc = await _apply(
            store, ra_case.id,
            {"intent": "DELETE", "target": "ASSESSMENT", "location": {"hazardId": str(ra_case.h1)},
             "data": {"assessmentType": "baseline"}},
        )
        assert doc.hazards[0].baseline is None


# ── Tests: best effort ──────────────────────────────────────────────────

class TestBestEffort:

    async def test_failure_does_not_stop_batch(self, store, ra_case):
        outcomes, doc = await _apply(
            store, ra_case.id,
            {"intent": "DELETE", "target": "HAZARD", "location": {"hazardId": "missing"}},
            {"intent": "ADD", "target": "STEP", "data": {"activity": "Sweep floor"}},
        )
        assert [o.status for o in outcomes] == [OutcomeStatus.FAILED, OutcomeStatus.APPLIED]
        assert outcomes[0].error_type == "ReferenceNotFound"
        assert len(doc.steps) == 3

    async def test_multiple_reports_child_failures(self, store, ra_case):
        outcomes, doc = await _apply(
            store, ra_case.id,
            {"intent": "ADD", "target": "MULTIPLE", "data": {"commands": [
                {"intent": "ADD", "target": "CONTROL", "location": {"hazardId": str(ra_case.h1)},
                 "data": {"description": "Speed limit", "hierarchy": "organizational"}},
                {"intent": "MODIFY", "target": "ACTION", "location": {"actionId": "missing"},
                 "data": {"owner": "Sam"}},
            ]}},
        )
        outcome = outcomes[0]
        assert outcome.status == OutcomeStatus.FAILED
        assert [c.status for c in outcome.children] == [OutcomeStatus.APPLIED, OutcomeStatus.FAILED]
        assert doc.controls[0].description == "Speed limit"

    async def test_reorder_steps(self, store, ra_case):
        _, doc = await _apply(
            store, ra_case.id,
            {"intent": "REORDER", "target": "STEP", "location": {},
             "data": {"orderedIds": [str(ra_case.s2), str(ra_case.s1)]}},
        )
        assert _ordered(doc.steps) == ["Stack pallets", "Unload truck"]

    async def test_reorder_with_missing_id_fails(self, store, ra_case):
        outcomes, doc = await _apply(
            store, ra_case.id,
            {"intent": "REORDER", "target": "STEP", "location": {},
             "data": {"orderedIds": [str(ra_case.s2)]}},
        )
        assert outcomes[0].status == OutcomeStatus.FAILED
        assert _ordered(doc.steps) == ["Unload truck", "Stack pallets"]


# ── Tests: ordering invariants ──────────────────────────────────────────

def _contiguous(items):
    return sorted(i.order_index for i in items) == list(range(len(items)))


class TestOrderIndexSequence:

    async def test_mixed_sequence_keeps_steps_contiguous(self, store, ra_case):
        _, doc = await _apply(store, ra_case.id, {"intent": "ADD", "target": "STEP", "data": {"activity": "Wrap"}})
        assert _contiguous(doc.steps)

        _, doc = await _apply(
            store, ra_case.id,
            {"intent": "INSERT", "target": "STEP", "location": {"stepIndex": 1}, "data": {"activity": "Check"}},
        )
        assert _contiguous(doc.steps)
        assert _ordered(doc.steps) == ["Unload truck", "Check", "Stack pallets", "Wrap"]

        _, doc = await _apply(
            store, ra_case.id, {"intent": "DELETE", "target": "STEP", "location": {"stepId": str(ra_case.s2)}}
        )
        assert _contiguous(doc.steps)
        assert _ordered(doc.steps) == ["Unload truck", "Check", "Wrap"]

        ids = {s.activity: str(s.id) for s in doc.steps}
        _, doc = await _apply(
            store, ra_case.id,
            {"intent": "REORDER", "target": "STEP", "location": {},
             "data": {"orderedIds": [ids["Wrap"], ids["Unload truck"], ids["Check"]]}},
        )
        assert _contiguous(doc.steps)
        assert _ordered(doc.steps) == ["Wrap", "Unload truck", "Check"]

    async def test_mixed_sequence_keeps_hazards_contiguous(self, store, ra_case):
        def on_s1(d):
            return [h for h in d.hazards if h.step_id == ra_case.s1]

        _, doc = await _apply(
            store, ra_case.id,
            {"intent": "ADD", "target": "HAZARD", "location": {"stepId": str(ra_case.s1)},
             "data": {"label": "Noise"}},
            {"intent": "INSERT", "target": "HAZARD", "location": {"insertAfter": str(ra_case.h1)},
             "data": {"label": "Slip"}},
        )
        assert _contiguous(on_s1(doc))
        assert _ordered(on_s1(doc)) == ["Struck by forklift", "Slip", "Noise"]

        _, doc = await _apply(
            store, ra_case.id, {"intent": "DELETE", "target": "HAZARD", "location": {"hazardId": str(ra_case.h1)}}
        )
        assert _contiguous(on_s1(doc))
        assert _ordered(on_s1(doc)) == ["Slip", "Noise"]
