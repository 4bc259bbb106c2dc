"""
Shared pytest fixtures for the SafeCase editor test suite.

Provides:
    - store: FlakyStore over a fresh InMemoryDatabase (function-scoped)
    - ra_case: risk assessment with steps S1, S2 and hazard H1 on S1
    - jha_case / incident_case: minimal documents of the other kinds
    - session: EditorSession opened on ra_case
"""

from types import SimpleNamespace

import pytest

from application import EditorSession
from errors import NotFoundError, StoreWriteFailure
from infrastructure import InMemoryDatabase, InMemoryDocumentStore
from model import DocumentKind, EntityType


class FlakyStore(InMemoryDocumentStore):
    """In-memory store whose calls can be made to fail on demand."""

    def __init__(self, db=None):
        super().__init__(db or InMemoryDatabase())
        self.fail_replace = False
        self.fail_get = False
        self.fail_set_phase = False
        self.replace_calls = 0

    async def replace_case(self, document):
        self.replace_calls += 1
        if self.fail_replace:
            raise StoreWriteFailure("store unavailable")
        return await super().replace_case(document)

    async def get_case(self, case_id):
        if self.fail_get:
            raise NotFoundError("store unavailable")
        return await super().get_case(case_id)

    async def set_phase(self, case_id, phase):
        if self.fail_set_phase:
            raise StoreWriteFailure("store unavailable")
        return await super().set_phase(case_id, phase)


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
async def ra_case(store):
    case = await store.create_case(DocumentKind.RISK_ASSESSMENT, "Pallet handling")
    s1 = await store.create_entity(case.id, EntityType.STEP, None, None, {"activity": "Unload truck"})
    s2 = await store.create_entity(case.id, EntityType.STEP, None, None, {"activity": "Stack pallets"})
    h1 = await store.create_entity(
        case.id, EntityType.HAZARD, s1.id, None,
        {"label": "Struck by forklift", "existing_controls": ["Marked walkways"]},
    )
    return SimpleNamespace(id=case.id, s1=s1.id, s2=s2.id, h1=h1.id)


@pytest.fixture
async def jha_case(store):
    case = await store.create_case(DocumentKind.JOB_HAZARD_ANALYSIS, "Replace light fitting")
    step = await store.create_entity(case.id, EntityType.STEP, None, None, {"activity": "Set up ladder"})
    hazard = await store.create_entity(
        case.id, EntityType.HAZARD, step.id, None, {"label": "Fall from height"}
    )
    control = await store.create_entity(
        case.id, EntityType.CONTROL, hazard.id, None, {"description": "Use a platform ladder"}
    )
    return SimpleNamespace(id=case.id, step=step.id, hazard=hazard.id, control=control.id)


@pytest.fixture
async def incident_case(store):
    case = await store.create_case(DocumentKind.INCIDENT, "Slip in loading bay")
    event = await store.create_entity(
        case.id, EntityType.TIMELINE_EVENT, None, None, {"text": "Operator slipped on wet floor"}
    )
    cause = await store.create_entity(
        case.id, EntityType.CAUSE, event.id, None,
        {"statement": "Leaking roof not reported", "is_root_cause": True},
    )
    return SimpleNamespace(id=case.id, event=event.id, cause=cause.id)


@pytest.fixture
async def session(store, ra_case):
    editor = EditorSession(store)
    await editor.open(ra_case.id)
    return editor
