"""
api.py

REST API layer for the SafeCase guided safety-assessment editor.

Framework : FastAPI
Sessions  : one EditorSession per case, held by a SessionRegistry.  Each
            session owns the cached document, the single undo slot and the
            phase gate of its case.

Structure
---------
  Routers (all prefixed under /api/v1)
  └── /cases                                   - case creation and lookup
      ├── /{case_id}/contextual-update/apply   - apply a parsed batch
      ├── /{case_id}/contextual-update/undo    - undo the last batch / slot status
      ├── /{case_id}/commands                  - apply a single command
      ├── /{case_id}/order                     - drag / keyboard reordering
      ├── /{case_id}/phases                    - phase list with completion
      ├── /{case_id}/advance-phase             - guarded move to the next phase
      └── /{case_id}/phase                     - jump to a phase

Error handling
--------------
  NotFoundError      → 404
  PhaseBlocked       → 409  (with the blocking phases)
  NothingToUndo      → 409
  RefreshFailure     → 502
  RestoreFailure     → 503  (retryable; the undo slot is kept)
  ApplicationError   → 422
  ValueError         → 422
  Unhandled          → 500 (FastAPI default)

Response envelope
-----------------
  Success  : { "data": <payload> }
  Error    : { "detail": "<message>" }

Running
-------
  uvicorn api:app --reload
"""

from __future__ import annotations

import dataclasses
import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Path, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_mcp import FastApiMCP
from loguru import logger
from pydantic import BaseModel, Field, field_validator

from application import (
    AbstractDocumentStore,
    CreateCaseCommand,
    CreateCaseUseCase,
    GetCaseUseCase,
    ListCasesUseCase,
    SessionRegistry,
    to_case_dto,
)
from commands import Location, ParsedUpdate, Target
from config import get_settings
from errors import (
    ApplicationError,
    NothingToUndo,
    NotFoundError,
    PhaseBlocked,
    RefreshFailure,
    RestoreFailure,
)
from infrastructure import InMemoryDocumentStore
from model import DocumentKind, EntityType


settings = get_settings()


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SafeCase - Guided Safety Assessment Editor API",
    version="1.0.0",
    description=(
        "Command engine behind the guided editor for risk assessments, job "
        "hazard analyses and incident investigations: contextual updates, "
        "single-level undo, reordering and phase navigation."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(PhaseBlocked)
async def phase_blocked_handler(request, exc: PhaseBlocked):
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "target": exc.target, "blocking": exc.blocking},
    )


@app.exception_handler(NothingToUndo)
async def nothing_to_undo_handler(request, exc: NothingToUndo):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(RefreshFailure)
async def refresh_failure_handler(request, exc: RefreshFailure):
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.exception_handler(RestoreFailure)
async def restore_failure_handler(request, exc: RestoreFailure):
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc), "retryable": exc.retryable},
    )


@app.exception_handler(ApplicationError)
async def application_error_handler(request, exc: ApplicationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

_store = InMemoryDocumentStore()


def get_store() -> AbstractDocumentStore:
    """Returns the in-memory Document Store (no database required)."""
    return _store


def get_sessions(store: AbstractDocumentStore = Depends(get_store)) -> SessionRegistry:
    """One registry per store; a new store (e.g. a test override) gets fresh sessions."""
    registry = getattr(app.state, "sessions", None)
    if registry is None or registry.store is not store:
        registry = SessionRegistry(store, settings.max_batch_commands)
        app.state.sessions = registry
    return registry


# ---------------------------------------------------------------------------
# Envelope helper
# ---------------------------------------------------------------------------

def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if dataclasses.is_dataclass(data):
        return {"data": dataclasses.asdict(data)}
    if isinstance(data, list):
        return {
            "data": [
                dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item
                for item in data
            ]
        }
    return {"data": data}


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

class CreateCaseRequest(BaseModel):
    kind: DocumentKind = DocumentKind.RISK_ASSESSMENT
    title: str = Field(..., min_length=1, max_length=300)

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("title must not be blank")
        return v.strip()


class ReorderRequest(BaseModel):
    target: Target
    ordered_ids: List[str] = Field(..., min_length=1)
    location: Optional[Location] = None

    @field_validator("target")
    @classmethod
    def reorderable(cls, v: Target) -> Target:
        if v in (Target.ASSESSMENT, Target.MULTIPLE):
            raise ValueError("target must be STEP, HAZARD, CONTROL or ACTION")
        return v


class JumpToPhaseRequest(BaseModel):
    phase: str = Field(..., min_length=1)


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Cases
# ---------------------------------------------------------------------------

case_router = APIRouter(prefix="/cases", tags=["Cases"])


@case_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create a new case",
    response_description="The created case, positioned at its first phase.",
)
async def create_case(
    body: CreateCaseRequest,
    store: AbstractDocumentStore = Depends(get_store),
):
    cmd = CreateCaseCommand(kind=body.kind, title=body.title)
    result = await CreateCaseUseCase().execute(cmd, store)
    return _ok(result)


@case_router.get("", summary="List all cases")
async def list_cases(store: AbstractDocumentStore = Depends(get_store)):
    result = await ListCasesUseCase().execute(store)
    return _ok(result)


@case_router.get("/{case_id}", summary="Get a case by ID")
async def get_case(
    case_id: uuid.UUID = Path(...),
    store: AbstractDocumentStore = Depends(get_store),
):
    result = await GetCaseUseCase().execute(case_id, store)
    return _ok(result)


# ---------------------------------------------------------------------------
# Contextual updates
# ---------------------------------------------------------------------------

update_router = APIRouter(prefix="/cases/{case_id}", tags=["Contextual Updates"])


@update_router.post(
    "/contextual-update/apply",
    summary="Apply a parsed contextual update (a batch of commands)",
)
async def apply_contextual_update(
    body: ParsedUpdate,
    case_id: uuid.UUID = Path(...),
    sessions: SessionRegistry = Depends(get_sessions),
):
    """
    Validates every command, snapshots the case for undo, applies the valid
    commands in order and reloads the case once.  Individual command failures
    are reported in the result; they never abort the batch.
    """
    session = await sessions.get(case_id)
    result = await session.apply_parsed_update(body)
    return _ok(result)


@update_router.post(
    "/commands",
    summary="Apply a single command",
)
async def apply_command(
    body: Dict[str, Any] = Body(..., examples=[{
        "intent": "ADD",
        "target": "STEP",
        "data": {"activity": "Unload pallets"},
        "explanation": "New step from the user's description",
    }]),
    case_id: uuid.UUID = Path(...),
    sessions: SessionRegistry = Depends(get_sessions),
):
    session = await sessions.get(case_id)
    result = await session.apply_command(body)
    return _ok(result)


@update_router.post(
    "/contextual-update/undo",
    summary="Undo the last contextual update",
)
async def undo_contextual_update(
    case_id: uuid.UUID = Path(...),
    sessions: SessionRegistry = Depends(get_sessions),
):
    """
    Restores the snapshot taken before the last batch.  If the restore fails
    the snapshot is kept and the call may be retried (503, retryable).
    """
    session = await sessions.get(case_id)
    document = await session.undo_last_batch()
    return _ok(to_case_dto(document))


@update_router.get(
    "/contextual-update/undo",
    summary="Whether an undo is available for this case",
)
async def undo_status(
    case_id: uuid.UUID = Path(...),
    sessions: SessionRegistry = Depends(get_sessions),
):
    session = await sessions.get(case_id)
    return _ok(session.undo_status())


@update_router.put(
    "/order",
    summary="Reorder a sibling group by supplying the complete ordered list of IDs",
)
async def reorder(
    body: ReorderRequest,
    case_id: uuid.UUID = Path(...),
    sessions: SessionRegistry = Depends(get_sessions),
):
    session = await sessions.get(case_id)
    outcome = await session.reorder(body.target, body.ordered_ids, body.location)
    if outcome.status != "applied":
        raise ApplicationError(outcome.error or "Reorder could not be applied.")
    return _ok(to_case_dto(session.document))


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------

phase_router = APIRouter(prefix="/cases/{case_id}", tags=["Phases"])


@phase_router.get("/phases", summary="List the phases of a case with completion state")
async def list_phases(
    case_id: uuid.UUID = Path(...),
    sessions: SessionRegistry = Depends(get_sessions),
):
    session = await sessions.get(case_id)
    return _ok(session.phase_status())


@phase_router.post(
    "/advance-phase",
    summary="Move to the next phase if the current one is complete",
)
async def advance_phase(
    case_id: uuid.UUID = Path(...),
    sessions: SessionRegistry = Depends(get_sessions),
):
    session = await sessions.get(case_id)
    return _ok(await session.advance_phase())


@phase_router.post(
    "/phase",
    summary="Jump to a phase (backwards always; forwards only past complete phases)",
)
async def jump_to_phase(
    body: JumpToPhaseRequest,
    case_id: uuid.UUID = Path(...),
    sessions: SessionRegistry = Depends(get_sessions),
):
    session = await sessions.get(case_id)
    return _ok(await session.jump_to_phase(body.phase))


# ===========================================================================
# REGISTER ROUTERS
# ===========================================================================

api_v1.include_router(case_router)
api_v1.include_router(update_router)
api_v1.include_router(phase_router)

app.include_router(api_v1)


# ===========================================================================
# HEALTH CHECK
# ===========================================================================

@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok", "environment": settings.environment}


# ---------------------------------------------------------------------------
# MCP Server - exposes all API routes as MCP tools
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
mcp = FastApiMCP(app)
mcp.mount()


# ---------------------------------------------------------------------------
# Demo data
# ---------------------------------------------------------------------------

@app.on_event("startup")
async def seed_demo_case():
    """
    Create a small risk assessment so the editor has something to open
    on a fresh process.  Skipped when SAFECASE_SEED_DEMO_CASE is false or
    the store already holds cases.
    """
    if not settings.seed_demo_case:
        return
    store = app.dependency_overrides.get(get_store, get_store)()
    if await store.list_cases():
        return
    case = await store.create_case(DocumentKind.RISK_ASSESSMENT, "Warehouse pallet handling")
    step = await store.create_entity(
        case.id, EntityType.STEP, None, None,
        {"activity": "Unload pallets from truck", "equipment": ["Forklift"]},
    )
    await store.create_entity(
        case.id, EntityType.HAZARD, step.id, None,
        {"label": "Struck by forklift", "existing_controls": ["Marked pedestrian walkways"]},
    )
    logger.bind(case_id=str(case.id)).info("Seeded demo case")


# ===========================================================================
# OPENAPI CUSTOMISATION - tag order and descriptions
# ===========================================================================

tags_metadata = [
    {
        "name": "Health",
        "description": "Liveness probe.",
    },
    {
        "name": "Cases",
        "description": (
            "Risk assessments, job hazard analyses and incident investigations.  "
            "A new case starts at the first phase of its kind."
        ),
    },
    {
        "name": "Contextual Updates",
        "description": (
            "Apply batches of structured edit commands produced from the user's "
            "free-text input, undo the last batch, and reorder items.  Batches are "
            "best-effort: failures are reported per command."
        ),
    },
    {
        "name": "Phases",
        "description": (
            "Ordered workflow phases.  Moving backwards is always allowed; moving "
            "forwards requires every phase in between to be complete."
        ),
    },
]

app.openapi_tags = tags_metadata
