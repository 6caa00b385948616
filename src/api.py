"""
api.py

REST API layer for the project draft & allocation ledger.

Framework : FastAPI
Auth      : out of scope.  Every request acts as SYSTEM_USER_ID; drafts are
            owned by that user.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /drafts                        — saved, unfinished projects
  │   └── /completion                — phase completion of unsaved content
  ├── /projects                      — submission, listing, real/submitted view
  │   ├── /allocation-totals         — real vs submitted totals per project
  │   └── /{project_id}/validation   — approve / reject a pending project
  └── /users/{user_id}/allocations   — allocation ledger feed and edits

Error handling
--------------
  NotFoundError      → 404
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
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Path, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, Field, field_validator

from infrastructure import InMemoryUnitOfWork
from application import (
    # Exceptions
    ApplicationError,
    NotFoundError,
    # Use-case commands
    AllocationEdit,
    DeleteDraftCommand,
    SaveAllocationsCommand,
    SaveDraftCommand,
    SubmitProjectCommand,
    UpdateDraftCommand,
    ValidateProjectCommand,
    # Use-case classes
    DeleteDraftUseCase,
    EvaluateDraftUseCase,
    GetAllocationsUseCase,
    GetDraftUseCase,
    GetProjectAllocationTotalsUseCase,
    GetProjectViewUseCase,
    ListDraftsUseCase,
    ListProjectsUseCase,
    SaveAllocationsUseCase,
    SaveDraftUseCase,
    SubmitProjectUseCase,
    UpdateDraftUseCase,
    ValidateProjectUseCase,
    AbstractUnitOfWork,
)
from coercion import is_acceptable_occupancy_text
from config import get_config
from model import AllocationView, ProjectState

logger = logging.getLogger(__name__)

# User every request acts as while authentication is out of scope
SYSTEM_USER_ID = "00000000-0000-0000-0000-000000000001"


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

_config = get_config()

app = FastAPI(
    title=_config.api_title,
    version="1.0.0",
    description=(
        "REST API for project drafts, submission and approval, and the monthly "
        "resource-allocation ledger comparing real and submitted occupancy."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_config.cors_origins,
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


@app.exception_handler(ApplicationError)
async def application_error_handler(request, exc: ApplicationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_uow() -> AbstractUnitOfWork:
    """Returns the in-memory Unit of Work (no database required)."""
    return InMemoryUnitOfWork()


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

# ---------------------------------------------------------------------------
# Draft schemas
# ---------------------------------------------------------------------------

class SaveDraftRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    content: Dict[str, Any] = Field(..., description="Draft content as produced by DraftSerializer.")


class DraftContentRequest(BaseModel):
    content: Dict[str, Any]


# ---------------------------------------------------------------------------
# Project schemas
# ---------------------------------------------------------------------------

class SubmitProjectRequest(BaseModel):
    payload: Dict[str, Any] = Field(..., description="Submission payload of a finished draft.")
    draft_id: Optional[str] = Field(
        default=None, description="Draft to delete once the project is stored."
    )


class ValidateProjectRequest(BaseModel):
    approve: bool = Field(..., description="true approves, false rejects and deletes.")


# ---------------------------------------------------------------------------
# Allocation schemas
# ---------------------------------------------------------------------------

class AllocationEditRequest(BaseModel):
    workpackage_id: str = Field(..., min_length=1)
    month: int = Field(..., ge=1, le=12)
    value: str = Field(..., description='Cell text: "", "0", "1", "0," or "0,d" / "0,dd".')

    @field_validator("value")
    @classmethod
    def validate_value(cls, v: str) -> str:
        if not is_acceptable_occupancy_text(v):
            raise ValueError('value must be "", "0", "1" or "0," followed by up to two digits')
        return v


class SaveAllocationsRequest(BaseModel):
    year: int = Field(..., ge=1900, le=9999)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    edits: List[AllocationEditRequest] = Field(..., min_length=1)


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Drafts
# ---------------------------------------------------------------------------

draft_router = APIRouter(prefix="/drafts", tags=["Drafts"])


@draft_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Save a new draft",
)
def save_draft(
    body: SaveDraftRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = SaveDraftCommand(owner_id=SYSTEM_USER_ID, title=body.title, content=body.content)
    return _ok(SaveDraftUseCase().execute(cmd, uow))


@draft_router.get(
    "",
    summary="List my drafts, newest first",
)
def list_drafts(
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListDraftsUseCase().execute(SYSTEM_USER_ID, uow))


@draft_router.post(
    "/completion",
    summary="Phase completion flags for draft content",
)
def evaluate_draft(body: DraftContentRequest):
    """Nothing is stored; used to gate the submit button."""
    return _ok(EvaluateDraftUseCase().execute(body.content))


@draft_router.get(
    "/{draft_id}",
    summary="Get a draft by ID",
)
def get_draft(
    draft_id: str = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetDraftUseCase().execute(draft_id, SYSTEM_USER_ID, uow))


@draft_router.put(
    "/{draft_id}",
    summary="Replace the title and content of a draft",
)
def update_draft(
    body: SaveDraftRequest,
    draft_id: str = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = UpdateDraftCommand(
        draft_id=draft_id,
        owner_id=SYSTEM_USER_ID,
        title=body.title,
        content=body.content,
    )
    return _ok(UpdateDraftUseCase().execute(cmd, uow))


@draft_router.delete(
    "/{draft_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a draft",
)
def delete_draft(
    draft_id: str = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    DeleteDraftUseCase().execute(DeleteDraftCommand(draft_id=draft_id, owner_id=SYSTEM_USER_ID), uow)


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

project_router = APIRouter(prefix="/projects", tags=["Projects"])


@project_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Submit a finished project for approval",
)
def submit_project(
    body: SubmitProjectRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Incomplete projects are refused with 422.  The stored project is PENDING
    until it is validated.
    """
    cmd = SubmitProjectCommand(
        owner_id=SYSTEM_USER_ID,
        payload=body.payload,
        draft_id=body.draft_id,
    )
    return _ok(SubmitProjectUseCase().execute(cmd, uow))


@project_router.get(
    "",
    summary="List projects",
)
def list_projects(
    state: Optional[ProjectState] = Query(default=None),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListProjectsUseCase().execute(uow, state=state))


@project_router.get(
    "/allocation-totals",
    summary="Real vs submitted occupancy totals per project",
)
def get_allocation_totals(
    year: Optional[int] = Query(default=None, ge=1900, le=9999),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetProjectAllocationTotalsUseCase().execute(uow, year=year))


@project_router.get(
    "/{project_id}",
    summary="Get a project in its real or submitted view",
)
def get_project(
    project_id: str = Path(...),
    mode: AllocationView = Query(default=AllocationView.REAL),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    `submitted` shows the structure captured at approval time.  Projects
    without an approval snapshot are always returned as their real view.
    """
    return _ok(GetProjectViewUseCase().execute(project_id, uow, mode=mode))


@project_router.post(
    "/{project_id}/validation",
    summary="Approve or reject a pending project",
)
def validate_project(
    body: ValidateProjectRequest,
    project_id: str = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = ValidateProjectCommand(project_id=project_id, approve=body.approve)
    return _ok(ValidateProjectUseCase().execute(cmd, uow))


# ---------------------------------------------------------------------------
# Allocations
# ---------------------------------------------------------------------------

allocation_router = APIRouter(
    prefix="/users/{user_id}/allocations",
    tags=["Allocations"],
)


@allocation_router.get(
    "",
    summary="Real, submitted and pending allocation feeds of a user",
)
def get_allocations(
    user_id: str = Path(...),
    year: Optional[int] = Query(default=None, ge=1900, le=9999),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetAllocationsUseCase().execute(user_id, uow, year=year))


@allocation_router.put(
    "",
    summary="Save edited occupancy cells",
)
def save_allocations(
    body: SaveAllocationsRequest,
    user_id: str = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """Returns the refreshed feed.  Unbalanced months are refused with 422."""
    cmd = SaveAllocationsCommand(
        user_id=user_id,
        year=body.year,
        month=body.month,
        edits=[
            AllocationEdit(workpackage_id=e.workpackage_id, month=e.month, value=e.value)
            for e in body.edits
        ],
    )
    return _ok(SaveAllocationsUseCase().execute(cmd, uow))


# ---------------------------------------------------------------------------
# Register all routers
# ---------------------------------------------------------------------------

api_v1.include_router(draft_router)
api_v1.include_router(project_router)
api_v1.include_router(allocation_router)

app.include_router(api_v1)

# ---------------------------------------------------------------------------
# MCP Server: exposes all API routes as MCP tools
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
if _config.mcp_enabled:
    mcp = FastApiMCP(app)
    mcp.mount()


# ===========================================================================
# HEALTH CHECK
# ===========================================================================

@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok"}


# ===========================================================================
# OPENAPI CUSTOMISATION: tag order and descriptions
# ===========================================================================

tags_metadata = [
    {
        "name": "Health",
        "description": "Liveness probe.",
    },
    {
        "name": "Drafts",
        "description": (
            "Saved, unfinished projects.  Content is the JSON form of the draft "
            "aggregate and may be restored into an editing session at any time."
        ),
    },
    {
        "name": "Projects",
        "description": (
            "Submission of finished drafts, approval or rejection, and the real or "
            "submitted (approved snapshot) view of each project."
        ),
    },
    {
        "name": "Allocations",
        "description": (
            "Monthly occupancy ledger of one person: real allocations next to the "
            "ones recorded at approval, with editable real cells."
        ),
    },
]

app.openapi_tags = tags_metadata
