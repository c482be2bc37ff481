"""
api.py

REST API layer for the CAPEX Project Structure Service.

Framework : FastAPI
Auth      : none at this layer; the storage backend carries its own
            credentials (see sharepoint.py).

Structure
---------
  Routers (all prefixed under /api/v1)
  └── /projects                       — paged listing, create
      ├── /commit                     — commit a new project with its structure
      └── /{project_id}               — read, edit, delete (drafts only)
          ├── /timeline               — milestones + activities
          ├── /draft                  — editable draft (temporary ids)
          ├── /approval-rules         — readiness checklist
          ├── /commit                 — re-commit structure of an existing project
          ├── /send-to-approval       — Rascunho → Em Aprovação
          └── /back-to-draft          — Em Aprovação / Reprovado → Rascunho

Error handling
--------------
  ValidationError          → 422
  WorkflowError            → 409
  CommitInProgressError    → 409
  NotFoundError            → 404
  RepositoryError          → 502
  CommitStructureError     → 502  (body carries journal, rollback, report)
  InternalConsistencyError → 500
  ApplicationError         → 422
  ValueError               → 422

Response envelope
-----------------
  Success  : { "data": <payload> }
  Error    : { "detail": "<message>" }

Running
-------
  uvicorn main:app --reload
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Path, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, Field, field_validator

from application import (
    # Exceptions
    ApplicationError,
    CommitInProgressError,
    InternalConsistencyError,
    NotFoundError,
    RepositoryError,
    ValidationError,
    WorkflowError,
    format_commit_error,
    # Port
    AbstractRepositories,
    PageQuery,
)
from commit import CommitStructureError
from draft import DraftState, new_temp_id
from infrastructure import InMemoryRepositories
from model import ActivityDraft, MilestoneDraft, PepDraft, Project

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

app = FastAPI(
    title="CAPEX Project Structure API",
    version="1.0.0",
    description=(
        "REST API for capital-expenditure projects: structured commit of "
        "milestones, activities and PEPs with compensating rollback, "
        "approval readiness rules and the approval workflow."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(ValidationError)
async def validation_handler(request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(WorkflowError)
async def workflow_handler(request, exc: WorkflowError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(CommitInProgressError)
async def commit_in_progress_handler(request, exc: CommitInProgressError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(RepositoryError)
async def repository_handler(request, exc: RepositoryError):
    logger.error("Repository call failed: %s", exc)
    return JSONResponse(
        status_code=502, content={"detail": exc.message, "upstream_status": exc.status}
    )


@app.exception_handler(CommitStructureError)
async def commit_structure_handler(request, exc: CommitStructureError):
    content = exc.to_dict()
    content["report"] = format_commit_error(exc)
    return JSONResponse(status_code=502, content=content)


@app.exception_handler(InternalConsistencyError)
async def internal_consistency_handler(request, exc: InternalConsistencyError):
    return JSONResponse(status_code=500, content={"detail": str(exc)})


@app.exception_handler(ApplicationError)
async def application_error_handler(request, exc: ApplicationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_repositories() -> AbstractRepositories:
    """Returns the in-memory repositories; main.py overrides this per backend."""
    return InMemoryRepositories()


# ---------------------------------------------------------------------------
# Envelope helper
# ---------------------------------------------------------------------------

def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if dataclasses.is_dataclass(data):
        return {"data": dataclasses.asdict(data)}
    if isinstance(data, list):
        return {
            "data": [dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item for item in data]
        }
    return {"data": data}


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

class ProjectFields(BaseModel):
    """Editable project attributes.  Status is owned by the workflow endpoints."""
    title: str = Field(..., max_length=255)
    budget_brl: Optional[float] = Field(default=None, ge=0)
    approval_year: Optional[int] = None
    funding_source: Optional[str] = None
    source_project_code: Optional[str] = None
    company: Optional[str] = None
    center: Optional[str] = None
    unit: Optional[str] = None
    location: Optional[str] = None
    depreciation_cost_center: Optional[str] = None
    category: Optional[str] = None
    investment_type: Optional[str] = None
    asset_type: Optional[str] = None
    project_function: Optional[str] = None
    project_leader: Optional[str] = None
    project_user: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    business_need: Optional[str] = None
    proposed_solution: Optional[str] = None
    kpi_type: Optional[str] = None
    kpi_name: Optional[str] = None
    kpi_description: Optional[str] = None
    kpi_current: Optional[str] = None
    kpi_expected: Optional[str] = None
    roce_gain: Optional[float] = None
    roce_gain_description: Optional[str] = None
    roce_loss: Optional[float] = None
    roce_loss_description: Optional[str] = None
    roce_classification: Optional[str] = None

    def to_project(self, project_id: Optional[int] = None) -> Project:
        return Project(id=project_id, **self.model_dump())


class MilestoneIn(BaseModel):
    temp_id: str = Field(..., min_length=1)
    title: str


class ActivityIn(BaseModel):
    temp_id: str = Field(..., min_length=1)
    title: str
    milestone_temp_id: str
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    supplier: Optional[str] = None
    activity_description: Optional[str] = None
    amount_brl: Optional[int] = Field(default=None, ge=0)
    pep_element: Optional[str] = None


class PepIn(BaseModel):
    temp_id: Optional[str] = None
    title: str
    year: int
    amount_brl: float
    activity_temp_id: Optional[str] = None


class CommitDraftRequest(BaseModel):
    project: ProjectFields
    milestones: List[MilestoneIn] = Field(default_factory=list)
    activities: List[ActivityIn] = Field(default_factory=list)
    peps: List[PepIn] = Field(default_factory=list)
    send_to_approval: bool = True
    draft_key: Optional[str] = Field(
        default=None,
        description="Client-side draft identifier; concurrent commits of the same key are refused.",
    )

    def to_state(self, project_id: Optional[int] = None) -> DraftState:
        return DraftState(
            project=self.project.to_project(project_id),
            milestones=[MilestoneDraft(**m.model_dump()) for m in self.milestones],
            activities=[ActivityDraft(**a.model_dump()) for a in self.activities],
            peps=[
                PepDraft(
                    temp_id=p.temp_id or new_temp_id("pp"),
                    title=p.title,
                    year=p.year,
                    amount_brl=p.amount_brl,
                    activity_temp_id=p.activity_temp_id,
                )
                for p in self.peps
            ],
        )


_SORT_FIELDS = ("id", "title", "approval_year")


class ListProjectsParams(BaseModel):
    search_title: Optional[str] = None
    status: Optional[str] = None
    unit: Optional[str] = None
    sort_by: str = "id"
    sort_dir: str = "desc"
    page_size: int = Field(default=20, ge=1, le=500)
    page_token: Optional[str] = None

    @field_validator("sort_by")
    @classmethod
    def validate_sort_by(cls, v: str) -> str:
        if v not in _SORT_FIELDS:
            raise ValueError(f"sort_by must be one of: {list(_SORT_FIELDS)}")
        return v

    @field_validator("sort_dir")
    @classmethod
    def validate_sort_dir(cls, v: str) -> str:
        if v not in ("asc", "desc"):
            raise ValueError("sort_dir must be 'asc' or 'desc'")
        return v


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")

project_router = APIRouter(prefix="/projects", tags=["Projects"])
structure_router = APIRouter(prefix="/projects", tags=["Structure"])
workflow_router = APIRouter(prefix="/projects", tags=["Workflow"])


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

@project_router.get("", summary="List projects, one page at a time")
async def list_projects(
    search_title: Optional[str] = Query(default=None, description="Case-insensitive title prefix."),
    status_: Optional[str] = Query(default=None, alias="status"),
    unit: Optional[str] = Query(default=None),
    sort_by: str = Query(default="id"),
    sort_dir: str = Query(default="desc"),
    page_size: int = Query(default=20),
    page_token: Optional[str] = Query(default=None),
    repos: AbstractRepositories = Depends(get_repositories),
):
    """
    Returns `{items, next_page_token}`.  Pass `next_page_token` back as
    `page_token` to read the following page; it is None on the last page.
    """
    from application import ListProjectsPageUseCase
    params = ListProjectsParams(
        search_title=search_title,
        status=status_,
        unit=unit,
        sort_by=sort_by,
        sort_dir=sort_dir,
        page_size=page_size,
        page_token=page_token,
    )
    query = PageQuery(
        filters={"search_title": params.search_title, "status": params.status, "unit": params.unit},
        sort_by=params.sort_by,
        sort_dir=params.sort_dir,
        page_size=params.page_size,
        page_token=params.page_token,
    )
    result = await ListProjectsPageUseCase().execute(query, repos)
    return _ok(result)


@project_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create a project record without structure",
)
async def create_project(
    body: ProjectFields,
    repos: AbstractRepositories = Depends(get_repositories),
):
    from application import CreateProjectUseCase, GetProjectUseCase
    project_id = await CreateProjectUseCase().execute(body.to_project(), repos)
    result = await GetProjectUseCase().execute(project_id, repos)
    return _ok(result)


@project_router.get("/{project_id}", summary="Get a project by ID")
async def get_project(
    project_id: int = Path(..., ge=1),
    repos: AbstractRepositories = Depends(get_repositories),
):
    from application import GetProjectUseCase
    result = await GetProjectUseCase().execute(project_id, repos)
    return _ok(result)


@project_router.put("/{project_id}", summary="Edit project attributes")
async def edit_project(
    body: ProjectFields,
    project_id: int = Path(..., ge=1),
    repos: AbstractRepositories = Depends(get_repositories),
):
    """Refused while the project is in approval or approved."""
    from application import EditProjectUseCase
    result = await EditProjectUseCase().execute(project_id, body.to_project(project_id), repos)
    return _ok(result)


@project_router.delete(
    "/{project_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a draft project and its structure",
)
async def delete_project(
    project_id: int = Path(..., ge=1),
    repos: AbstractRepositories = Depends(get_repositories),
):
    from application import DeleteDraftProjectUseCase
    await DeleteDraftProjectUseCase().execute(project_id, repos)


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------

@structure_router.post(
    "/commit",
    status_code=status.HTTP_201_CREATED,
    summary="Commit a new project with its milestones, activities and PEPs",
)
async def commit_new_project(
    body: CommitDraftRequest,
    repos: AbstractRepositories = Depends(get_repositories),
):
    """
    Validates the draft, persists it and (by default) sends the project to
    approval.  A failed write rolls back everything created by the call;
    the 502 body lists what was created and which deletes failed.
    """
    from application import CommitProjectCommand, CommitProjectUseCase
    cmd = CommitProjectCommand(
        state=body.to_state(),
        send_to_approval=body.send_to_approval,
        draft_key=body.draft_key,
    )
    result = await CommitProjectUseCase().execute(cmd, repos)
    return _ok(result)


@structure_router.post(
    "/{project_id}/commit",
    summary="Commit structure for an existing project",
)
async def commit_existing_project(
    body: CommitDraftRequest,
    project_id: int = Path(..., ge=1),
    repos: AbstractRepositories = Depends(get_repositories),
):
    """
    Updates the project attributes and creates the submitted structure.
    The project itself is never deleted by a rollback here.

    Structure is only ever added: milestones, activities and PEPs already
    stored for the project are kept, so re-submitting a draft loaded from
    `/draft` stores a second copy of them.  Delete the old rows first when
    a replacement is intended.
    """
    from application import CommitProjectCommand, CommitProjectUseCase
    cmd = CommitProjectCommand(
        state=body.to_state(project_id),
        project_id=project_id,
        send_to_approval=body.send_to_approval,
        draft_key=body.draft_key,
    )
    result = await CommitProjectUseCase().execute(cmd, repos)
    return _ok(result)


@structure_router.get("/{project_id}/timeline", summary="Milestones and activities of a project")
async def get_timeline(
    project_id: int = Path(..., ge=1),
    repos: AbstractRepositories = Depends(get_repositories),
):
    from application import LoadProjectTimelineUseCase
    result = await LoadProjectTimelineUseCase().execute(project_id, repos)
    return _ok(result)


@structure_router.get("/{project_id}/draft", summary="Load a project as an editable draft")
async def get_draft(
    project_id: int = Path(..., ge=1),
    repos: AbstractRepositories = Depends(get_repositories),
):
    from application import LoadDraftStateUseCase, draft_state_dto
    state = await LoadDraftStateUseCase().execute(project_id, repos)
    return _ok(draft_state_dto(state))


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------

@workflow_router.get(
    "/{project_id}/approval-rules",
    summary="Evaluate whether a project is ready for approval",
)
async def get_approval_rules(
    project_id: int = Path(..., ge=1),
    repos: AbstractRepositories = Depends(get_repositories),
):
    from application import EvaluateApprovalRulesUseCase
    result = await EvaluateApprovalRulesUseCase().execute(project_id, repos)
    return _ok(result)


@workflow_router.post("/{project_id}/send-to-approval", summary="Send a draft project to approval")
async def send_to_approval(
    project_id: int = Path(..., ge=1),
    repos: AbstractRepositories = Depends(get_repositories),
):
    from application import SendToApprovalUseCase
    result = await SendToApprovalUseCase().execute(project_id, repos)
    return _ok(result)


@workflow_router.post("/{project_id}/back-to-draft", summary="Return a project to draft")
async def back_to_draft(
    project_id: int = Path(..., ge=1),
    repos: AbstractRepositories = Depends(get_repositories),
):
    """Approved projects never go back to draft."""
    from application import BackToDraftUseCase
    result = await BackToDraftUseCase().execute(project_id, repos)
    return _ok(result)


# ---------------------------------------------------------------------------
# Register all routers
# ---------------------------------------------------------------------------

api_v1.include_router(structure_router)
api_v1.include_router(project_router)
api_v1.include_router(workflow_router)

app.include_router(api_v1)

# ---------------------------------------------------------------------------
# MCP server: every route above is also an MCP tool
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
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
        "name": "Projects",
        "description": (
            "Project records: paged listing with title/status/unit filters, "
            "attribute edits and deletion of drafts."
        ),
    },
    {
        "name": "Structure",
        "description": (
            "Milestones, activities and PEPs.  Commits are all-or-nothing from the "
            "caller's point of view: a failed write triggers compensating deletes "
            "and the response reports anything that could not be removed."
        ),
    },
    {
        "name": "Workflow",
        "description": (
            "Approval readiness checklist and status transitions "
            "(Rascunho → Em Aprovação → Aprovado / Reprovado)."
        ),
    },
]

app.openapi_tags = tags_metadata
