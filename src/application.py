"""
application.py

Application layer for the CAPEX Project Structure Service.

Overview
--------
The application layer sits between the presentation layer (API) and the
domain / service layer.  It is responsible for:

  1. Defining the error taxonomy surfaced to callers.
  2. Defining output DTOs (dataclasses) that carry only the data the
     presentation layer needs.
  3. Declaring the asynchronous Repository Port: one abstract repository
     per entity kind, bundled by AbstractRepositories.  Implementations
     live in infrastructure.py (in-memory) and sharepoint.py (REST lists).
  4. Implementing Use Case handlers, one class per user-facing operation.

Structure
---------
Errors
    ApplicationError, NotFoundError, WorkflowError, RepositoryError,
    InternalConsistencyError, CommitInProgressError (+ ValidationError
    from service.py; CommitStructureError lives in commit.py)

DTOs
    ProjectDTO, MilestoneDTO, ActivityDTO, PepDTO, ProjectPageDTO,
    TimelineDTO, DraftStateDTO, RuleResultDTO, ApprovalRulesDTO,
    TransitionDTO, CommitResultDTO

Repository Port
    PageQuery, Page
    AbstractProjectRepository, AbstractMilestoneRepository,
    AbstractActivityRepository, AbstractPepRepository
    AbstractRepositories

Use Cases
    GetProjectUseCase, ListProjectsPageUseCase, CreateProjectUseCase,
    EditProjectUseCase, LoadProjectTimelineUseCase, LoadDraftStateUseCase,
    EvaluateApprovalRulesUseCase, SendToApprovalUseCase,
    BackToDraftUseCase, DeleteDraftProjectUseCase, CommitProjectUseCase

Design notes
------------
- The backend has no multi-record transactions.  Every repository call
  commits or fails on its own; multi-entity writes go through the
  compensating commit orchestrator in commit.py.
- Repository failures surface as RepositoryError(status, message) and are
  never retried here.
- All dates flowing out are ISO-8601 strings for easy JSON serialisation.
"""

from __future__ import annotations

import abc
import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, ClassVar, Dict, List, Optional, Set

from draft import DraftState
from model import (
    Activity,
    Milestone,
    Pep,
    Project,
    ProjectStatus,
    RuleResult,
)
from service import (
    ValidationError,
    can_back_to_draft,
    can_delete_project,
    can_send_to_approval,
    evaluate_approval_rules,
    is_locked_status,
    normalize_project_for_commit,
    requires_structure,
    summarize_rule_results,
    validate_project_basics,
    validate_structure,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist."""


class WorkflowError(ApplicationError):
    """Raised when a status transition is not allowed from the current status."""


class RepositoryError(ApplicationError):
    """A single create/update/delete/read call against the backend failed."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message

    def __str__(self) -> str:
        return f"{self.message} (status {self.status})"


class InternalConsistencyError(ApplicationError):
    """A reference could not be resolved mid-commit; validation should have caught it."""


class CommitInProgressError(ApplicationError):
    """Raised when the same draft is already being committed."""


@dataclass
class AppError:
    user_message: str
    technical_details: Optional[str] = None


def normalize_error(error: Any, fallback_message: str) -> AppError:
    """Turn any raised value into a user message plus optional technical detail."""
    if isinstance(error, BaseException):
        return AppError(user_message=fallback_message, technical_details=str(error) or None)
    if isinstance(error, str) and error.strip():
        return AppError(user_message=fallback_message, technical_details=error)
    return AppError(user_message=fallback_message)


def format_commit_error(error: Any) -> str:
    """
    Multi-line report of a failed commit: the failure, the rollback status
    (failures/attempts) and one line per compensating delete that failed.
    """
    rollback = error.rollback
    if not rollback.failures:
        details = "Nenhuma falha durante rollback."
    else:
        details = "\n".join(
            f"- {issue.entity} #{issue.id}: {issue.reason}" for issue in rollback.failures
        )
    cause = error.cause
    return "\n".join(
        [
            str(error),
            f"Falha principal: {cause if cause is not None else 'Erro desconhecido'}",
            f"Rollback: {rollback.status} ({len(rollback.failures)}/{rollback.attempts} falhas).",
            details,
        ]
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


def project_patch(project: Project, include_status: bool = False) -> Dict[str, Any]:
    """Field dict of a project for update(); never carries the id."""
    patch = dataclasses.asdict(project)
    patch.pop("id", None)
    if not include_status:
        patch.pop("status", None)
    return patch


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

@dataclass
class ProjectDTO:
    id: Optional[int]
    title: str
    budget_brl: Optional[int]
    status: str
    locked: bool
    approval_year: Optional[int]
    investment_level: Optional[str]
    funding_source: Optional[str]
    source_project_code: Optional[str]
    company: Optional[str]
    center: Optional[str]
    unit: Optional[str]
    location: Optional[str]
    depreciation_cost_center: Optional[str]
    category: Optional[str]
    investment_type: Optional[str]
    asset_type: Optional[str]
    project_function: Optional[str]
    project_leader: Optional[str]
    project_user: Optional[str]
    start_date: Optional[str]
    end_date: Optional[str]
    business_need: Optional[str]
    proposed_solution: Optional[str]
    kpi_type: Optional[str]
    kpi_name: Optional[str]
    kpi_description: Optional[str]
    kpi_current: Optional[str]
    kpi_expected: Optional[str]
    roce_gain: Optional[float]
    roce_gain_description: Optional[str]
    roce_loss: Optional[float]
    roce_loss_description: Optional[str]
    roce_classification: Optional[str]


@dataclass
class MilestoneDTO:
    id: int
    project_id: Optional[int]
    title: str


@dataclass
class ActivityDTO:
    id: int
    project_id: Optional[int]
    milestone_id: Optional[int]
    title: str
    start_date: Optional[str]
    end_date: Optional[str]
    supplier: Optional[str]
    activity_description: Optional[str]


@dataclass
class PepDTO:
    id: int
    project_id: Optional[int]
    activity_id: Optional[int]
    title: str
    year: Optional[int]
    amount_brl: Optional[int]


@dataclass
class ProjectPageDTO:
    items: List[ProjectDTO]
    next_page_token: Optional[str]


@dataclass
class TimelineDTO:
    project_id: int
    milestones: List[MilestoneDTO]
    activities: List[ActivityDTO]


@dataclass
class DraftStateDTO:
    """A hydrated draft, as the editing UI would load it."""
    project: ProjectDTO
    needs_structure: bool
    milestones: List[Dict[str, Any]]
    activities: List[Dict[str, Any]]
    peps: List[Dict[str, Any]]


@dataclass
class RuleResultDTO:
    id: str
    label: str
    level: str
    message: Optional[str]


@dataclass
class ApprovalRulesDTO:
    project_id: int
    ok: bool
    results: List[RuleResultDTO]
    errors: List[RuleResultDTO]
    warns: List[RuleResultDTO]


@dataclass
class TransitionDTO:
    project_id: int
    new_status: str


@dataclass
class CommitResultDTO:
    project_id: int
    status: str
    journal: Dict[str, Any]


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def project(p: Project) -> ProjectDTO:
        data = dataclasses.asdict(p)
        data["start_date"] = _fmt_date(p.start_date)
        data["end_date"] = _fmt_date(p.end_date)
        return ProjectDTO(locked=is_locked_status(p.status), **data)

    @staticmethod
    def milestone(m: Milestone) -> MilestoneDTO:
        return MilestoneDTO(id=m.id, project_id=m.project_id, title=m.title)

    @staticmethod
    def activity(a: Activity) -> ActivityDTO:
        return ActivityDTO(
            id=a.id,
            project_id=a.project_id,
            milestone_id=a.milestone_id,
            title=a.title,
            start_date=_fmt_date(a.start_date),
            end_date=_fmt_date(a.end_date),
            supplier=a.supplier,
            activity_description=a.activity_description,
        )

    @staticmethod
    def pep(p: Pep) -> PepDTO:
        return PepDTO(
            id=p.id,
            project_id=p.project_id,
            activity_id=p.activity_id,
            title=p.title,
            year=p.year,
            amount_brl=p.amount_brl,
        )

    @staticmethod
    def draft(state: DraftState) -> DraftStateDTO:
        def row(obj) -> Dict[str, Any]:
            data = dataclasses.asdict(obj)
            for key in ("start_date", "end_date"):
                if key in data:
                    data[key] = _fmt_date(data[key])
            return data

        return DraftStateDTO(
            project=_Assembler.project(state.project),
            needs_structure=state.needs_structure,
            milestones=[row(m) for m in state.milestones],
            activities=[row(a) for a in state.activities],
            peps=[row(p) for p in state.peps],
        )

    @staticmethod
    def rule(r: RuleResult) -> RuleResultDTO:
        return RuleResultDTO(id=r.id, label=r.label, level=r.level.value, message=r.message)


# ===========================================================================
# REPOSITORY PORT
# ===========================================================================

@dataclass
class PageQuery:
    """
    A cursor-paged read.

    `filters` keys understood by project repositories: search_title
    (case-insensitive prefix), status, unit.  Child repositories accept
    project_id, milestone_id, activity_id.  Results are ordered by
    `sort_by` with the id as tie-breaker.
    """
    filters: Dict[str, Any] = field(default_factory=dict)
    sort_by: str = "id"
    sort_dir: str = "desc"
    page_size: int = 20
    page_token: Optional[str] = None


@dataclass
class Page:
    items: List[Any]
    next_page_token: Optional[str] = None


class AbstractProjectRepository(abc.ABC):
    @abc.abstractmethod
    async def create(self, project: Project) -> int: ...
    @abc.abstractmethod
    async def update(self, project_id: int, patch: Dict[str, Any]) -> None: ...
    @abc.abstractmethod
    async def delete(self, project_id: int) -> None: ...
    @abc.abstractmethod
    async def get_by_id(self, project_id: int) -> Optional[Project]: ...
    @abc.abstractmethod
    async def get_page(self, query: PageQuery) -> Page: ...


class AbstractMilestoneRepository(abc.ABC):
    @abc.abstractmethod
    async def create(self, milestone: Milestone) -> int: ...
    @abc.abstractmethod
    async def update(self, milestone_id: int, patch: Dict[str, Any]) -> None: ...
    @abc.abstractmethod
    async def delete(self, milestone_id: int) -> None: ...
    @abc.abstractmethod
    async def get_by_id(self, milestone_id: int) -> Optional[Milestone]: ...
    @abc.abstractmethod
    async def get_by_parent(self, project_id: int) -> List[Milestone]: ...
    @abc.abstractmethod
    async def get_page(self, query: PageQuery) -> Page: ...


class AbstractActivityRepository(abc.ABC):
    @abc.abstractmethod
    async def create(self, activity: Activity) -> int: ...
    @abc.abstractmethod
    async def update(self, activity_id: int, patch: Dict[str, Any]) -> None: ...
    @abc.abstractmethod
    async def delete(self, activity_id: int) -> None: ...
    @abc.abstractmethod
    async def get_by_id(self, activity_id: int) -> Optional[Activity]: ...
    @abc.abstractmethod
    async def get_by_parent(self, milestone_id: int) -> List[Activity]: ...
    @abc.abstractmethod
    async def list_for_project(self, project_id: int) -> List[Activity]: ...
    @abc.abstractmethod
    async def get_page(self, query: PageQuery) -> Page: ...


class AbstractPepRepository(abc.ABC):
    @abc.abstractmethod
    async def create(self, pep: Pep) -> int: ...
    @abc.abstractmethod
    async def update(self, pep_id: int, patch: Dict[str, Any]) -> None: ...
    @abc.abstractmethod
    async def delete(self, pep_id: int) -> None: ...
    @abc.abstractmethod
    async def get_by_id(self, pep_id: int) -> Optional[Pep]: ...
    @abc.abstractmethod
    async def get_by_parent(self, activity_id: int) -> List[Pep]: ...
    @abc.abstractmethod
    async def list_for_project(
        self, project_id: int, activity_ids: Optional[List[int]] = None
    ) -> List[Pep]: ...
    @abc.abstractmethod
    async def get_page(self, query: PageQuery) -> Page: ...


class AbstractRepositories(abc.ABC):
    """
    Groups the four list repositories.  Unlike a unit of work there is no
    commit/rollback: the backend commits every call independently.
    """
    projects: AbstractProjectRepository
    milestones: AbstractMilestoneRepository
    activities: AbstractActivityRepository
    peps: AbstractPepRepository

    async def aclose(self) -> None:
        """Release backend resources (HTTP connections); no-op by default."""


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

async def _get_project_or_raise(repos: AbstractRepositories, project_id: int) -> Project:
    project = await repos.projects.get_by_id(project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found.")
    return project


async def _load_structure(repos: AbstractRepositories, project_id: int):
    return await asyncio.gather(
        repos.milestones.get_by_parent(project_id),
        repos.activities.list_for_project(project_id),
        repos.peps.list_for_project(project_id),
    )


# ===========================================================================
# USE CASES: PROJECT READS
# ===========================================================================

class GetProjectUseCase:
    async def execute(self, project_id: int, repos: AbstractRepositories) -> ProjectDTO:
        project = await _get_project_or_raise(repos, project_id)
        return _Assembler.project(project)


class ListProjectsPageUseCase:
    async def execute(self, query: PageQuery, repos: AbstractRepositories) -> ProjectPageDTO:
        page = await repos.projects.get_page(query)
        return ProjectPageDTO(
            items=[_Assembler.project(p) for p in page.items],
            next_page_token=page.next_page_token,
        )


class LoadProjectTimelineUseCase:
    """Milestones and activities of a project, fetched concurrently."""

    async def execute(self, project_id: int, repos: AbstractRepositories) -> TimelineDTO:
        milestones, activities = await asyncio.gather(
            repos.milestones.get_by_parent(project_id),
            repos.activities.list_for_project(project_id),
        )
        return TimelineDTO(
            project_id=project_id,
            milestones=[_Assembler.milestone(m) for m in milestones or []],
            activities=[_Assembler.activity(a) for a in activities or []],
        )


class LoadDraftStateUseCase:
    """Hydrate an editable DraftState from the persisted project and structure."""

    async def execute(self, project_id: int, repos: AbstractRepositories) -> DraftState:
        project = await _get_project_or_raise(repos, project_id)
        milestones, activities, peps = await _load_structure(repos, project_id)
        state = DraftState.hydrate(project, milestones, activities, peps)
        logger.info(
            "Loaded draft for project %s: %d milestones, %d activities, %d PEPs",
            project_id, len(milestones), len(activities), len(peps),
        )
        return state


class EvaluateApprovalRulesUseCase:
    async def execute(self, project_id: int, repos: AbstractRepositories) -> ApprovalRulesDTO:
        state = await LoadDraftStateUseCase().execute(project_id, repos)
        results = evaluate_approval_rules(state.snapshot())
        summary = summarize_rule_results(results)
        return ApprovalRulesDTO(
            project_id=project_id,
            ok=summary.ok,
            results=[_Assembler.rule(r) for r in results],
            errors=[_Assembler.rule(r) for r in summary.errors],
            warns=[_Assembler.rule(r) for r in summary.warns],
        )


# ===========================================================================
# USE CASES: PROJECT WRITES
# ===========================================================================

class CreateProjectUseCase:
    """Create the project record alone; structure goes through CommitProjectUseCase."""

    async def execute(self, project: Project, repos: AbstractRepositories) -> int:
        normalized = normalize_project_for_commit(project)
        validate_project_basics(normalized)
        return await repos.projects.create(normalized)


class EditProjectUseCase:
    async def execute(
        self, project_id: int, project: Project, repos: AbstractRepositories
    ) -> ProjectDTO:
        current = await _get_project_or_raise(repos, project_id)
        if is_locked_status(current.status):
            raise WorkflowError(
                f"Projeto com status “{current.status}” não pode ser editado."
            )
        normalized = normalize_project_for_commit(project)
        validate_project_basics(normalized)
        await repos.projects.update(project_id, project_patch(normalized))
        return _Assembler.project(dataclasses.replace(normalized, id=project_id, status=current.status))


class DeleteDraftProjectUseCase:
    """Delete a draft project with its PEPs, activities and milestones, leaves first."""

    async def execute(self, project_id: int, repos: AbstractRepositories) -> None:
        project = await _get_project_or_raise(repos, project_id)
        check = can_delete_project(project)
        if not check.ok:
            raise WorkflowError(check.reason or "Não foi possível excluir o projeto.")

        milestones, activities = await asyncio.gather(
            repos.milestones.get_by_parent(project_id),
            repos.activities.list_for_project(project_id),
        )
        peps = await repos.peps.list_for_project(
            project_id, activity_ids=[a.id for a in activities]
        )
        for pep in peps:
            await repos.peps.delete(pep.id)
        for activity in activities:
            await repos.activities.delete(activity.id)
        for milestone in milestones:
            await repos.milestones.delete(milestone.id)
        await repos.projects.delete(project_id)
        logger.info(
            "Deleted project %s (%d milestones, %d activities, %d PEPs)",
            project_id, len(milestones), len(activities), len(peps),
        )


# ===========================================================================
# USE CASES: WORKFLOW TRANSITIONS
# ===========================================================================

class SendToApprovalUseCase:
    """Draft (or empty status) -> In Approval."""

    async def execute(self, project_id: int, repos: AbstractRepositories) -> TransitionDTO:
        project = await _get_project_or_raise(repos, project_id)
        return await self.apply(project, repos)

    async def apply(self, project: Project, repos: AbstractRepositories) -> TransitionDTO:
        check = can_send_to_approval(project)
        if not check.ok:
            raise WorkflowError(check.reason or "Não é possível enviar para aprovação.")
        if not (project.title or "").strip():
            raise ValidationError("Title vazio. Corrija antes de enviar para aprovação.")

        new_status = ProjectStatus.IN_APPROVAL.value
        await repos.projects.update(project.id, {"status": new_status})
        logger.info("Project %s sent to approval", project.id)
        return TransitionDTO(project_id=project.id, new_status=new_status)


class BackToDraftUseCase:
    """In Approval / Rejected -> Draft.  Approved never regresses."""

    async def execute(self, project_id: int, repos: AbstractRepositories) -> TransitionDTO:
        project = await _get_project_or_raise(repos, project_id)
        check = can_back_to_draft(project)
        if not check.ok:
            raise WorkflowError(check.reason or "Não é possível voltar para rascunho.")
        if not (project.title or "").strip():
            raise ValidationError("Title vazio. Corrija antes de voltar para rascunho.")

        new_status = ProjectStatus.DRAFT.value
        await repos.projects.update(project.id, {"status": new_status})
        logger.info("Project %s moved back to draft", project.id)
        return TransitionDTO(project_id=project.id, new_status=new_status)


# ===========================================================================
# USE CASES: COMMIT
# ===========================================================================

@dataclass
class CommitProjectCommand:
    state: DraftState
    project_id: Optional[int] = None
    send_to_approval: bool = True
    # Identifies the draft for the in-flight guard; defaults to the project
    # id, or to the draft object itself for a project not yet created.
    draft_key: Optional[str] = None


class CommitProjectUseCase:
    """
    Persist a draft: validate, run the compensating commit, then optionally
    send the project to approval.

    Validation errors surface before any write.  Commit failures surface as
    commit.CommitStructureError after the orchestrator's rollback.
    """

    _in_flight: ClassVar[Set[str]] = set()

    async def execute(self, cmd: CommitProjectCommand, repos: AbstractRepositories) -> CommitResultDTO:
        from commit import CommitRequest, commit_project_structure

        key = cmd.draft_key or (
            f"project:{cmd.project_id}" if cmd.project_id is not None else f"draft:{id(cmd.state)}"
        )
        if key in self._in_flight:
            raise CommitInProgressError("Já existe um envio em andamento para este projeto.")
        self._in_flight.add(key)
        try:
            if cmd.project_id is not None:
                current = await _get_project_or_raise(repos, cmd.project_id)
                if is_locked_status(current.status):
                    raise WorkflowError(
                        f"Projeto com status “{current.status}” não pode ter a estrutura alterada."
                    )

            normalized = normalize_project_for_commit(cmd.state.project)
            validate_project_basics(normalized)
            resolved = dataclasses.replace(cmd.state.resolved(), project=normalized)
            validate_structure(resolved, activity_amounts=cmd.state.peps_from_activities)

            outcome = await commit_project_structure(
                CommitRequest(
                    project_id=cmd.project_id,
                    normalized_project=normalized,
                    needs_structure=requires_structure(normalized.budget_brl),
                    milestones=resolved.milestones,
                    activities=resolved.activities,
                    peps=resolved.peps,
                ),
                repos,
            )

            status = normalized.status
            if cmd.send_to_approval:
                project = await _get_project_or_raise(repos, outcome.project_id)
                status = (await SendToApprovalUseCase().apply(project, repos)).new_status

            return CommitResultDTO(
                project_id=outcome.project_id,
                status=status,
                journal=dataclasses.asdict(outcome.journal),
            )
        finally:
            self._in_flight.discard(key)


def draft_state_dto(state: DraftState) -> DraftStateDTO:
    """Public entry to the draft assembler, for callers holding a DraftState."""
    return _Assembler.draft(state)
