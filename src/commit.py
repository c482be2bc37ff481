"""
commit.py

Multi-entity commit orchestrator.

Persists a project and its Milestone → Activity → PEP structure through a
backend that commits every call on its own.  Each successful create is
recorded in an append-only CommitJournal; when any step fails, the journal
is replayed backwards as compensating deletes (PEPs, activities, milestones,
then the project if this call created it) and the failure is raised as a
CommitStructureError carrying the journal and the rollback outcome.

Phases
------
    PENDING → CREATING_PROJECT → CREATING_MILESTONES → CREATING_ACTIVITIES
            → CREATING_PEPS → COMMITTED

    any CREATING_* → ROLLING_BACK → ROLLED_BACK_COMPLETE | ROLLED_BACK_PARTIAL

Projects below the structure threshold go through the same phases: the
milestone and activity phases create one placeholder each.

Design notes
------------
- PEPs are created one at a time so the journal order is creation order.
- Rollback is best-effort.  A failed delete never stops the remaining
  deletes; it is reported as a RollbackIssue.
- Temp-id → repository-id maps live only for the duration of one call.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from application import (
    AbstractRepositories,
    ApplicationError,
    InternalConsistencyError,
    project_patch,
)
from model import (
    AUTO_ACTIVITY_TITLE,
    AUTO_MILESTONE_TITLE,
    Activity,
    ActivityDraft,
    EntityKind,
    Milestone,
    MilestoneDraft,
    Pep,
    PepDraft,
    Project,
)
from service import ValidationError, requires_structure, round_amount

logger = logging.getLogger(__name__)

COMMIT_FAILED_MESSAGE = "Erro ao persistir estrutura do projeto."


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class CommitPhase(str, Enum):
    PENDING = "pending"
    CREATING_PROJECT = "creating_project"
    CREATING_MILESTONES = "creating_milestones"
    CREATING_ACTIVITIES = "creating_activities"
    CREATING_PEPS = "creating_peps"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK_COMPLETE = "rolled_back_complete"
    ROLLED_BACK_PARTIAL = "rolled_back_partial"


_TRANSITIONS: Dict[CommitPhase, tuple] = {
    CommitPhase.PENDING: (CommitPhase.CREATING_PROJECT,),
    CommitPhase.CREATING_PROJECT: (CommitPhase.CREATING_MILESTONES, CommitPhase.ROLLING_BACK),
    CommitPhase.CREATING_MILESTONES: (CommitPhase.CREATING_ACTIVITIES, CommitPhase.ROLLING_BACK),
    CommitPhase.CREATING_ACTIVITIES: (CommitPhase.CREATING_PEPS, CommitPhase.ROLLING_BACK),
    CommitPhase.CREATING_PEPS: (CommitPhase.COMMITTED, CommitPhase.ROLLING_BACK),
    CommitPhase.ROLLING_BACK: (
        CommitPhase.ROLLED_BACK_COMPLETE,
        CommitPhase.ROLLED_BACK_PARTIAL,
    ),
    CommitPhase.COMMITTED: (),
    CommitPhase.ROLLED_BACK_COMPLETE: (),
    CommitPhase.ROLLED_BACK_PARTIAL: (),
}


# ---------------------------------------------------------------------------
# Request / result types
# ---------------------------------------------------------------------------

@dataclass
class CommitJournal:
    """Ids created by one commit, in creation order.  Append-only."""
    created_project_id: Optional[int] = None
    milestone_ids: List[int] = field(default_factory=list)
    activity_ids: List[int] = field(default_factory=list)
    pep_ids: List[int] = field(default_factory=list)


@dataclass(frozen=True)
class RollbackIssue:
    entity: str   # EntityKind value
    id: int
    reason: str


@dataclass
class RollbackResult:
    status: str   # "complete" | "partial"
    attempts: int
    failures: List[RollbackIssue] = field(default_factory=list)


@dataclass
class CommitRequest:
    """
    Input of commit_project_structure.

    `project_id` set means update the existing project; None means create
    it, through `create_project_fn` when given.
    """
    normalized_project: Project
    needs_structure: bool
    milestones: List[MilestoneDraft] = field(default_factory=list)
    activities: List[ActivityDraft] = field(default_factory=list)
    peps: List[PepDraft] = field(default_factory=list)
    project_id: Optional[int] = None
    create_project_fn: Optional[Callable[[Project], Awaitable[int]]] = None


@dataclass
class CommitOutcome:
    project_id: int
    journal: CommitJournal
    phases: List[CommitPhase] = field(default_factory=list)


class CommitStructureError(ApplicationError):
    """A commit failed after zero or more writes; compensation has already run."""

    def __init__(
        self,
        message: str,
        journal: CommitJournal,
        rollback: RollbackResult,
        cause: Optional[BaseException] = None,
        phases: Optional[List[CommitPhase]] = None,
    ):
        super().__init__(message)
        self.journal = journal
        self.rollback = rollback
        self.cause = cause
        self.phases = list(phases or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detail": str(self),
            "cause": str(self.cause) if self.cause is not None else None,
            "journal": dataclasses.asdict(self.journal),
            "rollback": dataclasses.asdict(self.rollback),
            "phases": [p.value for p in self.phases],
        }


# ---------------------------------------------------------------------------
# Saga
# ---------------------------------------------------------------------------

class CommitSaga:
    """One commit attempt.  Not reusable: create a new saga per request."""

    def __init__(self, request: CommitRequest, repositories: AbstractRepositories):
        self.request = request
        self.repos = repositories
        self.journal = CommitJournal()
        self.phase = CommitPhase.PENDING
        self.phases: List[CommitPhase] = [CommitPhase.PENDING]
        self._milestone_ids: Dict[str, int] = {}
        self._activity_ids: Dict[str, int] = {}

    def _advance(self, to: CommitPhase) -> None:
        if to not in _TRANSITIONS[self.phase]:
            raise InternalConsistencyError(
                f"Transição de commit inválida: {self.phase.value} -> {to.value}."
            )
        logger.info("Commit phase %s -> %s", self.phase.value, to.value)
        self.phase = to
        self.phases.append(to)

    async def run(self) -> CommitOutcome:
        self._check_structure_flag()
        try:
            self._advance(CommitPhase.CREATING_PROJECT)
            project_id = await self._write_project()

            if self.request.needs_structure:
                self._advance(CommitPhase.CREATING_MILESTONES)
                for milestone in self.request.milestones:
                    await self._create_milestone(project_id, milestone)

                self._advance(CommitPhase.CREATING_ACTIVITIES)
                for activity in self.request.activities:
                    await self._create_activity(project_id, activity)

                self._advance(CommitPhase.CREATING_PEPS)
                for pep in self.request.peps:
                    if not pep.activity_temp_id:
                        raise InternalConsistencyError("PEP sem Activity (commit).")
                    activity_id = self._activity_ids.get(pep.activity_temp_id)
                    if activity_id is None:
                        raise InternalConsistencyError("PEP com Activity inválida (commit).")
                    await self._create_pep(project_id, activity_id, pep)
            else:
                self._advance(CommitPhase.CREATING_MILESTONES)
                milestone_id = await self.repos.milestones.create(
                    Milestone(project_id=project_id, title=AUTO_MILESTONE_TITLE)
                )
                self.journal.milestone_ids.append(milestone_id)

                self._advance(CommitPhase.CREATING_ACTIVITIES)
                activity_id = await self.repos.activities.create(
                    Activity(
                        project_id=project_id,
                        milestone_id=milestone_id,
                        title=AUTO_ACTIVITY_TITLE,
                    )
                )
                self.journal.activity_ids.append(activity_id)

                self._advance(CommitPhase.CREATING_PEPS)
                for pep in self.request.peps:
                    await self._create_pep(project_id, activity_id, pep)

            self._advance(CommitPhase.COMMITTED)
        except Exception as exc:
            logger.error("Commit failed in phase %s: %s", self.phase.value, exc)
            result = await self.rollback()
            raise CommitStructureError(
                COMMIT_FAILED_MESSAGE,
                journal=self.journal,
                rollback=result,
                cause=exc,
                phases=self.phases,
            ) from exc

        return CommitOutcome(project_id=project_id, journal=self.journal, phases=self.phases)

    def _check_structure_flag(self) -> None:
        budget = self.request.normalized_project.budget_brl
        if budget is None:
            return
        if requires_structure(budget) != self.request.needs_structure:
            raise ValidationError(
                "needs_structure não corresponde ao budgetBrl do projeto."
            )

    async def _write_project(self) -> int:
        request = self.request
        if request.project_id is not None:
            # Existing project: status is owned by the workflow transitions.
            await self.repos.projects.update(
                request.project_id, project_patch(request.normalized_project)
            )
            return request.project_id

        create = request.create_project_fn or self.repos.projects.create
        project_id = await create(request.normalized_project)
        self.journal.created_project_id = project_id
        return project_id

    async def _create_milestone(self, project_id: int, draft: MilestoneDraft) -> None:
        milestone_id = await self.repos.milestones.create(
            Milestone(project_id=project_id, title=draft.title.strip().upper())
        )
        self.journal.milestone_ids.append(milestone_id)
        self._milestone_ids[draft.temp_id] = milestone_id

    async def _create_activity(self, project_id: int, draft: ActivityDraft) -> None:
        milestone_id = self._milestone_ids.get(draft.milestone_temp_id)
        if milestone_id is None:
            raise InternalConsistencyError("Activity sem milestone válido (commit).")
        activity_id = await self.repos.activities.create(
            Activity(
                project_id=project_id,
                milestone_id=milestone_id,
                title=draft.title.strip().upper(),
                start_date=draft.start_date,
                end_date=draft.end_date,
                supplier=draft.supplier,
                activity_description=draft.activity_description,
            )
        )
        self.journal.activity_ids.append(activity_id)
        self._activity_ids[draft.temp_id] = activity_id

    async def _create_pep(self, project_id: int, activity_id: int, draft: PepDraft) -> None:
        pep_id = await self.repos.peps.create(
            Pep(
                project_id=project_id,
                activity_id=activity_id,
                title=draft.title.strip(),
                year=draft.year,
                amount_brl=round_amount(draft.amount_brl),
            )
        )
        self.journal.pep_ids.append(pep_id)

    async def rollback(self) -> RollbackResult:
        """Delete everything journaled, leaves first.  Never raises for a failed delete."""
        self._advance(CommitPhase.ROLLING_BACK)
        journal = self.journal
        plan = (
            [(EntityKind.PEP, self.repos.peps, i) for i in reversed(journal.pep_ids)]
            + [(EntityKind.ACTIVITY, self.repos.activities, i) for i in reversed(journal.activity_ids)]
            + [(EntityKind.MILESTONE, self.repos.milestones, i) for i in reversed(journal.milestone_ids)]
        )
        if journal.created_project_id is not None:
            plan.append((EntityKind.PROJECT, self.repos.projects, journal.created_project_id))

        failures: List[RollbackIssue] = []
        for kind, repo, entity_id in plan:
            try:
                await repo.delete(entity_id)
            except Exception as exc:
                logger.warning("Rollback delete of %s #%s failed: %s", kind.value, entity_id, exc)
                failures.append(
                    RollbackIssue(entity=kind.value, id=entity_id, reason=str(exc) or "Unknown delete error")
                )

        self._advance(
            CommitPhase.ROLLED_BACK_PARTIAL if failures else CommitPhase.ROLLED_BACK_COMPLETE
        )
        return RollbackResult(
            status="partial" if failures else "complete",
            attempts=len(plan),
            failures=failures,
        )


async def commit_project_structure(
    request: CommitRequest, repositories: AbstractRepositories
) -> CommitOutcome:
    """
    Create or update a project and create its structure.

    Raises ValidationError before any write when `needs_structure` disagrees
    with the project's budget, and CommitStructureError after rollback when
    any write fails.
    """
    return await CommitSaga(request, repositories).run()
