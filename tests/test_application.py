"""
Tests for the application use cases, run against the in-memory repositories.
"""

import asyncio

import pytest

from application import (
    AppError,
    BackToDraftUseCase,
    CommitInProgressError,
    CommitProjectCommand,
    CommitProjectUseCase,
    CreateProjectUseCase,
    DeleteDraftProjectUseCase,
    EditProjectUseCase,
    EvaluateApprovalRulesUseCase,
    GetProjectUseCase,
    ListProjectsPageUseCase,
    LoadDraftStateUseCase,
    LoadProjectTimelineUseCase,
    NotFoundError,
    PageQuery,
    RepositoryError,
    SendToApprovalUseCase,
    WorkflowError,
    format_commit_error,
    normalize_error,
)
from commit import CommitStructureError
from draft import DraftState
from model import Project
from service import ValidationError


def small_draft(title="retrofit", budget=500_000) -> DraftState:
    state = DraftState.empty(Project(title=title, budget_brl=budget, unit="MG", approval_year=2025))
    state.add_pep("PEP-A", 2025, budget)
    return state


def structured_draft() -> DraftState:
    state = DraftState.empty(Project(title="linha nova", budget_brl=2_000_000, approval_year=2025))
    ms = state.add_milestone("fase 1")
    state.add_activity(ms, "montagem", amount_brl=1_200_000, pep_element="PEP-1")
    state.add_activity(ms, "teste", amount_brl=800_000, pep_element="PEP-2")
    return state


async def commit(repos, state, **kwargs):
    cmd = CommitProjectCommand(state=state, **kwargs)
    return await CommitProjectUseCase().execute(cmd, repos)


class TestCommitProject:
    @pytest.mark.asyncio
    async def test_commits_and_sends_to_approval(self, repos, db):
        result = await commit(repos, structured_draft())

        assert result.status == "Em Aprovação"
        assert db.projects[result.project_id].status == "Em Aprovação"
        assert len(result.journal["activity_ids"]) == 2
        # PEPs derived from the activities' PEP elements
        assert sorted(p.title for p in db.peps.values()) == ["PEP-1", "PEP-2"]

    @pytest.mark.asyncio
    async def test_can_keep_project_as_draft(self, repos, db):
        result = await commit(repos, small_draft(), send_to_approval=False)
        assert result.status == "Rascunho"
        assert db.projects[result.project_id].title == "RETROFIT"

    @pytest.mark.asyncio
    async def test_validation_happens_before_any_write(self, repos, db):
        state = small_draft()
        state.peps[0].amount_brl = 1
        with pytest.raises(ValidationError, match="Soma dos PEPs"):
            await commit(repos, state)
        assert not db.projects

    @pytest.mark.asyncio
    async def test_fractional_peps_are_checked_as_stored(self, repos, db):
        state = DraftState.empty(Project(title="retrofit", budget_brl=500_000, approval_year=2025))
        state.add_pep("PEP-A", 2025, 0.5)
        state.add_pep("PEP-B", 2025, 499_999.5)

        with pytest.raises(ValidationError, match=r"Soma dos PEPs \(500001\)"):
            await commit(repos, state)
        assert not db.projects and not db.peps

    @pytest.mark.asyncio
    async def test_activity_without_amount_blocks_derived_peps(self, repos, db):
        state = DraftState.empty(Project(title="linha nova", budget_brl=2_000_000, approval_year=2025))
        ms = state.add_milestone("fase 1")
        state.add_activity(ms, "montagem", amount_brl=2_000_000, pep_element="PEP-1")
        state.add_activity(ms, "teste", pep_element="PEP-2")

        with pytest.raises(ValidationError, match="Valor da Atividade"):
            await commit(repos, state)
        assert not db.projects

    @pytest.mark.asyncio
    async def test_locked_project_structure_cannot_change(self, repos):
        first = await commit(repos, small_draft())
        with pytest.raises(WorkflowError):
            await commit(repos, small_draft(), project_id=first.project_id)

    @pytest.mark.asyncio
    async def test_recommit_after_back_to_draft(self, repos, db):
        first = await commit(repos, small_draft())
        await BackToDraftUseCase().execute(first.project_id, repos)

        second = await commit(repos, small_draft(title="retrofit v2"), project_id=first.project_id)

        assert second.project_id == first.project_id
        assert second.journal["created_project_id"] is None
        assert db.projects[first.project_id].title == "RETROFIT V2"
        assert db.projects[first.project_id].status == "Em Aprovação"

    @pytest.mark.asyncio
    async def test_concurrent_commit_of_same_draft_is_refused(self, repos, db):
        gate = asyncio.Event()
        original = repos.projects.create

        async def slow_create(project):
            await gate.wait()
            return await original(project)

        repos.projects.create = slow_create
        first = asyncio.create_task(commit(repos, small_draft(), draft_key="wizard-1"))
        await asyncio.sleep(0)

        with pytest.raises(CommitInProgressError):
            await commit(repos, small_draft(), draft_key="wizard-1")

        gate.set()
        result = await first
        assert result.project_id in db.projects
        # guard released: the same key can commit again
        await commit(repos, small_draft(), draft_key="wizard-1")

    @pytest.mark.asyncio
    async def test_failed_commit_releases_guard(self, repos, failing):
        repos.peps.create = failing(repos.peps.create, 1, RepositoryError(500, "boom"))
        with pytest.raises(CommitStructureError):
            await commit(repos, small_draft(), draft_key="wizard-2")
        assert "wizard-2" not in CommitProjectUseCase._in_flight


class TestWorkflow:
    @pytest.mark.asyncio
    async def test_send_and_back(self, repos, db):
        project_id = await CreateProjectUseCase().execute(Project(title="a", budget_brl=10), repos)

        sent = await SendToApprovalUseCase().execute(project_id, repos)
        assert sent.new_status == "Em Aprovação"

        with pytest.raises(WorkflowError, match="já está em aprovação"):
            await SendToApprovalUseCase().execute(project_id, repos)

        back = await BackToDraftUseCase().execute(project_id, repos)
        assert back.new_status == "Rascunho"
        assert db.projects[project_id].status == "Rascunho"

    @pytest.mark.asyncio
    async def test_refused_transition_makes_no_write(self, repos, db, failing):
        project_id = await repos.projects.create(Project(title="A", budget_brl=10, status="Aprovado"))
        repos.projects.update = failing(repos.projects.update, 1, AssertionError("no write expected"))

        with pytest.raises(WorkflowError, match="aprovado não deve voltar"):
            await BackToDraftUseCase().execute(project_id, repos)
        repos.projects.update.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_title_blocks_send(self, repos):
        project_id = await repos.projects.create(Project(title="  ", budget_brl=10))
        with pytest.raises(ValidationError):
            await SendToApprovalUseCase().execute(project_id, repos)

    @pytest.mark.asyncio
    async def test_unknown_project(self, repos):
        with pytest.raises(NotFoundError):
            await SendToApprovalUseCase().execute(404, repos)


class TestReads:
    @pytest.mark.asyncio
    async def test_timeline(self, repos):
        result = await commit(repos, structured_draft())
        timeline = await LoadProjectTimelineUseCase().execute(result.project_id, repos)
        assert [m.title for m in timeline.milestones] == ["FASE 1"]
        assert [a.title for a in timeline.activities] == ["MONTAGEM", "TESTE"]

    @pytest.mark.asyncio
    async def test_draft_round_trips_through_hydrate(self, repos):
        result = await commit(repos, structured_draft(), send_to_approval=False)
        state = await LoadDraftStateUseCase().execute(result.project_id, repos)
        assert state.needs_structure
        assert [a.pep_element for a in state.activities] == ["PEP-1", "PEP-2"]
        assert state.total_pep_amount() == 2_000_000

    @pytest.mark.asyncio
    async def test_approval_rules_from_persisted_rows(self, repos):
        result = await commit(repos, small_draft(), send_to_approval=False)
        rules = await EvaluateApprovalRulesUseCase().execute(result.project_id, repos)
        assert rules.ok
        assert [r.level for r in rules.results] == ["ok"] * 7

    @pytest.mark.asyncio
    async def test_list_projects_pages_and_filters(self, repos):
        for title in ("alpha", "beta", "alpine", "gamma"):
            await CreateProjectUseCase().execute(Project(title=title, budget_brl=10), repos)

        first = await ListProjectsPageUseCase().execute(
            PageQuery(filters={"search_title": "al"}, sort_by="title", sort_dir="asc", page_size=1),
            repos,
        )
        assert [p.title for p in first.items] == ["ALPHA"]
        second = await ListProjectsPageUseCase().execute(
            PageQuery(
                filters={"search_title": "al"}, sort_by="title", sort_dir="asc",
                page_size=1, page_token=first.next_page_token,
            ),
            repos,
        )
        assert [p.title for p in second.items] == ["ALPINE"]
        assert second.next_page_token is None

    @pytest.mark.asyncio
    async def test_get_project(self, repos):
        project_id = await CreateProjectUseCase().execute(Project(title="a", budget_brl=10), repos)
        dto = await GetProjectUseCase().execute(project_id, repos)
        assert dto.title == "A"
        assert dto.locked is False


class TestEditAndDelete:
    @pytest.mark.asyncio
    async def test_edit_keeps_status(self, repos, db):
        project_id = await CreateProjectUseCase().execute(Project(title="a", budget_brl=10), repos)
        dto = await EditProjectUseCase().execute(
            project_id, Project(title="b", budget_brl=20, status="Aprovado"), repos
        )
        assert dto.title == "B"
        assert db.projects[project_id].status == "Rascunho"

    @pytest.mark.asyncio
    async def test_edit_refused_while_in_approval(self, repos):
        result = await commit(repos, small_draft())
        with pytest.raises(WorkflowError):
            await EditProjectUseCase().execute(
                result.project_id, Project(title="b", budget_brl=20), repos
            )

    @pytest.mark.asyncio
    async def test_delete_draft_removes_structure(self, repos, db):
        result = await commit(repos, structured_draft(), send_to_approval=False)
        await DeleteDraftProjectUseCase().execute(result.project_id, repos)
        assert not (db.projects or db.milestones or db.activities or db.peps)

    @pytest.mark.asyncio
    async def test_delete_refused_outside_draft(self, repos, db):
        result = await commit(repos, small_draft())
        with pytest.raises(WorkflowError):
            await DeleteDraftProjectUseCase().execute(result.project_id, repos)
        assert result.project_id in db.projects


class TestErrorFormatting:
    @pytest.mark.asyncio
    async def test_commit_error_report(self, repos, failing):
        repos.peps.create = failing(repos.peps.create, 1, RepositoryError(500, "boom"))
        repos.milestones.delete = failing(repos.milestones.delete, 1, RepositoryError(423, "locked"))

        with pytest.raises(CommitStructureError) as info:
            await commit(repos, small_draft())

        report = format_commit_error(info.value).splitlines()
        assert report[0] == "Erro ao persistir estrutura do projeto."
        assert report[1] == "Falha principal: boom (status 500)"
        assert report[2] == "Rollback: partial (1/3 falhas)."
        assert report[3] == "- milestone #1: locked (status 423)"

    def test_normalize_error(self):
        assert normalize_error(RuntimeError("x"), "Falhou") == AppError("Falhou", "x")
        assert normalize_error("  ", "Falhou") == AppError("Falhou")
        assert normalize_error(None, "Falhou").technical_details is None
