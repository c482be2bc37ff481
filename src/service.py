"""
service.py

Service layer for the CAPEX Project Structure Service.

Responsibilities
----------------
Pure business rules. Nothing here touches the repository: every function
receives domain objects (from model.py) or a draft state and either returns
a value or raises ValidationError.

Sections
--------
- Calculations          – structure threshold, number parsing, rounding,
                          investment level, commit-time normalisation
- Validation rules      – pre-commit gates run before any write
- Approval rule engine  – advisory pass/warn/error checks for submission
- Workflow guards       – status-gated transition checks

Design notes
------------
- Business rule violations raise ValidationError (a ValueError subclass)
  with a user-facing message.
- Workflow guards never raise; they return a TransitionCheck so callers
  can show the reason without an exception round-trip.
- Status strings come from the backend and are compared normalised
  (trimmed, lower-cased), so "  APROVADO " and "Aprovado" are the same.
"""

from __future__ import annotations

import dataclasses
import math
import re
from datetime import date
from typing import Any, Iterable, List, Optional

from model import (
    STRUCTURE_THRESHOLD_BRL,
    ApprovalSnapshot,
    InvestmentLevel,
    Project,
    ProjectStatus,
    RuleLevel,
    RuleResult,
    RuleSummary,
    TransitionCheck,
)


class ValidationError(ValueError):
    """Raised when a draft violates a pre-commit rule. No write has happened."""


# ---------------------------------------------------------------------------
# Calculations
# ---------------------------------------------------------------------------

DEFAULT_EXCHANGE_RATE = 5.4


def requires_structure(budget_brl: Any) -> bool:
    """True when the budget reaches the Milestone/Activity threshold."""
    budget = _to_float(budget_brl)
    return budget is not None and budget >= STRUCTURE_THRESHOLD_BRL


def round_amount(value: Any) -> int:
    """
    Round a currency amount to whole reais, halves going up.

    Python's round() is half-to-even; amounts must round the same way the
    budget was entered (2.5 -> 3) or the budget-equality check drifts.
    """
    return int(math.floor(float(value) + 0.5))


def to_int_or_none(value: Any) -> Optional[int]:
    """
    Parse a user-entered amount into an integer.

    Accepts ints, floats and pt-BR formatted strings ("1.234.567,89").
    Returns None for empty or unparseable input.
    """
    number = _to_float(value)
    if number is None:
        return None
    return round_amount(number)


def to_upper_or_none(value: Optional[str]) -> Optional[str]:
    text = (value or "").strip()
    return text.upper() if text else None


def calculate_investment_level(
    budget_brl: Any, exchange_rate: float = DEFAULT_EXCHANGE_RATE
) -> Optional[str]:
    budget = _to_float(budget_brl)
    if budget is None or budget <= 0:
        return None
    usd = budget / exchange_rate
    if usd >= 150_000_000:
        return InvestmentLevel.N1.value
    if usd >= 10_000_000:
        return InvestmentLevel.N2.value
    if usd >= 2_000_000:
        return InvestmentLevel.N3.value
    return InvestmentLevel.N4.value


def normalize_project_for_commit(project: Project) -> Project:
    """
    Return a copy of the project shaped the way it is persisted: upper-cased
    title and people fields, integer budget, derived investment level and a
    Draft status when none was set.
    """
    budget = to_int_or_none(project.budget_brl)
    return dataclasses.replace(
        project,
        title=to_upper_or_none(project.title) or "",
        project_leader=to_upper_or_none(project.project_leader),
        project_user=to_upper_or_none(project.project_user),
        kpi_name=to_upper_or_none(project.kpi_name),
        budget_brl=budget,
        investment_level=calculate_investment_level(budget),
        status=project.status or ProjectStatus.DRAFT.value,
    )


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        # pt-BR: "." groups thousands, "," is the decimal separator
        text = text.replace(".", "").replace(",", ".")
        if not re.fullmatch(r"[+-]?\d+(\.\d+)?", text):
            return None
        number = float(text)
    return number if math.isfinite(number) else None


# ---------------------------------------------------------------------------
# Validation rules
# ---------------------------------------------------------------------------

def validate_project_basics(project: Project) -> None:
    """Title must be filled and the budget must be a positive integer."""
    if not (project.title or "").strip():
        raise ValidationError("Title é obrigatório.")
    budget = project.budget_brl
    if (
        budget is None
        or isinstance(budget, bool)
        or not isinstance(budget, (int, float))
        or budget != int(budget)
        or budget <= 0
    ):
        raise ValidationError("budgetBrl deve ser um inteiro > 0.")


def validate_structure(state: Any, activity_amounts: bool = False) -> None:
    """
    Validate the milestone/activity/PEP structure of a draft.

    `state` is anything exposing `project`, `milestones`, `activities` and
    `peps` (normally a draft.DraftState). The structure requirement is
    recomputed from the budget here, never taken from the caller.

    Amounts are compared in whole reais, rounded the way they are stored.
    Pass `activity_amounts=True` when the PEPs are derived from the
    activities: every activity then needs a PEP element and a positive
    amount, and the activity amounts must add up to the budget.
    """
    project: Project = state.project
    need = requires_structure(project.budget_brl)

    if not state.peps:
        raise ValidationError("Cadastre ao menos 1 PEP.")

    raw = [_to_float(p.amount_brl) for p in state.peps]
    if any(a is None for a in raw):
        raise ValidationError("Todo PEP deve possuir valor > 0.")
    amounts = [round_amount(a) for a in raw]
    if any(a <= 0 for a in amounts):
        raise ValidationError("Todo PEP deve possuir valor > 0.")
    total_peps = sum(amounts)
    budget = _to_float(project.budget_brl)
    if budget is None or budget <= 0:
        raise ValidationError("Orçamento inválido.")
    if total_peps != budget:
        raise ValidationError(
            f"Soma dos PEPs ({_fmt_amount(total_peps)}) deve ser igual ao "
            f"budgetBrl ({_fmt_amount(budget)})."
        )

    if not need:
        return

    if not state.milestones:
        raise ValidationError("Projetos ≥ 1M exigem Milestones.")
    if not state.activities:
        raise ValidationError("Projetos ≥ 1M exigem Activities.")

    if activity_amounts:
        activity_totals = [
            round_amount(a) if a is not None else 0
            for a in (_to_float(x.amount_brl) for x in state.activities)
        ]
        total_activities = sum(activity_totals)
        if total_activities != budget:
            raise ValidationError(
                f"Soma das Atividades ({_fmt_amount(total_activities)}) deve ser igual ao "
                f"budgetBrl ({_fmt_amount(budget)})."
            )

    milestone_ids = {m.temp_id for m in state.milestones}
    for index, activity in enumerate(state.activities):
        if activity.milestone_temp_id not in milestone_ids:
            raise ValidationError("Activity com milestone inválido (consistência interna).")
        if activity_amounts:
            if activity_totals[index] <= 0:
                raise ValidationError("Toda atividade deve possuir Valor da Atividade inteiro > 0.")
            if not (activity.pep_element or "").strip():
                raise ValidationError("Toda atividade deve possuir Elemento PEP.")
        _validate_activity_dates(
            activity.start_date, activity.end_date, project.start_date, project.end_date
        )


def _validate_activity_dates(
    start: Optional[date],
    end: Optional[date],
    project_start: Optional[date],
    project_end: Optional[date],
) -> None:
    if project_start and start and start < project_start:
        raise ValidationError(
            "Início da atividade não pode ser antes da Data de Início do Projeto."
        )
    if start and end and end < start:
        raise ValidationError("Término da atividade não pode ser antes do início da atividade.")
    if project_end and end and end > project_end:
        raise ValidationError(
            "Término da atividade não pode ser após a Data de Término do Projeto."
        )


def _fmt_amount(value: float) -> str:
    return str(int(value)) if value == int(value) else str(value)


# ---------------------------------------------------------------------------
# Approval rule engine
# ---------------------------------------------------------------------------

def evaluate_approval_rules(snapshot: ApprovalSnapshot) -> List[RuleResult]:
    """
    Evaluate, in a fixed order, whether a project is ready for approval.

    Advisory only: the workflow transitions re-check title and status on
    their own before writing.
    """
    out: List[RuleResult] = []

    label = "Projeto com Title preenchido"
    if not (snapshot.project_title or "").strip():
        out.append(RuleResult("title", label, RuleLevel.ERROR, "Preencha o Title do projeto."))
    else:
        out.append(RuleResult("title", label, RuleLevel.OK))

    label = "Status permite envio"
    status = normalize_status(snapshot.project_status)
    if status not in ("", _DRAFT, _REJECTED):
        out.append(
            RuleResult(
                "status",
                label,
                RuleLevel.ERROR,
                f"Status atual (“{snapshot.project_status or '-'}”) não permite envio.",
            )
        )
    else:
        out.append(RuleResult("status", label, RuleLevel.OK))

    out.append(_count_rule("milestones", "Milestone", snapshot.milestones_count))
    out.append(_count_rule("activities", "Activity", snapshot.activities_count))
    out.append(_count_rule("peps", "PEP", snapshot.peps_count))

    label = "Total do Projeto > 0"
    total = snapshot.total_project_brl
    if total is None or not math.isfinite(total) or total <= 0:
        out.append(
            RuleResult(
                "total", label, RuleLevel.ERROR, "Total inválido/zero. Verifique valores dos PEPs."
            )
        )
    else:
        out.append(RuleResult("total", label, RuleLevel.OK))

    # Soft rule: does not block submission
    label = "Unidade preenchida (unit)"
    if not (snapshot.unit or "").strip():
        out.append(
            RuleResult("unit", label, RuleLevel.WARN, "Recomendado preencher a unidade (unit).")
        )
    else:
        out.append(RuleResult("unit", label, RuleLevel.OK))

    return out


def _count_rule(rule_id: str, noun: str, count: int) -> RuleResult:
    label = f"Pelo menos 1 {noun}"
    if count > 0:
        return RuleResult(rule_id, label, RuleLevel.OK)
    return RuleResult(rule_id, label, RuleLevel.ERROR, f"Cadastre ao menos 1 {noun}.")


def summarize_rule_results(results: Iterable[RuleResult]) -> RuleSummary:
    results = list(results)
    errors = [r for r in results if r.level == RuleLevel.ERROR]
    return RuleSummary(
        ok=not errors,
        errors=errors,
        warns=[r for r in results if r.level == RuleLevel.WARN],
        oks=[r for r in results if r.level == RuleLevel.OK],
    )


# ---------------------------------------------------------------------------
# Workflow guards
# ---------------------------------------------------------------------------

_DRAFT = "rascunho"
_IN_APPROVAL = ("em aprovação", "em aprovacao")
_APPROVED = "aprovado"
_REJECTED = "reprovado"


def normalize_status(status: Optional[str]) -> str:
    return (status or "").strip().lower()


def is_locked_status(status: Optional[str]) -> bool:
    """Structure edits are blocked while a project is in approval or approved."""
    st = normalize_status(status)
    return st in _IN_APPROVAL or st == _APPROVED


def can_send_to_approval(project: Optional[Project]) -> TransitionCheck:
    if project is None:
        return TransitionCheck(False, "Selecione um projeto.")

    st = normalize_status(project.status)
    if not st or st == _DRAFT:
        return TransitionCheck(True)
    if st in _IN_APPROVAL:
        return TransitionCheck(False, "Projeto já está em aprovação.")
    if st == _APPROVED:
        return TransitionCheck(False, "Projeto já está aprovado.")
    if st == _REJECTED:
        return TransitionCheck(False, "Projeto reprovado. Ajuste o projeto antes de reenviar.")
    return TransitionCheck(
        False, f"Status atual (“{project.status}”) não permite envio automático."
    )


def can_back_to_draft(project: Optional[Project]) -> TransitionCheck:
    if project is None:
        return TransitionCheck(False, "Selecione um projeto.")

    st = normalize_status(project.status)
    if not st:
        return TransitionCheck(False, "Status vazio.")
    if st == _DRAFT:
        return TransitionCheck(False, "Projeto já está em rascunho.")
    if st == _APPROVED:
        return TransitionCheck(False, "Projeto aprovado não deve voltar para rascunho.")
    return TransitionCheck(True)


def can_delete_project(project: Optional[Project]) -> TransitionCheck:
    if project is None:
        return TransitionCheck(False, "Selecione um projeto.")
    st = normalize_status(project.status)
    if not st or st == _DRAFT:
        return TransitionCheck(True)
    return TransitionCheck(False, "Somente projetos em rascunho podem ser excluídos.")
