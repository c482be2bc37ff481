"""
model.py

Domain models for the CAPEX Project Structure Service.

Entities
--------
- Project
- Milestone
- Activity
- Pep            (cost element / budget line item)

Draft entities (pre-commit, addressed by temporary ids)
-------------------------------------------------------
- MilestoneDraft
- ActivityDraft
- PepDraft

Value objects
-------------
- ApprovalSnapshot, RuleResult, RuleSummary
- TransitionCheck

All models use Python dataclasses for clean, framework-agnostic definitions.
Persisted entities carry the integer id assigned by the storage backend;
the id is None until the entity has been created.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import List, Optional


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Projects at or above this budget must carry real Milestone/Activity structure.
STRUCTURE_THRESHOLD_BRL = 1_000_000

# Titles of the placeholder structure created for projects below the threshold.
AUTO_MILESTONE_TITLE = "SEM MARCOS (AUTO)"
AUTO_ACTIVITY_TITLE = "PEP DIRETO (AUTO)"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ProjectStatus(str, Enum):
    """
    Approval workflow status of a project, as stored by the backend.

    DRAFT        – Being edited; may be sent to approval.
    IN_APPROVAL  – Submitted; structure is locked.
    APPROVED     – Final; must never silently regress to DRAFT.
    REJECTED     – Returned by the approvers; must go back to DRAFT first.
    """
    DRAFT = "Rascunho"
    IN_APPROVAL = "Em Aprovação"
    APPROVED = "Aprovado"
    REJECTED = "Reprovado"


class EntityKind(str, Enum):
    """The four record kinds persisted by the repository."""
    PROJECT = "project"
    MILESTONE = "milestone"
    ACTIVITY = "activity"
    PEP = "pep"


class RuleLevel(str, Enum):
    OK = "ok"
    WARN = "warn"
    ERROR = "error"


class InvestmentLevel(str, Enum):
    """Investment tier derived from the budget converted to USD."""
    N1 = "N1"   # >= 150M USD
    N2 = "N2"   # >= 10M USD
    N3 = "N3"   # >= 2M USD
    N4 = "N4"


# ---------------------------------------------------------------------------
# Persisted Entities
# ---------------------------------------------------------------------------


@dataclass
class Project:
    """
    A capital-expenditure project.

    Only `title`, `budget_brl` and `status` carry rules; the remaining
    descriptive attributes are opaque to the commit engine and are passed
    through to the repository unchanged.
    """
    id: Optional[int] = None
    title: str = ""
    budget_brl: Optional[int] = None
    status: str = ProjectStatus.DRAFT.value

    approval_year: Optional[int] = None
    investment_level: Optional[str] = None
    funding_source: Optional[str] = None
    source_project_code: Optional[str] = None

    # Organisation
    company: Optional[str] = None
    center: Optional[str] = None
    unit: Optional[str] = None
    location: Optional[str] = None
    depreciation_cost_center: Optional[str] = None

    # Classification
    category: Optional[str] = None
    investment_type: Optional[str] = None
    asset_type: Optional[str] = None
    project_function: Optional[str] = None
    project_leader: Optional[str] = None
    project_user: Optional[str] = None

    # Schedule
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    # Justification
    business_need: Optional[str] = None
    proposed_solution: Optional[str] = None

    # KPI
    kpi_type: Optional[str] = None
    kpi_name: Optional[str] = None
    kpi_description: Optional[str] = None
    kpi_current: Optional[str] = None
    kpi_expected: Optional[str] = None

    # ROCE
    roce_gain: Optional[float] = None
    roce_gain_description: Optional[str] = None
    roce_loss: Optional[float] = None
    roce_loss_description: Optional[str] = None
    roce_classification: Optional[str] = None


@dataclass
class Milestone:
    """A milestone; belongs to exactly one project."""
    id: Optional[int] = None
    project_id: Optional[int] = None   # FK → Project.id
    title: str = ""


@dataclass
class Activity:
    """
    A unit of work under a milestone.

    `project_id` is denormalised so a project's activities can be read in
    one batch without walking its milestones.
    """
    id: Optional[int] = None
    project_id: Optional[int] = None     # FK → Project.id
    milestone_id: Optional[int] = None   # FK → Milestone.id
    title: str = ""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    supplier: Optional[str] = None
    activity_description: Optional[str] = None


@dataclass
class Pep:
    """A cost element; the leaf financial unit attached to an activity."""
    id: Optional[int] = None
    project_id: Optional[int] = None    # FK → Project.id
    activity_id: Optional[int] = None   # FK → Activity.id
    title: str = ""
    year: Optional[int] = None
    amount_brl: Optional[int] = None


# ---------------------------------------------------------------------------
# Draft Entities (never sent to the repository as-is)
# ---------------------------------------------------------------------------


@dataclass
class MilestoneDraft:
    temp_id: str
    title: str


@dataclass
class ActivityDraft:
    """
    Activity as edited before commit.

    `amount_brl` and `pep_element` let a structured project declare its
    cost element directly on the activity (see DraftState.effective_peps).
    """
    temp_id: str
    title: str
    milestone_temp_id: str
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    supplier: Optional[str] = None
    activity_description: Optional[str] = None
    amount_brl: Optional[int] = None
    pep_element: Optional[str] = None


@dataclass
class PepDraft:
    temp_id: str
    title: str
    year: int
    amount_brl: float
    activity_temp_id: Optional[str] = None   # None when structure is not required


# ---------------------------------------------------------------------------
# Rule & Workflow Value Objects
# ---------------------------------------------------------------------------


@dataclass
class ApprovalSnapshot:
    """Flattened view of a project used by the approval rule engine."""
    milestones_count: int = 0
    activities_count: int = 0
    peps_count: int = 0
    total_project_brl: float = 0.0
    project_id: Optional[int] = None
    project_title: Optional[str] = None
    project_status: Optional[str] = None
    approval_year: Optional[int] = None
    unit: Optional[str] = None


@dataclass(frozen=True)
class RuleResult:
    id: str
    label: str
    level: RuleLevel
    message: Optional[str] = None


@dataclass
class RuleSummary:
    ok: bool
    errors: List[RuleResult] = field(default_factory=list)
    warns: List[RuleResult] = field(default_factory=list)
    oks: List[RuleResult] = field(default_factory=list)


@dataclass(frozen=True)
class TransitionCheck:
    """Outcome of a workflow guard: ok, or a user-facing reason why not."""
    ok: bool
    reason: Optional[str] = None
