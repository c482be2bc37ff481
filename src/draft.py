"""
draft.py

In-memory Draft State Model.

A DraftState holds a project and its not-yet-persisted milestones,
activities and PEPs, all cross-referenced by temporary ids. It is created
empty (create mode) or hydrated from persisted rows (edit/view mode) and is
mutated without any network call. The only way its contents reach the
repository is through the commit orchestrator (commit.py).

Temporary ids are prefixed by kind: "ms_" milestones, "ac_" activities,
"pp_" PEPs. Hydrated entities reuse their repository id ("ms_42"); new
entities get a random suffix.
"""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from model import (
    Activity,
    ActivityDraft,
    ApprovalSnapshot,
    Milestone,
    MilestoneDraft,
    Pep,
    PepDraft,
    Project,
)
from service import ValidationError, requires_structure, round_amount, to_upper_or_none


def new_temp_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass
class DraftState:
    project: Project = field(default_factory=Project)
    milestones: List[MilestoneDraft] = field(default_factory=list)
    activities: List[ActivityDraft] = field(default_factory=list)
    peps: List[PepDraft] = field(default_factory=list)

    # --- Construction -------------------------------------------------------

    @classmethod
    def empty(cls, project: Optional[Project] = None) -> "DraftState":
        return cls(project=project or Project())

    @classmethod
    def hydrate(
        cls,
        project: Project,
        milestones: List[Milestone],
        activities: List[Activity],
        peps: List[Pep],
        default_year: Optional[int] = None,
    ) -> "DraftState":
        """
        Rebuild a draft from persisted rows.

        Activities are grouped under their milestones (milestone order wins),
        PEPs under their activities. Rows whose parent is not part of the
        loaded set are dropped. Each activity takes its amount and PEP
        element from its first PEP.
        """
        year = default_year or project.approval_year or date.today().year

        ms_local = [
            MilestoneDraft(temp_id=f"ms_{m.id}", title=(m.title or "").upper())
            for m in milestones
        ]

        peps_by_activity: Dict[int, List[PepDraft]] = {}
        for p in peps:
            amount = p.amount_brl if p.amount_brl is not None else 0
            peps_by_activity.setdefault(p.activity_id, []).append(
                PepDraft(
                    temp_id=f"pp_{p.id}",
                    title=p.title or "",
                    year=int(p.year or year),
                    amount_brl=round_amount(amount),
                    activity_temp_id=f"ac_{p.activity_id}",
                )
            )

        activities_by_milestone: Dict[int, List[Activity]] = {}
        for a in activities:
            activities_by_milestone.setdefault(a.milestone_id, []).append(a)

        acts_local: List[ActivityDraft] = []
        peps_local: List[PepDraft] = []
        for m in milestones:
            for a in activities_by_milestone.get(m.id, []):
                linked = peps_by_activity.get(a.id, [])
                first = linked[0] if linked else None
                acts_local.append(
                    ActivityDraft(
                        temp_id=f"ac_{a.id}",
                        title=(a.title or "").upper(),
                        milestone_temp_id=f"ms_{m.id}",
                        start_date=a.start_date,
                        end_date=a.end_date,
                        supplier=a.supplier,
                        activity_description=a.activity_description,
                        amount_brl=int(first.amount_brl) if first else None,
                        pep_element=first.title if first else None,
                    )
                )
                peps_local.extend(linked)

        return cls(
            project=dataclasses.replace(project),
            milestones=ms_local,
            activities=acts_local,
            peps=peps_local,
        )

    # --- Derived ------------------------------------------------------------

    @property
    def needs_structure(self) -> bool:
        return requires_structure(self.project.budget_brl)

    def effective_peps(self) -> List[PepDraft]:
        """
        PEPs that a commit would persist.

        Explicit PEPs win. A structured project without explicit PEPs
        derives one PEP per activity that declares a PEP element and a
        positive amount.
        """
        if self.peps or not self.needs_structure:
            return list(self.peps)
        year = self.project.approval_year or date.today().year
        return [
            PepDraft(
                temp_id=f"auto_{a.temp_id}",
                title=(a.pep_element or "").strip(),
                year=int(year),
                amount_brl=a.amount_brl,
                activity_temp_id=a.temp_id,
            )
            for a in self.activities
            if (a.pep_element or "").strip() and (a.amount_brl or 0) > 0
        ]

    def resolved(self) -> "DraftState":
        """
        Copy of this draft with `peps` replaced by effective_peps(), amounts
        rounded to whole reais as they will be stored.
        """
        return DraftState(
            project=self.project,
            milestones=list(self.milestones),
            activities=[
                a if a.amount_brl is None else dataclasses.replace(a, amount_brl=round_amount(a.amount_brl))
                for a in self.activities
            ],
            peps=[
                p if p.amount_brl is None else dataclasses.replace(p, amount_brl=round_amount(p.amount_brl))
                for p in self.effective_peps()
            ],
        )

    @property
    def peps_from_activities(self) -> bool:
        """True when a commit would derive the PEPs from the activities."""
        return not self.peps and self.needs_structure

    def total_pep_amount(self) -> float:
        return sum(float(p.amount_brl or 0) for p in self.effective_peps())

    def snapshot(self) -> ApprovalSnapshot:
        return ApprovalSnapshot(
            project_id=self.project.id,
            project_title=self.project.title,
            project_status=self.project.status,
            milestones_count=len(self.milestones),
            activities_count=len(self.activities),
            peps_count=len(self.effective_peps()),
            total_project_brl=self.total_pep_amount(),
            approval_year=self.project.approval_year,
            unit=self.project.unit,
        )

    # --- Mutation -----------------------------------------------------------

    def patch_project(self, **changes: Any) -> Project:
        if "status" in changes:
            raise ValidationError("Status só pode ser alterado pelo fluxo de aprovação.")
        if "id" in changes:
            raise ValidationError("Id do projeto é atribuído pelo repositório.")
        self.project = dataclasses.replace(self.project, **changes)
        return self.project

    def add_milestone(self, title: str) -> str:
        clean = to_upper_or_none(title)
        if not clean:
            raise ValidationError("Informe o título do marco.")
        temp_id = new_temp_id("ms")
        self.milestones.append(MilestoneDraft(temp_id=temp_id, title=clean))
        return temp_id

    def add_activity(self, milestone_temp_id: str, title: str, **attrs: Any) -> str:
        if self._milestone(milestone_temp_id) is None:
            raise ValidationError("Selecione um marco válido para a atividade.")
        clean = to_upper_or_none(title)
        if not clean:
            raise ValidationError("Informe o título da atividade.")
        temp_id = new_temp_id("ac")
        self.activities.append(
            ActivityDraft(
                temp_id=temp_id, title=clean, milestone_temp_id=milestone_temp_id, **attrs
            )
        )
        return temp_id

    def add_pep(
        self,
        title: str,
        year: int,
        amount_brl: float,
        activity_temp_id: Optional[str] = None,
    ) -> str:
        if not (title or "").strip():
            raise ValidationError("Informe o elemento PEP.")
        if amount_brl is None or amount_brl <= 0:
            raise ValidationError("Valor do PEP deve ser > 0.")
        if activity_temp_id is not None and self._activity(activity_temp_id) is None:
            raise ValidationError("Selecione uma atividade válida para o PEP.")
        temp_id = new_temp_id("pp")
        self.peps.append(
            PepDraft(
                temp_id=temp_id,
                title=title.strip(),
                year=int(year),
                amount_brl=amount_brl,
                activity_temp_id=activity_temp_id,
            )
        )
        return temp_id

    def remove_milestone(self, temp_id: str) -> None:
        """Remove a milestone together with its activities and their PEPs."""
        doomed = [a.temp_id for a in self.activities if a.milestone_temp_id == temp_id]
        for activity_temp_id in doomed:
            self.remove_activity(activity_temp_id)
        self.milestones = [m for m in self.milestones if m.temp_id != temp_id]

    def remove_activity(self, temp_id: str) -> None:
        self.peps = [p for p in self.peps if p.activity_temp_id != temp_id]
        self.activities = [a for a in self.activities if a.temp_id != temp_id]

    def remove_pep(self, temp_id: str) -> None:
        self.peps = [p for p in self.peps if p.temp_id != temp_id]

    def _milestone(self, temp_id: str) -> Optional[MilestoneDraft]:
        return next((m for m in self.milestones if m.temp_id == temp_id), None)

    def _activity(self, temp_id: str) -> Optional[ActivityDraft]:
        return next((a for a in self.activities if a.temp_id == temp_id), None)
