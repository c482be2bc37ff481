"""
infrastructure.py

In-memory implementation of the Repository Port.

This is a self-contained, zero-dependency backend that stores everything in
plain Python dicts keyed by an auto-incremented integer id, the way the list
backend assigns item ids.  It is suitable for local development, demos and
tests without a SharePoint site.

Like the real backend, every call commits on its own: there is no
transaction, so the commit orchestrator's compensation is exercised exactly
as it would be in production.

To use the document-list backend instead, set CAPEX_BACKEND=sharepoint (see
main.py); nothing in service.py, application.py, commit.py or api.py changes.
"""

from __future__ import annotations

import dataclasses
import itertools
from typing import Any, Dict, List, Optional

from application import (
    AbstractActivityRepository,
    AbstractMilestoneRepository,
    AbstractPepRepository,
    AbstractProjectRepository,
    AbstractRepositories,
    Page,
    PageQuery,
    RepositoryError,
)
from service import normalize_status


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

class _Store(dict):
    """A plain dict with id assignment and typed get/save/delete helpers."""

    def __init__(self, name: str):
        super().__init__()
        self.name = name
        self._ids = itertools.count(1)

    def insert(self, obj) -> int:
        new_id = next(self._ids)
        self[new_id] = dataclasses.replace(obj, id=new_id)
        return new_id

    def fetch(self, key: int):
        obj = self.get(key)
        return dataclasses.replace(obj) if obj is not None else None

    def patch(self, key: int, changes: Dict[str, Any]) -> None:
        if key not in self:
            raise RepositoryError(404, f"{self.name} #{key} not found.")
        changes = {k: v for k, v in changes.items() if k != "id"}
        try:
            self[key] = dataclasses.replace(self[key], **changes)
        except TypeError as exc:
            raise RepositoryError(400, str(exc)) from exc

    def remove(self, key: int) -> None:
        if self.pop(key, None) is None:
            raise RepositoryError(404, f"{self.name} #{key} not found.")

    def all(self) -> list:
        return [dataclasses.replace(o) for o in self.values()]

    def where(self, **attrs) -> list:
        return [o for o in self.all() if all(getattr(o, k) == v for k, v in attrs.items())]


def _page(items: list, query: PageQuery) -> Page:
    """Sort (id as tie-breaker), then slice by the offset carried in page_token."""
    sort_by = query.sort_by or "id"

    def key(o):
        value = getattr(o, sort_by, None)
        return (value is None, value if value is not None else "", o.id)

    items = sorted(
        items,
        key=key,
        reverse=(query.sort_dir or "desc").lower() == "desc",
    )
    try:
        offset = int(query.page_token) if query.page_token else 0
    except ValueError as exc:
        raise RepositoryError(400, f"Invalid page token: {query.page_token!r}") from exc
    size = max(1, int(query.page_size or 20))
    chunk = items[offset:offset + size]
    next_offset = offset + size
    return Page(items=chunk, next_page_token=str(next_offset) if next_offset < len(items) else None)


def _matches_children(obj, filters: Dict[str, Any]) -> bool:
    for key in ("project_id", "milestone_id", "activity_id"):
        if filters.get(key) is not None and getattr(obj, key, None) != int(filters[key]):
            return False
    return True


# ---------------------------------------------------------------------------
# Shared in-memory database (module-level singleton)
# Rows live as long as the process; tests build their own InMemoryDatabase.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self):
        self.projects:   _Store = _Store("project")
        self.milestones: _Store = _Store("milestone")
        self.activities: _Store = _Store("activity")
        self.peps:       _Store = _Store("pep")


# Default database behind InMemoryRepositories()
_db = InMemoryDatabase()


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class InMemoryProjectRepository(AbstractProjectRepository):
    def __init__(self, store: _Store): self._s = store
    async def create(self, project):            return self._s.insert(project)
    async def update(self, project_id, patch):  self._s.patch(project_id, patch)
    async def delete(self, project_id):         self._s.remove(project_id)
    async def get_by_id(self, project_id):      return self._s.fetch(project_id)

    async def get_page(self, query: PageQuery) -> Page:
        filters = query.filters or {}
        prefix = (filters.get("search_title") or "").strip().lower()
        status = normalize_status(filters.get("status"))
        unit = filters.get("unit")
        items = [
            p for p in self._s.all()
            if (not prefix or (p.title or "").lower().startswith(prefix))
            and (not status or normalize_status(p.status) == status)
            and (not unit or p.unit == unit)
        ]
        return _page(items, query)


class InMemoryMilestoneRepository(AbstractMilestoneRepository):
    def __init__(self, store: _Store): self._s = store
    async def create(self, milestone):            return self._s.insert(milestone)
    async def update(self, milestone_id, patch):  self._s.patch(milestone_id, patch)
    async def delete(self, milestone_id):         self._s.remove(milestone_id)
    async def get_by_id(self, milestone_id):      return self._s.fetch(milestone_id)
    async def get_by_parent(self, project_id):
        return sorted(self._s.where(project_id=project_id), key=lambda m: m.id)
    async def get_page(self, query):
        return _page([m for m in self._s.all() if _matches_children(m, query.filters)], query)


class InMemoryActivityRepository(AbstractActivityRepository):
    def __init__(self, store: _Store): self._s = store
    async def create(self, activity):            return self._s.insert(activity)
    async def update(self, activity_id, patch):  self._s.patch(activity_id, patch)
    async def delete(self, activity_id):         self._s.remove(activity_id)
    async def get_by_id(self, activity_id):      return self._s.fetch(activity_id)
    async def get_by_parent(self, milestone_id):
        return sorted(self._s.where(milestone_id=milestone_id), key=lambda a: a.id)
    async def list_for_project(self, project_id):
        return sorted(self._s.where(project_id=project_id), key=lambda a: a.id)
    async def get_page(self, query):
        return _page([a for a in self._s.all() if _matches_children(a, query.filters)], query)


class InMemoryPepRepository(AbstractPepRepository):
    def __init__(self, store: _Store): self._s = store
    async def create(self, pep):            return self._s.insert(pep)
    async def update(self, pep_id, patch):  self._s.patch(pep_id, patch)
    async def delete(self, pep_id):         self._s.remove(pep_id)
    async def get_by_id(self, pep_id):      return self._s.fetch(pep_id)
    async def get_by_parent(self, activity_id):
        return sorted(self._s.where(activity_id=activity_id), key=lambda p: p.id)

    async def list_for_project(self, project_id, activity_ids: Optional[List[int]] = None):
        peps = self._s.where(project_id=project_id)
        if activity_ids is not None:
            wanted = set(activity_ids)
            peps = [p for p in peps if p.activity_id in wanted]
        return sorted(peps, key=lambda p: p.id)

    async def get_page(self, query):
        return _page([p for p in self._s.all() if _matches_children(p, query.filters)], query)


# ---------------------------------------------------------------------------
# Repository bundle
# ---------------------------------------------------------------------------

class InMemoryRepositories(AbstractRepositories):
    """Wraps the four in-memory repositories over one InMemoryDatabase."""

    def __init__(self, db: InMemoryDatabase = _db):
        self.db         = db
        self.projects   = InMemoryProjectRepository(db.projects)
        self.milestones = InMemoryMilestoneRepository(db.milestones)
        self.activities = InMemoryActivityRepository(db.activities)
        self.peps       = InMemoryPepRepository(db.peps)
