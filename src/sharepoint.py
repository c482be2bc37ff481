"""
sharepoint.py

Document-list implementation of the Repository Port, over the SharePoint
REST API (`/_api/web/lists/getbytitle('<list>')/items`).

Sections
--------
- ListClient        – thin httpx.AsyncClient wrapper: OData headers, request
                      digest cache, error mapping, @odata.nextLink paging
- SchemaProvider    – TTL cache of each list's field internal names; prunes
                      write payloads to the fields the list really has
- Wire mapping      – dataclass <-> list item field names
- Repositories      – one per entity kind + SharePointRepositories bundle

Design notes
------------
- Every non-2xx response becomes RepositoryError(status, body).  Transport
  failures (timeouts, connection errors) become RepositoryError(0, message).
- Writes go through POST with X-HTTP-Method MERGE/DELETE, as the list API
  expects.  The request digest is opaque: it is fetched from
  /_api/contextinfo and reused for 25 minutes.
- The adapter never retries.  The commit orchestrator owns failure handling.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import quote

import httpx

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
from model import Activity, Milestone, Pep, Project
from settings import Settings

logger = logging.getLogger(__name__)

ODATA_JSON = "application/json;odata=nometadata"
DIGEST_TTL_SECONDS = 25 * 60
PEP_BATCH_CHUNK = 20


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

class ListClient:
    def __init__(
        self,
        site_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.site_url = site_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._clock = clock
        self._digest: Optional[Tuple[str, float]] = None

    def list_url(self, list_title: str, suffix: str = "items") -> str:
        return f"{self.site_url}/_api/web/lists/getbytitle('{quote(list_title)}')/{suffix}"

    def item_url(self, list_title: str, item_id: int) -> str:
        return self.list_url(list_title, f"items({int(item_id)})")

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise RepositoryError(0, f"{method} {url}: {exc}") from exc
        if not response.is_success:
            raise RepositoryError(response.status_code, response.text or response.reason_phrase)
        return response

    async def get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        response = await self._send("GET", url, params=params, headers={"Accept": ODATA_JSON})
        return response.json()

    async def get_all(
        self, url: str, params: Optional[Dict[str, str]] = None, max_pages: int = 20
    ) -> Tuple[List[Dict[str, Any]], bool]:
        """Follow @odata.nextLink up to `max_pages`.  Returns (rows, truncated)."""
        rows: List[Dict[str, Any]] = []
        next_url: Optional[str] = url
        pages = 0
        while next_url and pages < max_pages:
            data = await self.get_json(next_url, params if pages == 0 else None)
            rows.extend(data.get("value") or [])
            next_url = _next_link(data)
            pages += 1
        return rows, bool(next_url)

    async def digest(self) -> str:
        now = self._clock()
        if self._digest and now < self._digest[1]:
            return self._digest[0]
        response = await self._send(
            "POST", f"{self.site_url}/_api/contextinfo", headers={"Accept": ODATA_JSON}
        )
        value = str(response.json().get("FormDigestValue") or "")
        self._digest = (value, now + DIGEST_TTL_SECONDS)
        return value

    async def _write_headers(self, http_method: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Accept": ODATA_JSON,
            "Content-Type": ODATA_JSON,
            "X-RequestDigest": await self.digest(),
        }
        if http_method:
            headers["IF-MATCH"] = "*"
            headers["X-HTTP-Method"] = http_method
        return headers

    async def create_item(self, list_title: str, body: Dict[str, Any]) -> int:
        response = await self._send(
            "POST", self.list_url(list_title), json=body, headers=await self._write_headers()
        )
        created = response.json()
        if created.get("Id") is None:
            raise RepositoryError(response.status_code, f"{list_title}: create returned no Id.")
        return int(created["Id"])

    async def merge_item(self, list_title: str, item_id: int, body: Dict[str, Any]) -> None:
        await self._send(
            "POST",
            self.item_url(list_title, item_id),
            json=body,
            headers=await self._write_headers("MERGE"),
        )

    async def delete_item(self, list_title: str, item_id: int) -> None:
        await self._send(
            "POST", self.item_url(list_title, item_id), headers=await self._write_headers("DELETE")
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def _next_link(data: Dict[str, Any]) -> Optional[str]:
    return (
        data.get("odata.nextLink")
        or data.get("@odata.nextLink")
        or data.get("__next")
        or (data.get("d") or {}).get("__next")
    )


def escape_odata(value: str) -> str:
    return value.replace("'", "''")


# ---------------------------------------------------------------------------
# Schema provider
# ---------------------------------------------------------------------------

class SchemaProvider:
    """Caches the visible field internal names of each list for `ttl` seconds."""

    def __init__(
        self,
        client: ListClient,
        ttl: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client = client
        self._ttl = ttl
        self._clock = clock
        self._cache: Dict[str, Tuple[float, Set[str]]] = {}

    async def fields(self, list_title: str) -> Set[str]:
        key = list_title.lower()
        now = self._clock()
        cached = self._cache.get(key)
        if cached and now - cached[0] < self._ttl:
            return cached[1]

        rows, _ = await self._client.get_all(
            self._client.list_url(list_title, "fields"),
            {"$select": "InternalName", "$filter": "Hidden eq false"},
        )
        names = {r["InternalName"] for r in rows if r.get("InternalName")}
        self._cache[key] = (now, names)
        return names

    async def prune(self, list_title: str, body: Dict[str, Any]) -> Dict[str, Any]:
        known = await self.fields(list_title)
        dropped = sorted(k for k in body if k not in known)
        if dropped:
            logger.debug("Dropping fields unknown to list %s: %s", list_title, ", ".join(dropped))
        return {k: v for k, v in body.items() if k in known}

    async def missing_fields(self, list_title: str, expected: Iterable[str]) -> List[str]:
        known = await self.fields(list_title)
        return [name for name in expected if name not in known]

    def clear(self, list_title: Optional[str] = None) -> None:
        if list_title is None:
            self._cache.clear()
        else:
            self._cache.pop(list_title.lower(), None)


# ---------------------------------------------------------------------------
# Wire mapping
# ---------------------------------------------------------------------------

def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


_PROJECT_WIRE = {
    f.name: ("Title" if f.name == "title" else _camel(f.name))
    for f in dataclasses.fields(Project)
    if f.name != "id"
}
_MILESTONE_WIRE = {"title": "Title", "project_id": "projectsIdId"}
_ACTIVITY_WIRE = {
    "title": "Title",
    "project_id": "projectsIdId",
    "milestone_id": "milestonesIdId",
    "start_date": "startDate",
    "end_date": "endDate",
    "supplier": "supplier",
    "activity_description": "activityDescription",
}
_PEP_WIRE = {
    "title": "Title",
    "project_id": "projectsIdId",
    "activity_id": "activitiesIdId",
    "year": "year",
    "amount_brl": "amountBrl",
}

_INT_FIELDS = {
    "project_id", "milestone_id", "activity_id", "budget_brl", "approval_year", "year", "amount_brl",
}
_FLOAT_FIELDS = {"roce_gain", "roce_loss"}
_DATE_FIELDS = {"start_date", "end_date"}


def _wire_value(value: Any) -> Any:
    if isinstance(value, date):
        return f"{value.isoformat()}T00:00:00Z"
    return value


def to_wire(values: Dict[str, Any], mapping: Dict[str, str], drop_none: bool = False) -> Dict[str, Any]:
    return {
        mapping[k]: _wire_value(v)
        for k, v in values.items()
        if k in mapping and not (drop_none and v is None)
    }


def _domain_value(name: str, raw: Any) -> Any:
    if raw is None or raw == "":
        return None
    if name in _DATE_FIELDS:
        return date.fromisoformat(str(raw)[:10])
    if name in _INT_FIELDS:
        return int(float(raw))
    if name in _FLOAT_FIELDS:
        return float(raw)
    return raw


def from_wire(cls, row: Dict[str, Any], mapping: Dict[str, str]):
    kwargs = {name: _domain_value(name, row.get(wire)) for name, wire in mapping.items()}
    if kwargs.get("title") is None:
        kwargs["title"] = ""
    return cls(id=int(row["Id"]), **kwargs)


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------

class _ListRepository:
    entity_cls: type
    mapping: Dict[str, str]

    def __init__(
        self,
        client: ListClient,
        schema: SchemaProvider,
        list_title: str,
        page_size: int = 500,
        max_pages: int = 20,
    ):
        self._client = client
        self._schema = schema
        self.list_title = list_title
        self.page_size = page_size
        self.max_pages = max_pages
        self._select = ",".join(["Id", *self.mapping.values()])

    async def create(self, entity) -> int:
        values = dataclasses.asdict(entity)
        values.pop("id", None)
        body = await self._schema.prune(self.list_title, to_wire(values, self.mapping, drop_none=True))
        return await self._client.create_item(self.list_title, body)

    async def update(self, entity_id: int, patch: Dict[str, Any]) -> None:
        body = await self._schema.prune(self.list_title, to_wire(patch, self.mapping))
        await self._client.merge_item(self.list_title, entity_id, body)

    async def delete(self, entity_id: int) -> None:
        await self._client.delete_item(self.list_title, entity_id)

    async def get_by_id(self, entity_id: int):
        try:
            row = await self._client.get_json(
                self._client.item_url(self.list_title, entity_id), {"$select": self._select}
            )
        except RepositoryError as exc:
            if exc.status == 404:
                return None
            raise
        return from_wire(self.entity_cls, row, self.mapping)

    async def _query(self, odata_filter: str, order_by: str = "Id asc") -> list:
        rows, truncated = await self._client.get_all(
            self._client.list_url(self.list_title),
            {
                "$select": self._select,
                "$filter": odata_filter,
                "$orderby": order_by,
                "$top": str(self.page_size),
            },
            max_pages=self.max_pages,
        )
        if truncated:
            logger.warning(
                "Paging of list %s stopped after %d pages for filter: %s",
                self.list_title, self.max_pages, odata_filter,
            )
        return [from_wire(self.entity_cls, r, self.mapping) for r in rows]

    def _filters(self, filters: Dict[str, Any]) -> List[str]:
        out = []
        for name in ("project_id", "milestone_id", "activity_id"):
            if filters.get(name) is not None and name in self.mapping:
                out.append(f"{self.mapping[name]} eq {int(filters[name])}")
        return out

    async def get_page(self, query: PageQuery) -> Page:
        if query.page_token:
            data = await self._client.get_json(query.page_token)
        else:
            direction = "asc" if (query.sort_dir or "").lower() == "asc" else "desc"
            sort_by = query.sort_by or "id"
            if sort_by == "id":
                order = f"Id {direction}"
            elif sort_by in self.mapping:
                order = f"{self.mapping[sort_by]} {direction},Id {direction}"
            else:
                raise RepositoryError(400, f"Unsupported sort field: {sort_by!r}")
            params = {
                "$select": self._select,
                "$orderby": order,
                "$top": str(max(1, int(query.page_size or 20))),
            }
            clauses = self._filters(query.filters or {})
            if clauses:
                params["$filter"] = " and ".join(clauses)
            data = await self._client.get_json(self._client.list_url(self.list_title), params)
        items = [from_wire(self.entity_cls, r, self.mapping) for r in data.get("value") or []]
        return Page(items=items, next_page_token=_next_link(data))


class SharePointProjectRepository(_ListRepository, AbstractProjectRepository):
    entity_cls = Project
    mapping = _PROJECT_WIRE

    def _filters(self, filters: Dict[str, Any]) -> List[str]:
        out = []
        search = (filters.get("search_title") or "").strip()
        if search:
            out.append(f"startswith(Title,'{escape_odata(search)}')")
        for name in ("status", "unit"):
            value = (filters.get(name) or "").strip()
            if value:
                out.append(f"{self.mapping[name]} eq '{escape_odata(value)}'")
        return out


class SharePointMilestoneRepository(_ListRepository, AbstractMilestoneRepository):
    entity_cls = Milestone
    mapping = _MILESTONE_WIRE

    async def get_by_parent(self, project_id: int) -> List[Milestone]:
        return await self._query(f"projectsIdId eq {int(project_id)}")


class SharePointActivityRepository(_ListRepository, AbstractActivityRepository):
    entity_cls = Activity
    mapping = _ACTIVITY_WIRE

    async def get_by_parent(self, milestone_id: int) -> List[Activity]:
        return await self._query(f"milestonesIdId eq {int(milestone_id)}")

    async def list_for_project(self, project_id: int) -> List[Activity]:
        return await self._query(f"projectsIdId eq {int(project_id)}")


class SharePointPepRepository(_ListRepository, AbstractPepRepository):
    entity_cls = Pep
    mapping = _PEP_WIRE

    def __init__(self, *args, max_concurrent: int = 4, **kwargs):
        super().__init__(*args, **kwargs)
        self.max_concurrent = max(1, max_concurrent)

    async def get_by_parent(self, activity_id: int) -> List[Pep]:
        return await self._query(f"activitiesIdId eq {int(activity_id)}", "Id desc")

    async def list_for_project(
        self, project_id: int, activity_ids: Optional[List[int]] = None
    ) -> List[Pep]:
        """
        All PEPs of a project, optionally restricted to some activities.

        Large activity sets are split into OR-filters of PEP_BATCH_CHUNK ids,
        fetched with at most `max_concurrent` requests in flight.  Rows are
        de-duplicated by id.
        """
        base = f"projectsIdId eq {int(project_id)}"
        if not activity_ids:
            return await self._query(base, "Id desc")

        ids = [int(i) for i in activity_ids]
        chunks = [ids[i:i + PEP_BATCH_CHUNK] for i in range(0, len(ids), PEP_BATCH_CHUNK)]
        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def fetch(chunk: List[int]) -> List[Pep]:
            clause = " or ".join(f"activitiesIdId eq {i}" for i in chunk)
            async with semaphore:
                return await self._query(f"{base} and ({clause})", "Id desc")

        results = await asyncio.gather(*(fetch(c) for c in chunks))
        deduped: Dict[int, Pep] = {}
        for rows in results:
            for pep in rows:
                deduped[pep.id] = pep
        return list(deduped.values())


# ---------------------------------------------------------------------------
# Repository bundle
# ---------------------------------------------------------------------------

class SharePointRepositories(AbstractRepositories):
    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.client = ListClient(settings.site_url, client=http_client, timeout=settings.http_timeout)
        self.schema = SchemaProvider(self.client, ttl=settings.schema_ttl)
        self.projects = SharePointProjectRepository(self.client, self.schema, settings.projects_list)
        self.milestones = SharePointMilestoneRepository(self.client, self.schema, settings.milestones_list)
        self.activities = SharePointActivityRepository(self.client, self.schema, settings.activities_list)
        self.peps = SharePointPepRepository(self.client, self.schema, settings.peps_list)

    async def aclose(self) -> None:
        await self.client.aclose()
