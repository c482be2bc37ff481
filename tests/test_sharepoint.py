"""
Tests for the SharePoint list adapter, against httpx.MockTransport.
"""

import logging
from datetime import date
from urllib.parse import unquote

import httpx
import pytest

from application import PageQuery, RepositoryError
from model import Activity, Milestone, Project
from settings import Settings
from sharepoint import (
    ListClient,
    SchemaProvider,
    SharePointRepositories,
    escape_odata,
    from_wire,
    to_wire,
    _ACTIVITY_WIRE,
)

SITE = "https://tenant.example.com/sites/capex"

FIELDS = {
    "milestones": ["Title", "projectsIdId"],
    "activities": ["Title", "projectsIdId", "milestonesIdId", "startDate", "endDate"],
    "projects": ["Title", "budgetBrl", "status", "unit"],
    "peps": ["Title", "projectsIdId", "activitiesIdId", "year", "amountBrl"],
}


def list_name(request: httpx.Request) -> str:
    path = unquote(request.url.path)
    start = path.index("getbytitle('") + len("getbytitle('")
    return path[start:path.index("')", start)]


class FakeSite:
    """Records requests and answers the list API calls the adapter makes."""

    def __init__(self):
        self.requests = []
        self.created = []
        self.next_id = 100
        self.routes = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/_api/contextinfo"):
            return httpx.Response(200, json={"FormDigestValue": "digest-1"})
        if path.endswith("/fields"):
            names = FIELDS[list_name(request)]
            return httpx.Response(200, json={"value": [{"InternalName": n} for n in names]})
        for (method, suffix), responder in self.routes.items():
            if request.method == method and path.endswith(suffix):
                return responder(request)
        if request.method == "POST" and path.endswith("/items"):
            self.next_id += 1
            self.created.append((list_name(request), request))
            return httpx.Response(201, json={"Id": self.next_id})
        if request.method == "POST" and "X-HTTP-Method" in request.headers:
            return httpx.Response(204)
        return httpx.Response(404, text="not found")

    def count(self, suffix: str) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith(suffix))


@pytest.fixture
def site():
    return FakeSite()


@pytest.fixture
def sp(site):
    settings = Settings(backend="sharepoint", site_url=SITE)
    return SharePointRepositories(settings, http_client=httpx.AsyncClient(transport=httpx.MockTransport(site)))


class TestWrites:
    @pytest.mark.asyncio
    async def test_create_sends_wire_names_and_reuses_digest(self, sp, site):
        first = await sp.milestones.create(Milestone(project_id=7, title="FASE 1"))
        second = await sp.milestones.create(Milestone(project_id=7, title="FASE 2"))

        assert (first, second) == (101, 102)
        assert site.count("/_api/contextinfo") == 1
        _, request = site.created[0]
        assert request.headers["X-RequestDigest"] == "digest-1"
        assert request.headers["Accept"] == "application/json;odata=nometadata"
        body = httpx.Response(200, content=request.read()).json()
        assert body == {"Title": "FASE 1", "projectsIdId": 7}

    @pytest.mark.asyncio
    async def test_activity_dates_are_sent_as_utc_midnight(self, sp, site):
        await sp.activities.create(
            Activity(project_id=7, milestone_id=3, title="MONTAGEM", start_date=date(2025, 1, 10))
        )
        _, request = site.created[0]
        body = httpx.Response(200, content=request.read()).json()
        assert body["startDate"] == "2025-01-10T00:00:00Z"
        assert "endDate" not in body

    @pytest.mark.asyncio
    async def test_payload_pruned_to_list_fields(self, sp, site):
        await sp.projects.create(Project(title="LINHA", budget_brl=10, unit="MG", company="ACME"))
        _, request = site.created[0]
        body = httpx.Response(200, content=request.read()).json()
        assert body == {"Title": "LINHA", "budgetBrl": 10, "status": "Rascunho", "unit": "MG"}

    @pytest.mark.asyncio
    async def test_update_and_delete_use_http_method_override(self, sp, site):
        await sp.projects.update(5, {"status": "Em Aprovação"})
        await sp.peps.delete(9)

        merge, delete = [r for r in site.requests if "X-HTTP-Method" in r.headers]
        assert merge.headers["X-HTTP-Method"] == "MERGE"
        assert merge.headers["IF-MATCH"] == "*"
        assert merge.url.path.endswith("/items(5)")
        assert delete.headers["X-HTTP-Method"] == "DELETE"
        assert delete.url.path.endswith("/items(9)")


class TestErrors:
    @pytest.mark.asyncio
    async def test_http_error_becomes_repository_error(self, sp, site):
        site.routes[("POST", "/items")] = lambda r: httpx.Response(500, text="list is read-only")
        with pytest.raises(RepositoryError) as info:
            await sp.milestones.create(Milestone(project_id=1, title="M"))
        assert info.value.status == 500
        assert "read-only" in info.value.message

    @pytest.mark.asyncio
    async def test_transport_error_has_status_zero(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        client = ListClient(SITE, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(RepositoryError) as info:
            await client.get_json(client.list_url("projects"))
        assert info.value.status == 0

    @pytest.mark.asyncio
    async def test_missing_item_reads_as_none(self, sp):
        assert await sp.projects.get_by_id(404) is None


class TestReads:
    @pytest.mark.asyncio
    async def test_follows_next_link(self, sp, site):
        next_link = f"{SITE}/_api/web/lists/getbytitle('milestones')/items?$skiptoken=page2"

        def items(request):
            if request.url.params.get("$skiptoken") == "page2":
                return httpx.Response(200, json={"value": [{"Id": 2, "Title": "B", "projectsIdId": 7}]})
            assert request.url.params["$filter"] == "projectsIdId eq 7"
            return httpx.Response(
                200,
                json={"value": [{"Id": 1, "Title": "A", "projectsIdId": 7}], "odata.nextLink": next_link},
            )

        site.routes[("GET", "/items")] = items
        milestones = await sp.milestones.get_by_parent(7)
        assert [(m.id, m.title, m.project_id) for m in milestones] == [(1, "A", 7), (2, "B", 7)]

    @pytest.mark.asyncio
    async def test_truncated_paging_is_logged(self, sp, site, caplog):
        def items(request):
            return httpx.Response(
                200,
                json={"value": [{"Id": 1, "Title": "A"}], "@odata.nextLink": str(request.url)},
            )

        site.routes[("GET", "/items")] = items
        sp.activities.max_pages = 2
        with caplog.at_level(logging.WARNING, logger="sharepoint"):
            rows = await sp.activities.list_for_project(7)
        assert len(rows) == 2
        assert "stopped after 2 pages" in caplog.text

    @pytest.mark.asyncio
    async def test_pep_batch_is_chunked_and_deduplicated(self, sp, site):
        def items(request):
            flt = request.url.params["$filter"]
            assert flt.startswith("projectsIdId eq 7 and (activitiesIdId eq ")
            # every chunk returns the same shared PEP plus one of its own
            own = 1000 + flt.count(" or ")
            return httpx.Response(
                200,
                json={"value": [
                    {"Id": 1, "Title": "SHARED", "activitiesIdId": 1, "amountBrl": "10"},
                    {"Id": own, "Title": "OWN", "activitiesIdId": 2},
                ]},
            )

        site.routes[("GET", "/items")] = items
        peps = await sp.peps.list_for_project(7, activity_ids=list(range(1, 46)))

        assert site.count("/items") == 3
        ids = sorted(p.id for p in peps)
        assert ids == [1, 1004, 1019]
        shared = next(p for p in peps if p.id == 1)
        assert shared.amount_brl == 10

    @pytest.mark.asyncio
    async def test_project_page_query(self, sp, site):
        def items(request):
            params = request.url.params
            assert params["$filter"] == "startswith(Title,'D''AVILA') and status eq 'Rascunho'"
            assert params["$orderby"] == "Title asc,Id asc"
            assert params["$top"] == "5"
            return httpx.Response(
                200,
                json={
                    "value": [{"Id": 3, "Title": "D'AVILA", "budgetBrl": 1500000.0, "startDate": "2025-02-01T00:00:00Z"}],
                    "odata.nextLink": "https://next",
                },
            )

        site.routes[("GET", "/items")] = items
        page = await sp.projects.get_page(
            PageQuery(
                filters={"search_title": "D'AVILA", "status": "Rascunho"},
                sort_by="title", sort_dir="asc", page_size=5,
            )
        )
        project = page.items[0]
        assert project.budget_brl == 1_500_000
        assert project.start_date == date(2025, 2, 1)
        assert page.next_page_token == "https://next"


class TestSchemaProvider:
    @pytest.mark.asyncio
    async def test_fields_cached_until_ttl(self, site):
        now = [0.0]
        client = ListClient(SITE, client=httpx.AsyncClient(transport=httpx.MockTransport(site)))
        schema = SchemaProvider(client, ttl=600, clock=lambda: now[0])

        await schema.fields("peps")
        await schema.fields("PEPS")
        assert site.count("/fields") == 1

        now[0] = 601
        await schema.fields("peps")
        assert site.count("/fields") == 2

        schema.clear("peps")
        await schema.fields("peps")
        assert site.count("/fields") == 3

    @pytest.mark.asyncio
    async def test_missing_fields(self, site):
        client = ListClient(SITE, client=httpx.AsyncClient(transport=httpx.MockTransport(site)))
        schema = SchemaProvider(client)
        missing = await schema.missing_fields("milestones", ["Title", "projectsIdId", "ownerId"])
        assert missing == ["ownerId"]


def test_wire_round_trip_helpers():
    wire = to_wire({"title": "X", "start_date": date(2025, 1, 2), "supplier": None}, _ACTIVITY_WIRE, drop_none=True)
    assert wire == {"Title": "X", "startDate": "2025-01-02T00:00:00Z"}
    activity = from_wire(Activity, {"Id": "4", "Title": None, "milestonesIdId": 2.0}, _ACTIVITY_WIRE)
    assert (activity.id, activity.title, activity.milestone_id) == (4, "", 2)
    assert escape_odata("it's") == "it''s"
