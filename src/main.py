"""
main.py

Entry point for the CAPEX Project Structure API.

Reads settings from the environment, wires the chosen Repository Port
backend into the FastAPI app and starts uvicorn.

Usage
-----
    # Option 1 — run directly
    python main.py

    # Option 2 — run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

    # Option 3 — against a SharePoint site
    CAPEX_BACKEND=sharepoint CAPEX_SITE_URL=https://tenant.sharepoint.com/sites/capex \
        uvicorn main:app --port 8000

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI  (try every endpoint interactively)
    http://localhost:8000/redoc     ← ReDoc
    http://localhost:8000/health    ← liveness check

Quick-start walkthrough (use Swagger UI or curl)
-------------------------------------------------
1.  POST /api/v1/projects/commit             — project + milestones/activities/PEPs
                                               (PEP sum must equal budget_brl)
2.  GET  /api/v1/projects/{id}/timeline      — the persisted structure
3.  GET  /api/v1/projects/{id}/approval-rules
4.  POST /api/v1/projects/{id}/back-to-draft — reopen for edits
5.  GET  /api/v1/projects/{id}/draft         — editable draft with temporary ids
"""

import logging

import uvicorn

from api import app, get_repositories
from settings import load_settings

settings = load_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Wire the concrete repositories into the FastAPI dependency system.
# ---------------------------------------------------------------------------

if settings.backend == "sharepoint":
    from sharepoint import SharePointRepositories

    repositories = SharePointRepositories(settings)
else:
    from infrastructure import InMemoryRepositories

    repositories = InMemoryRepositories()

app.dependency_overrides[get_repositories] = lambda: repositories
logger.info("Using %s backend", settings.backend)


@app.on_event("shutdown")
async def close_repositories():
    await repositories.aclose()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=True,          # auto-reload on file changes during development
        log_level=settings.log_level.lower(),
    )
