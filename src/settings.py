"""
settings.py

Runtime configuration, read once from environment variables.

    CAPEX_BACKEND           memory | sharepoint          (default: memory)
    CAPEX_SITE_URL          SharePoint site root, e.g. https://tenant.sharepoint.com/sites/capex
    CAPEX_PROJECTS_LIST     list title for projects      (default: projects)
    CAPEX_MILESTONES_LIST   list title for milestones    (default: milestones)
    CAPEX_ACTIVITIES_LIST   list title for activities    (default: activities)
    CAPEX_PEPS_LIST         list title for PEPs          (default: peps)
    CAPEX_HTTP_TIMEOUT      seconds per HTTP call        (default: 30)
    CAPEX_SCHEMA_TTL        seconds to cache list fields (default: 600)
    CAPEX_LOG_LEVEL         logging level name           (default: INFO)
    CAPEX_HOST / CAPEX_PORT uvicorn bind address         (default: 127.0.0.1:8000)
"""

import os
from dataclasses import dataclass

BACKENDS = ("memory", "sharepoint")


@dataclass(frozen=True)
class Settings:
    backend: str = "memory"
    site_url: str = ""
    projects_list: str = "projects"
    milestones_list: str = "milestones"
    activities_list: str = "activities"
    peps_list: str = "peps"
    http_timeout: float = 30.0
    schema_ttl: float = 600.0
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000


def load_settings() -> Settings:
    backend = os.getenv("CAPEX_BACKEND", "memory").strip().lower()
    if backend not in BACKENDS:
        raise ValueError(f"CAPEX_BACKEND must be one of {BACKENDS}, got {backend!r}")

    site_url = os.getenv("CAPEX_SITE_URL", "").rstrip("/")
    if backend == "sharepoint" and not site_url:
        raise ValueError("CAPEX_SITE_URL is required when CAPEX_BACKEND=sharepoint")

    return Settings(
        backend=backend,
        site_url=site_url,
        projects_list=os.getenv("CAPEX_PROJECTS_LIST", "projects"),
        milestones_list=os.getenv("CAPEX_MILESTONES_LIST", "milestones"),
        activities_list=os.getenv("CAPEX_ACTIVITIES_LIST", "activities"),
        peps_list=os.getenv("CAPEX_PEPS_LIST", "peps"),
        http_timeout=float(os.getenv("CAPEX_HTTP_TIMEOUT", "30")),
        schema_ttl=float(os.getenv("CAPEX_SCHEMA_TTL", "600")),
        log_level=os.getenv("CAPEX_LOG_LEVEL", "INFO").upper(),
        host=os.getenv("CAPEX_HOST", "127.0.0.1"),
        port=int(os.getenv("CAPEX_PORT", "8000")),
    )
