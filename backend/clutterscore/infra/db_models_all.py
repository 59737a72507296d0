"""
Import all ORM model modules so SQLAlchemy can resolve string relationships and so
`Base.metadata` is complete for the job runner, alembic and the test harness.
"""

from __future__ import annotations

import importlib

_DOMAINS: tuple[str, ...] = (
    "tenants",
    "integrations",
    "activity",
    "audit",
    "playbooks",
    "archives",
    "job_events",
)


def import_all_db_models() -> None:
    for domain in _DOMAINS:
        importlib.import_module(f"clutterscore.domain.{domain}.db_models")


import_all_db_models()
