"""Database helpers for HealthTracker."""

from __future__ import annotations

from typing import Optional

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from .config import DatabaseSettings, get_database_settings
from .models import BOOKKEEPING_FIELDS, VISIT_FIELDS, doctor_visits, metadata


def create_database_engine(settings: Optional[DatabaseSettings] = None) -> Engine:
    """Create an engine for *settings* (or the environment defaults)."""

    resolved = settings or get_database_settings()
    return sa.create_engine(resolved.url, **resolved.engine_options())


def initialise_schema(engine: Engine) -> None:
    """Create any missing tables."""

    metadata.create_all(engine)


__all__ = [
    "DatabaseSettings",
    "get_database_settings",
    "create_database_engine",
    "initialise_schema",
    "metadata",
    "doctor_visits",
    "VISIT_FIELDS",
    "BOOKKEEPING_FIELDS",
]
