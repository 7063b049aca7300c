"""Persistence layer for loomwork workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import LoomworkConfig, load_config
from .inmemory import InMemoryWorkflowStore
from .models import CallRecord, KeyValueEntry, KeyValueScope, WorkflowRecord, latest_attempts
from .sqlite import SQLiteWorkflowStore
from .store import WorkflowStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresWorkflowStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresWorkflowStore = None  # type: ignore


def get_store(
    database_url: Optional[str] = None, config: Optional[LoomworkConfig] = None
) -> WorkflowStore:
    """Factory function to obtain a workflow store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``LOOMWORK_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned. Every call builds a new
    store; callers own and inject it.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("LOOMWORK_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryWorkflowStore()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteWorkflowStore(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresWorkflowStore is None:
            raise RuntimeError("Postgres support not available, install loomwork[postgres]")
        return PostgresWorkflowStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "CallRecord",
    "KeyValueEntry",
    "KeyValueScope",
    "WorkflowRecord",
    "WorkflowStore",
    "InMemoryWorkflowStore",
    "SQLiteWorkflowStore",
    "PostgresWorkflowStore",
    "get_store",
    "latest_attempts",
]
