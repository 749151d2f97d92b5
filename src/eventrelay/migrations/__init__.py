"""
Database schema for the eventrelay library.

This module provides the SQL schema templates for the tables the event
record repositories need.

Tables:
    - event_records: One row per appended domain event and its dispatch state
    - event_record_sequences: Per-aggregate sequence counters (PostgreSQL only)

Supported backends:
    - postgresql (default)
    - sqlite

Usage:
    from eventrelay.migrations import get_schema

    # PostgreSQL
    async with engine.begin() as conn:
        for statement in split_statements(get_schema()):
            await conn.execute(text(statement))

    # SQLite
    await connection.executescript(get_schema("sqlite"))
"""

from pathlib import Path
from typing import Literal

# Supported database backends
BackendName = Literal["postgresql", "sqlite"]

_TEMPLATES_DIR = Path(__file__).parent / "templates"


def get_template_path(backend: BackendName = "postgresql") -> Path:
    """
    Get the path to the schema template of a backend.

    Raises:
        ValueError: If the backend is not supported
    """
    if backend == "postgresql":
        return _TEMPLATES_DIR / "event_records.sql"
    if backend == "sqlite":
        return _TEMPLATES_DIR / "sqlite" / "event_records.sql"
    raise ValueError(f"Unsupported backend '{backend}'. Available backends: {list_backends()}")


def get_schema(backend: BackendName = "postgresql") -> str:
    """
    Get the schema SQL for a backend.

    Args:
        backend: The database backend (postgresql, sqlite). Defaults to postgresql.

    Returns:
        The SQL statements as a single string

    Raises:
        ValueError: If the backend is not supported
    """
    return get_template_path(backend).read_text()


def split_statements(sql: str) -> list[str]:
    """
    Split a schema into individual statements.

    asyncpg executes one statement per call. Comment lines are dropped; the
    templates contain no semicolons inside statements.
    """
    lines = [line for line in sql.splitlines() if not line.lstrip().startswith("--")]
    return [statement.strip() for statement in "\n".join(lines).split(";") if statement.strip()]


def list_backends() -> list[str]:
    """List the supported database backends."""
    return ["postgresql", "sqlite"]


__all__ = [
    "BackendName",
    "get_schema",
    "get_template_path",
    "list_backends",
    "split_statements",
]
