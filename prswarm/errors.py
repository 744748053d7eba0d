"""Error types and helpers for prswarm."""

from __future__ import annotations

import re

import click


class SchemaNotInitializedError(click.ClickException):
    """Raised when the database schema/migrations have not been applied."""


class SwarmError(Exception):
    """Base class for errors raised by the agent runtime."""


class ContextOverflowError(SwarmError):
    """The current agent loop cannot be truncated any further to fit the model budget."""


class TransientModelError(SwarmError):
    """A provider hiccup that is worth retrying (rate limit, overload, connection reset)."""


class ModelCallError(SwarmError):
    """The model call failed for good, either permanently or after exhausting retries."""


class DomainError(SwarmError):
    """A tool-level failure the model should see and react to (e.g. self-review)."""


class NotFoundError(DomainError):
    """A referenced record (pull request, repository, experiment) does not exist."""


class UnknownToolError(DomainError):
    """No capability group exposes the requested tool name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"No tool group found to execute tool {name}")
        self.name = name


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        message = str(e)
        match = _PG_MISSING_RELATION_RE.search(message) or _SQLITE_MISSING_TABLE_RE.search(message)
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table / missing-schema error."""
    if missing_table_name(exc):
        return True

    # Fallback for drivers that don't format errors consistently.
    for e in _unwrap_exception_chain(exc):
        message = str(e).lower()
        if "undefinedtableerror" in message:
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"Database schema is not initialized{table_hint}.",
        "Run: `alembic upgrade head`",
        "Or for a local database: `prswarm init-db`",
    ]
    return "\n".join(lines)
