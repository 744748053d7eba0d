"""Shared test fixtures and configuration for pytest."""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio

from prswarm import db
from prswarm.config import settings
from prswarm.models import Experiment
from prswarm.tools.base import ToolContext


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    """Per-test sqlite database file."""
    return f"sqlite+aiosqlite:///{tmp_path / 'prswarm.db'}"


@pytest_asyncio.fixture
async def database(sqlite_url: str) -> AsyncGenerator[None]:
    db.init_engine(sqlite_url)
    await db.init_db()
    yield
    await db.dispose_engine()


async def make_experiment(
    name: str = "exp", agent_count: int = 3, problem: str = "Make the tests pass."
) -> Experiment:
    async with db.get_session() as session:
        experiment = await db.create_experiment(
            session,
            name,
            problem,
            "claude-sonnet-4-5",
            agent_count,
            repository_path="/tmp/prswarm-repo",
        )
        await db.create_repository(session, experiment, "/tmp/prswarm-repo")
    return experiment


@pytest_asyncio.fixture
async def experiment(database: None) -> Experiment:
    return await make_experiment()


def tool_context(experiment: Experiment, agent: int) -> ToolContext:
    return ToolContext(
        experiment_id=experiment.id,
        experiment_name=experiment.name,
        problem=experiment.problem,
        agent_count=experiment.agent_count,
        agent=agent,
    )


@pytest.fixture
def fast_polling(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "question_poll_interval", 0.05)
