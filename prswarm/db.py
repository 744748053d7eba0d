"""Async database connection and operations for prswarm."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import settings
from .errors import (
    DomainError,
    NotFoundError,
    SchemaNotInitializedError,
    is_schema_missing_error,
    schema_not_initialized_message,
)
from .models import (
    Base,
    ExecutionLog,
    Experiment,
    Message,
    PullRequest,
    Repository,
    Review,
    Solution,
    StatusUpdate,
    UserQuestion,
)

PR_STATUSES = ("open", "closed", "merged")
REVIEW_DECISIONS = ("approve", "request_changes", "comment")
STATUS_UPDATE_TYPES = ("todo_list", "progress", "question")

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(url: str | None = None) -> AsyncEngine:
    """(Re)create the engine and session factory, e.g. to point tests at sqlite."""
    global _engine, _session_factory
    url = url or settings.async_database_url
    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite"):
        connect_args["timeout"] = 30
    _engine = create_async_engine(url, echo=False, pool_pre_ping=True, connect_args=connect_args)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        return init_engine()
    return _engine


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def init_db() -> None:
    """Create all tables (for development/testing)."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """Async context manager for database sessions."""
    get_engine()
    assert _session_factory is not None
    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                raise SchemaNotInitializedError(schema_not_initialized_message(exc)) from exc
            raise


def _insert_for(session: AsyncSession) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT DO UPDATE."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise NotImplementedError(f"Upsert is not supported on dialect {dialect}")


# =============================================================================
# Experiment Operations
# =============================================================================


async def create_experiment(
    session: AsyncSession,
    name: str,
    problem: str,
    model: str,
    agent_count: int,
    *,
    repository_url: str | None = None,
    repository_path: str | None = None,
) -> Experiment:
    """Create a new experiment."""
    experiment = Experiment(
        name=name,
        problem=problem,
        model=model,
        agent_count=agent_count,
        sandbox_mode="worktree",
        repository_url=repository_url,
        repository_path=repository_path,
    )
    session.add(experiment)
    await session.flush()
    return experiment


async def get_experiment_by_name(session: AsyncSession, name: str) -> Experiment | None:
    result = await session.execute(select(Experiment).where(Experiment.name == name))
    return result.scalar_one_or_none()


async def get_experiment_by_id(session: AsyncSession, experiment_id: int) -> Experiment | None:
    result = await session.execute(select(Experiment).where(Experiment.id == experiment_id))
    return result.scalar_one_or_none()


async def list_experiments(session: AsyncSession, limit: int | None = None) -> list[Experiment]:
    query = select(Experiment).order_by(Experiment.created_at.desc(), Experiment.id.desc())
    if limit:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


# =============================================================================
# Repository Operations
# =============================================================================


async def create_repository(
    session: AsyncSession,
    experiment: Experiment,
    path: str,
    *,
    remote_url: str | None = None,
    main_branch: str = "main",
) -> Repository:
    repo = Repository(
        experiment_id=experiment.id,
        path=path,
        remote_url=remote_url,
        main_branch=main_branch,
        pr_counter=0,
    )
    session.add(repo)
    await session.flush()
    return repo


async def get_repository_for_experiment(
    session: AsyncSession, experiment_id: int, *, for_update: bool = False
) -> Repository | None:
    query = (
        select(Repository)
        .where(Repository.experiment_id == experiment_id)
        .order_by(Repository.id)
        .limit(1)
    )
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query)
    return result.scalar_one_or_none()


# =============================================================================
# Message Operations
# =============================================================================


async def list_messages(session: AsyncSession, experiment_id: int, agent: int) -> list[Message]:
    """Get an agent's full conversation log, ordered by position."""
    result = await session.execute(
        select(Message)
        .where(Message.experiment_id == experiment_id, Message.agent == agent)
        .order_by(Message.position)
    )
    return list(result.scalars().all())


async def append_message(
    session: AsyncSession,
    experiment_id: int,
    agent: int,
    position: int,
    role: str,
    content: list[dict[str, Any]],
    *,
    total_tokens: int = 0,
    cost: float = 0.0,
) -> Message:
    message = Message(
        experiment_id=experiment_id,
        agent=agent,
        position=position,
        role=role,
        content=content,
        total_tokens=total_tokens,
        cost=cost,
    )
    session.add(message)
    await session.flush()
    return message


async def get_experiment_costs(session: AsyncSession, experiment_id: int) -> dict[str, Any]:
    """Return token/cost totals for an experiment, overall and per agent."""
    totals_row = (
        await session.execute(
            select(
                func.coalesce(func.sum(Message.cost), 0),
                func.coalesce(func.sum(Message.total_tokens), 0),
            ).where(Message.experiment_id == experiment_id)
        )
    ).one()

    by_agent_rows = (
        await session.execute(
            select(
                Message.agent,
                func.coalesce(func.sum(Message.cost), 0),
                func.coalesce(func.sum(Message.total_tokens), 0),
                func.count(Message.id),
            )
            .where(Message.experiment_id == experiment_id)
            .group_by(Message.agent)
            .order_by(Message.agent)
        )
    ).all()

    return {
        "total_cost": float(totals_row[0] or 0),
        "total_tokens": int(totals_row[1] or 0),
        "by_agent": [
            {
                "agent": agent,
                "total_cost": float(cost or 0),
                "total_tokens": int(tokens or 0),
                "messages": int(count or 0),
            }
            for agent, cost, tokens, count in by_agent_rows
        ],
    }


# =============================================================================
# Pull Request Operations
# =============================================================================


async def create_pull_request(
    session: AsyncSession,
    experiment_id: int,
    author: int,
    title: str,
    description: str,
    source_branch: str,
    target_branch: str | None = None,
) -> PullRequest:
    """Open a pull request, taking the next number from the repository counter."""
    repo = await get_repository_for_experiment(session, experiment_id, for_update=True)
    if repo is None:
        raise NotFoundError(f"Repository for experiment {experiment_id} not found.")

    number = repo.pr_counter + 1
    repo.pr_counter = number

    pr = PullRequest(
        experiment_id=experiment_id,
        repository_id=repo.id,
        number=number,
        author=author,
        title=title,
        description=description,
        source_branch=source_branch,
        target_branch=target_branch or repo.main_branch,
        status="open",
    )
    session.add(pr)
    await session.flush()
    return pr


async def get_pull_request_by_number(
    session: AsyncSession,
    experiment_id: int,
    number: int,
    *,
    for_update: bool = False,
) -> PullRequest | None:
    query = select(PullRequest).where(
        PullRequest.experiment_id == experiment_id, PullRequest.number == number
    )
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def list_pull_requests(
    session: AsyncSession,
    experiment_id: int,
    status: str | None = None,
    *,
    author: int | None = None,
) -> list[PullRequest]:
    """List pull requests, newest first."""
    query = select(PullRequest).where(PullRequest.experiment_id == experiment_id)
    if status:
        query = query.where(PullRequest.status == status)
    if author is not None:
        query = query.where(PullRequest.author == author)
    query = query.order_by(PullRequest.created_at.desc(), PullRequest.number.desc())
    result = await session.execute(query)
    return list(result.scalars().all())


async def set_pull_request_status(
    session: AsyncSession, pr: PullRequest, new_status: str
) -> PullRequest:
    """Apply a terminal transition (open -> merged | closed)."""
    if new_status not in ("merged", "closed"):
        raise DomainError(f"Invalid pull request status transition to {new_status!r}")
    if pr.status != "open":
        raise DomainError(f"Pull request #{pr.number} is already {pr.status}")
    pr.status = new_status
    pr.updated_at = datetime.now(UTC)
    await session.flush()
    return pr


# =============================================================================
# Review Operations
# =============================================================================


async def list_reviews(session: AsyncSession, pull_request_id: int) -> list[Review]:
    result = await session.execute(
        select(Review)
        .where(Review.pull_request_id == pull_request_id)
        .order_by(Review.reviewer)
        # Rows written by an upsert bypass the identity map.
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_review(session: AsyncSession, pull_request_id: int, reviewer: int) -> Review | None:
    result = await session.execute(
        select(Review).where(
            Review.pull_request_id == pull_request_id, Review.reviewer == reviewer
        ).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def upsert_review(
    session: AsyncSession,
    pr: PullRequest,
    reviewer: int,
    decision: str,
    content: str,
) -> bool:
    """Insert or overwrite a reviewer's decision. Returns True if a prior review existed."""
    existed = await get_review(session, pr.id, reviewer) is not None

    insert = _insert_for(session)
    stmt = insert(Review).values(
        experiment_id=pr.experiment_id,
        pull_request_id=pr.id,
        reviewer=reviewer,
        decision=decision,
        content=content,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Review.pull_request_id, Review.reviewer],
        set_={"decision": decision, "content": content, "updated_at": func.now()},
    )
    await session.execute(stmt)
    return existed


# =============================================================================
# Solution (Vote) Operations
# =============================================================================


async def upsert_vote(
    session: AsyncSession, experiment_id: int, agent: int, pull_request_id: int
) -> None:
    insert = _insert_for(session)
    stmt = insert(Solution).values(
        experiment_id=experiment_id, agent=agent, pull_request_id=pull_request_id
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Solution.experiment_id, Solution.agent],
        set_={"pull_request_id": pull_request_id},
    )
    await session.execute(stmt)


async def list_votes(session: AsyncSession, experiment_id: int) -> list[tuple[Solution, PullRequest]]:
    result = await session.execute(
        select(Solution, PullRequest)
        .join(PullRequest, Solution.pull_request_id == PullRequest.id)
        .where(Solution.experiment_id == experiment_id)
        .order_by(Solution.agent)
        .execution_options(populate_existing=True)
    )
    return [(s, pr) for s, pr in result.all()]


# =============================================================================
# Status Update Operations
# =============================================================================


async def add_status_update(
    session: AsyncSession, experiment_id: int, agent: int, type_: str, content: str
) -> StatusUpdate:
    update = StatusUpdate(experiment_id=experiment_id, agent=agent, type=type_, content=content)
    session.add(update)
    await session.flush()
    return update


async def list_status_updates(
    session: AsyncSession, experiment_id: int, limit: int | None = None
) -> list[StatusUpdate]:
    """Status updates, most recent first."""
    query = (
        select(StatusUpdate)
        .where(StatusUpdate.experiment_id == experiment_id)
        .order_by(StatusUpdate.created_at.desc(), StatusUpdate.id.desc())
    )
    if limit:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


# =============================================================================
# User Question Operations
# =============================================================================


async def create_question(
    session: AsyncSession, experiment_id: int, agent: int, question: str
) -> UserQuestion:
    record = UserQuestion(
        experiment_id=experiment_id, agent=agent, question=question, status="pending"
    )
    session.add(record)
    await session.flush()
    return record


async def get_question(session: AsyncSession, question_id: int) -> UserQuestion | None:
    result = await session.execute(select(UserQuestion).where(UserQuestion.id == question_id))
    return result.scalar_one_or_none()


async def _resolve_pending_question(
    session: AsyncSession, question: UserQuestion, **values: Any
) -> bool:
    """Move a question out of ``pending`` unless another session already did."""
    result = await session.execute(
        update(UserQuestion)
        .where(UserQuestion.id == question.id, UserQuestion.status == "pending")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.refresh(question)
    return result.rowcount > 0


async def answer_question(session: AsyncSession, question: UserQuestion, answer: str) -> UserQuestion:
    """Record a human answer. Only pending questions can be answered."""
    answered = await _resolve_pending_question(
        session, question, answer=answer, status="answered", answered_at=datetime.now(UTC)
    )
    if not answered:
        raise DomainError(f"Question {question.id} is {question.status}, not pending")
    return question


async def mark_question_timeout(session: AsyncSession, question: UserQuestion) -> bool:
    """Time out a pending question. Returns False if it was answered in the meantime."""
    return await _resolve_pending_question(session, question, status="timeout")


async def list_pending_questions(session: AsyncSession, experiment_id: int) -> list[UserQuestion]:
    result = await session.execute(
        select(UserQuestion)
        .where(UserQuestion.experiment_id == experiment_id, UserQuestion.status == "pending")
        .order_by(UserQuestion.created_at, UserQuestion.id)
    )
    return list(result.scalars().all())


# =============================================================================
# Execution Log Operations
# =============================================================================


async def log_event(
    session: AsyncSession,
    experiment_id: int,
    event: str,
    *,
    agent: int | None = None,
    message: str | None = None,
    details: dict[str, Any] | None = None,
    duration_ms: int | None = None,
) -> ExecutionLog:
    """Log an execution event."""
    log = ExecutionLog(
        experiment_id=experiment_id,
        agent=agent,
        event=event,
        message=message,
        details=details,
        duration_ms=duration_ms,
    )
    session.add(log)
    await session.flush()
    return log
