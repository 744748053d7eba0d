"""Main CLI entry point for prswarm."""

import asyncio
from collections import Counter
from collections.abc import Awaitable
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__, approval, db
from .errors import DomainError, SchemaNotInitializedError
from .events import EventType, emit
from .models import Base, Experiment, PullRequest

console = Console()

T = TypeVar("T")


def _run(coro: Awaitable[T]) -> T:
    """Run a coroutine and release the engine before the loop closes."""

    async def wrapper() -> T:
        try:
            return await coro
        finally:
            await db.dispose_engine()

    return asyncio.run(wrapper())


async def _require_experiment(session: db.AsyncSession, name: str) -> Experiment:
    experiment = await db.get_experiment_by_name(session, name)
    if experiment is None:
        raise click.ClickException(f"Experiment not found: {name}")
    return experiment


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """prswarm: autonomous agents collaborating through pull requests.

    Agents propose, review and vote on PRs against a shared repository; a PR
    approved by every other agent pauses the run for a human decision.
    """
    pass


@main.command(name="init-db")
def init_db() -> None:
    """Create all tables (development/testing)."""
    _run(db.init_db())
    console.print("[green]Database tables created[/green]")


@main.command(name="schema-check", help="Check DB schema readiness for current code.")
def schema_check() -> None:
    async def check() -> list[str]:
        def missing_tables(sync_conn: Any) -> list[str]:
            from sqlalchemy import inspect

            existing = set(inspect(sync_conn).get_table_names())
            return sorted(set(Base.metadata.tables) - existing)

        async with db.get_engine().connect() as conn:
            return await conn.run_sync(missing_tables)

    missing = _run(check())
    if missing:
        raise SchemaNotInitializedError(
            f"Missing tables: {', '.join(missing)}\n"
            "Run: `alembic upgrade head`\nOr for a local database: `prswarm init-db`"
        )
    console.print("[green]Schema ready[/green]")


@main.command()
@click.argument("name")
@click.option(
    "--problem",
    "problem_file",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="File containing the problem statement",
)
@click.option("--model", required=True, help="Model id, e.g. claude-sonnet-4-5")
@click.option("--agents", "agent_count", required=True, type=click.IntRange(min=1), help="Number of agents")
@click.option(
    "--repo",
    "repo_path",
    required=True,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Path to the shared git repository",
)
@click.option("--remote", default=None, help="Remote URL of the repository")
@click.option("--main-branch", default="main", show_default=True, help="Default PR target branch")
def create(
    name: str,
    problem_file: Path,
    model: str,
    agent_count: int,
    repo_path: Path,
    remote: str | None,
    main_branch: str,
) -> None:
    """Create an experiment and its shared repository.

    NAME: Unique experiment name
    """

    async def do_create() -> None:
        async with db.get_session() as session:
            if await db.get_experiment_by_name(session, name):
                raise click.ClickException(f"Experiment already exists: {name}")
            experiment = await db.create_experiment(
                session,
                name,
                problem_file.read_text(encoding="utf-8"),
                model,
                agent_count,
                repository_url=remote,
                repository_path=str(repo_path.resolve()),
            )
            await db.create_repository(
                session,
                experiment,
                str(repo_path.resolve()),
                remote_url=remote,
                main_branch=main_branch,
            )
            console.print(
                Panel(
                    f"Model: {model}\nAgents: {agent_count}\n"
                    f"Repository: {repo_path.resolve()} ({main_branch})",
                    title=f"[green]Created experiment {name}[/green]",
                )
            )

    _run(do_create())


@main.command()
@click.argument("name")
@click.option("--max-ticks", type=click.IntRange(min=1), default=None, help="Ticks per agent before stopping")
def run(name: str, max_ticks: int | None) -> None:
    """Tick every agent in turn until a PR is fully approved.

    NAME: The experiment name
    """
    from .orchestrate import run_experiment

    try:
        report = _run(run_experiment(name, max_ticks=max_ticks))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped by user. Logs resume from the last appended message.[/yellow]")
        raise SystemExit(130) from None
    except DomainError as exc:
        raise click.ClickException(str(exc)) from exc

    style = "yellow" if report.paused else ("red" if report.error else "green")
    console.print(f"[{style}]{report.stop_reason}[/{style}] ({report.ticks} tick(s))")
    if report.error:
        raise SystemExit(1)


@main.command(name="list")
@click.option("--limit", default=20, help="Number of experiments to show")
def list_experiments(limit: int) -> None:
    """List experiments."""

    async def list_all() -> None:
        async with db.get_session() as session:
            experiments = await db.list_experiments(session, limit)
            if not experiments:
                console.print("[yellow]No experiments found[/yellow]")
                return

            table = Table(title="Experiments")
            table.add_column("Name", style="cyan")
            table.add_column("Model")
            table.add_column("Agents", justify="right")
            table.add_column("Created")
            for e in experiments:
                table.add_row(
                    e.name,
                    e.model,
                    str(e.agent_count),
                    e.created_at.strftime("%Y-%m-%d %H:%M") if e.created_at else "-",
                )
            console.print(table)

    _run(list_all())


def _pr_table(title: str, rows: list[tuple[PullRequest, approval.ApprovalState]]) -> Table:
    table = Table(title=title)
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Title")
    table.add_column("Author")
    table.add_column("Branch")
    table.add_column("Status")
    table.add_column("Approvals")
    for pr, state in rows:
        approvals = f"{state.approvals}/{state.required}"
        if state.blocked:
            approvals += " [red](changes requested)[/red]"
        elif state.fully_approved and pr.status == "open":
            approvals += " [green](ready)[/green]"
        table.add_row(
            str(pr.number),
            pr.title[:50] + "..." if len(pr.title) > 50 else pr.title,
            f"Agent {pr.author}",
            f"{pr.source_branch} -> {pr.target_branch}",
            pr.status,
            approvals,
        )
    return table


async def _pr_rows(
    session: db.AsyncSession, experiment: Experiment, status: str | None
) -> list[tuple[PullRequest, approval.ApprovalState]]:
    rows = []
    for pr in await db.list_pull_requests(session, experiment.id, status):
        rows.append((pr, await approval.pull_request_state(session, pr, experiment.agent_count)))
    return rows


@main.command()
@click.argument("name")
def status(name: str) -> None:
    """Show agents, costs and pull requests of an experiment.

    NAME: The experiment name
    """

    async def show_status() -> None:
        async with db.get_session() as session:
            experiment = await _require_experiment(session, name)
            costs = await db.get_experiment_costs(session, experiment.id)

            console.print(
                Panel(
                    f"Model: {experiment.model}\n"
                    f"Agents: {experiment.agent_count}\n"
                    f"Repository: {experiment.repository_path or '-'}\n"
                    f"Total cost: ${costs['total_cost']:.4f} ({costs['total_tokens']} tokens)",
                    title=f"Experiment: {experiment.name}",
                )
            )

            by_agent = {row["agent"]: row for row in costs["by_agent"]}
            table = Table(title="Agents")
            table.add_column("Agent", style="cyan")
            table.add_column("Messages", justify="right")
            table.add_column("Tokens", justify="right")
            table.add_column("Cost", justify="right")
            for agent in range(experiment.agent_count):
                row = by_agent.get(agent, {"messages": 0, "total_tokens": 0, "total_cost": 0.0})
                table.add_row(
                    f"Agent {agent}",
                    str(row["messages"]),
                    str(row["total_tokens"]),
                    f"${row['total_cost']:.4f}",
                )
            console.print(table)

            rows = await _pr_rows(session, experiment, None)
            if rows:
                console.print(_pr_table("Pull Requests", rows))
            else:
                console.print("[dim]No pull requests yet[/dim]")

            pending = await db.list_pending_questions(session, experiment.id)
            if pending:
                console.print(f"[yellow]{len(pending)} question(s) awaiting an answer[/yellow]")

    _run(show_status())


@main.command()
@click.argument("name")
@click.option("--status", "status_filter", type=click.Choice(db.PR_STATUSES), default=None)
def prs(name: str, status_filter: str | None) -> None:
    """List pull requests with their approval state.

    NAME: The experiment name
    """

    async def show_prs() -> None:
        async with db.get_session() as session:
            experiment = await _require_experiment(session, name)
            rows = await _pr_rows(session, experiment, status_filter)
            if not rows:
                console.print("[yellow]No pull requests found[/yellow]")
                return
            console.print(_pr_table(f"Pull Requests: {experiment.name}", rows))

    _run(show_prs())


def _set_status(name: str, number: int, new_status: str) -> None:
    async def transition() -> None:
        async with db.get_session() as session:
            experiment = await _require_experiment(session, name)
            pr = await db.get_pull_request_by_number(session, experiment.id, number, for_update=True)
            if pr is None:
                raise click.ClickException(f"Pull request #{number} not found")
            try:
                await db.set_pull_request_status(session, pr, new_status)
            except DomainError as exc:
                raise click.ClickException(str(exc)) from exc
            experiment_id = experiment.id

        await emit(
            EventType.PR_MERGED if new_status == "merged" else EventType.PR_CLOSED,
            experiment_id,
            f"PR #{number} {new_status} by user",
            data={"pr_number": number},
        )
        console.print(f"[green]PR #{number} {new_status}[/green]")

    _run(transition())


@main.command()
@click.argument("name")
@click.argument("number", type=int)
def merge(name: str, number: int) -> None:
    """Mark an open pull request as merged.

    The git merge itself is left to the operator.
    """
    _set_status(name, number, "merged")


@main.command()
@click.argument("name")
@click.argument("number", type=int)
def close(name: str, number: int) -> None:
    """Close an open pull request without merging."""
    _set_status(name, number, "closed")


@main.command()
@click.argument("name")
def votes(name: str) -> None:
    """Show each agent's vote and the tally per pull request."""

    async def show_votes() -> None:
        async with db.get_session() as session:
            experiment = await _require_experiment(session, name)
            cast = await db.list_votes(session, experiment.id)
            if not cast:
                console.print("[yellow]No votes yet[/yellow]")
                return

            tally = Counter(pr.number for _, pr in cast)
            titles = {pr.number: pr.title for _, pr in cast}

            table = Table(title="Votes")
            table.add_column("PR", style="cyan", justify="right")
            table.add_column("Title")
            table.add_column("Votes", justify="right")
            table.add_column("Voters")
            for number, count in tally.most_common():
                voters = ", ".join(f"Agent {s.agent}" for s, pr in cast if pr.number == number)
                table.add_row(f"#{number}", titles[number], str(count), voters)
            console.print(table)

    _run(show_votes())


@main.command()
@click.argument("name")
def questions(name: str) -> None:
    """List questions agents are waiting on."""

    async def show_questions() -> None:
        async with db.get_session() as session:
            experiment = await _require_experiment(session, name)
            pending = await db.list_pending_questions(session, experiment.id)
            if not pending:
                console.print("[green]No pending questions[/green]")
                return

            table = Table(title="Pending Questions")
            table.add_column("ID", style="cyan", justify="right")
            table.add_column("Agent")
            table.add_column("Question")
            table.add_column("Asked")
            for q in pending:
                table.add_row(
                    str(q.id),
                    f"Agent {q.agent}",
                    q.question,
                    q.created_at.strftime("%H:%M:%S") if q.created_at else "-",
                )
            console.print(table)
            console.print("Answer with: prswarm answer <ID> <ANSWER>")

    _run(show_questions())


@main.command()
@click.argument("question_id", type=int)
@click.argument("answer", nargs=-1, required=True)
def answer(question_id: int, answer: tuple[str, ...]) -> None:
    """Answer a pending question; the asking agent picks it up on its next poll.

    QUESTION_ID: ID shown by `prswarm questions`
    """
    text = " ".join(answer)

    async def do_answer() -> None:
        async with db.get_session() as session:
            question = await db.get_question(session, question_id)
            if question is None:
                raise click.ClickException(f"Question not found: {question_id}")
            try:
                await db.answer_question(session, question, text)
            except DomainError as exc:
                raise click.ClickException(str(exc)) from exc
            experiment_id, agent = question.experiment_id, question.agent

        await emit(
            EventType.HUMAN_INPUT_RECEIVED,
            experiment_id,
            f"Question {question_id} answered by user",
            agent=agent,
            data={"question_id": question_id},
        )
        console.print(f"[green]Answered question {question_id}[/green]")

    _run(do_answer())


if __name__ == "__main__":
    main()
