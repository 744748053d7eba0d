"""Round-robin driver - ticks every agent of an experiment in turn."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from rich.console import Console
from rich.panel import Panel

from . import db
from .errors import NotFoundError, SwarmError
from .events import EventType, emit
from .llm import ModelClient
from .models import Experiment
from .runner import AgentRunner, TickOutcome
from .tools import Computer

console = Console()

ComputerFactory = Callable[[Experiment, int], Awaitable[Computer]]


@dataclass
class RunReport:
    """Why and where a run stopped."""

    ticks: int = 0
    rounds: int = 0
    paused: TickOutcome | None = None
    failed_agent: int | None = None
    error: str | None = None
    outcomes: list[TickOutcome] = field(default_factory=list)

    @property
    def stop_reason(self) -> str:
        if self.paused is not None:
            return self.paused.message
        if self.error is not None:
            return f"Agent {self.failed_agent} failed: {self.error}"
        return f"Tick limit reached after {self.rounds} round(s)"


async def build_runners(
    experiment: Experiment,
    *,
    model: ModelClient | None = None,
    computer_factory: ComputerFactory | None = None,
) -> list[AgentRunner]:
    runners = []
    for agent in range(experiment.agent_count):
        computer = await computer_factory(experiment, agent) if computer_factory else None
        runners.append(await AgentRunner.build(experiment, agent, model=model, computer=computer))
    return runners


async def run_experiment(
    name: str,
    *,
    max_ticks: int | None = None,
    model: ModelClient | None = None,
    computer_factory: ComputerFactory | None = None,
) -> RunReport:
    """Tick every agent in order until a PR is fully approved, an agent fails,
    or each agent has ticked ``max_ticks`` times.

    Interrupting (Ctrl-C) stops the loop immediately; whatever was already
    appended to the logs is where the next run resumes.
    """
    async with db.get_session() as session:
        experiment = await db.get_experiment_by_name(session, name)
        if experiment is None:
            raise NotFoundError(f"Experiment not found: {name}")

    runners = await build_runners(experiment, model=model, computer_factory=computer_factory)
    console.print(
        f"[bold blue]Running experiment {experiment.name} "
        f"with {len(runners)} agent(s) on {experiment.model}[/bold blue]"
    )
    await emit(
        EventType.EXPERIMENT_STARTED,
        experiment.id,
        f"Experiment {experiment.name} started",
        data={"agents": len(runners), "max_ticks": max_ticks},
    )

    report = RunReport()
    while max_ticks is None or report.rounds < max_ticks:
        for runner in runners:
            try:
                outcome = await runner.tick()
            except SwarmError as exc:
                runner.failure = str(exc)
                report.failed_agent = runner.agent
                report.error = str(exc)
                console.print(
                    Panel(
                        f"{type(exc).__name__}: {exc}",
                        title=f"[bold red]Agent {runner.agent} failed[/bold red]",
                        border_style="red",
                    )
                )
                await emit(
                    EventType.AGENT_FAILED,
                    experiment.id,
                    f"Agent {runner.agent} failed",
                    agent=runner.agent,
                    data={"error": str(exc), "error_type": type(exc).__name__},
                )
                return report

            report.ticks += 1
            report.outcomes.append(outcome)
            if outcome.paused:
                report.paused = outcome
                return report
        report.rounds += 1

    await emit(
        EventType.EXPERIMENT_STOPPED,
        experiment.id,
        report.stop_reason,
        data={"ticks": report.ticks, "rounds": report.rounds},
    )
    return report
