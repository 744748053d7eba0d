"""
Per-agent tick engine.

One tick is at most one model call plus the tool executions it requests.
The conversation log is append-only; every tick leaves it in a state from
which the next tick (possibly in a fresh process) can resume.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from . import approval, db
from .approval import ApprovalState
from .config import settings
from .context_window import ContextWindow
from .dispatcher import ToolDispatcher
from .events import EventType, emit
from .llm import AnthropicModel, ModelClient, ToolSpec, call_with_retries
from .messages import ToolResultPart, text_part, tool_uses
from .models import Experiment, Message, StatusUpdate
from .tools import (
    Computer,
    ToolContext,
    WorktreeComputer,
    create_computer_group,
    create_pr_group,
    create_user_group,
    render_list_of_prs,
)

console = Console()

TURN_START_INSTRUCTIONS = """\
<system>
This is an automated system message and there is no user available to respond. \
Proceed autonomously, making sure to use tools as only tools have visible effects on the system.

You have full git access via bash. Use git commands to:
- Create and manage your branches
- Checkout other agents' branches to review their code
- Clean up stale branches when done

Use create_pull_request() to signal to other agents which branches to review.
Use publish_status_update() to share your progress with other agents and the user.
Use review_pull_request() to review PRs from other agents with approve/request_changes.
Use vote_for_solution() to vote for the best PR solution.

Never stay idle and always pro-actively work on solving the problem. \
If your PR gets approved by other agents, it will be paused for user review. \
Continue working on improvements or alternative approaches.
<system>
"""


class AgentState(str, Enum):
    NEEDS_USER_TURN = "needs_user_turn"
    HAS_PENDING_TURN = "has_pending_turn"
    PAUSED = "paused"
    FAILED = "failed"


class TickStatus(str, Enum):
    CONTINUED = "continued"
    SKIPPED = "skipped"
    PAUSED = "paused"


@dataclass
class TickOutcome:
    """What one tick did. ``paused`` is a control signal, not a failure."""

    status: TickStatus
    agent: int
    approval: ApprovalState | None = None
    tool_calls: int = 0
    cost: float = 0.0

    @property
    def paused(self) -> bool:
        return self.status is TickStatus.PAUSED

    @property
    def message(self) -> str:
        if self.approval is not None:
            return f"PR #{self.approval.pr_number} fully approved, awaiting decision"
        return self.status.value


def render_status_digest(updates: list[StatusUpdate], *, limit: int, max_chars: int) -> str:
    lines = []
    for update in updates[:limit]:
        content = update.content[:max_chars]
        if len(update.content) > max_chars:
            content += "..."
        lines.append(f"Agent {update.agent} [{update.type}]: {content}")
    return "\n".join(lines) or "(none)"


_prompt_cache: dict[str, str] = {}


def load_prompt_template() -> str:
    key = str(settings.prompt_path)
    if key not in _prompt_cache:
        _prompt_cache[key] = settings.prompt_path.read_text(encoding="utf-8")
    return _prompt_cache[key]


def render_system_prompt(template: str, problem: str, agent: int) -> str:
    return template.replace("{{PROBLEM}}", problem, 1).replace("{{AGENT_INDEX}}", str(agent))


class AgentRunner:
    """Drives one agent of an experiment, one tick at a time."""

    def __init__(
        self,
        experiment: Experiment,
        agent: int,
        model: ModelClient,
        dispatcher: ToolDispatcher,
        *,
        messages: list[Message] | None = None,
    ) -> None:
        self.experiment = experiment
        self.agent = agent
        self.model = model
        self.dispatcher = dispatcher
        self.messages: list[Message] = messages or []
        self.context = ContextWindow()
        self.paused_on: ApprovalState | None = None
        self.failure: str | None = None

    def __repr__(self) -> str:
        return f"AgentRunner(experiment={self.experiment.name!r}, agent={self.agent})"

    @classmethod
    async def build(
        cls,
        experiment: Experiment,
        agent: int,
        *,
        model: ModelClient | None = None,
        computer: Computer | None = None,
    ) -> AgentRunner:
        """Wire up the tool groups and model for ``agent`` and load its log."""
        ctx = ToolContext(
            experiment_id=experiment.id,
            experiment_name=experiment.name,
            problem=experiment.problem,
            agent_count=experiment.agent_count,
            agent=agent,
        )
        if computer is None:
            computer = await WorktreeComputer.create(experiment.repository_path, agent)
        dispatcher = ToolDispatcher(
            [create_computer_group(ctx, computer), create_pr_group(ctx), create_user_group(ctx)],
            experiment_id=experiment.id,
            agent=agent,
        )
        model = model or AnthropicModel(experiment.model)
        return await cls.initialize(experiment, agent, model, dispatcher)

    @classmethod
    async def initialize(
        cls,
        experiment: Experiment,
        agent: int,
        model: ModelClient,
        dispatcher: ToolDispatcher,
    ) -> AgentRunner:
        async with db.get_session() as session:
            messages = await db.list_messages(session, experiment.id, agent)
        return cls(experiment, agent, model, dispatcher, messages=messages)

    @property
    def state(self) -> AgentState:
        if self.failure is not None:
            return AgentState.FAILED
        if self.paused_on is not None:
            return AgentState.PAUSED
        if self.needs_user_message():
            return AgentState.NEEDS_USER_TURN
        return AgentState.HAS_PENDING_TURN

    def tools(self) -> list[ToolSpec]:
        return self.dispatcher.tool_specs()

    def system_prompt(self) -> str:
        return render_system_prompt(load_prompt_template(), self.experiment.problem, self.agent)

    def next_position(self) -> int:
        return self.messages[-1].position + 1 if self.messages else 0

    def needs_user_message(self) -> bool:
        # A trailing agent message means the last tick made no tool calls.
        return not self.messages or self.messages[-1].role == "agent"

    async def new_user_message(self) -> Message:
        """Append a turn-start message summarising PRs and recent status updates."""
        async with db.get_session() as session:
            my_open = await db.list_pull_requests(
                session, self.experiment.id, "open", author=self.agent
            )
            to_review = [
                pr
                for pr in await db.list_pull_requests(session, self.experiment.id, "open")
                if pr.author != self.agent
            ]
            updates = await db.list_status_updates(
                session, self.experiment.id, limit=settings.status_digest_limit
            )
            digest = render_status_digest(
                updates,
                limit=settings.status_digest_limit,
                max_chars=settings.status_digest_chars,
            )

            text = (
                f"YOUR_OPEN_PULL_REQUESTS:\n{render_list_of_prs(my_open)}\n\n"
                f"PULL_REQUESTS_TO_REVIEW:\n{render_list_of_prs(to_review)}\n\n"
                f"RECENT_STATUS_UPDATES:\n{digest}\n\n"
                f"{TURN_START_INSTRUCTIONS}"
            )
            message = await db.append_message(
                session,
                self.experiment.id,
                self.agent,
                self.next_position(),
                "user",
                [text_part(text)],
            )
        self.messages.append(message)
        return message

    async def render_for_model(self, system: str, tools: list[ToolSpec]) -> list[Message]:
        async def count(window: list[Message]) -> int:
            return await call_with_retries(lambda: self.model.count_tokens(window, system, tools))

        return await self.context.render(self.messages, count, self.model.max_context_tokens)

    async def execute_tools(self, requests: list[dict[str, Any]]) -> list[ToolResultPart]:
        """Run tool calls with bounded concurrency; results keep request order."""
        semaphore = asyncio.Semaphore(settings.tool_concurrency)

        async def run_one(tool_use: dict[str, Any]) -> ToolResultPart:
            async with semaphore:
                return await self.dispatcher.execute(tool_use)

        return list(await asyncio.gather(*(run_one(t) for t in requests)))

    async def tick(self) -> TickOutcome:
        """Advance this agent by one model call and its tool executions.

        Raises ContextOverflowError or ModelCallError when the tick cannot
        proceed; both are fatal for this agent.
        """
        start = time.monotonic()
        tools = self.tools()

        if self.needs_user_message():
            await self.new_user_message()

        system = self.system_prompt()
        window = await self.render_for_model(system, tools)
        response = await call_with_retries(lambda: self.model.run(window, system, tools))

        if not response.message.content:
            console.print(
                f"[yellow]WARNING: Skipping empty agent response content for agent {self.agent}[/yellow]"
            )
            await emit(
                EventType.TICK_SKIPPED,
                self.experiment.id,
                "Empty model response",
                agent=self.agent,
            )
            return TickOutcome(TickStatus.SKIPPED, self.agent)

        requests = tool_uses(response.message)
        results = await self.execute_tools(requests)

        usage = response.usage
        total_tokens = usage.total_tokens if usage else 0
        cost = self.model.cost([usage]) if usage else 0.0

        position = self.next_position()
        async with db.get_session() as session:
            agent_message = await db.append_message(
                session,
                self.experiment.id,
                self.agent,
                position,
                "agent",
                response.message.content,
                total_tokens=total_tokens,
                cost=cost,
            )
            results_message = None
            if results:
                results_message = await db.append_message(
                    session,
                    self.experiment.id,
                    self.agent,
                    position + 1,
                    "user",
                    list(results),
                )

        self.messages.append(agent_message)
        for part in agent_message.content:
            self.log_content(part, agent_message.id)
        if results_message is not None:
            self.messages.append(results_message)
            for part in results_message.content:
                self.log_content(part, results_message.id)

        await emit(
            EventType.TICK_COMPLETED,
            self.experiment.id,
            f"Agent {self.agent} tick with {len(requests)} tool call(s)",
            agent=self.agent,
            data={"tool_calls": len(requests), "tokens": total_tokens, "cost": cost},
            duration_ms=int((time.monotonic() - start) * 1000),
        )

        approved = await self.check_pr_approvals()
        if approved is not None:
            return TickOutcome(
                TickStatus.PAUSED, self.agent, approval=approved, tool_calls=len(requests), cost=cost
            )
        return TickOutcome(TickStatus.CONTINUED, self.agent, tool_calls=len(requests), cost=cost)

    async def check_pr_approvals(self) -> ApprovalState | None:
        """Return the first fully approved open PR, marking this runner paused."""
        async with db.get_session() as session:
            state = await approval.find_fully_approved(session, self.experiment)
        if state is None:
            return None

        self.paused_on = state
        console.print(
            Panel(
                f"PR #{state.pr_number} \"{escape(state.title)}\" has received full approval "
                f"from all {state.required} reviewers. Awaiting user decision.",
                title="[bold yellow]PAUSE[/bold yellow]",
                border_style="yellow",
            )
        )
        await emit(
            EventType.EXPERIMENT_PAUSED,
            self.experiment.id,
            f"PR #{state.pr_number} fully approved, awaiting decision",
            agent=self.agent,
            data={"pr_number": state.pr_number, "approvals": state.approvals},
        )
        return state

    def log_content(self, part: dict[str, Any], message_id: int | None = None) -> None:
        """Echo one content part to the operator console."""
        out = f"[bold white]Agent {self.agent}[/bold white]"
        if message_id:
            out += f" [bold yellow]#{message_id}[/bold yellow]"

        kind = part.get("type")
        if kind == "thinking":
            body = escape(part.get("thinking", "").replace("\n", " "))
            out += f" [grey50]>[/grey50] [bold magenta]Thinking:[/bold magenta] [grey50]{body}[/grey50]"
        elif kind == "text":
            body = escape(part.get("text", "").replace("\n", " "))
            out += f" [grey50]>[/grey50] [bold dark_orange]Text:[/bold dark_orange] [grey50]{body}[/grey50]"
        elif kind == "tool_use":
            out += f" [grey50]>[/grey50] [bold green]ToolUse:[/bold green] {escape(part['name'])}"
        elif kind == "tool_result":
            tag = "[bold red]\\[error][/bold red]" if part.get("is_error") else "[bold green]\\[success][/bold green]"
            out += (
                f" [grey50]<[/grey50] [bold blue]ToolResult:[/bold blue] "
                f"{escape(part.get('tool_use_name', ''))} {tag}"
            )
        else:
            out += f" [grey50]>[/grey50] {escape(str(kind))}"
        console.print(out, highlight=False)
