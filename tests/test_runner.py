import asyncio
from collections.abc import Sequence
from typing import Any

import pytest
from conftest import make_experiment
from pydantic import BaseModel

from prswarm import db
from prswarm.config import settings
from prswarm.costs import TokenUsage, calculate_cost
from prswarm.dispatcher import ToolDispatcher
from prswarm.errors import ContextOverflowError, ModelCallError
from prswarm.llm import ModelResponse, ToolSpec
from prswarm.messages import ChatMessage, HasContent, result_text, text_part
from prswarm.models import Experiment, StatusUpdate
from prswarm.orchestrate import run_experiment
from prswarm.runner import (
    TURN_START_INSTRUCTIONS,
    AgentRunner,
    AgentState,
    TickStatus,
    render_status_digest,
)
from prswarm.tools import ExecuteResult
from prswarm.tools.base import BaseTool, ToolContext, ToolGroup, ToolResult


class FakeComputer:
    async def execute(self, cmd: str, *, cwd=None, env=None, timeout_ms=None) -> ExecuteResult:
        return ExecuteResult(stdout=f"ran {cmd}", stderr="", exit_code=0, duration_ms=1)

    async def status(self) -> str:
        return "running"

    async def stop(self) -> None:
        pass


class FakeModel:
    """Replays queued responses; counts a fixed number of tokens per message."""

    def __init__(
        self,
        responses: list[Any] | None = None,
        *,
        tokens_per_message: int = 10,
        max_context_tokens: int = 100_000,
    ) -> None:
        self.model = "claude-sonnet-4-5"
        self.responses = list(responses or [])
        self.tokens_per_message = tokens_per_message
        self._max_context_tokens = max_context_tokens
        self.calls: list[list[Any]] = []
        self.systems: list[str] = []

    @property
    def max_context_tokens(self) -> int:
        return self._max_context_tokens

    async def run(
        self, messages: Sequence[HasContent], system: str, tools: Sequence[ToolSpec]
    ) -> ModelResponse:
        self.calls.append(list(messages))
        self.systems.append(system)
        if not self.responses:
            return reply(text_part("Still working."))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def count_tokens(
        self, messages: Sequence[HasContent], system: str, tools: Sequence[ToolSpec]
    ) -> int:
        return len(messages) * self.tokens_per_message

    def cost(self, usages: list[TokenUsage]) -> float:
        return calculate_cost(self.model, usages)


def reply(*parts: dict[str, Any]) -> ModelResponse:
    return ModelResponse(
        message=ChatMessage(role="agent", content=list(parts)),
        usage=TokenUsage(input_tokens=1000, output_tokens=100),
        stop_reason="tool_use",
    )


def use(id_: str, name: str, tool_input: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"type": "tool_use", "id": id_, "name": name, "input": tool_input or {}}


async def build(experiment: Experiment, agent: int, model: FakeModel) -> AgentRunner:
    return await AgentRunner.build(experiment, agent, model=model, computer=FakeComputer())


@pytest.mark.asyncio
async def test_first_tick_starts_a_turn_and_records_tool_results(experiment: Experiment) -> None:
    model = FakeModel(
        [
            reply(
                text_part("Opening a PR."),
                use(
                    "t1",
                    "pr-create_pull_request",
                    {"title": "Fix", "description": "d", "source_branch": "agent-0-fix"},
                ),
                use("t2", "nope-missing"),
                use("t3", "computer-execute", {"cmd": "pytest"}),
            )
        ]
    )
    runner = await build(experiment, 0, model)
    assert runner.state is AgentState.NEEDS_USER_TURN

    outcome = await runner.tick()

    assert outcome.status is TickStatus.CONTINUED
    assert outcome.tool_calls == 3
    assert outcome.cost > 0

    turn_start, agent_message, results = runner.messages
    assert [m.position for m in runner.messages] == [0, 1, 2]
    text = turn_start.content[0]["text"]
    assert text.startswith("YOUR_OPEN_PULL_REQUESTS:\n(0 PRs found)\n\nPULL_REQUESTS_TO_REVIEW:\n")
    assert "RECENT_STATUS_UPDATES:\n(none)" in text
    assert text.endswith(TURN_START_INSTRUCTIONS)

    assert agent_message.role == "agent"
    assert agent_message.total_tokens == 1100
    assert results.role == "user"
    assert [p["tool_use_id"] for p in results.content] == ["t1", "t2", "t3"]
    assert [p["is_error"] for p in results.content] == [False, True, False]
    assert result_text(results.content[1]) == "No tool group found to execute tool nope-missing"
    assert result_text(results.content[2]).startswith("exit_code=0")

    assert "You are Agent 0" in model.systems[0]
    assert runner.state is AgentState.HAS_PENDING_TURN


@pytest.mark.asyncio
async def test_turn_start_lists_own_and_reviewable_prs(experiment: Experiment) -> None:
    async with db.get_session() as session:
        await db.create_pull_request(session, experiment.id, 0, "Mine", "d", "agent-0-a")
        await db.create_pull_request(session, experiment.id, 1, "Theirs", "d", "agent-1-a")
        await db.add_status_update(session, experiment.id, 1, "progress", "halfway there")

    runner = await build(experiment, 0, FakeModel())
    message = await runner.new_user_message()

    text = message.content[0]["text"]
    mine, rest = text.split("\n\nPULL_REQUESTS_TO_REVIEW:\n", 1)
    assert "title=Mine" in mine and "title=Theirs" not in mine
    assert "title=Theirs" in rest and "title=Mine" not in rest
    assert "Agent 1 [progress]: halfway there" in rest


@pytest.mark.asyncio
async def test_text_only_response_starts_a_new_turn_next_tick(experiment: Experiment) -> None:
    model = FakeModel([reply(text_part("Thinking out loud.")), reply(text_part("Again."))])
    runner = await build(experiment, 0, model)

    await runner.tick()
    assert [m.role for m in runner.messages] == ["user", "agent"]
    assert runner.state is AgentState.NEEDS_USER_TURN

    await runner.tick()
    assert [m.role for m in runner.messages] == ["user", "agent", "user", "agent"]


@pytest.mark.asyncio
async def test_empty_response_is_skipped(experiment: Experiment) -> None:
    model = FakeModel([reply(), reply(text_part("ok"))])
    runner = await build(experiment, 0, model)

    outcome = await runner.tick()

    assert outcome.status is TickStatus.SKIPPED
    assert [m.role for m in runner.messages] == ["user"]

    # The pending turn-start message is reused rather than duplicated.
    await runner.tick()
    assert [m.role for m in runner.messages] == ["user", "agent"]


@pytest.mark.asyncio
async def test_log_survives_a_restart(experiment: Experiment) -> None:
    model = FakeModel([reply(use("t1", "user-get_problem_description"))])
    runner = await build(experiment, 1, model)
    await runner.tick()

    reloaded = await build(experiment, 1, FakeModel())

    assert [m.id for m in reloaded.messages] == [m.id for m in runner.messages]
    assert reloaded.next_position() == 3
    assert reloaded.state is AgentState.HAS_PENDING_TURN
    assert result_text(reloaded.messages[2].content[0]) == "Make the tests pass."


@pytest.mark.asyncio
async def test_window_is_truncated_to_fit_the_budget(experiment: Experiment) -> None:
    model = FakeModel(tokens_per_message=10, max_context_tokens=40)
    runner = await build(experiment, 0, model)
    for i in range(3):
        model.responses.append(reply(use(f"t{i}", "user-get_problem_description")))
        await runner.tick()

    # Seven messages would need 70 tokens; the window keeps the turn start.
    model.responses.append(reply(text_part("done")))
    await runner.tick()

    sent = model.calls[-1]
    assert len(sent) * 10 <= 40
    assert sent[0].position == 0
    assert sent[1].role == "agent"


@pytest.mark.asyncio
async def test_context_overflow_is_raised(experiment: Experiment) -> None:
    model = FakeModel(tokens_per_message=10, max_context_tokens=5)
    runner = await build(experiment, 0, model)

    with pytest.raises(ContextOverflowError):
        await runner.tick()


@pytest.mark.asyncio
async def test_pauses_when_a_pr_becomes_fully_approved(experiment: Experiment) -> None:
    async with db.get_session() as session:
        pr = await db.create_pull_request(session, experiment.id, 1, "Fix", "d", "agent-1-fix")
        await db.upsert_review(session, pr, 2, "approve", "lgtm")

    model = FakeModel(
        [
            reply(
                use(
                    "r1",
                    "pr-review_pull_request",
                    {"pr_number": 1, "decision": "approve", "content": "verified"},
                )
            )
        ]
    )
    runner = await build(experiment, 0, model)

    outcome = await runner.tick()

    assert outcome.paused
    assert outcome.approval is not None
    assert outcome.approval.pr_number == 1
    assert outcome.approval.approvals == 2
    assert outcome.message == "PR #1 fully approved, awaiting decision"
    assert runner.state is AgentState.PAUSED
    assert "is now fully approved (2/2)" in result_text(runner.messages[-1].content[0])


@pytest.mark.asyncio
async def test_tool_calls_run_with_bounded_concurrency(
    experiment: Experiment, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(settings, "tool_concurrency", 2)
    active = 0
    peak = 0
    finished: list[str] = []

    class SleepArgs(BaseModel):
        label: str
        delay: float

    class SleepTool(BaseTool):
        name = "sleep"
        description = "Sleep briefly."
        args_model = SleepArgs

        async def run(self, args: SleepArgs) -> ToolResult:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(args.delay)
            active -= 1
            finished.append(args.label)
            return ToolResult.ok(args.label)

    ctx = ToolContext(experiment.id, experiment.name, experiment.problem, 3, 0)
    dispatcher = ToolDispatcher([ToolGroup("misc", [SleepTool(ctx)])])
    runner = AgentRunner(experiment, 0, FakeModel(), dispatcher)

    results = await runner.execute_tools(
        [
            use(f"t{i}", "misc-sleep", {"label": str(i), "delay": (6 - i) * 0.02})
            for i in range(6)
        ]
    )

    assert peak == 2
    # Later calls finish first; results still come back in request order.
    assert finished != sorted(finished)
    assert finished[0] == "1"
    assert [result_text(r) for r in results] == ["0", "1", "2", "3", "4", "5"]


def test_status_digest_truncates_content() -> None:
    updates = [
        StatusUpdate(experiment_id=1, agent=2, type="progress", content="x" * 30),
        StatusUpdate(experiment_id=1, agent=0, type="todo_list", content="short"),
        StatusUpdate(experiment_id=1, agent=1, type="question", content="dropped"),
    ]

    digest = render_status_digest(updates, limit=2, max_chars=10)

    assert digest == "Agent 2 [progress]: xxxxxxxxxx...\nAgent 0 [todo_list]: short"
    assert render_status_digest([], limit=5, max_chars=10) == "(none)"


# =============================================================================
# Round-robin driver
# =============================================================================


async def fake_computers(experiment: Experiment, agent: int) -> FakeComputer:
    return FakeComputer()


@pytest.mark.asyncio
async def test_run_stops_at_the_tick_limit(database: None) -> None:
    experiment = await make_experiment("limit", agent_count=2)
    model = FakeModel()

    report = await run_experiment(
        experiment.name, max_ticks=2, model=model, computer_factory=fake_computers
    )

    assert report.ticks == 4
    assert report.rounds == 2
    assert report.paused is None
    assert report.stop_reason == "Tick limit reached after 2 round(s)"
    async with db.get_session() as session:
        assert len(await db.list_messages(session, experiment.id, 0)) == 4
        assert len(await db.list_messages(session, experiment.id, 1)) == 4


@pytest.mark.asyncio
async def test_run_stops_when_an_agent_fails(database: None) -> None:
    experiment = await make_experiment("failing", agent_count=2)
    model = FakeModel([reply(text_part("ok")), ModelCallError("invalid request")])

    report = await run_experiment(
        experiment.name, max_ticks=3, model=model, computer_factory=fake_computers
    )

    assert report.ticks == 1
    assert report.failed_agent == 1
    assert report.stop_reason == "Agent 1 failed: invalid request"


@pytest.mark.asyncio
async def test_run_stops_on_full_approval(database: None) -> None:
    experiment = await make_experiment("approved", agent_count=2)
    async with db.get_session() as session:
        await db.create_pull_request(session, experiment.id, 0, "Fix", "d", "agent-0-fix")

    model = FakeModel(
        [
            reply(text_part("waiting")),
            reply(
                use(
                    "r1",
                    "pr-review_pull_request",
                    {"pr_number": 1, "decision": "approve", "content": "good"},
                )
            ),
        ]
    )

    report = await run_experiment(
        experiment.name, max_ticks=5, model=model, computer_factory=fake_computers
    )

    assert report.ticks == 2
    assert report.paused is not None
    assert report.paused.agent == 1
    assert report.stop_reason == "PR #1 fully approved, awaiting decision"
