from types import SimpleNamespace

import pytest
from conftest import make_experiment, tool_context

from prswarm import approval, db
from prswarm.approval import evaluate, required_approvals
from prswarm.tools.pr import CreatePullRequestTool, ReviewPullRequestTool


def pr(author: int = 0, number: int = 1) -> SimpleNamespace:
    return SimpleNamespace(author=author, number=number, title="Fix parser")


def review(reviewer: int, decision: str | None) -> SimpleNamespace:
    return SimpleNamespace(reviewer=reviewer, decision=decision)


@pytest.mark.parametrize(
    ("agents", "required"),
    [(1, 1), (2, 1), (3, 2), (4, 3), (8, 7)],
)
def test_required_approvals(agents: int, required: int) -> None:
    assert required_approvals(agents) == required


def test_three_approvals_of_four_agents_is_fully_approved() -> None:
    state = evaluate(pr(), [review(1, "approve"), review(2, "approve"), review(3, "approve")], 4)

    assert state.approvals == 3
    assert state.required == 3
    assert state.fully_approved


def test_request_changes_blocks_approval() -> None:
    reviews = [
        review(1, "approve"),
        review(2, "approve"),
        review(3, "approve"),
        review(4, "request_changes"),
    ]
    state = evaluate(pr(), reviews, 4)

    assert state.blocked
    assert not state.fully_approved
    assert "changes requested" in state.describe()


def test_comments_and_author_reviews_do_not_count() -> None:
    reviews = [review(0, "approve"), review(1, "comment"), review(2, None), review(3, "approve")]
    state = evaluate(pr(author=0), reviews, 4)

    assert state.approvals == 1
    assert not state.fully_approved


def test_single_agent_can_never_fully_approve() -> None:
    state = evaluate(pr(author=0), [review(0, "approve")], 1)

    assert state.approvals == 0
    assert state.required == 1
    assert not state.fully_approved


def test_two_agents_need_the_other_agent() -> None:
    assert not evaluate(pr(author=0), [], 2).fully_approved
    assert evaluate(pr(author=0), [review(1, "approve")], 2).fully_approved


@pytest.mark.asyncio
async def test_end_to_end_three_agents(database: None) -> None:
    experiment = await make_experiment(agent_count=3)

    created = await CreatePullRequestTool(tool_context(experiment, 0)).run(
        CreatePullRequestTool.args_model(
            title="Add cache", description="Adds an LRU cache", source_branch="agent-0-cache"
        )
    )
    assert created.success

    first = await ReviewPullRequestTool(tool_context(experiment, 1))(
        {"pr_number": 1, "decision": "approve", "content": "LGTM"}
    )
    assert "fully approved" not in first.output
    async with db.get_session() as session:
        assert await approval.find_fully_approved(session, experiment) is None

    second = await ReviewPullRequestTool(tool_context(experiment, 2))(
        {"pr_number": 1, "decision": "approve", "content": "Tests pass"}
    )
    assert "PR #1 is now fully approved" in second.output
    assert second.metadata["fully_approved"] is True
    async with db.get_session() as session:
        state = await approval.find_fully_approved(session, experiment)
    assert state is not None
    assert state.pr_number == 1
    assert (state.approvals, state.required) == (2, 2)


@pytest.mark.asyncio
async def test_closed_pull_requests_are_not_candidates(database: None) -> None:
    experiment = await make_experiment(agent_count=2)
    await CreatePullRequestTool(tool_context(experiment, 0))(
        {"title": "A", "description": "a", "source_branch": "a"}
    )
    await ReviewPullRequestTool(tool_context(experiment, 1))(
        {"pr_number": 1, "decision": "approve", "content": "ok"}
    )

    async with db.get_session() as session:
        pull = await db.get_pull_request_by_number(session, experiment.id, 1)
        await db.set_pull_request_status(session, pull, "merged")

    async with db.get_session() as session:
        assert await approval.find_fully_approved(session, experiment) is None
