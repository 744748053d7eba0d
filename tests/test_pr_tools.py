import pytest
from conftest import tool_context
from sqlalchemy import delete, func, select

from prswarm import db
from prswarm.errors import DomainError, NotFoundError
from prswarm.models import Experiment, PullRequest, Review, Solution
from prswarm.tools.pr import create_pr_group, pr_header, render_list_of_prs


async def open_pr(experiment: Experiment, author: int, title: str = "Change") -> str:
    tool = create_pr_group(tool_context(experiment, author)).get("create_pull_request")
    result = await tool({"title": title, "description": "desc", "source_branch": f"agent-{author}-x"})
    assert result.success
    return result.output


def test_render_list_of_prs_empty() -> None:
    assert render_list_of_prs([]) == "(0 PRs found)"


def test_pr_header_format() -> None:
    pr = PullRequest(
        number=7,
        title="Speed up parser",
        author=2,
        source_branch="agent-2-parser",
        target_branch="main",
        status="open",
    )
    assert pr_header(pr) == (
        "#7\n"
        "title=Speed up parser\n"
        "author=Agent 2\n"
        "source_branch=agent-2-parser\n"
        "target_branch=main\n"
        "status=open"
    )


@pytest.mark.asyncio
async def test_create_pull_request_defaults_target_to_main(experiment: Experiment) -> None:
    output = await open_pr(experiment, 0, "First")

    assert output.startswith("Pull request #1 created successfully!\n\n#1\ntitle=First")
    assert "target_branch=main" in output
    assert "author=Agent 0" in output


@pytest.mark.asyncio
async def test_pr_numbers_increase_and_are_never_reused(experiment: Experiment) -> None:
    for author in (0, 1, 2):
        await open_pr(experiment, author)

    async with db.get_session() as session:
        third = await db.get_pull_request_by_number(session, experiment.id, 3)
        await db.set_pull_request_status(session, third, "closed")
    async with db.get_session() as session:
        await session.execute(delete(PullRequest).where(PullRequest.number == 3))

    output = await open_pr(experiment, 0)
    assert output.startswith("Pull request #4 created")

    async with db.get_session() as session:
        numbers = [pr.number for pr in await db.list_pull_requests(session, experiment.id)]
    assert sorted(numbers) == [1, 2, 4]


@pytest.mark.asyncio
async def test_list_pull_requests_filters_by_status(experiment: Experiment) -> None:
    await open_pr(experiment, 0, "Keep")
    await open_pr(experiment, 1, "Drop")
    async with db.get_session() as session:
        drop = await db.get_pull_request_by_number(session, experiment.id, 2)
        await db.set_pull_request_status(session, drop, "closed")

    tool = create_pr_group(tool_context(experiment, 2)).get("list_pull_requests")
    open_list = await tool({"status": "open"})
    merged_list = await tool({"status": "merged"})
    everything = await tool({})

    assert "title=Keep" in open_list.output and "title=Drop" not in open_list.output
    assert merged_list.output == "(0 PRs found)"
    assert everything.output.count("title=") == 2


@pytest.mark.asyncio
async def test_get_pull_request_without_reviews(experiment: Experiment) -> None:
    await open_pr(experiment, 0)
    tool = create_pr_group(tool_context(experiment, 1)).get("get_pull_request")

    result = await tool({"pr_number": 1})

    assert "DESCRIPTION:\ndesc" in result.output
    assert result.output.endswith("REVIEWS:\nNo reviews yet")


@pytest.mark.asyncio
async def test_get_missing_pull_request(experiment: Experiment) -> None:
    tool = create_pr_group(tool_context(experiment, 1)).get("get_pull_request")
    with pytest.raises(NotFoundError):
        await tool({"pr_number": 42})


@pytest.mark.asyncio
async def test_self_review_is_rejected_and_not_stored(experiment: Experiment) -> None:
    await open_pr(experiment, 0)
    review = create_pr_group(tool_context(experiment, 0)).get("review_pull_request")

    with pytest.raises(DomainError, match="You cannot review your own pull request"):
        await review({"pr_number": 1, "decision": "approve", "content": "mine"})

    async with db.get_session() as session:
        count = await session.scalar(select(func.count(Review.id)))
    assert count == 0


@pytest.mark.asyncio
async def test_second_review_overwrites_first(experiment: Experiment) -> None:
    await open_pr(experiment, 0)
    review = create_pr_group(tool_context(experiment, 1)).get("review_pull_request")

    first = await review({"pr_number": 1, "decision": "request_changes", "content": "add tests"})
    second = await review({"pr_number": 1, "decision": "approve", "content": "thanks"})

    assert first.output == "Review submitted for PR #1: request_changes"
    assert second.output.startswith("Review updated for PR #1: approve")

    async with db.get_session() as session:
        rows = list((await session.execute(select(Review))).scalars())
    assert len(rows) == 1
    assert (rows[0].reviewer, rows[0].decision, rows[0].content) == (1, "approve", "thanks")

    details = await create_pr_group(tool_context(experiment, 2)).get("get_pull_request")({"pr_number": 1})
    assert "Agent 1: approve\nthanks" in details.output


@pytest.mark.asyncio
async def test_invalid_decision_is_rejected_by_validation(experiment: Experiment) -> None:
    from pydantic import ValidationError

    await open_pr(experiment, 0)
    review = create_pr_group(tool_context(experiment, 1)).get("review_pull_request")
    with pytest.raises(ValidationError):
        await review({"pr_number": 1, "decision": "lgtm", "content": "x"})


@pytest.mark.asyncio
async def test_vote_is_upserted(experiment: Experiment) -> None:
    await open_pr(experiment, 0)
    await open_pr(experiment, 1)
    vote = create_pr_group(tool_context(experiment, 2)).get("vote_for_solution")

    assert (await vote({"pr_number": 1})).output == "Voted for PR #1 as the best solution"
    await vote({"pr_number": 2})

    async with db.get_session() as session:
        votes = await db.list_votes(session, experiment.id)
        count = await session.scalar(select(func.count(Solution.id)))
    assert count == 1
    assert [(s.agent, pr.number) for s, pr in votes] == [(2, 2)]


@pytest.mark.asyncio
async def test_vote_for_missing_pull_request(experiment: Experiment) -> None:
    vote = create_pr_group(tool_context(experiment, 2)).get("vote_for_solution")
    with pytest.raises(NotFoundError):
        await vote({"pr_number": 9})
