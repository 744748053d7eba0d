"""
Pull request tools: create, list, inspect, review and vote on PRs.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Literal

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from .. import approval, db
from ..errors import DomainError, NotFoundError
from ..events import EventType, emit
from ..models import PullRequest, Review
from .base import BaseTool, ToolContext, ToolGroup, ToolResult

GROUP_NAME = "pr"


def pr_header(pr: PullRequest) -> str:
    return (
        f"#{pr.number}\n"
        f"title={pr.title}\n"
        f"author=Agent {pr.author}\n"
        f"source_branch={pr.source_branch}\n"
        f"target_branch={pr.target_branch}\n"
        f"status={pr.status}"
    )


def render_list_of_prs(prs: Iterable[PullRequest]) -> str:
    prs = list(prs)
    if not prs:
        return "(0 PRs found)"
    return "\n\n".join(pr_header(pr) for pr in prs)


def render_reviews(reviews: Iterable[Review]) -> str:
    reviews = list(reviews)
    if not reviews:
        return "No reviews yet"
    return "\n\n".join(
        f"Agent {r.reviewer}: {r.decision or 'PENDING'}\n{r.content or ''}" for r in reviews
    )


async def _get_pr(
    session: AsyncSession, experiment_id: int, number: int, *, for_update: bool = False
) -> PullRequest:
    pr = await db.get_pull_request_by_number(session, experiment_id, number, for_update=for_update)
    if pr is None:
        raise NotFoundError(f"Pull request #{number} not found")
    return pr


# =============================================================================
# Argument models
# =============================================================================


class CreatePullRequestArgs(BaseModel):
    title: str = Field(description="Title of the pull request")
    description: str = Field(description="Description of the changes")
    source_branch: str = Field(description="Branch name containing your changes")
    target_branch: str | None = Field(
        default=None, description="Branch to merge into (defaults to main)"
    )


class ListPullRequestsArgs(BaseModel):
    status: Literal["open", "closed", "merged"] | None = Field(
        default=None, description="Filter by PR status. If not specified, shows all PRs."
    )


class PullRequestNumberArgs(BaseModel):
    pr_number: int = Field(description="Pull request number")


class ReviewPullRequestArgs(BaseModel):
    pr_number: int = Field(description="Pull request number to review")
    decision: Literal["approve", "request_changes", "comment"] = Field(
        description=(
            "Your review decision: 'approve' if code looks good, "
            "'request_changes' if changes needed, 'comment' for general feedback"
        )
    )
    content: str = Field(description="Your review comments")


class VoteArgs(BaseModel):
    pr_number: int = Field(description="Pull request number to vote for")


# =============================================================================
# Tools
# =============================================================================


class CreatePullRequestTool(BaseTool):
    name = "create_pull_request"
    description = "Create a new pull request to propose code changes."
    args_model = CreatePullRequestArgs

    async def run(self, args: CreatePullRequestArgs) -> ToolResult:
        async with db.get_session() as session:
            pr = await db.create_pull_request(
                session,
                self.ctx.experiment_id,
                self.ctx.agent,
                args.title,
                args.description,
                args.source_branch,
                args.target_branch,
            )
            header = pr_header(pr)
            number = pr.number

        await emit(
            EventType.PR_CREATED,
            self.ctx.experiment_id,
            f"Agent {self.ctx.agent} opened PR #{number}",
            agent=self.ctx.agent,
            data={"pr_number": number, "title": args.title},
        )
        return ToolResult.ok(
            f"Pull request #{number} created successfully!\n\n{header}", pr_number=number
        )


class ListPullRequestsTool(BaseTool):
    name = "list_pull_requests"
    description = "List pull requests in the experiment."
    args_model = ListPullRequestsArgs

    async def run(self, args: ListPullRequestsArgs) -> ToolResult:
        async with db.get_session() as session:
            prs = await db.list_pull_requests(session, self.ctx.experiment_id, args.status)
            return ToolResult.ok(render_list_of_prs(prs))


class GetPullRequestTool(BaseTool):
    name = "get_pull_request"
    description = "Get details of a specific pull request including reviews."
    args_model = PullRequestNumberArgs

    async def run(self, args: PullRequestNumberArgs) -> ToolResult:
        async with db.get_session() as session:
            pr = await _get_pr(session, self.ctx.experiment_id, args.pr_number)
            reviews = await db.list_reviews(session, pr.id)
            return ToolResult.ok(
                f"{pr_header(pr)}\n\nDESCRIPTION:\n{pr.description}\n\n"
                f"REVIEWS:\n{render_reviews(reviews)}"
            )


class ReviewPullRequestTool(BaseTool):
    name = "review_pull_request"
    description = "Submit a review for a pull request."
    args_model = ReviewPullRequestArgs

    async def run(self, args: ReviewPullRequestArgs) -> ToolResult:
        # The PR row stays locked while the review is written and the approval
        # state is recomputed, so concurrent reviewers see a consistent count.
        async with db.get_session() as session:
            pr = await _get_pr(session, self.ctx.experiment_id, args.pr_number, for_update=True)
            if pr.author == self.ctx.agent:
                raise DomainError("You cannot review your own pull request")

            before = await approval.pull_request_state(session, pr, self.ctx.agent_count)
            existed = await db.upsert_review(
                session, pr, self.ctx.agent, args.decision, args.content
            )
            after = await approval.pull_request_state(session, pr, self.ctx.agent_count)
            is_open = pr.status == "open"

        verb = "updated" if existed else "submitted"
        text = f"Review {verb} for PR #{args.pr_number}: {args.decision}"
        became_approved = is_open and after.fully_approved and not before.fully_approved

        await emit(
            EventType.PR_REVIEWED,
            self.ctx.experiment_id,
            f"Agent {self.ctx.agent} reviewed PR #{args.pr_number}: {args.decision}",
            agent=self.ctx.agent,
            data={"pr_number": args.pr_number, "decision": args.decision, "updated": existed},
        )
        if became_approved:
            text += (
                f"\n\nPR #{args.pr_number} is now fully approved "
                f"({after.approvals}/{after.required}) and awaits a user decision."
            )
            await emit(
                EventType.PR_FULLY_APPROVED,
                self.ctx.experiment_id,
                f"PR #{args.pr_number} fully approved",
                agent=self.ctx.agent,
                data={"pr_number": args.pr_number, "approvals": after.approvals},
            )
        return ToolResult.ok(text, fully_approved=became_approved)


class VoteForSolutionTool(BaseTool):
    name = "vote_for_solution"
    description = "Vote for a pull request as the best solution to the problem."
    args_model = VoteArgs

    async def run(self, args: VoteArgs) -> ToolResult:
        async with db.get_session() as session:
            pr = await _get_pr(session, self.ctx.experiment_id, args.pr_number)
            await db.upsert_vote(session, self.ctx.experiment_id, self.ctx.agent, pr.id)

        await emit(
            EventType.VOTE_CAST,
            self.ctx.experiment_id,
            f"Agent {self.ctx.agent} voted for PR #{args.pr_number}",
            agent=self.ctx.agent,
            data={"pr_number": args.pr_number},
        )
        return ToolResult.ok(f"Voted for PR #{args.pr_number} as the best solution")


def create_pr_group(ctx: ToolContext) -> ToolGroup:
    return ToolGroup(
        GROUP_NAME,
        [
            CreatePullRequestTool(ctx),
            ListPullRequestsTool(ctx),
            GetPullRequestTool(ctx),
            ReviewPullRequestTool(ctx),
            VoteForSolutionTool(ctx),
        ],
    )
