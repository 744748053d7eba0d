"""
Pull-request approval state machine.

A read-side projection over review rows: nothing here is persisted, every
query recomputes the state from the current reviews.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .models import Experiment, PullRequest, Review


def required_approvals(agent_count: int) -> int:
    """Every agent except the author must approve; never fewer than one."""
    return max(agent_count - 1, 1)


@dataclass(frozen=True)
class ApprovalState:
    """Approval status of one pull request."""

    pr_number: int
    title: str
    approvals: int
    required: int
    blocked: bool

    @property
    def fully_approved(self) -> bool:
        return self.approvals >= self.required and not self.blocked

    def describe(self) -> str:
        if self.blocked:
            return f"PR #{self.pr_number}: changes requested ({self.approvals}/{self.required} approvals)"
        return f"PR #{self.pr_number}: {self.approvals}/{self.required} approvals"


def evaluate(pr: PullRequest, reviews: Iterable[Review], agent_count: int) -> ApprovalState:
    """Compute the approval state of ``pr`` from its current reviews."""
    approvers: set[int] = set()
    blocked = False
    for review in reviews:
        if review.reviewer == pr.author:
            continue
        if review.decision == "approve":
            approvers.add(review.reviewer)
        elif review.decision == "request_changes":
            blocked = True

    return ApprovalState(
        pr_number=pr.number,
        title=pr.title,
        approvals=len(approvers),
        required=required_approvals(agent_count),
        blocked=blocked,
    )


async def pull_request_state(
    session: AsyncSession, pr: PullRequest, agent_count: int
) -> ApprovalState:
    reviews = await db.list_reviews(session, pr.id)
    return evaluate(pr, reviews, agent_count)


async def open_pull_request_states(
    session: AsyncSession, experiment: Experiment
) -> list[ApprovalState]:
    states: list[ApprovalState] = []
    for pr in await db.list_pull_requests(session, experiment.id, "open"):
        states.append(await pull_request_state(session, pr, experiment.agent_count))
    return states


async def find_fully_approved(
    session: AsyncSession, experiment: Experiment
) -> ApprovalState | None:
    """Return the first open PR that is fully approved, if any."""
    for state in await open_pull_request_states(session, experiment):
        if state.fully_approved:
            return state
    return None
