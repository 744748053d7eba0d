"""
User interaction tools: blocking questions, the problem statement, status updates.
"""

from __future__ import annotations

import asyncio
from typing import Literal

from pydantic import BaseModel, Field
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.text import Text

from .. import db
from ..config import settings
from ..events import EventType, emit
from .base import BaseTool, ToolContext, ToolGroup, ToolResult

GROUP_NAME = "user"

console = Console()

_STATUS_LABELS = {"todo_list": "TODO", "progress": "PROGRESS", "question": "STATUS"}


class AskUserQuestionArgs(BaseModel):
    question: str = Field(description="The question to ask the user")
    timeout_seconds: float | None = Field(
        default=None, gt=0, description="Timeout in seconds (default: 300 = 5 minutes)"
    )


class PublishStatusUpdateArgs(BaseModel):
    type: Literal["todo_list", "progress", "question"] = Field(description="Type of status update")
    content: str = Field(description="Content of the update (markdown supported)")


def _format_seconds(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


class AskUserQuestionTool(BaseTool):
    """Blocks this tool call, not the agent batch, until answered or timed out.

    The question is persisted as a pending ``UserQuestion`` row; ``prswarm
    answer`` fills it in from another process and the poll loop picks it up.
    """

    name = "ask_user_question"
    description = (
        "Ask the user a question and wait for their response. "
        "This blocks execution until the user answers."
    )
    args_model = AskUserQuestionArgs

    async def run(self, args: AskUserQuestionArgs) -> ToolResult:
        timeout = args.timeout_seconds or settings.question_default_timeout

        async with db.get_session() as session:
            record = await db.create_question(
                session, self.ctx.experiment_id, self.ctx.agent, args.question
            )
            question_id = record.id

        console.print(
            Panel(
                f"[cyan]{escape(args.question)}[/cyan]\n\n"
                f"[dim]Question ID: {question_id}. Waiting for answer "
                f"(timeout: {_format_seconds(timeout)}s)[/dim]",
                title=f"[bold cyan]USER QUESTION[/bold cyan] Agent {self.ctx.agent}",
                border_style="cyan",
            )
        )
        await emit(
            EventType.HUMAN_INPUT_REQUESTED,
            self.ctx.experiment_id,
            f"Agent {self.ctx.agent} asked question {question_id}",
            agent=self.ctx.agent,
            data={"question_id": question_id, "question": args.question},
        )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            async with db.get_session() as session:
                record = await db.get_question(session, question_id)
                if record is not None and record.status == "answered":
                    answer = record.answer or ""
                    break
                remaining = deadline - loop.time()
                if remaining <= 0:
                    answer = None
                    if record is not None and not await db.mark_question_timeout(session, record):
                        # Answered between the read above and the timeout.
                        answer = record.answer or ""
                    break
            await asyncio.sleep(min(settings.question_poll_interval, remaining))

        if answer is None:
            await emit(
                EventType.HUMAN_INPUT_TIMEOUT,
                self.ctx.experiment_id,
                f"Question {question_id} timed out",
                agent=self.ctx.agent,
                data={"question_id": question_id},
            )
            return ToolResult.ok(
                f"[Timeout] User did not answer within {_format_seconds(timeout)} seconds. "
                "Proceeding without answer.",
                question_id=question_id,
                timed_out=True,
            )

        await emit(
            EventType.HUMAN_INPUT_RECEIVED,
            self.ctx.experiment_id,
            f"Question {question_id} answered",
            agent=self.ctx.agent,
            data={"question_id": question_id},
        )
        return ToolResult.ok(f"User answered: {answer}", question_id=question_id)


class GetProblemDescriptionTool(BaseTool):
    name = "get_problem_description"
    description = "Get the original problem description for this experiment."

    async def run(self, args: BaseModel) -> ToolResult:
        return ToolResult.ok(self.ctx.problem)


class PublishStatusUpdateTool(BaseTool):
    name = "publish_status_update"
    description = "Publish a status update that the user can see (non-blocking)."
    args_model = PublishStatusUpdateArgs

    async def run(self, args: PublishStatusUpdateArgs) -> ToolResult:
        async with db.get_session() as session:
            await db.add_status_update(
                session, self.ctx.experiment_id, self.ctx.agent, args.type, args.content
            )

        label = _STATUS_LABELS[args.type]
        console.print(f"\n[bold magenta]\\[{label}][/bold magenta] Agent {self.ctx.agent}:")
        console.print(Text(args.content + "\n", style="magenta"))
        await emit(
            EventType.STATUS_PUBLISHED,
            self.ctx.experiment_id,
            f"Agent {self.ctx.agent} published {args.type}",
            agent=self.ctx.agent,
            data={"type": args.type},
        )
        return ToolResult.ok(f"Status update published ({args.type})")


def create_user_group(ctx: ToolContext) -> ToolGroup:
    return ToolGroup(
        GROUP_NAME,
        [
            AskUserQuestionTool(ctx),
            GetProblemDescriptionTool(ctx),
            PublishStatusUpdateTool(ctx),
        ],
    )
