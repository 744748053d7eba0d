"""Capability groups exposed to agents as tools."""

from .base import BaseTool, ToolContext, ToolGroup, ToolResult
from .computer import Computer, ExecuteResult, WorktreeComputer, create_computer_group
from .pr import create_pr_group, pr_header, render_list_of_prs
from .user import create_user_group

__all__ = [
    "BaseTool",
    "Computer",
    "ExecuteResult",
    "ToolContext",
    "ToolGroup",
    "ToolResult",
    "WorktreeComputer",
    "create_computer_group",
    "create_pr_group",
    "create_user_group",
    "pr_header",
    "render_list_of_prs",
]
