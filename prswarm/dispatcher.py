"""
Routes an agent's tool_use requests to capability groups.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from pydantic import ValidationError
from rich.console import Console

from .errors import DomainError, UnknownToolError
from .events import EventType, emit
from .llm import ToolSpec
from .messages import ToolResultPart, tool_result_part
from .tools.base import BaseTool, ToolGroup

console = Console()


def _format_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        loc = ".".join(str(p) for p in error.get("loc", ())) or "(arguments)"
        problems.append(f"{loc}: {error.get('msg')}")
    return "; ".join(problems)


class ToolDispatcher:
    """Qualified tool name -> tool, built once per agent session.

    Groups are searched in the order given; the first group exposing a name
    handles it. ``execute`` never raises: every failure becomes an
    error-flagged tool_result the model can see on its next turn.
    """

    def __init__(
        self,
        groups: Sequence[ToolGroup],
        *,
        experiment_id: int | None = None,
        agent: int | None = None,
    ) -> None:
        self.groups = list(groups)
        self.experiment_id = experiment_id
        self.agent = agent
        self._registry: dict[str, BaseTool] = {}
        for group in self.groups:
            for tool in group.list_tools():
                self._registry.setdefault(group.qualified_name(tool), tool)
        self._specs = [spec for group in self.groups for spec in group.specs()]

    def tool_names(self) -> list[str]:
        return list(self._registry)

    def tool_specs(self) -> list[ToolSpec]:
        return list(self._specs)

    def resolve(self, name: str) -> BaseTool:
        tool = self._registry.get(name)
        if tool is None:
            raise UnknownToolError(name)
        return tool

    async def execute(self, tool_use: dict[str, Any]) -> ToolResultPart:
        tool_use_id = tool_use["id"]
        name = tool_use["name"]

        try:
            tool = self.resolve(name)
            result = await tool(tool_use.get("input"))
        except ValidationError as exc:
            return await self._error(
                tool_use_id, name, f"Invalid arguments for tool {name}: {_format_validation_error(exc)}"
            )
        except DomainError as exc:
            return await self._error(tool_use_id, name, str(exc))
        except Exception as exc:
            console.print(f"[red]Tool {name} ({tool_use_id}) raised: {exc!r}[/red]")
            return await self._error(tool_use_id, name, f"Error executing tool {name}: {exc}")

        if not result.success:
            return await self._error(tool_use_id, name, result.error or f"Tool {name} failed")
        return tool_result_part(tool_use_id, name, result.output)

    async def _error(self, tool_use_id: str, name: str, message: str) -> ToolResultPart:
        if self.experiment_id is not None:
            await emit(
                EventType.TOOL_FAILED,
                self.experiment_id,
                message,
                agent=self.agent,
                data={"tool": name, "tool_use_id": tool_use_id},
            )
        return tool_result_part(tool_use_id, name, message, is_error=True)
