"""
Tool abstraction shared by every capability group.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict

from ..llm import ToolSpec


@dataclass(frozen=True)
class ToolContext:
    """Who is calling: one agent of one experiment."""

    experiment_id: int
    experiment_name: str
    problem: str
    agent_count: int
    agent: int


@dataclass
class ToolResult:
    """Result from a tool invocation."""

    success: bool
    output: str
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, output: str, **metadata: Any) -> ToolResult:
        return cls(success=True, output=output, metadata=metadata)

    @classmethod
    def fail(cls, error: str, **metadata: Any) -> ToolResult:
        return cls(success=False, output="", error=error, metadata=metadata)


class NoArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")


class BaseTool(ABC):
    """Base class for all tools.

    Subclasses declare ``name``, ``description`` and a pydantic ``args_model``.
    Arguments are validated before ``run`` sees them; a pydantic
    ``ValidationError`` or a ``DomainError`` raised here is turned into an
    error result by the dispatcher.
    """

    name: ClassVar[str]
    description: ClassVar[str]
    args_model: ClassVar[type[BaseModel]] = NoArgs

    def __init__(self, ctx: ToolContext) -> None:
        self.ctx = ctx

    def input_schema(self) -> dict[str, Any]:
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        schema.setdefault("properties", {})
        return schema

    async def __call__(self, arguments: dict[str, Any] | None) -> ToolResult:
        args = self.args_model.model_validate(arguments or {})
        return await self.run(args)

    @abstractmethod
    async def run(self, args: Any) -> ToolResult:
        pass


class ToolGroup:
    """A named capability group; its tools are exposed as ``<group>-<tool>``."""

    def __init__(self, name: str, tools: list[BaseTool]) -> None:
        self.name = name
        self._tools = {tool.name: tool for tool in tools}

    def __repr__(self) -> str:
        return f"ToolGroup({self.name!r}, tools={list(self._tools)})"

    def qualified_name(self, tool: BaseTool) -> str:
        return f"{self.name}-{tool.name}"

    def get(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    def list_tools(self) -> list[BaseTool]:
        return list(self._tools.values())

    def specs(self) -> list[ToolSpec]:
        return [
            ToolSpec(
                name=self.qualified_name(tool),
                description=tool.description,
                input_schema=tool.input_schema(),
            )
            for tool in self._tools.values()
        ]
