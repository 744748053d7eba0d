"""
Sandbox execution: the Computer protocol, a git-worktree sandbox, and the
``execute`` tool that runs shell commands in it.
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field

from ..config import settings
from ..errors import DomainError
from .base import BaseTool, ToolContext, ToolGroup, ToolResult

GROUP_NAME = "computer"

# Per-stream cap on captured output.
MAX_OUTPUT_BYTES = 8 * 1024 * 1024


class ComputerError(DomainError):
    """Raised when the sandbox cannot be created or a command cannot run."""


@dataclass
class ExecuteResult:
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int


class Computer(Protocol):
    """Where an agent's shell commands run."""

    async def execute(
        self,
        cmd: str,
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout_ms: int | None = None,
    ) -> ExecuteResult: ...

    async def status(self) -> str: ...

    async def stop(self) -> None: ...


async def _run_git(*args: str) -> None:
    proc = await asyncio.create_subprocess_exec(
        "git",
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    _, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise ComputerError(f"git {' '.join(args)} failed: {stderr.decode(errors='replace').strip()}")


def worktree_path(repository_path: str | Path, agent: int) -> Path:
    """Worktrees live beside the repository unless a worktree root is configured."""
    root = settings.worktree_root or Path(repository_path).resolve().parent
    return Path(root) / f"worktree-agent-{agent}"


def worktree_branch(agent: int) -> str:
    return f"agent-{agent}-main"


class WorktreeComputer:
    """A per-agent git worktree next to the shared repository."""

    def __init__(self, path: Path, repository_path: Path) -> None:
        self.path = path
        self.repository_path = repository_path

    def __repr__(self) -> str:
        return f"WorktreeComputer({str(self.path)!r})"

    @classmethod
    async def create(cls, repository_path: str | Path | None, agent: int) -> WorktreeComputer:
        if not repository_path:
            raise ComputerError("Repository path not set for experiment. Clone a repository first.")
        repo = Path(repository_path).resolve()
        path = worktree_path(repo, agent)
        if not path.exists():
            await _run_git("-C", str(repo), "worktree", "add", str(path), "-b", worktree_branch(agent))
        return cls(path, repo)

    async def execute(
        self,
        cmd: str,
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout_ms: int | None = None,
    ) -> ExecuteResult:
        """Run ``cmd`` in a shell inside the worktree.

        A non-zero exit code is returned as a normal result; only a timeout or
        a failure to start the process raises.
        """
        timeout_ms = timeout_ms or settings.command_timeout_ms
        workdir = self.path / cwd if cwd else self.path
        full_env = {
            **os.environ,
            "GIT_WORKTREE_PATH": str(self.path),
            "HOME": str(self.path),
            **(env or {}),
        }

        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_shell(
                cmd,
                cwd=workdir,
                env=full_env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ComputerError(f"Failed to start command: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_ms / 1000)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise ComputerError(f"Command execution timed out after {timeout_ms}ms") from None

        return ExecuteResult(
            stdout=stdout[:MAX_OUTPUT_BYTES].decode(errors="replace"),
            stderr=stderr[:MAX_OUTPUT_BYTES].decode(errors="replace"),
            exit_code=proc.returncode if proc.returncode is not None else 127,
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    async def status(self) -> str:
        return "running" if self.path.exists() else "NotFound"

    async def stop(self) -> None:
        if self.path.exists():
            await _run_git(
                "-C", str(self.repository_path), "worktree", "remove", str(self.path), "--force"
            )


def render_execute_result(result: ExecuteResult) -> str:
    return (
        f"exit_code={result.exit_code}\n"
        f"duration_ms={result.duration_ms}\n"
        f"STDOUT:\n{result.stdout}\n"
        f"STDERR:\n{result.stderr}"
    )


class ExecuteArgs(BaseModel):
    cmd: str = Field(description="Shell command to execute")
    cwd: str | None = Field(
        default=None, description="Working directory, relative to your worktree"
    )
    env: dict[str, str] | None = Field(default=None, description="Extra environment variables")
    timeout_ms: int | None = Field(
        default=None, gt=0, description="Timeout in milliseconds (default: 120000)"
    )


class ExecuteTool(BaseTool):
    name = "execute"
    description = (
        "Execute a shell command in your sandbox (a git worktree of the shared repository). "
        "Returns stdout, stderr, exit code and duration."
    )
    args_model = ExecuteArgs

    def __init__(self, ctx: ToolContext, computer: Computer) -> None:
        super().__init__(ctx)
        self.computer = computer

    async def run(self, args: ExecuteArgs) -> ToolResult:
        result = await self.computer.execute(
            args.cmd, cwd=args.cwd, env=args.env, timeout_ms=args.timeout_ms
        )
        return ToolResult.ok(
            render_execute_result(result),
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
        )


def create_computer_group(ctx: ToolContext, computer: Computer) -> ToolGroup:
    return ToolGroup(
        GROUP_NAME,
        [ExecuteTool(ctx, computer)],
    )
