"""
Context window truncation for an agent's conversation log.

Two invariants hold for every rendered window:

(1) it starts with a turn-start message (a user message with only text);
(2) every tool_result in it is preceded, inside the window, by the tool_use
    carrying the same id.

``inner_start`` only ever moves to an agent message that issues tool calls, so
every tool_result after it has its tool_use inside the window (2). When
``inner_start`` has moved past ``loop_start``, the turn-start message at
``loop_start`` is prepended to restore (1).
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from .errors import ContextOverflowError
from .messages import HasContent, has_tool_use, is_turn_start

M = TypeVar("M", bound=HasContent)

TokenCounter = Callable[[list[M]], Awaitable[int]]


class ContextWindow:
    """Two monotonic cursors into one agent's message log."""

    def __init__(self, loop_start: int = 0, inner_start: int = 0) -> None:
        self.loop_start = loop_start
        self.inner_start = inner_start

    def __repr__(self) -> str:
        return f"ContextWindow(loop_start={self.loop_start}, inner_start={self.inner_start})"

    def window(self, messages: Sequence[M]) -> list[M]:
        selected = list(messages[self.inner_start :])
        if self.inner_start > self.loop_start:
            selected.insert(0, messages[self.loop_start])
        return selected

    def advance(self, messages: Sequence[M]) -> None:
        """Move the cursors to the next valid truncation point.

        Raises ContextOverflowError when no such point exists, i.e. the current
        agent loop alone does not fit.
        """
        if self.inner_start >= len(messages):
            raise ContextOverflowError(
                f"inner_start {self.inner_start} is out of bounds ({len(messages)} messages)"
            )

        # With equal cursors, inner_start + 1 would select the same messages.
        if self.inner_start > self.loop_start:
            idx = self.inner_start + 1
        else:
            idx = self.inner_start + 2

        new_loop = False
        while idx < len(messages):
            message = messages[idx]
            if has_tool_use(message):
                break
            if is_turn_start(message):
                new_loop = True
                break
            idx += 1

        if idx >= len(messages):
            raise ContextOverflowError("No agent loop start position found after last.")

        if new_loop:
            self.loop_start = idx
        self.inner_start = idx

    async def render(
        self,
        messages: Sequence[M],
        count_tokens: TokenCounter,
        budget: int,
    ) -> list[M]:
        """Return the longest valid suffix of ``messages`` that fits ``budget`` tokens.

        ``count_tokens`` must account for the system prompt and tool schemas as
        well as the given messages.
        """
        if not messages:
            return []

        while True:
            selected = self.window(messages)
            tokens = await count_tokens(selected)
            if tokens <= budget:
                return selected
            self.advance(messages)
