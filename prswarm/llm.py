"""Model client interface, the Anthropic adapter, and retrying model calls."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

import anthropic
import tenacity
from rich.console import Console

from .config import settings
from .costs import TokenUsage, calculate_cost
from .errors import ModelCallError, TransientModelError
from .messages import ChatMessage, HasContent

console = Console()

T = TypeVar("T")

_RETRYABLE_STATUS_CODES = {408, 409, 429, 500, 502, 503, 504, 529}

EMPTY_CONTENT_PLACEHOLDER = "(no content)"

# Context window sizes by model id prefix.
_CONTEXT_TOKENS: dict[str, int] = {
    "claude-sonnet-4": 200_000,
    "claude-opus-4": 200_000,
    "claude-haiku-4": 200_000,
    "claude-3-7-sonnet": 200_000,
    "claude-3-5-haiku": 200_000,
}


@dataclass(frozen=True)
class ToolSpec:
    """A tool as advertised to the model."""

    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass
class ModelResponse:
    message: ChatMessage
    usage: TokenUsage | None = None
    stop_reason: str | None = None


class ModelClient(Protocol):
    """What the tick engine needs from a language model provider."""

    model: str

    @property
    def max_context_tokens(self) -> int: ...

    async def run(
        self, messages: Sequence[HasContent], system: str, tools: Sequence[ToolSpec]
    ) -> ModelResponse: ...

    async def count_tokens(
        self, messages: Sequence[HasContent], system: str, tools: Sequence[ToolSpec]
    ) -> int: ...

    def cost(self, usages: list[TokenUsage]) -> float: ...


def _log_retry(retry_state: tenacity.RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    console.print(
        f"[yellow]Model call failed (attempt {retry_state.attempt_number}): {exc}. "
        f"Retrying in {wait:.1f}s[/yellow]"
    )


async def call_with_retries(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int | None = None,
    min_wait: float | None = None,
    max_wait: float | None = None,
) -> T:
    """Run ``fn`` retrying TransientModelError with exponential backoff.

    After the last attempt the transient error is surfaced as ModelCallError.
    """
    retryer = tenacity.AsyncRetrying(
        retry=tenacity.retry_if_exception_type(TransientModelError),
        wait=tenacity.wait_exponential(
            multiplier=min_wait if min_wait is not None else settings.model_retry_min_wait,
            max=max_wait if max_wait is not None else settings.model_retry_max_wait,
        ),
        stop=tenacity.stop_after_attempt(attempts or settings.model_max_retries),
        before_sleep=_log_retry,
        reraise=True,
    )
    try:
        return await retryer(fn)
    except TransientModelError as exc:
        raise ModelCallError(f"Model call failed after retries: {exc}") from exc


# =============================================================================
# Anthropic adapter
# =============================================================================


def _to_anthropic_content(part: dict[str, Any], *, thinking: bool) -> dict[str, Any] | None:
    kind = part.get("type")
    if kind == "text":
        if not part.get("text"):
            return None
        return {"type": "text", "text": part["text"]}
    if kind == "thinking":
        if not thinking or not part.get("signature"):
            return None
        return {"type": "thinking", "thinking": part["thinking"], "signature": part["signature"]}
    if kind == "tool_use":
        return {"type": "tool_use", "id": part["id"], "name": part["name"], "input": part["input"]}
    if kind == "tool_result":
        return {
            "type": "tool_result",
            "tool_use_id": part["tool_use_id"],
            "content": [c for c in part.get("content", []) if c.get("text")],
            "is_error": bool(part.get("is_error")),
        }
    raise ValueError(f"Unknown content part type: {kind!r}")


def to_anthropic_messages(
    messages: Sequence[HasContent], *, thinking: bool = False
) -> list[dict[str, Any]]:
    rendered: list[dict[str, Any]] = []
    for m in messages:
        content = [
            c
            for c in (_to_anthropic_content(p, thinking=thinking) for p in m.content)
            if c is not None
        ]
        if not content:
            # The API rejects messages with empty content.
            content = [{"type": "text", "text": EMPTY_CONTENT_PLACEHOLDER}]
        rendered.append(
            {"role": "assistant" if m.role == "agent" else "user", "content": content}
        )
    return rendered


def _from_anthropic_block(block: Any) -> dict[str, Any] | None:
    if block.type == "text":
        return {"type": "text", "text": block.text}
    if block.type == "thinking":
        return {"type": "thinking", "thinking": block.thinking, "signature": block.signature}
    if block.type == "tool_use":
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": dict(block.input)}
    return None


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, (anthropic.APIConnectionError, anthropic.RateLimitError)):
        return True
    if isinstance(exc, anthropic.APIStatusError):
        return exc.status_code in _RETRYABLE_STATUS_CODES
    return False


class AnthropicModel:
    """ModelClient backed by the Anthropic Messages API."""

    def __init__(
        self,
        model: str,
        *,
        client: anthropic.AsyncAnthropic | None = None,
        max_output_tokens: int | None = None,
        thinking_budget: int | None = None,
    ) -> None:
        self.model = model
        self._client = client or anthropic.AsyncAnthropic()
        self._max_output_tokens = max_output_tokens or settings.max_output_tokens
        self._thinking_budget = thinking_budget if thinking_budget is not None else settings.thinking_budget

    @property
    def max_context_tokens(self) -> int:
        context = 200_000
        for prefix, size in _CONTEXT_TOKENS.items():
            if self.model.startswith(prefix):
                context = size
                break
        # Leave room for the response.
        return context - self._max_output_tokens

    def _request(
        self, messages: Sequence[HasContent], system: str, tools: Sequence[ToolSpec]
    ) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": self.model,
            "system": system,
            "messages": to_anthropic_messages(messages, thinking=bool(self._thinking_budget)),
            "tools": [
                {"name": t.name, "description": t.description, "input_schema": t.input_schema}
                for t in tools
            ],
        }
        if self._thinking_budget:
            request["thinking"] = {"type": "enabled", "budget_tokens": self._thinking_budget}
        return request

    async def run(
        self, messages: Sequence[HasContent], system: str, tools: Sequence[ToolSpec]
    ) -> ModelResponse:
        request = self._request(messages, system, tools)
        try:
            response = await self._client.messages.create(
                max_tokens=self._max_output_tokens, **request
            )
        except anthropic.APIError as exc:
            if _is_transient(exc):
                raise TransientModelError(str(exc)) from exc
            raise ModelCallError(str(exc)) from exc

        content = [
            part
            for part in (_from_anthropic_block(b) for b in response.content)
            if part is not None
        ]
        usage = TokenUsage(
            input_tokens=response.usage.input_tokens or 0,
            output_tokens=response.usage.output_tokens or 0,
            cache_read_tokens=getattr(response.usage, "cache_read_input_tokens", 0) or 0,
            cache_write_tokens=getattr(response.usage, "cache_creation_input_tokens", 0) or 0,
        )
        return ModelResponse(
            message=ChatMessage(role="agent", content=content),
            usage=usage,
            stop_reason=response.stop_reason,
        )

    async def count_tokens(
        self, messages: Sequence[HasContent], system: str, tools: Sequence[ToolSpec]
    ) -> int:
        request = self._request(messages, system, tools)
        try:
            result = await self._client.messages.count_tokens(**request)
        except anthropic.APIError as exc:
            if _is_transient(exc):
                raise TransientModelError(str(exc)) from exc
            raise ModelCallError(str(exc)) from exc
        return result.input_tokens

    def cost(self, usages: list[TokenUsage]) -> float:
        return calculate_cost(self.model, usages)
