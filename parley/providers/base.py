"""Shared machinery for the vendor adapters.

Each adapter owns a ResponseAccumulator for the request in flight and
reports through the unified Callbacks. What differs between vendors is
described by a frozen Capabilities record; thinking resolution and usage
normalization read it instead of branching on vendor names.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from parley.api.models import Conversation
from parley.config import ProviderParameters
from parley.events import Callbacks, Signature, ThinkingMarker, ToolInvocation, Usage, UsageType

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    """Raised when an adapter cannot build or authenticate a request."""


# ---------------------------------------------------------------------------
# Thinking resolution
# ---------------------------------------------------------------------------

LEVEL_BUDGETS: dict[str, int] = {"low": 1024, "medium": 8192, "high": 32768}

_DISABLED_VALUES = {"", "none", "off", "false", "0"}


@dataclass(frozen=True)
class Capabilities:
    """What a vendor supports and how it reports usage."""

    supports_thinking_budget: bool = False
    supports_reasoning_effort: bool = False
    min_thinking_budget: int = 0
    # Prompt token count already includes cache hits
    input_includes_cached: bool = False
    # Vendor reports reasoning tokens separately
    reports_thoughts: bool = False


@dataclass(frozen=True)
class ThinkingConfig:
    enabled: bool = False
    budget: int | None = None
    effort: str | None = None
    level: str | None = None


DISABLED = ThinkingConfig()


def classify_budget(budget: int) -> str:
    """Bucket a token budget into a named level."""
    if budget < 4096:
        return "low"
    if budget < 16384:
        return "medium"
    return "high"


def _budget_config(budget: float, capabilities: Capabilities) -> ThinkingConfig:
    budget = max(math.floor(budget), capabilities.min_thinking_budget)
    level = classify_budget(budget)
    if capabilities.supports_thinking_budget:
        return ThinkingConfig(enabled=True, budget=budget, level=level)
    return ThinkingConfig(enabled=True, effort=level, level=level)


def _resolve_value(value: Any, capabilities: Capabilities) -> ThinkingConfig:
    if value is None or value is False:
        return DISABLED
    if value is True:
        return _resolve_value("medium", capabilities)
    if isinstance(value, (int, float)):
        if value <= 0:
            return DISABLED
        return _budget_config(value, capabilities)
    if isinstance(value, str):
        name = value.strip().lower()
        if name in _DISABLED_VALUES:
            return DISABLED
        if name in LEVEL_BUDGETS:
            if capabilities.supports_thinking_budget:
                budget = max(LEVEL_BUDGETS[name], capabilities.min_thinking_budget)
                return ThinkingConfig(enabled=True, budget=budget, level=name)
            return ThinkingConfig(enabled=True, effort=name, level=name)
        logger.warning("Unrecognized thinking setting %r, thinking disabled", value)
    return DISABLED


def resolve_thinking(parameters: ProviderParameters, capabilities: Capabilities) -> ThinkingConfig:
    """Resolve the unified thinking setting against a vendor's capabilities.

    A vendor-native override (``thinking_budget`` for budget vendors,
    ``reasoning`` for effort vendors) wins over ``thinking``. An empty
    effort string counts as absent.
    """
    if not (capabilities.supports_thinking_budget or capabilities.supports_reasoning_effort):
        return DISABLED

    if capabilities.supports_thinking_budget and parameters.thinking_budget is not None:
        return _resolve_value(parameters.thinking_budget, capabilities)
    if capabilities.supports_reasoning_effort and parameters.reasoning:
        return _resolve_value(parameters.reasoning, capabilities)
    return _resolve_value(parameters.thinking, capabilities)


# ---------------------------------------------------------------------------
# SSE lines
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SSELine:
    field: str  # data, event, id, retry, or "" for comments and blank lines
    value: str = ""


_SSE_FIELDS = ("data", "event", "id", "retry")


def parse_sse_line(line: str) -> SSELine | None:
    """Classify one transport line. Returns None for non-SSE content."""
    line = line.rstrip("\r\n")
    if not line.strip() or line.startswith(":"):
        return SSELine("")
    name, sep, value = line.partition(":")
    if sep and name in _SSE_FIELDS:
        return SSELine(name, value[1:] if value.startswith(" ") else value)
    return None


def decode_data(payload: str, provider: str) -> dict[str, Any] | None:
    """Parse a ``data:`` payload. Malformed JSON is logged and skipped."""
    payload = payload.strip()
    if not payload or payload == "[DONE]":
        return None
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        logger.error("%s: skipping malformed stream line (%s): %.200s", provider, e, payload)
        return None
    if isinstance(data, list) and data and isinstance(data[0], dict):
        data = data[0]
    if not isinstance(data, dict):
        logger.error("%s: skipping non-object stream payload: %.200s", provider, payload)
        return None
    return data


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------


class BlockType(StrEnum):
    NONE = "none"
    TEXT = "text"
    THINKING = "thinking"
    TOOL_USE = "tool_use"


@dataclass
class ToolCallBuffer:
    id: str
    name: str
    arguments: str = ""


@dataclass
class ResponseAccumulator:
    """Per-request parse state. Fresh for every request, never shared."""

    current_block_type: BlockType = BlockType.NONE
    accumulated_thinking: str = ""
    accumulated_signature: str = ""
    redacted_thinking_blocks: list[str] = field(default_factory=list)
    tool_calls: dict[Any, ToolCallBuffer] = field(default_factory=dict)
    reasoning_items: list[dict[str, Any]] = field(default_factory=list)
    stop_reason: str | None = None
    unprocessed_lines: list[str] = field(default_factory=list)
    finished: bool = False


def finish_tool_call(buffer: ToolCallBuffer) -> ToolInvocation:
    """Parse the buffered arguments. Bad JSON yields an input_error, not a crash."""
    raw = buffer.arguments.strip()
    if not raw:
        return ToolInvocation(id=buffer.id, name=buffer.name)
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error("Tool call %s (%s) has malformed arguments: %s", buffer.name, buffer.id, e)
        return ToolInvocation(
            id=buffer.id, name=buffer.name, input_error=f"Invalid JSON arguments: {e}"
        )
    if not isinstance(parsed, dict):
        return ToolInvocation(
            id=buffer.id,
            name=buffer.name,
            input_error=f"Tool arguments must be a JSON object, got {type(parsed).__name__}",
        )
    return ToolInvocation(id=buffer.id, name=buffer.name, input=parsed)


def flush_thinking(acc: ResponseAccumulator, provider: str, callbacks: Callbacks) -> None:
    """Emit held thinking: one visible marker, then each redacted block.

    Clears the thinking state so a second flush emits nothing.
    """
    content = acc.accumulated_thinking.strip()
    signature = acc.accumulated_signature
    if content or signature:
        callbacks.on_content(
            ThinkingMarker(
                content=content,
                signature=Signature(provider, signature) if signature else None,
            )
        )
    for blob in acc.redacted_thinking_blocks:
        callbacks.on_content(ThinkingMarker(content=blob, redacted=True))
    acc.accumulated_thinking = ""
    acc.accumulated_signature = ""
    acc.redacted_thinking_blocks = []


def complete(acc: ResponseAccumulator, provider: str, callbacks: Callbacks) -> None:
    """Terminal path for a normal or length-limited stop."""
    if acc.finished:
        return
    acc.finished = True
    flush_thinking(acc, provider, callbacks)
    callbacks.on_response_complete()


def fail(acc: ResponseAccumulator, provider: str, callbacks: Callbacks, message: str) -> None:
    """Terminal path for an abnormal stop. Thinking is flushed first."""
    if acc.finished:
        return
    acc.finished = True
    flush_thinking(acc, provider, callbacks)
    logger.error("%s: %s", provider, message)
    callbacks.on_error(message)


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


def emit_usage(
    callbacks: Callbacks,
    capabilities: Capabilities,
    *,
    prompt: int | None = None,
    output: int | None = None,
    thoughts: int | None = None,
    cache_read: int | None = None,
    cache_write: int | None = None,
) -> None:
    """Report raw counts, deducting cache hits from vendors that include them."""
    cache_read = cache_read or 0
    if prompt is not None:
        tokens = prompt - cache_read if capabilities.input_includes_cached else prompt
        callbacks.on_usage(Usage(UsageType.INPUT, max(tokens, 0)))
    if output is not None:
        callbacks.on_usage(Usage(UsageType.OUTPUT, output))
    if thoughts is not None and capabilities.reports_thoughts:
        callbacks.on_usage(Usage(UsageType.THOUGHTS, thoughts))
    if cache_read > 0:
        callbacks.on_usage(Usage(UsageType.CACHE_READ, cache_read))
    if cache_write:
        callbacks.on_usage(Usage(UsageType.CACHE_WRITE, cache_write))


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


def extract_error_message(data: Any) -> str | None:
    """Pull a readable message out of a vendor error body."""
    if isinstance(data, list) and data and isinstance(data[0], dict):
        data = data[0]
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, str):
        return error
    if not isinstance(error, dict):
        return None

    message = error.get("message") or ""
    error_type = error.get("type")
    if error_type:
        message = f"{error_type}: {message}" if message else error_type
    if not message:
        message = "Unknown API error"

    status = error.get("status")
    if status:
        message = f"{message} (Status: {status})"

    violations = [
        f"{v.get('field', '?')}: {v.get('description', '')}"
        for detail in error.get("details") or []
        if isinstance(detail, dict)
        for v in detail.get("fieldViolations") or []
        if isinstance(v, dict)
    ]
    if violations:
        message = f"{message}\n" + "\n".join(violations)
    return message


def finalize_unprocessed(acc: ResponseAccumulator, provider: str, callbacks: Callbacks) -> None:
    """Surface a plain JSON error body that arrived instead of an SSE stream."""
    if acc.finished or not acc.unprocessed_lines:
        return
    body = "\n".join(acc.unprocessed_lines)
    acc.unprocessed_lines = []
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        logger.error("%s: unrecognized response body: %.500s", provider, body)
        return
    message = extract_error_message(data)
    if message:
        fail(acc, provider, callbacks, message)


# ---------------------------------------------------------------------------
# Adapter protocol
# ---------------------------------------------------------------------------


class Provider(Protocol):
    """What the transport and runner need from a vendor adapter."""

    name: str
    capabilities: Capabilities
    accumulator: ResponseAccumulator

    def endpoint(self) -> str: ...

    def headers(self) -> dict[str, str]: ...

    def build_request(
        self, conversation: Conversation, tools: list[dict[str, Any]] | None = None
    ) -> dict[str, Any]: ...

    def process_response_line(self, line: str, callbacks: Callbacks) -> None: ...

    def finalize_response(self, callbacks: Callbacks) -> None: ...

    def reset(self, auth_only: bool = False) -> None: ...

    def is_auth_error(self, message: str) -> bool: ...
