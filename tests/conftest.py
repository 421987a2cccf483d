"""Shared fixtures: stream recording, SSE line builders, settings."""

import json
from typing import Any

import pytest

from parley.api.models import Conversation, Role, TextPart, ThinkingPart, ToolResultPart, ToolUsePart, Turn
from parley.config import ProviderParameters, Settings
from parley.events import Callbacks, StreamEvent, StreamEventType


# ---------------------------------------------------------------------------
# Stream helpers
# ---------------------------------------------------------------------------


def sse(payload: dict[str, Any]) -> str:
    """Build one ``data:`` line."""
    return f"data: {json.dumps(payload)}"


class StreamRecorder:
    """Records every callback an adapter makes, in order."""

    def __init__(self) -> None:
        self.events: list[StreamEvent] = []
        self.callbacks = Callbacks.recording(self.events)

    def feed(self, provider: Any, lines: list[str]) -> "StreamRecorder":
        for line in lines:
            provider.process_response_line(line, self.callbacks)
        return self

    @property
    def content(self) -> list[Any]:
        return [e.content for e in self.events if e.type == StreamEventType.CONTENT]

    @property
    def rendered(self) -> list[str]:
        return [str(c) for c in self.content]

    @property
    def usage(self) -> dict[str, int]:
        return {e.usage.type.value: e.usage.tokens for e in self.events if e.type == StreamEventType.USAGE}

    @property
    def usage_types(self) -> list[str]:
        return [e.usage.type.value for e in self.events if e.type == StreamEventType.USAGE]

    @property
    def completed(self) -> int:
        return sum(1 for e in self.events if e.type == StreamEventType.COMPLETE)

    @property
    def errors(self) -> list[str]:
        return [e.error for e in self.events if e.type == StreamEventType.ERROR]

    @property
    def kinds(self) -> list[str]:
        return [e.type.value for e in self.events]


@pytest.fixture
def recorder() -> StreamRecorder:
    return StreamRecorder()


# ---------------------------------------------------------------------------
# Settings / parameters
# ---------------------------------------------------------------------------


def make_params(**overrides: Any) -> ProviderParameters:
    defaults: dict[str, Any] = {"model": "test-model", "api_key": "test-key"}
    defaults.update(overrides)
    return ProviderParameters(**defaults)


def make_settings(**overrides: Any) -> Settings:
    """Settings isolated from the process environment and any .env file."""
    defaults: dict[str, Any] = {"ANTHROPIC_API_KEY": "test-key"}
    defaults.update(overrides)
    return Settings(_env_file=None, **defaults)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep developer credentials and PARLEY_* overrides out of tests."""
    import os

    for name in list(os.environ):
        if name.startswith("PARLEY_") or name in (
            "ANTHROPIC_API_KEY",
            "OPENAI_API_KEY",
            "VERTEX_AI_ACCESS_TOKEN",
            "VERTEX_SERVICE_ACCOUNT",
        ):
            monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# Conversation builders
# ---------------------------------------------------------------------------


def make_conversation(session_id: str = "test-session", system: str | None = None) -> Conversation:
    conv = Conversation(session_id=session_id)
    if system:
        conv.add_turn(Turn(Role.SYSTEM, [TextPart(system)]))
    return conv


def tool_round(
    conv: Conversation,
    calls: list[tuple[str, str, dict]],
    *,
    text: str = "",
    thinking: ThinkingPart | None = None,
) -> Turn:
    """Append an assistant turn with tool calls given as (id, name, input)."""
    parts: list[Any] = []
    if thinking is not None:
        parts.append(thinking)
    if text:
        parts.append(TextPart(text))
    parts.extend(ToolUsePart(id=i, name=n, input=args) for i, n, args in calls)
    return conv.add_turn(Turn(Role.ASSISTANT, parts))


def tool_results(conv: Conversation, results: list[tuple[str, str, bool]], text: str = "") -> Turn:
    """Append a user turn with (tool_use_id, content, is_error) results."""
    parts: list[Any] = [ToolResultPart(tool_use_id=i, content=c, is_error=e) for i, c, e in results]
    if text:
        parts.append(TextPart(text))
    return conv.add_turn(Turn(Role.USER, parts))
