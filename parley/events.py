"""Vendor-agnostic stream events.

Every provider adapter reports what it parsed through one ``Callbacks``
instance: visible text, thinking markers, tool invocations, usage counts,
and a single terminal signal (complete or error). Callbacks run
synchronously in the order the adapter emits them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable

from parley.utils import code_fence


class UsageType(StrEnum):
    INPUT = "input"
    OUTPUT = "output"
    THOUGHTS = "thoughts"
    CACHE_READ = "cache_read"
    CACHE_WRITE = "cache_write"


@dataclass(frozen=True)
class Usage:
    """A raw token count for one category of one request."""

    type: UsageType
    tokens: int


@dataclass(frozen=True)
class Signature:
    """Opaque reasoning signature, tagged with the vendor that issued it."""

    provider: str
    value: str


@dataclass(frozen=True)
class ThinkingMarker:
    """A complete block of model reasoning, emitted once per response.

    ``str()`` renders the transcript form: ``<thinking>...</thinking>``,
    with a ``vendor:signature`` attribute when signed, self-closing when
    only a signature exists, and ``<thinking redacted>`` for ciphertext.
    """

    content: str = ""
    signature: Signature | None = None
    redacted: bool = False

    def __str__(self) -> str:
        if self.redacted:
            return f"<thinking redacted>{self.content}</thinking>"
        if self.signature is None:
            return f"<thinking>{self.content}</thinking>"
        attr = f'{self.signature.provider}:signature="{self.signature.value}"'
        if not self.content:
            return f"<thinking {attr}/>"
        return f"<thinking {attr}>{self.content}</thinking>"


@dataclass(frozen=True)
class ToolInvocation:
    """A fully streamed tool call.

    ``input_error`` is set when the streamed arguments were not valid JSON;
    ``input`` is then empty and the call must not be executed.
    """

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    input_error: str | None = None

    def __str__(self) -> str:
        body = json.dumps(self.input, indent=2)
        return f"**Tool Use:** `{self.name}` (`{self.id}`)\n\n{code_fence(body, 'json')}"


ContentItem = str | ThinkingMarker | ToolInvocation


class StreamEventType(StrEnum):
    CONTENT = "content"
    USAGE = "usage"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    """One recorded callback invocation, in arrival order."""

    type: StreamEventType
    content: ContentItem | None = None
    usage: Usage | None = None
    error: str = ""


def _noop(*_args: Any) -> None:
    return None


@dataclass
class Callbacks:
    """The four hooks an adapter drives while consuming a stream."""

    on_content: Callable[[ContentItem], None] = _noop
    on_usage: Callable[[Usage], None] = _noop
    on_response_complete: Callable[[], None] = _noop
    on_error: Callable[[str], None] = _noop

    @classmethod
    def recording(
        cls, events: list[StreamEvent], forward: Callbacks | None = None
    ) -> Callbacks:
        """Callbacks that append every invocation to ``events``.

        When ``forward`` is given each event is also passed on to it, so a
        caller can render content live while the runner keeps the log.
        """
        forward = forward or cls()

        def on_content(item: ContentItem) -> None:
            events.append(StreamEvent(StreamEventType.CONTENT, content=item))
            forward.on_content(item)

        def on_usage(usage: Usage) -> None:
            events.append(StreamEvent(StreamEventType.USAGE, usage=usage))
            forward.on_usage(usage)

        def on_response_complete() -> None:
            events.append(StreamEvent(StreamEventType.COMPLETE))
            forward.on_response_complete()

        def on_error(message: str) -> None:
            events.append(StreamEvent(StreamEventType.ERROR, error=message))
            forward.on_error(message)

        return cls(on_content, on_usage, on_response_complete, on_error)
