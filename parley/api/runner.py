"""Chat runner -- streams turns through a provider adapter and drives autopilot.

One ChatSession per conversation id holds the conversation, its adapter
and usage totals. ``send`` runs a turn and, while autopilot says
``sending``, keeps executing tools and re-sending without a human.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from parley.api.models import Conversation, Role, TextPart, ThinkingPart, ToolUsePart, Turn
from parley.api.tools import ToolDispatcher
from parley.api.transport import StreamTransport
from parley.autopilot import Autopilot, AutopilotState
from parley.config import Settings
from parley.events import (
    Callbacks,
    ContentItem,
    StreamEvent,
    StreamEventType,
    ThinkingMarker,
    ToolInvocation,
    UsageType,
)
from parley.providers import get_provider
from parley.providers.base import Provider

logger = logging.getLogger(__name__)


class TurnAssembler:
    """Builds an assistant Turn from streamed content items.

    Adapters emit thinking after the text it preceded, so thinking parts
    are placed ahead of everything else in the turn.
    """

    def __init__(self) -> None:
        self._thinking: list[ThinkingPart] = []
        self._parts: list[TextPart | ToolUsePart] = []
        self._text: list[str] = []

    def add(self, item: ContentItem) -> None:
        if isinstance(item, ThinkingMarker):
            self._thinking.append(
                ThinkingPart(content=item.content, signature=item.signature, redacted=item.redacted)
            )
        elif isinstance(item, ToolInvocation):
            self._flush_text()
            self._parts.append(
                ToolUsePart(
                    id=item.id, name=item.name, input=dict(item.input), input_error=item.input_error
                )
            )
        else:
            self._text.append(item)

    def _flush_text(self) -> None:
        if self._text:
            self._parts.append(TextPart("".join(self._text)))
            self._text = []

    def turn(self) -> Turn:
        self._flush_text()
        return Turn(Role.ASSISTANT, [*self._thinking, *self._parts])


@dataclass
class UsageTotals:
    """Token counts summed over every request of a session."""

    tokens: dict[UsageType, int] = field(default_factory=lambda: {t: 0 for t in UsageType})
    requests: int = 0

    def add_request(self, events: list[StreamEvent]) -> None:
        # Vendors may repeat a count within one stream; the last report wins
        latest: dict[UsageType, int] = {}
        for event in events:
            if event.type == StreamEventType.USAGE and event.usage is not None:
                latest[event.usage.type] = event.usage.tokens
        for usage_type, tokens in latest.items():
            self.tokens[usage_type] += tokens
        self.requests += 1

    def __getitem__(self, usage_type: UsageType) -> int:
        return self.tokens[usage_type]


@dataclass
class ChatSession:
    conversation: Conversation
    provider: Provider
    usage: UsageTotals = field(default_factory=UsageTotals)
    last_error: str | None = None


@dataclass
class RunResult:
    """Outcome of ``send`` or ``resume``."""

    state: AutopilotState
    requests: int = 0
    error: str | None = None


class ChatRunner:
    """Runs conversational turns against the configured provider."""

    def __init__(
        self,
        settings: Settings,
        transport: StreamTransport,
        dispatcher: ToolDispatcher | None = None,
        autopilot: Autopilot | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._dispatcher = dispatcher or ToolDispatcher()
        self._autopilot = autopilot or Autopilot(settings.autopilot)
        self._sessions: dict[str, ChatSession] = {}

    @property
    def autopilot(self) -> Autopilot:
        return self._autopilot

    def session(self, session_id: str) -> ChatSession:
        """Get or create the session for ``session_id``."""
        if session_id not in self._sessions:
            conversation = Conversation(session_id=session_id)
            if self._settings.system_prompt:
                conversation.add_turn(Turn(Role.SYSTEM, [TextPart(self._settings.system_prompt)]))
            provider = get_provider(self._settings.provider, self._settings.provider_parameters())
            self._sessions[session_id] = ChatSession(conversation, provider)
            logger.debug("Created session %s (%s)", session_id, provider.name)
        return self._sessions[session_id]

    def cleanup(self, session_id: str) -> None:
        """Forget the session and its autopilot state."""
        self._sessions.pop(session_id, None)
        self._autopilot.cleanup(session_id)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def send(
        self,
        session_id: str,
        user_text: str | None = None,
        on_content: Callable[[ContentItem], None] | None = None,
    ) -> RunResult:
        """Send a user message (or the pending history) and run the tool loop."""
        session = self.session(session_id)
        if user_text is not None:
            # A new user message starts a fresh run of consecutive turns
            self._autopilot.disarm(session_id)
            session.conversation.add_user_text(user_text)
        return await self._loop(session, on_content)

    async def resume(
        self,
        session_id: str,
        on_content: Callable[[ContentItem], None] | None = None,
    ) -> RunResult:
        """Re-evaluate a paused conversation after a human resolved its tool calls."""
        session = self.session(session_id)
        if not self._autopilot.enabled(session.conversation):
            # Results stay in the history; the next send carries them
            return RunResult(self._autopilot.get_state(session_id))
        self._autopilot.arm(session_id)
        state = self._autopilot.on_tools_complete(session_id, session.conversation)
        if state != AutopilotState.SENDING:
            return RunResult(state)
        return await self._loop(session, on_content)

    async def approve_tool(
        self,
        session_id: str,
        tool_use_id: str,
        on_content: Callable[[ContentItem], None] | None = None,
    ) -> RunResult:
        """Run a tool call held for approval, then resume."""
        session = self.session(session_id)
        await self._dispatcher.approve(session.conversation, tool_use_id)
        return await self.resume(session_id, on_content)

    async def _loop(
        self, session: ChatSession, on_content: Callable[[ContentItem], None] | None
    ) -> RunResult:
        session_id = session.conversation.session_id
        requests = 0
        while True:
            error = await self._stream_turn(session, on_content)
            requests += 1
            if error is not None:
                self._autopilot.disarm(session_id)
                return RunResult(AutopilotState.IDLE, requests, error)

            state = self._autopilot.on_response_complete(session_id, session.conversation)
            if state != AutopilotState.ARMED or not self._autopilot.enabled(session.conversation):
                if state != AutopilotState.IDLE:
                    # State left over from before autopilot was switched off
                    state = self._autopilot.disarm(session_id)
                return RunResult(state, requests)

            await self._dispatcher.execute(session.conversation)
            # Tools completed synchronously; deliver the signal after arming
            state = self._autopilot.on_tools_complete(session_id, session.conversation)
            if state != AutopilotState.SENDING:
                return RunResult(state, requests)
            logger.debug("Autopilot continuing %s", session_id)

    async def _stream_turn(
        self, session: ChatSession, on_content: Callable[[ContentItem], None] | None
    ) -> str | None:
        """Stream one request. Returns the error message, or None on success."""
        conversation = session.conversation
        request = session.provider.build_request(conversation, self._dispatcher.tool_definitions())

        events: list[StreamEvent] = []
        forward = Callbacks(on_content=on_content) if on_content else None
        await self._transport.send(session.provider, request, Callbacks.recording(events, forward))

        assembler = TurnAssembler()
        error: str | None = None
        completed = False
        for event in events:
            if event.type == StreamEventType.CONTENT and event.content is not None:
                assembler.add(event.content)
            elif event.type == StreamEventType.ERROR:
                error = error or event.error
            elif event.type == StreamEventType.COMPLETE:
                completed = True
        session.usage.add_request(events)

        if error is None and not completed:
            error = "Stream ended without a terminal event"

        if error is not None:
            session.last_error = error
            logger.error("Request for %s failed: %s", conversation.session_id, error)
            # Keep whatever text and thinking arrived; unfinished tool calls are dropped
            partial = assembler.turn()
            partial.parts = [p for p in partial.parts if not isinstance(p, ToolUsePart)]
            if partial.parts:
                conversation.add_turn(partial)
            return error

        session.last_error = None
        conversation.add_turn(assembler.turn())
        return None
