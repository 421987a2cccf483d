"""Conversation data model shared by providers, tools and the runner.

A conversation is an ordered list of turns; each turn is an ordered list
of tagged parts. Tool results must point at an earlier tool call, and a
tool call id is never reused. Both rules are enforced on insertion.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal

from parley.events import Signature


class ConversationError(ValueError):
    """Raised when a turn would break tool call/result pairing."""


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class TextPart:
    text: str
    kind: Literal["text"] = field(default="text", init=False)


@dataclass
class ThinkingPart:
    """Model reasoning. When ``redacted`` the content is vendor ciphertext."""

    content: str = ""
    signature: Signature | None = None
    redacted: bool = False
    kind: Literal["thinking"] = field(default="thinking", init=False)

    def signature_for(self, provider: str) -> str | None:
        """The signature value if it was issued by ``provider``."""
        if self.signature and self.signature.provider == provider and self.signature.value:
            return self.signature.value
        return None


@dataclass
class ToolUsePart:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    input_error: str | None = None
    kind: Literal["tool_use"] = field(default="tool_use", init=False)


@dataclass
class ToolResultPart:
    """Result of a tool call.

    ``pending`` marks a placeholder awaiting execution or human approval.
    A human edit fills in ``content``, which resolves the placeholder.
    """

    tool_use_id: str
    content: str = ""
    is_error: bool = False
    pending: bool = False
    kind: Literal["tool_result"] = field(default="tool_result", init=False)

    @property
    def has_content(self) -> bool:
        return bool(self.content.strip())

    @property
    def awaiting(self) -> bool:
        """A pending placeholder nobody has filled in yet."""
        return self.pending and not self.has_content


Part = TextPart | ThinkingPart | ToolUsePart | ToolResultPart


@dataclass
class Turn:
    role: Role
    parts: list[Part] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    def tool_uses(self) -> list[ToolUsePart]:
        return [p for p in self.parts if isinstance(p, ToolUsePart)]

    def tool_results(self) -> list[ToolResultPart]:
        return [p for p in self.parts if isinstance(p, ToolResultPart)]


@dataclass
class LedgerEntry:
    """A tool call from the latest assistant turn and its result, if any."""

    tool_use: ToolUsePart
    result: ToolResultPart | None = None

    @property
    def resolved(self) -> bool:
        return self.result is not None and not self.result.awaiting


@dataclass
class Conversation:
    """Tracks a multi-turn conversation.

    ``autopilot`` is a per-conversation override of the configured
    autopilot switch; None defers to configuration.
    """

    session_id: str
    turns: list[Turn] = field(default_factory=list)
    autopilot: bool | None = None

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_turn(self, turn: Turn) -> Turn:
        """Append a turn after checking its tool ids against the history."""
        seen_calls = self._tool_use_ids()
        resolved = {r.tool_use_id for t in self.turns for r in t.tool_results()}
        for part in turn.parts:
            if isinstance(part, ToolUsePart):
                if part.id in seen_calls:
                    raise ConversationError(f"Tool call id reused: {part.id}")
                seen_calls.add(part.id)
            elif isinstance(part, ToolResultPart):
                if part.tool_use_id not in seen_calls:
                    raise ConversationError(
                        f"Tool result references unknown tool call: {part.tool_use_id}"
                    )
                if part.tool_use_id in resolved:
                    raise ConversationError(
                        f"Tool call already has a result: {part.tool_use_id}"
                    )
                resolved.add(part.tool_use_id)
        self.turns.append(turn)
        return turn

    def add_user_text(self, text: str) -> Turn:
        return self.add_turn(Turn(Role.USER, [TextPart(text)]))

    def inject_tool_result(
        self,
        tool_use_id: str,
        content: str,
        *,
        is_error: bool = False,
        pending: bool = False,
    ) -> ToolResultPart:
        """Record the result of a tool call from the latest assistant turn.

        Results land in the user turn that follows the assistant turn,
        created on demand. An existing result for the same call (such as a
        pending placeholder) is replaced.
        """
        assistant_index = self._last_assistant_index()
        if assistant_index is None:
            raise ConversationError("No assistant turn to attach a tool result to")
        calls = {u.id for u in self.turns[assistant_index].tool_uses()}
        if tool_use_id not in calls:
            raise ConversationError(
                f"Tool result references unknown tool call: {tool_use_id}"
            )

        result = ToolResultPart(tool_use_id, content, is_error=is_error, pending=pending)
        for turn in self.turns[assistant_index + 1 :]:
            for i, part in enumerate(turn.parts):
                if isinstance(part, ToolResultPart) and part.tool_use_id == tool_use_id:
                    turn.parts[i] = result
                    return result

        if assistant_index + 1 < len(self.turns) and self.turns[assistant_index + 1].role == Role.USER:
            target = self.turns[assistant_index + 1]
        else:
            target = Turn(Role.USER)
            self.turns.insert(assistant_index + 1, target)
        # Results sit ahead of any user text in the same turn
        insert_at = len(target.tool_results())
        target.parts.insert(insert_at, result)
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def system_prompt(self) -> str | None:
        texts = [t.text for t in self.turns if t.role == Role.SYSTEM and t.text]
        return "\n\n".join(texts) if texts else None

    def last_assistant_turn(self) -> Turn | None:
        index = self._last_assistant_index()
        return self.turns[index] if index is not None else None

    def tool_ledger(self) -> list[LedgerEntry]:
        """Tool calls of the latest assistant turn paired with their results."""
        index = self._last_assistant_index()
        if index is None:
            return []
        results: dict[str, ToolResultPart] = {}
        for turn in self.turns[index + 1 :]:
            for result in turn.tool_results():
                results[result.tool_use_id] = result
        return [LedgerEntry(u, results.get(u.id)) for u in self.turns[index].tool_uses()]

    def unresolved_tool_calls(self) -> list[ToolUsePart]:
        """Calls of the latest assistant turn with no result at all."""
        return [e.tool_use for e in self.tool_ledger() if e.result is None]

    def awaiting_tool_calls(self) -> list[ToolUsePart]:
        """Calls whose result is still an un-edited pending placeholder."""
        return [
            e.tool_use for e in self.tool_ledger() if e.result is not None and e.result.awaiting
        ]

    def orphaned_tool_calls(self) -> list[ToolUsePart]:
        """Tool calls anywhere in the history that never received a result."""
        resolved = {r.tool_use_id for t in self.turns for r in t.tool_results()}
        return [u for t in self.turns for u in t.tool_uses() if u.id not in resolved]

    def _tool_use_ids(self) -> set[str]:
        return {u.id for t in self.turns for u in t.tool_uses()}

    def _last_assistant_index(self) -> int | None:
        for index in range(len(self.turns) - 1, -1, -1):
            if self.turns[index].role == Role.ASSISTANT:
                return index
        return None
