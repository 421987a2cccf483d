"""Tool dispatcher for model-requested tool calls.

Provides:
- ToolDispatcher: registers tools, dispatches calls, executes the tool
  calls of the latest assistant turn under an approval policy
- ApprovalDecision / approval policies: approve, deny, or leave a pending
  placeholder for a human

Handlers are async callables returning MCP-format responses; plain strings
are accepted too.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from enum import StrEnum
from typing import Any

from parley.api.models import Conversation, ToolResultPart, ToolUsePart

logger = logging.getLogger(__name__)

DENIED_MESSAGE = "Tool call denied by approval policy"


class ApprovalDecision(StrEnum):
    APPROVE = "approve"
    DENY = "deny"
    REQUIRE_APPROVAL = "require_approval"


ApprovalPolicy = Callable[[ToolUsePart], ApprovalDecision]


def auto_approve(tool_use: ToolUsePart) -> ApprovalDecision:
    return ApprovalDecision.APPROVE


def allowlist_policy(approved: Iterable[str], denied: Iterable[str] = ()) -> ApprovalPolicy:
    """Approve listed tools, deny blocked ones, ask a human about the rest."""
    approved_names = frozenset(approved)
    denied_names = frozenset(denied)

    def policy(tool_use: ToolUsePart) -> ApprovalDecision:
        if tool_use.name in denied_names:
            return ApprovalDecision.DENY
        if tool_use.name in approved_names:
            return ApprovalDecision.APPROVE
        return ApprovalDecision.REQUIRE_APPROVAL

    return policy


def _result_text(result: Any) -> str:
    # MCP format: {"content": [{"type": "text", "text": "..."}]}
    if isinstance(result, str):
        return result
    return "\n".join(
        block.get("text", "") for block in result.get("content", []) if block.get("type") == "text"
    )


class ToolDispatcher:
    """Registers tool handlers and runs the tool calls a model asks for.

    Each handler is an async callable that accepts **kwargs. Results are
    written back into the conversation via ``inject_tool_result``.
    """

    def __init__(self, approval: ApprovalPolicy | None = None) -> None:
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._schemas: dict[str, dict[str, Any]] = {}
        self._descriptions: dict[str, str] = {}
        self._approval = approval or auto_approve

    def register(
        self,
        name: str,
        handler: Callable[..., Any],
        schema: dict[str, Any],
        description: str = "",
    ) -> None:
        """Register a tool handler with its JSON schema."""
        self._handlers[name] = handler
        self._schemas[name] = schema
        self._descriptions[name] = description or schema.get("description", "")

    async def dispatch(self, name: str, args: dict[str, Any]) -> tuple[str, bool]:
        """Dispatch a tool call and return (result_text, is_error)."""
        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown tool: {name}", True
        try:
            result = await handler(**args)
            return _result_text(result), False
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return f"Tool error: {e}", True

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Vendor-neutral tool definitions, translated by each adapter."""
        return [
            {
                "name": name,
                "description": self._descriptions[name],
                "input_schema": {k: v for k, v in schema.items() if k != "description"},
            }
            for name, schema in self._schemas.items()
        ]

    async def execute(
        self,
        conversation: Conversation,
        invocations: list[ToolUsePart] | None = None,
    ) -> list[ToolResultPart]:
        """Resolve tool calls of the latest assistant turn.

        Defaults to every call without a result. Calls whose arguments
        failed to parse get an error result and are never run.
        """
        if invocations is None:
            invocations = conversation.unresolved_tool_calls()

        results: list[ToolResultPart] = []
        for tool_use in invocations:
            if tool_use.input_error:
                logger.warning("Not running %s (%s): %s", tool_use.name, tool_use.id, tool_use.input_error)
                results.append(
                    conversation.inject_tool_result(
                        tool_use.id, f"Invalid tool input: {tool_use.input_error}", is_error=True
                    )
                )
                continue

            decision = self._approval(tool_use)
            if decision == ApprovalDecision.DENY:
                logger.info("Denied tool call %s (%s)", tool_use.name, tool_use.id)
                results.append(
                    conversation.inject_tool_result(tool_use.id, DENIED_MESSAGE, is_error=True)
                )
            elif decision == ApprovalDecision.REQUIRE_APPROVAL:
                logger.info("Tool call %s (%s) awaits approval", tool_use.name, tool_use.id)
                results.append(conversation.inject_tool_result(tool_use.id, "", pending=True))
            else:
                results.append(await self._run(conversation, tool_use))
        return results

    async def approve(self, conversation: Conversation, tool_use_id: str) -> ToolResultPart:
        """Run a call that was held for approval, replacing its placeholder."""
        tool_use = self._find(conversation, tool_use_id)
        return await self._run(conversation, tool_use)

    def deny(self, conversation: Conversation, tool_use_id: str) -> ToolResultPart:
        self._find(conversation, tool_use_id)
        return conversation.inject_tool_result(tool_use_id, DENIED_MESSAGE, is_error=True)

    async def _run(self, conversation: Conversation, tool_use: ToolUsePart) -> ToolResultPart:
        text, is_error = await self.dispatch(tool_use.name, tool_use.input)
        logger.debug("Tool %s (%s) finished, is_error=%s", tool_use.name, tool_use.id, is_error)
        return conversation.inject_tool_result(tool_use.id, text, is_error=is_error)

    @staticmethod
    def _find(conversation: Conversation, tool_use_id: str) -> ToolUsePart:
        for entry in conversation.tool_ledger():
            if entry.tool_use.id == tool_use_id:
                return entry.tool_use
        raise KeyError(f"No tool call {tool_use_id} in the latest assistant turn")
