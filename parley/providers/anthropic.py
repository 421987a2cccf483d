"""Anthropic Messages API adapter.

Streams ``/v1/messages`` with ``stream: true``. Text deltas go straight
out; thinking and signature deltas are held until ``message_stop``; tool
arguments arrive as ``input_json_delta`` fragments and are parsed when
their block stops.
"""

from __future__ import annotations

import logging
from typing import Any

from parley.api.models import Conversation, Role, TextPart, ThinkingPart, ToolResultPart, ToolUsePart
from parley.config import ProviderParameters
from parley.events import Callbacks
from parley.providers.base import (
    BlockType,
    Capabilities,
    ProviderError,
    ResponseAccumulator,
    ToolCallBuffer,
    complete,
    decode_data,
    emit_usage,
    extract_error_message,
    fail,
    finalize_unprocessed,
    finish_tool_call,
    parse_sse_line,
    resolve_thinking,
)
from parley.utils import normalize_tool_id

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"
_DEFAULT_BASE_URL = "https://api.anthropic.com"

# Stop reasons that end a turn normally
_NORMAL_STOPS = frozenset({"end_turn", "tool_use", "stop_sequence", "pause_turn"})
_LENGTH_STOPS = frozenset({"max_tokens", "model_context_window_exceeded"})


class AnthropicProvider:
    name = "anthropic"
    capabilities = Capabilities(
        supports_thinking_budget=True,
        min_thinking_budget=1024,
        input_includes_cached=False,
        reports_thoughts=False,
    )

    def __init__(self, parameters: ProviderParameters) -> None:
        self.parameters = parameters
        self.accumulator = ResponseAccumulator()

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def endpoint(self) -> str:
        return f"{(self.parameters.base_url or _DEFAULT_BASE_URL).rstrip('/')}/v1/messages"

    def headers(self) -> dict[str, str]:
        """Auth headers. OAT tokens (sk-ant-oat*) need Bearer plus beta headers."""
        api_key = self.parameters.api_key
        if not api_key:
            raise ProviderError("ANTHROPIC_API_KEY is not set")
        headers = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        if "sk-ant-oat" in api_key:
            headers["authorization"] = f"Bearer {api_key}"
            headers["anthropic-beta"] = "oauth-2025-04-20"
            headers["anthropic-dangerous-direct-browser-access"] = "true"
        else:
            headers["x-api-key"] = api_key
        return headers

    def _cache_control(self) -> dict[str, str] | None:
        retention = self.parameters.cache_retention
        if retention == "short":
            return {"type": "ephemeral"}
        if retention == "long":
            return {"type": "ephemeral", "ttl": "1h"}
        return None

    def _user_blocks(self, parts: list[Any]) -> list[dict[str, Any]]:
        # Tool results must come first in user messages
        blocks: list[dict[str, Any]] = []
        for part in parts:
            if isinstance(part, ToolResultPart):
                block: dict[str, Any] = {
                    "type": "tool_result",
                    "tool_use_id": normalize_tool_id(part.tool_use_id),
                    "content": part.content,
                }
                if part.is_error:
                    block["is_error"] = True
                blocks.append(block)
        for part in parts:
            if isinstance(part, TextPart) and part.text.strip():
                blocks.append({"type": "text", "text": part.text})
        return blocks

    def _assistant_blocks(self, parts: list[Any]) -> list[dict[str, Any]]:
        # Thinking must precede text and tool_use
        blocks: list[dict[str, Any]] = []
        for part in parts:
            if not isinstance(part, ThinkingPart):
                continue
            if part.redacted:
                blocks.append({"type": "redacted_thinking", "data": part.content})
            elif signature := part.signature_for(self.name):
                blocks.append({"type": "thinking", "thinking": part.content, "signature": signature})
            else:
                logger.debug("Dropping unsigned or foreign thinking block from replay")
        for part in parts:
            if isinstance(part, TextPart):
                text = part.text.strip()
                if text:
                    blocks.append({"type": "text", "text": text})
            elif isinstance(part, ToolUsePart):
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": normalize_tool_id(part.id),
                        "name": part.name,
                        "input": part.input,
                    }
                )
        return blocks

    def build_request(
        self, conversation: Conversation, tools: list[dict[str, Any]] | None = None
    ) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        for turn in conversation.turns:
            if turn.role == Role.USER:
                blocks = self._user_blocks(turn.parts)
            elif turn.role == Role.ASSISTANT:
                blocks = self._assistant_blocks(turn.parts)
            else:
                continue
            if blocks:
                messages.append({"role": str(turn.role), "content": blocks})
            else:
                logger.debug("Skipping empty %s message", turn.role)

        cache_control = self._cache_control()

        # Stable alphabetical ordering for cache efficiency
        tool_defs = sorted(
            (
                {
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "input_schema": t.get("input_schema", {"type": "object", "properties": {}}),
                }
                for t in tools or []
            ),
            key=lambda t: t["name"],
        )
        if cache_control and tool_defs:
            tool_defs[-1]["cache_control"] = cache_control

        if cache_control:
            for message in reversed(messages):
                if message["role"] == "user":
                    message["content"][-1]["cache_control"] = cache_control
                    break

        body: dict[str, Any] = {
            "model": self.parameters.model,
            "messages": messages,
            "max_tokens": self.parameters.max_tokens,
            "stream": True,
        }

        system = conversation.system_prompt
        if system:
            if cache_control:
                body["system"] = [{"type": "text", "text": system, "cache_control": cache_control}]
            else:
                body["system"] = system

        if tool_defs:
            body["tools"] = tool_defs
            body["tool_choice"] = {"type": "auto"}

        thinking = resolve_thinking(self.parameters, self.capabilities)
        if thinking.enabled:
            # Anthropic rejects temperature alongside extended thinking
            body["thinking"] = {"type": "enabled", "budget_tokens": thinking.budget}
            logger.debug("Thinking enabled with budget %d, temperature omitted", thinking.budget)
        elif self.parameters.temperature is not None:
            body["temperature"] = self.parameters.temperature

        return body

    # ------------------------------------------------------------------
    # Response
    # ------------------------------------------------------------------

    def process_response_line(self, line: str, callbacks: Callbacks) -> None:
        sse = parse_sse_line(line)
        if sse is None:
            self.accumulator.unprocessed_lines.append(line)
            return
        if sse.field != "data":
            return
        data = decode_data(sse.value, self.name)
        if data is None:
            return

        acc = self.accumulator
        event_type = data.get("type")

        if event_type == "ping":
            return

        if event_type == "error":
            fail(acc, self.name, callbacks, extract_error_message(data) or "Unknown API error")
            return

        if event_type == "message_start":
            usage = data.get("message", {}).get("usage") or {}
            emit_usage(
                callbacks,
                self.capabilities,
                prompt=usage.get("input_tokens"),
                cache_read=usage.get("cache_read_input_tokens"),
                cache_write=usage.get("cache_creation_input_tokens"),
            )
            return

        if event_type == "content_block_start":
            block = data.get("content_block", {})
            block_type = block.get("type")
            if block_type == "text":
                acc.current_block_type = BlockType.TEXT
                if block.get("text"):
                    callbacks.on_content(block["text"])
            elif block_type == "thinking":
                acc.current_block_type = BlockType.THINKING
                acc.accumulated_thinking += block.get("thinking") or ""
                acc.accumulated_signature += block.get("signature") or ""
            elif block_type == "redacted_thinking":
                acc.current_block_type = BlockType.THINKING
                acc.redacted_thinking_blocks.append(block.get("data", ""))
            elif block_type == "tool_use":
                acc.current_block_type = BlockType.TOOL_USE
                acc.tool_calls[data.get("index", 0)] = ToolCallBuffer(
                    id=block.get("id", ""), name=block.get("name", "")
                )
            else:
                logger.debug("Ignoring content block of type %s", block_type)
            return

        if event_type == "content_block_delta":
            delta = data.get("delta", {})
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                callbacks.on_content(delta.get("text", ""))
            elif delta_type == "thinking_delta":
                acc.accumulated_thinking += delta.get("thinking", "")
            elif delta_type == "signature_delta":
                acc.accumulated_signature += delta.get("signature", "")
            elif delta_type == "input_json_delta":
                buffer = acc.tool_calls.get(data.get("index", 0))
                if buffer is None:
                    logger.error("input_json_delta for unknown block %s", data.get("index"))
                else:
                    buffer.arguments += delta.get("partial_json", "")
            else:
                logger.debug("Ignoring delta of type %s", delta_type)
            return

        if event_type == "content_block_stop":
            buffer = acc.tool_calls.pop(data.get("index", 0), None)
            if buffer is not None:
                callbacks.on_content(finish_tool_call(buffer))
            acc.current_block_type = BlockType.NONE
            return

        if event_type == "message_delta":
            stop_reason = data.get("delta", {}).get("stop_reason")
            if stop_reason:
                acc.stop_reason = stop_reason
            usage = data.get("usage") or {}
            emit_usage(callbacks, self.capabilities, output=usage.get("output_tokens"))
            return

        if event_type == "message_stop":
            self._finish(callbacks)
            return

        logger.debug("Ignoring stream event %s", event_type)

    def _finish(self, callbacks: Callbacks) -> None:
        acc = self.accumulator
        reason = acc.stop_reason
        if reason is None or reason in _NORMAL_STOPS:
            complete(acc, self.name, callbacks)
        elif reason in _LENGTH_STOPS:
            logger.warning("Anthropic response truncated (%s)", reason)
            complete(acc, self.name, callbacks)
        else:
            fail(acc, self.name, callbacks, f"Response stopped by Anthropic ({reason})")

    def finalize_response(self, callbacks: Callbacks) -> None:
        finalize_unprocessed(self.accumulator, self.name, callbacks)

    def reset(self, auth_only: bool = False) -> None:
        # API keys are static settings; nothing cached to drop
        if not auth_only:
            self.accumulator = ResponseAccumulator()

    def is_auth_error(self, message: str) -> bool:
        lowered = message.lower()
        return (
            "authentication_error" in lowered
            or "invalid x-api-key" in lowered
            or "http 401" in lowered
        )
