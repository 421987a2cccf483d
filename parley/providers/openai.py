"""OpenAI Responses API adapter.

Reasoning arrives as an encrypted ``reasoning`` output item plus optional
summary text deltas. The item is kept whole and packed into the thinking
signature so the next request can hand it back unchanged.
"""

from __future__ import annotations

import json
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
from parley.utils import decode_reasoning_signature, encode_reasoning_signature, normalize_tool_id

logger = logging.getLogger(__name__)

_DEFAULT_BASE_URL = "https://api.openai.com"


def _output_message(text: str) -> dict[str, Any]:
    return {
        "type": "message",
        "role": "assistant",
        "content": [{"type": "output_text", "text": text, "annotations": []}],
        "status": "completed",
    }


class OpenAIProvider:
    name = "openai"
    capabilities = Capabilities(
        supports_reasoning_effort=True,
        input_includes_cached=True,
        reports_thoughts=True,
    )

    def __init__(self, parameters: ProviderParameters) -> None:
        self.parameters = parameters
        self.accumulator = ResponseAccumulator()

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def endpoint(self) -> str:
        return f"{(self.parameters.base_url or _DEFAULT_BASE_URL).rstrip('/')}/v1/responses"

    def headers(self) -> dict[str, str]:
        if not self.parameters.api_key:
            raise ProviderError("OPENAI_API_KEY is not set")
        return {
            "authorization": f"Bearer {self.parameters.api_key}",
            "content-type": "application/json",
        }

    def _user_items(self, parts: list[Any]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        content: list[dict[str, Any]] = []
        for part in parts:
            if isinstance(part, ToolResultPart):
                # No is_error field in the Responses API
                output = part.content
                if part.is_error:
                    output = f"Error: {part.content or 'Tool execution failed'}"
                items.append(
                    {
                        "type": "function_call_output",
                        "call_id": normalize_tool_id(part.tool_use_id),
                        "output": output,
                    }
                )
            elif isinstance(part, TextPart) and part.text.strip():
                content.append({"type": "input_text", "text": part.text})
        # Tool outputs before any new user content
        if content:
            items.append({"role": "user", "content": content})
        return items

    def _assistant_items(self, parts: list[Any]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        # Reasoning items precede the message they belong to
        for part in parts:
            if not isinstance(part, ThinkingPart):
                continue
            signature = part.signature_for(self.name)
            if not signature:
                logger.debug("Dropping unsigned or foreign thinking block from replay")
                continue
            try:
                items.extend(decode_reasoning_signature(signature))
            except ValueError as e:
                logger.warning("Dropping undecodable reasoning signature: %s", e)

        text = ""
        for part in parts:
            if isinstance(part, TextPart):
                text += part.text
            elif isinstance(part, ToolUsePart):
                if text.strip():
                    items.append(_output_message(text))
                text = ""
                items.append(
                    {
                        "type": "function_call",
                        "call_id": normalize_tool_id(part.id),
                        "name": part.name,
                        "arguments": json.dumps(part.input),
                    }
                )
        if text.strip():
            items.append(_output_message(text))
        return items

    def build_request(
        self, conversation: Conversation, tools: list[dict[str, Any]] | None = None
    ) -> dict[str, Any]:
        thinking = resolve_thinking(self.parameters, self.capabilities)

        items: list[dict[str, Any]] = []
        system = conversation.system_prompt
        if system:
            items.append({"role": "developer" if thinking.enabled else "system", "content": system})

        for turn in conversation.turns:
            if turn.role == Role.USER:
                items.extend(self._user_items(turn.parts))
            elif turn.role == Role.ASSISTANT:
                items.extend(self._assistant_items(turn.parts))

        body: dict[str, Any] = {
            "model": self.parameters.model,
            "input": items,
            "stream": True,
            "store": False,
            "max_output_tokens": self.parameters.max_tokens,
        }

        tool_defs = sorted(
            (
                {
                    "type": "function",
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "parameters": t.get("input_schema", {"type": "object", "properties": {}}),
                }
                for t in tools or []
            ),
            key=lambda t: t["name"],
        )
        if tool_defs:
            body["tools"] = tool_defs
            body["tool_choice"] = "auto"

        if thinking.enabled:
            body["reasoning"] = {
                "effort": thinking.effort,
                "summary": self.parameters.reasoning_summary,
            }
            # Encrypted reasoning is the only way to replay it with store=false
            body["include"] = ["reasoning.encrypted_content"]
        elif self.parameters.temperature is not None:
            body["temperature"] = self.parameters.temperature

        retention = self.parameters.cache_retention
        if retention != "none":
            body["prompt_cache_key"] = conversation.session_id
            body["prompt_cache_retention"] = "24h" if retention == "long" else "in_memory"

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

        if event_type == "error" or (event_type is None and "error" in data):
            message = extract_error_message(data) or data.get("message") or "Unknown API error"
            fail(acc, self.name, callbacks, message)
            return

        if event_type == "response.output_text.delta":
            acc.current_block_type = BlockType.TEXT
            if data.get("delta"):
                callbacks.on_content(data["delta"])
            return

        if event_type == "response.output_item.added":
            item = data.get("item") or {}
            if item.get("type") == "function_call":
                acc.current_block_type = BlockType.TOOL_USE
                acc.tool_calls[data.get("output_index", 0)] = ToolCallBuffer(
                    id=item.get("call_id", ""), name=item.get("name", "")
                )
            elif item.get("type") == "reasoning":
                acc.current_block_type = BlockType.THINKING
            return

        if event_type == "response.function_call_arguments.delta":
            buffer = acc.tool_calls.get(data.get("output_index", 0))
            if buffer is None:
                logger.error("Arguments delta for unknown output %s", data.get("output_index"))
            else:
                buffer.arguments += data.get("delta", "")
            return

        if event_type == "response.reasoning_summary_part.added":
            # Separate consecutive summary parts
            if acc.accumulated_thinking:
                acc.accumulated_thinking += "\n\n"
            return

        if event_type == "response.reasoning_summary_text.delta":
            acc.accumulated_thinking += data.get("delta", "")
            return

        if event_type == "response.output_item.done":
            self._finish_item(data, callbacks)
            return

        if event_type in ("response.completed", "response.incomplete"):
            response = data.get("response") or {}
            self._emit_usage(response.get("usage"), callbacks)
            if event_type == "response.completed":
                complete(acc, self.name, callbacks)
                return
            reason = (response.get("incomplete_details") or {}).get("reason")
            if reason in (None, "max_output_tokens"):
                logger.warning("OpenAI response incomplete (%s)", reason or "unknown")
                complete(acc, self.name, callbacks)
            else:
                fail(acc, self.name, callbacks, f"Response incomplete ({reason})")
            return

        if event_type == "response.failed":
            error = (data.get("response") or {}).get("error") or {}
            fail(acc, self.name, callbacks, error.get("message") or "Response failed")
            return

        logger.debug("Ignoring stream event %s", event_type)

    def _finish_item(self, data: dict[str, Any], callbacks: Callbacks) -> None:
        acc = self.accumulator
        item = data.get("item") or {}
        item_type = item.get("type")

        if item_type == "function_call":
            buffer = acc.tool_calls.pop(data.get("output_index", 0), None)
            if buffer is None:
                buffer = ToolCallBuffer(id=item.get("call_id", ""), name=item.get("name", ""))
            # The done item carries the complete argument string
            if item.get("arguments"):
                buffer.arguments = item["arguments"]
            callbacks.on_content(finish_tool_call(buffer))
        elif item_type == "reasoning":
            acc.reasoning_items.append(item)
            if not acc.accumulated_thinking:
                summary = [s.get("text", "") for s in item.get("summary") or [] if isinstance(s, dict)]
                acc.accumulated_thinking = "\n\n".join(t for t in summary if t)
            acc.accumulated_signature = encode_reasoning_signature(acc.reasoning_items)
        acc.current_block_type = BlockType.NONE

    def _emit_usage(self, usage: dict[str, Any] | None, callbacks: Callbacks) -> None:
        if not usage:
            return
        emit_usage(
            callbacks,
            self.capabilities,
            prompt=usage.get("input_tokens"),
            output=usage.get("output_tokens"),
            thoughts=(usage.get("output_tokens_details") or {}).get("reasoning_tokens"),
            cache_read=(usage.get("input_tokens_details") or {}).get("cached_tokens"),
        )

    def finalize_response(self, callbacks: Callbacks) -> None:
        finalize_unprocessed(self.accumulator, self.name, callbacks)

    def reset(self, auth_only: bool = False) -> None:
        if not auth_only:
            self.accumulator = ResponseAccumulator()

    def is_auth_error(self, message: str) -> bool:
        lowered = message.lower()
        return (
            "invalid_api_key" in lowered
            or "incorrect api key" in lowered
            or "http 401" in lowered
        )
