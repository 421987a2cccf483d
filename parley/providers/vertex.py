"""Google Vertex AI adapter (``streamGenerateContent?alt=sse``).

Vertex sends whole parts per chunk rather than block deltas: thought text,
visible text and complete function calls. Function calls carry no id, so
one is minted here and the function name is recovered from it when the
result is sent back.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import tempfile
import time
import uuid
from typing import Any

from parley.api.models import Conversation, Role, TextPart, ThinkingPart, ToolResultPart, ToolUsePart
from parley.config import ProviderParameters
from parley.events import Callbacks, ToolInvocation
from parley.providers.base import (
    BlockType,
    Capabilities,
    ProviderError,
    ResponseAccumulator,
    complete,
    decode_data,
    emit_usage,
    extract_error_message,
    fail,
    finalize_unprocessed,
    parse_sse_line,
    resolve_thinking,
)

logger = logging.getLogger(__name__)

_API_VERSION = "v1beta1"  # parametersJsonSchema needs v1beta1

TOKEN_TTL_SECONDS = 3600
TOKEN_REFRESH_BUFFER_SECONDS = 300

# Only STOP and MAX_TOKENS end a turn normally; SAFETY, RECITATION, etc. are errors
FINISH_REASON_MAP: dict[str, str] = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
}

THINKING_LEVEL_MAP: dict[str, str] = {
    "minimal": "MINIMAL",
    "low": "LOW",
    "medium": "MEDIUM",
    "high": "HIGH",
}

# Gemini 3 Pro only accepts LOW and HIGH
THINKING_LEVEL_MAP_PRO: dict[str, str] = {
    "minimal": "LOW",
    "low": "LOW",
    "medium": "HIGH",
    "high": "HIGH",
}

_TOOL_ID_PREFIX = "urn:parley:tool:"
_TOOL_ID_PATTERN = re.compile(r"^urn:parley:tool:([^:]+):")


def make_tool_id(name: str) -> str:
    return f"{_TOOL_ID_PREFIX}{name}:{uuid.uuid4().hex[:12]}"


def function_name_from_id(tool_use_id: str) -> str | None:
    match = _TOOL_ID_PATTERN.match(tool_use_id)
    return match.group(1) if match else None


class VertexProvider:
    name = "vertex"
    capabilities = Capabilities(
        supports_thinking_budget=True,
        min_thinking_budget=1,
        input_includes_cached=True,
        reports_thoughts=True,
    )

    def __init__(self, parameters: ProviderParameters) -> None:
        self.parameters = parameters
        self.accumulator = ResponseAccumulator()
        self._access_token: str | None = None
        self._token_from: str | None = None  # env | gcloud | direct
        self._token_generated_at: float | None = None

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def _require_project(self) -> str:
        if not self.parameters.project_id:
            raise ProviderError(
                "Vertex AI project_id is required. Set PARLEY_VERTEX_PROJECT_ID."
            )
        return self.parameters.project_id

    def access_token(self) -> str:
        """Current bearer token, regenerating gcloud tokens before they expire."""
        self._require_project()

        env_token = self.parameters.api_key or os.environ.get("VERTEX_AI_ACCESS_TOKEN", "")
        if env_token:
            self._token_from = "env"
            return env_token

        if self._token_from == "gcloud" and self._token_generated_at is not None:
            age = time.time() - self._token_generated_at
            if age >= TOKEN_TTL_SECONDS - TOKEN_REFRESH_BUFFER_SECONDS:
                logger.debug("gcloud token is %ds old, refreshing", age)
                self._access_token = None
                self._token_generated_at = None

        if self._access_token:
            return self._access_token

        credentials = self.parameters.service_account
        if "service_account" in credentials:
            self._access_token = generate_access_token(credentials)
            self._token_from = "gcloud"
            self._token_generated_at = time.time()
            return self._access_token

        if credentials:
            # Treat anything else as a ready-made token
            self._access_token = credentials
            self._token_from = "direct"
            return credentials

        raise ProviderError(
            "No Vertex AI access token available. Set VERTEX_AI_ACCESS_TOKEN or "
            "VERTEX_SERVICE_ACCOUNT."
        )

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def endpoint(self) -> str:
        project = self._require_project()
        location = self.parameters.location or "global"
        if self.parameters.base_url:
            host = self.parameters.base_url.rstrip("/")
        elif location == "global":
            host = "https://aiplatform.googleapis.com"
        else:
            host = f"https://{location}-aiplatform.googleapis.com"
        return (
            f"{host}/{_API_VERSION}/projects/{project}/locations/{location}"
            f"/publishers/google/models/{self.parameters.model}:streamGenerateContent?alt=sse"
        )

    def headers(self) -> dict[str, str]:
        return {
            "authorization": f"Bearer {self.access_token()}",
            "content-type": "application/json",
        }

    def _user_parts(self, parts: list[Any], names: dict[str, str]) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for part in parts:
            if isinstance(part, ToolResultPart):
                name = names.get(part.tool_use_id) or function_name_from_id(part.tool_use_id)
                if name is None:
                    logger.warning("Cannot recover function name for tool result %s", part.tool_use_id)
                    name = "unknown"
                response = {"error": part.content} if part.is_error else {"output": part.content}
                out.append({"functionResponse": {"name": name, "response": response}})
        for part in parts:
            if isinstance(part, TextPart) and part.text.strip():
                out.append({"text": part.text})
        return out or [{"text": ""}]

    def _model_parts(self, parts: list[Any]) -> list[dict[str, Any]]:
        signature = None
        for part in parts:
            if isinstance(part, ThinkingPart) and not part.redacted:
                signature = part.signature_for(self.name) or signature

        text = "".join(p.text for p in parts if isinstance(p, TextPart))
        calls: list[dict[str, Any]] = []
        for part in parts:
            if isinstance(part, ToolUsePart):
                call: dict[str, Any] = {"functionCall": {"name": part.name, "args": part.input}}
                # The signature rides on the first function call
                if signature and not calls:
                    call["thoughtSignature"] = signature
                calls.append(call)

        out: list[dict[str, Any]] = []
        if text or not calls:
            text_part: dict[str, Any] = {"text": text}
            if signature and not calls:
                text_part["thoughtSignature"] = signature
            out.append(text_part)
        return out + calls

    def build_request(
        self, conversation: Conversation, tools: list[dict[str, Any]] | None = None
    ) -> dict[str, Any]:
        names = {u.id: u.name for t in conversation.turns for u in t.tool_uses()}
        contents: list[dict[str, Any]] = []
        for turn in conversation.turns:
            if turn.role == Role.USER:
                contents.append({"role": "user", "parts": self._user_parts(turn.parts, names)})
            elif turn.role == Role.ASSISTANT:
                contents.append({"role": "model", "parts": self._model_parts(turn.parts)})

        # Vertex rejects a function call without a matching response
        orphans = conversation.orphaned_tool_calls()
        if orphans:
            contents.append(
                {
                    "role": "user",
                    "parts": [
                        {
                            "functionResponse": {
                                "name": orphan.name,
                                "response": {"error": "No result provided", "success": False},
                            }
                        }
                        for orphan in orphans
                    ],
                }
            )
            logger.debug("Injected %d synthetic responses for orphaned tool calls", len(orphans))

        generation_config: dict[str, Any] = {"maxOutputTokens": self.parameters.max_tokens}
        if self.parameters.temperature is not None:
            generation_config["temperature"] = self.parameters.temperature

        thinking = resolve_thinking(self.parameters, self.capabilities)
        if thinking.enabled:
            thinking_config: dict[str, Any] = {"includeThoughts": True}
            model = self.parameters.model
            if "gemini-3" in model:
                # Gemini 3 takes a discrete level instead of a budget
                level_map = THINKING_LEVEL_MAP_PRO if "3-pro" in model else THINKING_LEVEL_MAP
                if thinking.level in level_map:
                    thinking_config["thinkingLevel"] = level_map[thinking.level]
            elif thinking.budget is not None:
                thinking_config["thinkingBudget"] = thinking.budget
            generation_config["thinkingConfig"] = thinking_config

        body: dict[str, Any] = {"contents": contents, "generationConfig": generation_config}

        system = conversation.system_prompt
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}

        declarations = sorted(
            (
                {
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "parametersJsonSchema": t.get(
                        "input_schema", {"type": "object", "properties": {}}
                    ),
                }
                for t in tools or []
            ),
            key=lambda d: d["name"],
        )
        if declarations:
            body["tools"] = [{"functionDeclarations": declarations}]
            body["toolConfig"] = {"functionCallingConfig": {"mode": "AUTO"}}

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
        if "error" in data:
            fail(acc, self.name, callbacks, extract_error_message(data) or "Unknown API error")
            return

        candidates = data.get("candidates") or [{}]
        candidate = candidates[0] if isinstance(candidates[0], dict) else {}

        for part in (candidate.get("content") or {}).get("parts") or []:
            self._process_part(part, callbacks)

        usage = data.get("usageMetadata")
        if usage:
            emit_usage(
                callbacks,
                self.capabilities,
                prompt=usage.get("promptTokenCount"),
                output=usage.get("candidatesTokenCount"),
                thoughts=usage.get("thoughtsTokenCount"),
                cache_read=usage.get("cachedContentTokenCount"),
            )

        reason = candidate.get("finishReason")
        if reason:
            acc.stop_reason = reason
            outcome = FINISH_REASON_MAP.get(reason)
            if outcome == "stop":
                complete(acc, self.name, callbacks)
            elif outcome == "length":
                logger.warning("Vertex AI response truncated (MAX_TOKENS)")
                complete(acc, self.name, callbacks)
            else:
                fail(acc, self.name, callbacks, f"Response blocked by Vertex AI ({reason})")

    def _process_part(self, part: dict[str, Any], callbacks: Callbacks) -> None:
        acc = self.accumulator
        # Empty signatures in later chunks must not clobber a valid one
        signature = part.get("thoughtSignature")
        if isinstance(signature, str) and signature:
            acc.accumulated_signature = signature

        text = part.get("text")
        if part.get("thought"):
            if text:
                acc.current_block_type = BlockType.THINKING
                acc.accumulated_thinking += text
        elif "functionCall" in part:
            call = part["functionCall"] or {}
            name = call.get("name")
            if not name:
                logger.warning("Received functionCall without name")
                return
            args = call.get("args") or {}
            if isinstance(args, dict):
                invocation = ToolInvocation(id=make_tool_id(name), name=name, input=args)
            else:
                invocation = ToolInvocation(
                    id=make_tool_id(name),
                    name=name,
                    input_error=f"Tool arguments must be an object, got {type(args).__name__}",
                )
            acc.current_block_type = BlockType.NONE
            callbacks.on_content(invocation)
        elif isinstance(text, str) and text.strip():
            # Whitespace-only chunks are dropped
            acc.current_block_type = BlockType.TEXT
            callbacks.on_content(text)

    def finalize_response(self, callbacks: Callbacks) -> None:
        finalize_unprocessed(self.accumulator, self.name, callbacks)

    def reset(self, auth_only: bool = False) -> None:
        if auth_only:
            self._access_token = None
            self._token_from = None
            self._token_generated_at = None
            return
        self.accumulator = ResponseAccumulator()

    def is_auth_error(self, message: str) -> bool:
        lowered = message.lower()
        return (
            "unauthenticated" in lowered
            or "invalid authentication credentials" in lowered
            or "http 401" in lowered
        )


def generate_access_token(service_account_json: str) -> str:
    """Mint a token from service account JSON with ``gcloud auth print-access-token``."""
    with tempfile.NamedTemporaryFile("w", suffix=".json", delete=False) as f:
        f.write(service_account_json)
        credentials_path = f.name
    try:
        result = subprocess.run(
            ["gcloud", "auth", "print-access-token"],
            env={**os.environ, "GOOGLE_APPLICATION_CREDENTIALS": credentials_path},
            capture_output=True,
            text=True,
            timeout=60,
        )
    except FileNotFoundError as e:
        raise ProviderError(
            "gcloud command not found. Install the Google Cloud CLI or set "
            "VERTEX_AI_ACCESS_TOKEN."
        ) from e
    except subprocess.TimeoutExpired as e:
        raise ProviderError("gcloud timed out generating an access token") from e
    finally:
        os.unlink(credentials_path)

    if result.returncode != 0:
        raise ProviderError(f"gcloud error (exit code {result.returncode}): {result.stderr.strip()}")
    token = result.stdout.strip()
    if len(token) <= 20 or any(c.isspace() for c in token):
        raise ProviderError("Invalid token format received from gcloud")
    logger.debug("Generated Vertex AI access token from service account")
    return token
