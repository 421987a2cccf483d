"""Shared utility functions for parley."""

from __future__ import annotations

import base64
import json
import re
from typing import Any

_TOOL_ID_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")
_BACKTICK_RUN = re.compile(r"`+")


def normalize_tool_id(tool_id: str) -> str:
    """Map a tool call id onto the ``[A-Za-z0-9_-]`` alphabet.

    Ids minted by one vendor (e.g. Vertex URNs with colons) are rejected by
    others, so anything outside the alphabet becomes an underscore.
    """
    return _TOOL_ID_UNSAFE.sub("_", tool_id)


def code_fence(body: str, language: str = "") -> str:
    """Wrap ``body`` in a backtick fence longer than any run inside it."""
    longest = max((len(m.group()) for m in _BACKTICK_RUN.finditer(body)), default=0)
    fence = "`" * max(3, longest + 1)
    return f"{fence}{language}\n{body}\n{fence}"


def encode_reasoning_signature(items: list[dict[str, Any]]) -> str:
    """Pack replayable reasoning items into an opaque signature string.

    A single item is stored as an object, several as an array.
    """
    payload: Any = items[0] if len(items) == 1 else items
    raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_reasoning_signature(signature: str) -> list[dict[str, Any]]:
    """Inverse of encode_reasoning_signature.

    Raises ValueError if the signature is not base64 JSON of an object or
    an array of objects.
    """
    try:
        decoded = json.loads(base64.b64decode(signature, validate=True).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise ValueError(f"Invalid reasoning signature: {e}") from e
    if isinstance(decoded, dict):
        return [decoded]
    if isinstance(decoded, list) and all(isinstance(item, dict) for item in decoded):
        return decoded
    raise ValueError("Invalid reasoning signature: expected an object or a list of objects")
