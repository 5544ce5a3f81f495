"""Conversion of normalized messages into backend-native chat messages."""

from __future__ import annotations

import base64
import logging
import re
from typing import Any, Iterable

from .errors import ConfigurationError
from .generation_types import (
    ImagePart,
    NormalizedMessage,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from .tool_markers import format_tool_call_marker, format_tool_result_marker

LOG = logging.getLogger(__name__)

_DATA_URL_BASE64_RE = re.compile(r"^data:[^;,]+;base64,(.+)$", re.DOTALL)


def image_reference(data: str | bytes) -> str:
    """Return the backend image reference for one image part.

    HTTP URLs pass through, data URLs are reduced to their base64 payload and
    raw bytes are base64-encoded.
    """
    if isinstance(data, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(data)).decode("ascii")
    match = _DATA_URL_BASE64_RE.match(data)
    if match:
        return match.group(1)
    return data


def _texts(message: NormalizedMessage) -> list[str]:
    return [part.text for part in message.parts if isinstance(part, TextPart)]


def _convert_user(message: NormalizedMessage) -> dict[str, Any]:
    images = [image_reference(part.data) for part in message.parts if isinstance(part, ImagePart)]
    converted: dict[str, Any] = {"role": "user", "content": "\n".join(_texts(message))}
    if images:
        converted["images"] = images
    return converted


def _convert_assistant(message: NormalizedMessage) -> dict[str, Any]:
    text = "".join(_texts(message))
    reasoning = "\n".join(part.text for part in message.parts if isinstance(part, ReasoningPart))
    content = "\n".join(value for value in (text, reasoning) if value)

    markers = [
        format_tool_call_marker(part.name, part.input)
        for part in message.parts
        if isinstance(part, ToolCallPart)
    ]
    if markers:
        marker_text = "\n".join(markers)
        content = f"{content}\n{marker_text}" if content else marker_text
    return {"role": "assistant", "content": content}


def _convert_tool(message: NormalizedMessage) -> dict[str, Any]:
    markers = [
        format_tool_result_marker(part.name, part.output)
        for part in message.parts
        if isinstance(part, ToolResultPart)
    ]
    # No native tool role: results travel back as user turns.
    return {"role": "user", "content": "\n".join(markers)}


def convert_to_backend_messages(messages: Iterable[NormalizedMessage]) -> list[dict[str, Any]]:
    """Convert normalized conversation history to backend chat messages."""
    converted: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "system":
            converted.append({"role": "system", "content": "\n".join(_texts(message))})
        elif message.role == "user":
            converted.append(_convert_user(message))
        elif message.role == "assistant":
            converted.append(_convert_assistant(message))
        elif message.role == "tool":
            converted.append(_convert_tool(message))
        else:
            raise ConfigurationError(
                f"Unsupported message role: {message.role}. Supported roles are: system, user, assistant, tool"
            )
    LOG.debug("converted messages count=%s", len(converted))
    return converted


def latest_user_text(messages: Iterable[NormalizedMessage]) -> str:
    """Return the text of the final user turn, or an empty string."""
    for message in reversed(list(messages)):
        if message.role != "user":
            continue
        texts = _texts(message)
        if texts:
            return "\n".join(texts)
    return ""


def history_tool_results(messages: Iterable[NormalizedMessage]) -> list[ToolResultPart]:
    """Collect tool results already present in the conversation history."""
    return [
        part
        for message in messages
        if message.role == "tool"
        for part in message.parts
        if isinstance(part, ToolResultPart)
    ]
