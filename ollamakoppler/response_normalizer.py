"""Normalization of backend chat responses."""

from __future__ import annotations

import json
import logging
from typing import Any

from .generation_types import (
    CallWarning,
    ContentPart,
    FinishReason,
    GenerationResult,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    Usage,
    new_tool_call_id,
)

LOG = logging.getLogger(__name__)

_METADATA_FIELDS = (
    "model",
    "created_at",
    "total_duration",
    "load_duration",
    "prompt_eval_duration",
    "eval_duration",
)


def map_finish_reason(done_reason: Any) -> FinishReason:
    if done_reason == "stop":
        return "stop"
    if done_reason == "length":
        return "length"
    return "unknown"


def parse_tool_arguments(raw: Any) -> dict[str, Any]:
    """Coerce backend tool-call arguments into a dict.

    The backend usually sends an object, but some models emit a JSON string.
    Unparseable values are preserved under `_raw` instead of failing the call.
    """
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            LOG.debug("tool arguments are not valid JSON, keeping raw value: %s", raw[:200])
            return {"_raw": raw}
        if isinstance(parsed, dict):
            return parsed
    return {"_raw": raw}


def tool_call_parts(tool_calls: Any) -> list[ToolCallPart]:
    """Convert backend `message.tool_calls` entries to tool-call parts with fresh ids."""
    parts: list[ToolCallPart] = []
    if not isinstance(tool_calls, list):
        return parts
    for call in tool_calls:
        if not isinstance(call, dict):
            continue
        function = call.get("function")
        if not isinstance(function, dict):
            continue
        name = function.get("name")
        if not isinstance(name, str) or not name:
            continue
        parts.append(
            ToolCallPart(id=new_tool_call_id(), name=name, input=parse_tool_arguments(function.get("arguments")))
        )
    return parts


def usage_from_response(response: dict[str, Any]) -> Usage:
    return Usage.from_counts(response.get("prompt_eval_count"), response.get("eval_count"))


def provider_metadata(response: dict[str, Any]) -> dict[str, Any]:
    """Collect backend timing and model metadata, omitting missing fields."""
    values = {key: response[key] for key in _METADATA_FIELDS if response.get(key) is not None}
    return {"ollama": values}


def normalize_response(
    response: dict[str, Any],
    *,
    reasoning_enabled: bool = False,
    warnings: tuple[CallWarning, ...] = (),
    request_body: dict[str, Any] | None = None,
) -> GenerationResult:
    """Turn one `/api/chat` response into a `GenerationResult`."""
    message = response.get("message")
    if not isinstance(message, dict):
        message = {}

    content: list[ContentPart] = []
    thinking = message.get("thinking")
    if reasoning_enabled and isinstance(thinking, str) and thinking:
        content.append(ReasoningPart(thinking))

    text = message.get("content")
    if isinstance(text, str) and text:
        content.append(TextPart(text))

    content.extend(tool_call_parts(message.get("tool_calls")))

    return GenerationResult(
        content=tuple(content),
        finish_reason=map_finish_reason(response.get("done_reason")),
        usage=usage_from_response(response),
        provider_metadata=provider_metadata(response),
        warnings=warnings,
        request_body=request_body or {},
    )
