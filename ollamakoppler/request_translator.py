"""Translation of normalized generation requests into backend chat calls."""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from .config import ChatSettings
from .errors import ConfigurationError
from .generation_types import CallWarning, GenerationRequest, PortableParams, ResponseFormat, ToolDefinition
from .message_conversion import convert_to_backend_messages

LOG = logging.getLogger(__name__)

# Portable parameter name -> backend option name.
PORTABLE_TO_NATIVE: dict[str, str] = {
    "temperature": "temperature",
    "max_output_tokens": "num_predict",
    "top_p": "top_p",
    "top_k": "top_k",
    "frequency_penalty": "frequency_penalty",
    "presence_penalty": "presence_penalty",
    "stop_sequences": "stop",
    "seed": "seed",
}

_MAX_SCHEMA_PATTERN_LENGTH = 50


def empty_object_schema() -> dict[str, Any]:
    return {"type": "object", "properties": {}, "additionalProperties": False}


@dataclass(frozen=True)
class BackendCall:
    """Backend-native shape of one chat request."""

    model: str
    messages: list[dict[str, Any]]
    options: dict[str, Any]
    format: str | dict[str, Any] | None = None
    tools: list[dict[str, Any]] | None = None
    warnings: tuple[CallWarning, ...] = field(default_factory=tuple)

    def payload(self, *, stream: bool) -> dict[str, Any]:
        """Build the `/api/chat` request body."""
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self.messages,
            "options": self.options,
            "stream": stream,
        }
        if self.tools is not None:
            body["tools"] = self.tools
        if self.format is not None:
            body["format"] = self.format
        return body


def build_options(
    params: PortableParams,
    *native_layers: Mapping[str, Any],
) -> dict[str, Any]:
    """Merge portable parameters with native options; later native layers win."""
    options: dict[str, Any] = {}
    for portable_name, native_name in PORTABLE_TO_NATIVE.items():
        value = getattr(params, portable_name)
        if value is None:
            continue
        options[native_name] = list(value) if portable_name == "stop_sequences" else value

    for layer in native_layers:
        for key, value in layer.items():
            if value is not None:
                options[key] = value
    return options


def resolve_tool_schema(tool: ToolDefinition) -> tuple[dict[str, Any], CallWarning | None]:
    """Return the JSON schema for one tool and a compatibility warning when it had to fall back."""
    schema = tool.input_schema
    if schema is None:
        return empty_object_schema(), None

    if isinstance(schema, Mapping):
        if "type" in schema or "properties" in schema:
            return dict(schema), None
        reason = "has no 'type' or 'properties' key"
    elif isinstance(schema, type) and issubclass(schema, BaseModel):
        try:
            return schema.model_json_schema(), None
        except Exception as exc:
            reason = f"could not be rendered as JSON schema ({exc})"
    else:
        reason = f"is a {type(schema).__name__} object rather than a JSON schema"

    message = f"Tool {tool.name} input schema {reason}; sending an empty object schema instead."
    LOG.warning(message)
    return empty_object_schema(), CallWarning(type="compatibility", message=message, setting="tools")


def clean_schema_for_backend(schema: Mapping[str, Any]) -> dict[str, Any]:
    """Strip schema constructs the backend's grammar sampler rejects."""
    cleaned = {key: value for key, value in schema.items() if key != "$schema"}
    return _clean_schema_node(cleaned)


def _clean_schema_node(node: dict[str, Any]) -> dict[str, Any]:
    cleaned = dict(node)
    pattern = cleaned.get("pattern")
    if isinstance(pattern, str) and (cleaned.get("format") == "email" or len(pattern) > _MAX_SCHEMA_PATTERN_LENGTH):
        cleaned.pop("pattern")

    for key, value in cleaned.items():
        if key == "properties" and isinstance(value, Mapping):
            cleaned[key] = {
                name: _clean_schema_node(dict(prop)) if isinstance(prop, Mapping) else prop
                for name, prop in value.items()
            }
        elif isinstance(value, Mapping):
            cleaned[key] = _clean_schema_node(dict(value))
        elif isinstance(value, list):
            cleaned[key] = [_clean_schema_node(dict(item)) if isinstance(item, Mapping) else item for item in value]
    return cleaned


class RequestTranslator:
    """Build backend chat calls for one model id and its settings."""

    def __init__(self, model_id: str, settings: ChatSettings) -> None:
        self.model_id = model_id
        self.settings = settings

    def translate(self, request: GenerationRequest) -> BackendCall:
        """Translate one request; raises `ConfigurationError` for unsupported combinations."""
        warnings: list[CallWarning] = []
        response_format = self._response_format(request.response_format)
        tools = self._convert_tools(request.tools, warnings)
        options = build_options(request.params, self.settings.options, request.native_params)
        messages = convert_to_backend_messages(request.messages)
        return BackendCall(
            model=self.model_id,
            messages=messages,
            options=options,
            format=response_format,
            tools=tools,
            warnings=tuple(warnings),
        )

    def _response_format(self, response_format: ResponseFormat | None) -> str | dict[str, Any] | None:
        if response_format is None or response_format.type != "json":
            return None
        if response_format.schema is None:
            return "json"
        if not self.settings.structured_outputs:
            raise ConfigurationError("JSON schema is only supported when structured_outputs is enabled")
        return clean_schema_for_backend(copy.deepcopy(response_format.schema))

    @staticmethod
    def _convert_tools(
        tools: tuple[ToolDefinition, ...] | None,
        warnings: list[CallWarning],
    ) -> list[dict[str, Any]] | None:
        if not tools:
            return None

        converted: list[dict[str, Any]] = []
        for tool in tools:
            if tool.kind != "function":
                raise ConfigurationError(
                    f"Provider-defined tool '{tool.name}' is not supported by the backend. Use function tools instead."
                )
            parameters, warning = resolve_tool_schema(tool)
            if warning is not None:
                warnings.append(warning)
            function: dict[str, Any] = {"name": tool.name, "parameters": parameters}
            if tool.description is not None:
                function["description"] = tool.description
            converted.append({"type": "function", "function": function})
        return converted
