"""Normalized data model shared by request translation, streaming, and synthesis."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ClassVar, Iterable, Literal, Union

Role = Literal["system", "user", "assistant", "tool"]
FinishReason = Literal["stop", "length", "unknown"]


def new_tool_call_id() -> str:
    """Generate a correlation id for one tool call; the backend does not supply one."""
    return f"call_{uuid.uuid4().hex}"


def new_text_id() -> str:
    return f"text-{uuid.uuid4().hex}"


def new_reasoning_id() -> str:
    return f"reasoning-{uuid.uuid4().hex}"


# Content parts


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ReasoningPart:
    text: str


@dataclass(frozen=True)
class ImagePart:
    """Image reference: http(s) URL, data URL, bare base64 string, or raw bytes."""

    data: str | bytes


@dataclass(frozen=True)
class ToolCallPart:
    id: str
    name: str
    input: dict[str, Any]


@dataclass(frozen=True)
class ToolResultPart:
    id: str
    name: str
    output: Any


ContentPart = Union[TextPart, ReasoningPart, ImagePart, ToolCallPart, ToolResultPart]


@dataclass(frozen=True)
class NormalizedMessage:
    role: Role
    parts: tuple[ContentPart, ...]

    @classmethod
    def text(cls, role: Role, text: str) -> "NormalizedMessage":
        """Build a single-text-part message."""
        return cls(role=role, parts=(TextPart(text),))


# Requests


ToolExecutor = Callable[[dict[str, Any]], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class ToolDefinition:
    """Tool offered to the model.

    `input_schema` is normally a JSON-schema mapping; pydantic model classes are
    rendered to JSON schema. `execute` is an optional host callable used by the
    host-level functions to produce tool results.
    """

    name: str
    description: str | None = None
    input_schema: Any = None
    execute: ToolExecutor | None = None
    kind: Literal["function", "provider"] = "function"


@dataclass(frozen=True)
class PortableParams:
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    seed: int | None = None
    stop_sequences: tuple[str, ...] | None = None
    max_output_tokens: int | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None


@dataclass(frozen=True)
class ResponseFormat:
    type: Literal["text", "json"] = "text"
    schema: dict[str, Any] | None = None
    name: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class GenerationRequest:
    messages: tuple[NormalizedMessage, ...]
    tools: tuple[ToolDefinition, ...] | None = None
    params: PortableParams = field(default_factory=PortableParams)
    native_params: dict[str, Any] = field(default_factory=dict)
    response_format: ResponseFormat | None = None

    @property
    def has_tools(self) -> bool:
        return bool(self.tools)

    def tool_by_name(self, name: str) -> ToolDefinition | None:
        return find_tool(self.tools, name)


def find_tool(tools: Iterable[ToolDefinition] | None, name: str) -> ToolDefinition | None:
    for tool in tools or ():
        if tool.name == name:
            return tool
    return None


# Results


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_counts(cls, input_tokens: int | None, output_tokens: int | None) -> "Usage":
        prompt = int(input_tokens or 0)
        completion = int(output_tokens or 0)
        return cls(input_tokens=prompt, output_tokens=completion, total_tokens=prompt + completion)

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


@dataclass(frozen=True)
class CallWarning:
    type: Literal["unsupported-setting", "compatibility", "other"]
    message: str
    setting: str | None = None


def _joined_text(content: tuple[ContentPart, ...], part_type: type) -> str:
    return "".join(part.text for part in content if isinstance(part, part_type))


@dataclass(frozen=True)
class GenerationResult:
    """One normalized backend response."""

    content: tuple[ContentPart, ...]
    finish_reason: FinishReason
    usage: Usage
    provider_metadata: dict[str, Any] = field(default_factory=dict)
    warnings: tuple[CallWarning, ...] = ()
    request_body: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return _joined_text(self.content, TextPart)

    @property
    def reasoning_text(self) -> str:
        return _joined_text(self.content, ReasoningPart)

    @property
    def tool_calls(self) -> tuple[ToolCallPart, ...]:
        return tuple(part for part in self.content if isinstance(part, ToolCallPart))


@dataclass(frozen=True)
class TextResult:
    """Host-level result of `generate_text`, including executed tool results."""

    text: str
    content: tuple[ContentPart, ...]
    tool_calls: tuple[ToolCallPart, ...]
    tool_results: tuple[ToolResultPart, ...]
    finish_reason: FinishReason
    usage: Usage
    provider_metadata: dict[str, Any] = field(default_factory=dict)
    warnings: tuple[CallWarning, ...] = ()
    synthesized: bool = False
    synthesis_attempts: int = 0


# Stream events


@dataclass(frozen=True)
class StreamStart:
    kind: ClassVar[str] = "stream-start"
    warnings: tuple[CallWarning, ...] = ()


@dataclass(frozen=True)
class TextStart:
    kind: ClassVar[str] = "text-start"
    id: str


@dataclass(frozen=True)
class TextDelta:
    kind: ClassVar[str] = "text-delta"
    id: str
    delta: str


@dataclass(frozen=True)
class TextEnd:
    kind: ClassVar[str] = "text-end"
    id: str


@dataclass(frozen=True)
class ReasoningStart:
    kind: ClassVar[str] = "reasoning-start"
    id: str


@dataclass(frozen=True)
class ReasoningDelta:
    kind: ClassVar[str] = "reasoning-delta"
    id: str
    delta: str


@dataclass(frozen=True)
class ReasoningEnd:
    kind: ClassVar[str] = "reasoning-end"
    id: str


@dataclass(frozen=True)
class ToolCall:
    kind: ClassVar[str] = "tool-call"
    id: str
    name: str
    input: dict[str, Any]


@dataclass(frozen=True)
class ToolResult:
    kind: ClassVar[str] = "tool-result"
    id: str
    name: str
    output: Any


@dataclass(frozen=True)
class Finish:
    kind: ClassVar[str] = "finish"
    finish_reason: FinishReason
    usage: Usage
    provider_metadata: dict[str, Any] = field(default_factory=dict)


StreamEvent = Union[
    StreamStart,
    TextStart,
    TextDelta,
    TextEnd,
    ReasoningStart,
    ReasoningDelta,
    ReasoningEnd,
    ToolCall,
    ToolResult,
    Finish,
]
