"""Response synthesis for tool turns that ended with little or no text.

Some models run the requested tools and then stop without explaining the
results. When that happens the conversation is replayed once more, without
tools, with a prompt listing the tool results, and the answer of that call
stands in for the missing text.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from .config import EnhancedOptions
from .generation_types import (
    Finish,
    GenerationRequest,
    NormalizedMessage,
    StreamEvent,
    TextDelta,
    ToolCall,
    ToolCallPart,
    ToolResult,
    ToolResultPart,
    Usage,
)
from .message_conversion import history_tool_results, latest_user_text

LOG = logging.getLogger(__name__)

FALLBACK_REQUEST_TEXT = "the user question"


@dataclass
class SynthesisState:
    """Mutable per-invocation view of what a live stream has produced so far."""

    text: str = ""
    tool_calls: list[ToolCallPart] = field(default_factory=list)
    tool_results: list[ToolResultPart] = field(default_factory=list)
    applied: bool = False
    in_progress: bool = False
    finished: bool = False

    @property
    def accumulated_text_length(self) -> int:
        return len(self.text.strip())

    def observe(self, event: StreamEvent) -> None:
        if isinstance(event, TextDelta):
            self.text += event.delta
        elif isinstance(event, ToolCall):
            self.tool_calls.append(ToolCallPart(id=event.id, name=event.name, input=event.input))
        elif isinstance(event, ToolResult):
            self.tool_results.append(ToolResultPart(id=event.id, name=event.name, output=event.output))
        elif isinstance(event, Finish):
            self.finished = True

    def needs_synthesis(self, min_response_length: int) -> bool:
        return not self.applied and should_synthesize(len(self.tool_calls), self.text, min_response_length)


def should_synthesize(tool_call_count: int, text: str | None, min_response_length: int) -> bool:
    """Tools were called but the answer text is missing or too short."""
    return tool_call_count > 0 and len((text or "").strip()) < min_response_length


def _render_output(output: Any) -> str:
    return json.dumps(output, ensure_ascii=False, default=str)


def build_synthesis_prompt(
    messages: Iterable[NormalizedMessage],
    tool_results: Iterable[ToolResultPart],
    instruction: str,
) -> str:
    """Render the follow-up prompt from the original request and all known tool results."""
    message_list = list(messages)
    original = latest_user_text(message_list) or FALLBACK_REQUEST_TEXT
    results = [*history_tool_results(message_list), *tool_results]
    tool_context = "\n".join(f"{result.name}: {_render_output(result.output)}" for result in results)
    return f"Original request: {original}\n\nTool results:\n{tool_context}\n\n{instruction}"


@dataclass(frozen=True)
class SynthesisOutcome:
    text: str
    usage: Usage
    attempts: int


class ResponseSynthesizer:
    """Run bounded synthesis attempts against one chat model."""

    def __init__(self, model: Any, options: EnhancedOptions) -> None:
        self.model = model
        self.options = options

    def build_request(self, request: GenerationRequest, tool_results: Iterable[ToolResultPart]) -> GenerationRequest:
        """Same conversation and sampling parameters, no tools, plus the synthesis prompt."""
        prompt = build_synthesis_prompt(request.messages, tool_results, self.options.synthesis_prompt)
        return GenerationRequest(
            messages=(*request.messages, NormalizedMessage.text("user", prompt)),
            tools=None,
            params=request.params,
            native_params=dict(request.native_params),
            response_format=None,
        )

    async def synthesize(
        self,
        request: GenerationRequest,
        tool_results: Iterable[ToolResultPart],
        *,
        abort_signal: asyncio.Event | None = None,
    ) -> SynthesisOutcome | None:
        """Return synthesized text meeting the length threshold, or `None` after all attempts failed."""
        synthesis_request = self.build_request(request, tool_results)
        max_attempts = self.options.max_synthesis_attempts
        threshold = self.options.min_response_length

        for attempt in range(1, max_attempts + 1):
            started = time.monotonic()
            try:
                result = await self.model.do_generate(synthesis_request, abort_signal=abort_signal)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOG.warning("synthesis attempt failed attempt=%s/%s error=%s", attempt, max_attempts, exc)
                continue

            text = result.text
            if len(text.strip()) >= threshold:
                LOG.info(
                    "synthesis succeeded attempt=%s/%s elapsed=%.3fs chars=%s",
                    attempt,
                    max_attempts,
                    time.monotonic() - started,
                    len(text),
                )
                return SynthesisOutcome(text=text, usage=result.usage, attempts=attempt)
            LOG.warning(
                "synthesis answer too short attempt=%s/%s chars=%s min=%s",
                attempt,
                max_attempts,
                len(text.strip()),
                threshold,
            )

        LOG.warning("synthesis gave up after %s attempts", max_attempts)
        return None
