"""Host-level text generation with tool execution and response synthesis."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncGenerator

from .chat_model import OllamaChatModel
from .config import EnhancedOptions
from .generation_types import GenerationRequest, StreamEvent, TextPart, TextResult, ToolResultPart
from .stream_multiplexer import StreamMultiplexer
from .synthesis import ResponseSynthesizer, should_synthesize
from .tool_execution import execute_tool_calls, stream_tool_results

LOG = logging.getLogger(__name__)


async def generate_text(
    model: OllamaChatModel,
    request: GenerationRequest,
    *,
    options: EnhancedOptions | None = None,
    abort_signal: asyncio.Event | None = None,
) -> TextResult:
    """Generate a buffered answer, running tools and synthesizing text when the model left it out."""
    opts = options or EnhancedOptions()
    started = time.monotonic()
    result = await model.do_generate(request, abort_signal=abort_signal)

    tool_results: list[ToolResultPart] = []
    if request.has_tools and result.tool_calls:
        tool_results = await execute_tool_calls(
            result.tool_calls,
            request.tools,
            max_concurrency=opts.max_tool_concurrency,
            normalize_arguments=opts.normalize_tool_arguments,
        )

    text = result.text
    usage = result.usage
    content = tuple(result.content) + tuple(tool_results)
    synthesized = False
    attempts = 0

    if (
        request.has_tools
        and opts.enable_synthesis
        and should_synthesize(len(result.tool_calls), text, opts.min_response_length)
    ):
        LOG.info(
            "tool turn returned too little text, synthesizing tool_calls=%s chars=%s",
            len(result.tool_calls),
            len(text.strip()),
        )
        synthesizer = ResponseSynthesizer(model, opts)
        outcome = await synthesizer.synthesize(request, tool_results, abort_signal=abort_signal)
        if outcome is None:
            attempts = opts.max_synthesis_attempts
        else:
            attempts = outcome.attempts
            synthesized = True
            text = outcome.text
            usage = usage + outcome.usage
            content = tuple(part for part in content if not isinstance(part, TextPart)) + (TextPart(text),)

    LOG.debug(
        "generate_text done model=%s elapsed=%.3fs tool_calls=%s synthesized=%s",
        model.model_id,
        time.monotonic() - started,
        len(result.tool_calls),
        synthesized,
    )
    return TextResult(
        text=text,
        content=content,
        tool_calls=result.tool_calls,
        tool_results=tuple(tool_results),
        finish_reason=result.finish_reason,
        usage=usage,
        provider_metadata=result.provider_metadata,
        warnings=result.warnings,
        synthesized=synthesized,
        synthesis_attempts=attempts,
    )


def stream_text(
    model: OllamaChatModel,
    request: GenerationRequest,
    *,
    options: EnhancedOptions | None = None,
    abort_signal: asyncio.Event | None = None,
) -> AsyncGenerator[StreamEvent, None]:
    """Start a streaming generation.

    Without tools the model's events are returned untouched. With tools,
    executable calls are answered inline and, unless synthesis is disabled,
    the stream is multiplexed so a missing answer can be synthesized.
    """
    opts = options or EnhancedOptions()
    events = model.do_stream(request, abort_signal=abort_signal)
    if not request.has_tools:
        return events

    events = stream_tool_results(events, request.tools, normalize_arguments=opts.normalize_tool_arguments)
    if not opts.enable_synthesis:
        return events

    multiplexer = StreamMultiplexer(
        events,
        request=request,
        synthesizer=ResponseSynthesizer(model, opts),
        options=opts,
        abort_signal=abort_signal,
    )
    return multiplexer.events()
