"""Translation of backend NDJSON chat chunks into lifecycle stream events."""

from __future__ import annotations

import logging
from typing import Any, AsyncGenerator, AsyncIterable

from .generation_types import (
    CallWarning,
    Finish,
    ReasoningDelta,
    ReasoningEnd,
    ReasoningStart,
    StreamEvent,
    StreamStart,
    TextDelta,
    TextEnd,
    TextStart,
    ToolCall,
    Usage,
    new_reasoning_id,
    new_text_id,
)
from .response_normalizer import map_finish_reason, provider_metadata, tool_call_parts, usage_from_response

LOG = logging.getLogger(__name__)


class StreamTransformer:
    """Stateful chunk-to-event translator for one streaming call.

    Text and reasoning are tracked as separate runs. A run opens on the first
    non-empty delta and closes on the first chunk without a delta of its kind,
    or when the terminal chunk arrives.
    """

    def __init__(self, *, reasoning_enabled: bool = False, warnings: tuple[CallWarning, ...] = ()) -> None:
        self.reasoning_enabled = reasoning_enabled
        self.warnings = warnings
        self.text_id: str | None = None
        self.reasoning_id: str | None = None
        self.finished = False

    def start_event(self) -> StreamStart:
        return StreamStart(warnings=self.warnings)

    def _reasoning_events(self, thinking: Any) -> list[StreamEvent]:
        if not self.reasoning_enabled:
            return []
        if isinstance(thinking, str) and thinking:
            events: list[StreamEvent] = []
            if self.reasoning_id is None:
                self.reasoning_id = new_reasoning_id()
                events.append(ReasoningStart(id=self.reasoning_id))
            events.append(ReasoningDelta(id=self.reasoning_id, delta=thinking))
            return events
        return self._close_reasoning()

    def _text_events(self, content: Any) -> list[StreamEvent]:
        if isinstance(content, str) and content:
            events: list[StreamEvent] = []
            if self.text_id is None:
                self.text_id = new_text_id()
                events.append(TextStart(id=self.text_id))
            events.append(TextDelta(id=self.text_id, delta=content))
            return events
        return self._close_text()

    def _close_reasoning(self) -> list[StreamEvent]:
        if self.reasoning_id is None:
            return []
        event = ReasoningEnd(id=self.reasoning_id)
        self.reasoning_id = None
        return [event]

    def _close_text(self) -> list[StreamEvent]:
        if self.text_id is None:
            return []
        event = TextEnd(id=self.text_id)
        self.text_id = None
        return [event]

    def close_open_runs(self) -> list[StreamEvent]:
        """Close dangling reasoning and text runs, reasoning first."""
        return self._close_reasoning() + self._close_text()

    def process_chunk(self, chunk: Any) -> list[StreamEvent]:
        """Return the events produced by one backend chunk."""
        if self.finished:
            LOG.debug("ignoring backend chunk after terminal chunk")
            return []
        if not isinstance(chunk, dict):
            LOG.debug("skipping non-object backend chunk: %r", chunk)
            return []

        message = chunk.get("message")
        if not isinstance(message, dict):
            message = {}

        done = bool(chunk.get("done"))
        events: list[StreamEvent] = []
        thinking = message.get("thinking")
        content = message.get("content")

        # The terminal chunk only contributes residual deltas, it never closes runs by omission.
        if not done or thinking:
            events.extend(self._reasoning_events(thinking))
        if not done or content:
            events.extend(self._text_events(content))
        for part in tool_call_parts(message.get("tool_calls")):
            events.append(ToolCall(id=part.id, name=part.name, input=part.input))

        if done:
            self.finished = True
            events.extend(self.close_open_runs())
            events.append(
                Finish(
                    finish_reason=map_finish_reason(chunk.get("done_reason")),
                    usage=usage_from_response(chunk),
                    provider_metadata=provider_metadata(chunk),
                )
            )
        return events

    def finish_without_terminal_chunk(self) -> list[StreamEvent]:
        """Close a stream whose source ended before sending `done: true`."""
        if self.finished:
            return []
        LOG.warning("backend stream ended without a terminal chunk")
        self.finished = True
        return self.close_open_runs() + [Finish(finish_reason="unknown", usage=Usage())]

    async def transform(self, chunks: AsyncIterable[Any]) -> AsyncGenerator[StreamEvent, None]:
        """Yield the full event sequence for a chunk source."""
        yield self.start_event()
        async for chunk in chunks:
            for event in self.process_chunk(chunk):
                yield event
            if self.finished:
                break
        for event in self.finish_without_terminal_chunk():
            yield event
