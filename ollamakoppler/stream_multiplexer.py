"""Live event forwarding with idle detection and one-shot synthesis injection.

The multiplexer sits between a tool-enabled event stream and its consumer.
Events are forwarded as they arrive. When the stream finishes, or stalls for
longer than the idle timeout, the turn is evaluated once: if tools ran but
almost no text was produced, a synthesized answer is injected as a complete
text run right before the final `Finish`.

The idle timer only runs once the model has called a tool and every
executable call has produced its result. Silence before the first tool call,
such as a cold model load, is not a stall, and neither is a slow tool. An
expiry that finds enough text already streamed leaves the backend running.

Channel states move strictly forward ``open -> closing -> closed``. Only the
first finalize request wins; writes are dropped once the channel is closed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import time
from typing import Any, AsyncGenerator, AsyncIterable

from .cancellation import aclose_quietly, iterate_abortable
from .config import EnhancedOptions
from .generation_types import (
    Finish,
    FinishReason,
    GenerationRequest,
    ReasoningEnd,
    ReasoningStart,
    StreamEvent,
    TextDelta,
    TextEnd,
    TextStart,
    ToolCall,
    ToolResult,
    Usage,
    new_text_id,
)
from .synthesis import ResponseSynthesizer, SynthesisState

LOG = logging.getLogger(__name__)

CHANNEL_OPEN = "open"
CHANNEL_CLOSING = "closing"
CHANNEL_CLOSED = "closed"

_CLOSED = object()
_WORD_BOUNDARY_RE = re.compile(r"(?<=\s)(?=\S)")


def chunk_text(text: str, chunk_size: int) -> list[str]:
    """Split text into pieces of roughly `chunk_size` characters at word boundaries."""
    if not text:
        return []
    chunks: list[str] = []
    current = ""
    for word in _WORD_BOUNDARY_RE.split(text):
        if current and len(current) + len(word) > chunk_size:
            chunks.append(current)
            current = ""
        current += word
    if current:
        chunks.append(current)
    return chunks


class StreamMultiplexer:
    """Forward one stream invocation and inject synthesized text at most once."""

    def __init__(
        self,
        source: AsyncIterable[StreamEvent],
        *,
        request: GenerationRequest,
        synthesizer: ResponseSynthesizer,
        options: EnhancedOptions,
        abort_signal: asyncio.Event | None = None,
    ) -> None:
        self.source = source
        self.request = request
        self.synthesizer = synthesizer
        self.options = options
        self.abort_signal = abort_signal
        self.state = SynthesisState()
        self.channel_state = CHANNEL_OPEN
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._open_runs: dict[str, type] = {}
        self._awaiting_results: set[str] = set()
        self._consumed = False
        self._reader: asyncio.Task[None] | None = None
        self._timer: asyncio.Task[None] | None = None
        self._started = time.monotonic()

    def events(self) -> AsyncGenerator[StreamEvent, None]:
        """Consume the multiplexed stream; closing the generator stops all background work.

        The source is single-use, so a second call raises `RuntimeError`.
        """
        if self._consumed:
            raise RuntimeError("multiplexed stream can only be consumed once")
        self._consumed = True
        return self._drain()

    async def _drain(self) -> AsyncGenerator[StreamEvent, None]:
        self._reader = asyncio.create_task(self._read_loop())
        try:
            while True:
                item = await self._queue.get()
                if item is _CLOSED:
                    return
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            await self._shutdown()

    def __aiter__(self) -> AsyncGenerator[StreamEvent, None]:
        return self.events()

    async def _read_loop(self) -> None:
        events = iterate_abortable(self.source, self.abort_signal)
        try:
            async for event in events:
                if self.channel_state != CHANNEL_OPEN:
                    return
                if isinstance(event, Finish):
                    self._cancel_timer()
                    self.state.observe(event)
                    await self._finalize(event.finish_reason, event.usage, event.provider_metadata)
                    return
                self._forward(event)
                self._restart_idle_timer()
            self._cancel_timer()
            LOG.warning("event source ended without finish")
            self._close_dangling_runs()
            await self._finalize("unknown", Usage(), {})
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._fail(exc)
        finally:
            await aclose_quietly(events, label="multiplexer source")

    def _forward(self, event: StreamEvent) -> None:
        if isinstance(event, (TextStart, ReasoningStart)):
            self._open_runs[event.id] = TextEnd if isinstance(event, TextStart) else ReasoningEnd
        elif isinstance(event, (TextEnd, ReasoningEnd)):
            self._open_runs.pop(event.id, None)
        elif isinstance(event, ToolCall) and self._expects_result(event.name):
            self._awaiting_results.add(event.id)
        elif isinstance(event, ToolResult):
            self._awaiting_results.discard(event.id)
        self.state.observe(event)
        self._put(event)

    def _expects_result(self, tool_name: str) -> bool:
        # Unknown tools get an error result; tools without an executor never get one.
        tool = self.request.tool_by_name(tool_name)
        return tool is None or tool.execute is not None

    def _restart_idle_timer(self) -> None:
        self._cancel_timer()
        if self.channel_state != CHANNEL_OPEN or not self.state.tool_calls or self._awaiting_results:
            return
        self._timer = asyncio.create_task(self._idle_watch())

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()

    async def _idle_watch(self) -> None:
        try:
            await asyncio.sleep(self.options.synthesis_timeout_seconds)
            if self.channel_state != CHANNEL_OPEN:
                return
            if not self._should_synthesize():
                LOG.debug("stream idle with answer text chars=%s, waiting", self.state.accumulated_text_length)
                return
            LOG.info(
                "stream idle for %.3fs, finalizing elapsed=%.3fs",
                self.options.synthesis_timeout_seconds,
                time.monotonic() - self._started,
            )
            # Claim the channel before stopping the reader so it cannot finalize concurrently.
            self.channel_state = CHANNEL_CLOSING
            await self._cancel_reader()
            self._close_dangling_runs()
            await self._finish_turn("stop", Usage(), {})
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._fail(exc)

    async def _cancel_reader(self) -> None:
        reader = self._reader
        if reader is None or reader.done() or reader is asyncio.current_task():
            return
        reader.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reader

    def _close_dangling_runs(self) -> None:
        for run_id, end_type in list(self._open_runs.items()):
            self._forward(end_type(id=run_id))

    async def _finalize(self, finish_reason: FinishReason, usage: Usage, metadata: dict[str, Any]) -> None:
        """Evaluate the turn and emit the final `Finish`; no-op unless the channel is still open."""
        if self.channel_state != CHANNEL_OPEN:
            LOG.debug("finalize ignored channel=%s", self.channel_state)
            return
        self.channel_state = CHANNEL_CLOSING
        await self._finish_turn(finish_reason, usage, metadata)

    async def _finish_turn(self, finish_reason: FinishReason, usage: Usage, metadata: dict[str, Any]) -> None:
        if self.channel_state == CHANNEL_CLOSED:
            return
        total_usage = usage
        if self._should_synthesize():
            self.state.applied = True
            self.state.in_progress = True
            try:
                outcome = await self.synthesizer.synthesize(
                    self.request,
                    self.state.tool_results,
                    abort_signal=self.abort_signal,
                )
            finally:
                self.state.in_progress = False
            if outcome is not None:
                self._emit_text_run(outcome.text)
                total_usage = usage + outcome.usage
        finish = Finish(finish_reason=finish_reason, usage=total_usage, provider_metadata=metadata)
        self.state.observe(finish)
        self._put(finish)
        self.close()

    def _should_synthesize(self) -> bool:
        if not self.options.enable_synthesis or self.state.in_progress:
            return False
        return self.state.needs_synthesis(self.options.min_response_length)

    def _emit_text_run(self, text: str) -> None:
        text_id = new_text_id()
        self._put(TextStart(id=text_id))
        for piece in chunk_text(text, self.options.synthesis_chunk_size):
            self._put(TextDelta(id=text_id, delta=piece))
        self._put(TextEnd(id=text_id))
        LOG.debug("injected synthesized text id=%s chars=%s", text_id, len(text))

    def _put(self, item: Any) -> None:
        if self.channel_state == CHANNEL_CLOSED:
            LOG.debug("dropping write to closed channel item=%s", getattr(item, "kind", type(item).__name__))
            return
        self._queue.put_nowait(item)

    def close(self) -> None:
        """Close the channel; repeated calls are no-ops."""
        if self.channel_state == CHANNEL_CLOSED:
            return
        self.channel_state = CHANNEL_CLOSED
        self._queue.put_nowait(_CLOSED)

    def _fail(self, exc: BaseException) -> None:
        if self.channel_state == CHANNEL_CLOSED:
            LOG.debug("error after channel close ignored: %s", exc)
            return
        self._put(exc)
        self.close()

    async def _shutdown(self) -> None:
        self.close()
        for task in (self._timer, self._reader):
            if task is None or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        LOG.debug(
            "multiplexed stream closed elapsed=%.3fs synthesized=%s",
            time.monotonic() - self._started,
            self.state.applied,
        )
