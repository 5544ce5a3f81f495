import asyncio

from ollamakoppler.generation_types import (
    CallWarning,
    Finish,
    ReasoningDelta,
    ReasoningEnd,
    ReasoningStart,
    StreamStart,
    TextDelta,
    TextEnd,
    TextStart,
    ToolCall,
    Usage,
)
from ollamakoppler.stream_transformer import StreamTransformer


def _chunk(content: str = "", *, thinking: str | None = None, done: bool = False, **extra: object) -> dict:
    message: dict[str, object] = {"role": "assistant", "content": content}
    if thinking is not None:
        message["thinking"] = thinking
    if "tool_calls" in extra:
        message["tool_calls"] = extra.pop("tool_calls")
    return {"message": message, "done": done, **extra}


async def _source(chunks):
    for chunk in chunks:
        yield chunk


def _collect(transformer: StreamTransformer, chunks) -> list:
    async def run() -> list:
        return [event async for event in transformer.transform(_source(chunks))]

    return asyncio.run(run())


def test_text_run_is_paired_and_finish_is_last() -> None:
    warning = CallWarning(type="other", message="note")
    events = _collect(
        StreamTransformer(warnings=(warning,)),
        [
            _chunk("Hel"),
            _chunk("lo"),
            _chunk("", done=True, done_reason="stop", prompt_eval_count=3, eval_count=2),
        ],
    )

    assert events[0] == StreamStart(warnings=(warning,))
    start, first, second, end, finish = events[1:]
    assert isinstance(start, TextStart)
    assert first == TextDelta(id=start.id, delta="Hel")
    assert second == TextDelta(id=start.id, delta="lo")
    assert end == TextEnd(id=start.id)
    assert isinstance(finish, Finish)
    assert finish.finish_reason == "stop"
    assert finish.usage == Usage(input_tokens=3, output_tokens=2, total_tokens=5)


def test_reasoning_run_closes_when_thinking_stops() -> None:
    events = _collect(
        StreamTransformer(reasoning_enabled=True),
        [
            _chunk(thinking="hmm"),
            _chunk(thinking=" ok"),
            _chunk("Answer"),
            _chunk("", done=True, done_reason="stop"),
        ],
    )

    kinds = [event.kind for event in events]
    assert kinds == [
        "stream-start",
        "reasoning-start",
        "reasoning-delta",
        "reasoning-delta",
        "reasoning-end",
        "text-start",
        "text-delta",
        "text-end",
        "finish",
    ]
    reasoning_id = events[1].id
    assert all(event.id == reasoning_id for event in events[1:5])
    assert reasoning_id.startswith("reasoning-")
    assert events[5].id.startswith("text-")


def test_reasoning_is_ignored_when_disabled() -> None:
    events = _collect(StreamTransformer(), [_chunk(thinking="secret"), _chunk("hi", done=True)])

    assert not any(isinstance(event, (ReasoningStart, ReasoningDelta, ReasoningEnd)) for event in events)


def test_tool_calls_are_emitted_inline() -> None:
    events = _collect(
        StreamTransformer(),
        [
            _chunk(tool_calls=[{"function": {"name": "weather", "arguments": {"location": "Paris"}}}]),
            _chunk("", done=True, done_reason="stop"),
        ],
    )

    assert [event.kind for event in events] == ["stream-start", "tool-call", "finish"]
    assert isinstance(events[1], ToolCall)
    assert events[1].input == {"location": "Paris"}


def test_terminal_chunk_residual_content_is_emitted_before_finish() -> None:
    events = _collect(StreamTransformer(), [_chunk("Hi", done=True, done_reason="length")])

    assert [event.kind for event in events] == ["stream-start", "text-start", "text-delta", "text-end", "finish"]
    assert events[2].delta == "Hi"
    assert events[-1].finish_reason == "length"


def test_chunks_after_terminal_chunk_are_ignored() -> None:
    transformer = StreamTransformer()
    transformer.process_chunk(_chunk("", done=True))

    assert transformer.process_chunk(_chunk("late")) == []


def test_missing_terminal_chunk_still_closes_runs_and_finishes() -> None:
    events = _collect(StreamTransformer(), ["garbage", _chunk("partial")])

    assert [event.kind for event in events] == ["stream-start", "text-start", "text-delta", "text-end", "finish"]
    assert events[-1] == Finish(finish_reason="unknown", usage=Usage())
