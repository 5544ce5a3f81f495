import asyncio

from ollamakoppler.config import EnhancedOptions
from ollamakoppler.errors import OllamaError
from ollamakoppler.generation_types import (
    Finish,
    GenerationRequest,
    GenerationResult,
    NormalizedMessage,
    PortableParams,
    TextDelta,
    TextPart,
    ToolCall,
    ToolDefinition,
    ToolResult,
    ToolResultPart,
    Usage,
)
from ollamakoppler.synthesis import (
    ResponseSynthesizer,
    SynthesisState,
    build_synthesis_prompt,
    should_synthesize,
)


class _FakeModel:
    def __init__(self, outcomes: list) -> None:
        self.outcomes = list(outcomes)
        self.requests: list[GenerationRequest] = []

    async def do_generate(self, request: GenerationRequest, *, abort_signal=None) -> GenerationResult:
        self.requests.append(request)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return GenerationResult(
            content=(TextPart(outcome),),
            finish_reason="stop",
            usage=Usage(input_tokens=10, output_tokens=len(outcome), total_tokens=10 + len(outcome)),
        )


def _request() -> GenerationRequest:
    return GenerationRequest(
        messages=(NormalizedMessage.text("user", "What is the weather in Paris?"),),
        tools=(ToolDefinition(name="weather"),),
        params=PortableParams(temperature=0.4),
        native_params={"num_ctx": 2048},
    )


def test_should_synthesize_threshold() -> None:
    assert should_synthesize(1, "", 10) is True
    assert should_synthesize(1, "   short   ", 10) is True
    assert should_synthesize(1, "long enough text", 10) is False
    assert should_synthesize(0, "", 10) is False
    assert should_synthesize(2, None, 10) is True


def test_prompt_lists_history_and_turn_tool_results() -> None:
    messages = (
        NormalizedMessage.text("user", "Compare Paris and Rome"),
        NormalizedMessage(role="tool", parts=(ToolResultPart(id="c0", name="weather", output={"city": "Rome"}),)),
    )

    prompt = build_synthesis_prompt(
        messages,
        [ToolResultPart(id="c1", name="weather", output={"city": "Paris", "temp": 21})],
        "Please answer.",
    )

    assert prompt == (
        "Original request: Compare Paris and Rome\n\n"
        "Tool results:\n"
        'weather: {"city": "Rome"}\n'
        'weather: {"city": "Paris", "temp": 21}\n\n'
        "Please answer."
    )


def test_prompt_falls_back_when_no_user_text() -> None:
    prompt = build_synthesis_prompt([], [], "Go.")

    assert prompt.startswith("Original request: the user question\n\n")


def test_synthesis_request_drops_tools_and_keeps_parameters() -> None:
    synthesizer = ResponseSynthesizer(_FakeModel([]), EnhancedOptions(synthesis_prompt="Explain."))

    request = synthesizer.build_request(_request(), [])

    assert request.tools is None
    assert request.params == PortableParams(temperature=0.4)
    assert request.native_params == {"num_ctx": 2048}
    assert request.messages[:-1] == _request().messages
    assert request.messages[-1].role == "user"
    assert request.messages[-1].parts[0].text.endswith("Explain.")


def test_synthesize_retries_failures_and_short_answers() -> None:
    model = _FakeModel([OllamaError("boom"), "It is sunny and 21C in Paris."])
    synthesizer = ResponseSynthesizer(model, EnhancedOptions(max_synthesis_attempts=3))

    outcome = asyncio.run(synthesizer.synthesize(_request(), []))

    assert outcome is not None
    assert outcome.text == "It is sunny and 21C in Paris."
    assert outcome.attempts == 2
    assert len(model.requests) == 2


def test_synthesize_gives_up_after_max_attempts() -> None:
    model = _FakeModel(["ok", "meh", "never used"])
    synthesizer = ResponseSynthesizer(model, EnhancedOptions(max_synthesis_attempts=2))

    outcome = asyncio.run(synthesizer.synthesize(_request(), []))

    assert outcome is None
    assert len(model.requests) == 2


def test_state_tracks_text_tools_and_finish() -> None:
    state = SynthesisState()

    state.observe(ToolCall(id="c1", name="weather", input={"location": "Paris"}))
    state.observe(ToolResult(id="c1", name="weather", output={"temp": 21}))
    state.observe(TextDelta(id="t", delta="  ok "))
    state.observe(Finish(finish_reason="stop", usage=Usage()))

    assert [call.name for call in state.tool_calls] == ["weather"]
    assert state.tool_results[0].output == {"temp": 21}
    assert state.accumulated_text_length == 2
    assert state.finished is True
    assert state.needs_synthesis(10) is True
    state.applied = True
    assert state.needs_synthesis(10) is False
