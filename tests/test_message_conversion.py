import base64

import pytest

from ollamakoppler.errors import ConfigurationError
from ollamakoppler.generation_types import (
    ImagePart,
    NormalizedMessage,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from ollamakoppler.message_conversion import (
    convert_to_backend_messages,
    history_tool_results,
    image_reference,
    latest_user_text,
)
from ollamakoppler.tool_markers import MARKER_GRAMMAR_VERSION, format_tool_call_marker, format_tool_result_marker


def test_system_and_user_text_are_newline_joined() -> None:
    messages = [
        NormalizedMessage(role="system", parts=(TextPart("be brief"), TextPart("be kind"))),
        NormalizedMessage(role="user", parts=(TextPart("hello"), TextPart("world"))),
    ]

    converted = convert_to_backend_messages(messages)

    assert converted == [
        {"role": "system", "content": "be brief\nbe kind"},
        {"role": "user", "content": "hello\nworld"},
    ]


def test_user_images_are_converted_and_omitted_when_absent() -> None:
    raw = b"\x89PNG"
    messages = [
        NormalizedMessage(
            role="user",
            parts=(
                TextPart("what is this?"),
                ImagePart("https://example.com/cat.png"),
                ImagePart("data:image/png;base64,QUJD"),
                ImagePart(raw),
            ),
        ),
        NormalizedMessage.text("user", "no images here"),
    ]

    converted = convert_to_backend_messages(messages)

    assert converted[0]["images"] == [
        "https://example.com/cat.png",
        "QUJD",
        base64.b64encode(raw).decode("ascii"),
    ]
    assert "images" not in converted[1]


def test_image_reference_passes_bare_base64_through() -> None:
    assert image_reference("QUJD") == "QUJD"


def test_assistant_text_reasoning_and_tool_call_markers() -> None:
    message = NormalizedMessage(
        role="assistant",
        parts=(
            TextPart("Let me "),
            TextPart("check."),
            ReasoningPart("user wants weather"),
            ToolCallPart(id="call_1", name="weather", input={"location": "Paris", "days": 2}),
        ),
    )

    converted = convert_to_backend_messages([message])

    assert converted == [
        {
            "role": "assistant",
            "content": 'Let me check.\nuser wants weather\n[Tool Call: weather({"days":2,"location":"Paris"})]',
        }
    ]


def test_assistant_with_only_tool_calls_has_no_leading_newline() -> None:
    message = NormalizedMessage(
        role="assistant",
        parts=(
            ToolCallPart(id="a", name="one", input={}),
            ToolCallPart(id="b", name="two", input={"x": 1}),
        ),
    )

    converted = convert_to_backend_messages([message])

    assert converted[0]["content"] == '[Tool Call: one({})]\n[Tool Call: two({"x":1})]'


def test_tool_messages_become_user_messages_with_result_markers() -> None:
    message = NormalizedMessage(
        role="tool",
        parts=(
            ToolResultPart(id="call_1", name="weather", output={"temp": 20, "unit": "C"}),
            ToolResultPart(id="call_2", name="echo", output="plain text"),
        ),
    )

    converted = convert_to_backend_messages([message])

    assert converted == [
        {
            "role": "user",
            "content": '[Tool Result for weather]: {"temp":20,"unit":"C"}\n[Tool Result for echo]: plain text',
        }
    ]


def test_unknown_role_raises_configuration_error() -> None:
    message = NormalizedMessage(role="critic", parts=(TextPart("hm"),))  # type: ignore[arg-type]

    with pytest.raises(ConfigurationError, match="Unsupported message role"):
        convert_to_backend_messages([message])


def test_markers_preserve_non_ascii_text() -> None:
    assert format_tool_call_marker("translate", {"text": "Grüße"}) == '[Tool Call: translate({"text":"Grüße"})]'
    assert format_tool_result_marker("translate", ["日本"]) == '[Tool Result for translate]: ["日本"]'


def test_latest_user_text_and_history_tool_results() -> None:
    result = ToolResultPart(id="call_1", name="weather", output={"temp": 20})
    messages = [
        NormalizedMessage.text("user", "first question"),
        NormalizedMessage(role="tool", parts=(result,)),
        NormalizedMessage.text("assistant", "ok"),
        NormalizedMessage.text("user", "second question"),
    ]

    assert latest_user_text(messages) == "second question"
    assert history_tool_results(messages) == [result]
    assert latest_user_text([NormalizedMessage.text("system", "x")]) == ""


def test_marker_grammar_is_stable_under_key_order() -> None:
    first = format_tool_call_marker("search", {"query": "paris", "limit": 3, "filters": {"b": 1, "a": 2}})
    second = format_tool_call_marker("search", {"filters": {"a": 2, "b": 1}, "limit": 3, "query": "paris"})

    assert MARKER_GRAMMAR_VERSION == 1
    assert first == second == '[Tool Call: search({"filters":{"a":2,"b":1},"limit":3,"query":"paris"})]'
    assert format_tool_call_marker("ping", None) == "[Tool Call: ping({})]"
