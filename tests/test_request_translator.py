import pytest
from pydantic import BaseModel

from ollamakoppler.config import ChatSettings
from ollamakoppler.errors import ConfigurationError
from ollamakoppler.generation_types import (
    GenerationRequest,
    NormalizedMessage,
    PortableParams,
    ResponseFormat,
    ToolDefinition,
)
from ollamakoppler.request_translator import (
    RequestTranslator,
    build_options,
    clean_schema_for_backend,
    empty_object_schema,
    resolve_tool_schema,
)


def _request(**overrides: object) -> GenerationRequest:
    raw: dict[str, object] = {"messages": (NormalizedMessage.text("user", "hi"),)}
    raw.update(overrides)
    return GenerationRequest(**raw)  # type: ignore[arg-type]


class _WeatherInput(BaseModel):
    location: str


def test_portable_params_are_mapped_and_none_dropped() -> None:
    params = PortableParams(temperature=0.2, max_output_tokens=128, stop_sequences=("END",), top_k=None)

    options = build_options(params)

    assert options == {"temperature": 0.2, "num_predict": 128, "stop": ["END"]}


def test_native_params_win_over_model_options_and_portable_params() -> None:
    translator = RequestTranslator("llama3.2", ChatSettings(options={"temperature": 0.5, "num_ctx": 4096}))
    request = _request(
        params=PortableParams(temperature=0.1, seed=7),
        native_params={"temperature": 0.9, "mirostat": 2},
    )

    call = translator.translate(request)

    assert call.options == {"temperature": 0.9, "seed": 7, "num_ctx": 4096, "mirostat": 2}


def test_model_options_win_over_portable_params() -> None:
    translator = RequestTranslator("llama3.2", ChatSettings(options={"num_predict": 64}))

    call = translator.translate(_request(params=PortableParams(max_output_tokens=512)))

    assert call.options == {"num_predict": 64}


def test_payload_contains_model_and_omits_absent_tools_and_format() -> None:
    call = RequestTranslator("llama3.2", ChatSettings()).translate(_request())

    payload = call.payload(stream=True)

    assert payload == {
        "model": "llama3.2",
        "messages": [{"role": "user", "content": "hi"}],
        "options": {},
        "stream": True,
    }


def test_tools_are_converted_to_function_definitions() -> None:
    tool = ToolDefinition(
        name="weather",
        description="Get the weather",
        input_schema={"type": "object", "properties": {"location": {"type": "string"}}},
    )

    call = RequestTranslator("m", ChatSettings()).translate(_request(tools=(tool,)))

    assert call.tools == [
        {
            "type": "function",
            "function": {
                "name": "weather",
                "parameters": {"type": "object", "properties": {"location": {"type": "string"}}},
                "description": "Get the weather",
            },
        }
    ]
    assert call.warnings == ()


def test_tool_without_schema_gets_empty_schema_silently() -> None:
    schema, warning = resolve_tool_schema(ToolDefinition(name="ping"))

    assert schema == empty_object_schema()
    assert warning is None


def test_pydantic_model_schema_is_rendered() -> None:
    schema, warning = resolve_tool_schema(ToolDefinition(name="weather", input_schema=_WeatherInput))

    assert warning is None
    assert schema["properties"]["location"]["type"] == "string"
    assert schema["required"] == ["location"]


def test_unrecognized_schema_falls_back_with_warning() -> None:
    tools = (
        ToolDefinition(name="validator", input_schema=object()),
        ToolDefinition(name="odd", input_schema={"description": "no type"}),
    )

    call = RequestTranslator("m", ChatSettings()).translate(_request(tools=tools))

    assert [tool["function"]["parameters"] for tool in call.tools or []] == [
        {"type": "object", "properties": {}, "additionalProperties": False},
        {"type": "object", "properties": {}, "additionalProperties": False},
    ]
    assert [warning.type for warning in call.warnings] == ["compatibility", "compatibility"]
    assert "validator" in call.warnings[0].message


def test_provider_tools_are_rejected() -> None:
    tool = ToolDefinition(name="web_search", kind="provider")

    with pytest.raises(ConfigurationError, match="Provider-defined tool"):
        RequestTranslator("m", ChatSettings()).translate(_request(tools=(tool,)))


def test_json_without_schema_sends_json_format() -> None:
    call = RequestTranslator("m", ChatSettings()).translate(_request(response_format=ResponseFormat(type="json")))

    assert call.format == "json"


def test_json_schema_requires_structured_outputs() -> None:
    request = _request(response_format=ResponseFormat(type="json", schema={"type": "object"}))

    with pytest.raises(ConfigurationError, match="structured_outputs"):
        RequestTranslator("m", ChatSettings()).translate(request)


def test_json_schema_is_cleaned_for_structured_outputs() -> None:
    schema = {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "properties": {
            "email": {"type": "string", "format": "email", "pattern": "^.+@.+$"},
            "code": {"type": "string", "pattern": "^[A-Z]{3}$"},
            "items": {
                "type": "array",
                "items": {"type": "string", "pattern": "x" * 60},
            },
        },
    }
    request = _request(response_format=ResponseFormat(type="json", schema=schema))

    call = RequestTranslator("m", ChatSettings(structured_outputs=True)).translate(request)

    assert "$schema" not in call.format
    assert call.format["properties"]["email"] == {"type": "string", "format": "email"}
    assert call.format["properties"]["code"]["pattern"] == "^[A-Z]{3}$"
    assert "pattern" not in call.format["properties"]["items"]["items"]
    # The caller's schema is left untouched.
    assert schema["properties"]["email"]["pattern"] == "^.+@.+$"


def test_clean_schema_handles_lists_of_subschemas() -> None:
    cleaned = clean_schema_for_backend({"anyOf": [{"type": "string", "pattern": "y" * 51}, {"type": "null"}]})

    assert cleaned == {"anyOf": [{"type": "string"}, {"type": "null"}]}
