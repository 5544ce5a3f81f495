"""Execution of host-supplied tool callables."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Mapping
from typing import Any, AsyncGenerator, AsyncIterable, Iterable

from pydantic import BaseModel

from .cancellation import aclose_quietly
from .generation_types import (
    StreamEvent,
    ToolCall,
    ToolCallPart,
    ToolDefinition,
    ToolResult,
    ToolResultPart,
    find_tool,
)
from .json_helpers import to_bounded_json

LOG = logging.getLogger(__name__)

# Declared parameter name -> spellings models commonly use instead.
DEFAULT_PARAMETER_ALIASES: dict[str, tuple[str, ...]] = {
    "location": ("city", "q", "place", "location_name", "loc"),
    "unit": ("temperature_unit", "temp_unit", "scale"),
    "query": ("search", "q", "question"),
    "expression": ("math", "calculation", "formula"),
    "flightNumber": ("flight_number", "flight", "flight_id"),
    "date": ("time", "datetime", "timestamp"),
    "amount": ("value", "quantity", "number"),
    "currency": ("currency_code", "code"),
}


def declared_parameters(tool: ToolDefinition) -> tuple[str, ...]:
    schema = tool.input_schema
    if isinstance(schema, type) and issubclass(schema, BaseModel):
        return tuple(schema.model_fields)
    if isinstance(schema, Mapping) and isinstance(schema.get("properties"), Mapping):
        return tuple(schema["properties"])
    return ()


def normalize_tool_arguments(
    arguments: Mapping[str, Any],
    declared: Iterable[str],
    aliases: Mapping[str, tuple[str, ...]] = DEFAULT_PARAMETER_ALIASES,
) -> dict[str, Any]:
    """Move common alias spellings onto the parameter names a tool declares.

    A declared parameter that is already present is left alone, and so is an
    alias that is itself a declared parameter. Everything else passes through.
    """
    declared_names = tuple(declared)
    normalized = dict(arguments)
    for name in declared_names:
        if normalized.get(name) is not None:
            continue
        for alias in aliases.get(name, ()):
            if alias in declared_names or normalized.get(alias) is None:
                continue
            normalized[name] = normalized.pop(alias)
            break
    return normalized


async def execute_tool_call(
    call: ToolCallPart,
    tools: Iterable[ToolDefinition] | None,
    *,
    normalize_arguments: bool = True,
) -> ToolResultPart | None:
    """Run one tool call.

    Returns `None` when the tool exists but has no executor; such calls are
    left for the host to answer. Executor failures become error outputs.
    """
    tool = find_tool(tools, call.name)
    if tool is None:
        LOG.warning("model called unknown tool name=%s id=%s", call.name, call.id)
        return ToolResultPart(
            id=call.id,
            name=call.name,
            output={"error": f"Unknown tool: {call.name}", "is_error": True},
        )
    if tool.execute is None:
        return None

    arguments = call.input
    if normalize_arguments:
        arguments = normalize_tool_arguments(call.input, declared_parameters(tool))
        if arguments != call.input:
            LOG.debug("tool arguments renamed name=%s id=%s keys=%s", call.name, call.id, sorted(arguments))

    started = time.monotonic()
    try:
        output = tool.execute(arguments)
        if inspect.isawaitable(output):
            output = await output
    except Exception as exc:
        LOG.warning("tool failed name=%s id=%s error=%s", call.name, call.id, exc)
        return ToolResultPart(id=call.id, name=call.name, output={"error": str(exc), "is_error": True})

    LOG.debug(
        "tool finished name=%s id=%s elapsed=%.3fs output=%s",
        call.name,
        call.id,
        time.monotonic() - started,
        to_bounded_json(output),
    )
    return ToolResultPart(id=call.id, name=call.name, output=output)


async def execute_tool_calls(
    calls: Iterable[ToolCallPart],
    tools: Iterable[ToolDefinition] | None,
    *,
    max_concurrency: int = 4,
    normalize_arguments: bool = True,
) -> list[ToolResultPart]:
    """Execute tool calls with bounded concurrency, keeping call order."""
    tool_list = list(tools or ())
    semaphore = asyncio.Semaphore(max(1, max_concurrency))

    async def run_one(call: ToolCallPart) -> ToolResultPart | None:
        async with semaphore:
            return await execute_tool_call(call, tool_list, normalize_arguments=normalize_arguments)

    results = await asyncio.gather(*(run_one(call) for call in calls))
    return [result for result in results if result is not None]


async def stream_tool_results(
    events: AsyncIterable[StreamEvent],
    tools: Iterable[ToolDefinition] | None,
    *,
    normalize_arguments: bool = True,
) -> AsyncGenerator[StreamEvent, None]:
    """Forward stream events and follow each executable `ToolCall` with its `ToolResult`."""
    tool_list = list(tools or ())
    try:
        async for event in events:
            yield event
            if not isinstance(event, ToolCall):
                continue
            call = ToolCallPart(id=event.id, name=event.name, input=event.input)
            result = await execute_tool_call(call, tool_list, normalize_arguments=normalize_arguments)
            if result is not None:
                yield ToolResult(id=result.id, name=result.name, output=result.output)
    finally:
        await aclose_quietly(events, label="tool stream source")
