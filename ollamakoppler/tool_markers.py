"""Inline marker grammar for tool history.

The backend has no message role for tool calls or tool results in the
conversation history, so both are re-encoded as text markers.

Grammar, version 1::

    tool-call-marker   = "[Tool Call: " name "(" compact-json(input) ")]"
    tool-result-marker = "[Tool Result for " name "]: " payload
    payload            = output if output is a string, else compact-json(output)

`compact-json` is JSON with sorted keys, `,`/`:` separators and non-ASCII
characters preserved. Changing any of this requires bumping
`MARKER_GRAMMAR_VERSION`.
"""

from __future__ import annotations

from typing import Any

from .json_helpers import stable_json

MARKER_GRAMMAR_VERSION = 1


def format_tool_call_marker(name: str, tool_input: Any) -> str:
    """Render one tool call as an inline history marker."""
    return f"[Tool Call: {name}({stable_json(tool_input if tool_input is not None else {})})]"


def format_tool_result_marker(name: str, output: Any) -> str:
    """Render one tool result as an inline history marker."""
    payload = output if isinstance(output, str) else stable_json(output)
    return f"[Tool Result for {name}]: {payload}"
