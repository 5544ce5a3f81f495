"""Repair and schema recovery for answers requested as JSON.

Local models asked for JSON regularly wrap it in a markdown fence, add a
trailing comma, write Python constants or single quotes, stop before the last
closing brace, or return numbers as strings. The helpers here turn such text
into a value that validates against the requested schema when that is
possible without inventing content.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Literal, Mapping

from jsonschema import validators
from jsonschema.exceptions import SchemaError

from .config import ObjectGenerationOptions

LOG = logging.getLogger(__name__)

RecoveryMethod = Literal["natural", "retry", "text_repair", "type_fix", "fallback"]

_CODE_FENCE_RE = re.compile(r"```(?:json|javascript|js)?\s*([\[{].*?[\]}])\s*```", re.IGNORECASE | re.DOTALL)
_JSONP_RE = re.compile(r"^[A-Za-z_$][\w$]*\s*\((.*)\)\s*;?$", re.DOTALL)
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
_SMART_SINGLE_QUOTE_RE = re.compile("[\u2018\u2019\u0060\u00b4]")
_SMART_DOUBLE_QUOTE_RE = re.compile("[\u201c\u201d]")
_SPECIAL_SPACE_RE = re.compile("[\u00a0\u2000-\u200a\u202f\u205f\u3000]")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_LEADING_COMMA_RE = re.compile(r"([{\[]\s*),")
_BARE_WORD_RE = re.compile(r"[A-Za-z_$][\w$]*")
_OUTER_JSON_RE = re.compile(r"\{.*\}|\[.*\]", re.DOTALL)

_PYTHON_CONSTANTS = {"None": "null", "True": "true", "False": "false"}
_CLOSERS = {"{": "}", "[": "]"}


def _string_end(text: str, start: int) -> tuple[int, bool]:
    """Index just past the string literal opened at `start`, and whether it was terminated."""
    quote = text[start]
    index = start + 1
    while index < len(text):
        char = text[index]
        if char == "\\":
            index += 2
            continue
        if char == quote:
            return index + 1, True
        index += 1
    return len(text), False


def _single_quoted_to_json(body: str) -> str:
    out = ['"']
    index = 0
    while index < len(body):
        char = body[index]
        if char == "\\" and index + 1 < len(body):
            escaped = body[index + 1]
            out.append("'" if escaped == "'" else "\\" + escaped)
            index += 2
            continue
        out.append('\\"' if char == '"' else char)
        index += 1
    out.append('"')
    return "".join(out)


def _rewrite_tokens(text: str) -> str:
    """Rewrite everything outside string literals into strict JSON tokens.

    Single-quoted strings become double-quoted, `//` comments and `...`
    placeholders are dropped, Python constants are mapped, bare object keys are
    quoted, an unterminated string is closed, and unclosed brackets are closed
    in nesting order.
    """
    out: list[str] = []
    open_brackets: list[str] = []
    previous = ""
    index = 0
    while index < len(text):
        char = text[index]
        if char in "\"'":
            end, terminated = _string_end(text, index)
            literal = text[index:end] if terminated else text[index:end] + char
            out.append(_single_quoted_to_json(literal[1:-1]) if char == "'" else literal)
            previous = '"'
            index = end
            continue
        if text.startswith("//", index):
            newline = text.find("\n", index)
            index = len(text) if newline == -1 else newline
            continue
        if text.startswith("...", index):
            index += 3
            continue
        word = _BARE_WORD_RE.match(text, index)
        if word is not None:
            token = word.group(0)
            lookahead = word.end()
            while lookahead < len(text) and text[lookahead].isspace():
                lookahead += 1
            if previous in ("{", ",") and text.startswith(":", lookahead):
                token = json.dumps(token)
            else:
                token = _PYTHON_CONSTANTS.get(token, token)
            out.append(token)
            previous = token[-1]
            index = word.end()
            continue
        if char in _CLOSERS:
            open_brackets.append(_CLOSERS[char])
        elif char in "}]" and open_brackets and open_brackets[-1] == char:
            open_brackets.pop()
        out.append(char)
        if not char.isspace():
            previous = char
        index += 1
    out.extend(reversed(open_brackets))
    return "".join(out)


def _repair_candidate(candidate: str) -> str | None:
    candidate = _JSONP_RE.sub(r"\1", candidate.strip())
    candidate = _BLOCK_COMMENT_RE.sub("", candidate)
    candidate = _SMART_SINGLE_QUOTE_RE.sub("'", candidate)
    candidate = _SMART_DOUBLE_QUOTE_RE.sub('"', candidate)
    candidate = _SPECIAL_SPACE_RE.sub(" ", candidate)
    candidate = _rewrite_tokens(candidate)
    candidate = _TRAILING_COMMA_RE.sub(r"\1", candidate)
    candidate = _LEADING_COMMA_RE.sub(r"\1", candidate)
    try:
        json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return candidate


def repair_json_text(text: str) -> str | None:
    """Return a strictly parseable rewrite of `text`, or `None` when it cannot be repaired."""
    stripped = text.strip()
    fenced = _CODE_FENCE_RE.search(stripped)
    repaired = _repair_candidate(fenced.group(1) if fenced else stripped)
    if repaired is not None:
        return repaired
    # Prose around the payload: retry on the outermost bracketed span.
    embedded = _OUTER_JSON_RE.search(stripped)
    if embedded is not None and embedded.group(0) != stripped:
        return _repair_candidate(embedded.group(0))
    return None


@dataclass(frozen=True)
class ParsedJson:
    value: Any
    repaired: bool


def parse_json_with_repair(text: str, *, repair: bool = True) -> ParsedJson | None:
    """Parse `text` as JSON, falling back to `repair_json_text` when allowed."""
    try:
        return ParsedJson(value=json.loads(text), repaired=False)
    except json.JSONDecodeError:
        if not repair:
            return None
    repaired = repair_json_text(text)
    if repaired is None:
        return None
    LOG.debug("repaired JSON answer chars=%s", len(text))
    return ParsedJson(value=json.loads(repaired), repaired=True)


def schema_errors(value: Any, schema: Mapping[str, Any]) -> list[str]:
    """Validation messages for `value`; empty when it validates.

    An unusable schema cannot reject anything and yields no errors.
    """
    validator_cls = validators.validator_for(schema)
    try:
        validator_cls.check_schema(schema)
    except SchemaError as exc:
        LOG.warning("response schema is not a valid JSON schema, skipping validation: %s", exc.message)
        return []
    messages = []
    for error in validator_cls(schema).iter_errors(value):
        location = "/".join(str(part) for part in error.absolute_path) or "$"
        messages.append(f"{location}: {error.message}")
    return messages


def _schema_type(schema: Mapping[str, Any]) -> Any:
    kind = schema.get("type")
    if isinstance(kind, list):
        return next((item for item in kind if item != "null"), None)
    return kind


def fallback_value(schema: Mapping[str, Any]) -> Any:
    """Neutral placeholder for one schema node."""
    if "default" in schema:
        return schema["default"]
    enum = schema.get("enum")
    if isinstance(enum, list) and enum:
        return enum[0]
    kind = _schema_type(schema)
    if kind == "string":
        return ""
    if kind in ("number", "integer"):
        return 0
    if kind == "boolean":
        return False
    if kind == "array":
        return []
    if kind == "object":
        return fallback_values(schema)
    return None


def fallback_values(schema: Mapping[str, Any]) -> dict[str, Any]:
    """Placeholders for every declared property of an object schema."""
    properties = schema.get("properties")
    if not isinstance(properties, Mapping):
        return {}
    return {name: fallback_value(prop) for name, prop in properties.items() if isinstance(prop, Mapping)}


def _coerce_number(value: Any, *, integer: bool) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return 0
    if isinstance(value, float) and integer and value.is_integer():
        return int(value)
    if isinstance(value, (int, float)):
        return value
    return 0


def _coerce(value: Any, schema: Mapping[str, Any]) -> Any:
    coerced = _coerce_type(value, schema)
    enum = schema.get("enum")
    if isinstance(enum, list) and enum and coerced not in enum:
        return enum[0]
    return coerced


def _coerce_type(value: Any, schema: Mapping[str, Any]) -> Any:
    kind = _schema_type(schema)
    if kind == "string":
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        return json.dumps(value) if isinstance(value, (bool, list, dict)) else str(value)
    if kind in ("number", "integer"):
        return _coerce_number(value, integer=kind == "integer")
    if kind == "boolean":
        if isinstance(value, str):
            return value.strip().lower() == "true"
        return bool(value)
    if kind == "array":
        return value if isinstance(value, list) else []
    if kind == "object" and isinstance(schema.get("properties"), Mapping):
        return fix_type_mismatches(value, schema) if isinstance(value, dict) else fallback_values(schema)
    return value


def fix_type_mismatches(value: dict[str, Any], schema: Mapping[str, Any]) -> dict[str, Any]:
    """Coerce present properties to their declared types; undeclared keys are kept."""
    properties = schema.get("properties")
    if not isinstance(properties, Mapping):
        return dict(value)
    fixed = dict(value)
    for name, prop in properties.items():
        if name in fixed and isinstance(prop, Mapping):
            fixed[name] = _coerce(fixed[name], prop)
    return fixed


def _fill_required(value: dict[str, Any], schema: Mapping[str, Any]) -> dict[str, Any]:
    properties = schema.get("properties")
    properties = properties if isinstance(properties, Mapping) else {}
    filled = dict(value)
    for name in schema.get("required") or ():
        if name not in filled:
            prop = properties.get(name)
            filled[name] = fallback_value(prop) if isinstance(prop, Mapping) else None
    return filled


@dataclass(frozen=True)
class ObjectRecovery:
    success: bool
    value: Any = None
    method: RecoveryMethod | None = None
    error: str | None = None


def recover_object(
    text: str,
    schema: Mapping[str, Any] | None,
    options: ObjectGenerationOptions,
) -> ObjectRecovery:
    """Parse and validate one JSON answer, repairing what can be repaired.

    Without a schema any JSON value is accepted. With a schema a failing value
    gets its property types coerced and missing required properties filled,
    then must validate.
    """
    parsed = parse_json_with_repair(text, repair=options.enable_text_repair)
    if parsed is None:
        return ObjectRecovery(success=False, error="answer is not valid JSON and could not be repaired")
    method: RecoveryMethod = "text_repair" if parsed.repaired else "natural"
    if schema is None:
        return ObjectRecovery(success=True, value=parsed.value, method=method)

    errors = schema_errors(parsed.value, schema)
    if not errors:
        return ObjectRecovery(success=True, value=parsed.value, method=method)
    if not options.attempt_recovery or not isinstance(parsed.value, dict):
        return ObjectRecovery(success=False, error=errors[0])

    recovered = parsed.value
    if options.fix_type_mismatches:
        recovered = fix_type_mismatches(recovered, schema)
    if options.use_fallbacks:
        recovered = _fill_required(recovered, schema)
    remaining = schema_errors(recovered, schema)
    if remaining:
        return ObjectRecovery(success=False, error=remaining[0])
    LOG.info("recovered JSON answer after schema mismatch: %s", errors[0])
    return ObjectRecovery(success=True, value=recovered, method="type_fix")
