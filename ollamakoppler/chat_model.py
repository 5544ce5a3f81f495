"""Chat model handle wiring translation, backend calls, and normalization."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import replace
from typing import Any, AsyncGenerator

import httpx

from .backend import BackendClient
from .cancellation import aclose_quietly, iterate_abortable, run_abortable
from .config import ChatSettings
from .errors import OllamaError
from .generation_types import GenerationRequest, GenerationResult, StreamEvent, TextPart, Usage
from .object_reliability import RecoveryMethod, fallback_values, recover_object, schema_errors
from .request_translator import BackendCall, RequestTranslator
from .response_normalizer import normalize_response
from .stream_transformer import StreamTransformer

LOG = logging.getLogger(__name__)


class OllamaChatModel:
    """One chat model of one backend."""

    def __init__(self, model_id: str, client: BackendClient, settings: ChatSettings | None = None) -> None:
        self.model_id = model_id
        self.client = client
        self.settings = settings or ChatSettings()
        self.translator = RequestTranslator(model_id, self.settings)

    @property
    def provider(self) -> str:
        return "ollama.chat"

    def translate(self, request: GenerationRequest) -> BackendCall:
        return self.translator.translate(request)

    async def do_generate(
        self,
        request: GenerationRequest,
        *,
        abort_signal: asyncio.Event | None = None,
    ) -> GenerationResult:
        """Run one blocking chat call and normalize the response.

        JSON answers are parsed, repaired and validated against the requested
        schema, with retries, unless `ChatSettings.object_generation` is off.
        """
        call = self.translate(request)
        body = call.payload(stream=False)
        response_format = request.response_format
        if response_format is not None and response_format.type == "json" and self.settings.object_generation.enabled:
            return await self._generate_object(call, body, response_format.schema, abort_signal)
        return await self._generate_once(call, body, abort_signal)

    async def _generate_once(
        self,
        call: BackendCall,
        body: dict[str, Any],
        abort_signal: asyncio.Event | None,
    ) -> GenerationResult:
        started = time.monotonic()
        try:
            response = await run_abortable(self.client.chat(body), abort_signal)
        except httpx.HTTPError as exc:
            raise OllamaError(f"backend request failed: {exc}") from exc
        LOG.debug(
            "chat completed model=%s elapsed=%.3fs done_reason=%s",
            self.model_id,
            time.monotonic() - started,
            response.get("done_reason"),
        )
        return normalize_response(
            response,
            reasoning_enabled=self.settings.reasoning,
            warnings=call.warnings,
            request_body=body,
        )

    async def _generate_object(
        self,
        call: BackendCall,
        body: dict[str, Any],
        schema: dict[str, Any] | None,
        abort_signal: asyncio.Event | None,
    ) -> GenerationResult:
        # Backend failures propagate; only unusable answers are retried.
        options = self.settings.object_generation
        errors: list[str] = []
        usage = Usage()
        last: GenerationResult | None = None

        for attempt in range(1, options.max_retries + 1):
            result = await self._generate_once(call, body, abort_signal)
            usage = usage + result.usage
            last = result
            if result.tool_calls:
                return replace(result, usage=usage)
            if not result.text.strip():
                errors.append(f"attempt {attempt}: empty answer")
                continue

            recovery = recover_object(result.text, schema, options)
            if recovery.success:
                method: RecoveryMethod = recovery.method or "natural"
                if method == "natural" and attempt > 1:
                    method = "retry"
                return _object_result(result, recovery.value, method, attempt, errors, usage)
            errors.append(f"attempt {attempt}: {recovery.error}")
            LOG.warning(
                "JSON answer rejected model=%s attempt=%s/%s error=%s",
                self.model_id,
                attempt,
                options.max_retries,
                recovery.error,
            )

        if options.use_fallbacks and schema is not None and last is not None:
            fallback = fallback_values(schema)
            if not schema_errors(fallback, schema):
                LOG.warning("using schema fallback values model=%s errors=%s", self.model_id, errors)
                return _object_result(last, fallback, "fallback", options.max_retries, errors, usage)

        raise OllamaError(f"JSON generation failed after {options.max_retries} attempts: {'; '.join(errors)}")

    def do_stream(
        self,
        request: GenerationRequest,
        *,
        abort_signal: asyncio.Event | None = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Start a streaming chat call.

        The request is translated immediately so configuration errors surface
        here, before any backend traffic. Iterating the result drives the call.
        """
        call = self.translate(request)
        return self._stream_events(call, abort_signal)

    async def _stream_events(
        self,
        call: BackendCall,
        abort_signal: asyncio.Event | None,
    ) -> AsyncGenerator[StreamEvent, None]:
        trace_id = uuid.uuid4().hex[:12]
        transformer = StreamTransformer(reasoning_enabled=self.settings.reasoning, warnings=call.warnings)
        chunks = iterate_abortable(self.client.stream_chat(call.payload(stream=True), trace_id=trace_id), abort_signal)
        try:
            async for event in transformer.transform(chunks):
                yield event
        except httpx.HTTPError as exc:
            raise OllamaError(f"backend stream failed: {exc}") from exc
        finally:
            await aclose_quietly(chunks, label=f"chat stream trace={trace_id}")


def _object_result(
    result: GenerationResult,
    value: Any,
    method: RecoveryMethod,
    attempts: int,
    errors: list[str],
    usage: Usage,
) -> GenerationResult:
    """Rebuild `result` around an accepted JSON value; untouched answers keep their original text."""
    text = result.text if method in ("natural", "retry") else json.dumps(value, ensure_ascii=False)
    content = tuple(part for part in result.content if not isinstance(part, TextPart)) + (TextPart(text),)
    report: dict[str, Any] = {"recovery_method": method, "attempts": attempts}
    if errors:
        report["errors"] = list(errors)
    metadata = dict(result.provider_metadata)
    metadata["ollama"] = {**metadata.get("ollama", {}), "object_generation": report}
    return replace(result, content=content, usage=usage, provider_metadata=metadata)
