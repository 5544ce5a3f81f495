"""Client wrapper for the Ollama HTTP API."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncGenerator

import httpx

from .config import BackendConfig
from .errors import OllamaError
from .json_helpers import to_bounded_json

LOG = logging.getLogger(__name__)

CHAT_PATH = "/api/chat"
EMBED_PATH = "/api/embed"


def _error_message(response: httpx.Response) -> str:
    """Extract the backend's `{"error": ...}` message from a failed response."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    text = response.text.strip()
    return text or f"backend request failed with HTTP {response.status_code}"


class BackendClient:
    """Thin async HTTP client for one Ollama endpoint."""

    def __init__(
        self,
        cfg: BackendConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Create a backend client from immutable connection settings."""
        self.cfg = cfg
        self._base_url = cfg.base_url.rstrip("/")
        self._timeout = httpx.Timeout(
            connect=cfg.connect_timeout_seconds,
            read=cfg.read_timeout_seconds,
            write=120.0,
            pool=10.0,
        )
        self._transport = transport
        self._client = self._build_client()

    async def close(self) -> None:
        """Close underlying HTTP resources."""
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        """Build request headers; configured headers are passed through unchanged."""
        headers = {"Content-Type": "application/json"}
        if self.cfg.api_key:
            headers["Authorization"] = f"Bearer {self.cfg.api_key}"
        headers.update(self.cfg.headers)
        return headers

    def _build_client(self) -> httpx.AsyncClient:
        """Create a fresh backend HTTP client instance."""
        return httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout, transport=self._transport)

    def _connect_retries(self) -> int:
        """Return configured number of retries after the first failed request."""
        return int(self.cfg.connect_retries)

    def _retry_interval_seconds(self) -> float:
        """Return configured wait time between retries in seconds."""
        return max(0, int(self.cfg.retry_interval_ms)) / 1000.0

    @staticmethod
    def _is_retryable_connect_error(exc: Exception) -> bool:
        """Decide whether one backend error should trigger a retry."""
        if isinstance(exc, httpx.TransportError):
            return True
        if isinstance(exc, OllamaError) and exc.status_code is not None:
            return exc.status_code == 429 or exc.status_code >= 500
        return False

    def _can_retry(self, exc: Exception, attempt: int) -> bool:
        retries = self._connect_retries()
        return self._is_retryable_connect_error(exc) and (retries < 0 or attempt <= retries)

    @staticmethod
    async def _raise_for_backend_status(response: httpx.Response) -> None:
        """Turn non-2xx backend responses into `OllamaError`."""
        if response.is_success:
            return
        await response.aread()
        raise OllamaError(_error_message(response), status_code=response.status_code)

    async def _post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST one JSON body with connect retries and return the decoded response."""
        retry_delay = self._retry_interval_seconds()
        attempt = 1
        while True:
            try:
                LOG.debug(
                    "forwarding backend request method=POST path=%s attempt=%s payload=%s",
                    path,
                    attempt,
                    to_bounded_json(payload),
                )
                response = await self._client.post(path, headers=self._headers(), json=payload)
                await self._raise_for_backend_status(response)
                try:
                    body = response.json()
                except ValueError as exc:
                    raise OllamaError(f"backend returned invalid JSON for {path}") from exc
                if not isinstance(body, dict):
                    raise OllamaError(f"backend returned a non-object body for {path}")
                return body
            except Exception as exc:
                if not self._can_retry(exc, attempt):
                    raise
                LOG.warning(
                    "backend request failed path=%s attempt=%s retries=%s retry_in=%.3fs error=%s",
                    path,
                    attempt,
                    self._connect_retries(),
                    retry_delay,
                    exc,
                )
                if retry_delay > 0:
                    await asyncio.sleep(retry_delay)
                attempt += 1

    async def chat(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Run one blocking chat completion."""
        req_payload = dict(payload)
        req_payload["stream"] = False
        return await self._post_json(CHAT_PATH, req_payload)

    async def embed(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Run one embedding call."""
        return await self._post_json(EMBED_PATH, payload)

    async def stream_chat(
        self,
        payload: dict[str, Any],
        *,
        trace_id: str | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Run a streaming chat completion and yield decoded NDJSON chunks."""
        req_payload = dict(payload)
        req_payload["stream"] = True
        started = time.monotonic()
        tag = trace_id or "-"
        LOG.debug(
            "backend stream start trace=%s method=POST path=%s payload=%s",
            tag,
            CHAT_PATH,
            to_bounded_json(req_payload),
        )
        retry_delay = self._retry_interval_seconds()

        attempt = 1
        while True:
            stream_client = self._build_client()
            response: httpx.Response | None = None
            chunk_count = 0
            try:
                headers = self._headers()
                headers["Connection"] = "close"
                response = await stream_client.send(
                    stream_client.build_request("POST", CHAT_PATH, headers=headers, json=req_payload),
                    stream=True,
                )
                await self._raise_for_backend_status(response)
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError as exc:
                        raise OllamaError(f"malformed stream chunk: {line[:200]}") from exc
                    if isinstance(chunk, dict) and chunk.get("error"):
                        raise OllamaError(str(chunk["error"]))
                    chunk_count += 1
                    yield chunk
                    if isinstance(chunk, dict) and chunk.get("done"):
                        LOG.debug(
                            "backend stream done trace=%s elapsed=%.3fs chunks=%s",
                            tag,
                            time.monotonic() - started,
                            chunk_count,
                        )
                        return
                return
            except asyncio.CancelledError:
                LOG.debug(
                    "backend stream cancelled trace=%s elapsed=%.3fs chunks=%s",
                    tag,
                    time.monotonic() - started,
                    chunk_count,
                )
                raise
            except Exception as exc:
                if chunk_count > 0 or not self._can_retry(exc, attempt):
                    raise
                LOG.warning(
                    "backend stream connect failed trace=%s attempt=%s retries=%s retry_in=%.3fs error=%s",
                    tag,
                    attempt,
                    self._connect_retries(),
                    retry_delay,
                    exc,
                )
                if retry_delay > 0:
                    await asyncio.sleep(retry_delay)
                attempt += 1
            finally:
                cleanup_cancelled = False
                if response is not None:
                    try:
                        await asyncio.shield(response.aclose())
                    except asyncio.CancelledError:
                        cleanup_cancelled = True
                    except Exception:
                        LOG.debug("backend stream response close failed trace=%s", tag, exc_info=True)
                try:
                    await asyncio.shield(stream_client.aclose())
                except asyncio.CancelledError:
                    cleanup_cancelled = True
                except Exception:
                    LOG.debug("backend stream client close failed trace=%s", tag, exc_info=True)
                LOG.debug(
                    "backend stream closed trace=%s elapsed=%.3fs chunks=%s",
                    tag,
                    time.monotonic() - started,
                    chunk_count,
                )
                if cleanup_cancelled:
                    raise asyncio.CancelledError
