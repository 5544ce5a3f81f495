"""Embedding model backed by `/api/embed`."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

import httpx

from .backend import BackendClient
from .cancellation import run_abortable
from .errors import OllamaError

LOG = logging.getLogger(__name__)

MAX_EMBEDDINGS_PER_CALL = 2048


class OllamaEmbeddingModel:
    """Batch text embeddings for one model."""

    def __init__(
        self,
        model_id: str,
        client: BackendClient,
        *,
        dimensions: int | None = None,
        options: dict[str, Any] | None = None,
    ) -> None:
        self.model_id = model_id
        self.client = client
        self.dimensions = dimensions
        self.options = dict(options or {})

    @property
    def max_embeddings_per_call(self) -> int:
        return MAX_EMBEDDINGS_PER_CALL

    def build_payload(self, values: Sequence[str]) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": self.model_id, "input": list(values)}
        if self.options:
            payload["options"] = self.options
        if self.dimensions is not None:
            payload["dimensions"] = self.dimensions
        return payload

    async def embed(
        self,
        values: Sequence[str],
        *,
        abort_signal: asyncio.Event | None = None,
    ) -> list[list[float]]:
        """Return one embedding vector per input value, in input order."""
        if not values:
            return []
        if len(values) > MAX_EMBEDDINGS_PER_CALL:
            raise OllamaError(
                f"Too many values for a single embedding call: {len(values)} > {MAX_EMBEDDINGS_PER_CALL}"
            )

        try:
            response = await run_abortable(self.client.embed(self.build_payload(values)), abort_signal)
        except httpx.HTTPError as exc:
            raise OllamaError(f"embedding request failed: {exc}") from exc

        embeddings = response.get("embeddings")
        if not isinstance(embeddings, list):
            raise OllamaError("backend embedding response has no 'embeddings' list")
        if len(embeddings) != len(values):
            raise OllamaError(f"backend returned {len(embeddings)} embeddings for {len(values)} values")
        LOG.debug("embedded values=%s model=%s", len(values), self.model_id)
        return [[float(x) for x in vector] for vector in embeddings]
