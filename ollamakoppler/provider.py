"""Provider factory binding one backend configuration to model handles."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .backend import BackendClient
from .chat_model import OllamaChatModel
from .config import AdapterConfig, BackendConfig, ChatSettings
from .embedding_model import OllamaEmbeddingModel

LOG = logging.getLogger(__name__)


class OllamaProvider:
    """Creates chat and embedding models that share one backend client."""

    def __init__(
        self,
        config: BackendConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        default_settings: ChatSettings | None = None,
    ) -> None:
        self.config = config or BackendConfig()
        self.default_settings = default_settings or ChatSettings()
        self.client = BackendClient(self.config, transport=transport)
        LOG.debug("provider created base_url=%s", self.config.base_url)

    def __call__(self, model_id: str, settings: ChatSettings | None = None) -> OllamaChatModel:
        return self.chat(model_id, settings)

    def chat(self, model_id: str, settings: ChatSettings | None = None) -> OllamaChatModel:
        return OllamaChatModel(model_id, self.client, settings or self.default_settings)

    def embedding(
        self,
        model_id: str,
        *,
        dimensions: int | None = None,
        options: dict[str, Any] | None = None,
    ) -> OllamaEmbeddingModel:
        return OllamaEmbeddingModel(model_id, self.client, dimensions=dimensions, options=options)

    async def close(self) -> None:
        await self.client.close()


def create_provider(
    config: AdapterConfig | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> OllamaProvider:
    """Build a provider from loaded adapter configuration."""
    cfg = config or AdapterConfig()
    return OllamaProvider(cfg.backend, transport=transport, default_settings=cfg.chat)
