"""
Embedding Service - vector representations of spreadsheet rows.

Providers: Gemini (google-genai), an Ollama-compatible on-prem endpoint, or
a local sentence-transformers model. Failures are logged and reported as
None; embeddings are never critical to ingestion.
"""

from typing import List, Optional

import httpx

from orderdesk.app.core.config import Settings
from orderdesk.app.core.logging import get_logger
from orderdesk.app.core.resilience import with_timeout
from orderdesk.app.services.embedding_local import LocalEmbeddingService

logger = get_logger(__name__)


class EmbeddingService:
    """Service for generating embeddings with the configured provider."""

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.provider = settings.embedding_provider
        self.dimension = settings.embedding_dimension
        self.timeout = settings.embedding_timeout_seconds
        self._http = http_client
        self.client = None
        self.local_svc = None

        if self.provider == "gemini" and settings.gemini_api_key:
            from google import genai
            self.client = genai.Client(api_key=settings.gemini_api_key)
            self.model_name = settings.gemini_embedding_model
        elif self.provider == "on-prem":
            self.endpoint_url = settings.onprem_llm_url
            self.model_name = settings.onprem_embedding_model
        else:
            if self.provider == "gemini":
                logger.warning("Gemini API key not configured. Falling back to local embeddings.")
            self.local_svc = LocalEmbeddingService(settings.local_embedding_model)
            self.provider = self.local_svc.provider
            self.model_name = self.local_svc.model_name
        logger.info(f"Embedding service initialized with provider {self.provider} and model {self.model_name}")

    async def generate_embedding(self, text: str) -> Optional[List[float]]:
        """
        Generate an embedding vector for the given text.

        Returns None when the provider fails, times out, or answers with a
        vector of the wrong dimension.
        """
        try:
            vector = await with_timeout(self._embed(text), self.timeout, f"embedding:{self.provider}")
        except Exception as e:
            logger.error(f"Error generating embedding: {e}", exc_info=True)
            return None

        if vector is None or len(vector) != self.dimension:
            logger.error(
                f"Embedding dimension mismatch: got {None if vector is None else len(vector)}, "
                f"expected {self.dimension}"
            )
            return None
        return [float(v) for v in vector]

    async def _embed(self, text: str) -> Optional[List[float]]:
        if self.local_svc is not None:
            return await self.local_svc.generate_embedding(text)

        if self.client is not None:
            result = await self.client.aio.models.embed_content(
                model=self.model_name,
                contents=text,
                config={"task_type": "RETRIEVAL_DOCUMENT"},
            )
            return result.embeddings[0].values

        payload = {"model": self.model_name, "prompt": text}
        url = f"{self.endpoint_url}/api/embeddings"
        if self._http is not None:
            resp = await self._http.post(url, json=payload, timeout=self.timeout)
        else:
            async with httpx.AsyncClient() as client:
                resp = await client.post(url, json=payload, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json().get("embedding")

    @staticmethod
    def create_row_text(row: dict) -> str:
        """Compact `key: value` projection of a row, one field per line."""
        return "\n".join(f"{k}: {v}" for k, v in row.items())
