"""
Local row embeddings with sentence-transformers, for stores whose buyer
data must not leave the host. Install with the `local` extra.

Vectors are unit-normalised so that the L2 near-duplicate threshold means
the same thing whichever model is configured.
"""
import asyncio
from typing import Dict, List, Optional

from orderdesk.app.core.logging import get_logger

logger = get_logger(__name__)

# Loaded models, shared by every service instance in the process
_models: Dict[str, object] = {}
_load_lock: Optional[asyncio.Lock] = None


def _lock() -> asyncio.Lock:
    global _load_lock
    if _load_lock is None:
        _load_lock = asyncio.Lock()
    return _load_lock


class LocalEmbeddingService:
    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.provider = "local"
        self.model_name = model_name

    async def _get_model(self):
        model = _models.get(self.model_name)
        if model is not None:
            return model
        async with _lock():
            if self.model_name not in _models:
                logger.info(f"Loading local embedding model {self.model_name}")
                from sentence_transformers import SentenceTransformer

                loop = asyncio.get_running_loop()
                _models[self.model_name] = await loop.run_in_executor(
                    None, lambda: SentenceTransformer(self.model_name)
                )
        return _models[self.model_name]

    async def generate_embedding(self, text: str) -> List[float]:
        model = await self._get_model()
        loop = asyncio.get_running_loop()
        vector = await loop.run_in_executor(
            None, lambda: model.encode(text, normalize_embeddings=True)
        )
        return vector.tolist()
