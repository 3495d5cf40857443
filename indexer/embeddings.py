# memfoundry Embeddings Module
# Turns chunk text into vectors through an Ollama embedding endpoint

import asyncio
import logging
import time
from typing import List, Optional

import aiohttp
import numpy as np

from config.settings import EmbeddingConfig
from observability.prometheus_metrics import record_embedding_duration
from services.shared.errors import EmbeddingError

logger = logging.getLogger(__name__)


class EmbeddingProvider:
    """Interface for anything that maps text to a fixed-size vector."""

    dimensions: int = 768

    async def embed(self, text: str) -> List[float]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


def validate_embedding(values, dimensions: Optional[int] = None) -> List[float]:
    """Check that ``values`` is a finite 1-D vector of the expected size."""
    try:
        vector = np.asarray(values, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise EmbeddingError(f"Embedding is not numeric: {e}", operation="embed")

    if vector.ndim != 1 or vector.size == 0:
        raise EmbeddingError(f"Embedding has shape {vector.shape}, expected a flat vector", operation="embed")
    if dimensions is not None and vector.size != dimensions:
        raise EmbeddingError(f"Embedding has {vector.size} dimensions, expected {dimensions}", operation="embed")
    if not np.all(np.isfinite(vector)):
        raise EmbeddingError("Embedding contains non-finite values", operation="embed")
    return vector.tolist()


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Embeds text with ``POST {ollama_url}/api/embeddings``."""

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        self.config = config or EmbeddingConfig()
        self.dimensions = self.config.dimensions
        self.session: Optional[aiohttp.ClientSession] = None
        self._session_lock = asyncio.Lock()

    @property
    def endpoint(self) -> str:
        return f"{self.config.ollama_url.rstrip('/')}/api/embeddings"

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._session_lock:
            if self.session is None or self.session.closed:
                timeout = aiohttp.ClientTimeout(total=self.config.timeout)
                self.session = aiohttp.ClientSession(timeout=timeout)
            return self.session

    async def embed(self, text: str) -> List[float]:
        session = await self._get_session()
        payload = {'model': self.config.model, 'prompt': text}
        start_time = time.time()

        try:
            async with session.post(self.endpoint, json=payload) as response:
                if response.status >= 300:
                    body = await response.text()
                    raise EmbeddingError(
                        f"Ollama returned HTTP {response.status}: {body[:200]}",
                        operation="embed",
                    )
                data = await response.json()
        except (asyncio.TimeoutError, aiohttp.ServerTimeoutError):
            raise EmbeddingError(f"Timed out after {self.config.timeout}s calling {self.endpoint}", operation="embed")
        except aiohttp.ClientError as e:
            raise EmbeddingError(f"Request to {self.endpoint} failed: {e}", operation="embed")
        finally:
            record_embedding_duration(self.config.model, time.time() - start_time)

        embedding = data.get('embedding') if isinstance(data, dict) else None
        if embedding is None:
            raise EmbeddingError("Response has no 'embedding' field", operation="embed")
        return validate_embedding(embedding, self.dimensions)

    async def close(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None
