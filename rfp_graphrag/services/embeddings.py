"""
Embedding providers for chunk and query vectors.

Features:
- Google Gemini embeddings over REST (batchEmbedContents) with retries
- Deterministic hashing embedder for tests and offline development
- Factory selecting the provider from settings
"""

import hashlib
import math
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from rfp_graphrag.core.config import Settings, settings
from rfp_graphrag.core.logging import get_logger
from rfp_graphrag.services.llm_client import GEMINI_API_URL

logger = get_logger(__name__)

# Gemini accepts at most 100 requests per batchEmbedContents call
GEMINI_EMBED_BATCH = 100

_TOKEN = re.compile(r"[a-z0-9]+")


# =============================================================================
# Exceptions
# =============================================================================


class EmbeddingError(Exception):
    """Base exception for embedding errors."""

    pass


class EmbeddingRateLimitError(EmbeddingError):
    """Raised when rate limited by the embedding API."""

    pass


# =============================================================================
# Base Embedder
# =============================================================================


class BaseEmbedder(ABC):
    """Abstract base class for embedding providers."""

    def __init__(self, dimension: int):
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        """Length of the vectors produced."""
        return self._dimension

    async def __aenter__(self) -> "BaseEmbedder":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        return None

    @abstractmethod
    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """
        Embed document texts.

        Args:
            texts: Input texts

        Returns:
            One vector per text, in order
        """
        pass

    async def embed_query(self, text: str) -> list[float]:
        """Embed a search query."""
        vectors = await self.embed([text])
        return vectors[0]


# =============================================================================
# Hashing Embedder
# =============================================================================


class HashingEmbedder(BaseEmbedder):
    """
    Deterministic bag-of-words embedder (feature hashing).

    Each lowercase token is hashed (blake2b) into a signed bucket; the vector
    is L2-normalized, so cosine similarity measures token overlap. Needs no
    network and gives identical vectors across processes.
    """

    def __init__(self, dimension: int = 768):
        super().__init__(dimension)

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * self._dimension
        for token in _TOKEN.findall(text.lower()):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "big") % self._dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign

        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0.0:
            return vector
        return [v / norm for v in vector]

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed texts locally."""
        return [self._vector(text) for text in texts]


# =============================================================================
# Google Gemini Embedder
# =============================================================================


class GeminiEmbedder(BaseEmbedder):
    """Embedder backed by the Gemini embedding REST API."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        dimension: int | None = None,
        timeout: float = 30.0,
    ):
        """
        Initialize Gemini embedder.

        Args:
            api_key: Google API key (defaults to settings)
            model: Embedding model name (defaults to settings.gemini_embedding_model)
            dimension: Output dimensionality (defaults to settings.embedding_dim)
            timeout: Request timeout
        """
        super().__init__(dimension or settings.embedding_dim)
        self.api_key = api_key or settings.google_api_key
        self.model = model or settings.gemini_embedding_model
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

        if not self.api_key:
            raise ValueError("Google API key not configured. Set GOOGLE_API_KEY in .env")

    async def __aenter__(self) -> "GeminiEmbedder":
        self._client = httpx.AsyncClient(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client."""
        if self._client is None:
            raise RuntimeError("Embedder must be used as async context manager")
        return self._client

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed document texts in batches."""
        vectors: list[list[float]] = []
        for start in range(0, len(texts), GEMINI_EMBED_BATCH):
            batch = list(texts[start : start + GEMINI_EMBED_BATCH])
            vectors.extend(await self._embed_batch(batch, task_type="RETRIEVAL_DOCUMENT"))
        return vectors

    async def embed_query(self, text: str) -> list[float]:
        """Embed a search query."""
        vectors = await self._embed_batch([text], task_type="RETRIEVAL_QUERY")
        return vectors[0]

    @retry(
        retry=retry_if_exception_type((httpx.HTTPError, EmbeddingRateLimitError)),
        stop=stop_after_attempt(4),
        wait=wait_random_exponential(multiplier=1, min=1, max=20),
        reraise=True,
    )
    async def _embed_batch(self, texts: list[str], task_type: str) -> list[list[float]]:
        url = f"{GEMINI_API_URL}/{self.model}:batchEmbedContents"
        payload = {
            "requests": [
                {
                    "model": f"models/{self.model}",
                    "content": {"parts": [{"text": text}]},
                    "taskType": task_type,
                    "outputDimensionality": self._dimension,
                }
                for text in texts
            ]
        }

        response = await self.client.post(
            url,
            headers={"Content-Type": "application/json", "x-goog-api-key": self.api_key},
            json=payload,
        )

        if response.status_code in (429, 503):
            logger.warning("Gemini embedding throttled", status_code=response.status_code)
            raise EmbeddingRateLimitError(f"Embedding API returned {response.status_code}")
        if response.status_code != 200:
            logger.error(
                "Gemini embedding error",
                status_code=response.status_code,
                response=response.text[:500],
            )
            raise EmbeddingError(f"Embedding API returned status {response.status_code}")

        embeddings = response.json().get("embeddings", [])
        if len(embeddings) != len(texts):
            raise EmbeddingError(
                f"Embedding API returned {len(embeddings)} vectors for {len(texts)} texts"
            )
        return [list(item.get("values", [])) for item in embeddings]


# =============================================================================
# Factory Function
# =============================================================================


def get_embedder(app_settings: Settings | None = None) -> BaseEmbedder:
    """
    Factory function to get the configured embedder.

    Example:
        async with get_embedder() as embedder:
            vector = await embedder.embed_query("cloud storage requirements")
    """
    cfg = app_settings or settings
    if cfg.embedding_provider == "gemini":
        return GeminiEmbedder(
            api_key=cfg.google_api_key,
            model=cfg.gemini_embedding_model,
            dimension=cfg.embedding_dim,
        )
    elif cfg.embedding_provider == "hashing":
        return HashingEmbedder(dimension=cfg.embedding_dim)
    else:
        raise ValueError(f"Unsupported embedding provider: {cfg.embedding_provider}")
