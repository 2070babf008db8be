"""Embedding providers: deterministic baseline and HTTP-backed implementation."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from hashlib import blake2b
from math import sqrt
from typing import Any

import httpx

from kb_search.errors import ProviderError, ProviderTimeout
from kb_search.obs.observability import get_logger

logger = get_logger(__name__)


class EmbeddingProvider(ABC):
    """Embedding interface used by chunking, ingest and search components."""

    dimension: int

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Embed one text."""

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        """Embed many texts. Providers with a batch endpoint override this."""
        return list(await asyncio.gather(*(self.embed(text) for text in texts)))


class HashingEmbedder(EmbeddingProvider):
    """Deterministic sparse-like embedding without external model calls.

    Tokens are hashed into signed buckets and the vector is L2-normalized, so
    identical texts score 1.0 and texts sharing vocabulary score proportionally
    to the overlap. Used for tests and offline runs.
    """

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension

    async def embed(self, text: str) -> list[float]:
        return self._embed(text)

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    def _embed(self, text: str) -> list[float]:
        vector = [0.0 for _ in range(self.dimension)]
        tokens = text.lower().split()
        if not tokens:
            return vector

        for token in tokens:
            token = token.strip(".,;:!?\"'()[]{}")
            if not token:
                continue
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            sign = -1.0 if digest[4] % 2 else 1.0
            vector[idx] += sign

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]


class HttpEmbeddingProvider(EmbeddingProvider):
    """OpenAI-compatible `/embeddings` client."""

    provider_name = "embeddings"

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        dimension: int,
        api_key: str | None = None,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.dimension = dimension
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._client = client

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_many([text])
        return vectors[0]

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        payload = {"model": self.model, "input": texts}
        data = await self._post(payload)
        try:
            items = sorted(data["data"], key=lambda item: item["index"])
            vectors = [list(map(float, item["embedding"])) for item in items]
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderError(
                f"Malformed embedding response: {exc}", provider=self.provider_name
            ) from exc
        if len(vectors) != len(texts):
            raise ProviderError(
                f"Expected {len(texts)} embeddings, got {len(vectors)}",
                provider=self.provider_name,
            )
        for vector in vectors:
            if len(vector) != self.dimension:
                raise ProviderError(
                    f"Embedding dimension {len(vector)} does not match {self.dimension}",
                    provider=self.provider_name,
                )
        return vectors

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        url = f"{self.base_url}/embeddings"
        try:
            if self._client is not None:
                response = await self._client.post(
                    url, json=payload, headers=headers, timeout=self._timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as exc:
            logger.warning("embedding.timeout", url=url, timeout_s=self._timeout)
            raise ProviderTimeout(
                f"Embedding request timed out after {self._timeout}s",
                provider=self.provider_name,
            ) from exc
        except httpx.HTTPStatusError as exc:
            logger.warning("embedding.http_error", url=url, status=exc.response.status_code)
            raise ProviderError(
                f"Embedding provider returned HTTP {exc.response.status_code}",
                provider=self.provider_name,
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("embedding.error", url=url, error=str(exc))
            raise ProviderError(
                f"Embedding request failed: {exc}", provider=self.provider_name
            ) from exc


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def mean_vector(vectors: list[list[float]]) -> list[float]:
    if not vectors:
        return []
    size = len(vectors[0])
    total = [0.0] * size
    for vector in vectors:
        for i, value in enumerate(vector):
            total[i] += value
    return [value / len(vectors) for value in total]
