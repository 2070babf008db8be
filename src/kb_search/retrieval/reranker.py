"""Relevance reranking through an external provider with timeout fallback."""

from __future__ import annotations

import asyncio
import math
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx

from kb_search.config import RerankConfig
from kb_search.errors import ProviderError, ProviderTimeout, ValidationError
from kb_search.obs.observability import get_logger
from kb_search.types import RerankHit, RerankOutcome, SearchResult

logger = get_logger(__name__)

MIN_TIMEOUT_MS = 100
MAX_TIMEOUT_MS = 5000


class RerankProvider(ABC):
    """Scores documents against a query and returns them best-first."""

    name = "rerank"

    @property
    def is_configured(self) -> bool:
        return True

    @abstractmethod
    async def rerank(
        self, query: str, documents: list[str], *, top_n: int, model: str
    ) -> list[RerankHit]:
        """Return hits with indices into `documents`, best first."""


class CohereRerankProvider(RerankProvider):
    """Client for a Cohere-compatible `/rerank` endpoint."""

    name = "cohere"

    def __init__(
        self,
        *,
        api_key: str | None,
        url: str = "https://api.cohere.ai/v1/rerank",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self.url = url
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key and self._api_key.strip())

    async def rerank(
        self, query: str, documents: list[str], *, top_n: int, model: str
    ) -> list[RerankHit]:
        payload = {
            "model": model,
            "query": query,
            "documents": documents,
            "top_n": top_n,
            "return_documents": False,
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.url, json=payload, headers=headers)
            response.raise_for_status()
            data: dict[str, Any] = response.json()
        except httpx.TimeoutException as exc:
            raise ProviderTimeout("Rerank request timed out", provider=self.name) from exc
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                f"Rerank provider returned HTTP {exc.response.status_code}", provider=self.name
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderError(f"Rerank request failed: {exc}", provider=self.name) from exc

        try:
            return [
                RerankHit(index=int(item["index"]), relevance_score=float(item["relevance_score"]))
                for item in data["results"]
            ]
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderError(f"Malformed rerank response: {exc}", provider=self.name) from exc


class CrossEncoderRerankProvider(RerankProvider):
    """Local cross-encoder scoring with sentence-transformers.

    The model loads lazily on first use and scoring runs in a worker thread so
    the event loop is not blocked.
    """

    name = "cross_encoder"

    def __init__(
        self, model_name: str = "cross-encoder/ms-marco-MiniLM-L-6-v2", device: str | None = None
    ) -> None:
        self.model_name = model_name
        self.device = device
        self._model: Any = None

    def _load(self) -> Any:
        if self._model is None:
            try:
                from sentence_transformers import CrossEncoder
            except ImportError as exc:
                raise ProviderError(
                    "sentence-transformers is required for cross-encoder reranking. "
                    "Install with `pip install kb-search[cross-encoder]`.",
                    provider=self.name,
                ) from exc
            self._model = CrossEncoder(self.model_name, device=self.device)
        return self._model

    async def rerank(
        self, query: str, documents: list[str], *, top_n: int, model: str
    ) -> list[RerankHit]:
        del model  # the loaded cross-encoder is fixed at construction
        encoder = self._load()
        pairs = [(query, document) for document in documents]
        scores = await asyncio.to_thread(encoder.predict, pairs)
        hits = [
            RerankHit(index=i, relevance_score=_sigmoid(float(score)))
            for i, score in enumerate(scores)
        ]
        hits.sort(key=lambda hit: hit.relevance_score, reverse=True)
        return hits[:top_n]


class Reranker:
    """Reorders search results by provider relevance, never failing the search.

    A missing provider or an empty/whitespace API key means "not configured":
    results come back in their original order without any call. A provider
    error or a call exceeding the timeout falls back to the original order
    truncated to `top_n`.
    """

    def __init__(self, provider: RerankProvider | None = None, config: RerankConfig | None = None) -> None:
        self.provider = provider
        self.config = config or RerankConfig()

    @property
    def is_configured(self) -> bool:
        return self.provider is not None and self.provider.is_configured

    async def rerank(
        self,
        query: str,
        results: list[SearchResult],
        *,
        top_n: int | None = None,
        timeout_ms: int | None = None,
        model: str | None = None,
    ) -> RerankOutcome:
        if not query or not query.strip():
            raise ValidationError("Query cannot be empty")
        if top_n is not None and top_n < 1:
            raise ValidationError("topN must be at least 1")
        timeout_ms = self.config.timeout_ms if timeout_ms is None else timeout_ms
        if timeout_ms < MIN_TIMEOUT_MS:
            raise ValidationError(f"timeoutMs must be at least {MIN_TIMEOUT_MS}ms")
        if timeout_ms > MAX_TIMEOUT_MS:
            raise ValidationError(f"timeoutMs must be at most {MAX_TIMEOUT_MS}ms")

        original_count = len(results)
        if original_count <= 1:
            return RerankOutcome(
                results=list(results),
                original_count=original_count,
                reranked_count=original_count,
                elapsed_ms=0.0,
                cost_estimate=0.0,
            )

        effective_top_n = min(top_n or original_count, original_count)
        provider = self.provider
        if provider is None or not provider.is_configured:
            logger.info("rerank.not_configured", result_count=original_count)
            return RerankOutcome(
                results=list(results[:effective_top_n]),
                original_count=original_count,
                reranked_count=effective_top_n,
                elapsed_ms=0.0,
                cost_estimate=0.0,
                fallback_reason="not_configured",
            )

        cost = original_count * self.config.unit_cost
        started = time.perf_counter()
        try:
            hits = await asyncio.wait_for(
                provider.rerank(
                    query,
                    [result.text for result in results],
                    top_n=effective_top_n,
                    model=model or self.config.model,
                ),
                timeout=timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            logger.warning("rerank.timeout", timeout_ms=timeout_ms, elapsed_ms=round(elapsed_ms, 2))
            return self._fallback(results, effective_top_n, elapsed_ms, cost, "timeout")
        except Exception as exc:  # noqa: BLE001 - any provider failure degrades to original order
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            logger.warning("rerank.provider_error", error=str(exc), elapsed_ms=round(elapsed_ms, 2))
            return self._fallback(results, effective_top_n, elapsed_ms, cost, "provider_error")

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        reranked: list[SearchResult] = []
        seen: set[int] = set()
        for hit in hits:
            if not 0 <= hit.index < original_count or hit.index in seen:
                continue
            seen.add(hit.index)
            score = min(1.0, max(0.0, hit.relevance_score))
            reranked.append(results[hit.index].with_similarity(score))
            if len(reranked) == effective_top_n:
                break

        logger.info(
            "rerank.complete",
            original_count=original_count,
            reranked_count=len(reranked),
            elapsed_ms=round(elapsed_ms, 2),
        )
        return RerankOutcome(
            results=reranked,
            original_count=original_count,
            reranked_count=len(reranked),
            elapsed_ms=elapsed_ms,
            cost_estimate=cost,
            applied=True,
        )

    @staticmethod
    def _fallback(
        results: list[SearchResult],
        top_n: int,
        elapsed_ms: float,
        cost: float,
        reason: str,
    ) -> RerankOutcome:
        kept = list(results[:top_n])
        return RerankOutcome(
            results=kept,
            original_count=len(results),
            reranked_count=len(kept),
            elapsed_ms=elapsed_ms,
            cost_estimate=cost,
            fallback_reason=reason,
        )


def _sigmoid(value: float) -> float:
    return 1.0 / (1.0 + math.exp(-max(-50.0, min(50.0, value))))
