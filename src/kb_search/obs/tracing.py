"""Search trace records, latency summaries, and timing helpers."""

from __future__ import annotations

import re
import time
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)


@dataclass(slots=True)
class SearchTraceRecord:
    trace_id: str
    timestamp_utc: str
    org_id: str
    query: str
    mode: str
    result_count: int
    cached: bool
    cache_layer: str
    reranked: bool
    search_ms: float
    rerank_ms: float
    total_ms: float


class SearchTraceStore:
    """In-memory ring of recent searches for API-level observability."""

    def __init__(self, *, max_records: int = 1000) -> None:
        self._records: deque[SearchTraceRecord] = deque(maxlen=max_records)

    def create_record(
        self,
        *,
        org_id: str,
        query: str,
        mode: str,
        result_count: int,
        cached: bool,
        cache_layer: str,
        reranked: bool,
        search_ms: float,
        rerank_ms: float,
        total_ms: float,
    ) -> SearchTraceRecord:
        record = SearchTraceRecord(
            trace_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            org_id=org_id,
            query=query,
            mode=mode,
            result_count=result_count,
            cached=cached,
            cache_layer=cache_layer,
            reranked=reranked,
            search_ms=search_ms,
            rerank_ms=rerank_ms,
            total_ms=total_ms,
        )
        self._records.append(record)
        return record

    def get(self, trace_id: str, *, org_id: str | None = None) -> SearchTraceRecord:
        """Look up a trace. With `org_id`, traces of other orgs are not found."""
        for record in self._records:
            if record.trace_id == trace_id and (org_id is None or record.org_id == org_id):
                return record
        raise KeyError(f"Trace not found: {trace_id}")

    def list_recent(self, limit: int = 20, *, org_id: str | None = None) -> list[SearchTraceRecord]:
        records = [r for r in self._records if org_id is None or r.org_id == org_id]
        return records[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate latency and cache metrics for dashboard display."""
        records = list(self._records)
        total = len(records)
        if total == 0:
            return {
                "total_requests": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "cache_hit_ratio": 0.0,
                "rerank_ratio": 0.0,
                "avg_result_count": 0.0,
            }

        latencies = sorted(record.total_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        cached = sum(1 for record in records if record.cached)
        reranked = sum(1 for record in records if record.reranked)

        return {
            "total_requests": total,
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "cache_hit_ratio": cached / total,
            "rerank_ratio": reranked / total,
            "avg_result_count": sum(record.result_count for record in records) / total,
        }


class Timer:
    """Simple context timer used around provider calls."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))
