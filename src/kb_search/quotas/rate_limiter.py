"""Sliding-window request rate limiting per actor and resource."""

from __future__ import annotations

import time
from typing import Callable

from kb_search.config import RateLimitConfig
from kb_search.errors import RateLimitExceeded, ValidationError
from kb_search.obs.observability import get_logger
from kb_search.quotas.stores import InMemoryRateLimitStore, RateLimitStore
from kb_search.types import RateLimitResult

logger = get_logger(__name__)


def actor_identifier(*, user_id: str | None = None, ip: str | None = None) -> str:
    """`user:{id}` for authenticated callers, otherwise `ip:{address}`."""

    if user_id:
        return f"user:{user_id}"
    return f"ip:{ip or 'unknown'}"


class RateLimiter:
    """Allows at most `limit` requests per actor in any trailing window.

    Rejected requests are not recorded, so a burst of rejections does not
    extend the wait. When the backing store fails, requests are allowed and
    the failure is logged.
    """

    def __init__(
        self,
        store: RateLimitStore | None = None,
        config: RateLimitConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store: RateLimitStore = store if store is not None else InMemoryRateLimitStore()
        self.config = config or RateLimitConfig()
        self._clock = clock

    @staticmethod
    def key(resource: str, actor_id: str) -> str:
        return f"ratelimit:{resource}:{actor_id}"

    async def check_limit(self, resource: str, actor_id: str) -> RateLimitResult:
        return (await self.check_all([(resource, actor_id)]))[0]

    async def check_all(self, checks: list[tuple[str, str]]) -> list[RateLimitResult]:
        """Check several `(resource, actor_id)` pairs as one admission.

        The request is recorded under every pair only when all of them are
        within their limits. If any rule rejects it, no window is touched.
        """

        if any(not actor_id for _, actor_id in checks):
            raise ValidationError("actor_id is required")
        rules = [self.config.rule_for(resource) for resource, _ in checks]
        now = self._clock()
        entries = [
            (self.key(resource, actor_id), rule.window_seconds, rule.limit)
            for (resource, actor_id), rule in zip(checks, rules)
        ]
        try:
            outcomes = await self.store.hit_all(entries, now=now)
        except Exception as exc:  # noqa: BLE001 - fail open when the limiter store is down
            logger.warning("ratelimit.store_failed", checks=checks, error=str(exc))
            return [
                RateLimitResult(
                    success=True,
                    limit=rule.limit,
                    remaining=rule.limit,
                    reset=now + rule.window_seconds,
                )
                for rule in rules
            ]

        results: list[RateLimitResult] = []
        for (resource, actor_id), rule, (allowed, count, oldest) in zip(checks, rules, outcomes):
            reset = (oldest if oldest is not None else now) + rule.window_seconds
            if allowed:
                results.append(
                    RateLimitResult(
                        success=True,
                        limit=rule.limit,
                        remaining=max(0, rule.limit - count),
                        reset=reset,
                    )
                )
                continue
            logger.info("ratelimit.rejected", resource=resource, actor_id=actor_id, limit=rule.limit)
            results.append(
                RateLimitResult(
                    success=False,
                    limit=rule.limit,
                    remaining=0,
                    reset=reset,
                    retry_after=max(0.0, reset - now),
                )
            )
        return results

    async def enforce(self, resource: str, actor_id: str) -> RateLimitResult:
        result = await self.check_limit(resource, actor_id)
        if not result.success:
            raise RateLimitExceeded(
                f"Rate limit exceeded for {resource}. Try again in {result.retry_after:.0f}s",
                limit=result.limit,
                remaining=result.remaining,
                reset=result.reset,
                retry_after=result.retry_after or 0.0,
            )
        return result

    async def reset_limit(self, resource: str, actor_id: str) -> None:
        await self.store.reset(self.key(resource, actor_id))
