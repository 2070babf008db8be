"""Per-organization monthly usage quotas."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from kb_search.config import QuotaConfig
from kb_search.errors import QuotaExceeded, ValidationError
from kb_search.obs.observability import get_logger
from kb_search.quotas.stores import CounterStore, InMemoryCounterStore
from kb_search.types import QUOTA_RESOURCES, QuotaCheck, QuotaCounter

logger = get_logger(__name__)

# Gauges that track current usage instead of resetting every month.
NON_RESETTING = frozenset({"storage"})


def period_start(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def next_period_start(now: datetime) -> datetime:
    start = period_start(now)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


class QuotaManager:
    """Atomic check-and-consume over per-org counters.

    Consumption goes through the store's conditional increment, so under any
    number of concurrent callers at most `limit - used` units are granted.
    Callers that consume and then fail downstream give the units back with
    `release_quota`.
    """

    def __init__(
        self,
        store: CounterStore | None = None,
        config: QuotaConfig | None = None,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.store: CounterStore = store if store is not None else InMemoryCounterStore()
        self.config = config or QuotaConfig()
        self._clock = clock

    async def initialize_quota(self, org_id: str, plan_tier: str = "free") -> list[QuotaCounter]:
        """Create the org's counters for a plan, or move existing ones to its limits."""

        _require_org(org_id)
        limits = self.config.plan_limits.get(plan_tier)
        if limits is None:
            raise ValidationError(f"Unknown plan tier: {plan_tier}")
        now = self._clock()
        counters: list[QuotaCounter] = []
        for resource in QUOTA_RESOURCES:
            counters.append(
                await self.store.upsert_limit(
                    QuotaCounter(
                        org_id=org_id,
                        resource=resource,  # type: ignore[arg-type]
                        used=0,
                        limit=limits.get(resource, 0),
                        window_start=period_start(now),
                        reset_at=None if resource in NON_RESETTING else next_period_start(now),
                    )
                )
            )
        logger.info("quota.initialized", org_id=org_id, plan_tier=plan_tier)
        return counters

    async def check_and_consume_quota(
        self, org_id: str, resource: str, amount: int = 1
    ) -> QuotaCheck:
        _require_org(org_id)
        _require_resource(resource)
        if amount < 1:
            raise ValidationError("amount must be at least 1")

        outcome = await self._try_consume(org_id, resource, amount)
        if outcome is None and self.config.default_plan is not None:
            await self.initialize_quota(org_id, self.config.default_plan)
            outcome = await self._try_consume(org_id, resource, amount)
        if outcome is None:
            return QuotaCheck(
                allowed=False,
                resource=resource,
                used=0,
                limit=0,
                remaining=0,
                reset_at=None,
                message="Quota not found for organization",
            )

        allowed, counter = outcome
        if not allowed:
            logger.info(
                "quota.denied",
                org_id=org_id,
                resource=resource,
                used=counter.used,
                limit=counter.limit,
            )
            return QuotaCheck(
                allowed=False,
                resource=resource,
                used=counter.used,
                limit=counter.limit,
                remaining=counter.remaining,
                reset_at=counter.reset_at,
                message=(
                    f"Quota exceeded: {counter.used}/{counter.limit} {resource} used this month"
                ),
            )
        return QuotaCheck(
            allowed=True,
            resource=resource,
            used=counter.used,
            limit=counter.limit,
            remaining=counter.remaining,
            reset_at=counter.reset_at,
        )

    async def consume_or_raise(self, org_id: str, resource: str, amount: int = 1) -> QuotaCheck:
        check = await self.check_and_consume_quota(org_id, resource, amount)
        if not check.allowed:
            raise QuotaExceeded(
                check.message or "Quota exceeded",
                resource=resource,
                limit=check.limit,
                remaining=check.remaining,
                reset_at=check.reset_at,
            )
        return check

    async def release_quota(self, org_id: str, resource: str, amount: int = 1) -> QuotaCounter | None:
        """Return previously consumed units; usage never drops below zero."""

        _require_org(org_id)
        _require_resource(resource)
        if amount < 1:
            raise ValidationError("amount must be at least 1")
        counter = await self.store.release(org_id, resource, amount)
        logger.info("quota.released", org_id=org_id, resource=resource, amount=amount)
        return counter

    async def get_quota_status(self, org_id: str) -> dict[str, QuotaCounter]:
        _require_org(org_id)
        return {counter.resource: counter for counter in await self.store.list_counters(org_id)}

    async def update_storage_usage(self, org_id: str, used_gb: int) -> QuotaCheck:
        """Record current storage usage; reports whether it fits the plan."""

        _require_org(org_id)
        if used_gb < 0:
            raise ValidationError("used_gb must not be negative")
        counter = await self.store.set_used(org_id, "storage", used_gb)
        if counter is None and self.config.default_plan is not None:
            await self.initialize_quota(org_id, self.config.default_plan)
            counter = await self.store.set_used(org_id, "storage", used_gb)
        if counter is None:
            return QuotaCheck(
                allowed=False,
                resource="storage",
                used=0,
                limit=0,
                remaining=0,
                reset_at=None,
                message="Quota not found for organization",
            )
        within = counter.used <= counter.limit
        return QuotaCheck(
            allowed=within,
            resource="storage",
            used=counter.used,
            limit=counter.limit,
            remaining=counter.remaining,
            reset_at=None,
            message=None if within else f"Quota exceeded: {counter.used}/{counter.limit} storage used",
        )

    async def _try_consume(
        self, org_id: str, resource: str, amount: int
    ) -> tuple[bool, QuotaCounter] | None:
        now = self._clock()
        return await self.store.try_consume(
            org_id,
            resource,
            amount,
            now=now,
            window_start=period_start(now),
            next_reset=next_period_start(now),
        )


def _require_org(org_id: str) -> None:
    if not org_id or not org_id.strip():
        raise ValidationError("org_id is required")


def _require_resource(resource: str) -> None:
    if resource not in QUOTA_RESOURCES:
        raise ValidationError(f"Unknown quota resource: {resource}")
