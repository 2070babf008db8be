import asyncio
from datetime import datetime, timezone

import pytest

from kb_search.config import QuotaConfig
from kb_search.errors import QuotaExceeded, ValidationError
from kb_search.quotas.quota_manager import QuotaManager, next_period_start, period_start
from kb_search.quotas.stores import SqliteCounterStore


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _small_plan(limit: int) -> QuotaConfig:
    return QuotaConfig(
        plan_limits={"tiny": {"search": limit, "recording": 1, "api_call": 10, "storage": 1}},
        default_plan="tiny",
    )


@pytest.mark.asyncio
async def test_concurrent_consumers_never_exceed_remaining() -> None:
    manager = QuotaManager(config=_small_plan(5))
    await manager.initialize_quota("org-a", "tiny")

    checks = await asyncio.gather(
        *(manager.check_and_consume_quota("org-a", "search") for _ in range(20))
    )

    assert sum(1 for check in checks if check.allowed) == 5
    status = await manager.get_quota_status("org-a")
    assert status["search"].used == 5
    denied = next(check for check in checks if not check.allowed)
    assert denied.message == "Quota exceeded: 5/5 search used this month"
    assert denied.remaining == 0


@pytest.mark.asyncio
async def test_concurrent_consumers_on_sqlite_store(tmp_path) -> None:
    manager = QuotaManager(SqliteCounterStore(tmp_path / "quota.db"), config=_small_plan(3))
    await manager.initialize_quota("org-a", "tiny")

    checks = await asyncio.gather(
        *(manager.check_and_consume_quota("org-a", "search") for _ in range(10))
    )

    assert sum(1 for check in checks if check.allowed) == 3
    assert (await manager.get_quota_status("org-a"))["search"].used == 3


@pytest.mark.asyncio
async def test_unknown_org_is_provisioned_on_default_plan() -> None:
    manager = QuotaManager()

    check = await manager.check_and_consume_quota("new-org", "search")

    assert check.allowed is True
    assert check.limit == 100
    assert check.remaining == 99


@pytest.mark.asyncio
async def test_unknown_org_denied_without_default_plan() -> None:
    manager = QuotaManager(config=QuotaConfig(default_plan=None))

    check = await manager.check_and_consume_quota("ghost", "search")

    assert check.allowed is False
    assert check.message == "Quota not found for organization"


@pytest.mark.asyncio
async def test_release_returns_units_but_not_below_zero() -> None:
    manager = QuotaManager(config=_small_plan(2))
    await manager.initialize_quota("org-a", "tiny")
    await manager.check_and_consume_quota("org-a", "search")
    await manager.check_and_consume_quota("org-a", "search")

    assert not (await manager.check_and_consume_quota("org-a", "search")).allowed
    await manager.release_quota("org-a", "search")
    assert (await manager.check_and_consume_quota("org-a", "search")).allowed

    counter = await manager.release_quota("org-a", "search", amount=10)
    assert counter is not None
    assert counter.used == 0


@pytest.mark.asyncio
async def test_counters_reset_at_the_next_month() -> None:
    clock = _Clock(datetime(2024, 1, 31, 23, 0, tzinfo=timezone.utc))
    manager = QuotaManager(config=_small_plan(1), clock=clock)
    await manager.initialize_quota("org-a", "tiny")

    assert (await manager.check_and_consume_quota("org-a", "search")).allowed
    assert not (await manager.check_and_consume_quota("org-a", "search")).allowed

    clock.now = datetime(2024, 2, 1, 0, 0, 1, tzinfo=timezone.utc)
    check = await manager.check_and_consume_quota("org-a", "search")
    assert check.allowed
    assert check.reset_at == datetime(2024, 3, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_consume_or_raise_carries_usage_snapshot() -> None:
    manager = QuotaManager(config=_small_plan(1))
    await manager.consume_or_raise("org-a", "search")

    with pytest.raises(QuotaExceeded) as excinfo:
        await manager.consume_or_raise("org-a", "search")

    payload = excinfo.value.to_payload()
    assert payload["error"] == "quota_exceeded"
    assert payload["limit"] == 1
    assert payload["remaining"] == 0
    assert payload["reset_at"] is not None


@pytest.mark.asyncio
async def test_storage_gauge_has_no_monthly_reset() -> None:
    manager = QuotaManager(config=_small_plan(1))

    within = await manager.update_storage_usage("org-a", 1)
    over = await manager.update_storage_usage("org-a", 3)

    assert within.allowed is True
    assert over.allowed is False
    status = await manager.get_quota_status("org-a")
    assert status["storage"].reset_at is None
    assert status["storage"].used == 3


@pytest.mark.asyncio
async def test_plan_upgrade_keeps_usage() -> None:
    manager = QuotaManager()
    await manager.initialize_quota("org-a", "free")
    await manager.check_and_consume_quota("org-a", "search", amount=40)

    await manager.initialize_quota("org-a", "starter")

    counter = (await manager.get_quota_status("org-a"))["search"]
    assert counter.limit == 1_000
    assert counter.used == 40


@pytest.mark.asyncio
async def test_plan_upgrade_on_sqlite_store_returns_stored_counters(tmp_path) -> None:
    manager = QuotaManager(SqliteCounterStore(tmp_path / "quota.db"))
    await manager.initialize_quota("org-a", "free")
    await manager.check_and_consume_quota("org-a", "search", amount=40)

    counters = await manager.initialize_quota("org-a", "starter")

    search = next(counter for counter in counters if counter.resource == "search")
    assert (search.limit, search.used) == (1_000, 40)


@pytest.mark.asyncio
async def test_invalid_arguments_are_rejected() -> None:
    manager = QuotaManager()

    with pytest.raises(ValidationError):
        await manager.check_and_consume_quota("org-a", "tokens")
    with pytest.raises(ValidationError):
        await manager.check_and_consume_quota("org-a", "search", amount=0)
    with pytest.raises(ValidationError):
        await manager.check_and_consume_quota("", "search")
    with pytest.raises(ValidationError):
        await manager.initialize_quota("org-a", "platinum")


def test_period_boundaries() -> None:
    now = datetime(2024, 12, 15, 8, 30, tzinfo=timezone.utc)

    assert period_start(now) == datetime(2024, 12, 1, tzinfo=timezone.utc)
    assert next_period_start(now) == datetime(2025, 1, 1, tzinfo=timezone.utc)
