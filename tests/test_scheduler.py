from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from src.compliance.db.store import EntityKind
from src.compliance.schemas.agent_config import COMPLIANCE_AGENT_TYPE
from src.compliance.services.scheduler import JobSchedule, TenantScheduler


@dataclass(frozen=True)
class FastSchedule(JobSchedule):
    """Fires every ``interval`` seconds so recurrence can be observed in tests."""

    interval: float = 0.02

    def next_fire_after(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.interval)


class FakeOrchestrator:
    def __init__(self, store) -> None:
        self.store = store
        self.passes: List[str] = []
        self.sweeps: List[str] = []
        self.fail = False
        self.block: Optional[asyncio.Event] = None

    async def load_configuration(self, business_id: str):
        return await self.store.find_one(
            EntityKind.agent_configuration, {"businessId": business_id, "agentType": COMPLIANCE_AGENT_TYPE}
        )

    async def run_pass(self, business_id: str):
        self.passes.append(business_id)
        if self.block is not None:
            await self.block.wait()
        if self.fail:
            raise RuntimeError("pass blew up")

    async def run_certification_sweep(self, business_id: str):
        self.sweeps.append(business_id)


async def _eventually(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def orchestrator(store) -> FakeOrchestrator:
    return FakeOrchestrator(store)


@pytest.fixture
async def scheduler(store, orchestrator):
    sched = TenantScheduler(
        store,
        orchestrator,  # type: ignore[arg-type]
        schedule_factory=lambda hours: FastSchedule(hours),
        sweep_schedule=FastSchedule(24, interval=0.03),
    )
    yield sched
    await sched.shutdown(timeout=1.0)


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_schedule_from_frequency_and_cron_description():
    assert JobSchedule.from_frequency(24).describe() == "0 0 * * *"
    assert JobSchedule.from_frequency(48).frequency_hours == 24
    assert JobSchedule.from_frequency(6).describe() == "0 */6 * * *"
    assert JobSchedule.from_frequency(0).frequency_hours == 1
    assert JobSchedule.from_frequency(-3).describe() == "0 */1 * * *"


def test_schedule_next_fire_times():
    every_four = JobSchedule.from_frequency(4)
    assert every_four.next_fire_after(_utc(2026, 3, 4, 10, 30)) == _utc(2026, 3, 4, 12)
    # strictly after: firing exactly on a boundary moves to the next one
    assert every_four.next_fire_after(_utc(2026, 3, 4, 12)) == _utc(2026, 3, 4, 16)

    every_five = JobSchedule.from_frequency(5)
    assert every_five.next_fire_after(_utc(2026, 3, 4, 22, 10)) == _utc(2026, 3, 5, 0)

    daily = JobSchedule.from_frequency(24)
    assert daily.next_fire_after(_utc(2026, 3, 4, 10, 30)) == _utc(2026, 3, 5, 0)
    assert daily.next_fire_after(_utc(2026, 3, 4, 23, 59, 59)) == _utc(2026, 3, 5, 0)

    sweep = JobSchedule(24, anchor_hour=2)
    assert sweep.describe() == "0 2 * * *"
    assert sweep.next_fire_after(_utc(2026, 3, 4, 1, 0)) == _utc(2026, 3, 4, 2)


@pytest.mark.anyio
async def test_initialize_schedules_enabled_tenants_once(scheduler, seed):
    a = await seed.business()
    b = await seed.business()
    c = await seed.business()
    await seed.agent_config(a, frequency=6)
    await seed.agent_config(b, frequency=24)
    await seed.agent_config(c, enabled=False)

    assert await scheduler.initialize() == 2
    assert await scheduler.initialize() == 2
    assert scheduler.jobs() == {a: 6, b: 24}


@pytest.mark.anyio
async def test_jobs_fire_repeatedly_and_survive_failures(scheduler, seed, orchestrator):
    bid = await seed.business()
    await seed.agent_config(bid, frequency=1)
    orchestrator.fail = True

    assert await scheduler.reconcile(bid) is True
    await _eventually(lambda: len(orchestrator.passes) >= 3)

    assert set(orchestrator.passes) == {bid}


@pytest.mark.anyio
async def test_reconcile_follows_configuration_changes(scheduler, seed, store):
    bid = await seed.business()
    cfg_id = await seed.agent_config(bid, frequency=6)

    assert await scheduler.reconcile(bid) is True
    assert scheduler.jobs() == {bid: 6}

    await store.update_by_id(EntityKind.agent_configuration, cfg_id, {"monitoringFrequencyHours": 2})
    assert await scheduler.reconcile(bid) is True
    assert scheduler.jobs() == {bid: 2}

    await store.update_by_id(EntityKind.agent_configuration, cfg_id, {"isEnabled": False})
    assert await scheduler.reconcile(bid) is False
    assert scheduler.jobs() == {}

    # disabling an unscheduled tenant is a no-op
    assert await scheduler.reconcile(bid) is False
    assert await scheduler.reconcile("never-configured") is False


@pytest.mark.anyio
async def test_invalid_new_schedule_keeps_the_running_job(store, seed, orchestrator):
    def _factory(hours: int) -> JobSchedule:
        if hours == 13:
            raise ValueError("unsupported cadence")
        return FastSchedule(hours, interval=60)

    sched = TenantScheduler(store, orchestrator, schedule_factory=_factory)  # type: ignore[arg-type]
    try:
        bid = await seed.business()
        cfg_id = await seed.agent_config(bid, frequency=6)
        await sched.reconcile(bid)

        await store.update_by_id(EntityKind.agent_configuration, cfg_id, {"monitoringFrequencyHours": 13})
        assert await sched.reconcile(bid) is True
        assert sched.jobs() == {bid: 6}
    finally:
        await sched.shutdown(timeout=1.0)


@pytest.mark.anyio
async def test_stopping_a_job_lets_the_running_pass_finish_without_restart(scheduler, seed, store, orchestrator):
    bid = await seed.business()
    cfg_id = await seed.agent_config(bid, frequency=1)
    orchestrator.block = asyncio.Event()

    await scheduler.reconcile(bid)
    await _eventually(lambda: len(orchestrator.passes) == 1)

    await store.update_by_id(EntityKind.agent_configuration, cfg_id, {"isEnabled": False})
    await scheduler.reconcile(bid)
    orchestrator.block.set()
    await asyncio.sleep(0.1)

    assert orchestrator.passes == [bid]
    assert scheduler.jobs() == {}


@pytest.mark.anyio
async def test_concurrent_reconciles_leave_a_single_job(scheduler, seed):
    bid = await seed.business()
    await seed.agent_config(bid, frequency=3)

    results = await asyncio.gather(*[scheduler.reconcile(bid) for _ in range(5)])

    assert all(results)
    assert scheduler.jobs() == {bid: 3}
    assert len(scheduler.job_details()) == 1


@pytest.mark.anyio
async def test_global_sweep_runs_certifications_for_enabled_tenants(scheduler, seed, orchestrator):
    on = await seed.business()
    off = await seed.business()
    await seed.agent_config(on)
    await seed.agent_config(off, enabled=False)

    scheduler.start()
    scheduler.start()
    assert scheduler.is_sweep_running
    await _eventually(lambda: len(orchestrator.sweeps) >= 2)

    assert set(orchestrator.sweeps) == {on}


@pytest.mark.anyio
async def test_shutdown_stops_jobs_and_sweep(store, seed, orchestrator):
    sched = TenantScheduler(
        store, orchestrator, schedule_factory=lambda hours: FastSchedule(hours)  # type: ignore[arg-type]
    )
    bid = await seed.business()
    await seed.agent_config(bid, frequency=1)
    await sched.initialize()
    sched.start()

    await sched.shutdown(timeout=1.0)
    fired = len(orchestrator.passes)
    await asyncio.sleep(0.1)

    assert sched.jobs() == {}
    assert not sched.is_sweep_running
    assert len(orchestrator.passes) == fired
