from __future__ import annotations

import asyncio

import pytest

from conftest import NOW
from src.compliance.db.store import EntityKind
from src.compliance.errors import AgentAccessDeniedError, NotFoundError
from src.compliance.services.alert_manager import AlertLifecycleManager
from src.compliance.services.orchestrator import ComplianceOrchestrator


@pytest.fixture
def orchestrator(store, staffing, notifier, permissions) -> ComplianceOrchestrator:
    alerts = AlertLifecycleManager(store, notifier, clock=lambda: NOW)
    return ComplianceOrchestrator(store, alerts, staffing, permissions, default_warning_days=30, clock=lambda: NOW)


@pytest.mark.anyio
async def test_full_pass_creates_alerts_from_both_evaluators(orchestrator, store, seed, staffing):
    bid = await seed.business()
    uid = await seed.user(bid)
    await seed.certification(bid, uid, name="First Aid", expires_in_days=-1)
    await seed.rule(bid, "maximum_hours", severity="high", maxWeeklyHours=40)
    staffing.hours[uid] = 55

    result = await orchestrator.run_pass(bid)

    assert not result.skipped
    assert result.findings == 2
    assert result.outcomes == {"created": 2}
    types = sorted(a["type"] for a in store.all(EntityKind.alert))
    assert types == ["certification_expiry", "hours_violation"]


@pytest.mark.anyio
async def test_repeated_passes_are_idempotent(orchestrator, store, seed, staffing):
    bid = await seed.business()
    uid = await seed.user(bid)
    await seed.rule(bid, "certification_requirement", requiredCertifications=["CPR"])
    await seed.rule(bid, "required_rest", requiredRestHoursBetweenShifts=11)
    staffing.gaps[uid] = 6

    await orchestrator.run_pass(bid)
    second = await orchestrator.run_pass(bid)

    assert second.outcomes == {"unchanged": 2}
    assert len(store.all(EntityKind.alert)) == 2


@pytest.mark.anyio
async def test_warning_days_come_from_tenant_configuration(orchestrator, store, seed):
    bid = await seed.business()
    uid = await seed.user(bid)
    await seed.agent_config(bid, warning_days=60)
    await seed.certification(bid, uid, expires_in_days=45)

    assert await orchestrator.warning_days_for(bid) == 60
    result = await orchestrator.run_pass(bid)

    assert result.outcomes == {"created": 1}
    assert await orchestrator.warning_days_for("no-config-business") == 30


@pytest.mark.anyio
async def test_no_access_skips_background_pass_but_fails_manual_check(orchestrator, store, seed, permissions):
    bid = await seed.business()
    uid = await seed.user(bid)
    await seed.certification(bid, uid, expires_in_days=-1)
    permissions.denied.add(bid)

    result = await orchestrator.run_pass(bid)
    assert result.skipped and result.reason == "no_access"
    assert store.all(EntityKind.alert) == []

    with pytest.raises(AgentAccessDeniedError):
        await orchestrator.run_manual_check(bid)


@pytest.mark.anyio
async def test_manual_check_on_missing_business_is_not_found(orchestrator, permissions):
    permissions.missing.add("ghost")
    with pytest.raises(NotFoundError):
        await orchestrator.run_manual_check("ghost")


@pytest.mark.anyio
async def test_manual_check_returns_active_count(orchestrator, store, seed, staffing):
    bid = await seed.business()
    a = await seed.user(bid, name="A")
    b = await seed.user(bid, name="B")
    staffing.hours[a] = 70
    staffing.hours[b] = 71
    await seed.rule(bid, "maximum_hours", maxWeeklyHours=48)

    check = await orchestrator.run_manual_check(bid)

    assert check.active_alert_count == 2
    assert not check.pass_result.skipped


@pytest.mark.anyio
async def test_overlapping_pass_for_same_tenant_is_skipped(orchestrator, seed, staffing):
    bid = await seed.business()
    await seed.user(bid)
    await seed.rule(bid, "maximum_hours", maxWeeklyHours=40)

    gate = asyncio.Event()
    entered = asyncio.Event()

    async def _slow_hours(user_id, business_id):
        entered.set()
        await gate.wait()
        return 10.0

    staffing.weekly_hours = _slow_hours  # type: ignore[method-assign]

    first = asyncio.create_task(orchestrator.run_pass(bid))
    await entered.wait()
    second = await orchestrator.run_pass(bid)
    gate.set()
    done = await first

    assert second.skipped and second.reason == "in_flight"
    assert not done.skipped


@pytest.mark.anyio
async def test_reconcile_failure_is_contained_per_finding(orchestrator, store, seed, monkeypatch):
    bid = await seed.business()
    uid = await seed.user(bid)
    await seed.certification(bid, uid, name="A", expires_in_days=-1)
    await seed.certification(bid, uid, name="B", expires_in_days=-1)

    original = orchestrator._alerts.reconcile
    seen = {"n": 0}

    async def _flaky(finding):
        seen["n"] += 1
        if seen["n"] == 1:
            raise RuntimeError("write conflict")
        return await original(finding)

    monkeypatch.setattr(orchestrator._alerts, "reconcile", _flaky)
    result = await orchestrator.run_pass(bid)

    assert result.errors == 1
    assert result.outcomes == {"created": 1}


@pytest.mark.anyio
async def test_certification_sweep_ignores_rules(orchestrator, store, seed, staffing, permissions):
    bid = await seed.business()
    uid = await seed.user(bid)
    await seed.certification(bid, uid, expires_in_days=5)
    await seed.rule(bid, "maximum_hours", maxWeeklyHours=1)
    staffing.hours[uid] = 90

    result = await orchestrator.run_certification_sweep(bid)

    assert result.outcomes == {"created": 1}
    assert [a["type"] for a in store.all(EntityKind.alert)] == ["certification_expiry"]
    assert permissions.calls == 1


@pytest.mark.anyio
async def test_failed_certification_alert_is_raised_by_the_next_pass(orchestrator, store, seed, monkeypatch):
    bid = await seed.business()
    uid = await seed.user(bid)
    cid = await seed.certification(bid, uid, expires_in_days=-1)
    original = orchestrator._alerts.reconcile

    async def _down(finding):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(orchestrator._alerts, "reconcile", _down)
    first = await orchestrator.run_pass(bid)
    assert first.errors == 1
    assert store.all(EntityKind.alert) == []
    assert (await store.get_by_id(EntityKind.certification, cid))["status"] == "active"

    monkeypatch.setattr(orchestrator._alerts, "reconcile", original)
    second = await orchestrator.run_pass(bid)

    assert second.outcomes == {"created": 1}
    [alert] = store.all(EntityKind.alert)
    assert alert["relatedEntityId"] == cid
    assert alert["severity"] == "high"
    assert (await store.get_by_id(EntityKind.certification, cid))["status"] == "expired"


@pytest.mark.anyio
async def test_manual_check_reports_when_a_pass_is_already_running(orchestrator, seed, staffing):
    bid = await seed.business()
    await seed.user(bid)
    await seed.rule(bid, "maximum_hours", maxWeeklyHours=40)

    gate = asyncio.Event()
    entered = asyncio.Event()

    async def _slow_hours(user_id, business_id):
        entered.set()
        await gate.wait()
        return 10.0

    staffing.weekly_hours = _slow_hours  # type: ignore[method-assign]

    background = asyncio.create_task(orchestrator.run_pass(bid))
    await entered.wait()
    check = await orchestrator.run_manual_check(bid)
    gate.set()
    await background

    assert check.pass_result.skipped
    assert check.pass_result.reason == "in_flight"
    assert check.active_alert_count == 0
