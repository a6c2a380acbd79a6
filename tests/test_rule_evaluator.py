from __future__ import annotations

import pytest

from conftest import NOW
from src.compliance.schemas.alerts import AlertType
from src.compliance.schemas.common import Severity
from src.compliance.schemas.rules import RuleType
from src.compliance.services.rule_evaluator import RULE_CHECKS, check_for, evaluate_rules


def test_check_lookup():
    assert check_for("not_a_rule_type") is None
    assert check_for(None) is None
    assert check_for(RuleType.maximum_hours.value) is RULE_CHECKS[RuleType.maximum_hours]
    # known but unevaluated types resolve to a no-op check
    assert check_for(RuleType.labor_law.value) is not None
    assert RuleType.labor_law not in RULE_CHECKS


@pytest.mark.anyio
async def test_missing_certification_per_staff_and_name(store, seed, staffing):
    bid = await seed.business()
    holder = await seed.user(bid, name="Ann")
    lacking = await seed.user(bid, name="Bob")
    await seed.certification(bid, holder, name="First Aid")
    await seed.certification(bid, holder, name="CPR")
    # an expired copy does not count as holding it
    await seed.certification(bid, lacking, name="CPR", expires_in_days=-3, status="expired")
    rid = await seed.rule(
        bid, "certification_requirement", severity="high", requiredCertifications=["First Aid", "CPR", "  "]
    )

    result = await evaluate_rules(store, staffing, bid, now=NOW)

    assert result.rules_evaluated == 1
    keys = sorted((f.user_id, f.related_entity_id) for f in result.findings)
    assert keys == sorted([(lacking, f"{rid}:First Aid"), (lacking, f"{rid}:CPR")])
    for f in result.findings:
        assert f.alert_type is AlertType.missing_certification
        assert f.severity is Severity.high
        assert f.rule_id == rid
        assert f.related_data.user_name == "Bob Doe"


@pytest.mark.anyio
async def test_maximum_hours_flags_only_staff_over_the_cap(store, seed, staffing):
    bid = await seed.business()
    over = await seed.user(bid, name="Over")
    at_cap = await seed.user(bid, name="Cap")
    staffing.hours[over] = 52.5
    staffing.hours[at_cap] = 40.0
    rid = await seed.rule(bid, "maximum_hours", maxWeeklyHours=40)

    result = await evaluate_rules(store, staffing, bid, now=NOW)

    assert len(result.findings) == 1
    finding = result.findings[0]
    assert finding.user_id == over
    assert finding.alert_type is AlertType.hours_violation
    assert finding.related_entity_id == rid
    assert finding.related_data.current_hours == 52.5
    assert finding.related_data.max_hours == 40.0


@pytest.mark.anyio
async def test_required_rest_flags_short_gaps(store, seed, staffing):
    bid = await seed.business()
    tired = await seed.user(bid, name="Tired")
    rested = await seed.user(bid, name="Rested")
    lone = await seed.user(bid, name="Lone")
    staffing.gaps[tired] = 8.0
    staffing.gaps[rested] = 11.0
    # no entry for lone: fewer than two shifts, infinite gap
    await seed.rule(bid, "required_rest", requiredRestHoursBetweenShifts=11)

    result = await evaluate_rules(store, staffing, bid, now=NOW)

    assert [f.user_id for f in result.findings] == [tired]
    assert result.findings[0].related_data.actual_rest_hours == 8.0
    assert lone not in [f.user_id for f in result.findings]


@pytest.mark.anyio
async def test_staffing_lookup_failure_is_isolated_per_user(store, seed, staffing):
    bid = await seed.business()
    broken = await seed.user(bid, name="Broken")
    over = await seed.user(bid, name="Over")
    staffing.hours[broken] = RuntimeError("shift service unavailable")
    staffing.hours[over] = 60.0
    await seed.rule(bid, "maximum_hours", maxWeeklyHours=48)

    result = await evaluate_rules(store, staffing, bid, now=NOW)

    assert result.errors == 1
    assert [f.user_id for f in result.findings] == [over]


@pytest.mark.anyio
async def test_inactive_deleted_unknown_and_unevaluated_rules(store, seed, staffing):
    bid = await seed.business()
    uid = await seed.user(bid)
    staffing.hours[uid] = 100.0
    await seed.rule(bid, "maximum_hours", maxWeeklyHours=10, isActive=False)
    await seed.rule(bid, "maximum_hours", maxWeeklyHours=10, isDeleted=True)
    await seed.rule(bid, "telepathy_requirement")
    await seed.rule(bid, "labor_law")
    # missing parameters mean nothing to check
    await seed.rule(bid, "maximum_hours")

    result = await evaluate_rules(store, staffing, bid, now=NOW)

    assert result.findings == []
    assert result.rules_evaluated == 2
    assert result.errors == 0


@pytest.mark.anyio
async def test_deleted_staff_are_not_evaluated(store, seed, staffing):
    bid = await seed.business()
    gone = await seed.user(bid, name="Gone", isDeleted=True)
    staffing.hours[gone] = 90.0
    await seed.rule(bid, "maximum_hours", maxWeeklyHours=40)

    result = await evaluate_rules(store, staffing, bid, now=NOW)

    assert result.findings == []
