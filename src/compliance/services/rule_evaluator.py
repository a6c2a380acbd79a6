from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from src.compliance.db.store import DocumentStore, EntityKind, doc_id
from src.compliance.schemas.alerts import AlertType, HoursViolationData, MissingCertificationData, RestViolationData
from src.compliance.schemas.common import Severity, utc_now
from src.compliance.schemas.rules import RuleType
from src.compliance.services.certification_evaluator import EVALUATED_STATUSES, staff_display_name
from src.compliance.services.collaborators import StaffingDataProvider
from src.compliance.services.findings import Finding

logger = logging.getLogger(__name__)


@dataclass
class RuleContext:
    """Per-pass context shared by every rule check of one tenant."""

    store: DocumentStore
    staffing: StaffingDataProvider
    business_id: str
    now: datetime
    errors: int = 0
    _staff: Optional[List[dict]] = None

    async def staff(self) -> List[dict]:
        if self._staff is None:
            self._staff = await self.store.find(EntityKind.user, {"businessId": self.business_id, "isDeleted": False})
        return self._staff


RuleCheck = Callable[[RuleContext, dict], Awaitable[List[Finding]]]

RULE_CHECKS: Dict[RuleType, RuleCheck] = {}


def register_rule_check(rule_type: RuleType) -> Callable[[RuleCheck], RuleCheck]:
    """Register the check function evaluated for ``rule_type``."""

    def _decorator(fn: RuleCheck) -> RuleCheck:
        RULE_CHECKS[rule_type] = fn
        return fn

    return _decorator


async def _not_implemented(ctx: RuleContext, rule: dict) -> List[Finding]:
    logger.info("Rule type %s not implemented yet (rule=%s business=%s)", rule.get("type"), doc_id(rule), ctx.business_id)
    return []


def check_for(rule_type: object) -> Optional[RuleCheck]:
    """Check function for a stored rule type; None for types this build does not recognize."""
    try:
        parsed = RuleType(rule_type)
    except ValueError:
        return None
    return RULE_CHECKS.get(parsed, _not_implemented)


def _rule_severity(rule: dict) -> Severity:
    try:
        return Severity(rule.get("severity") or Severity.medium.value)
    except ValueError:
        return Severity.medium


def _positive_number(value: object) -> Optional[float]:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


@register_rule_check(RuleType.certification_requirement)
async def _check_certification_requirement(ctx: RuleContext, rule: dict) -> List[Finding]:
    names = [n.strip() for n in (rule.get("requiredCertifications") or []) if isinstance(n, str) and n.strip()]
    if not names:
        return []

    rule_id = doc_id(rule)
    findings: List[Finding] = []
    for staff in await ctx.staff():
        user_id = doc_id(staff)
        for cert_name in names:
            held = await ctx.store.find_one(
                EntityKind.certification,
                {
                    "userId": user_id,
                    "businessId": ctx.business_id,
                    "name": cert_name,
                    "status": {"$in": EVALUATED_STATUSES},
                    "isDeleted": False,
                },
            )
            if held is not None:
                continue
            findings.append(
                Finding(
                    business_id=ctx.business_id,
                    user_id=user_id,
                    alert_type=AlertType.missing_certification,
                    related_entity_id=f"{rule_id}:{cert_name}",
                    severity=_rule_severity(rule),
                    rule_id=rule_id,
                    related_data=MissingCertificationData(
                        rule_id=rule_id,
                        rule_name=rule.get("name") or "",
                        certification_name=cert_name,
                        user_name=staff_display_name(staff),
                        user_email=staff.get("email"),
                    ),
                )
            )
    return findings


@register_rule_check(RuleType.maximum_hours)
async def _check_maximum_hours(ctx: RuleContext, rule: dict) -> List[Finding]:
    max_hours = _positive_number(rule.get("maxWeeklyHours"))
    if max_hours is None:
        return []

    rule_id = doc_id(rule)
    findings: List[Finding] = []
    for staff in await ctx.staff():
        user_id = doc_id(staff)
        try:
            hours = float(await ctx.staffing.weekly_hours(user_id, ctx.business_id))
        except Exception:
            ctx.errors += 1
            logger.exception("Weekly hours lookup failed business=%s rule=%s user=%s", ctx.business_id, rule_id, user_id)
            continue
        if hours <= max_hours:
            continue
        findings.append(
            Finding(
                business_id=ctx.business_id,
                user_id=user_id,
                alert_type=AlertType.hours_violation,
                related_entity_id=rule_id,
                severity=_rule_severity(rule),
                rule_id=rule_id,
                related_data=HoursViolationData(
                    rule_id=rule_id,
                    rule_name=rule.get("name") or "",
                    max_hours=max_hours,
                    current_hours=hours,
                    user_name=staff_display_name(staff),
                    user_email=staff.get("email"),
                ),
            )
        )
    return findings


@register_rule_check(RuleType.required_rest)
async def _check_required_rest(ctx: RuleContext, rule: dict) -> List[Finding]:
    required = _positive_number(rule.get("requiredRestHoursBetweenShifts"))
    if required is None:
        return []

    rule_id = doc_id(rule)
    findings: List[Finding] = []
    for staff in await ctx.staff():
        user_id = doc_id(staff)
        try:
            gap = float(await ctx.staffing.inter_shift_gap(user_id, ctx.business_id))
        except Exception:
            ctx.errors += 1
            logger.exception("Rest gap lookup failed business=%s rule=%s user=%s", ctx.business_id, rule_id, user_id)
            continue
        if gap >= required:
            continue
        findings.append(
            Finding(
                business_id=ctx.business_id,
                user_id=user_id,
                alert_type=AlertType.rest_violation,
                related_entity_id=rule_id,
                severity=_rule_severity(rule),
                rule_id=rule_id,
                related_data=RestViolationData(
                    rule_id=rule_id,
                    rule_name=rule.get("name") or "",
                    required_rest_hours=required,
                    actual_rest_hours=gap,
                    user_name=staff_display_name(staff),
                    user_email=staff.get("email"),
                ),
            )
        )
    return findings


@dataclass
class RuleEvaluation:
    """Outcome of evaluating every active rule of a tenant."""

    findings: List[Finding] = field(default_factory=list)
    rules_evaluated: int = 0
    errors: int = 0


# PUBLIC_INTERFACE
async def evaluate_rules(
    store: DocumentStore,
    staffing: StaffingDataProvider,
    business_id: str,
    now: Optional[datetime] = None,
) -> RuleEvaluation:
    """
    Evaluate all active, non-deleted rules of a tenant.

    Each rule runs independently: an unknown type is logged and skipped, and a failing check
    is logged without affecting the remaining rules.
    """
    ctx = RuleContext(store=store, staffing=staffing, business_id=business_id, now=now or utc_now())
    result = RuleEvaluation()

    rules = await store.find(EntityKind.rule, {"businessId": business_id, "isActive": True, "isDeleted": False})
    logger.info("Processing %s compliance rules for business %s", len(rules), business_id)

    for rule in rules:
        check = check_for(rule.get("type"))
        if check is None:
            logger.warning("Unknown rule type %r for rule=%s business=%s; skipping", rule.get("type"), doc_id(rule), business_id)
            continue
        try:
            findings = await check(ctx, rule)
        except Exception:
            result.errors += 1
            logger.exception("Error processing rule=%s type=%s business=%s", doc_id(rule), rule.get("type"), business_id)
            continue
        result.rules_evaluated += 1
        result.findings.extend(findings)

    result.errors += ctx.errors
    return result
