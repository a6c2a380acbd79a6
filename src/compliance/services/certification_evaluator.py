from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from src.compliance.db.store import DocumentStore, EntityKind, doc_id
from src.compliance.schemas.alerts import AlertType, CertificationExpiryData
from src.compliance.schemas.certifications import CertificationStatus
from src.compliance.schemas.common import Severity, as_utc, utc_now
from src.compliance.services.findings import Finding

logger = logging.getLogger(__name__)

# Receives each finding before the status change behind it is written.
PublishFinding = Callable[[Finding], Awaitable[object]]

EVALUATED_STATUSES = [CertificationStatus.active.value, CertificationStatus.expiring_soon.value]


# PUBLIC_INTERFACE
def status_for_expiry(expiry_date: datetime, warning_days: int, now: Optional[datetime] = None) -> CertificationStatus:
    """Status implied by an expiry date: expired if past, expiring_soon inside the warning window, else active."""
    now = now or utc_now()
    expiry = as_utc(expiry_date)
    if expiry < now:
        return CertificationStatus.expired
    if expiry <= now + timedelta(days=max(0, int(warning_days))):
        return CertificationStatus.expiring_soon
    return CertificationStatus.active


def days_until(expiry_date: datetime, now: datetime) -> int:
    """Whole days from now until expiry (negative once expired)."""
    return (as_utc(expiry_date) - now).days


def staff_display_name(user: dict) -> str:
    name = f"{user.get('name') or ''} {user.get('surname') or ''}".strip()
    return name or user.get("email") or doc_id(user)


@dataclass
class CertificationEvaluation:
    """Outcome of one certification scan for a tenant."""

    findings: List[Finding] = field(default_factory=list)
    status_writes: int = 0
    errors: int = 0


class _UserLookup:
    def __init__(self, store: DocumentStore):
        self._store = store
        self._cache: Dict[str, Optional[dict]] = {}

    async def get(self, user_id: str) -> Optional[dict]:
        if user_id not in self._cache:
            self._cache[user_id] = await self._store.get_by_id(EntityKind.user, user_id)
        return self._cache[user_id]


def _expiry_finding(business_id: str, cert: dict, user: dict, is_expired: bool, now: datetime) -> Finding:
    expiry = as_utc(cert["expiryDate"])
    return Finding(
        business_id=business_id,
        user_id=str(cert.get("userId") or ""),
        alert_type=AlertType.certification_expiry,
        related_entity_id=doc_id(cert),
        severity=Severity.high if is_expired else Severity.medium,
        due_date=now if is_expired else expiry,
        related_data=CertificationExpiryData(
            certification_id=doc_id(cert),
            certification_name=cert.get("name") or "",
            expiry_date=expiry,
            days_remaining=max(0, days_until(expiry, now)),
            is_expired=is_expired,
            user_name=staff_display_name(user),
            user_email=user.get("email"),
        ),
    )


async def _evaluate_one(
    store: DocumentStore,
    users: _UserLookup,
    business_id: str,
    cert: dict,
    warning_days: int,
    now: datetime,
    result: CertificationEvaluation,
    publish: Optional[PublishFinding],
) -> None:
    current = cert.get("status")
    target = status_for_expiry(cert["expiryDate"], warning_days, now)
    if target is CertificationStatus.active or target.value == current:
        return

    # The status only moves once the finding is out; otherwise the next pass retries.
    user = await users.get(str(cert.get("userId") or ""))
    if user is None:
        logger.warning(
            "User not found for certification %s (business=%s); status left at %s", doc_id(cert), business_id, current
        )
        return
    finding = _expiry_finding(business_id, cert, user, target is CertificationStatus.expired, now)
    if publish is not None:
        await publish(finding)
    result.findings.append(finding)

    # Conditional on the status we read so a concurrent re-date is never overwritten.
    updated = await store.update_by_id(
        EntityKind.certification,
        doc_id(cert),
        {"status": target.value, "updatedAt": now},
        expected={"status": current, "isDeleted": False},
    )
    if updated is None:
        logger.info("Certification %s changed during evaluation; status not advanced", doc_id(cert))
        return
    result.status_writes += 1


async def _escalation_findings(
    store: DocumentStore,
    users: _UserLookup,
    business_id: str,
    now: datetime,
    result: CertificationEvaluation,
    publish: Optional[PublishFinding],
) -> None:
    """Expired certifications whose open expiry alert is still below high severity."""
    stale_alerts = await store.find(
        EntityKind.alert,
        {
            "businessId": business_id,
            "type": AlertType.certification_expiry.value,
            "isOpen": True,
            "severityRank": {"$lt": Severity.high.rank},
        },
    )
    already_reported = {f.related_entity_id for f in result.findings}
    for alert in stale_alerts:
        cert_id = alert.get("relatedEntityId")
        if cert_id in already_reported:
            continue
        try:
            cert = await store.get_by_id(EntityKind.certification, cert_id)
            if not cert or cert.get("isDeleted") or cert.get("status") != CertificationStatus.expired.value:
                continue
            user = await users.get(str(cert.get("userId") or ""))
            if user is None:
                logger.warning("User not found for certification %s (business=%s)", cert_id, business_id)
                continue
            finding = _expiry_finding(business_id, cert, user, True, now)
            if publish is not None:
                await publish(finding)
            result.findings.append(finding)
        except Exception:
            result.errors += 1
            logger.exception("Escalation check failed for business=%s certification=%s", business_id, cert_id)


# PUBLIC_INTERFACE
async def evaluate_certifications(
    store: DocumentStore,
    business_id: str,
    warning_days: int,
    now: Optional[datetime] = None,
    publish: Optional[PublishFinding] = None,
) -> CertificationEvaluation:
    """
    Advance certification statuses for one tenant and report expiry findings.

    - active/expiring_soon past expiry -> expired (high finding)
    - active inside the warning window -> expiring_soon (medium finding)
    - anything else is left alone, so repeated passes write nothing new

    When ``publish`` is given each finding is handed to it first and the status is written only
    after it returns, so a failed publish (or an unknown staff member) leaves the certification
    where it was for the next pass to pick up again.

    Failures are contained per certification.
    """
    now = now or utc_now()
    result = CertificationEvaluation()
    users = _UserLookup(store)

    certs = await store.find(
        EntityKind.certification,
        {"businessId": business_id, "status": {"$in": EVALUATED_STATUSES}, "isDeleted": False},
    )
    logger.info("Processing %s certifications for business %s", len(certs), business_id)

    for cert in certs:
        try:
            await _evaluate_one(store, users, business_id, cert, warning_days, now, result, publish)
        except Exception:
            result.errors += 1
            logger.exception(
                "Certification check failed for business=%s certification=%s user=%s",
                business_id,
                doc_id(cert),
                cert.get("userId"),
            )

    await _escalation_findings(store, users, business_id, now, result, publish)
    return result
