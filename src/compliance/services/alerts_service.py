from __future__ import annotations

import logging
from datetime import timedelta
from typing import Dict, List, Optional

from fastapi import Request

from src.compliance.db.store import EntityKind, doc_id
from src.compliance.schemas.alerts import (
    OPEN_ALERT_STATUSES,
    AlertCounts,
    AlertFilters,
    AlertOut,
    AlertStatus,
    CertificationCounts,
    ComplianceSummaryOut,
    UpcomingExpiration,
)
from src.compliance.schemas.certifications import CertificationStatus
from src.compliance.schemas.common import Severity, as_utc, utc_now
from src.compliance.services.certification_evaluator import EVALUATED_STATUSES, days_until
from src.compliance.state import get_state

logger = logging.getLogger(__name__)

# Statuses reported in the summary; dismissed alerts are left out.
_SUMMARY_ALERT_STATUSES = (AlertStatus.active, AlertStatus.acknowledged, AlertStatus.resolved)


def _doc_to_out(doc: dict) -> AlertOut:
    related = doc.get("relatedData")
    return AlertOut(
        id=doc_id(doc),
        businessId=str(doc["businessId"]),
        userId=doc.get("userId"),
        ruleId=doc.get("ruleId"),
        type=doc["type"],
        title=doc.get("title") or "",
        description=doc.get("description") or "",
        severity=doc.get("severity") or Severity.medium.value,
        status=doc["status"],
        dueDate=doc.get("dueDate"),
        relatedData=related if related and related.get("kind") else None,
        acknowledgedBy=doc.get("acknowledgedBy"),
        acknowledgedAt=doc.get("acknowledgedAt"),
        resolvedBy=doc.get("resolvedBy"),
        resolvedAt=doc.get("resolvedAt"),
        resolutionNotes=doc.get("resolutionNotes"),
        createdAt=doc.get("createdAt"),
        updatedAt=doc.get("updatedAt"),
    )


# PUBLIC_INTERFACE
async def list_business_alerts(request: Request, business_id: str, filters: Optional[AlertFilters] = None) -> List[AlertOut]:
    """Alerts for a business, most severe and newest first. Open alerts only unless a status is given."""
    docs = await get_state(request.app).alerts.get_business_alerts(business_id, filters)
    return [_doc_to_out(d) for d in docs]


# PUBLIC_INTERFACE
async def get_alert(request: Request, alert_id: str) -> AlertOut:
    return _doc_to_out(await get_state(request.app).alerts.get_alert(alert_id))


# PUBLIC_INTERFACE
async def acknowledge_alert(request: Request, alert_id: str, user_id: str) -> AlertOut:
    return _doc_to_out(await get_state(request.app).alerts.acknowledge(alert_id, user_id))


# PUBLIC_INTERFACE
async def resolve_alert(request: Request, alert_id: str, user_id: str, notes: str = "") -> AlertOut:
    return _doc_to_out(await get_state(request.app).alerts.resolve(alert_id, user_id, notes))


# PUBLIC_INTERFACE
async def dismiss_alert(request: Request, alert_id: str, user_id: str, reason: str) -> AlertOut:
    return _doc_to_out(await get_state(request.app).alerts.dismiss(alert_id, user_id, reason))


def _staff_name(user: Optional[dict]) -> str:
    if not user:
        return "Unknown"
    name = f"{user.get('name') or ''} {user.get('surname') or ''}".strip()
    return name or "Unknown"


# PUBLIC_INTERFACE
async def get_compliance_summary(request: Request, business_id: str) -> ComplianceSummaryOut:
    """
    Aggregated view of a business's compliance state.

    Alert counts by status leave out dismissed alerts; counts by severity cover open alerts only.
    Upcoming expirations list the soonest-expiring active/expiring certifications within the
    configured horizon.
    """
    state = get_state(request.app)
    store = state.store
    cfg = state.config
    now = utc_now()

    by_status: Dict[str, int] = {}
    for s in _SUMMARY_ALERT_STATUSES:
        by_status[s.value] = await store.count(EntityKind.alert, {"businessId": business_id, "status": s.value})

    open_values = [s.value for s in OPEN_ALERT_STATUSES]
    by_severity: Dict[str, int] = {}
    for sev in Severity:
        by_severity[sev.value] = await store.count(
            EntityKind.alert, {"businessId": business_id, "status": {"$in": open_values}, "severity": sev.value}
        )

    cert_by_status: Dict[str, int] = {}
    for cs in CertificationStatus:
        cert_by_status[cs.value] = await store.count(
            EntityKind.certification, {"businessId": business_id, "status": cs.value, "isDeleted": False}
        )

    expiring = await store.find(
        EntityKind.certification,
        {
            "businessId": business_id,
            "status": {"$in": EVALUATED_STATUSES},
            "expiryDate": {"$lte": now + timedelta(days=cfg.summary_upcoming_days)},
            "isDeleted": False,
        },
        sort=[("expiryDate", 1)],
        limit=cfg.summary_upcoming_limit,
    )
    upcoming: List[UpcomingExpiration] = []
    for cert in expiring:
        user = await store.get_by_id(EntityKind.user, cert.get("userId"))
        upcoming.append(
            UpcomingExpiration(
                id=doc_id(cert),
                name=cert.get("name") or "",
                staffName=_staff_name(user),
                expiryDate=as_utc(cert["expiryDate"]),
                daysRemaining=days_until(cert["expiryDate"], now),
            )
        )

    return ComplianceSummaryOut(
        alerts=AlertCounts(byStatus=by_status, bySeverity=by_severity, total=sum(by_status.values())),
        certifications=CertificationCounts(
            byStatus=cert_by_status,
            total=sum(cert_by_status.values()),
            upcomingExpirations=upcoming,
        ),
    )
