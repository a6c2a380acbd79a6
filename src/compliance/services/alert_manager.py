from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from src.compliance.db.store import DocumentStore, EntityKind, doc_id
from src.compliance.errors import DuplicateRecordError, InvalidTransitionError, NotFoundError
from src.compliance.schemas.alerts import (
    OPEN_ALERT_STATUSES,
    AlertFilters,
    AlertStatus,
    CertificationExpiryData,
    HoursViolationData,
    MissingCertificationData,
    RestViolationData,
)
from src.compliance.schemas.common import Severity, utc_now
from src.compliance.services.collaborators import NotificationDispatcher
from src.compliance.services.findings import Finding

logger = logging.getLogger(__name__)

_OPEN_STATUS_VALUES = [s.value for s in OPEN_ALERT_STATUSES]

# relatedData fields that later passes may refresh in place, by payload kind.
_MEASURED_FIELDS = {"hours_violation": "currentHours", "rest_violation": "actualRestHours"}

_PRIORITY = {Severity.low: "low", Severity.medium: "normal", Severity.high: "high", Severity.critical: "urgent"}


class ReconcileOutcome(str, Enum):
    created = "created"
    escalated = "escalated"
    refreshed = "refreshed"
    unchanged = "unchanged"


def _hours(v: float) -> str:
    return f"{round(float(v), 2):g}"


def render_alert_text(finding: Finding) -> Tuple[str, str]:
    """Title and description for a finding, derived from its typed payload."""
    data = finding.related_data
    if isinstance(data, CertificationExpiryData):
        expiry = data.expiry_date.strftime("%Y-%m-%d")
        if data.is_expired:
            return (
                f"EXPIRED: {data.certification_name} certification",
                f"{data.certification_name} certification for {data.user_name} has expired on {expiry}. "
                "Staff member cannot be assigned to tasks requiring this certification.",
            )
        return (
            f"EXPIRING SOON: {data.certification_name} certification",
            f"{data.certification_name} certification for {data.user_name} will expire on {expiry} "
            f"({data.days_remaining} days remaining). Please ensure timely renewal.",
        )
    if isinstance(data, MissingCertificationData):
        return (
            f"Missing Required Certification: {data.certification_name}",
            f'{data.user_name} is missing the required "{data.certification_name}" certification needed for '
            f'compliance with "{data.rule_name}" rule.',
        )
    if isinstance(data, HoursViolationData):
        return (
            "Maximum Weekly Hours Exceeded",
            f"{data.user_name} is scheduled for {_hours(data.current_hours)} hours this week, which exceeds the "
            f"maximum {_hours(data.max_hours)} hours limit.",
        )
    if isinstance(data, RestViolationData):
        return (
            "Insufficient Rest Between Shifts",
            f"{data.user_name} has only {_hours(data.actual_rest_hours)} hours of rest between shifts, below the "
            f"required {_hours(data.required_rest_hours)} hours.",
        )
    raise TypeError(f"unsupported related data: {type(data).__name__}")


def _severity_of(alert: dict) -> Severity:
    try:
        return Severity(alert.get("severity"))
    except ValueError:
        return Severity.medium


class AlertLifecycleManager:
    """
    Turns findings into alert state while keeping at most one open alert per deduplication key.

    Reconciliation for a key is serialized in-process; across processes the partial unique index
    on ``dedupKey`` turns a lost create race into an update of the winning record.
    """

    def __init__(
        self,
        store: DocumentStore,
        notifier: Optional[NotificationDispatcher] = None,
        *,
        refresh_tolerance: float = 1.0,
        notify_timeout_sec: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._notifier = notifier
        self._refresh_tolerance = float(refresh_tolerance)
        self._notify_timeout = float(notify_timeout_sec)
        self._clock = clock
        self._key_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        return lock

    async def _find_open(self, key: str) -> Optional[dict]:
        return await self._store.find_one(EntityKind.alert, {"dedupKey": key, "status": {"$in": _OPEN_STATUS_VALUES}})

    # PUBLIC_INTERFACE
    async def reconcile(self, finding: Finding) -> ReconcileOutcome:
        """Create, escalate, refresh, or leave alone the open alert matching ``finding``."""
        key = finding.dedup_key
        async with self._lock_for(key):
            existing = await self._find_open(key)
            if existing is None:
                try:
                    await self._create(finding)
                    return ReconcileOutcome.created
                except DuplicateRecordError:
                    existing = await self._find_open(key)
                    if existing is None:
                        raise
                    logger.info("Lost alert create race for key=%s; updating existing alert", key)
            return await self._update_existing(existing, finding)

    async def _create(self, finding: Finding) -> dict:
        now = self._clock()
        title, description = render_alert_text(finding)
        doc = {
            "businessId": finding.business_id,
            "userId": finding.user_id,
            "ruleId": finding.rule_id,
            "type": finding.alert_type.value,
            "title": title,
            "description": description,
            "severity": finding.severity.value,
            "severityRank": finding.severity.rank,
            "status": AlertStatus.active.value,
            "isOpen": True,
            "dedupKey": finding.dedup_key,
            "relatedEntityId": finding.related_entity_id,
            "dueDate": finding.due_date,
            "relatedData": finding.related_data.model_dump(by_alias=True),
            "acknowledgedBy": None,
            "acknowledgedAt": None,
            "resolvedBy": None,
            "resolvedAt": None,
            "resolutionNotes": None,
            "createdAt": now,
            "updatedAt": now,
        }
        saved = await self._store.insert(EntityKind.alert, doc)
        logger.info(
            "Created %s alert id=%s business=%s user=%s severity=%s",
            finding.alert_type.value,
            doc_id(saved),
            finding.business_id,
            finding.user_id,
            finding.severity.value,
        )
        await self._notify(saved)
        return saved

    async def _update_existing(self, existing: dict, finding: Finding) -> ReconcileOutcome:
        alert_id = doc_id(existing)
        now = self._clock()

        if finding.severity.rank > _severity_of(existing).rank:
            title, description = render_alert_text(finding)
            patch: Dict[str, Any] = {
                "severity": finding.severity.value,
                "severityRank": finding.severity.rank,
                "title": title,
                "description": description,
                "relatedData": finding.related_data.model_dump(by_alias=True),
                "updatedAt": now,
            }
            if finding.due_date is not None:
                patch["dueDate"] = finding.due_date
            updated = await self._store.update_by_id(EntityKind.alert, alert_id, patch, expected={"isOpen": True})
            if updated is None:
                logger.info("Alert %s closed before escalation; leaving it", alert_id)
                return ReconcileOutcome.unchanged
            logger.info("Escalated alert id=%s to severity=%s", alert_id, finding.severity.value)
            await self._notify(updated)
            return ReconcileOutcome.escalated

        field_name = _MEASURED_FIELDS.get(finding.related_data.kind)
        if field_name is None:
            return ReconcileOutcome.unchanged

        new_payload = finding.related_data.model_dump(by_alias=True)
        old_value = (existing.get("relatedData") or {}).get(field_name)
        new_value = new_payload.get(field_name)
        if old_value is not None and abs(float(new_value) - float(old_value)) <= self._refresh_tolerance:
            return ReconcileOutcome.unchanged

        # Severity is kept as-is here; a refresh never lowers it.
        _, description = render_alert_text(finding)
        updated = await self._store.update_by_id(
            EntityKind.alert,
            alert_id,
            {"relatedData": new_payload, "description": description, "updatedAt": now},
            expected={"isOpen": True},
        )
        if updated is None:
            return ReconcileOutcome.unchanged
        logger.info("Refreshed alert id=%s %s %s -> %s", alert_id, field_name, old_value, new_value)
        return ReconcileOutcome.refreshed

    async def _notify(self, alert: dict) -> None:
        if self._notifier is None or not alert.get("userId"):
            return
        try:
            await asyncio.wait_for(
                self._notifier.notify(
                    str(alert["userId"]),
                    alert.get("title") or "",
                    alert.get("description") or "",
                    _PRIORITY[_severity_of(alert)],
                    f"compliance-alert:{doc_id(alert)}",
                ),
                timeout=self._notify_timeout,
            )
        except Exception:
            logger.exception("Notification dispatch failed for alert=%s user=%s", doc_id(alert), alert.get("userId"))

    # ---- User-driven transitions ----

    async def get_alert(self, alert_id: str) -> dict:
        alert = await self._store.get_by_id(EntityKind.alert, alert_id)
        if alert is None:
            raise NotFoundError("alert", alert_id)
        return alert

    async def _transition(
        self,
        alert_id: str,
        allowed_from: Tuple[AlertStatus, ...],
        target: AlertStatus,
        patch: Dict[str, Any],
    ) -> dict:
        alert = await self.get_alert(alert_id)
        current = alert.get("status")
        if current not in [s.value for s in allowed_from]:
            raise InvalidTransitionError("alert", alert_id, str(current), target.value)

        patch = dict(patch, status=target.value, isOpen=target in OPEN_ALERT_STATUSES, updatedAt=self._clock())
        updated = await self._store.update_by_id(
            EntityKind.alert, alert_id, patch, expected={"status": {"$in": [s.value for s in allowed_from]}}
        )
        if updated is None:
            # Someone else moved it between our read and write.
            latest = await self.get_alert(alert_id)
            raise InvalidTransitionError("alert", alert_id, str(latest.get("status")), target.value)
        logger.info("Alert %s moved %s -> %s", alert_id, current, target.value)
        return updated

    # PUBLIC_INTERFACE
    async def acknowledge(self, alert_id: str, user_id: str) -> dict:
        """active -> acknowledged."""
        now = self._clock()
        return await self._transition(
            alert_id,
            (AlertStatus.active,),
            AlertStatus.acknowledged,
            {"acknowledgedBy": user_id, "acknowledgedAt": now},
        )

    # PUBLIC_INTERFACE
    async def resolve(self, alert_id: str, user_id: str, notes: str = "") -> dict:
        """active|acknowledged -> resolved."""
        now = self._clock()
        return await self._transition(
            alert_id,
            OPEN_ALERT_STATUSES,
            AlertStatus.resolved,
            {"resolvedBy": user_id, "resolvedAt": now, "resolutionNotes": notes},
        )

    # PUBLIC_INTERFACE
    async def dismiss(self, alert_id: str, user_id: str, reason: str) -> dict:
        """active|acknowledged -> dismissed."""
        now = self._clock()
        return await self._transition(
            alert_id,
            OPEN_ALERT_STATUSES,
            AlertStatus.dismissed,
            {"resolvedBy": user_id, "resolvedAt": now, "resolutionNotes": f"Dismissed: {reason}"},
        )

    # ---- Queries ----

    async def get_business_alerts(self, business_id: str, filters: Optional[AlertFilters] = None) -> List[dict]:
        """Alerts for a business; open ones unless a status filter is given. Most severe, newest first."""
        filters = filters or AlertFilters()
        query: Dict[str, Any] = {
            "businessId": business_id,
            "status": {"$in": [filters.status.value] if filters.status else _OPEN_STATUS_VALUES},
        }
        if filters.severity:
            query["severity"] = filters.severity.value
        if filters.type:
            query["type"] = filters.type.value
        if filters.user_id:
            query["userId"] = filters.user_id
        return await self._store.find(EntityKind.alert, query, sort=[("severityRank", -1), ("createdAt", -1)])

    async def count_active(self, business_id: str) -> int:
        return await self._store.count(EntityKind.alert, {"businessId": business_id, "status": AlertStatus.active.value})
