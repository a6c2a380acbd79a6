from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from src.compliance.schemas.alerts import AlertRelatedData, AlertType
from src.compliance.schemas.common import Severity


def dedup_key(business_id: str, user_id: Optional[str], alert_type: AlertType, related_entity_id: str) -> str:
    """Identity of an alert across passes: (businessId, userId, type, relatedEntityId)."""
    return f"{business_id}|{user_id or ''}|{alert_type.value}|{related_entity_id}"


@dataclass(frozen=True)
class Finding:
    """
    Transient evaluator output: one violation or status change, before it becomes an alert.

    ``related_entity_id`` completes the deduplication key: a certification id for expiry
    findings, ``"<ruleId>:<certificationName>"`` for missing certifications, the rule id for
    hours/rest findings.
    """

    business_id: str
    user_id: str
    alert_type: AlertType
    related_entity_id: str
    severity: Severity
    related_data: AlertRelatedData
    rule_id: Optional[str] = None
    due_date: Optional[datetime] = None

    @property
    def dedup_key(self) -> str:
        return dedup_key(self.business_id, self.user_id, self.alert_type, self.related_entity_id)
