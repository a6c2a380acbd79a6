from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from src.compliance.schemas.common import Severity


class AlertType(str, Enum):
    """Kinds of compliance alerts."""

    certification_expiry = "certification_expiry"
    missing_certification = "missing_certification"
    hours_violation = "hours_violation"
    rest_violation = "rest_violation"
    schedule_violation = "schedule_violation"
    qualification_violation = "qualification_violation"
    custom_violation = "custom_violation"


class AlertStatus(str, Enum):
    """Alert lifecycle. resolved and dismissed are terminal."""

    active = "active"
    acknowledged = "acknowledged"
    resolved = "resolved"
    dismissed = "dismissed"


OPEN_ALERT_STATUSES = (AlertStatus.active, AlertStatus.acknowledged)


class _RelatedDataBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_name: str = Field(..., description="Staff member display name at alert time.", alias="userName")
    user_email: Optional[str] = Field(default=None, alias="userEmail")


class CertificationExpiryData(_RelatedDataBase):
    """Snapshot for certification_expiry alerts."""

    kind: Literal["certification_expiry"] = "certification_expiry"
    certification_id: str = Field(..., alias="certificationId")
    certification_name: str = Field(..., alias="certificationName")
    expiry_date: datetime = Field(..., alias="expiryDate")
    days_remaining: int = Field(..., alias="daysRemaining")
    is_expired: bool = Field(..., alias="isExpired")


class MissingCertificationData(_RelatedDataBase):
    """Snapshot for missing_certification alerts."""

    kind: Literal["missing_certification"] = "missing_certification"
    rule_id: str = Field(..., alias="ruleId")
    rule_name: str = Field(..., alias="ruleName")
    certification_name: str = Field(..., alias="certificationName")


class HoursViolationData(_RelatedDataBase):
    """Snapshot for hours_violation alerts; current_hours is refreshed by later passes."""

    kind: Literal["hours_violation"] = "hours_violation"
    rule_id: str = Field(..., alias="ruleId")
    rule_name: str = Field(..., alias="ruleName")
    max_hours: float = Field(..., alias="maxHours")
    current_hours: float = Field(..., alias="currentHours")


class RestViolationData(_RelatedDataBase):
    """Snapshot for rest_violation alerts; actual_rest_hours is refreshed by later passes."""

    kind: Literal["rest_violation"] = "rest_violation"
    rule_id: str = Field(..., alias="ruleId")
    rule_name: str = Field(..., alias="ruleName")
    required_rest_hours: float = Field(..., alias="requiredRestHours")
    actual_rest_hours: float = Field(..., alias="actualRestHours")


AlertRelatedData = Annotated[
    Union[CertificationExpiryData, MissingCertificationData, HoursViolationData, RestViolationData],
    Field(discriminator="kind"),
]


class AlertOut(BaseModel):
    """Response model for a compliance alert."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Alert id.")
    business_id: str = Field(..., alias="businessId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    rule_id: Optional[str] = Field(default=None, alias="ruleId")
    type: AlertType
    title: str
    description: str
    severity: Severity
    status: AlertStatus
    due_date: Optional[datetime] = Field(default=None, alias="dueDate")
    related_data: Optional[AlertRelatedData] = Field(default=None, alias="relatedData")
    acknowledged_by: Optional[str] = Field(default=None, alias="acknowledgedBy")
    acknowledged_at: Optional[datetime] = Field(default=None, alias="acknowledgedAt")
    resolved_by: Optional[str] = Field(default=None, alias="resolvedBy")
    resolved_at: Optional[datetime] = Field(default=None, alias="resolvedAt")
    resolution_notes: Optional[str] = Field(default=None, alias="resolutionNotes")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


class AlertListResponse(BaseModel):
    """Envelope for listing alerts."""

    items: List[AlertOut] = Field(..., description="Alerts, most severe and newest first.")
    total: int = Field(..., ge=0)


class AlertFilters(BaseModel):
    """Optional filters for listing a business's alerts; no status means open alerts only."""

    model_config = ConfigDict(populate_by_name=True)

    status: Optional[AlertStatus] = None
    severity: Optional[Severity] = None
    type: Optional[AlertType] = None
    user_id: Optional[str] = Field(default=None, alias="userId")


class AlertAcknowledgeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., description="User acknowledging the alert.", alias="userId")


class AlertResolveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., description="User resolving the alert.", alias="userId")
    notes: str = Field("", description="Resolution notes.")


class AlertDismissRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., description="User dismissing the alert.", alias="userId")
    reason: str = Field(..., description="Why the alert is being dismissed.")


class UpcomingExpiration(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    staff_name: str = Field(..., alias="staffName")
    expiry_date: datetime = Field(..., alias="expiryDate")
    days_remaining: int = Field(..., alias="daysRemaining")


class AlertCounts(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    by_status: Dict[str, int] = Field(..., alias="byStatus")
    by_severity: Dict[str, int] = Field(..., alias="bySeverity")
    total: int


class CertificationCounts(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    by_status: Dict[str, int] = Field(..., alias="byStatus")
    total: int
    upcoming_expirations: List[UpcomingExpiration] = Field(..., alias="upcomingExpirations")


class ComplianceSummaryOut(BaseModel):
    """Aggregated alert and certification counts for a business."""

    alerts: AlertCounts
    certifications: CertificationCounts
