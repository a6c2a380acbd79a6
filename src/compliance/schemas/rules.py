from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.compliance.schemas.common import Severity


class RuleType(str, Enum):
    """Compliance rule kinds. Only some are evaluated today; the rest are accepted and skipped."""

    certification_requirement = "certification_requirement"
    qualification_requirement = "qualification_requirement"
    labor_law = "labor_law"
    schedule_restriction = "schedule_restriction"
    maximum_hours = "maximum_hours"
    required_rest = "required_rest"
    age_restriction = "age_restriction"
    location_restriction = "location_restriction"
    custom = "custom"


class RuleBase(BaseModel):
    """Common fields for a compliance rule."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., description="Human-friendly rule name.")
    description: Optional[str] = Field(default=None, description="What the rule enforces.")
    type: RuleType = Field(..., description="Rule type identifier.")
    severity: Severity = Field(Severity.medium, description="Severity given to violations of this rule.")
    is_active: bool = Field(True, description="Whether the rule is evaluated.", alias="isActive")

    required_certifications: List[str] = Field(
        default_factory=list,
        description="certification_requirement: names every staff member must hold.",
        alias="requiredCertifications",
    )
    max_weekly_hours: Optional[float] = Field(
        default=None, description="maximum_hours: weekly cap.", ge=0, alias="maxWeeklyHours"
    )
    required_rest_hours_between_shifts: Optional[float] = Field(
        default=None,
        description="required_rest: minimum gap between shifts (hours).",
        ge=0,
        alias="requiredRestHoursBetweenShifts",
    )
    max_consecutive_hours: Optional[float] = Field(
        default=None, description="Reserved for schedule rules.", ge=0, alias="maxConsecutiveHours"
    )
    conditions: Dict[str, Any] = Field(default_factory=dict, description="Type-specific extra parameters.")


class RuleCreate(RuleBase):
    """Request model for creating a rule."""

    business_id: str = Field(..., description="Owning business (tenant) id.", alias="businessId")


class RuleUpdate(BaseModel):
    """Request model for partial update of a rule."""

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[RuleType] = None
    severity: Optional[Severity] = None
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    required_certifications: Optional[List[str]] = Field(default=None, alias="requiredCertifications")
    max_weekly_hours: Optional[float] = Field(default=None, ge=0, alias="maxWeeklyHours")
    required_rest_hours_between_shifts: Optional[float] = Field(
        default=None, ge=0, alias="requiredRestHoursBetweenShifts"
    )
    max_consecutive_hours: Optional[float] = Field(default=None, ge=0, alias="maxConsecutiveHours")
    conditions: Optional[Dict[str, Any]] = None


class RuleOut(RuleBase):
    """Response model for a rule."""

    id: str = Field(..., description="Rule id.")
    business_id: str = Field(..., alias="businessId")
    is_deleted: bool = Field(False, alias="isDeleted")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


class RuleListResponse(BaseModel):
    """Envelope for listing rules."""

    items: List[RuleOut] = Field(..., description="Rules ordered by type then name.")
    total: int = Field(..., ge=0)


class ManualCheckResponse(BaseModel):
    """Result of a manually triggered compliance pass."""

    model_config = ConfigDict(populate_by_name=True)

    business_id: str = Field(..., alias="businessId")
    active_alert_count: int = Field(..., ge=0, alias="activeAlertCount")
    skipped: bool = Field(False, description="True when another pass for the business was already running.")
    reason: Optional[str] = Field(None, description="Why the pass was skipped, when it was.")
