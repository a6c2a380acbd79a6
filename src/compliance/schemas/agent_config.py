from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

COMPLIANCE_AGENT_TYPE = "compliance-monitoring"


class AgentConfigurationUpdate(BaseModel):
    """Create-or-update payload for a tenant's compliance-monitoring configuration."""

    model_config = ConfigDict(populate_by_name=True)

    is_enabled: Optional[bool] = Field(default=None, alias="isEnabled")
    monitoring_frequency_hours: Optional[int] = Field(
        default=None, ge=1, le=24, description="Full-pass cadence in hours (24 = daily).", alias="monitoringFrequencyHours"
    )
    certification_warning_days: Optional[int] = Field(
        default=None, ge=0, le=365, description="Days before expiry to flag a certification.", alias="certificationWarningDays"
    )


class AgentConfigurationOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    business_id: str = Field(..., alias="businessId")
    agent_type: str = Field(COMPLIANCE_AGENT_TYPE, alias="agentType")
    is_enabled: bool = Field(..., alias="isEnabled")
    monitoring_frequency_hours: int = Field(..., alias="monitoringFrequencyHours")
    certification_warning_days: int = Field(..., alias="certificationWarningDays")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


class SchedulerJobOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    business_id: str = Field(..., alias="businessId")
    frequency_hours: int = Field(..., alias="frequencyHours")
    schedule: str = Field(..., description="Cron-style description of the recurrence.")
    next_fire_at: datetime = Field(..., alias="nextFireAt")


class SchedulerJobsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[SchedulerJobOut]
    total: int = Field(..., ge=0)
    global_sweep_running: bool = Field(..., alias="globalSweepRunning")
