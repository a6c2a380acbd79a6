from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CertificationStatus(str, Enum):
    """Lifecycle status of a staff certification (owned by the certification evaluator)."""

    active = "active"
    expiring_soon = "expiring_soon"
    expired = "expired"
    pending = "pending"


class CertificationCreate(BaseModel):
    """Request model for creating a staff certification."""

    model_config = ConfigDict(populate_by_name=True)

    business_id: str = Field(..., description="Owning business (tenant) id.", alias="businessId")
    user_id: str = Field(..., description="Staff member holding the certification.", alias="userId")
    name: str = Field(..., description="Certification name, e.g. 'First Aid'.")
    description: Optional[str] = Field(default=None, description="Free-form description.")
    issued_by: Optional[str] = Field(default=None, description="Issuing body.", alias="issuedBy")
    issue_date: datetime = Field(..., description="When the certification was issued.", alias="issueDate")
    expiry_date: datetime = Field(..., description="When the certification expires.", alias="expiryDate")
    pending: bool = Field(
        False,
        description="Create in 'pending' status (e.g. awaiting verification) instead of deriving it from the expiry date.",
    )


class CertificationUpdate(BaseModel):
    """Partial update; status is never set directly and is recomputed when expiryDate changes."""

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(default=None, description="Certification name.")
    description: Optional[str] = Field(default=None, description="Free-form description.")
    issued_by: Optional[str] = Field(default=None, description="Issuing body.", alias="issuedBy")
    issue_date: Optional[datetime] = Field(default=None, description="Issue date.", alias="issueDate")
    expiry_date: Optional[datetime] = Field(default=None, description="New expiry date (re-dates the record).", alias="expiryDate")


class CertificationOut(BaseModel):
    """Response model for a staff certification."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Certification id.")
    business_id: str = Field(..., alias="businessId")
    user_id: str = Field(..., alias="userId")
    name: str
    description: Optional[str] = None
    issued_by: Optional[str] = Field(default=None, alias="issuedBy")
    issue_date: Optional[datetime] = Field(default=None, alias="issueDate")
    expiry_date: datetime = Field(..., alias="expiryDate")
    status: CertificationStatus
    is_deleted: bool = Field(False, alias="isDeleted")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


class CertificationListResponse(BaseModel):
    """Envelope for listing certifications."""

    items: List[CertificationOut] = Field(..., description="Certifications, soonest expiry first.")
    total: int = Field(..., ge=0)
