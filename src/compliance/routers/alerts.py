from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Path, Query, Request

from src.compliance.schemas.alerts import (
    AlertAcknowledgeRequest,
    AlertDismissRequest,
    AlertFilters,
    AlertListResponse,
    AlertOut,
    AlertResolveRequest,
    AlertStatus,
    AlertType,
    ComplianceSummaryOut,
)
from src.compliance.schemas.common import ErrorResponse, Severity
from src.compliance.services import alerts_service

router = APIRouter(prefix="/api/compliance/alerts", tags=["Alerts"])


@router.get(
    "/business/{business_id}",
    response_model=AlertListResponse,
    summary="List business alerts",
    description=(
        "List compliance alerts for a business, most severe and newest first. "
        "Without a status filter only open (active/acknowledged) alerts are returned."
    ),
    operation_id="list_business_alerts",
)
async def list_business_alerts(
    request: Request,
    business_id: str = Path(..., description="Business id."),
    status_filter: Optional[AlertStatus] = Query(default=None, alias="status"),
    severity: Optional[Severity] = Query(default=None),
    alert_type: Optional[AlertType] = Query(default=None, alias="type"),
    user_id: Optional[str] = Query(default=None, alias="userId"),
) -> AlertListResponse:
    """List a business's alerts with optional filters."""
    filters = AlertFilters(status=status_filter, severity=severity, type=alert_type, userId=user_id)
    items = await alerts_service.list_business_alerts(request, business_id, filters)
    return AlertListResponse(items=items, total=len(items))


@router.get(
    "/summary/business/{business_id}",
    response_model=ComplianceSummaryOut,
    summary="Compliance summary",
    description="Alert counts by status and severity, certification counts by status, and upcoming expirations.",
    operation_id="get_compliance_summary",
)
async def get_compliance_summary(
    request: Request, business_id: str = Path(..., description="Business id.")
) -> ComplianceSummaryOut:
    """Return the compliance summary for a business."""
    return await alerts_service.get_compliance_summary(request, business_id)


@router.get(
    "/{alert_id}",
    response_model=AlertOut,
    responses={404: {"model": ErrorResponse}},
    summary="Get alert",
    operation_id="get_alert",
)
async def get_alert(request: Request, alert_id: str = Path(..., description="Alert id.")) -> AlertOut:
    """Fetch a single alert."""
    return await alerts_service.get_alert(request, alert_id)


@router.put(
    "/{alert_id}/acknowledge",
    response_model=AlertOut,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Acknowledge alert",
    description="Move an active alert to acknowledged.",
    operation_id="acknowledge_alert",
)
async def acknowledge_alert(
    request: Request, payload: AlertAcknowledgeRequest, alert_id: str = Path(..., description="Alert id.")
) -> AlertOut:
    return await alerts_service.acknowledge_alert(request, alert_id, payload.user_id)


@router.put(
    "/{alert_id}/resolve",
    response_model=AlertOut,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Resolve alert",
    description="Resolve an open alert with optional notes.",
    operation_id="resolve_alert",
)
async def resolve_alert(
    request: Request, payload: AlertResolveRequest, alert_id: str = Path(..., description="Alert id.")
) -> AlertOut:
    return await alerts_service.resolve_alert(request, alert_id, payload.user_id, payload.notes)


@router.put(
    "/{alert_id}/dismiss",
    response_model=AlertOut,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Dismiss alert",
    description="Dismiss an open alert; the reason is stored in the resolution notes.",
    operation_id="dismiss_alert",
)
async def dismiss_alert(
    request: Request, payload: AlertDismissRequest, alert_id: str = Path(..., description="Alert id.")
) -> AlertOut:
    return await alerts_service.dismiss_alert(request, alert_id, payload.user_id, payload.reason)
