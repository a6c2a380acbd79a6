from __future__ import annotations

from fastapi import APIRouter, HTTPException, Path, Query, Request, status

from src.compliance.schemas.common import ErrorResponse
from src.compliance.schemas.rules import ManualCheckResponse, RuleCreate, RuleListResponse, RuleOut, RuleUpdate
from src.compliance.services import rules_service

router = APIRouter(prefix="/api/compliance/rules", tags=["Rules"])


@router.post(
    "",
    response_model=RuleOut,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
    summary="Create compliance rule",
    operation_id="create_compliance_rule",
)
async def create_rule(request: Request, payload: RuleCreate) -> RuleOut:
    """Create a compliance rule."""
    if not payload.name.strip():
        raise HTTPException(status_code=400, detail="name must not be empty")
    return await rules_service.create_rule(request, payload)


@router.get(
    "/business/{business_id}",
    response_model=RuleListResponse,
    summary="List business rules",
    description="Rules of a business ordered by type then name. Inactive rules are hidden unless requested.",
    operation_id="list_business_rules",
)
async def list_business_rules(
    request: Request,
    business_id: str = Path(..., description="Business id."),
    include_inactive: bool = Query(False, alias="includeInactive"),
) -> RuleListResponse:
    items = await rules_service.list_business_rules(request, business_id, include_inactive)
    return RuleListResponse(items=items, total=len(items))


@router.post(
    "/business/{business_id}/check",
    response_model=ManualCheckResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Run compliance check",
    description="Run a full compliance pass for the business now and return its active alert count.",
    operation_id="run_compliance_check",
)
async def run_compliance_check(
    request: Request, business_id: str = Path(..., description="Business id.")
) -> ManualCheckResponse:
    check = await rules_service.run_manual_check(request, business_id)
    return ManualCheckResponse(
        businessId=business_id,
        activeAlertCount=check.active_alert_count,
        skipped=check.pass_result.skipped,
        reason=check.pass_result.reason,
    )


@router.get(
    "/{rule_id}",
    response_model=RuleOut,
    responses={404: {"model": ErrorResponse}},
    summary="Get compliance rule",
    operation_id="get_compliance_rule",
)
async def get_rule(request: Request, rule_id: str = Path(..., description="Rule id.")) -> RuleOut:
    return await rules_service.get_rule(request, rule_id)


@router.put(
    "/{rule_id}",
    response_model=RuleOut,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Update compliance rule",
    description="Partial update of a rule.",
    operation_id="update_compliance_rule",
)
async def update_rule(
    request: Request,
    payload: RuleUpdate,
    rule_id: str = Path(..., description="Rule id."),
) -> RuleOut:
    if payload.name is not None and not payload.name.strip():
        raise HTTPException(status_code=400, detail="name must not be empty")
    return await rules_service.update_rule(request, rule_id, payload)


@router.delete(
    "/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Delete compliance rule",
    description="Soft delete a rule.",
    operation_id="delete_compliance_rule",
)
async def delete_rule(request: Request, rule_id: str = Path(..., description="Rule id.")) -> None:
    await rules_service.delete_rule(request, rule_id)
    return None
