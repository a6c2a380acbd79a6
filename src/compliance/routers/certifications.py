from __future__ import annotations

from fastapi import APIRouter, HTTPException, Path, Query, Request, status

from src.compliance.schemas.certifications import (
    CertificationCreate,
    CertificationListResponse,
    CertificationOut,
    CertificationUpdate,
)
from src.compliance.schemas.common import ErrorResponse
from src.compliance.services import certifications_service

router = APIRouter(prefix="/api/compliance/certifications", tags=["Certifications"])


@router.post(
    "",
    response_model=CertificationOut,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
    summary="Create certification",
    description="Record a staff certification. Status is derived from the expiry date unless created pending.",
    operation_id="create_certification",
)
async def create_certification(request: Request, payload: CertificationCreate) -> CertificationOut:
    """Create a staff certification."""
    if not payload.name.strip():
        raise HTTPException(status_code=400, detail="name must not be empty")
    return await certifications_service.create_certification(request, payload)


@router.get(
    "/staff/{user_id}/business/{business_id}",
    response_model=CertificationListResponse,
    summary="List staff certifications",
    description="Certifications held by a staff member in a business, soonest expiry first.",
    operation_id="list_staff_certifications",
)
async def list_staff_certifications(
    request: Request,
    user_id: str = Path(..., description="Staff user id."),
    business_id: str = Path(..., description="Business id."),
    include_expired: bool = Query(False, alias="includeExpired"),
) -> CertificationListResponse:
    items = await certifications_service.list_staff_certifications(request, user_id, business_id, include_expired)
    return CertificationListResponse(items=items, total=len(items))


@router.get(
    "/{cert_id}",
    response_model=CertificationOut,
    responses={404: {"model": ErrorResponse}},
    summary="Get certification",
    operation_id="get_certification",
)
async def get_certification(
    request: Request, cert_id: str = Path(..., description="Certification id.")
) -> CertificationOut:
    return await certifications_service.get_certification(request, cert_id)


@router.put(
    "/{cert_id}",
    response_model=CertificationOut,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Update certification",
    description="Partial update. Changing expiryDate recomputes the status.",
    operation_id="update_certification",
)
async def update_certification(
    request: Request,
    payload: CertificationUpdate,
    cert_id: str = Path(..., description="Certification id."),
) -> CertificationOut:
    if payload.name is not None and not payload.name.strip():
        raise HTTPException(status_code=400, detail="name must not be empty")
    return await certifications_service.update_certification(request, cert_id, payload)


@router.delete(
    "/{cert_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Delete certification",
    description="Soft delete a certification.",
    operation_id="delete_certification",
)
async def delete_certification(request: Request, cert_id: str = Path(..., description="Certification id.")) -> None:
    await certifications_service.delete_certification(request, cert_id)
    return None
