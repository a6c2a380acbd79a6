from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import Request

from src.compliance.db.store import EntityKind, doc_id
from src.compliance.errors import NotFoundError
from src.compliance.schemas.certifications import (
    CertificationCreate,
    CertificationOut,
    CertificationStatus,
    CertificationUpdate,
)
from src.compliance.schemas.common import utc_now
from src.compliance.state import get_state

logger = logging.getLogger(__name__)


def _doc_to_out(doc: dict) -> CertificationOut:
    return CertificationOut(
        id=doc_id(doc),
        businessId=str(doc["businessId"]),
        userId=str(doc["userId"]),
        name=doc.get("name") or "",
        description=doc.get("description"),
        issuedBy=doc.get("issuedBy"),
        issueDate=doc.get("issueDate"),
        expiryDate=doc["expiryDate"],
        status=doc.get("status") or CertificationStatus.active.value,
        isDeleted=bool(doc.get("isDeleted", False)),
        createdAt=doc.get("createdAt"),
        updatedAt=doc.get("updatedAt"),
    )


async def _get_live(request: Request, cert_id: str) -> dict:
    doc = await get_state(request.app).store.get_by_id(EntityKind.certification, cert_id)
    if doc is None or doc.get("isDeleted"):
        raise NotFoundError("certification", cert_id)
    return doc


# PUBLIC_INTERFACE
async def create_certification(request: Request, payload: CertificationCreate) -> CertificationOut:
    """
    Create a certification as active (or pending when requested).

    The next compliance pass moves it to expiring_soon or expired and raises the matching alert.
    """
    state = get_state(request.app)
    now = utc_now()
    status = CertificationStatus.pending if payload.pending else CertificationStatus.active

    doc = {
        "businessId": payload.business_id,
        "userId": payload.user_id,
        "name": payload.name.strip(),
        "description": payload.description,
        "issuedBy": payload.issued_by,
        "issueDate": payload.issue_date,
        "expiryDate": payload.expiry_date,
        "status": status.value,
        "isDeleted": False,
        "createdAt": now,
        "updatedAt": now,
    }
    saved = await state.store.insert(EntityKind.certification, doc)
    logger.info("Created certification id=%s business=%s status=%s", doc_id(saved), payload.business_id, status.value)
    return _doc_to_out(saved)


# PUBLIC_INTERFACE
async def get_certification(request: Request, cert_id: str) -> CertificationOut:
    return _doc_to_out(await _get_live(request, cert_id))


# PUBLIC_INTERFACE
async def update_certification(request: Request, cert_id: str, payload: CertificationUpdate) -> CertificationOut:
    """
    Partially update a certification.

    A changed expiry date re-dates the record: it goes back to active (pending records stay
    pending) and the evaluator takes it through a fresh lifecycle from there.
    """
    state = get_state(request.app)
    current = await _get_live(request, cert_id)
    now = utc_now()

    patch: Dict[str, Any] = {}
    if payload.name is not None:
        patch["name"] = payload.name.strip()
    if payload.description is not None:
        patch["description"] = payload.description
    if payload.issued_by is not None:
        patch["issuedBy"] = payload.issued_by
    if payload.issue_date is not None:
        patch["issueDate"] = payload.issue_date
    if payload.expiry_date is not None:
        patch["expiryDate"] = payload.expiry_date
        if current.get("status") != CertificationStatus.pending.value:
            patch["status"] = CertificationStatus.active.value

    if not patch:
        return _doc_to_out(current)

    patch["updatedAt"] = now
    updated = await state.store.update_by_id(EntityKind.certification, cert_id, patch, expected={"isDeleted": False})
    if updated is None:
        raise NotFoundError("certification", cert_id)
    return _doc_to_out(updated)


# PUBLIC_INTERFACE
async def delete_certification(request: Request, cert_id: str) -> None:
    """Soft delete: the record is flagged and ignored by every evaluation."""
    state = get_state(request.app)
    updated = await state.store.update_by_id(
        EntityKind.certification,
        cert_id,
        {"isDeleted": True, "updatedAt": utc_now()},
        expected={"isDeleted": False},
    )
    if updated is None:
        raise NotFoundError("certification", cert_id)
    logger.info("Deleted certification id=%s", cert_id)


# PUBLIC_INTERFACE
async def list_staff_certifications(
    request: Request, user_id: str, business_id: str, include_expired: bool = False
) -> List[CertificationOut]:
    """A staff member's certifications in a business, soonest expiry first."""
    query: Dict[str, Any] = {"userId": user_id, "businessId": business_id, "isDeleted": False}
    if not include_expired:
        query["status"] = {"$ne": CertificationStatus.expired.value}
    docs = await get_state(request.app).store.find(EntityKind.certification, query, sort=[("expiryDate", 1)])
    return [_doc_to_out(d) for d in docs]
