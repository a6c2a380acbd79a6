from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, List

from fastapi import Request

from src.compliance.db.store import EntityKind, doc_id
from src.compliance.errors import NotFoundError
from src.compliance.schemas.common import utc_now
from src.compliance.schemas.rules import RuleCreate, RuleOut, RuleUpdate
from src.compliance.services.orchestrator import ManualCheckResult
from src.compliance.state import get_state

logger = logging.getLogger(__name__)


def _doc_to_out(doc: dict) -> RuleOut:
    return RuleOut(
        id=doc_id(doc),
        businessId=str(doc["businessId"]),
        name=doc.get("name") or "",
        description=doc.get("description"),
        type=doc["type"],
        severity=doc.get("severity") or "medium",
        isActive=bool(doc.get("isActive", True)),
        requiredCertifications=list(doc.get("requiredCertifications") or []),
        maxWeeklyHours=doc.get("maxWeeklyHours"),
        requiredRestHoursBetweenShifts=doc.get("requiredRestHoursBetweenShifts"),
        maxConsecutiveHours=doc.get("maxConsecutiveHours"),
        conditions=doc.get("conditions") or {},
        isDeleted=bool(doc.get("isDeleted", False)),
        createdAt=doc.get("createdAt"),
        updatedAt=doc.get("updatedAt"),
    )


# Request field name -> stored field name
_FIELD_MAP = {
    "name": "name",
    "description": "description",
    "type": "type",
    "severity": "severity",
    "is_active": "isActive",
    "required_certifications": "requiredCertifications",
    "max_weekly_hours": "maxWeeklyHours",
    "required_rest_hours_between_shifts": "requiredRestHoursBetweenShifts",
    "max_consecutive_hours": "maxConsecutiveHours",
    "conditions": "conditions",
}


def _to_doc_fields(values: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in values.items():
        if key not in _FIELD_MAP:
            continue
        if isinstance(value, Enum):
            value = value.value
        out[_FIELD_MAP[key]] = value
    return out


async def _get_live(request: Request, rule_id: str) -> dict:
    doc = await get_state(request.app).store.get_by_id(EntityKind.rule, rule_id)
    if doc is None or doc.get("isDeleted"):
        raise NotFoundError("rule", rule_id)
    return doc


# PUBLIC_INTERFACE
async def create_rule(request: Request, payload: RuleCreate) -> RuleOut:
    """Create a compliance rule for a business."""
    now = utc_now()
    doc = _to_doc_fields(payload.model_dump())
    doc["name"] = payload.name.strip()
    doc.update({"businessId": payload.business_id, "isDeleted": False, "createdAt": now, "updatedAt": now})
    saved = await get_state(request.app).store.insert(EntityKind.rule, doc)
    logger.info("Created compliance rule id=%s business=%s type=%s", doc_id(saved), payload.business_id, doc["type"])
    return _doc_to_out(saved)


# PUBLIC_INTERFACE
async def get_rule(request: Request, rule_id: str) -> RuleOut:
    return _doc_to_out(await _get_live(request, rule_id))


# PUBLIC_INTERFACE
async def update_rule(request: Request, rule_id: str, payload: RuleUpdate) -> RuleOut:
    """Partially update a rule (only provided fields change)."""
    current = await _get_live(request, rule_id)
    patch = _to_doc_fields(payload.model_dump(exclude_unset=True))
    if "name" in patch and patch["name"] is not None:
        patch["name"] = patch["name"].strip()
    if not patch:
        return _doc_to_out(current)
    patch["updatedAt"] = utc_now()
    updated = await get_state(request.app).store.update_by_id(EntityKind.rule, rule_id, patch, expected={"isDeleted": False})
    if updated is None:
        raise NotFoundError("rule", rule_id)
    return _doc_to_out(updated)


# PUBLIC_INTERFACE
async def delete_rule(request: Request, rule_id: str) -> None:
    """Soft delete a rule; it is no longer evaluated."""
    updated = await get_state(request.app).store.update_by_id(
        EntityKind.rule, rule_id, {"isDeleted": True, "updatedAt": utc_now()}, expected={"isDeleted": False}
    )
    if updated is None:
        raise NotFoundError("rule", rule_id)
    logger.info("Deleted compliance rule id=%s", rule_id)


# PUBLIC_INTERFACE
async def list_business_rules(request: Request, business_id: str, include_inactive: bool = False) -> List[RuleOut]:
    """Rules of a business ordered by type then name."""
    query: Dict[str, Any] = {"businessId": business_id, "isDeleted": False}
    if not include_inactive:
        query["isActive"] = True
    docs = await get_state(request.app).store.find(EntityKind.rule, query, sort=[("type", 1), ("name", 1)])
    return [_doc_to_out(d) for d in docs]


# PUBLIC_INTERFACE
async def run_manual_check(request: Request, business_id: str) -> ManualCheckResult:
    """Run a compliance pass now; the result carries the active alert count and whether the pass was skipped."""
    return await get_state(request.app).orchestrator.run_manual_check(business_id)
