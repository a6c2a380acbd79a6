from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import Request

from src.compliance.db.store import EntityKind, doc_id
from src.compliance.errors import AgentAccessDeniedError, NotFoundError
from src.compliance.schemas.agent_config import (
    COMPLIANCE_AGENT_TYPE,
    AgentConfigurationOut,
    AgentConfigurationUpdate,
)
from src.compliance.schemas.common import utc_now
from src.compliance.state import AppState, get_state

logger = logging.getLogger(__name__)


def _doc_to_out(doc: dict, state: AppState) -> AgentConfigurationOut:
    cfg = state.config
    return AgentConfigurationOut(
        id=doc_id(doc),
        businessId=str(doc["businessId"]),
        agentType=doc.get("agentType") or COMPLIANCE_AGENT_TYPE,
        isEnabled=bool(doc.get("isEnabled", False)),
        monitoringFrequencyHours=int(doc.get("monitoringFrequencyHours") or cfg.default_monitoring_frequency_hours),
        certificationWarningDays=int(
            doc["certificationWarningDays"]
            if doc.get("certificationWarningDays") is not None
            else cfg.default_certification_warning_days
        ),
        createdAt=doc.get("createdAt"),
        updatedAt=doc.get("updatedAt"),
    )


async def _require_access(state: AppState, business_id: str) -> None:
    # Raises NotFoundError for an unknown business.
    allowed = await state.permissions.has_agent_access(business_id, COMPLIANCE_AGENT_TYPE)
    if not allowed:
        raise AgentAccessDeniedError(business_id, COMPLIANCE_AGENT_TYPE)


async def _apply(state: AppState, business_id: str, patch: Dict[str, Any]) -> dict:
    """Create-or-update the tenant's configuration, then resync its scheduled job."""
    now = utc_now()
    existing = await state.orchestrator.load_configuration(business_id)
    if existing is None:
        doc = {
            "businessId": business_id,
            "agentType": COMPLIANCE_AGENT_TYPE,
            "isEnabled": False,
            "monitoringFrequencyHours": state.config.default_monitoring_frequency_hours,
            "certificationWarningDays": state.config.default_certification_warning_days,
            "createdAt": now,
            "updatedAt": now,
        }
        doc.update(patch)
        saved = await state.store.insert(EntityKind.agent_configuration, doc)
        logger.info("Created compliance agent configuration business=%s", business_id)
    else:
        saved = await state.store.update_by_id(
            EntityKind.agent_configuration, doc_id(existing), dict(patch, updatedAt=now)
        )
        if saved is None:
            raise NotFoundError("agent_configuration", business_id)

    if state.config.scheduler_enabled:
        await state.scheduler.reconcile(business_id)
    return saved


# PUBLIC_INTERFACE
async def get_configuration(request: Request, business_id: str) -> AgentConfigurationOut:
    state = get_state(request.app)
    doc = await state.orchestrator.load_configuration(business_id)
    if doc is None:
        raise NotFoundError("agent_configuration", business_id)
    return _doc_to_out(doc, state)


# PUBLIC_INTERFACE
async def upsert_configuration(
    request: Request, business_id: str, payload: AgentConfigurationUpdate
) -> AgentConfigurationOut:
    """Create or partially update the tenant's compliance-monitoring configuration."""
    state = get_state(request.app)
    await _require_access(state, business_id)

    patch: Dict[str, Any] = {}
    if payload.is_enabled is not None:
        patch["isEnabled"] = payload.is_enabled
    if payload.monitoring_frequency_hours is not None:
        patch["monitoringFrequencyHours"] = payload.monitoring_frequency_hours
    if payload.certification_warning_days is not None:
        patch["certificationWarningDays"] = payload.certification_warning_days
    return _doc_to_out(await _apply(state, business_id, patch), state)


async def _set_enabled(request: Request, business_id: str, enabled: bool) -> AgentConfigurationOut:
    state = get_state(request.app)
    if enabled:
        await _require_access(state, business_id)
    elif await state.orchestrator.load_configuration(business_id) is None:
        raise NotFoundError("agent_configuration", business_id)
    return _doc_to_out(await _apply(state, business_id, {"isEnabled": enabled}), state)


# PUBLIC_INTERFACE
async def enable_agent(request: Request, business_id: str) -> AgentConfigurationOut:
    return await _set_enabled(request, business_id, True)


# PUBLIC_INTERFACE
async def disable_agent(request: Request, business_id: str) -> AgentConfigurationOut:
    return await _set_enabled(request, business_id, False)


# PUBLIC_INTERFACE
async def delete_configuration(request: Request, business_id: str) -> None:
    """Remove the configuration; the tenant's job stops."""
    state = get_state(request.app)
    doc: Optional[dict] = await state.orchestrator.load_configuration(business_id)
    if doc is None:
        raise NotFoundError("agent_configuration", business_id)
    await state.store.delete_by_id(EntityKind.agent_configuration, doc_id(doc))
    logger.info("Deleted compliance agent configuration business=%s", business_id)
    if state.config.scheduler_enabled:
        await state.scheduler.reconcile(business_id)
