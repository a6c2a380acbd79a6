from __future__ import annotations

from typing import Any, Dict, Optional


class ComplianceError(Exception):
    """Base error for the compliance monitor; carries an HTTP status and machine-readable code."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, meta: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.meta: Dict[str, Any] = dict(meta or {})


class NotFoundError(ComplianceError):
    """Referenced tenant/rule/certification/alert does not exist."""

    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found", meta={"entity": entity, "id": entity_id})
        self.entity = entity
        self.entity_id = entity_id


class InvalidTransitionError(ComplianceError):
    """A state change was requested from an illegal source state."""

    status_code = 409
    code = "invalid_transition"

    def __init__(self, entity: str, entity_id: str, current: str, requested: str):
        super().__init__(
            f"{entity} is already {current}; cannot move to {requested}",
            meta={"entity": entity, "id": entity_id, "currentStatus": current, "requestedStatus": requested},
        )
        self.current = current
        self.requested = requested


class AgentAccessDeniedError(ComplianceError):
    """Tenant's subscription does not include the compliance-monitoring agent."""

    status_code = 403
    code = "agent_access_denied"

    def __init__(self, business_id: str, agent_type: str):
        super().__init__(
            f"{agent_type} agent is not enabled for this business",
            meta={"businessId": business_id, "agentType": agent_type},
        )


class DuplicateRecordError(ComplianceError):
    """Store rejected an insert because a unique key already exists."""

    status_code = 409
    code = "duplicate_record"
