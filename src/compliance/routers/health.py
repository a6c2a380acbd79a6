from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from src.compliance.config import sanitize_mongo_uri
from src.compliance.schemas.agent_config import SchedulerJobOut, SchedulerJobsResponse
from src.compliance.schemas.common import HealthResponse, utc_now
from src.compliance.state import get_state

router = APIRouter(tags=["Health"])


class MongoConnectivityResponse(BaseModel):
    """Response model for backend↔Mongo connectivity diagnostics."""

    ok: bool = Field(..., description="Whether the backend can successfully ping MongoDB.")
    mongo_uri_source: str = Field(..., description="Which env var provided the effective MongoDB URI.")
    mongo_uri_sanitized: Optional[str] = Field(default=None, description="MongoDB URI with credentials masked.")
    timestamp: str = Field(..., description="UTC timestamp when the check was performed (ISO string).")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Optional debug metadata.")


@router.get(
    "/",
    response_model=HealthResponse,
    summary="Health check",
    description="Basic service liveness check used by deployment and the frontend.",
    operation_id="health_check",
)
def health_check() -> HealthResponse:
    """Return service liveness status."""
    return HealthResponse(status="ok", message="Healthy", timestamp=utc_now())


@router.get(
    "/api/health/mongo",
    response_model=MongoConnectivityResponse,
    summary="Mongo connectivity check",
    description="Pings the backend's configured MongoDB and reports which env var supplied the URI. Credentials are masked.",
    operation_id="mongo_connectivity_check",
)
def mongo_connectivity_check(request: Request) -> MongoConnectivityResponse:
    """Connectivity check endpoint to validate backend↔Mongo."""
    state = get_state(request.app)
    if state.mongo is None:
        return MongoConnectivityResponse(
            ok=False,
            mongo_uri_source=state.config.mongo_uri_source,
            timestamp=utc_now().isoformat(),
            meta={"reason": "store is not Mongo-backed"},
        )

    return MongoConnectivityResponse(
        ok=state.mongo.ping(),
        mongo_uri_source=state.config.mongo_uri_source,
        mongo_uri_sanitized=sanitize_mongo_uri(state.config.mongo_uri),
        timestamp=utc_now().isoformat(),
        meta={"db": state.config.mongo_db_name},
    )


@router.get(
    "/api/health/scheduler",
    response_model=SchedulerJobsResponse,
    summary="Scheduler jobs",
    description="Running per-business compliance jobs with their recurrence and next firing time.",
    operation_id="scheduler_jobs",
)
def scheduler_jobs(request: Request) -> SchedulerJobsResponse:
    """List the scheduler's running jobs."""
    scheduler = get_state(request.app).scheduler
    items = [SchedulerJobOut(**d) for d in scheduler.job_details()]
    return SchedulerJobsResponse(items=items, total=len(items), globalSweepRunning=scheduler.is_sweep_running)
