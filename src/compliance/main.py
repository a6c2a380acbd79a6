from __future__ import annotations

import logging
import os
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.compliance.config import load_config
from src.compliance.errors import ComplianceError
from src.compliance.routers import agent_config, alerts, certifications, health, rules
from src.compliance.schemas.common import ErrorResponse
from src.compliance.state import AppState, get_state, init_state

openapi_tags = [
    {"name": "Health", "description": "Service health, Mongo connectivity and scheduler diagnostics."},
    {"name": "Alerts", "description": "Compliance alerts: listing, lifecycle transitions and summary."},
    {"name": "Certifications", "description": "Staff certifications and their expiry status."},
    {"name": "Rules", "description": "Compliance rules and on-demand compliance checks."},
    {"name": "Agent Configuration", "description": "Per-business compliance-monitoring agent settings."},
]

logger = logging.getLogger(__name__)


def _env_frontend_url() -> Optional[str]:
    return os.getenv("FRONTEND_URL") or os.getenv("REACT_APP_FRONTEND_URL")


def _env_cors_extra_origins() -> List[str]:
    # Comma-separated list for preview deployments, etc.
    raw = os.getenv("CORS_ALLOW_ORIGINS") or ""
    return [p.strip() for p in raw.split(",") if p.strip()]


def _allowed_origins() -> List[str]:
    origins: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
    frontend_url = _env_frontend_url()
    if frontend_url:
        origins.append(frontend_url)
    origins.extend(_env_cors_extra_origins())
    seen = set()
    return [o for o in origins if not (o in seen or seen.add(o))]


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ComplianceError)
    async def _compliance_error_handler(_request: Request, exc: ComplianceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Compliance error code=%s detail=%s meta=%s", exc.code, exc.message, exc.meta)
        else:
            logger.info("Request rejected code=%s detail=%s", exc.code, exc.message)
        body = ErrorResponse(detail=exc.message, code=exc.code, meta=exc.meta)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))


# PUBLIC_INTERFACE
def create_app(state: Optional[AppState] = None) -> FastAPI:
    """
    Build the FastAPI application.

    When ``state`` is given it is used as-is (no Mongo connection, no scheduler start-up work beyond
    what the lifecycle hooks do). Otherwise the Mongo-backed state is built at startup from env.
    """
    app = FastAPI(
        title="Compliance Monitoring API",
        description=(
            "Backend for the compliance-monitoring agent: tracks staff certifications and compliance rules, "
            "runs scheduled per-business compliance passes, and manages the resulting alerts."
        ),
        version="1.0.0",
        openapi_tags=openapi_tags,
    )
    if state is not None:
        app.state.state = state

    @app.on_event("startup")
    async def _on_startup() -> None:
        """Startup hook: build state if needed, connect to Mongo, ensure indexes, start the scheduler."""
        if getattr(app.state, "state", None) is None:
            config = load_config()
            logging.basicConfig(level=config.log_level)
            built = init_state(app, config)
            assert built.mongo is not None

            # Connect + verify early so misconfigured Mongo doesn't silently break scheduled passes.
            built.mongo.connect_app()
            if not built.mongo.ping():
                raise RuntimeError(
                    "Mongo connectivity check failed during startup. Verify COMPLIANCE_MONGO_URI or BACKEND_MONGO_URI."
                )
            built.mongo.init_indexes()

        current = get_state(app)
        if current.config.scheduler_enabled:
            jobs = await current.scheduler.initialize()
            current.scheduler.start()
            logger.info("Compliance scheduler started with %s jobs", jobs)

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        """Shutdown hook: stop scheduled jobs and close Mongo connections."""
        current = getattr(app.state, "state", None)
        if current is None:
            return
        try:
            await current.scheduler.shutdown(timeout=current.config.scheduler_shutdown_timeout_sec)
        except Exception:
            logger.exception("Error stopping compliance scheduler")
        if current.mongo is not None:
            current.mongo.close()

    _install_error_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(alerts.router)
    app.include_router(certifications.router)
    app.include_router(rules.router)
    app.include_router(agent_config.router)
    return app


app = create_app()
