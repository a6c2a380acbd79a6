from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI

from src.compliance.config import BackendConfig
from src.compliance.db.mongo import MongoManager
from src.compliance.db.store import DocumentStore, MongoDocumentStore
from src.compliance.services.alert_manager import AlertLifecycleManager
from src.compliance.services.collaborators import (
    AgentPermissionChecker,
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    ShiftStaffingDataProvider,
    StaffingDataProvider,
    StoreAgentPermissionChecker,
    WebhookNotificationDispatcher,
)
from src.compliance.services.orchestrator import ComplianceOrchestrator
from src.compliance.services.scheduler import TenantScheduler


@dataclass
class AppState:
    """Typed app.state container for shared singletons."""

    config: BackendConfig
    store: DocumentStore
    alerts: AlertLifecycleManager
    orchestrator: ComplianceOrchestrator
    scheduler: TenantScheduler
    permissions: AgentPermissionChecker
    mongo: Optional[MongoManager] = None


# PUBLIC_INTERFACE
def build_state(
    config: BackendConfig,
    store: DocumentStore,
    *,
    mongo: Optional[MongoManager] = None,
    staffing: Optional[StaffingDataProvider] = None,
    notifier: Optional[NotificationDispatcher] = None,
    permissions: Optional[AgentPermissionChecker] = None,
) -> AppState:
    """Wire the engine around a store; collaborators default to the store-backed implementations."""
    if notifier is None:
        if config.notify_webhook_url:
            notifier = WebhookNotificationDispatcher(config.notify_webhook_url, timeout_sec=config.notify_timeout_sec)
        else:
            notifier = LoggingNotificationDispatcher()

    permissions = permissions or StoreAgentPermissionChecker(store)
    alerts = AlertLifecycleManager(
        store,
        notifier,
        refresh_tolerance=config.hours_refresh_tolerance,
        notify_timeout_sec=config.notify_timeout_sec,
    )
    orchestrator = ComplianceOrchestrator(
        store,
        alerts,
        staffing or ShiftStaffingDataProvider(store),
        permissions,
        default_warning_days=config.default_certification_warning_days,
    )
    scheduler = TenantScheduler(
        store,
        orchestrator,
        default_frequency_hours=config.default_monitoring_frequency_hours,
        global_sweep_hour_utc=config.global_sweep_hour_utc,
    )
    return AppState(
        config=config,
        store=store,
        alerts=alerts,
        orchestrator=orchestrator,
        scheduler=scheduler,
        permissions=permissions,
        mongo=mongo,
    )


# PUBLIC_INTERFACE
def init_state(app: FastAPI, config: BackendConfig) -> AppState:
    """Initialize app.state with a Mongo-backed engine."""
    mongo = MongoManager(config.mongo_uri, config.mongo_db_name)
    state = build_state(config, MongoDocumentStore(mongo), mongo=mongo)
    app.state.state = state
    return state


# PUBLIC_INTERFACE
def get_state(app: FastAPI) -> AppState:
    """Fetch typed AppState from a FastAPI app."""
    return app.state.state  # type: ignore[attr-defined]
