from __future__ import annotations

import copy
import math
import os
from collections.abc import AsyncIterator, Iterator
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
from bson import ObjectId
from pymongo import MongoClient

from src.compliance.config import BackendConfig
from src.compliance.db.store import EntityKind
from src.compliance.errors import DuplicateRecordError, NotFoundError
from src.compliance.schemas.agent_config import COMPLIANCE_AGENT_TYPE
from src.compliance.state import get_state

# Wednesday; the ISO week starts Monday 2026-03-02.
NOW = datetime(2026, 3, 4, 10, 30, tzinfo=timezone.utc)


def _match_value(value: Any, cond: Any) -> bool:
    if isinstance(cond, dict) and cond and all(str(k).startswith("$") for k in cond):
        for op, arg in cond.items():
            if op == "$in":
                if value not in arg:
                    return False
            elif op == "$ne":
                if value == arg:
                    return False
            elif op in ("$lt", "$lte", "$gt", "$gte"):
                if value is None:
                    return False
                if op == "$lt" and not value < arg:
                    return False
                if op == "$lte" and not value <= arg:
                    return False
                if op == "$gt" and not value > arg:
                    return False
                if op == "$gte" and not value >= arg:
                    return False
            else:
                raise NotImplementedError(op)
        return True
    return value == cond


def _matches(doc: dict, query: Dict[str, Any]) -> bool:
    for key, cond in query.items():
        value = doc.get(key)
        if key == "_id":
            value, cond = str(value), str(cond)
        if not _match_value(value, cond):
            return False
    return True


class InMemoryStore:
    """DocumentStore over plain dicts, mirroring the Mongo store's query subset and unique keys."""

    def __init__(self) -> None:
        self.data: Dict[EntityKind, List[dict]] = {k: [] for k in EntityKind}

    def _check_unique(self, kind: EntityKind, doc: dict, ignore_id: Any = None) -> None:
        for other in self.data[kind]:
            if ignore_id is not None and str(other["_id"]) == str(ignore_id):
                continue
            if kind is EntityKind.alert and doc.get("isOpen") and other.get("isOpen"):
                if other.get("dedupKey") == doc.get("dedupKey"):
                    raise DuplicateRecordError("compliance_alerts insert violates a unique key")
            if kind is EntityKind.agent_configuration:
                if (other.get("businessId"), other.get("agentType")) == (doc.get("businessId"), doc.get("agentType")):
                    raise DuplicateRecordError("agent_configurations insert violates a unique key")

    async def find(self, kind, filter, *, sort=None, limit=None) -> List[dict]:
        rows = [copy.deepcopy(d) for d in self.data[kind] if _matches(d, filter)]
        for field, direction in reversed(list(sort or [])):
            rows.sort(key=lambda d: (d.get(field) is not None, d.get(field) or 0), reverse=direction < 0)
        if limit:
            rows = rows[: int(limit)]
        return rows

    async def find_one(self, kind, filter) -> Optional[dict]:
        rows = await self.find(kind, filter, limit=1)
        return rows[0] if rows else None

    async def get_by_id(self, kind, record_id) -> Optional[dict]:
        if record_id is None:
            return None
        return await self.find_one(kind, {"_id": record_id})

    async def update_by_id(self, kind, record_id, patch, *, expected=None) -> Optional[dict]:
        query: Dict[str, Any] = {"_id": record_id}
        query.update(expected or {})
        for doc in self.data[kind]:
            if _matches(doc, query):
                candidate = dict(doc, **patch)
                self._check_unique(kind, candidate, ignore_id=doc["_id"])
                doc.update(copy.deepcopy(patch))
                return copy.deepcopy(doc)
        return None

    async def insert(self, kind, record) -> dict:
        doc = copy.deepcopy(record)
        doc.setdefault("_id", ObjectId())
        self._check_unique(kind, doc)
        self.data[kind].append(doc)
        return copy.deepcopy(doc)

    async def count(self, kind, filter) -> int:
        return len([d for d in self.data[kind] if _matches(d, filter)])

    async def delete_by_id(self, kind, record_id) -> bool:
        before = len(self.data[kind])
        self.data[kind] = [d for d in self.data[kind] if str(d["_id"]) != str(record_id)]
        return len(self.data[kind]) != before

    def all(self, kind: EntityKind) -> List[dict]:
        return [copy.deepcopy(d) for d in self.data[kind]]


class FakeStaffing:
    """StaffingDataProvider with per-user canned figures; an Exception value is raised."""

    def __init__(self) -> None:
        self.hours: Dict[str, Any] = {}
        self.gaps: Dict[str, Any] = {}

    async def weekly_hours(self, user_id: str, business_id: str) -> float:
        value = self.hours.get(user_id, 0.0)
        if isinstance(value, Exception):
            raise value
        return value

    async def inter_shift_gap(self, user_id: str, business_id: str) -> float:
        value = self.gaps.get(user_id, math.inf)
        if isinstance(value, Exception):
            raise value
        return value


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[Tuple[str, str, str, str, str]] = []
        self.fail = False

    async def notify(self, user_id: str, title: str, body: str, priority: str, action_ref: str) -> None:
        if self.fail:
            raise RuntimeError("delivery channel down")
        self.sent.append((user_id, title, body, priority, action_ref))


class StaticPermissions:
    """Grants access to every known business except those in ``denied``."""

    def __init__(self) -> None:
        self.denied: set = set()
        self.missing: set = set()
        self.calls = 0

    async def has_agent_access(self, business_id: str, agent_type: str) -> bool:
        self.calls += 1
        if business_id in self.missing:
            raise NotFoundError("business", business_id)
        return business_id not in self.denied


class Seeder:
    """Inserts fixture records shaped like the application's collections."""

    def __init__(self, store: InMemoryStore, now: datetime = NOW) -> None:
        self.store = store
        self.now = now

    async def business(self, status: str = "trialing", features: Optional[List[str]] = None) -> str:
        doc = await self.store.insert(
            EntityKind.business,
            {"name": "Acme Care", "subscriptionStatus": status, "enabledFeatures": features or []},
        )
        return str(doc["_id"])

    async def user(self, business_id: str, name: str = "Jane", surname: str = "Doe", **extra: Any) -> str:
        doc = await self.store.insert(
            EntityKind.user,
            dict(
                {
                    "businessId": business_id,
                    "name": name,
                    "surname": surname,
                    "email": f"{name.lower()}@example.com",
                    "isDeleted": False,
                },
                **extra,
            ),
        )
        return str(doc["_id"])

    async def certification(
        self,
        business_id: str,
        user_id: str,
        name: str = "First Aid",
        expires_in_days: float = 200,
        status: str = "active",
        **extra: Any,
    ) -> str:
        doc = await self.store.insert(
            EntityKind.certification,
            dict(
                {
                    "businessId": business_id,
                    "userId": user_id,
                    "name": name,
                    "issueDate": self.now - timedelta(days=365),
                    "expiryDate": self.now + timedelta(days=expires_in_days),
                    "status": status,
                    "isDeleted": False,
                    "createdAt": NOW,
                    "updatedAt": NOW,
                },
                **extra,
            ),
        )
        return str(doc["_id"])

    async def rule(self, business_id: str, rule_type: str, severity: str = "medium", **fields: Any) -> str:
        doc = await self.store.insert(
            EntityKind.rule,
            dict(
                {
                    "businessId": business_id,
                    "name": f"{rule_type} rule",
                    "type": rule_type,
                    "severity": severity,
                    "isActive": True,
                    "isDeleted": False,
                    "createdAt": NOW,
                    "updatedAt": NOW,
                },
                **fields,
            ),
        )
        return str(doc["_id"])

    async def agent_config(self, business_id: str, enabled: bool = True, frequency: int = 24, warning_days: int = 30) -> str:
        doc = await self.store.insert(
            EntityKind.agent_configuration,
            {
                "businessId": business_id,
                "agentType": COMPLIANCE_AGENT_TYPE,
                "isEnabled": enabled,
                "monitoringFrequencyHours": frequency,
                "certificationWarningDays": warning_days,
                "createdAt": NOW,
                "updatedAt": NOW,
            },
        )
        return str(doc["_id"])


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def seed(store: InMemoryStore) -> Seeder:
    return Seeder(store)


@pytest.fixture
def staffing() -> FakeStaffing:
    return FakeStaffing()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def permissions() -> StaticPermissions:
    return StaticPermissions()


@pytest.fixture
def config() -> BackendConfig:
    """Deterministic config. ASGITransport skips lifespan hooks, so jobs only come from explicit reconciles."""
    return BackendConfig(
        mongo_uri="mongodb://localhost:27017",
        mongo_db_name="compliance_test",
        scheduler_enabled=True,
        global_sweep_hour_utc=0,
        scheduler_shutdown_timeout_sec=1.0,
        default_monitoring_frequency_hours=24,
        default_certification_warning_days=30,
        hours_refresh_tolerance=1.0,
        summary_upcoming_days=90,
        summary_upcoming_limit=10,
        notify_webhook_url=None,
        notify_timeout_sec=1.0,
        log_level="INFO",
        mongo_uri_source="test",
    )


@pytest.fixture
def app_state(config: BackendConfig, store: InMemoryStore, staffing: FakeStaffing, notifier: RecordingNotifier):
    """Engine wired over the in-memory store with the store-backed permission checker."""
    from src.compliance.state import build_state

    return build_state(config, store, staffing=staffing, notifier=notifier)


@pytest.fixture
def app(app_state):
    from src.compliance.main import create_app

    return create_app(state=app_state)


@pytest.fixture
async def async_client(app) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client bound to the FastAPI ASGI app."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await get_state(app).scheduler.shutdown(timeout=1.0)


@pytest.fixture(scope="session")
def mongo_uri() -> str:
    """MongoDB URI for integration tests; skipped when none is configured."""
    uri = os.getenv("COMPLIANCE_MONGO_URI") or os.getenv("BACKEND_MONGO_URI")
    if not uri:
        pytest.skip("No Mongo URI configured (set COMPLIANCE_MONGO_URI or BACKEND_MONGO_URI)")
    return uri


@pytest.fixture(scope="session")
def mongo_client(mongo_uri: str) -> Iterator[MongoClient]:
    """PyMongo client used by tests for direct DB inspection/cleanup."""
    client = MongoClient(mongo_uri, connect=True, tz_aware=True)
    try:
        yield client
    finally:
        client.close()
