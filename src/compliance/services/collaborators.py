"""External collaborators consumed by the compliance engine, with default implementations.

- StaffingDataProvider: weekly hours / inter-shift rest per staff member (hours and rest rules)
- NotificationDispatcher: best-effort outbound notification (alert creation and escalation)
- AgentPermissionChecker: subscription gate consulted once per pass
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Tuple

import httpx

from src.compliance.db.store import DocumentStore, EntityKind
from src.compliance.errors import NotFoundError
from src.compliance.schemas.common import as_utc, utc_now

logger = logging.getLogger(__name__)


class StaffingDataProvider(Protocol):
    async def weekly_hours(self, user_id: str, business_id: str) -> float: ...

    async def inter_shift_gap(self, user_id: str, business_id: str) -> float: ...


class NotificationDispatcher(Protocol):
    async def notify(self, user_id: str, title: str, body: str, priority: str, action_ref: str) -> None: ...


class AgentPermissionChecker(Protocol):
    async def has_agent_access(self, business_id: str, agent_type: str) -> bool: ...


def _week_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """Current ISO week [Monday 00:00 UTC, next Monday 00:00 UTC)."""
    start = (now - timedelta(days=now.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=7)


class ShiftStaffingDataProvider:
    """
    Derives hours and rest figures from the ``shifts`` collection.

    weekly_hours: scheduled hours overlapping the current ISO week (shifts clipped to the week).
    inter_shift_gap: smallest gap (hours) between consecutive shifts within +/- ``window_days`` of
    now; overlapping shifts count as a zero gap; ``math.inf`` when fewer than two shifts exist.
    """

    def __init__(self, store: DocumentStore, *, window_days: int = 7, clock: Callable[[], datetime] = utc_now):
        self._store = store
        self._window_days = max(1, int(window_days))
        self._clock = clock

    async def _shifts(self, user_id: str, business_id: str, start: datetime, end: datetime) -> List[Tuple[datetime, datetime]]:
        docs = await self._store.find(
            EntityKind.shift,
            {
                "businessId": business_id,
                "userId": user_id,
                "isDeleted": {"$ne": True},
                "startTime": {"$lt": end},
                "endTime": {"$gt": start},
            },
            sort=[("startTime", 1)],
        )
        spans: List[Tuple[datetime, datetime]] = []
        for doc in docs:
            s, e = doc.get("startTime"), doc.get("endTime")
            if not isinstance(s, datetime) or not isinstance(e, datetime):
                continue
            s, e = as_utc(s), as_utc(e)
            if e > s:
                spans.append((s, e))
        spans.sort(key=lambda span: span[0])
        return spans

    async def weekly_hours(self, user_id: str, business_id: str) -> float:
        week_start, week_end = _week_bounds(as_utc(self._clock()))
        total = 0.0
        for s, e in await self._shifts(user_id, business_id, week_start, week_end):
            clipped = min(e, week_end) - max(s, week_start)
            total += max(0.0, clipped.total_seconds()) / 3600.0
        return round(total, 2)

    async def inter_shift_gap(self, user_id: str, business_id: str) -> float:
        now = as_utc(self._clock())
        window = timedelta(days=self._window_days)
        spans = await self._shifts(user_id, business_id, now - window, now + window)
        if len(spans) < 2:
            return math.inf
        smallest = math.inf
        latest_end = spans[0][1]
        for s, e in spans[1:]:
            gap = max(0.0, (s - latest_end).total_seconds() / 3600.0)
            smallest = min(smallest, gap)
            latest_end = max(latest_end, e)
        return round(smallest, 2)


class StoreAgentPermissionChecker:
    """Subscription gate: trialing tenants get every agent; active tenants need the agent feature."""

    def __init__(self, store: DocumentStore):
        self._store = store

    async def has_agent_access(self, business_id: str, agent_type: str) -> bool:
        business = await self._store.get_by_id(EntityKind.business, business_id)
        if business is None:
            raise NotFoundError("business", business_id)

        status = business.get("subscriptionStatus")
        if status == "trialing":
            return True
        if status != "active":
            return False

        # "compliance-monitoring" -> "agent_compliance_monitoring"
        feature = f"agent_{agent_type.replace('-', '_').lower()}"
        return feature in (business.get("enabledFeatures") or [])


class LoggingNotificationDispatcher:
    """Default dispatcher when no delivery channel is configured."""

    async def notify(self, user_id: str, title: str, body: str, priority: str, action_ref: str) -> None:
        logger.info("Notification user=%s priority=%s ref=%s title=%s", user_id, priority, action_ref, title)


class WebhookNotificationDispatcher:
    """POSTs notifications as JSON to a delivery webhook. Errors are left to the caller to log."""

    def __init__(self, url: str, *, timeout_sec: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self._url = url
        self._timeout = timeout_sec
        self._client = client

    async def notify(self, user_id: str, title: str, body: str, priority: str, action_ref: str) -> None:
        payload = {
            "userId": user_id,
            "title": title,
            "body": body,
            "priority": priority,
            "actionRef": action_ref,
        }
        if self._client is not None:
            response = await self._client.post(self._url, json=payload, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._url, json=payload)
        response.raise_for_status()
