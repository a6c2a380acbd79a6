from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Set

from src.compliance.db.store import DocumentStore, EntityKind
from src.compliance.schemas.agent_config import COMPLIANCE_AGENT_TYPE
from src.compliance.schemas.common import as_utc, utc_now
from src.compliance.services.orchestrator import ComplianceOrchestrator

logger = logging.getLogger(__name__)

DAILY_HOURS = 24


@dataclass(frozen=True)
class JobSchedule:
    """
    Recurrence of a tenant's compliance pass.

    24 (or more) hours means once a day at ``anchor_hour`` UTC; 1-23 means every N hours on the
    hour, i.e. at the UTC hours divisible by N, like cron's ``0 */N * * *``.
    """

    frequency_hours: int
    anchor_hour: int = 0

    @classmethod
    def from_frequency(cls, hours: int, anchor_hour: int = 0) -> "JobSchedule":
        hours = int(hours)
        if hours >= DAILY_HOURS:
            return cls(DAILY_HOURS, anchor_hour)
        return cls(max(1, hours), anchor_hour)

    @property
    def is_daily(self) -> bool:
        return self.frequency_hours >= DAILY_HOURS

    def describe(self) -> str:
        if self.is_daily:
            return f"0 {self.anchor_hour} * * *"
        return f"0 */{self.frequency_hours} * * *"

    def next_fire_after(self, now: datetime) -> datetime:
        """First firing time strictly after ``now``."""
        now = as_utc(now)
        if self.is_daily:
            candidate = now.replace(hour=self.anchor_hour, minute=0, second=0, microsecond=0)
            if candidate <= now:
                candidate += timedelta(days=1)
            return candidate
        candidate = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
        while candidate.hour % self.frequency_hours != 0:
            candidate += timedelta(hours=1)
        return candidate


@dataclass
class TenantJob:
    business_id: str
    schedule: JobSchedule
    stop_event: asyncio.Event
    task: Optional[asyncio.Task] = None
    next_fire_at: Optional[datetime] = None


class TenantScheduler:
    """
    Keeps one recurring compliance job per enabled tenant, plus a daily certification sweep.

    Each job is a single asyncio task that sleeps until its next firing and then awaits the pass,
    so firings of the same job never overlap and missed firings are not replayed. All changes to
    the job table happen under one lock.
    """

    def __init__(
        self,
        store: DocumentStore,
        orchestrator: ComplianceOrchestrator,
        *,
        default_frequency_hours: int = DAILY_HOURS,
        global_sweep_hour_utc: int = 0,
        schedule_factory: Callable[[int], JobSchedule] = JobSchedule.from_frequency,
        sweep_schedule: Optional[JobSchedule] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._orchestrator = orchestrator
        self._default_frequency = int(default_frequency_hours)
        self._schedule_factory = schedule_factory
        self._sweep_schedule = sweep_schedule or JobSchedule(DAILY_HOURS, int(global_sweep_hour_utc))
        self._clock = clock

        self._jobs: Dict[str, TenantJob] = {}
        self._retiring: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

        self._sweep_stop: Optional[asyncio.Event] = None
        self._sweep_task: Optional[asyncio.Task] = None

    async def _run_recurring(
        self,
        label: str,
        schedule: JobSchedule,
        stop: asyncio.Event,
        body: Callable[[], Awaitable[object]],
        on_scheduled: Optional[Callable[[datetime], None]] = None,
    ) -> None:
        last_fire: Optional[datetime] = None
        while not stop.is_set():
            now = self._clock()
            fire_at = schedule.next_fire_after(now if last_fire is None else max(now, last_fire))
            if on_scheduled is not None:
                on_scheduled(fire_at)

            delay = max(0.0, (fire_at - now).total_seconds())
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass

            last_fire = fire_at
            try:
                await body()
            except Exception:
                logger.exception("Scheduled job %s failed; will retry at next firing", label)

        logger.info("Scheduled job %s stopped", label)

    def _start_job(self, business_id: str, schedule: JobSchedule) -> TenantJob:
        job = TenantJob(business_id=business_id, schedule=schedule, stop_event=asyncio.Event())

        def _scheduled(at: datetime) -> None:
            job.next_fire_at = at

        job.task = asyncio.create_task(
            self._run_recurring(
                f"compliance:{business_id}",
                schedule,
                job.stop_event,
                lambda: self._orchestrator.run_pass(business_id),
                _scheduled,
            )
        )
        logger.info("Scheduled compliance job business=%s schedule=%s", business_id, schedule.describe())
        return job

    def _stop_job(self, business_id: str) -> None:
        job = self._jobs.pop(business_id, None)
        if job is None:
            return
        # An in-flight pass finishes; the loop exits before the next firing.
        job.stop_event.set()
        if job.task is not None and not job.task.done():
            self._retiring.add(job.task)
            job.task.add_done_callback(self._retiring.discard)
        logger.info("Stopped compliance job business=%s", business_id)

    async def _enabled_configs(self) -> List[dict]:
        return await self._store.find(
            EntityKind.agent_configuration, {"agentType": COMPLIANCE_AGENT_TYPE, "isEnabled": True}
        )

    # PUBLIC_INTERFACE
    async def initialize(self) -> int:
        """Schedule every enabled tenant not already scheduled. Returns the number of running jobs."""
        configs = await self._enabled_configs()
        logger.info("Initializing compliance jobs for %s enabled businesses", len(configs))
        for cfg in configs:
            business_id = str(cfg.get("businessId") or "")
            if not business_id or business_id in self._jobs:
                continue
            await self.reconcile(business_id)
        return len(self._jobs)

    # PUBLIC_INTERFACE
    async def reconcile(self, business_id: str) -> bool:
        """
        Bring one tenant's job in line with its stored configuration.

        Returns whether a job is running for the tenant afterwards. Failures are logged, never
        raised, and leave any existing job untouched.
        """
        async with self._lock:
            try:
                cfg = await self._orchestrator.load_configuration(business_id)
            except Exception:
                logger.exception("Could not load agent configuration for business %s", business_id)
                return business_id in self._jobs

            if cfg is None or not cfg.get("isEnabled"):
                self._stop_job(business_id)
                return False

            frequency = cfg.get("monitoringFrequencyHours") or self._default_frequency
            try:
                schedule = self._schedule_factory(int(frequency))
            except Exception:
                logger.exception("Invalid schedule for business %s (frequency=%r); keeping current job", business_id, frequency)
                return business_id in self._jobs

            current = self._jobs.get(business_id)
            if current is not None and current.schedule == schedule and current.task is not None and not current.task.done():
                return True

            self._stop_job(business_id)
            self._jobs[business_id] = self._start_job(business_id, schedule)
            return True

    async def _sweep_all(self) -> None:
        configs = await self._enabled_configs()
        logger.info("Daily certification sweep over %s businesses", len(configs))
        for cfg in configs:
            business_id = str(cfg.get("businessId") or "")
            if not business_id:
                continue
            try:
                await self._orchestrator.run_certification_sweep(business_id)
            except Exception:
                logger.exception("Certification sweep failed for business %s", business_id)

    # PUBLIC_INTERFACE
    def start(self) -> None:
        """Start the daily certification sweep (idempotent)."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_stop = asyncio.Event()
        self._sweep_task = asyncio.create_task(
            self._run_recurring("certification-sweep", self._sweep_schedule, self._sweep_stop, self._sweep_all)
        )
        logger.info("Started certification sweep schedule=%s", self._sweep_schedule.describe())

    # PUBLIC_INTERFACE
    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop every job and the sweep; tasks still running after ``timeout`` are cancelled."""
        async with self._lock:
            for business_id in list(self._jobs):
                self._stop_job(business_id)
            if self._sweep_stop is not None:
                self._sweep_stop.set()

        tasks = set(self._retiring)
        if self._sweep_task is not None:
            tasks.add(self._sweep_task)
        tasks = {t for t in tasks if not t.done()}
        if not tasks:
            return

        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Cancelled %s scheduler tasks that did not stop within %ss", len(pending), timeout)
            await asyncio.gather(*pending, return_exceptions=True)

    def jobs(self) -> Dict[str, int]:
        """Snapshot of running jobs: businessId -> frequency hours."""
        return {bid: job.schedule.frequency_hours for bid, job in self._jobs.items()}

    def job_details(self) -> List[dict]:
        return [
            {
                "businessId": bid,
                "frequencyHours": job.schedule.frequency_hours,
                "schedule": job.schedule.describe(),
                "nextFireAt": job.next_fire_at or job.schedule.next_fire_after(self._clock()),
            }
            for bid, job in sorted(self._jobs.items())
        ]

    @property
    def is_sweep_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()
