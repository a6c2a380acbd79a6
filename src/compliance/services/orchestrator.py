from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set

from src.compliance.db.store import DocumentStore, EntityKind
from src.compliance.errors import AgentAccessDeniedError
from src.compliance.schemas.agent_config import COMPLIANCE_AGENT_TYPE
from src.compliance.schemas.common import utc_now
from src.compliance.services.alert_manager import AlertLifecycleManager, ReconcileOutcome
from src.compliance.services.certification_evaluator import evaluate_certifications
from src.compliance.services.collaborators import AgentPermissionChecker, StaffingDataProvider
from src.compliance.services.findings import Finding
from src.compliance.services.rule_evaluator import evaluate_rules

logger = logging.getLogger(__name__)


@dataclass
class PassResult:
    """What one compliance pass did for a tenant."""

    business_id: str
    skipped: bool = False
    reason: Optional[str] = None
    findings: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    errors: int = 0


@dataclass
class ManualCheckResult:
    pass_result: PassResult
    active_alert_count: int


class ComplianceOrchestrator:
    """
    Runs compliance passes for tenants: certification evaluation, rule evaluation, then alert
    reconciliation of every finding. Certification findings are reconciled before the status
    change behind them is written, so a failed reconcile is retried by the next pass.

    At most one pass per tenant is in flight inside this process; a pass requested while another
    is running is skipped rather than queued.
    """

    def __init__(
        self,
        store: DocumentStore,
        alerts: AlertLifecycleManager,
        staffing: StaffingDataProvider,
        permissions: AgentPermissionChecker,
        *,
        default_warning_days: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._alerts = alerts
        self._staffing = staffing
        self._permissions = permissions
        self._default_warning_days = int(default_warning_days)
        self._clock = clock
        self._in_flight: Set[str] = set()

    async def load_configuration(self, business_id: str) -> Optional[dict]:
        return await self._store.find_one(
            EntityKind.agent_configuration, {"businessId": business_id, "agentType": COMPLIANCE_AGENT_TYPE}
        )

    async def warning_days_for(self, business_id: str) -> int:
        """Tenant's certification warning window, falling back to the configured default."""
        cfg = await self.load_configuration(business_id)
        value = (cfg or {}).get("certificationWarningDays")
        if value is None:
            return self._default_warning_days
        return max(0, int(value))

    async def _has_access(self, business_id: str, strict: bool) -> bool:
        allowed = await self._permissions.has_agent_access(business_id, COMPLIANCE_AGENT_TYPE)
        if not allowed and strict:
            raise AgentAccessDeniedError(business_id, COMPLIANCE_AGENT_TYPE)
        return allowed

    def _publisher(self, result: PassResult) -> Callable[[Finding], Awaitable[ReconcileOutcome]]:
        """Reconciles one certification finding; errors propagate so its status is not advanced."""

        async def _publish(finding: Finding) -> ReconcileOutcome:
            result.findings += 1
            outcome = await self._alerts.reconcile(finding)
            result.outcomes[outcome.value] = result.outcomes.get(outcome.value, 0) + 1
            return outcome

        return _publish

    async def _reconcile_all(self, findings: List[Finding], result: PassResult) -> None:
        result.findings += len(findings)
        for finding in findings:
            try:
                outcome = await self._alerts.reconcile(finding)
            except Exception:
                result.errors += 1
                logger.exception(
                    "Alert reconciliation failed business=%s key=%s", finding.business_id, finding.dedup_key
                )
                continue
            result.outcomes[outcome.value] = result.outcomes.get(outcome.value, 0) + 1

    # PUBLIC_INTERFACE
    async def run_pass(self, business_id: str, *, strict: bool = False) -> PassResult:
        """
        Full compliance pass for one tenant.

        With ``strict`` the caller sees a missing business or denied access as an error; otherwise
        a tenant without access is skipped and logged.
        """
        if business_id in self._in_flight:
            logger.info("Compliance pass already running for business %s; skipping", business_id)
            return PassResult(business_id=business_id, skipped=True, reason="in_flight")

        self._in_flight.add(business_id)
        try:
            if not await self._has_access(business_id, strict):
                logger.info("Business %s has no compliance-monitoring access; skipping pass", business_id)
                return PassResult(business_id=business_id, skipped=True, reason="no_access")

            now = self._clock()
            result = PassResult(business_id=business_id)
            logger.info("Starting compliance pass for business %s", business_id)

            warning_days = await self.warning_days_for(business_id)
            certs = await evaluate_certifications(
                self._store, business_id, warning_days, now=now, publish=self._publisher(result)
            )
            result.errors += certs.errors

            rules = await evaluate_rules(self._store, self._staffing, business_id, now=now)
            result.errors += rules.errors
            await self._reconcile_all(rules.findings, result)

            logger.info(
                "Compliance pass done business=%s findings=%s outcomes=%s errors=%s",
                business_id,
                result.findings,
                result.outcomes,
                result.errors,
            )
            return result
        finally:
            self._in_flight.discard(business_id)

    # PUBLIC_INTERFACE
    async def run_certification_sweep(self, business_id: str) -> PassResult:
        """Certification-only pass, used by the daily global sweep."""
        if business_id in self._in_flight:
            logger.info("Compliance pass already running for business %s; skipping sweep", business_id)
            return PassResult(business_id=business_id, skipped=True, reason="in_flight")

        self._in_flight.add(business_id)
        try:
            if not await self._has_access(business_id, False):
                return PassResult(business_id=business_id, skipped=True, reason="no_access")
            result = PassResult(business_id=business_id)
            warning_days = await self.warning_days_for(business_id)
            certs = await evaluate_certifications(
                self._store, business_id, warning_days, now=self._clock(), publish=self._publisher(result)
            )
            result.errors += certs.errors
            return result
        finally:
            self._in_flight.discard(business_id)

    # PUBLIC_INTERFACE
    async def run_manual_check(self, business_id: str) -> ManualCheckResult:
        """Run a pass on demand and report the tenant's number of active alerts afterwards."""
        result = await self.run_pass(business_id, strict=True)
        if result.skipped:
            logger.info(
                "Manual check for business %s did not run (%s); reporting current alert count", business_id, result.reason
            )
        return ManualCheckResult(pass_result=result, active_alert_count=await self._alerts.count_active(business_id))
