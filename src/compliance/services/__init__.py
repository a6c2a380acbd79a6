"""Business-logic layer for the compliance-monitoring agent.

Engine:
- certification_evaluator.py / rule_evaluator.py (findings from certifications and rules)
- alert_manager.py (deduplicated alert lifecycle)
- orchestrator.py (per-tenant compliance passes)
- scheduler.py (recurring per-tenant jobs and the daily certification sweep)

API-facing services: alerts_service.py, certifications_service.py, rules_service.py, agent_config_service.py.
"""

# Import side-effects are intentionally avoided here; modules are imported by routers/services as needed.
