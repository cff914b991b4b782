"""Scheduled one-shot run: scan, health-check and tune, then exit.

Designed to run from cron when a long-lived `watch` process is not wanted.
Exit code is 1 when the pass found critical findings or unhealthy agents.
"""

from __future__ import annotations

import asyncio
import logging

from faultline.records import Severity
from faultline.supervisor import Pipeline

logger = logging.getLogger(__name__)


async def run_scheduled_pass(pipeline: Pipeline, tune: bool = True) -> dict:
    """One detection pass, one round of health checks, optionally one tuning pass."""
    detection = await pipeline.detector.detect_errors()
    health = await pipeline.monitor.perform_all_health_checks()
    learned = await pipeline.recovery.improve_recovery_strategies() if tune else []
    return {
        "findings": detection.summary.total,
        "critical_findings": detection.summary.by_severity.get(Severity.CRITICAL.value, 0),
        "unhealthy_agents": [check.agent_id for check in health if not check.healthy],
        "learned_strategies": [strategy.pattern for strategy in learned],
    }


def run_cron(tune: bool = True) -> int:
    """Run one scheduled pass against the configured database. Returns exit code."""

    async def _run() -> dict:
        async with Pipeline() as pipeline:
            return await run_scheduled_pass(pipeline, tune=tune)

    report = asyncio.run(_run())
    print(
        f"Findings: {report['findings']} ({report['critical_findings']} critical), "
        f"unhealthy agents: {len(report['unhealthy_agents'])}, "
        f"learned strategies: {len(report['learned_strategies'])}"
    )
    if report["critical_findings"] or report["unhealthy_agents"]:
        return 1
    return 0
