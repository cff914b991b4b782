"""Agent health monitor.

Keeps the latest metrics snapshot per agent plus a bounded snapshot
history, derives a point-in-time health verdict from the latest snapshot,
and writes a critical record to the error store for every unhealthy agent
found by perform_all_health_checks().
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, Iterable

import aiosqlite

from faultline.config import AGENT_IDS, HEALTH_HISTORY_LIMIT, METRICS_HISTORY_LIMIT
from faultline.db import PipelineDB
from faultline.records import (
    AgentMetricsSnapshot,
    AgentStatus,
    ErrorKind,
    HealthCheckResult,
    PerformanceFigures,
    Severity,
)
from faultline.store import ErrorStore

logger = logging.getLogger(__name__)

MONITOR_CATEGORY = "agent-monitoring"
MONITOR_AGENT_ID = "agent-monitor"
NO_METRICS_ISSUE = "No metrics present"

_SNAPSHOT_COLUMNS = (
    "agent_id, timestamp, tasks_completed, tasks_failed, average_response_time, "
    "errors, warnings, last_activity, status"
)
_METRIC_FIELDS = ("tasks_completed", "tasks_failed", "average_response_time", "errors", "warnings")


def _snapshot_params(snapshot: AgentMetricsSnapshot) -> tuple:
    return (
        snapshot.agent_id,
        snapshot.timestamp,
        snapshot.tasks_completed,
        snapshot.tasks_failed,
        snapshot.average_response_time,
        snapshot.errors,
        snapshot.warnings,
        snapshot.last_activity,
        snapshot.status.value,
    )


def _row_to_snapshot(row: aiosqlite.Row) -> AgentMetricsSnapshot:
    return AgentMetricsSnapshot.from_dict(dict(row))


def _row_to_health(row: aiosqlite.Row) -> HealthCheckResult:
    data = dict(row)
    return HealthCheckResult.from_dict(
        {
            "agent_id": data["agent_id"],
            "timestamp": data["timestamp"],
            "healthy": bool(data["healthy"]),
            "issues": json.loads(data["issues"]),
            "performance": {
                "response_time": data["response_time"],
                "success_rate": data["success_rate"],
                "error_rate": data["error_rate"],
            },
        }
    )


class HealthMonitor:
    """Tracks per-agent metrics and computes health verdicts.

    Agents are registered dynamically: the registry is seeded from
    ``agent_ids`` and every agent that records metrics joins it.

    Usage:
        monitor = HealthMonitor(db, store)
        await monitor.record_metrics("code-assistant", tasks_completed=9, tasks_failed=1)
        check = await monitor.perform_health_check("code-assistant")
        results = await monitor.perform_all_health_checks()

    """

    def __init__(
        self,
        db: PipelineDB,
        store: ErrorStore,
        agent_ids: Iterable[str] | None = None,
        error_rate_threshold: float = 0.10,
        response_time_threshold: float = 30_000,
        inactivity_hours: float = 24,
        metrics_limit: int = METRICS_HISTORY_LIMIT,
        health_limit: int = HEALTH_HISTORY_LIMIT,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.store = store
        self.error_rate_threshold = error_rate_threshold
        self.response_time_threshold = response_time_threshold
        self.inactivity_hours = inactivity_hours
        self.metrics_limit = metrics_limit
        self.health_limit = health_limit
        self._clock = clock
        self._agents: list[str] = []
        for agent_id in AGENT_IDS if agent_ids is None else agent_ids:
            self.register_agent(agent_id)

    # ---- registry ----

    @property
    def agents(self) -> list[str]:
        return list(self._agents)

    def register_agent(self, agent_id: str) -> bool:
        """Announce an agent. Returns False if it was already known."""
        if agent_id in self._agents:
            return False
        self._agents.append(agent_id)
        logger.debug("Agent registered: %s", agent_id)
        return True

    def unregister_agent(self, agent_id: str) -> bool:
        if agent_id not in self._agents:
            return False
        self._agents.remove(agent_id)
        return True

    # ---- metrics ----

    async def record_metrics(
        self,
        agent_id: str,
        tasks_completed: int | None = None,
        tasks_failed: int | None = None,
        average_response_time: float | None = None,
        errors: int | None = None,
        warnings: int | None = None,
        status: AgentStatus | str | None = None,
    ) -> AgentMetricsSnapshot:
        """Replace the agent's current snapshot and append it to the history.

        Unset numeric fields become zero, unset status becomes active; the
        timestamp and last activity are stamped with the current time.

        """
        now = self._clock()
        snapshot = AgentMetricsSnapshot(
            agent_id=agent_id,
            timestamp=now,
            tasks_completed=tasks_completed or 0,
            tasks_failed=tasks_failed or 0,
            average_response_time=average_response_time or 0.0,
            errors=errors or 0,
            warnings=warnings or 0,
            last_activity=now,
            status=AgentStatus(status) if status is not None else AgentStatus.ACTIVE,
        )
        self.register_agent(agent_id)
        async with self.db.transaction() as conn:
            await self._write_snapshot(conn, snapshot)
        return snapshot

    async def record_failure(self, agent_id: str) -> AgentMetricsSnapshot:
        """Count one more failed task and one more error; set status to error.

        Counters build on the current snapshot so earlier totals survive.

        """
        now = self._clock()
        self.register_agent(agent_id)
        async with self.db.transaction() as conn:
            current = await self._fetch_latest(conn, agent_id)
            base: dict[str, Any] = (
                {name: getattr(current, name) for name in _METRIC_FIELDS} if current else {}
            )
            snapshot = AgentMetricsSnapshot(
                agent_id=agent_id,
                timestamp=now,
                tasks_completed=base.get("tasks_completed", 0),
                tasks_failed=base.get("tasks_failed", 0) + 1,
                average_response_time=base.get("average_response_time", 0.0),
                errors=base.get("errors", 0) + 1,
                warnings=base.get("warnings", 0),
                last_activity=now,
                status=AgentStatus.ERROR,
            )
            await self._write_snapshot(conn, snapshot)
        logger.info("Agent %s marked as error after escalation", agent_id)
        return snapshot

    async def _write_snapshot(self, conn: aiosqlite.Connection, snapshot: AgentMetricsSnapshot) -> None:
        params = _snapshot_params(snapshot)
        await conn.execute(
            f"INSERT OR REPLACE INTO agent_metrics_current ({_SNAPSHOT_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            params,
        )
        await conn.execute(
            f"INSERT INTO agent_metrics_history ({_SNAPSHOT_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            params,
        )
        await self.db.trim(conn, "agent_metrics_history", self.metrics_limit)

    async def _fetch_latest(
        self, conn: aiosqlite.Connection, agent_id: str
    ) -> AgentMetricsSnapshot | None:
        cursor = await conn.execute(
            f"SELECT {_SNAPSHOT_COLUMNS} FROM agent_metrics_current WHERE agent_id = ?",
            (agent_id,),
        )
        row = await cursor.fetchone()
        return _row_to_snapshot(row) if row else None

    async def get_latest(self, agent_id: str) -> AgentMetricsSnapshot | None:
        async with self.db.reading() as conn:
            return await self._fetch_latest(conn, agent_id)

    async def get_metrics(self, agent_id: str | None = None) -> list[AgentMetricsSnapshot]:
        """Snapshot history, oldest first, optionally for one agent."""
        async with self.db.reading() as conn:
            if agent_id is not None:
                cursor = await conn.execute(
                    f"SELECT {_SNAPSHOT_COLUMNS} FROM agent_metrics_history "
                    "WHERE agent_id = ? ORDER BY seq ASC",
                    (agent_id,),
                )
            else:
                cursor = await conn.execute(
                    f"SELECT {_SNAPSHOT_COLUMNS} FROM agent_metrics_history ORDER BY seq ASC"
                )
            rows = await cursor.fetchall()
        return [_row_to_snapshot(row) for row in rows]

    # ---- health checks ----

    async def perform_health_check(self, agent_id: str) -> HealthCheckResult:
        """Compute the health verdict for one agent from its latest snapshot.

        Never raises: an internal failure becomes an unhealthy result.

        """
        now = self._clock()
        try:
            latest = await self.get_latest(agent_id)
        except Exception as e:
            logger.error("Health check for %s failed: %s", agent_id, e)
            return HealthCheckResult(
                agent_id=agent_id,
                timestamp=now,
                healthy=False,
                issues=[f"Health check failed: {e}"],
                performance=PerformanceFigures(response_time=0, success_rate=0, error_rate=1),
            )

        if latest is None:
            return HealthCheckResult(
                agent_id=agent_id,
                timestamp=now,
                healthy=False,
                issues=[NO_METRICS_ISSUE],
                performance=PerformanceFigures(response_time=0, success_rate=0, error_rate=1),
            )

        issues: list[str] = []
        if latest.status in (AgentStatus.ERROR, AgentStatus.OFFLINE):
            issues.append(f"Agent status: {latest.status.value}")

        total_tasks = latest.tasks_completed + latest.tasks_failed
        error_rate = latest.tasks_failed / total_tasks if total_tasks > 0 else 0.0
        if error_rate > self.error_rate_threshold:
            issues.append(f"High error rate: {error_rate * 100:.1f}%")

        if latest.average_response_time > self.response_time_threshold:
            issues.append(f"Slow response time: {latest.average_response_time:g}ms")

        hours_since_activity = (now - latest.last_activity) / 3600
        if hours_since_activity > self.inactivity_hours:
            issues.append(f"No activity for {hours_since_activity:.1f} hours")

        success_rate = latest.tasks_completed / total_tasks if total_tasks > 0 else 0.0

        return HealthCheckResult(
            agent_id=agent_id,
            timestamp=now,
            healthy=not issues,
            issues=issues,
            performance=PerformanceFigures(
                response_time=latest.average_response_time,
                success_rate=success_rate,
                error_rate=error_rate,
            ),
        )

    async def perform_all_health_checks(self) -> list[HealthCheckResult]:
        """Check every registered agent, persist the results, log unhealthy ones."""
        agent_ids = self.agents
        results = list(
            await asyncio.gather(*(self.perform_health_check(agent_id) for agent_id in agent_ids))
        )

        try:
            await self._save_health_checks(results)
        except Exception as e:
            logger.warning("Could not save health checks: %s", e)

        for check in results:
            if check.healthy:
                continue
            await self.store.log(
                ErrorKind.HEALTH_CHECK,
                Severity.CRITICAL,
                MONITOR_CATEGORY,
                f"Agent {check.agent_id} is unhealthy: {', '.join(check.issues)}",
                context={
                    "agent_id": check.agent_id,
                    "issues": check.issues,
                    "performance": check.to_dict()["performance"],
                },
                solution="Check the agent status and resolve the reported issues",
                agent_id=MONITOR_AGENT_ID,
            )

        unhealthy = sum(1 for check in results if not check.healthy)
        logger.info("Health checks: %d agents, %d unhealthy", len(results), unhealthy)
        return results

    async def _save_health_checks(self, results: list[HealthCheckResult]) -> None:
        async with self.db.transaction() as conn:
            await conn.executemany(
                "INSERT INTO health_checks "
                "(agent_id, timestamp, healthy, issues, response_time, success_rate, error_rate) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        check.agent_id,
                        check.timestamp,
                        int(check.healthy),
                        json.dumps(check.issues),
                        check.performance.response_time,
                        check.performance.success_rate,
                        check.performance.error_rate,
                    )
                    for check in results
                ],
            )
            await self.db.trim(conn, "health_checks", self.health_limit)

    async def get_health_checks(self, agent_id: str | None = None) -> list[HealthCheckResult]:
        """Stored health check history, oldest first, optionally for one agent."""
        columns = "agent_id, timestamp, healthy, issues, response_time, success_rate, error_rate"
        async with self.db.reading() as conn:
            if agent_id is not None:
                cursor = await conn.execute(
                    f"SELECT {columns} FROM health_checks WHERE agent_id = ? ORDER BY seq ASC",
                    (agent_id,),
                )
            else:
                cursor = await conn.execute(f"SELECT {columns} FROM health_checks ORDER BY seq ASC")
            rows = await cursor.fetchall()
        return [_row_to_health(row) for row in rows]
