"""Service wiring and background supervision.

Pipeline builds the store, monitor, recovery engine and detector once and
hands them to each other explicitly. Supervisor owns the background loops:
detection, periodic health checks and periodic strategy tuning.
"""

from __future__ import annotations

import asyncio
import logging
import os

from faultline.config import (
    DB_PATH,
    DETECTION_INTERVAL,
    HEALTH_CHECK_INTERVAL,
    PROJECT_ROOT,
    STRATEGIES_FILE,
    TUNING_INTERVAL,
)
from faultline.db import PipelineDB
from faultline.detector import ErrorDetector
from faultline.monitor import HealthMonitor
from faultline.recovery import RecoveryEngine
from faultline.scheduler import PeriodicTask
from faultline.store import ErrorStore
from faultline.strategies import load_strategies

logger = logging.getLogger(__name__)


class Pipeline:
    """All pipeline services over one database.

    Usage:
        async with Pipeline("/tmp/faultline.db", root="/srv/app") as pipeline:
            await pipeline.detector.detect_errors()
            await pipeline.monitor.perform_all_health_checks()

    """

    def __init__(
        self,
        db_path: str = DB_PATH,
        root: str = PROJECT_ROOT,
        watch_paths: list[str] | None = None,
        agent_ids: list[str] | None = None,
        strategies_file: str | None = STRATEGIES_FILE,
        detection_interval: float = DETECTION_INTERVAL,
    ):
        self.db = PipelineDB(db_path)
        self.store = ErrorStore(self.db)
        self.monitor = HealthMonitor(self.db, self.store, agent_ids=agent_ids)
        strategies = None
        if strategies_file and os.path.exists(strategies_file):
            strategies = load_strategies(strategies_file)
        elif strategies_file:
            logger.warning("Strategies file %s not found, using defaults", strategies_file)
        self.recovery = RecoveryEngine(self.store, self.monitor, strategies=strategies)
        self.detector = ErrorDetector(
            self.store,
            watch_paths=watch_paths,
            root=root,
            interval=detection_interval,
        )

    async def open(self) -> "Pipeline":
        await self.db.init()
        return self

    async def close(self) -> None:
        await self.detector.stop()
        await self.db.close()

    async def __aenter__(self) -> "Pipeline":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class Supervisor:
    """Runs the detector loop plus periodic health checks and tuning."""

    def __init__(
        self,
        pipeline: Pipeline,
        health_interval: float = HEALTH_CHECK_INTERVAL,
        tuning_interval: float = TUNING_INTERVAL,
    ):
        self.pipeline = pipeline
        self.health_loop = PeriodicTask(
            "health-checks", pipeline.monitor.perform_all_health_checks, health_interval
        )
        self.tuning_loop = PeriodicTask(
            "strategy-tuning", pipeline.recovery.improve_recovery_strategies, tuning_interval
        )

    @property
    def is_running(self) -> bool:
        return self.pipeline.detector.is_running

    async def start(self) -> None:
        await self.pipeline.detector.start()
        await self.health_loop.start()
        await self.tuning_loop.start()

    async def stop(self) -> None:
        await self.tuning_loop.stop()
        await self.health_loop.stop()
        await self.pipeline.detector.stop()

    async def run_forever(self) -> None:
        """Start every loop and block until cancelled."""
        await self.start()
        logger.info("Supervisor running")
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()
            logger.info("Supervisor stopped")
