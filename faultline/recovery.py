"""Recovery engine: decides whether a failure is retried, worked around,
skipped or escalated.

Dispatch order for handle_error():
    1. operational category terminal       → critical record + escalate
    2. operational category build / test   → critical "blocked" record + escalate
    3. operational category runtime        → high record + escalate
    4. strategy table (kind first, then message pattern; first match wins)
         retry    → wait, hand back to the caller; escalate once over budget
         fallback → run handler; escalate if it raises
         skip     → abandon the task
         no match → escalate
    5. escalate → critical record + agent marked as error in the monitor

The engine never re-runs the failed operation itself; a RETRY action tells
the caller to do so. Escalation is terminal and needs an external actor.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import deque
from typing import Any, Awaitable, Callable

from faultline.config import MAX_RETRY_WAIT, RECOVERY_HISTORY_LIMIT
from faultline.errors import PipelineError
from faultline.monitor import HealthMonitor
from faultline.records import (
    ErrorContext,
    ErrorKind,
    FailureKind,
    OperationalCategory,
    RecoveryAction,
    RecoveryActionKind,
    RecoveryStrategy,
    Severity,
    new_correlation_id,
    new_id,
)
from faultline.store import ErrorStore
from faultline.strategies import default_strategies, learned_strategy

logger = logging.getLogger(__name__)

RECOVERY_CATEGORY = "error-recovery"
RECOVERY_AGENT_ID = "error-recovery-system"

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0

# Self-tuning looks back this far and learns categories seen more often than this
TUNING_WINDOW_SECONDS = 7 * 24 * 60 * 60
TUNING_MIN_OCCURRENCES = 5

ROOT_CAUSES = (
    ("command not found", "Command not found: the tool is not installed or not on PATH"),
    ("permission denied", "Permission denied: insufficient file or process permissions"),
    ("timeout", "Timeout: the command did not finish in time"),
    ("enoent", "Process could not be spawned: executable or working directory missing"),
    ("spawn", "Process could not be spawned"),
    ("no such file or directory", "Process could not be spawned: executable or working directory missing"),
)
UNKNOWN_ROOT_CAUSE = "Unknown root cause"

_BLOCKING_KINDS = {
    OperationalCategory.BUILD: (ErrorKind.BUILD_ERROR, "Build failed"),
    OperationalCategory.TEST: (ErrorKind.TEST_FAILURE, "Tests failed"),
}


def classify_terminal_root_cause(message: str) -> str:
    """Best-effort root cause for a failed terminal command."""
    lowered = message.lower()
    for needle, cause in ROOT_CAUSES:
        if needle in lowered:
            return cause
    return UNKNOWN_ROOT_CAUSE


def _pattern_matches(pattern: str, text: str) -> bool:
    try:
        return re.search(pattern, text, re.IGNORECASE) is not None
    except re.error as e:
        logger.warning("Invalid strategy pattern %r: %s", pattern, e)
        return False


class RecoveryEngine:
    """Maps failures to recovery actions.

    Example:
        engine = RecoveryEngine(store, monitor)
        context = ErrorContext(agent_id="code-assistant", task_id="t-1")
        while True:
            try:
                return await do_work()
            except Exception as e:
                action = await engine.handle_error(e, context)
                if action.action != RecoveryActionKind.RETRY:
                    break

    """

    def __init__(
        self,
        store: ErrorStore,
        monitor: HealthMonitor,
        strategies: list[RecoveryStrategy] | None = None,
        max_wait_seconds: float = MAX_RETRY_WAIT,
        history_limit: int = RECOVERY_HISTORY_LIMIT,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.monitor = monitor
        self.strategies: list[RecoveryStrategy] = (
            list(strategies) if strategies is not None else default_strategies()
        )
        self.max_wait_seconds = max_wait_seconds
        self._sleep = sleep
        self._clock = clock
        self._history: deque[RecoveryAction] = deque(maxlen=history_limit)

    # ---- dispatch ----

    async def handle_error(
        self,
        error: BaseException | str,
        context: ErrorContext,
    ) -> RecoveryAction:
        """Decide how to recover from ``error``.

        Args:
            error: The failure (exception or message)
            context: Failing agent and retry state; ``retry_count`` and
                ``correlation_id`` are updated in place

        Returns:
            The RecoveryAction taken (also kept in the recovery history)

        """
        message = str(error)
        if not context.correlation_id:
            context.correlation_id = new_correlation_id()

        category = OperationalCategory(context.error_type) if context.error_type else None
        context.error_type = category

        if category == OperationalCategory.TERMINAL:
            return await self._handle_terminal(message, context)
        if category in _BLOCKING_KINDS:
            return await self._handle_blocking(message, context, category)
        if category == OperationalCategory.RUNTIME:
            return await self._handle_runtime(message, context)

        strategy = self.match_strategy(error, context)
        if strategy is None:
            logger.info("No recovery strategy for %r, escalating", message)
            return await self._escalate(message, context)

        if strategy.action == RecoveryActionKind.RETRY:
            return await self._retry_with_delay(message, context, strategy)
        if strategy.action == RecoveryActionKind.FALLBACK:
            return await self._use_fallback(message, context, strategy)
        if strategy.action == RecoveryActionKind.SKIP:
            return await self._skip_task(message, context)
        return await self._escalate(message, context)

    def match_strategy(
        self,
        error: BaseException | str,
        context: ErrorContext | None = None,
    ) -> RecoveryStrategy | None:
        """First strategy for the failure's kind, else first pattern match."""
        kind: FailureKind | None = context.failure_kind if context else None
        if kind is None and isinstance(error, PipelineError):
            kind = error.kind
        if kind is not None:
            for strategy in self.strategies:
                if strategy.kind == kind:
                    return strategy

        lowered = str(error).lower()
        for strategy in self.strategies:
            if _pattern_matches(strategy.pattern, lowered):
                return strategy
        return None

    # ---- operational categories ----

    async def _handle_terminal(self, message: str, context: ErrorContext) -> RecoveryAction:
        root_cause = classify_terminal_root_cause(message)
        await self.store.log(
            ErrorKind.TERMINAL_ERROR,
            Severity.CRITICAL,
            "terminal",
            f"Terminal command failed: {message}",
            context={**self._context_dict(context), "root_cause": root_cause},
            solution=root_cause,
            **self._record_fields(context),
        )
        return await self._escalate(message, context)

    async def _handle_blocking(
        self,
        message: str,
        context: ErrorContext,
        category: OperationalCategory,
    ) -> RecoveryAction:
        kind, label = _BLOCKING_KINDS[category]
        await self.store.log(
            kind,
            Severity.CRITICAL,
            category.value,
            f"{label}, downstream work is blocked: {message}",
            context={**self._context_dict(context), "blocking": True},
            solution=f"Fix the {category.value} failure before continuing",
            **self._record_fields(context),
        )
        return await self._escalate(message, context)

    async def _handle_runtime(self, message: str, context: ErrorContext) -> RecoveryAction:
        # Escalates without consulting retry_count; see DESIGN.md before changing.
        await self.store.log(
            ErrorKind.RUNTIME_ERROR,
            Severity.HIGH,
            "runtime",
            f"Runtime error: {message}",
            context=self._context_dict(context),
            solution="Inspect the runtime failure",
            **self._record_fields(context),
        )
        return await self._escalate(message, context)

    # ---- strategy actions ----

    async def _retry_with_delay(
        self,
        message: str,
        context: ErrorContext,
        strategy: RecoveryStrategy,
    ) -> RecoveryAction:
        context.retry_count += 1
        max_retries = strategy.max_retries if strategy.max_retries is not None else DEFAULT_MAX_RETRIES

        if context.retry_count > max_retries:
            logger.info("Retry budget exhausted (%d/%d), escalating", context.retry_count, max_retries)
            return await self._escalate(message, context)

        delay = strategy.retry_delay if strategy.retry_delay is not None else DEFAULT_RETRY_DELAY
        delay = min(delay, self.max_wait_seconds)
        logger.info("Retry %d/%d in %.1fs for %r", context.retry_count, max_retries, delay, message)
        await self._sleep(delay)

        return self._record_action(
            message,
            context,
            RecoveryActionKind.RETRY,
            success=False,
            text=f"Retry {context.retry_count}/{max_retries} after {delay:g}s",
        )

    async def _use_fallback(
        self,
        message: str,
        context: ErrorContext,
        strategy: RecoveryStrategy,
    ) -> RecoveryAction:
        if strategy.fallback is None:
            return await self._escalate(message, context)
        try:
            outcome = await strategy.fallback()
        except Exception as e:
            logger.warning("Fallback handler failed for %r: %s", message, e)
            return await self._escalate(message, context)

        action = self._record_action(
            message,
            context,
            RecoveryActionKind.FALLBACK,
            success=bool(outcome.success),
            text=outcome.message or "Fallback applied",
        )
        await self.store.log(
            ErrorKind.RECOVERY,
            Severity.MEDIUM,
            RECOVERY_CATEGORY,
            f"Fallback applied for: {message}",
            context={**self._context_dict(context), "recovery_action": action.id},
            solution=action.message,
            **self._record_fields(context, agent_id=RECOVERY_AGENT_ID),
        )
        return action

    async def _skip_task(self, message: str, context: ErrorContext) -> RecoveryAction:
        action = self._record_action(
            message,
            context,
            RecoveryActionKind.SKIP,
            success=True,
            text="Task skipped because of error",
        )
        await self.store.log(
            ErrorKind.RECOVERY,
            Severity.LOW,
            RECOVERY_CATEGORY,
            f"Task skipped: {message}",
            context={**self._context_dict(context), "recovery_action": action.id},
            solution="Task was skipped",
            **self._record_fields(context, agent_id=RECOVERY_AGENT_ID),
        )
        return action

    async def _escalate(self, message: str, context: ErrorContext) -> RecoveryAction:
        action = self._record_action(
            message,
            context,
            RecoveryActionKind.ESCALATE,
            success=False,
            text="Error escalated - manual intervention required",
        )
        await self.store.log(
            ErrorKind.RECOVERY,
            Severity.CRITICAL,
            RECOVERY_CATEGORY,
            f"Error escalated: {message}",
            context={**self._context_dict(context), "recovery_action": action.id},
            solution="Manual intervention required",
            **self._record_fields(context, agent_id=RECOVERY_AGENT_ID),
        )
        try:
            await self.monitor.record_failure(context.agent_id)
        except Exception as e:
            logger.error("Could not update metrics for %s: %s", context.agent_id, e)
        return action

    # ---- self-tuning ----

    async def improve_recovery_strategies(self) -> list[RecoveryStrategy]:
        """Learn retry strategies for frequent categories that have none.

        Looks at the trailing week of the error store. Learned strategies
        live in memory only; use dump_strategies() to keep them.

        Returns:
            The strategies added in this pass

        """
        try:
            patterns = await self.store.analyze_patterns(since=self._clock() - TUNING_WINDOW_SECONDS)
            uncovered = [
                entry
                for entry in patterns.most_common_categories
                if entry.count > TUNING_MIN_OCCURRENCES
                and not any(_pattern_matches(s.pattern, entry.key) for s in self.strategies)
            ]

            added = [learned_strategy(re.escape(entry.key.lower())) for entry in uncovered]
            self.strategies.extend(added)

            await self.store.log(
                ErrorKind.RECOVERY,
                Severity.LOW,
                RECOVERY_CATEGORY,
                f"Recovery strategies improved: {len(added)} new strategies added",
                context={"new_strategies": [entry.key for entry in uncovered]},
                solution="Recovery strategies tuned automatically",
                agent_id=RECOVERY_AGENT_ID,
            )
            return added
        except Exception as e:
            logger.warning("Could not improve recovery strategies: %s", e)
            return []

    def get_recovery_history(self) -> list[RecoveryAction]:
        return list(self._history)

    # ---- helpers ----

    def _record_action(
        self,
        message: str,
        context: ErrorContext,
        kind: RecoveryActionKind,
        success: bool,
        text: str,
    ) -> RecoveryAction:
        action = RecoveryAction(
            id=new_id("recovery"),
            timestamp=self._clock(),
            error_message=message,
            correlation_id=context.correlation_id,
            action=kind,
            success=success,
            message=text,
            retry_count=context.retry_count,
        )
        self._history.append(action)
        return action

    @staticmethod
    def _context_dict(context: ErrorContext) -> dict[str, Any]:
        return {
            "agent_id": context.agent_id,
            "task_id": context.task_id,
            "file_path": context.file_path,
            "retry_count": context.retry_count,
            "error_type": context.error_type.value if context.error_type else None,
        }

    @staticmethod
    def _record_fields(context: ErrorContext, agent_id: str | None = None) -> dict[str, Any]:
        return {
            "file_path": context.file_path,
            "agent_id": agent_id or context.agent_id,
            "task_id": context.task_id,
            "correlation_id": context.correlation_id,
        }
