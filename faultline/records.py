"""Record types shared by the store, detector, monitor and recovery engine.

Everything that crosses a component boundary is a dataclass here:
- ErrorRecord: the immutable entry persisted by the error store
- DetectedError: a detector finding before it is persisted
- AgentMetricsSnapshot / HealthCheckResult: health monitor state
- RecoveryStrategy / RecoveryAction / ErrorContext: recovery engine I/O

Timestamps are epoch seconds (float), response times are milliseconds.
"""

from __future__ import annotations

import random
import string
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable


class ErrorKind(str, Enum):
    """Taxonomy of persisted error records."""

    # Detector findings
    TYPE = "type"
    SYNTAX = "syntax"
    DESIGN = "design"
    SECURITY = "security"
    LOGIC = "logic"
    PERFORMANCE = "performance"
    # Operational failures reported by callers of the recovery engine
    TERMINAL_ERROR = "terminal-error"
    BUILD_ERROR = "build-error"
    RUNTIME_ERROR = "runtime-error"
    TEST_FAILURE = "test-failure"
    # Pipeline bookkeeping
    RECOVERY = "recovery"
    HEALTH_CHECK = "health-check"
    RUNTIME = "runtime"
    OTHER = "other"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class OperationalCategory(str, Enum):
    """Caller-supplied category that bypasses strategy matching."""

    TERMINAL = "terminal"
    BUILD = "build"
    RUNTIME = "runtime"
    TEST = "test"


class FailureKind(str, Enum):
    """Structured discriminant for strategy dispatch."""

    RATE_LIMIT = "rate_limit"
    MODEL_LOADING = "model_loading"
    NETWORK = "network"
    PARSE = "parse"
    FATAL = "fatal"


class AgentStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    ERROR = "error"
    OFFLINE = "offline"


class RecoveryActionKind(str, Enum):
    RETRY = "retry"
    FALLBACK = "fallback"
    SKIP = "skip"
    ESCALATE = "escalate"


def new_id(prefix: str) -> str:
    """Build a record id: ``<prefix>-<ms timestamp>-<random suffix>``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def _enum_or_none(enum_cls, value):
    return enum_cls(value) if value is not None else None


@dataclass(frozen=True)
class ErrorRecord:
    """A classified error as persisted in the error store.

    Records are append-only: nothing updates a record after it is stored.

    """

    id: str
    timestamp: float
    kind: ErrorKind
    severity: Severity
    category: str
    message: str
    file_path: str | None = None
    line: int | None = None
    context: dict[str, Any] | None = None
    solution: str | None = None
    agent_id: str | None = None
    task_id: str | None = None
    correlation_id: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "kind", ErrorKind(self.kind))
        object.__setattr__(self, "severity", Severity(self.severity))

    @classmethod
    def create(
        cls,
        kind: ErrorKind,
        severity: Severity,
        category: str,
        message: str,
        **kwargs: Any,
    ) -> "ErrorRecord":
        """Stamp a fresh id and the current time on a new record."""
        return cls(
            id=new_id("error"),
            timestamp=time.time(),
            kind=kind,
            severity=severity,
            category=category,
            message=message,
            **kwargs,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "category": self.category,
            "message": self.message,
            "file_path": self.file_path,
            "line": self.line,
            "context": self.context,
            "solution": self.solution,
            "agent_id": self.agent_id,
            "task_id": self.task_id,
            "correlation_id": self.correlation_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ErrorRecord":
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            kind=ErrorKind(data["kind"]),
            severity=Severity(data["severity"]),
            category=data["category"],
            message=data["message"],
            file_path=data.get("file_path"),
            line=data.get("line"),
            context=data.get("context"),
            solution=data.get("solution"),
            agent_id=data.get("agent_id"),
            task_id=data.get("task_id"),
            correlation_id=data.get("correlation_id"),
        )


@dataclass
class DetectedError:
    """Finding produced by one detector sub-check.

    Not persisted on its own; the detector converts every finding with
    to_record() before detect_errors() returns.

    """

    kind: ErrorKind
    severity: Severity
    message: str
    auto_fixable: bool = False
    suggested_fix: str | None = None
    file_path: str | None = None
    line: int | None = None
    code: str | None = None  # offending source line, when known
    context: dict[str, Any] | None = None
    timestamp: float = field(default_factory=time.time)
    correlation_id: str = field(default_factory=new_correlation_id)

    def to_record(self, category: str, agent_id: str | None = None) -> ErrorRecord:
        context = dict(self.context or {})
        if self.code:
            context["code"] = self.code
        context["auto_fixable"] = self.auto_fixable
        return ErrorRecord(
            id=new_id("error"),
            timestamp=self.timestamp,
            kind=self.kind,
            severity=self.severity,
            category=category,
            message=self.message,
            file_path=self.file_path,
            line=self.line,
            context=context,
            solution=self.suggested_fix,
            agent_id=agent_id,
            correlation_id=self.correlation_id,
        )


@dataclass
class DetectionSummary:
    total: int = 0
    by_kind: dict[str, int] = field(default_factory=dict)
    by_severity: dict[str, int] = field(default_factory=dict)
    auto_fixable: int = 0

    @classmethod
    def from_findings(cls, findings: list[DetectedError]) -> "DetectionSummary":
        summary = cls(total=len(findings))
        for finding in findings:
            summary.by_kind[finding.kind.value] = summary.by_kind.get(finding.kind.value, 0) + 1
            summary.by_severity[finding.severity.value] = (
                summary.by_severity.get(finding.severity.value, 0) + 1
            )
            if finding.auto_fixable:
                summary.auto_fixable += 1
        return summary


@dataclass
class DetectionResult:
    errors: list[DetectedError]
    summary: DetectionSummary


@dataclass(frozen=True)
class CountEntry:
    key: str
    count: int


@dataclass
class PatternAnalysis:
    """Aggregate over the retained error history."""

    most_common_kinds: list[CountEntry]
    most_common_categories: list[CountEntry]
    most_common_files: list[CountEntry]
    critical_errors: int
    recent_errors: int

    def to_dict(self) -> dict:
        return {
            "most_common_kinds": [{"kind": e.key, "count": e.count} for e in self.most_common_kinds],
            "most_common_categories": [
                {"category": e.key, "count": e.count} for e in self.most_common_categories
            ],
            "most_common_files": [
                {"file_path": e.key, "count": e.count} for e in self.most_common_files
            ],
            "critical_errors": self.critical_errors,
            "recent_errors": self.recent_errors,
        }


@dataclass
class AgentMetricsSnapshot:
    agent_id: str
    timestamp: float
    tasks_completed: int = 0
    tasks_failed: int = 0
    average_response_time: float = 0.0  # ms
    errors: int = 0
    warnings: int = 0
    last_activity: float = 0.0
    status: AgentStatus = AgentStatus.ACTIVE

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "timestamp": self.timestamp,
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "average_response_time": self.average_response_time,
            "errors": self.errors,
            "warnings": self.warnings,
            "last_activity": self.last_activity,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AgentMetricsSnapshot":
        return cls(
            agent_id=data["agent_id"],
            timestamp=data["timestamp"],
            tasks_completed=data.get("tasks_completed", 0),
            tasks_failed=data.get("tasks_failed", 0),
            average_response_time=data.get("average_response_time", 0.0),
            errors=data.get("errors", 0),
            warnings=data.get("warnings", 0),
            last_activity=data.get("last_activity", data["timestamp"]),
            status=AgentStatus(data.get("status", AgentStatus.ACTIVE.value)),
        )


@dataclass(frozen=True)
class PerformanceFigures:
    response_time: float
    success_rate: float
    error_rate: float


@dataclass
class HealthCheckResult:
    agent_id: str
    timestamp: float
    healthy: bool
    issues: list[str]
    performance: PerformanceFigures

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "timestamp": self.timestamp,
            "healthy": self.healthy,
            "issues": list(self.issues),
            "performance": {
                "response_time": self.performance.response_time,
                "success_rate": self.performance.success_rate,
                "error_rate": self.performance.error_rate,
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HealthCheckResult":
        perf = data.get("performance") or {}
        return cls(
            agent_id=data["agent_id"],
            timestamp=data["timestamp"],
            healthy=bool(data["healthy"]),
            issues=list(data.get("issues") or []),
            performance=PerformanceFigures(
                response_time=perf.get("response_time", 0.0),
                success_rate=perf.get("success_rate", 0.0),
                error_rate=perf.get("error_rate", 1.0),
            ),
        )


@dataclass(frozen=True)
class FallbackOutcome:
    success: bool
    message: str = "Fallback applied"


FallbackHandler = Callable[[], Awaitable[FallbackOutcome]]


@dataclass
class RecoveryStrategy:
    """Maps an error signature to a recovery action.

    Matching uses ``kind`` first when the failure carries one, then
    ``pattern`` (a regex searched in the lower-cased message).

    """

    pattern: str
    action: RecoveryActionKind
    kind: FailureKind | None = None
    max_retries: int | None = None
    retry_delay: float | None = None  # seconds
    fallback: FallbackHandler | None = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"pattern": self.pattern, "action": self.action.value}
        if self.kind is not None:
            data["kind"] = self.kind.value
        if self.max_retries is not None:
            data["max_retries"] = self.max_retries
        if self.retry_delay is not None:
            data["retry_delay"] = self.retry_delay
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RecoveryStrategy":
        return cls(
            pattern=str(data["pattern"]),
            action=RecoveryActionKind(data["action"]),
            kind=_enum_or_none(FailureKind, data.get("kind")),
            max_retries=data.get("max_retries"),
            retry_delay=data.get("retry_delay"),
        )


@dataclass
class ErrorContext:
    """Who failed and how far along the caller's retry loop is.

    ``retry_count`` is advanced in place by the recovery engine on a retry
    decision, so callers can pass the same context to the next attempt.

    """

    agent_id: str
    task_id: str | None = None
    file_path: str | None = None
    retry_count: int = 0
    error_type: OperationalCategory | None = None
    failure_kind: FailureKind | None = None
    correlation_id: str | None = None


@dataclass(frozen=True)
class RecoveryAction:
    id: str
    timestamp: float
    error_message: str
    correlation_id: str
    action: RecoveryActionKind
    success: bool
    message: str
    retry_count: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "error_message": self.error_message,
            "correlation_id": self.correlation_id,
            "action": self.action.value,
            "success": self.success,
            "message": self.message,
            "retry_count": self.retry_count,
        }
