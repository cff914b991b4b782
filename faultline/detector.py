"""Error detector (watchdog): periodically scans the codebase for faults.

Each pass runs independent sub-checks concurrently:
    typecheck  → external type checker, line-oriented diagnostics
    lint       → external linter, JSON findings
    design     → source-pattern rules per line
    security   → secret-pattern rule per file
    logic      → "too many recent errors" over the error store
    performance → extension point, no rules yet

A sub-check that fails (missing tool, unreadable file, bad output) is
logged and contributes no findings; the others still run. All findings are
appended to the error store before detect_errors() returns.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import signal
from pathlib import Path
from typing import Awaitable, Callable, Iterable

from faultline.config import (
    DETECTION_INTERVAL,
    LINT_CMD,
    PROJECT_ROOT,
    TOOL_TIMEOUT,
    TYPECHECK_CMD,
    TYPECHECK_CRITICAL_CODES,
    WATCH_EXTENSIONS,
    WATCH_PATHS,
)
from faultline.records import (
    DetectedError,
    DetectionResult,
    DetectionSummary,
    ErrorKind,
    Severity,
)
from faultline.rules import DEFAULT_SOURCE_RULES, SourceRule, scan_lines, scan_secrets
from faultline.scheduler import PeriodicTask
from faultline.store import ErrorStore

logger = logging.getLogger(__name__)

DETECTOR_CATEGORY = "error-detector"
DETECTOR_AGENT_ID = "error-detector"

# More recent errors than this in 24h yields a logic finding
RECENT_ERROR_THRESHOLD = 10

DIAGNOSTIC_LINE = re.compile(r"(.+?)\((\d+),(\d+)\):\s*(error|warning)\s*([A-Za-z]+\d+):\s*(.+)")

AUTO_FIXABLE_CODES = ("TS2307", "TS2339", "TS2345", "TS2554")

SUGGESTED_FIXES = {
    "TS2307": "Missing import - add an import statement",
    "TS2339": "Property does not exist - check the type definition",
    "TS2345": "Type mismatch - correct the argument types",
    "TS2554": "Wrong number of arguments - check the call signature",
}
DEFAULT_SUGGESTED_FIX = "Check the type checker documentation for this diagnostic"

Check = Callable[[], Awaitable[list[DetectedError]]]


class ToolError(Exception):
    """External analysis tool could not be run to completion."""


def parse_diagnostics(
    output: str,
    critical_codes: Iterable[str] = TYPECHECK_CRITICAL_CODES,
) -> list[DetectedError]:
    """Parse ``path(line,col): severity CODE: message`` diagnostics.

    Lines of any other shape are ignored.

    """
    critical_codes = tuple(critical_codes)
    findings: list[DetectedError] = []
    for raw in output.splitlines():
        match = DIAGNOSTIC_LINE.match(raw)
        if not match:
            continue
        file_path, line_no, _col, _level, code, message = match.groups()
        findings.append(
            DetectedError(
                kind=ErrorKind.TYPE,
                severity=Severity.CRITICAL if code.startswith(critical_codes) else Severity.HIGH,
                message=f"{code}: {message.strip()}",
                auto_fixable=code in AUTO_FIXABLE_CODES,
                suggested_fix=SUGGESTED_FIXES.get(code, DEFAULT_SUGGESTED_FIX),
                file_path=file_path.strip(),
                line=int(line_no),
                context={"code": code},
            )
        )
    return findings


def _lint_severity(value) -> Severity:
    if value == 2:
        return Severity.HIGH
    if value == 1:
        return Severity.MEDIUM
    return Severity.LOW


def parse_lint_report(output: str) -> list[DetectedError]:
    """Parse a JSON list of ``{filePath, messages: [...]}`` lint results.

    Raises:
        ValueError: If output is not valid JSON
    """
    findings: list[DetectedError] = []
    for file_result in json.loads(output):
        file_path = file_result.get("filePath")
        for message in file_result.get("messages") or []:
            fixable = bool(message.get("fixable") or message.get("fix"))
            findings.append(
                DetectedError(
                    kind=ErrorKind.SYNTAX,
                    severity=_lint_severity(message.get("severity")),
                    message=f"{message.get('ruleId') or 'unknown'}: {message.get('message', '')}",
                    auto_fixable=fixable,
                    suggested_fix="Linter auto-fix available" if fixable else None,
                    file_path=file_path,
                    line=message.get("line"),
                )
            )
    return findings


def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    """Kill the shell and every program it started (they share one session)."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.debug("killpg failed for %s, killing shell only: %s", proc.pid, e)
        proc.kill()


def _read_text(path: str) -> str | None:
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.debug("Skipping unreadable file %s: %s", path, e)
        return None


class ErrorDetector:
    """Scans watched source roots and tool output for faults.

    Example:
        detector = ErrorDetector(store, watch_paths=["src"], root="/srv/app")
        result = await detector.detect_errors()
        print(result.summary.total)

        await detector.start()   # background loop every `interval` seconds
        await detector.stop()

    """

    def __init__(
        self,
        store: ErrorStore,
        watch_paths: list[str] | None = None,
        root: str = PROJECT_ROOT,
        extensions: Iterable[str] = WATCH_EXTENSIONS,
        typecheck_cmd: str | None = TYPECHECK_CMD,
        lint_cmd: str | None = LINT_CMD,
        critical_codes: Iterable[str] = TYPECHECK_CRITICAL_CODES,
        source_rules: tuple[SourceRule, ...] = DEFAULT_SOURCE_RULES,
        tool_timeout: float = TOOL_TIMEOUT,
        interval: float = DETECTION_INTERVAL,
    ):
        self.store = store
        self.watch_paths = list(watch_paths) if watch_paths else list(WATCH_PATHS)
        self.root = root
        self.extensions = tuple(extensions)
        self.typecheck_cmd = typecheck_cmd
        self.lint_cmd = lint_cmd
        self.critical_codes = tuple(critical_codes)
        self.source_rules = source_rules
        self.tool_timeout = tool_timeout
        self.last_result: DetectionResult | None = None

        self._checks: dict[str, Check] = {
            "typecheck": self.detect_type_errors,
            "lint": self.detect_lint_errors,
            "design": self.detect_design_violations,
            "logic": self.detect_logic_errors,
            "performance": self.detect_performance_issues,
            "security": self.detect_security_issues,
        }
        self._loop = PeriodicTask("error-detector", self.detect_errors, interval)

    # ---- lifecycle ----

    @property
    def is_running(self) -> bool:
        return self._loop.is_running

    async def start(self) -> bool:
        """Start continuous detection. Idempotent; returns False if already running."""
        return await self._loop.start()

    async def stop(self) -> bool:
        return await self._loop.stop()

    def register_check(self, name: str, check: Check) -> None:
        """Add (or replace) a sub-check run on every pass."""
        self._checks[name] = check

    @property
    def check_names(self) -> list[str]:
        return list(self._checks)

    # ---- detection pass ----

    async def detect_errors(self) -> DetectionResult:
        """Run every sub-check, persist all findings, return them with a summary."""
        names = list(self._checks)
        results = await asyncio.gather(*(self._guarded(name, self._checks[name]) for name in names))

        findings: list[DetectedError] = []
        for found in results:
            findings.extend(found)

        for finding in findings:
            await self.store.append(finding.to_record(DETECTOR_CATEGORY, agent_id=DETECTOR_AGENT_ID))

        result = DetectionResult(errors=findings, summary=DetectionSummary.from_findings(findings))
        self.last_result = result
        logger.info(
            "Detection pass: %d findings (%d auto-fixable)",
            result.summary.total,
            result.summary.auto_fixable,
        )
        return result

    async def _guarded(self, name: str, check: Check) -> list[DetectedError]:
        try:
            return list(await check())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Sub-check %s failed, skipping: %s", name, e)
            return []

    # ---- sub-checks ----

    async def detect_type_errors(self) -> list[DetectedError]:
        if not self.typecheck_cmd:
            return []
        _, stdout, stderr = await self._run_tool(self.typecheck_cmd)
        return parse_diagnostics(stdout + "\n" + stderr, self.critical_codes)

    async def detect_lint_errors(self) -> list[DetectedError]:
        if not self.lint_cmd:
            return []
        _, stdout, stderr = await self._run_tool(self.lint_cmd)
        output = stdout.strip() or stderr.strip()
        if not output:
            return []
        return parse_lint_report(output)

    async def detect_design_violations(self) -> list[DetectedError]:
        findings: list[DetectedError] = []
        for path in await self.find_relevant_files():
            content = await asyncio.to_thread(_read_text, path)
            if content is None:
                continue
            findings.extend(scan_lines(path, content, self.source_rules))
        return findings

    async def detect_security_issues(self) -> list[DetectedError]:
        findings: list[DetectedError] = []
        for path in await self.find_relevant_files():
            content = await asyncio.to_thread(_read_text, path)
            if content is None:
                continue
            finding = scan_secrets(path, content)
            if finding is not None:
                findings.append(finding)
        return findings

    async def detect_logic_errors(self) -> list[DetectedError]:
        patterns = await self.store.analyze_patterns()
        if patterns.recent_errors <= RECENT_ERROR_THRESHOLD:
            return []
        return [
            DetectedError(
                kind=ErrorKind.LOGIC,
                severity=Severity.HIGH,
                message=(
                    f"Many recent errors detected: {patterns.recent_errors} errors "
                    "in the last 24 hours"
                ),
                auto_fixable=False,
                context={"error_patterns": patterns.to_dict()},
            )
        ]

    async def detect_performance_issues(self) -> list[DetectedError]:
        # TODO: bundle-size analysis once a bundle report format is chosen
        return []

    # ---- helpers ----

    async def find_relevant_files(self) -> list[str]:
        """List source files under the watched roots; missing roots are skipped."""
        return await asyncio.to_thread(self._walk_watch_paths)

    def _walk_watch_paths(self) -> list[str]:
        files: list[str] = []
        for watch_path in self.watch_paths:
            full_path = os.path.join(self.root, watch_path)
            if not os.path.isdir(full_path):
                continue
            for dirpath, _dirnames, filenames in os.walk(full_path):
                for filename in sorted(filenames):
                    if filename.endswith(self.extensions):
                        files.append(os.path.join(dirpath, filename))
        return files

    async def _run_tool(self, command: str) -> tuple[int, str, str]:
        """Run an analysis tool through the shell and return (code, stdout, stderr).

        Raises:
            ToolError: On timeout or if the process cannot be started
        """
        logger.debug("Running tool: %s", command)
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.root,
                start_new_session=True,
            )
        except OSError as e:
            raise ToolError(f"could not start {command!r}: {e}") from e
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.tool_timeout)
        except asyncio.TimeoutError as e:
            _kill_process_group(proc)
            await proc.wait()
            raise ToolError(f"{command!r} timed out after {self.tool_timeout:g}s") from e
        return (
            proc.returncode or 0,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )
