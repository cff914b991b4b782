"""Tests for the error detector and its source rules."""

import asyncio
import json

import pytest

from faultline.detector import (
    DETECTOR_CATEGORY,
    ErrorDetector,
    ToolError,
    parse_diagnostics,
    parse_lint_report,
)
from faultline.records import DetectedError, ErrorKind, ErrorRecord, Severity
from faultline.rules import DEFAULT_SOURCE_RULES, scan_lines, scan_secrets


def _detector(store, root, **kwargs) -> ErrorDetector:
    kwargs.setdefault("typecheck_cmd", None)
    kwargs.setdefault("lint_cmd", None)
    return ErrorDetector(store, watch_paths=["app", "lib"], root=str(root), **kwargs)


def _write(root, relative: str, content: str) -> str:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return str(path)


# ============ Diagnostic parsing Tests ============

def test_parse_diagnostics_severity_from_code_prefix():
    """Critical code prefixes map to critical findings, other codes to high."""
    output = (
        "app/page.tsx(12,5): error TS2304: Cannot find name 'foo'.\n"
        "lib/util.ts(3,7): error TS7006: Parameter 'x' implicitly has an 'any' type.\n"
        "Found 2 errors.\n"
    )
    findings = parse_diagnostics(output, critical_codes=("TS23", "TS25"))

    assert len(findings) == 2
    first, second = findings
    assert first.kind == ErrorKind.TYPE
    assert first.severity == Severity.CRITICAL
    assert first.file_path == "app/page.tsx"
    assert first.line == 12
    assert first.message == "TS2304: Cannot find name 'foo'."
    assert second.severity == Severity.HIGH
    assert second.auto_fixable is False


def test_parse_diagnostics_auto_fixable_codes():
    """Known codes are auto-fixable and carry a suggested fix."""
    findings = parse_diagnostics(
        "lib/a.ts(1,1): error TS2339: Property 'x' does not exist on type 'Y'.",
        critical_codes=(),
    )
    assert findings[0].auto_fixable is True
    assert findings[0].severity == Severity.HIGH
    assert "type definition" in findings[0].suggested_fix


def test_parse_diagnostics_ignores_other_lines():
    """Lines that are not diagnostics are ignored."""
    assert parse_diagnostics("error: something unrelated\n\n") == []


def test_parse_lint_report():
    """Lint severities 2/1/other map to high/medium/low."""
    report = json.dumps([
        {
            "filePath": "/srv/app/app/page.tsx",
            "messages": [
                {"ruleId": "no-unused-vars", "severity": 2, "message": "'x' is unused", "line": 4},
                {"ruleId": "semi", "severity": 1, "message": "Missing semicolon", "line": 9,
                 "fix": {"range": [1, 2], "text": ";"}},
                {"ruleId": None, "severity": 0, "message": "Parsing note"},
            ],
        },
        {"filePath": "/srv/app/lib/ok.ts", "messages": []},
    ])
    findings = parse_lint_report(report)

    assert [f.severity for f in findings] == [Severity.HIGH, Severity.MEDIUM, Severity.LOW]
    assert findings[0].message == "no-unused-vars: 'x' is unused"
    assert findings[0].kind == ErrorKind.SYNTAX
    assert findings[0].line == 4
    assert findings[1].auto_fixable is True
    assert findings[2].message == "unknown: Parsing note"


def test_parse_lint_report_rejects_bad_json():
    """Invalid lint output raises ValueError."""
    with pytest.raises(ValueError):
        parse_lint_report("not json")


# ============ Source rule Tests ============

def test_design_rules_per_line():
    """Design rules match per line and skip commented lines where configured."""
    content = "\n".join([
        'export const A = () => <div className="bg-[#0A2540] gap-4" />;',
        "// gap-6 is fine inside a comment",
        '<Card className="rounded-lg shadow" />',
        'const ok = "gap-5";',
    ])
    findings = scan_lines("app/page.tsx", content, DEFAULT_SOURCE_RULES)

    rules = sorted((f.context["rule"], f.line) for f in findings)
    assert rules == [("card-rounding", 3), ("hardcoded-color", 1), ("standard-gap", 1)]
    color = next(f for f in findings if f.context["rule"] == "hardcoded-color")
    assert color.severity == Severity.HIGH
    assert color.auto_fixable is True
    assert color.code.startswith("export const A")


def test_scan_secrets_one_finding_per_file():
    """Inline credentials give one critical finding per file."""
    content = 'const apiKey = "abc123";\nconst password = "hunter2";\n'
    finding = scan_secrets("lib/config.ts", content)

    assert finding is not None
    assert finding.kind == ErrorKind.SECURITY
    assert finding.severity == Severity.CRITICAL
    assert finding.auto_fixable is False
    assert scan_secrets("lib/clean.ts", "const apiKey = process.env.API_KEY;") is None


# ============ ErrorDetector Tests ============

@pytest.mark.asyncio
async def test_detect_errors_scans_watched_files(store, tmp_path):
    """Only watched roots and extensions are scanned."""
    _write(tmp_path, "app/page.tsx", '<div className="gap-4" />\n')
    _write(tmp_path, "lib/config.ts", 'export const secret = "s3cr3t";\n')
    _write(tmp_path, "lib/README.md", "gap-4 #fff\n")
    _write(tmp_path, "other/ignored.ts", "gap-4\n")
    detector = _detector(store, tmp_path)

    result = await detector.detect_errors()

    kinds = sorted(f.kind.value for f in result.errors)
    assert kinds == ["design", "security"]
    assert result.summary.total == 2
    assert result.summary.by_severity == {"medium": 1, "critical": 1}
    assert result.summary.auto_fixable == 1
    assert detector.last_result is result


@pytest.mark.asyncio
async def test_findings_are_persisted_with_correlation_ids(store, tmp_path):
    """Every finding is stored with its correlation id and offending line."""
    _write(tmp_path, "app/page.tsx", '<div className="gap-6" />\n')
    detector = _detector(store, tmp_path)

    result = await detector.detect_errors()
    records = await store.query(category=DETECTOR_CATEGORY)

    assert len(records) == 1
    assert records[0].correlation_id == result.errors[0].correlation_id
    assert records[0].context["code"] == '<div className="gap-6" />'
    assert records[0].context["auto_fixable"] is True
    assert records[0].solution == "Replace gap-4 or gap-6 with gap-5"


@pytest.mark.asyncio
async def test_missing_watch_roots_are_skipped(store, tmp_path):
    """Missing watch roots yield no files and no findings."""
    detector = _detector(store, tmp_path)
    assert await detector.find_relevant_files() == []
    result = await detector.detect_errors()
    assert result.summary.total == 0


@pytest.mark.asyncio
async def test_typecheck_output_is_parsed(store, tmp_path):
    """Type checker output is parsed into findings."""
    detector = _detector(
        store,
        tmp_path,
        typecheck_cmd="echo \"app/x.ts(3,7): error TS7006: Parameter 'a' implicitly has an 'any' type.\"",
    )
    findings = await detector.detect_type_errors()

    assert len(findings) == 1
    assert findings[0].file_path == "app/x.ts"
    assert findings[0].severity == Severity.HIGH


@pytest.mark.asyncio
async def test_failing_sub_check_does_not_stop_the_others(store, tmp_path):
    """A failing sub-check contributes nothing while the others still run."""
    _write(tmp_path, "app/page.tsx", '<div className="gap-4" />\n')
    detector = _detector(store, tmp_path, lint_cmd="echo not-json")

    async def broken():
        raise RuntimeError("boom")

    detector.register_check("custom", broken)
    result = await detector.detect_errors()

    assert "custom" in detector.check_names
    assert [f.context["rule"] for f in result.errors] == ["standard-gap"]


@pytest.mark.asyncio
async def test_tool_timeout_is_isolated(store, tmp_path):
    """A tool that times out contributes no findings."""
    detector = _detector(store, tmp_path, typecheck_cmd="exec sleep 5", tool_timeout=0.2)
    result = await detector.detect_errors()
    assert result.summary.total == 0


@pytest.mark.asyncio
async def test_registered_check_findings_are_included(store, tmp_path):
    """Findings from registered checks are summarized and stored."""
    detector = _detector(store, tmp_path)

    async def bundle_size():
        return [DetectedError(kind=ErrorKind.PERFORMANCE, severity=Severity.LOW, message="Bundle too big")]

    detector.register_check("bundle", bundle_size)
    result = await detector.detect_errors()

    assert result.summary.by_kind == {"performance": 1}
    assert len(await store.query(kind=ErrorKind.PERFORMANCE)) == 1


@pytest.mark.asyncio
async def test_timeout_kills_programs_started_by_the_shell(store, tmp_path):
    """A compound command is killed as a whole when the tool times out."""
    detector = _detector(store, tmp_path, typecheck_cmd="sleep 4; echo done", tool_timeout=0.5)
    loop = asyncio.get_running_loop()

    started = loop.time()
    with pytest.raises(ToolError, match="timed out after 0.5s"):
        await detector.detect_type_errors()
    assert loop.time() - started < 2

    started = loop.time()
    result = await detector.detect_errors()
    assert loop.time() - started < 2
    assert result.summary.total == 0


# ============ Logic check Tests ============

@pytest.mark.asyncio
async def test_logic_check_threshold(store, tmp_path):
    """More than ten recent errors produce one logic finding."""
    detector = _detector(store, tmp_path)
    for i in range(10):
        await store.log(ErrorKind.RUNTIME, Severity.LOW, "worker", f"failure {i}")
    assert await detector.detect_logic_errors() == []

    await store.log(ErrorKind.RUNTIME, Severity.LOW, "worker", "failure 10")
    findings = await detector.detect_logic_errors()

    assert len(findings) == 1
    assert findings[0].kind == ErrorKind.LOGIC
    assert findings[0].severity == Severity.HIGH
    assert "11 errors" in findings[0].message
    assert findings[0].auto_fixable is False


@pytest.mark.asyncio
async def test_logic_check_ignores_old_errors(store, tmp_path):
    """Errors older than a day do not count toward the logic check."""
    detector = _detector(store, tmp_path)
    for i in range(20):
        await store.append(ErrorRecord(
            id=f"old-{i}", timestamp=1_000.0, kind=ErrorKind.RUNTIME, severity=Severity.LOW,
            category="worker", message="old",
        ))
    assert await detector.detect_logic_errors() == []


# ============ Lifecycle Tests ============

@pytest.mark.asyncio
async def test_start_stop_is_idempotent(store, tmp_path):
    """Start and stop are idempotent and the first pass runs immediately."""
    detector = _detector(store, tmp_path, interval=3600)

    assert await detector.start() is True
    assert await detector.start() is False
    assert detector.is_running

    for _ in range(50):
        if detector.last_result is not None:
            break
        await asyncio.sleep(0.01)
    assert detector.last_result is not None

    assert await detector.stop() is True
    assert await detector.stop() is False
    assert not detector.is_running
