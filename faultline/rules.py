"""Source-pattern and secret-pattern rules used by the detector.

Rules are plain data: the detector walks the watched files and applies each
line rule per line and each file rule per file.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from faultline.records import DetectedError, ErrorKind, Severity

COMMENT_MARKERS = ("//", "/*")


@dataclass(frozen=True)
class SourceRule:
    """A regex applied to every line of a watched source file."""

    name: str
    pattern: re.Pattern
    severity: Severity
    message: str
    suggested_fix: str
    kind: ErrorKind = ErrorKind.DESIGN
    auto_fixable: bool = True
    skip_comments: bool = False

    def match(self, line: str) -> bool:
        if self.skip_comments and any(marker in line for marker in COMMENT_MARKERS):
            return False
        return self.pattern.search(line) is not None

    def finding(self, file_path: str, line_no: int, line: str) -> DetectedError:
        return DetectedError(
            kind=self.kind,
            severity=self.severity,
            message=self.message,
            auto_fixable=self.auto_fixable,
            suggested_fix=self.suggested_fix,
            file_path=file_path,
            line=line_no,
            code=line.strip(),
            context={"rule": self.name},
        )


DEFAULT_SOURCE_RULES: tuple[SourceRule, ...] = (
    SourceRule(
        name="hardcoded-color",
        pattern=re.compile(r"#323D5E|#0A2540|#([0-9a-fA-F]{3}){1,2}", re.IGNORECASE),
        severity=Severity.HIGH,
        message="Hardcoded color found. Use design tokens.",
        suggested_fix="Replace with bg-primary, text-primary, etc.",
        skip_comments=True,
    ),
    SourceRule(
        name="card-rounding",
        pattern=re.compile(r"rounded-lg.*Card|Card.*rounded-lg"),
        severity=Severity.MEDIUM,
        message="Cards must use rounded-2xl",
        suggested_fix="Replace rounded-lg with rounded-2xl",
    ),
    SourceRule(
        name="standard-gap",
        pattern=re.compile(r"gap-4|gap-6"),
        severity=Severity.MEDIUM,
        message="Standard gap is gap-5",
        suggested_fix="Replace gap-4 or gap-6 with gap-5",
        skip_comments=True,
    ),
)


SECRET_PATTERN = re.compile(
    r"""password\s*=\s*["'][^"']+["']"""
    r"""|api[_-]?key\s*=\s*["'][^"']+["']"""
    r"""|secret\s*=\s*["'][^"']+["']""",
    re.IGNORECASE,
)


def scan_lines(file_path: str, content: str, rules: tuple[SourceRule, ...]) -> list[DetectedError]:
    """Apply every line rule to every line of ``content``."""
    findings: list[DetectedError] = []
    for index, line in enumerate(content.split("\n")):
        for rule in rules:
            if rule.match(line):
                findings.append(rule.finding(file_path, index + 1, line))
    return findings


def scan_secrets(file_path: str, content: str) -> DetectedError | None:
    """One critical finding per file with an inline credential assignment."""
    if not SECRET_PATTERN.search(content):
        return None
    return DetectedError(
        kind=ErrorKind.SECURITY,
        severity=Severity.CRITICAL,
        message="Potential hardcoded secret found",
        auto_fixable=False,
        suggested_fix="Use environment variables",
        file_path=file_path,
    )
