"""Command-line interface for the error-observability pipeline."""

import argparse
import asyncio
import json
import logging
import time

from faultline.config import (
    AGENT_IDS,
    DB_PATH,
    DETECTION_INTERVAL,
    LOG_FILE,
    PROJECT_ROOT,
    VERSION,
    WATCH_EXTENSIONS,
    WATCH_PATHS,
    setup_logging,
)
from faultline.records import ErrorContext, ErrorKind, ErrorRecord, OperationalCategory, Severity
from faultline.strategies import dump_strategies
from faultline.supervisor import Pipeline, Supervisor

logger = logging.getLogger(__name__)

SEVERITY_ICONS = {"critical": "🔴", "high": "🟠", "medium": "🟡", "low": "⚪"}


def _builtin_status() -> str:
    return (
        f"faultline v{VERSION}\n"
        f"Project root: {PROJECT_ROOT}\n"
        f"Database: {DB_PATH}\n"
        f"Watch paths: {', '.join(WATCH_PATHS)} ({', '.join(WATCH_EXTENSIONS)})\n"
        f"Detection interval: {DETECTION_INTERVAL:g}s\n"
        f"Known agents: {len(AGENT_IDS)}\n\n"
        "Usage: python -m faultline scan | watch | health | errors | recover"
    )


def _format_record(record: ErrorRecord) -> str:
    when = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(record.timestamp))
    icon = SEVERITY_ICONS.get(record.severity.value, "•")
    location = ""
    if record.file_path:
        location = f" {record.file_path}" + (f":{record.line}" if record.line else "")
    return f"{when} {icon} [{record.kind.value}/{record.category}]{location} {record.message}"


async def _scan() -> int:
    async with Pipeline() as pipeline:
        result = await pipeline.detector.detect_errors()
    summary = result.summary
    print(f"Findings: {summary.total} (auto-fixable: {summary.auto_fixable})")
    for kind, count in sorted(summary.by_kind.items()):
        print(f"  {kind}: {count}")
    for finding in result.errors[:20]:
        location = f"{finding.file_path}:{finding.line}" if finding.file_path else "-"
        print(f"{SEVERITY_ICONS.get(finding.severity.value, '•')} {location} {finding.message}")
    return 1 if summary.by_severity.get(Severity.CRITICAL.value) else 0


async def _watch() -> int:
    async with Pipeline() as pipeline:
        supervisor = Supervisor(pipeline)
        try:
            await supervisor.run_forever()
        except asyncio.CancelledError:
            pass
    return 0


async def _health(agent_id: str | None, as_json: bool) -> int:
    async with Pipeline() as pipeline:
        if agent_id:
            results = [await pipeline.monitor.perform_health_check(agent_id)]
        else:
            results = await pipeline.monitor.perform_all_health_checks()
    if as_json:
        print(json.dumps([r.to_dict() for r in results], indent=2))
    else:
        for result in results:
            mark = "✅" if result.healthy else "❌"
            issues = "; ".join(result.issues) if result.issues else "ok"
            print(
                f"{mark} {result.agent_id}: {issues} "
                f"(success {result.performance.success_rate:.0%}, "
                f"errors {result.performance.error_rate:.0%})"
            )
    return 0 if all(r.healthy for r in results) else 1


async def _errors(args: argparse.Namespace) -> int:
    since = time.time() - args.since_hours * 3600 if args.since_hours else None
    async with Pipeline() as pipeline:
        records = await pipeline.store.query(
            kind=args.kind,
            severity=args.severity,
            category=args.category,
            file_path=args.file,
            since=since,
            limit=args.limit,
        )
    if args.json:
        print(json.dumps([r.to_dict() for r in records], indent=2))
        return 0
    if not records:
        print("No errors recorded.")
        return 0
    for record in records:
        print(_format_record(record))
    return 0


async def _patterns() -> int:
    async with Pipeline() as pipeline:
        analysis = await pipeline.store.analyze_patterns()
    print(json.dumps(analysis.to_dict(), indent=2))
    return 0


async def _metrics(args: argparse.Namespace) -> int:
    async with Pipeline() as pipeline:
        snapshot = await pipeline.monitor.record_metrics(
            args.agent,
            tasks_completed=args.completed,
            tasks_failed=args.failed,
            average_response_time=args.response_time,
            errors=args.errors,
            warnings=args.warnings,
            status=args.status,
        )
    print(json.dumps(snapshot.to_dict(), indent=2))
    return 0


async def _recover(args: argparse.Namespace) -> int:
    context = ErrorContext(
        agent_id=args.agent,
        task_id=args.task,
        file_path=args.file,
        retry_count=args.retry_count,
        error_type=OperationalCategory(args.category) if args.category else None,
    )
    async with Pipeline() as pipeline:
        action = await pipeline.recovery.handle_error(args.message, context)
    print(json.dumps(action.to_dict(), indent=2))
    return 0


async def _strategies(export_path: str | None, tune: bool) -> int:
    async with Pipeline() as pipeline:
        if tune:
            learned = await pipeline.recovery.improve_recovery_strategies()
            print(f"Learned {len(learned)} strategies from the error history")
        strategies = pipeline.recovery.strategies
        if export_path:
            dump_strategies(strategies, export_path)
            print(f"Exported {len(strategies)} strategies to {export_path}")
            return 0
    for index, strategy in enumerate(strategies, start=1):
        budget = f" max={strategy.max_retries}" if strategy.max_retries is not None else ""
        delay = f" delay={strategy.retry_delay:g}s" if strategy.retry_delay is not None else ""
        kind = f" kind={strategy.kind.value}" if strategy.kind else ""
        print(f"{index}. /{strategy.pattern}/ → {strategy.action.value}{kind}{budget}{delay}")
    return 0


def _show_logs(n: int) -> None:
    try:
        with open(LOG_FILE, encoding="utf-8") as f:
            lines = f.readlines()
    except FileNotFoundError:
        print(f"Log file not found: {LOG_FILE}")
        return
    tail = lines[-n:] if len(lines) > n else lines
    print(f"--- last {len(tail)} of {len(lines)} log entries ---")
    print("".join(tail), end="")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m faultline",
        description=f"faultline v{VERSION} - error detection, agent health and recovery pipeline",
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("status", help="Show configuration")
    sub.add_parser("scan", help="Run one detection pass")
    sub.add_parser("watch", help="Run detector, health checks and tuning in the foreground")

    health_parser = sub.add_parser("health", help="Run health checks")
    health_parser.add_argument("agent", nargs="?", help="Check only this agent")
    health_parser.add_argument("--json", action="store_true", help="JSON output")

    errors_parser = sub.add_parser("errors", help="Query the error store")
    errors_parser.add_argument("--kind", choices=[k.value for k in ErrorKind], help="Filter by kind")
    errors_parser.add_argument("--severity", choices=[s.value for s in Severity])
    errors_parser.add_argument("--category", help="Filter by category")
    errors_parser.add_argument("--file", help="Filter by file path")
    errors_parser.add_argument("--since-hours", type=float, help="Only the last N hours")
    errors_parser.add_argument("--limit", type=int, default=50, help="Max records to show")
    errors_parser.add_argument("--json", action="store_true", help="JSON output")

    sub.add_parser("patterns", help="Show error pattern analysis")

    metrics_parser = sub.add_parser("metrics", help="Record a metrics snapshot for an agent")
    metrics_parser.add_argument("agent", help="Agent id")
    metrics_parser.add_argument("--completed", type=int, help="Tasks completed")
    metrics_parser.add_argument("--failed", type=int, help="Tasks failed")
    metrics_parser.add_argument("--response-time", type=float, help="Average response time (ms)")
    metrics_parser.add_argument("--errors", type=int, help="Error count")
    metrics_parser.add_argument("--warnings", type=int, help="Warning count")
    metrics_parser.add_argument("--status", choices=["active", "idle", "error", "offline"])

    recover_parser = sub.add_parser("recover", help="Ask the recovery engine about a failure")
    recover_parser.add_argument("message", help="Error message")
    recover_parser.add_argument("--agent", required=True, help="Failing agent id")
    recover_parser.add_argument("--task", help="Task id")
    recover_parser.add_argument("--file", help="File path")
    recover_parser.add_argument(
        "--category", choices=[c.value for c in OperationalCategory], help="Operational category"
    )
    recover_parser.add_argument("--retry-count", type=int, default=0, help="Retries so far")

    strategies_parser = sub.add_parser("strategies", help="List recovery strategies")
    strategies_parser.add_argument("--export", metavar="PATH", help="Write the table to YAML")
    strategies_parser.add_argument(
        "--tune", action="store_true", help="Learn strategies from the stored error history first"
    )

    logs_parser = sub.add_parser("logs", help="Show log tail")
    logs_parser.add_argument("n", type=int, nargs="?", default=30, help="Number of lines")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0
    if args.command == "status":
        print(_builtin_status())
        return 0
    if args.command == "logs":
        _show_logs(args.n)
        return 0

    setup_logging(logging.INFO if args.command == "watch" else logging.WARNING)

    if args.command == "scan":
        return asyncio.run(_scan())
    if args.command == "watch":
        try:
            return asyncio.run(_watch())
        except KeyboardInterrupt:
            return 0
    if args.command == "health":
        return asyncio.run(_health(args.agent, args.json))
    if args.command == "errors":
        return asyncio.run(_errors(args))
    if args.command == "patterns":
        return asyncio.run(_patterns())
    if args.command == "metrics":
        return asyncio.run(_metrics(args))
    if args.command == "recover":
        return asyncio.run(_recover(args))
    if args.command == "strategies":
        return asyncio.run(_strategies(args.export, args.tune))

    parser.print_help()
    return 0
