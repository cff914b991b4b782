"""Tests for the bounded error store."""

import asyncio
from datetime import datetime

import pytest

from faultline.db import PipelineDB
from faultline.records import ErrorKind, ErrorRecord, Severity
from faultline.store import ErrorStore


def _record(i: int, kind=ErrorKind.TYPE, severity=Severity.HIGH, **kwargs) -> ErrorRecord:
    return ErrorRecord.create(kind, severity, "error-detector", f"error {i}", **kwargs)


# ============ append / query Tests ============

@pytest.mark.asyncio
async def test_append_and_query_round_trip(store):
    """A stored record comes back with every field intact."""
    record = _record(
        1,
        file_path="app/page.tsx",
        line=12,
        context={"code": "TS2304"},
        solution="Add an import",
        agent_id="code-assistant",
        task_id="task-1",
        correlation_id="corr-1",
    )
    assert await store.append(record) is True

    records = await store.query()
    assert records == [record]


@pytest.mark.asyncio
async def test_query_filters_are_combined_with_and(store):
    """Query filters combine with AND."""
    await store.append(_record(1, kind=ErrorKind.TYPE, severity=Severity.HIGH))
    await store.append(_record(2, kind=ErrorKind.TYPE, severity=Severity.CRITICAL))
    await store.append(_record(3, kind=ErrorKind.DESIGN, severity=Severity.CRITICAL))

    both = await store.query(kind=ErrorKind.TYPE, severity=Severity.CRITICAL)
    assert [r.message for r in both] == ["error 2"]

    by_kind = await store.query(kind="design")
    assert [r.message for r in by_kind] == ["error 3"]

    assert len(await store.query()) == 3


@pytest.mark.asyncio
async def test_query_by_file_category_and_correlation(store):
    """Query filters by file, category and correlation id."""
    await store.append(_record(1, file_path="lib/a.ts", correlation_id="c-1"))
    await store.append(_record(2, file_path="lib/b.ts", correlation_id="c-2"))

    assert [r.message for r in await store.query(file_path="lib/b.ts")] == ["error 2"]
    assert [r.message for r in await store.query(correlation_id="c-1")] == ["error 1"]
    assert await store.query(category="nope") == []


@pytest.mark.asyncio
async def test_query_since_accepts_epoch_and_datetime(store):
    """The since filter accepts epoch seconds and datetimes."""
    old = ErrorRecord(
        id="old", timestamp=1_000.0, kind=ErrorKind.TYPE, severity=Severity.LOW,
        category="c", message="old",
    )
    new = ErrorRecord(
        id="new", timestamp=2_000.0, kind=ErrorKind.TYPE, severity=Severity.LOW,
        category="c", message="new",
    )
    await store.append(old)
    await store.append(new)

    assert [r.id for r in await store.query(since=1_500.0)] == ["new"]
    assert [r.id for r in await store.query(since=datetime.fromtimestamp(1_500.0))] == ["new"]


@pytest.mark.asyncio
async def test_query_limit_keeps_newest(store):
    """The limit keeps the newest matches."""
    for i in range(5):
        await store.append(_record(i))

    records = await store.query(limit=2)
    assert [r.message for r in records] == ["error 3", "error 4"]
    assert await store.query(limit=0) == []


# ============ Bounded history Tests ============

@pytest.mark.asyncio
async def test_oldest_records_evicted_first(db):
    """Records over the limit are evicted oldest first."""
    store = ErrorStore(db, limit=5)
    for i in range(8):
        await store.append(_record(i))

    assert await store.count() == 5
    records = await store.query()
    assert [r.message for r in records] == [f"error {i}" for i in range(3, 8)]


@pytest.mark.asyncio
async def test_default_limit_is_1000(store):
    """The store keeps at most 1000 records by default."""
    first = _record(0)
    await store.append(first)
    for i in range(1, 1001):
        await store.append(_record(i))

    assert await store.count() == 1000
    records = await store.query()
    assert records[0].message == "error 1"
    assert records[-1].message == "error 1000"
    assert first not in records


@pytest.mark.asyncio
async def test_concurrent_appends_are_not_lost(db):
    """Appends from many tasks at once all land, and the cap still holds."""
    store = ErrorStore(db, limit=50)

    await asyncio.gather(*(store.append(_record(i)) for i in range(40)))
    assert await store.count() == 40

    await asyncio.gather(*(store.append(_record(i)) for i in range(40, 80)))
    assert await store.count() == 50


@pytest.mark.asyncio
async def test_append_never_raises_when_store_unavailable(tmp_path, capsys):
    """A store that cannot persist reports on stderr instead of raising."""
    store = ErrorStore(PipelineDB(str(tmp_path / "never-opened.db")))

    assert await store.append(_record(1)) is False
    record = await store.log(ErrorKind.RUNTIME, Severity.HIGH, "test", "boom")
    assert record.message == "boom"

    captured = capsys.readouterr()
    assert "could not persist error record" in captured.err


@pytest.mark.asyncio
async def test_log_builds_record_with_fresh_id(store):
    """log() stamps a fresh id on every record."""
    first = await store.log(ErrorKind.DESIGN, Severity.MEDIUM, "error-detector", "gap-4")
    second = await store.log(ErrorKind.DESIGN, Severity.MEDIUM, "error-detector", "gap-4")

    assert first.id != second.id
    assert first.id.startswith("error-")
    assert await store.count() == 2


@pytest.mark.asyncio
async def test_clear(store):
    """clear() removes every record."""
    await store.append(_record(1))
    await store.clear()
    assert await store.count() == 0


# ============ analyze_patterns Tests ============

@pytest.mark.asyncio
async def test_analyze_patterns_most_common_kind(store):
    """The most common kind is reported with its count."""
    for i in range(10):
        await store.append(_record(i, kind=ErrorKind.TYPE))

    analysis = await store.analyze_patterns()
    assert analysis.most_common_kinds[0].key == "type"
    assert analysis.most_common_kinds[0].count == 10
    assert analysis.to_dict()["most_common_kinds"][0] == {"kind": "type", "count": 10}


@pytest.mark.asyncio
async def test_analyze_patterns_counts(db):
    """Critical, recent, category and file counts are aggregated."""
    now = 1_000_000.0
    store = ErrorStore(db, clock=lambda: now)

    await store.append(ErrorRecord(
        id="a", timestamp=now - 10, kind=ErrorKind.TYPE, severity=Severity.CRITICAL,
        category="error-detector", message="a", file_path="app/a.ts",
    ))
    await store.append(ErrorRecord(
        id="b", timestamp=now - 2 * 86400, kind=ErrorKind.DESIGN, severity=Severity.HIGH,
        category="error-detector", message="b", file_path="app/a.ts",
    ))
    await store.append(ErrorRecord(
        id="c", timestamp=now - 60, kind=ErrorKind.RECOVERY, severity=Severity.LOW,
        category="error-recovery", message="c",
    ))

    analysis = await store.analyze_patterns()
    assert analysis.critical_errors == 1
    assert analysis.recent_errors == 2
    assert analysis.most_common_categories[0].key == "error-detector"
    assert analysis.most_common_categories[0].count == 2
    assert [(e.key, e.count) for e in analysis.most_common_files] == [("app/a.ts", 2)]

    windowed = await store.analyze_patterns(since=now - 3600)
    assert windowed.critical_errors == 1
    assert sum(e.count for e in windowed.most_common_kinds) == 2


@pytest.mark.asyncio
async def test_analyze_patterns_top_five(store):
    """Only the top five entries are reported."""
    kinds = [ErrorKind.TYPE, ErrorKind.SYNTAX, ErrorKind.DESIGN, ErrorKind.SECURITY,
             ErrorKind.LOGIC, ErrorKind.PERFORMANCE]
    for n, kind in enumerate(kinds, start=1):
        for i in range(n):
            await store.append(_record(i, kind=kind))

    analysis = await store.analyze_patterns()
    assert len(analysis.most_common_kinds) == 5
    assert analysis.most_common_kinds[0].key == "performance"
    assert "type" not in [e.key for e in analysis.most_common_kinds]


@pytest.mark.asyncio
async def test_analyze_patterns_empty_store(store):
    """An empty store gives empty aggregates."""
    analysis = await store.analyze_patterns()
    assert analysis.most_common_kinds == []
    assert analysis.critical_errors == 0
    assert analysis.recent_errors == 0


@pytest.mark.asyncio
async def test_append_accepts_plain_string_kind_and_severity(store):
    """Kind and severity given as plain strings are stored as their enums."""
    record = ErrorRecord(id="x", timestamp=1.0, kind="type", severity="high", category="c", message="m")

    assert record.kind is ErrorKind.TYPE
    assert await store.append(record) is True
    stored = await store.query(kind="type")
    assert stored[0].severity is Severity.HIGH


@pytest.mark.asyncio
async def test_append_with_string_fields_returns_false_when_unavailable(tmp_path, capsys):
    """The failure path reports string-typed records without raising."""
    store = ErrorStore(PipelineDB(str(tmp_path / "never-opened.db")))
    record = ErrorRecord(id="x", timestamp=1.0, kind="type", severity="high", category="c", message="m")

    assert await store.append(record) is False
    assert "(type: m)" in capsys.readouterr().err
