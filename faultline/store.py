"""Error store: durable, bounded, append-only log of classified errors.

Every other component writes here and the detector and recovery engine read
the aggregate back (analyze_patterns). The store keeps only the newest
ERROR_LOG_LIMIT records; older ones are evicted first.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from collections import Counter
from datetime import datetime
from typing import Any, Callable

import aiosqlite

from faultline.config import ERROR_LOG_LIMIT
from faultline.db import PipelineDB
from faultline.records import (
    CountEntry,
    ErrorKind,
    ErrorRecord,
    PatternAnalysis,
    Severity,
)

logger = logging.getLogger(__name__)

RECENT_WINDOW_SECONDS = 24 * 60 * 60
TOP_N = 5

_COLUMNS = (
    "id, timestamp, kind, severity, category, message, file_path, line, "
    "context, solution, agent_id, task_id, correlation_id"
)


def _as_epoch(value: float | datetime | None) -> float | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.timestamp()
    return float(value)


def _row_to_record(row: aiosqlite.Row) -> ErrorRecord:
    data = dict(row)
    data["context"] = json.loads(data["context"]) if data.get("context") else None
    return ErrorRecord.from_dict(data)


def _top(counter: Counter) -> list[CountEntry]:
    return [CountEntry(key=key, count=count) for key, count in counter.most_common(TOP_N)]


class ErrorStore:
    """Bounded error log backed by PipelineDB.

    Usage:
        store = ErrorStore(db)
        await store.log(ErrorKind.TYPE, Severity.HIGH, "error-detector", "TS2304: ...")
        critical = await store.query(severity=Severity.CRITICAL)
        patterns = await store.analyze_patterns()

    """

    def __init__(
        self,
        db: PipelineDB,
        limit: int = ERROR_LOG_LIMIT,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.limit = limit
        self._clock = clock

    async def append(self, record: ErrorRecord) -> bool:
        """Persist one record and trim to the newest ``limit`` entries.

        Never raises. A persistence failure is reported on stderr so that a
        broken store cannot take down the caller's own error handling.

        Returns:
            True if the record was stored

        """
        try:
            async with self.db.transaction() as conn:
                await conn.execute(
                    f"INSERT INTO error_records ({_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.id,
                        record.timestamp,
                        record.kind.value,
                        record.severity.value,
                        record.category,
                        record.message,
                        record.file_path,
                        record.line,
                        json.dumps(record.context, default=str) if record.context else None,
                        record.solution,
                        record.agent_id,
                        record.task_id,
                        record.correlation_id,
                    ),
                )
                await self.db.trim(conn, "error_records", self.limit)
        except Exception as e:
            print(
                f"[faultline] could not persist error record {record.id} "
                f"({getattr(record.kind, 'value', record.kind)}: {record.message}): {e}",
                file=sys.stderr,
            )
            return False
        logger.debug("Error logged: %s - %s", record.kind.value, record.message)
        return True

    async def log(
        self,
        kind: ErrorKind,
        severity: Severity,
        category: str,
        message: str,
        **fields: Any,
    ) -> ErrorRecord:
        """Build a record with a fresh id and timestamp, append it, return it."""
        record = ErrorRecord.create(kind, severity, category, message, **fields)
        await self.append(record)
        return record

    async def query(
        self,
        kind: ErrorKind | str | None = None,
        severity: Severity | str | None = None,
        category: str | None = None,
        file_path: str | None = None,
        since: float | datetime | None = None,
        correlation_id: str | None = None,
        limit: int | None = None,
    ) -> list[ErrorRecord]:
        """Return records matching every provided filter, oldest first.

        Omitted filters match everything. ``limit`` keeps only the newest N
        matches.

        """
        clauses: list[str] = []
        params: list[Any] = []
        if kind is not None:
            clauses.append("kind = ?")
            params.append(ErrorKind(kind).value)
        if severity is not None:
            clauses.append("severity = ?")
            params.append(Severity(severity).value)
        if category is not None:
            clauses.append("category = ?")
            params.append(category)
        if file_path is not None:
            clauses.append("file_path = ?")
            params.append(file_path)
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(_as_epoch(since))
        if correlation_id is not None:
            clauses.append("correlation_id = ?")
            params.append(correlation_id)

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT {_COLUMNS} FROM error_records{where} ORDER BY seq ASC"
        async with self.db.reading() as conn:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()

        records = [_row_to_record(row) for row in rows]
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records

    async def analyze_patterns(self, since: float | datetime | None = None) -> PatternAnalysis:
        """Aggregate the retained history.

        Args:
            since: Only consider records at or after this time (all if None)

        Returns:
            Top kinds, categories and files (5 each), the critical count and
            the number of records in the trailing 24 hours

        """
        records = await self.query(since=since)
        recent_cutoff = self._clock() - RECENT_WINDOW_SECONDS

        kinds: Counter = Counter()
        categories: Counter = Counter()
        files: Counter = Counter()
        critical = 0
        recent = 0
        for record in records:
            kinds[record.kind.value] += 1
            categories[record.category] += 1
            if record.file_path:
                files[record.file_path] += 1
            if record.severity == Severity.CRITICAL:
                critical += 1
            if record.timestamp > recent_cutoff:
                recent += 1

        return PatternAnalysis(
            most_common_kinds=_top(kinds),
            most_common_categories=_top(categories),
            most_common_files=_top(files),
            critical_errors=critical,
            recent_errors=recent,
        )

    async def count(self) -> int:
        async with self.db.reading() as conn:
            cursor = await conn.execute("SELECT COUNT(*) FROM error_records")
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def clear(self) -> None:
        async with self.db.transaction() as conn:
            await conn.execute("DELETE FROM error_records")
