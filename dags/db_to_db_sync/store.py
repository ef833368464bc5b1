from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import closing, contextmanager
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import pendulum

from db_to_db_sync.SyncJob import SyncJob
from db_to_db_sync.errors import ConfigurationError
from db_to_db_sync.records import (
    BucketChecksum,
    Checkpoint,
    ColumnMappingRule,
    ExecutionLog,
    ExecutionStatus,
    TableStructureSnapshot,
    ValidationLog,
    ValidationStatus,
    check_transition,
)

log = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sync_jobs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE,
        config_json TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS execution_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id INTEGER NOT NULL,
        status TEXT NOT NULL,
        started_at TEXT NOT NULL,
        ended_at TEXT,
        rows_read INTEGER DEFAULT 0,
        rows_written INTEGER DEFAULT 0,
        rows_failed INTEGER DEFAULT 0,
        batches INTEGER DEFAULT 0,
        failed_batch_offset INTEGER,
        last_watermark TEXT,
        error_message TEXT,
        buckets_applied INTEGER DEFAULT 0,
        buckets_skipped INTEGER DEFAULT 0,
        buckets_retried INTEGER DEFAULT 0,
        buckets_recovered INTEGER DEFAULT 0,
        buckets_mismatched INTEGER DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_execution_logs_job ON execution_logs (job_id, status)",
    """
    CREATE TABLE IF NOT EXISTS checkpoints (
        job_id INTEGER PRIMARY KEY,
        watermark_value TEXT,
        watermark_type TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS column_mapping_rules (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id INTEGER NOT NULL,
        ordinal INTEGER NOT NULL,
        source_column TEXT,
        target_column TEXT NOT NULL,
        transform TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS table_snapshots (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id INTEGER NOT NULL,
        side TEXT NOT NULL,
        columns_json TEXT NOT NULL,
        digest TEXT NOT NULL,
        captured_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bucket_checksums (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id INTEGER NOT NULL,
        run_id TEXT NOT NULL,
        side TEXT NOT NULL,
        bucket_id INTEGER NOT NULL,
        lower_bound TEXT,
        upper_bound TEXT,
        checksum TEXT NOT NULL,
        row_count INTEGER NOT NULL,
        computed_at TEXT NOT NULL,
        UNIQUE (job_id, run_id, side, bucket_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS validation_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id INTEGER NOT NULL,
        run_id TEXT NOT NULL,
        bucket_count INTEGER NOT NULL,
        mismatched_bucket_count INTEGER NOT NULL,
        status TEXT NOT NULL,
        message TEXT,
        created_at TEXT NOT NULL
    )
    """,
)

# columns added after the first release; older state databases get them on start
_ADDED_COLUMNS = {
    "execution_logs": (
        ("buckets_applied", "INTEGER DEFAULT 0"),
        ("buckets_skipped", "INTEGER DEFAULT 0"),
        ("buckets_retried", "INTEGER DEFAULT 0"),
        ("buckets_recovered", "INTEGER DEFAULT 0"),
        ("buckets_mismatched", "INTEGER DEFAULT 0"),
    ),
}

_OWNED_TABLES = (
    "execution_logs", "checkpoints", "column_mapping_rules",
    "table_snapshots", "bucket_checksums", "validation_logs",
)


def _now() -> str:
    return pendulum.now("UTC").isoformat()


def _ts(value: str | None):
    return pendulum.parse(value) if value else None


def _job_to_json(job: SyncJob) -> str:
    data = asdict(job)
    data.pop("id", None)
    data["sync_mode"] = job.sync_mode.value
    return json.dumps(data, sort_keys=True)


def _row_to_job(row: sqlite3.Row) -> SyncJob:
    data = json.loads(row["config_json"] or "{}")
    data["id"] = row["id"]
    data["name"] = row["name"]
    return SyncJob(**data)


def _row_to_execution(row: sqlite3.Row) -> ExecutionLog:
    return ExecutionLog(
        id=row["id"],
        job_id=row["job_id"],
        status=ExecutionStatus(row["status"]),
        started_at=_ts(row["started_at"]),
        ended_at=_ts(row["ended_at"]),
        rows_read=row["rows_read"] or 0,
        rows_written=row["rows_written"] or 0,
        rows_failed=row["rows_failed"] or 0,
        batches=row["batches"] or 0,
        failed_batch_offset=row["failed_batch_offset"],
        last_watermark=row["last_watermark"],
        error_message=row["error_message"],
        buckets_applied=row["buckets_applied"] or 0,
        buckets_skipped=row["buckets_skipped"] or 0,
        buckets_retried=row["buckets_retried"] or 0,
        buckets_recovered=row["buckets_recovered"] or 0,
        buckets_mismatched=row["buckets_mismatched"] or 0,
    )


# ============================== State store ===============================

class SyncStateStore:
    """
    Durable state of every sync job (SQLite). A connection is opened per call;
    writes that must be atomic across processes run inside BEGIN IMMEDIATE.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self.init_db()

    # ------------------------ Plumbing ------------------------

    def get_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        connection.row_factory = sqlite3.Row
        return connection

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock, closing(self.get_connection()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with closing(self.get_connection()) as conn:
            return conn.execute(sql, tuple(params)).fetchall()

    def init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._transaction() as conn:
            for ddl in _SCHEMA:
                conn.execute(ddl)
            for table, columns in _ADDED_COLUMNS.items():
                existing = {r["name"] for r in conn.execute(f"PRAGMA table_info({table})")}
                for name, decl in columns:
                    if name not in existing:
                        conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {decl}")
        log.debug("State store ready at %s", self.db_path)

    # ------------------------ Jobs ------------------------

    def insert_job(self, job: SyncJob) -> SyncJob:
        now = _now()
        with self._transaction() as conn:
            try:
                cur = conn.execute(
                    "INSERT INTO sync_jobs (name, config_json, created_at, updated_at) VALUES (?, ?, ?, ?)",
                    (job.name, _job_to_json(job), now, now),
                )
            except sqlite3.IntegrityError as e:
                raise ConfigurationError(f"Sync job named {job.name!r} already exists") from e
            return replace(job, id=cur.lastrowid)

    def update_job(self, job: SyncJob) -> SyncJob:
        if job.id is None:
            raise ConfigurationError("Cannot update a job without id")
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE sync_jobs SET name = ?, config_json = ?, updated_at = ? WHERE id = ?",
                (job.name, _job_to_json(job), _now(), job.id),
            )
            if cur.rowcount == 0:
                raise ConfigurationError(f"Sync job {job.id} does not exist")
        return job

    def get_job(self, job_id: int) -> Optional[SyncJob]:
        rows = self._query("SELECT * FROM sync_jobs WHERE id = ?", (job_id,))
        return _row_to_job(rows[0]) if rows else None

    def get_job_by_name(self, name: str) -> Optional[SyncJob]:
        rows = self._query("SELECT * FROM sync_jobs WHERE name = ?", (name,))
        return _row_to_job(rows[0]) if rows else None

    def list_jobs(self) -> List[SyncJob]:
        return [_row_to_job(r) for r in self._query("SELECT * FROM sync_jobs ORDER BY id")]

    def delete_job(self, job_id: int) -> bool:
        with self._transaction() as conn:
            for table in _OWNED_TABLES:
                conn.execute(f"DELETE FROM {table} WHERE job_id = ?", (job_id,))
            cur = conn.execute("DELETE FROM sync_jobs WHERE id = ?", (job_id,))
            return cur.rowcount > 0

    # ------------------------ Mapping rules ------------------------

    def replace_mapping_rules(self, job_id: int, rules: Sequence[ColumnMappingRule]) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM column_mapping_rules WHERE job_id = ?", (job_id,))
            explicit = any(r.ordinal for r in rules)
            for i, rule in enumerate(rules):
                transform = rule.transform
                if transform is not None and not isinstance(transform, str):
                    transform = json.dumps(transform)
                conn.execute(
                    "INSERT INTO column_mapping_rules (job_id, ordinal, source_column, target_column, transform) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (job_id, rule.ordinal if explicit else i, rule.source_column, rule.target_column, transform),
                )

    def list_mapping_rules(self, job_id: int) -> List[ColumnMappingRule]:
        rows = self._query(
            "SELECT * FROM column_mapping_rules WHERE job_id = ? ORDER BY ordinal, id", (job_id,)
        )
        return [
            ColumnMappingRule(
                job_id=r["job_id"], ordinal=r["ordinal"], source_column=r["source_column"],
                target_column=r["target_column"], transform=r["transform"],
            )
            for r in rows
        ]

    # ------------------------ Executions ------------------------

    def try_start_execution(self, job_id: int, allow_concurrent: bool,
                            stale_after_seconds: float | None = None) -> Optional[int]:
        """
        Atomically move the job to RUNNING: insert a RUNNING execution row unless another one
        is live (and concurrency is not allowed). Returns the new execution id or None.
        """
        now = pendulum.now("UTC")
        with self._transaction() as conn:
            running = conn.execute(
                "SELECT id, started_at FROM execution_logs WHERE job_id = ? AND status = ?",
                (job_id, ExecutionStatus.RUNNING.value),
            ).fetchall()
            live = []
            for r in running:
                age = (now - pendulum.parse(r["started_at"])).total_seconds()
                if stale_after_seconds is not None and age > stale_after_seconds:
                    log.warning("Closing stale RUNNING execution %s of job %s (age %.0fs)", r["id"], job_id, age)
                    conn.execute(
                        "UPDATE execution_logs SET status = ?, ended_at = ?, error_message = ? WHERE id = ?",
                        (ExecutionStatus.FAILED.value, now.isoformat(),
                         f"job={job_id} abandoned: no heartbeat for {age:.0f}s", r["id"]),
                    )
                else:
                    live.append(r["id"])
            if live and not allow_concurrent:
                log.info("Job %s already RUNNING (execution %s); trigger ignored", job_id, live)
                return None
            cur = conn.execute(
                "INSERT INTO execution_logs (job_id, status, started_at) VALUES (?, ?, ?)",
                (job_id, ExecutionStatus.RUNNING.value, now.isoformat()),
            )
            return cur.lastrowid

    def finish_execution(self, execution_id: int, status: ExecutionStatus, *, rows_read: int = 0,
                         rows_written: int = 0, rows_failed: int = 0, batches: int = 0,
                         failed_batch_offset: int | None = None, last_watermark: str | None = None,
                         error_message: str | None = None, buckets_applied: int = 0, buckets_skipped: int = 0,
                         buckets_retried: int = 0, buckets_recovered: int = 0,
                         buckets_mismatched: int = 0) -> bool:
        """Close a RUNNING execution. Returns False when the row is gone (its job was deleted)."""
        with self._transaction() as conn:
            row = conn.execute("SELECT status FROM execution_logs WHERE id = ?", (execution_id,)).fetchone()
            if row is None:
                log.warning("Execution %s no longer exists; result %s dropped", execution_id, status.value)
                return False
            check_transition(ExecutionStatus(row["status"]), status)
            conn.execute(
                """
                UPDATE execution_logs
                SET status = ?, ended_at = ?, rows_read = ?, rows_written = ?, rows_failed = ?,
                    batches = ?, failed_batch_offset = ?, last_watermark = ?, error_message = ?,
                    buckets_applied = ?, buckets_skipped = ?, buckets_retried = ?, buckets_recovered = ?,
                    buckets_mismatched = ?
                WHERE id = ?
                """,
                (status.value, _now(), rows_read, rows_written, rows_failed, batches,
                 failed_batch_offset, last_watermark, error_message, buckets_applied, buckets_skipped,
                 buckets_retried, buckets_recovered, buckets_mismatched, execution_id),
            )
        return True

    def get_execution(self, execution_id: int) -> Optional[ExecutionLog]:
        rows = self._query("SELECT * FROM execution_logs WHERE id = ?", (execution_id,))
        return _row_to_execution(rows[0]) if rows else None

    def has_running_execution(self, job_id: int) -> bool:
        rows = self._query(
            "SELECT 1 FROM execution_logs WHERE job_id = ? AND status = ? LIMIT 1",
            (job_id, ExecutionStatus.RUNNING.value),
        )
        return bool(rows)

    def list_executions(self, job_id: int) -> List[ExecutionLog]:
        rows = self._query("SELECT * FROM execution_logs WHERE job_id = ? ORDER BY id", (job_id,))
        return [_row_to_execution(r) for r in rows]

    # ------------------------ Checkpoints ------------------------

    def get_checkpoint(self, job_id: int) -> Optional[Checkpoint]:
        rows = self._query("SELECT * FROM checkpoints WHERE job_id = ?", (job_id,))
        if not rows:
            return None
        r = rows[0]
        return Checkpoint(r["job_id"], r["watermark_value"], r["watermark_type"], _ts(r["updated_at"]))

    def compare_and_set_checkpoint(self, job_id: int, value: str | None, value_type: str | None,
                                   should_replace: Callable[[Optional[Checkpoint]], bool]) -> bool:
        """
        Write the watermark only if `should_replace(current)` holds, inside one write lock.
        A deleted job never gets a checkpoint row back.
        """
        with self._transaction() as conn:
            if conn.execute("SELECT 1 FROM sync_jobs WHERE id = ?", (job_id,)).fetchone() is None:
                log.warning("Checkpoint for unknown job %s ignored", job_id)
                return False
            r = conn.execute("SELECT * FROM checkpoints WHERE job_id = ?", (job_id,)).fetchone()
            current = None
            if r is not None:
                current = Checkpoint(r["job_id"], r["watermark_value"], r["watermark_type"], _ts(r["updated_at"]))
            if not should_replace(current):
                return False
            conn.execute(
                """
                INSERT INTO checkpoints (job_id, watermark_value, watermark_type, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (job_id) DO UPDATE SET
                    watermark_value = excluded.watermark_value,
                    watermark_type = excluded.watermark_type,
                    updated_at = excluded.updated_at
                """,
                (job_id, value, value_type, _now()),
            )
            return True

    def delete_checkpoint(self, job_id: int) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM checkpoints WHERE job_id = ?", (job_id,))

    # ------------------------ Structure snapshots ------------------------

    def latest_snapshot(self, job_id: int, side: str) -> Optional[TableStructureSnapshot]:
        rows = self._query(
            "SELECT * FROM table_snapshots WHERE job_id = ? AND side = ? ORDER BY id DESC LIMIT 1",
            (job_id, side),
        )
        if not rows:
            return None
        r = rows[0]
        return TableStructureSnapshot(r["job_id"], r["side"], r["columns_json"], r["digest"], _ts(r["captured_at"]))

    def save_snapshot(self, job_id: int, side: str, columns_json: str, digest: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO table_snapshots (job_id, side, columns_json, digest, captured_at) VALUES (?, ?, ?, ?, ?)",
                (job_id, side, columns_json, digest, _now()),
            )

    # ------------------------ Bucket checksums / validation ------------------------

    def save_bucket_checksums(self, checksums: Sequence[BucketChecksum]) -> None:
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO bucket_checksums
                    (job_id, run_id, side, bucket_id, lower_bound, upper_bound, checksum, row_count, computed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (b.job_id, b.run_id, b.side, b.bucket_id, b.lower_bound, b.upper_bound,
                     b.checksum, b.row_count, b.computed_at.isoformat())
                    for b in checksums
                ],
            )

    def list_bucket_checksums(self, job_id: int, run_id: str, side: str | None = None) -> List[BucketChecksum]:
        sql = "SELECT * FROM bucket_checksums WHERE job_id = ? AND run_id = ?"
        params: List[Any] = [job_id, run_id]
        if side:
            sql += " AND side = ?"
            params.append(side)
        rows = self._query(sql + " ORDER BY side, bucket_id", params)
        return [
            BucketChecksum(r["job_id"], r["run_id"], r["side"], r["bucket_id"], r["lower_bound"],
                           r["upper_bound"], r["checksum"], r["row_count"], _ts(r["computed_at"]))
            for r in rows
        ]

    def save_validation_log(self, entry: ValidationLog) -> ValidationLog:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO validation_logs
                    (job_id, run_id, bucket_count, mismatched_bucket_count, status, message, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (entry.job_id, entry.run_id, entry.bucket_count, entry.mismatched_bucket_count,
                 entry.status.value, entry.message, entry.created_at.isoformat()),
            )
            entry.id = cur.lastrowid
        return entry

    def list_validation_logs(self, job_id: int, limit: int | None = None) -> List[ValidationLog]:
        """Newest first."""
        sql = "SELECT * FROM validation_logs WHERE job_id = ? ORDER BY id DESC"
        params: List[Any] = [job_id]
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [
            ValidationLog(
                id=r["id"], job_id=r["job_id"], run_id=r["run_id"], bucket_count=r["bucket_count"],
                mismatched_bucket_count=r["mismatched_bucket_count"], status=ValidationStatus(r["status"]),
                message=r["message"] or "", created_at=_ts(r["created_at"]),
            )
            for r in self._query(sql, params)
        ]

    def counts_by_table(self, job_id: int) -> Dict[str, int]:
        """Number of rows owned by `job_id` in every state table."""
        out = {}
        for table in _OWNED_TABLES:
            out[table] = self._query(f"SELECT COUNT(*) AS n FROM {table} WHERE job_id = ?", (job_id,))[0]["n"]
        return out
