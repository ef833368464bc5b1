from __future__ import annotations

import json
import logging
import threading
import time
from contextlib import closing
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import psycopg2.extras as extras

from db_to_db_sync.SyncJob import SyncJob
from db_to_db_sync.checkpoints import encode_watermark
from db_to_db_sync.checksums import canonical_text, checksum_of, hash_bucket
from db_to_db_sync.datasources import Datasource, connect
from db_to_db_sync.dialects import Dialect
from db_to_db_sync.errors import (
    BatchFailedError,
    BatchTimeoutError,
    ConfigurationError,
    DriftWarning,
    RunTimeoutError,
    TransientIOError,
)
from db_to_db_sync.mapping import ColumnMapper
from db_to_db_sync.metadata import (
    StructureDrift,
    TableSchema,
    columns_to_json,
    database_product_name,
    detect_drift,
    inspect_query,
    inspect_table,
)
from db_to_db_sync.records import ColumnMappingRule, ExecutionStatus

# Module-level logger for helpers
LOG = logging.getLogger(__name__)

SOURCE_QUERY_ALIAS = "src_q"

# ============================== Helpers (module-level; stateless) ===============================


def _json_sanitize(value: Any) -> Any:
    """
    Ensure value is JSON-serializable (safe for Airflow XCom push).
    - Converts datetime/date/Decimal and other exotic types via default=str.
    - Round-trips through JSON to guarantee primitives only.
    """
    return json.loads(json.dumps(value, default=str))


def backoff_delay(retry_interval: float, attempt: int) -> float:
    """retry_interval * 2^(attempt-1), capped at 16x."""
    return float(retry_interval) * (2 ** min(max(attempt, 1) - 1, 4))


def _execute(conn, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
    with closing(conn.cursor()) as c:
        if params:
            c.execute(sql, list(params))
        else:
            c.execute(sql)
        return [tuple(r) for r in c.fetchall()] if c.description else []


def _executemany(conn, sql: str, rows: List[tuple]) -> None:
    with closing(conn.cursor()) as c:
        if type(c).__module__.startswith("psycopg2"):
            extras.execute_batch(c, sql, rows, page_size=max(len(rows), 1))
        else:
            c.executemany(sql, rows)


def _quiet(fn: Callable[[], Any], what: str) -> None:
    try:
        fn()
    except Exception:
        LOG.debug("%s failed", what, exc_info=True)


def inspect_side(context, side: str, job: SyncJob, ds: Datasource, conn) -> Tuple[Dialect, TableSchema, str]:
    """Dialect, live metadata and the FROM-clause text for one side of a job."""
    product = ds.product or database_product_name(conn)
    dialect = context.dialects.resolve(product)
    if side == "source" and job.source_query:
        schema = inspect_query(conn, job.source_query, SOURCE_QUERY_ALIAS)
        return dialect, schema, f"({job.source_query}) {SOURCE_QUERY_ALIAS}"
    extractor = context.extractors.resolve(conn, product)
    if side == "source":
        if not job.source_table:
            raise ConfigurationError(f"Job {job.name!r} has neither source_table nor source_query")
        schema = inspect_table(extractor, conn, ds.database, job.source_schema, job.source_table)
    else:
        schema = inspect_table(extractor, conn, ds.database, job.target_schema, job.target_table)
    return dialect, schema, dialect.qualify_table(schema.schema, schema.table)


# ============================== Run state ===============================


@dataclass
class SyncPlan:
    """Everything resolved and validated before the first row is read."""

    job: SyncJob
    source_dialect: Dialect
    target_dialect: Dialect
    source: TableSchema
    target: TableSchema
    source_sql: str
    target_sql: str
    mapper: ColumnMapper
    read_columns: List[str]
    order_columns: List[str]
    keyset: bool
    target_keys: List[str]
    write_sql: str
    upsert: bool
    diff_key: str | None = None        # single target key used to diff buckets at write time
    compare_before: bool = False
    null_guarded: List[str] = field(default_factory=list)
    drift: List[StructureDrift] = field(default_factory=list)


@dataclass
class RunSummary:
    job_id: int | None
    execution_id: int | None = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    rows_read: int = 0
    rows_written: int = 0
    rows_failed: int = 0
    batches: int = 0
    last_watermark: Any = None
    failed_batch_offset: int | None = None
    error_message: str | None = None
    buckets_applied: int = 0
    buckets_skipped: int = 0
    buckets_retried: int = 0
    buckets_recovered: int = 0
    buckets_mismatched: int = 0
    drift: List[str] = field(default_factory=list)
    cancelled: bool = False
    elapsed: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return _json_sanitize(d)


@dataclass
class _Position:
    watermark_floor: Any = None      # INCREMENTAL: rows with inc >= floor
    after: Tuple[Any, ...] | None = None
    offset: int = 0
    rows_committed: int = 0
    last_watermark: Any = None


@dataclass
class _BucketTally:
    rows_written: int = 0
    applied: int = 0
    skipped: int = 0
    retried: int = 0
    recovered: int = 0
    mismatched: int = 0


def _limit_statements(conn, seconds: float | None, session: "_Session") -> None:
    """Driver-side guard so a hung statement is cancelled instead of blocking the batch forever."""
    if not seconds:
        return
    module = type(conn).__module__
    if module.startswith("sqlite3"):
        conn.set_progress_handler(session.deadline_passed, 1000)
    elif module.startswith("psycopg2"):
        _execute(conn, f"SET statement_timeout = {int(seconds * 1000)}")
        conn.commit()
    elif module.startswith("pymysql"):
        try:
            _execute(conn, f"SET SESSION max_execution_time = {int(seconds * 1000)}")
        except Exception as e:
            # MariaDB and old MySQL servers lack the variable
            LOG.info("Statement timeout not supported by %s: %s", module, e)


class _Session:
    """Source/target connections of one run; reopened between retries."""

    def __init__(self, source: Datasource, target: Datasource, statement_timeout: float | None = None):
        self.source = source
        self.target = target
        self.statement_timeout = statement_timeout
        self.deadline: float | None = None
        self.src = None
        self.dst = None

    def deadline_passed(self) -> int:
        return int(self.deadline is not None and time.monotonic() > self.deadline)

    def arm(self) -> None:
        if self.statement_timeout:
            self.deadline = time.monotonic() + self.statement_timeout

    def disarm(self) -> None:
        self.deadline = None

    def open(self) -> None:
        self.src = connect(self.source)
        _limit_statements(self.src, self.statement_timeout, self)
        self.dst = connect(self.target)
        _limit_statements(self.dst, self.statement_timeout, self)

    def rollback(self) -> None:
        for conn in (self.src, self.dst):
            if conn is not None:
                _quiet(conn.rollback, "rollback")

    def close(self) -> None:
        self.rollback()
        for conn in (self.src, self.dst):
            if conn is not None:
                _quiet(conn.close, "close")
        self.src = self.dst = None

    def reopen(self) -> None:
        self.close()
        self.open()


# ============================== Engine (single class) ===============================


class SyncDataEngine:
    def __init__(self, context, logger: logging.Logger | None = None):
        self.ctx = context
        self.log = logger or logging.getLogger(__name__)

    # ------------------------ Retry plumbing ------------------------

    def _retrying(self, job: SyncJob, label: str, fn: Callable[[int], Any],
                  on_failure: Callable[[], None] | None = None,
                  before_retry: Callable[[], None] | None = None):
        """
        Run fn(attempt) up to retry_count + 1 times; configuration errors are never retried.
        `before_retry` (typically a reconnect) runs after the backoff as part of the next
        attempt, so its own failure consumes an attempt instead of ending the loop.
        """
        attempts = max(int(job.retry_count), 0) + 1
        for attempt in range(1, attempts + 1):
            try:
                if attempt > 1 and before_retry is not None:
                    before_retry()
                return fn(attempt)
            except (ConfigurationError, DriftWarning):
                raise
            except Exception as exc:
                self.log.warning("⚠️ %s failed (attempt %d/%d): %s: %s",
                                 label, attempt, attempts, type(exc).__name__, exc)
                if attempt >= attempts:
                    raise
                if on_failure is not None:
                    on_failure()
                delay = backoff_delay(job.retry_interval, attempt)
                if delay > 0:
                    self.log.info("Retrying %s in %.1fs", label, delay)
                    time.sleep(delay)

    # ------------------------ Preparation ------------------------

    def _check_drift(self, job: SyncJob, side: str, schema: TableSchema) -> Optional[StructureDrift]:
        snap = self.ctx.store.latest_snapshot(job.id, side)
        if snap is None:
            return None
        drift = detect_drift(side, snap.digest, snap.columns_json, schema)
        if drift is not None:
            self.log.warning("⚠️ Structure drift for job %s: %s", job.id, drift.describe())
            if job.drift_policy == "block":
                raise DriftWarning(f"job={job.id} {drift.describe()} (drift_policy=block)")
        return drift

    def prepare(self, job: SyncJob, rules: Sequence[ColumnMappingRule], session: _Session) -> SyncPlan:
        """
        Resolve dialects and metadata, check structural drift, validate the mapping and
        build the SQL for the run. Raises ConfigurationError / DriftWarning before any row is read.
        """
        t0 = time.perf_counter()
        if job.id is None:
            raise ConfigurationError("Job must be persisted (id) before it can run")
        if job.is_incremental and not job.incremental_column:
            raise ConfigurationError(f"job={job.id} INCREMENTAL mode needs an incremental_column")
        if job.batch_size < 1:
            raise ConfigurationError(f"job={job.id} batch_size must be >= 1")

        src_dialect, source, source_sql = inspect_side(self.ctx, "source", job, session.source, session.src)
        dst_dialect, target, target_sql = inspect_side(self.ctx, "target", job, session.target, session.dst)

        drift = [d for d in (self._check_drift(job, "source", source), self._check_drift(job, "target", target)) if d]

        mapper = ColumnMapper.for_job(rules, source, target)
        if job.auto_add_columns and mapper.missing_target_columns(target):
            if self._add_missing_columns(job, mapper, source, dst_dialect, target_sql, session.dst, target):
                _, target, _ = inspect_side(self.ctx, "target", job, session.target, session.dst)
        mapper = mapper.validate(source, target)

        # ---- keys & ordering ----
        source_keys = job.key_columns or source.primary_keys
        canon_keys = []
        for k in source_keys:
            col = source.column(k)
            if col is None:
                raise ConfigurationError(f"job={job.id} key column {k!r} not found in source")
            canon_keys.append(col.name)

        inc_col = None
        if job.is_incremental:
            col = source.column(job.incremental_column)
            if col is None:
                raise ConfigurationError(
                    f"job={job.id} incremental column {job.incremental_column!r} not found in source"
                )
            inc_col = col.name

        order_columns = ([inc_col] if inc_col else []) + [k for k in canon_keys if k != inc_col]
        keyset = bool(canon_keys)
        read_columns = list(mapper.source_columns)
        for c in order_columns:
            if c not in read_columns:
                read_columns.append(c)
        if not keyset:
            # offset paging needs a total order
            order_columns += [c for c in read_columns if c not in order_columns]

        target_keys = list(target.primary_keys)
        if not target_keys and job.key_columns:
            mapped = [mapper.target_for_source(k) for k in canon_keys]
            target_keys = [m for m in mapped if m] if all(mapped) else []
        write_columns = mapper.target_columns
        lowered = {c.lower() for c in write_columns}
        unmapped_keys = [k for k in target_keys if k.lower() not in lowered]
        if unmapped_keys:
            raise ConfigurationError(f"job={job.id} target key column(s) {unmapped_keys} have no mapping rule")

        upsert = bool(target_keys)
        if not upsert and job.is_incremental:
            raise ConfigurationError(
                f"job={job.id} INCREMENTAL sync into {job.target_label} needs a primary key on the target "
                "(or a primary_key override) for idempotent upserts"
            )
        if upsert:
            write_sql = dst_dialect.build_upsert_sql(target_sql, write_columns, target_keys)
        else:
            self.log.warning("No key for %s; FULL reload uses plain INSERT", job.target_label)
            write_sql = dst_dialect.build_insert_sql(target_sql, write_columns)

        diff_key = target_keys[0] if upsert and len(target_keys) == 1 else None
        null_guarded = [c for c in order_columns if c != inc_col] if keyset else []

        self.ctx.store.save_snapshot(job.id, "source", columns_to_json(source.columns), source.digest)
        self.ctx.store.save_snapshot(job.id, "target", columns_to_json(target.columns), target.digest)
        session.rollback()

        plan = SyncPlan(
            job=job, source_dialect=src_dialect, target_dialect=dst_dialect, source=source, target=target,
            source_sql=source_sql, target_sql=target_sql, mapper=mapper, read_columns=read_columns,
            order_columns=order_columns, keyset=keyset, target_keys=target_keys, write_sql=write_sql,
            upsert=upsert, diff_key=diff_key, compare_before=job.is_incremental, null_guarded=null_guarded,
            drift=drift,
        )
        self.log.info(
            "Plan for job %s: %s -> %s mode=%s keys=%s order=%s upsert=%s (%.3fs)",
            job.id, job.source_label, job.target_label, job.sync_mode.value, target_keys, order_columns,
            upsert, time.perf_counter() - t0,
        )
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug("Write SQL: %s", write_sql)
        return plan

    def _add_missing_columns(self, job: SyncJob, mapper: ColumnMapper, source: TableSchema,
                             dialect: Dialect, target_sql: str, dst, target: TableSchema) -> bool:
        missing = {c.lower() for c in mapper.missing_target_columns(target)}
        added = []
        for rule in mapper.rules:
            if rule.target_column.lower() not in missing or not rule.is_rename or not rule.source_column:
                continue
            scol = source.column(rule.source_column)
            if scol is None:
                continue
            sql = dialect.build_add_column_sql(target_sql, rule.target_column, scol.data_type)
            self.log.debug("ALTER SQL: %s", sql)
            _execute(dst, sql)
            added.append(rule.target_column)
        if added:
            dst.commit()
            self.log.info("🆕 Added %d column(s) to %s: %s", len(added), job.target_label, ", ".join(added))
        return bool(added)

    # ------------------------ Target reset (FULL) ------------------------

    def _clear_target(self, plan: SyncPlan, dst) -> str:
        d = plan.target_dialect
        if d.supports_truncate:
            try:
                self.log.info("Attempting TRUNCATE on %s ...", plan.target_sql)
                _execute(dst, d.build_truncate_sql(plan.target_sql))
                dst.commit()
                self.log.info("TRUNCATE succeeded on %s", plan.target_sql)
                return "truncate"
            except Exception:
                self.log.warning("TRUNCATE failed, falling back to DELETE", exc_info=True)
                _quiet(dst.rollback, "rollback")
        _execute(dst, d.build_delete_all_sql(plan.target_sql))
        dst.commit()
        self.log.info("DELETE succeeded on %s", plan.target_sql)
        return "delete"

    # ------------------------ Batches ------------------------

    def _read_conditions(self, plan: SyncPlan, pos: _Position, b) -> List[str]:
        job, d = plan.job, plan.source_dialect
        conditions = []
        if job.filter_condition:
            conditions.append(f"({job.filter_condition})")
        if job.is_incremental:
            inc = d.quote_identifier(plan.order_columns[0])
            conditions.append(f"{inc} IS NOT NULL")
            if pos.watermark_floor is not None:
                conditions.append(f"{inc} >= {b.bind(pos.watermark_floor)}")
        return conditions

    def _count_null_keys(self, plan: SyncPlan, src, pos: _Position) -> int:
        """Rows keyset paging cannot reach: `key > NULL` never matches, so they are excluded up front."""
        if not plan.null_guarded:
            return 0
        d = plan.source_dialect
        b = d.binder()
        conditions = self._read_conditions(plan, pos, b)
        conditions.append("(" + " OR ".join(f"{d.quote_identifier(c)} IS NULL" for c in plan.null_guarded) + ")")
        [(count,)] = _execute(src, f"SELECT COUNT(*) FROM {plan.source_sql} WHERE {' AND '.join(conditions)}", b.params)
        src.commit()
        return int(count or 0)

    def _read_page(self, plan: SyncPlan, src, pos: _Position) -> List[Dict[str, Any]]:
        job, d = plan.job, plan.source_dialect
        b = d.binder()
        conditions = self._read_conditions(plan, pos, b)
        conditions += [f"{d.quote_identifier(c)} IS NOT NULL" for c in plan.null_guarded]
        if plan.keyset and pos.after is not None:
            conditions.append(d.build_keyset_condition(plan.order_columns, pos.after, b))
        sql = d.build_select_page_sql(
            plan.source_sql, plan.read_columns, " AND ".join(conditions) or None, plan.order_columns,
            limit=job.batch_size, offset=0 if plan.keyset else pos.offset,
        )
        rows = _execute(src, sql, b.params)
        src.commit()
        return [dict(zip(plan.read_columns, r)) for r in rows]

    def _write_batch(self, plan: SyncPlan, dst, values: List[tuple]) -> None:
        _executemany(dst, plan.write_sql, values)

    # ------------------------ Write-time bucket diff ------------------------

    def _fetch_target(self, plan: SyncPlan, dst, keys: List[Any]) -> Dict[str, tuple]:
        columns = plan.mapper.target_columns
        key_idx = columns.index(plan.diff_key)
        chunk = max(int(self.ctx.settings.max_in_clause), 1)
        found: Dict[str, tuple] = {}
        for i in range(0, len(keys), chunk):
            part = keys[i:i + chunk]
            sql = plan.target_dialect.build_select_by_primary_key_in_sql(plan.target_sql, columns, plan.diff_key, len(part))
            for r in _execute(dst, sql, part):
                found[canonical_text(r[key_idx])] = r
        return found

    def _mismatched(self, plan: SyncPlan, dst,
                    buckets: Dict[int, Dict[str, tuple]]) -> Dict[int, Dict[str, tuple]]:
        """Buckets whose target rows differ from the mapped source rows (count or checksum)."""
        keys = [row[plan.mapper.target_columns.index(plan.diff_key)] for rows in buckets.values() for row in rows.values()]
        target = self._fetch_target(plan, dst, keys)
        out = {}
        for bucket_id, rows in buckets.items():
            present = [target[k] for k in rows if k in target]
            if checksum_of(list(rows.values())) != checksum_of(present):
                out[bucket_id] = rows
        return out

    def _apply_batch(self, plan: SyncPlan, dst, values: List[tuple]) -> _BucketTally:
        """
        Write one mapped batch inside the open target transaction. With a single target key the
        batch is split into hash buckets: buckets already matching the target are skipped
        (INCREMENTAL), written buckets are re-read and re-applied up to retry_count times until
        they match. Buckets still different afterwards are counted as mismatched.
        """
        tally = _BucketTally()
        if plan.diff_key is None:
            self._write_batch(plan, dst, values)
            tally.rows_written = len(values)
            return tally

        job = plan.job
        key_idx = plan.mapper.target_columns.index(plan.diff_key)
        buckets: Dict[int, Dict[str, tuple]] = {}
        for row in values:
            bucket = buckets.setdefault(hash_bucket(row[key_idx], job.bucket_count), {})
            bucket[canonical_text(row[key_idx])] = row    # last row for a key wins, like the upsert

        pending = self._mismatched(plan, dst, buckets) if plan.compare_before else buckets
        tally.skipped = len(buckets) - len(pending)
        if pending:
            rows = [r for b in pending.values() for r in b.values()]
            self._write_batch(plan, dst, rows)
            tally.rows_written = len(rows)
        tally.applied = len(pending)

        mismatched = self._mismatched(plan, dst, pending) if pending else {}
        retried = set()
        for attempt in range(1, max(int(job.retry_count), 0) + 1):
            if not mismatched:
                break
            retried.update(mismatched)
            self.log.warning("⚠️ %d bucket(s) of job %s differ after write; re-applying (attempt %d/%d)",
                             len(mismatched), job.id, attempt, job.retry_count)
            delay = backoff_delay(job.retry_interval, attempt)
            if delay > 0:
                time.sleep(delay)
            self._write_batch(plan, dst, [r for b in mismatched.values() for r in b.values()])
            mismatched = self._mismatched(plan, dst, mismatched)
        tally.retried = len(retried)
        tally.recovered = len(retried - set(mismatched))
        tally.mismatched = len(mismatched)
        if mismatched:
            self.log.warning("⚠️ %d bucket(s) of job %s still differ after %d re-apply attempt(s)",
                             len(mismatched), job.id, job.retry_count)
        return tally

    def _process_batch(self, plan: SyncPlan, session: _Session, pos: _Position,
                       batch_index: int) -> Tuple[List[Dict[str, Any]], _BucketTally, int]:
        """read -> map -> write in one target transaction -> commit. Returns (rows, tally, failed)."""
        job = plan.job
        batch_timeout = self.ctx.settings.batch_timeout

        def _attempt(attempt: int):
            t_batch = time.perf_counter()
            session.arm()
            try:
                rows = self._read_page(plan, session.src, pos)
                if not rows:
                    return rows, _BucketTally(), 0
                values, failed = [], 0
                key_idx = [plan.mapper.target_columns.index(k) for k in plan.target_keys]
                for row in rows:
                    mapped = plan.mapper.map_values(row)
                    if any(mapped[i] is None for i in key_idx):
                        failed += 1
                        continue
                    values.append(mapped)
                if failed:
                    self.log.warning("Skipped %d row(s) with NULL key in batch %d of job %s", failed, batch_index, job.id)
                tally = self._apply_batch(plan, session.dst, values) if values else _BucketTally()
            finally:
                session.disarm()
            elapsed = time.perf_counter() - t_batch
            if batch_timeout and elapsed > batch_timeout:
                raise BatchTimeoutError(f"batch took {elapsed:.1f}s > {batch_timeout:.1f}s")
            session.dst.commit()
            self.log.info(
                "Batch %d committed for job %s (rows=%d written=%d skipped_buckets=%d, took %.3fs)",
                batch_index, job.id, len(rows), tally.rows_written, tally.skipped, elapsed,
            )
            return rows, tally, failed

        try:
            return self._retrying(job, f"batch {batch_index} of job {job.id}", _attempt,
                                  on_failure=session.rollback, before_retry=session.reopen)
        except (ConfigurationError, DriftWarning):
            session.rollback()
            raise
        except Exception as exc:
            session.rollback()
            raise BatchFailedError(job.id, batch_index, pos.rows_committed, pos.last_watermark, exc) from exc

    # ------------------------ One run ------------------------

    def run(self, job: SyncJob, rules: Sequence[ColumnMappingRule] | None = None,
            execution_id: int | None = None, stop_event: threading.Event | None = None) -> RunSummary:
        """
        One sync pass. Never raises for run failures: the outcome (SUCCESS / FAILED /
        PARTIAL_SUCCESS) and the failure point are reported in the returned RunSummary.
        """
        t0 = time.perf_counter()
        run_timeout = self.ctx.settings.run_timeout
        summary = RunSummary(job_id=job.id, execution_id=execution_id)
        self.log.info(
            "sync run: job=%s %s -> %s mode=%s batch_size=%d",
            job.id, job.source_label, job.target_label, job.sync_mode.value, job.batch_size,
        )
        session: _Session | None = None
        pos = _Position()
        try:
            if rules is None:
                rules = self.ctx.store.list_mapping_rules(job.id) if job.id is not None else []
            source_ds = self.ctx.datasources.get(job.source_datasource)
            target_ds = self.ctx.datasources.get(job.target_datasource)
            session = _Session(source_ds, target_ds, self.ctx.settings.batch_timeout)
            self._retrying(job, f"connect job {job.id}", lambda _a: session.open(), on_failure=session.close)

            plan = self.prepare(job, rules, session)
            summary.drift = [d.describe() for d in plan.drift]

            if job.is_incremental:
                pos.watermark_floor = self.ctx.checkpoints.get_checkpoint(job.id)
                pos.last_watermark = pos.watermark_floor
                self.log.info("Job %s resumes from watermark %r", job.id, pos.watermark_floor)
            else:
                self._retrying(job, f"clear target of job {job.id}",
                               lambda _a: self._clear_target(plan, session.dst), before_retry=session.reopen)

            excluded = self._retrying(job, f"count NULL keys of job {job.id}",
                                      lambda _a: self._count_null_keys(plan, session.src, pos),
                                      on_failure=session.rollback, before_retry=session.reopen)
            if excluded:
                summary.rows_failed += excluded
                self.log.warning("⚠️ %d source row(s) of job %s have a NULL key (%s) and are not synced",
                                 excluded, job.id, ", ".join(plan.null_guarded))

            while True:
                if run_timeout and time.perf_counter() - t0 > run_timeout:
                    raise RunTimeoutError(f"run exceeded {run_timeout:.1f}s")
                rows, tally, failed = self._process_batch(plan, session, pos, summary.batches)
                if not rows:
                    break
                summary.batches += 1
                summary.rows_read += len(rows)
                summary.rows_written += tally.rows_written
                summary.buckets_applied += tally.applied
                summary.buckets_skipped += tally.skipped
                summary.buckets_retried += tally.retried
                summary.buckets_recovered += tally.recovered
                summary.buckets_mismatched += tally.mismatched
                summary.rows_failed += failed
                pos.rows_committed += len(rows)
                if plan.keyset:
                    last = rows[-1]
                    pos.after = tuple(last[c] for c in plan.order_columns)
                else:
                    pos.offset += len(rows)
                if job.is_incremental:
                    batch_watermark = rows[-1][plan.order_columns[0]]
                    self.ctx.checkpoints.advance_checkpoint(job.id, batch_watermark)
                    pos.last_watermark = batch_watermark
                    summary.last_watermark = batch_watermark
                if stop_event is not None and stop_event.is_set():
                    summary.cancelled = True
                    self.log.warning("Stop requested for job %s; halting after batch %d", job.id, summary.batches - 1)
                    break
                if len(rows) < job.batch_size:
                    break

            if summary.cancelled:
                summary.status = ExecutionStatus.PARTIAL_SUCCESS
                summary.error_message = (
                    f"job={job.id} stopped by request after batch={summary.batches - 1} "
                    f"offset={pos.rows_committed} watermark={pos.last_watermark!r}"
                )
            else:
                summary.status = ExecutionStatus.SUCCESS
        except (ConfigurationError, DriftWarning) as e:
            summary.status = ExecutionStatus.FAILED
            summary.error_message = f"job={job.id} {type(e).__name__}: {e}"
            self.log.error("❌ Job %s failed validation: %s", job.id, e)
        except BatchFailedError as e:
            summary.status = ExecutionStatus.FAILED if summary.batches == 0 else ExecutionStatus.PARTIAL_SUCCESS
            summary.failed_batch_offset = e.row_offset
            summary.error_message = str(e)
            self.log.error("❌ Job %s %s: %s", job.id, summary.status.value, e)
        except Exception as e:
            summary.status = ExecutionStatus.FAILED if summary.batches == 0 else ExecutionStatus.PARTIAL_SUCCESS
            summary.failed_batch_offset = pos.rows_committed
            summary.error_message = (
                f"job={job.id} batch={summary.batches} offset={pos.rows_committed} "
                f"watermark={pos.last_watermark!r} cause={type(e).__name__}: {e}"
            )
            self.log.error("❌ Job %s %s", job.id, summary.error_message, exc_info=not isinstance(e, TransientIOError))
        finally:
            if session is not None:
                session.close()

        summary.elapsed = round(time.perf_counter() - t0, 3)
        self.log.info(
            "%s Job %s finished %s: read=%d written=%d failed=%d batches=%d buckets applied=%d skipped=%d mismatched=%d (%.3fs)",
            "✅" if summary.status == ExecutionStatus.SUCCESS else "⚠️", job.id, summary.status.value,
            summary.rows_read, summary.rows_written, summary.rows_failed, summary.batches,
            summary.buckets_applied, summary.buckets_skipped, summary.buckets_mismatched, summary.elapsed,
        )
        return summary


def watermark_text(value: Any) -> str | None:
    return None if value is None else encode_watermark(value)[0]
