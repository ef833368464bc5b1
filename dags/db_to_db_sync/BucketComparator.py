from __future__ import annotations

import logging
import math
import time
import uuid
from contextlib import closing
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import pendulum

from db_to_db_sync.SyncJob import SyncJob
from db_to_db_sync.alerts import send_discord_alert
from db_to_db_sync.checksums import ChecksumAccumulator, canonical_text, hash_bucket, row_hash
from db_to_db_sync.datasources import open_connection
from db_to_db_sync.dialects import Dialect
from db_to_db_sync.engine import inspect_side
from db_to_db_sync.errors import ChecksumMismatch, ConfigurationError
from db_to_db_sync.mapping import ColumnMapper
from db_to_db_sync.metadata import INTEGER_TYPES, ORDERABLE_TYPES
from db_to_db_sync.records import BucketChecksum, ColumnMappingRule, ValidationLog, ValidationStatus

logger = logging.getLogger(__name__)

FETCH_SIZE = 5000
MAX_SAMPLE_KEYS = 20

# ============================== Helper funcs ===============================


@dataclass(frozen=True)
class Bucket:
    """Half-open key range [lower, upper); None means unbounded on that side."""

    bucket_id: int
    lower: Any = None
    upper: Any = None

    def contains(self, key: Any) -> bool:
        return (self.lower is None or key >= self.lower) and (self.upper is None or key < self.upper)


def buckets_from_boundaries(boundaries: Sequence[Any]) -> List[Bucket]:
    edges = [None, *boundaries, None]
    return [Bucket(i, edges[i], edges[i + 1]) for i in range(len(edges) - 1)]


def integer_range_buckets(min_key: int | None, max_key: int | None, bucket_count: int) -> List[Bucket]:
    """Equal-width ranges over [min_key, max_key]; the outer buckets are open-ended."""
    if min_key is None or max_key is None or bucket_count <= 1:
        return [Bucket(0)]
    lo, hi = int(min_key), int(max_key)
    width = max(1, math.ceil((hi - lo + 1) / bucket_count))
    boundaries = [lo + i * width for i in range(1, bucket_count) if lo + i * width <= hi]
    return buckets_from_boundaries(boundaries)


def quantile_buckets(sorted_keys: Sequence[Any], bucket_count: int) -> List[Bucket]:
    """Boundaries at evenly spaced positions of the ordered key list (duplicates collapse)."""
    n = len(sorted_keys)
    if n == 0 or bucket_count <= 1:
        return [Bucket(0)]
    boundaries: List[Any] = []
    for i in range(1, bucket_count):
        candidate = sorted_keys[(n * i) // bucket_count]
        if candidate > sorted_keys[0] and (not boundaries or candidate > boundaries[-1]):
            boundaries.append(candidate)
    return buckets_from_boundaries(boundaries)


def _stream(conn, sql: str, params: Sequence[Any] = ()) -> Iterator[tuple]:
    with closing(conn.cursor()) as c:
        if params:
            c.execute(sql, list(params))
        else:
            c.execute(sql)
        while True:
            chunk = c.fetchmany(FETCH_SIZE)
            if not chunk:
                break
            for r in chunk:
                yield tuple(r)


# ============================== Side description ===============================


@dataclass
class _Side:
    name: str
    conn: Any
    dialect: Dialect
    table_sql: str
    key_column: str
    columns: List[str]
    where: str | None
    to_values: Callable[[Dict[str, Any]], Tuple[Any, ...]]

    def rows_in(self, bucket: Bucket | None) -> Iterator[Tuple[Any, Tuple[Any, ...]]]:
        """(key, mapped values) of every row of the bucket (all rows when bucket is None)."""
        b = self.dialect.binder()
        if bucket is None:
            sql = self.dialect.build_select_sql(self.table_sql, self.columns, self.where)
        else:
            sql = self.dialect.build_select_range_sql(
                self.table_sql, self.columns, self.key_column, bucket.lower, bucket.upper, b, self.where
            )
        for r in _stream(self.conn, sql, b.params):
            row = dict(zip(self.columns, r))
            yield row[self.key_column], self.to_values(row)

    def fetch_by_keys(self, keys: Sequence[Any], chunk: int) -> Dict[str, Tuple[Any, ...]]:
        out: Dict[str, Tuple[Any, ...]] = {}
        for i in range(0, len(keys), chunk):
            part = list(keys[i:i + chunk])
            sql = self.dialect.build_select_by_primary_key_in_sql(self.table_sql, self.columns, self.key_column, len(part))
            for r in _stream(self.conn, sql, part):
                row = dict(zip(self.columns, r))
                out[canonical_text(row[self.key_column])] = self.to_values(row)
        return out


# ============================== BucketComparator ===============================


class BucketComparator:
    """Compare one job's source and target by per-bucket row counts and checksums."""

    def __init__(self, context, alert: Callable[..., Any] = send_discord_alert):
        self.ctx = context
        self.alert = alert

    # ---------- Boundaries ----------
    def compute_buckets(self, side: _Side, key_type: str, bucket_count: int, strategy: str = "auto") -> Optional[List[Bucket]]:
        """Range buckets from the source key distribution, or None for hash-mod-N."""
        if strategy == "hash" or (strategy == "auto" and key_type not in ORDERABLE_TYPES):
            return None
        if key_type in INTEGER_TYPES:
            sql = side.dialect.build_min_max_sql(side.table_sql, side.key_column, side.where)
            [(lo, hi, cnt)] = list(_stream(side.conn, sql))
            logger.info("Key domain of %s: min=%r max=%r rows=%s", side.table_sql, lo, hi, cnt)
            return integer_range_buckets(lo, hi, bucket_count)
        sql = side.dialect.build_select_sql(side.table_sql, [side.key_column], side.where, [side.key_column])
        keys = [r[0] for r in _stream(side.conn, sql) if r[0] is not None]
        return quantile_buckets(keys, bucket_count)

    # ---------- Checksums ----------
    @staticmethod
    def _accumulate_ranges(side: _Side, buckets: List[Bucket]) -> List[ChecksumAccumulator]:
        accs = []
        for bucket in buckets:
            acc = ChecksumAccumulator()
            for _key, values in side.rows_in(bucket):
                acc.add(row_hash(values))
            accs.append(acc)
        return accs

    @staticmethod
    def _accumulate_hashed(side: _Side, bucket_count: int) -> List[ChecksumAccumulator]:
        accs = [ChecksumAccumulator() for _ in range(bucket_count)]
        for key, values in side.rows_in(None):
            accs[hash_bucket(key, bucket_count)].add(row_hash(values))
        return accs

    def _drill_down(self, src: _Side, dst: _Side, bucket: Bucket) -> List[str]:
        """Sample keys that differ inside one mismatched range bucket."""
        source_rows = {canonical_text(k): (k, v) for k, v in src.rows_in(bucket)}
        target_rows = dst.fetch_by_keys([k for k, _ in source_rows.values()], self.ctx.settings.max_in_clause)
        issues = []
        for text, (_key, values) in source_rows.items():
            other = target_rows.get(text)
            if other is None:
                issues.append(f"missing:{text}")
            elif row_hash(other) != row_hash(values):
                issues.append(f"differs:{text}")
            if len(issues) >= MAX_SAMPLE_KEYS:
                break
        return issues

    # ---------- Orchestration ----------
    def _compare(self, job: SyncJob, rules: Sequence[ColumnMappingRule], run_id: str,
                 strategy: str) -> Tuple[int, int, str]:
        ds = self.ctx.datasources
        with open_connection(ds, job.source_datasource) as sconn, open_connection(ds, job.target_datasource) as tconn:
            s_dialect, source, source_sql = inspect_side(self.ctx, "source", job, ds.get(job.source_datasource), sconn)
            t_dialect, target, target_sql = inspect_side(self.ctx, "target", job, ds.get(job.target_datasource), tconn)
            mapper = ColumnMapper.for_job(rules, source, target).validate(source, target)

            keys = job.key_columns or source.primary_keys
            if not keys:
                raise ConfigurationError(f"job={job.id} bucket validation needs a primary key or primary_key override")
            key_col = source.column(keys[0])
            if key_col is None:
                raise ConfigurationError(f"job={job.id} key column {keys[0]!r} not found in source")
            target_key = mapper.target_for_source(key_col.name)
            if target_key is None:
                raise ConfigurationError(f"job={job.id} key column {key_col.name!r} must be mapped by plain rename")

            src_cols = list(mapper.source_columns)
            if key_col.name not in src_cols:
                src_cols.append(key_col.name)
            src = _Side("source", sconn, s_dialect, source_sql, key_col.name, src_cols,
                        job.filter_condition, mapper.map_values)
            tgt_cols = mapper.target_columns
            dst = _Side("target", tconn, t_dialect, target_sql, target_key, tgt_cols, None,
                        lambda row: tuple(row[c] for c in tgt_cols))

            bucket_count = max(1, int(job.bucket_count))
            buckets = self.compute_buckets(src, key_col.jdbc_type, bucket_count, strategy)
            if buckets is None:
                logger.info("Hash-mod-%d buckets on %s", bucket_count, key_col.name)
                src_acc = self._accumulate_hashed(src, bucket_count)
                dst_acc = self._accumulate_hashed(dst, bucket_count)
                bounds = [(f"hash:{i}/{bucket_count}", None) for i in range(bucket_count)]
            else:
                logger.info("%d range buckets on %s", len(buckets), key_col.name)
                src_acc = self._accumulate_ranges(src, buckets)
                dst_acc = self._accumulate_ranges(dst, buckets)
                bounds = [
                    (None if b.lower is None else canonical_text(b.lower),
                     None if b.upper is None else canonical_text(b.upper))
                    for b in buckets
                ]

            now = pendulum.now("UTC")
            rows = []
            for side, accs in (("source", src_acc), ("target", dst_acc)):
                for i, acc in enumerate(accs):
                    rows.append(BucketChecksum(job.id, run_id, side, i, bounds[i][0], bounds[i][1],
                                               acc.checksum, acc.count, now))
            self.ctx.store.save_bucket_checksums(rows)

            mismatched = [
                i for i, (a, b) in enumerate(zip(src_acc, dst_acc))
                if a.count != b.count or a.checksum != b.checksum
            ]
            details = []
            for i in mismatched[:5]:
                s, d = src_acc[i], dst_acc[i]
                line = f"bucket {i} [{bounds[i][0]}, {bounds[i][1]}) rows {s.count}/{d.count}"
                if buckets is not None:
                    sample = self._drill_down(src, dst, buckets[i])
                    if sample:
                        line += " keys " + ", ".join(sample)
                details.append(line)
            return len(src_acc), len(mismatched), "; ".join(details)

    def validate(self, job: SyncJob, rules: Sequence[ColumnMappingRule] | None = None, *,
                 run_id: str | None = None, strategy: str = "auto",
                 raise_on_mismatch: bool = False) -> ValidationLog:
        """
        One validation pass. Errors end the pass with an ERROR log entry and never propagate;
        a mismatch raises ChecksumMismatch only when raise_on_mismatch is set.
        """
        t0 = time.perf_counter()
        run_id = run_id or f"{pendulum.now('UTC').format('YYYYMMDDTHHmmss')}-{uuid.uuid4().hex[:8]}"
        if rules is None:
            rules = self.ctx.store.list_mapping_rules(job.id)
        logger.info("▶️ Validating job %s (%s -> %s) run=%s", job.id, job.source_label, job.target_label, run_id)
        try:
            bucket_count, mismatched, details = self._compare(job, rules, run_id, strategy)
        except Exception as e:
            logger.exception("❌ Validation of job %s aborted: %s", job.id, e)
            entry = self.ctx.store.save_validation_log(ValidationLog(
                job_id=job.id, run_id=run_id, bucket_count=0, mismatched_bucket_count=0,
                status=ValidationStatus.ERROR, created_at=pendulum.now("UTC"),
                message=f"{type(e).__name__}: {e}",
            ))
            self._signal_health(job)
            return entry

        status = ValidationStatus.MISMATCH if mismatched else ValidationStatus.CONSISTENT
        entry = self.ctx.store.save_validation_log(ValidationLog(
            job_id=job.id, run_id=run_id, bucket_count=bucket_count, mismatched_bucket_count=mismatched,
            status=status, created_at=pendulum.now("UTC"), message=details,
        ))
        if mismatched:
            logger.warning("🚨 Job %s: %d/%d bucket(s) mismatched: %s", job.id, mismatched, bucket_count, details)
        else:
            logger.info("✅ Job %s consistent over %d bucket(s) (%.3fs)", job.id, bucket_count, time.perf_counter() - t0)
        if mismatched and raise_on_mismatch:
            raise ChecksumMismatch(job.id, mismatched, f"job {job.id}: {mismatched} bucket(s) mismatched; {details}")
        return entry

    # ---------- Health ----------
    def consecutive_failures(self, job_id: int) -> int:
        n = 0
        for entry in self.ctx.store.list_validation_logs(job_id, limit=50):
            if entry.status != ValidationStatus.ERROR:
                break
            n += 1
        return n

    def job_health(self, job_id: int) -> str:
        threshold = self.ctx.settings.validation_failure_threshold
        return "degraded" if self.consecutive_failures(job_id) >= threshold else "healthy"

    def _signal_health(self, job: SyncJob) -> None:
        failures = self.consecutive_failures(job.id)
        threshold = self.ctx.settings.validation_failure_threshold
        if failures < threshold:
            return
        message = (
            f"❗ **Sync job health degraded**: `{job.name}` (id {job.id})\n"
            f"- {failures} consecutive validation failures\n- {job.source_label} → {job.target_label}"
        )
        logger.error("Job %s health degraded: %d consecutive validation failures", job.id, failures)
        if failures == threshold:
            self.alert(message, self.ctx.settings.discord_webhook)
