from __future__ import annotations

import dataclasses
import logging
import threading
from typing import Iterable, List, Optional, Sequence, Tuple

from db_to_db_sync.BucketComparator import BucketComparator
from db_to_db_sync.SyncJob import SyncJob
from db_to_db_sync.engine import RunSummary, SyncDataEngine, watermark_text
from db_to_db_sync.errors import ConfigurationError
from db_to_db_sync.records import ColumnMappingRule, ExecutionStatus, ValidationLog

log = logging.getLogger(__name__)


class JobRegistry:
    """
    Job catalog operations on top of the state store, plus the single entry point that
    runs a job (execute_job) with its concurrency and cancellation bookkeeping.
    """

    def __init__(self, context, engine: SyncDataEngine | None = None,
                 comparator: BucketComparator | None = None):
        self.ctx = context
        self.engine = engine or SyncDataEngine(context)
        self.comparator = comparator or BucketComparator(context)
        self.last_summary: Optional[RunSummary] = None

    # ---------- CRUD ----------
    def _require(self, job_id: int) -> SyncJob:
        job = self.ctx.store.get_job(job_id)
        if job is None:
            raise ConfigurationError(f"Sync job {job_id} does not exist")
        return job

    @staticmethod
    def _check(job: SyncJob) -> None:
        if not job.name:
            raise ConfigurationError("Sync job needs a name")
        if not job.source_table and not job.source_query:
            raise ConfigurationError(f"Job {job.name!r} needs a source_table or a source_query")
        if not job.target_table:
            raise ConfigurationError(f"Job {job.name!r} needs a target_table")
        if job.is_incremental and not job.incremental_column:
            raise ConfigurationError(f"Job {job.name!r}: INCREMENTAL mode needs an incremental_column")
        if job.batch_size < 1 or job.retry_count < 0 or job.bucket_count < 1:
            raise ConfigurationError(f"Job {job.name!r}: batch_size/bucket_count must be >= 1, retry_count >= 0")
        if job.drift_policy not in ("warn", "block"):
            raise ConfigurationError(f"Job {job.name!r}: drift_policy must be 'warn' or 'block'")

    def create_job(self, job: SyncJob, rules: Sequence[ColumnMappingRule] | None = None) -> SyncJob:
        self._check(job)
        saved = self.ctx.store.insert_job(job)
        if rules:
            self.ctx.store.replace_mapping_rules(saved.id, rules)
        log.info("Created sync job %s (%s)", saved.id, saved.name)
        return saved

    def update_job(self, job: SyncJob, rules: Sequence[ColumnMappingRule] | None = None) -> SyncJob:
        if job.id is None:
            raise ConfigurationError("update_job needs a persisted job (id)")
        self._require(job.id)
        self._check(job)
        saved = self.ctx.store.update_job(job)
        if rules is not None:
            self.ctx.store.replace_mapping_rules(saved.id, rules)
        return saved

    def _set_enabled(self, job_id: int, enabled: bool) -> SyncJob:
        job = self._require(job_id)
        return self.ctx.store.update_job(dataclasses.replace(job, enabled=enabled))

    def enable_job(self, job_id: int) -> SyncJob:
        return self._set_enabled(job_id, True)

    def disable_job(self, job_id: int) -> SyncJob:
        return self._set_enabled(job_id, False)

    def delete_job(self, job_id: int, force: bool = False) -> bool:
        """
        Delete a job with everything it owns. A job with a live run is refused: stop it with
        request_stop and delete once the run has finished. `force` only overrides RUNNING rows
        left by other processes, never a run of this process.
        """
        if self.is_running(job_id):
            raise ConfigurationError(f"Sync job {job_id} is running in this process; stop it before deleting")
        if not force and self.ctx.store.has_running_execution(job_id):
            raise ConfigurationError(f"Sync job {job_id} has a RUNNING execution; stop it before deleting")
        deleted = self.ctx.store.delete_job(job_id)
        if deleted:
            log.info("Deleted sync job %s with its history", job_id)
        return deleted

    def get_job(self, job_id: int) -> Optional[SyncJob]:
        return self.ctx.store.get_job(job_id)

    def list_jobs(self, enabled_only: bool = False) -> List[SyncJob]:
        jobs = self.ctx.store.list_jobs()
        return [j for j in jobs if j.enabled] if enabled_only else jobs

    def apply_catalog(self, entries: Iterable[Tuple[SyncJob, Sequence[ColumnMappingRule]]]) -> List[SyncJob]:
        """Upsert catalog entries by job name; existing ids, and so checkpoints and history, are kept."""
        saved = []
        for job, rules in entries:
            existing = self.ctx.store.get_job_by_name(job.name)
            if existing is None:
                saved.append(self.create_job(job, rules))
            else:
                saved.append(self.update_job(dataclasses.replace(job, id=existing.id), list(rules)))
        return saved

    # ---------- Execution ----------
    def execute_job(self, job_id: int, force: bool = False) -> bool:
        """
        Run a job once. Returns True only when the run ended SUCCESS.
        A trigger that finds the job already RUNNING (and concurrency disabled) is a no-op.
        """
        job = self._require(job_id)
        if not job.enabled and not force:
            log.info("Job %s is disabled; skipping", job_id)
            return False

        settings = self.ctx.settings
        execution_id = self.ctx.store.try_start_execution(job_id, job.allow_concurrent, settings.stale_execution_after)
        if execution_id is None:
            return False

        stop = threading.Event()
        with self.ctx.lock:
            self.ctx.active_runs[execution_id] = (job_id, stop)
        try:
            summary = self.engine.run(job, execution_id=execution_id, stop_event=stop)
            self.ctx.store.finish_execution(
                execution_id, summary.status,
                rows_read=summary.rows_read, rows_written=summary.rows_written, rows_failed=summary.rows_failed,
                batches=summary.batches, failed_batch_offset=summary.failed_batch_offset,
                last_watermark=watermark_text(summary.last_watermark), error_message=summary.error_message,
                buckets_applied=summary.buckets_applied, buckets_skipped=summary.buckets_skipped,
                buckets_retried=summary.buckets_retried, buckets_recovered=summary.buckets_recovered,
                buckets_mismatched=summary.buckets_mismatched,
            )
        except BaseException:
            # the engine reports failures in its summary; this only fires on bugs or interrupts
            self.ctx.store.finish_execution(execution_id, ExecutionStatus.FAILED,
                                            error_message=f"job={job_id} run aborted unexpectedly")
            raise
        finally:
            with self.ctx.lock:
                self.ctx.active_runs.pop(execution_id, None)
        self.last_summary = summary

        if summary.status == ExecutionStatus.SUCCESS and job.validate_after_sync:
            self.comparator.validate(job)
        return summary.status == ExecutionStatus.SUCCESS

    def request_stop(self, job_id: int) -> int:
        """Ask every in-process run of the job to stop after its current batch. Returns how many were signalled."""
        n = 0
        with self.ctx.lock:
            for owner, event in self.ctx.active_runs.values():
                if owner == job_id:
                    event.set()
                    n += 1
        if n:
            log.warning("Stop requested for %d run(s) of job %s", n, job_id)
        return n

    def is_running(self, job_id: int) -> bool:
        with self.ctx.lock:
            return any(owner == job_id for owner, _ in self.ctx.active_runs.values())

    def validate_job(self, job_id: int, raise_on_mismatch: bool = False) -> ValidationLog:
        job = self._require(job_id)
        return self.comparator.validate(job, raise_on_mismatch=raise_on_mismatch)
