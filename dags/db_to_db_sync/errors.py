from __future__ import annotations

from typing import Any


# ============================== Error taxonomy ===============================

class SyncError(Exception):
    """Base class for every error raised by the sync engine."""


class ConfigurationError(SyncError):
    """Unsupported dialect, missing table/column, invalid mapping. Never retried."""


class TransientIOError(SyncError):
    """Connection drop, timeout. Retried up to the job's retry_count."""


class BatchTimeoutError(TransientIOError):
    pass


class RunTimeoutError(TransientIOError):
    pass


class DriftWarning(SyncError):
    """Structure changed since the last snapshot and the job's drift policy blocks the run."""


class ChecksumMismatch(SyncError):
    """Source and target bucket checksums disagree."""

    def __init__(self, job_id: int, mismatched: int, message: str = ""):
        self.job_id = job_id
        self.mismatched = mismatched
        super().__init__(message or f"job {job_id}: {mismatched} bucket(s) mismatched")


class BatchFailedError(SyncError):
    """A batch exhausted its retries; carries the failure point for a manual resume."""

    def __init__(self, job_id: int | None, batch_index: int, row_offset: int,
                 watermark: Any, cause: BaseException):
        self.job_id = job_id
        self.batch_index = batch_index
        self.row_offset = row_offset
        self.watermark = watermark
        self.cause = cause
        super().__init__(
            f"job={job_id} batch={batch_index} offset={row_offset} "
            f"watermark={watermark!r} cause={type(cause).__name__}: {cause}"
        )
