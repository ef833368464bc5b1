from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict


class ExecutionStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.SUCCESS, ExecutionStatus.FAILED, ExecutionStatus.PARTIAL_SUCCESS)


_TRANSITIONS = {
    ExecutionStatus.PENDING: {ExecutionStatus.RUNNING},
    ExecutionStatus.RUNNING: {ExecutionStatus.SUCCESS, ExecutionStatus.FAILED, ExecutionStatus.PARTIAL_SUCCESS},
}


def check_transition(current: ExecutionStatus, new: ExecutionStatus) -> None:
    if new not in _TRANSITIONS.get(current, set()):
        raise ValueError(f"Illegal execution status transition {current.value} -> {new.value}")


class ValidationStatus(str, Enum):
    CONSISTENT = "CONSISTENT"
    MISMATCH = "MISMATCH"
    ERROR = "ERROR"


@dataclass
class ExecutionLog:
    id: int
    job_id: int
    status: ExecutionStatus
    started_at: datetime
    ended_at: datetime | None = None
    rows_read: int = 0
    rows_written: int = 0
    rows_failed: int = 0
    batches: int = 0
    failed_batch_offset: int | None = None
    last_watermark: str | None = None
    error_message: str | None = None
    buckets_applied: int = 0
    buckets_skipped: int = 0
    buckets_retried: int = 0
    buckets_recovered: int = 0
    buckets_mismatched: int = 0


@dataclass(frozen=True)
class Checkpoint:
    job_id: int
    watermark_value: str | None
    watermark_type: str | None
    updated_at: datetime


@dataclass(frozen=True)
class ColumnMappingRule:
    source_column: str | None
    target_column: str
    transform: Any = None           # JSON text or dict, see mapping.parse_transform
    ordinal: int = 0
    job_id: int | None = None


@dataclass(frozen=True)
class TableStructureSnapshot:
    job_id: int
    side: str                       # "source" | "target"
    columns_json: str
    digest: str
    captured_at: datetime


@dataclass(frozen=True)
class BucketChecksum:
    job_id: int
    run_id: str
    side: str
    bucket_id: int
    lower_bound: str | None
    upper_bound: str | None
    checksum: str
    row_count: int
    computed_at: datetime


@dataclass
class ValidationLog:
    job_id: int
    run_id: str
    bucket_count: int
    mismatched_bucket_count: int
    status: ValidationStatus
    created_at: datetime
    message: str = ""
    id: int | None = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "run_id": self.run_id,
            "bucket_count": self.bucket_count,
            "mismatched_bucket_count": self.mismatched_bucket_count,
            "status": self.status.value,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
        }
