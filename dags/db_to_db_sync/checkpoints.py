from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Tuple

from db_to_db_sync.records import Checkpoint

LOG = logging.getLogger(__name__)

# ============================== Watermark codec ===============================


def encode_watermark(value: Any) -> Tuple[str, str]:
    """Typed text form of a watermark value: (text, type)."""
    if isinstance(value, bool):
        return str(int(value)), "int"
    if isinstance(value, int):
        return str(value), "int"
    if isinstance(value, float):
        return repr(value), "float"
    if isinstance(value, Decimal):
        return str(value), "decimal"
    if isinstance(value, datetime):
        return value.isoformat(), "datetime"
    if isinstance(value, date):
        return value.isoformat(), "date"
    if isinstance(value, bytes):
        return value.decode("utf-8"), "str"
    return str(value), "str"


def decode_watermark(text: str | None, type_: str | None) -> Any:
    if text is None:
        return None
    if type_ == "int":
        return int(text)
    if type_ == "float":
        return float(text)
    if type_ == "decimal":
        return Decimal(text)
    if type_ == "datetime":
        return datetime.fromisoformat(text)
    if type_ == "date":
        return date.fromisoformat(text)
    return text


def _as_decimal(v: Any) -> Optional[Decimal]:
    if isinstance(v, bool) or not isinstance(v, (int, float, Decimal)):
        return None
    try:
        return Decimal(str(v))
    except InvalidOperation:
        return None


def watermark_greater(candidate: Any, current: Any) -> bool:
    """candidate > current with numeric widening and naive datetimes treated as UTC."""
    if current is None:
        return candidate is not None
    if candidate is None:
        return False
    a, b = _as_decimal(candidate), _as_decimal(current)
    if a is not None and b is not None:
        return a > b
    if isinstance(candidate, datetime) and isinstance(current, datetime):
        if (candidate.tzinfo is None) != (current.tzinfo is None):
            candidate = candidate if candidate.tzinfo else candidate.replace(tzinfo=timezone.utc)
            current = current if current.tzinfo else current.replace(tzinfo=timezone.utc)
        return candidate > current
    try:
        return candidate > current
    except TypeError:
        # mixed types (e.g. the incremental column changed type): compare the text forms
        return encode_watermark(candidate)[0] > encode_watermark(current)[0]


# ============================== Manager ===============================


class CheckpointManager:
    """
    Resumable watermark per INCREMENTAL job. Advancing is a compare-and-swap: a value is
    stored only when it is greater than the stored one, so overlapping runs never move it back.
    """

    def __init__(self, store):
        self.store = store

    def get_checkpoint(self, job_id: int) -> Any:
        """Current watermark, or None when absent (first run is a full bootstrap)."""
        cp = self.store.get_checkpoint(job_id)
        if cp is None or cp.watermark_value is None:
            return None
        return decode_watermark(cp.watermark_value, cp.watermark_type)

    def advance_checkpoint(self, job_id: int, watermark: Any) -> bool:
        if watermark is None:
            return False
        text, type_ = encode_watermark(watermark)

        def _greater(current: Optional[Checkpoint]) -> bool:
            if current is None or current.watermark_value is None:
                return True
            return watermark_greater(watermark, decode_watermark(current.watermark_value, current.watermark_type))

        applied = self.store.compare_and_set_checkpoint(job_id, text, type_, _greater)
        if applied:
            LOG.info("Checkpoint for job %s advanced to %s (%s)", job_id, text, type_)
        else:
            LOG.debug("Checkpoint for job %s kept; %r is not beyond the stored watermark", job_id, watermark)
        return applied

    def reset_checkpoint(self, job_id: int, watermark: Any = None) -> None:
        """Manual reset: clears the watermark, or forces it to `watermark` even if lower."""
        if watermark is None:
            self.store.delete_checkpoint(job_id)
            LOG.warning("Checkpoint for job %s cleared; next run is a full bootstrap", job_id)
            return
        text, type_ = encode_watermark(watermark)
        if self.store.compare_and_set_checkpoint(job_id, text, type_, lambda _current: True):
            LOG.warning("Checkpoint for job %s manually reset to %s", job_id, text)
