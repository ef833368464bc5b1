from __future__ import annotations

import hashlib
from datetime import date, datetime, time as dtime, timezone
from decimal import Decimal
from typing import Any, Sequence

_MOD = 1 << 128
_SEP = "\x1f"


def canonical_text(value: Any) -> str:
    """Driver-independent text of a value so both sides hash identical data identically."""
    if value is None:
        return "\\N"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return str(int(value))
        return format(value.normalize(), "f")
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.isoformat(sep=" ")
    if isinstance(value, (date, dtime)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return str(value)


def row_hash(values: Sequence[Any]) -> int:
    text = _SEP.join(canonical_text(v) for v in values)
    return int(hashlib.md5(text.encode("utf-8")).hexdigest(), 16)


def hash_bucket(key: Any, bucket_count: int) -> int:
    return row_hash((key,)) % bucket_count


class ChecksumAccumulator:
    """Row count plus an order-independent sum of row hashes."""

    __slots__ = ("count", "total")

    def __init__(self):
        self.count = 0
        self.total = 0

    def add(self, h: int) -> None:
        self.count += 1
        self.total = (self.total + h) % _MOD

    @property
    def checksum(self) -> str:
        return f"{self.total:032x}"

    def __eq__(self, other) -> bool:
        if not isinstance(other, ChecksumAccumulator):
            return NotImplemented
        return (self.count, self.total) == (other.count, other.total)


def checksum_of(rows: Sequence[Sequence[Any]]) -> ChecksumAccumulator:
    acc = ChecksumAccumulator()
    for values in rows:
        acc.add(row_hash(values))
    return acc
