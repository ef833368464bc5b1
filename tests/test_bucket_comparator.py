from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from conftest import run_sql
from db_to_db_sync.BucketComparator import Bucket, integer_range_buckets, quantile_buckets
from db_to_db_sync.SyncJob import SyncJob
from db_to_db_sync.checksums import canonical_text, checksum_of, hash_bucket, row_hash
from db_to_db_sync.errors import ChecksumMismatch
from db_to_db_sync.records import ColumnMappingRule, ValidationStatus


def _assert_covers(buckets, keys):
    assert buckets[0].lower is None and buckets[-1].upper is None
    for left, right in zip(buckets, buckets[1:]):
        assert left.upper == right.lower
    for key in keys:
        assert sum(b.contains(key) for b in buckets) == 1


@pytest.mark.parametrize("lo, hi, n", [(1, 4, 2), (1, 1000, 64), (-50, 50, 7), (5, 5, 8), (1, 3, 10)])
def test_integer_buckets_cover_domain_once(lo, hi, n):
    buckets = integer_range_buckets(lo, hi, n)
    assert len(buckets) <= n
    _assert_covers(buckets, range(lo - 2, hi + 3))


def test_integer_buckets_scenario_boundary():
    assert integer_range_buckets(1, 4, 2) == [Bucket(0, None, 3), Bucket(1, 3, None)]
    assert integer_range_buckets(None, None, 4) == [Bucket(0)]


def test_quantile_buckets_collapse_duplicates():
    keys = sorted([Decimal("1.5")] * 10 + [Decimal("2.5"), Decimal("9")])
    buckets = quantile_buckets(keys, 6)
    _assert_covers(buckets, keys)
    assert [b.lower for b in buckets] == [None, Decimal("2.5")]


def test_quantile_buckets_on_timestamps():
    start = datetime(2024, 1, 1)
    keys = [start + timedelta(hours=i) for i in range(100)]
    buckets = quantile_buckets(keys, 8)
    assert len(buckets) == 8
    _assert_covers(buckets, keys)


def test_canonical_text_is_driver_independent():
    assert canonical_text(None) == "\\N"
    assert canonical_text(True) == "1"
    assert canonical_text(5) == canonical_text(5.0) == canonical_text(Decimal("5.00"))
    assert canonical_text(Decimal("1.50")) == "1.5"
    aware = datetime(2024, 1, 1, 12, tzinfo=timezone(timedelta(hours=2)))
    assert canonical_text(aware) == canonical_text(datetime(2024, 1, 1, 10)) == "2024-01-01 10:00:00"
    assert canonical_text(b"\x01\xff") == "01ff"


def test_row_hash_separates_fields():
    assert row_hash(("ab", "c")) != row_hash(("a", "bc"))
    assert row_hash((None,)) != row_hash(("",))
    assert 0 <= hash_bucket("key", 16) < 16


def test_checksum_ignores_row_order_but_not_content():
    rows = [(1, "a"), (2, Decimal("2.50"))]
    assert checksum_of(rows) == checksum_of([(2, 2.5), (1, "a")])
    assert checksum_of(rows).checksum == checksum_of(list(reversed(rows))).checksum
    assert checksum_of(rows) != checksum_of(rows[:1])
    assert checksum_of(rows) != checksum_of([(1, "a"), (2, "2.6")])
    assert len(checksum_of([]).checksum) == 32


@pytest.fixture
def items(source_db, target_db):
    ddl = "CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT)"
    rows = [f"INSERT INTO items VALUES ({i}, 'n{i}')" for i in range(1, 5)]
    run_sql(source_db, ddl, *rows)
    run_sql(target_db, ddl, *rows)


def _job(**overrides):
    base = dict(name="items", source_datasource="src", source_table="items", target_datasource="dst",
                target_table="items", bucket_count=2)
    base.update(overrides)
    return SyncJob(**base)


def test_consistent_tables(context, comparator, items):
    job = context.store.insert_job(_job())
    entry = comparator.validate(job, run_id="r1")

    assert entry.status is ValidationStatus.CONSISTENT
    assert (entry.bucket_count, entry.mismatched_bucket_count) == (2, 0)
    checksums = context.store.list_bucket_checksums(job.id, "r1")
    assert len(checksums) == 4
    source = [c for c in checksums if c.side == "source"]
    assert [(c.lower_bound, c.upper_bound, c.row_count) for c in source] == [(None, "3", 2), ("3", None, 2)]


def test_missing_target_row_mismatches_one_bucket(context, comparator, target_db, items):
    run_sql(target_db, "DELETE FROM items WHERE id = 4")
    job = context.store.insert_job(_job())

    entry = comparator.validate(job)

    assert entry.status is ValidationStatus.MISMATCH
    assert entry.mismatched_bucket_count == 1
    assert "missing:4" in entry.message
    assert context.store.list_validation_logs(job.id)[0].id == entry.id


def test_changed_value_is_reported(context, comparator, target_db, items):
    run_sql(target_db, "UPDATE items SET name = 'changed' WHERE id = 1")
    job = context.store.insert_job(_job())
    entry = comparator.validate(job)
    assert entry.mismatched_bucket_count == 1
    assert "differs:1" in entry.message


def test_raise_on_mismatch(context, comparator, target_db, items):
    run_sql(target_db, "DELETE FROM items WHERE id = 1")
    job = context.store.insert_job(_job())
    with pytest.raises(ChecksumMismatch) as exc:
        comparator.validate(job, raise_on_mismatch=True)
    assert exc.value.mismatched == 1
    assert context.store.list_validation_logs(job.id)[0].status is ValidationStatus.MISMATCH


def test_hash_strategy_on_text_keys(context, comparator, source_db, target_db):
    ddl = "CREATE TABLE tags (code TEXT PRIMARY KEY, label TEXT)"
    rows = [f"INSERT INTO tags VALUES ('k{i}', 'v{i}')" for i in range(20)]
    run_sql(source_db, ddl, *rows)
    run_sql(target_db, ddl, *rows[:-1])
    job = context.store.insert_job(_job(name="tags", source_table="tags", target_table="tags", bucket_count=4))

    entry = comparator.validate(job, run_id="h")

    assert entry.status is ValidationStatus.MISMATCH
    assert entry.mismatched_bucket_count == 1
    bounds = [c.lower_bound for c in context.store.list_bucket_checksums(job.id, "h", "source")]
    assert bounds == [f"hash:{i}/4" for i in range(4)]


def test_mapped_columns_are_compared_after_transform(context, comparator, source_db, target_db):
    run_sql(source_db, "CREATE TABLE people (id INTEGER PRIMARY KEY, first TEXT, last TEXT)",
            "INSERT INTO people VALUES (1, 'Ada', 'Lovelace')")
    run_sql(target_db, "CREATE TABLE customers (cid INTEGER PRIMARY KEY, full_name TEXT)",
            "INSERT INTO customers VALUES (1, 'Ada Lovelace')")
    rules = [
        ColumnMappingRule("id", "cid", None, 0),
        ColumnMappingRule(None, "full_name", {"op": "concat", "columns": ["first", "last"], "separator": " "}, 1),
    ]
    job = context.store.insert_job(_job(name="people", source_table="people", target_table="customers"))
    assert comparator.validate(job, rules).status is ValidationStatus.CONSISTENT


def test_errors_are_logged_and_alert_once_at_threshold(context, comparator, alerts, items):
    job = context.store.insert_job(_job(target_table="missing"))

    first = comparator.validate(job)
    assert first.status is ValidationStatus.ERROR
    assert "ConfigurationError" in first.message
    assert comparator.job_health(job.id) == "healthy"
    assert alerts == []

    comparator.validate(job)
    comparator.validate(job)
    assert comparator.job_health(job.id) == "degraded"
    assert len(alerts) == 1
    assert "2 consecutive validation failures" in alerts[0][0]
