import pendulum
import pytest

from conftest import run_sql
from db_to_db_sync.SyncJob import SyncJob, SyncMode
from db_to_db_sync.errors import ConfigurationError
from db_to_db_sync.records import (
    BucketChecksum,
    ColumnMappingRule,
    ExecutionStatus,
    ValidationLog,
    ValidationStatus,
    check_transition,
)
from db_to_db_sync.store import SyncStateStore


@pytest.fixture
def store(tmp_path):
    return SyncStateStore(tmp_path / "state" / "sync.db")


@pytest.fixture
def job(store):
    return store.insert_job(SyncJob(
        name="orders", source_datasource="src", source_table="orders", target_datasource="dst",
        target_table="orders", sync_mode=SyncMode.INCREMENTAL, incremental_column="updated_at",
    ))


def test_job_round_trip(store, job):
    loaded = store.get_job(job.id)
    assert loaded == job
    assert loaded.sync_mode is SyncMode.INCREMENTAL
    assert store.get_job_by_name("orders").id == job.id
    assert store.get_job(999) is None


def test_duplicate_job_name(store, job):
    with pytest.raises(ConfigurationError):
        store.insert_job(SyncJob(name="orders", source_datasource="a", source_table="t",
                                 target_datasource="b", target_table="t"))


def test_update_missing_job(store):
    with pytest.raises(ConfigurationError):
        store.update_job(SyncJob(name="x", source_datasource="a", source_table="t",
                                 target_datasource="b", target_table="t", id=42))


def test_mapping_rules_replace_and_order(store, job):
    store.replace_mapping_rules(job.id, [ColumnMappingRule("b", "B", None, 1), ColumnMappingRule("a", "A", {"op": "rename"}, 0)])
    store.replace_mapping_rules(job.id, [ColumnMappingRule("b", "B", None, 1), ColumnMappingRule("a", "A", {"op": "rename"}, 0)])
    rules = store.list_mapping_rules(job.id)
    assert [r.target_column for r in rules] == ["A", "B"]
    assert rules[0].transform == '{"op": "rename"}'


def test_single_running_execution(store, job):
    first = store.try_start_execution(job.id, allow_concurrent=False)
    assert first is not None
    assert store.try_start_execution(job.id, allow_concurrent=False) is None
    assert store.try_start_execution(job.id, allow_concurrent=True) is not None

    store.finish_execution(first, ExecutionStatus.SUCCESS, rows_read=3, rows_written=3, batches=1)
    log = store.get_execution(first)
    assert log.status is ExecutionStatus.SUCCESS and log.rows_written == 3 and log.ended_at is not None
    with pytest.raises(ValueError):
        store.finish_execution(first, ExecutionStatus.FAILED)


def test_stale_execution_is_closed(store, job):
    stale = store.try_start_execution(job.id, allow_concurrent=False)
    fresh = store.try_start_execution(job.id, allow_concurrent=False, stale_after_seconds=-1)
    assert fresh is not None
    assert store.get_execution(stale).status is ExecutionStatus.FAILED
    assert "abandoned" in store.get_execution(stale).error_message


def test_status_transitions():
    check_transition(ExecutionStatus.PENDING, ExecutionStatus.RUNNING)
    check_transition(ExecutionStatus.RUNNING, ExecutionStatus.PARTIAL_SUCCESS)
    for bad in [(ExecutionStatus.SUCCESS, ExecutionStatus.RUNNING), (ExecutionStatus.PENDING, ExecutionStatus.SUCCESS)]:
        with pytest.raises(ValueError):
            check_transition(*bad)


def test_validation_logs_newest_first(store, job):
    now = pendulum.now("UTC")
    for status in (ValidationStatus.ERROR, ValidationStatus.CONSISTENT):
        saved = store.save_validation_log(ValidationLog(job.id, "r", 2, 0, status, now))
        assert saved.id is not None
    logs = store.list_validation_logs(job.id)
    assert [entry.status for entry in logs] == [ValidationStatus.CONSISTENT, ValidationStatus.ERROR]
    assert len(store.list_validation_logs(job.id, limit=1)) == 1


def test_delete_job_cascades(store, job):
    now = pendulum.now("UTC")
    store.replace_mapping_rules(job.id, [ColumnMappingRule("a", "a")])
    store.try_start_execution(job.id, allow_concurrent=False)
    store.compare_and_set_checkpoint(job.id, "1", "int", lambda _c: True)
    store.save_snapshot(job.id, "source", "[]", "d")
    store.save_bucket_checksums([BucketChecksum(job.id, "r", "source", 0, None, None, "0" * 32, 0, now)])
    store.save_validation_log(ValidationLog(job.id, "r", 1, 0, ValidationStatus.CONSISTENT, now))
    assert all(n == 1 for n in store.counts_by_table(job.id).values())

    assert store.delete_job(job.id)
    assert store.get_job(job.id) is None
    assert all(n == 0 for n in store.counts_by_table(job.id).values())
    assert not store.delete_job(job.id)


def test_deleted_job_gets_no_checkpoint_or_result(store, job):
    execution = store.try_start_execution(job.id, allow_concurrent=False)
    assert store.has_running_execution(job.id)
    store.delete_job(job.id)

    assert not store.compare_and_set_checkpoint(job.id, "5", "int", lambda _c: True)
    assert store.get_checkpoint(job.id) is None
    assert not store.finish_execution(execution, ExecutionStatus.SUCCESS)
    assert not store.has_running_execution(job.id)


def test_bucket_counters_round_trip(store, job):
    execution = store.try_start_execution(job.id, allow_concurrent=False)
    store.finish_execution(execution, ExecutionStatus.SUCCESS, buckets_applied=4, buckets_skipped=3,
                           buckets_retried=2, buckets_recovered=1, buckets_mismatched=1)
    log = store.get_execution(execution)
    assert (log.buckets_applied, log.buckets_skipped, log.buckets_retried,
            log.buckets_recovered, log.buckets_mismatched) == (4, 3, 2, 1, 1)


def test_older_state_db_gains_bucket_columns(tmp_path):
    path = tmp_path / "old.db"
    run_sql(
        path,
        """
        CREATE TABLE execution_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT, job_id INTEGER NOT NULL, status TEXT NOT NULL,
            started_at TEXT NOT NULL, ended_at TEXT, rows_read INTEGER DEFAULT 0,
            rows_written INTEGER DEFAULT 0, rows_failed INTEGER DEFAULT 0, batches INTEGER DEFAULT 0,
            failed_batch_offset INTEGER, last_watermark TEXT, error_message TEXT
        )
        """,
        "INSERT INTO execution_logs (job_id, status, started_at, rows_read) VALUES (1, 'SUCCESS', '2024-01-01T00:00:00+00:00', 7)",
    )

    store = SyncStateStore(path)

    [old] = store.list_executions(1)
    assert old.rows_read == 7 and old.buckets_applied == 0 and old.buckets_mismatched == 0
    SyncStateStore(path)  # second open leaves the migrated table alone
