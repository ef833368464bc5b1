import json

import pytest

from db_to_db_sync.SyncJob import SyncMode
from db_to_db_sync.catalog import _cfg_get, create_sync_job, iter_catalog_jobs, load_catalog
from db_to_db_sync.config import Settings
from db_to_db_sync.errors import ConfigurationError

CATALOG = {
    "target_datasource": "warehouse",
    "batch_size": 5000,
    "retry_count": 2,
    "sources": [
        {
            "datasource": "crm",
            "batch_size": 2000,
            "tables": [
                {
                    "source_schema": "public",
                    "source_table": "customers",
                    "sync_mode": "incremental",
                    "incremental_column": "updated_at",
                    "batch_size": 100,
                    "column_mappings": [
                        {"source": "id", "target": "customer_id"},
                        {"target": "full_name", "transform": {"op": "concat", "columns": ["first", "last"], "separator": " "}},
                    ],
                },
                {"source_table": "orders", "target_table": "crm_orders", "primary_key": " id , line ", "enabled": False},
            ],
        },
        {"datasource": "erp", "target_datasource": "lake", "tables": [{"source_query": "SELECT 1 AS x", "target_table": "erp_extract"}]},
    ],
}


def test_cfg_get_inherits_table_source_root():
    root, src, tbl = {"a": 1, "b": 1, "c": 1}, {"b": 2, "c": 2}, {"c": 3}
    assert [_cfg_get(root, src, tbl, k) for k in ("a", "b", "c", "d")] == [1, 2, 3, None]
    assert _cfg_get(root, src, tbl, "d", "x") == "x"


def test_create_sync_job_from_catalog():
    job, rules = create_sync_job(CATALOG, CATALOG["sources"][0], CATALOG["sources"][0]["tables"][0])
    assert job.sync_mode is SyncMode.INCREMENTAL
    assert (job.batch_size, job.retry_count, job.target_datasource) == (100, 2, "warehouse")
    assert (job.target_schema, job.target_table) == ("public", "customers")
    assert job.name == "crm.customers_to_warehouse.customers"
    assert [(r.source_column, r.target_column, r.ordinal) for r in rules] == [("id", "customer_id", 0), (None, "full_name", 1)]
    assert json.loads(rules[1].transform)["op"] == "concat"


def test_iter_catalog_jobs(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(CATALOG), encoding="utf-8")
    entries = iter_catalog_jobs(load_catalog(path))
    jobs = [job for job, _ in entries]
    assert [j.target_table for j in jobs] == ["customers", "crm_orders", "erp_extract"]
    assert jobs[1].batch_size == 2000 and jobs[1].key_columns == ["id", "line"] and not jobs[1].enabled
    assert jobs[2].target_datasource == "lake" and jobs[2].source_query


def test_bad_catalogs(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_catalog(tmp_path / "missing.json")
    empty = tmp_path / "empty.json"
    empty.write_text("  ", encoding="utf-8")
    with pytest.raises(ValueError):
        load_catalog(empty)
    no_sources = tmp_path / "nosources.json"
    no_sources.write_text("{}", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_catalog(no_sources)


def test_invalid_transform_fails_at_load():
    tbl = {"source_table": "t", "column_mappings": [{"source": "a", "target": "b", "transform": {"op": "explode"}}]}
    with pytest.raises(ConfigurationError):
        create_sync_job({"target_datasource": "w"}, {"datasource": "s"}, tbl)


def test_unset_tuning_falls_back_to_settings():
    defaults = Settings(batch_size=250, retry_count=7, retry_interval=5.0, bucket_count=16)
    job, _ = create_sync_job({"target_datasource": "w"}, {"datasource": "s"}, {"source_table": "t"}, defaults)
    assert (job.batch_size, job.retry_count, job.retry_interval, job.bucket_count) == (250, 7, 5.0, 16)

    [(crm_job, _), *_] = iter_catalog_jobs(CATALOG, defaults)
    assert (crm_job.batch_size, crm_job.retry_count, crm_job.bucket_count) == (100, 2, 16)

    job, _ = create_sync_job({"target_datasource": "w"}, {"datasource": "s"}, {"source_table": "t"})
    assert (job.batch_size, job.retry_count, job.bucket_count) == (1000, 3, 64)
