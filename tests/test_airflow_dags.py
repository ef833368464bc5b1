import importlib
import json
import sys

import pytest

pytest.importorskip("airflow")

from airflow.exceptions import AirflowNotFoundException  # noqa: E402
from airflow.hooks.base import BaseHook  # noqa: E402
from airflow.models import DAG, Variable  # noqa: E402

from db_to_db_sync.connections import AirflowDatasourceRegistry  # noqa: E402
from db_to_db_sync.errors import ConfigurationError  # noqa: E402

CATALOG = {
    "target_datasource": "warehouse",
    "sources": [
        {
            "datasource": "crm",
            "tables": [
                {"name": "customers", "source_table": "customers", "cron_schedule": "*/15 * * * *"},
                {"name": "orders", "source_table": "orders", "allow_concurrent": True},
            ],
        },
        {"datasource": "erp", "tables": [{"name": "stock", "source_table": "stock"}]},
    ],
}


class _Conn:
    conn_type = "sqlite"

    def __init__(self, uri):
        self.uri = uri

    def get_uri(self):
        return self.uri


def test_airflow_connection_registry(monkeypatch):
    def get_connection(code):
        if code == "missing":
            raise AirflowNotFoundException(code)
        return _Conn("sqlite:///:memory:")

    monkeypatch.setattr(BaseHook, "get_connection", staticmethod(get_connection))
    registry = AirflowDatasourceRegistry()
    assert registry.get("local").product == "SQLite"
    with pytest.raises(ConfigurationError):
        registry.get("missing")


@pytest.fixture
def catalog_variable(tmp_path, monkeypatch):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(CATALOG), encoding="utf-8")
    values = {"JSON_CONFIG_PATH": str(path), "DISCORD_WEBHOOK": ""}
    monkeypatch.setattr(Variable, "get", staticmethod(lambda key, default_var=None, **_kw: values.get(key, default_var)))
    monkeypatch.setenv("DB_SYNC_STATE_DB", str(tmp_path / "state.db"))
    for name in ("db_to_db_sync_factory", "check_bucket_consistency_dag"):
        monkeypatch.delitem(sys.modules, name, raising=False)


def _dags(module):
    return {obj.dag_id: obj for obj in vars(module).values() if isinstance(obj, DAG)}


def test_sync_factory_builds_one_dag_per_job(catalog_variable):
    dags = _dags(importlib.import_module("db_to_db_sync_factory"))

    assert set(dags) == {"db_to_db_sync_customers", "db_to_db_sync_orders", "db_to_db_sync_stock"}
    assert dags["db_to_db_sync_customers"].max_active_runs == 1
    assert dags["db_to_db_sync_orders"].max_active_runs > 1
    assert set(dags["db_to_db_sync_stock"].task_ids) == {"sync_data", "validate_sync", "alerting"}


def test_consistency_dag_per_datasource_pair(catalog_variable):
    dags = _dags(importlib.import_module("check_bucket_consistency_dag"))

    assert set(dags) == {
        "db_to_db_sync_compare__crm__warehouse",
        "db_to_db_sync_compare__erp__warehouse",
    }
    assert set(dags["db_to_db_sync_compare__crm__warehouse"].task_ids) == {
        "load_pair_jobs", "run_bucket_compare_for_pair", "summarize", "alert_if_needed",
    }


def test_factory_applies_environment_settings(catalog_variable, monkeypatch):
    import db_to_db_sync.config as config

    levels = []
    monkeypatch.setattr(config, "configure_logging", levels.append)
    monkeypatch.setenv("DB_SYNC_BATCH_SIZE", "250")
    monkeypatch.setenv("DB_SYNC_LOG_LEVEL", "debug")
    module = importlib.import_module("db_to_db_sync_factory")

    assert levels == ["DEBUG"]
    assert module._job.batch_size == 250
