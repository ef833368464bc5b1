import sqlite3
from contextlib import closing

import pytest

from db_to_db_sync.BucketComparator import BucketComparator
from db_to_db_sync.config import Settings
from db_to_db_sync.context import build_context
from db_to_db_sync.datasources import StaticDatasourceRegistry
from db_to_db_sync.registry import JobRegistry


def run_sql(path, *statements):
    with closing(sqlite3.connect(path)) as conn:
        for stmt in statements:
            conn.execute(stmt)
        conn.commit()


def fetch(path, query, params=()):
    with closing(sqlite3.connect(path)) as conn:
        return conn.execute(query, params).fetchall()


@pytest.fixture
def source_db(tmp_path):
    return tmp_path / "source.db"


@pytest.fixture
def target_db(tmp_path):
    return tmp_path / "target.db"


@pytest.fixture
def settings(tmp_path):
    return Settings(state_db=str(tmp_path / "state.db"), retry_count=1, retry_interval=0.0,
                    validation_failure_threshold=2)


@pytest.fixture
def datasources(source_db, target_db):
    return StaticDatasourceRegistry.from_uris({
        "src": f"sqlite:///{source_db}",
        "dst": f"sqlite:///{target_db}",
    })


@pytest.fixture
def context(settings, datasources):
    return build_context(settings, datasources)


@pytest.fixture
def alerts():
    return []


@pytest.fixture
def comparator(context, alerts):
    return BucketComparator(context, alert=lambda message, webhook: alerts.append((message, webhook)))


@pytest.fixture
def registry(context, comparator):
    return JobRegistry(context, comparator=comparator)
