import dataclasses

import pytest

from conftest import run_sql
from db_to_db_sync.dialects import DialectRegistry
from db_to_db_sync.metadata import ColumnInfo
from db_to_db_sync.wizard import score_incremental_column, suggest_incremental_columns, validate


@pytest.fixture
def tables(source_db, target_db):
    run_sql(source_db, "CREATE TABLE orders (id INTEGER PRIMARY KEY, status TEXT, created_at TEXT, "
                       "updated_at TEXT, sync_ts INTEGER, last_modified TEXT)")
    run_sql(target_db, "CREATE TABLE orders (id INTEGER PRIMARY KEY, status TEXT)",
            "CREATE TABLE archive (ref TEXT, payload TEXT)")


@pytest.mark.parametrize("name, score", [
    ("updated_at", 9), ("last_modified", 5), ("update_time", 9), ("sync_ts", 4),
    ("created_at", 2), ("ctime", 6), ("ID", 1), ("status", 0),
])
def test_scores(name, score):
    assert score_incremental_column(name) == score


def test_suggestions_are_ranked_and_capped():
    cols = [ColumnInfo(n, "TEXT", "VARCHAR", ordinal=i) for i, n in enumerate(
        ["id", "create_date", "updated_at", "mtime", "etl_ts", "modified_on", "update_time", "name"]
    )]
    assert suggest_incremental_columns(cols) == ["updated_at", "update_time", "create_date", "modified_on", "mtime"]


def test_valid_incremental_definition(context, tables):
    result = validate(context, "src", None, "orders", "dst", None, "orders", "INCREMENTAL", "updated_at")
    assert result.valid
    assert result.source_table_exists and result.target_table_exists
    assert [c["name"] for c in result.target_columns] == ["id", "status"]
    assert result.suggested_incremental_columns[:2] == ["updated_at", "last_modified"]
    assert result.warnings == []


def test_missing_table_and_incremental_column(context, tables):
    result = validate(context, "src", None, "orders", "dst", None, "nope", "INCREMENTAL", "changed")
    assert not result.valid
    assert not result.target_table_exists
    assert any("'nope' not found" in e for e in result.errors)
    assert any("'changed' not found" in e for e in result.errors)


def test_no_shared_columns_warns(context, tables):
    result = validate(context, "src", None, "orders", "dst", None, "archive", "FULL")
    assert result.valid
    assert any("share no column names" in w for w in result.warnings)


def test_unknown_datasource_is_an_error(context, tables):
    result = validate(context, "ghost", None, "orders", "dst", None, "orders", "FULL")
    assert not result.valid and not result.source_table_exists
    assert result.as_dict()["errors"]


def test_datasource_without_dialect_is_an_error(context, tables):
    bare = dataclasses.replace(context, dialects=DialectRegistry())
    result = validate(bare, "src", None, "orders", "dst", None, "orders", "FULL")
    assert not result.valid
    assert any(e.startswith("Source datasource 'src'") and "No SQL dialect" in e for e in result.errors)
    assert any(e.startswith("Target datasource 'dst'") for e in result.errors)
