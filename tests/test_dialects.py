import re

import pytest

from db_to_db_sync.dialects import (
    BUILTIN_DIALECTS,
    MYSQL,
    ORACLE,
    POSTGRESQL,
    SQLITE,
    SQLSERVER,
    Binder,
    Dialect,
    DialectRegistry,
    default_dialect_registry,
)
from db_to_db_sync.errors import ConfigurationError


def test_mysql_upsert_text():
    sql = MYSQL.build_upsert_sql("t", ["id", "name", "age"], ["id"])
    assert sql == (
        "INSERT INTO t (`id`, `name`, `age`) VALUES (%s, %s, %s) "
        "ON DUPLICATE KEY UPDATE `name` = VALUES(`name`), `age` = VALUES(`age`)"
    )


def test_postgres_upsert_uses_excluded():
    sql = POSTGRESQL.build_upsert_sql('"public"."t"', ["id", "name"], ["id"])
    assert sql == (
        'INSERT INTO "public"."t" ("id", "name") VALUES (%s, %s) '
        'ON CONFLICT ("id") DO UPDATE SET "name" = EXCLUDED."name"'
    )


def test_oracle_merge_uses_numeric_binds_from_dual():
    sql = ORACLE.build_upsert_sql('"T"', ["id", "v"], ["id"])
    assert sql.startswith('MERGE INTO "T" target USING (SELECT :1 AS "id", :2 AS "v" FROM dual) source')
    assert 'ON (target."id" = source."id")' in sql
    assert 'WHEN MATCHED THEN UPDATE SET target."v" = source."v"' in sql


def test_sqlserver_merge_values_is_terminated():
    sql = SQLSERVER.build_upsert_sql("[dbo].[t]", ["id", "v"], ["id"])
    assert "USING (VALUES (?, ?)) AS source ([id], [v])" in sql
    assert sql.endswith(";")


@pytest.mark.parametrize("dialect", BUILTIN_DIALECTS, ids=lambda d: d.name)
def test_upsert_updates_each_non_key_column_once(dialect):
    columns, keys = ["id", "tenant", "name", "age"], ["id", "tenant"]
    sql = dialect.build_upsert_sql("t", columns, keys)
    update_part = re.split(r"UPDATE SET|UPDATE ", sql, maxsplit=1)[1].split("WHEN NOT MATCHED")[0]
    for col in ("name", "age"):
        assert update_part.count(dialect.quote_identifier(col) + " =") == 1
    for key in keys:
        assert dialect.quote_identifier(key) + " =" not in update_part


@pytest.mark.parametrize("dialect", BUILTIN_DIALECTS, ids=lambda d: d.name)
def test_upsert_with_only_key_columns(dialect):
    sql = dialect.build_upsert_sql("t", ["id"], ["id"])
    assert "WHEN MATCHED" not in sql
    if dialect.upsert_style == "on_conflict":
        assert sql.endswith("DO NOTHING")


def test_upsert_rejects_missing_keys():
    with pytest.raises(ConfigurationError):
        MYSQL.build_upsert_sql("t", ["id", "name"], [])
    with pytest.raises(ConfigurationError):
        MYSQL.build_upsert_sql("t", ["id", "name"], ["other"])


def test_upsert_key_match_is_case_insensitive():
    sql = POSTGRESQL.build_upsert_sql("t", ["ID", "name"], ["id"])
    assert 'ON CONFLICT ("id")' in sql
    assert '"ID" = EXCLUDED' not in sql


@pytest.mark.parametrize("dialect", BUILTIN_DIALECTS, ids=lambda d: d.name)
@pytest.mark.parametrize("name", ["plain", 'we"ird', "back`tick", "br]acket", "sp ace"])
def test_quote_round_trip(dialect, name):
    assert dialect.unquote_identifier(dialect.quote_identifier(name)) == name


def test_quote_doubles_embedded_quote():
    assert POSTGRESQL.quote_identifier('a"b') == '"a""b"'
    assert MYSQL.quote_identifier("a`b") == "`a``b`"
    assert SQLSERVER.quote_identifier("a]b") == "[a]]b]"


def test_truncate_support():
    assert POSTGRESQL.build_truncate_sql('"t"') == 'TRUNCATE TABLE "t" RESTART IDENTITY'
    assert MYSQL.build_truncate_sql("`t`") == "TRUNCATE TABLE `t`"
    with pytest.raises(ConfigurationError):
        SQLITE.build_truncate_sql('"t"')
    assert SQLITE.build_delete_all_sql('"t"') == 'DELETE FROM "t"'


def test_paging_styles():
    assert MYSQL.build_select_page_sql("t", ["id"], None, ["id"], limit=10, offset=20) == (
        "SELECT `id` FROM t ORDER BY `id` LIMIT 10 OFFSET 20"
    )
    assert ORACLE.build_select_page_sql("t", ["id"], "x = 1", ["id"], limit=10) == (
        'SELECT "id" FROM t WHERE x = 1 ORDER BY "id" OFFSET 0 ROWS FETCH NEXT 10 ROWS ONLY'
    )


def test_select_by_primary_key_in():
    assert SQLITE.build_select_by_primary_key_in_sql("t", ["id", "v"], "id", 3) == (
        'SELECT "id", "v" FROM t WHERE "id" IN (?, ?, ?)'
    )
    assert ORACLE.build_select_by_primary_key_in_sql("t", ["id"], "id", 2).endswith("IN (:1, :2)")
    with pytest.raises(ValueError):
        SQLITE.build_select_by_primary_key_in_sql("t", ["id"], "id", 0)


def test_binder_positions_follow_paramstyle():
    b = Binder("numeric")
    assert [b.bind(1), b.bind(2)] == [":1", ":2"]
    assert b.params == [1, 2]
    assert Binder("qmark").bind("x") == "?"
    with pytest.raises(ConfigurationError):
        Binder("pyformat")


def test_range_condition_is_half_open():
    b = MYSQL.binder()
    assert MYSQL.build_range_condition("id", 10, 20, b) == "`id` >= %s AND `id` < %s"
    assert b.params == [10, 20]
    assert MYSQL.build_range_condition("id", None, None, MYSQL.binder()) is None


def test_keyset_condition_expands_lexicographic_order():
    b = SQLITE.binder()
    cond = SQLITE.build_keyset_condition(["ts", "id"], [5, 7], b)
    assert cond == '(("ts" > ?) OR ("ts" = ? AND "id" > ?))'
    assert b.params == [5, 5, 7]


def test_registry_lowest_priority_wins():
    registry = default_dialect_registry()
    assert registry.resolve("PostgreSQL 16.2 on x86_64").name == "postgresql"
    assert registry.resolve("MariaDB 10.11").name == "mysql"
    assert registry.resolve("Microsoft SQL Server").name == "sqlserver"

    registry.register(Dialect(name="mariadb", products=("mariadb",), priority=5, quote_open="`", quote_close="`"))
    assert registry.resolve("MariaDB 10.11").name == "mariadb"
    assert registry.resolve("MySQL 8.0").name == "mysql"


def test_registry_unknown_product():
    with pytest.raises(ConfigurationError):
        DialectRegistry([SQLITE]).resolve("DB2")
    with pytest.raises(ConfigurationError):
        DialectRegistry([SQLITE]).resolve(None)
