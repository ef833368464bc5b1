from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Tuple

from db_to_db_sync.errors import ConfigurationError

LOG = logging.getLogger(__name__)

# ============================== Parameter binding ===============================

_PARAMSTYLES = ("format", "qmark", "numeric")


class Binder:
    """
    Collects positional parameters while SQL text is being assembled and hands out the
    matching placeholder for the driver's paramstyle:
      - format  -> %s      (psycopg2, PyMySQL)
      - qmark   -> ?       (sqlite3, pyodbc)
      - numeric -> :1, :2  (oracledb)
    """

    def __init__(self, paramstyle: str = "format"):
        if paramstyle not in _PARAMSTYLES:
            raise ConfigurationError(f"Unsupported paramstyle: {paramstyle!r}")
        self.paramstyle = paramstyle
        self.params: List[Any] = []

    def bind(self, value: Any) -> str:
        self.params.append(value)
        return placeholder(self.paramstyle, len(self.params))


def placeholder(paramstyle: str, position: int) -> str:
    if paramstyle == "qmark":
        return "?"
    if paramstyle == "numeric":
        return f":{position}"
    return "%s"


def _csv(items: Iterable[str]) -> str:
    return ", ".join(items)


# ============================== Dialect (tagged variant) ===============================

@dataclass(frozen=True)
class Dialect:
    """
    One database family. Variants differ by data (quoting, paramstyle, product markers)
    and by the `upsert_style` / `paging_style` tags, not by subclassing.

    upsert_style: "on_duplicate_key" | "on_conflict" | "merge_dual" | "merge_values"
    paging_style: "limit" | "fetch"

    Every builder taking a `table` argument expects a ready-to-use table reference,
    usually the result of `qualify_table`.
    """

    name: str
    products: Tuple[str, ...]
    priority: int = 100
    quote_open: str = '"'
    quote_close: str = '"'
    paramstyle: str = "format"
    upsert_style: str = "on_conflict"
    paging_style: str = "limit"
    supports_truncate: bool = True
    truncate_template: str = "TRUNCATE TABLE {table}"
    add_column_template: str = "ALTER TABLE {table} ADD COLUMN {column} {type}"

    # ------------------------ Product matching ------------------------

    def matches(self, product_name: str | None) -> bool:
        p = (product_name or "").strip().lower()
        return bool(p) and any(marker in p for marker in self.products)

    # ------------------------ Identifiers ------------------------

    def quote_identifier(self, name: str) -> str:
        escaped = name.replace(self.quote_close, self.quote_close * 2)
        return f"{self.quote_open}{escaped}{self.quote_close}"

    def unquote_identifier(self, quoted: str) -> str:
        o, c = self.quote_open, self.quote_close
        if len(quoted) >= len(o) + len(c) and quoted.startswith(o) and quoted.endswith(c):
            return quoted[len(o):len(quoted) - len(c)].replace(c * 2, c)
        return quoted

    def qualify_table(self, schema: str | None, table: str) -> str:
        if schema:
            return f"{self.quote_identifier(schema)}.{self.quote_identifier(table)}"
        return self.quote_identifier(table)

    def binder(self) -> Binder:
        return Binder(self.paramstyle)

    def placeholders(self, count: int, start: int = 1) -> str:
        return _csv(placeholder(self.paramstyle, start + i) for i in range(count))

    # ------------------------ DDL-ish ------------------------

    def build_delete_all_sql(self, table: str) -> str:
        return f"DELETE FROM {table}"

    def build_truncate_sql(self, table: str) -> str:
        if not self.supports_truncate:
            raise ConfigurationError(f"{self.name} has no TRUNCATE; use build_delete_all_sql")
        return self.truncate_template.format(table=table)

    def build_add_column_sql(self, table: str, column: str, type_: str) -> str:
        return self.add_column_template.format(
            table=table, column=self.quote_identifier(column), type=type_
        )

    # ------------------------ Writes ------------------------

    def build_insert_sql(self, table: str, columns: Sequence[str]) -> str:
        if not columns:
            raise ConfigurationError("INSERT needs at least one column")
        col_list = _csv(self.quote_identifier(c) for c in columns)
        sql = f"INSERT INTO {table} ({col_list}) VALUES ({self.placeholders(len(columns))})"
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("[%s] Generated INSERT SQL: %s", self.name, sql)
        return sql

    def build_upsert_sql(self, table: str, columns: Sequence[str], key_columns: Sequence[str]) -> str:
        """
        INSERT-or-update keyed by `key_columns`: every non-key column is set to the incoming
        value, key columns are never part of the update list.
        """
        if not columns:
            raise ConfigurationError("UPSERT needs at least one column")
        if not key_columns:
            raise ConfigurationError(f"UPSERT into {table} needs at least one key column")
        lowered = {c.lower() for c in columns}
        missing = [k for k in key_columns if k.lower() not in lowered]
        if missing:
            raise ConfigurationError(f"Key column(s) {missing} not among written columns for {table}")

        keys = {k.lower() for k in key_columns}
        non_key = [c for c in columns if c.lower() not in keys]
        builder = _UPSERT_BUILDERS.get(self.upsert_style)
        if builder is None:
            raise ConfigurationError(f"{self.name}: unknown upsert style {self.upsert_style!r}")
        sql = builder(self, table, list(columns), list(key_columns), non_key)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("[%s] Generated UPSERT SQL: %s", self.name, sql)
        return sql

    # ------------------------ Reads ------------------------

    def build_select_sql(self, table: str, columns: Sequence[str], where: str | None = None,
                         order_by: Sequence[str] = ()) -> str:
        sql = f"SELECT {_csv(self.quote_identifier(c) for c in columns)} FROM {table}"
        if where:
            sql += f" WHERE {where}"
        if order_by:
            sql += f" ORDER BY {_csv(self.quote_identifier(c) for c in order_by)}"
        return sql

    def build_select_page_sql(self, table: str, columns: Sequence[str], where: str | None,
                              order_by: Sequence[str], limit: int, offset: int = 0) -> str:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        sql = self.build_select_sql(table, columns, where, order_by)
        if self.paging_style == "fetch":
            sql += f" OFFSET {int(offset)} ROWS FETCH NEXT {int(limit)} ROWS ONLY"
        else:
            sql += f" LIMIT {int(limit)}"
            if offset:
                sql += f" OFFSET {int(offset)}"
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("[%s] Generated page SQL: %s", self.name, sql)
        return sql

    def build_select_by_primary_key_in_sql(self, table: str, columns: Sequence[str],
                                           key_column: str, count: int) -> str:
        if count < 1:
            raise ValueError("count must be >= 1")
        return (
            f"SELECT {_csv(self.quote_identifier(c) for c in columns)} FROM {table} "
            f"WHERE {self.quote_identifier(key_column)} IN ({self.placeholders(count)})"
        )

    def build_min_max_sql(self, table: str, key_column: str, where: str | None = None) -> str:
        k = self.quote_identifier(key_column)
        sql = f"SELECT MIN({k}), MAX({k}), COUNT(*) FROM {table}"
        if where:
            sql += f" WHERE {where}"
        return sql

    def build_range_condition(self, key_column: str, lower: Any, upper: Any, binder: Binder) -> str | None:
        """Half-open `[lower, upper)`; a None bound is open-ended."""
        k = self.quote_identifier(key_column)
        parts = []
        if lower is not None:
            parts.append(f"{k} >= {binder.bind(lower)}")
        if upper is not None:
            parts.append(f"{k} < {binder.bind(upper)}")
        return " AND ".join(parts) or None

    def build_select_range_sql(self, table: str, columns: Sequence[str], key_column: str,
                               lower: Any, upper: Any, binder: Binder,
                               where: str | None = None) -> str:
        conditions = [f"({where})"] if where else []
        rng = self.build_range_condition(key_column, lower, upper, binder)
        if rng:
            conditions.append(rng)
        return self.build_select_sql(table, columns, " AND ".join(conditions) or None, [key_column])

    def build_keyset_condition(self, columns: Sequence[str], values: Sequence[Any], binder: Binder) -> str:
        """
        Rows strictly after `values` in `ORDER BY columns` order, spelled out without row-value
        comparison: (a > ?) OR (a = ? AND b > ?) OR ...
        """
        if len(columns) != len(values) or not columns:
            raise ValueError("keyset columns and values must be non-empty and aligned")
        branches = []
        for i, col in enumerate(columns):
            terms = [f"{self.quote_identifier(columns[j])} = {binder.bind(values[j])}" for j in range(i)]
            terms.append(f"{self.quote_identifier(col)} > {binder.bind(values[i])}")
            branches.append("(" + " AND ".join(terms) + ")")
        return "(" + " OR ".join(branches) + ")"


# ============================== Upsert strategies ===============================

def _upsert_on_duplicate_key(d: Dialect, table: str, columns: List[str], keys: List[str], non_key: List[str]) -> str:
    q = d.quote_identifier
    if non_key:
        updates = _csv(f"{q(c)} = VALUES({q(c)})" for c in non_key)
    else:
        updates = f"{q(keys[0])} = {q(keys[0])}"
    return f"{d.build_insert_sql(table, columns)} ON DUPLICATE KEY UPDATE {updates}"


def _upsert_on_conflict(d: Dialect, table: str, columns: List[str], keys: List[str], non_key: List[str]) -> str:
    q = d.quote_identifier
    conflict = _csv(q(k) for k in keys)
    if non_key:
        action = "DO UPDATE SET " + _csv(f"{q(c)} = EXCLUDED.{q(c)}" for c in non_key)
    else:
        action = "DO NOTHING"
    return f"{d.build_insert_sql(table, columns)} ON CONFLICT ({conflict}) {action}"


def _merge_tail(d: Dialect, columns: List[str], keys: List[str], non_key: List[str]) -> str:
    q = d.quote_identifier
    on = " AND ".join(f"target.{q(k)} = source.{q(k)}" for k in keys)
    sql = f" ON ({on})"
    if non_key:
        sql += " WHEN MATCHED THEN UPDATE SET " + _csv(f"target.{q(c)} = source.{q(c)}" for c in non_key)
    sql += (
        f" WHEN NOT MATCHED THEN INSERT ({_csv(q(c) for c in columns)})"
        f" VALUES ({_csv(f'source.{q(c)}' for c in columns)})"
    )
    return sql


def _upsert_merge_dual(d: Dialect, table: str, columns: List[str], keys: List[str], non_key: List[str]) -> str:
    q = d.quote_identifier
    projection = _csv(f"{placeholder(d.paramstyle, i + 1)} AS {q(c)}" for i, c in enumerate(columns))
    return f"MERGE INTO {table} target USING (SELECT {projection} FROM dual) source" + _merge_tail(d, columns, keys, non_key)


def _upsert_merge_values(d: Dialect, table: str, columns: List[str], keys: List[str], non_key: List[str]) -> str:
    q = d.quote_identifier
    src_cols = _csv(q(c) for c in columns)
    return (
        f"MERGE INTO {table} AS target USING (VALUES ({d.placeholders(len(columns))})) AS source ({src_cols})"
        + _merge_tail(d, columns, keys, non_key) + ";"
    )


_UPSERT_BUILDERS = {
    "on_duplicate_key": _upsert_on_duplicate_key,
    "on_conflict": _upsert_on_conflict,
    "merge_dual": _upsert_merge_dual,
    "merge_values": _upsert_merge_values,
}

# ============================== Built-in dialects ===============================

SQLITE = Dialect(
    name="sqlite",
    products=("sqlite",),
    priority=10,
    paramstyle="qmark",
    supports_truncate=False,
)

MYSQL = Dialect(
    name="mysql",
    products=("mysql", "mariadb", "tidb", "polardb", "oceanbase", "starrocks"),
    priority=20,
    quote_open="`",
    quote_close="`",
    upsert_style="on_duplicate_key",
)

POSTGRESQL = Dialect(
    name="postgresql",
    products=("postgres", "opengauss", "kingbase", "gaussdb", "greenplum", "vastbase"),
    priority=20,
    truncate_template="TRUNCATE TABLE {table} RESTART IDENTITY",
)

ORACLE = Dialect(
    name="oracle",
    products=("oracle",),
    priority=30,
    paramstyle="numeric",
    upsert_style="merge_dual",
    paging_style="fetch",
    add_column_template="ALTER TABLE {table} ADD ({column} {type})",
)

SQLSERVER = Dialect(
    name="sqlserver",
    products=("sql server", "sqlserver"),
    priority=30,
    quote_open="[",
    quote_close="]",
    paramstyle="qmark",
    upsert_style="merge_values",
    paging_style="fetch",
    add_column_template="ALTER TABLE {table} ADD {column} {type}",
)

BUILTIN_DIALECTS = (SQLITE, MYSQL, POSTGRESQL, ORACLE, SQLSERVER)


# ============================== Registry ===============================

class DialectRegistry:
    """Priority-ordered dialect lookup; the lowest priority number that matches wins."""

    def __init__(self, dialects: Iterable[Dialect] = ()):
        self._dialects: List[Dialect] = []
        for d in dialects:
            self.register(d)

    def register(self, dialect: Dialect) -> None:
        self._dialects = [d for d in self._dialects if d.name != dialect.name]
        self._dialects.append(dialect)
        self._dialects.sort(key=lambda d: (d.priority, d.name))
        LOG.debug("Registered dialect %s (priority=%d)", dialect.name, dialect.priority)

    def __iter__(self) -> Iterator[Dialect]:
        return iter(self._dialects)

    def get(self, name: str) -> Optional[Dialect]:
        return next((d for d in self._dialects if d.name == name), None)

    def resolve(self, product_name: str | None) -> Dialect:
        for d in self._dialects:
            if d.matches(product_name):
                LOG.info("Dialect for product %r -> %s", product_name, d.name)
                return d
        raise ConfigurationError(f"No SQL dialect registered for database product {product_name!r}")


def default_dialect_registry() -> DialectRegistry:
    return DialectRegistry(BUILTIN_DIALECTS)
