from __future__ import annotations

import hashlib
import json
import logging
import re
import time
from contextlib import closing
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from db_to_db_sync.errors import ConfigurationError

LOG = logging.getLogger(__name__)

# ============================== Models ===============================


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    data_type: str                      # native type name as reported by the database
    jdbc_type: str                      # normalized family, see jdbc_type()
    nullable: bool = True
    primary_key: bool = False
    ordinal: int = 0
    default: str | None = None
    size: int | None = None
    scale: int | None = None
    auto_increment: bool = False

    @property
    def has_default(self) -> bool:
        return self.default is not None or self.auto_increment

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TableInfo:
    schema: str | None
    name: str
    table_type: str = "TABLE"


@dataclass(frozen=True)
class TableSchema:
    schema: str | None
    table: str
    columns: List[ColumnInfo] = field(default_factory=list)
    digest: str = ""

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    @property
    def primary_keys(self) -> List[str]:
        return [c.name for c in self.columns if c.primary_key]

    def column(self, name: str) -> Optional[ColumnInfo]:
        lowered = name.lower()
        return next((c for c in self.columns if c.name.lower() == lowered), None)


@dataclass(frozen=True)
class StructureDrift:
    side: str
    previous_digest: str
    current_digest: str
    added: List[str]
    removed: List[str]

    def describe(self) -> str:
        return (
            f"{self.side} structure changed ({self.previous_digest[:12]} -> {self.current_digest[:12]}); "
            f"added={self.added or '-'} removed={self.removed or '-'}"
        )


# ============================== Helpers ===============================

_JDBC_TYPES = [
    (("bigint", "int8", "bigserial", "serial8"), "BIGINT"),
    (("smallint", "int2", "smallserial"), "SMALLINT"),
    (("tinyint",), "TINYINT"),
    (("mediumint", "integer", "int", "int4", "serial", "serial4"), "INTEGER"),
    (("numeric", "decimal", "number", "money"), "DECIMAL"),
    (("double", "double precision", "float8", "binary_double"), "DOUBLE"),
    (("real", "float4", "binary_float"), "REAL"),
    (("float",), "FLOAT"),
    (("bool", "boolean", "bit"), "BOOLEAN"),
    (("timestamptz", "timestamp with time zone", "datetimeoffset"), "TIMESTAMP_WITH_TIMEZONE"),
    (("timestamp", "timestamp without time zone", "datetime", "datetime2", "smalldatetime"), "TIMESTAMP"),
    (("date",), "DATE"),
    (("time", "time without time zone", "timetz", "time with time zone"), "TIME"),
    (("char", "character", "nchar", "bpchar"), "CHAR"),
    (("varchar", "character varying", "nvarchar", "varchar2", "nvarchar2", "string"), "VARCHAR"),
    (("text", "tinytext", "mediumtext", "longtext", "clob", "nclob", "ntext"), "LONGVARCHAR"),
    (("bytea", "binary", "varbinary", "blob", "tinyblob", "mediumblob", "longblob", "raw", "image"), "BINARY"),
]

INTEGER_TYPES = frozenset({"BIGINT", "INTEGER", "SMALLINT", "TINYINT"})
ORDERABLE_TYPES = INTEGER_TYPES | {"DECIMAL", "DOUBLE", "REAL", "FLOAT", "DATE", "TIMESTAMP", "TIMESTAMP_WITH_TIMEZONE"}


def jdbc_type(native: str | None) -> str:
    """Map a native type name (with or without size/modifiers) to a JDBC-style family."""
    t = re.sub(r"\(.*?\)", "", (native or "").strip().lower())
    t = re.sub(r"\s+(unsigned|zerofill|signed)\b", "", t).strip()
    if not t:
        return "OTHER"
    for names, family in _JDBC_TYPES:
        if t in names:
            return family
    # SQLite affinity rules for declared types we have not seen verbatim
    if "int" in t:
        return "INTEGER"
    if any(s in t for s in ("char", "clob", "text")):
        return "VARCHAR"
    if any(s in t for s in ("real", "floa", "doub")):
        return "DOUBLE"
    return "OTHER"


def _type_params(native: str | None) -> tuple[int | None, int | None]:
    m = re.search(r"\((\d+)(?:\s*,\s*(\d+))?\)", native or "")
    if not m:
        return None, None
    return int(m.group(1)), (int(m.group(2)) if m.group(2) else None)


def structure_digest(columns: Sequence[ColumnInfo]) -> str:
    """SHA-256 over the ordered column definitions plus the primary-key list."""
    parts = [
        f"{c.name}|{c.jdbc_type}|{'' if c.size is None else c.size}|"
        f"{'' if c.scale is None else c.scale}|{1 if c.nullable else 0}"
        for c in columns
    ]
    pk = ",".join(c.name for c in columns if c.primary_key)
    payload = "||".join(parts) + "##" + pk
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _fetch(conn, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
    with closing(conn.cursor()) as c:
        if params:
            c.execute(sql, tuple(params))
        else:
            c.execute(sql)
        return [tuple(r) for r in c.fetchall()]


def database_product_name(conn) -> str:
    """
    Product name of a live DB-API connection, derived from the driver module.
    MySQL-protocol connections are refined with SELECT VERSION() so MariaDB/TiDB are told apart.
    """
    module = type(conn).__module__.split(".")[0].lower()
    if module == "sqlite3":
        return "SQLite"
    if module in ("psycopg2", "psycopg"):
        try:
            version = _fetch(conn, "SELECT version()")[0][0]
            conn.rollback()
            return str(version)
        except Exception:
            LOG.debug("version() lookup failed; assuming PostgreSQL", exc_info=True)
            return "PostgreSQL"
    if module in ("pymysql", "mysql", "mysqldb"):
        try:
            version = str(_fetch(conn, "SELECT VERSION()")[0][0])
        except Exception:
            LOG.debug("VERSION() lookup failed; assuming MySQL", exc_info=True)
            return "MySQL"
        lowered = version.lower()
        if "mariadb" in lowered:
            return f"MariaDB {version}"
        if "tidb" in lowered:
            return f"TiDB {version}"
        return f"MySQL {version}"
    if module in ("oracledb", "cx_oracle"):
        return "Oracle"
    if module == "pyodbc":
        return str(conn.getinfo(17))  # SQL_DBMS_NAME
    return module


# ============================== Extractors ===============================


class PostgresExtractor:
    """information_schema based extractor for the PostgreSQL family."""

    name = "postgresql"
    products = ("postgres", "opengauss", "kingbase", "gaussdb", "greenplum", "vastbase")

    def __init__(self, priority: int = 10):
        self.priority = priority

    def supports(self, conn, product_name: str | None = None) -> bool:
        p = (product_name or database_product_name(conn)).lower()
        return any(m in p for m in self.products)

    def extract_schemas(self, conn, db: str | None = None) -> List[str]:
        rows = _fetch(
            conn,
            """
            SELECT schema_name FROM information_schema.schemata
            WHERE schema_name NOT IN ('pg_catalog', 'information_schema')
              AND schema_name NOT LIKE 'pg_toast%' AND schema_name NOT LIKE 'pg_temp%'
            ORDER BY schema_name
            """,
        )
        return [r[0] for r in rows]

    def extract_tables(self, conn, db: str | None, schema: str | None) -> List[TableInfo]:
        rows = _fetch(
            conn,
            """
            SELECT table_schema, table_name, table_type
            FROM information_schema.tables
            WHERE table_schema = %s
            ORDER BY table_name
            """,
            (schema or "public",),
        )
        return [TableInfo(r[0], r[1], "VIEW" if r[2] == "VIEW" else "TABLE") for r in rows]

    def extract_columns(self, conn, db: str | None, schema: str | None, table: str) -> List[ColumnInfo]:
        schema = schema or "public"
        pk_rows = _fetch(
            conn,
            """
            SELECT kcu.column_name
            FROM information_schema.table_constraints tc
            JOIN information_schema.key_column_usage kcu
              ON tc.constraint_name = kcu.constraint_name
             AND tc.table_schema     = kcu.table_schema
            WHERE tc.constraint_type = 'PRIMARY KEY'
              AND tc.table_schema = %s
              AND tc.table_name   = %s
            ORDER BY kcu.ordinal_position
            """,
            (schema, table),
        )
        pks = {r[0] for r in pk_rows}
        rows = _fetch(
            conn,
            """
            SELECT column_name, data_type, is_nullable, column_default, ordinal_position,
                   character_maximum_length, numeric_precision, numeric_scale, is_identity
            FROM information_schema.columns
            WHERE table_schema = %s AND table_name = %s
            ORDER BY ordinal_position
            """,
            (schema, table),
        )
        cols = []
        for name, dtype, nullable, default, ordinal, char_len, precision, scale, identity in rows:
            seq = bool(default) and "nextval(" in str(default).lower()
            cols.append(ColumnInfo(
                name=name,
                data_type=dtype,
                jdbc_type=jdbc_type(dtype),
                nullable=(nullable == "YES"),
                primary_key=name in pks,
                ordinal=int(ordinal),
                default=None if default is None else str(default),
                size=char_len if char_len is not None else precision,
                scale=scale,
                auto_increment=seq or identity == "YES",
            ))
        return cols


class MySQLExtractor:
    """
    information_schema based extractor for the MySQL family. Instantiated a second time
    as the MariaDB extractor, whose COLUMN_DEFAULT reports the literal 'NULL' for
    nullable columns without a default.
    """

    def __init__(self, name: str = "mysql",
                 products: Sequence[str] = ("mysql", "mariadb", "tidb", "polardb", "oceanbase", "starrocks"),
                 priority: int = 10, literal_null_defaults: bool = False):
        self.name = name
        self.products = tuple(products)
        self.priority = priority
        self.literal_null_defaults = literal_null_defaults

    def supports(self, conn, product_name: str | None = None) -> bool:
        p = (product_name or database_product_name(conn)).lower()
        return any(m in p for m in self.products)

    def _database(self, conn, db: str | None, schema: str | None) -> str:
        if schema or db:
            return schema or db
        return _fetch(conn, "SELECT DATABASE()")[0][0]

    def extract_schemas(self, conn, db: str | None = None) -> List[str]:
        rows = _fetch(
            conn,
            """
            SELECT schema_name FROM information_schema.schemata
            WHERE schema_name NOT IN ('information_schema', 'mysql', 'performance_schema', 'sys')
            ORDER BY schema_name
            """,
        )
        return [r[0] for r in rows]

    def extract_tables(self, conn, db: str | None, schema: str | None) -> List[TableInfo]:
        database = self._database(conn, db, schema)
        rows = _fetch(
            conn,
            """
            SELECT table_schema, table_name, table_type
            FROM information_schema.tables
            WHERE table_schema = %s
            ORDER BY table_name
            """,
            (database,),
        )
        return [TableInfo(r[0], r[1], "VIEW" if r[2] == "VIEW" else "TABLE") for r in rows]

    def extract_columns(self, conn, db: str | None, schema: str | None, table: str) -> List[ColumnInfo]:
        database = self._database(conn, db, schema)
        rows = _fetch(
            conn,
            """
            SELECT column_name, column_type, is_nullable, column_default, ordinal_position,
                   character_maximum_length, numeric_precision, numeric_scale, column_key, extra
            FROM information_schema.columns
            WHERE table_schema = %s AND table_name = %s
            ORDER BY ordinal_position
            """,
            (database, table),
        )
        cols = []
        for name, ctype, nullable, default, ordinal, char_len, precision, scale, key, extra in rows:
            if self.literal_null_defaults and default is not None and str(default).upper() == "NULL":
                default = None
            cols.append(ColumnInfo(
                name=name,
                data_type=str(ctype),
                jdbc_type=jdbc_type(str(ctype)),
                nullable=(nullable == "YES"),
                primary_key=(key == "PRI"),
                ordinal=int(ordinal),
                default=None if default is None else str(default),
                size=char_len if char_len is not None else precision,
                scale=scale,
                auto_increment="auto_increment" in str(extra or "").lower(),
            ))
        return cols


class SQLiteExtractor:
    name = "sqlite"
    products = ("sqlite",)

    def __init__(self, priority: int = 10):
        self.priority = priority

    def supports(self, conn, product_name: str | None = None) -> bool:
        return "sqlite" in (product_name or database_product_name(conn)).lower()

    @staticmethod
    def _prefix(schema: str | None) -> str:
        return f'"{schema}".' if schema and schema != "main" else ""

    def extract_schemas(self, conn, db: str | None = None) -> List[str]:
        return [r[1] for r in _fetch(conn, "PRAGMA database_list")]

    def extract_tables(self, conn, db: str | None, schema: str | None) -> List[TableInfo]:
        rows = _fetch(
            conn,
            f"SELECT name, type FROM {self._prefix(schema)}sqlite_master "
            "WHERE type IN ('table', 'view') AND name NOT LIKE 'sqlite_%' ORDER BY name",
        )
        return [TableInfo(schema, r[0], r[1].upper()) for r in rows]

    def extract_columns(self, conn, db: str | None, schema: str | None, table: str) -> List[ColumnInfo]:
        escaped = table.replace('"', '""')
        rows = _fetch(conn, f'PRAGMA {self._prefix(schema)}table_info("{escaped}")')
        pk_count = sum(1 for r in rows if r[5])
        cols = []
        for cid, name, ctype, notnull, default, pk in rows:
            size, scale = _type_params(ctype)
            family = jdbc_type(ctype)
            cols.append(ColumnInfo(
                name=name,
                data_type=ctype or "",
                jdbc_type=family,
                nullable=not notnull and not pk,
                primary_key=bool(pk),
                ordinal=int(cid) + 1,
                default=None if default is None else str(default),
                size=size,
                scale=scale,
                # INTEGER PRIMARY KEY aliases the rowid
                auto_increment=bool(pk) and pk_count == 1 and (ctype or "").upper() == "INTEGER",
            ))
        return cols


# ============================== Registry ===============================


class ExtractorRegistry:
    """Picks the most specific (lowest priority number) extractor supporting a connection."""

    def __init__(self, extractors: Iterable[Any] = ()):
        self._extractors: List[Any] = sorted(extractors, key=lambda e: e.priority)

    def register(self, extractor) -> None:
        self._extractors.append(extractor)
        self._extractors.sort(key=lambda e: e.priority)

    def __iter__(self) -> Iterator[Any]:
        return iter(self._extractors)

    def resolve(self, conn, product_name: str | None = None):
        product = product_name or database_product_name(conn)
        for ex in self._extractors:
            if ex.supports(conn, product):
                LOG.debug("Metadata extractor for %r -> %s", product, ex.name)
                return ex
        raise ConfigurationError(f"No metadata extractor supports database product {product!r}")


def default_extractor_registry() -> ExtractorRegistry:
    return ExtractorRegistry([
        SQLiteExtractor(),
        PostgresExtractor(),
        MySQLExtractor(),
        MySQLExtractor(name="mariadb", products=("mariadb",), priority=5, literal_null_defaults=True),
    ])


# ============================== Inspection ===============================


def inspect_table(extractor, conn, db: str | None, schema: str | None, table: str) -> TableSchema:
    t0 = time.perf_counter()
    tables = {t.name.lower(): t for t in extractor.extract_tables(conn, db, schema)}
    found = tables.get(table.lower())
    if found is None:
        where = f"{schema}.{table}" if schema else table
        raise ConfigurationError(f"Table {where} does not exist")
    columns = sorted(extractor.extract_columns(conn, db, schema, found.name), key=lambda c: c.ordinal)
    if not columns:
        raise ConfigurationError(f"Table {found.name} has no readable columns")
    ts = TableSchema(schema=schema, table=found.name, columns=columns, digest=structure_digest(columns))
    LOG.info("Inspected %s: %d columns, pk=%s (%.3fs)", found.name, len(columns), ts.primary_keys,
             time.perf_counter() - t0)
    return ts


def inspect_query(conn, query: str, alias: str = "src_q") -> TableSchema:
    """Columns of an arbitrary SELECT, read from the cursor description of a zero-row query."""
    with closing(conn.cursor()) as c:
        c.execute(f"SELECT * FROM ({query}) {alias} WHERE 1 = 0")
        description = c.description or []
        c.fetchall()
    columns = [
        ColumnInfo(name=d[0], data_type="UNKNOWN", jdbc_type="OTHER", ordinal=i + 1)
        for i, d in enumerate(description)
    ]
    if not columns:
        raise ConfigurationError("Source query returns no columns")
    return TableSchema(schema=None, table=alias, columns=columns, digest=structure_digest(columns))


def columns_to_json(columns: Sequence[ColumnInfo]) -> str:
    return json.dumps([c.to_dict() for c in columns], default=str)


def detect_drift(side: str, previous_digest: str | None, previous_columns_json: str | None,
                 current: TableSchema) -> Optional[StructureDrift]:
    if not previous_digest or previous_digest == current.digest:
        return None
    try:
        before = {c["name"] for c in json.loads(previous_columns_json or "[]")}
    except (TypeError, ValueError):
        before = set()
    after = set(current.column_names)
    return StructureDrift(
        side=side,
        previous_digest=previous_digest,
        current_digest=current.digest,
        added=sorted(after - before),
        removed=sorted(before - after),
    )
