from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator
from urllib.parse import unquote, urlsplit

import psycopg2
import pymysql

from db_to_db_sync.errors import ConfigurationError, TransientIOError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Datasource:
    """A logical datasource code bound to a connection factory."""

    code: str
    connect: Callable[[], Any]
    product: str | None = None      # optional hint; detected from the connection when None
    database: str | None = None


# ============================== URI based datasources ===============================

_PG_SCHEMES = ("postgres", "postgresql", "postgresql+psycopg2")
_MYSQL_SCHEMES = ("mysql", "mysql+pymysql", "mariadb", "tidb")


def datasource_from_uri(code: str, uri: str) -> Datasource:
    """
    postgres://user:pw@host:5432/db  -> psycopg2
    mysql://user:pw@host:3306/db     -> PyMySQL
    sqlite:///relative.db, sqlite:////abs/path.db -> sqlite3
    """
    parts = urlsplit(uri)
    scheme = parts.scheme.lower()

    if scheme in _PG_SCHEMES:
        dsn = "postgresql://" + uri.split("://", 1)[1]

        def _connect_pg():
            return psycopg2.connect(dsn)

        return Datasource(code=code, connect=_connect_pg, database=parts.path.lstrip("/") or None)

    if scheme in _MYSQL_SCHEMES:
        database = unquote(parts.path.lstrip("/")) or None

        def _connect_mysql():
            return pymysql.connect(
                host=parts.hostname or "localhost",
                port=parts.port or 3306,
                user=unquote(parts.username or ""),
                password=unquote(parts.password or ""),
                database=database,
                charset="utf8mb4",
                autocommit=False,
            )

        return Datasource(code=code, connect=_connect_mysql, database=database)

    if scheme == "sqlite":
        path = unquote(parts.netloc + parts.path) if parts.netloc else parts.path[1:]
        path = path or ":memory:"

        def _connect_sqlite():
            return sqlite3.connect(path)

        return Datasource(code=code, connect=_connect_sqlite, product="SQLite", database=path)

    raise ConfigurationError(f"Datasource {code!r}: unsupported URI scheme {scheme!r}")


# ============================== Registries ===============================

class StaticDatasourceRegistry:
    """In-process datasource registry: code -> Datasource."""

    def __init__(self, datasources: Iterable[Datasource] = ()):
        self._by_code: Dict[str, Datasource] = {}
        for ds in datasources:
            self.register(ds)

    @classmethod
    def from_uris(cls, uris: Dict[str, str]) -> "StaticDatasourceRegistry":
        return cls(datasource_from_uri(code, uri) for code, uri in uris.items())

    def register(self, datasource: Datasource) -> None:
        self._by_code[datasource.code] = datasource

    def get(self, code: str) -> Datasource:
        try:
            return self._by_code[code]
        except KeyError:
            raise ConfigurationError(f"Unknown datasource code {code!r}") from None


def connect(datasource: Datasource):
    try:
        return datasource.connect()
    except ConfigurationError:
        raise
    except Exception as e:
        raise TransientIOError(f"Cannot connect to datasource {datasource.code!r}: {e}") from e


@contextmanager
def open_connection(registry, code: str) -> Iterator[Any]:
    conn = connect(registry.get(code))
    try:
        yield conn
    finally:
        try:
            conn.close()
        except Exception:
            log.debug("Closing connection for %s failed", code, exc_info=True)
