from __future__ import annotations

import logging

from airflow.exceptions import AirflowNotFoundException
from airflow.hooks.base import BaseHook

from db_to_db_sync.datasources import Datasource, datasource_from_uri
from db_to_db_sync.errors import ConfigurationError

log = logging.getLogger(__name__)


class AirflowDatasourceRegistry:
    """Datasource codes are Airflow connection ids."""

    def get(self, code: str) -> Datasource:
        try:
            conn = BaseHook.get_connection(code)
        except AirflowNotFoundException as e:
            raise ConfigurationError(f"Unknown datasource code {code!r}: {e}") from e
        log.debug("Resolved datasource %s via Airflow connection (type=%s)", code, conn.conn_type)
        return datasource_from_uri(code, conn.get_uri())
