from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class Settings:
    state_db: str = "db_sync_state.db"
    catalog_path: str = "/opt/airflow/dags/catalog.json"
    discord_webhook: str = ""
    batch_size: int = 1000
    retry_count: int = 3
    retry_interval: float = 60.0
    bucket_count: int = 64
    batch_timeout: Optional[float] = None     # seconds; None = unlimited
    run_timeout: Optional[float] = None
    validation_failure_threshold: int = 3
    max_in_clause: int = 900
    log_level: str = "INFO"

    @property
    def stale_execution_after(self) -> Optional[float]:
        """RUNNING executions older than this are considered abandoned."""
        return None if self.run_timeout is None else self.run_timeout * 2


def _opt_float(raw: str | None) -> Optional[float]:
    if raw is None or not raw.strip():
        return None
    return float(raw)


def load_settings(env_file: str | None = None, environ: Mapping[str, str] | None = None) -> Settings:
    """Settings from DB_SYNC_* environment variables (a .env file is loaded first)."""
    if environ is None:
        load_dotenv(env_file)
        environ = os.environ
    defaults = Settings()
    get = environ.get
    return Settings(
        state_db=get("DB_SYNC_STATE_DB", defaults.state_db),
        catalog_path=get("DB_SYNC_CATALOG_PATH", defaults.catalog_path),
        discord_webhook=get("DB_SYNC_DISCORD_WEBHOOK", defaults.discord_webhook),
        batch_size=int(get("DB_SYNC_BATCH_SIZE", defaults.batch_size)),
        retry_count=int(get("DB_SYNC_RETRY_COUNT", defaults.retry_count)),
        retry_interval=float(get("DB_SYNC_RETRY_INTERVAL", defaults.retry_interval)),
        bucket_count=int(get("DB_SYNC_BUCKET_COUNT", defaults.bucket_count)),
        batch_timeout=_opt_float(get("DB_SYNC_BATCH_TIMEOUT")),
        run_timeout=_opt_float(get("DB_SYNC_RUN_TIMEOUT")),
        validation_failure_threshold=int(
            get("DB_SYNC_VALIDATION_FAILURE_THRESHOLD", defaults.validation_failure_threshold)
        ),
        max_in_clause=int(get("DB_SYNC_MAX_IN_CLAUSE", defaults.max_in_clause)),
        log_level=get("DB_SYNC_LOG_LEVEL", defaults.log_level).upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT, datefmt=LOG_DATEFMT)
