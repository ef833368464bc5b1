from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List

# ============================== Config model ===============================


class SyncMode(str, Enum):
    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"


@dataclass(frozen=True)
class SyncJob:
    name: str
    source_datasource: str
    source_table: str | None
    target_datasource: str
    target_table: str
    sync_mode: SyncMode = SyncMode.FULL
    id: int | None = None
    group: str = "DEFAULT"
    source_schema: str | None = None
    source_query: str | None = None        # replaces source_table when set
    target_schema: str | None = None
    incremental_column: str | None = None
    filter_condition: str | None = None    # raw SQL predicate applied to the source
    primary_key: str | None = None         # comma-separated override of the logical key
    cron_schedule: str = "0 2 * * *"
    batch_size: int = 1000
    retry_count: int = 3
    retry_interval: float = 60.0           # seconds
    allow_concurrent: bool = False
    enabled: bool = True
    validate_after_sync: bool = False
    bucket_count: int = 64
    drift_policy: str = "warn"             # "warn" | "block"
    auto_add_columns: bool = False
    description: str = ""

    def __post_init__(self):
        # catalog and store hand us plain strings
        if not isinstance(self.sync_mode, SyncMode):
            object.__setattr__(self, "sync_mode", SyncMode(str(self.sync_mode).upper()))

    @property
    def is_incremental(self) -> bool:
        return self.sync_mode == SyncMode.INCREMENTAL

    @property
    def key_columns(self) -> List[str]:
        pk = self.primary_key
        return [] if not pk else [c.strip() for c in pk.split(",") if c.strip()]

    @property
    def source_label(self) -> str:
        if self.source_query:
            return f"{self.source_datasource}:(query)"
        where = f"{self.source_schema}.{self.source_table}" if self.source_schema else self.source_table
        return f"{self.source_datasource}:{where}"

    @property
    def target_label(self) -> str:
        where = f"{self.target_schema}.{self.target_table}" if self.target_schema else self.target_table
        return f"{self.target_datasource}:{where}"
