from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

from db_to_db_sync.checkpoints import CheckpointManager
from db_to_db_sync.config import Settings
from db_to_db_sync.dialects import DialectRegistry, default_dialect_registry
from db_to_db_sync.metadata import ExtractorRegistry, default_extractor_registry
from db_to_db_sync.store import SyncStateStore


@dataclass
class SyncContext:
    """
    Everything a run needs, built once per process and passed by reference to the
    executor, the validator and the job registry.
    """

    settings: Settings
    store: SyncStateStore
    datasources: Any                       # anything with .get(code) -> Datasource
    dialects: DialectRegistry = field(default_factory=default_dialect_registry)
    extractors: ExtractorRegistry = field(default_factory=default_extractor_registry)
    checkpoints: CheckpointManager = None  # type: ignore[assignment]
    # execution id -> (job id, stop event) of every run in flight in this process
    active_runs: Dict[int, Tuple[int, threading.Event]] = field(default_factory=dict)
    lock: threading.RLock = field(default_factory=threading.RLock)

    def __post_init__(self):
        if self.checkpoints is None:
            self.checkpoints = CheckpointManager(self.store)


def build_context(settings: Settings, datasources) -> SyncContext:
    return SyncContext(settings=settings, store=SyncStateStore(settings.state_db), datasources=datasources)
