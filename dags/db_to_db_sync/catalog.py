from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from db_to_db_sync.SyncJob import SyncJob, SyncMode
from db_to_db_sync.config import Settings
from db_to_db_sync.errors import ConfigurationError
from db_to_db_sync.mapping import parse_transform
from db_to_db_sync.records import ColumnMappingRule

log = logging.getLogger(__name__)

# ------------------------ Catalog loading ------------------------


def load_catalog(path: str | Path) -> Dict[str, Any]:
    path = Path(str(path).strip())
    if not path.exists():
        raise FileNotFoundError(f"Catalog file not found: {path}")
    raw = path.read_text(encoding="utf-8").strip()
    if not raw:
        raise ValueError(f"Catalog file {path} is empty")
    try:
        catalog = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in catalog file {path}: {e}") from e
    if not isinstance(catalog.get("sources"), list):
        raise ConfigurationError(f"Catalog {path} needs a 'sources' list")
    return catalog


# ------------------------ Configuration helpers ------------------------


def _cfg_get(root: Dict[str, Any], src: Dict[str, Any], tbl: Dict[str, Any], key: str, default=None):
    return tbl.get(key, src.get(key, root.get(key, default)))


def _mapping_rules(entries: List[Dict[str, Any]]) -> List[ColumnMappingRule]:
    rules = []
    for i, m in enumerate(entries or []):
        transform = m.get("transform")
        if transform:
            parse_transform(transform)  # fail at load time, not mid-run
            if not isinstance(transform, str):
                transform = json.dumps(transform)
        rules.append(ColumnMappingRule(
            source_column=m.get("source"), target_column=m["target"], transform=transform, ordinal=i,
        ))
    return rules


def create_sync_job(
    root: Dict[str, Any], src: Dict[str, Any], tbl: Dict[str, Any], defaults: Optional[Settings] = None,
) -> Tuple[SyncJob, List[ColumnMappingRule]]:
    """One job from a catalog table entry; unset tuning knobs fall back to the deployment settings."""
    defaults = defaults or Settings()
    source_datasource = src["datasource"]
    target_datasource = _cfg_get(root, src, tbl, "target_datasource")
    if not target_datasource:
        raise ConfigurationError(f"No target_datasource for source {source_datasource!r}")
    source_schema = tbl.get("source_schema")
    source_table = tbl.get("source_table")
    source_query = tbl.get("source_query")
    target_table = tbl.get("target_table", source_table)
    if not target_table:
        raise ConfigurationError(f"Catalog table entry of {source_datasource!r} needs a target_table")
    name = tbl.get("name") or f"{source_datasource}.{source_table or 'query'}_to_{target_datasource}.{target_table}"

    job = SyncJob(
        name=name,
        source_datasource=source_datasource,
        source_schema=source_schema,
        source_table=source_table,
        source_query=source_query,
        target_datasource=target_datasource,
        target_schema=tbl.get("target_schema", source_schema),
        target_table=target_table,
        sync_mode=SyncMode(str(_cfg_get(root, src, tbl, "sync_mode", "FULL")).upper()),
        group=_cfg_get(root, src, tbl, "group", "DEFAULT"),
        incremental_column=tbl.get("incremental_column"),
        filter_condition=tbl.get("filter_condition"),
        primary_key=(tbl.get("primary_key") or "").strip() or None,
        cron_schedule=_cfg_get(root, src, tbl, "cron_schedule", "0 2 * * *"),
        batch_size=int(_cfg_get(root, src, tbl, "batch_size", defaults.batch_size)),
        retry_count=int(_cfg_get(root, src, tbl, "retry_count", defaults.retry_count)),
        retry_interval=float(_cfg_get(root, src, tbl, "retry_interval", defaults.retry_interval)),
        allow_concurrent=bool(_cfg_get(root, src, tbl, "allow_concurrent", False)),
        enabled=bool(tbl.get("enabled", True)),
        validate_after_sync=bool(_cfg_get(root, src, tbl, "validate_after_sync", False)),
        bucket_count=int(_cfg_get(root, src, tbl, "bucket_count", defaults.bucket_count)),
        drift_policy=_cfg_get(root, src, tbl, "drift_policy", "warn"),
        auto_add_columns=bool(_cfg_get(root, src, tbl, "auto_add_columns", False)),
        description=tbl.get("comments", ""),
    )
    return job, _mapping_rules(tbl.get("column_mappings"))


def iter_catalog_jobs(catalog: Dict[str, Any], defaults: Optional[Settings] = None) -> List[Tuple[SyncJob, List[ColumnMappingRule]]]:
    entries = []
    for src in catalog["sources"]:
        for tbl in src.get("tables", []):
            entries.append(create_sync_job(catalog, src, tbl, defaults))
    log.info("Catalog defines %d sync job(s)", len(entries))
    return entries
