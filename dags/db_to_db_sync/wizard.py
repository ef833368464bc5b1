from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

from db_to_db_sync.SyncJob import SyncMode
from db_to_db_sync.datasources import open_connection
from db_to_db_sync.errors import ConfigurationError
from db_to_db_sync.metadata import ColumnInfo, database_product_name

log = logging.getLogger(__name__)

MAX_SUGGESTIONS = 5


@dataclass
class WizardValidationResult:
    valid: bool = True
    source_table_exists: bool = False
    target_table_exists: bool = False
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    source_columns: List[Dict[str, Any]] = field(default_factory=list)
    target_columns: List[Dict[str, Any]] = field(default_factory=list)
    suggested_incremental_columns: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def score_incremental_column(name: str) -> int:
    n = name.lower()
    score = 0
    if "update" in n or "modified" in n:
        score += 5
    if "time" in n or "date" in n or n.endswith("ts"):
        score += 4
    if "create" in n or "ctime" in n:
        score += 2
    if n == "id":
        score += 1
    return score


def suggest_incremental_columns(columns: List[ColumnInfo]) -> List[str]:
    scored = [(score_incremental_column(c.name), c.ordinal, c.name) for c in columns]
    ranked = sorted((s for s in scored if s[0] > 0), key=lambda s: (-s[0], s[1]))
    return [name for _, _, name in ranked[:MAX_SUGGESTIONS]]


def _load_columns(context, code: str, schema: str | None, table: str, side: str,
                  result: WizardValidationResult) -> List[ColumnInfo] | None:
    try:
        ds = context.datasources.get(code)
        with open_connection(context.datasources, code) as conn:
            product = ds.product or database_product_name(conn)
            try:
                context.dialects.resolve(product)
            except ConfigurationError as e:
                result.errors.append(f"{side.capitalize()} datasource {code!r}: {e}")
            extractor = context.extractors.resolve(conn, product)
            names = {t.name.lower() for t in extractor.extract_tables(conn, ds.database, schema)}
            if table.lower() not in names:
                result.errors.append(f"{side.capitalize()} table {table!r} not found in datasource {code!r}")
                return None
            return extractor.extract_columns(conn, ds.database, schema, table)
    except Exception as e:
        log.warning("Wizard could not inspect %s %s.%s: %s", side, code, table, e)
        result.errors.append(f"Cannot inspect {side} datasource {code!r}: {e}")
        return None


def validate(context, source_datasource: str, source_schema: str | None, source_table: str,
             target_datasource: str, target_schema: str | None, target_table: str,
             sync_mode: str | SyncMode = SyncMode.FULL,
             incremental_column: str | None = None) -> WizardValidationResult:
    """Pre-flight checks for a job definition before it is saved."""
    result = WizardValidationResult()
    mode = SyncMode(str(getattr(sync_mode, "value", sync_mode)).upper())

    source = _load_columns(context, source_datasource, source_schema, source_table, "source", result)
    target = _load_columns(context, target_datasource, target_schema, target_table, "target", result)
    result.source_table_exists = source is not None
    result.target_table_exists = target is not None

    if source is not None:
        result.source_columns = [c.to_dict() for c in source]
        result.suggested_incremental_columns = suggest_incremental_columns(source)
        if mode == SyncMode.INCREMENTAL:
            names = {c.name.lower() for c in source}
            if not incremental_column:
                result.errors.append("INCREMENTAL mode needs an incremental column")
            elif incremental_column.lower() not in names:
                result.errors.append(f"Incremental column {incremental_column!r} not found in source table")
    if target is not None:
        result.target_columns = [c.to_dict() for c in target]
        if mode == SyncMode.INCREMENTAL and not any(c.primary_key for c in target):
            result.warnings.append("Target table has no primary key; INCREMENTAL upserts need a primary_key override")

    if source is not None and target is not None:
        shared = {c.name.lower() for c in source} & {c.name.lower() for c in target}
        if not shared:
            result.warnings.append("Source and target share no column names; explicit column mappings are required")

    result.valid = not result.errors
    return result
