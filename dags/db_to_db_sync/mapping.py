from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from db_to_db_sync.errors import ConfigurationError
from db_to_db_sync.metadata import TableSchema
from db_to_db_sync.records import ColumnMappingRule

LOG = logging.getLogger(__name__)

# ============================== Transform vocabulary ===============================

TRANSFORM_OPS = ("rename", "constant", "concat", "case")


@dataclass(frozen=True)
class Transform:
    """
    Closed set of field transforms:
      {"op": "rename"}                                         copy the source field (also: empty)
      {"op": "constant", "value": v}                           fixed value
      {"op": "concat", "columns": [...], "separator": " "}     join several source fields
      {"op": "case", "column": c, "when": [{"equals": x, "then": y}], "else": z}
    """

    op: str = "rename"
    value: Any = None
    columns: Tuple[str, ...] = ()
    separator: str = ""
    column: str | None = None
    when: Tuple[Tuple[Any, Any], ...] = ()
    default: Any = None
    has_default: bool = False

    def referenced_columns(self, source_column: str | None) -> List[str]:
        if self.op == "constant":
            return []
        if self.op == "concat":
            return list(self.columns)
        col = self.column or source_column
        return [col] if col else []

    def apply(self, row: Mapping[str, Any], source_column: str | None) -> Any:
        if self.op == "constant":
            return self.value
        if self.op == "concat":
            parts = [row.get(c) for c in self.columns]
            if all(p is None for p in parts):
                return None
            return self.separator.join("" if p is None else str(p) for p in parts)
        value = row.get(self.column or source_column)
        if self.op == "case":
            for match, result in self.when:
                if _case_equals(value, match):
                    return result
            return self.default if self.has_default else value
        return value


def _case_equals(value: Any, match: Any) -> bool:
    if value is None or match is None:
        return value is None and match is None
    return value == match or str(value) == str(match)


def parse_transform(expr: Any) -> Transform:
    if expr is None or expr == "" or expr == {}:
        return Transform()
    if isinstance(expr, str):
        text = expr.strip()
        if not text or text.lower() == "rename":
            return Transform()
        try:
            expr = json.loads(text)
        except ValueError as e:
            raise ConfigurationError(f"Transform expression is not valid JSON: {text!r}") from e
    if not isinstance(expr, dict):
        raise ConfigurationError(f"Transform expression must be an object, got {type(expr).__name__}")

    op = str(expr.get("op", "rename")).lower()
    if op not in TRANSFORM_OPS:
        raise ConfigurationError(f"Unknown transform op {op!r}; expected one of {TRANSFORM_OPS}")
    if op == "rename":
        return Transform(column=expr.get("column"))
    if op == "constant":
        if "value" not in expr:
            raise ConfigurationError("constant transform needs a 'value'")
        return Transform(op="constant", value=expr["value"])
    if op == "concat":
        cols = expr.get("columns") or []
        if not isinstance(cols, list) or not cols:
            raise ConfigurationError("concat transform needs a non-empty 'columns' list")
        return Transform(op="concat", columns=tuple(str(c) for c in cols), separator=str(expr.get("separator", "")))

    whens = expr.get("when") or []
    if not isinstance(whens, list) or not all(isinstance(w, dict) and "equals" in w and "then" in w for w in whens):
        raise ConfigurationError("case transform needs 'when': [{'equals': ..., 'then': ...}, ...]")
    return Transform(
        op="case",
        column=expr.get("column"),
        when=tuple((w["equals"], w["then"]) for w in whens),
        default=expr.get("else"),
        has_default="else" in expr,
    )


# ============================== Mapper ===============================


@dataclass(frozen=True)
class _BoundRule:
    source_column: str | None
    target_column: str
    transform: Transform = field(default_factory=Transform)

    @property
    def is_rename(self) -> bool:
        return self.transform.op == "rename" and not self.transform.column


class ColumnMapper:
    """Turns a source row into a target row following an ordered rule list."""

    def __init__(self, rules: Sequence[ColumnMappingRule]):
        ordered = sorted(enumerate(rules), key=lambda p: (p[1].ordinal, p[0]))
        bound: List[_BoundRule] = []
        seen = set()
        for _, r in ordered:
            if not r.target_column:
                raise ConfigurationError("Column mapping rule without target column")
            key = r.target_column.lower()
            if key in seen:
                raise ConfigurationError(f"Target column {r.target_column!r} is mapped more than once")
            seen.add(key)
            transform = parse_transform(r.transform)
            if transform.op in ("rename", "case") and not (transform.column or r.source_column):
                raise ConfigurationError(f"Rule for {r.target_column!r} needs a source column")
            bound.append(_BoundRule(r.source_column, r.target_column, transform))
        if not bound:
            raise ConfigurationError("Column mapping is empty")
        self._rules = bound

    @classmethod
    def identity(cls, source: TableSchema, target: TableSchema) -> "ColumnMapper":
        rules = []
        for col in source.columns:
            tcol = target.column(col.name)
            if tcol is not None:
                rules.append(ColumnMappingRule(col.name, tcol.name, None, len(rules)))
        if not rules:
            raise ConfigurationError(
                f"No column names shared between {source.table} and {target.table}; configure a column mapping"
            )
        return cls(rules)

    @classmethod
    def for_job(cls, rules: Sequence[ColumnMappingRule], source: TableSchema, target: TableSchema) -> "ColumnMapper":
        return cls(rules) if rules else cls.identity(source, target)

    # ------------------------ Introspection ------------------------

    @property
    def rules(self) -> List[_BoundRule]:
        return list(self._rules)

    @property
    def source_columns(self) -> List[str]:
        out: List[str] = []
        for r in self._rules:
            for c in r.transform.referenced_columns(r.source_column):
                if c not in out:
                    out.append(c)
        return out

    @property
    def target_columns(self) -> List[str]:
        return [r.target_column for r in self._rules]

    def target_for_source(self, source_column: str) -> Optional[str]:
        """Target column fed by a plain rename of `source_column`."""
        lowered = source_column.lower()
        for r in self._rules:
            if r.is_rename and r.source_column and r.source_column.lower() == lowered:
                return r.target_column
        return None

    def missing_target_columns(self, target: TableSchema) -> List[str]:
        return [c for c in self.target_columns if target.column(c) is None]

    # ------------------------ Validation ------------------------

    def validate(self, source: TableSchema, target: TableSchema) -> "ColumnMapper":
        """
        Check the rules against live metadata and return a mapper whose column names use the
        databases' own spelling. Raises ConfigurationError listing every problem.
        """
        errors: List[str] = []

        def _src(name: str | None) -> str | None:
            if name is None:
                return None
            col = source.column(name)
            if col is None:
                errors.append(f"source column {name!r} not found in {source.table}")
                return name
            return col.name

        canon: List[_BoundRule] = []
        for r in self._rules:
            t = r.transform
            if t.op == "concat":
                t = replace(t, columns=tuple(_src(c) for c in t.columns))
            elif t.column:
                t = replace(t, column=_src(t.column))
            src_name = _src(r.source_column) if t.op in ("rename", "case") and not t.column else r.source_column
            tcol = target.column(r.target_column)
            if tcol is None:
                errors.append(f"target column {r.target_column!r} not found in {target.table}")
                tname = r.target_column
            else:
                tname = tcol.name
            canon.append(_BoundRule(src_name, tname, t))

        mapped = {r.target_column.lower() for r in canon}
        for col in target.columns:
            if col.name.lower() in mapped or col.nullable or col.has_default:
                continue
            errors.append(f"target column {col.name!r} is NOT NULL without default and has no mapping rule")

        if errors:
            raise ConfigurationError("Invalid column mapping: " + "; ".join(errors))
        out = ColumnMapper.__new__(ColumnMapper)
        out._rules = canon
        LOG.debug("Column mapping validated: %s", [(r.source_column, r.target_column, r.transform.op) for r in canon])
        return out

    # ------------------------ Row mapping ------------------------

    def map_row(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        return {r.target_column: r.transform.apply(row, r.source_column) for r in self._rules}

    def map_values(self, row: Mapping[str, Any]) -> Tuple[Any, ...]:
        return tuple(r.transform.apply(row, r.source_column) for r in self._rules)
