import pytest

from db_to_db_sync.errors import ConfigurationError
from db_to_db_sync.mapping import ColumnMapper, parse_transform
from db_to_db_sync.metadata import ColumnInfo, TableSchema
from db_to_db_sync.records import ColumnMappingRule


def _schema(table, *cols):
    return TableSchema(None, table, [
        ColumnInfo(name=n, data_type="TEXT", jdbc_type="VARCHAR", ordinal=i + 1, **kw)
        for i, (n, kw) in enumerate(cols)
    ])


SOURCE = _schema("src", ("ID", {"primary_key": True, "nullable": False}), ("First", {}), ("Last", {}), ("Kind", {}))
TARGET = _schema(
    "dst",
    ("id", {"primary_key": True, "nullable": False}),
    ("full_name", {}),
    ("kind", {}),
    ("origin", {"nullable": False, "default": "'x'"}),
)


def test_identity_mapping_matches_names_case_insensitively():
    mapper = ColumnMapper.identity(SOURCE, TARGET)
    assert mapper.source_columns == ["ID", "Kind"]
    assert mapper.target_columns == ["id", "kind"]
    assert mapper.target_for_source("id") == "id"


def test_identity_without_shared_columns():
    with pytest.raises(ConfigurationError):
        ColumnMapper.identity(SOURCE, _schema("other", ("zzz", {})))


def test_transforms_applied_in_rule_order():
    rules = [
        ColumnMappingRule("Kind", "kind", {"op": "case", "when": [{"equals": "A", "then": "alpha"}], "else": "other"}, 2),
        ColumnMappingRule("ID", "id", None, 0),
        ColumnMappingRule(None, "full_name", '{"op": "concat", "columns": ["First", "Last"], "separator": " "}', 1),
        ColumnMappingRule(None, "origin", {"op": "constant", "value": "legacy"}, 3),
    ]
    mapper = ColumnMapper(rules).validate(SOURCE, TARGET)
    row = {"ID": 7, "First": "Ada", "Last": "Lovelace", "Kind": "A"}
    assert mapper.map_values(row) == (7, "Ada Lovelace", "alpha", "legacy")
    assert mapper.map_row({**row, "Kind": "B"})["kind"] == "other"
    assert mapper.source_columns == ["ID", "First", "Last", "Kind"]


def test_concat_of_nulls_is_null():
    mapper = ColumnMapper([ColumnMappingRule(None, "full_name", {"op": "concat", "columns": ["First", "Last"]})])
    assert mapper.map_values({"First": None, "Last": None}) == (None,)
    assert mapper.map_values({"First": "a", "Last": None}) == ("a",)


def test_validate_canonicalizes_names():
    mapper = ColumnMapper([ColumnMappingRule("id", "ID")]).validate(SOURCE, TARGET)
    assert mapper.source_columns == ["ID"]
    assert mapper.target_columns == ["id"]


def test_validate_reports_every_problem():
    target = _schema("dst", ("id", {"nullable": False}), ("required", {"nullable": False}))
    rules = [ColumnMappingRule("missing", "id"), ColumnMappingRule("First", "nowhere")]
    with pytest.raises(ConfigurationError) as exc:
        ColumnMapper(rules).validate(SOURCE, target)
    message = str(exc.value)
    assert "'missing' not found" in message
    assert "'nowhere' not found" in message
    assert "'required' is NOT NULL" in message


def test_duplicate_target_rejected():
    with pytest.raises(ConfigurationError):
        ColumnMapper([ColumnMappingRule("a", "x"), ColumnMappingRule("b", "X")])


@pytest.mark.parametrize("expr", ['{"op": "upper"}', "not json", '{"op": "constant"}', '{"op": "concat"}', "[1]"])
def test_bad_transforms(expr):
    with pytest.raises(ConfigurationError):
        parse_transform(expr)


def test_empty_transform_is_rename():
    assert parse_transform("").op == "rename"
    assert parse_transform(None).op == "rename"
    assert parse_transform("rename").op == "rename"
