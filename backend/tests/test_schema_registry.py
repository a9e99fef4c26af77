"""Tests for the schema registry and schema inference."""

from __future__ import annotations

from datetime import timedelta

import pytest

from backend.app.workflow.errors import RegistryError
from backend.app.workflow.schema_registry import (
    SchemaRegistry,
    infer_schema,
    standardize_data_type,
    to_column,
)
from backend.app.workflow.stores import InMemoryGraphRepository, InMemorySchemaStore
from backend.app.workflow.types import DataType, DraftRef, PersistedRef, SchemaColumn, SchemaRecord


@pytest.fixture()
def chain(graph_factory):
    return graph_factory(
        [("a", "excelInput", {"fileId": "f"}), ("b", "filter", {}), ("c", "sort", {})],
        [("a", "b"), ("b", "c")],
    )


@pytest.fixture()
def registry(chain):
    return SchemaRegistry(InMemorySchemaStore(), InMemoryGraphRepository([chain]))


def test_put_and_get_schema(registry):
    ref = PersistedRef(1)
    record = registry.put_schema(ref, "a", [{"name": "amount", "type": "int"}, {"name": "region"}])
    assert [column.type for column in record.columns] == [DataType.NUMBER, DataType.STRING]

    fetched = registry.get_schema(ref, "a")
    assert fetched is not None
    assert fetched.to_dict()["columns"][0] == {"name": "amount", "type": "number", "nullable": True}
    assert fetched.is_temporary is False


def test_get_schema_without_sheet_returns_latest_record():
    store = InMemorySchemaStore()
    registry = SchemaRegistry(store, InMemoryGraphRepository())
    ref = PersistedRef(1)
    older = registry.put_schema(ref, "a", [SchemaColumn("x")], sheet_name="Old")
    store.upsert(
        SchemaRecord(
            workflow=ref,
            node_id="a",
            columns=(SchemaColumn("y"),),
            sheet_name="New",
            updated_at=older.updated_at + timedelta(seconds=5),
        )
    )
    assert registry.get_schema(ref, "a").sheet_name == "New"
    assert registry.get_schema(ref, "a", "Old").columns == (SchemaColumn("x"),)
    assert registry.get_schema(ref, "a", "Missing") is None


def test_resolve_schema_walks_upstream(registry):
    ref = PersistedRef(1)
    registry.put_schema(ref, "a", [SchemaColumn("amount", DataType.NUMBER)])

    resolved = registry.resolve_schema(ref, "c")
    assert resolved is not None
    assert resolved.node_id == "a"
    # Resolving never writes the target's own record.
    assert registry.get_schema(ref, "c") is None


def test_resolve_schema_prefers_own_record(registry):
    ref = PersistedRef(1)
    registry.put_schema(ref, "a", [SchemaColumn("amount")])
    registry.put_schema(ref, "c", [SchemaColumn("total")])
    assert registry.resolve_schema(ref, "c").node_id == "c"


def test_resolve_schema_returns_none_without_records(registry):
    assert registry.resolve_schema(PersistedRef(1), "c") is None
    assert registry.resolve_schema(PersistedRef(99), "c") is None


def test_promote_moves_draft_records():
    store = InMemorySchemaStore()
    registry = SchemaRegistry(store, InMemoryGraphRepository())
    draft = DraftRef("local-1")
    registry.put_schema(draft, "a", [SchemaColumn("x")])
    registry.put_schema(draft, "b", [SchemaColumn("y")], sheet_name="S")
    assert registry.get_schema(draft, "a").is_temporary is True

    assert registry.promote(draft, PersistedRef(5)) == 2
    assert registry.get_schema(draft, "a") is None
    moved = registry.get_schema(PersistedRef(5), "b", "S")
    assert moved is not None and moved.is_temporary is False


def test_store_failures_surface_as_registry_errors():
    class BrokenStore(InMemorySchemaStore):
        def get(self, workflow, node_id, sheet_name):
            raise OSError("disk gone")

    registry = SchemaRegistry(BrokenStore(), InMemoryGraphRepository())
    with pytest.raises(RegistryError, match="disk gone"):
        registry.get_schema(PersistedRef(1), "a", "S")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("VARCHAR", DataType.STRING),
        ("decimal", DataType.NUMBER),
        ("timestamp", DataType.DATE),
        ("bool", DataType.BOOLEAN),
        ("json", DataType.OBJECT),
        ("list", DataType.ARRAY),
        (None, DataType.STRING),
        ("blob", DataType.UNKNOWN),
    ],
)
def test_standardize_data_type(raw, expected):
    assert standardize_data_type(raw) is expected


def test_to_column_requires_a_name():
    assert to_column({"columnName": "qty", "dataType": "integer"}) == SchemaColumn("qty", DataType.NUMBER)
    with pytest.raises(ValueError):
        to_column({"type": "string"})


def test_infer_schema_from_rows():
    rows = [
        {"amount": 10, "region": "north", "when": "2024-01-02"},
        {"amount": 12.5, "region": None, "when": "2024-01-03", "flag": True},
        {"amount": "n/a", "region": "south", "when": "2024-01-04"},
    ]
    columns = {column.name: column for column in infer_schema(rows)}
    assert list(columns) == ["amount", "region", "when", "flag"]
    assert columns["amount"].type is DataType.UNKNOWN
    assert columns["region"].type is DataType.STRING
    assert columns["region"].nullable is True
    assert columns["when"].type is DataType.DATE
    assert columns["when"].nullable is False
    assert columns["flag"].type is DataType.BOOLEAN
    assert columns["flag"].nullable is True
