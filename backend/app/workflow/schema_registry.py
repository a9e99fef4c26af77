"""Schema registry for workflow nodes."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import Any

from .errors import RegistryError
from .stores import GraphRepository, SchemaStore
from .types import DataType, SchemaColumn, SchemaRecord, WorkflowRef, utcnow

logger = logging.getLogger(__name__)

_TYPE_ALIASES: dict[str, DataType] = {}
for _alias in ("varchar", "char", "text", "string", "str"):
    _TYPE_ALIASES[_alias] = DataType.STRING
for _alias in ("int", "integer", "float", "double", "decimal", "number", "num", "numeric"):
    _TYPE_ALIASES[_alias] = DataType.NUMBER
for _alias in ("date", "datetime", "timestamp", "time"):
    _TYPE_ALIASES[_alias] = DataType.DATE
for _alias in ("bool", "boolean"):
    _TYPE_ALIASES[_alias] = DataType.BOOLEAN
for _alias in ("object", "json", "map", "dict"):
    _TYPE_ALIASES[_alias] = DataType.OBJECT
for _alias in ("array", "list"):
    _TYPE_ALIASES[_alias] = DataType.ARRAY

_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}([ T]\d{2}:\d{2}(:\d{2})?)?")


def standardize_data_type(value: Any) -> DataType:
    """Map a loose type name onto the closed set of column types."""

    if isinstance(value, DataType):
        return value
    if not value:
        return DataType.STRING
    return _TYPE_ALIASES.get(str(value).strip().lower(), DataType.UNKNOWN)


def to_column(value: SchemaColumn | Mapping[str, Any]) -> SchemaColumn:
    if isinstance(value, SchemaColumn):
        return value
    name = value.get("name") or value.get("columnName")
    if not name:
        raise ValueError("schema column requires a name")
    return SchemaColumn(
        name=str(name),
        type=standardize_data_type(value.get("type", value.get("dataType"))),
        nullable=bool(value.get("nullable", True)),
    )


def _value_type(value: Any) -> DataType | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return DataType.BOOLEAN
    if isinstance(value, (int, float)):
        return DataType.NUMBER
    if isinstance(value, (datetime, date)):
        return DataType.DATE
    if isinstance(value, dict):
        return DataType.OBJECT
    if isinstance(value, (list, tuple)):
        return DataType.ARRAY
    if isinstance(value, str) and _DATE_PATTERN.match(value):
        return DataType.DATE
    return DataType.STRING


def infer_schema(rows: Iterable[Mapping[str, Any]]) -> list[SchemaColumn]:
    """Derive a column list from row dictionaries.

    Columns keep the order in which they first appear. A column whose values
    disagree on type is ``unknown``; a column with any missing value is
    nullable.
    """

    order: list[str] = []
    types: dict[str, set[DataType]] = {}
    missing: dict[str, bool] = {}
    count = 0
    for row in rows:
        if not isinstance(row, Mapping):
            continue
        count += 1
        for key in row:
            if key not in types:
                order.append(key)
                types[key] = set()
                missing[key] = count > 1
        for key in order:
            kind = _value_type(row.get(key))
            if kind is None:
                missing[key] = True
            else:
                types[key].add(kind)

    columns = []
    for key in order:
        kinds = types[key]
        kind = next(iter(kinds)) if len(kinds) == 1 else DataType.UNKNOWN
        columns.append(SchemaColumn(name=str(key), type=kind, nullable=missing[key]))
    return columns


class SchemaRegistry:
    """Reads and writes node schemas keyed by (workflow, node, sheet)."""

    def __init__(self, store: SchemaStore, graphs: GraphRepository) -> None:
        self._store = store
        self._graphs = graphs

    def get_schema(
        self, workflow: WorkflowRef, node_id: str, sheet_name: str | None = None
    ) -> SchemaRecord | None:
        record = self._call(self._store.get, workflow, node_id, sheet_name)
        if record is not None or sheet_name is not None:
            return record
        candidates = self._call(self._store.list_for_node, workflow, node_id)
        if not candidates:
            return None
        return max(candidates, key=lambda item: item.updated_at)

    def put_schema(
        self,
        workflow: WorkflowRef,
        node_id: str,
        columns: Iterable[SchemaColumn | Mapping[str, Any]],
        sheet_name: str | None = None,
    ) -> SchemaRecord:
        record = SchemaRecord(
            workflow=workflow,
            node_id=node_id,
            columns=tuple(to_column(column) for column in columns),
            sheet_name=sheet_name or None,
            updated_at=utcnow(),
        )
        self._call(self._store.upsert, record)
        logger.debug(
            "stored schema for %s/%s sheet=%s (%d columns)",
            workflow.key,
            node_id,
            sheet_name,
            len(record.columns),
        )
        return record

    def resolve_schema(
        self, workflow: WorkflowRef, node_id: str, sheet_name: str | None = None
    ) -> SchemaRecord | None:
        """Return the node's own schema or the first one found upstream.

        Incoming edges are walked depth-first in definition order and the
        first source holding a record wins. The target's own record is never
        written here.
        """

        direct = self.get_schema(workflow, node_id, sheet_name)
        if direct is not None:
            return direct
        graph = self._graphs.get_graph(workflow)
        if graph is None or node_id not in graph:
            return None

        visited = {node_id}
        stack = [edge.source for edge in reversed(graph.incoming(node_id))]
        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            record = self.get_schema(workflow, current, sheet_name)
            if record is not None:
                return record
            stack.extend(edge.source for edge in reversed(graph.incoming(current)))
        return None

    def promote(self, draft: WorkflowRef, persisted: WorkflowRef) -> int:
        """Move every record of a draft workflow to its persisted id."""

        moved = self._call(self._store.move, draft, persisted)
        logger.info("moved %d schema records from %s to %s", moved, draft.key, persisted.key)
        return moved

    @staticmethod
    def _call(func, *args):
        try:
            return func(*args)
        except RegistryError:
            raise
        except (OSError, LookupError) as exc:
            raise RegistryError(str(exc)) from exc
