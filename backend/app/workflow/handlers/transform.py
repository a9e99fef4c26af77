"""Processing nodes operating on row lists."""

from __future__ import annotations

import ast
import json
import math
import operator
import re
from collections.abc import Mapping
from typing import Any

from ..errors import ValidationError
from ..types import Node
from .rows import Row, extract_rows, filter_rows, sort_rows, to_number

DATA_TRANSFORM_DESCRIPTION = "Applies a pipeline of map, filter, sort, group, aggregate and join steps."
DATA_PROCESSING_DESCRIPTION = "Runs a single processing operation and explains the result."
FILTER_DESCRIPTION = "Keeps the rows matching all (or any) conditions."
SORT_DESCRIPTION = "Orders rows by one or more columns."

_FIELD_REFERENCE = re.compile(r"\$\{([^}]+)\}")
_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPERATORS = {ast.UAdd: operator.pos, ast.USub: operator.neg}


def _evaluate(node: ast.AST) -> float:
    # Constants are floats so a huge power overflows instead of building a bignum.
    if isinstance(node, ast.Expression):
        return _evaluate(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return float(node.value)
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
        return _BINARY_OPERATORS[type(node.op)](_evaluate(node.left), _evaluate(node.right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPERATORS:
        return _UNARY_OPERATORS[type(node.op)](_evaluate(node.operand))
    raise ValueError("unsupported formula element")


def evaluate_formula(formula: str, row: Mapping[str, Any]) -> float | None:
    """Evaluate an arithmetic formula such as ``${price} * ${quantity}``.

    Returns ``None`` when a referenced value is not numeric or the expression
    cannot be evaluated.
    """

    def _substitute(match: re.Match[str]) -> str:
        number = to_number(row.get(match.group(1).strip()))
        if number is None:
            raise ValueError(f"{match.group(1)} is not numeric")
        return repr(number)

    try:
        expression = _FIELD_REFERENCE.sub(_substitute, formula)
        result = _evaluate(ast.parse(expression, mode="eval"))
    except (ValueError, SyntaxError, ZeroDivisionError, OverflowError, TypeError):
        return None
    # Negative bases with fractional powers yield complex numbers.
    if not isinstance(result, float) or not math.isfinite(result):
        return None
    return result


# ---------------------------------------------------------------------------
# Pipeline steps
# ---------------------------------------------------------------------------


def apply_map(rows: list[Row], config: Mapping[str, Any]) -> list[Row]:
    mappings = config.get("mappings") or {}
    if not isinstance(mappings, Mapping):
        raise ValidationError("map step requires a mappings object")
    result = []
    for row in rows:
        mapped: Row = {}
        for target, mapping in mappings.items():
            if isinstance(mapping, str):
                mapped[target] = row.get(mapping)
            elif isinstance(mapping, Mapping) and mapping.get("formula"):
                mapped[target] = evaluate_formula(str(mapping["formula"]), row)
        result.append(mapped)
    return result


def apply_group(rows: list[Row], config: Mapping[str, Any]) -> list[Row]:
    group_by = config.get("groupBy") or []
    if isinstance(group_by, str):
        group_by = [group_by]
    groups: dict[str, Row] = {}
    for row in rows:
        key = json.dumps([row.get(field) for field in group_by], default=str)
        group = groups.get(key)
        if group is None:
            group = {field: row.get(field) for field in group_by}
            group["group"] = []
            groups[key] = group
        group["group"].append(row)
    for group in groups.values():
        group["count"] = len(group["group"])
    return list(groups.values())


def _aggregate(rows: list[Row], field: str, function: str) -> Any:
    if function == "count":
        return len(rows)
    numbers = [to_number(row.get(field)) or 0.0 for row in rows]
    if function == "sum":
        return sum(numbers)
    if function == "avg":
        return sum(numbers) / len(numbers) if numbers else 0.0
    if function == "min":
        return min(numbers) if numbers else 0.0
    if function == "max":
        return max(numbers) if numbers else 0.0
    raise ValidationError(f"unknown aggregate function: {function}")


def apply_aggregate(rows: list[Row], config: Mapping[str, Any]) -> list[Row]:
    aggregations = config.get("aggregations") or []

    def _apply(target: Row, source: list[Row]) -> Row:
        for aggregation in aggregations:
            field = aggregation.get("field")
            function = aggregation.get("function", "sum")
            output = aggregation.get("outputField") or f"{function}_{field}"
            target[output] = _aggregate(source, field, function)
        return target

    if any(isinstance(row.get("group"), list) for row in rows):
        return [_apply(dict(row), row.get("group") or []) for row in rows]
    return [_apply({}, rows)]


def apply_join(left: list[Row], right: list[Row], config: Mapping[str, Any]) -> list[Row]:
    left_field = config.get("leftField")
    right_field = config.get("rightField", left_field)
    join_type = config.get("type", "inner")
    include = list(config.get("includeFields") or [])
    if not left_field:
        raise ValidationError("join step requires leftField")
    if join_type not in ("inner", "left", "right", "full"):
        raise ValidationError(f"unknown join type: {join_type}")

    right_index: dict[str, list[Row]] = {}
    for row in right:
        right_index.setdefault(str(row.get(right_field)), []).append(row)
    left_columns = list(left[0]) if left else []

    def _joined(left_row: Row, right_row: Row | None) -> Row:
        joined = dict(left_row)
        for field in include:
            joined[field] = right_row.get(field) if right_row is not None else None
        return joined

    def _right_only(right_row: Row) -> Row:
        joined = {field: right_row.get(field) for field in include}
        for column in left_columns:
            joined.setdefault(column, None)
        return joined

    result: list[Row] = []
    if join_type == "right":
        left_index: dict[str, list[Row]] = {}
        for row in left:
            left_index.setdefault(str(row.get(left_field)), []).append(row)
        for right_row in right:
            matches = left_index.get(str(right_row.get(right_field)), [])
            if matches:
                result.extend(_joined(left_row, right_row) for left_row in matches)
            else:
                result.append(_right_only(right_row))
        return result

    for left_row in left:
        matches = right_index.get(str(left_row.get(left_field)), [])
        if matches:
            result.extend(_joined(left_row, right_row) for right_row in matches)
        elif join_type in ("left", "full"):
            result.append(_joined(left_row, None))

    if join_type == "full":
        left_keys = {str(row.get(left_field)) for row in left}
        result.extend(_right_only(row) for row in right if str(row.get(right_field)) not in left_keys)
    return result


def _step_config(step: Mapping[str, Any]) -> Mapping[str, Any]:
    config = step.get("config")
    return config if isinstance(config, Mapping) else step


def data_transform(node: Node, inputs: dict[str, Any], context) -> dict[str, Any]:
    operations = node.config.get("operations")
    if not isinstance(operations, list):
        raise ValidationError("operations must be a list")
    rows = extract_rows(inputs)
    context.emit("info", f"transforming {len(rows)} rows")

    applied = []
    for step in operations:
        kind = step.get("type")
        config = _step_config(step)
        if kind == "map":
            rows = apply_map(rows, config)
        elif kind == "filter":
            rows = filter_rows(rows, list(config.get("conditions") or []), config.get("operator", "and"))
        elif kind == "sort":
            rows = sort_rows(rows, list(config.get("sortBy") or []))
        elif kind == "group":
            rows = apply_group(rows, config)
        elif kind == "aggregate":
            rows = apply_aggregate(rows, config)
        elif kind == "join":
            secondary = inputs.get("secondaryData")
            if not isinstance(secondary, list):
                raise ValidationError("secondary data required for join operation")
            rows = apply_join(rows, [dict(row) for row in secondary], config)
        else:
            raise ValidationError(f"unknown operation type: {kind}")
        applied.append(kind)

    return {
        "data": rows,
        "rowCount": len(rows),
        "explanation": f"Applied {', '.join(applied) or 'no operations'}; produced {len(rows)} rows.",
    }


def filter_node(node: Node, inputs: dict[str, Any], context) -> dict[str, Any]:
    rows = extract_rows(inputs)
    conditions = node.config.get("conditions")
    if isinstance(conditions, Mapping):
        conditions = [conditions]
    if not isinstance(conditions, list):
        raise ValidationError("conditions must be a list")
    combinator = node.config.get("operator", "and")
    kept = filter_rows(rows, conditions, combinator)
    return {
        "data": kept,
        "rowCount": len(kept),
        "explanation": f"Kept {len(kept)} of {len(rows)} rows matching {len(conditions)} condition(s).",
    }


def sort_node(node: Node, inputs: dict[str, Any], context) -> dict[str, Any]:
    rows = extract_rows(inputs)
    sort_by = node.config.get("sortBy")
    if isinstance(sort_by, Mapping):
        sort_by = [sort_by]
    if not isinstance(sort_by, list):
        raise ValidationError("sortBy must be a list")
    ordered = sort_rows(rows, sort_by)
    fields = ", ".join(f"{spec.get('field')} {spec.get('direction', 'asc')}" for spec in sort_by)
    return {"data": ordered, "rowCount": len(ordered), "explanation": f"Sorted {len(ordered)} rows by {fields}."}


def data_processing(node: Node, inputs: dict[str, Any], context) -> dict[str, Any]:
    config = node.config
    operation = config["operation"]
    rows = extract_rows(inputs)

    if operation == "filter":
        result = filter_rows(rows, list(config.get("conditions") or []), config.get("operator", "and"))
        explanation = f"Filtered {len(rows)} rows down to {len(result)}."
    elif operation == "sort":
        result = sort_rows(rows, list(config.get("sortBy") or []))
        explanation = f"Sorted {len(result)} rows."
    elif operation == "aggregate":
        grouped = apply_group(rows, config) if config.get("groupBy") else rows
        result = apply_aggregate(grouped, config)
        for row in result:
            row.pop("group", None)
        explanation = f"Aggregated {len(rows)} rows into {len(result)}."
    elif operation == "deduplicate":
        fields = config.get("fields") or []
        seen: set[str] = set()
        result = []
        for row in rows:
            key = json.dumps([row.get(field) for field in fields] if fields else row, sort_keys=True, default=str)
            if key not in seen:
                seen.add(key)
                result.append(row)
        explanation = f"Removed {len(rows) - len(result)} duplicate rows."
    elif operation == "select":
        columns = list(config.get("columns") or [])
        result = [{column: row.get(column) for column in columns} for row in rows]
        explanation = f"Selected {len(columns)} column(s)."
    elif operation == "rename":
        mapping = config.get("mapping") or {}
        result = [{mapping.get(key, key): value for key, value in row.items()} for row in rows]
        explanation = f"Renamed {len(mapping)} column(s)."
    elif operation == "calculate":
        formulas = config.get("formulas") or {}
        result = []
        for row in rows:
            row = dict(row)
            for column, formula in formulas.items():
                row[column] = evaluate_formula(str(formula), row)
            result.append(row)
        explanation = f"Calculated {len(formulas)} column(s) for {len(result)} rows."
    else:
        raise ValidationError(f"unknown processing operation: {operation}")

    return {"data": result, "explanation": explanation, "rowCount": len(result), "operation": operation}
