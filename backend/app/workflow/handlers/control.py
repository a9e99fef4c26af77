"""Control flow nodes: merge, conditional branch and loop."""

from __future__ import annotations

from typing import Any

from ..errors import ValidationError
from ..types import Node
from .rows import Row, extract_rows, is_rows, matches

MERGE_DESCRIPTION = "Combines the outputs of several upstream nodes."
BRANCH_DESCRIPTION = "Splits rows into true and false outputs by a condition."
LOOP_DESCRIPTION = "Iterates over the incoming rows in batches."


def merge(node: Node, inputs: dict[str, Any], context) -> dict[str, Any]:
    strategy = node.config.get("strategy", "concat")
    sources = context.upstream or {"inputs": inputs}

    if strategy == "concat":
        rows: list[Row] = []
        for output in sources.values():
            candidate = output.get("data")
            if is_rows(candidate):
                rows.extend(dict(row) for row in candidate)
        return {"data": rows, "rowCount": len(rows), "sources": list(sources)}
    if strategy == "object":
        merged: dict[str, Any] = {}
        for output in sources.values():
            merged.update(output)
        merged["sources"] = list(sources)
        return merged
    raise ValidationError(f"unknown merge strategy: {strategy}")


def conditional_branch(node: Node, inputs: dict[str, Any], context) -> dict[str, Any]:
    condition = {
        "field": node.config["field"],
        "operator": node.config.get("operator", "equals"),
        "value": node.config.get("value"),
    }
    rows = extract_rows(inputs, required=False)
    if not rows:
        result = matches(inputs, condition)
        return {"result": result, "true": inputs if result else None, "false": None if result else inputs}

    passed = [row for row in rows if matches(row, condition)]
    failed = [row for row in rows if not matches(row, condition)]
    return {"result": bool(passed), "true": passed, "false": failed, "data": passed}


def loop(node: Node, inputs: dict[str, Any], context) -> dict[str, Any]:
    rows = extract_rows(inputs, required=False)
    try:
        batch_size = max(int(node.config.get("batchSize") or 1), 1)
        max_iterations = int(node.config.get("maxIterations") or 0)
    except (TypeError, ValueError):
        raise ValidationError("batchSize and maxIterations must be integers") from None

    batches = [rows[index:index + batch_size] for index in range(0, len(rows), batch_size)]
    if max_iterations > 0:
        batches = batches[:max_iterations]
    processed = [row for batch in batches for row in batch]
    return {"data": processed, "batches": batches, "iterations": len(batches), "rowCount": len(processed)}
