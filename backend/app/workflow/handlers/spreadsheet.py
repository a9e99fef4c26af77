"""Output node writing rows into a generated workbook."""

from __future__ import annotations

import csv
import io
import json
import re
from collections.abc import Mapping
from typing import Any

from openpyxl import Workbook

from ..errors import ValidationError
from ..types import Node
from .rows import Row, is_rows

DESCRIPTION = "Writes the incoming rows to an Excel or CSV file in the file store."

SUPPORTED_FORMATS = ("xlsx", "csv")
_UNSAFE_PATH = re.compile(r"[^A-Za-z0-9._-]+")
_INVALID_SHEET_CHARS = re.compile(r"[\\/*?:\[\]]")


def _input_rows(inputs: dict[str, Any]) -> list[Row]:
    for key in ("input", "data"):
        if is_rows(inputs.get(key)):
            return list(inputs[key])
    for value in inputs.values():
        if is_rows(value) and value:
            return list(value)
    raise ValidationError("spreadsheet generator requires a list of rows as input")


def _cell(value: Any) -> Any:
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return value


def _columns(rows: list[Row]) -> list[str]:
    columns: list[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    return columns


def _sheet_rows(rows: list[Row], sheet: Mapping[str, Any]) -> list[Row]:
    criteria = sheet.get("filter")
    if not isinstance(criteria, Mapping) or not criteria:
        return rows
    return [row for row in rows if all(row.get(key) == value for key, value in criteria.items())]


def _sheet_title(name: Any, used: set[str]) -> str:
    title = _INVALID_SHEET_CHARS.sub("_", str(name or "Sheet1"))[:31] or "Sheet1"
    base, counter = title, 2
    while title in used:
        suffix = f" ({counter})"
        title = f"{base[:31 - len(suffix)]}{suffix}"
        counter += 1
    used.add(title)
    return title


def build_workbook(rows: list[Row], sheets: list[Mapping[str, Any]]) -> tuple[bytes, list[str]]:
    workbook = Workbook()
    workbook.remove(workbook.active)
    used: set[str] = set()
    for sheet in sheets:
        sheet_rows = _sheet_rows(rows, sheet)
        if not sheet_rows:
            continue
        worksheet = workbook.create_sheet(_sheet_title(sheet.get("name"), used))
        columns = _columns(sheet_rows)
        if sheet.get("includeHeaders", True) is not False:
            worksheet.append(columns)
        for row in sheet_rows:
            worksheet.append([_cell(row.get(column)) for column in columns])
    if not workbook.sheetnames:
        workbook.create_sheet("Sheet1")
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue(), list(workbook.sheetnames)


def build_csv(rows: list[Row], include_headers: bool = True) -> bytes:
    columns = _columns(rows)
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    if include_headers:
        writer.writerow(columns)
    for row in rows:
        writer.writerow(["" if row.get(column) is None else _cell(row.get(column)) for column in columns])
    return buffer.getvalue().encode("utf-8")


def spreadsheet_generator(node: Node, inputs: dict[str, Any], context) -> dict[str, Any]:
    config = node.config
    rows = _input_rows(inputs)
    file_format = str(config.get("format") or "xlsx").lower()
    if file_format not in SUPPORTED_FORMATS:
        raise ValidationError(f"unsupported spreadsheet format: {file_format}")

    filename = str(config.get("filename") or f"generated-spreadsheet.{file_format}")
    if not filename.lower().endswith(f".{file_format}"):
        filename = f"{filename}.{file_format}"
    sheets = config.get("sheets") or [{"name": "Sheet1", "includeHeaders": True}]
    if not isinstance(sheets, list):
        raise ValidationError("sheets must be a list")

    if file_format == "xlsx":
        content, sheet_names = build_workbook(rows, sheets)
    else:
        include_headers = sheets[0].get("includeHeaders", True) is not False if sheets else True
        content, sheet_names = build_csv(rows, include_headers), []

    folder = _UNSAFE_PATH.sub("-", context.workflow.key)
    path = f"generated/{folder}/{context.execution_id}/{_UNSAFE_PATH.sub('-', filename)}"
    file_id = context.require_files().upload(path, content)
    context.emit("info", f"generated {filename} with {len(rows)} rows")
    return {
        "fileId": file_id,
        "filename": filename,
        "size": len(content),
        "format": file_format,
        "sheets": sheet_names,
        "rowCount": len(rows),
    }
