"""Input nodes reading spreadsheets, CSV files and user supplied values."""

from __future__ import annotations

import csv
import io
import itertools
import zipfile
from typing import Any

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from ..errors import ValidationError
from ..types import Node
from .rows import Row, json_safe, to_number

EXCEL_DESCRIPTION = "Reads one sheet of an uploaded Excel workbook."
CSV_DESCRIPTION = "Reads an uploaded CSV file."
USER_INPUT_DESCRIPTION = "Passes values supplied when the workflow is started."


def _headers(raw: tuple[Any, ...], has_headers: bool) -> list[str]:
    if not has_headers:
        return [f"column_{index + 1}" for index in range(len(raw))]
    headers = []
    for index, value in enumerate(raw):
        name = str(value).strip() if value not in (None, "") else f"column_{index + 1}"
        while name in headers:
            name = f"{name}_{index + 1}"
        headers.append(name)
    return headers


def _limit(config: dict[str, Any]) -> int | None:
    max_rows = config.get("maxRows")
    if max_rows in (None, ""):
        return None
    try:
        return max(int(max_rows), 0)
    except (TypeError, ValueError):
        raise ValidationError("maxRows must be an integer") from None


def excel_input(node: Node, inputs: dict[str, Any], context) -> dict[str, Any]:
    config = node.config
    file_id = str(config["fileId"])
    content = context.require_files().download(file_id)
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as exc:
        raise ValidationError(f"{file_id} is not a readable Excel workbook: {exc}") from exc

    try:
        sheet_names = list(workbook.sheetnames)
        sheet_name = config.get("selectedSheet") or config.get("sheetName") or sheet_names[0]
        if sheet_name not in sheet_names:
            raise ValidationError(f"sheet {sheet_name!r} not found in {file_id}")

        has_headers = config.get("hasHeaders", True) is not False
        limit = _limit(config)
        rows_iter = workbook[sheet_name].iter_rows(values_only=True)
        first = next(rows_iter, None)
        headers: list[str] = []
        data: list[Row] = []
        if first is not None:
            headers = _headers(first, has_headers)
            pending = [] if has_headers else [first]
            for raw in itertools.chain(pending, rows_iter):
                if limit is not None and len(data) >= limit:
                    break
                if all(value in (None, "") for value in raw):
                    continue
                data.append({header: json_safe(value) for header, value in zip(headers, raw)})
    finally:
        workbook.close()

    context.emit("info", f"read {len(data)} rows from sheet {sheet_name} of {file_id}")
    return {
        "data": data,
        "headers": headers,
        "sheetName": sheet_name,
        "sheets": sheet_names,
        "fileId": file_id,
        "rowCount": len(data),
    }


def _coerce(value: str) -> Any:
    if value == "":
        return None
    number = to_number(value)
    if number is None:
        return value
    return int(number) if number.is_integer() and "." not in value else number


def csv_input(node: Node, inputs: dict[str, Any], context) -> dict[str, Any]:
    config = node.config
    file_id = str(config["fileId"])
    content = context.require_files().download(file_id)
    try:
        text = content.decode(config.get("encoding") or "utf-8-sig")
    except (UnicodeDecodeError, LookupError) as exc:
        raise ValidationError(f"could not decode {file_id}: {exc}") from exc

    delimiter = config.get("delimiter") or ","
    has_headers = config.get("hasHeaders", True) is not False
    limit = _limit(config)
    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    first = next(reader, None)
    headers: list[str] = []
    data: list[Row] = []
    if first is not None:
        headers = _headers(tuple(first), has_headers)
        records = reader if has_headers else [first, *reader]
        for record in records:
            if limit is not None and len(data) >= limit:
                break
            if not any(cell.strip() for cell in record):
                continue
            data.append({header: _coerce(cell) for header, cell in zip(headers, record)})

    context.emit("info", f"read {len(data)} rows from {file_id}")
    return {"data": data, "headers": headers, "fileId": file_id, "rowCount": len(data)}


def user_input(node: Node, inputs: dict[str, Any], context) -> dict[str, Any]:
    values: dict[str, Any] = dict(node.config.get("defaults") or {})
    values.update(context.workflow_inputs)
    values.update(inputs)
    missing = [name for name in node.config.get("requiredFields") or [] if values.get(name) in (None, "")]
    if missing:
        raise ValidationError(f"missing user input: {', '.join(missing)}")
    return values
