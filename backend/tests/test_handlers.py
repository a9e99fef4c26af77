"""Tests for the built-in node handlers."""

from __future__ import annotations

import io
from datetime import datetime

import pytest
import requests
from openpyxl import Workbook, load_workbook

from backend.app.workflow.errors import TransientError, ValidationError
from backend.app.workflow.executor import NodeContext
from backend.app.workflow import gateways
from backend.app.workflow.gateways import HttpAIGateway, LocalFileStore
from backend.app.workflow.handlers import ai, control, file_input, integration, spreadsheet, transform
from backend.app.workflow.handlers.rows import filter_rows, sort_rows, to_number
from backend.app.workflow.types import Node, NodeType, PersistedRef

SALES = [
    {"region": "north", "amount": 120, "product": "A"},
    {"region": "south", "amount": 80, "product": "B"},
    {"region": "north", "amount": 300, "product": "B"},
    {"region": "east", "amount": None, "product": "A"},
]


class MemoryFileStore:
    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}

    def upload(self, path: str, data: bytes) -> str:
        self.files[path] = data
        return path

    def download(self, path: str) -> bytes:
        try:
            return self.files[path]
        except KeyError:
            raise ValidationError(f"file not found: {path}") from None


class RecordingAI:
    def __init__(self, reply: str = "ok") -> None:
        self.reply = reply
        self.calls: list[tuple[str, str, str, str]] = []

    def complete(self, provider, model, system_message, prompt):
        self.calls.append((provider, model, system_message, prompt))
        return self.reply


@pytest.fixture()
def files():
    return MemoryFileStore()


@pytest.fixture()
def context(files):
    return NodeContext(workflow=PersistedRef(7), execution_id="exec-1", node_id="n", files=files, ai=RecordingAI())


def _node(node_type: NodeType, **config) -> Node:
    return Node("n", node_type, config=config)


# -- rows --------------------------------------------------------------------


def test_to_number_rejects_non_finite_values():
    assert to_number("12.5") == 12.5
    assert to_number(True) is None
    assert to_number("inf") is None
    assert to_number(float("nan")) is None


def test_filter_rows_operators():
    assert len(filter_rows(SALES, [{"field": "amount", "operator": "greaterThan", "value": "100"}])) == 2
    assert len(filter_rows(SALES, [{"field": "amount", "operator": "isEmpty"}])) == 1
    assert len(filter_rows(SALES, [{"field": "product", "operator": "contains", "value": "A"}])) == 2
    either = filter_rows(
        SALES,
        [{"field": "region", "value": "south"}, {"field": "region", "value": "east"}],
        combinator="or",
    )
    assert [row["region"] for row in either] == ["south", "east"]
    with pytest.raises(ValidationError):
        filter_rows(SALES, [{"field": "amount", "operator": "between"}])


@pytest.mark.parametrize(
    "operator, value, expected",
    [
        ("equals", "NORTH", ["north", "north"]),
        ("notEquals", "North", ["south", "east"]),
        ("contains", "OUT", ["south"]),
        ("startsWith", "No", ["north", "north"]),
        ("endsWith", "ST", ["east"]),
    ],
)
def test_filter_rows_text_operators_ignore_case(operator, value, expected):
    matched = filter_rows(SALES, [{"field": "region", "operator": operator, "value": value}])
    assert [row["region"] for row in matched] == expected


def test_filter_rows_between_and_dates():
    assert [row["amount"] for row in filter_rows(SALES, [{"field": "amount", "operator": "between", "value": "80, 120"}])] == [120, 80]
    assert len(filter_rows(SALES, [{"field": "amount", "operator": "between", "value": [100, 500]}])) == 2
    with pytest.raises(ValidationError):
        filter_rows(SALES, [{"field": "amount", "operator": "between", "value": "low,high"}])

    orders = [
        {"id": 1, "placed": "2024-01-05"},
        {"id": 2, "placed": datetime(2024, 3, 1, 9, 30)},
        {"id": 3, "placed": "2024-06-30T12:00:00Z"},
        {"id": 4, "placed": "not a date"},
        {"id": 5, "placed": None},
    ]
    before = filter_rows(orders, [{"field": "placed", "operator": "before", "value": "2024-03-01"}])
    after = filter_rows(orders, [{"field": "placed", "operator": "after", "value": "2024-03-01"}])
    assert [row["id"] for row in before] == [1]
    assert [row["id"] for row in after] == [2, 3]


def test_sort_rows_keeps_missing_values_last():
    ascending = sort_rows(SALES, [{"field": "amount"}])
    assert [row["amount"] for row in ascending] == [80, 120, 300, None]
    descending = sort_rows(SALES, [{"field": "amount", "direction": "desc"}])
    assert [row["amount"] for row in descending] == [300, 120, 80, None]


# -- inputs ------------------------------------------------------------------


def _workbook_bytes() -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Orders"
    sheet.append(["id", "amount", "region"])
    sheet.append([1, 120, "north"])
    sheet.append([None, None, None])
    sheet.append([2, 80, "south"])
    workbook.create_sheet("Other").append(["x"])
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def test_excel_input_reads_selected_sheet(files, context):
    files.upload("uploads/orders.xlsx", _workbook_bytes())
    result = file_input.excel_input(_node(NodeType.EXCEL_INPUT, fileId="uploads/orders.xlsx"), {}, context)

    assert result["sheetName"] == "Orders"
    assert result["sheets"] == ["Orders", "Other"]
    assert result["headers"] == ["id", "amount", "region"]
    assert result["data"] == [
        {"id": 1, "amount": 120, "region": "north"},
        {"id": 2, "amount": 80, "region": "south"},
    ]

    limited = file_input.excel_input(
        _node(NodeType.EXCEL_INPUT, fileId="uploads/orders.xlsx", maxRows=1), {}, context
    )
    assert limited["rowCount"] == 1


def test_excel_input_rejects_unknown_sheet_and_bad_files(files, context):
    files.upload("uploads/orders.xlsx", _workbook_bytes())
    with pytest.raises(ValidationError, match="not found"):
        file_input.excel_input(
            _node(NodeType.EXCEL_INPUT, fileId="uploads/orders.xlsx", selectedSheet="Missing"), {}, context
        )
    files.upload("uploads/broken.xlsx", b"not a workbook")
    with pytest.raises(ValidationError):
        file_input.excel_input(_node(NodeType.EXCEL_INPUT, fileId="uploads/broken.xlsx"), {}, context)


def test_csv_input_coerces_numbers(files, context):
    files.upload("orders.csv", "id;amount;note\n1;12.5;first\n2;7;\n".encode("utf-8"))
    result = file_input.csv_input(_node(NodeType.CSV_INPUT, fileId="orders.csv", delimiter=";"), {}, context)
    assert result["data"] == [
        {"id": 1, "amount": 12.5, "note": "first"},
        {"id": 2, "amount": 7, "note": None},
    ]


def test_user_input_merges_defaults_and_checks_required(context):
    context.workflow_inputs = {"month": "May"}
    node = _node(NodeType.USER_INPUT, defaults={"year": 2024, "month": "Jan"}, requiredFields=["month"])
    assert file_input.user_input(node, {}, context) == {"year": 2024, "month": "May"}

    context.workflow_inputs = {}
    strict = _node(NodeType.USER_INPUT, requiredFields=["owner"])
    with pytest.raises(ValidationError, match="owner"):
        file_input.user_input(strict, {}, context)


# -- processing --------------------------------------------------------------


def test_data_transform_pipeline(context):
    node = _node(
        NodeType.DATA_TRANSFORM,
        operations=[
            {"type": "filter", "config": {"conditions": [{"field": "amount", "operator": "isNotEmpty"}]}},
            {"type": "group", "config": {"groupBy": ["region"]}},
            {
                "type": "aggregate",
                "config": {"aggregations": [{"field": "amount", "function": "sum", "outputField": "total"}]},
            },
            {"type": "sort", "config": {"sortBy": [{"field": "total", "direction": "desc"}]}},
        ],
    )
    result = transform.data_transform(node, {"data": SALES}, context)
    assert [(row["region"], row["total"], row["count"]) for row in result["data"]] == [
        ("north", 420.0, 2),
        ("south", 80.0, 1),
    ]


def test_data_transform_map_formula_and_join(context):
    mapped = transform.apply_map(
        [{"price": 2, "qty": 3}, {"price": "x", "qty": 1}],
        {"mappings": {"total": {"formula": "${price} * ${qty}"}, "price": "price"}},
    )
    assert mapped == [{"total": 6.0, "price": 2}, {"total": None, "price": "x"}]

    node = _node(
        NodeType.DATA_TRANSFORM,
        operations=[{"type": "join", "config": {"leftField": "product", "includeFields": ["label"], "type": "left"}}],
    )
    secondary = [{"product": "A", "label": "Apples"}]
    result = transform.data_transform(node, {"data": SALES[:2], "secondaryData": secondary}, context)
    assert [row["label"] for row in result["data"]] == ["Apples", None]

    with pytest.raises(ValidationError, match="secondary data"):
        transform.data_transform(node, {"data": SALES}, context)


def test_evaluate_formula_refuses_arbitrary_code():
    assert transform.evaluate_formula("${a} / 0", {"a": 1}) is None
    assert transform.evaluate_formula("__import__('os')", {}) is None


@pytest.mark.parametrize("formula", ["9 ** 9 ** 9", "10 ** 400", "(-8) ** 0.5", "1e308 * 10"])
def test_evaluate_formula_rejects_unbounded_results(formula):
    assert transform.evaluate_formula(formula, {}) is None


def test_evaluate_formula_powers_stay_float():
    assert transform.evaluate_formula("${x} ** 2 + 2 ** 3", {"x": 3}) == 17.0
    assert transform.apply_map([{"x": 2}], {"mappings": {"big": {"formula": "${x} ** 99999"}}}) == [{"big": None}]


def test_data_processing_operations(context):
    deduped = transform.data_processing(
        _node(NodeType.DATA_PROCESSING, operation="deduplicate", fields=["region"]), {"data": SALES}, context
    )
    assert [row["region"] for row in deduped["data"]] == ["north", "south", "east"]
    assert deduped["operation"] == "deduplicate"

    aggregated = transform.data_processing(
        _node(
            NodeType.DATA_PROCESSING,
            operation="aggregate",
            groupBy=["product"],
            aggregations=[{"field": "amount", "function": "max"}],
        ),
        {"data": SALES},
        context,
    )
    assert aggregated["data"] == [
        {"product": "A", "count": 2, "max_amount": 120.0},
        {"product": "B", "count": 2, "max_amount": 300.0},
    ]

    with pytest.raises(ValidationError):
        transform.data_processing(_node(NodeType.DATA_PROCESSING, operation="explode"), {"data": SALES}, context)


def test_filter_and_sort_nodes(context):
    kept = transform.filter_node(
        _node(NodeType.FILTER, conditions=[{"field": "region", "value": "north"}]), {"data": SALES}, context
    )
    assert kept["rowCount"] == 2
    ordered = transform.sort_node(_node(NodeType.SORT, sortBy={"field": "product"}), {"data": SALES}, context)
    assert [row["product"] for row in ordered["data"]] == ["A", "A", "B", "B"]
    with pytest.raises(ValidationError, match="no tabular data"):
        transform.filter_node(_node(NodeType.FILTER, conditions=[]), {"value": 1}, context)


# -- ai ----------------------------------------------------------------------


def test_ai_analysis_statistics(context):
    rows = [{"value": number} for number in (10, 11, 12, 13, 14, 15, 16, 17, 18, 100)]
    result = ai.ai_analysis(
        _node(NodeType.AI_ANALYSIS, analysisOptions={"detectOutliers": True, "findPatterns": True}),
        {"data": rows},
        context,
    )
    stats = result["analysis"]["statistics"]["value"]
    assert stats["count"] == 10
    assert stats["min"] == 10 and stats["max"] == 100
    assert stats["outliers"] == [100.0]
    assert stats["pattern"]["pattern"] == "increasing"
    assert result["analysis"]["status"] == "success"


def test_ai_analysis_without_numbers_warns(context):
    result = ai.ai_analysis(_node(NodeType.AI_ANALYSIS), {"data": [{"name": "x"}]}, context)
    assert result["analysis"]["status"] == "warning"


def test_ask_ai_builds_prompt_and_uses_default_model(context):
    result = ai.ask_ai(
        _node(NodeType.ASK_AI, prompt="Summarise {{input}}", provider="anthropic"),
        {"data": [{"a": 1}]},
        context,
    )
    provider, model, _, prompt = context.ai.calls[0]
    assert (provider, model) == ("anthropic", ai.DEFAULT_MODELS["anthropic"])
    assert prompt == 'Summarise [{"a": 1}]'
    assert result == {"response": "ok", "provider": "anthropic", "model": model}

    with pytest.raises(ValidationError):
        ai.ask_ai(_node(NodeType.ASK_AI, prompt="hi", provider="unknown"), {}, context)


# -- output ------------------------------------------------------------------


def test_spreadsheet_generator_writes_xlsx(files, context):
    node = _node(
        NodeType.SPREADSHEET_GENERATOR,
        filename="report",
        sheets=[{"name": "North", "filter": {"region": "north"}}, {"name": "All"}],
    )
    result = spreadsheet.spreadsheet_generator(node, {"data": SALES}, context)

    assert result["filename"] == "report.xlsx"
    assert result["fileId"] == "generated/7/exec-1/report.xlsx"
    assert result["sheets"] == ["North", "All"]
    workbook = load_workbook(io.BytesIO(files.files[result["fileId"]]))
    north = list(workbook["North"].iter_rows(values_only=True))
    assert north[0] == ("region", "amount", "product")
    assert len(north) == 3


def test_spreadsheet_generator_csv_and_validation(files, context):
    node = _node(NodeType.SPREADSHEET_GENERATOR, format="csv", filename="out.csv")
    result = spreadsheet.spreadsheet_generator(node, {"input": SALES[:1]}, context)
    assert files.files[result["fileId"]].decode("utf-8").splitlines() == ["region,amount,product", "north,120,A"]

    with pytest.raises(ValidationError, match="list of rows"):
        spreadsheet.spreadsheet_generator(node, {"data": "nope"}, context)
    with pytest.raises(ValidationError, match="format"):
        spreadsheet.spreadsheet_generator(_node(NodeType.SPREADSHEET_GENERATOR, format="pdf"), {"data": SALES}, context)


# -- control -----------------------------------------------------------------


def test_merge_concatenates_upstream_rows(context):
    context.upstream = {"a": {"data": SALES[:1]}, "b": {"data": SALES[1:2]}}
    result = control.merge(_node(NodeType.MERGE), {}, context)
    assert result["rowCount"] == 2
    assert result["sources"] == ["a", "b"]

    merged = control.merge(_node(NodeType.MERGE, strategy="object"), {}, context)
    assert merged["data"] == SALES[1:2]


def test_conditional_branch_splits_rows(context):
    result = control.conditional_branch(
        _node(NodeType.CONDITIONAL_BRANCH, field="amount", operator="greaterThan", value=100),
        {"data": SALES},
        context,
    )
    assert [row["amount"] for row in result["true"]] == [120, 300]
    assert len(result["false"]) == 2
    assert result["result"] is True


def test_loop_batches_rows(context):
    result = control.loop(_node(NodeType.LOOP, batchSize=3, maxIterations=1), {"data": SALES}, context)
    assert result["iterations"] == 1
    assert result["rowCount"] == 3


# -- integration -------------------------------------------------------------


class _Response:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = {"Content-Type": "application/json"}
        self.text = ""

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def test_api_call_posts_upstream_data(monkeypatch, context):
    calls = []

    def fake_request(method, url, **kwargs):
        calls.append((method, url, kwargs))
        return _Response(200, {"ok": True})

    monkeypatch.setattr(integration.requests, "request", fake_request)
    result = integration.api_call(
        _node(NodeType.API_CALL, endpoint="https://example.test/hook", method="post"),
        {"data": SALES[:1]},
        context,
    )
    assert result["status"] == 200
    assert result["data"] == {"ok": True}
    method, url, kwargs = calls[0]
    assert method == "POST"
    assert kwargs["json"] == SALES[:1]


@pytest.mark.parametrize(
    ("outcome", "expected"),
    [
        (_Response(503), TransientError),
        (_Response(429), TransientError),
        (_Response(404), ValidationError),
        (requests.ConnectionError("refused"), TransientError),
    ],
)
def test_api_call_classifies_failures(monkeypatch, context, outcome, expected):
    def fake_request(method, url, **kwargs):
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(integration.requests, "request", fake_request)
    with pytest.raises(expected):
        integration.api_call(_node(NodeType.API_CALL, endpoint="https://example.test"), {}, context)


# -- file store --------------------------------------------------------------


def test_local_file_store_stays_below_root(tmp_path):
    store = LocalFileStore(tmp_path)
    assert store.upload("a/b.txt", b"data") == "a/b.txt"
    assert store.download("a/b.txt") == b"data"
    with pytest.raises(ValidationError):
        store.download("../outside.txt")
    with pytest.raises(ValidationError):
        store.download("missing.txt")


# -- AI gateway --------------------------------------------------------------


def test_http_ai_gateway_posts_prompt(monkeypatch):
    calls = []

    def fake_post(url, **kwargs):
        calls.append((url, kwargs))
        return _Response(200, {"content": "Sales grew."})

    monkeypatch.setattr(gateways.requests, "post", fake_post)
    gateway = HttpAIGateway("https://relay.test/complete", api_key="secret", timeout=5)

    assert gateway.complete("openai", "gpt-4o", "Be brief.", "Summarise") == "Sales grew."
    url, kwargs = calls[0]
    assert url == "https://relay.test/complete"
    assert kwargs["json"]["systemMessage"] == "Be brief."
    assert kwargs["headers"]["Authorization"] == "Bearer secret"
    assert kwargs["timeout"] == 5


@pytest.mark.parametrize(
    ("outcome", "expected"),
    [
        (_Response(502), TransientError),
        (_Response(401), ValidationError),
        (_Response(200, {"answer": "?"}), TransientError),
        (requests.Timeout("slow"), TransientError),
    ],
)
def test_http_ai_gateway_classifies_failures(monkeypatch, outcome, expected):
    def fake_post(url, **kwargs):
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(gateways.requests, "post", fake_post)
    with pytest.raises(expected):
        HttpAIGateway("https://relay.test/complete").complete("openai", "gpt-4o", "", "hi")


def test_http_ai_gateway_requires_url():
    with pytest.raises(ValidationError, match="not configured"):
        HttpAIGateway("").complete("openai", "gpt-4o", "", "hi")
