"""Tests for node dispatch, timeouts and error classification."""

from __future__ import annotations

import asyncio
import threading

import pytest

from backend.app.workflow.errors import (
    FatalError,
    HandlerNotFoundError,
    TransientError,
    ValidationError,
)
from backend.app.workflow.executor import HandlerSpec, NodeContext, NodeExecutor
from backend.app.workflow.handlers import find_builtin, get_builtin_handlers
from backend.app.workflow.types import DataType, Node, NodeType, PersistedRef


def _context(node_id: str = "n1", **kwargs) -> NodeContext:
    return NodeContext(workflow=PersistedRef(1), execution_id="exec-1", node_id=node_id, **kwargs)


def test_every_node_type_has_a_builtin_handler():
    registered = {spec.node_type for spec in get_builtin_handlers()}
    assert registered == set(NodeType)
    assert find_builtin("filter").required_config == ("conditions",)
    assert find_builtin(NodeType.DELAY).description


def test_handlers_must_target_known_node_types():
    with pytest.raises(ValueError):
        NodeExecutor([HandlerSpec(node_type="teleport", handler=lambda *args: {})])


async def test_missing_handler_is_a_validation_error():
    executor = NodeExecutor([])
    with pytest.raises(HandlerNotFoundError):
        await executor.execute(Node("n1", NodeType.FILTER), {}, _context())
    assert issubclass(HandlerNotFoundError, ValidationError)


async def test_missing_required_config_is_rejected():
    executor = NodeExecutor(get_builtin_handlers())
    node = Node("n1", NodeType.ASK_AI, config={"prompt": ""})
    with pytest.raises(ValidationError, match="prompt"):
        await executor.execute(node, {}, _context())


async def test_sync_handler_output_and_schema():
    def handler(node, inputs, context):
        context.emit("info", "hello")
        return {"data": [{"amount": 1, "name": "a"}, {"amount": 2, "name": None}], "sheetName": "Q1"}

    messages = []
    executor = NodeExecutor([HandlerSpec(NodeType.USER_INPUT, handler)])
    output = await executor.execute(
        Node("n1", NodeType.USER_INPUT), {}, _context(log=lambda level, message: messages.append(message))
    )

    assert output.values["sheetName"] == "Q1"
    assert output.sheet_name == "Q1"
    assert [(column.name, column.type) for column in output.schema] == [
        ("amount", DataType.NUMBER),
        ("name", DataType.STRING),
    ]
    assert output.duration_ms >= 0
    assert messages == ["hello"]


async def test_async_handler_non_mapping_result_is_wrapped():
    async def handler(node, inputs, context):
        return 42

    executor = NodeExecutor([HandlerSpec(NodeType.DELAY, handler)])
    output = await executor.execute(Node("n1", NodeType.DELAY), {}, _context())
    assert output.values == {"result": 42}
    assert output.schema is None


async def test_timeout_is_transient():
    async def handler(node, inputs, context):
        await asyncio.sleep(1)
        return {}

    executor = NodeExecutor([HandlerSpec(NodeType.DELAY, handler)], timeout=0.05)
    with pytest.raises(TransientError, match="timed out"):
        await executor.execute(Node("n1", NodeType.DELAY), {}, _context())


async def test_timed_out_sync_handler_is_not_started_twice():
    release = threading.Event()
    calls = []

    def handler(node, inputs, context):
        calls.append(context.execution_id)
        release.wait(5)
        return {"uploaded": len(calls)}

    executor = NodeExecutor([HandlerSpec(NodeType.SPREADSHEET_GENERATOR, handler)], timeout=0.05)
    node = Node("n1", NodeType.SPREADSHEET_GENERATOR)
    try:
        with pytest.raises(TransientError, match="timed out"):
            await executor.execute(node, {}, _context())
        for _ in range(100):
            if calls:
                break
            await asyncio.sleep(0.01)
        with pytest.raises(FatalError, match="still running"):
            await executor.execute(node, {}, _context())
        assert calls == ["exec-1"]
    finally:
        release.set()

    for _ in range(100):
        if not executor._busy:
            break
        await asyncio.sleep(0.01)
    again = await executor.execute(node, {}, _context())
    assert again.values == {"uploaded": 2}


async def test_unexpected_exception_is_fatal():
    def handler(node, inputs, context):
        return {}["missing"]

    executor = NodeExecutor([HandlerSpec(NodeType.SORT, handler)])
    with pytest.raises(FatalError, match="KeyError"):
        await executor.execute(Node("n1", NodeType.SORT), {}, _context())


async def test_node_errors_pass_through_unchanged():
    def handler(node, inputs, context):
        raise TransientError("upstream busy")

    executor = NodeExecutor([HandlerSpec(NodeType.API_CALL, handler)])
    with pytest.raises(TransientError, match="upstream busy"):
        await executor.execute(Node("n1", NodeType.API_CALL), {}, _context())


def test_context_requires_collaborators():
    context = _context()
    with pytest.raises(ValidationError, match="file store"):
        context.require_files()
    with pytest.raises(ValidationError, match="AI gateway"):
        context.require_ai()
