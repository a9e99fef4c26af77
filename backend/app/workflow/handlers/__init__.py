"""Collection of built-in node handlers provided by the platform."""
from __future__ import annotations

from ..executor import HandlerSpec
from ..types import NodeType
from . import ai, control, file_input, integration, spreadsheet, transform, utility

_BUILTINS: list[HandlerSpec] = [
    HandlerSpec(
        node_type=NodeType.EXCEL_INPUT,
        handler=file_input.excel_input,
        required_config=("fileId",),
        description=file_input.EXCEL_DESCRIPTION,
    ),
    HandlerSpec(
        node_type=NodeType.CSV_INPUT,
        handler=file_input.csv_input,
        required_config=("fileId",),
        description=file_input.CSV_DESCRIPTION,
    ),
    HandlerSpec(
        node_type=NodeType.USER_INPUT,
        handler=file_input.user_input,
        description=file_input.USER_INPUT_DESCRIPTION,
    ),
    HandlerSpec(
        node_type=NodeType.DATA_TRANSFORM,
        handler=transform.data_transform,
        required_config=("operations",),
        description=transform.DATA_TRANSFORM_DESCRIPTION,
    ),
    HandlerSpec(
        node_type=NodeType.DATA_PROCESSING,
        handler=transform.data_processing,
        required_config=("operation",),
        description=transform.DATA_PROCESSING_DESCRIPTION,
    ),
    HandlerSpec(
        node_type=NodeType.FILTER,
        handler=transform.filter_node,
        required_config=("conditions",),
        description=transform.FILTER_DESCRIPTION,
    ),
    HandlerSpec(
        node_type=NodeType.SORT,
        handler=transform.sort_node,
        required_config=("sortBy",),
        description=transform.SORT_DESCRIPTION,
    ),
    HandlerSpec(
        node_type=NodeType.AI_ANALYSIS,
        handler=ai.ai_analysis,
        description=ai.AI_ANALYSIS_DESCRIPTION,
    ),
    HandlerSpec(
        node_type=NodeType.ASK_AI,
        handler=ai.ask_ai,
        required_config=("prompt",),
        description=ai.ASK_AI_DESCRIPTION,
    ),
    HandlerSpec(
        node_type=NodeType.SPREADSHEET_GENERATOR,
        handler=spreadsheet.spreadsheet_generator,
        description=spreadsheet.DESCRIPTION,
    ),
    HandlerSpec(
        node_type=NodeType.API_CALL,
        handler=integration.api_call,
        required_config=("endpoint",),
        description=integration.DESCRIPTION,
    ),
    HandlerSpec(
        node_type=NodeType.MERGE,
        handler=control.merge,
        description=control.MERGE_DESCRIPTION,
    ),
    HandlerSpec(
        node_type=NodeType.CONDITIONAL_BRANCH,
        handler=control.conditional_branch,
        required_config=("field",),
        description=control.BRANCH_DESCRIPTION,
    ),
    HandlerSpec(
        node_type=NodeType.LOOP,
        handler=control.loop,
        description=control.LOOP_DESCRIPTION,
    ),
    HandlerSpec(
        node_type=NodeType.DELAY,
        handler=utility.delay,
        description=utility.DESCRIPTION,
    ),
]


def get_builtin_handlers() -> list[HandlerSpec]:
    """Return a copy of the built-in handler registrations."""

    return list(_BUILTINS)


def find_builtin(node_type: NodeType | str) -> HandlerSpec | None:
    """Return the built-in handler for a node type, if available."""

    for builtin in _BUILTINS:
        if builtin.node_type == node_type:
            return builtin
    return None
