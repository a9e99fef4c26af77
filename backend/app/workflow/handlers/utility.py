"""Utility nodes."""

from __future__ import annotations

import asyncio
from typing import Any

from ..errors import ValidationError
from ..types import Node

DESCRIPTION = "Waits before passing its inputs on unchanged."

MAX_DELAY_SECONDS = 3600.0


async def delay(node: Node, inputs: dict[str, Any], context) -> dict[str, Any]:
    seconds_value = node.config.get("seconds")
    millis_value = node.config.get("milliseconds")
    try:
        if seconds_value is None and millis_value is not None:
            seconds = float(millis_value) / 1000
        else:
            seconds = float(seconds_value if seconds_value is not None else 1.0)
    except (TypeError, ValueError):
        raise ValidationError("delay must be a number of seconds") from None
    if seconds < 0 or seconds > MAX_DELAY_SECONDS:
        raise ValidationError(f"delay must be between 0 and {MAX_DELAY_SECONDS:.0f} seconds")
    await asyncio.sleep(seconds)
    return dict(inputs)
