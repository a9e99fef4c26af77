"""HTTP integration node."""

from __future__ import annotations

from typing import Any

import requests

from ..errors import TransientError, ValidationError
from ..types import Node

DESCRIPTION = "Calls an external HTTP endpoint and returns its response."

ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
DEFAULT_TIMEOUT = 30.0


def api_call(node: Node, inputs: dict[str, Any], context) -> dict[str, Any]:
    """Send the configured request; the body defaults to the upstream data."""

    config = node.config
    endpoint = str(config["endpoint"])
    method = str(config.get("method") or "GET").upper()
    if method not in ALLOWED_METHODS:
        raise ValidationError(f"unsupported HTTP method: {method}")
    headers = config.get("headers") or {}
    body = config.get("body")
    if body is None and method != "GET":
        body = inputs.get("data", inputs or None)

    try:
        response = requests.request(
            method,
            endpoint,
            headers=headers,
            params=config.get("params") or None,
            json=body,
            timeout=float(config.get("timeout") or DEFAULT_TIMEOUT),
        )
    except (requests.ConnectionError, requests.Timeout) as exc:
        raise TransientError(f"{method} {endpoint} failed: {exc}") from exc
    except requests.RequestException as exc:
        raise ValidationError(f"{method} {endpoint} is not a valid request: {exc}") from exc

    if response.status_code == 429 or response.status_code >= 500:
        raise TransientError(f"{method} {endpoint} returned HTTP {response.status_code}")
    if response.status_code >= 400:
        raise ValidationError(f"{method} {endpoint} returned HTTP {response.status_code}")

    try:
        payload: Any = response.json()
    except ValueError:
        payload = response.text
    context.emit("info", f"{method} {endpoint} returned HTTP {response.status_code}")
    return {"status": response.status_code, "data": payload, "headers": dict(response.headers)}
