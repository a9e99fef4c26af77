"""External collaborators used by node handlers: file storage and AI relay."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Protocol

import requests

from .errors import TransientError, ValidationError

logger = logging.getLogger(__name__)


class FileStore(Protocol):
    def upload(self, path: str, data: bytes) -> str: ...

    def download(self, path: str) -> bytes: ...


class AIGateway(Protocol):
    def complete(self, provider: str, model: str, system_message: str, prompt: str) -> str: ...


class LocalFileStore:
    """Stores files below a root directory on the local disk."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        candidate = (self.root / path.lstrip("/")).resolve()
        root = self.root.resolve()
        if candidate != root and root not in candidate.parents:
            raise ValidationError(f"file path escapes the storage root: {path}")
        return candidate

    def upload(self, path: str, data: bytes) -> str:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise TransientError(f"could not store {path}: {exc}") from exc
        logger.debug("stored %d bytes at %s", len(data), target)
        return path

    def download(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise ValidationError(f"file not found: {path}")
        try:
            return target.read_bytes()
        except OSError as exc:
            raise TransientError(f"could not read {path}: {exc}") from exc


class HttpAIGateway:
    """Forwards completion requests to an HTTP relay.

    The relay receives ``{provider, model, systemMessage, prompt}`` and answers
    with ``{"content": "..."}``.
    """

    def __init__(self, url: str, api_key: str | None = None, timeout: float = 60.0) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    def complete(self, provider: str, model: str, system_message: str, prompt: str) -> str:
        if not self.url:
            raise ValidationError("AI gateway URL is not configured")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload: dict[str, Any] = {
            "provider": provider,
            "model": model,
            "systemMessage": system_message,
            "prompt": prompt,
        }
        try:
            response = requests.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientError(f"AI gateway unreachable: {exc}") from exc
        except requests.RequestException as exc:
            raise ValidationError(f"AI gateway request failed: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(f"AI gateway returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise ValidationError(f"AI gateway rejected the request: HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise TransientError("AI gateway returned invalid JSON") from exc
        content = body.get("content") if isinstance(body, dict) else None
        if not isinstance(content, str):
            raise TransientError("AI gateway response has no content")
        return content
