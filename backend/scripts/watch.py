"""Print the status events of one execution until it finishes."""
from __future__ import annotations

import asyncio
import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.app import Config
from backend.app.realtime.client import ReconnectingStatusClient
from backend.app.workflow.types import ExecutionStatus


def status_url(execution_id: str, config: type[Config] = Config) -> str:
    host = config.STATUS_SERVER_HOST
    if host in {"0.0.0.0", ""}:
        host = "127.0.0.1"
    return f"ws://{host}:{config.STATUS_SERVER_PORT}/executions/{execution_id}"


async def watch(execution_id: str, config: type[Config] = Config) -> str | None:
    """Print events and return the final execution status."""

    client = ReconnectingStatusClient(
        status_url(execution_id, config),
        reconnect_delay=config.STATUS_RECONNECT_DELAY_SECONDS,
    )
    async with client:
        async for event in client:
            progress = f" {event.progress:.0%}" if event.progress is not None else ""
            message = f" {event.message}" if event.message else ""
            print(f"{event.kind} {event.entity_id}: {event.status}{progress}{message}")
            if event.kind == "execution" and ExecutionStatus(event.status).is_terminal:
                return event.status
    return None


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("usage: watch.py EXECUTION_ID", file=sys.stderr)
        return 2
    try:
        status = asyncio.run(watch(args[0]))
    except KeyboardInterrupt:
        return 130
    return 0 if status == ExecutionStatus.COMPLETED.value else 1


if __name__ == "__main__":
    sys.exit(main())
