"""Server-Sent Events framing for operation streams."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from sse_starlette.sse import EventSourceResponse

from dockpilot.streaming.operations import OperationStream, OperationStreamController

_log = logging.getLogger(__name__)

SSE_HEADERS: dict[str, str] = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def operation_response(
    controller: OperationStreamController, stream: OperationStream
) -> EventSourceResponse:
    """Stream an operation's events; a client that goes away only detaches."""

    async def _events() -> AsyncIterator[dict[str, str]]:
        try:
            async for event in stream.outbox:
                yield {"data": event.to_json()}
        finally:
            if not stream.finished:
                _log.debug("SSE consumer for operation %s went away", stream.operation_id)
                controller.detach(stream.operation_id)

    return EventSourceResponse(_events(), headers=SSE_HEADERS, sep="\n")
