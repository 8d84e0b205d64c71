"""
Progress reporting for long-running ETL runs.

The ETL stages only see the ProgressSink protocol. The HTTP route backs it
with SSEProgressChannel, which streams each event to the caller as a
server-sent event the moment it is emitted:

    data: {"message": "2026-02-19 19:57:01: API Gateway invoked successfully.", "level": "success"}

    data: {"timestamp": "2026-02-19 19:57:09", "result": {...}}

Writes are fire-and-forget: nothing waits on the caller, and events emitted
after the caller disconnected are simply never read.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Protocol

from starlette.responses import StreamingResponse

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Connection": "keep-alive",
    "Cache-Control": "no-cache",
    # Disable proxy buffering (nginx) so events are delivered immediately
    "X-Accel-Buffering": "no",
}


class ProgressLevel(str, Enum):
    """Advisory severity of a progress event."""

    INFO = "info"
    SUCCESS = "success"
    WARN = "warn"
    ERROR = "error"


_LOG_LEVELS = {
    ProgressLevel.INFO: logging.INFO,
    ProgressLevel.SUCCESS: logging.INFO,
    ProgressLevel.WARN: logging.WARNING,
    ProgressLevel.ERROR: logging.ERROR,
}


def get_local_timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


@dataclass(frozen=True)
class ProgressEvent:
    message: str
    level: ProgressLevel = ProgressLevel.INFO
    timestamp: str = field(default_factory=get_local_timestamp)

    def to_payload(self) -> dict[str, str]:
        return {"message": f"{self.timestamp}: {self.message}", "level": self.level.value}


class ProgressSink(Protocol):
    """Capability handed to every ETL stage for reporting progress."""

    def emit(self, message: str, level: ProgressLevel | str = ProgressLevel.INFO) -> None: ...

    def close(self, final_payload: Any = None) -> None: ...


def format_sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


class SSEProgressChannel:
    """
    ProgressSink backed by a text/event-stream response.

    Usage:
        channel = SSEProgressChannel()
        response = channel.open()      # hand this to FastAPI
        channel.emit("Downloading TSV files from S3...")
        channel.close({"fixed_costs": 42})
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._opened = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self) -> StreamingResponse:
        """
        Create the streaming response.

        Starlette sends the status line and headers before pulling the first
        body chunk, so the caller sees a live connection straight away.
        """
        if self._opened:
            raise RuntimeError("Progress channel already opened")
        self._opened = True
        return StreamingResponse(
            self._stream(),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    def emit(self, message: str, level: ProgressLevel | str = ProgressLevel.INFO) -> None:
        level = ProgressLevel(level)
        logger.log(_LOG_LEVELS[level], message)
        if self._closed:
            logger.debug("Progress channel closed, dropping event")
            return
        self._queue.put_nowait(format_sse(ProgressEvent(message, level).to_payload()))

    def close(self, final_payload: Any = None) -> None:
        if self._closed:
            return
        if final_payload is not None:
            self._queue.put_nowait(
                format_sse({"timestamp": get_local_timestamp(), "result": final_payload})
            )
        self._closed = True
        self._queue.put_nowait(None)

    async def _stream(self) -> AsyncIterator[str]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                break
            yield chunk
