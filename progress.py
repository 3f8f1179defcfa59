import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional, Protocol

from models import ProgressUpdate


logger = logging.getLogger(__name__)

CONNECTING = "Connecting…"
SORTING = "Sorting…"
FILTERING = "Filtering results…"
COMPLETE = "Complete"


class ProgressObserver(Protocol):
    def report(self, status: str, count: Optional[int] = None) -> None:
        ...


class NullProgress:
    """Observer used when nobody listens"""

    def report(self, status: str, count: Optional[int] = None) -> None:
        pass


def format_event(event: str, data: Dict[str, Any]) -> str:
    """Render one server-sent event frame"""
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


class ProgressChannel:
    """Queue of progress events for one streaming request.

    Every report becomes a `progress` event. The stream ends with exactly one
    terminal event, `complete` or `error`; anything reported afterwards is
    dropped.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def report(self, status: str, count: Optional[int] = None) -> None:
        if self._closed:
            logger.debug("Dropping progress after stream closed: %s", status)
            return
        update = ProgressUpdate(status=status, count=count)
        self._queue.put_nowait(("progress", update.model_dump(by_alias=True)))

    def _finish(self, event: str, data: Dict[str, Any]) -> bool:
        if self._closed:
            logger.debug("Stream already terminated, ignoring %s event", event)
            return False
        self._closed = True
        self._queue.put_nowait((event, data))
        return True

    def complete(self, data: Dict[str, Any]) -> bool:
        return self._finish("complete", data)

    def fail(self, message: str) -> bool:
        return self._finish("error", {"error": message})

    async def stream(self) -> AsyncIterator[str]:
        """Yield SSE frames until the terminal event has been sent"""
        while True:
            event, data = await self._queue.get()
            yield format_event(event, data)
            if event != "progress":
                break
