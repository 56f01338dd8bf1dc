"""
Live delivery of chat events to one open viewer.

The wire format is newline-delimited JSON: a {"type": "ready"} frame first,
then one {"type": "message", "message": {...}} frame per published message.
An idle stream sends {"type": "ping"} every STREAM_IDLE_SECONDS so clients
can tell a quiet thread from a dead connection.
"""
import asyncio
import json
import logging
import os
import threading
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from fastapi.encoders import jsonable_encoder

from broker import ChatBroker

logger = logging.getLogger(__name__)

STREAM_IDLE_SECONDS = float(os.getenv("CHAT_STREAM_IDLE", "15"))
MEDIA_TYPE = "application/x-ndjson"
KEEPALIVE = {"type": "ping"}


def frame(event: Any) -> bytes:
    return (json.dumps(jsonable_encoder(event)) + "\n").encode("utf-8")


class ChatStream:
    """One viewer's subscription to a thread.

    Broker callbacks may fire on worker threads; they are handed to the
    event loop that opened the stream.
    """

    def __init__(self, broker: ChatBroker, thread_id: str, idle_seconds: float = STREAM_IDLE_SECONDS):
        self.broker = broker
        self.thread_id = thread_id
        self.idle_seconds = idle_seconds
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self) -> None:
        """Queue the ready frame and register with the broker. Must run on the event loop."""
        self._loop = asyncio.get_running_loop()
        self._queue.put_nowait({"type": "ready"})
        # same synchronous step as the ready frame: nothing published after it is missed
        self._unsubscribe = self.broker.subscribe(self.thread_id, self._deliver)
        logger.debug("Stream opened for thread %s", self.thread_id)

    def _deliver(self, event: Any) -> None:
        if self._closed or self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)
        except RuntimeError:
            # the loop is gone, so is the viewer
            self.close()

    def close(self) -> bool:
        """Unregister from the broker. Only the first call does anything."""
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()
        logger.debug("Stream closed for thread %s", self.thread_id)
        return True

    async def events(self, is_disconnected: Callable[[], Awaitable[bool]]) -> AsyncIterator[bytes]:
        if self._loop is None:
            self.open()
        try:
            while not self._closed:
                try:
                    event = await asyncio.wait_for(self._queue.get(), timeout=self.idle_seconds)
                except asyncio.TimeoutError:
                    if await is_disconnected():
                        break
                    event = KEEPALIVE
                yield frame(event)
        finally:
            self.close()
