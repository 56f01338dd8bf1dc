"""
Client side of the chat: one reconciliation rule for pushed and polled messages.

Both the live stream and the polling fallback can deliver the same message,
so everything goes through merge_messages, which keeps one copy per id in
creation order. A sender never adds its own message locally; it shows up
through the stream or the next poll like anyone else's.
"""
import json
import logging
import os
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List

import httpx

logger = logging.getLogger(__name__)

POLL_INTERVAL = float(os.getenv("CHAT_POLL_INTERVAL", "2.5"))
# a few missed keepalive pings and the stream is treated as dead
STREAM_READ_TIMEOUT = float(os.getenv("CHAT_STREAM_READ_TIMEOUT", "45"))

Message = Dict[str, Any]


def _created_at(message: Message) -> datetime:
    value = message.get("created_at")
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def merge_messages(current: Iterable[Message], incoming: Iterable[Message]) -> List[Message]:
    merged = list(current)
    seen = {m["id"] for m in merged}
    for message in incoming:
        if message["id"] in seen:
            continue
        seen.add(message["id"])
        merged.append(message)
    merged.sort(key=lambda m: (_created_at(m), m["id"]))
    return merged


class ChatFeed:
    """Messages currently shown for one thread."""

    def __init__(self, messages: Iterable[Message] = ()):
        self.messages: List[Message] = merge_messages([], messages)

    def ids(self) -> List[str]:
        return [m["id"] for m in self.messages]

    def _merge(self, incoming: Iterable[Message]) -> bool:
        before = len(self.messages)
        self.messages = merge_messages(self.messages, incoming)
        return len(self.messages) != before

    def apply_event(self, event: Dict[str, Any]) -> bool:
        """Apply one pushed frame. Returns True if a new message was added."""
        if event.get("type") != "message" or not event.get("message"):
            return False
        return self._merge([event["message"]])

    def apply_poll(self, messages: Iterable[Message]) -> bool:
        return self._merge(messages)


class ChatClient:
    """Follows one thread over HTTP, falling back to polling when the stream is unavailable."""

    def __init__(self, http: httpx.Client, thread_id: str, poll_interval: float = POLL_INTERVAL,
                 sleep: Callable[[float], None] = time.sleep):
        self.http = http
        self.thread_id = thread_id
        self.poll_interval = poll_interval
        self._sleep = sleep

    @property
    def _base(self) -> str:
        return f"/api/chat/threads/{self.thread_id}"

    def fetch(self) -> List[Message]:
        response = self.http.get(f"{self._base}/messages")
        response.raise_for_status()
        return response.json()["messages"]

    def send(self, content: str) -> Message:
        response = self.http.post(f"{self._base}/messages", json={"content": content})
        response.raise_for_status()
        return response.json()["message"]

    def stream_events(self) -> Iterator[Dict[str, Any]]:
        with self.http.stream("GET", f"{self._base}/stream",
                              timeout=httpx.Timeout(10.0, read=STREAM_READ_TIMEOUT)) as response:
            response.raise_for_status()
            for line in response.iter_lines():
                if line.strip():
                    yield json.loads(line)

    def poll(self, feed: ChatFeed) -> bool:
        try:
            return feed.apply_poll(self.fetch())
        except httpx.HTTPError as exc:
            logger.warning("Polling thread %s failed: %s", self.thread_id, exc)
            return False

    def follow(self, feed: ChatFeed, stop: Callable[[], bool]) -> None:
        """Keep `feed` current until `stop()` is true."""
        self.poll(feed)
        try:
            for event in self.stream_events():
                feed.apply_event(event)
                if stop():
                    return
        except (httpx.HTTPError, ValueError) as exc:
            logger.info("Live stream for thread %s unavailable (%s), polling every %.1fs",
                        self.thread_id, exc, self.poll_interval)
        while not stop():
            self.poll(feed)
            if stop():
                break
            self._sleep(self.poll_interval)
