"""
In-process fan-out of chat events to live viewers.

Delivery is best effort and at most once: the message is already stored when
it is published, so a viewer that misses an event resyncs from history.
There is no cross-process fan-out.
"""
import itertools
import logging
import threading
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Subscriber = Callable[[Any], None]


class ChatBroker:
    """Registry of thread id -> subscriber callbacks.

    Threads with no subscribers have no entry, so the registry only grows
    with the number of open chat views.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._tokens = itertools.count()
        self._subscribers: Dict[str, Dict[int, Subscriber]] = {}

    def subscribe(self, thread_id: str, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            token = next(self._tokens)
            self._subscribers.setdefault(thread_id, {})[token] = callback

        def unsubscribe() -> None:
            with self._lock:
                current = self._subscribers.get(thread_id)
                if current is None:
                    return
                current.pop(token, None)
                if not current:
                    del self._subscribers[thread_id]

        return unsubscribe

    def publish(self, thread_id: str, event: Any) -> int:
        """Call every current subscriber of the thread in registration order.

        Returns the number of callbacks invoked. Callbacks run outside the
        lock so they may unsubscribe themselves.
        """
        with self._lock:
            callbacks: List[Subscriber] = list(self._subscribers.get(thread_id, {}).values())
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception("Chat subscriber for thread %s failed", thread_id)
        return len(callbacks)

    def subscriber_count(self, thread_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(thread_id, {}))

    def thread_ids(self) -> List[str]:
        with self._lock:
            return list(self._subscribers)
