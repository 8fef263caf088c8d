"""
プロセス内の同期型パブリッシュ／サブスクライブ。
Synchronous in-process publish/subscribe.

配信は購読中のハンドラのみに同期的に行い、永続化はしません。
Delivery is synchronous, in-process only, and never persisted.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

ITINERARY_UPDATED = "itinerary_updated"


def itinerary_topic(session_id: str) -> str:
    return f"{ITINERARY_UPDATED}:{session_id}"


@dataclass
class Event:
    topic: str
    payload: Any
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Handler = Callable[[Event], None]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """
        ハンドラを登録し、登録解除用の関数を返す
        Register a handler and return a callable that unsubscribes it.
        """
        with self._lock:
            self._subscribers.setdefault(topic, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._subscribers.get(topic, [])
                if handler in handlers:
                    handlers.remove(handler)
                if not handlers:
                    self._subscribers.pop(topic, None)

        return unsubscribe

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, []))

    def publish(self, topic: str, payload: Any) -> int:
        """
        現在の購読者へ順に配信し、配信できた件数を返す
        Deliver to the current subscribers in order and return how many succeeded.

        例外を出したハンドラはログに残し、他のハンドラへの配信は続けます。
        A failing handler is logged and does not stop delivery to the others.
        """
        event = Event(topic=topic, payload=payload)
        with self._lock:
            handlers = list(self._subscribers.get(topic, []))
        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception("Event handler failed for %s", topic)
        return delivered


# アプリ全体で共有するバス
# Bus shared across the application
bus = EventBus()
