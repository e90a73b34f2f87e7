"""In-memory event bus and live feed for the raffle service."""

from __future__ import annotations

from collections import defaultdict, deque
from threading import Lock
from typing import Callable, Dict, List, Optional

from raffle.lottery.models import RaffleEvent
from raffle.utils.common import shorten_address
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

Listener = Callable[[RaffleEvent], None]

ALL_EVENTS = "*"


class EventStore:
    """Volatile storage for the live feed, with per-event listeners."""

    def __init__(self, *, feed_capacity: int = 100) -> None:
        self._lock = Lock()
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._feed_capacity = feed_capacity
        self._live_feed: deque[RaffleEvent] = deque(maxlen=feed_capacity)

    # ------------------------------------------------------------------
    # Listener management
    # ------------------------------------------------------------------
    def add_listener(self, event_type: str, callback: Listener) -> None:
        with self._lock:
            self._listeners[event_type].append(callback)
        logger.debug("[EventStore] Adding listener for event_type=%s, callback=%s", event_type, callback)

    def _emit(self, event: RaffleEvent) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event.name, []))
            listeners.extend(self._listeners.get(ALL_EVENTS, []))
        for callback in listeners:
            try:
                callback(event)
            except Exception as exc:
                logger.error("Listener for %s failed: %s", event.name, exc)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    def publish(self, event: RaffleEvent) -> None:
        with self._lock:
            self._live_feed.append(event)
        logger.info("[EventStore] %s %s", event.name, self._describe(event))
        self._emit(event)

    def get_live_feed(self, limit: Optional[int] = None) -> List[RaffleEvent]:
        with self._lock:
            items = list(self._live_feed)
        if limit is not None:
            return items[-limit:]
        return items

    def clear(self) -> None:
        with self._lock:
            self._live_feed.clear()
        logger.debug("[EventStore] live feed cleared")

    @staticmethod
    def _describe(event: RaffleEvent) -> str:
        who = event.details.get("player") or event.details.get("winner")
        if who:
            return shorten_address(str(who))
        if "requestId" in event.details:
            return f"request #{event.details['requestId']}"
        return ""
