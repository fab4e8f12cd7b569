"""
Fire-and-forget "quotes updated" notifications.

Subscribers are called synchronously on the publishing thread, at most
once per event. A failing subscriber is logged and never affects the
publisher or other subscribers.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Tuple

from .providers.base import Quote

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotesUpdated:
    quotes: Tuple[Quote, ...]
    published_at: datetime

    @property
    def symbols(self) -> List[str]:
        return [q.symbol for q in self.quotes]


Subscriber = Callable[[QuotesUpdated], None]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event: QuotesUpdated) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("quotes-updated subscriber %r failed", callback)
