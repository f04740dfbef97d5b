# cv_core/events.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Type

from django.dispatch import Signal

logger = logging.getLogger(__name__)


# -------------------------- Event types --------------------------

@dataclass(frozen=True)
class UserBlocked:
    blocker: str
    blocked: str


@dataclass(frozen=True)
class UserUnblocked:
    blocker: str
    blocked: str


@dataclass(frozen=True)
class BlockListChanged:
    """The owner's blockedUsers/blockedBy sets changed remotely."""
    user_id: str


@dataclass(frozen=True)
class ChatDeleted:
    chat_id: str


@dataclass(frozen=True)
class ChatOpened:
    chat_id: str


# -------------------------- Bus --------------------------

class EventSubscription:
    def __init__(self, bus: "EventBus", event_type: type, uid: str):
        self._bus = bus
        self.event_type = event_type
        self.uid = uid
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._bus._disconnect(self.event_type, self.uid)


class EventBus:
    """
    Typed publish/subscribe over django.dispatch signals.

    Each bus owns its own Signal per event type, so two containers in the same
    process never see each other's events.
    """

    def __init__(self):
        self._signals: Dict[type, Signal] = {}
        self._lock = threading.Lock()
        self._seq = 0

    def _signal_for(self, event_type: type) -> Signal:
        with self._lock:
            sig = self._signals.get(event_type)
            if sig is None:
                sig = self._signals[event_type] = Signal()
            return sig

    def subscribe(self, event_type: Type, handler: Callable[[object], None]) -> EventSubscription:
        with self._lock:
            self._seq += 1
            uid = f"{event_type.__name__}:{self._seq}"

        def _receiver(sender, event, **kwargs):
            handler(event)

        self._signal_for(event_type).connect(_receiver, weak=False, dispatch_uid=uid)
        return EventSubscription(self, event_type, uid)

    def _disconnect(self, event_type: type, uid: str) -> None:
        self._signal_for(event_type).disconnect(dispatch_uid=uid)

    def publish(self, event) -> int:
        """Deliver to every handler; a failing handler is logged, not propagated."""
        responses = self._signal_for(type(event)).send_robust(sender=self.__class__, event=event)
        delivered = 0
        for receiver, result in responses:
            if isinstance(result, Exception):
                logger.error(
                    "⚠️ handler for %s failed: %s", type(event).__name__, result,
                    exc_info=(type(result), result, result.__traceback__),
                )
            else:
                delivered += 1
        return delivered
