# cv_core/streams.py
"""
Cancellable subscription handles around remote listeners.

Firestore `on_snapshot` and RTDB `listen` callbacks fire on SDK threads. A
Subscription funnels every delivery onto the owning event loop and drops
anything that arrives after `cancel()`, so a torn-down view never sees a late
snapshot.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from typing import Any, Callable, Optional

from .errors import SyncError, classify

logger = logging.getLogger(__name__)


class Subscription:
    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._cancel_fn: Optional[Callable[[], Any]] = None
        self._cancelled = False

    def __repr__(self):
        state = "cancelled" if self._cancelled else "active"
        return f"<Subscription {self.name} {state}>"

    @property
    def active(self) -> bool:
        return not self._cancelled

    def bind(self, cancel_fn: Callable[[], Any]) -> None:
        """Attach the transport-level teardown (watch.unsubscribe, listener.close...)."""
        with self._lock:
            if not self._cancelled:
                self._cancel_fn = cancel_fn
                return
        # cancelled while the listener was still being registered
        self._run_cancel(cancel_fn)

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            fn, self._cancel_fn = self._cancel_fn, None
        if fn is not None:
            self._run_cancel(fn)
        logger.debug("subscription %s cancelled", self.name)

    def _run_cancel(self, fn):
        try:
            fn()
        except Exception:
            logger.exception("⚠️ teardown of %s failed", self.name)

    def deliver(self, loop: asyncio.AbstractEventLoop, fn: Callable[..., Any], *args) -> None:
        """Schedule `fn(*args)` on `loop` unless this subscription is gone."""
        if self._cancelled:
            return

        def _run():
            if not self._cancelled:
                fn(*args)

        try:
            loop.call_soon_threadsafe(_run)
        except RuntimeError:
            # loop already closed: the owner is gone, nothing left to update
            logger.debug("dropping delivery for %s, loop closed", self.name)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cancel()
        return False


def listen(
    target,
    on_docs: Callable[[list], Any],
    *,
    loop: asyncio.AbstractEventLoop,
    name: str,
    on_error: Optional[Callable[[SyncError], Any]] = None,
) -> Subscription:
    """
    Attach a snapshot listener to a Firestore query or document reference.

    `on_docs` receives the full re-delivered list of document snapshots on the
    loop thread. If registration itself fails, the error goes to `on_error`
    (also on the loop) and the returned subscription is already cancelled.
    """
    sub = Subscription(name)

    def _on_snapshot(docs, changes, read_time):
        sub.deliver(loop, on_docs, list(docs))

    try:
        watch = target.on_snapshot(_on_snapshot)
    except Exception as exc:
        err = classify(exc)
        logger.exception("❌ listener %s failed to start", name)
        sub.cancel()
        if on_error is not None:
            loop.call_soon_threadsafe(on_error, err)
        return sub

    sub.bind(watch.unsubscribe)
    logger.debug("listener %s attached", name)
    return sub


def emit(callback: Optional[Callable[..., Any]], *args) -> None:
    """Hand a view update to its subscriber; coroutine subscribers are scheduled."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            asyncio.ensure_future(result)
    except Exception:
        logger.exception("⚠️ view subscriber %r failed", callback)
