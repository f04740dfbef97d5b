# cv_rtchat/presence.py
from __future__ import annotations

import asyncio
import atexit
import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from .models import PresenceRecord, PresenceState

logger = logging.getLogger(__name__)

CONNECTIVITY_SENTINEL = "status/connectivity"


def presence_path(uid: str) -> str:
    return f"presence/{uid}"


# -------------------------- Backend (Realtime Database) --------------------------

class _DeferredWrite:
    def __init__(self, backend: "FirebasePresenceBackend", key: int):
        self._backend = backend
        self._key = key

    def cancel(self):
        self._backend._drop_deferred(self._key)


class _ConnectivityRegistration:
    def __init__(self, registration, callback):
        self._registration = registration
        self._callback = callback

    def close(self):
        self._registration.close()
        self._callback(False)


class FirebasePresenceBackend:
    """
    Presence store on firebase_admin's Realtime Database client.

    The admin SDK speaks REST/SSE and has no server-side onDisconnect, so the
    deferred writes registered here are committed by `close()`, which also
    runs at interpreter exit. A killed process never gets there; observers
    then rely on the tracker heartbeat going stale. Connectivity is derived from the SSE stream on
    CONNECTIVITY_SENTINEL: first event means connected, closing means not.
    """

    SERVER_TIMESTAMP = {".sv": "timestamp"}

    def __init__(self, root=None):
        if root is None:
            from cv_core.firebase_admin_client import get_presence_root
            root = get_presence_root()
        self._root = root
        self._deferred: Dict[int, Tuple[str, dict]] = {}
        self._seq = 0
        self._lock = threading.Lock()
        atexit.register(self.close)

    def _ref(self, path: str):
        return self._root.child(path)

    def update(self, path: str, values: dict) -> None:
        self._ref(path).update(values)

    def get(self, path: str):
        return self._ref(path).get()

    def on_disconnect_update(self, path: str, values: dict) -> _DeferredWrite:
        with self._lock:
            self._seq += 1
            self._deferred[self._seq] = (path, dict(values))
            return _DeferredWrite(self, self._seq)

    def _drop_deferred(self, key: int) -> None:
        with self._lock:
            self._deferred.pop(key, None)

    def listen(self, path: str, callback: Callable[[object], None]):
        ref = self._ref(path)

        def _on_event(event):
            # SSE events carry patches; hand observers the whole node
            callback(ref.get())

        return ref.listen(_on_event)

    def listen_connected(self, callback: Callable[[bool], None]):
        state = {"connected": False}

        def _on_event(event):
            if not state["connected"]:
                state["connected"] = True
                callback(True)

        registration = self._ref(CONNECTIVITY_SENTINEL).listen(_on_event)
        return _ConnectivityRegistration(registration, callback)

    def close(self) -> None:
        with self._lock:
            pending = list(self._deferred.values())
            self._deferred.clear()
        for path, values in pending:
            try:
                self._ref(path).update(values)
            except Exception:
                logger.exception("⚠️ deferred presence write to %s failed", path)


# -------------------------- Tracker --------------------------

class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class StatusObservation:
    def __init__(self, tracker: "PresenceTracker", user_id: str, token: int):
        self._tracker = tracker
        self.user_id = user_id
        self._token = token
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._tracker._release(self.user_id, self._token)


class _Session:
    """One signed-in user in this process, shared by all of that user's sockets."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        self.refs = 1
        self.state = ConnectionState.CONNECTING
        self.handle = None
        self.deferred = None


class _PeerWatch:
    def __init__(self, user_id: str):
        self.user_id = user_id
        self.handle = None
        self.closed = False
        self.value = None
        self.last: Optional[PresenceRecord] = None
        self.observers: Dict[int, Tuple[Callable, Optional[asyncio.AbstractEventLoop]]] = {}


class PresenceTracker:
    """
    Publishes online/offline for the users signed in through this process and
    observes peers.

    Each local user has a session: disconnected -> connecting -> connected.
    Sockets of the same user share the session; the last one to leave signs
    the user off. Every transition into `connected` registers the deferred
    offline write *before* writing online.

    A connected session refreshes `last_seen` every `heartbeat_interval`
    seconds. Observers read an "online" node whose last_seen is older than
    `online_window` as offline, which covers a process killed before its
    deferred write could run.
    """

    def __init__(self, backend, *, online_window: Optional[float] = None,
                 heartbeat_interval: Optional[float] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self._backend = backend
        self.online_window = online_window
        self.heartbeat_interval = heartbeat_interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()
        self._sessions: Dict[str, _Session] = {}
        self._watches: Dict[str, _PeerWatch] = {}
        self._seq = 0
        self._pulse: Optional[threading.Thread] = None
        self._stopped = threading.Event()

    def _status(self, state: PresenceState) -> dict:
        ts = self._backend.SERVER_TIMESTAMP
        return {"state": state.value, "last_seen": ts, "last_changed": ts}

    # ----- local sessions -----

    def state_of(self, user_id: str) -> ConnectionState:
        session = self._sessions.get(user_id)
        return session.state if session else ConnectionState.DISCONNECTED

    def session_count(self, user_id: str) -> int:
        session = self._sessions.get(user_id)
        return session.refs if session else 0

    def setup_presence(self, user_id: str) -> None:
        with self._lock:
            session = self._sessions.get(user_id)
            if session is not None:
                session.refs += 1
                logger.debug("presence for %s shared by %d sockets", user_id, session.refs)
                return
            session = self._sessions[user_id] = _Session(user_id)

        try:
            handle = self._backend.listen_connected(
                lambda connected: self._on_connectivity(session, connected)
            )
        except Exception:
            with self._lock:
                if self._sessions.get(user_id) is session:
                    del self._sessions[user_id]
            raise

        with self._lock:
            if self._sessions.get(user_id) is session:
                session.handle = handle
                self._ensure_pulse()
                return
        self._close(handle)

    def _on_connectivity(self, session: _Session, connected: bool) -> None:
        uid = session.user_id
        with self._lock:
            if self._sessions.get(uid) is not session:
                return
            if not connected:
                if session.state is ConnectionState.CONNECTED:
                    logger.info("🔌 presence connection lost for %s", uid)
                deferred, session.deferred = session.deferred, None
                session.state = ConnectionState.CONNECTING
                if deferred is not None:
                    # reconnecting registers a fresh one
                    deferred.cancel()
                return
            if session.state is ConnectionState.CONNECTED:
                return
            path = presence_path(uid)
            try:
                session.deferred = self._backend.on_disconnect_update(
                    path, self._status(PresenceState.OFFLINE)
                )
                self._backend.update(path, self._status(PresenceState.ONLINE))
            except Exception:
                logger.exception("❌ presence registration for %s failed", uid)
                return
            session.state = ConnectionState.CONNECTED
            logger.info("🟢 %s online", uid)

    def set_status(self, user_id: str, state: PresenceState) -> None:
        if user_id not in self._sessions:
            return
        ts = self._backend.SERVER_TIMESTAMP
        self._backend.update(presence_path(user_id), {"state": state.value, "last_changed": ts})

    def cleanup_presence(self, user_id: str) -> None:
        """One socket of `user_id` signed off; the last one writes offline."""
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                return
            session.refs -= 1
            if session.refs > 0:
                logger.debug("%s still has %d sockets open", user_id, session.refs)
                return
            del self._sessions[user_id]
            session.state = ConnectionState.DISCONNECTED
            deferred, session.deferred = session.deferred, None
            handle, session.handle = session.handle, None

        try:
            self._backend.update(presence_path(user_id), self._status(PresenceState.OFFLINE))
        except Exception:
            # the deferred write stays registered so the crash path still fires
            logger.exception("❌ explicit offline write for %s failed", user_id)
            if handle is not None:
                self._close(handle)
            raise

        if deferred is not None:
            deferred.cancel()
        if handle is not None:
            self._close(handle)
        logger.info("⚪ %s offline", user_id)

    # ----- heartbeat -----

    def heartbeat(self) -> int:
        """Refresh last_seen for every connected local session."""
        with self._lock:
            uids = [s.user_id for s in self._sessions.values() if s.state is ConnectionState.CONNECTED]
        ts = self._backend.SERVER_TIMESTAMP
        for uid in uids:
            try:
                self._backend.update(presence_path(uid), {"last_seen": ts})
            except Exception:
                logger.exception("⚠️ presence heartbeat for %s failed", uid)
        return len(uids)

    def expire_stale(self) -> int:
        """Re-evaluate watched peers whose heartbeat went quiet; returns how many flipped."""
        if not self.online_window:
            return 0
        flipped = []
        with self._lock:
            for watch in self._watches.values():
                if watch.last is None or not watch.last.online:
                    continue
                record = self._record(watch.user_id, watch.value)
                if not record.online:
                    watch.last = record
                    flipped.append((record, list(watch.observers.values())))
        for record, observers in flipped:
            logger.info("⌛ %s went quiet, reporting offline", record.user_id)
            for callback, loop in observers:
                self._notify(callback, loop, record)
        return len(flipped)

    def _ensure_pulse(self) -> None:
        if not self.heartbeat_interval or self._stopped.is_set():
            return
        if self._pulse is not None and self._pulse.is_alive():
            return
        self._pulse = threading.Thread(target=self._pulse_loop, name="presence-heartbeat", daemon=True)
        self._pulse.start()

    def _pulse_loop(self) -> None:
        while not self._stopped.wait(self.heartbeat_interval):
            self.heartbeat()
            self.expire_stale()

    def close(self) -> None:
        self._stopped.set()

    # ----- peers -----

    def _record(self, user_id: str, value) -> PresenceRecord:
        return PresenceRecord.from_value(user_id, value, now=self._clock(), online_window=self.online_window)

    def observe_user_status(
        self,
        user_id: str,
        callback: Callable[[PresenceRecord], None],
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> StatusObservation:
        with self._lock:
            self._seq += 1
            token = self._seq
            watch = self._watches.get(user_id)
            new = watch is None
            if new:
                watch = self._watches[user_id] = _PeerWatch(user_id)
            watch.observers[token] = (callback, loop)
            last = watch.last

        if new:
            handle = self._backend.listen(
                presence_path(user_id), lambda value: self._on_peer_value(user_id, value)
            )
            with self._lock:
                watch.handle = handle
                closed = watch.closed
            if closed:
                self._close(handle)
            else:
                self._ensure_pulse()
        elif last is not None:
            self._notify(callback, loop, last)
        return StatusObservation(self, user_id, token)

    def observer_count(self, user_id: str) -> int:
        watch = self._watches.get(user_id)
        return len(watch.observers) if watch else 0

    def _on_peer_value(self, user_id: str, value) -> None:
        record = self._record(user_id, value)
        with self._lock:
            watch = self._watches.get(user_id)
            if watch is None:
                return
            watch.value = value
            watch.last = record
            observers = list(watch.observers.values())
        for callback, loop in observers:
            self._notify(callback, loop, record)

    def _notify(self, callback, loop, record: PresenceRecord) -> None:
        if loop is not None:
            try:
                loop.call_soon_threadsafe(callback, record)
            except RuntimeError:
                logger.debug("observer loop closed, dropping status for %s", record.user_id)
            return
        try:
            callback(record)
        except Exception:
            logger.exception("⚠️ presence observer for %s failed", record.user_id)

    def _release(self, user_id: str, token: int) -> None:
        with self._lock:
            watch = self._watches.get(user_id)
            if watch is None or token not in watch.observers:
                return
            del watch.observers[token]
            if watch.observers:
                return
            del self._watches[user_id]
            watch.closed = True
            handle = watch.handle
        if handle is not None:
            self._close(handle)
        logger.debug("stopped observing presence of %s", user_id)

    @staticmethod
    def _close(handle) -> None:
        try:
            handle.close()
        except Exception:
            logger.exception("⚠️ closing presence listener failed")
