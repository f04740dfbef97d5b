# cv_users/blocking.py
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, FrozenSet, Iterable, List, Optional

from google.cloud import firestore as _fs

from cv_core.events import BlockListChanged, EventBus, UserBlocked, UserUnblocked
from cv_core.remote import call_remote
from cv_core.errors import SyncError
from cv_core.streams import Subscription, emit, listen

from .models import UserProfile

logger = logging.getLogger(__name__)


def blocked_either_direction(
    a: str,
    b: str,
    *,
    owner: str,
    blocked_users: Iterable[str],
    blocked_by: Iterable[str],
) -> bool:
    """
    Pure predicate over the owner's two block sets.

    Only pairs that include the owner can be answered from the owner's
    document; anything else is reported as not blocked.
    """
    if not a or not b or a == b:
        return False
    if a == owner:
        other = b
    elif b == owner:
        other = a
    else:
        return False
    return other in blocked_users or other in blocked_by


class BlockRegistry:
    """
    Symmetric block relation for one signed-in user.

    A block is stored twice: users/{blocker}.blockedUsers and
    users/{blocked}.blockedBy. Both halves go out in one batch, so either both
    documents change or neither does.
    """

    def __init__(self, db, owner_id: str, *, bus: EventBus):
        self._db = db
        self.owner_id = owner_id
        self._bus = bus
        self._lock = threading.Lock()
        self._blocked_users: FrozenSet[str] = frozenset()
        self._blocked_by: FrozenSet[str] = frozenset()
        self.loaded = False
        self.listen_error: Optional[SyncError] = None

    def _user_ref(self, uid: str):
        return self._db.collection("users").document(uid)

    @property
    def blocked_users(self) -> FrozenSet[str]:
        return self._blocked_users

    @property
    def blocked_by(self) -> FrozenSet[str]:
        return self._blocked_by

    def is_blocked_either_direction(self, a: str, b: str) -> bool:
        return blocked_either_direction(
            a, b,
            owner=self.owner_id,
            blocked_users=self._blocked_users,
            blocked_by=self._blocked_by,
        )

    def is_blocked_with(self, other: str) -> bool:
        return self.is_blocked_either_direction(self.owner_id, other)

    # -------------------------- Read path --------------------------

    def _apply(self, data: Optional[dict]) -> bool:
        data = data or {}
        blocked_users = frozenset(data.get("blockedUsers") or ())
        blocked_by = frozenset(data.get("blockedBy") or ())
        with self._lock:
            changed = (blocked_users, blocked_by) != (self._blocked_users, self._blocked_by)
            self._blocked_users = blocked_users
            self._blocked_by = blocked_by
            self.loaded = True
        return changed

    async def load(self) -> None:
        snap = await call_remote(self._user_ref(self.owner_id).get)
        self._apply(snap.to_dict() if snap.exists else None)

    def listen(
        self,
        loop: asyncio.AbstractEventLoop,
        on_error: Optional[Callable[[SyncError], object]] = None,
    ) -> Subscription:
        """
        Keep the sets live, so a block issued by the other side re-filters too.
        If the listener cannot start, the last loaded sets stay in force and
        `on_error` hears about it.
        """
        def _on_error(err):
            logger.error("❌ block listener for %s failed: %s", self.owner_id, err)
            self.listen_error = err
            emit(on_error, err)

        return listen(
            self._user_ref(self.owner_id),
            self._on_docs,
            loop=loop,
            name=f"users/{self.owner_id}:blocks",
            on_error=_on_error,
        )

    def _on_docs(self, docs: List) -> None:
        snap = docs[0] if docs else None
        data = snap.to_dict() if snap is not None and snap.exists else None
        if self._apply(data):
            logger.info("block lists changed for %s", self.owner_id)
            self._bus.publish(BlockListChanged(self.owner_id))

    async def blocked_profiles(self, profiles) -> List[UserProfile]:
        found = await asyncio.gather(*(profiles.get(uid) for uid in sorted(self._blocked_users)))
        return [p for p in found if p is not None]

    # -------------------------- Write path --------------------------

    def _record(self, blocker: str, blocked: str, active: bool) -> None:
        with self._lock:
            if blocker == self.owner_id:
                users = set(self._blocked_users)
                if active:
                    users.add(blocked)
                else:
                    users.discard(blocked)
                self._blocked_users = frozenset(users)
            elif blocked == self.owner_id:
                by = set(self._blocked_by)
                if active:
                    by.add(blocker)
                else:
                    by.discard(blocker)
                self._blocked_by = frozenset(by)

    async def block(self, blocker: str, blocked: str) -> None:
        if not blocker or not blocked or blocker == blocked:
            raise ValueError("block needs two distinct user ids")

        batch = self._db.batch()
        batch.update(self._user_ref(blocker), {"blockedUsers": _fs.ArrayUnion([blocked])})
        batch.update(self._user_ref(blocked), {"blockedBy": _fs.ArrayUnion([blocker])})
        await call_remote(batch.commit)

        logger.info("🔒 %s blocked %s", blocker, blocked)
        self._record(blocker, blocked, True)
        self._bus.publish(UserBlocked(blocker, blocked))

    async def unblock(self, blocker: str, blocked: str) -> None:
        if not blocker or not blocked or blocker == blocked:
            raise ValueError("unblock needs two distinct user ids")

        batch = self._db.batch()
        batch.update(self._user_ref(blocker), {"blockedUsers": _fs.ArrayRemove([blocked])})
        batch.update(self._user_ref(blocked), {"blockedBy": _fs.ArrayRemove([blocker])})
        await call_remote(batch.commit)

        logger.info("🔓 %s unblocked %s", blocker, blocked)
        self._record(blocker, blocked, False)
        self._bus.publish(UserUnblocked(blocker, blocked))
