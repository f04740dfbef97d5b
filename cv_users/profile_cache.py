# cv_users/profile_cache.py
from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Dict, Optional

from cv_core.errors import NotFoundError, SyncError
from cv_core.remote import call_remote

from .models import UserProfile

logger = logging.getLogger(__name__)


class ProfileCache:
    """
    Memoizing fetch-by-id cache for users/{uid}.

    Concurrent `get()` calls for the same uncached uid share one remote read:
    the first caller registers a future in `_inflight` and performs the fetch,
    everyone else awaits that future. Failures resolve the future to None and
    are not cached, so a later call fetches again.
    """

    def __init__(self, db, *, wait_timeout: float = 5.0):
        self._db = db
        self._wait_timeout = wait_timeout
        self._profiles: Dict[str, UserProfile] = {}
        self._inflight: Dict[str, concurrent.futures.Future] = {}
        self._generation = 0
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._profiles)

    def peek(self, uid: str) -> Optional[UserProfile]:
        """Cached profile only; never touches the network."""
        return self._profiles.get(uid)

    def prime(self, profile: UserProfile) -> None:
        with self._lock:
            self._profiles[profile.id] = profile

    def clear_cache(self) -> None:
        """Sign-out: fetches still in flight finish but are not written back."""
        with self._lock:
            self._profiles.clear()
            self._inflight.clear()
            self._generation += 1
        logger.info("profile cache cleared")

    async def refresh(self, uid: str) -> Optional[UserProfile]:
        with self._lock:
            self._profiles.pop(uid, None)
        return await self.get(uid)

    async def get(self, uid: str) -> Optional[UserProfile]:
        if not uid:
            return None

        for attempt in (1, 2):
            with self._lock:
                cached = self._profiles.get(uid)
                if cached is not None:
                    return cached
                pending = self._inflight.get(uid)
                owner = pending is None
                if owner:
                    pending = concurrent.futures.Future()
                    self._inflight[uid] = pending
                generation = self._generation

            if owner:
                return await self._fetch(uid, pending, generation)

            try:
                return await asyncio.wait_for(
                    asyncio.shield(asyncio.wrap_future(pending)),
                    timeout=self._wait_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("⏳ waiting on profile %s timed out (attempt %d)", uid, attempt)

        return None

    async def _fetch(self, uid: str, pending: concurrent.futures.Future, generation: int) -> Optional[UserProfile]:
        profile: Optional[UserProfile] = None
        try:
            snap = await call_remote(self._db.collection("users").document(uid).get)
            profile = UserProfile.from_snapshot(snap)
            if profile is None:
                logger.debug("users/%s does not exist", uid)
        except NotFoundError:
            logger.debug("users/%s not found", uid)
        except SyncError as exc:
            logger.warning("⚠️ profile fetch for %s failed: %s", uid, exc)
        finally:
            with self._lock:
                if generation == self._generation:
                    if profile is not None:
                        self._profiles[uid] = profile
                    self._inflight.pop(uid, None)
            if not pending.done():
                pending.set_result(profile)
        return profile
