# cv_users/search.py
from __future__ import annotations

import logging
from typing import List

from cv_core.remote import call_remote, stream_all

from .models import UserProfile

logger = logging.getLogger(__name__)

# private-use code point sorting after ordinary text; `prefix + END` bounds a Firestore prefix range
PREFIX_END = "\uf8ff"


async def search_users(db, prefix: str, *, me: str, blocks, profiles=None, limit: int = 20) -> List[UserProfile]:
    """
    Username prefix search for the "new chat" screen.

    Excludes the caller and anyone blocked in either direction. Results are
    primed into the profile cache.
    """
    prefix = (prefix or "").strip()
    if not prefix:
        return []

    query = (
        db.collection("users")
        .where("username", ">=", prefix)
        .where("username", "<=", prefix + PREFIX_END)
        .limit(limit)
    )
    snaps = await call_remote(stream_all, query)

    found = []
    for snap in snaps:
        profile = UserProfile.from_snapshot(snap)
        if profile is None or profile.id == me:
            continue
        if blocks.is_blocked_either_direction(me, profile.id):
            continue
        if profiles is not None:
            profiles.prime(profile)
        found.append(profile)
    logger.debug("search %r -> %d users", prefix, len(found))
    return found
