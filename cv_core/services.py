# cv_core/services.py
"""
Process-scoped service container.

Built once by `build_services()` and handed to each consumer through
`as_asgi(services=...)`. Nothing in the sync engine reaches for a module-level
singleton; everything it shares lives here.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, Dict, Optional

from django.conf import settings

from .events import EventBus

logger = logging.getLogger(__name__)


@dataclass
class Services:
    db: object
    bus: EventBus
    profiles: object
    media: object
    media_loader: object
    presence: object
    authenticate: Callable[[str], Optional[str]]
    upload_chat_image: Optional[Callable[[str, bytes], str]] = None
    bucket: object = None
    _blocks: Dict[str, object] = field(default_factory=dict, repr=False)
    _blocks_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def blocks(self, uid: str):
        """One BlockRegistry per signed-in user, shared by that user's views."""
        from cv_users.blocking import BlockRegistry

        with self._blocks_lock:
            registry = self._blocks.get(uid)
            if registry is None:
                registry = self._blocks[uid] = BlockRegistry(self.db, uid, bus=self.bus)
            return registry


def build_services(db=None, bucket=None, presence_backend=None, authenticate=None) -> Services:
    """Wire the sync engine; collaborators can be swapped for fakes in tests."""
    from cv_rtchat.media_cache import MediaCache, MediaLoader
    from cv_rtchat.presence import FirebasePresenceBackend, PresenceTracker
    from cv_users.auth import verify_id_token
    from cv_users.firebase_upload import upload_chat_image
    from cv_users.profile_cache import ProfileCache

    if db is None:
        from .firebase_admin_client import get_db
        db = get_db()
    if presence_backend is None:
        presence_backend = FirebasePresenceBackend()

    media = MediaCache(
        count_limit=settings.CONVERSA_MEDIA_CACHE_COUNT,
        byte_limit=settings.CONVERSA_MEDIA_CACHE_BYTES,
    )
    services = Services(
        db=db,
        bus=EventBus(),
        profiles=ProfileCache(db, wait_timeout=settings.CONVERSA_PROFILE_WAIT_SECONDS),
        media=media,
        media_loader=MediaLoader(media),
        presence=PresenceTracker(
            presence_backend,
            online_window=settings.PRESENCE_ONLINE_WINDOW_SECONDS,
            heartbeat_interval=settings.PRESENCE_HEARTBEAT_SECONDS,
        ),
        authenticate=authenticate or verify_id_token,
        upload_chat_image=partial(upload_chat_image, bucket=bucket),
        bucket=bucket,
    )
    logger.info("✅ services ready")
    return services
