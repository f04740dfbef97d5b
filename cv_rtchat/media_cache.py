# cv_rtchat/media_cache.py
from __future__ import annotations

import asyncio
import logging
import threading
from collections import OrderedDict
from typing import Dict, Optional

import requests

from cv_core.errors import SyncError
from cv_core.remote import call_remote

logger = logging.getLogger(__name__)


class MediaCache:
    """
    Bounded URL -> bytes cache.

    Two limits hold at all times: number of entries and total byte size.
    Least-recently-used entries go first. All operations take a short lock
    and never block on I/O.
    """

    def __init__(self, count_limit: int = 100, byte_limit: int = 50 * 1024 * 1024):
        self.count_limit = count_limit
        self.byte_limit = byte_limit
        self._entries: "OrderedDict[str, bytes]" = OrderedDict()
        self._total = 0
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._entries)

    def __contains__(self, url):
        return url in self._entries

    @property
    def total_bytes(self) -> int:
        return self._total

    def get(self, url: str) -> Optional[bytes]:
        with self._lock:
            data = self._entries.get(url)
            if data is not None:
                self._entries.move_to_end(url)
            return data

    def put(self, url: str, data: bytes) -> bool:
        """Store a blob; returns False when it alone exceeds the byte limit."""
        size = len(data)
        if size > self.byte_limit or self.count_limit <= 0:
            logger.debug("not caching %s (%d bytes)", url, size)
            return False
        with self._lock:
            old = self._entries.pop(url, None)
            if old is not None:
                self._total -= len(old)
            self._entries[url] = data
            self._total += size
            self._evict()
        return True

    def remove(self, url: str) -> None:
        with self._lock:
            old = self._entries.pop(url, None)
            if old is not None:
                self._total -= len(old)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._total = 0

    def _evict(self):
        while self._entries and (
            len(self._entries) > self.count_limit or self._total > self.byte_limit
        ):
            _, evicted = self._entries.popitem(last=False)
            self._total -= len(evicted)


def _download(url: str, timeout: float) -> bytes:
    resp = requests.get(url, timeout=timeout)
    resp.raise_for_status()
    return resp.content


class MediaLoader:
    """Fetch-through loader: cache hit, or one shared download per URL."""

    def __init__(self, cache: MediaCache, *, timeout: float = 20.0):
        self.cache = cache
        self.timeout = timeout
        self._downloads: Dict[str, asyncio.Task] = {}

    async def load(self, url: str) -> Optional[bytes]:
        data = self.cache.get(url)
        if data is not None:
            return data

        task = self._downloads.get(url)
        if task is None:
            task = asyncio.ensure_future(self._fetch(url))
            self._downloads[url] = task
            task.add_done_callback(lambda _t, u=url: self._downloads.pop(u, None))
        return await asyncio.shield(task)

    async def _fetch(self, url: str) -> Optional[bytes]:
        try:
            data = await call_remote(_download, url, self.timeout)
        except SyncError as exc:
            logger.warning("⚠️ media download failed for %s: %s", url, exc)
            raise
        self.cache.put(url, data)
        return data
