# cv_rtchat/chat_list.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

from cv_core.errors import PartialBatchError, SyncError
from cv_core.events import BlockListChanged, ChatDeleted, EventBus, UserBlocked, UserUnblocked
from cv_core.remote import call_remote
from cv_core.streams import Subscription, emit, listen

from .firebase_sync import chat_ref, count_unread, delete_all_messages
from .models import ChatSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatListState:
    chats: Tuple[ChatSession, ...] = ()
    loading: bool = True
    error: Optional[SyncError] = None

    def to_payload(self) -> dict:
        return {
            "type": "chat_list",
            "loading": self.loading,
            "error": self.error.as_payload() if self.error else None,
            "chats": [c.to_payload() for c in self.chats],
        }


class ChatListSyncer:
    """
    Live, ordered list of the signed-in user's chats.

    Every snapshot of `chats where participants contains me` starts a new
    join: blocked pairs are dropped, then each surviving chat resolves the
    peer profile and its unread count concurrently. Nothing is published until
    every sub-query of that join is done, and only the most recently started
    join may publish.
    """

    def __init__(
        self,
        db,
        user_id: str,
        *,
        profiles,
        blocks,
        bus: EventBus,
        on_update: Optional[Callable[[ChatListState], object]] = None,
        batch_size: int = 400,
    ):
        self._db = db
        self.user_id = user_id
        self._profiles = profiles
        self._blocks = blocks
        self._bus = bus
        self._on_update = on_update
        self._batch_size = batch_size

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._subscription: Optional[Subscription] = None
        self._event_subs: List = []
        self._latest_docs: Optional[list] = None
        self._generation = 0
        self._joins: Set[asyncio.Task] = set()
        self._deleted: Set[str] = set()
        self._unread: Dict[str, int] = {}
        self.state = ChatListState()

    @property
    def chats(self) -> Tuple[ChatSession, ...]:
        return self.state.chats

    @property
    def active(self) -> bool:
        return self._subscription is not None and self._subscription.active

    # -------------------------- Lifecycle --------------------------

    def start(self) -> None:
        """Attach the listener. Must be called from the loop that owns the view."""
        if self._subscription is not None:
            return
        self._loop = asyncio.get_running_loop()
        for event_type in (UserBlocked, UserUnblocked, BlockListChanged):
            self._event_subs.append(self._bus.subscribe(event_type, self._on_block_event))

        query = self._db.collection("chats").where("participants", "array_contains", self.user_id)
        self._subscription = listen(
            query,
            self._on_snapshot,
            loop=self._loop,
            name=f"chats:{self.user_id}",
            on_error=self._on_listen_error,
        )
        logger.info("chat list listening for %s", self.user_id)

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
        for sub in self._event_subs:
            sub.cancel()
        self._event_subs.clear()
        self._generation += 1
        for task in list(self._joins):
            task.cancel()
        logger.info("chat list stopped for %s", self.user_id)

    # -------------------------- Inputs --------------------------

    def _on_snapshot(self, docs: list) -> None:
        present = {snap.id for snap in docs}
        # a deleted chat stays hidden until the listener stops reporting it
        self._deleted &= present
        self._latest_docs = docs
        self._schedule_join("snapshot")

    def _on_listen_error(self, err: SyncError) -> None:
        logger.error("❌ chat list listener for %s failed: %s", self.user_id, err)
        self._publish(ChatListState(chats=self.state.chats, loading=False, error=err))

    def _on_block_event(self, event) -> None:
        if not self.active or self._loop is None:
            return
        if isinstance(event, (UserBlocked, UserUnblocked)) and self.user_id not in (event.blocker, event.blocked):
            return
        if isinstance(event, BlockListChanged) and event.user_id != self.user_id:
            return
        try:
            self._loop.call_soon_threadsafe(self._schedule_join, type(event).__name__)
        except RuntimeError:
            logger.debug("loop closed, ignoring %s", event)

    def refresh(self) -> None:
        """Re-run filtering/joining over the latest snapshot."""
        self._schedule_join("refresh")

    # -------------------------- Join --------------------------

    def _schedule_join(self, reason: str) -> None:
        if self._latest_docs is None or not self.active:
            return
        self._generation += 1
        generation = self._generation
        logger.debug("join #%d for %s (%s)", generation, self.user_id, reason)
        task = self._loop.create_task(self._join(generation, list(self._latest_docs)))
        self._joins.add(task)
        task.add_done_callback(self._joins.discard)

    async def _join(self, generation: int, docs: list) -> None:
        visible = []
        for snap in docs:
            if snap.id in self._deleted:
                continue
            other = ChatSession.other_participant(snap.to_dict() or {}, self.user_id)
            if self._blocks.is_blocked_either_direction(self.user_id, other):
                continue
            visible.append(snap)

        sessions = await asyncio.gather(*(self._resolve(snap) for snap in visible))

        if generation != self._generation:
            logger.debug("discarding stale join #%d (current #%d)", generation, self._generation)
            return

        ordered = tuple(sorted(sessions, key=lambda c: (c.last_message_time, c.id), reverse=True))
        self._unread = {c.id: c.unread_count for c in ordered}
        self._publish(ChatListState(chats=ordered, loading=False))

    async def _resolve(self, snap) -> ChatSession:
        other = ChatSession.other_participant(snap.to_dict() or {}, self.user_id)
        # the profile lands in the cache for search; the session itself only needs the id
        _, unread = await asyncio.gather(
            self._profiles.get(other),
            self._count_unread(snap.id, other),
        )
        return ChatSession.from_snapshot(snap, self.user_id, unread)

    async def _count_unread(self, chat_id: str, other: str) -> int:
        if not other:
            return 0
        try:
            return await call_remote(count_unread, self._db, chat_id, self.user_id, other)
        except SyncError as exc:
            previous = self._unread.get(chat_id, 0)
            logger.warning("⚠️ unread count for %s failed, keeping %d: %s", chat_id, previous, exc)
            return previous

    def _publish(self, state: ChatListState) -> None:
        self.state = state
        emit(self._on_update, state)

    # -------------------------- Queries & mutations --------------------------

    def search(self, text: str) -> Tuple[ChatSession, ...]:
        """Filter the published list using cached data only."""
        needle = (text or "").strip().lower()
        if not needle:
            return self.state.chats
        hits = []
        for chat in self.state.chats:
            profile = self._profiles.peek(chat.other_user_id)
            if (profile is not None and profile.matches(needle)) or needle in chat.last_message_text.lower():
                hits.append(chat)
        return tuple(hits)

    async def delete_chat(self, chat_id: str) -> int:
        """
        Delete every message, then the chat document.

        The chat leaves the local list only after both steps succeed; a failure
        at either step keeps it visible and is raised to the caller.
        """
        try:
            removed = await call_remote(delete_all_messages, self._db, chat_id, self._batch_size)
        except SyncError as exc:
            logger.error("❌ deleting messages of %s failed: %s", chat_id, exc)
            raise PartialBatchError(
                f"could not delete messages of chat {chat_id}", step="messages", completed=0, cause=exc
            ) from exc

        try:
            await call_remote(chat_ref(self._db, chat_id).delete)
        except SyncError as exc:
            logger.error("❌ deleting chat %s failed after its messages: %s", chat_id, exc)
            raise PartialBatchError(
                f"messages of chat {chat_id} deleted but the chat was not", step="chat", completed=1, cause=exc
            ) from exc

        logger.info("🗑️ chat %s deleted (%d messages)", chat_id, removed)
        self._deleted.add(chat_id)
        self._generation += 1
        self._publish(ChatListState(
            chats=tuple(c for c in self.state.chats if c.id != chat_id),
            loading=False,
        ))
        self._bus.publish(ChatDeleted(chat_id))
        self._schedule_join("delete")
        return removed
