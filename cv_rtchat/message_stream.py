# cv_rtchat/message_stream.py
from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Set, Tuple

from google.cloud import firestore as _fs

from cv_core.errors import NotFoundError, PartialBatchError, PermissionDeniedError, SummaryLagError, SyncError
from cv_core.events import BlockListChanged, ChatOpened, EventBus, UserBlocked
from cv_core.remote import call_remote
from cv_core.streams import Subscription, emit, listen

from .firebase_sync import (
    chat_ref,
    hide_for_payload,
    mark_messages_read,
    messages_ref,
    new_message_payload,
    recompute_last_message,
    sent_summary_update,
    tombstone_payload,
)
from .models import IMAGE_SUMMARY_TEXT, Message, MessageKind, PresenceRecord

logger = logging.getLogger(__name__)


class MessageStreamer:
    """
    One open chat: the live message window, sends, deletes and read receipts.

    The window is the newest `window` messages, delivered in ascending order.
    Messages the viewer deleted for themselves are dropped; tombstones stay and
    render the placeholder text.
    """

    def __init__(
        self,
        db,
        chat_id: str,
        viewer_id: str,
        *,
        presence,
        bus: EventBus,
        blocks=None,
        upload_image: Optional[Callable[[str, bytes], str]] = None,
        window: int = 50,
        sweep_interval: float = 2.0,
        summary_scan: int = 5,
        batch_size: int = 400,
        on_messages: Optional[Callable] = None,
        on_peer_status: Optional[Callable] = None,
        on_closed: Optional[Callable] = None,
    ):
        self._db = db
        self.chat_id = chat_id
        self.viewer_id = viewer_id
        self.peer_id = ""
        self._presence = presence
        self._bus = bus
        self._blocks = blocks
        self._upload_image = upload_image
        self.window = window
        self.sweep_interval = sweep_interval
        self.summary_scan = summary_scan
        self.batch_size = batch_size
        self._on_messages = on_messages
        self._on_peer_status = on_peer_status
        self._on_closed = on_closed

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._subscription: Optional[Subscription] = None
        self._observation = None
        self._event_subs: List = []
        self._sweep_task: Optional[asyncio.Task] = None
        self._sends: Set[asyncio.Task] = set()
        self.messages: Tuple[Message, ...] = ()
        self.peer_status: Optional[PresenceRecord] = None
        self.loaded = False
        self.error: Optional[SyncError] = None
        self.closed = False

    # -------------------------- Lifecycle --------------------------

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        snap = await call_remote(chat_ref(self._db, self.chat_id).get)
        if not snap.exists:
            raise NotFoundError(f"chat {self.chat_id} does not exist")
        participants = (snap.to_dict() or {}).get("participants") or []
        if self.viewer_id not in participants:
            raise PermissionDeniedError(f"{self.viewer_id} is not a participant of {self.chat_id}")
        self.peer_id = next((p for p in participants if p != self.viewer_id), "")
        if self._blocks is not None and self._blocks.is_blocked_with(self.peer_id):
            raise PermissionDeniedError(f"chat {self.chat_id} is with a blocked user")

        self._event_subs.append(self._bus.subscribe(UserBlocked, self._on_blocked))
        self._event_subs.append(self._bus.subscribe(BlockListChanged, self._on_block_list))

        query = (
            messages_ref(self._db, self.chat_id)
            .order_by("timestamp", direction=_fs.Query.DESCENDING)
            .limit(self.window)
        )
        self._subscription = listen(
            query,
            self._on_snapshot,
            loop=self._loop,
            name=f"chats/{self.chat_id}/messages",
            on_error=self._on_listen_error,
        )
        if self.peer_id:
            self._observation = self._presence.observe_user_status(
                self.peer_id, self._on_status, loop=self._loop
            )
        self._bus.publish(ChatOpened(self.chat_id))
        logger.info("💬 %s opened chat %s", self.viewer_id, self.chat_id)

    def stop(self) -> None:
        """Tear down listeners and the sweep; sends already in flight keep going."""
        if self.closed:
            return
        self.closed = True
        if self._subscription is not None:
            self._subscription.cancel()
        if self._observation is not None:
            self._observation.cancel()
        for sub in self._event_subs:
            sub.cancel()
        self._event_subs.clear()
        self.set_foreground(False)
        logger.info("chat %s closed for %s", self.chat_id, self.viewer_id)

    async def drain(self) -> None:
        """Wait for in-flight sends (used on shutdown)."""
        if self._sends:
            await asyncio.gather(*list(self._sends), return_exceptions=True)

    # -------------------------- Inbound --------------------------

    def _on_snapshot(self, docs: list) -> None:
        window = [Message.from_snapshot(snap, self.chat_id) for snap in docs]
        visible = [m for m in window if not m.hidden_for(self.viewer_id)]
        visible.sort(key=lambda m: m.timestamp)
        self.messages = tuple(visible)
        self.loaded = True
        emit(self._on_messages, self.messages)

    def _on_listen_error(self, err: SyncError) -> None:
        logger.error("❌ message listener for %s failed: %s", self.chat_id, err)
        self.error = err
        self.loaded = True
        emit(self._on_messages, self.messages)

    def _on_status(self, record: PresenceRecord) -> None:
        if self.closed:
            return
        self.peer_status = record
        emit(self._on_peer_status, record)

    def _on_blocked(self, event: UserBlocked) -> None:
        if {event.blocker, event.blocked} == {self.viewer_id, self.peer_id}:
            self._close_from_event()

    def _on_block_list(self, event: BlockListChanged) -> None:
        if event.user_id != self.viewer_id or self._blocks is None:
            return
        if self._blocks.is_blocked_with(self.peer_id):
            self._close_from_event()

    def _close_from_event(self) -> None:
        if self.closed or self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._close_blocked)
        except RuntimeError:
            logger.debug("loop closed before chat %s could close", self.chat_id)

    def _close_blocked(self) -> None:
        if self.closed:
            return
        logger.info("🔒 closing chat %s, participants blocked", self.chat_id)
        self.stop()
        emit(self._on_closed, "blocked")

    # -------------------------- Read receipts --------------------------

    def set_foreground(self, active: bool) -> None:
        if active and not self.closed:
            if self._sweep_task is None or self._sweep_task.done():
                self._sweep_task = asyncio.ensure_future(self._sweep_loop())
            return
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            self._sweep_task = None

    @property
    def foreground(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await self.mark_read()
            except SyncError as exc:
                logger.warning("⚠️ read sweep for %s failed: %s", self.chat_id, exc)
            await asyncio.sleep(self.sweep_interval)

    async def mark_read(self) -> int:
        """Single sweep; issues no write when nothing is unread."""
        if not self.peer_id:
            return 0
        marked = await call_remote(
            mark_messages_read, self._db, self.chat_id, self.viewer_id, self.peer_id, self.batch_size
        )
        if marked:
            logger.debug("marked %d messages read in %s", marked, self.chat_id)
        return marked

    # -------------------------- Sending --------------------------

    async def _track(self, coro):
        task = asyncio.ensure_future(coro)
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)
        return await asyncio.shield(task)

    def _check_not_blocked(self) -> None:
        if self._blocks is not None and self._blocks.is_blocked_with(self.peer_id):
            raise PermissionDeniedError("cannot message a blocked user")

    async def send_text(self, text: str) -> str:
        text = (text or "").strip()
        if not text:
            raise ValueError("empty message")
        self._check_not_blocked()
        return await self._track(self._write(text, MessageKind.TEXT))

    async def send_image(self, data: bytes) -> str:
        if not data:
            raise ValueError("empty image")
        if self._upload_image is None:
            raise PermissionDeniedError("image upload is not configured")
        self._check_not_blocked()
        return await self._track(self._send_image(data))

    async def _send_image(self, data: bytes) -> str:
        url = await call_remote(self._upload_image, self.chat_id, data)
        return await self._write(url, MessageKind.IMAGE)

    async def _write(self, text: str, kind: MessageKind) -> str:
        ref = messages_ref(self._db, self.chat_id).document()
        await call_remote(ref.set, new_message_payload(self.viewer_id, text, kind))

        summary = IMAGE_SUMMARY_TEXT if kind is MessageKind.IMAGE else text
        try:
            await call_remote(
                chat_ref(self._db, self.chat_id).update,
                sent_summary_update(self.viewer_id, self.peer_id, summary, kind),
            )
        except SyncError as exc:
            logger.error("❌ summary of %s lags message %s: %s", self.chat_id, ref.id, exc)
            raise SummaryLagError(ref.id, cause=exc) from exc
        logger.debug("sent %s message %s in %s", kind.value, ref.id, self.chat_id)
        return ref.id

    # -------------------------- Deleting --------------------------

    def _latest_visible(self) -> Optional[Message]:
        for message in reversed(self.messages):
            if not message.deleted:
                return message
        return None

    async def _load(self, message_id: str) -> Message:
        for message in self.messages:
            if message.id == message_id:
                return message
        snap = await call_remote(messages_ref(self._db, self.chat_id).document(message_id).get)
        if not snap.exists:
            raise NotFoundError(f"message {message_id} not found in {self.chat_id}")
        return Message.from_snapshot(snap, self.chat_id)

    async def delete_for_me(self, message_id: str) -> None:
        message = await self._load(message_id)
        latest = self._latest_visible()
        await call_remote(
            messages_ref(self._db, self.chat_id).document(message_id).update,
            hide_for_payload(self.viewer_id),
        )
        if latest is not None and latest.id == message_id:
            await self._refresh_summary(message)

    async def delete_for_everyone(self, message_id: str) -> None:
        message = await self._load(message_id)
        if message.sender_id != self.viewer_id:
            raise PermissionDeniedError("only the sender can delete a message for everyone")
        latest = self._latest_visible()
        await call_remote(
            messages_ref(self._db, self.chat_id).document(message_id).update,
            tombstone_payload(),
        )
        logger.info("🗑️ message %s deleted for everyone in %s", message_id, self.chat_id)
        if latest is not None and latest.id == message_id:
            await self._refresh_summary(message)

    async def _refresh_summary(self, removed: Message) -> dict:
        try:
            return await call_remote(
                recompute_last_message, self._db, self.chat_id, self.summary_scan, removed.timestamp
            )
        except SyncError as exc:
            logger.error("❌ recomputing summary of %s failed: %s", self.chat_id, exc)
            raise PartialBatchError(
                f"message {removed.id} removed, chat summary not recomputed",
                step="summary",
                completed=1,
                cause=exc,
            ) from exc

    # -------------------------- Views --------------------------

    @property
    def shared_images(self) -> Tuple[str, ...]:
        return tuple(
            m.text for m in self.messages
            if m.kind is MessageKind.IMAGE and not m.deleted and m.text
        )

    def payload(self) -> dict:
        return {
            "type": "messages",
            "chatId": self.chat_id,
            "loading": not self.loaded,
            "error": self.error.as_payload() if self.error else None,
            "messages": [m.to_payload(self.viewer_id) for m in self.messages],
        }
