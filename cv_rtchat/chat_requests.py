# cv_rtchat/chat_requests.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from cv_core.errors import NotFoundError, PermissionDeniedError, SyncError
from cv_core.remote import call_remote
from cv_core.streams import Subscription, emit, listen

from .firebase_sync import (
    accept_chat_request,
    ensure_chat_request,
    find_chat_between,
    new_chat_payload,
    requests_ref,
)
from .models import ChatRequest, RequestStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatStart:
    chat_id: Optional[str] = None
    request_id: Optional[str] = None
    created: bool = False

    @property
    def pending(self) -> bool:
        return self.chat_id is None and self.request_id is not None


class ChatDirectory:
    """
    Starting conversations: open an existing chat, create one, or file a
    request when the recipient's profile is private.

    `on_open(chat_id)` is the host's navigation callback.
    """

    def __init__(self, db, user_id: str, *, profiles, blocks, on_open: Optional[Callable[[str], object]] = None):
        self._db = db
        self.user_id = user_id
        self._profiles = profiles
        self._blocks = blocks
        self._on_open = on_open
        self.requests: Tuple[ChatRequest, ...] = ()

    async def find_existing_chat(self, other_id: str) -> Optional[str]:
        return await call_remote(find_chat_between, self._db, self.user_id, other_id)

    def _open(self, chat_id: str) -> None:
        emit(self._on_open, chat_id)

    async def start_chat(self, other_id: str, message: str = "") -> ChatStart:
        if not other_id or other_id == self.user_id:
            raise ValueError("start_chat needs another user's id")
        if self._blocks.is_blocked_with(other_id):
            raise PermissionDeniedError("cannot start a chat with a blocked user")

        existing = await self.find_existing_chat(other_id)
        if existing:
            logger.debug("chat with %s already exists: %s", other_id, existing)
            self._open(existing)
            return ChatStart(chat_id=existing)

        profile = await self._profiles.get(other_id)
        if profile is None:
            raise NotFoundError(f"user {other_id} not found")

        if not profile.is_public:
            request_id = await call_remote(ensure_chat_request, self._db, self.user_id, other_id, message)
            logger.info("📨 chat request %s sent to %s", request_id, other_id)
            return ChatStart(request_id=request_id)

        ref = self._db.collection("chats").document()
        await call_remote(ref.set, new_chat_payload(self.user_id, other_id))
        logger.info("✅ created chat %s with %s", ref.id, other_id)
        self._open(ref.id)
        return ChatStart(chat_id=ref.id, created=True)

    # -------------------------- Incoming requests --------------------------

    def listen_requests(
        self,
        on_update: Callable[[Tuple[ChatRequest, ...]], object],
        on_error: Optional[Callable[[SyncError], object]] = None,
    ) -> Subscription:
        loop = asyncio.get_running_loop()
        query = (
            requests_ref(self._db)
            .where("recipientId", "==", self.user_id)
            .where("status", "==", RequestStatus.PENDING.value)
        )

        def _on_docs(docs):
            found = [ChatRequest.from_snapshot(snap) for snap in docs]
            visible = [r for r in found if not self._blocks.is_blocked_with(r.sender_id)]
            visible.sort(key=lambda r: r.timestamp, reverse=True)
            self.requests = tuple(visible)
            emit(on_update, self.requests)

        def _on_error(err):
            logger.error("❌ request listener for %s failed: %s", self.user_id, err)
            self.requests = ()
            emit(on_update, self.requests)
            emit(on_error, err)

        return listen(query, _on_docs, loop=loop, name=f"chatRequests:{self.user_id}", on_error=_on_error)

    def _find_request(self, request_id: str) -> ChatRequest:
        for request in self.requests:
            if request.id == request_id:
                return request
        raise NotFoundError(f"chat request {request_id} is not pending")

    async def accept(self, request) -> str:
        if isinstance(request, str):
            request = self._find_request(request)
        if request.recipient_id != self.user_id:
            raise PermissionDeniedError("only the recipient can accept a chat request")
        if self._blocks.is_blocked_with(request.sender_id):
            raise PermissionDeniedError("cannot accept a request from a blocked user")

        existing = await self.find_existing_chat(request.sender_id)
        chat_id = await call_remote(
            accept_chat_request, self._db, request.id, request.sender_id, request.recipient_id, existing
        )
        logger.info("🤝 request %s accepted, chat %s", request.id, chat_id)
        self._open(chat_id)
        return chat_id

    async def reject(self, request) -> None:
        if isinstance(request, str):
            request = self._find_request(request)
        if request.recipient_id != self.user_id:
            raise PermissionDeniedError("only the recipient can reject a chat request")
        await call_remote(
            requests_ref(self._db).document(request.id).update,
            {"status": RequestStatus.REJECTED.value},
        )
        logger.info("request %s rejected", request.id)
