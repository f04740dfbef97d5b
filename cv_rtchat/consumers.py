# cv_rtchat/consumers.py
import asyncio
import base64
import binascii
import logging
from urllib.parse import parse_qs

from channels.generic.websocket import AsyncJsonWebsocketConsumer
from django.conf import settings

from cv_core.errors import SyncError
from cv_core.remote import call_remote
from cv_users.search import search_users
from cv_users.sync import set_profile_visibility

from .chat_list import ChatListSyncer
from .chat_requests import ChatDirectory
from .message_stream import MessageStreamer

logger = logging.getLogger(__name__)

AUTH_FAILED = 4401


def required(content, key):
    value = content.get(key)
    if not value:
        raise ValueError(f"'{key}' is required")
    return value


class ServiceConsumer(AsyncJsonWebsocketConsumer):
    """
    JSON websocket bound to the process's Services container.

    Clients send `{"action": "<name>", ...}`; each action maps onto an
    `action_<name>` coroutine. Sync errors come back as `error` frames and
    never close the socket.
    """

    def __init__(self, *args, services=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.services = services
        self.uid = None
        self.present = False

    async def authenticate(self):
        query = parse_qs(self.scope.get("query_string", b"").decode())
        token = (query.get("token") or [""])[0]
        if not token:
            return None
        try:
            return await call_remote(self.services.authenticate, token)
        except SyncError as exc:
            logger.warning("🔑 token check failed: %s", exc)
            return None

    async def join_presence(self):
        """Count this socket towards the user's online state."""
        try:
            await call_remote(self.services.presence.setup_presence, self.uid)
        except SyncError as exc:
            logger.warning("⚠️ presence setup failed for %s: %s", self.uid, exc)
            await self.send_error(exc)
            return
        self.present = True

    async def leave_presence(self):
        if not self.present:
            return
        self.present = False
        try:
            await call_remote(self.services.presence.cleanup_presence, self.uid)
        except SyncError as exc:
            logger.warning("⚠️ presence cleanup failed for %s: %s", self.uid, exc)

    async def send_error(self, err):
        if isinstance(err, SyncError):
            await self.send_json(err.as_payload())
        else:
            await self.send_json({"type": "error", "code": "INVALID", "message": str(err), "retryable": False})

    async def receive_json(self, content, **kwargs):
        action = (content or {}).get("action") or ""
        handler = getattr(self, f"action_{action}", None)
        if handler is None:
            await self.send_error(ValueError(f"unknown action '{action}'"))
            return
        try:
            await handler(content)
        except (SyncError, ValueError) as exc:
            logger.warning("⚠️ action %s failed for %s: %s", action, self.uid, exc)
            await self.send_error(exc)


class ChatListConsumer(ServiceConsumer):
    """ws/chats/ : the signed-in user's home screen."""

    async def connect(self):
        self.syncer = None
        self.directory = None
        self._subs = []
        self.uid = await self.authenticate()
        if not self.uid:
            await self.close(code=AUTH_FAILED)
            return
        await self.accept()

        services = self.services
        await self.join_presence()

        self.blocks = services.blocks(self.uid)
        try:
            await self.blocks.load()
        except SyncError as exc:
            await self.send_error(exc)
        self._subs.append(self.blocks.listen(asyncio.get_running_loop(), on_error=self.send_error))

        self.syncer = ChatListSyncer(
            services.db,
            self.uid,
            profiles=services.profiles,
            blocks=self.blocks,
            bus=services.bus,
            on_update=self.push_chat_list,
            batch_size=settings.CONVERSA_BATCH_SIZE,
        )
        self.syncer.start()

        self.directory = ChatDirectory(
            services.db,
            self.uid,
            profiles=services.profiles,
            blocks=self.blocks,
            on_open=self.push_open_chat,
        )
        self._subs.append(self.directory.listen_requests(self.push_requests, on_error=self.send_error))

    async def disconnect(self, close_code):
        for sub in getattr(self, "_subs", ()):
            sub.cancel()
        if getattr(self, "syncer", None) is not None:
            self.syncer.stop()
        await self.leave_presence()

    # ----- outbound frames -----

    async def push_chat_list(self, state):
        await self.send_json(state.to_payload())

    async def push_requests(self, requests):
        await self.send_json({"type": "requests", "requests": [r.to_payload() for r in requests]})

    async def push_open_chat(self, chat_id):
        await self.send_json({"type": "open_chat", "chatId": chat_id})

    # ----- actions -----

    async def action_search(self, content):
        text = content.get("text") or ""
        await self.send_json({
            "type": "chat_list",
            "query": text,
            "loading": self.syncer.state.loading,
            "error": None,
            "chats": [c.to_payload() for c in self.syncer.search(text)],
        })

    async def action_find_users(self, content):
        found = await search_users(
            self.services.db,
            content.get("prefix") or "",
            me=self.uid,
            blocks=self.blocks,
            profiles=self.services.profiles,
        )
        await self.send_json({"type": "users", "users": [p.to_payload() for p in found]})

    async def action_delete_chat(self, content):
        await self.syncer.delete_chat(required(content, "chat_id"))

    async def action_start_chat(self, content):
        result = await self.directory.start_chat(content.get("user_id") or "", content.get("message") or "")
        if result.pending:
            await self.send_json({"type": "request_sent", "requestId": result.request_id})

    async def action_accept_request(self, content):
        await self.directory.accept(required(content, "request_id"))

    async def action_reject_request(self, content):
        await self.directory.reject(required(content, "request_id"))

    async def action_unblock(self, content):
        await self.blocks.unblock(self.uid, required(content, "user_id"))

    async def action_blocked_users(self, content):
        profiles = await self.blocks.blocked_profiles(self.services.profiles)
        await self.send_json({"type": "blocked_users", "users": [p.to_payload() for p in profiles]})

    async def action_set_visibility(self, content):
        await set_profile_visibility(
            self.services.db, self.uid, bool(content.get("is_public")), profiles=self.services.profiles
        )


class ChatroomConsumer(ServiceConsumer):
    """ws/chat/<chat_id>/ : one open conversation."""

    async def connect(self):
        self.streamer = None
        self.chat_id = self.scope["url_route"]["kwargs"]["chat_id"]
        self.uid = await self.authenticate()
        if not self.uid:
            await self.close(code=AUTH_FAILED)
            return
        await self.accept()

        services = self.services
        await self.join_presence()
        self.blocks = services.blocks(self.uid)
        if not self.blocks.loaded:
            try:
                await self.blocks.load()
            except SyncError as exc:
                await self.send_error(exc)

        self.streamer = MessageStreamer(
            services.db,
            self.chat_id,
            self.uid,
            presence=services.presence,
            bus=services.bus,
            blocks=self.blocks,
            upload_image=services.upload_chat_image,
            window=settings.CONVERSA_MESSAGE_WINDOW,
            sweep_interval=settings.CONVERSA_READ_SWEEP_SECONDS,
            summary_scan=settings.CONVERSA_SUMMARY_SCAN,
            batch_size=settings.CONVERSA_BATCH_SIZE,
            on_messages=self.push_messages,
            on_peer_status=self.push_peer_status,
            on_closed=self.push_closed,
        )
        try:
            await self.streamer.start()
        except SyncError as exc:
            logger.warning("⚠️ could not open chat %s for %s: %s", self.chat_id, self.uid, exc)
            await self.send_error(exc)
            self.streamer.stop()
            await self.leave_presence()
            await self.close()

    async def disconnect(self, close_code):
        if getattr(self, "streamer", None) is not None:
            self.streamer.stop()
        await self.leave_presence()

    # ----- outbound frames -----

    async def push_messages(self, messages):
        await self.send_json(self.streamer.payload())

    async def push_peer_status(self, record):
        await self.send_json({
            "type": "peer_status",
            "userId": record.user_id,
            "state": record.state.value,
            "lastSeen": record.last_seen.isoformat() if record.last_seen else None,
        })

    async def push_closed(self, reason):
        await self.send_json({"type": "chat_closed", "chatId": self.chat_id, "reason": reason})
        await self.leave_presence()
        await self.close()

    # ----- actions -----

    async def action_send_text(self, content):
        mid = await self.streamer.send_text(content.get("text") or "")
        await self.send_json({"type": "sent", "messageId": mid})

    async def action_send_image(self, content):
        try:
            data = base64.b64decode(content.get("data") or "", validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("image data is not valid base64") from exc
        mid = await self.streamer.send_image(data)
        await self.send_json({"type": "sent", "messageId": mid})

    async def action_delete_for_me(self, content):
        await self.streamer.delete_for_me(required(content, "message_id"))

    async def action_delete_for_everyone(self, content):
        await self.streamer.delete_for_everyone(required(content, "message_id"))

    async def action_block(self, content):
        await self.blocks.block(self.uid, self.streamer.peer_id)

    async def action_foreground(self, content):
        self.streamer.set_foreground(bool(content.get("active", True)))

    async def action_shared_media(self, content):
        await self.send_json({"type": "shared_media", "urls": list(self.streamer.shared_images)})

    async def action_load_image(self, content):
        url = content.get("url") or ""
        data = await self.services.media_loader.load(url)
        await self.send_json({
            "type": "image",
            "url": url,
            "data": base64.b64encode(data).decode() if data else None,
        })
