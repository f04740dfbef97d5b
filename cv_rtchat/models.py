# cv_rtchat/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import FrozenSet, Optional

DELETED_PLACEHOLDER = "This message was deleted"
IMAGE_SUMMARY_TEXT = "📷 Photo"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class PresenceState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


def to_datetime(value) -> Optional[datetime]:
    """Firestore timestamps come back as tz-aware datetimes; guard the rest."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, (int, float)):
        # RTDB server timestamps are epoch milliseconds
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    to_dt = getattr(value, "to_datetime", None)
    if callable(to_dt):
        return to_datetime(to_dt())
    return None


def _kind(value) -> MessageKind:
    try:
        return MessageKind(value or "text")
    except ValueError:
        return MessageKind.TEXT


# -------------------------- Chat list --------------------------

@dataclass(frozen=True)
class ChatSession:
    id: str
    other_user_id: str
    last_message_text: str = ""
    last_message_time: datetime = EPOCH
    last_message_sender_id: str = ""
    unread_count: int = 0
    last_message_type: MessageKind = MessageKind.TEXT

    @staticmethod
    def other_participant(data: dict, viewer_id: str) -> str:
        participants = data.get("participants") or []
        return next((p for p in participants if p != viewer_id), "")

    @classmethod
    def from_snapshot(cls, snap, viewer_id: str, unread_count: int = 0) -> "ChatSession":
        data = snap.to_dict() or {}
        last = data.get("lastMessage") or {}
        return cls(
            id=snap.id,
            other_user_id=cls.other_participant(data, viewer_id),
            last_message_text=last.get("text") or "",
            last_message_time=to_datetime(last.get("timestamp")) or EPOCH,
            last_message_sender_id=last.get("senderId") or "",
            unread_count=unread_count,
            last_message_type=_kind(last.get("type")),
        )

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "otherUserId": self.other_user_id,
            "lastMessageText": self.last_message_text,
            "lastMessageTime": self.last_message_time.isoformat(),
            "lastMessageSenderId": self.last_message_sender_id,
            "lastMessageType": self.last_message_type.value,
            "unreadCount": self.unread_count,
        }


# -------------------------- Messages --------------------------

@dataclass(frozen=True)
class Message:
    id: str
    chat_id: str
    text: str
    sender_id: str
    timestamp: datetime
    kind: MessageKind = MessageKind.TEXT
    deleted: bool = False
    deleted_for: FrozenSet[str] = field(default_factory=frozenset)
    read_by: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_dict(cls, mid: str, chat_id: str, data: Optional[dict]) -> "Message":
        data = data or {}
        return cls(
            id=mid,
            chat_id=chat_id,
            text=data.get("text") or "",
            sender_id=data.get("senderId") or "",
            timestamp=to_datetime(data.get("timestamp")) or EPOCH,
            kind=_kind(data.get("type")),
            deleted=bool(data.get("deleted") or False),
            deleted_for=frozenset(data.get("deletedFor") or ()),
            read_by=frozenset(data.get("readBy") or ()),
        )

    @classmethod
    def from_snapshot(cls, snap, chat_id: str) -> "Message":
        return cls.from_dict(snap.id, chat_id, snap.to_dict())

    @property
    def display_text(self) -> str:
        """What any viewer may see: a tombstone never shows its original text."""
        return DELETED_PLACEHOLDER if self.deleted else self.text

    def hidden_for(self, viewer_id: str) -> bool:
        return viewer_id in self.deleted_for

    def is_unread_for(self, viewer_id: str) -> bool:
        return (
            self.sender_id != viewer_id
            and not self.deleted
            and viewer_id not in self.deleted_for
            and viewer_id not in self.read_by
        )

    def summary_text(self) -> str:
        if self.kind is MessageKind.IMAGE:
            return IMAGE_SUMMARY_TEXT
        return self.text

    def to_payload(self, viewer_id: str) -> dict:
        return {
            "id": self.id,
            "chatId": self.chat_id,
            "text": self.display_text,
            "senderId": self.sender_id,
            "timestamp": self.timestamp.isoformat(),
            "type": self.kind.value,
            "deleted": self.deleted,
            "mine": self.sender_id == viewer_id,
            "readByPeer": any(uid != self.sender_id for uid in self.read_by),
        }


# -------------------------- Presence --------------------------

@dataclass(frozen=True)
class PresenceRecord:
    user_id: str
    state: PresenceState = PresenceState.OFFLINE
    last_seen: Optional[datetime] = None
    last_changed: Optional[datetime] = None

    @classmethod
    def from_value(cls, uid: str, value, *, now: Optional[datetime] = None,
                   online_window: Optional[float] = None) -> "PresenceRecord":
        """
        Parse a presence node. With `online_window`, an "online" node whose
        last_seen is older than the window reads as offline: a client that died
        without signing off stops heartbeating and ages out.
        """
        if not isinstance(value, dict):
            return cls(user_id=uid)
        try:
            state = PresenceState(value.get("state") or "offline")
        except ValueError:
            state = PresenceState.OFFLINE
        last_seen = to_datetime(value.get("last_seen"))
        last_changed = to_datetime(value.get("last_changed"))
        if state is PresenceState.ONLINE and online_window:
            seen = last_seen or last_changed
            now = now or datetime.now(timezone.utc)
            if seen is None or now - seen > timedelta(seconds=online_window):
                state = PresenceState.OFFLINE
        return cls(user_id=uid, state=state, last_seen=last_seen, last_changed=last_changed)

    @property
    def online(self) -> bool:
        return self.state is PresenceState.ONLINE


# -------------------------- Requests --------------------------

@dataclass(frozen=True)
class ChatRequest:
    id: str
    sender_id: str
    recipient_id: str
    message: str = ""
    status: RequestStatus = RequestStatus.PENDING
    timestamp: datetime = EPOCH

    @classmethod
    def from_snapshot(cls, snap) -> "ChatRequest":
        data = snap.to_dict() or {}
        try:
            status = RequestStatus(data.get("status") or "pending")
        except ValueError:
            status = RequestStatus.PENDING
        return cls(
            id=snap.id,
            sender_id=data.get("senderId") or "",
            recipient_id=data.get("recipientId") or "",
            message=data.get("message") or "",
            status=status,
            timestamp=to_datetime(data.get("timestamp")) or EPOCH,
        )

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "senderId": self.sender_id,
            "recipientId": self.recipient_id,
            "message": self.message,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
        }
