# cv_rtchat/firebase_sync.py
"""
Firestore read/write helpers for chats and messages.

Everything in here is synchronous and talks to the admin SDK directly; the
async components run these helpers on worker threads via `call_remote`.
"""
from __future__ import annotations

from typing import Iterable, List, Optional

from google.cloud import firestore as _fs

from .models import DELETED_PLACEHOLDER, Message, MessageKind, RequestStatus


# -------------------------- References --------------------------

def user_ref(db, uid: str):
    return db.collection("users").document(uid)


def chat_ref(db, chat_id: str):
    return db.collection("chats").document(chat_id)


def messages_ref(db, chat_id: str):
    return chat_ref(db, chat_id).collection("messages")


# -------------------------- Payloads --------------------------

def new_message_payload(sender_uid: str, text: str, kind: MessageKind = MessageKind.TEXT) -> dict:
    return {
        "text": text,
        "senderId": sender_uid,
        "timestamp": _fs.SERVER_TIMESTAMP,   # server timestamp is key for ordering
        "type": kind.value,
        "deleted": False,
        "deletedFor": [],
        "readBy": [sender_uid],
    }


def summary_for_message(message: Message) -> dict:
    return {
        "text": message.summary_text(),
        "senderId": message.sender_id,
        "timestamp": message.timestamp,
        "type": message.kind.value,
    }


def empty_summary(timestamp=None) -> dict:
    return {
        "text": "",
        "senderId": "",
        "timestamp": timestamp if timestamp is not None else _fs.SERVER_TIMESTAMP,
        "type": MessageKind.TEXT.value,
    }


def new_chat_payload(uid_a: str, uid_b: str, *, read_a: bool = True, read_b: bool = False) -> dict:
    return {
        "participants": [uid_a, uid_b],
        "createdAt": _fs.SERVER_TIMESTAMP,
        "lastMessage": empty_summary(),
        "lastMessageRead": {uid_a: read_a, uid_b: read_b},
    }


def sent_summary_update(sender_uid: str, peer_uid: str, text: str, kind: MessageKind) -> dict:
    """chat doc update that follows a successful message write."""
    update = {
        "lastMessage": {
            "text": text,
            "senderId": sender_uid,
            "timestamp": _fs.SERVER_TIMESTAMP,
            "type": kind.value,
        },
        f"lastMessageRead.{sender_uid}": True,
    }
    if peer_uid:
        update[f"lastMessageRead.{peer_uid}"] = False
    return update


# -------------------------- Queries --------------------------

def find_chat_between(db, uid_a: str, uid_b: str) -> Optional[str]:
    q = db.collection("chats").where("participants", "array_contains", uid_a)
    for snap in q.stream():
        participants = (snap.to_dict() or {}).get("participants") or []
        if uid_b in participants:
            return snap.id
    return None


def count_unread(db, chat_id: str, viewer_uid: str, sender_uid: str) -> int:
    """
    Messages from `sender_uid` the viewer has not read.

    Firestore cannot express "array does not contain", so the equality part is
    filtered server-side and readBy/deletedFor client-side.
    """
    q = (
        messages_ref(db, chat_id)
        .where("senderId", "==", sender_uid)
        .where("deleted", "==", False)
    )
    count = 0
    for snap in q.stream():
        if Message.from_snapshot(snap, chat_id).is_unread_for(viewer_uid):
            count += 1
    return count


def pick_summary_source(messages: Iterable[Message]) -> Optional[Message]:
    """
    Newest message that is not a tombstone.

    The summary is shared by both participants, so per-viewer `deletedFor`
    never disqualifies a message here.
    """
    candidates = [m for m in messages if not m.deleted]
    if not candidates:
        return None
    return max(candidates, key=lambda m: m.timestamp)


# -------------------------- Writes --------------------------

def recompute_last_message(db, chat_id: str, scan: int = 5, fallback_timestamp=None) -> dict:
    """Rebuild chats/{id}.lastMessage from the newest `scan` messages."""
    snaps = list(
        messages_ref(db, chat_id)
        .order_by("timestamp", direction=_fs.Query.DESCENDING)
        .limit(scan)
        .stream()
    )
    source = pick_summary_source(Message.from_snapshot(s, chat_id) for s in snaps)
    summary = summary_for_message(source) if source else empty_summary(fallback_timestamp)
    chat_ref(db, chat_id).update({"lastMessage": summary})
    return summary


def mark_messages_read(db, chat_id: str, viewer_uid: str, peer_uid: str, batch_size: int = 400) -> int:
    """
    Add the viewer to readBy on every peer message still missing it.

    Idempotent: when nothing is unread no write is issued at all. The chat's
    lastMessageRead flag rides in the same batch so chat-list listeners see
    the change.
    """
    q = messages_ref(db, chat_id).where("senderId", "==", peer_uid)
    pending = [s for s in q.stream() if viewer_uid not in ((s.to_dict() or {}).get("readBy") or [])]
    if not pending:
        return 0

    for start in range(0, len(pending), batch_size):
        chunk = pending[start:start + batch_size]
        batch = db.batch()
        for snap in chunk:
            batch.update(snap.reference, {"readBy": _fs.ArrayUnion([viewer_uid])})
        if start + batch_size >= len(pending):
            batch.update(chat_ref(db, chat_id), {f"lastMessageRead.{viewer_uid}": True})
        batch.commit()
    return len(pending)


def delete_all_messages(db, chat_id: str, batch_size: int = 400) -> int:
    snaps = list(messages_ref(db, chat_id).stream())
    deleted = 0
    for start in range(0, len(snaps), batch_size):
        batch = db.batch()
        chunk: List = snaps[start:start + batch_size]
        for snap in chunk:
            batch.delete(snap.reference)
        batch.commit()
        deleted += len(chunk)
    return deleted


def tombstone_payload() -> dict:
    return {"deleted": True, "text": DELETED_PLACEHOLDER}


def hide_for_payload(uid: str) -> dict:
    return {"deletedFor": _fs.ArrayUnion([uid])}


# -------------------------- Chat requests --------------------------

def requests_ref(db):
    return db.collection("chatRequests")


def ensure_chat_request(db, sender_uid: str, recipient_uid: str, message: str = "") -> str:
    """Reuse a pending request between the pair, or file a new one."""
    q = (
        requests_ref(db)
        .where("senderId", "==", sender_uid)
        .where("recipientId", "==", recipient_uid)
        .where("status", "==", RequestStatus.PENDING.value)
        .limit(1)
    )
    for snap in q.stream():
        return snap.id
    ref = requests_ref(db).document()
    ref.set({
        "senderId": sender_uid,
        "recipientId": recipient_uid,
        "message": message,
        "status": RequestStatus.PENDING.value,
        "timestamp": _fs.SERVER_TIMESTAMP,
    })
    return ref.id


def accept_chat_request(db, request_id: str, sender_uid: str, recipient_uid: str,
                        existing_chat_id: Optional[str] = None) -> str:
    """Flip the request to accepted and create the chat in the same batch."""
    batch = db.batch()
    batch.update(requests_ref(db).document(request_id), {"status": RequestStatus.ACCEPTED.value})
    if existing_chat_id:
        chat_id = existing_chat_id
    else:
        ref = db.collection("chats").document()
        batch.set(ref, new_chat_payload(sender_uid, recipient_uid, read_a=True, read_b=True))
        chat_id = ref.id
    batch.commit()
    return chat_id
