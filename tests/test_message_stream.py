# tests/test_message_stream.py

import asyncio

import pytest
from google.api_core import exceptions as gexc

from cv_core.errors import NotFoundError, PermissionDeniedError, SummaryLagError, TransientNetworkError
from cv_core.events import ChatOpened, EventBus
from cv_rtchat.chat_list import ChatListSyncer
from cv_rtchat.firebase_sync import count_unread
from cv_rtchat.message_stream import MessageStreamer
from cv_rtchat.models import DELETED_PLACEHOLDER, IMAGE_SUMMARY_TEXT, MessageKind
from cv_rtchat.presence import PresenceTracker
from cv_users.blocking import BlockRegistry

from .fakes import FakeQuery, eventually, seed_chat, seed_message


@pytest.fixture
def presence(presence_backend):
    return PresenceTracker(presence_backend)


@pytest.fixture
def chat(db, users):
    seed_chat(db, "c1", "alice", "bob")
    return "c1"


def make_streamer(db, viewer, presence, bus, blocks=None, chat_id="c1", **kwargs):
    kwargs.setdefault("sweep_interval", 0.02)
    return MessageStreamer(db, chat_id, viewer, presence=presence, bus=bus, blocks=blocks, **kwargs)


async def opened(streamer):
    await streamer.start()
    await eventually(lambda: streamer.loaded)
    return streamer


# -------------------------- window --------------------------

async def test_window_holds_newest_messages_ascending(db, presence, bus, chat):
    for i in range(60):
        seed_message(db, chat, f"m{i:02d}", "bob" if i % 2 else "alice", f"text {i}")
    streamer = await opened(make_streamer(db, "alice", presence, bus, window=50))

    ids = [m.id for m in streamer.messages]
    assert len(ids) == 50
    assert ids[0] == "m10" and ids[-1] == "m59"
    assert ids == sorted(ids)
    streamer.stop()


async def test_tombstones_render_placeholder_and_hidden_are_dropped(db, presence, bus, chat):
    seed_message(db, chat, "m1", "bob", "secret", deleted=True, read_by=["bob", "alice"])
    seed_message(db, chat, "m2", "bob", "not for alice", deleted_for=["alice"])
    seed_message(db, chat, "m3", "bob", "hello")

    alice = await opened(make_streamer(db, "alice", presence, bus))
    bob = await opened(make_streamer(db, "bob", presence, bus))

    assert [m.id for m in alice.messages] == ["m1", "m3"]
    assert alice.messages[0].display_text == DELETED_PLACEHOLDER
    assert alice.payload()["messages"][0]["text"] == DELETED_PLACEHOLDER
    assert [m.id for m in bob.messages] == ["m1", "m2", "m3"]
    assert bob.payload()["messages"][0]["text"] == DELETED_PLACEHOLDER
    assert count_unread(db, chat, "alice", "bob") == 1
    alice.stop()
    bob.stop()


async def test_open_publishes_chat_opened(db, presence, bus, chat):
    seen = []
    bus.subscribe(ChatOpened, seen.append)
    streamer = await opened(make_streamer(db, "alice", presence, bus))
    assert seen == [ChatOpened("c1")]
    assert streamer.peer_id == "bob"
    streamer.stop()


async def test_open_refuses_missing_foreign_and_blocked_chats(db, presence, bus, chat, alice_blocks):
    with pytest.raises(NotFoundError):
        await make_streamer(db, "alice", presence, bus, chat_id="nope").start()
    with pytest.raises(PermissionDeniedError):
        await make_streamer(db, "carol", presence, bus).start()

    await alice_blocks.block("alice", "bob")
    with pytest.raises(PermissionDeniedError):
        await make_streamer(db, "alice", presence, bus, blocks=alice_blocks).start()


# -------------------------- sending --------------------------

async def test_send_text_writes_message_then_summary(db, presence, bus, chat):
    streamer = await opened(make_streamer(db, "alice", presence, bus))

    mid = await streamer.send_text("  hello  ")

    message = db.data(f"chats/c1/messages/{mid}")
    assert message["text"] == "hello"
    assert message["readBy"] == ["alice"]
    assert message["deleted"] is False and message["deletedFor"] == []
    summary = db.data("chats/c1")
    assert summary["lastMessage"]["text"] == "hello"
    assert summary["lastMessage"]["senderId"] == "alice"
    assert summary["lastMessageRead"] == {"alice": True, "bob": False}
    await eventually(lambda: [m.id for m in streamer.messages] == [mid])
    streamer.stop()


async def test_send_rejects_empty_text(db, presence, bus, chat):
    streamer = await opened(make_streamer(db, "alice", presence, bus))
    with pytest.raises(ValueError):
        await streamer.send_text("   ")
    streamer.stop()


async def test_summary_failure_raises_lag_error(db, presence, bus, chat):
    streamer = await opened(make_streamer(db, "alice", presence, bus))
    db.fail_writes("chats/c1", exact=True)

    with pytest.raises(SummaryLagError) as info:
        await streamer.send_text("written anyway")

    assert db.data(f"chats/c1/messages/{info.value.message_id}")["text"] == "written anyway"
    assert db.data("chats/c1")["lastMessage"]["text"] == ""
    streamer.stop()


async def test_send_to_blocked_peer_is_refused(db, presence, bus, chat, alice_blocks):
    streamer = await opened(make_streamer(db, "alice", presence, bus, blocks=alice_blocks))
    await alice_blocks.block("alice", "bob")
    with pytest.raises(PermissionDeniedError):
        await streamer.send_text("hi")
    streamer.stop()


async def test_send_image_uploads_first(db, presence, bus, chat):
    uploads = []

    def upload(chat_id, data):
        uploads.append((chat_id, data))
        return f"https://cdn/{chat_id}/1.jpg"

    streamer = await opened(make_streamer(db, "alice", presence, bus, upload_image=upload))
    mid = await streamer.send_image(b"\xff\xd8jpeg")

    assert uploads == [("c1", b"\xff\xd8jpeg")]
    message = db.data(f"chats/c1/messages/{mid}")
    assert message["type"] == MessageKind.IMAGE.value
    assert message["text"] == "https://cdn/c1/1.jpg"
    last = db.data("chats/c1")["lastMessage"]
    assert last["text"] == IMAGE_SUMMARY_TEXT and last["type"] == "image"
    await eventually(lambda: streamer.shared_images == ("https://cdn/c1/1.jpg",))
    streamer.stop()


async def test_failed_upload_writes_no_message(db, presence, bus, chat):
    def upload(chat_id, data):
        raise gexc.ServiceUnavailable("storage down")

    streamer = await opened(make_streamer(db, "alice", presence, bus, upload_image=upload))
    with pytest.raises(TransientNetworkError):
        await streamer.send_image(b"img")
    assert not [p for p in db.docs if p.startswith("chats/c1/messages/")]
    streamer.stop()


async def test_in_flight_send_survives_close(db, presence, bus, chat):
    streamer = await opened(make_streamer(db, "alice", presence, bus))
    task = asyncio.ensure_future(streamer.send_text("late"))
    await asyncio.sleep(0)
    streamer.stop()

    mid = await task
    assert db.data(f"chats/c1/messages/{mid}")["text"] == "late"
    await streamer.drain()


# -------------------------- read receipts --------------------------

async def test_sweep_is_idempotent(db, presence, bus, chat):
    seed_message(db, chat, "m1", "bob", "one")
    seed_message(db, chat, "m2", "bob", "two")
    seed_message(db, chat, "m3", "alice", "mine")
    streamer = await opened(make_streamer(db, "alice", presence, bus))

    assert await streamer.mark_read() == 2
    writes = db.writes
    assert await streamer.mark_read() == 0
    assert db.writes == writes

    assert "alice" in db.data("chats/c1/messages/m1")["readBy"]
    assert db.data("chats/c1/messages/m3")["readBy"] == ["alice"]
    assert db.data("chats/c1")["lastMessageRead"]["alice"] is True
    streamer.stop()


async def test_three_unread_cleared_by_one_sweep(db, profiles, presence, bus, chat, bob_blocks):
    bob_list = ChatListSyncer(db, "bob", profiles=profiles, blocks=bob_blocks, bus=bus)
    bob_list.start()
    alice = await opened(make_streamer(db, "alice", presence, bus))
    for text in ("one", "two", "three"):
        await alice.send_text(text)

    await eventually(lambda: bob_list.chats and bob_list.chats[0].unread_count == 3)

    bob = await opened(make_streamer(db, "bob", presence, bus))
    assert await bob.mark_read() == 3
    for m in bob.messages:
        assert "bob" in db.data(f"chats/c1/messages/{m.id}")["readBy"]
    await eventually(lambda: bob_list.chats[0].unread_count == 0)

    writes = db.writes
    assert await bob.mark_read() == 0
    assert db.writes == writes
    await asyncio.sleep(0.05)
    assert bob_list.chats[0].unread_count == 0

    for closable in (alice, bob, bob_list):
        closable.stop()


async def test_foreground_runs_sweep_until_backgrounded(db, presence, bus, chat):
    streamer = await opened(make_streamer(db, "alice", presence, bus))
    streamer.set_foreground(True)
    assert streamer.foreground

    seed_message(db, chat, "m1", "bob", "ping")
    await eventually(lambda: "alice" in db.data("chats/c1/messages/m1")["readBy"])

    streamer.set_foreground(False)
    assert not streamer.foreground
    await asyncio.sleep(0.05)
    seed_message(db, chat, "m2", "bob", "unseen")
    await asyncio.sleep(0.1)
    assert db.data("chats/c1/messages/m2")["readBy"] == ["bob"]
    streamer.stop()


# -------------------------- deleting --------------------------

async def test_only_sender_deletes_for_everyone(db, presence, bus, chat):
    seed_message(db, chat, "m1", "bob", "bob's")
    streamer = await opened(make_streamer(db, "alice", presence, bus))

    with pytest.raises(PermissionDeniedError):
        await streamer.delete_for_everyone("m1")
    assert db.data("chats/c1/messages/m1")["deleted"] is False
    streamer.stop()


async def test_deleting_only_message_resets_summary(db, presence, bus, chat):
    alice = await opened(make_streamer(db, "alice", presence, bus))
    bob = await opened(make_streamer(db, "bob", presence, bus))
    mid = await alice.send_text("only one")
    await eventually(lambda: alice.messages and alice.messages[-1].id == mid)
    assert db.data("chats/c1")["lastMessage"]["text"] == "only one"

    await alice.delete_for_everyone(mid)

    message = db.data(f"chats/c1/messages/{mid}")
    assert message["deleted"] is True and message["text"] == DELETED_PLACEHOLDER
    last = db.data("chats/c1")["lastMessage"]
    assert last["text"] == "" and last["senderId"] == ""
    await eventually(lambda: bob.messages and bob.messages[-1].display_text == DELETED_PLACEHOLDER)
    assert count_unread(db, chat, "bob", "alice") == 0
    alice.stop()
    bob.stop()


async def test_deleting_latest_falls_back_to_previous(db, presence, bus, chat):
    alice = await opened(make_streamer(db, "alice", presence, bus))
    await alice.send_text("first")
    second = await alice.send_text("second")
    await eventually(lambda: len(alice.messages) == 2)

    await alice.delete_for_everyone(second)
    last = db.data("chats/c1")["lastMessage"]
    assert last["text"] == "first" and last["senderId"] == "alice"
    alice.stop()


async def test_delete_for_me_only_hides_for_me(db, presence, bus, chat):
    seed_message(db, chat, "m1", "alice", "oops")
    alice = await opened(make_streamer(db, "alice", presence, bus))
    bob = await opened(make_streamer(db, "bob", presence, bus))
    assert count_unread(db, chat, "bob", "alice") == 1

    await alice.delete_for_me("m1")

    await eventually(lambda: alice.messages == ())
    assert [m.id for m in bob.messages] == ["m1"]
    assert count_unread(db, chat, "bob", "alice") == 1
    assert db.data("chats/c1/messages/m1")["deletedFor"] == ["alice"]
    alice.stop()
    bob.stop()


async def test_deleting_unknown_message_is_not_found(db, presence, bus, chat):
    streamer = await opened(make_streamer(db, "alice", presence, bus))
    with pytest.raises(NotFoundError):
        await streamer.delete_for_me("ghost")
    streamer.stop()


# -------------------------- lifecycle --------------------------

async def test_peer_status_follows_presence(db, presence, presence_backend, bus, chat):
    statuses = []
    streamer = await opened(make_streamer(db, "alice", presence, bus, on_peer_status=statuses.append))
    await eventually(lambda: statuses)
    assert not statuses[-1].online

    presence_backend.update("presence/bob", {"state": "online"})
    await eventually(lambda: streamer.peer_status.online)
    streamer.stop()
    assert presence_backend.active_listeners("presence/bob") == 0


async def test_stop_releases_everything(db, presence, presence_backend, bus, chat):
    listeners = db.listener_count
    streamer = await opened(make_streamer(db, "alice", presence, bus))
    streamer.set_foreground(True)
    assert db.listener_count == listeners + 1

    streamer.stop()
    streamer.stop()

    assert db.listener_count == listeners
    assert not streamer.foreground
    assert presence.observer_count("bob") == 0
    seed_message(db, chat, "late", "bob", "after close")
    await asyncio.sleep(0.05)
    assert streamer.messages == ()


async def test_block_closes_open_chat(db, presence, bus, chat, alice_blocks):
    closed = []
    streamer = await opened(make_streamer(db, "alice", presence, bus, blocks=alice_blocks, on_closed=closed.append))

    await alice_blocks.block("alice", "bob")

    await eventually(lambda: closed == ["blocked"])
    assert streamer.closed


async def test_block_by_peer_closes_chat(db, presence, bus, chat, alice_blocks):
    closed = []
    await alice_blocks.load()
    listener = alice_blocks.listen(asyncio.get_running_loop())
    streamer = await opened(make_streamer(db, "alice", presence, bus, blocks=alice_blocks, on_closed=closed.append))

    # bob blocks from another process; alice only sees her user doc change
    await BlockRegistry(db, "bob", bus=EventBus()).block("bob", "alice")

    await eventually(lambda: closed == ["blocked"])
    listener.cancel()


async def test_listener_failure_ends_loading(db, presence, bus, chat, monkeypatch):
    def refuse(self, callback):
        raise gexc.PermissionDenied("rules")

    monkeypatch.setattr(FakeQuery, "on_snapshot", refuse)
    frames = []
    streamer = make_streamer(db, "alice", presence, bus, on_messages=frames.append)
    await streamer.start()

    await eventually(lambda: streamer.loaded)
    assert frames == [()]
    assert streamer.error.code == "PERMISSION_DENIED"
    payload = streamer.payload()
    assert payload["loading"] is False
    assert payload["error"]["retryable"] is False
    assert payload["messages"] == []
    streamer.stop()
