# tests/test_blocking.py

import asyncio

import pytest

from cv_core.errors import TransientNetworkError
from cv_core.events import BlockListChanged, UserBlocked, UserUnblocked
from cv_users.blocking import blocked_either_direction

from .fakes import eventually


def _pair(db, blocker, blocked):
    return (
        blocked in db.data(f"users/{blocker}")["blockedUsers"],
        blocker in db.data(f"users/{blocked}")["blockedBy"],
    )


def test_predicate_is_symmetric_for_owner_pairs():
    kwargs = dict(owner="alice", blocked_users={"bob"}, blocked_by={"carol"})
    assert blocked_either_direction("alice", "bob", **kwargs)
    assert blocked_either_direction("bob", "alice", **kwargs)
    assert blocked_either_direction("carol", "alice", **kwargs)
    assert not blocked_either_direction("alice", "dave", **kwargs)
    assert not blocked_either_direction("alice", "alice", **kwargs)
    assert not blocked_either_direction("bob", "carol", **kwargs)


async def test_block_writes_both_halves(db, bus, alice_blocks):
    events = []
    bus.subscribe(UserBlocked, events.append)

    await alice_blocks.block("alice", "bob")

    assert _pair(db, "alice", "bob") == (True, True)
    assert alice_blocks.is_blocked_either_direction("alice", "bob")
    assert alice_blocks.is_blocked_with("bob")
    assert events == [UserBlocked("alice", "bob")]


async def test_failed_block_changes_neither_document(db, bus, alice_blocks):
    events = []
    bus.subscribe(UserBlocked, events.append)
    db.fail_writes("users/bob")

    with pytest.raises(TransientNetworkError):
        await alice_blocks.block("alice", "bob")

    assert _pair(db, "alice", "bob") == (False, False)
    assert not alice_blocks.is_blocked_with("bob")
    assert events == []


async def test_block_sequence_reflects_last_operation(db, bus, alice_blocks):
    unblocked = []
    bus.subscribe(UserUnblocked, unblocked.append)

    await alice_blocks.block("alice", "bob")
    await alice_blocks.unblock("alice", "bob")
    assert _pair(db, "alice", "bob") == (False, False)
    assert not alice_blocks.is_blocked_with("bob")
    assert unblocked == [UserUnblocked("alice", "bob")]

    await alice_blocks.block("alice", "bob")
    db.fail_writes("users/alice")
    with pytest.raises(TransientNetworkError):
        await alice_blocks.unblock("alice", "bob")
    assert _pair(db, "alice", "bob") == (True, True)
    assert alice_blocks.is_blocked_with("bob")


async def test_block_needs_two_users(alice_blocks):
    with pytest.raises(ValueError):
        await alice_blocks.block("alice", "alice")


async def test_other_side_learns_through_listener(db, bus, alice_blocks, bob_blocks):
    changed = []
    bus.subscribe(BlockListChanged, changed.append)
    await bob_blocks.load()
    sub = bob_blocks.listen(asyncio.get_running_loop())

    await alice_blocks.block("alice", "bob")

    await eventually(lambda: "alice" in bob_blocks.blocked_by)
    assert bob_blocks.is_blocked_with("alice")
    assert BlockListChanged("bob") in changed
    sub.cancel()


async def test_load_reads_existing_sets(db, bus, users):
    from cv_users.blocking import BlockRegistry

    db.document("users/carol").update({"blockedUsers": ["alice"]})
    db.document("users/alice").update({"blockedBy": ["carol"]})
    registry = BlockRegistry(db, "alice", bus=bus)
    await registry.load()

    assert registry.loaded
    assert registry.blocked_by == frozenset({"carol"})
    assert registry.is_blocked_with("carol")


async def test_blocked_profiles_lists_my_blocks(db, profiles, alice_blocks):
    await alice_blocks.block("alice", "bob")
    found = await alice_blocks.blocked_profiles(profiles)
    assert [p.id for p in found] == ["bob"]


async def test_listener_failure_keeps_loaded_sets(db, users, alice_blocks, monkeypatch):
    from google.api_core import exceptions as gexc

    from .fakes import FakeDocumentReference

    await alice_blocks.block("alice", "bob")
    await alice_blocks.load()

    def refuse(self, callback):
        raise gexc.ServiceUnavailable("down")

    monkeypatch.setattr(FakeDocumentReference, "on_snapshot", refuse)
    errors = []
    alice_blocks.listen(asyncio.get_running_loop(), on_error=errors.append)

    await eventually(lambda: errors)
    assert errors[0].retryable
    assert alice_blocks.listen_error is errors[0]
    assert alice_blocks.is_blocked_with("bob")
