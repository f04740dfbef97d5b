import pytest

from cv_core.events import EventBus
from cv_users.blocking import BlockRegistry
from cv_users.profile_cache import ProfileCache

from .fakes import FakeBucket, FakeFirestore, FakePresenceBackend, seed_user


@pytest.fixture
def db():
    return FakeFirestore()


@pytest.fixture
def presence_backend():
    return FakePresenceBackend()


@pytest.fixture
def bucket():
    return FakeBucket()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def profiles(db):
    return ProfileCache(db, wait_timeout=1.0)


@pytest.fixture
def users(db):
    """alice, bob and carol, all public."""
    for uid in ("alice", "bob", "carol"):
        seed_user(db, uid)
    return ("alice", "bob", "carol")


@pytest.fixture
def alice_blocks(db, bus, users):
    return BlockRegistry(db, "alice", bus=bus)


@pytest.fixture
def bob_blocks(db, bus, users):
    return BlockRegistry(db, "bob", bus=bus)
