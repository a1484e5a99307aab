"""Tests for the in-memory OAuth flow session store."""

from datetime import datetime, timedelta

import pytest

from ledgerly.app.bank_integration.errors import SessionExpiredError, SessionNotFoundError
from ledgerly.app.bank_integration.session_store import InMemorySessionStore


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemorySessionStore(ttl=timedelta(minutes=30), clock=clock)


class TestGet:
    def test_returns_stored_payload(self, store):
        store.store("s1", {'user_id': 7, 'provider_name': 'truelayer'})
        assert store.get("s1") == {'user_id': 7, 'provider_name': 'truelayer'}

    def test_missing_session(self, store):
        with pytest.raises(SessionNotFoundError):
            store.get("nope")

    def test_alive_just_before_expiry(self, store, clock):
        store.store("s1", {'user_id': 7})
        clock.advance(minutes=29, seconds=59)
        assert store.get("s1")['user_id'] == 7

    def test_alive_at_exact_expiry(self, store, clock):
        store.store("s1", {'user_id': 7})
        clock.advance(minutes=30)
        assert store.get("s1")['user_id'] == 7

        clock.advance(microseconds=1)
        with pytest.raises(SessionExpiredError):
            store.get("s1")

    def test_expired_session_is_evicted(self, store, clock):
        store.store("s1", {'user_id': 7})
        clock.advance(minutes=31)

        with pytest.raises(SessionExpiredError):
            store.get("s1")
        # Gone after the first expired read
        with pytest.raises(SessionNotFoundError):
            store.get("s1")

    def test_get_does_not_extend_expiry(self, store, clock):
        store.store("s1", {'user_id': 7})
        clock.advance(minutes=20)
        store.get("s1")
        clock.advance(minutes=11)

        with pytest.raises(SessionExpiredError):
            store.get("s1")

    def test_returned_payload_is_a_copy(self, store):
        store.store("s1", {'user_id': 7})
        store.get("s1")['user_id'] = 99
        assert store.get("s1")['user_id'] == 7


class TestUpdate:
    def test_replaces_payload_and_resets_expiry(self, store, clock):
        store.store("s1", {'user_id': 7})
        clock.advance(minutes=25)
        store.update("s1", {'user_id': 7, 'bank_id': 'BCP'})
        clock.advance(minutes=25)

        assert store.get("s1") == {'user_id': 7, 'bank_id': 'BCP'}

    def test_update_missing_session(self, store):
        with pytest.raises(SessionNotFoundError):
            store.update("nope", {})

    def test_update_expired_session(self, store, clock):
        store.store("s1", {'user_id': 7})
        clock.advance(hours=1)
        with pytest.raises(SessionExpiredError):
            store.update("s1", {'user_id': 7})


class TestCleanup:
    def test_removes_only_expired(self, store, clock):
        store.store("old", {'user_id': 1})
        clock.advance(minutes=20)
        store.store("new", {'user_id': 2})
        clock.advance(minutes=15)

        assert store.cleanup_expired() == 1
        assert len(store) == 1
        assert store.get("new")['user_id'] == 2

    def test_keeps_session_at_exact_expiry(self, store, clock):
        store.store("s1", {'user_id': 1})
        clock.advance(minutes=30)
        assert store.cleanup_expired() == 0
        assert len(store) == 1

    def test_nothing_to_remove(self, store):
        store.store("s1", {'user_id': 1})
        assert store.cleanup_expired() == 0


def test_delete_is_idempotent(store):
    store.store("s1", {'user_id': 1})
    store.delete("s1")
    store.delete("s1")
    with pytest.raises(SessionNotFoundError):
        store.get("s1")
