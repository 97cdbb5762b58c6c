"""Tests for the TTL key/value stores and the pending-authorization store on top of them."""
from unittest.mock import MagicMock

import pytest

from drivebot_auth.kv_store import MemoryKVStore, RedisKVStore
from drivebot_auth.pending_store import PendingAuthorizationStore


class ManualClock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


@pytest.fixture
def mclock():
    return ManualClock()


@pytest.fixture
def store(mclock):
    return MemoryKVStore(clock=mclock)


def test_memory_set_get(store):
    store.set("k", "v", 10)
    assert store.get("k") == "v"
    assert store.get("missing") is None


def test_memory_set_overwrites(store):
    store.set("k", "old", 10)
    store.set("k", "new", 10)
    assert store.get("k") == "new"


def test_memory_entry_expires(store, mclock):
    store.set("k", "v", 10)
    mclock.t += 9
    assert store.get("k") == "v"
    mclock.t += 1
    assert store.get("k") is None


def test_memory_pop_only_once(store):
    store.set("k", "v", 10)
    assert store.pop("k") == "v"
    assert store.pop("k") is None
    assert store.get("k") is None


def test_memory_pop_expired(store, mclock):
    store.set("k", "v", 10)
    mclock.t += 11
    assert store.pop("k") is None


def test_memory_delete_reports_winner(store):
    store.set("k", "v", 10)
    assert store.delete("k") is True
    assert store.delete("k") is False


def test_memory_purge_expired(store, mclock):
    store.set("a", "1", 5)
    store.set("b", "2", 50)
    mclock.t += 10
    assert store.purge_expired() == 1
    assert store.get("b") == "2"


def test_redis_set_uses_prefix_and_ttl():
    client = MagicMock()
    RedisKVStore(client).set("csrf_token:abc", "{}", 3600)
    client.set.assert_called_once_with("drivebot:csrf_token:abc", "{}", ex=3600)


def test_redis_pop_uses_getdel():
    client = MagicMock()
    client.getdel.return_value = "value"
    assert RedisKVStore(client, prefix="p:").pop("k") == "value"
    client.getdel.assert_called_once_with("p:k")


def test_redis_delete_true_only_when_removed():
    client = MagicMock()
    kv = RedisKVStore(client)
    client.delete.return_value = 1
    assert kv.delete("k") is True
    client.delete.return_value = 0
    assert kv.delete("k") is False


def test_redis_purge_is_noop():
    assert RedisKVStore(MagicMock()).purge_expired() == 0


def test_pending_put_peek_consume(store):
    pending = PendingAuthorizationStore(store, ttl_seconds=900)
    pending.put("u1", "verifier", "token")
    peeked = pending.peek("u1")
    assert peeked.code_verifier == "verifier"
    assert peeked.state_token == "token"
    consumed = pending.consume("u1")
    assert consumed == peeked
    assert pending.consume("u1") is None
    assert pending.peek("u1") is None


def test_pending_new_login_overwrites(store):
    pending = PendingAuthorizationStore(store)
    pending.put("u1", "v1", "t1")
    pending.put("u1", "v2", "t2")
    assert pending.consume("u1").state_token == "t2"


def test_pending_expires_after_ttl(store, mclock):
    pending = PendingAuthorizationStore(store, ttl_seconds=900)
    pending.put("u1", "v", "t")
    mclock.t += 901
    assert pending.consume("u1") is None


def test_pending_garbage_value_reads_as_missing(store):
    store.set(PendingAuthorizationStore.key_prefix + "u1", "not json", 60)
    assert PendingAuthorizationStore(store).consume("u1") is None
