import json
from datetime import datetime, timedelta, timezone

import pytest
import redis

from claim_registry import FileClaimRegistry, MemoryClaimRegistry, RedisClaimRegistry
from errors import DebounceRejected, StorageUnavailable
from ledger_storage import JsonFileStorage, MemoryStorage, RedisStorage, SqlStorage
from spin_ledger import SpinLedger


NOW = datetime(2026, 5, 4, 10, 0, tzinfo=timezone.utc)


class FakeLock:
    def __init__(self, available=True):
        self.available = available
        self.released = False

    def acquire(self):
        return self.available

    def release(self):
        self.released = True


class FakeRedis:
    """Just enough of the redis-py client for the storage and registry."""

    def __init__(self, lock_available=True):
        self.data = {}
        self.expiry = {}
        self.lock_available = lock_available
        self.locks = []

    def get(self, name):
        return self.data.get(name)

    def set(self, name, value, nx=False, ex=None):
        if nx and name in self.data:
            return None
        self.data[name] = value if isinstance(value, (bytes, str)) else str(value)
        if ex is not None:
            self.expiry[name] = ex
        return True

    def exists(self, name):
        return int(name in self.data)

    def ttl(self, name):
        if name not in self.data:
            return -2
        return self.expiry.get(name, -1)

    def lock(self, name, timeout=None, blocking_timeout=None):
        lock = FakeLock(self.lock_available)
        self.locks.append((name, lock))
        return lock


class DownRedis:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise redis.ConnectionError("connection refused")

        return fail


def test_memory_storage_returns_copies():
    storage = MemoryStorage()
    record = {"spinsBanked": 1}
    storage.save("k", record)
    record["spinsBanked"] = 5
    assert storage.load("k") == {"spinsBanked": 1}
    assert storage.load("missing") is None


def test_json_file_storage_rewrites_whole_file(tmp_path):
    path = tmp_path / "state.json"
    storage = JsonFileStorage(str(path))
    storage.save("spin_state_v1:a", {"spinsBanked": 1})
    storage.save("spin_state_v1:b", {"spinsBanked": 2})

    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk == {"spin_state_v1:a": {"spinsBanked": 1}, "spin_state_v1:b": {"spinsBanked": 2}}
    assert storage.load("spin_state_v1:b") == {"spinsBanked": 2}


def test_json_file_storage_corrupt_file(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")
    storage = JsonFileStorage(str(path))
    with pytest.raises(StorageUnavailable):
        storage.load("k")

    ledger = SpinLedger(storage)
    assert not ledger.claim("browser-1", NOW).ok
    assert ledger.state("browser-1", NOW).spins_banked == 0


def test_sql_storage_round_trip(app):
    storage = SqlStorage()
    with app.app_context():
        assert storage.load("spin_state_v1:a") is None
        storage.save("spin_state_v1:a", {"spinsBanked": 1})
        storage.save("spin_state_v1:a", {"spinsBanked": 2})
        assert storage.load("spin_state_v1:a") == {"spinsBanked": 2}


def test_redis_storage_round_trip():
    client = FakeRedis()
    storage = RedisStorage(client)
    storage.save("k", {"spinsBanked": 3})
    assert client.data["spinwheel:k"] == json.dumps({"spinsBanked": 3})
    assert storage.load("k") == {"spinsBanked": 3}
    assert storage.load("other") is None


def test_redis_storage_lock_is_released():
    client = FakeRedis()
    storage = RedisStorage(client)
    with storage.lock("k"):
        pass
    name, lock = client.locks[0]
    assert name == "spinwheel:lock:k"
    assert lock.released


def test_redis_storage_busy_lock_is_a_debounce():
    storage = RedisStorage(FakeRedis(lock_available=False))
    with pytest.raises(DebounceRejected):
        with storage.lock("k"):
            pass


def test_redis_outage_is_storage_unavailable():
    storage = RedisStorage(DownRedis())
    with pytest.raises(StorageUnavailable):
        storage.load("k")
    with pytest.raises(StorageUnavailable):
        storage.save("k", {})


def test_memory_registry_expires_after_ttl():
    registry = MemoryClaimRegistry(timedelta(minutes=10))
    assert registry.reserve("a@example.com", NOW)
    assert not registry.reserve("a@example.com", NOW + timedelta(minutes=9))
    assert registry.contains("a@example.com", NOW + timedelta(minutes=9))
    assert registry.next_claim_at("a@example.com", NOW) == NOW + timedelta(minutes=10)
    assert not registry.contains("a@example.com", NOW + timedelta(minutes=11))
    assert registry.reserve("a@example.com", NOW + timedelta(minutes=11))


def test_file_registry_appends_lowercased_lines(tmp_path):
    path = tmp_path / "emails.txt"
    path.write_text("Old@Example.com\n\n", encoding="utf-8")
    registry = FileClaimRegistry(str(path))
    assert not registry.reserve("old@example.com", NOW)
    assert registry.reserve("new@example.com", NOW)
    assert path.read_text(encoding="utf-8") == "Old@Example.com\n\nnew@example.com\n"
    assert registry.next_claim_at("new@example.com", NOW) is None


def test_file_registry_creates_missing_file(tmp_path):
    path = tmp_path / "emails.txt"
    registry = FileClaimRegistry(str(path))
    assert not registry.contains("a@example.com", NOW)
    assert path.exists()


def test_redis_registry_set_nx_with_ttl():
    client = FakeRedis()
    registry = RedisClaimRegistry(client, timedelta(minutes=10))
    assert registry.reserve("a@example.com", NOW)
    assert not registry.reserve("a@example.com", NOW)
    assert client.expiry["spinwheel:claim:a@example.com"] == 600
    assert registry.contains("a@example.com", NOW)
    assert registry.next_claim_at("a@example.com", NOW) == NOW + timedelta(seconds=600)


def test_redis_registry_outage():
    registry = RedisClaimRegistry(DownRedis())
    with pytest.raises(StorageUnavailable):
        registry.reserve("a@example.com", NOW)
