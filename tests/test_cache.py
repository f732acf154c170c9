import sqlite3

from cinechance_rec import cache as cache_module
from cinechance_rec.cache import TTLCache


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_set_get_and_expiry(fresh_db):
    clock = FakeClock()
    cache = TTLCache(clock=clock)

    assert cache.set("k", {"a": [1, 2]}, ttl_seconds=60)
    assert cache.get("k") == {"a": [1, 2]}

    clock.now += 61
    assert cache.get("k") is None


def test_set_replaces_whole_value(fresh_db):
    cache = TTLCache()
    cache.set("k", {"a": 1, "b": 2}, 60)
    cache.set("k", {"c": 3}, 60)
    assert cache.get("k") == {"c": 3}


def test_delete_and_purge(fresh_db):
    clock = FakeClock()
    cache = TTLCache(clock=clock)
    cache.set("short", 1, 10)
    cache.set("long", 2, 1000)
    cache.set("gone", 3, 1000)

    assert cache.delete("gone")
    assert cache.get("gone") is None

    clock.now += 100
    assert cache.purge_expired() == 1
    assert cache.get("long") == 2


def test_unserializable_value_is_a_noop(fresh_db):
    cache = TTLCache()
    assert cache.set("k", {"bad": object()}, 60) is False
    assert cache.get("k") is None


def test_storage_errors_degrade_to_miss(fresh_db, monkeypatch):
    def broken_db(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(cache_module, "get_db", broken_db)
    cache = TTLCache()

    assert cache.get("k") is None
    assert cache.set("k", 1, 60) is False
    assert cache.delete("k") is False
    assert cache.purge_expired() == 0


def test_corrupt_entry_reads_as_miss(fresh_db):
    db = fresh_db
    with db.get_db() as conn:
        conn.execute(
            "INSERT INTO cache_entries (key, value, expires_at) VALUES (?, ?, ?)",
            ("k", "{not json", 9e12),
        )
    assert TTLCache().get("k") is None


def test_key_helpers():
    assert cache_module.taste_map_key("u1") == "taste-map:u1"
    assert cache_module.taste_map_part_key("u1", "genres") == "taste-map:u1:genres"
    assert cache_module.similar_users_key("u1") == "similar-users:u1"
    assert cache_module.similarity_pair_key("a", "b") == "similarity:a:b"
    assert cache_module.metadata_key("details", "tv", 42) == "tmdb:details:tv:42"
