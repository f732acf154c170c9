from datetime import datetime, timedelta


def test_init_db_creates_expected_tables(fresh_db):
    db = fresh_db

    with db.get_db(read_only=True) as conn:
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }

    expected = {"users", "watch_list", "rating_history", "recommendation_log", "cache_entries"}
    assert expected.issubset(tables)


def test_nested_transactions_commit_once(fresh_db):
    db = fresh_db

    with db.get_db() as conn:
        conn.execute(
            "INSERT INTO users (id, created_at) VALUES (?, ?)", ("alice", datetime.now().isoformat())
        )
        with db.get_db() as inner:
            inner.execute(
                "INSERT INTO cache_entries (key, value, expires_at) VALUES (?, ?, ?)", ("k", "1", 0)
            )

    with db.get_db(read_only=True) as conn:
        assert conn.execute("SELECT COUNT(*) FROM users").fetchone()[0] == 1
        assert conn.execute("SELECT COUNT(*) FROM cache_entries").fetchone()[0] == 1


def test_failed_transaction_rolls_back(fresh_db):
    db = fresh_db

    try:
        with db.get_db() as conn:
            conn.execute("INSERT INTO users (id, created_at) VALUES (?, ?)", ("bob", "2024-01-01"))
            raise RuntimeError("boom")
    except RuntimeError:
        pass

    with db.get_db(read_only=True) as conn:
        assert conn.execute("SELECT COUNT(*) FROM users").fetchone()[0] == 0


def test_upsert_watch_record_replaces_by_key(fresh_db):
    db = fresh_db
    db.upsert_watch_record("alice", 1, "movie", "want_to_watch")
    db.upsert_watch_record("alice", 1, "movie", "watched", user_rating=8, watch_count=2)
    db.upsert_watch_record("alice", 1, "tv", "watched", user_rating=5)

    records = db.load_watch_records("alice")
    assert [(r["content_id"], r["media_type"], r["status"]) for r in records] == [
        (1, "movie", "watched"),
        (1, "tv", "watched"),
    ]
    assert records[0]["user_rating"] == 8
    assert records[0]["watch_count"] == 2


def test_load_watch_records_filters(fresh_db):
    db = fresh_db
    for cid, status in [(1, "watched"), (2, "rewatched"), (3, "dropped"), (4, "want_to_watch")]:
        db.upsert_watch_record("alice", cid, "movie", status)

    completed = db.load_watch_records("alice", statuses=("watched", "rewatched"))
    assert [r["content_id"] for r in completed] == [1, 2]

    subset = db.load_watch_records("alice", content_ids={2, 3, 99})
    assert sorted(r["content_id"] for r in subset) == [2, 3]

    assert db.load_watch_records("alice", statuses=()) == []
    assert db.count_watch_records("alice") == 4


def test_recent_user_ids_and_history_directory(fresh_db):
    db = fresh_db
    now = datetime(2025, 6, 1)
    db.add_user("me", created_at=now - timedelta(days=400))
    db.add_user("recent", created_at=now - timedelta(days=300))
    db.add_user("old", created_at=now - timedelta(days=200))
    db.add_user("empty", created_at=now - timedelta(days=100))

    db.upsert_watch_record("me", 1, "movie", "watched", added_at=now - timedelta(days=1))
    db.upsert_watch_record("recent", 1, "movie", "watched", added_at=now - timedelta(days=5))
    db.upsert_watch_record("recent", 2, "movie", "watched", added_at=now - timedelta(days=6))
    db.upsert_watch_record("old", 1, "movie", "watched", added_at=now - timedelta(days=60))

    assert db.load_recent_user_ids(now - timedelta(days=30), "me", 10) == ["recent"]
    assert set(db.load_recent_user_ids(now - timedelta(days=90), "me", 10)) == {"recent", "old"}

    with_history = db.list_users_with_history("me", min_history=2, limit=10)
    assert with_history == [{"id": "recent", "record_count": 2}]
    assert [u["id"] for u in db.list_users_with_history("me", 0, 10)] == ["recent", "old", "empty"]


def test_user_info_batch(fresh_db):
    db = fresh_db
    db.add_user("a", created_at=datetime(2023, 5, 1))
    db.add_user("b", created_at=datetime(2024, 5, 1))
    db.upsert_watch_record("a", 1, "movie", "watched")
    db.upsert_watch_record("a", 2, "tv", "want_to_watch")

    info = db.load_user_info_batch(["a", "b", "ghost"])
    assert info["a"]["watch_count"] == 2
    assert info["b"]["watch_count"] == 0
    assert info["a"]["created_at"].startswith("2023-05-01")
    assert "ghost" not in info
    assert db.load_user_info_batch([]) == {}


def test_recommendation_log_round_trip(fresh_db):
    db = fresh_db
    now = datetime(2025, 6, 1, 12, 0)
    db.append_recommendation_log("a", 1, "movie", "random_v1", "shown", {"position": 0}, now - timedelta(days=10))
    new_id = db.append_recommendation_log("a", 2, "tv", "random_v1", "shown", {"position": 3}, now)

    assert isinstance(new_id, int)
    recent = db.load_recent_recommendations("a", now - timedelta(days=7))
    assert recent == [{"content_id": 2, "media_type": "tv"}]

    history = db.load_recommendation_history("a", limit=5)
    assert [h["content_id"] for h in history] == [2, 1]
    assert history[0]["context"] == {"position": 3}


def test_rating_history_and_find_record(fresh_db):
    db = fresh_db
    db.upsert_watch_record("a", 7, "movie", "watched", user_rating=9, watch_count=3)
    db.add_rating_history("a", 7, "movie", 8)
    db.add_rating_history("a", 7, "movie", 9)
    db.add_rating_history("a", 7, "tv", 4)

    assert db.count_rating_history("a", 7, "movie") == 2
    record = db.find_watch_record("a", 7, "movie")
    assert record["user_rating"] == 9
    assert record["watch_count"] == 3
    assert db.find_watch_record("a", 7, "tv") is None


def test_load_json_and_timestamp_helpers(fresh_db):
    db = fresh_db
    assert db.load_json('{"a": 1}') == {"a": 1}
    assert db.load_json(None) == {}
    assert db.load_json("{bad") == {}

    parsed = db.parse_timestamp_naive("2024-01-01T10:00:00+02:00")
    assert parsed.tzinfo is None
    assert parsed.hour == 10
