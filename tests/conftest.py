import importlib
import sys
from datetime import datetime
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from cinechance_rec.tmdb import ContentMetadata, Credits, CastMember, CrewMember, Genre  # noqa: E402


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("CINECHANCE_DB", str(db_path))
    import cinechance_rec.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB, create tables, and close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("CINECHANCE_DB", str(db_path))

    import cinechance_rec.config as config
    import cinechance_rec.database as database

    importlib.reload(config)
    importlib.reload(database)
    database.init_db()

    yield database
    database.close_pool()


@pytest.fixture
def cache(fresh_db):
    from cinechance_rec.cache import TTLCache

    return TTLCache()


def make_metadata(
    content_id: int,
    media_type: str = "movie",
    genres: list[tuple[int, str]] | None = None,
    language: str = "en",
    release_date: str | None = None,
    first_air_date: str | None = None,
    actors: list[str] | None = None,
    directors: list[str] | None = None,
    title: str | None = None,
) -> ContentMetadata:
    credits = None
    if actors is not None or directors is not None:
        credits = Credits(
            cast=[CastMember(id=i, name=n) for i, n in enumerate(actors or [])],
            crew=[CrewMember(id=100 + i, name=n, job="Director") for i, n in enumerate(directors or [])],
        )
    return ContentMetadata(
        content_id=content_id,
        media_type=media_type,
        title=title or f"Title {content_id}",
        genres=[Genre(id=gid, name=name) for gid, name in (genres or [])],
        original_language=language,
        release_date=release_date,
        first_air_date=first_air_date,
        credits=credits,
    )


class FakeProvider:
    """In-memory metadata provider keyed by (content_id, media_type)."""

    def __init__(self, items: dict | None = None, failing: set | None = None):
        self.items = items or {}
        self.failing = failing or set()
        self.calls: list[tuple[int, str]] = []

    def add(self, metadata: ContentMetadata) -> None:
        self.items[(metadata.content_id, metadata.media_type)] = metadata

    async def fetch_details(self, content_id, media_type):
        self.calls.append((content_id, media_type))
        if (content_id, media_type) in self.failing:
            raise RuntimeError(f"lookup failed for {content_id}")
        meta = self.items.get((content_id, media_type))
        if meta is None:
            return None
        return ContentMetadata(**{**meta.__dict__, "credits": None})

    async def fetch_metadata(self, content_id, media_type):
        self.calls.append((content_id, media_type))
        if (content_id, media_type) in self.failing:
            raise RuntimeError(f"lookup failed for {content_id}")
        return self.items.get((content_id, media_type))


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def seed(fresh_db):
    """Helper to insert users and watch records."""
    db = fresh_db

    def _seed(user_id, records=(), created_at=None):
        db.add_user(user_id, created_at=created_at or datetime(2024, 1, 1))
        for record in records:
            db.upsert_watch_record(user_id, **record)

    return _seed
