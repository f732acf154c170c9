"""
Per-user taste maps.

A taste map condenses a user's completed watch history into normalized
preference scores (genres, actors, directors), content-type and rating
distributions, and behavior rates derived from the whole watch list.
"""
import asyncio
import logging
import sqlite3
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from datetime import datetime

from .cache import TTLCache, taste_map_key, taste_map_part_key
from .config import (
    COMPLETED_STATUSES,
    STATUS_WANT,
    STATUS_WATCHED,
    STATUS_REWATCHED,
    STATUS_DROPPED,
    TASTE_MAP_MAX_RECORDS,
    TASTE_MAP_TTL,
    RATING_HIGH_MIN,
    RATING_MEDIUM_MIN,
    DIVERSITY_GENRE_MIN_SCORE,
    DIVERSITY_POINTS_PER_GENRE,
)
from .database import load_watch_records
from .tmdb import fetch_metadata_batch
from .utils import round_half_up, percent

logger = logging.getLogger(__name__)


@dataclass
class ProfileItem:
    """One completed watch record joined with whatever metadata could be found."""
    content_id: int
    media_type: str
    user_rating: float | None = None
    vote_average: float | None = None
    genres: list[str] = field(default_factory=list)
    actors: list[str] = field(default_factory=list)
    directors: list[str] = field(default_factory=list)
    has_credits: bool = False

    @property
    def effective_rating(self) -> float:
        if self.user_rating is not None:
            return self.user_rating
        return self.vote_average or 0.0


@dataclass
class TasteMap:
    """Computed preference profile for one user. Always replaced whole."""
    user_id: str
    genre_profile: dict[str, int] = field(default_factory=dict)
    actors: dict[str, int] = field(default_factory=dict)
    directors: dict[str, int] = field(default_factory=dict)
    type_profile: dict[str, int] = field(default_factory=lambda: {'movie': 0, 'tv': 0})
    rating_distribution: dict[str, int] = field(
        default_factory=lambda: {'high': 0, 'medium': 0, 'low': 0}
    )
    average_rating: float = 0.0
    behavior_profile: dict[str, int] = field(
        default_factory=lambda: {'rewatch_rate': 0, 'drop_rate': 0, 'completion_rate': 100}
    )
    computed_metrics: dict[str, int] = field(
        default_factory=lambda: {
            'positive_intensity': 0, 'negative_intensity': 0, 'consistency': 0, 'diversity': 0,
        }
    )
    updated_at: str | None = None

    @property
    def person_profiles(self) -> dict[str, dict[str, int]]:
        return {'actors': self.actors, 'directors': self.directors}

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TasteMap":
        return cls(**data)


def _average_scores(totals: dict[str, list[float]]) -> dict[str, int]:
    return {
        key: round_half_up(sum(ratings) / len(ratings) * 10)
        for key, ratings in totals.items()
    }


def compute_genre_profile(items: list[ProfileItem]) -> dict[str, int]:
    """Genre name -> 0-100 score (mean effective rating x10). Items count toward every genre they carry."""
    totals: dict[str, list[float]] = defaultdict(list)
    for item in items:
        for genre in item.genres:
            totals[genre].append(item.effective_rating)
    return _average_scores(totals)


def compute_person_profile(items: list[ProfileItem]) -> dict[str, dict[str, int]]:
    """Actor and director name -> 0-100 score, same averaging as genres."""
    actors: dict[str, list[float]] = defaultdict(list)
    directors: dict[str, list[float]] = defaultdict(list)
    for item in items:
        if not item.has_credits:
            continue
        rating = item.effective_rating
        for name in item.actors:
            actors[name].append(rating)
        for name in item.directors:
            directors[name].append(rating)
    return {'actors': _average_scores(actors), 'directors': _average_scores(directors)}


def compute_type_profile(items: list[ProfileItem]) -> dict[str, int]:
    if not items:
        return {'movie': 0, 'tv': 0}
    movies = sum(1 for item in items if item.media_type == 'movie')
    return {
        'movie': percent(movies, len(items)),
        'tv': percent(len(items) - movies, len(items)),
    }


def compute_rating_distribution(items: list[ProfileItem]) -> dict[str, int]:
    """Share of effective ratings that are high (>= 8), medium (>= 5) or low."""
    if not items:
        return {'high': 0, 'medium': 0, 'low': 0}

    high = medium = low = 0
    for item in items:
        rating = item.effective_rating
        if rating >= RATING_HIGH_MIN:
            high += 1
        elif rating >= RATING_MEDIUM_MIN:
            medium += 1
        else:
            low += 1

    n = len(items)
    return {'high': percent(high, n), 'medium': percent(medium, n), 'low': percent(low, n)}


def compute_average_rating(items: list[ProfileItem]) -> float:
    """
    Mean user rating, rounded to one decimal.

    Only items carrying a user rating are averaged. When none do, the mean
    reference rating over all items is used instead, so the denominator
    switches from rated items to every item.
    """
    if not items:
        return 0.0

    rated = [item.user_rating for item in items if item.user_rating is not None]
    if rated:
        return round_half_up(sum(rated) / len(rated), 1)

    total = sum(item.vote_average or 0.0 for item in items)
    return round_half_up(total / len(items), 1)


def compute_behavior_profile(records: list[dict]) -> dict[str, int]:
    """
    Rewatch, drop and completion rates over every record of a user, any status.
    """
    counts = defaultdict(int)
    rewatched_total = 0
    for record in records:
        status = record['status']
        counts[status] += 1
        if status == STATUS_REWATCHED:
            rewatched_total += 1
        elif status == STATUS_WATCHED and (record.get('watch_count') or 0) > 1:
            rewatched_total += 1

    completed = counts[STATUS_WATCHED] + counts[STATUS_REWATCHED]
    want_or_dropped = counts[STATUS_WANT] + counts[STATUS_DROPPED]
    with_status = counts[STATUS_WANT] + completed

    return {
        'rewatch_rate': percent(rewatched_total, completed),
        'drop_rate': percent(counts[STATUS_DROPPED], want_or_dropped),
        'completion_rate': percent(completed, with_status) if with_status else 100,
    }


def compute_metrics(genre_profile: dict[str, int], rating_distribution: dict[str, int]) -> dict[str, int]:
    strong_genres = sum(1 for score in genre_profile.values() if score > DIVERSITY_GENRE_MIN_SCORE)
    return {
        'positive_intensity': rating_distribution['high'],
        'negative_intensity': rating_distribution['low'],
        'consistency': rating_distribution['medium'],
        'diversity': min(100, strong_genres * DIVERSITY_POINTS_PER_GENRE),
    }


def empty_taste_map(user_id: str, now: datetime | None = None) -> TasteMap:
    """Taste map for a user without completed titles."""
    return TasteMap(user_id=user_id, updated_at=(now or datetime.now()).isoformat())


def _build_items(records: list[dict], metadata: list) -> list[ProfileItem]:
    items = []
    for record, meta in zip(records, metadata):
        item = ProfileItem(
            content_id=record['content_id'],
            media_type=record['media_type'],
            user_rating=record['user_rating'],
            vote_average=record['vote_average'],
        )
        if meta is not None:
            item.genres = [g.name for g in meta.genres]
            if meta.credits is not None:
                item.has_credits = True
                item.actors = [c.name for c in meta.credits.cast]
                item.directors = meta.credits.directors
        items.append(item)
    return items


async def compute_taste_map(user_id: str, provider, now: datetime | None = None) -> TasteMap:
    """
    Compute a taste map from the user's completed watch records.

    Only the first TASTE_MAP_MAX_RECORDS records (stored order) are enriched
    with metadata, so profiles of heavy users are approximate. A failed
    lookup leaves that record without genres and credits.
    """
    completed = await asyncio.to_thread(load_watch_records, user_id, COMPLETED_STATUSES)
    if not completed:
        logger.debug(f"No completed records for {user_id}, returning empty taste map")
        return empty_taste_map(user_id, now)

    records = completed[:TASTE_MAP_MAX_RECORDS]
    logger.info(f"Computing taste map for {user_id} from {len(records)}/{len(completed)} records")

    metadata = await fetch_metadata_batch(
        provider,
        [(r['content_id'], r['media_type']) for r in records],
        include_credits=True,
    )
    items = _build_items(records, metadata)

    all_records = await asyncio.to_thread(load_watch_records, user_id)

    genre_profile = compute_genre_profile(items)
    persons = compute_person_profile(items)
    rating_distribution = compute_rating_distribution(items)

    return TasteMap(
        user_id=user_id,
        genre_profile=genre_profile,
        actors=persons['actors'],
        directors=persons['directors'],
        type_profile=compute_type_profile(items),
        rating_distribution=rating_distribution,
        average_rating=compute_average_rating(items),
        behavior_profile=compute_behavior_profile(all_records),
        computed_metrics=compute_metrics(genre_profile, rating_distribution),
        updated_at=(now or datetime.now()).isoformat(),
    )


def _store_taste_map(cache: TTLCache, taste_map: TasteMap) -> None:
    user_id = taste_map.user_id
    writes = [
        (taste_map_key(user_id), taste_map.to_dict()),
        (taste_map_part_key(user_id, 'genres'), taste_map.genre_profile),
        (taste_map_part_key(user_id, 'persons'), taste_map.person_profiles),
        (taste_map_part_key(user_id, 'types'), taste_map.type_profile),
    ]
    for key, value in writes:
        if not cache.set(key, value, TASTE_MAP_TTL):
            logger.warning(f"Could not cache {key}; continuing without it")


async def recompute_taste_map(user_id: str, provider, cache: TTLCache) -> TasteMap:
    """Compute a fresh taste map and write it (and its sub-profiles) to the cache."""
    taste_map = await compute_taste_map(user_id, provider)
    await asyncio.to_thread(_store_taste_map, cache, taste_map)
    return taste_map


async def get_taste_map(user_id: str, provider, cache: TTLCache) -> TasteMap | None:
    """
    Cached taste map, recomputed on a miss.

    Returns None when the watch history itself cannot be read.
    """
    cached = await asyncio.to_thread(cache.get, taste_map_key(user_id))
    if cached:
        try:
            return TasteMap.from_dict(cached)
        except TypeError as e:
            logger.warning(f"Discarding malformed cached taste map for {user_id}: {e}")

    try:
        return await recompute_taste_map(user_id, provider, cache)
    except sqlite3.Error as e:
        logger.error(f"Failed to compute taste map for {user_id}: {e}")
        return None


async def get_cached_genre_profile(user_id: str, provider, cache: TTLCache) -> dict[str, int]:
    cached = await asyncio.to_thread(cache.get, taste_map_part_key(user_id, 'genres'))
    if cached:
        return cached
    taste_map = await compute_taste_map(user_id, provider)
    return taste_map.genre_profile


async def get_cached_person_profile(user_id: str, provider, cache: TTLCache) -> dict[str, dict[str, int]]:
    cached = await asyncio.to_thread(cache.get, taste_map_part_key(user_id, 'persons'))
    if cached:
        return cached
    taste_map = await compute_taste_map(user_id, provider)
    return taste_map.person_profiles


def invalidate_taste_map(user_id: str, cache: TTLCache) -> None:
    """Drop the cached taste map and its sub-profiles."""
    cache.delete(taste_map_key(user_id))
    for part in ('genres', 'persons', 'types'):
        cache.delete(taste_map_part_key(user_id, part))
    logger.debug(f"Invalidated taste map cache for {user_id}")
