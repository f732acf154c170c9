"""
Random pick from the user's own lists, with content-type, cooldown, rating,
year and genre filters.
"""
import asyncio
import logging
import random
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .config import (
    CONTENT_TYPES,
    LIST_TYPES,
    DEFAULT_CONTENT_TYPES,
    DEFAULT_LIST_TYPES,
    LIST_STATUSES,
    USER_STATUS_LABELS,
    RECOMMENDATION_COOLDOWN_DAYS,
    RANDOM_ALGORITHM_NAME,
    RECOMMENDATION_SOURCE,
)
from .database import (
    load_watch_records,
    load_recent_recommendations,
    find_watch_record,
    count_rating_history,
    append_recommendation_log,
)
from .tmdb import ContentMetadata, display_type, fetch_metadata_batch

logger = logging.getLogger(__name__)

MSG_NO_LISTS = "Select at least one list"
MSG_LIST_EMPTY = 'The selected lists are empty. Add titles to "Want to watch" or mark some as watched.'
MSG_NO_RESULTS = "No recommendations match the selected filters. Try adjusting them."
MSG_INTERNAL_ERROR = "Failed to fetch recommendation"
MSG_SUCCESS = "Recommendation ready"


@dataclass
class RecommendationFilters:
    types: list[str] = field(default_factory=lambda: list(DEFAULT_CONTENT_TYPES))
    lists: list[str] = field(default_factory=lambda: list(DEFAULT_LIST_TYPES))
    min_rating: int | None = None
    max_rating: int | None = None
    year_from: int | None = None
    year_to: int | None = None
    genres: list[int] | None = None

    def to_dict(self) -> dict:
        return {
            'types': self.types,
            'lists': self.lists,
            'min_rating': self.min_rating,
            'max_rating': self.max_rating,
            'year_from': self.year_from,
            'year_to': self.year_to,
            'genres': self.genres,
        }


@dataclass
class RecommendationResult:
    success: bool
    message: str
    movie: dict | None = None
    log_id: int | None = None
    user_status: str | None = None
    user_rating: float | None = None
    watch_count: int = 0
    vote_count: int = 0
    cinechance_rating: float | None = None


@dataclass
class Candidate:
    record: dict
    metadata: ContentMetadata | None

    @property
    def is_anime(self) -> bool:
        return self.metadata is not None and self.metadata.is_anime


def _split(raw) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = raw.split(',')
    return [str(v).strip() for v in raw if str(v).strip()]


def _parse_int(raw) -> int | None:
    """Integer part of a numeric value, None when it doesn't parse."""
    if raw is None or raw == "":
        return None
    try:
        return int(float(raw))
    except (TypeError, ValueError, OverflowError):
        return None


def parse_filters(
    types=None,
    lists=None,
    min_rating=None,
    max_rating=None,
    year_from=None,
    year_to=None,
    genres=None,
) -> RecommendationFilters:
    """
    Normalize raw filter values (comma strings or sequences).

    Unknown types and lists are dropped and empty selections fall back to
    the defaults. Numbers that don't parse are ignored.
    """
    parsed_types = list(dict.fromkeys(t for t in _split(types) if t in CONTENT_TYPES))
    parsed_lists = list(dict.fromkeys(name for name in _split(lists) if name in LIST_TYPES))

    genre_ids = None
    if genres is not None:
        genre_ids = [g for g in (_parse_int(v) for v in _split(genres)) if g is not None]

    return RecommendationFilters(
        types=parsed_types or list(DEFAULT_CONTENT_TYPES),
        lists=parsed_lists or list(DEFAULT_LIST_TYPES),
        min_rating=_parse_int(min_rating),
        max_rating=_parse_int(max_rating),
        year_from=_parse_int(year_from),
        year_to=_parse_int(year_to),
        genres=genre_ids,
    )


def resolve_statuses(lists: list[str]) -> list[str]:
    statuses = []
    for list_type in lists:
        for status in LIST_STATUSES.get(list_type, ()):
            if status not in statuses:
                statuses.append(status)
    return statuses


def matches_content_type(candidate: Candidate, types: list[str]) -> bool:
    """Anime matches 'anime' whatever its stored type; movie/tv match only non-anime titles."""
    if candidate.is_anime:
        return 'anime' in types
    return candidate.record['media_type'] in types


def matches_rating(record: dict, min_rating: int | None, max_rating: int | None) -> bool:
    rating = record['user_rating'] if record['user_rating'] is not None else 0
    if min_rating is not None and rating < min_rating:
        return False
    if max_rating is not None and rating > max_rating:
        return False
    return True


def matches_year(metadata: ContentMetadata | None, year_from: int | None, year_to: int | None) -> bool:
    """Titles whose year is unknown are never excluded."""
    year = metadata.release_year if metadata is not None else None
    if year is None:
        return True
    if year_from is not None and year < year_from:
        return False
    if year_to is not None and year > year_to:
        return False
    return True


def matches_genres(metadata: ContentMetadata | None, genre_ids: list[int]) -> bool:
    if metadata is None:
        return False
    return bool(metadata.genre_ids.intersection(genre_ids))


def filter_candidates(
    candidates: list[Candidate],
    filters: RecommendationFilters,
    recent: set[tuple[int, str]],
) -> list[Candidate]:
    """Apply type, cooldown, rating, year and genre filters in that order."""
    result = [c for c in candidates if matches_content_type(c, filters.types)]
    result = [
        c for c in result
        if (c.record['content_id'], c.record['media_type']) not in recent
    ]

    if 'watched' in filters.lists and (filters.min_rating is not None or filters.max_rating is not None):
        result = [c for c in result if matches_rating(c.record, filters.min_rating, filters.max_rating)]

    if filters.year_from is not None or filters.year_to is not None:
        result = [c for c in result if matches_year(c.metadata, filters.year_from, filters.year_to)]

    if filters.genres:
        result = [c for c in result if matches_genres(c.metadata, filters.genres)]

    return result


def _display_movie(candidate: Candidate) -> dict:
    record = candidate.record
    meta = candidate.metadata
    label = display_type(meta, record['media_type'])

    if meta is None:
        return {
            'id': record['content_id'],
            'media_type': label,
            'title': record['title'],
            'name': record['title'],
            'poster_path': None,
            'vote_average': record['vote_average'],
            'vote_count': 0,
            'release_date': None,
            'first_air_date': None,
            'overview': '',
            'runtime': 0,
            'genres': [],
            'original_language': None,
        }

    return {
        'id': record['content_id'],
        'media_type': label,
        'title': meta.title or record['title'],
        'name': meta.name or record['title'],
        'poster_path': meta.poster_path,
        'vote_average': meta.vote_average or record['vote_average'],
        'vote_count': meta.vote_count or 0,
        'release_date': meta.release_date or meta.first_air_date,
        'first_air_date': meta.first_air_date,
        'overview': meta.overview or '',
        'runtime': meta.runtime or 0,
        'genres': [{'id': g.id, 'name': g.name} for g in meta.genres],
        'original_language': meta.original_language,
    }


async def recommend_random(
    user_id: str,
    filters: RecommendationFilters,
    provider,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> RecommendationResult:
    """
    Pick one title at random from the user's filtered lists and log it.

    Empty lists and over-filtered pools return distinct unsuccessful
    results; persistence failures return an internal-error result.
    """
    rng = rng or random.Random()
    now = now or datetime.now()

    statuses = resolve_statuses(filters.lists)
    if not statuses:
        return RecommendationResult(success=False, message=MSG_NO_LISTS)

    try:
        records = await asyncio.to_thread(load_watch_records, user_id, statuses)
        if not records:
            return RecommendationResult(success=False, message=MSG_LIST_EMPTY)

        metadata = await fetch_metadata_batch(
            provider,
            [(r['content_id'], r['media_type']) for r in records],
            include_credits=False,
        )
        candidates = [Candidate(record, meta) for record, meta in zip(records, metadata)]

        since = now - timedelta(days=RECOMMENDATION_COOLDOWN_DAYS)
        recent_rows = await asyncio.to_thread(load_recent_recommendations, user_id, since)
        recent = {(r['content_id'], r['media_type']) for r in recent_rows}

        candidates = filter_candidates(candidates, filters, recent)
        if not candidates:
            logger.info(f"No candidates left for {user_id} after filters ({len(records)} in lists)")
            return RecommendationResult(success=False, message=MSG_NO_RESULTS)

        position = rng.randrange(len(candidates))
        selected = candidates[position]
        content_id = selected.record['content_id']
        media_type = selected.record['media_type']

        stored = await asyncio.to_thread(find_watch_record, user_id, content_id, media_type)
        vote_count = await asyncio.to_thread(count_rating_history, user_id, content_id, media_type)

        user_status = USER_STATUS_LABELS.get(selected.record['status'])
        log_id = await asyncio.to_thread(
            append_recommendation_log,
            user_id,
            content_id,
            media_type,
            RANDOM_ALGORITHM_NAME,
            'shown',
            {
                'source': RECOMMENDATION_SOURCE,
                'filters': filters.to_dict(),
                'position': position,
                'candidates_count': len(candidates),
                'user_status': user_status,
            },
            now,
        )

    except (sqlite3.Error, RuntimeError) as e:
        logger.error(f"Recommendation failed for {user_id}: {e}")
        return RecommendationResult(success=False, message=MSG_INTERNAL_ERROR)

    logger.info(
        f"Recommended {media_type}/{content_id} to {user_id} "
        f"(position {position} of {len(candidates)})"
    )

    stored_rating = stored['user_rating'] if stored else None
    return RecommendationResult(
        success=True,
        message=MSG_SUCCESS,
        movie=_display_movie(selected),
        log_id=log_id,
        user_status=user_status,
        user_rating=stored_rating,
        watch_count=(stored['watch_count'] or 0) if stored else 0,
        vote_count=vote_count,
        cinechance_rating=stored_rating,
    )
