"""
Finding users whose taste resembles a given user's.
"""
import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .cache import TTLCache
from .config import (
    SAMPLE_ACTIVE_USERS,
    MIN_USER_HISTORY,
    MIN_CANDIDATES,
    RECENT_ACTIVITY_WINDOWS_DAYS,
    DEFAULT_SIMILAR_USERS_LIMIT,
    MAX_SIMILAR_USERS_LIMIT,
    SIMILARITY_BATCH_SIZE,
    DEBUG_CANDIDATE_POOL,
    DEBUG_MAX_LIMIT,
)
from .database import (
    count_watch_records,
    load_recent_user_ids,
    list_users_with_history,
    load_user_info_batch,
)
from .similarity import (
    SimilarUser,
    compute_similarity,
    is_similar,
    store_similarity_pair,
    store_similar_users,
    get_similar_users,
)
from .taste_map import get_taste_map
from .utils import chunked, round_half_up

logger = logging.getLogger(__name__)

MSG_NOT_ENOUGH_HISTORY = "Not enough watch history to find similar users"
MSG_NONE_FOUND = "No similar users found"
MSG_INTERNAL_ERROR = "Internal server error"


@dataclass
class CandidatePool:
    """Candidate users and the sampling stage that produced them."""
    stage: str
    user_ids: list[str] = field(default_factory=list)


@dataclass
class SimilarUsersResult:
    similar_users: list[dict] = field(default_factory=list)
    cached: bool = False
    computed_at: str = field(default_factory=lambda: datetime.now().isoformat())
    message: str = ""
    error: bool = False


def _recent_activity_stage(days: int):
    def stage(user_id: str, now: datetime) -> list[str]:
        return load_recent_user_ids(now - timedelta(days=days), user_id, SAMPLE_ACTIVE_USERS)
    return f"active_{days}d", stage


def _history_stage(user_id: str, now: datetime) -> list[str]:
    users = list_users_with_history(user_id, MIN_USER_HISTORY, SAMPLE_ACTIVE_USERS)
    return [u['id'] for u in users]


# Tried in order; a stage runs only while the pool is still too small
CANDIDATE_STAGES = (
    *(_recent_activity_stage(days) for days in RECENT_ACTIVITY_WINDOWS_DAYS),
    ("min_history", _history_stage),
)


def select_candidates(user_id: str, now: datetime | None = None) -> CandidatePool:
    """
    Sample candidate users through progressively wider stages.

    Each stage replaces the previous pool; the last stage tried wins even if
    it yields fewer users than an earlier one.
    """
    now = now or datetime.now()
    pool = CandidatePool(stage="none")
    for name, stage in CANDIDATE_STAGES:
        pool = CandidatePool(stage=name, user_ids=stage(user_id, now))
        if len(pool.user_ids) >= MIN_CANDIDATES:
            break
        logger.debug(f"Stage {name} produced {len(pool.user_ids)} candidates for {user_id}, widening")
    return pool


async def _score_candidates(
    user_id: str,
    candidate_ids: list[str],
    provider,
    cache: TTLCache,
) -> list[SimilarUser]:
    """Similarity per candidate in bounded batches; failing candidates are skipped."""
    similar: list[SimilarUser] = []
    failed = 0

    for batch in chunked(candidate_ids, SIMILARITY_BATCH_SIZE):
        results = await asyncio.gather(
            *(compute_similarity(user_id, candidate, provider, cache) for candidate in batch),
            return_exceptions=True,
        )
        for candidate, result in zip(batch, results):
            if isinstance(result, Exception):
                failed += 1
                logger.debug(
                    f"Error computing similarity {user_id} -> {candidate}: "
                    f"{type(result).__name__}: {result}"
                )
                continue

            await asyncio.to_thread(store_similarity_pair, cache, user_id, candidate, result.overall_match)
            if is_similar(result):
                similar.append(SimilarUser(user_id=candidate, overall_match=result.overall_match))

    if failed:
        logger.warning(f"Similarity complete for {user_id}: {len(candidate_ids) - failed}/{len(candidate_ids)} scored")

    similar.sort(key=lambda u: u.overall_match, reverse=True)
    return similar


def _clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_SIMILAR_USERS_LIMIT
    return max(1, min(int(limit), MAX_SIMILAR_USERS_LIMIT))


async def find_similar_users(
    user_id: str,
    provider,
    cache: TTLCache,
    limit: int = DEFAULT_SIMILAR_USERS_LIMIT,
    use_cache: bool = True,
) -> SimilarUsersResult:
    """
    Ranked list of users similar to user_id.

    A present, non-empty cached list is returned as is. Otherwise candidates
    are sampled, scored and the similar ones cached as one list.
    """
    limit = _clamp_limit(limit)

    try:
        history = await asyncio.to_thread(count_watch_records, user_id)
        if history < MIN_USER_HISTORY:
            return SimilarUsersResult(message=MSG_NOT_ENOUGH_HISTORY)

        similar = await asyncio.to_thread(get_similar_users, cache, user_id) if use_cache else []
        from_cache = bool(similar)

        if not similar:
            pool = await asyncio.to_thread(select_candidates, user_id)
            logger.info(
                f"Computing similar users for {user_id}: {len(pool.user_ids)} candidates ({pool.stage})"
            )
            # Warm the requester's map so batched comparisons share one computation
            await get_taste_map(user_id, provider, cache)
            similar = await _score_candidates(user_id, pool.user_ids, provider, cache)
            if similar:
                await asyncio.to_thread(store_similar_users, cache, user_id, similar)

        top = similar[:limit]
        info = await asyncio.to_thread(load_user_info_batch, [u.user_id for u in top])

    except (sqlite3.Error, RuntimeError) as e:
        logger.error(f"Failed to get similar users for {user_id}: {e}")
        return SimilarUsersResult(message=MSG_INTERNAL_ERROR, error=True)

    enriched = [
        {
            'user_id': u.user_id,
            'overall_match': round_half_up(u.overall_match * 100, 1),
            'watch_count': info.get(u.user_id, {}).get('watch_count', 0),
            'member_since': info.get(u.user_id, {}).get('created_at'),
        }
        for u in top
    ]

    message = f"Found {len(enriched)} similar user(s)" if enriched else MSG_NONE_FOUND
    return SimilarUsersResult(similar_users=enriched, cached=from_cache, message=message)


async def analyze_similarity_candidates(
    user_id: str,
    provider,
    cache: TTLCache,
    limit: int = 5,
    details: bool = False,
) -> dict | None:
    """
    Diagnostic breakdown of similarity against the first few users.

    Returns None when the user's own taste map cannot be computed.
    """
    limit = max(1, min(limit, DEBUG_MAX_LIMIT))

    own_map = await get_taste_map(user_id, provider, cache)
    if own_map is None:
        return None

    users = await asyncio.to_thread(list_users_with_history, user_id, 0, DEBUG_CANDIDATE_POOL)
    logger.info(
        f"Similarity analysis for {user_id}: {len(own_map.genre_profile)} genres, "
        f"{len(own_map.actors)} actors, {len(own_map.directors)} directors, "
        f"{len(users)} candidates"
    )

    analysis = {
        'user_id': user_id,
        'taste_map': {
            'genre_profile': own_map.genre_profile,
            'actors_count': len(own_map.actors),
            'directors_count': len(own_map.directors),
        },
        'candidates': [],
        'stats': {'total_analyzed': 0, 'passed_threshold': 0, 'failed_threshold': 0, 'errors': 0},
    }
    stats = analysis['stats']

    for user in users[:limit]:
        candidate_id = user['id']
        stats['total_analyzed'] += 1
        try:
            result = await compute_similarity(user_id, candidate_id, provider, cache)
        except sqlite3.Error as e:
            stats['errors'] += 1
            analysis['candidates'].append({'user_id': candidate_id, 'error': str(e)})
            continue

        similar = is_similar(result)
        entry = {
            'user_id': candidate_id,
            'taste_similarity': round_half_up(result.taste_similarity * 100, 2),
            'rating_correlation': round_half_up(result.rating_correlation * 100, 2),
            'person_overlap': round_half_up(result.person_overlap * 100, 2),
            'overall_match': round_half_up(result.overall_match * 100, 2),
            'is_similar': similar,
        }
        if details:
            other = await get_taste_map(candidate_id, provider, cache)
            if other is not None:
                entry['details'] = {
                    'genre_profile': other.genre_profile,
                    'actors_count': len(other.actors),
                    'directors_count': len(other.directors),
                }
        analysis['candidates'].append(entry)

        if similar:
            stats['passed_threshold'] += 1
        else:
            stats['failed_threshold'] += 1

    analysis['candidates'].sort(key=lambda c: c.get('overall_match', 0), reverse=True)
    return analysis
