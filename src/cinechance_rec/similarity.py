"""
Similarity between two users' tastes.

Genre profiles are compared with cosine similarity, shared ratings with
Pearson correlation and favorite people with Jaccard overlap; the three are
combined into one weighted match score.
"""
import asyncio
import logging
from dataclasses import dataclass, field, asdict

import numpy as np

from .cache import TTLCache, similar_users_key, similarity_pair_key
from .config import (
    COMPLETED_STATUSES,
    SIMILARITY_WEIGHTS,
    SIMILARITY_THRESHOLD,
    SIMILARITY_PAIR_TTL,
    SIMILAR_USERS_TTL,
    RATING_CATEGORIES,
    RATING_CATEGORY_ORDER,
    INTENSITY_STEP_PENALTY,
    RATING_DIFF_TIERS,
    POSITIVE_RATING_MIN,
)
from .database import load_watch_records
from .taste_map import get_taste_map
from .utils import round_half_up, percent

logger = logging.getLogger(__name__)


@dataclass
class RatingMatchPatterns:
    perfect_matches: int = 0
    close_matches: int = 0
    moderate_matches: int = 0
    same_category: int = 0
    different_intensity: int = 0
    avg_rating_user1: float = 0.0
    avg_rating_user2: float = 0.0
    intensity_match: float = 0.0
    pearson_correlation: float = 0.0
    total_shared_movies: int = 0
    avg_rating_difference: float = 0.0
    positive_ratings_percentage: int = 0
    both_rewatched_count: int = 0
    overall_movie_match: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SimilarityResult:
    taste_similarity: float = 0.0
    rating_correlation: float = 0.0
    person_overlap: float = 0.0
    overall_match: float = 0.0
    genre_rating_similarity: float | None = None
    rating_patterns: RatingMatchPatterns | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SimilarUser:
    user_id: str
    overall_match: float


def normalize_vectors(
    profile_a: dict[str, float],
    profile_b: dict[str, float],
) -> tuple[np.ndarray, np.ndarray, list[str]]:
    """Align two profiles on the union of their keys; missing keys become 0."""
    keys = list(dict.fromkeys([*profile_a, *profile_b]))
    vec_a = np.array([profile_a.get(k, 0) for k in keys], dtype=float)
    vec_b = np.array([profile_b.get(k, 0) for k in keys], dtype=float)
    return vec_a, vec_b, keys


def cosine_similarity(profile_a: dict[str, float], profile_b: dict[str, float]) -> float:
    """
    Cosine similarity over the union of genres.

    Returns 0 when either profile is empty or has zero magnitude.
    """
    if not profile_a or not profile_b:
        return 0.0

    vec_a, vec_b, _ = normalize_vectors(profile_a, profile_b)
    norm_a = np.linalg.norm(vec_a)
    norm_b = np.linalg.norm(vec_b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(vec_a, vec_b) / (norm_a * norm_b))


def genre_rating_similarity(profile_a: dict[str, float], profile_b: dict[str, float]) -> float:
    """
    Mean per-genre agreement over the genres both profiles share.

    Scores are taken back to the 0-10 scale; each shared genre contributes
    max(0, 1 - |a - b| / 10). Returns 0 without shared genres.
    """
    common = [genre for genre in profile_a if genre in profile_b]
    if not common:
        return 0.0

    sims = [
        max(0.0, 1 - abs(profile_a[g] / 10 - profile_b[g] / 10) / 10)
        for g in common
    ]
    return sum(sims) / len(sims)


def rating_correlation(ratings_a: list[float], ratings_b: list[float]) -> float:
    """
    Pearson correlation of paired ratings.

    Returns 0 for fewer than 2 pairs, unequal lengths or zero variance on
    either side.
    """
    if len(ratings_a) < 2 or len(ratings_a) != len(ratings_b):
        return 0.0

    a = np.asarray(ratings_a, dtype=float)
    b = np.asarray(ratings_b, dtype=float)
    da = a - a.mean()
    db = b - b.mean()

    denominator = np.sqrt(np.sum(da * da) * np.sum(db * db))
    if denominator == 0:
        return 0.0

    return float(np.sum(da * db) / denominator)


def person_overlap(persons_a: dict[str, float], persons_b: dict[str, float]) -> float:
    """Jaccard similarity of the people scored above 0 in each profile."""
    known_a = {name for name, score in persons_a.items() if score > 0}
    known_b = {name for name, score in persons_b.items() if score > 0}

    union = known_a | known_b
    if not union:
        return 0.0
    return len(known_a & known_b) / len(union)


def compute_overall_match(result: SimilarityResult) -> float:
    """Weighted match; rating correlation is mapped from [-1, 1] to [0, 1] first."""
    normalized_correlation = (result.rating_correlation + 1) / 2
    return (
        result.taste_similarity * SIMILARITY_WEIGHTS['taste_similarity']
        + normalized_correlation * SIMILARITY_WEIGHTS['rating_correlation']
        + result.person_overlap * SIMILARITY_WEIGHTS['person_overlap']
    )


def is_similar(result: SimilarityResult) -> bool:
    return result.overall_match > SIMILARITY_THRESHOLD


def get_rating_category(rating: float) -> str:
    """Category name for a rating; values above 10 are EPIC, below 1 VERY_BAD."""
    for name in reversed(RATING_CATEGORY_ORDER):
        low, _ = RATING_CATEGORIES[name]
        if rating >= low:
            return name
    return RATING_CATEGORY_ORDER[0]


def calculate_intensity_match(avg_rating_1: float, avg_rating_2: float) -> float:
    """1.0 in the same category, minus 0.25 per category step apart (floored at 0)."""
    cat_1 = get_rating_category(avg_rating_1)
    cat_2 = get_rating_category(avg_rating_2)
    if cat_1 == cat_2:
        return 1.0

    distance = abs(RATING_CATEGORY_ORDER.index(cat_1) - RATING_CATEGORY_ORDER.index(cat_2))
    return max(0.0, 1 - distance * INTENSITY_STEP_PENALTY)


def classify_rating_difference(diff: float) -> str | None:
    """First tier whose bound covers diff (perfect, close, moderate), else None."""
    for tier, max_diff in RATING_DIFF_TIERS:
        if diff <= max_diff:
            return tier
    return None


def analyze_rating_patterns(records_a: list[dict], records_b: list[dict]) -> RatingMatchPatterns:
    """
    Rating agreement over titles both users completed.

    records_a/records_b are completed watch records of each user. Fewer than
    2 records for the first user gives an all-zero result. Fewer than 2
    shared titles gives an all-zero result whose total_shared_movies is the
    raw number of shared titles. Otherwise total_shared_movies counts the
    pairs where both sides are rated.
    """
    if len(records_a) < 2:
        return RatingMatchPatterns()

    by_content_a = {r['content_id']: r for r in records_a}
    shared_b = [r for r in records_b if r['content_id'] in by_content_a]
    if len(shared_b) < 2:
        return RatingMatchPatterns(total_shared_movies=len(shared_b))

    ratings_a: list[float] = []
    ratings_b: list[float] = []
    tiers = {tier: 0 for tier, _ in RATING_DIFF_TIERS}
    same_category = different_intensity = 0
    positive = both_rewatched = 0
    total_diff = 0.0

    for record_b in shared_b:
        record_a = by_content_a[record_b['content_id']]
        rating_a = record_a['user_rating']
        rating_b = record_b['user_rating']
        if rating_a is None or rating_b is None:
            continue

        ratings_a.append(rating_a)
        ratings_b.append(rating_b)

        diff = abs(rating_a - rating_b)
        total_diff += diff

        tier = classify_rating_difference(diff)
        if tier is not None:
            tiers[tier] += 1

        if get_rating_category(rating_a) == get_rating_category(rating_b):
            same_category += 1
        else:
            different_intensity += 1

        if rating_a >= POSITIVE_RATING_MIN and rating_b >= POSITIVE_RATING_MIN:
            positive += 1
        if (record_a.get('watch_count') or 0) > 1 and (record_b.get('watch_count') or 0) > 1:
            both_rewatched += 1

    n = len(ratings_a)
    avg_1 = sum(ratings_a) / n if n else 0.0
    avg_2 = sum(ratings_b) / n if n else 0.0

    return RatingMatchPatterns(
        perfect_matches=tiers['perfect'],
        close_matches=tiers['close'],
        moderate_matches=tiers['moderate'],
        same_category=same_category,
        different_intensity=different_intensity,
        avg_rating_user1=round_half_up(avg_1, 1),
        avg_rating_user2=round_half_up(avg_2, 1),
        intensity_match=calculate_intensity_match(avg_1, avg_2),
        pearson_correlation=rating_correlation(ratings_a, ratings_b),
        total_shared_movies=n,
        avg_rating_difference=round_half_up(total_diff / n, 1) if n else 0.0,
        positive_ratings_percentage=percent(positive, n),
        both_rewatched_count=both_rewatched,
        overall_movie_match=tiers['perfect'] / n if n else 0.0,
    )


def compute_rating_patterns(user_a: str, user_b: str) -> RatingMatchPatterns:
    """Live rating-pattern analysis from both users' completed (never dropped) records."""
    records_a = load_watch_records(user_a, COMPLETED_STATUSES)
    if len(records_a) < 2:
        return RatingMatchPatterns()

    records_b = load_watch_records(
        user_b, COMPLETED_STATUSES, content_ids={r['content_id'] for r in records_a}
    )
    return analyze_rating_patterns(records_a, records_b)


async def compute_similarity(
    user_a: str,
    user_b: str,
    provider,
    cache: TTLCache,
    include_patterns: bool = False,
) -> SimilarityResult:
    """
    Full similarity between two users.

    Taste maps come from the cache (computed on a miss). If either map is
    unavailable the all-zero result is returned.
    """
    map_a, map_b = await asyncio.gather(
        get_taste_map(user_a, provider, cache),
        get_taste_map(user_b, provider, cache),
    )
    if map_a is None or map_b is None:
        logger.warning(f"Taste map unavailable for {user_a} or {user_b}; similarity is zero")
        return SimilarityResult()

    actors = person_overlap(map_a.actors, map_b.actors)
    directors = person_overlap(map_a.directors, map_b.directors)

    patterns = await asyncio.to_thread(compute_rating_patterns, user_a, user_b)

    result = SimilarityResult(
        taste_similarity=cosine_similarity(map_a.genre_profile, map_b.genre_profile),
        rating_correlation=patterns.pearson_correlation,
        person_overlap=(actors + directors) / 2,
        genre_rating_similarity=genre_rating_similarity(map_a.genre_profile, map_b.genre_profile),
    )
    if include_patterns:
        result.rating_patterns = patterns

    result.overall_match = compute_overall_match(result)
    return result


def store_similarity_pair(cache: TTLCache, user_a: str, user_b: str, score: float) -> None:
    cache.set(similarity_pair_key(user_a, user_b), score, SIMILARITY_PAIR_TTL)


def get_similarity_pair(cache: TTLCache, user_a: str, user_b: str) -> float | None:
    value = cache.get(similarity_pair_key(user_a, user_b))
    return float(value) if isinstance(value, (int, float)) else None


def store_similar_users(cache: TTLCache, user_id: str, similar_users: list[SimilarUser]) -> None:
    """Replace the cached similar-user list in one write."""
    cache.set(similar_users_key(user_id), [asdict(u) for u in similar_users], SIMILAR_USERS_TTL)


def get_similar_users(cache: TTLCache, user_id: str) -> list[SimilarUser]:
    cached = cache.get(similar_users_key(user_id))
    if not isinstance(cached, list):
        return []
    try:
        return [SimilarUser(**entry) for entry in cached]
    except TypeError as e:
        logger.warning(f"Discarding malformed similar-user list for {user_id}: {e}")
        return []
