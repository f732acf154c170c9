"""
Configuration constants for the CineChance recommendation engine.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("CINECHANCE_DB", "data/cinechance.db"))

# TMDB Configuration
TMDB_API_KEY = os.environ.get("TMDB_API_KEY", "")
TMDB_BASE_URL = "https://api.themoviedb.org/3"
TMDB_LANGUAGE = os.environ.get("CINECHANCE_TMDB_LANGUAGE", "en-US")
TMDB_MAX_CAST = 20  # Top-billed cast kept per title

# HTTP client
DEFAULT_ASYNC_DELAY = _get_float_env("CINECHANCE_ASYNC_DELAY", 0.0, min_val=0.0)
DEFAULT_MAX_CONCURRENT = _get_int_env("CINECHANCE_MAX_CONCURRENT", 5, min_val=1)
HTTP_TIMEOUT = 10.0  # HTTP request timeout in seconds
MAX_HTTP_RETRIES = 3
DEFAULT_RETRY_AFTER = 10  # Default wait time if Retry-After header missing
MAX_RETRY_AFTER = 60

# Metadata enrichment batches (external rate limit)
METADATA_BATCH_SIZE = _get_int_env("CINECHANCE_METADATA_BATCH_SIZE", 10, min_val=1)
METADATA_BATCH_DELAY = _get_float_env("CINECHANCE_METADATA_BATCH_DELAY", 0.1, min_val=0.0)

# Cache TTLs (seconds)
TTL_24H = 86400
TASTE_MAP_TTL = TTL_24H
METADATA_TTL = TTL_24H
SIMILAR_USERS_TTL = TTL_24H
SIMILARITY_PAIR_TTL = TTL_24H

# Watch list statuses
STATUS_WANT = "want_to_watch"
STATUS_WATCHED = "watched"
STATUS_REWATCHED = "rewatched"
STATUS_DROPPED = "dropped"
ALL_STATUSES = (STATUS_WANT, STATUS_WATCHED, STATUS_REWATCHED, STATUS_DROPPED)
COMPLETED_STATUSES = (STATUS_WATCHED, STATUS_REWATCHED)

# Display labels for statuses
USER_STATUS_LABELS = {
    STATUS_WANT: "want",
    STATUS_WATCHED: "watched",
    STATUS_REWATCHED: "rewatched",
    STATUS_DROPPED: "dropped",
}

# Taste map configuration
TASTE_MAP_MAX_RECORDS = 50  # Records enriched with metadata per computation
RATING_HIGH_MIN = 8
RATING_MEDIUM_MIN = 5
DIVERSITY_GENRE_MIN_SCORE = 20
DIVERSITY_POINTS_PER_GENRE = 5

# Similarity weights (fixed policy)
SIMILARITY_WEIGHTS = {
    'taste_similarity': 0.5,
    'rating_correlation': 0.3,
    'person_overlap': 0.2,
}
SIMILARITY_THRESHOLD = 0.5  # overall_match must be strictly above

# Rating categories, ordered from worst to best (inclusive bounds)
RATING_CATEGORIES = {
    'VERY_BAD': (1, 3),
    'BAD': (4, 5),
    'NEUTRAL': (6, 7),
    'GOOD': (8, 9),
    'EPIC': (10, 10),
}
RATING_CATEGORY_ORDER = tuple(RATING_CATEGORIES)
INTENSITY_STEP_PENALTY = 0.25

# Rating difference tiers, checked in order (first match wins)
RATING_DIFF_TIERS = (
    ('perfect', 0),
    ('close', 1),
    ('moderate', 2),
)
POSITIVE_RATING_MIN = 8

# Similar users
SAMPLE_ACTIVE_USERS = 100
MIN_USER_HISTORY = 5
MIN_CANDIDATES = 10
RECENT_ACTIVITY_WINDOWS_DAYS = (30, 90)
DEFAULT_SIMILAR_USERS_LIMIT = 10
MAX_SIMILAR_USERS_LIMIT = 50
SIMILARITY_BATCH_SIZE = _get_int_env("CINECHANCE_SIMILARITY_BATCH_SIZE", 5, min_val=1)
DEBUG_CANDIDATE_POOL = 50
DEBUG_MAX_LIMIT = 10

# Random recommendations
RECOMMENDATION_COOLDOWN_DAYS = 7
RANDOM_ALGORITHM_NAME = "random_v1"
RECOMMENDATION_SOURCE = "recommendations_page"
CONTENT_TYPES = ("movie", "tv", "anime")
LIST_TYPES = ("want", "watched")
DEFAULT_CONTENT_TYPES = CONTENT_TYPES
DEFAULT_LIST_TYPES = ("want",)

# List -> statuses; dropped titles stay eligible under "watched"
LIST_STATUSES = {
    "want": (STATUS_WANT,),
    "watched": (STATUS_WATCHED, STATUS_REWATCHED, STATUS_DROPPED),
}

# Content classification
ANIMATION_GENRE_ID = 16
ANIME_LANGUAGE = "ja"
