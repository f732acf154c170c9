import argparse
import json
import logging
import atexit
import asyncio
from tqdm import tqdm

from .database import init_db, close_pool, load_recommendation_history, load_active_user_ids
from .config import (
    DEFAULT_SIMILAR_USERS_LIMIT,
    CONTENT_TYPES,
    LIST_TYPES,
    SAMPLE_ACTIVE_USERS,
)
from .cache import TTLCache
from .tmdb import TMDBClient
from .taste_map import get_taste_map, recompute_taste_map, invalidate_taste_map
from .similarity import compute_similarity, is_similar
from .similar_users import find_similar_users, analyze_similarity_candidates
from .random_recommender import parse_filters, recommend_random

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)


def _top(scores: dict[str, int], n: int = 10) -> list[tuple[str, int]]:
    return sorted(scores.items(), key=lambda x: (-x[1], x[0]))[:n]


async def _taste_map_async(args: argparse.Namespace):
    cache = TTLCache()
    async with TMDBClient(cache=cache) as provider:
        if args.refresh:
            invalidate_taste_map(args.user, cache)
            return await recompute_taste_map(args.user, provider, cache)
        return await get_taste_map(args.user, provider, cache)


def cmd_init_db(args: argparse.Namespace) -> None:
    init_db()
    logger.info("Database initialized")


def cmd_taste_map(args: argparse.Namespace) -> None:
    """Show a user's taste map."""
    init_db()
    taste_map = asyncio.run(_taste_map_async(args))
    if taste_map is None:
        logger.error(f"Could not compute taste map for '{args.user}'")
        return

    logger.info(f"\nTaste map for {args.user} (updated {taste_map.updated_at})")
    logger.info(f"  Average rating: {taste_map.average_rating}")
    logger.info(f"  Types: movie {taste_map.type_profile['movie']}%, tv {taste_map.type_profile['tv']}%")
    dist = taste_map.rating_distribution
    logger.info(f"  Ratings: high {dist['high']}%, medium {dist['medium']}%, low {dist['low']}%")
    behavior = taste_map.behavior_profile
    logger.info(
        f"  Behavior: rewatch {behavior['rewatch_rate']}%, drop {behavior['drop_rate']}%, "
        f"completion {behavior['completion_rate']}%"
    )
    logger.info(f"  Metrics: {taste_map.computed_metrics}")

    for label, scores in (
        ("Top genres", taste_map.genre_profile),
        ("Top directors", taste_map.directors),
        ("Top actors", taste_map.actors),
    ):
        if scores:
            logger.info(f"\n{label}:")
            for name, score in _top(scores):
                logger.info(f"  {name}: {score}")


async def _compare_async(args: argparse.Namespace):
    cache = TTLCache()
    async with TMDBClient(cache=cache) as provider:
        return await compute_similarity(args.user_a, args.user_b, provider, cache, include_patterns=args.patterns)


def cmd_compare(args: argparse.Namespace) -> None:
    """Compare two users' tastes."""
    init_db()
    result = asyncio.run(_compare_async(args))

    logger.info(f"\n{args.user_a} vs {args.user_b}")
    logger.info(f"  Taste similarity:        {result.taste_similarity:.3f}")
    logger.info(f"  Rating correlation:      {result.rating_correlation:+.3f}")
    logger.info(f"  Person overlap:          {result.person_overlap:.3f}")
    if result.genre_rating_similarity is not None:
        logger.info(f"  Genre rating similarity: {result.genre_rating_similarity:.3f}")
    logger.info(f"  Overall match:           {result.overall_match * 100:.1f}%")
    logger.info(f"  Similar: {'yes' if is_similar(result) else 'no'}")

    if result.rating_patterns is not None:
        logger.info("\nRating patterns:")
        for key, value in result.rating_patterns.to_dict().items():
            logger.info(f"  {key}: {value}")


async def _similar_users_async(args: argparse.Namespace):
    cache = TTLCache()
    async with TMDBClient(cache=cache) as provider:
        return await find_similar_users(
            args.user, provider, cache, limit=args.limit, use_cache=not args.no_cache
        )


def cmd_similar_users(args: argparse.Namespace) -> None:
    """Find users with similar taste."""
    init_db()
    result = asyncio.run(_similar_users_async(args))

    log = logger.error if result.error else logger.info
    log(f"{result.message}{' (cached)' if result.cached else ''}")
    for i, user in enumerate(result.similar_users, 1):
        logger.info(
            f"{i:2}. {user['user_id']} - {user['overall_match']}% match "
            f"({user['watch_count']} titles, member since {user['member_since']})"
        )


async def _similar_debug_async(args: argparse.Namespace):
    cache = TTLCache()
    async with TMDBClient(cache=cache) as provider:
        return await analyze_similarity_candidates(
            args.user, provider, cache, limit=args.limit, details=args.details
        )


def cmd_similar_debug(args: argparse.Namespace) -> None:
    """Break down similarity metrics against a few candidates."""
    init_db()
    analysis = asyncio.run(_similar_debug_async(args))
    if analysis is None:
        logger.error(f"Failed to compute taste map for '{args.user}'")
        return
    logger.info(json.dumps(analysis, indent=2, ensure_ascii=False))


async def _recommend_async(args: argparse.Namespace):
    filters = parse_filters(
        types=args.types,
        lists=args.lists,
        min_rating=args.min_rating,
        max_rating=args.max_rating,
        year_from=args.year_from,
        year_to=args.year_to,
        genres=args.genres,
    )
    cache = TTLCache()
    async with TMDBClient(cache=cache) as provider:
        return await recommend_random(args.user, filters, provider)


def cmd_recommend(args: argparse.Namespace) -> None:
    """Pick a random title from the user's lists."""
    init_db()
    result = asyncio.run(_recommend_async(args))

    if not result.success:
        logger.info(result.message)
        return

    movie = result.movie
    year = (movie['release_date'] or '')[:4]
    logger.info(f"\n{movie['title'] or movie['name']} ({year or '?'}) [{movie['media_type']}]")
    if movie['genres']:
        logger.info(f"  Genres: {', '.join(g['name'] for g in movie['genres'])}")
    logger.info(f"  Your list: {result.user_status}")
    if result.user_rating is not None:
        logger.info(f"  Your rating: {result.user_rating} ({result.vote_count} rating(s) recorded)")
    if result.watch_count:
        logger.info(f"  Watched {result.watch_count} time(s)")
    if movie['overview']:
        logger.info(f"  {movie['overview'][:200]}")


def cmd_history(args: argparse.Namespace) -> None:
    """Show recently shown recommendations."""
    init_db()
    history = load_recommendation_history(args.user, limit=args.limit)
    if not history:
        logger.info(f"No recommendations shown to '{args.user}' yet")
        return

    for entry in history:
        context = entry['context']
        logger.info(
            f"{entry['shown_at'][:16]}  {entry['media_type']}/{entry['content_id']}  "
            f"{entry['algorithm']} {entry['action']}  "
            f"({context.get('position', '?')}/{context.get('candidates_count', '?')}, {context.get('user_status')})"
        )


async def _warm_cache_async(user_ids: list[str]) -> int:
    cache = TTLCache()
    refreshed = 0
    async with TMDBClient(cache=cache) as provider:
        for user_id in tqdm(user_ids, desc="Taste maps"):
            await recompute_taste_map(user_id, provider, cache)
            refreshed += 1
    return refreshed


def cmd_warm_cache(args: argparse.Namespace) -> None:
    """Recompute taste maps for the most active users."""
    init_db()
    user_ids = load_active_user_ids(args.limit)
    if not user_ids:
        logger.info("No users with watch history")
        return
    refreshed = asyncio.run(_warm_cache_async(user_ids))
    logger.info(f"Refreshed {refreshed} taste map(s)")


def cmd_purge_cache(args: argparse.Namespace) -> None:
    init_db()
    removed = TTLCache().purge_expired()
    logger.info(f"Removed {removed} expired cache entries")


def main():
    parser = argparse.ArgumentParser(description="CineChance taste-similarity and recommendation engine")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    taste_parser = subparsers.add_parser("taste-map", help="Show a user's taste map")
    taste_parser.add_argument("user", help="User id")
    taste_parser.add_argument("--refresh", action="store_true", help="Ignore the cached taste map")
    taste_parser.set_defaults(func=cmd_taste_map)

    compare_parser = subparsers.add_parser("compare", help="Compare two users")
    compare_parser.add_argument("user_a", help="First user id")
    compare_parser.add_argument("user_b", help="Second user id")
    compare_parser.add_argument("--patterns", action="store_true", help="Include rating pattern breakdown")
    compare_parser.set_defaults(func=cmd_compare)

    similar_parser = subparsers.add_parser("similar-users", help="Find users with similar taste")
    similar_parser.add_argument("user", help="User id")
    similar_parser.add_argument("--limit", type=int, default=DEFAULT_SIMILAR_USERS_LIMIT,
                                help="Number of users to show (max 50)")
    similar_parser.add_argument("--no-cache", action="store_true", help="Recompute instead of using the cached list")
    similar_parser.set_defaults(func=cmd_similar_users)

    debug_parser = subparsers.add_parser("similar-debug", help="Similarity breakdown against a few users")
    debug_parser.add_argument("user", help="User id")
    debug_parser.add_argument("--limit", type=int, default=5, help="Candidates to analyze (max 10)")
    debug_parser.add_argument("--details", action="store_true", help="Include candidate taste maps")
    debug_parser.set_defaults(func=cmd_similar_debug)

    rec_parser = subparsers.add_parser("recommend", help="Random recommendation from your lists")
    rec_parser.add_argument("user", help="User id")
    rec_parser.add_argument("--types", nargs="+", choices=CONTENT_TYPES, help="Content types (default: all)")
    rec_parser.add_argument("--lists", nargs="+", choices=LIST_TYPES, help="Lists to draw from (default: want)")
    rec_parser.add_argument("--min-rating", help="Minimum own rating (watched list only)")
    rec_parser.add_argument("--max-rating", help="Maximum own rating (watched list only)")
    rec_parser.add_argument("--year-from", help="Earliest release year")
    rec_parser.add_argument("--year-to", help="Latest release year")
    rec_parser.add_argument("--genres", nargs="+", help="TMDB genre ids (any match)")
    rec_parser.set_defaults(func=cmd_recommend)

    history_parser = subparsers.add_parser("history", help="Show recent recommendations")
    history_parser.add_argument("user", help="User id")
    history_parser.add_argument("--limit", type=int, default=20, help="Entries to show")
    history_parser.set_defaults(func=cmd_history)

    warm_parser = subparsers.add_parser("warm-cache", help="Recompute taste maps for active users")
    warm_parser.add_argument("--limit", type=int, default=SAMPLE_ACTIVE_USERS, help="Number of users")
    warm_parser.set_defaults(func=cmd_warm_cache)

    purge_parser = subparsers.add_parser("purge-cache", help="Delete expired cache entries")
    purge_parser.set_defaults(func=cmd_purge_cache)

    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    args.func(args)


if __name__ == "__main__":
    main()
