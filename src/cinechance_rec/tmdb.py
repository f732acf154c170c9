import httpx
import logging
import asyncio
from dataclasses import dataclass, field, asdict
from .cache import TTLCache, metadata_key
from .config import (
    TMDB_API_KEY,
    TMDB_BASE_URL,
    TMDB_LANGUAGE,
    TMDB_MAX_CAST,
    HTTP_TIMEOUT,
    MAX_HTTP_RETRIES,
    DEFAULT_RETRY_AFTER,
    MAX_RETRY_AFTER,
    DEFAULT_ASYNC_DELAY,
    DEFAULT_MAX_CONCURRENT,
    METADATA_TTL,
    METADATA_BATCH_SIZE,
    METADATA_BATCH_DELAY,
    ANIMATION_GENRE_ID,
    ANIME_LANGUAGE,
)
from .utils import chunked

logger = logging.getLogger(__name__)


@dataclass
class Genre:
    id: int
    name: str


@dataclass
class CastMember:
    id: int
    name: str
    character: str | None = None
    profile_path: str | None = None


@dataclass
class CrewMember:
    id: int
    name: str
    job: str | None = None


@dataclass
class Credits:
    cast: list[CastMember] = field(default_factory=list)
    crew: list[CrewMember] = field(default_factory=list)

    @property
    def directors(self) -> list[str]:
        return [c.name for c in self.crew if c.job == "Director"]


@dataclass
class ContentMetadata:
    """
    Title metadata from TMDB. Every field beyond the key is optional because
    upstream payloads are frequently partial.
    """
    content_id: int
    media_type: str
    title: str | None = None
    name: str | None = None
    genres: list[Genre] = field(default_factory=list)
    original_language: str | None = None
    release_date: str | None = None
    first_air_date: str | None = None
    overview: str | None = None
    poster_path: str | None = None
    vote_average: float | None = None
    vote_count: int | None = None
    runtime: int | None = None
    credits: Credits | None = None

    @property
    def genre_ids(self) -> set[int]:
        return {g.id for g in self.genres}

    @property
    def release_year(self) -> int | None:
        """Year from the leading 4 characters of the release/first-air date."""
        date = self.release_date or self.first_air_date
        if not date:
            return None
        try:
            return int(date[:4])
        except ValueError:
            return None

    @property
    def is_anime(self) -> bool:
        return ANIMATION_GENRE_ID in self.genre_ids and self.original_language == ANIME_LANGUAGE

    def to_dict(self) -> dict:
        return asdict(self)


def _parse_genres(raw) -> list[Genre]:
    genres = []
    for g in raw or []:
        if isinstance(g, dict) and g.get("id") is not None:
            genres.append(Genre(id=int(g["id"]), name=g.get("name") or ""))
    return genres


def parse_details(content_id: int, media_type: str, data: dict) -> ContentMetadata:
    """Build ContentMetadata from a TMDB details payload."""
    runtime = data.get("runtime")
    if runtime is None and data.get("episode_run_time"):
        runtime = data["episode_run_time"][0]

    return ContentMetadata(
        content_id=content_id,
        media_type=media_type,
        title=data.get("title"),
        name=data.get("name"),
        genres=_parse_genres(data.get("genres")),
        original_language=data.get("original_language"),
        release_date=data.get("release_date") or None,
        first_air_date=data.get("first_air_date") or None,
        overview=data.get("overview"),
        poster_path=data.get("poster_path"),
        vote_average=data.get("vote_average"),
        vote_count=data.get("vote_count"),
        runtime=runtime,
    )


def parse_credits(data: dict) -> Credits:
    """Build Credits from a TMDB credits payload, keeping top-billed cast and directors."""
    cast = [
        CastMember(
            id=c["id"],
            name=c.get("name") or "",
            character=c.get("character"),
            profile_path=c.get("profile_path"),
        )
        for c in (data.get("cast") or [])[:TMDB_MAX_CAST]
        if isinstance(c, dict) and c.get("id") is not None
    ]
    crew = [
        CrewMember(id=c["id"], name=c.get("name") or "", job=c.get("job"))
        for c in data.get("crew") or []
        if isinstance(c, dict) and c.get("id") is not None and c.get("job") == "Director"
    ]
    return Credits(cast=cast, crew=crew)


def credits_from_dict(data: dict) -> Credits:
    return Credits(
        cast=[CastMember(**c) for c in data.get("cast", [])],
        crew=[CrewMember(**c) for c in data.get("crew", [])],
    )


def metadata_from_dict(data: dict) -> ContentMetadata:
    """Inverse of ContentMetadata.to_dict (used for cached entries)."""
    data = dict(data)
    data["genres"] = [Genre(**g) for g in data.get("genres") or []]
    if data.get("credits") is not None:
        data["credits"] = credits_from_dict(data["credits"])
    return ContentMetadata(**data)


def display_type(metadata: ContentMetadata | None, stored_media_type: str) -> str:
    """
    Display label: anime, movie or tv.

    Anime (animation genre, Japanese original language) wins over the stored
    type. Without metadata the stored type is used.
    """
    if metadata is not None and metadata.is_anime:
        return "anime"
    return "movie" if stored_media_type == "movie" else "tv"


class TMDBClient:
    """Async TMDB client with coordinated rate limiting and response caching."""

    def __init__(
        self,
        api_key: str | None = None,
        cache: TTLCache | None = None,
        delay: float = DEFAULT_ASYNC_DELAY,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        client: httpx.AsyncClient | None = None,
        language: str = TMDB_LANGUAGE,
    ):
        self.api_key = TMDB_API_KEY if api_key is None else api_key
        self.cache = cache
        self.delay = delay
        self.language = language
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.client = client
        self._owns_client = client is None
        # When one task hits 429, all tasks pause
        self._rate_limit_event = asyncio.Event()
        self._rate_limit_event.set()

    async def __aenter__(self):
        if self.client is None:
            self.client = httpx.AsyncClient(
                base_url=TMDB_BASE_URL,
                headers={"Accept": "application/json", "User-Agent": "cinechance-rec/1.0"},
                timeout=HTTP_TIMEOUT,
            )
            self._owns_client = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.client and self._owns_client:
            await self.client.aclose()
            self.client = None
        return False

    async def _get_json(self, path: str) -> dict | None:
        """
        GET a TMDB endpoint and decode JSON.

        Returns None on 404, HTTP/transport errors, malformed payloads or when
        retries are exhausted.
        """
        if not self.client:
            raise RuntimeError("TMDBClient must be used as an async context manager")

        params = {"api_key": self.api_key, "language": self.language}

        async with self.semaphore:
            if self.delay:
                await asyncio.sleep(self.delay)

            for attempt in range(MAX_HTTP_RETRIES):
                await self._rate_limit_event.wait()

                try:
                    resp = await self.client.get(path, params=params)

                    if resp.status_code == 404:
                        return None

                    if resp.status_code == 429:
                        try:
                            retry_after = int(resp.headers.get("Retry-After", DEFAULT_RETRY_AFTER))
                        except ValueError:
                            retry_after = DEFAULT_RETRY_AFTER
                        retry_after = min(max(retry_after, 0), MAX_RETRY_AFTER)
                        logger.warning(
                            f"Rate limited on {path}, pausing ALL tasks for {retry_after}s "
                            f"(attempt {attempt + 1}/{MAX_HTTP_RETRIES})"
                        )
                        self._rate_limit_event.clear()
                        await asyncio.sleep(retry_after)
                        self._rate_limit_event.set()
                        continue

                    resp.raise_for_status()
                    data = resp.json()
                    if not isinstance(data, dict):
                        logger.warning(f"Unexpected payload type from {path}: {type(data).__name__}")
                        return None
                    return data

                except httpx.TimeoutException:
                    wait_time = 2 ** attempt
                    logger.warning(
                        f"Timeout on {path}, retrying in {wait_time}s (attempt {attempt + 1}/{MAX_HTTP_RETRIES})"
                    )
                    await asyncio.sleep(wait_time)

                except httpx.HTTPStatusError as exc:
                    logger.error(f"HTTP {exc.response.status_code} on {path}: {exc}")
                    return None

                except httpx.HTTPError as exc:
                    logger.error(f"Request error on {path}: {type(exc).__name__}: {exc}")
                    return None

                except ValueError as exc:
                    logger.warning(f"Malformed JSON from {path}: {exc}")
                    return None

            logger.error(f"Max retries exceeded for {path}")
            return None

    def _cache_get(self, key: str):
        return self.cache.get(key) if self.cache is not None else None

    def _cache_set(self, key: str, value) -> None:
        if self.cache is not None:
            self.cache.set(key, value, METADATA_TTL)

    async def fetch_details(self, content_id: int, media_type: str) -> ContentMetadata | None:
        """Details (genres, language, dates, ...) for one title, or None."""
        if not self.api_key:
            logger.debug("TMDB_API_KEY not set, skipping metadata lookup")
            return None

        key = metadata_key("details", media_type, content_id)
        cached = await asyncio.to_thread(self._cache_get, key)
        if cached is not None:
            return metadata_from_dict(cached)

        data = await self._get_json(f"/{media_type}/{content_id}")
        if data is None:
            return None

        metadata = parse_details(content_id, media_type, data)
        await asyncio.to_thread(self._cache_set, key, metadata.to_dict())
        return metadata

    async def fetch_credits(self, content_id: int, media_type: str) -> Credits | None:
        """Top-billed cast and directors for one title, or None."""
        if not self.api_key:
            return None

        key = metadata_key("credits", media_type, content_id)
        cached = await asyncio.to_thread(self._cache_get, key)
        if cached is not None:
            return credits_from_dict(cached)

        data = await self._get_json(f"/{media_type}/{content_id}/credits")
        if data is None:
            return None

        credits = parse_credits(data)
        await asyncio.to_thread(self._cache_set, key, asdict(credits))
        return credits

    async def fetch_metadata(self, content_id: int, media_type: str) -> ContentMetadata | None:
        """Details with credits attached; details and credits are fetched concurrently."""
        details, credits = await asyncio.gather(
            self.fetch_details(content_id, media_type),
            self.fetch_credits(content_id, media_type),
        )
        if details is None:
            return None
        details.credits = credits
        return details


async def fetch_metadata_batch(
    provider,
    keys: list[tuple[int, str]],
    include_credits: bool = True,
    batch_size: int = METADATA_BATCH_SIZE,
    batch_delay: float = METADATA_BATCH_DELAY,
) -> list[ContentMetadata | None]:
    """
    Look up metadata for (content_id, media_type) keys in bounded parallel batches.

    Results are aligned with `keys`. A lookup that raises is logged and
    becomes None; a fixed delay separates consecutive batches.
    """
    fetch = provider.fetch_metadata if include_credits else provider.fetch_details
    results: list[ContentMetadata | None] = []
    failed = 0

    batches = list(chunked(keys, batch_size))
    for i, batch in enumerate(batches):
        batch_results = await asyncio.gather(
            *(fetch(content_id, media_type) for content_id, media_type in batch),
            return_exceptions=True,
        )
        for (content_id, media_type), result in zip(batch, batch_results):
            if isinstance(result, Exception):
                logger.warning(
                    f"Metadata lookup failed for {media_type}/{content_id}: "
                    f"{type(result).__name__}: {result}"
                )
                results.append(None)
                failed += 1
            else:
                if result is None:
                    failed += 1
                results.append(result)

        if batch_delay and i < len(batches) - 1:
            await asyncio.sleep(batch_delay)

    if failed:
        logger.info(f"Metadata batch complete: {len(keys) - failed}/{len(keys)} resolved")
    else:
        logger.debug(f"Metadata batch complete: {len(keys)}/{len(keys)} resolved")
    return results
