import httpx
import pytest

from cinechance_rec import tmdb
from cinechance_rec.tmdb import TMDBClient, display_type, fetch_metadata_batch

from conftest import FakeProvider, make_metadata

BASE_URL = "https://api.themoviedb.org/3"


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)


DETAILS = {
    "id": 10,
    "title": "Spirited Away",
    "genres": [{"id": 16, "name": "Animation"}, {"id": 14, "name": "Fantasy"}],
    "original_language": "ja",
    "release_date": "2001-07-20",
    "vote_average": 8.5,
    "vote_count": 15000,
    "runtime": 125,
    "poster_path": "/poster.jpg",
}

CREDITS = {
    "cast": [{"id": i, "name": f"Actor {i}", "character": "x"} for i in range(30)],
    "crew": [
        {"id": 900, "name": "Hayao Miyazaki", "job": "Director"},
        {"id": 901, "name": "Joe Hisaishi", "job": "Original Music Composer"},
    ],
}


@pytest.mark.asyncio
async def test_fetch_metadata_combines_details_and_credits():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        assert request.url.params["api_key"] == "key"
        if request.url.path.endswith("/credits"):
            return httpx.Response(200, json=CREDITS)
        return httpx.Response(200, json=DETAILS)

    async with _client(handler) as client:
        async with TMDBClient(api_key="key", client=client, delay=0.0) as provider:
            meta = await provider.fetch_metadata(10, "movie")

    assert sorted(seen) == ["/3/movie/10", "/3/movie/10/credits"]
    assert meta.title == "Spirited Away"
    assert meta.genre_ids == {16, 14}
    assert meta.release_year == 2001
    assert meta.is_anime is True
    assert len(meta.credits.cast) == 20
    assert meta.credits.directors == ["Hayao Miyazaki"]


@pytest.mark.asyncio
async def test_not_found_and_server_errors_return_none():
    def handler(request: httpx.Request) -> httpx.Response:
        if "/movie/1" in request.url.path:
            return httpx.Response(404)
        return httpx.Response(500)

    async with _client(handler) as client:
        provider = TMDBClient(api_key="key", client=client, delay=0.0)
        assert await provider.fetch_details(1, "movie") is None
        assert await provider.fetch_details(2, "tv") is None
        assert await provider.fetch_metadata(1, "movie") is None


@pytest.mark.asyncio
async def test_malformed_json_returns_none():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>not json</html>")

    async with _client(handler) as client:
        provider = TMDBClient(api_key="key", client=client, delay=0.0)
        assert await provider.fetch_details(3, "movie") is None


@pytest.mark.asyncio
async def test_rate_limit_pauses_and_retries():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(429, headers={"Retry-After": "0"})
        return httpx.Response(200, json=DETAILS)

    async with _client(handler) as client:
        provider = TMDBClient(api_key="key", client=client, delay=0.0)
        meta = await provider.fetch_details(10, "movie")

    assert calls["n"] == 2
    assert meta is not None


@pytest.mark.asyncio
async def test_timeouts_retry_then_give_up(monkeypatch):
    waits = []

    async def fake_sleep(seconds):
        waits.append(seconds)

    monkeypatch.setattr(tmdb.asyncio, "sleep", fake_sleep)

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    async with _client(handler) as client:
        provider = TMDBClient(api_key="key", client=client, delay=0.0)
        assert await provider.fetch_details(10, "movie") is None

    assert waits == [1, 2, 4]


@pytest.mark.asyncio
async def test_missing_api_key_skips_requests():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    async with _client(handler) as client:
        provider = TMDBClient(api_key="", client=client)
        assert await provider.fetch_metadata(10, "movie") is None


@pytest.mark.asyncio
async def test_client_required_outside_context():
    provider = TMDBClient(api_key="key")
    with pytest.raises(RuntimeError):
        await provider.fetch_details(10, "movie")


@pytest.mark.asyncio
async def test_responses_are_cached(cache):
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(200, json=DETAILS)

    async with _client(handler) as client:
        provider = TMDBClient(api_key="key", client=client, cache=cache, delay=0.0)
        first = await provider.fetch_details(10, "movie")
        second = await provider.fetch_details(10, "movie")

    assert calls["n"] == 1
    assert second == first


def test_display_type_classification():
    anime = make_metadata(1, "tv", genres=[(16, "Animation")], language="ja")
    cartoon = make_metadata(2, "movie", genres=[(16, "Animation")], language="en")
    drama = make_metadata(3, "tv", genres=[(18, "Drama")], language="ja")

    assert display_type(anime, "tv") == "anime"
    assert display_type(cartoon, "movie") == "movie"
    assert display_type(anime, "movie") == "anime"
    assert display_type(drama, "tv") == "tv"
    assert display_type(None, "movie") == "movie"


def test_release_year_is_permissive():
    assert make_metadata(1, first_air_date="1999-04-01").release_year == 1999
    assert make_metadata(1, release_date="").release_year is None
    assert make_metadata(1, release_date="TBA").release_year is None


@pytest.mark.asyncio
async def test_metadata_batch_keeps_order_and_absorbs_failures():
    provider = FakeProvider(failing={(2, "movie")})
    provider.add(make_metadata(1))
    provider.add(make_metadata(3, "tv"))

    results = await fetch_metadata_batch(
        provider,
        [(1, "movie"), (2, "movie"), (3, "tv"), (4, "movie")],
        batch_size=2,
        batch_delay=0.0,
    )

    assert [r.content_id if r else None for r in results] == [1, None, 3, None]
    assert len(provider.calls) == 4
