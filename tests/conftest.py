"""Shared test fixtures and configuration."""
import pytest
from unittest.mock import AsyncMock
import httpx

from pronunciation_mcp import AppContext, Settings


@pytest.fixture
def settings():
    """Settings with a test Forvo key and a short timeout."""
    return Settings(forvo_api_key="testkey123", default_language="ja", request_timeout=0.5)


@pytest.fixture
def settings_without_key():
    """Settings as they look when FORVO_API_KEY is not set."""
    return Settings(forvo_api_key="")


@pytest.fixture
def mock_httpx_client():
    """Mock httpx.AsyncClient for testing handlers."""
    client = AsyncMock(spec=httpx.AsyncClient)
    return client


@pytest.fixture
def app_context(mock_httpx_client, settings):
    """Lifespan context as handed to tool handlers."""
    return AppContext(client=mock_httpx_client, settings=settings)


@pytest.fixture
def make_response():
    """Factory for real httpx responses bound to a GET request."""
    def _make(status_code=200, json=None, content=None, url="https://example.test/"):
        return httpx.Response(
            status_code,
            json=json,
            content=content,
            request=httpx.Request("GET", url)
        )
    return _make


@pytest.fixture
def mock_pronunciations():
    """
    Forvo word-pronunciations items in rate-desc order.

    Structure matches the real Forvo API: numeric fields are integers,
    sex is 'm' or 'f', audio URLs are signed and short-lived.
    """
    return [
        {
            "id": 101,
            "word": "neko",
            "original": "猫",
            "addtime": "2010-01-01 10:00:00",
            "hits": 1234,
            "username": "akiko",
            "sex": "f",
            "country": "Japan",
            "code": "ja",
            "langname": "Japanese",
            "pathmp3": "https://apifree.forvo.com/audio/a1/b2/c3_neko_f.mp3",
            "pathogg": "https://apifree.forvo.com/audio/a1/b2/c3_neko_f.ogg",
            "rate": 5,
            "num_votes": 6,
            "num_positive_votes": 5
        },
        {
            "id": 102,
            "word": "neko",
            "original": "猫",
            "username": "takeshi",
            "sex": "m",
            "country": "Japan",
            "code": "ja",
            "langname": "Japanese",
            "pathmp3": "https://apifree.forvo.com/audio/d4/e5/f6_neko_m.mp3",
            "pathogg": "https://apifree.forvo.com/audio/d4/e5/f6_neko_m.ogg",
            "rate": 3,
            "num_votes": 3,
            "num_positive_votes": 3
        }
    ]


@pytest.fixture
def mock_forvo_payload(mock_pronunciations):
    """Forvo word-pronunciations response body."""
    return {"attributes": {"total": len(mock_pronunciations)}, "items": mock_pronunciations}


@pytest.fixture
def fake_mp3():
    """50,000 bytes of 'audio', well above the placeholder threshold."""
    return b"ID3" + b"\x00" * 49997
