#!/usr/bin/env python3
"""
Pronunciation MCP Server

A Model Context Protocol server that fetches native-speaker pronunciation audio
for use in Anki flashcard workflows. Two providers are exposed as tools:

- Forvo (https://forvo.com): rated pronunciations in 430+ languages with speaker
  metadata. Requires an API key.
- JapanesePod101: dictionary audio for a Japanese word given its kanji and kana.
  No credential required.

Downloaded audio is returned base64-encoded so that it can be passed straight to
Anki's store_media_file tool.

IMPORTANT: The Forvo tools require an API key.
Get one at: https://api.forvo.com/plans-and-pricing/
Set the FORVO_API_KEY environment variable before starting the server.

Forvo API Documentation: https://api.forvo.com/documentation/
"""

import asyncio
import base64
import json
import logging
import os
import re
import sys
import unicodedata
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, Literal, Callable, Awaitable, Type
from urllib.parse import quote, urlencode

import httpx
import mcp.types as types
from mcp.server.lowlevel import Server
from mcp.server.stdio import stdio_server
from pydantic import (
    BaseModel,
    Field,
    field_validator,
    model_validator,
    ConfigDict,
    ValidationError,
)

__version__ = "1.0.0"

# Constants
SERVER_NAME = "forvo-pronunciation"
FORVO_BASE_URL = "https://apifree.forvo.com"
JPOD_AUDIO_URL = "https://assets.languagepod101.com/dictionary/japanese/audiomp3.php"
DEFAULT_LANGUAGE = "ja"
REQUEST_TIMEOUT = 15.0
MAX_REDIRECTS = 5
USER_AGENT = f"pronunciation-mcp/{__version__}"

# JapanesePod101 answers unknown words with a short placeholder clip instead of a 404
MIN_JPOD_AUDIO_BYTES = 1000
MAX_BATCH_ITEMS = 50
ERROR_BODY_LIMIT = 500

FORVO_ORDERS = ("rate-desc", "rate-asc", "date-desc", "date-asc")
LANGUAGE_LIST_ORDERS = ("name", "code")
SEXES = ("m", "f")

# Logger (configured in main)
logger = logging.getLogger(__name__)


# ============================================================================
# Errors
# ============================================================================

class PronunciationError(Exception):
    """Base class for errors reported back to the host as tool failures."""


class ConfigurationError(PronunciationError):
    """Server is missing configuration required by the requested tool."""


class UpstreamHttpError(PronunciationError):
    """A provider answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class UpstreamFormatError(PronunciationError):
    """A provider answered 2xx with a body we cannot interpret."""


class UpstreamTimeoutError(PronunciationError, TimeoutError):
    """A provider request exceeded the request timeout."""


class RedirectLimitError(PronunciationError):
    """A provider redirect chain exceeded the hop limit."""


class NotFoundError(PronunciationError):
    """The provider has no audio for the requested word."""


class UnknownToolError(PronunciationError):
    """The host asked for a tool that is not in the catalog."""


# ============================================================================
# Configuration and Application Lifespan Context
# ============================================================================

@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, read once from the environment."""
    forvo_api_key: str = ""
    forvo_base_url: str = FORVO_BASE_URL
    jpod_audio_url: str = JPOD_AUDIO_URL
    default_language: str = DEFAULT_LANGUAGE
    request_timeout: float = REQUEST_TIMEOUT
    max_redirects: int = MAX_REDIRECTS

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from environment variables.

        Raises:
            ConfigurationError: If REQUEST_TIMEOUT is not a positive number or
                DEFAULT_LANGUAGE is not a 2-5 character code
        """
        raw_timeout = os.getenv("REQUEST_TIMEOUT")
        timeout = REQUEST_TIMEOUT
        if raw_timeout:
            try:
                timeout = float(raw_timeout)
            except ValueError:
                timeout = 0.0
            if not timeout > 0:
                raise ConfigurationError(
                    f"REQUEST_TIMEOUT must be a positive number of seconds, got '{raw_timeout}'"
                )

        language = os.getenv("DEFAULT_LANGUAGE", DEFAULT_LANGUAGE).strip() or DEFAULT_LANGUAGE
        if not 2 <= len(language) <= 5:
            raise ConfigurationError(
                f"DEFAULT_LANGUAGE must be a 2-5 character language code, got '{language}'"
            )

        return cls(
            forvo_api_key=os.getenv("FORVO_API_KEY", "").strip(),
            forvo_base_url=os.getenv("FORVO_BASE_URL", FORVO_BASE_URL).rstrip("/"),
            jpod_audio_url=os.getenv("JPOD_AUDIO_URL", JPOD_AUDIO_URL),
            default_language=language,
            request_timeout=timeout,
        )

    @property
    def api_key_prefix(self) -> str:
        """Key prefix safe to write to logs."""
        return f"{self.forvo_api_key[:6]}..." if self.forvo_api_key else "MISSING"


@dataclass
class AppContext:
    """Application context holding shared resources for the server lifetime."""
    client: httpx.AsyncClient
    settings: Settings


def create_http_client(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> httpx.AsyncClient:
    """Create the HTTP client shared by both providers."""
    return httpx.AsyncClient(
        timeout=settings.request_timeout,
        follow_redirects=True,
        max_redirects=settings.max_redirects,
        headers={"User-Agent": USER_AGENT},
        transport=transport,
    )


@asynccontextmanager
async def app_lifespan(server: Server) -> AsyncIterator[AppContext]:
    """
    Manage application lifecycle resources.

    The HTTP client is closed on any exit path.
    """
    settings = Settings.from_env()
    client = create_http_client(settings)
    logger.debug("Created HTTP client for server lifespan")
    try:
        yield AppContext(client=client, settings=settings)
    finally:
        await client.aclose()
        logger.debug("Closed HTTP client on server shutdown")


# ============================================================================
# Text Helpers
# ============================================================================

def _normalize_japanese_text(text: str) -> str:
    """
    Normalize Japanese text to NFKC form.

    Half-width katakana become full-width and composed/decomposed forms
    collapse to a single representation, so the provider sees one spelling.
    """
    if not isinstance(text, str):
        return str(text)
    return unicodedata.normalize('NFKC', text)


# Hiragana and katakana blocks, including the prolonged sound mark
_KANA_PATTERN = re.compile(r'^[\u3040-\u309F\u30A0-\u30FF]+$')
_FILENAME_UNSAFE = re.compile(r'[\s/\\:*?"<>|]+')


def suggest_filename(*parts: str, extension: str) -> str:
    """Build a media filename from word parts, e.g. forvo_ja_猫.mp3."""
    stem = "_".join(_FILENAME_UNSAFE.sub("_", part) for part in parts if part)
    return f"{stem}.{extension}"


def _infer_audio_format(url: str) -> str:
    """Guess the audio format from the download URL (not from the bytes)."""
    return "mp3" if "mp3" in url else "ogg"


def _check_choice(value: Any, field_name: str, allowed: tuple) -> Any:
    if isinstance(value, str):
        value = value.strip()
    if value not in allowed:
        raise ValueError(f"{field_name} must be one of: {', '.join(allowed)}")
    return value


# ============================================================================
# Pydantic Input Models
# ============================================================================

class ToolInput(BaseModel):
    """Common configuration for tool argument models."""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        extra='forbid',
        json_schema_serialization_defaults_required=True
    )

    @model_validator(mode='before')
    @classmethod
    def drop_null_arguments(cls, data: Any) -> Any:
        """Treat explicit nulls from the host the same as omitted arguments."""
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class ForvoWordPronunciationsInput(ToolInput):
    """Input model for listing the pronunciations of a word."""

    word: str = Field(
        ...,
        description="The word to get pronunciations for",
        min_length=1,
        max_length=200
    )
    language: Optional[str] = Field(
        default=None,
        description=(
            "Language code (e.g. 'ja' for Japanese, 'en' for English, 'ru' for Russian). "
            "Defaults to the server's DEFAULT_LANGUAGE"
        ),
        min_length=2,
        max_length=5
    )
    country: Optional[str] = Field(
        default=None,
        description="ISO 3166-1 Alpha-3 country code to filter by (e.g. 'JPN', 'USA')",
        min_length=3,
        max_length=3
    )
    sex: Optional[Literal["m", "f"]] = Field(
        default=None,
        description="Filter by sex: 'm' for male, 'f' for female"
    )
    min_rate: Optional[int] = Field(
        default=None,
        description="Minimum rating (0-5) to filter pronunciations",
        ge=0,
        le=5
    )
    order: Literal["rate-desc", "rate-asc", "date-desc", "date-asc"] = Field(
        default="rate-desc",
        description="Sort order"
    )
    limit: int = Field(
        default=5,
        description="Maximum number of pronunciations to return (1-50)",
        ge=1,
        le=50
    )

    @field_validator('sex', mode='before')
    @classmethod
    def validate_sex(cls, v: Any) -> Any:
        return _check_choice(v, "sex", SEXES)

    @field_validator('order', mode='before')
    @classmethod
    def validate_order(cls, v: Any) -> Any:
        return _check_choice(v, "order", FORVO_ORDERS)

    @field_validator('country')
    @classmethod
    def normalize_country(cls, v: Optional[str]) -> Optional[str]:
        """Forvo expects upper-case Alpha-3 codes."""
        return v.upper() if v else v


class ForvoStandardPronunciationInput(ToolInput):
    """Input model for the single top-rated pronunciation."""

    word: str = Field(
        ...,
        description="The word to get the best pronunciation for",
        min_length=1,
        max_length=200
    )
    language: Optional[str] = Field(
        default=None,
        description="Language code (e.g. 'ja', 'en', 'ru')",
        min_length=2,
        max_length=5
    )


class ForvoDownloadInput(ToolInput):
    """Input model for downloading the best pronunciation audio."""

    word: str = Field(
        ...,
        description="The word to download pronunciation for",
        min_length=1,
        max_length=200
    )
    language: Optional[str] = Field(
        default=None,
        description="Language code (e.g. 'ja', 'en', 'ru')",
        min_length=2,
        max_length=5
    )
    sex: Optional[Literal["m", "f"]] = Field(
        default=None,
        description=(
            "Preferred sex: 'm' for male, 'f' for female. "
            "Falls back to the best pronunciation of any speaker if none match"
        )
    )

    @field_validator('sex', mode='before')
    @classmethod
    def validate_sex(cls, v: Any) -> Any:
        return _check_choice(v, "sex", SEXES)


class ForvoSearchInput(ToolInput):
    """Input model for searching pronounced words."""

    search: str = Field(
        ...,
        description="Search query",
        min_length=1,
        max_length=200
    )
    language: Optional[str] = Field(
        default=None,
        description="Language code to filter results",
        min_length=2,
        max_length=5
    )
    limit: int = Field(
        default=10,
        description="Maximum number of results (1-50)",
        ge=1,
        le=50
    )


class ForvoLanguageListInput(ToolInput):
    """Input model for the Forvo language list."""

    min_pronunciations: int = Field(
        default=100,
        description="Minimum pronunciations a language must have to be listed",
        ge=0,
        le=999999
    )
    order: Literal["name", "code"] = Field(
        default="name",
        description="Sort by: 'name' or 'code'"
    )

    @field_validator('order', mode='before')
    @classmethod
    def validate_order(cls, v: Any) -> Any:
        return _check_choice(v, "order", LANGUAGE_LIST_ORDERS)


class JPodAudioInput(ToolInput):
    """Input model for a JapanesePod101 audio lookup."""

    kanji: str = Field(
        ...,
        description="The word as written, usually in kanji (猫, 食べる)",
        min_length=1,
        max_length=100
    )
    kana: str = Field(
        ...,
        description="The reading in hiragana or katakana (ねこ, たべる)",
        min_length=1,
        max_length=100
    )

    @field_validator('kanji')
    @classmethod
    def normalize_kanji(cls, v: str) -> str:
        """Normalize Unicode in the written form."""
        return _normalize_japanese_text(v)

    @field_validator('kana')
    @classmethod
    def validate_kana(cls, v: str) -> str:
        """Normalize the reading and require it to be kana only."""
        v = _normalize_japanese_text(v)
        if not _KANA_PATTERN.match(v):
            raise ValueError(
                f"Invalid reading '{v}'. "
                f"Must be hiragana or katakana (e.g., 'ねこ'). Do not use romaji or kanji."
            )
        return v


class JPodBatchInput(ToolInput):
    """Input model for downloading many JapanesePod101 words at once."""

    items: List[JPodAudioInput] = Field(
        ...,
        description=f"Words to download, each with kanji and kana (1-{MAX_BATCH_ITEMS} items)",
        min_length=1,
        max_length=MAX_BATCH_ITEMS
    )


# ============================================================================
# Provider Response Records
# ============================================================================

class ForvoPronunciation(BaseModel):
    """One pronunciation as returned by Forvo. Audio URLs expire after ~2 hours."""
    model_config = ConfigDict(extra='ignore')

    id: Optional[int] = None
    word: Optional[str] = None
    original: Optional[str] = None
    username: Optional[str] = None
    sex: Optional[str] = None
    country: Optional[str] = None
    code: Optional[str] = None
    langname: Optional[str] = None
    pathmp3: Optional[str] = None
    pathogg: Optional[str] = None
    rate: Optional[int] = None
    num_votes: Optional[int] = None
    num_positive_votes: Optional[int] = None

    @property
    def audio_url(self) -> Optional[str]:
        return self.pathmp3 or self.pathogg


class ForvoWord(BaseModel):
    """A pronounced word returned by the Forvo word search."""
    model_config = ConfigDict(extra='ignore')

    id: Optional[int] = None
    word: Optional[str] = None
    original: Optional[str] = None
    language: Optional[str] = None
    num_pronunciations: Optional[int] = None


class ForvoLanguage(BaseModel):
    """A language entry from the Forvo language list."""
    model_config = ConfigDict(extra='ignore')

    code: Optional[str] = None
    en: Optional[str] = None
    pronunciations: Optional[int] = None


@dataclass
class AudioResult:
    """Downloaded audio held only for the duration of a tool call."""
    data: bytes
    source_url: str

    @property
    def audio_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def format(self) -> str:
        return _infer_audio_format(self.source_url)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "audio_base64": self.audio_base64,
            "format": self.format,
            "size_bytes": self.size_bytes,
        }


# ============================================================================
# HTTP and Provider Adapters
# ============================================================================

async def _http_get(
    client: httpx.AsyncClient,
    url: str,
    settings: Settings,
    accept: str
) -> httpx.Response:
    """
    Perform a single GET request.

    Redirects are followed by the client up to its hop limit. The request
    timeout applies to this request alone, not to the tool call as a whole.

    Raises:
        UpstreamTimeoutError: If the request exceeds the timeout
        RedirectLimitError: If the redirect chain is too long
        httpx.RequestError: On other network failures
    """
    try:
        return await asyncio.wait_for(
            client.get(url, headers={"Accept": accept}),
            timeout=settings.request_timeout
        )
    except (httpx.TimeoutException, asyncio.TimeoutError) as e:
        raise UpstreamTimeoutError(
            f"Request timed out after {settings.request_timeout:g}s"
        ) from e
    except httpx.TooManyRedirects as e:
        raise RedirectLimitError(
            f"Too many redirects (limit is {settings.max_redirects})"
        ) from e


def build_forvo_url(settings: Settings, action: str, params: Optional[Dict[str, Any]] = None) -> str:
    """
    Build a Forvo REST-style URL from an action and key/value params.

    Params whose value is None or empty are left out. Every value is
    percent-encoded as a single path segment.

    Raises:
        ConfigurationError: If no Forvo API key is configured
    """
    if not settings.forvo_api_key:
        raise ConfigurationError(
            "FORVO_API_KEY environment variable is not set. "
            "Get your key at https://api.forvo.com/plans-and-pricing/"
        )

    parts = [
        settings.forvo_base_url,
        f"key/{quote(settings.forvo_api_key, safe='')}",
        "format/json",
        f"action/{quote(action, safe='')}",
    ]
    for name, value in (params or {}).items():
        if value is None or value == "":
            continue
        parts.append(f"{name}/{quote(str(value), safe='')}")
    return "/".join(parts)


def build_jpod_url(settings: Settings, kanji: str, kana: str) -> str:
    """Build the JapanesePod101 audio URL for a kanji/kana pair."""
    return f"{settings.jpod_audio_url}?{urlencode({'kanji': kanji, 'kana': kana})}"


def _validate_forvo_response(data: Any, action: str) -> None:
    """
    Validate the top-level shape of a Forvo response.

    Raises:
        UpstreamFormatError: If the response is not a JSON object
    """
    if not isinstance(data, dict):
        logger.error(
            f"Invalid Forvo response type: expected object, got {type(data).__name__}",
            extra={"action": action, "response_type": type(data).__name__}
        )
        raise UpstreamFormatError(
            f"Forvo returned unexpected format for '{action}'. "
            f"Expected a JSON object, got {type(data).__name__}"
        )


async def _forvo_request(
    client: httpx.AsyncClient,
    settings: Settings,
    action: str,
    params: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Make a GET request to the Forvo API.

    Args:
        client: HTTP client from lifespan context
        settings: Server settings holding the API key
        action: Forvo action name (word-pronunciations, language-list, ...)
        params: Action parameters, one path segment pair each

    Returns:
        Parsed JSON object

    Raises:
        ConfigurationError: If no API key is configured
        UpstreamHttpError: If Forvo answers with a non-2xx status
        UpstreamFormatError: If the body is not a JSON object
    """
    url = build_forvo_url(settings, action, params)
    # Never log the URL: it carries the API key
    logger.debug(f"Forvo API request: {action}", extra={"action": action, "params": params or {}})

    response = await _http_get(client, url, settings, accept="application/json")

    if not response.is_success:
        body = response.text[:ERROR_BODY_LIMIT]
        raise UpstreamHttpError(
            f"Forvo API error: {response.status_code} {response.reason_phrase}"
            + (f" - {body}" if body else ""),
            status_code=response.status_code,
            body=body
        )

    try:
        data = response.json()
    except ValueError as e:
        raise UpstreamFormatError(f"Forvo returned invalid JSON for '{action}'") from e

    _validate_forvo_response(data, action)
    return data


def _parse_items(data: Dict[str, Any], model: Type[BaseModel], action: str) -> List[Any]:
    """
    Parse the 'items' list of a Forvo response into records.

    A missing or null 'items' field means no results.
    """
    items = data.get("items") or []
    if not isinstance(items, list):
        raise UpstreamFormatError(
            f"Forvo returned unexpected 'items' for '{action}': {type(items).__name__}"
        )
    try:
        return [model.model_validate(item) for item in items]
    except ValidationError as e:
        raise UpstreamFormatError(
            f"Forvo returned malformed items for '{action}': {e.error_count()} invalid field(s)"
        ) from e


async def _download_audio(client: httpx.AsyncClient, settings: Settings, url: str) -> AudioResult:
    """
    Download audio bytes from a URL.

    Raises:
        UpstreamHttpError: If the download answers with a non-2xx status
    """
    response = await _http_get(client, url, settings, accept="audio/*")
    if not response.is_success:
        raise UpstreamHttpError(
            f"Audio download failed: {response.status_code}",
            status_code=response.status_code
        )
    return AudioResult(data=response.content, source_url=url)


async def _download_jpod_audio(
    client: httpx.AsyncClient,
    settings: Settings,
    kanji: str,
    kana: str
) -> AudioResult:
    """
    Download JapanesePod101 audio for a word.

    Raises:
        NotFoundError: If the provider returned its short placeholder clip
    """
    url = build_jpod_url(settings, kanji, kana)
    logger.debug(f"JPod audio request: {kanji} ({kana})")
    audio = await _download_audio(client, settings, url)
    if audio.size_bytes < MIN_JPOD_AUDIO_BYTES:
        raise NotFoundError(
            f"No JapanesePod101 audio for '{kanji}' ({kana}); "
            f"the provider returned a {audio.size_bytes}-byte placeholder"
        )
    return audio


# ============================================================================
# Response Shaping
# ============================================================================

def select_best_pronunciation(
    items: List[ForvoPronunciation],
    sex: Optional[str] = None
) -> Optional[ForvoPronunciation]:
    """
    Pick the pronunciation to download.

    Items are expected in provider order (rate-desc), so the best one is the
    first. When a sex is requested and nobody of that sex recorded the word,
    the unfiltered list is used instead of failing.
    """
    if not items:
        return None
    if sex:
        matching = [item for item in items if item.sex == sex]
        if matching:
            items = matching
    return items[0]


def _shape_pronunciation(item: ForvoPronunciation, word: str) -> Dict[str, Any]:
    return {
        "id": item.id,
        "word": item.original or word,
        "username": item.username,
        "sex": item.sex,
        "country": item.country,
        "pathmp3": item.pathmp3,
        "pathogg": item.pathogg,
        "rate": item.rate,
        "num_votes": item.num_votes,
        "num_positive_votes": item.num_positive_votes,
    }


def _not_found_payload(message: str, **fields: Any) -> Dict[str, Any]:
    logger.info(message)
    return {**fields, "found": False, "message": message}


# ============================================================================
# Tool Handlers
# ============================================================================

async def handle_word_pronunciations(
    params: ForvoWordPronunciationsInput,
    app: AppContext
) -> Dict[str, Any]:
    """
    List pronunciations of a word.

    Country, sex, minimum rating, order and limit are all applied by Forvo.
    """
    language = params.language or app.settings.default_language
    request_params = {
        "word": params.word,
        "language": language,
        "country": params.country,
        "sex": params.sex,
        "rate": params.min_rate,
        "order": params.order,
        "limit": params.limit,
    }

    data = await _forvo_request(app.client, app.settings, "word-pronunciations", request_params)
    items = _parse_items(data, ForvoPronunciation, "word-pronunciations")

    payload: Dict[str, Any] = {
        "word": params.word,
        "language": language,
        "count": len(items),
        "items": [_shape_pronunciation(item, params.word) for item in items],
    }
    if not items:
        payload["message"] = f"No pronunciations found for '{params.word}' in language '{language}'"
        logger.info(payload["message"])
    return payload


async def handle_standard_pronunciation(
    params: ForvoStandardPronunciationInput,
    app: AppContext
) -> Dict[str, Any]:
    """Return Forvo's standard (top-rated) pronunciation of a word."""
    language = params.language or app.settings.default_language

    data = await _forvo_request(
        app.client, app.settings, "standard-pronunciation",
        {"word": params.word, "language": language}
    )
    items = _parse_items(data, ForvoPronunciation, "standard-pronunciation")

    if not items:
        return _not_found_payload(
            f"No standard pronunciation found for '{params.word}' in '{language}'",
            word=params.word,
            language=language
        )

    best = items[0]
    return {
        "word": params.word,
        "language": language,
        "found": True,
        "username": best.username,
        "sex": best.sex,
        "country": best.country,
        "pathmp3": best.pathmp3,
        "pathogg": best.pathogg,
        "rate": best.rate,
    }


async def handle_download_pronunciation(
    params: ForvoDownloadInput,
    app: AppContext
) -> Dict[str, Any]:
    """
    Download the best pronunciation of a word as base64 audio.

    Two sequential requests are made: the rated list, then the audio file.
    """
    language = params.language or app.settings.default_language

    data = await _forvo_request(
        app.client, app.settings, "word-pronunciations",
        {"word": params.word, "language": language, "order": "rate-desc", "limit": 5}
    )
    items = _parse_items(data, ForvoPronunciation, "word-pronunciations")

    best = select_best_pronunciation(items, params.sex)
    if best is None:
        return _not_found_payload(
            f"No pronunciations found for '{params.word}' in '{language}'",
            word=params.word,
            language=language
        )
    if not best.audio_url:
        return _not_found_payload(
            f"No audio URL available for '{params.word}'",
            word=params.word,
            language=language
        )

    audio = await _download_audio(app.client, app.settings, best.audio_url)
    logger.info(f"Downloaded {audio.size_bytes} bytes of {audio.format} audio for '{params.word}'")

    return {
        "word": params.word,
        "language": language,
        "found": True,
        **audio.to_payload(),
        "filename": suggest_filename("forvo", language, params.word, extension=audio.format),
        "username": best.username,
        "sex": best.sex,
        "country": best.country,
        "rate": best.rate,
    }


async def handle_search_words(params: ForvoSearchInput, app: AppContext) -> Dict[str, Any]:
    language = params.language or app.settings.default_language

    data = await _forvo_request(
        app.client, app.settings, "pronounced-words-search",
        {"search": params.search, "language": language, "limit": params.limit}
    )
    items = _parse_items(data, ForvoWord, "pronounced-words-search")

    return {
        "search": params.search,
        "language": language,
        "count": len(items),
        "items": [
            {
                "word": item.original or item.word or "",
                "language": item.language,
                "num_pronunciations": item.num_pronunciations,
            }
            for item in items
        ],
    }


async def handle_language_list(params: ForvoLanguageListInput, app: AppContext) -> Dict[str, Any]:
    data = await _forvo_request(
        app.client, app.settings, "language-list",
        {"order": params.order, "min-pronunciations": params.min_pronunciations}
    )
    items = _parse_items(data, ForvoLanguage, "language-list")

    return {
        "total": len(items),
        "items": [
            {"code": item.code, "name": item.en, "pronunciations": item.pronunciations}
            for item in items
        ],
    }


def _jpod_audio_payload(kanji: str, kana: str, audio: AudioResult) -> Dict[str, Any]:
    return {
        "kanji": kanji,
        "kana": kana,
        **audio.to_payload(),
        "filename": suggest_filename("jpod", kanji, kana, extension=audio.format),
    }


async def handle_jpod_download(params: JPodAudioInput, app: AppContext) -> Dict[str, Any]:
    """
    Download JapanesePod101 audio for one word.

    A placeholder clip raises NotFoundError, which the dispatcher reports as
    an error result (isError=true) since no audio can be returned.
    """
    audio = await _download_jpod_audio(app.client, app.settings, params.kanji, params.kana)
    logger.info(f"Downloaded {audio.size_bytes} bytes of JPod audio for '{params.kanji}'")
    return _jpod_audio_payload(params.kanji, params.kana, audio)


async def _download_batch_item(index: int, item: JPodAudioInput, app: AppContext) -> Dict[str, Any]:
    """Download one batch entry, capturing its failure instead of raising."""
    try:
        audio = await _download_jpod_audio(app.client, app.settings, item.kanji, item.kana)
    except Exception as e:
        message = _error_message(e)
        logger.warning(
            f"Batch item {index} failed: {message}",
            extra={"index": index, "kanji": item.kanji, "kana": item.kana}
        )
        return {"index": index, "kanji": item.kanji, "kana": item.kana, "success": False, "error": message}

    return {"index": index, "success": True, **_jpod_audio_payload(item.kanji, item.kana, audio)}


async def handle_jpod_batch_download(params: JPodBatchInput, app: AppContext) -> Dict[str, Any]:
    """
    Download JapanesePod101 audio for many words concurrently.

    Every item is downloaded independently: a failed item is reported with
    its error and never affects the others. Results follow input order.
    """
    results = await asyncio.gather(
        *(_download_batch_item(index, item, app) for index, item in enumerate(params.items))
    )
    succeeded = sum(1 for result in results if result["success"])

    logger.info(f"Batch download finished: {succeeded}/{len(results)} succeeded")
    return {
        "total": len(results),
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "results": list(results),
    }


# ============================================================================
# Tool Catalog and Dispatch
# ============================================================================

READ_ONLY_ANNOTATIONS = types.ToolAnnotations(
    readOnlyHint=True,
    destructiveHint=False,
    idempotentHint=True,
    openWorldHint=True
)


@dataclass(frozen=True)
class ToolSpec:
    """A named tool: its argument model and the handler that serves it."""
    name: str
    title: str
    description: str
    input_model: Type[ToolInput]
    handler: Callable[[Any, AppContext], Awaitable[Dict[str, Any]]]

    def to_tool(self) -> types.Tool:
        return types.Tool(
            name=self.name,
            title=self.title,
            description=self.description,
            inputSchema=self.input_model.model_json_schema(),
            annotations=READ_ONLY_ANNOTATIONS,
        )


TOOL_REGISTRY: Dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec(
            name="forvo_word_pronunciations",
            title="Forvo Word Pronunciations",
            description=(
                "Get all available pronunciations for a word from Forvo. "
                "Returns a list of pronunciations with metadata (speaker, country, sex, rating, audio URLs). "
                "Audio URLs are valid for ~2 hours."
            ),
            input_model=ForvoWordPronunciationsInput,
            handler=handle_word_pronunciations,
        ),
        ToolSpec(
            name="forvo_standard_pronunciation",
            title="Forvo Standard Pronunciation",
            description=(
                "Get the single best (top-rated) pronunciation for a word from Forvo. "
                "Returns the highest-rated pronunciation with audio URLs."
            ),
            input_model=ForvoStandardPronunciationInput,
            handler=handle_standard_pronunciation,
        ),
        ToolSpec(
            name="forvo_download_pronunciation",
            title="Download Forvo Pronunciation",
            description=(
                "Download the best pronunciation audio for a word as base64-encoded MP3. "
                "Returns base64 audio data that can be directly used with Anki's store_media_file tool."
            ),
            input_model=ForvoDownloadInput,
            handler=handle_download_pronunciation,
        ),
        ToolSpec(
            name="forvo_search_words",
            title="Search Forvo Words",
            description=(
                "Search for words that have been pronounced on Forvo. "
                "Useful for checking if a word exists before requesting its pronunciation."
            ),
            input_model=ForvoSearchInput,
            handler=handle_search_words,
        ),
        ToolSpec(
            name="forvo_language_list",
            title="Forvo Languages",
            description="Get a list of languages available on Forvo with pronunciation counts.",
            input_model=ForvoLanguageListInput,
            handler=handle_language_list,
        ),
        ToolSpec(
            name="jpod_download_audio",
            title="Download JapanesePod101 Audio",
            description=(
                "Download JapanesePod101 dictionary audio for a Japanese word as base64-encoded MP3. "
                "Needs the written form (kanji) and its reading (kana). No API key required. "
                "Returns base64 audio data that can be directly used with Anki's store_media_file tool."
            ),
            input_model=JPodAudioInput,
            handler=handle_jpod_download,
        ),
        ToolSpec(
            name="jpod_batch_download",
            title="Batch Download JapanesePod101 Audio",
            description=(
                f"Download JapanesePod101 audio for up to {MAX_BATCH_ITEMS} Japanese words in parallel. "
                "Each word is reported separately; a missing word does not fail the others."
            ),
            input_model=JPodBatchInput,
            handler=handle_jpod_batch_download,
        ),
    )
}

TOOLS: List[types.Tool] = [spec.to_tool() for spec in TOOL_REGISTRY.values()]


def _format_validation_error(e: ValidationError) -> str:
    details = "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'arguments'}: {err['msg']}"
        for err in e.errors()
    )
    return f"Invalid arguments: {details}"


def _error_message(e: Exception) -> str:
    """
    Turn an exception into the message reported to the host.

    Known failures keep their own message. Unexpected errors are logged with
    a traceback and reported with a sanitized message.
    """
    if isinstance(e, ValidationError):
        return _format_validation_error(e)
    if isinstance(e, PronunciationError):
        return str(e)
    if isinstance(e, httpx.RequestError):
        return f"Network error ({type(e).__name__}). Please check your internet connection."

    logger.error(
        f"Unexpected error: {type(e).__name__}",
        exc_info=True,
        extra={
            "error_type": type(e).__name__,
            "error_message": str(e)
        }
    )
    return (
        "An unexpected error occurred while processing your request. "
        "Please try again. If the problem persists, check the server logs for details."
    )


def _envelope(payload: Dict[str, Any], is_error: bool = False) -> types.CallToolResult:
    """Wrap a payload as a single JSON text block."""
    return types.CallToolResult(
        content=[
            types.TextContent(type="text", text=json.dumps(payload, ensure_ascii=False, indent=2))
        ],
        isError=is_error
    )


async def dispatch_tool(
    name: str,
    arguments: Optional[Dict[str, Any]],
    app: AppContext
) -> types.CallToolResult:
    """
    Run a tool by name and return its result envelope.

    Failures of any kind, including unknown tools and invalid arguments, come
    back as an envelope with isError=True and {"error", "tool"}; they never
    propagate to the transport.
    """
    try:
        spec = TOOL_REGISTRY.get(name)
        if spec is None:
            raise UnknownToolError(f"Unknown tool: {name}")

        params = spec.input_model.model_validate(arguments or {})
        logger.info(f"Calling tool {name}", extra={"tool": name})
        payload = await spec.handler(params, app)
        return _envelope(payload)

    except Exception as e:
        message = _error_message(e)
        logger.error(f"Tool {name} failed: {message}", extra={"tool": name})
        return _envelope({"error": message, "tool": name}, is_error=True)


# ============================================================================
# MCP Server
# ============================================================================

server = Server(
    SERVER_NAME,
    version=__version__,
    instructions=(
        "Pronunciation audio for flashcards. Use the forvo_* tools for rated native-speaker "
        "pronunciations in any language (Forvo API key required), and the jpod_* tools for "
        "Japanese dictionary audio by kanji and kana. Download tools return base64 audio ready "
        "for Anki's store_media_file."
    ),
    lifespan=app_lifespan
)


@server.list_tools()
async def handle_list_tools() -> List[types.Tool]:
    return TOOLS


# Input is validated by the pydantic models so errors share the tool envelope
@server.call_tool(validate_input=False)
async def handle_call_tool(name: str, arguments: Dict[str, Any]) -> types.CallToolResult:
    app = server.request_context.lifespan_context
    return await dispatch_tool(name, arguments, app)


async def _run_stdio() -> None:
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


# ============================================================================
# Server Entry Point
# ============================================================================

def _resolve_log_level(name: Optional[str]) -> Optional[int]:
    """Map a LOG_LEVEL name to a logging level, or None if it is not one."""
    level = getattr(logging, (name or "INFO").strip().upper(), None)
    return level if isinstance(level, int) else None


def main() -> None:
    raw_level = os.getenv("LOG_LEVEL")
    level = _resolve_log_level(raw_level)

    # Logs go to stderr; stdout carries the MCP protocol
    logging.basicConfig(
        level=level if level is not None else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr
    )
    if level is None:
        logger.warning(f"Unknown LOG_LEVEL '{raw_level}', using INFO")

    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(1)

    if settings.forvo_api_key:
        logger.info(f"Forvo API key configured ({settings.api_key_prefix})")
    else:
        logger.warning(
            "FORVO_API_KEY is not set; forvo_* tools will fail until it is configured. "
            "jpod_* tools do not need a key."
        )

    logger.info(
        f"{SERVER_NAME} {__version__} running on stdio",
        extra={"base_url": settings.forvo_base_url, "default_language": settings.default_language}
    )
    asyncio.run(_run_stdio())


if __name__ == "__main__":
    main()
