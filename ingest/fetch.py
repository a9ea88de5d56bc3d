from __future__ import annotations

import json
import time
from dataclasses import dataclass

import httpx

from ingest.errors import FetchError, ParseError
from ingest.parsers.rss import parse_feed
from ingest.sources import AlertSource, SourceType


_JSON_ACCEPT = "application/json, application/geo+json, application/xml, text/xml"
_RSS_ACCEPT = "application/rss+xml, application/xml, text/xml"
_ATOM_ACCEPT = "application/atom+xml, application/xml, text/xml, application/rss+xml"
_DEFAULT_ACCEPT = "application/json, application/xml"

_ACCEPT_PROFILES: dict[str, str] = {
    SourceType.WEATHER: _JSON_ACCEPT,
    SourceType.WEATHER_GEOCMET: _JSON_ACCEPT,
    SourceType.GEOJSON: _JSON_ACCEPT,
    SourceType.SECURITY_RSS: _RSS_ACCEPT,
    SourceType.RSS: _RSS_ACCEPT,
    SourceType.GOVERNMENT_ANNOUNCEMENTS: _RSS_ACCEPT,
    SourceType.IMMIGRATION_TRAVEL_ATOM: _ATOM_ACCEPT,
}

# Read timeouts in seconds; GeoMet collections can be slow to page.
_READ_TIMEOUTS: dict[str, float] = {
    SourceType.WEATHER_GEOCMET: 60.0,
    SourceType.WEATHER: 30.0,
    SourceType.GEOJSON: 30.0,
    SourceType.SECURITY_RSS: 30.0,
    SourceType.IMMIGRATION_TRAVEL_ATOM: 30.0,
    SourceType.GOVERNMENT_ANNOUNCEMENTS: 30.0,
}
_DEFAULT_READ_TIMEOUT = 10.0


@dataclass(frozen=True)
class FetchResult:
    payload: object
    status_code: int
    content_type: str
    elapsed_ms: int


def accept_header_for(source_type: str) -> str:
    return _ACCEPT_PROFILES.get(source_type, _DEFAULT_ACCEPT)


def timeout_for(source_type: str) -> httpx.Timeout:
    read = _READ_TIMEOUTS.get(source_type, _DEFAULT_READ_TIMEOUT)
    return httpx.Timeout(connect=5.0, read=read, write=5.0, pool=5.0)


def build_headers(source: AlertSource, *, user_agent: str) -> dict[str, str]:
    config = source.config
    headers = {
        "User-Agent": user_agent,
        "Accept": accept_header_for(source.source_type),
    }
    if config.headers:
        headers.update(config.headers)
    if config.api_key:
        headers["Authorization"] = f"Bearer {config.api_key}"
    return headers


def _is_xml(content_type: str) -> bool:
    return any(marker in content_type for marker in ("xml", "rss", "atom"))


async def fetch_source(
    client: httpx.AsyncClient, source: AlertSource, *, user_agent: str
) -> FetchResult:
    url = source.api_endpoint
    started = time.perf_counter()
    try:
        response = await client.get(
            url,
            headers=build_headers(source, user_agent=user_agent),
            timeout=timeout_for(source.source_type),
        )
    except httpx.TimeoutException as e:
        raise FetchError(f"timeout fetching {url}", reason="timeout") from e
    except httpx.RequestError as e:
        raise FetchError(
            f"request to {url} failed: {e.__class__.__name__}",
            reason=e.__class__.__name__,
        ) from e
    elapsed_ms = int((time.perf_counter() - started) * 1000)

    status = response.status_code
    if not 200 <= status < 300:
        raise FetchError(
            f"HTTP {status}: {response.reason_phrase}",
            status_code=status,
            reason=response.reason_phrase,
        )

    content_type = response.headers.get("content-type", "").lower()
    payload: object
    if "json" in content_type:
        try:
            payload = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ParseError(f"unreadable JSON from {url}: {e}", status_code=status) from e
    elif _is_xml(content_type):
        payload = {"items": parse_feed(response.content)}
    else:
        payload = response.text

    return FetchResult(
        payload=payload,
        status_code=status,
        content_type=content_type,
        elapsed_ms=elapsed_ms,
    )
