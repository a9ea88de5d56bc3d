from __future__ import annotations

from datetime import UTC, datetime
from urllib.parse import urlsplit

from ingest.sources import AlertSource


# Providers whose endpoints reject anonymous requests.
_KEYED_PROVIDERS: tuple[tuple[str, str], ...] = (
    ("openweathermap", "api_key"),
)


def _parse_iso(ts: str) -> datetime | None:
    try:
        if ts.endswith("Z"):
            dt = datetime.fromisoformat(ts.removesuffix("Z") + "+00:00")
        else:
            dt = datetime.fromisoformat(ts)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def is_due(source: AlertSource, now: datetime | None = None) -> bool:
    if source.last_poll_at is None:
        return True
    last = _parse_iso(source.last_poll_at)
    if last is None:
        return True
    now = now or datetime.now(tz=UTC)
    return (now - last).total_seconds() >= source.polling_interval


def _credential_present(source: AlertSource, key: str) -> bool:
    config = source.config
    if key in ("api_key", "apiKey"):
        return bool(config.api_key)
    value = config.headers.get(key)
    if value is None:
        value = (config.model_extra or {}).get(key)
    return bool(value)


def _required_credentials(source: AlertSource) -> list[str]:
    required = list(source.config.required_credentials)
    host = urlsplit(source.api_endpoint).netloc.lower()
    name = source.name.lower()
    for marker, credential in _KEYED_PROVIDERS:
        if (marker in name or marker in host) and credential not in required:
            required.append(credential)
    return required


def should_skip(source: AlertSource) -> tuple[bool, str | None]:
    for credential in _required_credentials(source):
        if not _credential_present(source, credential):
            if credential == "api_key":
                return True, "API key required but not configured"
            return True, f"credential {credential} required but not configured"
    return False, None
