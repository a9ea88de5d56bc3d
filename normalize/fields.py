from __future__ import annotations

import html
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime


_TAG_RE = re.compile(r"<[^>]+>")
_CDATA_RE = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.DOTALL)
_WS_RE = re.compile(r"\s+")

_TITLE_PREFIX_RE = re.compile(r"^(Alert|Warning|Advisory|Notice):\s*", re.IGNORECASE)
_TITLE_BRACKET_RE = re.compile(r"^\[.*?\]\s*")
_TITLE_SUFFIX_RE = re.compile(
    r"\s*-\s*(Alert Ready|Emergency Alert)$", re.IGNORECASE
)


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


def extract_field(obj: object, path: str | None) -> object | None:
    """Follow a dotted path through dicts and lists; None when any hop is missing."""
    if not path:
        return None
    current = obj
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return None
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
        if current is None:
            return None
    return current


def clean_text(value: object) -> str:
    if value is None:
        return ""
    text = str(value)
    text = _CDATA_RE.sub(r"\1", text)
    text = _TAG_RE.sub(" ", text)
    text = html.unescape(text)
    # escaped markup only becomes visible after unescaping
    text = _TAG_RE.sub(" ", text)
    return _WS_RE.sub(" ", text).strip()


def clean_title(value: object) -> str:
    text = clean_text(value)
    text = _TITLE_BRACKET_RE.sub("", text)
    text = _TITLE_PREFIX_RE.sub("", text)
    text = _TITLE_SUFFIX_RE.sub("", text)
    return text.strip()


_PROVINCE_ABBREVIATIONS = {
    "ab": "Alberta",
    "bc": "British Columbia",
    "mb": "Manitoba",
    "nb": "New Brunswick",
    "nl": "Newfoundland and Labrador",
    "nt": "Northwest Territories",
    "ns": "Nova Scotia",
    "nu": "Nunavut",
    "on": "Ontario",
    "pe": "Prince Edward Island",
    "qc": "Quebec",
    "québec": "Quebec",
    "sk": "Saskatchewan",
    "yt": "Yukon",
}
_CANADIAN_AREAS = {
    name.lower(): name for name in [*_PROVINCE_ABBREVIATIONS.values(), "Canada"]
} | _PROVINCE_ABBREVIATIONS


def normalize_area(value: object, *, default: str) -> str:
    """Province and territory codes spelled out; anything else passes through trimmed."""
    text = clean_title(value)
    if not text:
        return default
    return _CANADIAN_AREAS.get(text.lower(), text)


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3].rstrip() + "..."


def clean_description(value: object, max_length: int = 1000) -> str:
    return truncate(clean_text(value), max_length)


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(tz=UTC)


def _from_epoch(value: float) -> datetime | None:
    # values past year 33658 in seconds are milliseconds
    if abs(value) >= 1e12:
        value = value / 1000.0
    try:
        return datetime.fromtimestamp(value, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def parse_date(value: object) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _to_utc(value)
    if isinstance(value, int | float):
        return _from_epoch(float(value))

    text = str(value).strip()
    if not text:
        return None
    if re.fullmatch(r"-?\d+(\.\d+)?", text):
        return _from_epoch(float(text))

    try:
        return _to_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass
    try:
        return _to_utc(parsedate_to_datetime(text))
    except (TypeError, ValueError, IndexError):
        return None


def format_iso(dt: datetime) -> str:
    return dt.astimezone(tz=UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def utc_now_iso() -> str:
    return format_iso(datetime.now(tz=UTC))


def normalize_date(value: object) -> str:
    """Any parseable date as an ISO instant; the current time otherwise."""
    dt = parse_date(value)
    if dt is None:
        return utc_now_iso()
    return format_iso(dt)


def optional_date(value: object) -> str | None:
    dt = parse_date(value)
    return format_iso(dt) if dt is not None else None


def _as_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _first_present(mapping: dict, *keys: str) -> object | None:
    # 0.0 is a real coordinate, so only a missing or null key falls through
    for key in keys:
        if mapping.get(key) is not None:
            return mapping[key]
    return None


def _valid(lat: float | None, lon: float | None) -> Coordinates | None:
    if lat is None or lon is None:
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None
    return Coordinates(latitude=lat, longitude=lon)


def _collect_positions(coords: object, out: list[tuple[float, float]]) -> None:
    if not isinstance(coords, list | tuple) or not coords:
        return
    if len(coords) >= 2 and all(
        isinstance(c, int | float) and not isinstance(c, bool) for c in coords[:2]
    ):
        out.append((float(coords[0]), float(coords[1])))
        return
    for part in coords:
        _collect_positions(part, out)


def _bbox_centroid(coords: object) -> Coordinates | None:
    """Point positions as-is; nested rings reduce to their bounding-box centre."""
    points: list[tuple[float, float]] = []
    _collect_positions(coords, points)
    if not points:
        return None
    min_lon = min(p[0] for p in points)
    min_lat = min(p[1] for p in points)
    max_lon = max(p[0] for p in points)
    max_lat = max(p[1] for p in points)
    return _valid((min_lat + max_lat) / 2.0, (min_lon + max_lon) / 2.0)


def extract_coordinates(item: object) -> Coordinates | None:
    if not isinstance(item, dict):
        return None

    geometry = item.get("geometry")
    if isinstance(geometry, dict) and geometry.get("coordinates") is not None:
        return _bbox_centroid(geometry["coordinates"])

    coords = item.get("coordinates")
    if isinstance(coords, list) and coords:
        return _bbox_centroid(coords)

    location = item.get("location")
    if isinstance(location, dict):
        if isinstance(location.get("coordinates"), list):
            return _bbox_centroid(location["coordinates"])
        nested = _valid(
            _as_float(_first_present(location, "latitude", "lat")),
            _as_float(_first_present(location, "longitude", "lng", "lon")),
        )
        if nested is not None:
            return nested

    if "latitude" in item or "longitude" in item:
        return _valid(_as_float(item.get("latitude")), _as_float(item.get("longitude")))
    if "lat" in item:
        return _valid(
            _as_float(item.get("lat")),
            _as_float(_first_present(item, "lng", "lon")),
        )
    return None
