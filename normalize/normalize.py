from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from pydantic import ValidationError

from classify.classifier import Classifier
from classify.rules import NormalizationRule
from ingest.errors import NormalizationError
from ingest.parsers.json import parse_feed_text
from ingest.sources import AlertSource, NormalizationConfig, SourceType
from normalize.fields import (
    Coordinates,
    clean_description,
    clean_title,
    extract_coordinates,
    extract_field,
    normalize_area,
    normalize_date,
    optional_date,
    parse_date,
    utc_now_iso,
)
from normalize.values import AlertStatus, Severity, SourceLabel, Urgency


logger = logging.getLogger(__name__)


DEFAULT_TITLE = "Untitled Alert"
DEFAULT_DESCRIPTION = "No description available"
DEFAULT_AREA = "Area not specified"
CANADA_AREA = "Canada"
ERROR_CATEGORY = "Error"

_SOURCE_LABELS = {
    "emergency": SourceLabel.ALERT_READY,
    "alert-ready": SourceLabel.ALERT_READY,
    "weather": SourceLabel.ALERT_READY,
    "weather-geocmet": SourceLabel.ALERT_READY,
    "bc": SourceLabel.BC_EMERGENCY,
    "bc-emergency": SourceLabel.BC_EMERGENCY,
    "everbridge": SourceLabel.EVERBRIDGE,
}

# Candidate keys tried in order when a source has no field mapping.
_LEGACY_KEYS: dict[str, tuple[str, ...]] = {
    "id": ("id", "guid", "identifier", "link"),
    "title": ("title", "headline", "name", "subject", "event"),
    "description": (
        "description",
        "summary",
        "content",
        "body",
        "message",
        "text",
        "descrip_en",
    ),
    "severity": ("severity", "level", "priority"),
    "urgency": ("urgency",),
    "status": ("status",),
    "category": ("category", "event_type", "type", "categories"),
    "area": (
        "area",
        "areaDesc",
        "area_desc",
        "location",
        "region",
        "areaName",
        "province",
        "territory",
    ),
    "published": (
        "published",
        "pubDate",
        "pub_date",
        "sent",
        "date",
        "publication_datetime",
        "created_at",
        "timestamp",
    ),
    "updated": ("updated", "updated_at", "lastUpdated"),
    "expires": ("expires", "expiry", "expiration_datetime", "end"),
    "effective": ("effective", "onset", "effective_datetime", "start"),
    "url": ("url", "link", "href", "web"),
    "instructions": ("instructions", "instruction"),
    "author": ("author", "sender", "senderName"),
}


def source_label_for(source_type: str) -> SourceLabel:
    return _SOURCE_LABELS.get(source_type.lower(), SourceLabel.OTHER)


@dataclass(frozen=True)
class CanonicalAlert:
    id: str
    title: str
    description: str
    severity: str
    urgency: str
    category: str
    status: str
    area: str
    published: str
    source: str
    updated: str | None = None
    expires: str | None = None
    effective: str | None = None
    url: str | None = None
    instructions: str | None = None
    author: str | None = None
    coordinates: Coordinates | None = None
    geometry: dict | None = None
    confidence_score: float = 0.5
    raw: object = field(default=None, compare=False, repr=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "severity": self.severity,
            "urgency": self.urgency,
            "category": self.category,
            "status": self.status,
            "area": self.area,
            "published": self.published,
            "updated": self.updated,
            "expires": self.expires,
            "effective": self.effective,
            "url": self.url,
            "instructions": self.instructions,
            "author": self.author,
            "source": self.source,
            "coordinates": (
                {
                    "latitude": self.coordinates.latitude,
                    "longitude": self.coordinates.longitude,
                }
                if self.coordinates is not None
                else None
            ),
            "geometry": self.geometry,
            "confidence_score": self.confidence_score,
        }

    @property
    def is_error(self) -> bool:
        return self.category == ERROR_CATEGORY and self.id.startswith("error-")


def error_alert(raw: object = None) -> CanonicalAlert:
    return CanonicalAlert(
        id=f"error-{uuid.uuid4()}",
        title="Alert Processing Error",
        description="Failed to process alert data",
        severity=Severity.UNKNOWN,
        urgency=Urgency.UNKNOWN,
        category=ERROR_CATEGORY,
        status=AlertStatus.UNKNOWN,
        area="Unknown",
        published=utc_now_iso(),
        source=SourceLabel.OTHER,
        raw=raw,
    )


def extract_items(payload: object, *, config_mode: bool = False) -> list:
    if payload is None:
        return []
    if isinstance(payload, list):
        return list(payload)
    if isinstance(payload, str | bytes):
        return parse_feed_text(payload)
    if not isinstance(payload, dict):
        return []

    for key in ("items", "entries", "alerts", "features", "data"):
        value = payload.get(key)
        if isinstance(value, list):
            return value

    channel = payload.get("channel")
    if isinstance(channel, dict):
        items = channel.get("item")
        if isinstance(items, list):
            return items
        if isinstance(items, dict):
            return [items]

    if config_mode:
        return [payload]
    return []


def _scalar(value: object) -> object | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value if value.strip() else None
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, int | float):
        return value
    if isinstance(value, list):
        parts = [str(v) for v in value if isinstance(v, str | int | float) and str(v).strip()]
        return ", ".join(parts) if parts else None
    if isinstance(value, dict):
        for key in ("name", "term", "value", "href", "#text"):
            if isinstance(value.get(key), str) and value[key].strip():
                return value[key]
    return None


def _legacy_value(item: dict, canonical: str) -> object | None:
    properties = item.get("properties")
    layers = [item]
    if isinstance(properties, dict):
        # a GeoJSON feature keeps its own members ("type", "id") beside the payload
        if item.get("type") == "Feature":
            layers = [properties, item]
        else:
            layers.append(properties)
    for candidate in _LEGACY_KEYS[canonical]:
        for layer in layers:
            value = _scalar(layer.get(candidate))
            if value is not None:
                return value
    return None


_OFFICIAL_SOURCE_TYPES = frozenset(
    {SourceType.EMERGENCY, SourceType.WEATHER, SourceType.WEATHER_GEOCMET}
)


def confidence_score(
    source_type: str,
    *,
    has_location: bool,
    issued_at: datetime | None,
    now: datetime | None = None,
) -> float:
    """Heuristic trust score between 0.5 and 1.0."""
    score = 0.5
    if source_type in _OFFICIAL_SOURCE_TYPES:
        score += 0.3
    if has_location:
        score += 0.1
    now = now or datetime.now(tz=UTC)
    if issued_at is None or now - issued_at < timedelta(hours=24):
        score += 0.1
    return round(min(score, 1.0), 2)


def _text(value: object | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class NormalizedBatch:
    alerts: list[CanonicalAlert]
    failed: list[int] = field(default_factory=list)

    @property
    def succeeded(self) -> list[CanonicalAlert]:
        failed = set(self.failed)
        return [a for i, a in enumerate(self.alerts) if i not in failed]


class Normalizer:
    """Turns raw feed items into canonical alerts.

    With a normalization rule each canonical field is read from its mapped dotted
    path; fields the rule leaves unmapped, and every field when there is no rule,
    are looked up through a fixed list of candidate keys on the item or its
    GeoJSON ``properties``.
    """

    def __init__(self, classifier: Classifier, *, description_max_length: int = 1000) -> None:
        self.classifier = classifier
        self.description_max_length = description_max_length

    def _mapping(self, source: AlertSource, rule: NormalizationRule | None) -> NormalizationConfig | None:
        if rule is None or not rule.field_mappings:
            return None
        try:
            return NormalizationConfig.model_validate(rule.field_mappings)
        except ValidationError as e:
            logger.warning("source %s: ignoring invalid field mapping: %s", source.id, e)
            return None

    def normalize_item(
        self,
        source: AlertSource,
        item: object,
        rule: NormalizationRule | None = None,
        *,
        mapping: NormalizationConfig | None = None,
    ) -> CanonicalAlert:
        if not isinstance(item, dict):
            raise NormalizationError(f"expected an object, got {type(item).__name__}")
        if mapping is None:
            mapping = self._mapping(source, rule)
        try:
            return self._build(source, item, rule, mapping)
        except (TypeError, ValueError, KeyError, AttributeError, IndexError) as e:
            raise NormalizationError(f"{e.__class__.__name__}: {e}") from e

    def _build(
        self,
        source: AlertSource,
        item: dict,
        rule: NormalizationRule | None,
        mapping: NormalizationConfig | None,
    ) -> CanonicalAlert:
        def value(canonical: str) -> object | None:
            if mapping is not None:
                path = getattr(mapping, f"{canonical}_field")
                if path:
                    return _scalar(extract_field(item, path))
            return _legacy_value(item, canonical)

        max_length = self.description_max_length
        if mapping is not None and mapping.description_max_length is not None:
            max_length = mapping.description_max_length

        found_title = clean_title(value("title"))
        found_description = clean_description(value("description"), max_length)
        title = found_title or DEFAULT_TITLE
        description = found_description or DEFAULT_DESCRIPTION

        raw_published = value("published")
        published = normalize_date(raw_published)
        url = _text(value("url"))

        alert_id = _text(value("id"))
        if alert_id is None:
            seed = f"{source.id}:{title}:{url or ''}:{raw_published or ''}"
            alert_id = hashlib.sha256(seed.encode("utf-8")).hexdigest()

        classification = self.classifier.classify(
            source_type=source.source_type,
            title=found_title,
            description=found_description,
            raw_severity=value("severity"),
            raw_category=value("category"),
            raw_urgency=value("urgency"),
            raw_status=value("status"),
            severity_mapping=rule.severity_mapping if rule else None,
            category_mapping=rule.category_mapping if rule else None,
        )

        geometry = item.get("geometry")
        if not isinstance(geometry, dict):
            geometry = None
        raw_area = value("area")
        coordinates = extract_coordinates(item)
        raw_updated = value("updated")
        return CanonicalAlert(
            id=alert_id,
            title=title,
            description=description,
            severity=classification.severity,
            urgency=classification.urgency,
            category=classification.category,
            status=classification.status,
            area=normalize_area(
                raw_area, default=CANADA_AREA if mapping is not None else DEFAULT_AREA
            ),
            published=published,
            source=source_label_for(source.source_type),
            updated=optional_date(raw_updated),
            expires=optional_date(value("expires")),
            effective=optional_date(value("effective")),
            url=url,
            instructions=_text(value("instructions")),
            author=_text(value("author")),
            coordinates=coordinates,
            geometry=geometry,
            confidence_score=confidence_score(
                source.source_type,
                has_location=bool(
                    geometry or coordinates or clean_title(raw_area) or item.get("location")
                ),
                issued_at=parse_date(raw_published) or parse_date(raw_updated),
            ),
            raw=item,
        )

    def normalize_batch(
        self,
        source: AlertSource,
        items: list,
        rule: NormalizationRule | None = None,
    ) -> NormalizedBatch:
        mapping = self._mapping(source, rule)
        alerts: list[CanonicalAlert] = []
        failed: list[int] = []
        for index, item in enumerate(items):
            try:
                alerts.append(self.normalize_item(source, item, rule, mapping=mapping))
            except NormalizationError as e:
                logger.warning(
                    "source %s: item %d could not be normalized: %s", source.id, index, e
                )
                alerts.append(error_alert(item))
                failed.append(index)
        return NormalizedBatch(alerts=alerts, failed=failed)
