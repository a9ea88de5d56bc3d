from __future__ import annotations

import json
import logging
import re
import sqlite3
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from ingest.errors import StorageError
from ingest.sources import AlertSource, SourceType
from normalize.fields import clean_text, truncate, utc_now_iso
from normalize.normalize import DEFAULT_AREA, CanonicalAlert
from store.db import Database


logger = logging.getLogger(__name__)


class StorageDomain(StrEnum):
    SECURITY = "security"
    WEATHER = "weather"
    IMMIGRATION_TRAVEL = "immigration_travel"


_CANADIAN_TERMS_RE = re.compile(
    r"\b(canada|canadian|ontario|quebec|québec|british columbia|alberta|manitoba|"
    r"saskatchewan|nova scotia|new brunswick|newfoundland|labrador|"
    r"prince edward island|yukon|nunavut|northwest territories|toronto|montreal|"
    r"montréal|vancouver|ottawa|calgary|edmonton|winnipeg|halifax|victoria)\b",
    re.IGNORECASE,
)

_ANNOUNCEMENT_TYPES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("citizenship", re.compile(r"\bcitizen(ship)?\b", re.IGNORECASE)),
    ("refugee", re.compile(r"\b(refugee|asylum)s?\b", re.IGNORECASE)),
    (
        "immigration",
        re.compile(
            r"\b(immigra\w*|permanent resident\w*|express entry|work permit|study permit)\b",
            re.IGNORECASE,
        ),
    ),
    ("travel", re.compile(r"\b(travel\w*|visa|passport|border|advisory)\b", re.IGNORECASE)),
)

IMMIGRATION_CONTENT_MAX_LENGTH = 2000


def _raw_json(alert: CanonicalAlert) -> str:
    raw = alert.raw if alert.raw is not None else alert.to_dict()
    return json.dumps(raw, ensure_ascii=False, default=str)


def classify_location(alert: CanonicalAlert) -> str:
    blob = f"{alert.title} {alert.description} {alert.area}"
    if _CANADIAN_TERMS_RE.search(blob):
        return "Canada"
    if alert.area and alert.area != DEFAULT_AREA:
        return alert.area
    return "Global"


def infer_announcement_type(alert: CanonicalAlert) -> str:
    blob = f"{alert.title} {alert.description}"
    for announcement_type, pattern in _ANNOUNCEMENT_TYPES:
        if pattern.search(blob):
            return announcement_type
    return "general"


def _long_form_content(alert: CanonicalAlert) -> str:
    raw = alert.raw if isinstance(alert.raw, dict) else {}
    for key in ("content", "description", "summary"):
        text = clean_text(raw.get(key))
        if text:
            return truncate(text, IMMIGRATION_CONTENT_MAX_LENGTH)
    return alert.description


def _security_row(source: AlertSource, alert: CanonicalAlert, now_iso: str) -> tuple:
    return (
        alert.id,
        alert.title,
        alert.description,
        alert.url,
        alert.published,
        source.name,
        alert.category,
        classify_location(alert),
        _raw_json(alert),
        now_iso,
        now_iso,
    )


def _geometry_coordinates(alert: CanonicalAlert) -> str | None:
    if alert.geometry is not None and alert.geometry.get("coordinates") is not None:
        return json.dumps(alert.geometry["coordinates"])
    if alert.coordinates is not None:
        return json.dumps([alert.coordinates.longitude, alert.coordinates.latitude])
    return None


def _weather_row(source: AlertSource, alert: CanonicalAlert, now_iso: str) -> tuple:
    event_type = alert.category if alert.category not in ("", "General") else "Weather"
    return (
        alert.id,
        alert.description,
        alert.severity,
        event_type,
        alert.effective or alert.published,
        alert.expires,
        _geometry_coordinates(alert),
        _raw_json(alert),
        now_iso,
        now_iso,
    )


def _immigration_row(source: AlertSource, alert: CanonicalAlert, now_iso: str) -> tuple:
    return (
        alert.id,
        alert.title,
        alert.description,
        _long_form_content(alert),
        alert.url,
        alert.published,
        source.name,
        alert.category,
        infer_announcement_type(alert),
        "Canada",
        _raw_json(alert),
        now_iso,
        now_iso,
    )


@dataclass(frozen=True)
class StorageTarget:
    domain: StorageDomain
    table: str
    columns: tuple[str, ...]
    to_row: Callable[[AlertSource, CanonicalAlert, str], tuple]

    @property
    def upsert_sql(self) -> str:
        placeholders = ", ".join("?" for _ in self.columns)
        # ingested_at keeps the first write
        updates = ",\n  ".join(
            f"{c} = excluded.{c}" for c in self.columns if c not in ("id", "ingested_at")
        )
        return (
            f"INSERT INTO {self.table}({', '.join(self.columns)})\n"
            f"VALUES({placeholders})\n"
            f"ON CONFLICT(id) DO UPDATE SET\n  {updates};"
        )


SECURITY = StorageTarget(
    domain=StorageDomain.SECURITY,
    table="security_alerts_ingest",
    columns=(
        "id",
        "title",
        "summary",
        "link",
        "pub_date",
        "source",
        "category",
        "location",
        "raw_data",
        "ingested_at",
        "updated_at",
    ),
    to_row=_security_row,
)

WEATHER = StorageTarget(
    domain=StorageDomain.WEATHER,
    table="weather_alerts_ingest",
    columns=(
        "id",
        "description",
        "severity",
        "event_type",
        "onset",
        "expires",
        "geometry_coordinates",
        "raw_data",
        "ingested_at",
        "updated_at",
    ),
    to_row=_weather_row,
)

IMMIGRATION_TRAVEL = StorageTarget(
    domain=StorageDomain.IMMIGRATION_TRAVEL,
    table="immigration_travel_announcements",
    columns=(
        "id",
        "title",
        "summary",
        "content",
        "link",
        "pub_date",
        "source",
        "category",
        "announcement_type",
        "location",
        "raw_data",
        "ingested_at",
        "updated_at",
    ),
    to_row=_immigration_row,
)

_ROUTES: dict[str, StorageTarget] = {
    SourceType.SECURITY_RSS: SECURITY,
    SourceType.RSS: SECURITY,
    SourceType.EMERGENCY: SECURITY,
    SourceType.CUSTOM_API: SECURITY,
    SourceType.WEATHER: WEATHER,
    SourceType.WEATHER_GEOCMET: WEATHER,
    SourceType.GEOJSON: WEATHER,
    SourceType.IMMIGRATION_TRAVEL_ATOM: IMMIGRATION_TRAVEL,
    SourceType.GOVERNMENT_ANNOUNCEMENTS: IMMIGRATION_TRAVEL,
}


def route_for(source_type: str) -> StorageTarget:
    target = _ROUTES.get(source_type)
    if target is None:
        logger.warning(
            "unrecognized source type %r; storing as security alerts", source_type
        )
        return SECURITY
    return target


def store(db: Database, source: AlertSource, alerts: list[CanonicalAlert]) -> int:
    """Upsert alerts into the table for the source's domain; returns rows written."""
    target = route_for(source.source_type)
    now_iso = utc_now_iso()
    stored = 0
    with db.lock:
        for alert in alerts:
            try:
                db.conn.execute(target.upsert_sql, target.to_row(source, alert, now_iso))
            except sqlite3.Error as e:
                err = StorageError(f"{target.table} upsert of {alert.id} failed: {e}")
                logger.error("source %s: %s", source.id, err)
                continue
            stored += 1
        db.conn.commit()
    return stored


def enqueue(db: Database, source: AlertSource, alerts: list[CanonicalAlert]) -> int:
    now_iso = utc_now_iso()
    queued = 0
    with db.lock:
        for alert in alerts:
            try:
                db.conn.execute(
                    """
                    INSERT INTO alert_ingestion_queue(
                      id, source_id, raw_payload, processing_status, attempts, created_at
                    )
                    VALUES(?, ?, ?, 'pending', 0, ?);
                    """,
                    (
                        str(uuid.uuid4()),
                        source.id,
                        json.dumps(alert.to_dict(), ensure_ascii=False, default=str),
                        now_iso,
                    ),
                )
            except sqlite3.Error as e:
                err = StorageError(f"queue insert of {alert.id} failed: {e}")
                logger.error("source %s: %s", source.id, err)
                continue
            queued += 1
        db.conn.commit()
    return queued
