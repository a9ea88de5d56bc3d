from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from store.db import Database


logger = logging.getLogger(__name__)


class SourceType(StrEnum):
    EMERGENCY = "emergency"
    WEATHER = "weather"
    WEATHER_GEOCMET = "weather-geocmet"
    SECURITY_RSS = "security-rss"
    RSS = "rss"
    CUSTOM_API = "custom-api"
    GEOJSON = "geojson"
    IMMIGRATION_TRAVEL_ATOM = "immigration-travel-atom"
    GOVERNMENT_ANNOUNCEMENTS = "government-announcements"


class NormalizationConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title_field: str | None = Field(default=None, alias="titleField")
    description_field: str | None = Field(default=None, alias="descriptionField")
    severity_field: str | None = Field(default=None, alias="severityField")
    urgency_field: str | None = Field(default=None, alias="urgencyField")
    status_field: str | None = Field(default=None, alias="statusField")
    category_field: str | None = Field(default=None, alias="categoryField")
    area_field: str | None = Field(default=None, alias="areaField")
    published_field: str | None = Field(default=None, alias="publishedField")
    updated_field: str | None = Field(default=None, alias="updatedField")
    expires_field: str | None = Field(default=None, alias="expiresField")
    effective_field: str | None = Field(default=None, alias="effectiveField")
    url_field: str | None = Field(default=None, alias="urlField")
    instructions_field: str | None = Field(default=None, alias="instructionsField")
    author_field: str | None = Field(default=None, alias="authorField")
    id_field: str | None = Field(default=None, alias="idField")
    description_max_length: int | None = Field(
        default=None, ge=4, alias="descriptionMaxLength"
    )


class TransformationsConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    severity_mapping: dict[str, str] = Field(
        default_factory=dict, alias="severityMapping"
    )
    category_mapping: dict[str, str] = Field(
        default_factory=dict, alias="categoryMapping"
    )


class SourceConfiguration(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    headers: dict[str, str] = Field(default_factory=dict)
    api_key: str | None = Field(default=None, alias="apiKey")
    required_credentials: list[str] = Field(
        default_factory=list, alias="requiredCredentials"
    )
    normalization: NormalizationConfig | None = None
    transformations: TransformationsConfig | None = None


@dataclass(frozen=True)
class AlertSource:
    id: str
    name: str
    source_type: str
    api_endpoint: str
    is_active: bool = True
    polling_interval: int = 300
    last_poll_at: str | None = None
    health_status: str = "unknown"
    configuration: SourceConfiguration | None = None

    @property
    def config(self) -> SourceConfiguration:
        return self.configuration or SourceConfiguration()


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")


def parse_configuration(source_id: str, raw: object) -> SourceConfiguration | None:
    """Validate a catalog configuration blob; invalid blobs count as absent."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("source %s: configuration is not valid JSON", source_id)
            return None
    if not isinstance(raw, dict):
        logger.warning("source %s: configuration is not an object", source_id)
        return None
    try:
        return SourceConfiguration.model_validate(raw)
    except ValidationError as e:
        logger.warning("source %s: invalid configuration: %s", source_id, e)
        return None


def _row_to_source(row) -> AlertSource:
    source_id = str(row["id"])
    return AlertSource(
        id=source_id,
        name=str(row["name"]),
        source_type=str(row["source_type"]),
        api_endpoint=str(row["api_endpoint"]),
        is_active=bool(row["is_active"]),
        polling_interval=int(row["polling_interval"]),
        last_poll_at=str(row["last_poll_at"]) if row["last_poll_at"] else None,
        health_status=str(row["health_status"] or "unknown"),
        configuration=parse_configuration(source_id, row["configuration"]),
    )


def load_sources(db: Database, *, active_only: bool = True) -> list[AlertSource]:
    sql = "SELECT * FROM alert_sources"
    if active_only:
        sql += " WHERE is_active = 1"
    sql += " ORDER BY id ASC;"
    with db.lock:
        rows = db.conn.execute(sql).fetchall()
    return [_row_to_source(r) for r in rows]


def get_source(db: Database, source_id: str) -> AlertSource | None:
    with db.lock:
        row = db.conn.execute(
            "SELECT * FROM alert_sources WHERE id = ? LIMIT 1;", (source_id,)
        ).fetchone()
    if row is None:
        return None
    return _row_to_source(row)


def mark_polled(db: Database, source_id: str, at: str | None = None) -> None:
    at = at or _utc_now_iso()
    with db.lock:
        db.conn.execute(
            "UPDATE alert_sources SET last_poll_at = ?, updated_at = ? WHERE id = ?;",
            (at, at, source_id),
        )
        db.conn.commit()


def upsert_source(db: Database, source: AlertSource) -> None:
    now_iso = _utc_now_iso()
    configuration = (
        source.configuration.model_dump(exclude_none=True, exclude_defaults=True)
        if source.configuration is not None
        else {}
    )
    with db.lock:
        db.conn.execute(
            """
            INSERT INTO alert_sources(
              id, name, source_type, api_endpoint, is_active, polling_interval,
              last_poll_at, health_status, configuration, created_at, updated_at
            )
            VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              name = excluded.name,
              source_type = excluded.source_type,
              api_endpoint = excluded.api_endpoint,
              polling_interval = excluded.polling_interval,
              configuration = excluded.configuration,
              updated_at = excluded.updated_at;
            """,
            (
                source.id,
                source.name,
                source.source_type,
                source.api_endpoint,
                1 if source.is_active else 0,
                source.polling_interval,
                source.last_poll_at,
                source.health_status,
                json.dumps(configuration, ensure_ascii=False),
                now_iso,
                now_iso,
            ),
        )
        db.conn.commit()


def ensure_sources(db: Database, sources: list[AlertSource]) -> None:
    for source in sources:
        upsert_source(db, source)
