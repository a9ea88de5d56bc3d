from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ingest.sources import AlertSource, parse_configuration


class FeedPackEntry(BaseModel):
    """One source declared in a ``feeds/*.yaml`` pack."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    pack_id: str = ""
    source_id: str = Field(alias="id")
    name: str
    source_type: str = Field(default="rss", alias="type")
    url: str
    poll_seconds: int = Field(default=300, ge=1)
    enabled: bool = True
    configuration: dict = Field(default_factory=dict)

    def to_source(self) -> AlertSource:
        return AlertSource(
            id=self.source_id,
            name=self.name,
            source_type=self.source_type,
            api_endpoint=self.url,
            is_active=self.enabled,
            polling_interval=self.poll_seconds,
            configuration=parse_configuration(self.source_id, self.configuration),
        )


def _read_pack(path: Path) -> list[FeedPackEntry]:
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError(f"feed pack {path} must be a list of sources")
    try:
        return [
            FeedPackEntry.model_validate({**entry, "pack_id": path.stem})
            for entry in raw
        ]
    except (TypeError, ValidationError) as e:
        raise ValueError(f"invalid source entry in {path}: {e}") from e


def load_feed_pack_entries(feeds_dir: Path) -> dict[str, list[FeedPackEntry]]:
    if not feeds_dir.exists():
        return {}
    return {path.stem: _read_pack(path) for path in sorted(feeds_dir.glob("*.yaml"))}


def feed_pack_sources(feeds_dir: Path) -> list[AlertSource]:
    packs = load_feed_pack_entries(feeds_dir)
    return [entry.to_source() for pack in packs.values() for entry in pack]
