from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import yaml

from ingest.sources import AlertSource
from store.db import Database


logger = logging.getLogger(__name__)


RULE_TYPES = ("severity", "category")


@dataclass(frozen=True)
class ClassificationRule:
    id: str
    rule_type: str
    condition_pattern: str
    classification_value: str
    priority: int = 0
    confidence_score: float = 1.0
    source_types: tuple[str, ...] = ()
    is_active: bool = True

    def applies_to(self, source_type: str) -> bool:
        return not self.source_types or source_type in self.source_types


@dataclass(frozen=True)
class NormalizationRule:
    source_type: str
    field_mappings: dict[str, str] = field(default_factory=dict)
    severity_mapping: dict[str, str] = field(default_factory=dict)
    category_mapping: dict[str, str] = field(default_factory=dict)
    priority: int = 0
    is_active: bool = True


class RuleProvider(Protocol):
    def classification_rules(self) -> list[ClassificationRule]: ...

    def normalization_rule(self, source: AlertSource) -> NormalizationRule | None: ...


def _rule_from_mapping(raw: dict) -> ClassificationRule:
    rule_type = str(raw["rule_type"])
    if rule_type not in RULE_TYPES:
        raise ValueError(f"unknown rule_type {rule_type!r} for rule {raw.get('id')}")
    return ClassificationRule(
        id=str(raw["id"]),
        rule_type=rule_type,
        condition_pattern=str(raw["condition_pattern"]),
        classification_value=str(raw["classification_value"]),
        priority=int(raw.get("priority") or 0),
        confidence_score=float(raw.get("confidence_score", 1.0)),
        source_types=tuple(str(s) for s in (raw.get("source_types") or [])),
        is_active=bool(raw.get("is_active", True)),
    )


def load_rules_yaml(path: Path) -> list[ClassificationRule]:
    if not path.exists():
        return []
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError(f"invalid classification rules file: {path}")
    rules: list[ClassificationRule] = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValueError(f"invalid classification rule in: {path}")
        rules.append(_rule_from_mapping(entry))
    return rules


def _normalization_from_source(source: AlertSource) -> NormalizationRule | None:
    config = source.config
    if config.normalization is None and config.transformations is None:
        return None
    field_mappings: dict[str, str] = {}
    if config.normalization is not None:
        field_mappings = {
            k: v
            for k, v in config.normalization.model_dump(exclude_none=True).items()
            if isinstance(v, str)
        }
        if config.normalization.description_max_length is not None:
            field_mappings["description_max_length"] = str(
                config.normalization.description_max_length
            )
    transformations = config.transformations
    return NormalizationRule(
        source_type=source.source_type,
        field_mappings=field_mappings,
        severity_mapping=dict(transformations.severity_mapping) if transformations else {},
        category_mapping=dict(transformations.category_mapping) if transformations else {},
    )


class StaticRuleProvider:
    """Rules from a YAML file or a caller-supplied list; mappings from the source."""

    def __init__(self, rules: list[ClassificationRule] | None = None) -> None:
        self._rules = [r for r in (rules or []) if r.is_active]

    @classmethod
    def from_yaml(cls, path: Path | None) -> StaticRuleProvider:
        if path is None:
            return cls([])
        return cls(load_rules_yaml(path))

    def classification_rules(self) -> list[ClassificationRule]:
        return list(self._rules)

    def normalization_rule(self, source: AlertSource) -> NormalizationRule | None:
        return _normalization_from_source(source)


def _json_dict(value: object) -> dict[str, str]:
    if not value:
        return {}
    try:
        decoded = json.loads(str(value))
    except json.JSONDecodeError:
        return {}
    if not isinstance(decoded, dict):
        return {}
    return {str(k): str(v) for k, v in decoded.items() if v is not None}


class StoreRuleProvider:
    """Active rules read from SQLite once and cached for the rest of the batch."""

    def __init__(self, db: Database) -> None:
        self._db = db
        self._rules: list[ClassificationRule] | None = None
        self._normalization: dict[str, NormalizationRule] | None = None

    def _load(self) -> None:
        with self._db.lock:
            rule_rows = self._db.conn.execute(
                """
                SELECT id, rule_type, condition_pattern, classification_value,
                       confidence_score, priority, source_types, is_active
                FROM classification_rules
                WHERE is_active = 1
                ORDER BY priority DESC, id ASC;
                """
            ).fetchall()
            norm_rows = self._db.conn.execute(
                """
                SELECT source_type, field_mappings, severity_mapping, category_mapping,
                       priority, is_active
                FROM normalization_rules
                WHERE is_active = 1
                ORDER BY priority DESC, id ASC;
                """
            ).fetchall()

        rules: list[ClassificationRule] = []
        for row in rule_rows:
            try:
                source_types = json.loads(row["source_types"] or "[]")
            except json.JSONDecodeError:
                logger.warning("rule %s: source_types is not valid JSON", row["id"])
                source_types = []
            rules.append(
                ClassificationRule(
                    id=str(row["id"]),
                    rule_type=str(row["rule_type"]),
                    condition_pattern=str(row["condition_pattern"]),
                    classification_value=str(row["classification_value"]),
                    priority=int(row["priority"]),
                    confidence_score=float(row["confidence_score"]),
                    source_types=tuple(str(s) for s in source_types),
                    is_active=True,
                )
            )

        normalization: dict[str, NormalizationRule] = {}
        for row in norm_rows:
            source_type = str(row["source_type"])
            if source_type in normalization:
                continue
            normalization[source_type] = NormalizationRule(
                source_type=source_type,
                field_mappings=_json_dict(row["field_mappings"]),
                severity_mapping=_json_dict(row["severity_mapping"]),
                category_mapping=_json_dict(row["category_mapping"]),
                priority=int(row["priority"]),
            )

        self._rules = rules
        self._normalization = normalization
        logger.info(
            "loaded %d classification rules and %d normalization rules",
            len(rules),
            len(normalization),
        )

    def classification_rules(self) -> list[ClassificationRule]:
        if self._rules is None:
            self._load()
        return list(self._rules or [])

    def normalization_rule(self, source: AlertSource) -> NormalizationRule | None:
        if self._normalization is None:
            self._load()
        stored = (self._normalization or {}).get(source.source_type)
        if stored is not None:
            return stored
        return _normalization_from_source(source)


def save_classification_rules(db: Database, rules: list[ClassificationRule]) -> None:
    with db.lock:
        for rule in rules:
            db.conn.execute(
                """
                INSERT INTO classification_rules(
                  id, rule_type, condition_pattern, classification_value,
                  confidence_score, priority, source_types, is_active
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  rule_type = excluded.rule_type,
                  condition_pattern = excluded.condition_pattern,
                  classification_value = excluded.classification_value,
                  confidence_score = excluded.confidence_score,
                  priority = excluded.priority,
                  source_types = excluded.source_types,
                  is_active = excluded.is_active;
                """,
                (
                    rule.id,
                    rule.rule_type,
                    rule.condition_pattern,
                    rule.classification_value,
                    rule.confidence_score,
                    rule.priority,
                    json.dumps(list(rule.source_types)),
                    1 if rule.is_active else 0,
                ),
            )
        db.conn.commit()
