from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace

from classify.rules import ClassificationRule
from ingest.errors import ClassificationRuleError
from ingest.sources import SourceType
from normalize.values import AlertStatus, Severity, Urgency, canonical_severity


logger = logging.getLogger(__name__)


_SEVERITY_KEYWORDS: tuple[tuple[Severity, re.Pattern[str]], ...] = (
    (
        Severity.EXTREME,
        re.compile(
            r"\b(extreme|critical|emergency|catastrophic|tornado|hurricane|tsunami|terrorist)\b"
        ),
    ),
    (
        Severity.SEVERE,
        re.compile(
            r"\b(severe|major|high|warning|alert|evacuation|shelter|lockdown)\b"
        ),
    ),
    (Severity.MODERATE, re.compile(r"\b(moderate|medium|watch|advisory|caution|prepare)\b")),
    (Severity.MINOR, re.compile(r"\b(minor|low|notice|update)\b")),
    (Severity.INFO, re.compile(r"\b(info|information|informational|announcement|bulletin)\b")),
)

_CATEGORY_KEYWORDS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "Cybersecurity",
        re.compile(
            r"\b(cyber\w*|attack|breach|malware|ransomware|phishing|vulnerabilit\w*|exploit\w*|cve)\b"
        ),
    ),
    (
        "Emergency",
        re.compile(r"\b(emergency|evacuation|flood\w*|wildfire|earthquake|amber alert)\b"),
    ),
    ("Health", re.compile(r"\b(health|outbreak|disease|pandemic|virus|vaccin\w*)\b")),
    (
        "Weather",
        re.compile(
            r"\b(weather|storm|snow\w*|rain\w*|wind|heat|tornado|hurricane|fog|freezing|thunderstorm)\b"
        ),
    ),
    ("Travel", re.compile(r"\b(travel|airport|flight|border|passport|visa)\b")),
    (
        "Government",
        re.compile(r"\b(government|policy|minister|ministry|parliament|regulation)\b"),
    ),
)

_URGENCY_VALUES: tuple[tuple[Urgency, tuple[str, ...]], ...] = (
    (Urgency.IMMEDIATE, ("immediate", "now", "urgent")),
    (Urgency.EXPECTED, ("expected", "soon", "likely")),
    (Urgency.FUTURE, ("future", "later", "eventual")),
    (Urgency.PAST, ("past", "expired", "historical")),
)

_STATUS_VALUES: tuple[tuple[AlertStatus, tuple[str, ...]], ...] = (
    (AlertStatus.ACTUAL, ("actual", "real", "live")),
    (AlertStatus.EXERCISE, ("exercise", "drill", "training")),
    (AlertStatus.SYSTEM, ("system", "technical", "maintenance")),
    (AlertStatus.TEST, ("test", "testing")),
    (AlertStatus.DRAFT, ("draft", "preliminary")),
)

_DEFAULT_CATEGORY_BY_SOURCE_TYPE = {
    SourceType.SECURITY_RSS: "Cybersecurity",
}


def default_category(source_type: str) -> str:
    return _DEFAULT_CATEGORY_BY_SOURCE_TYPE.get(source_type, "General")


@dataclass(frozen=True)
class Classification:
    severity: str
    category: str
    urgency: str
    status: str


@dataclass(frozen=True)
class _CompiledRule:
    rule: ClassificationRule
    pattern: re.Pattern[str]


def _keyword_match(
    families: tuple[tuple[str, re.Pattern[str]], ...], text: str
) -> str | None:
    for value, pattern in families:
        if pattern.search(text):
            return str(value)
    return None


def _lookup_mapping(mapping: dict[str, str] | None, raw_value: str | None) -> str | None:
    if not mapping or not raw_value:
        return None
    return mapping.get(raw_value) or mapping.get(raw_value.lower())


def _value_family(
    families: tuple[tuple[str, tuple[str, ...]], ...], raw_value: object
) -> str:
    if raw_value is None:
        return "Unknown"
    text = str(raw_value).strip().lower()
    if not text:
        return "Unknown"
    for canonical, values in families:
        if text in values:
            return str(canonical)
    for canonical, values in families:
        if any(re.search(rf"\b{v}\b", text) for v in values):
            return str(canonical)
    return "Unknown"


def map_urgency(raw_value: object) -> str:
    return _value_family(_URGENCY_VALUES, raw_value)


def map_status(raw_value: object) -> str:
    return _value_family(_STATUS_VALUES, raw_value)


class Classifier:
    """Resolves severity and category by rules, then keywords, then value mappings.

    Rules are compiled once; a rule whose pattern does not compile, or a severity
    rule whose value is outside the severity set, is logged and left out so the
    remaining tiers still apply. Mapped severities outside the set are ignored.
    """

    def __init__(self, rules: list[ClassificationRule] | None = None) -> None:
        self._rules: dict[str, list[_CompiledRule]] = {"severity": [], "category": []}
        for rule in rules or []:
            if not rule.is_active or rule.rule_type not in self._rules:
                continue
            try:
                pattern = re.compile(rule.condition_pattern, re.IGNORECASE)
            except re.error as e:
                err = ClassificationRuleError(rule.id, rule.condition_pattern, str(e))
                logger.warning("skipping classification rule: %s", err)
                continue
            if rule.rule_type == "severity":
                severity = canonical_severity(rule.classification_value)
                if severity is None:
                    logger.warning(
                        "skipping severity rule %s: %r is not a known severity",
                        rule.id,
                        rule.classification_value,
                    )
                    continue
                rule = replace(rule, classification_value=severity.value)
            self._rules[rule.rule_type].append(_CompiledRule(rule=rule, pattern=pattern))
        for compiled in self._rules.values():
            compiled.sort(key=lambda c: c.rule.priority, reverse=True)

    def _match_rules(self, rule_type: str, source_type: str, content: str) -> str | None:
        for compiled in self._rules[rule_type]:
            if not compiled.rule.applies_to(source_type):
                continue
            if compiled.pattern.search(content):
                logger.debug(
                    "rule %s matched %s=%s (confidence %.2f)",
                    compiled.rule.id,
                    rule_type,
                    compiled.rule.classification_value,
                    compiled.rule.confidence_score,
                )
                return compiled.rule.classification_value
        return None

    def classify_severity(
        self,
        *,
        source_type: str,
        content: str,
        raw_value: object = None,
        mapping: dict[str, str] | None = None,
    ) -> str:
        content = content.lower()
        matched = self._match_rules("severity", source_type, content)
        if matched is not None:
            return matched

        raw = str(raw_value).strip() if raw_value is not None else ""
        if raw:
            matched = _keyword_match(_SEVERITY_KEYWORDS, raw.lower())
            if matched is not None:
                return matched
        matched = _keyword_match(_SEVERITY_KEYWORDS, content)
        if matched is not None:
            return matched

        mapped = canonical_severity(_lookup_mapping(mapping, raw))
        if mapped is not None:
            return str(mapped)
        return str(Severity.UNKNOWN)

    def classify_category(
        self,
        *,
        source_type: str,
        content: str,
        raw_value: object = None,
        mapping: dict[str, str] | None = None,
    ) -> str:
        content = content.lower()
        matched = self._match_rules("category", source_type, content)
        if matched is not None:
            return matched

        raw = str(raw_value).strip() if raw_value is not None else ""
        if raw:
            matched = _keyword_match(_CATEGORY_KEYWORDS, raw.lower())
            if matched is not None:
                return matched
        matched = _keyword_match(_CATEGORY_KEYWORDS, content)
        if matched is not None:
            return matched

        mapped = _lookup_mapping(mapping, raw)
        if mapped is not None:
            return mapped
        return default_category(source_type)

    def classify(
        self,
        *,
        source_type: str,
        title: str,
        description: str,
        raw_severity: object = None,
        raw_category: object = None,
        raw_urgency: object = None,
        raw_status: object = None,
        severity_mapping: dict[str, str] | None = None,
        category_mapping: dict[str, str] | None = None,
    ) -> Classification:
        content = f"{title} {description}".lower()
        return Classification(
            severity=self.classify_severity(
                source_type=source_type,
                content=content,
                raw_value=raw_severity,
                mapping=severity_mapping,
            ),
            category=self.classify_category(
                source_type=source_type,
                content=content,
                raw_value=raw_category,
                mapping=category_mapping,
            ),
            urgency=map_urgency(raw_urgency),
            status=map_status(raw_status),
        )
