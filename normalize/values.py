from __future__ import annotations

from enum import StrEnum


class Severity(StrEnum):
    EXTREME = "Extreme"
    SEVERE = "Severe"
    MODERATE = "Moderate"
    MINOR = "Minor"
    INFO = "Info"
    UNKNOWN = "Unknown"


class Urgency(StrEnum):
    IMMEDIATE = "Immediate"
    EXPECTED = "Expected"
    FUTURE = "Future"
    PAST = "Past"
    UNKNOWN = "Unknown"


class AlertStatus(StrEnum):
    ACTUAL = "Actual"
    EXERCISE = "Exercise"
    SYSTEM = "System"
    TEST = "Test"
    DRAFT = "Draft"
    UNKNOWN = "Unknown"


class SourceLabel(StrEnum):
    ALERT_READY = "Alert Ready"
    BC_EMERGENCY = "BC Emergency"
    EVERBRIDGE = "Everbridge"
    OTHER = "Other"


def canonical_severity(value: object) -> Severity | None:
    """Case-insensitive match against the closed severity set."""
    if value is None:
        return None
    text = str(value).strip().lower()
    for severity in Severity:
        if severity.value.lower() == text:
            return severity
    return None
