from __future__ import annotations


class IngestError(Exception):
    """Base class for failures raised inside the ingestion pipeline."""


class FetchError(IngestError):
    """Non-2xx response, timeout or network failure while retrieving a feed."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


class ParseError(IngestError):
    """The whole response body is unreadable in its declared format."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NormalizationError(IngestError):
    """A single raw item could not be turned into a canonical alert."""


class ClassificationRuleError(IngestError):
    """A stored classification rule has an unusable pattern."""

    def __init__(self, rule_id: str, pattern: str, detail: str) -> None:
        super().__init__(f"rule {rule_id}: invalid pattern {pattern!r}: {detail}")
        self.rule_id = rule_id
        self.pattern = pattern


class StorageError(IngestError):
    """An upsert or queue insert failed."""
