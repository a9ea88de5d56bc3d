from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass, field, replace
from datetime import datetime

import httpx

from app.settings import Settings
from classify.classifier import Classifier
from classify.rules import RuleProvider, StaticRuleProvider, StoreRuleProvider
from health.health import HealthMetric, record_health_metric
from health.quality import FeedQualityMetrics, evaluate_feed_quality, record_quality_metrics
from ingest.errors import IngestError, StorageError
from ingest.fetch import FetchResult, fetch_source
from ingest.gate import is_due, should_skip
from ingest.retry import Sleep, policy_for, run_with_retry
from ingest.sources import AlertSource, get_source, load_sources, mark_polled
from normalize.normalize import CanonicalAlert, NormalizedBatch, Normalizer, extract_items
from store.db import Database
from store.router import enqueue, store


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceRunResult:
    source_id: str
    success: bool
    raw_count: int = 0
    normalized_count: int = 0
    failed_count: int = 0
    stored_count: int = 0
    queued_count: int = 0
    attempts: int = 0
    response_time_ms: int = 0
    http_status_code: int | None = None
    error: str | None = None
    skipped: bool = False
    test_mode: bool = False
    alerts: list[CanonicalAlert] = field(default_factory=list, repr=False)
    quality: FeedQualityMetrics | None = None

    @property
    def records_processed(self) -> int:
        return max(self.stored_count, self.queued_count)

    def to_dict(self, *, sample_size: int = 5) -> dict:
        return {
            "source_id": self.source_id,
            "success": self.success,
            "skipped": self.skipped,
            "test_mode": self.test_mode,
            "raw_count": self.raw_count,
            "normalized_count": self.normalized_count,
            "failed_count": self.failed_count,
            "stored_count": self.stored_count,
            "queued_count": self.queued_count,
            "records_processed": self.records_processed,
            "attempts": self.attempts,
            "response_time_ms": self.response_time_ms,
            "http_status_code": self.http_status_code,
            "error": self.error,
            "quality_score": (
                self.quality.data_quality_score if self.quality is not None else None
            ),
            "sample": [a.to_dict() for a in self.alerts[:sample_size]],
        }


@dataclass(frozen=True)
class _Outcome:
    fetched: FetchResult
    items: list
    batch: NormalizedBatch
    stored: int
    queued: int


def build_rule_provider(settings: Settings, db: Database) -> RuleProvider:
    if settings.rule_backend == "static":
        return StaticRuleProvider.from_yaml(settings.classification_rules_path)
    return StoreRuleProvider(db)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


async def process_source(
    client: httpx.AsyncClient,
    db: Database,
    settings: Settings,
    source: AlertSource,
    *,
    normalizer: Normalizer,
    rule_provider: RuleProvider,
    test_mode: bool = False,
    sleep: Sleep = asyncio.sleep,
) -> SourceRunResult:
    """Fetch, normalize, store and enqueue one source, then record its outcome.

    Exactly one health metric is written per call outside test mode, whatever
    the number of attempts the retry policy allowed.
    """
    policy = policy_for(source.source_type)
    attempts = 0
    last_status: int | None = None

    async def attempt() -> _Outcome:
        nonlocal attempts, last_status
        attempts += 1
        rule = rule_provider.normalization_rule(source)
        config_mode = rule is not None and bool(rule.field_mappings)
        fetched = await fetch_source(client, source, user_agent=settings.user_agent)
        last_status = fetched.status_code
        items = extract_items(fetched.payload, config_mode=config_mode)
        batch = normalizer.normalize_batch(source, items, rule)
        if test_mode:
            return _Outcome(fetched=fetched, items=items, batch=batch, stored=0, queued=0)
        good = batch.succeeded
        stored = store(db, source, good)
        queued = enqueue(db, source, good)
        return _Outcome(fetched=fetched, items=items, batch=batch, stored=stored, queued=queued)

    started = time.perf_counter()
    result: SourceRunResult
    try:
        outcome, _ = await run_with_retry(
            attempt,
            policy,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            sleep=sleep,
            label=f"source {source.id}",
        )
    except IngestError as e:
        result = SourceRunResult(
            source_id=source.id,
            success=False,
            attempts=attempts,
            response_time_ms=_elapsed_ms(started),
            http_status_code=getattr(e, "status_code", None) or last_status,
            error=str(e),
            test_mode=test_mode,
        )
    except Exception as e:
        # one broken source must not take the batch down with it
        logger.exception("source %s: unexpected failure", source.id)
        result = SourceRunResult(
            source_id=source.id,
            success=False,
            attempts=attempts,
            response_time_ms=_elapsed_ms(started),
            http_status_code=last_status,
            error=f"unexpected error: {e.__class__.__name__}: {e}",
            test_mode=test_mode,
        )
    else:
        batch = outcome.batch
        result = SourceRunResult(
            source_id=source.id,
            success=True,
            raw_count=len(outcome.items),
            normalized_count=len(batch.succeeded),
            failed_count=len(batch.failed),
            stored_count=outcome.stored,
            queued_count=outcome.queued,
            attempts=attempts,
            response_time_ms=_elapsed_ms(started),
            http_status_code=outcome.fetched.status_code,
            test_mode=test_mode,
            alerts=batch.alerts,
        )

    if test_mode:
        return result

    _record_poll(
        db,
        source,
        HealthMetric(
            source_id=source.id,
            response_time_ms=result.response_time_ms,
            success=result.success,
            records_processed=result.records_processed,
            error_message=result.error,
            http_status_code=result.http_status_code,
        ),
    )

    if result.success and result.raw_count > 0:
        quality = evaluate_feed_quality(
            source, result.raw_count, [a for a in result.alerts if not a.is_error]
        )
        try:
            record_quality_metrics(db, quality)
        except sqlite3.Error as e:
            err = StorageError(f"quality metrics not recorded: {e}")
            logger.error("source %s: %s", source.id, err)
        result = replace(result, quality=quality)
    return result


def _record_poll(db: Database, source: AlertSource, metric: HealthMetric) -> None:
    """Write the health metric and poll timestamp; storage failures are logged."""
    try:
        record_health_metric(db, metric)
    except sqlite3.Error as e:
        err = StorageError(f"health metric not recorded: {e}")
        logger.error("source %s: %s", source.id, err)
    try:
        mark_polled(db, source.id)
    except sqlite3.Error as e:
        err = StorageError(f"last_polled_at not updated: {e}")
        logger.error("source %s: %s", source.id, err)


def _skipped(db: Database, source: AlertSource, reason: str, *, test_mode: bool) -> SourceRunResult:
    logger.info("skipping source %s: %s", source.id, reason)
    if not test_mode:
        _record_poll(
            db,
            source,
            HealthMetric(
                source_id=source.id,
                response_time_ms=0,
                success=False,
                error_message=reason,
            ),
        )
    return SourceRunResult(
        source_id=source.id,
        success=False,
        skipped=True,
        error=reason,
        test_mode=test_mode,
    )


async def run_batch(
    db: Database,
    settings: Settings,
    client: httpx.AsyncClient,
    *,
    source_id: str | None = None,
    test_mode: bool = False,
    rule_provider: RuleProvider | None = None,
    sleep: Sleep = asyncio.sleep,
    now: datetime | None = None,
) -> list[SourceRunResult]:
    """Process every due active source, or just ``source_id`` when given."""
    if source_id is not None:
        source = get_source(db, source_id)
        if source is None:
            raise LookupError(f"unknown source: {source_id}")
        sources = [source]
    else:
        sources = [s for s in load_sources(db) if is_due(s, now)]

    if not sources:
        logger.debug("no sources due")
        return []

    provider = rule_provider or build_rule_provider(settings, db)
    normalizer = Normalizer(
        Classifier(provider.classification_rules()),
        description_max_length=settings.description_max_length,
    )
    sem = asyncio.Semaphore(settings.max_concurrent_sources)

    async def run_one(source: AlertSource) -> SourceRunResult:
        skip, reason = should_skip(source)
        if skip:
            return _skipped(db, source, reason or "skipped", test_mode=test_mode)
        async with sem:
            return await process_source(
                client,
                db,
                settings,
                source,
                normalizer=normalizer,
                rule_provider=provider,
                test_mode=test_mode,
                sleep=sleep,
            )

    results = await asyncio.gather(*(run_one(s) for s in sources))
    succeeded = sum(1 for r in results if r.success)
    logger.info(
        "batch finished: %d/%d sources succeeded%s",
        succeeded,
        len(results),
        " (test mode)" if test_mode else "",
    )
    return list(results)
