from __future__ import annotations

import logging
from dataclasses import dataclass

from normalize.fields import utc_now_iso
from store.db import Database


logger = logging.getLogger(__name__)


HEALTHY_RATIO = 0.9
DEGRADED_RATIO = 0.5


@dataclass(frozen=True)
class HealthMetric:
    source_id: str
    response_time_ms: int
    success: bool
    records_processed: int = 0
    error_message: str | None = None
    http_status_code: int | None = None
    recorded_at: str | None = None


def record_health_metric(db: Database, metric: HealthMetric) -> None:
    recorded_at = metric.recorded_at or utc_now_iso()
    with db.lock:
        db.conn.execute(
            """
            INSERT INTO source_health_metrics(
              source_id, response_time_ms, success, error_message,
              records_processed, http_status_code, recorded_at
            )
            VALUES(?, ?, ?, ?, ?, ?, ?);
            """,
            (
                metric.source_id,
                metric.response_time_ms,
                1 if metric.success else 0,
                metric.error_message,
                metric.records_processed,
                metric.http_status_code,
                recorded_at,
            ),
        )
        db.conn.commit()
    if metric.success:
        logger.info(
            "source %s ok: %d records in %dms",
            metric.source_id,
            metric.records_processed,
            metric.response_time_ms,
        )
    else:
        logger.warning(
            "source %s failed after %dms (status %s): %s",
            metric.source_id,
            metric.response_time_ms,
            metric.http_status_code,
            metric.error_message,
        )


def _row_to_metric(row) -> HealthMetric:
    return HealthMetric(
        source_id=str(row["source_id"]),
        response_time_ms=int(row["response_time_ms"]),
        success=bool(row["success"]),
        records_processed=int(row["records_processed"]),
        error_message=row["error_message"],
        http_status_code=(
            int(row["http_status_code"]) if row["http_status_code"] is not None else None
        ),
        recorded_at=str(row["recorded_at"]),
    )


def recent_metrics(db: Database, source_id: str, limit: int = 10) -> list[HealthMetric]:
    with db.lock:
        rows = db.conn.execute(
            """
            SELECT source_id, response_time_ms, success, error_message,
                   records_processed, http_status_code, recorded_at
            FROM source_health_metrics
            WHERE source_id = ?
            ORDER BY recorded_at DESC, id DESC
            LIMIT ?;
            """,
            (source_id, limit),
        ).fetchall()
    return [_row_to_metric(r) for r in rows]


def consecutive_failures(metrics: list[HealthMetric]) -> int:
    count = 0
    for metric in metrics:
        if metric.success:
            break
        count += 1
    return count


def derive_health_status(db: Database, source_id: str, window: int = 10) -> str:
    metrics = recent_metrics(db, source_id, window)
    if not metrics:
        return "unknown"
    ratio = sum(1 for m in metrics if m.success) / len(metrics)
    if ratio >= HEALTHY_RATIO:
        return "healthy"
    if ratio >= DEGRADED_RATIO:
        return "degraded"
    return "error"
