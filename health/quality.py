from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field

from ingest.sources import AlertSource
from normalize.fields import utc_now_iso
from normalize.normalize import CanonicalAlert
from store.db import Database


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QualityThresholds:
    min_success_rate: float = 0.8
    min_title_length: int = 10
    min_description_length: int = 20
    max_unknown_severity: float = 0.5
    elevated_unknown_severity: float = 0.3
    max_general_category: float = 0.7


@dataclass(frozen=True)
class FeedQualityMetrics:
    source_id: str
    feed_name: str
    normalization_success_rate: float
    avg_title_length: float
    avg_description_length: float
    severity_distribution: dict[str, float]
    category_distribution: dict[str, float]
    data_quality_score: float
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    evaluated_at: str = ""


def _distribution(values: list[str]) -> dict[str, float]:
    if not values:
        return {}
    counts = Counter(v or "Unknown" for v in values)
    total = len(values)
    return {k: round(v / total, 4) for k, v in counts.most_common()}


def _pct(ratio: float) -> str:
    return f"{ratio * 100:.1f}%"


def evaluate_feed_quality(
    source: AlertSource,
    raw_count: int,
    alerts: list[CanonicalAlert],
    thresholds: QualityThresholds | None = None,
) -> FeedQualityMetrics:
    """Score one run of a feed from the alerts that normalized cleanly."""
    t = thresholds or QualityThresholds()

    success_rate = min(1.0, len(alerts) / raw_count) if raw_count > 0 else 0.0
    avg_title = sum(len(a.title) for a in alerts) / len(alerts) if alerts else 0.0
    avg_desc = sum(len(a.description) for a in alerts) / len(alerts) if alerts else 0.0
    severity_dist = _distribution([a.severity for a in alerts])
    category_dist = _distribution([a.category for a in alerts])
    unknown_share = severity_dist.get("Unknown", 0.0)
    general_share = category_dist.get("General", 0.0)

    issues: list[str] = []
    recommendations: list[str] = []

    def flag(issue: str, recommendation: str) -> None:
        issues.append(issue)
        if recommendation not in recommendations:
            recommendations.append(recommendation)

    if success_rate < t.min_success_rate:
        flag(
            f"Low normalization success rate: {_pct(success_rate)}",
            "Review field mapping configuration",
        )
    if avg_title < t.min_title_length:
        flag(
            f"Average title length too short: {avg_title:.0f} chars",
            "Check title field mapping",
        )
    if avg_desc < t.min_description_length:
        flag(
            f"Average description length too short: {avg_desc:.0f} chars",
            "Verify description field extraction",
        )
    if unknown_share > t.max_unknown_severity:
        flag(
            f"High proportion of unknown severity: {_pct(unknown_share)}",
            "Improve severity detection rules",
        )
    elif unknown_share > t.elevated_unknown_severity:
        flag(
            f"Elevated proportion of unknown severity: {_pct(unknown_share)}",
            "Improve severity detection rules",
        )
    if general_share > t.max_general_category:
        flag(
            f"High proportion of general category: {_pct(general_share)}",
            "Add category classification rules",
        )

    score = (
        0.3 * success_rate
        + 0.2 * min(avg_title / t.min_title_length, 1.0)
        + 0.2 * min(avg_desc / t.min_description_length, 1.0)
        + 0.15 * (1.0 - unknown_share)
        + 0.15 * (1.0 - general_share)
    )

    return FeedQualityMetrics(
        source_id=source.id,
        feed_name=source.name,
        normalization_success_rate=round(success_rate, 4),
        avg_title_length=round(avg_title, 1),
        avg_description_length=round(avg_desc, 1),
        severity_distribution=severity_dist,
        category_distribution=category_dist,
        data_quality_score=round(max(0.0, min(1.0, score)), 3),
        issues=issues,
        recommendations=recommendations,
        evaluated_at=utc_now_iso(),
    )


def record_quality_metrics(db: Database, metrics: FeedQualityMetrics) -> None:
    with db.lock:
        db.conn.execute(
            """
            INSERT INTO feed_quality_metrics(
              source_id, evaluation_timestamp, normalization_success_rate,
              avg_title_length, avg_description_length, severity_distribution,
              category_distribution, data_quality_score, issues, recommendations
            )
            VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                metrics.source_id,
                metrics.evaluated_at or utc_now_iso(),
                metrics.normalization_success_rate,
                metrics.avg_title_length,
                metrics.avg_description_length,
                json.dumps(metrics.severity_distribution),
                json.dumps(metrics.category_distribution),
                metrics.data_quality_score,
                json.dumps(metrics.issues, ensure_ascii=False),
                json.dumps(metrics.recommendations, ensure_ascii=False),
            ),
        )
        db.conn.commit()

    logger.info(
        "feed %s quality score %.2f", metrics.feed_name, metrics.data_quality_score
    )
    for issue in metrics.issues:
        logger.warning("feed %s: %s", metrics.feed_name, issue)


def recent_quality_metrics(
    db: Database, *, source_id: str | None = None, limit: int = 50
) -> list[dict]:
    sql = """
        SELECT source_id, evaluation_timestamp, normalization_success_rate,
               avg_title_length, avg_description_length, severity_distribution,
               category_distribution, data_quality_score, issues, recommendations
        FROM feed_quality_metrics
    """
    params: list[object] = []
    if source_id is not None:
        sql += " WHERE source_id = ?"
        params.append(source_id)
    sql += " ORDER BY evaluation_timestamp DESC, id DESC LIMIT ?;"
    params.append(limit)
    with db.lock:
        rows = db.conn.execute(sql, params).fetchall()
    return [
        {
            "source_id": r["source_id"],
            "evaluated_at": r["evaluation_timestamp"],
            "normalization_success_rate": r["normalization_success_rate"],
            "avg_title_length": r["avg_title_length"],
            "avg_description_length": r["avg_description_length"],
            "severity_distribution": json.loads(r["severity_distribution"]),
            "category_distribution": json.loads(r["category_distribution"]),
            "data_quality_score": r["data_quality_score"],
            "issues": json.loads(r["issues"]),
            "recommendations": json.loads(r["recommendations"]),
        }
        for r in rows
    ]
