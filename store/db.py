from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Database:
    conn: sqlite3.Connection
    lock: threading.Lock


_MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
          version INTEGER NOT NULL PRIMARY KEY
        );

        CREATE TABLE IF NOT EXISTS alert_sources (
          id TEXT NOT NULL PRIMARY KEY,
          name TEXT NOT NULL,
          source_type TEXT NOT NULL,
          api_endpoint TEXT NOT NULL,
          is_active INTEGER NOT NULL DEFAULT 1,
          polling_interval INTEGER NOT NULL DEFAULT 300,
          last_poll_at TEXT NULL,
          health_status TEXT NOT NULL DEFAULT 'unknown',
          configuration TEXT NOT NULL DEFAULT '{}',
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS security_alerts_ingest (
          id TEXT NOT NULL PRIMARY KEY,
          title TEXT NOT NULL,
          summary TEXT NOT NULL,
          link TEXT NULL,
          pub_date TEXT NOT NULL,
          source TEXT NOT NULL,
          category TEXT NOT NULL,
          location TEXT NOT NULL,
          raw_data TEXT NOT NULL,
          ingested_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS security_alerts_pub_date_idx
          ON security_alerts_ingest(pub_date);

        CREATE TABLE IF NOT EXISTS weather_alerts_ingest (
          id TEXT NOT NULL PRIMARY KEY,
          description TEXT NOT NULL,
          severity TEXT NOT NULL,
          event_type TEXT NOT NULL,
          onset TEXT NULL,
          expires TEXT NULL,
          geometry_coordinates TEXT NULL,
          raw_data TEXT NOT NULL,
          ingested_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS weather_alerts_onset_idx
          ON weather_alerts_ingest(onset);

        CREATE TABLE IF NOT EXISTS immigration_travel_announcements (
          id TEXT NOT NULL PRIMARY KEY,
          title TEXT NOT NULL,
          summary TEXT NOT NULL,
          content TEXT NOT NULL DEFAULT '',
          link TEXT NULL,
          pub_date TEXT NOT NULL,
          source TEXT NOT NULL,
          category TEXT NOT NULL,
          announcement_type TEXT NOT NULL,
          location TEXT NOT NULL,
          raw_data TEXT NOT NULL,
          ingested_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS immigration_travel_pub_date_idx
          ON immigration_travel_announcements(pub_date);

        CREATE TABLE IF NOT EXISTS alert_ingestion_queue (
          id TEXT NOT NULL PRIMARY KEY,
          source_id TEXT NOT NULL,
          raw_payload TEXT NOT NULL,
          processing_status TEXT NOT NULL DEFAULT 'pending'
            CHECK (processing_status IN ('pending', 'processing', 'completed', 'failed')),
          attempts INTEGER NOT NULL DEFAULT 0,
          error_message TEXT NULL,
          created_at TEXT NOT NULL,
          completed_at TEXT NULL
        );

        CREATE INDEX IF NOT EXISTS alert_ingestion_queue_status_idx
          ON alert_ingestion_queue(processing_status, created_at);

        CREATE TABLE IF NOT EXISTS source_health_metrics (
          id INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
          source_id TEXT NOT NULL,
          response_time_ms INTEGER NOT NULL,
          success INTEGER NOT NULL,
          error_message TEXT NULL,
          records_processed INTEGER NOT NULL DEFAULT 0,
          http_status_code INTEGER NULL,
          recorded_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS source_health_metrics_source_idx
          ON source_health_metrics(source_id, recorded_at);

        CREATE TABLE IF NOT EXISTS feed_quality_metrics (
          id INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
          source_id TEXT NOT NULL,
          evaluation_timestamp TEXT NOT NULL,
          normalization_success_rate REAL NOT NULL,
          avg_title_length REAL NOT NULL,
          avg_description_length REAL NOT NULL,
          severity_distribution TEXT NOT NULL,
          category_distribution TEXT NOT NULL,
          data_quality_score REAL NOT NULL,
          issues TEXT NOT NULL,
          recommendations TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS feed_quality_metrics_source_idx
          ON feed_quality_metrics(source_id, evaluation_timestamp);
        """,
    ),
    (
        2,
        """
        CREATE TABLE IF NOT EXISTS classification_rules (
          id TEXT NOT NULL PRIMARY KEY,
          rule_type TEXT NOT NULL CHECK (rule_type IN ('severity', 'category')),
          condition_pattern TEXT NOT NULL,
          classification_value TEXT NOT NULL,
          confidence_score REAL NOT NULL DEFAULT 1.0,
          priority INTEGER NOT NULL DEFAULT 0,
          source_types TEXT NOT NULL DEFAULT '[]',
          is_active INTEGER NOT NULL DEFAULT 1
        );

        CREATE TABLE IF NOT EXISTS normalization_rules (
          id TEXT NOT NULL PRIMARY KEY,
          source_type TEXT NOT NULL,
          field_mappings TEXT NOT NULL DEFAULT '{}',
          severity_mapping TEXT NULL,
          category_mapping TEXT NULL,
          priority INTEGER NOT NULL DEFAULT 0,
          is_active INTEGER NOT NULL DEFAULT 1
        );

        CREATE INDEX IF NOT EXISTS normalization_rules_source_type_idx
          ON normalization_rules(source_type);
        """,
    ),
]


def open_database(path: Path) -> Database:
    if str(path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA busy_timeout=5000;")
    _apply_migrations(conn)
    return Database(conn=conn, lock=threading.Lock())


def close_database(db: Database) -> None:
    with db.lock:
        db.conn.close()


def _apply_migrations(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER NOT NULL PRIMARY KEY);"
    )
    row = conn.execute(
        "SELECT COALESCE(MAX(version), 0) AS v FROM schema_migrations;"
    ).fetchone()
    current_version = int(row["v"])

    for version, sql in _MIGRATIONS:
        if version <= current_version:
            continue
        conn.executescript(sql)
        conn.execute("INSERT INTO schema_migrations(version) VALUES (?);", (version,))
        conn.commit()
