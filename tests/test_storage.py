import json
import logging
from dataclasses import replace

from classify.classifier import Classifier
from ingest.sources import AlertSource
from normalize.normalize import CanonicalAlert, Normalizer
from store.router import (
    IMMIGRATION_TRAVEL,
    SECURITY,
    WEATHER,
    enqueue,
    infer_announcement_type,
    route_for,
    store,
)


def _source(source_type: str) -> AlertSource:
    return AlertSource(
        id=f"{source_type}-src",
        name=f"{source_type} feed",
        source_type=source_type,
        api_endpoint="https://feeds.example.com/x",
    )


def _alert(**overrides) -> CanonicalAlert:
    base = CanonicalAlert(
        id="alert-1",
        title="Ransomware campaign observed",
        description="Attackers are targeting municipal networks.",
        severity="Severe",
        urgency="Unknown",
        category="Cybersecurity",
        status="Actual",
        area="Area not specified",
        published="2024-03-12T14:30:00Z",
        source="Other",
        url="https://example.com/a",
    )
    return replace(base, **overrides)


def test_routing_table() -> None:
    assert route_for("security-rss") is SECURITY
    assert route_for("rss") is SECURITY
    assert route_for("emergency") is SECURITY
    assert route_for("custom-api") is SECURITY
    assert route_for("weather") is WEATHER
    assert route_for("weather-geocmet") is WEATHER
    assert route_for("geojson") is WEATHER
    assert route_for("immigration-travel-atom") is IMMIGRATION_TRAVEL
    assert route_for("government-announcements") is IMMIGRATION_TRAVEL


def test_unknown_source_type_defaults_to_security(caplog) -> None:
    caplog.set_level(logging.WARNING)
    assert route_for("pager-feed") is SECURITY
    assert "pager-feed" in caplog.text


def test_upsert_is_idempotent_and_last_write_wins(db) -> None:
    source = _source("security-rss")
    assert store(db, source, [_alert()]) == 1
    assert store(db, source, [_alert(title="Ransomware campaign update", category="Ransomware")]) == 1

    with db.lock:
        rows = db.conn.execute("SELECT * FROM security_alerts_ingest;").fetchall()
    assert len(rows) == 1
    assert rows[0]["title"] == "Ransomware campaign update"
    assert rows[0]["category"] == "Ransomware"
    assert rows[0]["source"] == "security-rss feed"
    assert rows[0]["location"] == "Global"


def test_security_location_inference(db) -> None:
    source = _source("rss")
    store(
        db,
        source,
        [
            _alert(id="a", description="Outage affecting Ontario hospitals."),
            _alert(id="b", area="Northern Europe"),
        ],
    )
    with db.lock:
        rows = {
            r["id"]: r["location"]
            for r in db.conn.execute("SELECT id, location FROM security_alerts_ingest;")
        }
    assert rows == {"a": "Canada", "b": "Northern Europe"}


def test_weather_rows_keep_geometry(db) -> None:
    geometry = {"type": "Polygon", "coordinates": [[[-79.6, 43.5], [-79.1, 43.5], [-79.6, 43.5]]]}
    stored = store(
        db,
        _source("weather-geocmet"),
        [
            _alert(id="w1", category="Weather", geometry=geometry, expires="2024-03-13T00:00:00Z"),
            _alert(id="w2", category="General", effective="2024-03-12T16:00:00Z"),
        ],
    )
    assert stored == 2
    with db.lock:
        rows = {r["id"]: r for r in db.conn.execute("SELECT * FROM weather_alerts_ingest;")}
    assert json.loads(rows["w1"]["geometry_coordinates"]) == geometry["coordinates"]
    assert rows["w1"]["onset"] == "2024-03-12T14:30:00Z"
    assert rows["w1"]["expires"] == "2024-03-13T00:00:00Z"
    assert rows["w2"]["geometry_coordinates"] is None
    assert rows["w2"]["event_type"] == "Weather"
    assert rows["w2"]["onset"] == "2024-03-12T16:00:00Z"


def test_immigration_rows(db) -> None:
    source = _source("immigration-travel-atom")
    normalizer = Normalizer(Classifier([]))
    alert = normalizer.normalize_item(
        source,
        {
            "title": "New pathway for refugees announced",
            "description": "Short summary.",
            "content": "<p>Full text of the announcement about refugee resettlement.</p>",
            "link": "https://example.com/news",
        },
    )
    assert store(db, source, [alert]) == 1
    with db.lock:
        row = db.conn.execute("SELECT * FROM immigration_travel_announcements;").fetchone()
    assert row["announcement_type"] == "refugee"
    assert row["location"] == "Canada"
    assert row["content"] == "Full text of the announcement about refugee resettlement."
    assert row["summary"] == "Short summary."
    assert json.loads(row["raw_data"])["link"] == "https://example.com/news"


def test_announcement_type_inference() -> None:
    assert infer_announcement_type(_alert(title="Citizenship ceremony", description="")) == "citizenship"
    assert infer_announcement_type(_alert(title="Express Entry draw", description="")) == "immigration"
    assert infer_announcement_type(_alert(title="Travel advisory for Peru", description="")) == "travel"
    assert infer_announcement_type(_alert(title="Minister statement", description="")) == "general"


def test_enqueue_appends_pending_items(db) -> None:
    source = _source("weather")
    queued = enqueue(db, source, [_alert(id="q1"), _alert(id="q1"), _alert(id="q2")])
    assert queued == 3
    with db.lock:
        rows = db.conn.execute(
            "SELECT source_id, raw_payload, processing_status, attempts FROM alert_ingestion_queue;"
        ).fetchall()
    assert len(rows) == 3
    assert {r["processing_status"] for r in rows} == {"pending"}
    assert {r["source_id"] for r in rows} == {"weather-src"}
    payload = json.loads(rows[0]["raw_payload"])
    assert payload["id"] == "q1"
    assert payload["severity"] == "Severe"
    assert payload["confidence_score"] == 0.5


def _reject_with_trigger(db, table: str, condition: str) -> None:
    with db.lock:
        db.conn.execute(
            f"""
            CREATE TRIGGER reject_{table} BEFORE INSERT ON {table}
            WHEN {condition}
            BEGIN SELECT RAISE(ABORT, 'rejected by trigger'); END;
            """
        )
        db.conn.commit()


def test_store_skips_rows_that_fail_and_logs_them(db, caplog) -> None:
    caplog.set_level(logging.ERROR)
    _reject_with_trigger(db, "security_alerts_ingest", "NEW.id = 'bad'")
    source = _source("security-rss")

    stored = store(db, source, [_alert(id="ok-1"), _alert(id="bad"), _alert(id="ok-2")])

    assert stored == 2
    with db.lock:
        ids = {r["id"] for r in db.conn.execute("SELECT id FROM security_alerts_ingest;")}
    assert ids == {"ok-1", "ok-2"}
    assert "upsert of bad failed" in caplog.text
    assert "rejected by trigger" in caplog.text


def test_enqueue_skips_rows_that_fail_and_logs_them(db, caplog) -> None:
    caplog.set_level(logging.ERROR)
    _reject_with_trigger(
        db, "alert_ingestion_queue", """NEW.raw_payload LIKE '%"id": "bad"%'"""
    )
    source = _source("weather")

    queued = enqueue(db, source, [_alert(id="q1"), _alert(id="bad"), _alert(id="q2")])

    assert queued == 2
    with db.lock:
        payloads = [
            json.loads(r["raw_payload"])["id"]
            for r in db.conn.execute("SELECT raw_payload FROM alert_ingestion_queue;")
        ]
    assert sorted(payloads) == ["q1", "q2"]
    assert "queue insert of bad failed" in caplog.text
