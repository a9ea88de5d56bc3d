import asyncio
import json

import httpx

from classify.rules import StaticRuleProvider
from conftest import RecordingSleep, fixture_response, mock_client
from ingest.pipeline import run_batch
from ingest.sources import SourceConfiguration, get_source


def _metrics(db, source_id: str) -> list:
    with db.lock:
        return db.conn.execute(
            "SELECT * FROM source_health_metrics WHERE source_id = ? ORDER BY id;",
            (source_id,),
        ).fetchall()


def _count(db, table: str) -> int:
    with db.lock:
        return int(db.conn.execute(f"SELECT COUNT(*) AS n FROM {table};").fetchone()["n"])


def _run(db, settings, handler, **kwargs):
    async def go():
        async with mock_client(handler) as client:
            return await run_batch(db, settings, client, **kwargs)

    return asyncio.run(go())


def test_security_rss_end_to_end(db, settings, add_source) -> None:
    add_source(id="cccs", source_type="security-rss")
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return fixture_response("security_rss.xml", "application/rss+xml; charset=utf-8")

    results = _run(db, settings, handler)
    assert len(results) == 1
    result = results[0]
    assert result.success
    assert result.raw_count == 5
    assert result.stored_count == 5
    assert result.queued_count == 5

    assert _count(db, "security_alerts_ingest") == 5
    assert _count(db, "alert_ingestion_queue") == 5
    with db.lock:
        categories = {
            r["category"] for r in db.conn.execute("SELECT category FROM security_alerts_ingest;")
        }
    assert categories == {"Cybersecurity"}

    metrics = _metrics(db, "cccs")
    assert len(metrics) == 1
    assert metrics[0]["success"] == 1
    assert metrics[0]["records_processed"] == 5
    assert metrics[0]["http_status_code"] == 200

    assert requests[0].headers["accept"] == "application/rss+xml, application/xml, text/xml"
    assert requests[0].headers["user-agent"] == "Security-Intelligence-Platform/1.0"
    assert get_source(db, "cccs").last_poll_at is not None
    assert _count(db, "feed_quality_metrics") == 1


def test_weather_geomet_end_to_end(db, settings, add_source) -> None:
    add_source(id="geomet", source_type="weather-geocmet", name="ECCC GeoMet")

    def handler(request: httpx.Request) -> httpx.Response:
        return fixture_response("geomet_alerts.geojson", "application/geo+json")

    [result] = _run(db, settings, handler)
    assert result.success
    assert result.stored_count == 3

    with db.lock:
        rows = db.conn.execute("SELECT * FROM weather_alerts_ingest ORDER BY id;").fetchall()
    assert len(rows) == 3
    assert all(r["geometry_coordinates"] is not None for r in rows)
    assert json.loads(rows[2]["geometry_coordinates"]) == [-63.57, 44.65]
    assert {r["severity"] for r in rows} == {"Moderate", "Extreme", "Minor"}


def test_zero_items_is_a_successful_run(db, settings, add_source) -> None:
    add_source(id="quiet", source_type="rss")

    def handler(request: httpx.Request) -> httpx.Response:
        return fixture_response("empty_rss.xml", "application/rss+xml")

    [result] = _run(db, settings, handler)
    assert result.success
    assert result.records_processed == 0

    metrics = _metrics(db, "quiet")
    assert len(metrics) == 1
    assert metrics[0]["success"] == 1
    assert metrics[0]["records_processed"] == 0
    assert _count(db, "feed_quality_metrics") == 0


def test_retry_eligible_source_records_one_failed_metric(db, settings, add_source) -> None:
    add_source(id="flaky", source_type="security-rss")
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(503, text="unavailable")

    sleep = RecordingSleep()
    [result] = _run(db, settings, handler, sleep=sleep)
    assert not result.success
    assert result.attempts == 3
    assert calls == 3
    assert sleep.delays == [1.0, 2.0]

    metrics = _metrics(db, "flaky")
    assert len(metrics) == 1
    assert metrics[0]["success"] == 0
    assert metrics[0]["http_status_code"] == 503
    assert "503" in metrics[0]["error_message"]


def test_retry_recovers_before_exhaustion(db, settings, add_source) -> None:
    add_source(id="geomet", source_type="weather-geocmet")
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise httpx.ConnectTimeout("timed out", request=request)
        return fixture_response("geomet_alerts.geojson", "application/json")

    [result] = _run(db, settings, handler, sleep=RecordingSleep())
    assert result.success
    assert result.attempts == 2
    assert len(_metrics(db, "geomet")) == 1


def test_non_retry_source_fails_fast(db, settings, add_source) -> None:
    add_source(id="api", source_type="custom-api")
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(500)

    sleep = RecordingSleep()
    [result] = _run(db, settings, handler, sleep=sleep)
    assert not result.success
    assert calls == 1
    assert sleep.delays == []


def test_failures_are_isolated_per_source(db, settings, add_source) -> None:
    add_source(id="broken", source_type="rss", api_endpoint="https://broken.example.com/feed")
    add_source(id="healthy", source_type="security-rss", api_endpoint="https://ok.example.com/feed")

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "broken.example.com":
            raise httpx.ConnectError("connection refused", request=request)
        return fixture_response("security_rss.xml", "application/rss+xml")

    results = {r.source_id: r for r in _run(db, settings, handler)}
    assert not results["broken"].success
    assert results["healthy"].success
    assert results["healthy"].stored_count == 5
    assert len(_metrics(db, "broken")) == 1
    assert len(_metrics(db, "healthy")) == 1


def test_unexpected_exception_still_records_metric(db, settings, add_source) -> None:
    add_source(id="odd", source_type="rss")

    class ExplodingProvider(StaticRuleProvider):
        def normalization_rule(self, source):
            raise RuntimeError("rule store offline")

    def handler(request: httpx.Request) -> httpx.Response:
        return fixture_response("security_rss.xml", "application/rss+xml")

    [result] = _run(db, settings, handler, rule_provider=ExplodingProvider([]))
    assert not result.success
    metrics = _metrics(db, "odd")
    assert len(metrics) == 1
    assert "RuntimeError" in metrics[0]["error_message"]


def test_test_mode_writes_nothing(db, settings, add_source) -> None:
    add_source(id="cccs", source_type="security-rss")

    def handler(request: httpx.Request) -> httpx.Response:
        return fixture_response("security_rss.xml", "application/rss+xml")

    [result] = _run(db, settings, handler, source_id="cccs", test_mode=True)
    assert result.success
    assert result.test_mode
    assert result.normalized_count == 5
    assert len(result.to_dict()["sample"]) == 5
    assert _count(db, "security_alerts_ingest") == 0
    assert _count(db, "alert_ingestion_queue") == 0
    assert _count(db, "source_health_metrics") == 0
    assert get_source(db, "cccs").last_poll_at is None


def test_sources_missing_credentials_are_skipped(db, settings, add_source) -> None:
    add_source(
        id="owm",
        name="OpenWeatherMap Alerts",
        source_type="weather",
        api_endpoint="https://api.openweathermap.org/data/3.0/onecall",
    )
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200, json=[])

    [result] = _run(db, settings, handler)
    assert result.skipped
    assert calls == 0
    metrics = _metrics(db, "owm")
    assert len(metrics) == 1
    assert metrics[0]["success"] == 0
    assert metrics[0]["error_message"] == "API key required but not configured"


def test_configured_headers_and_key_are_sent(db, settings, add_source) -> None:
    add_source(
        id="owm",
        name="OpenWeatherMap Alerts",
        source_type="weather",
        api_endpoint="https://api.openweathermap.org/data/3.0/onecall",
        configuration=SourceConfiguration.model_validate(
            {"apiKey": "secret", "headers": {"X-Tenant": "ops"}}
        ),
    )
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"alerts": [{"event": "Heat warning", "description": "Hot"}]})

    [result] = _run(db, settings, handler)
    assert result.success
    assert seen[0].headers["authorization"] == "Bearer secret"
    assert seen[0].headers["x-tenant"] == "ops"
    assert seen[0].headers["accept"].startswith("application/json")
    assert _count(db, "weather_alerts_ingest") == 1


def test_only_due_sources_are_polled(db, settings, add_source) -> None:
    add_source(id="fresh", source_type="rss", last_poll_at="2999-01-01T00:00:00Z")
    add_source(id="stale", source_type="rss", last_poll_at="2000-01-01T00:00:00Z")

    def handler(request: httpx.Request) -> httpx.Response:
        return fixture_response("empty_rss.xml", "application/rss+xml")

    results = _run(db, settings, handler)
    assert [r.source_id for r in results] == ["stale"]


def test_unreadable_json_is_a_failure(db, settings, add_source) -> None:
    add_source(id="api", source_type="custom-api")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"{not json", headers={"content-type": "application/json"})

    [result] = _run(db, settings, handler)
    assert not result.success
    assert result.http_status_code == 200
    assert len(_metrics(db, "api")) == 1


def _fail_inserts_for(db, table: str, source_id: str) -> None:
    with db.lock:
        db.conn.execute(
            f"""
            CREATE TRIGGER fail_{table} BEFORE INSERT ON {table}
            WHEN NEW.source_id = '{source_id}'
            BEGIN SELECT RAISE(ABORT, 'insert failed'); END;
            """
        )
        db.conn.commit()


def test_quality_write_failure_does_not_fail_the_batch(db, settings, add_source, caplog) -> None:
    add_source(id="a", source_type="security-rss", api_endpoint="https://a.example.com/feed")
    add_source(id="b", source_type="security-rss", api_endpoint="https://b.example.com/feed")
    _fail_inserts_for(db, "feed_quality_metrics", "a")

    def handler(request: httpx.Request) -> httpx.Response:
        return fixture_response("security_rss.xml", "application/rss+xml")

    results = {r.source_id: r for r in _run(db, settings, handler)}
    assert results["a"].success
    assert results["b"].success
    assert _count(db, "feed_quality_metrics") == 1
    assert len(_metrics(db, "a")) == 1
    assert len(_metrics(db, "b")) == 1
    assert "quality metrics not recorded" in caplog.text


def test_health_metric_write_failure_is_logged(db, settings, add_source, caplog) -> None:
    add_source(id="a", source_type="security-rss", api_endpoint="https://a.example.com/feed")
    add_source(id="b", source_type="security-rss", api_endpoint="https://b.example.com/feed")
    _fail_inserts_for(db, "source_health_metrics", "a")

    def handler(request: httpx.Request) -> httpx.Response:
        return fixture_response("security_rss.xml", "application/rss+xml")

    results = {r.source_id: r for r in _run(db, settings, handler)}
    assert results["a"].success
    assert results["b"].success
    assert _metrics(db, "a") == []
    assert len(_metrics(db, "b")) == 1
    assert get_source(db, "a").last_poll_at is not None
    assert "health metric not recorded" in caplog.text
