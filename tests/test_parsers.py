import json

import pytest

from conftest import FIXTURES
from ingest.errors import ParseError
from ingest.parsers.cap import parse_cap_alerts
from ingest.parsers.json import parse_feed_text, parse_json_records
from ingest.parsers.rss import parse_feed


def test_parse_security_rss_fixture() -> None:
    items = parse_feed((FIXTURES / "security_rss.xml").read_bytes())
    assert len(items) == 5
    assert all(item["title"] or item["description"] for item in items)

    first = items[0]
    assert first["guid"] == "https://cyber.gc.ca/en/alerts-advisories/av24-101"
    assert first["link"] == "https://cyber.gc.ca/en/alerts-advisories/av24-101"
    assert first["published"] == "Tue, 12 Mar 2024 14:30:00 GMT"
    assert first["category"] == "Vulnerabilities"
    # CDATA markup and entities are flattened to text
    assert first["description"] == (
        "Microsoft published security updates addressing multiple vulnerabilities "
        "in Windows & Office."
    )


def test_parse_atom_fixture() -> None:
    items = parse_feed((FIXTURES / "immigration_atom.xml").read_bytes())
    assert len(items) == 2
    assert items[0]["title"] == "Canada welcomes new citizens at special ceremony"
    assert items[0]["link"].endswith("/ceremony.html")
    assert "<p>" not in items[0]["description"]
    assert items[0]["content"].startswith("Over 1,000 people")
    assert items[1]["published"]


def test_parse_feed_falls_back_to_cap() -> None:
    items = parse_feed((FIXTURES / "cap_alert.xml").read_bytes())
    assert len(items) == 1
    item = items[0]
    assert item["title"] == "severe thunderstorm warning in effect"
    assert item["severity"] == "Severe"
    assert item["urgency"] == "Immediate"
    assert item["status"] == "Actual"
    assert item["area"] == "City of Ottawa"
    assert item["geometry"]["type"] == "Polygon"
    assert item["geometry"]["coordinates"][0][0] == [-76.0, 45.2]
    assert "msg_type" not in item


def test_parse_feed_drops_items_without_title_or_description() -> None:
    data = b"""<rss version="2.0"><channel><title>x</title>
      <item><link>https://example.com/a</link></item>
      <item><title>Kept</title></item>
    </channel></rss>"""
    items = parse_feed(data)
    assert [i["title"] for i in items] == ["Kept"]


def test_parse_feed_unrecognized_documents_are_empty() -> None:
    assert parse_feed(b"<html><body>maintenance</body></html>") == []
    assert parse_feed(b"not xml at all <<<") == []
    assert parse_feed((FIXTURES / "empty_rss.xml").read_bytes()) == []


def test_parse_cap_alerts_malformed_xml() -> None:
    assert parse_cap_alerts(b"<alert><info>") == []


def test_parse_json_records_shapes() -> None:
    assert parse_json_records(b'[{"title": "a"}]') == [{"title": "a"}]
    assert parse_json_records(b'{"items": [{"title": "b"}]}') == [{"title": "b"}]
    assert parse_json_records(b'{"entries": [{"title": "c"}]}') == [{"title": "c"}]
    assert parse_json_records(b'{"alerts": [1, 2]}') == [1, 2]
    assert parse_json_records(b'{"meta": {}}') == []


def test_parse_json_records_unreadable_body() -> None:
    with pytest.raises(ParseError):
        parse_json_records(b"{broken")


def test_parse_feed_text_sniffs_format() -> None:
    geojson = (FIXTURES / "geomet_alerts.geojson").read_text(encoding="utf-8")
    features = parse_feed_text(geojson)
    assert len(features) == 3
    assert features[0]["type"] == "Feature"

    rss = (FIXTURES / "security_rss.xml").read_bytes()
    assert len(parse_feed_text(rss)) == 5

    assert parse_feed_text(json.dumps({"entries": [{"title": "x"}]})) == [{"title": "x"}]
    assert parse_feed_text("{broken json") == []
    assert parse_feed_text("plain text status page") == []
