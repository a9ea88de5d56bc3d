from __future__ import annotations

import json

from ingest.errors import ParseError
from ingest.parsers.rss import parse_feed


_RECORD_KEYS = ("items", "entries", "alerts", "features", "data")


def records_from_document(doc: object) -> list:
    if isinstance(doc, list):
        return doc
    if isinstance(doc, dict):
        for key in _RECORD_KEYS:
            value = doc.get(key)
            if isinstance(value, list):
                return value
    return []


def parse_json_records(data: bytes | str) -> list:
    try:
        doc = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError(f"unreadable JSON body: {e}") from e
    return records_from_document(doc)


def parse_feed_text(text: bytes | str) -> list:
    """Sniff a text body: XML goes to the feed parser, JSON to the record finder."""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    stripped = text.lstrip("\ufeff \t\r\n")
    if stripped.startswith("<"):
        return parse_feed(stripped)
    if stripped.startswith(("[", "{")):
        try:
            return parse_json_records(stripped)
        except ParseError:
            return []
    return []
