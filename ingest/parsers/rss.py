from __future__ import annotations

import feedparser

from ingest.parsers.cap import parse_cap_alerts
from normalize.fields import clean_text


def _georss_geometry(entry) -> dict | None:
    georss_point = entry.get("georss_point")
    if georss_point:
        try:
            lat_str, lon_str = str(georss_point).split()[:2]
            return {"type": "Point", "coordinates": [float(lon_str), float(lat_str)]}
        except ValueError:
            return None
    georss_polygon = entry.get("georss_polygon")
    if georss_polygon:
        try:
            nums = [float(x) for x in str(georss_polygon).split()]
        except ValueError:
            return None
        coords = [[nums[i + 1], nums[i]] for i in range(0, len(nums) - 1, 2)]
        if coords and coords[0] != coords[-1]:
            coords.append(coords[0])
        return {"type": "Polygon", "coordinates": [coords]} if coords else None
    if entry.get("geo_lat") and entry.get("geo_long"):
        try:
            return {
                "type": "Point",
                "coordinates": [float(entry["geo_long"]), float(entry["geo_lat"])],
            }
        except ValueError:
            return None
    return None


def _entry_link(entry) -> str | None:
    link = entry.get("link")
    if link:
        return str(link)
    for candidate in entry.get("links") or []:
        href = candidate.get("href")
        if href:
            return str(href)
    return None


def _entry_to_item(entry) -> dict | None:
    title = clean_text(entry.get("title"))

    content = None
    if entry.get("content"):
        content = clean_text(entry["content"][0].get("value"))
    description = clean_text(entry.get("summary") or entry.get("description")) or content

    if not title and not description:
        return None

    terms = [str(t.get("term")) for t in (entry.get("tags") or []) if t.get("term")]
    item: dict = {
        "title": title or None,
        "description": description or None,
        "link": _entry_link(entry),
        "published": entry.get("published") or entry.get("updated"),
        "updated": entry.get("updated"),
        "guid": entry.get("id") or entry.get("guid"),
        "category": ", ".join(terms) if terms else None,
    }
    if content:
        item["content"] = content
    if entry.get("author"):
        item["author"] = clean_text(entry["author"])
    geometry = _georss_geometry(entry)
    if geometry is not None:
        item["geometry"] = geometry
    return item


def parse_feed(data: bytes | str) -> list[dict]:
    """RSS items and Atom entries, or CAP alerts when neither is present."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    parsed = feedparser.parse(data)
    items = [item for item in map(_entry_to_item, parsed.entries) if item is not None]
    if items:
        return items
    return parse_cap_alerts(data)
