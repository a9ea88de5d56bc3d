from __future__ import annotations

import xml.etree.ElementTree as ET

from normalize.fields import clean_text


def _parse_polygons(area: ET.Element) -> dict | None:
    polygons: list[list[list[float]]] = []
    for polygon_el in area.findall("{*}polygon"):
        polygon_text = polygon_el.text
        if not polygon_text:
            continue
        coords: list[list[float]] = []
        for pair in polygon_text.split():
            try:
                lat_str, lon_str = pair.split(",", maxsplit=1)
                coords.append([float(lon_str), float(lat_str)])
            except ValueError:
                continue
        if coords and coords[0] != coords[-1]:
            coords.append(coords[0])
        if coords:
            polygons.append(coords)

    if not polygons:
        return None
    if len(polygons) == 1:
        return {"type": "Polygon", "coordinates": [polygons[0]]}
    return {"type": "MultiPolygon", "coordinates": [[p] for p in polygons]}


def _pick_info(alert: ET.Element) -> ET.Element | None:
    infos = alert.findall("{*}info")
    for info in infos:
        if (info.findtext("{*}language") or "").lower().startswith("en"):
            return info
    return infos[0] if infos else None


def parse_cap_alerts(data: bytes) -> list[dict]:
    try:
        root = ET.fromstring(data)
    except ET.ParseError:
        return []
    if root.tag.endswith("alert"):
        alert_els = [root]
    else:
        alert_els = root.findall(".//{*}alert")

    records: list[dict] = []
    for alert in alert_els:
        info = _pick_info(alert)
        if info is None:
            continue

        title = clean_text(info.findtext("{*}headline") or info.findtext("{*}event"))
        description = clean_text(info.findtext("{*}description"))
        if not title and not description:
            continue

        area_names: list[str] = []
        geometry = None
        for area in info.findall("{*}area"):
            area_desc = clean_text(area.findtext("{*}areaDesc"))
            if area_desc:
                area_names.append(area_desc)
            geometry = geometry or _parse_polygons(area)

        categories = [c.text for c in info.findall("{*}category") if c.text]
        records.append(
            {
                "guid": alert.findtext("{*}identifier") or None,
                "title": title or None,
                "description": description or None,
                "link": info.findtext("{*}web") or None,
                "published": alert.findtext("{*}sent"),
                "effective": info.findtext("{*}effective") or info.findtext("{*}onset"),
                "expires": info.findtext("{*}expires"),
                "category": ", ".join(categories) if categories else None,
                "event": info.findtext("{*}event"),
                "severity": info.findtext("{*}severity"),
                "urgency": info.findtext("{*}urgency"),
                "status": alert.findtext("{*}status"),
                "area": "; ".join(area_names) or None,
                "instructions": clean_text(info.findtext("{*}instruction")) or None,
                "author": info.findtext("{*}senderName") or alert.findtext("{*}sender"),
                "geometry": geometry,
            }
        )

    return records
