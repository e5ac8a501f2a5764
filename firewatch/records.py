"""Typed incident record and the coercion helpers around it.

The feed is weakly typed: counts arrive as ints, floats or strings, IDs as
strings or numbers, timestamps in at least four encodings. Everything is
coerced here once so the rest of the pipeline never has to guess.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

from firewatch.normalize import fold

# Upstream attribute names, in lookup order
ID_KEYS = ("id", "globalId", "globalid", "ogc_fid", "ogcId", "uid")
AREA_KEYS = ("concelho", "municipio", "county", "municipality",
             "Concelho", "Municipio", "Municipality")
NATURE_KEYS = ("natureza", "type", "tipo")
STATUS_KEYS = ("status", "phase", "estado")

# upstream field -> ResourceCounts attribute
RESOURCE_FIELDS = {
    "man": "personnel",
    "terrain": "ground_vehicles",
    "aerial": "aircraft",
    "meios_aquaticos": "water_vehicles",
}

_TIME_LAYOUTS = ("%Y-%m-%d %H:%M:%S", "%d/%m/%Y %H:%M", "%Y-%m-%d %H:%M")


def to_number(value: Any) -> Optional[float]:
    """Coerce `value` to a finite float, or None when it is not a number.

    Accepts ints, floats and numeric strings (surrounding blanks ignored).
    Booleans, blanks, NaN/inf and every other type count as absent.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    elif not isinstance(value, (int, float)):
        return None
    try:
        f = float(value)
    except (OverflowError, ValueError):
        # ints beyond float range decode fine from JSON
        return None
    if not math.isfinite(f):
        return None
    return f


def to_count(value: Any) -> int:
    """Resource count: absent or unparseable is 0."""
    f = to_number(value)
    return int(f) if f is not None else 0


def prop_str(props: Dict[str, Any], *keys: str) -> str:
    """First non-blank string (or number, rendered without decimals) among `keys`."""
    for k in keys:
        if k not in props:
            continue
        v = props[k]
        if isinstance(v, str):
            if v.strip():
                return v
            continue
        f = to_number(v)
        if f is not None:
            return f"{f:.0f}"
    return ""


def resolve_id(props: Dict[str, Any]) -> Optional[str]:
    for k in ID_KEYS:
        v = props.get(k)
        if isinstance(v, str):
            if v.strip():
                return v.strip()
            continue
        f = to_number(v)
        if f:
            return f"{f:.0f}"
    return None


def resolve_area(props: Dict[str, Any]) -> str:
    for k in AREA_KEYS:
        v = props.get(k)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return ""


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Best-effort conversion of an upstream time value to an aware datetime.

    Handles ISO 8601 (with or without "Z"), a few local layouts, epoch
    seconds or milliseconds and {"sec": ...} objects. Returns None on
    anything it cannot read.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, dict):
        for k in ("sec", "hora_alerta", "hora", "updated", "date", "time", "datetime", "ts", "at"):
            if k in value:
                return parse_timestamp(value[k])
        return None
    if isinstance(value, (int, float)):
        f = to_number(value)
        if not f or f <= 0:
            return None
        if f > 1e12:
            f /= 1000.0
        try:
            return datetime.fromtimestamp(f, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.isascii() and text.isdigit():
            return parse_timestamp(int(text))
        iso = text[:-1] + "+00:00" if text.endswith("Z") else text
        try:
            dt = datetime.fromisoformat(iso)
        except ValueError:
            dt = None
            for layout in _TIME_LAYOUTS:
                try:
                    dt = datetime.strptime(text, layout)
                    break
                except ValueError:
                    continue
            if dt is None:
                return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    return None


def pretty_time(value: Any) -> str:
    """Short local "DD-MM HH:MM" rendering, or "" when unreadable."""
    dt = parse_timestamp(value)
    if dt is None:
        return ""
    return dt.astimezone().strftime("%d-%m %H:%M")


def extract_coords(geometry: Optional[Dict[str, Any]],
                   props: Optional[Dict[str, Any]] = None) -> Optional[Tuple[float, float]]:
    """(lat, lon) from a GeoJSON point, falling back to flat attributes."""
    if isinstance(geometry, dict):
        coords = geometry.get("coordinates")
        if isinstance(coords, (list, tuple)) and len(coords) >= 2:
            lon, lat = to_number(coords[0]), to_number(coords[1])
            if lat is not None and lon is not None:
                return (lat, lon)
    if props:
        lat = to_number(props.get("lat", props.get("latitude")))
        lon = to_number(props.get("lng", props.get("lon", props.get("longitude"))))
        if lat is not None and lon is not None:
            return (lat, lon)
    return None


@dataclass(frozen=True)
class ResourceCounts:
    personnel: int = 0
    ground_vehicles: int = 0
    aircraft: int = 0
    water_vehicles: int = 0

    @classmethod
    def from_props(cls, props: Dict[str, Any]) -> "ResourceCounts":
        return cls(**{attr: to_count(props.get(src)) for src, attr in RESOURCE_FIELDS.items()})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceCounts":
        """Inverse of `to_dict`; tolerates partial or junk input."""
        return cls(**{attr: to_count(data.get(attr)) for attr in RESOURCE_FIELDS.values()})

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    def diff(self, other: "ResourceCounts") -> Dict[str, Tuple[int, int]]:
        """Fields that differ, as {field: (old, new)} with `self` as old."""
        out = {}
        for attr in RESOURCE_FIELDS.values():
            old, new = getattr(self, attr), getattr(other, attr)
            if old != new:
                out[attr] = (old, new)
        return out


@dataclass
class IncidentRecord:
    id: Optional[str]
    area_name: str
    nature: str = ""
    nature_code: str = ""
    status: str = ""
    status_code: Optional[float] = None
    district: str = ""
    region: str = ""
    sub_region: str = ""
    parish: str = ""
    resources: ResourceCounts = field(default_factory=ResourceCounts)
    annotation: str = ""
    coordinates: Optional[Tuple[float, float]] = None
    created: Any = None
    updated: Any = None
    kml: str = ""
    properties: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_feature(cls, properties: Optional[Dict[str, Any]],
                     geometry: Optional[Dict[str, Any]] = None) -> "IncidentRecord":
        p = properties if isinstance(properties, dict) else {}
        return cls(
            id=resolve_id(p),
            area_name=resolve_area(p),
            nature=prop_str(p, *NATURE_KEYS),
            nature_code=prop_str(p, "naturezaCode"),
            status=prop_str(p, *STATUS_KEYS),
            status_code=to_number(p.get("statusCode")),
            district=prop_str(p, "district"),
            region=prop_str(p, "regiao"),
            sub_region=prop_str(p, "sub_regiao"),
            parish=prop_str(p, "freguesia"),
            resources=ResourceCounts.from_props(p),
            annotation=prop_str(p, "extra").strip(),
            coordinates=extract_coords(geometry, p),
            created=p.get("dateTime"),
            updated=p.get("updated"),
            kml=prop_str(p, "kmlVost", "kml"),
            properties=p,
        )

    @property
    def status_folded(self) -> str:
        return fold(self.status)


def from_features(features: Iterable[Dict[str, Any]]) -> list:
    out = []
    for f in features:
        if not isinstance(f, dict):
            continue
        out.append(IncidentRecord.from_feature(f.get("properties"), f.get("geometry")))
    return out


def is_concluded(status: str) -> bool:
    return "conclus" in fold(status)


def is_active(status: str) -> bool:
    s = fold(status)
    return "curso" in s or "despacho" in s


def is_winding_down(status: str) -> bool:
    s = fold(status)
    return "conclus" in s or "vigil" in s
