"""Save VOST KML perimeters and measure them."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

_EARTH_RADIUS_M = 6371000.0
_COORDS = re.compile(r"<coordinates>(.*?)</coordinates>", re.IGNORECASE | re.DOTALL)


@dataclass
class KmlInfo:
    path: Path
    area_km2: float = 0.0
    perimeter_km: float = 0.0

    @property
    def uri(self) -> str:
        return self.path.resolve().as_uri()


def parse_polygon(kml: str) -> List[Tuple[float, float]]:
    """(lat, lon) points of the first <coordinates> block; "lon,lat[,alt]" tuples."""
    m = _COORDS.search(kml)
    if not m:
        return []
    points = []
    for token in m.group(1).split():
        parts = token.split(",")
        if len(parts) < 2:
            continue
        try:
            lon, lat = float(parts[0]), float(parts[1])
        except ValueError:
            continue
        points.append((lat, lon))
    return points


def measure(points: List[Tuple[float, float]]) -> Tuple[float, float]:
    """(area km², perimeter km) on an equirectangular projection around the mean latitude."""
    if len(points) < 3:
        return (0.0, 0.0)
    lat0 = math.radians(sum(p[0] for p in points) / len(points))

    def to_xy(p):
        return (math.radians(p[1]) * _EARTH_RADIUS_M * math.cos(lat0),
                math.radians(p[0]) * _EARTH_RADIUS_M)

    area2 = 0.0
    perimeter = 0.0
    for i in range(len(points)):
        x1, y1 = to_xy(points[i])
        x2, y2 = to_xy(points[(i + 1) % len(points)])
        area2 += x1 * y2 - x2 * y1
        perimeter += math.hypot(x2 - x1, y2 - y1)
    return (abs(area2) / 2 / 1e6, perimeter / 1000)


def save_kml(kml: str, save_dir: str, incident_id: str) -> Optional[KmlInfo]:
    """Write <id>.kml under `save_dir` and measure it. None when disabled or on error."""
    if not kml.strip() or not save_dir.strip() or not incident_id:
        return None
    path = Path(save_dir) / f"{incident_id}.kml"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(kml, encoding="utf-8")
    except OSError as e:
        logger.warning("Could not save KML for %s: %s", incident_id, e)
        return None
    area, perimeter = measure(parse_polygon(kml))
    return KmlInfo(path=path, area_km2=area, perimeter_km=perimeter)
