"""Fetcher for Fogos.pt active incidents.

The endpoint has answered in three shapes over time:
  - a GeoJSON FeatureCollection
  - {"data": <FeatureCollection or array>}
  - a plain array of features or of bare attribute objects
All three are reduced to IncidentRecord here; nothing downstream sniffs shapes.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from firewatch.fetchers.base import FeedFetcher
from firewatch.records import IncidentRecord, extract_coords, from_features

logger = logging.getLogger(__name__)


def to_features(data: Any) -> List[Dict[str, Any]]:
    """Reduce any known response shape to a list of GeoJSON-like features.

    Raises ValueError on a shape it does not recognise.
    """
    if isinstance(data, dict):
        if data.get("type") and isinstance(data.get("features"), list):
            return data["features"]
        if data.get("type") == "FeatureCollection":
            # Accept empty collections with a null features member
            return []
        if "data" in data and data["data"] is not None:
            return to_features(data["data"])
    if isinstance(data, list):
        return [_as_feature(item) for item in data if isinstance(item, dict)]
    raise ValueError("unknown response shape")


def _as_feature(item: Dict[str, Any]) -> Dict[str, Any]:
    if "properties" in item and isinstance(item.get("properties"), dict):
        return item
    coords = extract_coords(None, item)
    geometry = None
    if coords:
        geometry = {"type": "Point", "coordinates": [coords[1], coords[0]]}
    return {"type": "Feature", "geometry": geometry, "properties": item}


class FogosFetcher(FeedFetcher):
    source_name = "fogos"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        # Validators and body cache for the primary endpoint only
        self._etag = ""
        self._last_modified = ""
        self._cached: Optional[List[IncidentRecord]] = None

    def fetch_url(self, url: str, primary: bool = False) -> List[IncidentRecord]:
        headers = {}
        if primary:
            if self._etag:
                headers["If-None-Match"] = self._etag
            if self._last_modified:
                headers["If-Modified-Since"] = self._last_modified

        resp = self.request(url, headers=headers)
        if resp.status_code == 304 and self._cached is not None:
            logger.debug("HTTP 304 Not Modified (using cached features)")
            return self._cached

        records = self.parse(resp.json())
        if primary:
            self._etag = (resp.headers.get("ETag") or "").strip()
            self._last_modified = (resp.headers.get("Last-Modified") or "").strip()
            self._cached = records
            if self._etag or self._last_modified:
                logger.debug("Cached validators set (ETag=%r, Last-Modified=%r)",
                             self._etag, self._last_modified)
        return records

    def parse(self, data: Any) -> List[IncidentRecord]:
        return from_features(to_features(data))
