"""Persisted monitor state — JSON document, load/save helpers, key migration.

On disk:
    {
      "by":         {area_key: [incident_id, ...]},
      "seen":       {area_key: {incident_id: "2025-08-01T12:00:00Z"}},
      "status":     {incident_id: "Em Curso"},
      "first":      {incident_id: timestamp},
      "concluded":  {incident_id: timestamp},
      "means":      {incident_id: {"personnel": 5, ...}},
      "extra_text": {incident_id: "EN238 cortada"},
      "last_hourly": "2025-08-01T12",
      "last_daily":  "2025-08-01",
      "pending":    [{"title": ..., "body": ..., ...}]
    }

Loading never fails: a missing or broken file is an empty State, which only
costs de-dup history. Saving is atomic (temp file + rename).
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from firewatch.events import Message
from firewatch.normalize import KEY_CORRECTIONS, WantedSet, normalize
from firewatch.records import ResourceCounts

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_ts(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class State:
    active_ids: Dict[str, Set[str]] = field(default_factory=dict)
    last_seen: Dict[str, Dict[str, datetime]] = field(default_factory=dict)
    last_status: Dict[str, str] = field(default_factory=dict)
    first_seen: Dict[str, datetime] = field(default_factory=dict)
    concluded_at: Dict[str, datetime] = field(default_factory=dict)
    last_resources: Dict[str, ResourceCounts] = field(default_factory=dict)
    last_annotation: Dict[str, str] = field(default_factory=dict)
    last_hourly_mark: str = ""
    last_daily_mark: str = ""
    pending: List[Message] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "by": {area: sorted(ids) for area, ids in sorted(self.active_ids.items())},
            "seen": {
                area: {i: format_ts(ts) for i, ts in sorted(kv.items())}
                for area, kv in sorted(self.last_seen.items())
            },
            "status": {i: s for i, s in sorted(self.last_status.items())
                       if i.strip() and s.strip()},
            "first": {i: format_ts(ts) for i, ts in sorted(self.first_seen.items())},
            "concluded": {i: format_ts(ts) for i, ts in sorted(self.concluded_at.items())},
            "means": {i: rc.to_dict() for i, rc in sorted(self.last_resources.items())},
            "extra_text": dict(sorted(self.last_annotation.items())),
            "last_hourly": self.last_hourly_mark,
            "last_daily": self.last_daily_mark,
            "pending": [m.to_dict() for m in self.pending],
        }


def _ts_map(raw: Any) -> Dict[str, datetime]:
    out = {}
    if isinstance(raw, dict):
        for k, v in raw.items():
            ts = parse_ts(v)
            if ts is not None:
                out[str(k)] = ts
    return out


def from_dict(raw: Any, wanted: Optional[WantedSet] = None) -> State:
    """Build a State from a decoded document, skipping anything malformed."""
    st = State()

    # Oldest format: a flat list of IDs shared by all areas
    if isinstance(raw, list):
        ids = {str(x) for x in raw if isinstance(x, (str, int)) and not isinstance(x, bool)}
        for key in (wanted or []):
            st.active_ids[key] = set(ids)
        return st
    if not isinstance(raw, dict):
        return st

    by = raw.get("by")
    if isinstance(by, dict):
        for area, ids in by.items():
            if isinstance(ids, list):
                st.active_ids[str(area)] = {str(i) for i in ids
                                          if isinstance(i, (str, int)) and not isinstance(i, bool)}

    seen = raw.get("seen")
    if isinstance(seen, dict):
        for area, kv in seen.items():
            m = _ts_map(kv)
            if m:
                st.last_seen[str(area)] = m

    status = raw.get("status")
    if isinstance(status, dict):
        st.last_status = {str(k): v for k, v in status.items() if isinstance(v, str)}

    st.first_seen = _ts_map(raw.get("first"))
    st.concluded_at = _ts_map(raw.get("concluded"))

    means = raw.get("means")
    if isinstance(means, dict):
        st.last_resources = {str(k): ResourceCounts.from_dict(v)
                             for k, v in means.items() if isinstance(v, dict)}

    extra = raw.get("extra_text")
    if isinstance(extra, dict):
        st.last_annotation = {str(k): v for k, v in extra.items() if isinstance(v, str)}

    if isinstance(raw.get("last_hourly"), str):
        st.last_hourly_mark = raw["last_hourly"]
    if isinstance(raw.get("last_daily"), str):
        st.last_daily_mark = raw["last_daily"]

    pending = raw.get("pending")
    if isinstance(pending, list):
        st.pending = [Message.from_dict(m) for m in pending if isinstance(m, dict)]
    return st


def load_state(path: Path, wanted: Optional[WantedSet] = None) -> State:
    """Read the state file; any failure yields an empty State."""
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError:
        logger.info("No state file at %s; starting fresh", path)
        return State()
    except (OSError, ValueError) as e:
        logger.warning("Could not read state file %s (%s); starting fresh", path, e)
        return State()
    return from_dict(raw, wanted)


def save_state(path: Path, state: State) -> bool:
    """Write the state atomically. Returns False (and logs) on failure."""
    path = Path(path)
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent))
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f, indent=2, ensure_ascii=False)
        os.replace(tmp_name, path)
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.error("Error saving state to %s: %s", path, e)
        if tmp_name and os.path.exists(tmp_name):
            try:
                os.remove(tmp_name)
            except OSError:
                pass
        return False


def canonical_key(key: str, wanted: WantedSet) -> str:
    """Known typo fixes first, then alias folding onto the wanted keys."""
    nk = KEY_CORRECTIONS.get(key, key)
    resolved = wanted.resolve(nk)
    if resolved == nk and nk not in wanted:
        # Keys written before normalization changed: retry on the normalized form
        renorm = normalize(nk)
        renorm = KEY_CORRECTIONS.get(renorm, renorm)
        resolved = wanted.resolve(renorm)
    return resolved


def canonicalize(state: State, wanted: WantedSet) -> State:
    """Rewrite area keys in place, merging entries that collide."""
    active: Dict[str, Set[str]] = {}
    for key, ids in state.active_ids.items():
        active.setdefault(canonical_key(key, wanted), set()).update(ids)

    seen: Dict[str, Dict[str, datetime]] = {}
    for key, kv in state.last_seen.items():
        dest = seen.setdefault(canonical_key(key, wanted), {})
        for incident_id, ts in kv.items():
            if incident_id not in dest or ts > dest[incident_id]:
                dest[incident_id] = ts

    state.active_ids = active
    state.last_seen = seen
    return state


def ensure_areas(state: State, keys: Iterable[str]) -> None:
    for key in keys:
        state.active_ids.setdefault(key, set())
        state.last_seen.setdefault(key, {})


def prune(state: State, ttl_hours: float, now: Optional[datetime] = None) -> int:
    """Forget IDs not seen within `ttl_hours`. Returns how many were dropped."""
    if ttl_hours <= 0:
        return 0
    now = now or utc_now()
    cutoff = now - timedelta(hours=ttl_hours)
    pruned = 0
    dropped: Set[str] = set()
    for area, ids in state.active_ids.items():
        seen = state.last_seen.setdefault(area, {})
        for incident_id in list(ids):
            ts = seen.get(incident_id)
            if ts is None or ts < cutoff:
                ids.discard(incident_id)
                seen.pop(incident_id, None)
                dropped.add(incident_id)
                pruned += 1

    # Per-incident snapshots go with the last area that knew the ID
    still_known: Set[str] = set()
    for ids in state.active_ids.values():
        still_known.update(ids)
    for incident_id in dropped - still_known:
        for per_id in (state.last_status, state.first_seen, state.concluded_at,
                       state.last_resources, state.last_annotation):
            per_id.pop(incident_id, None)
    if pruned:
        logger.debug("Pruned %d stale incident IDs (ttl=%sh)", pruned, ttl_hours)
    return pruned
