"""Change detection — which incidents are new, which changed, what to persist.

detect() walks the filtered records of one cycle against the State loaded
at cycle start and returns the events plus the same State, updated. Per
record, in this order:

  1. no ID -> skipped, no event
  2. area resolved to its canonical key (aliases fold onto the wanted key)
  3. last_seen[area][id] = now, always (TTL liveness)
  4. ID unknown -> NewIncident, first_seen set once
  5. status differs from the last announced one, or the ID is new this
     cycle -> StatusTransition; a concluded status stamps concluded_at
  6. known ID -> one ResourceChange per resource field that moved
  7. known ID -> AnnotationChange when the trimmed note text moved
  8. resource and note snapshots overwritten unconditionally

An ID belongs to one area at a time: if upstream moves it, the old area
forgets it and it is not announced again.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from firewatch.config import DAILY_SUMMARY_HOUR, SUMMARY_SAMPLE_IDS
from firewatch.events import (
    AnnotationChange,
    Breakdown,
    DailySummary,
    HourlySummary,
    NewIncident,
    ResourceChange,
    StatusTransition,
)
from firewatch.normalize import WantedSet, normalize
from firewatch.records import IncidentRecord, is_active, is_concluded, is_winding_down
from firewatch.state import State, utc_now

logger = logging.getLogger(__name__)


@dataclass
class DetectionResult:
    events: list
    state: State
    # seconds from first seen to conclusion, for every conclusion this cycle
    conclusion_times: List[float] = field(default_factory=list)

    @property
    def new_incidents(self) -> List[NewIncident]:
        return [e for e in self.events if isinstance(e, NewIncident)]

    @property
    def transitions(self) -> List[StatusTransition]:
        return [e for e in self.events if isinstance(e, StatusTransition)]

    @property
    def resource_changes(self) -> List[ResourceChange]:
        return [e for e in self.events if isinstance(e, ResourceChange)]

    @property
    def annotation_changes(self) -> List[AnnotationChange]:
        return [e for e in self.events if isinstance(e, AnnotationChange)]

    @property
    def changed(self) -> bool:
        return bool(self.events)

    def new_counts_by_area(self) -> Dict[str, int]:
        """New-incident count per area display name."""
        return dict(Counter(e.area_display for e in self.new_incidents))

    def sample_ids_by_area(self, limit: int = SUMMARY_SAMPLE_IDS) -> Dict[str, List[str]]:
        out: Dict[str, List[str]] = {}
        for e in self.new_incidents:
            ids = out.setdefault(e.area_display, [])
            if len(ids) < limit:
                ids.append(e.incident_id)
        return out


def _area_index(state: State) -> Dict[str, str]:
    index = {}
    for area, ids in state.active_ids.items():
        for incident_id in ids:
            index[incident_id] = area
    return index


def detect(records: Iterable[IncidentRecord], state: State, wanted: WantedSet,
           now: Optional[datetime] = None) -> DetectionResult:
    now = now or utc_now()
    result = DetectionResult(events=[], state=state)
    known_area = _area_index(state)

    for record in records:
        incident_id = record.id
        if not incident_id:
            continue

        area = wanted.resolve(normalize(record.area_name))
        display = record.area_name or wanted.display.get(area, area)

        previous_area = known_area.get(incident_id)
        if previous_area is not None and previous_area != area:
            # Upstream reassigned the incident; last write wins
            state.active_ids.get(previous_area, set()).discard(incident_id)
            state.last_seen.get(previous_area, {}).pop(incident_id, None)
            state.active_ids.setdefault(area, set()).add(incident_id)
            logger.debug("Incident %s moved from %s to %s", incident_id, previous_area, area)

        state.last_seen.setdefault(area, {})[incident_id] = now

        ids = state.active_ids.setdefault(area, set())
        is_new = incident_id not in ids
        known_area[incident_id] = area
        if is_new:
            ids.add(incident_id)
            state.first_seen.setdefault(incident_id, now)
            result.events.append(NewIncident(area, display, incident_id, record))

        current = record.status.strip()
        previous = state.last_status.get(incident_id, "")
        if current and (current != previous or is_new):
            event = StatusTransition(
                area, display, incident_id, record,
                previous=previous,
                current=current,
                concluded=is_concluded(current),
                reactivated=is_winding_down(previous) and is_active(current),
            )
            state.last_status[incident_id] = current
            if event.concluded:
                state.concluded_at[incident_id] = now
                started = state.first_seen.get(incident_id)
                if started is not None and started < now:
                    event.elapsed_seconds = (now - started).total_seconds()
                    result.conclusion_times.append(event.elapsed_seconds)
            result.events.append(event)

        if not is_new:
            before = state.last_resources.get(incident_id)
            if before is not None:
                for resource, (old, new) in before.diff(record.resources).items():
                    result.events.append(ResourceChange(
                        area, display, incident_id, record,
                        resource=resource, old=old, new=new,
                    ))
            if incident_id in state.last_annotation:
                old_note = state.last_annotation[incident_id]
                if old_note != record.annotation:
                    result.events.append(AnnotationChange(
                        area, display, incident_id, record,
                        previous=old_note, current=record.annotation,
                    ))

        state.last_resources[incident_id] = record.resources
        state.last_annotation[incident_id] = record.annotation

    logger.debug("Detected %d events (%d new, %d status)", len(result.events),
                 len(result.new_incidents), len(result.transitions))
    return result


# --- Periodic summaries ---

def breakdown(records: List[IncidentRecord], top: int) -> Breakdown:
    def most_common(values) -> List[Tuple[str, int]]:
        return Counter(values).most_common(top)

    return Breakdown(
        total=len(records),
        by_area=most_common(r.area_name for r in records),
        by_nature=most_common(r.nature for r in records),
        by_status=most_common(r.status for r in records),
    )


def hourly_mark(now: datetime) -> str:
    return now.strftime("%Y-%m-%dT%H")


def daily_mark(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


def periodic_summaries(records: List[IncidentRecord], state: State, now: datetime,
                       hourly: bool = True, daily: bool = True,
                       daily_hour: int = DAILY_SUMMARY_HOUR) -> list:
    """Hourly/daily summary events whose window has not been sent yet.

    `now` is wall-clock time in the zone the windows are meant in. The marks
    live in State so a restart inside a window does not send it twice.
    """
    out = []
    if hourly:
        mark = hourly_mark(now)
        if mark != state.last_hourly_mark:
            out.append(HourlySummary(now, breakdown(records, top=6)))
            state.last_hourly_mark = mark
    if daily and now.hour == daily_hour:
        mark = daily_mark(now)
        if mark != state.last_daily_mark:
            out.append(DailySummary(now, breakdown(records, top=10)))
            state.last_daily_mark = mark
    return out
