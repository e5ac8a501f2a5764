"""ntfy notifications — render detector events into messages and post them.

Rendering is pure (events in, Message list out) so the cycle can persist
the outbox before anything goes over the wire. Posting never raises: a
failed POST is logged and reported as False.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional
from urllib.parse import quote_plus

import requests

from firewatch.config import FOGOS_INCIDENT_URL, HTTP_TIMEOUT_SECONDS, NotifySettings
from firewatch.detect import DetectionResult
from firewatch.events import (
    AnnotationChange,
    Breakdown,
    DailySummary,
    HourlySummary,
    Message,
    NewIncident,
    ResourceChange,
    StatusTransition,
)
from firewatch.kml import save_kml
from firewatch.normalize import fold
from firewatch.records import IncidentRecord, pretty_time

logger = logging.getLogger(__name__)

RESOURCE_LABELS = {
    "personnel": "man",
    "ground_vehicles": "ter",
    "aircraft": "air",
    "water_vehicles": "aq",
}

AREA_URL_PREFIXES = ("Área URL: ", "Area URL: ")


# --- Tag / priority helpers ---

def add_tag(tags: str, tag: str) -> str:
    """Append `tag` to a comma list unless already present (case-insensitive)."""
    tag = tag.strip()
    if not tag:
        return tags
    if not tags.strip():
        return tag
    if any(t.strip().lower() == tag.lower() for t in tags.split(",")):
        return tags
    return f"{tags},{tag}"


def _bump(priority: str, level: int) -> str:
    """ntfy priorities run 1 (max) .. 5 (min); keep the more urgent one."""
    try:
        current = int(priority) if priority.strip() else 5
    except ValueError:
        current = 5
    return str(level) if level < current else priority


def resource_tags_and_priority(record: IncidentRecord, settings: NotifySettings,
                               tags: str, priority: str):
    rc = record.resources
    rules = (
        (settings.min_man, rc.personnel, "man", 2),
        (settings.min_terrain, rc.ground_vehicles, "terrain", 3),
        (settings.min_aerial, rc.aircraft, "aerial", 2),
        (settings.min_aquatic, rc.water_vehicles, "aquatic", 3),
    )
    for threshold, value, tag, level in rules:
        if threshold > 0 and value >= threshold:
            tags = add_tag(tags, tag)
            priority = _bump(priority, level)
    return tags, priority


def annotation_tags(annotation: str) -> List[str]:
    s = fold(annotation)
    tags = []
    if "reabert" in s:
        tags.append("white_check_mark")
    if any(w in s for w in ("cortad", "encerrad", "fechad", "corte")):
        tags.append("no_entry")
    return tags


def status_priority(status: str, default: str) -> str:
    s = fold(status)
    if "despacho" in s:
        return "4"
    if "em curso" in s or "em resolucao" in s:
        return "2"
    if "vigilancia" in s or "conclus" in s:
        return "3"
    return default


def in_quiet_hours(window: str, now: datetime) -> bool:
    """True when `now` falls inside a "23-7" / "22:00-07:00" window."""
    window = (window or "").strip()
    parts = window.split("-")
    if len(parts) != 2:
        return False

    def hour(s: str) -> Optional[int]:
        s = s.strip().split(":", 1)[0]
        try:
            h = int(s)
        except ValueError:
            return None
        return h if 0 <= h <= 23 else None

    start, end = hour(parts[0]), hour(parts[1])
    if start is None or end is None:
        return False
    if start == end:
        return True
    if start < end:
        return start <= now.hour < end
    return now.hour >= start or now.hour < end


def maps_url(record: IncidentRecord, area: str) -> str:
    if record.coordinates:
        lat, lon = record.coordinates
        return f"https://www.google.com/maps/search/?api=1&query={lat:f},{lon:f}"
    if area.strip():
        return "https://www.google.com/maps/search/?api=1&query=" + quote_plus(f"{area}, Portugal")
    return ""


def _url_after(body: str, prefix: str) -> str:
    i = body.find(prefix)
    if i < 0:
        return ""
    rest = body[i + len(prefix):]
    return rest.split(None, 1)[0] if rest.strip() else ""


def build_actions(body: str, link: str) -> str:
    actions = []
    if link:
        actions.append(f"view, Abrir Mapa, {link}")
    fogos = _url_after(body, FOGOS_INCIDENT_URL)
    if fogos:
        actions.append(f"view, Abrir Fogos, {FOGOS_INCIDENT_URL}{fogos}")
    for prefix in AREA_URL_PREFIXES:
        area_url = _url_after(body, prefix)
        if area_url:
            actions.append(f"view, Abrir área, {area_url}")
            break
    return "; ".join(actions)


# --- Rendering ---

def _means_line(record: IncidentRecord) -> str:
    rc = record.resources
    return (f"Meios: man={rc.personnel}, ter={rc.ground_vehicles}, "
            f"air={rc.aircraft}, aq={rc.water_vehicles}")


def _with_annotation_tags(tags: str, record: IncidentRecord) -> str:
    for t in annotation_tags(record.annotation):
        tags = add_tag(tags, t)
    return tags


class MessageRenderer:
    """Turns one cycle's detection output into ntfy messages."""

    def __init__(self, settings: NotifySettings,
                 kml_saver: Callable = save_kml):
        self.settings = settings
        self.kml_saver = kml_saver

    def render(self, result: DetectionResult, summaries: list, total_active: int) -> List[Message]:
        messages: List[Message] = []
        threshold = self.settings.summary_threshold
        new = result.new_incidents
        if new and threshold > 0 and len(new) >= threshold:
            messages.append(self.aggregate(result, total_active))
        else:
            messages.extend(self.new_incident(e, total_active) for e in new)
        messages.extend(self.status_transition(e) for e in result.transitions)
        messages.extend(self.resource_changes(result.resource_changes))
        messages.extend(self.annotation_change(e) for e in result.annotation_changes)
        for s in summaries:
            if isinstance(s, HourlySummary):
                messages.append(self.hourly(s))
            elif isinstance(s, DailySummary):
                messages.append(self.daily(s))
        return messages

    def aggregate(self, result: DetectionResult, total_active: int) -> Message:
        counts = result.new_counts_by_area()
        samples = result.sample_ids_by_area()
        lines = []
        for area, count in counts.items():
            line = f"{area}: {count}"
            if samples.get(area):
                line += " (" + ", ".join(samples[area]) + ")"
            lines.append(line)
        lines.sort()
        body = "\n".join(lines) + f"\nTotal ativo no alvo: {total_active}"
        return Message(f"Novos incidentes ({len(result.new_incidents)})", body,
                       self.settings.tags, self.settings.priority)

    def new_incident(self, ev: NewIncident, total_active: int) -> Message:
        r = ev.record
        title = f"Novo em {ev.area_display} — {r.nature}"
        when = pretty_time(r.created)
        if when:
            title += f" ({when})"
        lines = [
            f"ID: {ev.incident_id}",
            f"Município: {ev.area_display}",
            f"Estado: {r.status}",
            _means_line(r),
        ]
        if r.annotation:
            lines.append(f"Extra: {r.annotation}")
        if r.kml:
            info = self.kml_saver(r.kml, self.settings.save_kml_dir, ev.incident_id)
            if info is not None:
                lines.append(f"Área: {info.area_km2:.2f} km², Perímetro: {info.perimeter_km:.1f} km")
                lines.append(f"Área URL: {info.uri}")
        lines.append(f"Total ativo no alvo: {total_active}")
        lines.append(f"Fogos: {FOGOS_INCIDENT_URL}{ev.incident_id}")

        tags, priority = resource_tags_and_priority(r, self.settings, self.settings.tags,
                                                    self.settings.priority)
        tags = _with_annotation_tags(tags, r)
        return Message(title, "\n".join(lines), tags, priority, maps_url(r, ev.area_display))

    def status_transition(self, ev: StatusTransition) -> Message:
        r = ev.record
        title = f"{ev.previous or 'Novo'} → {ev.current} — {ev.area_display}"
        lines = [f"ID: {ev.incident_id}", _means_line(r)]
        if r.annotation:
            lines.append(f"Extra: {r.annotation}")
        if ev.elapsed_seconds is not None:
            lines.append(f"Duração: {_duration(ev.elapsed_seconds)}")
        lines.append(f"Fogos: {FOGOS_INCIDENT_URL}{ev.incident_id}")

        priority = status_priority(ev.current, self.settings.priority)
        tags, priority = resource_tags_and_priority(r, self.settings, self.settings.tags, priority)
        if ev.reactivated:
            tags = add_tag(tags, "repeat")
            title = "Reativado: " + title
            priority = "2"
        if ev.concluded:
            tags = add_tag(tags, "white_check_mark")
        tags = _with_annotation_tags(tags, r)
        return Message(title, "\n".join(lines), tags, priority, maps_url(r, ev.area_display))

    def resource_changes(self, events: List[ResourceChange]) -> List[Message]:
        """One message per incident, listing every field that moved."""
        grouped: Dict[str, List[ResourceChange]] = {}
        for ev in events:
            grouped.setdefault(ev.incident_id, []).append(ev)
        out = []
        for incident_id, evs in grouped.items():
            first = evs[0]
            changes = ", ".join(f"{RESOURCE_LABELS.get(e.resource, e.resource)} {e.old}→{e.new}"
                                for e in evs)
            body = "\n".join([
                f"ID: {incident_id}",
                f"Alterações: {changes}",
                _means_line(first.record),
                f"Fogos: {FOGOS_INCIDENT_URL}{incident_id}",
            ])
            tags, priority = resource_tags_and_priority(
                first.record, self.settings, add_tag(self.settings.tags, "fire_engine"), "3")
            out.append(Message(f"Meios atualizados — {first.area_display}", body, tags, priority,
                               maps_url(first.record, first.area_display)))
        return out

    def annotation_change(self, ev: AnnotationChange) -> Message:
        body = "\n".join([
            f"ID: {ev.incident_id}",
            f"Extra: {ev.current or '(removido)'}",
            f"Fogos: {FOGOS_INCIDENT_URL}{ev.incident_id}",
        ])
        tags = add_tag(self.settings.tags, "memo")
        tags = _with_annotation_tags(tags, ev.record)
        return Message(f"Nota atualizada — {ev.area_display}", body, tags, "3",
                       maps_url(ev.record, ev.area_display))

    def hourly(self, s: HourlySummary) -> Message:
        return Message(f"Sumário horário ({s.at:%H}:00)", _summary_body(s.breakdown, ", "),
                       add_tag(self.settings.tags, "bar_chart"), "3")

    def daily(self, s: DailySummary) -> Message:
        return Message(f"Sumário diário ({s.at:%Y-%m-%d})", _summary_body(s.breakdown, "; "),
                       add_tag(self.settings.tags, "calendar"), "3")


def _duration(seconds: float) -> str:
    minutes = int(seconds // 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m" if hours else f"{minutes}m"


def _summary_body(b: Breakdown, sep: str) -> str:
    def fmt(pairs) -> str:
        if not pairs:
            return "(n/a)"
        return sep.join(f"{k or '?'}: {v}" for k, v in pairs)

    return (f"Ativos: {b.total}\nConcelhos: {fmt(b.by_area)}\n"
            f"Natureza: {fmt(b.by_nature)}\nEstados: {fmt(b.by_status)}")


# --- Transport ---

class Notifier:
    """Posts messages to an ntfy topic."""

    def __init__(self, settings: NotifySettings, timeout: float = HTTP_TIMEOUT_SECONDS,
                 session: Optional[requests.Session] = None,
                 clock: Callable[[], datetime] = lambda: datetime.now().astimezone()):
        self.settings = settings
        self.timeout = timeout
        self.session = session or requests.Session()
        self.clock = clock

    def notify(self, title: str, body: str, tags: str = "", priority: str = "",
               link: str = "") -> bool:
        s = self.settings
        if not s.topic.strip():
            return False
        if s.dry_run:
            logger.info("[dry-run ntfy] %s\n%s", title, body)
            return True

        if in_quiet_hours(s.quiet_hours, self.clock()):
            if not priority.strip() or priority > "3":
                priority = "3"
            tags = add_tag(tags, "zzz")

        headers = {
            "Content-Type": "text/plain; charset=utf-8",
            "Title": title,
            "Priority": priority or "3",
        }
        if tags:
            headers["Tags"] = tags
        if link.strip():
            headers["Click"] = link
        actions = build_actions(body, link)
        if actions:
            headers["Actions"] = actions

        endpoint = f"{s.url.rstrip('/')}/{s.topic}"
        try:
            # HTTP headers must be latin-1; ntfy accepts RFC 2047 style, so send UTF-8 bytes
            resp = self.session.post(
                endpoint,
                data=body.encode("utf-8"),
                headers={k: v.encode("utf-8") for k, v in headers.items()},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("ntfy error: %s", e)
            return False
        if resp.status_code >= 400:
            logger.warning("ntfy HTTP %d: %s", resp.status_code, (resp.text or "")[:4096].strip())
            return False
        return True

    def send(self, message: Message) -> bool:
        return self.notify(message.title, message.body, message.tags, message.priority, message.link)

    def send_all(self, messages: List[Message]) -> int:
        """Send in order; returns how many were accepted."""
        sent = 0
        for m in messages:
            if self.send(m):
                sent += 1
        return sent
