"""Events emitted by the change detector, and the rendered message type."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from firewatch.records import IncidentRecord


@dataclass
class IncidentEvent:
    area_key: str
    area_display: str
    incident_id: str
    record: IncidentRecord = field(repr=False)


@dataclass
class NewIncident(IncidentEvent):
    pass


@dataclass
class StatusTransition(IncidentEvent):
    previous: str = ""
    current: str = ""
    concluded: bool = False
    reactivated: bool = False
    # seconds from first seen to conclusion, when it concluded this cycle
    elapsed_seconds: Optional[float] = None


@dataclass
class ResourceChange(IncidentEvent):
    """One changed resource field (a ResourceCounts attribute name)."""

    resource: str = ""
    old: int = 0
    new: int = 0


@dataclass
class AnnotationChange(IncidentEvent):
    previous: str = ""
    current: str = ""


@dataclass
class Breakdown:
    """Active-incident counts for a summary, most frequent first."""

    total: int = 0
    by_area: List[Tuple[str, int]] = field(default_factory=list)
    by_nature: List[Tuple[str, int]] = field(default_factory=list)
    by_status: List[Tuple[str, int]] = field(default_factory=list)


@dataclass
class HourlySummary:
    at: datetime
    breakdown: Breakdown


@dataclass
class DailySummary:
    at: datetime
    breakdown: Breakdown


@dataclass
class Message:
    """A notification ready for the transport."""

    title: str
    body: str
    tags: str = ""
    priority: str = ""
    link: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(**{k: str(data.get(k) or "") for k in ("title", "body", "tags", "priority", "link")})
