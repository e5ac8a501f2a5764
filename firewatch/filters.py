"""Record filters — area membership, admin units, nature/status rules, radius.

Stages run in a fixed order and a record has to pass all of them. Nothing
here mutates state; the only side effect is debug logging.

Nature/status include/exclude rules match on substrings of the folded text
as well as exact values. That is deliberately loose ("curso" matches
"Em Curso") and can cross-match short codes, so keep rule values specific.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from firewatch.config import FilterSettings
from firewatch.normalize import WantedSet, fold, normalize
from firewatch.records import IncidentRecord

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


@dataclass
class AdminFilters:
    districts: Set[str] = field(default_factory=set)
    regions: Set[str] = field(default_factory=set)
    sub_regions: Set[str] = field(default_factory=set)
    parishes: Set[str] = field(default_factory=set)


@dataclass
class NatureStatusFilters:
    exclude_status_codes: Set[int] = field(default_factory=set)
    include_nature: Set[str] = field(default_factory=set)
    include_nature_codes: Set[str] = field(default_factory=set)
    exclude_nature_codes: Set[str] = field(default_factory=set)
    include_status: Set[str] = field(default_factory=set)
    exclude_status: Set[str] = field(default_factory=set)


@dataclass
class RadiusFilter:
    center_lat: Optional[float] = None
    center_lon: Optional[float] = None
    radius_km: float = 0.0

    @property
    def enabled(self) -> bool:
        return (self.radius_km > 0 and self.center_lat is not None
                and self.center_lon is not None)


def _folded(values: Iterable[str]) -> Set[str]:
    return {fold(v) for v in values if fold(v)}


def from_settings(fs: FilterSettings):
    """Split FilterSettings into the three per-stage filter objects."""
    admin = AdminFilters(
        districts=_folded(fs.districts),
        regions=_folded(fs.regions),
        sub_regions=_folded(fs.sub_regions),
        parishes=_folded(fs.parishes),
    )
    nature_status = NatureStatusFilters(
        exclude_status_codes=set(fs.exclude_status_codes),
        include_nature=_folded(fs.include_nature),
        include_nature_codes=_folded(fs.include_nature_codes),
        exclude_nature_codes=_folded(fs.exclude_nature_codes),
        include_status=_folded(fs.include_status),
        exclude_status=_folded(fs.exclude_status),
    )
    radius = RadiusFilter(fs.center_lat, fs.center_lon, fs.radius_km)
    return admin, nature_status, radius


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _matches(text: str, rules: Set[str]) -> bool:
    """Exact or substring match of folded `text` against folded rules."""
    if not text:
        return False
    if text in rules:
        return True
    return any(rule in text for rule in rules)


# --- Stages ---

def keep_by_area(record: IncidentRecord, wanted: WantedSet) -> bool:
    key = normalize(record.area_name)
    return bool(key) and key in wanted


def keep_by_admin_units(record: IncidentRecord, admin: AdminFilters) -> bool:
    checks = (
        (admin.districts, record.district),
        (admin.regions, record.region),
        (admin.sub_regions, record.sub_region),
        (admin.parishes, record.parish),
    )
    for allowed, value in checks:
        if allowed and fold(value) not in allowed:
            return False
    return True


def keep_by_nature_and_status(record: IncidentRecord, rules: NatureStatusFilters) -> bool:
    if rules.exclude_status_codes and record.status_code is not None:
        if int(record.status_code) in rules.exclude_status_codes:
            return False

    code = fold(record.nature_code)
    if rules.exclude_nature_codes and code in rules.exclude_nature_codes:
        return False
    if rules.include_nature_codes and code not in rules.include_nature_codes:
        return False

    status = record.status_folded
    if rules.exclude_status and _matches(status, rules.exclude_status):
        return False
    if rules.include_status and not _matches(status, rules.include_status):
        return False

    if rules.include_nature:
        nature = fold(record.nature)
        if nature in rules.include_nature or code in rules.include_nature:
            return True
        return _matches(nature, rules.include_nature)
    return True


def keep_by_radius(record: IncidentRecord, radius: RadiusFilter) -> bool:
    if not radius.enabled:
        return True
    if record.coordinates is None:
        return False
    lat, lon = record.coordinates
    return haversine_km(radius.center_lat, radius.center_lon, lat, lon) <= radius.radius_km


def filter_records(records: Iterable[IncidentRecord], wanted: WantedSet,
                   admin: Optional[AdminFilters] = None,
                   nature_status: Optional[NatureStatusFilters] = None,
                   radius: Optional[RadiusFilter] = None) -> List[IncidentRecord]:
    """Records that pass every configured stage, in input order."""
    admin = admin or AdminFilters()
    nature_status = nature_status or NatureStatusFilters()
    radius = radius or RadiusFilter()

    records = list(records)
    total = len(records)
    out = [r for r in records if keep_by_area(r, wanted)]
    after_area = len(out)
    out = [r for r in out if keep_by_admin_units(r, admin)]
    after_admin = len(out)
    out = [r for r in out if keep_by_nature_and_status(r, nature_status)]
    after_rules = len(out)
    out = [r for r in out if keep_by_radius(r, radius)]

    logger.debug("Filtered %d records: area=%d admin=%d nature/status=%d radius=%d",
                 total, after_area, after_admin, after_rules, len(out))
    return out
