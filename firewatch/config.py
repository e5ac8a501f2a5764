"""Monitor configuration — municipalities, endpoints, filters, notification knobs.

Defaults live here as module constants. An optional YAML file
(firewatch.yaml, or FIREWATCH_CONFIG / --config) can set any of them, and
environment variables (a .env file is honoured) override the file.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

DEFAULT_MUNICIPIOS = [
    "Sertã",
    "Oleiros",
    "Castanheira de Pera",
    "Proença-a-Nova",
    "Vila de Rei",
    "Vila Velha de Ródão",
    "Sardoal",
    "Figueiró dos Vinhos",
    "Pedrógão Grande",
    "Pampilhosa da Serra",
    "Ferreira do Zêzere",
    "Fundão",
    "Castelo Branco",
    "Idanha-a-Nova",
    "Penamacor",
    "Belmonte",
    "Covilhã",
]

# Feed
FOGOS_URL = "https://api.fogos.pt/v2/incidents/active?geojson=true"
FOGOS_INCIDENT_URL = "https://fogos.pt/fogo/"
DEFAULT_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "firewatch/0.4 (python-requests)",
    "Accept-Language": "pt-PT,pt;q=0.9,en;q=0.8",
    "Referer": "https://fogos.pt/",
    "Origin": "https://fogos.pt",
    "Cache-Control": "no-cache",
}
HTTP_TIMEOUT_SECONDS = 20.0
FALLBACK_BACKOFF_SECONDS = 0.2  # multiplied by attempt number

# Notifications
NTFY_URL = "https://ntfy.sh"
NTFY_TOPIC = "bombeiros-serta"
NTFY_PRIORITY = "5"
NTFY_TAGS = "fire,rotating_light"
SUMMARY_SAMPLE_IDS = 5

# Periodic summaries
DAILY_SUMMARY_HOUR = 8

# State
STATE_FILE = "last_ids.json"
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "firewatch.yaml"

POLL_SECONDS = 30

_LIST_SPLIT = re.compile(r"[,;|]")
_INT_LIST_SPLIT = re.compile(r"[,;\s]+")


def split_list(value: Any) -> List[str]:
    """Accept a YAML list or a delimited string; drop blanks."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        items = [str(v) for v in value]
    else:
        items = _LIST_SPLIT.split(str(value))
    return [s.strip() for s in items if str(s).strip()]


def split_ints(value: Any) -> Set[int]:
    if value is None:
        return set()
    if isinstance(value, (list, tuple, set)):
        parts = [str(v) for v in value]
    else:
        parts = _INT_LIST_SPLIT.split(str(value))
    out = set()
    for p in parts:
        p = p.strip()
        try:
            out.add(int(p))
        except ValueError:
            continue
    return out


def _as_float(value: Any, default: float) -> float:
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def _as_int(value: Any, default: int) -> int:
    try:
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def _as_flag(value: Any, default: bool) -> bool:
    """"0"/"false"/"no"/"off" are false, anything else non-blank is true."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if not text:
        return default
    return text not in ("0", "false", "no", "off")


@dataclass
class FilterSettings:
    districts: List[str] = field(default_factory=list)
    regions: List[str] = field(default_factory=list)
    sub_regions: List[str] = field(default_factory=list)
    parishes: List[str] = field(default_factory=list)
    exclude_status_codes: Set[int] = field(default_factory=set)
    include_nature: List[str] = field(default_factory=list)
    include_nature_codes: List[str] = field(default_factory=list)
    exclude_nature_codes: List[str] = field(default_factory=list)
    include_status: List[str] = field(default_factory=list)
    exclude_status: List[str] = field(default_factory=list)
    center_lat: Optional[float] = None
    center_lon: Optional[float] = None
    radius_km: float = 0.0


@dataclass
class NotifySettings:
    url: str = NTFY_URL
    topic: str = NTFY_TOPIC
    priority: str = NTFY_PRIORITY
    tags: str = NTFY_TAGS
    dry_run: bool = False
    test_on_start: bool = False
    quiet_hours: str = ""
    summary_threshold: int = 0
    min_man: int = 0
    min_terrain: int = 0
    min_aerial: int = 0
    min_aquatic: int = 0
    save_kml_dir: str = ""


@dataclass
class Settings:
    municipios: List[str] = field(default_factory=lambda: list(DEFAULT_MUNICIPIOS))
    feed_urls: List[str] = field(default_factory=lambda: [FOGOS_URL])
    api_key: str = ""
    http_timeout: float = HTTP_TIMEOUT_SECONDS
    state_file: Path = field(default_factory=lambda: Path(STATE_FILE))
    state_ttl_hours: float = 0.0
    poll_seconds: int = POLL_SECONDS
    summary_hourly: bool = True
    summary_daily: bool = True
    debug: bool = False
    filters: FilterSettings = field(default_factory=FilterSettings)
    notify: NotifySettings = field(default_factory=NotifySettings)


def load_yaml(path: Optional[Path]) -> Dict[str, Any]:
    if path is None or not Path(path).exists():
        return {}
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: top level is not a mapping", path)
        return {}
    return data


def load_settings(config_path: Optional[Path] = None,
                  env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from defaults, the YAML file, then the environment."""
    env = os.environ if env is None else env

    def get(name: str, file_value: Any = None) -> Any:
        v = env.get(name)
        if v is not None and str(v).strip() != "":
            return v.strip()
        return file_value

    if config_path is None:
        path_str = get("FIREWATCH_CONFIG")
        config_path = Path(path_str) if path_str else DEFAULT_CONFIG_PATH
    data = load_yaml(config_path)
    fdata = data.get("filters") or {}
    rdata = data.get("radius") or {}
    ndata = data.get("notify") or {}
    sdata = data.get("summary") or {}

    s = Settings()
    muni = get("MUNICIPIOS", get("MUNICIPIO", data.get("municipios")))
    if muni:
        s.municipios = split_list(muni)

    base_url = get("FOGOS_URL", data.get("feed_url")) or FOGOS_URL
    fallbacks = get("FOGOS_FALLBACK_URLS", data.get("fallback_urls"))
    if isinstance(fallbacks, str):
        fallbacks = [u for u in re.split(r"[,;\s]+", fallbacks) if u]
    s.feed_urls = [base_url] + list(fallbacks or [])
    s.api_key = get("FOGOS_API_KEY") or ""
    s.http_timeout = _as_float(get("HTTP_TIMEOUT_SECONDS", data.get("http_timeout")), HTTP_TIMEOUT_SECONDS)

    state_file = Path(get("STATE_FILE", data.get("state_file")) or STATE_FILE)
    s.state_file = state_file if state_file.is_absolute() else Path.cwd() / state_file
    s.state_ttl_hours = _as_float(get("STATE_TTL_HOURS", data.get("state_ttl_hours")), 0.0)
    s.poll_seconds = _as_int(get("POLL_SECONDS", data.get("poll_seconds")), POLL_SECONDS)
    s.summary_hourly = _as_flag(get("SUMMARY_HOURLY", sdata.get("hourly")), True)
    s.summary_daily = _as_flag(get("SUMMARY_DAILY", sdata.get("daily")), True)
    log_level = (get("LOG_LEVEL") or "").lower()
    s.debug = log_level == "debug" or _as_flag(get("DEBUG"), False)

    f = s.filters
    f.districts = split_list(get("DISTRICTS", fdata.get("districts")))
    f.regions = split_list(get("REGIOES", fdata.get("regions")))
    f.sub_regions = split_list(get("SUBREGIOES", fdata.get("sub_regions")))
    f.parishes = split_list(get("FREGUESIAS", fdata.get("parishes")))
    f.exclude_status_codes = split_ints(get("EXCLUDE_STATUS_CODES", fdata.get("exclude_status_codes")))
    f.include_nature = split_list(get("INCLUDE_NATUREZA", fdata.get("include_nature")))
    f.include_nature_codes = split_list(get("INCLUDE_NATUREZA_CODES", fdata.get("include_nature_codes")))
    f.exclude_nature_codes = split_list(get("EXCLUDE_NATUREZA_CODES", fdata.get("exclude_nature_codes")))
    f.include_status = split_list(get("INCLUDE_STATUS", fdata.get("include_status")))
    f.exclude_status = split_list(get("EXCLUDE_STATUS", fdata.get("exclude_status")))
    lat = get("CENTER_LAT", rdata.get("center_lat"))
    lon = get("CENTER_LON", rdata.get("center_lon"))
    f.center_lat = _as_float(lat, 0.0) if lat is not None else None
    f.center_lon = _as_float(lon, 0.0) if lon is not None else None
    f.radius_km = _as_float(get("RADIUS_KM", rdata.get("km")), 0.0)

    n = s.notify
    n.url = get("NTFY_URL", ndata.get("url")) or NTFY_URL
    n.topic = get("NTFY_TOPIC", ndata.get("topic")) or NTFY_TOPIC
    n.priority = str(get("NTFY_PRIORITY", ndata.get("priority")) or NTFY_PRIORITY)
    n.tags = get("NTFY_TAGS", ndata.get("tags")) or NTFY_TAGS
    n.dry_run = _as_flag(get("NTFY_DRYRUN", ndata.get("dry_run")), False)
    n.test_on_start = _as_flag(get("NTFY_TEST", ndata.get("test_on_start")), False)
    n.quiet_hours = str(get("QUIET_HOURS", ndata.get("quiet_hours")) or "")
    n.summary_threshold = _as_int(get("NTFY_SUMMARY_THRESHOLD", ndata.get("summary_threshold")), 0)
    n.min_man = _as_int(get("MIN_MAN", ndata.get("min_man")), 0)
    n.min_terrain = _as_int(get("MIN_TERRAIN", ndata.get("min_terrain")), 0)
    n.min_aerial = _as_int(get("MIN_AERIAL", ndata.get("min_aerial")), 0)
    n.min_aquatic = _as_int(get("MIN_AQUATIC", ndata.get("min_aquatic")), 0)
    n.save_kml_dir = str(get("SAVE_KML_DIR", ndata.get("save_kml_dir")) or "")

    return s
