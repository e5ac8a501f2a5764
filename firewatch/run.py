"""CLI entry point — poll the feed, detect changes, notify, persist.

Usage:
    python -m firewatch.run                    # poll every POLL_SECONDS
    python -m firewatch.run --once             # single cycle; exit 1 if the feed is unreachable
    python -m firewatch.run --config my.yaml   # filters/notify settings from YAML
    python -m firewatch.run --dry-run --debug  # log notifications instead of posting
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from rich.console import Console
from rich.table import Table

from firewatch.config import Settings, load_settings
from firewatch.detect import DetectionResult, detect, periodic_summaries
from firewatch.events import Message
from firewatch.fetchers.base import FeedFetcher, FetchError
from firewatch.fetchers.fogos import FogosFetcher
from firewatch.filters import filter_records, from_settings
from firewatch.normalize import WantedSet, area_label, make_wanted_set
from firewatch.notify import MessageRenderer, Notifier
from firewatch.state import (
    State,
    canonicalize,
    ensure_areas,
    format_ts,
    load_state,
    prune,
    save_state,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class CycleReport:
    fetched: int = 0
    active: int = 0
    events: int = 0
    new: int = 0
    transitions: int = 0
    pruned: int = 0
    messages: int = 0
    sent: int = 0
    saved: bool = False
    by_area: dict = field(default_factory=dict)
    timestamp: str = ""


class Monitor:
    """One fetch → filter → detect → persist → notify cycle, repeatable."""

    def __init__(self, settings: Settings, fetcher: FeedFetcher, notifier: Notifier,
                 renderer: Optional[MessageRenderer] = None,
                 clock: Callable[[], datetime] = lambda: datetime.now().astimezone()):
        self.settings = settings
        self.fetcher = fetcher
        self.notifier = notifier
        self.renderer = renderer or MessageRenderer(settings.notify)
        self.clock = clock
        self.wanted: WantedSet = make_wanted_set(settings.municipios)
        self.admin, self.nature_status, self.radius = from_settings(settings.filters)
        self.state: Optional[State] = None

    def load(self) -> State:
        """State is read from disk once, then kept in memory between cycles."""
        if self.state is None:
            self.state = canonicalize(load_state(self.settings.state_file, self.wanted), self.wanted)
        return self.state

    def run_cycle(self) -> CycleReport:
        """Run one cycle.

        FetchError propagates untouched. Any other error also propagates, after
        the in-memory State is dropped so nothing detected this cycle is lost.
        """
        records = self.fetcher.fetch()
        now = self.clock()
        report = CycleReport(fetched=len(records), timestamp=format_ts(now))

        filtered = filter_records(records, self.wanted, self.admin, self.nature_status, self.radius)
        report.active = len(filtered)
        logger.debug("Fetched %d features; filtered to %d", len(records), len(filtered))

        state = self.load()
        try:
            return self._process(state, filtered, now, report)
        except Exception:
            # Drop the half-updated in-memory State; the next cycle reloads the
            # last saved snapshot and detects the same changes again
            self.state = None
            raise

    def _process(self, state: State, filtered: list, now: datetime,
                 report: CycleReport) -> CycleReport:
        s = self.settings
        ensure_areas(state, self.wanted)

        # Outbox left behind by a cycle that died between save and dispatch
        leftover: List[Message] = list(state.pending)
        if leftover:
            logger.warning("Re-sending %d notifications from an interrupted cycle", len(leftover))

        marks_before = (state.last_hourly_mark, state.last_daily_mark)
        result: DetectionResult = detect(filtered, state, self.wanted, now)
        report.pruned = prune(state, s.state_ttl_hours, now)
        summaries = periodic_summaries(filtered, state, now, s.summary_hourly, s.summary_daily)
        marks_moved = marks_before != (state.last_hourly_mark, state.last_daily_mark)

        report.events = len(result.events)
        report.new = len(result.new_incidents)
        report.transitions = len(result.transitions)
        for ev in result.new_incidents:
            report.by_area[ev.area_display] = report.by_area.get(ev.area_display, 0) + 1
        for seconds in result.conclusion_times:
            logger.info("Incident concluded after %.0fs", seconds)

        messages = leftover + self.renderer.render(result, summaries, len(filtered))
        report.messages = len(messages)

        # Liveness stamps change every cycle but only matter on disk when TTL pruning is on
        dirty = messages or result.changed or report.pruned or marks_moved or s.state_ttl_hours > 0
        if not dirty:
            logger.debug("No changes; state not saved")
            return report

        state.pending = messages
        report.saved = save_state(s.state_file, state)
        report.sent = self.notifier.send_all(messages)
        if messages:
            state.pending = []
            report.saved = save_state(s.state_file, state) and report.saved
        return report


class Scheduler:
    """Runs Monitor cycles every `poll_seconds`; 0 or less means once."""

    def __init__(self, monitor: Monitor, poll_seconds: int, console: Optional[Console] = None):
        self.monitor = monitor
        self.poll_seconds = poll_seconds
        self.console = console or Console()
        self.stop_event = threading.Event()

    def stop(self, *_args) -> None:
        self.stop_event.set()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self.stop)
        if hasattr(signal, "SIGTERM"):
            signal.signal(signal.SIGTERM, self.stop)

    def run_once(self) -> int:
        try:
            report = self.monitor.run_cycle()
        except FetchError as e:
            logger.error("Error: %s", e)
            return 1
        except Exception:
            logger.exception("Cycle failed")
            return 1
        print_report(self.console, report)
        return 0

    def run(self) -> int:
        if self.poll_seconds <= 0:
            return self.run_once()
        while not self.stop_event.is_set():
            try:
                report = self.monitor.run_cycle()
                print_report(self.console, report)
            except FetchError as e:
                logger.error("Error: %s", e)
            except Exception:
                logger.exception("Cycle failed; retrying next poll")
            # Returns early when a signal sets the event
            self.stop_event.wait(self.poll_seconds)
        self.console.print("Stopping...")
        return 0


def print_report(console: Console, report: CycleReport) -> None:
    table = Table(title=f"Cycle {report.timestamp}", show_header=False, box=None)
    table.add_row("Fetched", str(report.fetched))
    table.add_row("Active in target", str(report.active))
    table.add_row("New", str(report.new))
    table.add_row("Status changes", str(report.transitions))
    table.add_row("Notifications", f"{report.sent}/{report.messages}")
    if report.pruned:
        table.add_row("Pruned", str(report.pruned))
    for area, count in sorted(report.by_area.items()):
        table.add_row(f"  {area}", str(count))
    console.print(table)


def configure_logging(debug: bool) -> None:
    logging.basicConfig(format=LOG_FORMAT, level=logging.DEBUG if debug else logging.INFO)
    # requests/urllib3 debug output drowns the cycle logs
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Fogos.pt incident monitor")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--config", type=Path, help="YAML settings file")
    parser.add_argument("--state", type=Path, help="State file path (overrides STATE_FILE)")
    parser.add_argument("--dry-run", action="store_true", help="Log notifications instead of posting")
    parser.add_argument("--test-notify", action="store_true", help="Send a test notification on start")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    args = parser.parse_args(argv)

    settings = load_settings(args.config)
    if args.state:
        settings.state_file = args.state
    if args.dry_run:
        settings.notify.dry_run = True
    if args.test_notify:
        settings.notify.test_on_start = True
    if args.once:
        settings.poll_seconds = 0
    configure_logging(args.debug or settings.debug)

    console = Console()
    fetcher = FogosFetcher(settings.feed_urls, api_key=settings.api_key,
                           timeout=settings.http_timeout)
    notifier = Notifier(settings.notify, timeout=settings.http_timeout)
    monitor = Monitor(settings, fetcher, notifier)

    label = area_label(settings.municipios)
    if settings.poll_seconds > 0:
        console.print(f"[bold cyan]firewatch[/bold cyan] polling every {settings.poll_seconds}s for: {label}")
    else:
        console.print(f"[bold cyan]firewatch[/bold cyan] single run for: {label}")

    if settings.notify.test_on_start:
        notifier.notify("[teste] monitor iniciado", format_ts(datetime.now().astimezone()),
                        "white_check_mark", "3")

    scheduler = Scheduler(monitor, settings.poll_seconds, console)
    scheduler.install_signal_handlers()
    return scheduler.run()


if __name__ == "__main__":
    sys.exit(main())
