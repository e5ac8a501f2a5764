"""Base feed fetcher: one requests session, shared headers, fallback URLs."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

import requests

from firewatch.config import DEFAULT_HEADERS, FALLBACK_BACKOFF_SECONDS, HTTP_TIMEOUT_SECONDS
from firewatch.records import IncidentRecord

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """Every candidate endpoint failed for this cycle."""


class FeedFetcher:
    """Base class for fetching incident records from a JSON feed.

    Subclasses decide which URLs to try and how to turn a decoded body into
    records; the session, headers, timeout and fallback loop live here.
    """

    source_name: str = ""

    def __init__(self, urls: List[str], api_key: Optional[str] = None,
                 timeout: float = HTTP_TIMEOUT_SECONDS,
                 session: Optional[requests.Session] = None):
        self.urls = [u for u in urls if u]
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)
        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"

    def request(self, url: str, headers: Optional[Dict[str, str]] = None) -> requests.Response:
        resp = self.session.get(url, headers=headers or {}, timeout=self.timeout)
        if resp.status_code >= 400:
            snippet = (resp.text or "")[:4096].strip()
            raise requests.HTTPError(f"http {resp.status_code} GET {url}: {snippet}", response=resp)
        return resp

    def fetch(self) -> List[IncidentRecord]:
        """Try each URL in turn; the first one that yields records wins."""
        last_err: Optional[Exception] = None
        for i, url in enumerate(self.urls):
            try:
                return self.fetch_url(url, primary=(i == 0))
            except (requests.RequestException, ValueError) as e:
                last_err = e
                logger.warning("%s fetch from %s failed: %s", self.source_name or "Feed", url, e)
                time.sleep(FALLBACK_BACKOFF_SECONDS * (i + 1))
        if last_err is None:
            raise FetchError("no endpoints configured")
        raise FetchError(str(last_err)) from last_err

    def fetch_url(self, url: str, primary: bool = False) -> List[IncidentRecord]:
        resp = self.request(url)
        return self.parse(resp.json())

    def parse(self, data: Any) -> List[IncidentRecord]:
        """Override to turn a decoded body into records."""
        raise NotImplementedError
