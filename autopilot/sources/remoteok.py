"""RemoteOK: free public JSON feed of remote jobs (no API key required).

Docs: https://remoteok.com/api
"""
from __future__ import annotations

import threading
import time

import requests

from autopilot.log import get_logger
from autopilot.models import RawJob, Salary
from autopilot.retry import is_client_error, retry
from autopilot.sources.base import JobQuery, JobSource, SourceError, strip_html

log = get_logger(__name__)

API_URL = "https://remoteok.com/api"
USER_AGENT = "autopilot/0.4 (job search automation)"
CACHE_TTL = 5 * 60


class RemoteOKSource(JobSource):
    name = "remoteok"

    def __init__(self, timeout: float = 15.0, cache_ttl: float = CACHE_TTL) -> None:
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        # The feed ignores the query, so one unfiltered copy serves every search.
        self._feed: tuple[float, list[RawJob]] | None = None
        self._lock = threading.Lock()

    @retry(
        max_attempts=2,
        base_delay=1.5,
        retryable=(requests.RequestException, OSError),
        give_up=is_client_error,
    )
    def _download(self) -> list[dict]:
        r = requests.get(API_URL, headers={"User-Agent": USER_AGENT}, timeout=self.timeout)
        r.raise_for_status()
        data = r.json()
        # First element is a legal/metadata notice, the rest are postings.
        return [hit for hit in data[1:] if isinstance(hit, dict)] if isinstance(data, list) else []

    def _postings(self) -> list[RawJob]:
        with self._lock:
            cached = self._feed
        if cached and time.monotonic() - cached[0] < self.cache_ttl:
            log.debug("RemoteOK feed cache hit")
            return cached[1]

        try:
            hits = self._download()
        except (requests.RequestException, OSError, ValueError) as exc:
            raise SourceError(self.name, str(exc))

        postings = [self._convert(h) for h in hits]
        with self._lock:
            self._feed = (time.monotonic(), postings)
        return postings

    def fetch(self, query: JobQuery) -> list[RawJob]:
        postings = self._postings()
        jobs = [j for j in postings if self.matches_query(j, query)]
        log.info("RemoteOK returned %d matching jobs (of %d)", len(jobs), len(postings))
        return jobs

    def _convert(self, hit: dict) -> RawJob:
        lo, hi = hit.get("salary_min") or None, hit.get("salary_max") or None
        return RawJob(
            external_id=str(hit.get("id") or hit.get("slug", "")),
            platform=self.name,
            title=hit.get("position", ""),
            company=hit.get("company", ""),
            location=hit.get("location") or "Remote",
            remote=True,
            description=strip_html(hit.get("description", "")),
            url=hit.get("apply_url") or hit.get("url", ""),
            salary=Salary(min=lo, max=hi, currency="USD") if lo or hi else None,
            tags=list(hit.get("tags") or []),
            posted_at=hit.get("date"),
        )
