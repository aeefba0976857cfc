"""Hacker News "Ask HN: Who is hiring?": Algolia API + AI extraction.

Comments are free text, so each one goes through the AI client. Parsed
postings are cached in the document store for six hours and shared by every
user; per-query filtering happens after the cache.
"""
from __future__ import annotations

import time
from dataclasses import asdict
from typing import Callable

import requests

from autopilot.ai_client import AIClient
from autopilot.errors import ExternalServiceError
from autopilot.log import get_logger
from autopilot.models import RawJob, Salary
from autopilot.prompts import HN_EXTRACTOR
from autopilot.retry import is_client_error, retry
from autopilot.schemas import ExtractedJob
from autopilot.sources.base import JobQuery, JobSource, SourceError, strip_html
from autopilot.storage import DocumentStore

log = get_logger(__name__)

ALGOLIA_SEARCH = "https://hn.algolia.com/api/v1/search_by_date"
ALGOLIA_ITEMS = "https://hn.algolia.com/api/v1/items"
CACHE_KEY = "cache/hackernews/jobs.json"
CACHE_TTL = 6 * 60 * 60


def _to_raw(data: dict) -> RawJob:
    data = dict(data)
    data["salary"] = Salary.from_dict(data.get("salary"))
    return RawJob(**data)


class HackerNewsSource(JobSource):
    name = "hackernews"

    def __init__(
        self,
        ai: AIClient,
        store: DocumentStore,
        timeout: float = 60.0,
        max_comments: int = 40,
        cache_ttl: float = CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ai = ai
        self.store = store
        self.timeout = timeout
        self.max_comments = max_comments
        self.cache_ttl = cache_ttl
        self._clock = clock

    @retry(
        max_attempts=2,
        base_delay=1.5,
        retryable=(requests.RequestException, OSError),
        give_up=is_client_error,
    )
    def _get(self, url: str, params: dict | None = None) -> dict:
        r = requests.get(url, params=params, timeout=15)
        r.raise_for_status()
        return r.json()

    def fetch(self, query: JobQuery) -> list[RawJob]:
        jobs = self._cached()
        if jobs is None:
            try:
                jobs = self._fetch_thread()
            except (requests.RequestException, OSError, ValueError) as exc:
                raise SourceError(self.name, str(exc))
            self.store.put(
                CACHE_KEY,
                {"expires_at": self._clock() + self.cache_ttl, "jobs": [asdict(j) for j in jobs]},
            )
            log.info("Cached %d HN jobs", len(jobs))
        matched = [j for j in jobs if self.matches_query(j, query)]
        log.info("HN returned %d matching jobs (of %d)", len(matched), len(jobs))
        return matched

    def _cached(self) -> list[RawJob] | None:
        cache = self.store.get(CACHE_KEY)
        if not cache or cache.get("expires_at", 0) < self._clock():
            return None
        log.debug("Using cached HN jobs")
        return [_to_raw(j) for j in cache.get("jobs", [])]

    def _fetch_thread(self) -> list[RawJob]:
        found = self._get(
            ALGOLIA_SEARCH,
            {"query": "Ask HN: Who is hiring?", "tags": "story,author_whoishiring"},
        )
        hits = found.get("hits") or []
        if not hits:
            log.warning("No 'Who is hiring' thread found")
            return []
        story = hits[0]
        log.info("Parsing HN thread %s (%s)", story.get("objectID"), story.get("title"))

        item = self._get(f"{ALGOLIA_ITEMS}/{story['objectID']}")
        comments = [c for c in item.get("children") or [] if c.get("text")]
        jobs: list[RawJob] = []
        for comment in comments[: self.max_comments]:
            job = self._extract(comment)
            if job is not None:
                jobs.append(job)
        return jobs

    def _extract(self, comment: dict) -> RawJob | None:
        text = strip_html(comment["text"])
        try:
            extracted = self.ai.complete_structured(HN_EXTRACTOR, text[:4000], ExtractedJob)
        except ExternalServiceError as exc:
            log.warning("HN comment %s not parsed: %s", comment.get("id"), exc)
            return None
        if not extracted.is_job_posting or not extracted.company:
            return None
        lo, hi = extracted.salary_min, extracted.salary_max
        return RawJob(
            external_id=str(comment.get("id")),
            platform=self.name,
            title=extracted.title or "Software Engineer",
            company=extracted.company,
            location=extracted.location,
            remote=extracted.remote,
            description=extracted.description or text,
            url=extracted.apply_url or f"https://news.ycombinator.com/item?id={comment.get('id')}",
            salary=Salary(min=lo, max=hi, currency=extracted.currency or "USD") if lo or hi else None,
            job_type=extracted.job_type,
            tags=extracted.tags,
            posted_at=comment.get("created_at"),
        )
