"""Remotive: free API for remote tech jobs (no API key required).

Docs: https://remotive.com/api/remote-jobs
"""
from __future__ import annotations

import requests

from autopilot.log import get_logger
from autopilot.models import RawJob
from autopilot.retry import is_client_error, retry
from autopilot.sources.base import JobQuery, JobSource, SourceError, strip_html

log = get_logger(__name__)

API_URL = "https://remotive.com/api/remote-jobs"

# Broad keywords mapped to Remotive categories, used when a keyword search is empty.
_CATEGORY_MAP: dict[str, str] = {
    "devops": "devops",
    "sre": "devops",
    "cloud": "devops",
    "backend": "software-dev",
    "frontend": "software-dev",
    "software": "software-dev",
    "engineer": "software-dev",
    "python": "software-dev",
    "product": "product",
    "data": "data",
    "qa": "qa",
    "support": "customer-support",
}

_GENERIC = {"senior", "junior", "lead", "staff", "principal", "manager",
            "engineer", "specialist", "consultant", "ii", "iii", "iv"}


def _guess_category(keywords: list[str]) -> str:
    for text in keywords:
        for keyword, category in _CATEGORY_MAP.items():
            if keyword in text.lower():
                return category
    return ""


def _search_terms(keywords: list[str]) -> list[str]:
    """Remotive works best with short, distinctive terms rather than full titles."""
    terms: list[str] = []
    for kw in keywords[:3]:
        words = [w for w in kw.lower().split() if w not in _GENERIC]
        if words and words[0] not in terms:
            terms.append(words[0])
    return terms or [""]


class RemotiveSource(JobSource):
    name = "remotive"

    def __init__(self, timeout: float = 15.0, limit: int = 50) -> None:
        self.timeout = timeout
        self.limit = limit

    @retry(
        max_attempts=2,
        base_delay=1.5,
        retryable=(requests.RequestException, OSError),
        give_up=is_client_error,
    )
    def _fetch(self, search: str, category: str) -> list[dict]:
        params: dict = {"limit": self.limit}
        if search:
            params["search"] = search
        if category:
            params["category"] = category
        r = requests.get(API_URL, params=params, timeout=self.timeout)
        r.raise_for_status()
        return r.json().get("jobs", [])

    def fetch(self, query: JobQuery) -> list[RawJob]:
        hits: dict[str, dict] = {}
        try:
            for term in _search_terms(query.keywords):
                for hit in self._fetch(term, ""):
                    hits.setdefault(str(hit.get("id")), hit)
            category = _guess_category(query.keywords)
            if not hits and category:
                log.debug("Remotive keyword search empty, falling back to category=%s", category)
                for hit in self._fetch("", category):
                    hits.setdefault(str(hit.get("id")), hit)
        except (requests.RequestException, OSError, ValueError) as exc:
            raise SourceError(self.name, str(exc))

        jobs = [j for j in (self._convert(h) for h in hits.values()) if self.matches_query(j, query)]
        log.info("Remotive returned %d matching jobs (of %d)", len(jobs), len(hits))
        return jobs

    def _convert(self, hit: dict) -> RawJob:
        title = hit.get("title", "")
        company = hit.get("company_name", "")
        return RawJob(
            external_id=str(hit.get("id") or f"{title}{company}"),
            platform=self.name,
            title=title,
            company=company,
            location=hit.get("candidate_required_location") or "Remote",
            remote=True,
            description=strip_html(hit.get("description", "")),
            url=hit.get("url", ""),
            job_type=(hit.get("job_type") or "").replace("_", "-") or None,
            tags=list(hit.get("tags") or []),
            posted_at=hit.get("publication_date"),
        )
