"""LinkedIn Jobs via RapidAPI: direct LinkedIn listings.

Uses the "linkedin-jobs-search" API on RapidAPI
(https://rapidapi.com/jaypat87/api/linkedin-jobs-search).
"""
from __future__ import annotations

import requests

from autopilot.log import get_logger
from autopilot.models import RawJob
from autopilot.retry import is_client_error, retry
from autopilot.sources.base import JobQuery, JobSource, SourceError

log = get_logger(__name__)

API_HOST = "linkedin-jobs-search.p.rapidapi.com"
API_URL = f"https://{API_HOST}/"


class LinkedInSource(JobSource):
    name = "linkedin"

    def __init__(self, api_key: str, timeout: float = 20.0) -> None:
        self.api_key = api_key
        self.timeout = timeout

    @retry(
        max_attempts=3,
        base_delay=2.0,
        retryable=(requests.RequestException, OSError),
        give_up=is_client_error,
    )
    def _search(self, keywords: str, location: str) -> list[dict]:
        r = requests.post(
            API_URL,
            json={"search_terms": keywords, "location": location, "page": "1"},
            headers={
                "X-RapidAPI-Key": self.api_key,
                "X-RapidAPI-Host": API_HOST,
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
        )
        r.raise_for_status()
        data = r.json()
        return data if isinstance(data, list) else data.get("results", data.get("jobs", []))

    def fetch(self, query: JobQuery) -> list[RawJob]:
        keywords = " OR ".join(query.keywords[:2]) or "software engineer"
        location = query.location or ("Remote" if query.remote else "United States")
        try:
            hits = self._search(keywords, location)
        except requests.HTTPError as exc:
            if exc.response is not None and exc.response.status_code == 403:
                raise SourceError(self.name, "403 Forbidden (check the RapidAPI subscription)")
            raise SourceError(self.name, str(exc))
        except (requests.RequestException, OSError, ValueError) as exc:
            raise SourceError(self.name, str(exc))

        jobs = [j for j in (self._convert(h) for h in hits) if self.matches_query(j, query)]
        log.info("LinkedIn returned %d matching jobs (of %d)", len(jobs), len(hits))
        return jobs

    def _convert(self, hit: dict) -> RawJob:
        title = hit.get("job_title") or hit.get("title", "")
        company = hit.get("company_name") or hit.get("company", "")
        loc = hit.get("job_location") or hit.get("location", "")
        raw_id = hit.get("job_id") or hit.get("id") or f"{title}{company}{loc}"
        return RawJob(
            external_id=str(raw_id),
            platform=self.name,
            title=title,
            company=company,
            location=loc,
            remote="remote" in f"{loc} {title}".lower(),
            description=hit.get("job_description") or hit.get("description", ""),
            url=hit.get("linkedin_job_url_cleaned") or hit.get("job_url") or hit.get("url", ""),
            posted_at=hit.get("posted_date") or hit.get("posted_at"),
        )
