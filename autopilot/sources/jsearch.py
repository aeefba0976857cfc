"""JSearch API (RapidAPI): aggregated job listings."""
from __future__ import annotations

import requests

from autopilot.log import get_logger
from autopilot.models import RawJob, Salary
from autopilot.retry import is_client_error, retry
from autopilot.sources.base import JobQuery, JobSource, SourceError

log = get_logger(__name__)

API_HOST = "jsearch.p.rapidapi.com"
BASE = f"https://{API_HOST}"

_EMPLOYMENT_TYPES = {
    "full-time": "FULLTIME",
    "part-time": "PARTTIME",
    "contract": "CONTRACTOR",
    "internship": "INTERN",
}


class JSearchSource(JobSource):
    name = "jsearch"

    def __init__(self, api_key: str, timeout: float = 15.0) -> None:
        self.api_key = api_key
        self.timeout = timeout

    @retry(
        max_attempts=3,
        base_delay=2.0,
        retryable=(requests.RequestException, OSError),
        give_up=is_client_error,
    )
    def _search(self, params: dict) -> list[dict]:
        r = requests.get(
            f"{BASE}/search",
            params=params,
            headers={"X-RapidAPI-Key": self.api_key, "X-RapidAPI-Host": API_HOST},
            timeout=self.timeout,
        )
        r.raise_for_status()
        return r.json().get("data", [])

    def fetch(self, query: JobQuery) -> list[RawJob]:
        text = query.text or "software engineer"
        if query.location:
            text = f"{text} in {query.location}"
        params = {"query": text, "num_pages": "1"}
        if query.remote:
            params["remote_jobs_only"] = "true"
        types = [_EMPLOYMENT_TYPES[t] for t in query.job_types if t in _EMPLOYMENT_TYPES]
        if types:
            params["employment_types"] = ",".join(types)

        try:
            hits = self._search(params)
        except requests.HTTPError as exc:
            if exc.response is not None and exc.response.status_code == 403:
                raise SourceError(self.name, "403 Forbidden (check the RapidAPI JSearch subscription)")
            raise SourceError(self.name, str(exc))
        except (requests.RequestException, OSError, ValueError) as exc:
            raise SourceError(self.name, str(exc))

        jobs = [j for j in (self._convert(h) for h in hits) if self.matches_query(j, query)]
        log.info("JSearch returned %d matching jobs (of %d)", len(jobs), len(hits))
        return jobs

    def _convert(self, hit: dict) -> RawJob:
        lo, hi = hit.get("job_min_salary"), hit.get("job_max_salary")
        location = ", ".join(p for p in (hit.get("job_city"), hit.get("job_country")) if p)
        job_type = (hit.get("job_employment_type") or "").lower().replace("fulltime", "full-time")
        return RawJob(
            external_id=str(hit.get("job_id") or hit.get("job_title", "")),
            platform=self.name,
            title=hit.get("job_title", ""),
            company=hit.get("employer_name", ""),
            location=location,
            remote=bool(hit.get("job_is_remote")),
            description=hit.get("job_description", ""),
            url=hit.get("job_apply_link", ""),
            salary=Salary(min=lo, max=hi, currency=hit.get("job_salary_currency")) if lo or hi else None,
            job_type=job_type or None,
            posted_at=hit.get("job_posted_at_datetime_utc"),
        )
