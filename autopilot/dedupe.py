"""Cross-platform de-duplication of one search batch.

The same role is often listed on several boards under slightly different
titles; two postings are the same when normalised company and title are both
at least ``SIMILARITY_THRESHOLD`` similar.
"""
from __future__ import annotations

import difflib
import re

from autopilot.log import get_logger
from autopilot.models import RawJob

log = get_logger(__name__)

SIMILARITY_THRESHOLD = 0.85

_COMPANY_SUFFIXES = re.compile(r"\b(inc|llc|ltd|gmbh|corp|corporation|company|co)\b")


def normalise_company(name: str) -> str:
    cleaned = _COMPANY_SUFFIXES.sub("", (name or "").lower())
    cleaned = re.sub(r"[^\w\s]", " ", cleaned)
    return re.sub(r"\s+", " ", cleaned).strip()


def normalise_title(title: str) -> str:
    cleaned = re.sub(r"[^\w\s]", " ", (title or "").lower())
    return re.sub(r"\s+", " ", cleaned).strip()


def _similar(a: str, b: str) -> bool:
    if not a or not b:
        return a == b
    return difflib.SequenceMatcher(None, a, b).ratio() >= SIMILARITY_THRESHOLD


def are_duplicates(a: RawJob, b: RawJob) -> bool:
    if a.key == b.key:
        return True
    return _similar(normalise_company(a.company), normalise_company(b.company)) and _similar(
        normalise_title(a.title), normalise_title(b.title)
    )


def _richness(job: RawJob) -> tuple:
    return (
        len(job.description or ""),
        1 if job.salary else 0,
        1 if job.url else 0,
        job.posted_at or "",
    )


def choose_better(a: RawJob, b: RawJob) -> RawJob:
    """Longer description, then salary, then URL, then newer; ties keep *a*."""
    return b if _richness(b) > _richness(a) else a


def dedupe_jobs(jobs: list[RawJob]) -> list[RawJob]:
    unique: list[RawJob] = []
    removed = 0
    for job in jobs:
        for idx, existing in enumerate(unique):
            if are_duplicates(job, existing):
                unique[idx] = choose_better(existing, job)
                removed += 1
                break
        else:
            unique.append(job)
    if removed:
        log.info("De-duplicated %d postings (%d -> %d)", removed, len(jobs), len(unique))
    return unique


def matches_stored(job: RawJob, summaries: list[dict]) -> bool:
    """True when *job* is the same role as one of the user's stored jobs."""
    company, title = normalise_company(job.company), normalise_title(job.title)
    return any(
        _similar(company, normalise_company(s.get("company") or ""))
        and _similar(title, normalise_title(s.get("title") or ""))
        for s in summaries
    )
