"""Score postings against a candidate profile (AI analysis, heuristic fallback)."""
from __future__ import annotations

import json
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from autopilot.ai_client import AIClient
from autopilot.errors import ExternalServiceError
from autopilot.log import get_logger
from autopilot.models import RawJob
from autopilot.prompts import JOB_MATCHER
from autopilot.schemas import JobMatchAnalysis

log = get_logger(__name__)

DEFAULT_MATCH_SCORE = 50

LOCATION_ALIASES: dict[str, list[str]] = {
    "bangalore": ["bangalore", "bengaluru"],
    "gurgaon": ["gurgaon", "gurugram"],
    "new york": ["new york", "nyc"],
    "san francisco": ["san francisco", "sf", "bay area"],
    "london": ["london"],
    "remote": ["remote", "anywhere", "work from home", "wfh", "worldwide"],
}

# Titles that signal a level well above an individual contributor.
OVER_LEVEL_TITLES: list[str] = [
    "director", "vice president", "vp ", "vp,", "chief ", "head of",
    "cto", "ceo", "managing director", "general manager",
]

# Minimum token length when expanding compound skills; short tokens like
# "ai" or "go" match everything.
_MIN_SKILL_TOKEN_LEN = 4


@dataclass
class ScoreResult:
    match_score: int
    analysis: dict | None
    scored_by: str


def _normalize(s: str) -> str:
    return (s or "").lower().strip()


def skill_names(profile: dict) -> list[str]:
    names = []
    for s in profile.get("skills") or []:
        name = s.get("name", "") if isinstance(s, dict) else str(s)
        if name:
            names.append(name)
    return names


def _expand_locations(locations: list[str]) -> list[str]:
    expanded: list[str] = []
    for loc in locations:
        key = _normalize(loc)
        expanded.extend(LOCATION_ALIASES.get(key, [key]))
    return expanded


def _expand_skills(raw_skills: list[str]) -> list[str]:
    """Break compound skills ("AWS Lambda / ECS") into matchable tokens."""
    tokens: list[str] = []
    for s in raw_skills:
        low = s.lower()
        tokens.append(low)
        for part in re.findall(r"[a-z0-9+#]+(?:[\s-][a-z0-9+#]+)*", low):
            part = part.strip()
            if part and part != low and len(part) >= _MIN_SKILL_TOKEN_LEN:
                tokens.append(part)
    return list(dict.fromkeys(tokens))


def quick_score(profile: dict, job: RawJob) -> int:
    """Heuristic 0-100 fit used when no AI client is configured."""
    prefs = profile.get("preferences") or {}
    score = 50.0

    remote_pref = _normalize(prefs.get("remote_preference", ""))
    if remote_pref == "remote":
        score += 10 if job.remote else -10

    locations = _expand_locations(prefs.get("locations") or [])
    if locations and job.location:
        job_loc = _normalize(job.location)
        if any(alias in job_loc for alias in locations):
            score += 10

    salary_min = prefs.get("salary_min")
    if salary_min and job.salary and job.salary.min:
        score += 10 if job.salary.min >= salary_min else -10

    raw_skills = skill_names(profile)
    if raw_skills:
        text = f"{_normalize(job.title)} {_normalize(job.description)} {' '.join(job.tags).lower()}"
        matched = [s for s in raw_skills if any(t in text for t in _expand_skills([s]))]
        score += 20 * len(matched) / len(raw_skills)

    title = _normalize(job.title)
    if any(tag in title for tag in OVER_LEVEL_TITLES):
        score -= 20

    return max(0, min(100, round(score)))


def _profile_summary(profile: dict) -> dict:
    return {
        "headline": profile.get("headline", ""),
        "skills": skill_names(profile),
        "experience": [
            {
                "title": e.get("role") or e.get("title", ""),
                "company": e.get("company", ""),
                "duration": f"{e.get('start_date', '?')} - {e.get('end_date') or 'Present'}",
                "description": (e.get("description") or "")[:400],
            }
            for e in profile.get("experience") or []
        ],
        "education": profile.get("education") or [],
        "preferences": profile.get("preferences") or {},
    }


def build_match_prompt(profile: dict, job: RawJob) -> str:
    salary = "Not specified"
    if job.salary:
        salary = f"{job.salary.min or '?'} - {job.salary.max or '?'} {job.salary.currency or 'USD'}"
    return f"""# Candidate Profile
{json.dumps(_profile_summary(profile), indent=2)}

# Job Posting
Title: {job.title}
Company: {job.company}
Location: {job.location or 'Not specified'}
Remote: {'Yes' if job.remote else 'No'}
Salary: {salary}
Type: {job.job_type or 'Not specified'}
Tags: {', '.join(job.tags) or 'None'}

Description:
{job.description[:4000]}"""


class JobScorer:
    def __init__(self, ai: AIClient | None, batch_size: int = 5) -> None:
        self.ai = ai
        self.batch_size = batch_size

    def score(self, profile: dict, job: RawJob) -> ScoreResult:
        if self.ai is None:
            return ScoreResult(quick_score(profile, job), None, "heuristic")
        try:
            analysis = self.ai.complete_structured(
                JOB_MATCHER, build_match_prompt(profile, job), JobMatchAnalysis
            )
        except ExternalServiceError as exc:
            log.warning(
                "Scoring failed for %s/%s (%s), using default %d",
                job.platform, job.external_id, exc, DEFAULT_MATCH_SCORE,
            )
            return ScoreResult(DEFAULT_MATCH_SCORE, None, "default")
        return ScoreResult(analysis.match_score, analysis.model_dump(), "ai")

    def score_many(self, profile: dict, jobs: list[RawJob]) -> list[ScoreResult]:
        """Score *jobs* with up to ``batch_size`` AI calls in flight; order is kept."""
        if not jobs:
            return []
        if self.ai is None or len(jobs) == 1:
            return [self.score(profile, j) for j in jobs]
        with ThreadPoolExecutor(max_workers=self.batch_size, thread_name_prefix="score") as pool:
            results = list(pool.map(lambda j: self.score(profile, j), jobs))
        by = {}
        for r in results:
            by[r.scored_by] = by.get(r.scored_by, 0) + 1
        log.info("Scored %d jobs %s", len(jobs), by)
        return results
