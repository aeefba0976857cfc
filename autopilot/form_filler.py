"""Confidence-scored form mapping: AI proposes values, a strict filter accepts them."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime

from autopilot.ai_client import AIClient
from autopilot.errors import ExternalServiceError
from autopilot.log import get_logger
from autopilot.models import parse_iso, utc_now
from autopilot.prompts import FORM_ANALYZER
from autopilot.schemas import FormAnalysis, FormField
from autopilot.scorer import skill_names

log = get_logger(__name__)

DEFAULT_MIN_CONFIDENCE = 0.5


@dataclass
class FillPlan:
    accepted: list[FormField] = field(default_factory=list)
    skipped: list[FormField] = field(default_factory=list)
    requires_review: bool = False

    @property
    def total(self) -> int:
        return len(self.accepted) + len(self.skipped)


def plan_fill(analysis: FormAnalysis, min_confidence: float = DEFAULT_MIN_CONFIDENCE) -> FillPlan:
    """Split fields into accepted (confidence >= threshold) and skipped.

    Open-question answers are treated as textarea fields. File inputs are left
    out of both lists; uploads are not driven from the mapping.
    """
    plan = FillPlan(requires_review=analysis.requires_manual_review)
    candidates = list(analysis.fields) + [
        FormField(selector=a.selector, type="textarea", value=a.answer,
                  confidence=a.confidence, label=a.question)
        for a in analysis.custom_answers
    ]
    for f in candidates:
        if f.type == "file":
            continue
        if f.confidence >= min_confidence and f.value != "":
            plan.accepted.append(f)
        else:
            plan.skipped.append(f)
    if plan.skipped:
        plan.requires_review = True
    return plan


def _parse_date(value) -> datetime | None:
    if not value:
        return None
    text = str(value)
    if len(text) == 7:
        text += "-01"
    try:
        return parse_iso(text)
    except ValueError:
        return None


def years_of_experience(profile: dict, now: datetime | None = None) -> int:
    """Whole years across work history; open-ended roles run to *now*."""
    now = now or utc_now()
    months = 0
    for exp in profile.get("experience") or []:
        start = _parse_date(exp.get("start_date"))
        if start is None:
            continue
        end = _parse_date(exp.get("end_date")) or now
        months += max(0, (end.year - start.year) * 12 + (end.month - start.month))
    return round(months / 12)


def _profile_for_form(profile: dict) -> dict:
    links = {l.get("platform"): l.get("url") for l in profile.get("social_links") or [] if isinstance(l, dict)}
    experience = profile.get("experience") or []
    current = experience[0] if experience else {}
    return {
        "name": profile.get("name", ""),
        "email": profile.get("email", ""),
        "phone": profile.get("phone", ""),
        "location": profile.get("location", ""),
        "linkedin": links.get("linkedin", ""),
        "github": links.get("github", ""),
        "website": links.get("website", ""),
        "headline": profile.get("headline", ""),
        "summary": profile.get("summary", ""),
        "skills": skill_names(profile),
        "years_of_experience": years_of_experience(profile),
        "current_title": current.get("role") or current.get("title", ""),
        "current_company": current.get("company", ""),
        "education": profile.get("education") or [],
    }


def analyze_form(
    ai: AIClient | None, form_html: str, profile: dict, job: dict, *, timeout: float | None = None,
) -> FormAnalysis:
    """AI field mapping. Any failure yields an empty analysis flagged for review."""
    if ai is None:
        return FormAnalysis(requires_manual_review=True, warnings=["No AI client configured"])
    prompt = f"""JOB DETAILS:
Title: {job.get('title', '')}
Company: {job.get('company', '')}
Description: {(job.get('description') or '')[:500]}

CANDIDATE PROFILE:
{json.dumps(_profile_for_form(profile), indent=2)}

FORM HTML (truncated):
{form_html}"""
    try:
        analysis = ai.complete_structured(FORM_ANALYZER, prompt, FormAnalysis, timeout=timeout)
    except ExternalServiceError as exc:
        log.error("Form analysis failed: %s", exc)
        return FormAnalysis(
            requires_manual_review=True,
            warnings=["AI form analysis failed - manual application required"],
        )
    log.info(
        "Form analysis: %d fields, %d custom answers, manual_review=%s",
        len(analysis.fields), len(analysis.custom_answers), analysis.requires_manual_review,
    )
    return analysis
