"""Per-user auto-apply policy and the rule-gated application loop."""
from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import ValidationError as SchemaError

from autopilot.applicant import AutoApplicant
from autopilot.errors import ValidationError
from autopilot.log import get_logger
from autopilot.models import Clock, PipelineStatus, parse_iso, utc_now
from autopilot.schemas import AutoApplyRule
from autopilot.settings import load_settings, update_settings
from autopilot.storage import DocumentStore, KeyedLocks, applications_index_key

log = get_logger(__name__)

# Jobs in these states are candidates for an automatic attempt.
ELIGIBLE_STATUSES = (PipelineStatus.DISCOVERED, PipelineStatus.SAVED)


@dataclass
class RuleDecision:
    allowed: bool
    reason: str = ""


def get_auto_apply_rule(store: DocumentStore, user_id: str) -> AutoApplyRule:
    return load_settings(store, user_id).auto_apply_rules or AutoApplyRule()


def update_auto_apply_rule(
    store: DocumentStore,
    user_id: str,
    changes: dict[str, Any],
    locks: KeyedLocks,
    clock: Clock = utc_now,
) -> AutoApplyRule:
    """Validated partial update; creates the default rule on first write."""
    unknown = set(changes) - set(AutoApplyRule.model_fields)
    if unknown:
        raise ValidationError(f"Unknown auto-apply setting(s): {', '.join(sorted(unknown))}")

    def mutate(settings):
        merged = (settings.auto_apply_rules or AutoApplyRule()).model_dump()
        merged.update(changes)
        try:
            settings.auto_apply_rules = AutoApplyRule(**merged)
        except SchemaError as exc:
            err = exc.errors()[0]
            raise ValidationError(f"Invalid auto-apply rule ({'.'.join(map(str, err['loc']))}): {err['msg']}")

    with locks(user_id):
        settings = update_settings(store, user_id, mutate, clock)
    log.info("Auto-apply rule updated for user=%s: %s", user_id, sorted(changes))
    return settings.auto_apply_rules


def reset_auto_apply_rule(
    store: DocumentStore,
    user_id: str,
    locks: KeyedLocks,
    clock: Clock = utc_now,
) -> AutoApplyRule:
    def mutate(settings):
        settings.auto_apply_rules = AutoApplyRule()

    with locks(user_id):
        settings = update_settings(store, user_id, mutate, clock)
    log.info("Auto-apply rule reset for user=%s", user_id)
    return settings.auto_apply_rules


def count_applications_today(store: DocumentStore, user_id: str, now: datetime) -> int:
    """Applications whose ``applied_at`` falls on the current UTC calendar day."""
    today = now.astimezone(timezone.utc).date()
    count = 0
    for item in store.get(applications_index_key(user_id)) or []:
        applied = parse_iso(item.get("applied_at"))
        if applied is not None and applied.astimezone(timezone.utc).date() == today:
            count += 1
    return count


def check_rule(rule: AutoApplyRule, job: dict, applied_today: int) -> RuleDecision:
    """Whether *job* (a stored job dict) may be applied to automatically."""
    if not rule.enabled:
        return RuleDecision(False, "auto-apply disabled")
    if applied_today >= rule.max_applications_per_day:
        return RuleDecision(False, f"daily cap of {rule.max_applications_per_day} reached")
    score = job.get("match_score", 0)
    if score < rule.min_match_score:
        return RuleDecision(False, f"match score {score} below {rule.min_match_score}")
    if rule.platforms and job.get("platform") not in rule.platforms:
        return RuleDecision(False, f"platform {job.get('platform')} not allowed")
    company = (job.get("company") or "").lower()
    if any(ex.lower() in company for ex in rule.exclude_companies if ex):
        return RuleDecision(False, f"company {job.get('company')} excluded")
    if rule.require_remote and not job.get("remote"):
        return RuleDecision(False, "not remote")
    if rule.min_salary is not None:
        salary = job.get("salary") or {}
        top = salary.get("max") or salary.get("min")
        # Postings without a salary pass; only a known ceiling below the floor rejects.
        if top is not None and top < rule.min_salary:
            return RuleDecision(False, f"salary {top} below {rule.min_salary:g}")
    return RuleDecision(True)


def run_auto_apply_for_user(
    applicant: AutoApplicant,
    user_id: str,
    *,
    delay_seconds: float = 0.0,
    stop: threading.Event | None = None,
    sleep: Callable[[float], Any] | None = None,
) -> dict[str, Any]:
    """Apply to the user's eligible jobs, best match first, within the rule.

    Returns ``{attempted, submitted, failed, pending_review, skipped, errors}``.
    """
    store = applicant.store
    stop = stop or threading.Event()
    wait = sleep or stop.wait
    summary: dict[str, Any] = {
        "attempted": 0, "submitted": 0, "failed": 0, "pending_review": 0, "skipped": 0, "errors": [],
    }
    rule = get_auto_apply_rule(store, user_id)
    if not rule.enabled:
        return summary

    applied_today = count_applications_today(store, user_id, applicant.clock())
    candidates = [
        s for s in applicant.engine.list_jobs(user_id)
        if s.get("status") in {st.value for st in ELIGIBLE_STATUSES} and not s.get("application_id")
    ]
    candidates.sort(key=lambda s: -s.get("match_score", 0))

    for summary_item in candidates:
        if stop.is_set():
            break
        job = applicant.engine.get_job(user_id, summary_item["id"])
        decision = check_rule(rule, job, applied_today)
        if not decision.allowed:
            summary["skipped"] += 1
            log.debug("Skipping job %s for user=%s: %s", job["id"], user_id, decision.reason)
            if applied_today >= rule.max_applications_per_day:
                break
            continue

        if summary["attempted"] and delay_seconds:
            wait(delay_seconds)
        summary["attempted"] += 1
        try:
            result = applicant.apply_to_job(user_id, job["id"], cancel=stop)
        except Exception as exc:
            summary["errors"].append(f"{job['id']}: {exc}")
            log.exception("Auto-apply crashed for job %s (user=%s)", job["id"], user_id)
            continue
        summary[result.status.value if result.status.value in summary else "failed"] += 1
        if result.success:
            applied_today += 1

    log.info(
        "Auto-apply for user=%s: %d attempted, %d submitted, %d skipped",
        user_id, summary["attempted"], summary["submitted"], summary["skipped"],
    )
    return summary
