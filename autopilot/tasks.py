"""
The scheduled task registry.

Every handler walks all users, isolates per-user failures and reports them in
``errors`` so the scheduler can mark the run ``partial`` instead of failing it.
"""
from __future__ import annotations

import threading
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Callable

from autopilot.auto_apply import get_auto_apply_rule, run_auto_apply_for_user
from autopilot.log import get_logger
from autopilot.models import NotificationType, Priority, iso, parse_iso
from autopilot.scheduler import TaskSpec
from autopilot.settings import load_settings, update_settings
from autopilot.storage import list_user_ids

if TYPE_CHECKING:
    from autopilot.service import Autopilot

log = get_logger(__name__)

FREQUENCIES = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
}


def search_due(last_run_at: str | None, frequency: str, now) -> bool:
    last = parse_iso(last_run_at)
    return last is None or now - last >= FREQUENCIES.get(frequency, timedelta(0))


def _for_each_user(
    app: Autopilot,
    stop: threading.Event,
    work: Callable[[str], Any],
    totals: dict[str, Any],
) -> dict[str, Any]:
    totals.setdefault("users", 0)
    totals.setdefault("errors", [])
    for user_id in list_user_ids(app.store):
        if stop.is_set():
            break
        try:
            if work(user_id) is not False:
                totals["users"] += 1
        except Exception as exc:
            totals["errors"].append(f"{user_id}: {exc}")
            log.exception("Task step failed for user=%s", user_id)
    return totals


def auto_search(app: Autopilot, stop: threading.Event) -> dict[str, Any]:
    totals: dict[str, Any] = {"searches": 0, "new_jobs": 0, "high_match": 0, "errors": []}

    def work(user_id: str):
        settings = load_settings(app.store, user_id)
        if not settings.auto_search_enabled:
            return False
        now = app.clock()
        for config in settings.search_configurations:
            if stop.is_set() or not config.enabled or not search_due(config.last_run_at, config.frequency, now):
                continue
            try:
                result = app.engine.search_jobs(user_id, config.query)
            except Exception as exc:
                totals["errors"].append(f"{user_id}/{config.id}: {exc}")
                log.exception("Saved search %s failed for user=%s", config.id, user_id)
                continue
            totals["searches"] += 1
            totals["new_jobs"] += result["new_jobs"]
            for entry in result["platform_results"]:
                if entry.get("error"):
                    totals["errors"].append(f"{user_id}/{entry['platform']}: {entry['error']}")

            stamp = iso(app.clock())

            def mark(s, config_id=config.id, stamp=stamp):
                for c in s.search_configurations:
                    if c.id == config_id:
                        c.last_run_at = stamp

            with app.locks(user_id):
                update_settings(app.store, user_id, mark, app.clock)

            threshold = app.config.high_match_threshold
            high = [j for j in result["jobs"] if j.get("match_score", 0) >= threshold]
            if high:
                totals["high_match"] += len(high)
                app.notifier.send(
                    user_id, NotificationType.JOB_MATCH,
                    f"{len(high)} high-match job{'s' if len(high) != 1 else ''} found",
                    f"Found {len(high)} job(s) scoring {threshold}+ for your saved search. "
                    f"Top: {high[0]['title']} at {high[0]['company']} ({high[0]['match_score']}%).",
                    Priority.HIGH,
                    {"job_ids": [j["id"] for j in high[:3]], "total_count": len(high)},
                )

    return _for_each_user(app, stop, work, totals)


def auto_apply(app: Autopilot, stop: threading.Event) -> dict[str, Any]:
    totals: dict[str, Any] = {"attempted": 0, "submitted": 0, "errors": []}

    def work(user_id: str):
        if not get_auto_apply_rule(app.store, user_id).enabled:
            return False
        summary = run_auto_apply_for_user(
            app.applicant, user_id, delay_seconds=app.config.apply_delay_seconds, stop=stop,
        )
        totals["attempted"] += summary["attempted"]
        totals["submitted"] += summary["submitted"]
        totals["errors"].extend(f"{user_id}/{e}" for e in summary["errors"])

    return _for_each_user(app, stop, work, totals)


def email_sync(app: Autopilot, stop: threading.Event) -> dict[str, Any]:
    totals: dict[str, Any] = {"processed": 0, "job_related": 0, "interviews_detected": 0, "errors": []}

    def work(user_id: str):
        if not load_settings(app.store, user_id).email_sync_enabled:
            return False
        stats = app.syncer.sync_user(user_id)
        if stats is None:
            return False
        for key in ("processed", "job_related", "interviews_detected"):
            totals[key] += stats[key]

    return _for_each_user(app, stop, work, totals)


def interview_reminders(app: Autopilot, stop: threading.Event) -> dict[str, Any]:
    totals: dict[str, Any] = {"reminders": 0, "thank_you_drafts": 0, "errors": []}

    def work(user_id: str):
        stats = app.followups.run_for_user(user_id)
        totals["reminders"] += stats["reminders"]
        totals["thank_you_drafts"] += stats["thank_you_drafts"]
        totals["errors"].extend(f"{user_id}/{e}" for e in stats["errors"])

    return _for_each_user(app, stop, work, totals)


def daily_digest(app: Autopilot, stop: threading.Event) -> dict[str, Any]:
    totals: dict[str, Any] = {"sent": 0, "emailed": 0, "errors": []}

    def work(user_id: str):
        result = app.digest.run_for_user(user_id)
        totals["sent"] += int(result["sent"])
        totals["emailed"] += int(result["emailed"])
        if result.get("error"):
            totals["errors"].append(f"{user_id}: {result['error']}")

    return _for_each_user(app, stop, work, totals)


REGISTRY: list[tuple[str, Callable, str]] = [
    ("auto-search", auto_search, "Run saved searches that are due and alert on high matches"),
    ("auto-apply", auto_apply, "Apply to eligible jobs within each user's auto-apply rule"),
    ("email-sync", email_sync, "Classify new inbox mail and update the pipeline"),
    ("interview-reminders", interview_reminders, "Interview reminders and thank-you drafts"),
    ("daily-digest", daily_digest, "Once-a-day activity summary"),
]


def build_task_specs(app: Autopilot) -> list[TaskSpec]:
    specs = []
    for name, handler, description in REGISTRY:
        specs.append(TaskSpec(
            name=name,
            handler=lambda stop, handler=handler: handler(app, stop),
            interval_seconds=app.config.tasks.for_task(name) * 60,
            description=description,
        ))
    return specs
