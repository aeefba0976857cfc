"""Daily digest: one summary per user per UTC day, in-app plus optional email."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from autopilot.channels import ChannelError, MessagingChannel
from autopilot.log import get_logger
from autopilot.models import Clock, NotificationType, Priority, iso, parse_iso, utc_now
from autopilot.notifications import NotificationManager
from autopilot.settings import load_settings, update_settings
from autopilot.storage import (
    DocumentStore,
    KeyedLocks,
    applications_index_key,
    emails_index_key,
    interview_items,
    interviews_index_key,
    jobs_index_key,
)

log = get_logger(__name__)


def _same_day(value: str | None, day) -> bool:
    dt = parse_iso(value)
    return dt is not None and dt.astimezone(timezone.utc).date() == day


def compile_digest(store: DocumentStore, user_id: str, now: datetime) -> dict:
    today = now.astimezone(timezone.utc).date()
    week_ahead = now + timedelta(days=7)

    jobs = [j for j in store.get(jobs_index_key(user_id)) or [] if _same_day(j.get("saved_at"), today)]
    top = max(jobs, key=lambda j: j.get("match_score", 0), default=None)
    applications = [
        a for a in store.get(applications_index_key(user_id)) or [] if _same_day(a.get("applied_at"), today)
    ]
    responses = [
        e for e in store.get(emails_index_key(user_id)) or []
        if _same_day(e.get("received_at"), today) and e.get("is_job_related") and e.get("category") not in (None, "other")
    ]
    upcoming = 0
    for item in interview_items(store.get(interviews_index_key(user_id))):
        scheduled = parse_iso(item.get("scheduled_at"))
        if item.get("status") == "confirmed" and scheduled and now < scheduled <= week_ahead:
            upcoming += 1

    return {
        "new_jobs_today": len(jobs),
        "applications_sent_today": len(applications),
        "responses_received_today": len(responses),
        "upcoming_interviews_this_week": upcoming,
        "top_match_job": {
            "company": top.get("company"),
            "title": top.get("title"),
            "match_score": top.get("match_score", 0),
            "location": top.get("location") or "Remote",
        } if top and top.get("match_score") else None,
    }


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'s' if n != 1 else ''}"


def build_digest_message(data: dict) -> str:
    parts = []
    if data["new_jobs_today"]:
        parts.append(f"{_plural(data['new_jobs_today'], 'new job')} found")
    if data["applications_sent_today"]:
        parts.append(f"{_plural(data['applications_sent_today'], 'application')} sent")
    if data["responses_received_today"]:
        parts.append(f"{_plural(data['responses_received_today'], 'response')} received")
    if data["upcoming_interviews_this_week"]:
        parts.append(f"{_plural(data['upcoming_interviews_this_week'], 'interview')} this week")
    message = " | ".join(parts)
    top = data.get("top_match_job")
    if top:
        message += f"\n\nTop match: {top['company']} - {top['title']} ({top['match_score']}% match)"
    return message or "No new activity today"


def has_activity(data: dict) -> bool:
    return any(
        data[k] for k in (
            "new_jobs_today", "applications_sent_today",
            "responses_received_today", "upcoming_interviews_this_week",
        )
    )


def _local_time(now: datetime, tz: str):
    try:
        zone = ZoneInfo(tz or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        zone = ZoneInfo("UTC")
    return now.astimezone(zone).strftime("%H:%M")


class DailyDigest:
    def __init__(
        self,
        store: DocumentStore,
        notifier: NotificationManager,
        channels: dict[str, MessagingChannel] | None = None,
        locks: KeyedLocks | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.channels = channels or {}
        self.locks = locks or KeyedLocks()
        self.clock = clock

    def run_for_user(self, user_id: str) -> dict:
        """Returns ``{"sent": bool, "emailed": bool, "reason"?: str, "error"?: str}``."""
        now = self.clock()
        settings = load_settings(self.store, user_id)
        prefs = settings.notification_preferences
        if not prefs.daily_digest:
            return {"sent": False, "emailed": False, "reason": "disabled"}
        if _same_day(settings.last_digest_sent_at, now.astimezone(timezone.utc).date()):
            return {"sent": False, "emailed": False, "reason": "already sent today"}
        if _local_time(now, settings.timezone) < prefs.daily_digest_time:
            return {"sent": False, "emailed": False, "reason": "not yet time"}

        data = compile_digest(self.store, user_id, now)
        if not has_activity(data):
            return {"sent": False, "emailed": False, "reason": "no activity"}

        message = build_digest_message(data)
        self.notifier.send(
            user_id, NotificationType.DAILY_DIGEST, "Daily job search digest", message, Priority.LOW, data,
        )
        result = {"sent": True, "emailed": False}

        channel = self.channels.get("email")
        if prefs.email_digest_enabled and settings.email and channel is not None:
            body = f"# Daily job search digest\n\n{message}\n\n---\n\nSent by autopilot on {now:%Y-%m-%d}."
            try:
                channel.send_message(settings.email, body, f"Job search digest - {now:%d %b %Y}")
                result["emailed"] = True
            except ChannelError as exc:
                result["error"] = exc.message
                log.error("Digest email for user=%s failed: %s", user_id, exc.message)

        stamp = iso(now)
        with self.locks(user_id):
            update_settings(self.store, user_id, lambda s: setattr(s, "last_digest_sent_at", stamp), self.clock)
        log.info("Daily digest sent to user=%s (emailed=%s)", user_id, result["emailed"])
        return result
