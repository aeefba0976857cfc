"""Interview reminders and post-interview thank-you drafts."""
from __future__ import annotations

from datetime import datetime

from autopilot.ai_client import AIClient
from autopilot.errors import ExternalServiceError, NotFoundError
from autopilot.log import get_logger
from autopilot.models import Clock, NotificationType, Priority, iso, parse_iso, utc_now
from autopilot.notifications import NotificationManager
from autopilot.prompts import THANK_YOU
from autopilot.storage import (
    DocumentStore,
    KeyedLocks,
    interview_items,
    interview_key,
    interviews_index_key,
    profile_key,
)

log = get_logger(__name__)

DAY_REMINDER_HOURS = 24
HOUR_REMINDER_MINUTES = 60
THANK_YOU_AFTER_HOURS = (2, 4)


def _fmt(dt: datetime) -> str:
    return dt.strftime("%a %d %b, %H:%M UTC")


class InterviewFollowups:
    def __init__(
        self,
        store: DocumentStore,
        ai: AIClient | None,
        notifier: NotificationManager,
        locks: KeyedLocks | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.ai = ai
        self.notifier = notifier
        self.locks = locks or KeyedLocks()
        self.clock = clock

    def run_for_user(self, user_id: str) -> dict:
        """Send due reminders for the user's confirmed interviews.

        Each reminder fires at most once per interview; the flags live on the
        interview document.
        """
        stats = {"reminders": 0, "thank_you_drafts": 0, "errors": []}
        now = self.clock()
        for item in interview_items(self.store.get(interviews_index_key(user_id))):
            scheduled = parse_iso(item.get("scheduled_at"))
            if item.get("status") != "confirmed" or scheduled is None:
                continue
            interview = self.store.get(interview_key(user_id, item["id"]))
            if interview is None:
                continue
            try:
                self._process(user_id, interview, scheduled, now, stats)
            except ExternalServiceError as exc:
                stats["errors"].append(f"{item['id']}: {exc.message}")
                log.error("Follow-up for interview %s failed: %s", item["id"], exc.message)
        return stats

    def _process(self, user_id: str, interview: dict, scheduled: datetime, now: datetime, stats: dict) -> None:
        company = interview.get("company", "the company")
        until = (scheduled - now).total_seconds()
        data = {"interview_id": interview["id"], "company": company, "scheduled_at": iso(scheduled)}
        changed = False

        if 0 < until <= HOUR_REMINDER_MINUTES * 60 and not interview.get("hour_reminder_sent"):
            link = interview.get("meeting_link")
            self.notifier.send(
                user_id, NotificationType.INTERVIEW_REMINDER, "Interview in 1 hour!",
                f"Interview in 1 hour! Meeting link: {link}" if link else f"Interview in 1 hour with {company}!",
                Priority.CRITICAL, {**data, "meeting_link": link},
            )
            # Skip the day-ahead reminder if it was never sent.
            interview["hour_reminder_sent"] = interview["day_reminder_sent"] = True
            stats["reminders"] += 1
            changed = True
        elif (
            HOUR_REMINDER_MINUTES * 60 < until <= DAY_REMINDER_HOURS * 3600
            and not interview.get("day_reminder_sent")
        ):
            self.notifier.send(
                user_id, NotificationType.INTERVIEW_REMINDER, "Upcoming interview",
                f"Your interview with {company} is at {_fmt(scheduled)}.",
                Priority.HIGH, data,
            )
            interview["day_reminder_sent"] = True
            stats["reminders"] += 1
            changed = True

        since_hours = -until / 3600
        low, high = THANK_YOU_AFTER_HOURS
        if low <= since_hours < high and not interview.get("thank_you_reminder_sent"):
            interview["thank_you_draft"] = self.draft_thank_you(user_id, interview)
            interview["thank_you_generated_at"] = iso(now)
            self.notifier.send(
                user_id, NotificationType.THANK_YOU_READY, "How did your interview go?",
                f"Your thank-you email draft for {company} is ready to review and send.",
                Priority.MEDIUM, data,
            )
            interview["thank_you_reminder_sent"] = True
            stats["thank_you_drafts"] += 1
            changed = True

        if changed:
            with self.locks(user_id):
                self.store.put(interview_key(user_id, interview["id"]), interview)

    def draft_thank_you(self, user_id: str, interview: dict) -> str:
        profile = self.store.get(profile_key(user_id)) or {}
        name = profile.get("name", "")
        company = interview.get("company", "")
        role = interview.get("role", "the role")
        interviewer = interview.get("interviewer_name") or "the team"
        if self.ai is not None:
            prompt = (
                f"Candidate: {name}\nCompany: {company}\nRole: {role}\nInterviewer: {interviewer}\n"
                + (f"Interview notes: {interview['notes']}\n" if interview.get("notes") else "")
            )
            try:
                return self.ai.complete_text(THANK_YOU, prompt, max_tokens=400).strip()
            except ExternalServiceError as exc:
                log.warning("AI thank-you draft failed, using template: %s", exc.message)
        return (
            f"Hi {interviewer},\n\n"
            f"Thank you for taking the time to speak with me about the {role} position at {company}. "
            "I enjoyed learning more about the team and I am excited about the opportunity to contribute.\n\n"
            "I look forward to hearing about next steps.\n\n"
            f"Best regards,\n{name}"
        )

    def generate_thank_you(self, user_id: str, interview_id: str) -> str:
        """Draft (and store) a thank-you email for one interview on demand."""
        interview = self.store.get(interview_key(user_id, interview_id))
        if interview is None:
            raise NotFoundError(f"Interview {interview_id} not found")
        draft = self.draft_thank_you(user_id, interview)
        stamp = iso(self.clock())

        def save(current):
            if current is None:
                raise NotFoundError(f"Interview {interview_id} not found")
            current["thank_you_draft"] = draft
            current["thank_you_generated_at"] = stamp
            return current

        with self.locks(user_id):
            self.store.update(interview_key(user_id, interview_id), save)
        return draft
