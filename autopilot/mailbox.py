"""
Inbox sync: read each user's new Gmail messages, classify job-related replies
with the AI client, move matching jobs along the pipeline and notify the user.

Every user connects their own mailbox. The OAuth callback of the web layer
stores the Gmail refresh token in ``users/{id}/settings.json``; the reader for
a user is built from that token only.
"""
from __future__ import annotations

import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parseaddr
from typing import Any, Callable

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from autopilot.ai_client import AIClient
from autopilot.errors import ExternalServiceError
from autopilot.log import get_logger
from autopilot.models import Clock, NotificationType, PipelineStatus, Priority, iso, new_id, parse_iso, utc_now
from autopilot.notifications import NotificationManager
from autopilot.prompts import EMAIL_ANALYZER
from autopilot.retry import retry
from autopilot.schemas import EmailAnalysis
from autopilot.search_engine import JobSearchEngine
from autopilot.settings import load_settings, update_settings
from autopilot.storage import (
    DocumentStore,
    KeyedLocks,
    emails_index_key,
    interview_items,
    interview_key,
    interviews_index_key,
)

log = get_logger(__name__)

GMAIL_SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

JOB_DOMAINS = (
    "greenhouse.io", "lever.co", "linkedin.com", "indeed.com", "workday.com", "jobvite.com",
    "myworkdayjobs.com", "icims.com", "smartrecruiters.com", "ashbyhq.com", "breezy.hr",
    "recruitee.com",
)
JOB_KEYWORDS = (
    "interview", "application", "position", "resume", "offer", "hiring", "recruiter",
    "recruitment", "opportunity", "candidate", "screening", "phone screen", "video call",
)

# Pipeline move implied by each reply category.
_CATEGORY_STATUS = {
    "interview_invite": PipelineStatus.INTERVIEW,
    "rejection": PipelineStatus.REJECTED,
    "offer": PipelineStatus.OFFER,
    "follow_up": PipelineStatus.SCREENING,
    "action_required": PipelineStatus.SCREENING,
}
_STAGE_ORDER = [
    PipelineStatus.APPLYING, PipelineStatus.APPLIED, PipelineStatus.SCREENING,
    PipelineStatus.INTERVIEW, PipelineStatus.OFFER,
]


@dataclass
class MailMessage:
    external_id: str
    sender: str
    subject: str
    body: str
    received_at: str
    thread_id: str = ""

    @property
    def snippet(self) -> str:
        return " ".join(self.body.split())[:200]


class MailboxReader(ABC):
    @abstractmethod
    def fetch_since(self, since: datetime | None) -> list[MailMessage]:
        pass


def _decode(data: str) -> str:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4)).decode("utf-8", errors="replace")


def gmail_body(payload: dict[str, Any]) -> str:
    """Plain text of a Gmail ``format=full`` payload, falling back to HTML."""
    found: dict[str, str] = {}

    def walk(part: dict) -> None:
        mime = part.get("mimeType", "")
        data = part.get("body", {}).get("data", "")
        if data and mime in ("text/plain", "text/html") and mime not in found:
            found[mime] = _decode(data)
        for sub in part.get("parts", []):
            walk(sub)

    walk(payload)
    if found:
        return found.get("text/plain") or found["text/html"]
    data = payload.get("body", {}).get("data", "")
    return _decode(data) if data else ""


def gmail_headers(payload: dict[str, Any]) -> dict[str, str]:
    return {h.get("name", "").lower(): h.get("value", "") for h in payload.get("headers", [])}


def _gmail_client_error(exc: BaseException) -> bool:
    status = getattr(getattr(exc, "resp", None), "status", None)
    return status is not None and 400 <= int(status) < 500 and int(status) != 429


class GmailMailboxReader(MailboxReader):
    """Reads one user's inbox through the Gmail API."""

    def __init__(self, credentials: Credentials, *, max_messages: int = 50, service: Any = None) -> None:
        self.credentials = credentials
        self.max_messages = max_messages
        self._service = service

    def _gmail(self):
        if self._service is None:
            if not self.credentials.valid:
                self.credentials.refresh(Request())
            self._service = build("gmail", "v1", credentials=self.credentials, cache_discovery=False)
        return self._service

    @retry(max_attempts=3, base_delay=3.0, retryable=(HttpError, OSError), give_up=_gmail_client_error)
    def _fetch_raw(self, since: datetime | None) -> list[dict]:
        messages = self._gmail().users().messages()
        query = f"after:{int(since.timestamp())}" if since else ""
        refs: list[dict] = []
        page_token = None
        while len(refs) < self.max_messages:
            results = messages.list(
                userId="me", q=query, maxResults=self.max_messages, pageToken=page_token,
            ).execute()
            refs.extend(results.get("messages", []))
            page_token = results.get("nextPageToken")
            if not page_token:
                break
        return [
            messages.get(userId="me", id=ref["id"], format="full").execute()
            for ref in refs[: self.max_messages]
        ]

    def fetch_since(self, since: datetime | None) -> list[MailMessage]:
        try:
            raw_messages = self._fetch_raw(since)
        except (HttpError, GoogleAuthError, OSError) as exc:
            raise ExternalServiceError(f"Gmail fetch failed: {exc}")

        out: list[MailMessage] = []
        for raw in raw_messages:
            payload = raw.get("payload", {})
            headers = gmail_headers(payload)
            internal = raw.get("internalDate")
            received = (
                datetime.fromtimestamp(int(internal) / 1000, tz=timezone.utc) if internal else utc_now()
            )
            if since and received < since:
                continue
            out.append(MailMessage(
                external_id=raw.get("id") or headers.get("message-id") or new_id(),
                sender=parseaddr(headers.get("from", ""))[1].lower(),
                subject=headers.get("subject", ""),
                body=gmail_body(payload),
                received_at=iso(received),
                thread_id=raw.get("threadId", ""),
            ))
        log.info("Fetched %d Gmail message(s)", len(out))
        return out


class GmailConnections:
    """Builds the Gmail reader for one user from their stored refresh token."""

    def __init__(
        self, store: DocumentStore, client_id: str, client_secret: str, *, max_messages: int = 50,
    ) -> None:
        self.store = store
        self.client_id = client_id
        self.client_secret = client_secret
        self.max_messages = max_messages

    def __call__(self, user_id: str) -> MailboxReader | None:
        token = load_settings(self.store, user_id).google_refresh_token
        if not token or not (self.client_id and self.client_secret):
            return None
        credentials = Credentials(
            token=None,
            refresh_token=token,
            client_id=self.client_id,
            client_secret=self.client_secret,
            token_uri=GOOGLE_TOKEN_URI,
            scopes=GMAIL_SCOPES,
        )
        return GmailMailboxReader(credentials, max_messages=self.max_messages)


def is_job_related(message: MailMessage, companies: list[str]) -> bool:
    subject = message.subject.lower()
    body = message.snippet.lower()
    if any(domain in message.sender for domain in JOB_DOMAINS):
        return True
    if any(kw in subject or kw in body for kw in JOB_KEYWORDS):
        return True
    domain = message.sender.partition("@")[2]
    return any(c and c.replace(" ", "") in domain for c in companies)


class EmailSyncer:
    def __init__(
        self,
        store: DocumentStore,
        readers: Callable[[str], MailboxReader | None],
        ai: AIClient | None,
        engine: JobSearchEngine,
        notifier: NotificationManager,
        locks: KeyedLocks | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.readers = readers
        self.ai = ai
        self.engine = engine
        self.notifier = notifier
        self.locks = locks or engine.locks
        self.clock = clock

    def analyze(self, message: MailMessage) -> EmailAnalysis:
        fallback = EmailAnalysis(
            category="other", is_job_related=True, urgency="medium", summary=message.snippet,
        )
        if self.ai is None:
            return fallback
        prompt = f"From: {message.sender}\nSubject: {message.subject}\n\n{message.body[:4000]}"
        try:
            return self.ai.complete_structured(EMAIL_ANALYZER, prompt, EmailAnalysis, max_tokens=800)
        except ExternalServiceError as exc:
            log.error("Email analysis failed for %r: %s", message.subject, exc.message)
            return fallback

    def sync_user(self, user_id: str) -> dict | None:
        """Process mail received since the user's last sync.

        Returns None when the user has not connected a mailbox.
        """
        reader = self.readers(user_id)
        if reader is None:
            log.info("No connected mailbox for user=%s", user_id)
            return None
        stats = {"processed": 0, "job_related": 0, "interviews_detected": 0, "status_updates": 0}
        settings = load_settings(self.store, user_id)
        since = parse_iso(settings.last_email_sync) or (self.clock() - timedelta(days=7))
        messages = reader.fetch_since(since)

        known = {e.get("external_id") for e in self.store.get(emails_index_key(user_id)) or []}
        applied = [j for j in self.engine.list_jobs(user_id) if j.get("status") != "discovered"]
        companies = [(j.get("company") or "").lower() for j in applied]

        entries: list[dict] = []
        for message in messages:
            if message.external_id in known:
                continue
            known.add(message.external_id)
            stats["processed"] += 1
            entry = {
                "id": new_id(), "external_id": message.external_id, "thread_id": message.thread_id,
                "from": message.sender, "subject": message.subject, "snippet": message.snippet,
                "received_at": message.received_at, "is_job_related": False, "category": None,
            }
            if is_job_related(message, companies):
                stats["job_related"] += 1
                analysis = self.analyze(message)
                entry.update({
                    "is_job_related": analysis.is_job_related,
                    "category": analysis.category,
                    "urgency": analysis.urgency,
                    "summary": analysis.summary,
                })
                if analysis.is_job_related:
                    self._act_on(user_id, message, analysis, applied, stats)
            entries.append(entry)

        if entries:
            with self.locks(user_id):
                self.store.update(emails_index_key(user_id), lambda cur: (cur or []) + entries)
        stamp = iso(self.clock())
        with self.locks(user_id):
            update_settings(self.store, user_id, lambda s: setattr(s, "last_email_sync", stamp), self.clock)
        log.info("Email sync for user=%s: %s", user_id, stats)
        return stats

    def _match_job(self, analysis: EmailAnalysis, message: MailMessage, jobs: list[dict]) -> dict | None:
        company = (analysis.extracted_data.company or "").lower().strip()
        domain = message.sender.partition("@")[2]
        for job in jobs:
            name = (job.get("company") or "").lower().strip()
            if not name:
                continue
            if company and (company in name or name in company):
                return job
            if name.replace(" ", "") in domain:
                return job
        return None

    def _act_on(
        self, user_id: str, message: MailMessage, analysis: EmailAnalysis, jobs: list[dict], stats: dict,
    ) -> None:
        job = self._match_job(analysis, message, jobs)
        target = _CATEGORY_STATUS.get(analysis.category)
        if job is not None and target is not None and self._moves_forward(job.get("status"), target):
            self.engine.update_job_status(user_id, job["id"], target)
            job["status"] = target.value
            stats["status_updates"] += 1

        company = analysis.extracted_data.company or (job or {}).get("company") or message.sender
        data = {"subject": message.subject, "from": message.sender, "job_id": (job or {}).get("id")}
        if analysis.category == "interview_invite":
            stats["interviews_detected"] += 1
            interview_id = self._record_interview(user_id, analysis, job, message)
            self.notifier.send(
                user_id, NotificationType.INTERVIEW_DETECTED,
                f"Interview invite from {company}",
                analysis.summary or message.subject, Priority.HIGH,
                {**data, "interview_id": interview_id},
            )
        elif analysis.category in ("offer", "rejection") or analysis.urgency == "high":
            self.notifier.send(
                user_id, NotificationType.EMAIL_RESPONSE,
                f"{analysis.category.replace('_', ' ').capitalize()}: {company}",
                analysis.summary or message.subject,
                Priority.HIGH if analysis.category == "offer" or analysis.urgency == "high" else Priority.MEDIUM,
                data,
            )

    @staticmethod
    def _moves_forward(current: str | None, target: PipelineStatus) -> bool:
        """Replies only advance a job; they never drag it back a stage."""
        if target == PipelineStatus.REJECTED:
            return current not in ("rejected", "offer")
        try:
            status = PipelineStatus(current)
        except ValueError:
            return True
        if status not in _STAGE_ORDER:
            return status in (PipelineStatus.SAVED, PipelineStatus.DISCOVERED)
        return _STAGE_ORDER.index(target) > _STAGE_ORDER.index(status)

    def _record_interview(
        self, user_id: str, analysis: EmailAnalysis, job: dict | None, message: MailMessage,
    ) -> str:
        data = analysis.extracted_data
        interview = {
            "id": new_id(),
            "job_id": (job or {}).get("id"),
            "company": data.company or (job or {}).get("company") or "Unknown",
            "role": data.role or (job or {}).get("title") or "Unknown",
            "status": "scheduled",
            "scheduled_at": None,
            "dates": data.dates,
            "times": data.times,
            "location": data.location,
            "meeting_link": data.meeting_link,
            "interviewer_name": data.interviewer_name,
            "email_subject": message.subject,
            "created_at": iso(self.clock()),
        }
        self.store.put(interview_key(user_id, interview["id"]), interview)
        item = {k: interview[k] for k in ("id", "job_id", "company", "role", "status", "scheduled_at")}
        with self.locks(user_id):
            self.store.update(interviews_index_key(user_id), lambda cur: interview_items(cur) + [item])
        log.info("Recorded interview %s with %s for user=%s", interview["id"], interview["company"], user_id)
        return interview["id"]

