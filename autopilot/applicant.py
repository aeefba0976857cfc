"""
Auto-applicant: one application attempt per call, recorded as data.

Method selection, then either a browser session (AI field mapping, strict
confidence filter, submit, screenshot), an application email through the SMTP
channel, or a ``pending_review`` record when nothing can be automated. Every
outcome, including timeouts and cancellation, ends in a persisted Application.
"""
from __future__ import annotations

import re
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any

from autopilot.ai_client import AIClient
from autopilot.browser import BrowserDriver, BrowserSession, detect_platform
from autopilot.channels import ChannelError, MessagingChannel
from autopilot.config import AppConfig
from autopilot.errors import ExternalServiceError, NotFoundError
from autopilot.form_filler import analyze_form, plan_fill
from autopilot.log import get_logger
from autopilot.models import (
    Application,
    ApplicationMethod,
    ApplicationStatus,
    ApplyResult,
    Clock,
    Job,
    NotificationType,
    PipelineStatus,
    Priority,
    iso,
    new_id,
    utc_now,
)
from autopilot.notifications import NotificationManager
from autopilot.prompts import APPLICATION_EMAIL
from autopilot.search_engine import JobSearchEngine
from autopilot.storage import (
    DocumentStore,
    KeyedLocks,
    application_key,
    applications_index_key,
    documents_index_key,
    profile_key,
    screenshot_key,
)

log = get_logger(__name__)

ATS_PLATFORMS = {"workday", "greenhouse", "lever", "ashby", "smartrecruiters"}
_CAREER_URL_HINTS = ("/careers", "/jobs/", "/apply", "careers.", "jobs.")

EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)*\.[a-zA-Z]{2,}")
_EMAIL_APPLY_RE = re.compile(
    r"(send|email|e-mail|mail)\s+(your\s+|a\s+|us\s+)?(resume|cv|application|applications)"
    r"|(resume|cv|application)s?\s+to\s+[\w.+-]+@",
    re.IGNORECASE,
)


class ApplyAborted(Exception):
    """Raised between steps when the attempt ran out of time or was cancelled."""


def extract_application_email(description: str) -> str | None:
    """Contact address of an email-application posting, if the text asks for one."""
    text = description or ""
    if not _EMAIL_APPLY_RE.search(text):
        return None
    match = EMAIL_RE.search(text)
    return match.group(0) if match else None


def detect_method(job: Job) -> ApplicationMethod:
    """Pick how to apply: known form, then email, then LinkedIn, else manual."""
    url = (job.url or "").strip()
    platform = detect_platform(url) if url else ""
    if platform in ATS_PLATFORMS:
        return ApplicationMethod.DIRECT_WEBSITE
    if platform == "generic" and any(h in url.lower() for h in _CAREER_URL_HINTS):
        return ApplicationMethod.DIRECT_WEBSITE
    if extract_application_email(job.description):
        return ApplicationMethod.EMAIL
    if platform == "linkedin" or job.platform == "linkedin":
        return ApplicationMethod.LINKEDIN_EASY
    return ApplicationMethod.MANUAL_REQUIRED


@dataclass
class _Outcome:
    status: ApplicationStatus
    error: str | None = None
    confirmation: str | None = None
    screenshot: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AutoApplicant:
    def __init__(
        self,
        store: DocumentStore,
        engine: JobSearchEngine,
        driver: BrowserDriver | None,
        ai: AIClient | None,
        notifier: NotificationManager,
        channels: dict[str, MessagingChannel] | None = None,
        locks: KeyedLocks | None = None,
        config: AppConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.engine = engine
        self.driver = driver
        self.ai = ai
        self.notifier = notifier
        self.channels = channels or {}
        self.locks = locks or engine.locks
        self.config = config or AppConfig()
        self.clock = clock

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def apply_to_job(
        self,
        user_id: str,
        job_id: str,
        *,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> ApplyResult:
        """Run one application attempt for *job_id*.

        Returns the existing record when an active (submitted or pending
        review) application already exists. A previous failed attempt is
        retried on the same record with its attempt counter bumped.
        """
        job = self.engine.load_job(user_id, job_id)
        profile = self.store.get(profile_key(user_id))
        if profile is None:
            raise NotFoundError(f"Profile not found for user {user_id}")

        with self.locks(user_id, job_id):
            existing = self._latest_application(user_id, job_id)
            if existing is not None and existing.is_active:
                log.info(
                    "Job %s already has %s application %s, not re-applying",
                    job_id, existing.status.value, existing.id,
                )
                return self._result(existing, reused=True)

            method = detect_method(job)
            if existing is not None and existing.status == ApplicationStatus.FAILED:
                app = existing
                app.method = method
            else:
                app = Application(
                    id=new_id(), job_id=job_id, user_id=user_id,
                    status=ApplicationStatus.FAILED, method=method,
                )
            attempt = app.attempt_count + 1
            cv_id, cover_id = self._documents_for(user_id, job_id)
            app.cv_document_id = cv_id or app.cv_document_id
            app.cover_letter_document_id = cover_id or app.cover_letter_document_id

            log.info(
                "Applying to %s at %s (user=%s, method=%s, attempt=%d)",
                job.title, job.company, user_id, method.value, attempt,
            )
            self._set_job_state(user_id, job_id, PipelineStatus.APPLYING, app.id)

            deadline = time.monotonic() + (timeout if timeout is not None else self.config.apply_timeout)
            if method == ApplicationMethod.MANUAL_REQUIRED:
                outcome = _Outcome(
                    ApplicationStatus.PENDING_REVIEW,
                    error="No automatable application route found; apply manually",
                )
            elif method == ApplicationMethod.EMAIL:
                outcome = self._apply_via_email(job, profile)
            else:
                outcome = self._apply_via_browser(user_id, job, profile, app.id, attempt, deadline, cancel)

            self._record(app, outcome, attempt)
            if outcome.status == ApplicationStatus.SUBMITTED:
                self._set_job_state(user_id, job_id, PipelineStatus.APPLIED, app.id)
            elif outcome.status == ApplicationStatus.FAILED:
                self._set_job_state(user_id, job_id, PipelineStatus.SAVED, app.id)

        log.info(
            "Application %s for job %s finished: %s%s",
            app.id, job_id, app.status.value, f" ({app.error})" if app.error else "",
        )
        self._notify(user_id, job, app)
        return self._result(app)

    # ------------------------------------------------------------------
    # Methods
    # ------------------------------------------------------------------

    def _checkpoint(
        self, deadline: float, cancel: threading.Event | None, abort: threading.Event | None = None,
    ) -> None:
        if cancel is not None and cancel.is_set():
            raise ApplyAborted("Application cancelled")
        if time.monotonic() >= deadline or (abort is not None and abort.is_set()):
            raise ApplyAborted("Application timed out")

    def _await(self, future: Future, deadline: float, cancel: threading.Event | None) -> _Outcome:
        while True:
            self._checkpoint(deadline, cancel)
            remaining = deadline - time.monotonic()
            try:
                return future.result(timeout=min(remaining, 0.25))
            except FutureTimeout:
                continue

    def _apply_via_browser(
        self,
        user_id: str,
        job: Job,
        profile: dict,
        application_id: str,
        attempt: int,
        deadline: float,
        cancel: threading.Event | None,
    ) -> _Outcome:
        """Run the browser attempt on its own thread and wait at most until *deadline*.

        The session is only touched from the worker thread. On timeout or
        cancellation the worker is told to stop; it takes the screenshot and
        closes the session at its next step boundary. The caller waits up to
        ``apply_close_grace`` seconds for that before recording the failure.
        """
        if self.driver is None:
            return _Outcome(ApplicationStatus.PENDING_REVIEW, error="Browser automation is not available")
        if not job.url:
            return _Outcome(ApplicationStatus.FAILED, error="Job has no application URL")

        abort = threading.Event()
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="apply")
        future = pool.submit(
            self._browser_attempt, user_id, job, profile, application_id, attempt, deadline, cancel, abort,
        )
        try:
            return self._await(future, deadline, cancel)
        except ApplyAborted as exc:
            abort.set()
            log.warning("Application for job %s aborted: %s", job.id, exc)
            outcome = _Outcome(ApplicationStatus.FAILED, error=str(exc))
            try:
                late = future.result(timeout=self.config.apply_close_grace)
            except FutureTimeout:
                log.warning("Browser session for job %s still busy, it closes in the background", job.id)
            else:
                outcome.screenshot = late.screenshot
                outcome.metadata.update(late.metadata)
            return outcome
        finally:
            pool.shutdown(wait=False)

    def _browser_attempt(
        self,
        user_id: str,
        job: Job,
        profile: dict,
        application_id: str,
        attempt: int,
        deadline: float,
        cancel: threading.Event | None,
        abort: threading.Event,
    ) -> _Outcome:
        session: BrowserSession | None = None
        outcome = _Outcome(ApplicationStatus.FAILED)
        try:
            self._checkpoint(deadline, cancel, abort)
            session = self.driver.open(job.url, timeout=max(1.0, deadline - time.monotonic()))
            self._checkpoint(deadline, cancel, abort)
            form_html = self.driver.inspect_form(session)
            self._checkpoint(deadline, cancel, abort)

            analysis = analyze_form(
                self.ai, form_html, profile, job.to_dict(), timeout=max(1.0, deadline - time.monotonic()),
            )
            plan = plan_fill(analysis, self.config.min_field_confidence)
            self._checkpoint(deadline, cancel, abort)

            filled = self.driver.fill(session, plan.accepted) if plan.accepted else 0
            outcome.metadata.update({
                "form_fields_filled": filled,
                "form_fields_total": plan.total,
                "form_fields_skipped": len(plan.skipped),
            })
            log.info("Filled %d/%d form fields for job %s", filled, plan.total, job.id)

            if plan.requires_review and not self.config.submit_when_review_required:
                notes = "; ".join(analysis.warnings + analysis.missing_required_data)
                outcome.status = ApplicationStatus.PENDING_REVIEW
                outcome.error = (
                    f"Form requires manual review ({len(plan.skipped)} low-confidence field(s))"
                    + (f": {notes}" if notes else "")
                )
                return outcome

            self._checkpoint(deadline, cancel, abort)
            submitted = self.driver.submit(session)
            if not submitted.submitted:
                outcome.error = submitted.message or "Form could not be submitted"
            elif submitted.confirmed:
                outcome.status = ApplicationStatus.SUBMITTED
                outcome.confirmation = submitted.message
            else:
                # Possibly submitted; a person checks the screenshot instead of a blind retry.
                outcome.status = ApplicationStatus.PENDING_REVIEW
                outcome.error = "Submitted but no confirmation found; check the screenshot"
        except ApplyAborted as exc:
            outcome.status = ApplicationStatus.FAILED
            outcome.error = str(exc)
        except ExternalServiceError as exc:
            outcome.status = ApplicationStatus.FAILED
            outcome.error = exc.message
            log.error("Browser application for job %s failed: %s", job.id, exc.message)
        except Exception as exc:
            outcome.status = ApplicationStatus.FAILED
            outcome.error = f"Browser automation failed: {exc}"
            log.exception("Unexpected browser failure for job %s", job.id)
        finally:
            if session is not None:
                outcome.screenshot = self._capture(user_id, application_id, attempt, session)
                try:
                    self.driver.close(session)
                except Exception:
                    log.exception("Could not close browser session for job %s", job.id)
        return outcome

    def _capture(self, user_id: str, application_id: str, attempt: int, session: BrowserSession) -> str | None:
        key = screenshot_key(user_id, application_id, attempt)
        try:
            png = self.driver.screenshot(session)
        except ExternalServiceError as exc:
            log.warning("No screenshot for application %s: %s", application_id, exc.message)
            return None
        self.store.put_bytes(key, png)
        return key

    def _apply_via_email(self, job: Job, profile: dict) -> _Outcome:
        address = extract_application_email(job.description)
        if not address:
            return _Outcome(ApplicationStatus.FAILED, error="No email address found for application")
        channel = self.channels.get("email")
        if channel is None:
            return _Outcome(ApplicationStatus.FAILED, error="Email channel is not configured (SMTP_* settings)")

        subject = f"Application: {job.title} - {profile.get('name', '')}".rstrip(" -")
        body = self.compose_application_email(job, profile)
        try:
            message_id = channel.send_message(address, body, subject)
        except ChannelError as exc:
            return _Outcome(ApplicationStatus.FAILED, error=exc.message)
        return _Outcome(
            ApplicationStatus.SUBMITTED,
            confirmation=f"Application sent to {address}",
            metadata={"email_to": address, "email_message_id": message_id},
        )

    def compose_application_email(self, job: Job, profile: dict) -> str:
        if self.ai is not None:
            prompt = (
                f"Role: {job.title} at {job.company}\n"
                f"Job description: {(job.description or '')[:1500]}\n\n"
                f"Candidate: {profile.get('name', '')}\n"
                f"Headline: {profile.get('headline', '')}\n"
                f"Summary: {profile.get('summary', '')}\n"
                f"Skills: {', '.join(s.get('name', '') if isinstance(s, dict) else str(s) for s in profile.get('skills') or [])}\n"
                f"Contact: {profile.get('email', '')} {profile.get('phone', '')}"
            )
            try:
                text = self.ai.complete_text(APPLICATION_EMAIL, prompt, max_tokens=500)
                if text:
                    return text
            except ExternalServiceError as exc:
                log.warning("AI application email failed, using template: %s", exc.message)

        summary = profile.get("summary") or (
            "I believe my skills and experience make me a strong candidate for this role."
        )
        return (
            "Dear Hiring Manager,\n\n"
            f"I am writing to express my interest in the {job.title} position at {job.company}.\n\n"
            f"{summary}\n\n"
            "I would welcome the chance to discuss how I can contribute to your team.\n\n"
            "Best regards,\n"
            f"{profile.get('name', '')}\n{profile.get('email', '')}\n{profile.get('phone') or ''}"
        ).rstrip() + "\n"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _documents_for(self, user_id: str, job_id: str) -> tuple[str | None, str | None]:
        """Tailored CV / cover letter for this job, else the newest CV."""
        index = self.store.get(documents_index_key(user_id)) or {}
        docs = index.get("documents", []) if isinstance(index, dict) else index
        cv = next((d for d in docs if d.get("type") == "cv" and d.get("job_id") == job_id), None)
        cover = next((d for d in docs if d.get("type") == "cover_letter" and d.get("job_id") == job_id), None)
        if cv is None:
            cvs = sorted(
                (d for d in docs if d.get("type") == "cv"),
                key=lambda d: d.get("created_at") or "", reverse=True,
            )
            cv = cvs[0] if cvs else None
        return (cv or {}).get("id"), (cover or {}).get("id")

    def _latest_application(self, user_id: str, job_id: str) -> Application | None:
        index = self.store.get(applications_index_key(user_id)) or []
        for item in reversed(index):
            if item.get("job_id") != job_id:
                continue
            data = self.store.get(application_key(user_id, item["id"]))
            if data is not None:
                return Application.from_dict(data)
        return None

    def list_applications(self, user_id: str, *, job_id: str | None = None) -> list[dict]:
        index = self.store.get(applications_index_key(user_id)) or []
        return [a for a in index if job_id is None or a.get("job_id") == job_id]

    def get_application(self, user_id: str, application_id: str) -> dict:
        data = self.store.get(application_key(user_id, application_id))
        if data is None:
            raise NotFoundError(f"Application {application_id} not found")
        return data

    def _record(self, app: Application, outcome: _Outcome, attempt: int) -> None:
        now = iso(self.clock())
        app.status = outcome.status
        app.error = outcome.error
        app.confirmation_message = outcome.confirmation
        app.screenshot_key = outcome.screenshot or app.screenshot_key
        if outcome.status == ApplicationStatus.SUBMITTED:
            app.applied_at = now
        app.metadata.update(outcome.metadata)
        app.metadata["attempt_count"] = attempt
        app.metadata["last_attempt_at"] = now

        self.store.put(application_key(app.user_id, app.id), app.to_dict())
        item = app.list_item()

        def merge(current):
            index = [a for a in (current or []) if a.get("id") != app.id]
            index.append(item)
            return index

        with self.locks(app.user_id):
            self.store.update(applications_index_key(app.user_id), merge)

    def _set_job_state(self, user_id: str, job_id: str, status: PipelineStatus, application_id: str) -> None:
        with self.locks(user_id):
            job = self.engine.load_job(user_id, job_id)
            job.application_id = application_id
            if job.status != status:
                self.engine.stamp_status(job, status)
            self.engine.save_job(user_id, job)

    def _notify(self, user_id: str, job: Job, app: Application) -> None:
        if app.status == ApplicationStatus.SUBMITTED:
            self.notifier.send(
                user_id, NotificationType.APPLICATION_SENT,
                f"Applied: {job.company}",
                f"Successfully applied for {job.title} at {job.company}",
                Priority.MEDIUM,
                {"job_id": job.id, "application_id": app.id},
            )
        elif app.status == ApplicationStatus.PENDING_REVIEW:
            self.notifier.send(
                user_id, NotificationType.APPLICATION_FAILED,
                f"Action needed: {job.company}",
                f"{job.title} at {job.company} needs your review. {app.error or ''}".strip(),
                Priority.MEDIUM,
                {"job_id": job.id, "application_id": app.id, "url": job.url},
            )
        else:
            self.notifier.send(
                user_id, NotificationType.APPLICATION_FAILED,
                f"Failed: {job.company}",
                f"Could not auto-apply for {job.title}. {app.error or ''}".strip(),
                Priority.HIGH,
                {"job_id": job.id, "application_id": app.id},
            )

    @staticmethod
    def _result(app: Application, reused: bool = False) -> ApplyResult:
        return ApplyResult(
            success=app.status == ApplicationStatus.SUBMITTED,
            application_id=app.id,
            method=app.method,
            status=app.status,
            error=app.error,
            screenshot_key=app.screenshot_key,
            confirmation_message=app.confirmation_message,
            reused=reused,
        )
