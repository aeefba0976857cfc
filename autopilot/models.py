"""Data models for jobs, applications and notifications.

Records are plain dataclasses persisted as snake_case JSON through the
document store (``to_dict`` / ``from_dict``).
"""
from __future__ import annotations

import hashlib
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from autopilot.errors import ValidationError

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_id() -> str:
    return uuid.uuid4().hex


class _LabelEnum(str, Enum):
    @classmethod
    def parse(cls, value: Any):
        """Validating constructor: accepts a member or its label."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(m.value for m in cls)
            raise ValidationError(f"Unknown {cls.__name__} {value!r} (expected one of: {allowed})")


class PipelineStatus(_LabelEnum):
    # Permissive label set: any label may follow any other (manual correction).
    DISCOVERED = "discovered"
    SAVED = "saved"
    APPLYING = "applying"
    APPLIED = "applied"
    SCREENING = "screening"
    INTERVIEW = "interview"
    OFFER = "offer"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineStatus.OFFER, PipelineStatus.REJECTED)

    @property
    def is_response(self) -> bool:
        return self in (
            PipelineStatus.SCREENING,
            PipelineStatus.INTERVIEW,
            PipelineStatus.OFFER,
            PipelineStatus.REJECTED,
        )


class ApplicationStatus(_LabelEnum):
    SUBMITTED = "submitted"
    FAILED = "failed"
    PENDING_REVIEW = "pending_review"
    WITHDRAWN = "withdrawn"


class ApplicationMethod(_LabelEnum):
    DIRECT_WEBSITE = "direct_website"
    EMAIL = "email"
    LINKEDIN_EASY = "linkedin_easy"
    MANUAL_REQUIRED = "manual_required"


class NotificationType(_LabelEnum):
    INTERVIEW_DETECTED = "interview_detected"
    INTERVIEW_CONFIRMED = "interview_confirmed"
    INTERVIEW_REMINDER = "interview_reminder"
    THANK_YOU_READY = "thank_you_ready"
    JOB_MATCH = "job_match"
    APPLICATION_SENT = "application_sent"
    APPLICATION_FAILED = "application_failed"
    EMAIL_RESPONSE = "email_response"
    DAILY_DIGEST = "daily_digest"
    SYSTEM = "system"


class Priority(_LabelEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class Salary:
    min: float | None = None
    max: float | None = None
    currency: str | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> Salary | None:
        if not data:
            return None
        return cls(min=data.get("min"), max=data.get("max"), currency=data.get("currency"))


def make_job_id(platform: str, external_id: str) -> str:
    """Stable internal id for a (platform, external_id) natural key."""
    return hashlib.sha256(f"{platform}:{external_id}".encode()).hexdigest()[:16]


@dataclass
class RawJob:
    """A posting as normalised by a platform adapter, before scoring."""

    external_id: str
    platform: str
    title: str
    company: str
    description: str = ""
    location: str = ""
    remote: bool = False
    url: str = ""
    salary: Salary | None = None
    job_type: str | None = None
    tags: list[str] = field(default_factory=list)
    posted_at: str | None = None
    fetched_at: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (str(self.external_id), self.platform)

    @property
    def job_id(self) -> str:
        return make_job_id(self.platform, str(self.external_id))


_SUMMARY_FIELDS = (
    "id", "external_id", "platform", "title", "company", "location", "remote",
    "match_score", "status", "saved_at", "updated_at", "url", "applied_at",
    "application_id",
)


@dataclass
class Job:
    id: str
    external_id: str
    platform: str
    title: str
    company: str
    description: str = ""
    location: str = ""
    remote: bool = False
    url: str = ""
    salary: Salary | None = None
    job_type: str | None = None
    tags: list[str] = field(default_factory=list)
    posted_at: str | None = None
    match_score: int = 0
    analysis: dict | None = None
    scored_by: str = "default"
    status: PipelineStatus = PipelineStatus.DISCOVERED
    notes: str | None = None
    fetched_at: str | None = None
    saved_at: str | None = None
    updated_at: str | None = None
    applied_at: str | None = None
    response_at: str | None = None
    application_id: str | None = None

    @classmethod
    def from_raw(cls, raw: RawJob, *, now: datetime) -> Job:
        stamp = iso(now)
        return cls(
            id=raw.job_id,
            external_id=str(raw.external_id),
            platform=raw.platform,
            title=raw.title,
            company=raw.company,
            description=raw.description,
            location=raw.location,
            remote=raw.remote,
            url=raw.url,
            salary=raw.salary,
            job_type=raw.job_type,
            tags=list(raw.tags),
            posted_at=raw.posted_at,
            fetched_at=raw.fetched_at or stamp,
            saved_at=stamp,
            updated_at=stamp,
        )

    @property
    def key(self) -> tuple[str, str]:
        return (self.external_id, self.platform)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, data: dict) -> Job:
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["salary"] = Salary.from_dict(data.get("salary"))
        kwargs["status"] = PipelineStatus.parse(data.get("status", "discovered"))
        kwargs["tags"] = list(data.get("tags") or [])
        return cls(**kwargs)

    def summary(self) -> dict:
        d = self.to_dict()
        return {k: d[k] for k in _SUMMARY_FIELDS}


@dataclass
class Application:
    id: str
    job_id: str
    user_id: str
    status: ApplicationStatus
    method: ApplicationMethod
    applied_at: str | None = None
    cv_document_id: str | None = None
    cover_letter_document_id: str | None = None
    error: str | None = None
    screenshot_key: str | None = None
    confirmation_message: str | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        """Non-failed, non-withdrawn attempts block re-submission."""
        return self.status in (ApplicationStatus.SUBMITTED, ApplicationStatus.PENDING_REVIEW)

    @property
    def attempt_count(self) -> int:
        return int(self.metadata.get("attempt_count", 0))

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        d["method"] = self.method.value
        return d

    @classmethod
    def from_dict(cls, data: dict) -> Application:
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["status"] = ApplicationStatus.parse(data["status"])
        kwargs["method"] = ApplicationMethod.parse(data["method"])
        kwargs["metadata"] = dict(data.get("metadata") or {})
        return cls(**kwargs)

    def list_item(self) -> dict:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "status": self.status.value,
            "method": self.method.value,
            "applied_at": self.applied_at,
        }


@dataclass
class ApplyResult:
    """Outcome of one ``apply_to_job`` call. Failure is data, not an exception."""

    success: bool
    application_id: str
    method: ApplicationMethod
    status: ApplicationStatus
    error: str | None = None
    screenshot_key: str | None = None
    confirmation_message: str | None = None
    reused: bool = False

    def to_dict(self) -> dict:
        d = asdict(self)
        d["method"] = self.method.value
        d["status"] = self.status.value
        return d


@dataclass
class Notification:
    id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    priority: Priority = Priority.MEDIUM
    channel: str = "in_app"
    read: bool = False
    sent: bool = False
    sent_at: str | None = None
    data: dict = field(default_factory=dict)
    created_at: str | None = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["type"] = self.type.value
        d["priority"] = self.priority.value
        return d

    @classmethod
    def from_dict(cls, data: dict) -> Notification:
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["type"] = NotificationType.parse(data["type"])
        kwargs["priority"] = Priority.parse(data.get("priority", "medium"))
        kwargs["data"] = dict(data.get("data") or {})
        return cls(**kwargs)
