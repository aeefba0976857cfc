"""Validated shapes exchanged with the AI service and stored in user settings."""
from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JobMatchAnalysis(BaseModel):
    match_score: int = Field(ge=0, le=100)
    strengths: list[str] = Field(default_factory=list)
    concerns: list[str] = Field(default_factory=list)
    missing_skills: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


FieldKind = Literal[
    "text", "email", "tel", "number", "select", "textarea", "file", "checkbox", "radio"
]


class FormField(BaseModel):
    selector: str
    type: FieldKind = "text"
    value: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    label: Optional[str] = None


class CustomAnswer(BaseModel):
    selector: str
    question: str
    answer: str
    confidence: float = Field(ge=0.0, le=1.0)


class FormAnalysis(BaseModel):
    fields: list[FormField] = Field(default_factory=list)
    custom_answers: list[CustomAnswer] = Field(default_factory=list)
    requires_manual_review: bool = False
    missing_required_data: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ExtractedJob(BaseModel):
    """One posting pulled out of a free-text "Who is hiring" comment."""

    is_job_posting: bool
    title: str = ""
    company: str = ""
    location: str = ""
    remote: bool = False
    description: str = ""
    salary_min: Optional[float] = None
    salary_max: Optional[float] = None
    currency: Optional[str] = None
    job_type: Optional[str] = None
    apply_url: str = ""
    tags: list[str] = Field(default_factory=list)


EmailCategory = Literal[
    "interview_invite",
    "rejection",
    "recruiter_outreach",
    "follow_up",
    "offer",
    "action_required",
    "other",
]


class ExtractedEmailData(BaseModel):
    company: Optional[str] = None
    role: Optional[str] = None
    dates: list[str] = Field(default_factory=list)
    times: list[str] = Field(default_factory=list)
    location: Optional[str] = None
    meeting_link: Optional[str] = None
    interviewer_name: Optional[str] = None


class EmailAnalysis(BaseModel):
    category: EmailCategory
    is_job_related: bool
    urgency: Literal["high", "medium", "low"] = "low"
    extracted_data: ExtractedEmailData = Field(default_factory=ExtractedEmailData)
    summary: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class AutoApplyRule(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    enabled: bool = False
    min_match_score: int = Field(default=70, ge=0, le=100)
    platforms: list[str] = Field(default_factory=list)
    exclude_companies: list[str] = Field(default_factory=list)
    require_remote: bool = False
    min_salary: Optional[float] = Field(default=None, ge=0)
    max_applications_per_day: int = Field(default=10, ge=1, le=50)


class NotificationPreferences(BaseModel):
    sms_enabled: bool = False
    whatsapp_enabled: bool = False
    email_digest_enabled: bool = True
    in_app_enabled: bool = True
    interview_reminders: bool = True
    job_match_alerts: bool = True
    application_updates: bool = True
    daily_digest: bool = True
    daily_digest_time: str = "09:00"


class SearchConfiguration(BaseModel):
    id: str
    query: dict = Field(default_factory=dict)
    frequency: Literal["hourly", "daily", "weekly"] = "daily"
    last_run_at: Optional[str] = None
    enabled: bool = True


class UserSettings(BaseModel):
    """``users/{id}/settings.json``. Unknown keys written by other components survive."""

    model_config = ConfigDict(extra="allow")

    timezone: str = "UTC"
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    phone_number: Optional[str] = None
    whatsapp_enabled: bool = False
    email: Optional[str] = None
    notification_preferences: NotificationPreferences = Field(
        default_factory=NotificationPreferences
    )
    email_sync_enabled: bool = False
    google_refresh_token: Optional[str] = None
    last_email_sync: Optional[str] = None
    last_digest_sent_at: Optional[str] = None
    auto_search_enabled: bool = False
    search_configurations: list[SearchConfiguration] = Field(default_factory=list)
    auto_apply_rules: Optional[AutoApplyRule] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("quiet_hours_start", "quiet_hours_end")
    @classmethod
    def check_hhmm(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        hours, _, minutes = value.partition(":")
        if not (hours.isdigit() and minutes.isdigit() and int(hours) < 24 and int(minutes) < 60):
            raise ValueError(f"expected HH:MM, got {value!r}")
        return value
