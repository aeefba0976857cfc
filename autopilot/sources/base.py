from __future__ import annotations

import html
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field

from autopilot.errors import ExternalServiceError, ValidationError
from autopilot.models import RawJob

_TAG = re.compile(r"<[^>]+>")
_WS = re.compile(r"[ \t]+")


@dataclass
class JobQuery:
    keywords: list[str] = field(default_factory=list)
    location: str | None = None
    remote: bool | None = None
    min_salary: float | None = None
    max_salary: float | None = None
    job_types: list[str] = field(default_factory=list)
    exclude_companies: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict | None) -> JobQuery:
        data = dict(data or {})
        unknown = set(data) - {f for f in cls.__dataclass_fields__}
        if unknown:
            raise ValidationError(f"Unknown search fields: {', '.join(sorted(unknown))}")
        for name in ("keywords", "job_types", "exclude_companies"):
            value = data.get(name) or []
            if isinstance(value, str) or not all(isinstance(v, str) for v in value):
                raise ValidationError(f"{name} must be a list of strings")
            data[name] = [v.strip() for v in value if v.strip()]
        for name in ("min_salary", "max_salary"):
            value = data.get(name)
            if value is not None and (not isinstance(value, (int, float)) or value < 0):
                raise ValidationError(f"{name} must be a non-negative number")
        if data.get("remote") is not None and not isinstance(data["remote"], bool):
            raise ValidationError("remote must be true or false")
        return cls(**data)

    def to_dict(self) -> dict:
        return asdict(self)

    @property
    def text(self) -> str:
        return " ".join(self.keywords)


class SourceError(ExternalServiceError):
    """Fetch failure attributed to one platform."""

    code = "SOURCE_ERROR"

    def __init__(self, platform: str, message: str) -> None:
        super().__init__(f"{platform}: {message}")
        self.platform = platform


class JobSource(ABC):
    name: str = "unknown"
    timeout: float = 15.0

    @abstractmethod
    def fetch(self, query: JobQuery) -> list[RawJob]:
        """Raw postings matching *query*. Raises ``SourceError`` on failure."""

    def matches_query(self, job: RawJob, query: JobQuery) -> bool:
        if query.keywords:
            text = f"{job.title} {job.description} {job.company} {' '.join(job.tags)}".lower()
            if not any(k.lower() in text for k in query.keywords):
                return False

        if query.remote is not None and job.remote != query.remote:
            return False

        if (
            query.location
            and not job.remote
            and job.location
            and query.location.lower() not in job.location.lower()
        ):
            return False

        salary = job.salary
        if query.min_salary and salary and salary.max and salary.max < query.min_salary:
            return False
        if query.max_salary and salary and salary.min and salary.min > query.max_salary:
            return False

        if query.job_types and job.job_type and job.job_type.lower() not in {
            t.lower() for t in query.job_types
        }:
            return False

        company = job.company.lower()
        if any(ex.lower() in company for ex in query.exclude_companies):
            return False

        return True


def strip_html(text: str) -> str:
    text = re.sub(r"<\s*(br|/p|p)\s*/?>", "\n", text or "", flags=re.IGNORECASE)
    text = html.unescape(_TAG.sub("", text))
    return "\n".join(_WS.sub(" ", line).strip() for line in text.splitlines()).strip()
