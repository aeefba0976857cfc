from __future__ import annotations

import os
import tempfile
import time
from datetime import datetime, timedelta, timezone

os.environ.setdefault("AUTOPILOT_LOG_DIR", os.path.join(tempfile.gettempdir(), "autopilot-test-logs"))

import pytest

from autopilot.ai_client import AIResponseError
from autopilot.applicant import AutoApplicant
from autopilot.browser import BrowserDriver, BrowserSession, SubmitOutcome
from autopilot.channels import ChannelError, MessagingChannel
from autopilot.config import AppConfig
from autopilot.models import RawJob, Salary
from autopilot.notifications import NotificationManager
from autopilot.scorer import JobScorer
from autopilot.sources.base import JobQuery, JobSource
from autopilot.search_engine import JobSearchEngine
from autopilot.storage import KeyedLocks, MemoryDocumentStore, profile_key

USER = "u1"


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeAI:
    """Canned replies keyed by schema name; a value may be a dict, a model,
    an exception, or a callable taking the user prompt."""

    def __init__(self, structured: dict | None = None, text: str | Exception = "Generated text") -> None:
        self.structured = structured or {}
        self.text = text
        self.calls: list[tuple[str, str]] = []
        self.timeouts: list[float | None] = []

    def complete_text(self, system, user, *, max_tokens=None, temperature=0.4, timeout=None):
        self.calls.append(("text", user))
        if isinstance(self.text, Exception):
            raise self.text
        return self.text

    def complete_structured(self, system, user, schema, *, max_tokens=None, max_attempts=3, timeout=None):
        self.calls.append((schema.__name__, user))
        self.timeouts.append(timeout)
        value = self.structured.get(schema.__name__)
        if callable(value):
            value = value(user)
        if isinstance(value, Exception):
            raise value
        if value is None:
            raise AIResponseError(f"no canned reply for {schema.__name__}")
        return value if isinstance(value, schema) else schema.model_validate(value)


class FakeSource(JobSource):
    def __init__(self, name: str, jobs=None, error: Exception | None = None, delay: float = 0.0,
                 timeout: float = 5.0) -> None:
        self.name = name
        self.jobs = list(jobs or [])
        self.error = error
        self.delay = delay
        self.timeout = timeout
        self.calls = 0

    def fetch(self, query: JobQuery) -> list[RawJob]:
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [j for j in self.jobs if self.matches_query(j, query)]


class FakeDriver(BrowserDriver):
    def __init__(
        self,
        form_html: str = "<form><input name='email'></form>",
        submit: SubmitOutcome | None = None,
        fail_on: dict[str, Exception] | None = None,
        delays: dict[str, float] | None = None,
    ) -> None:
        self.form_html = form_html
        self.submit_outcome = submit or SubmitOutcome(submitted=True, confirmed=True, message="Application submitted")
        self.fail_on = fail_on or {}
        self.delays = delays or {}
        self.calls: list[str] = []
        self.filled: list = []
        self.closed = 0

    def _step(self, name: str) -> None:
        self.calls.append(name)
        if name in self.delays:
            time.sleep(self.delays[name])
        if name in self.fail_on:
            raise self.fail_on[name]

    def open(self, url, *, timeout=None):
        self._step("open")
        return BrowserSession(url=url)

    def inspect_form(self, session):
        self._step("inspect_form")
        return self.form_html

    def fill(self, session, fields):
        self._step("fill")
        self.filled.extend(fields)
        return len(fields)

    def submit(self, session):
        self._step("submit")
        return self.submit_outcome

    def screenshot(self, session):
        self._step("screenshot")
        return b"\x89PNG fake"

    def close(self, session):
        self.calls.append("close")
        self.closed += 1


class FakeChannel(MessagingChannel):
    def __init__(self, name: str, fail: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.sent: list[tuple[str, str, str | None]] = []

    def send_message(self, to, body, subject=None):
        if self.fail:
            raise ChannelError(f"{self.name} provider down")
        self.sent.append((to, body, subject))
        return f"{self.name}-{len(self.sent)}"


def make_raw(external_id: str, platform: str = "fake", **overrides) -> RawJob:
    data = dict(
        external_id=external_id,
        platform=platform,
        title="Senior Backend Engineer",
        company=f"Company {external_id}",
        description="Python backend services, APIs and Postgres.",
        location="Remote",
        remote=True,
        url=f"https://boards.greenhouse.io/company{external_id}/jobs/{external_id}",
        salary=Salary(min=120000, max=160000, currency="USD"),
        tags=["python", "backend"],
    )
    data.update(overrides)
    return RawJob(**data)


PROFILE = {
    "name": "Ada Example",
    "email": "ada@example.com",
    "phone": "+15550001111",
    "headline": "Backend engineer",
    "summary": "Backend engineer with 6 years of Python experience.",
    "skills": [{"name": "Python"}, {"name": "Postgres"}, {"name": "Kubernetes"}],
    "experience": [{"company": "Acme", "role": "Engineer", "start_date": "2020-01"}],
    "preferences": {"remote_preference": "remote", "locations": ["London"], "salary_min": 100000},
}


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return MemoryDocumentStore(signing_key="test-key")


@pytest.fixture
def locks():
    return KeyedLocks()


@pytest.fixture
def user(store):
    store.put(profile_key(USER), dict(PROFILE))
    return USER


@pytest.fixture
def raw_job():
    return make_raw


@pytest.fixture
def channels():
    return {"sms": FakeChannel("sms"), "whatsapp": FakeChannel("whatsapp"), "email": FakeChannel("email")}


@pytest.fixture
def notifier(store, channels, locks, clock):
    manager = NotificationManager(store, channels, locks, clock, async_delivery=False)
    yield manager
    manager.close()


@pytest.fixture
def make_engine(store, locks, clock):
    def build(sources, ai=None):
        return JobSearchEngine(store, sources, JobScorer(ai), locks, clock)

    return build


@pytest.fixture
def config():
    return AppConfig(apply_timeout=30, apply_delay_seconds=0)


@pytest.fixture
def make_applicant(store, locks, clock, notifier, channels, config):
    def build(engine, driver=None, ai=None, **overrides):
        cfg = config.model_copy(update=overrides) if overrides else config
        return AutoApplicant(
            store, engine, driver, ai, notifier, channels=channels, locks=locks, config=cfg, clock=clock,
        )

    return build


@pytest.fixture
def stored_job(user, make_engine, raw_job):
    """Store one job through a search and return (engine, job dict)."""

    def build(**overrides):
        raw = raw_job(overrides.pop("external_id", "100"), **overrides)
        engine = make_engine([FakeSource("fake", [raw])])
        result = engine.search_jobs(user, {"keywords": []})
        return engine, result["jobs"][0]

    return build

