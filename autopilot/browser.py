"""
Headless-browser driver for application forms.

``PlaywrightDriver`` opens a job URL, clicks through to the application form
for known platforms (LinkedIn Easy Apply, Workday, Greenhouse, Lever, Ashby,
generic career pages), exposes the form HTML for AI field mapping, fills the
accepted fields, submits and screenshots the result.
"""
from __future__ import annotations

import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from autopilot.errors import ExternalServiceError
from autopilot.log import get_logger
from autopilot.schemas import FormField

log = get_logger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
MAX_FORM_HTML = 15_000

SUCCESS_PATTERNS = (
    "thank you for applying",
    "thanks for applying",
    "application submitted",
    "application has been submitted",
    "application received",
    "we have received your application",
    "successfully submitted",
)

_APPLY_BUTTONS: dict[str, list[str]] = {
    "linkedin": ['button:has-text("Easy Apply")'],
    "workday": [
        'a[data-automation-id="jobPostingApplyButton"]',
        'button[data-automation-id="jobPostingApplyButton"]',
    ],
    "lever": ['a.postings-btn', 'a:has-text("Apply for this job")'],
    "ashby": ['a:has-text("Apply for this Job")', 'button:has-text("Apply")'],
    "generic": [
        'a:has-text("Apply Now")', 'button:has-text("Apply Now")',
        'a:has-text("Apply for this job")', 'button:has-text("Apply")', 'a:has-text("Apply")',
    ],
}

_SUBMIT_BUTTONS = [
    'button:has-text("Submit application")',
    'button[type="submit"]',
    'input[type="submit"]',
    'button:has-text("Submit")',
    'button:has-text("Send application")',
]


class BrowserError(ExternalServiceError):
    code = "BROWSER_ERROR"


@dataclass
class BrowserSession:
    url: str
    platform: str = "generic"
    handles: dict[str, Any] = field(default_factory=dict)


@dataclass
class SubmitOutcome:
    submitted: bool
    confirmed: bool = False
    message: str = ""


def detect_platform(url: str) -> str:
    """Classify the URL into a known platform type."""
    u = (url or "").lower()
    if "linkedin.com" in u:
        return "linkedin"
    if "myworkdayjobs.com" in u or "workday.com" in u:
        return "workday"
    if "greenhouse.io" in u:
        return "greenhouse"
    if "lever.co" in u:
        return "lever"
    if "ashbyhq.com" in u:
        return "ashby"
    if "smartrecruiters.com" in u:
        return "smartrecruiters"
    if "indeed.com" in u:
        return "indeed"
    if any(agg in u for agg in ["simplyhired", "talent.com", "jobrapido", "bebee.com",
                                  "builtin.com", "remote.co", "remoteok.com", "remotive.com"]):
        return "aggregator"
    return "generic"


class BrowserDriver(ABC):
    @abstractmethod
    def open(self, url: str, *, timeout: float | None = None) -> BrowserSession:
        pass

    @abstractmethod
    def inspect_form(self, session: BrowserSession) -> str:
        """HTML of the application form (truncated), for field mapping."""

    @abstractmethod
    def fill(self, session: BrowserSession, fields: list[FormField]) -> int:
        """Fill *fields*; returns how many were actually filled."""

    @abstractmethod
    def submit(self, session: BrowserSession) -> SubmitOutcome:
        pass

    @abstractmethod
    def screenshot(self, session: BrowserSession) -> bytes:
        pass

    @abstractmethod
    def close(self, session: BrowserSession) -> None:
        """Release every resource held by *session*. Safe to call twice."""


def _visible(locator) -> bool:
    """Safe visibility check that never throws."""
    try:
        return locator.count() > 0 and locator.first.is_visible(timeout=2000)
    except PlaywrightError:
        return False


def _click_first_visible(page, selectors: list[str], *, timeout: int = 3000) -> bool:
    """Try clicking the first visible element matching any selector."""
    for sel in selectors:
        try:
            loc = page.locator(sel).first
            if loc.is_visible(timeout=timeout):
                loc.click()
                return True
        except PlaywrightError:
            continue
    return False


class PlaywrightDriver(BrowserDriver):
    def __init__(self, *, headless: bool = True, nav_timeout: float = 25.0, settle_seconds: float = 2.0) -> None:
        self.headless = headless
        self.nav_timeout = nav_timeout
        self.settle_seconds = settle_seconds
        pw_path = os.environ.get("PLAYWRIGHT_BROWSERS_PATH", "")
        if pw_path and not Path(pw_path).exists():
            os.environ.pop("PLAYWRIGHT_BROWSERS_PATH", None)

    def open(self, url: str, *, timeout: float | None = None) -> BrowserSession:
        session = BrowserSession(url=url, platform=detect_platform(url))
        nav_ms = int(1000 * min(self.nav_timeout, timeout or self.nav_timeout))
        try:
            pw = sync_playwright().start()
            session.handles["playwright"] = pw
            browser = pw.chromium.launch(headless=self.headless, args=["--incognito"])
            session.handles["browser"] = browser
            context = browser.new_context(viewport={"width": 1280, "height": 900}, user_agent=USER_AGENT)
            page = context.new_page()
            page.set_default_timeout(min(20_000, nav_ms))
            session.handles["page"] = page

            page.goto(url, wait_until="domcontentloaded", timeout=nav_ms)
            time.sleep(self.settle_seconds)
            buttons = _APPLY_BUTTONS.get(session.platform, _APPLY_BUTTONS["generic"])
            if _click_first_visible(page, buttons):
                log.debug("Clicked apply button on %s page", session.platform)
                time.sleep(self.settle_seconds)
        except PlaywrightError as exc:
            self.close(session)
            raise BrowserError(f"Could not open {url}: {str(exc).splitlines()[0][:150]}")
        return session

    def _page(self, session: BrowserSession):
        page = session.handles.get("page")
        if page is None:
            raise BrowserError("Browser session is closed")
        return page

    def inspect_form(self, session: BrowserSession) -> str:
        page = self._page(session)
        try:
            html = page.evaluate(
                """() => {
                    const forms = Array.from(document.querySelectorAll('form'));
                    const best = forms.sort((a, b) =>
                        b.querySelectorAll('input,select,textarea').length -
                        a.querySelectorAll('input,select,textarea').length)[0];
                    return (best || document.body).outerHTML;
                }"""
            )
        except PlaywrightError as exc:
            raise BrowserError(f"Form inspection failed: {str(exc).splitlines()[0][:150]}")
        return (html or "")[:MAX_FORM_HTML]

    def fill(self, session: BrowserSession, fields: list[FormField]) -> int:
        page = self._page(session)
        filled = 0
        for f in fields:
            loc = page.locator(f.selector).first
            if not _visible(loc):
                log.debug("Field %s not visible, skipped", f.selector)
                continue
            try:
                if f.type == "select":
                    loc.select_option(label=f.value)
                elif f.type in ("checkbox", "radio"):
                    if f.value.lower() in ("true", "yes", "1", "on", "checked"):
                        loc.check()
                elif f.type == "file":
                    continue
                else:
                    loc.fill(f.value[:3000])
                filled += 1
            except PlaywrightError as exc:
                log.warning("Could not fill %s: %s", f.selector, str(exc).splitlines()[0][:100])
        return filled

    def submit(self, session: BrowserSession) -> SubmitOutcome:
        page = self._page(session)
        if not _click_first_visible(page, _SUBMIT_BUTTONS):
            return SubmitOutcome(submitted=False, message="Submit button not found")
        try:
            page.wait_for_load_state("networkidle", timeout=15_000)
        except PlaywrightError:
            log.debug("Page did not reach networkidle after submit")
        try:
            text = page.inner_text("body").lower()
        except PlaywrightError:
            text = ""
        for pattern in SUCCESS_PATTERNS:
            if pattern in text:
                return SubmitOutcome(submitted=True, confirmed=True, message=pattern.capitalize())
        return SubmitOutcome(submitted=True, confirmed=False, message="Submitted, no confirmation text found")

    def screenshot(self, session: BrowserSession) -> bytes:
        page = self._page(session)
        try:
            return page.screenshot(full_page=True)
        except PlaywrightError as exc:
            raise BrowserError(f"Screenshot failed: {str(exc).splitlines()[0][:150]}")

    def close(self, session: BrowserSession) -> None:
        session.handles.pop("page", None)
        browser = session.handles.pop("browser", None)
        pw = session.handles.pop("playwright", None)
        if browser is not None:
            try:
                browser.close()
            except PlaywrightError as exc:
                log.warning("Browser close failed: %s", exc)
        if pw is not None:
            pw.stop()
