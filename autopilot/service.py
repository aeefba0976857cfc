"""
Service container: builds every component once and owns the scheduler's
lifecycle. Anything that needs the engine, applicant or scheduler gets it from
an ``Autopilot`` instance; there are no module-level singletons.
"""
from __future__ import annotations

from typing import Any, Callable

from autopilot.ai_client import AIClient
from autopilot.applicant import AutoApplicant
from autopilot.browser import BrowserDriver, PlaywrightDriver
from autopilot.channels import MessagingChannel, build_channels
from autopilot.config import AppConfig, ensure_dirs, get_env, load_config
from autopilot.digest import DailyDigest
from autopilot.followups import InterviewFollowups
from autopilot.log import get_logger
from autopilot.mailbox import EmailSyncer, GmailConnections, MailboxReader
from autopilot.models import Clock, utc_now
from autopilot.notifications import NotificationManager
from autopilot.scheduler import Scheduler
from autopilot.scorer import JobScorer
from autopilot.search_engine import JobSearchEngine
from autopilot.sources import JobSource, get_sources
from autopilot.storage import DocumentStore, KeyedLocks, LocalDocumentStore
from autopilot.tasks import build_task_specs

log = get_logger(__name__)


class Autopilot:
    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        store: DocumentStore | None = None,
        ai: AIClient | None = None,
        sources: list[JobSource] | None = None,
        driver: BrowserDriver | None = None,
        channels: dict[str, MessagingChannel] | None = None,
        mailboxes: Callable[[str], MailboxReader | None] | None = None,
        clock: Clock = utc_now,
        env_getter: Callable[..., str] = get_env,
        async_notifications: bool = True,
    ) -> None:
        """Explicit collaborators win; anything omitted is built from config and env."""
        self.config = config or load_config()
        self.clock = clock
        if store is None:
            ensure_dirs(self.config)
            store = LocalDocumentStore(self.config.data_dir, env_getter("STORAGE_SIGNING_KEY"))
        self.store = store
        self.locks = KeyedLocks()
        self.ai = ai if ai is not None else AIClient.from_env(self.config)
        self.sources = sources if sources is not None else get_sources(
            self.config, env_getter, ai=self.ai, store=self.store,
        )
        self.driver = driver if driver is not None else PlaywrightDriver(headless=self.config.headless)
        self.channels = channels if channels is not None else build_channels(env_getter)
        if mailboxes is None:
            mailboxes = GmailConnections(
                self.store, env_getter("GOOGLE_CLIENT_ID"), env_getter("GOOGLE_CLIENT_SECRET"),
            )

        self.scorer = JobScorer(self.ai, batch_size=self.config.scoring_batch_size)
        self.engine = JobSearchEngine(self.store, self.sources, self.scorer, self.locks, clock)
        self.notifier = NotificationManager(
            self.store, self.channels, self.locks, clock, async_delivery=async_notifications,
        )
        self.applicant = AutoApplicant(
            self.store, self.engine, self.driver, self.ai, self.notifier,
            channels=self.channels, locks=self.locks, config=self.config, clock=clock,
        )
        self.syncer = EmailSyncer(self.store, mailboxes, self.ai, self.engine, self.notifier, self.locks, clock)
        self.followups = InterviewFollowups(self.store, self.ai, self.notifier, self.locks, clock)
        self.digest = DailyDigest(self.store, self.notifier, self.channels, self.locks, clock)
        self.scheduler = Scheduler(self.store, build_task_specs(self), clock)
        log.info(
            "Autopilot ready: %d source(s), AI=%s, channels=%s",
            len(self.sources), "on" if self.ai else "off",
            ",".join(sorted(self.channels)) or "none",
        )

    def start(self) -> None:
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        self.notifier.close()

    def __enter__(self) -> Autopilot:
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()
