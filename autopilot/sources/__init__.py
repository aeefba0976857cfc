from .base import JobQuery, JobSource, SourceError
from .hackernews import HackerNewsSource
from .jsearch import JSearchSource
from .linkedin import LinkedInSource
from .remoteok import RemoteOKSource
from .remotive import RemotiveSource

from autopilot.log import get_logger

log = get_logger(__name__)

__all__ = [
    "JobQuery", "JobSource", "SourceError", "HackerNewsSource", "JSearchSource",
    "LinkedInSource", "RemoteOKSource", "RemotiveSource", "get_sources",
]


def get_sources(config, env_getter, ai=None, store=None) -> list[JobSource]:
    """Adapters for the configured platforms that have what they need to run."""
    enabled = {p.lower() for p in config.platforms}
    sources: list[JobSource] = []

    if "remoteok" in enabled:
        sources.append(RemoteOKSource(timeout=config.adapter_timeout))
        log.info("Registered source: RemoteOK (free)")

    if "remotive" in enabled:
        sources.append(RemotiveSource(timeout=config.adapter_timeout))
        log.info("Registered source: Remotive (free, remote jobs)")

    if "hackernews" in enabled:
        if ai is not None and store is not None:
            sources.append(
                HackerNewsSource(
                    ai,
                    store,
                    timeout=config.hackernews_timeout,
                    max_comments=config.hackernews_max_comments,
                )
            )
            log.info("Registered source: Hacker News (AI extraction)")
        else:
            log.info("Skipping Hacker News source: no AI client configured")

    if "jsearch" in enabled and env_getter("JSEARCH_API_KEY"):
        sources.append(JSearchSource(env_getter("JSEARCH_API_KEY"), timeout=config.adapter_timeout))
        log.info("Registered source: JSearch")

    if "linkedin" in enabled and env_getter("RAPIDAPI_KEY"):
        sources.append(LinkedInSource(env_getter("RAPIDAPI_KEY"), timeout=config.adapter_timeout))
        log.info("Registered source: LinkedIn (RapidAPI)")

    if not sources:
        log.warning("No job sources registered, check 'platforms' and API keys")
    return sources
