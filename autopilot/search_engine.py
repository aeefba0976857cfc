"""
Job discovery and matching engine.

Runs: fan-out to adapters, split off postings the user already has (by
natural key), fuzzy de-dup the rest against each other and the stored jobs,
score what is left and persist, plus the pipeline-status operations on stored jobs.
"""
from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any

from autopilot.dedupe import dedupe_jobs, matches_stored
from autopilot.errors import NotFoundError, ValidationError
from autopilot.log import get_logger
from autopilot.models import Clock, Job, PipelineStatus, RawJob, iso, utc_now
from autopilot.scorer import JobScorer
from autopilot.sources.base import JobQuery, JobSource, SourceError
from autopilot.storage import DocumentStore, KeyedLocks, job_key, jobs_index_key, profile_key

log = get_logger(__name__)

# Listing fields refreshed when an already-stored posting is fetched again.
_REFRESHABLE = ("title", "company", "description", "location", "remote", "url", "salary", "tags", "job_type")


class JobSearchEngine:
    def __init__(
        self,
        store: DocumentStore,
        sources: list[JobSource],
        scorer: JobScorer,
        locks: KeyedLocks | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.sources = sources
        self.scorer = scorer
        self.locks = locks or KeyedLocks()
        self.clock = clock

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search_jobs(self, user_id: str, query: JobQuery | dict) -> dict[str, Any]:
        if not isinstance(query, JobQuery):
            query = JobQuery.from_dict(query)
        profile = self.store.get(profile_key(user_id))
        if profile is None:
            raise NotFoundError(f"Profile not found for user {user_id}")

        log.info("Search for user=%s keywords=%s remote=%s", user_id, query.keywords, query.remote)
        raw_jobs, platform_results = self._fetch_all(query)
        index = self._index(user_id)
        known = {s["id"] for s in index}
        seen = list({j.job_id: j for j in raw_jobs if j.job_id in known}.values())
        fresh = dedupe_jobs([j for j in raw_jobs if j.job_id not in known])
        kept = [j for j in fresh if not matches_stored(j, index)]
        repeats = len(fresh) - len(kept)
        if repeats:
            log.info("Dropped %d posting(s) already stored from another platform", repeats)
        fresh = kept
        unique_count = len(seen) + len(fresh) + repeats

        scores = self.scorer.score_many(profile, fresh)
        now = self.clock()
        new_jobs: list[Job] = []
        with self.locks(user_id):
            known = {s["id"] for s in self._index(user_id)}
            for raw, result in zip(fresh, scores):
                if raw.job_id in known:
                    # Stored by a concurrent search while we were scoring.
                    seen.append(raw)
                    continue
                job = Job.from_raw(raw, now=now)
                job.match_score = result.match_score
                job.analysis = result.analysis
                job.scored_by = result.scored_by
                self.store.put(job_key(user_id, job.id), job.to_dict())
                new_jobs.append(job)
            for raw in seen:
                self._refresh_existing(user_id, raw, now)
            self._upsert_index(user_id, new_jobs)

        new_jobs.sort(key=lambda j: -j.match_score)
        log.info(
            "Search done for user=%s: %d unique, %d new, %d already known",
            user_id, unique_count, len(new_jobs), len(seen) + repeats,
        )
        return {
            "query": query.to_dict(),
            "total_results": unique_count,
            "new_jobs": len(new_jobs),
            "platform_results": platform_results,
            "jobs": [j.to_dict() for j in new_jobs],
            "searched_at": iso(now),
        }

    def _fetch_all(self, query: JobQuery) -> tuple[list[RawJob], list[dict]]:
        """Fetch from every adapter in parallel, each bounded by its own timeout.

        The caller waits at most ``max(adapter timeouts)``; a slow adapter's
        thread is abandoned, not joined.
        """
        if not self.sources:
            return [], []
        pool = ThreadPoolExecutor(max_workers=len(self.sources), thread_name_prefix="source")
        started = time.monotonic()
        futures = [(src, pool.submit(src.fetch, query)) for src in self.sources]
        jobs: list[RawJob] = []
        results: list[dict] = []
        try:
            for src, future in futures:
                entry: dict[str, Any] = {"platform": src.name, "count": 0}
                remaining = max(0.0, started + src.timeout - time.monotonic())
                try:
                    batch = future.result(timeout=remaining)
                    entry["count"] = len(batch)
                    jobs.extend(batch)
                    log.info("[%s] returned %d jobs", src.name, len(batch))
                except FutureTimeout:
                    future.cancel()
                    entry["error"] = f"timed out after {src.timeout:g}s"
                    log.error("[%s] FAILED: timed out after %gs", src.name, src.timeout)
                except SourceError as exc:
                    entry["error"] = exc.message
                    log.error("[%s] FAILED: %s", src.name, exc.message)
                except Exception as exc:
                    entry["error"] = str(exc) or exc.__class__.__name__
                    log.exception("[%s] FAILED with unexpected error", src.name)
                results.append(entry)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return jobs, results

    def _refresh_existing(self, user_id: str, raw: RawJob, now) -> None:
        data = self.store.get(job_key(user_id, raw.job_id))
        if data is None:
            return
        job = Job.from_dict(data)
        for name in _REFRESHABLE:
            setattr(job, name, getattr(raw, name))
        job.updated_at = iso(now)
        self.save_job(user_id, job)

    # ------------------------------------------------------------------
    # Persistence helpers (shared with the auto-applicant)
    # ------------------------------------------------------------------

    def _index(self, user_id: str) -> list[dict]:
        return self.store.get(jobs_index_key(user_id)) or []

    def _upsert_index(self, user_id: str, jobs: list[Job]) -> None:
        if not jobs:
            return
        summaries = {j.id: j.summary() for j in jobs}

        def merge(current):
            index = [s for s in (current or []) if s["id"] not in summaries]
            index.extend(summaries.values())
            return index

        self.store.update(jobs_index_key(user_id), merge)

    def load_job(self, user_id: str, job_id: str) -> Job:
        data = self.store.get(job_key(user_id, job_id))
        if data is None:
            raise NotFoundError(f"Job {job_id} not found")
        return Job.from_dict(data)

    def save_job(self, user_id: str, job: Job) -> None:
        with self.locks(user_id):
            self.store.put(job_key(user_id, job.id), job.to_dict())
            self._upsert_index(user_id, [job])

    # ------------------------------------------------------------------
    # Listing and pipeline state
    # ------------------------------------------------------------------

    def list_jobs(
        self,
        user_id: str,
        *,
        status: str | None = None,
        min_score: int | None = None,
        platform: str | None = None,
    ) -> list[dict]:
        wanted = PipelineStatus.parse(status).value if status else None
        jobs = self._index(user_id)
        if wanted:
            jobs = [j for j in jobs if j.get("status") == wanted]
        if min_score is not None:
            jobs = [j for j in jobs if j.get("match_score", 0) >= min_score]
        if platform:
            jobs = [j for j in jobs if j.get("platform") == platform]
        return jobs

    def get_job(self, user_id: str, job_id: str) -> dict:
        return self.load_job(user_id, job_id).to_dict()

    def update_job_status(self, user_id: str, job_id: str, new_status: str | PipelineStatus) -> dict:
        """Move a job to *new_status*. Any known label may follow any other."""
        status = PipelineStatus.parse(new_status)
        with self.locks(user_id):
            job = self.load_job(user_id, job_id)
            if job.status == status:
                return job.to_dict()
            previous = job.status
            self.stamp_status(job, status)
            self.save_job(user_id, job)
        log.info("Job %s status %s -> %s (user=%s)", job_id, previous.value, status.value, user_id)
        return job.to_dict()

    def stamp_status(self, job: Job, status: PipelineStatus) -> None:
        stamp = iso(self.clock())
        job.status = status
        job.updated_at = stamp
        if status == PipelineStatus.APPLIED and not job.applied_at:
            job.applied_at = stamp
        if status.is_response and not job.response_at:
            job.response_at = stamp

    def toggle_saved(self, user_id: str, job_id: str) -> dict:
        with self.locks(user_id):
            job = self.load_job(user_id, job_id)
            if job.status == PipelineStatus.SAVED:
                target = PipelineStatus.DISCOVERED
            elif job.status == PipelineStatus.DISCOVERED:
                target = PipelineStatus.SAVED
            else:
                raise ValidationError(
                    f"Only discovered or saved jobs can be toggled (job is {job.status.value})"
                )
            return self.update_job_status(user_id, job_id, target)

    def get_pipeline(self, user_id: str) -> dict[str, list[dict]]:
        pipeline: dict[str, list[dict]] = {s.value: [] for s in PipelineStatus}
        for summary in self._index(user_id):
            pipeline.setdefault(summary.get("status", "discovered"), []).append(summary)
        return pipeline

    def get_stats(self, user_id: str) -> dict[str, Any]:
        index = self._index(user_id)
        by_status = {s.value: 0 for s in PipelineStatus}
        by_platform: dict[str, int] = {}
        for s in index:
            by_status[s.get("status", "discovered")] = by_status.get(s.get("status", "discovered"), 0) + 1
            by_platform[s.get("platform", "unknown")] = by_platform.get(s.get("platform", "unknown"), 0) + 1

        rejected_after_applying = sum(
            1 for s in index if s.get("status") == "rejected" and s.get("applied_at")
        )
        applied = (
            sum(by_status[s] for s in ("applied", "screening", "interview", "offer"))
            + rejected_after_applying
        )
        responded = (
            sum(by_status[s] for s in ("screening", "interview", "offer")) + rejected_after_applying
        )
        scores = [s.get("match_score", 0) for s in index]
        return {
            "total_jobs": len(index),
            "by_status": by_status,
            "applied": applied,
            "response_rate": round(100.0 * responded / applied, 1) if applied else 0.0,
            "interviews": by_status["interview"],
            "offers": by_status["offer"],
            "avg_match_score": round(sum(scores) / len(scores), 1) if scores else 0.0,
            "by_platform": by_platform,
        }
