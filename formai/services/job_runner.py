"""Background job runner.

Timer-driven, single-consumer polling over the job store. Each tick:

1. records last_tick_at
2. resets stuck jobs
3. refuses new work once max_concurrent jobs are processing
4. claims at most one due job and dispatches it to its handler
5. marks it completed, or schedules a retry with backoff, or fails it
6. re-arms a short wake-up while pending work remains

A recurring heartbeat tick is the liveness backstop in case a wake-up is
dropped. Ticks may overlap; claim_next is atomic and the concurrency
ceiling bounds in-flight work.

Configuration (env vars):
- JOB_BACKGROUND_ENABLED: "false" runs handlers inline on enqueue (default: true)
- JOB_MAX_CONCURRENT: processing ceiling (default: 3)
- JOB_STUCK_TIMEOUT_SECONDS: processing timeout (default: 600)
- JOB_HEARTBEAT_SECONDS: heartbeat cadence (default: 30)
- JOB_REARM_DELAY_SECONDS: wake-up delay while backlog remains (default: 5)
- JOB_DEFAULT_DELAY_SECONDS: enqueue delay when none given (default: 5)
- JOB_LOOPBACK_URL: tick endpoint hit when a wake-up cannot be scheduled
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import uuid4

import httpx

from formai.models import DEFAULT_MAX_RETRIES, Job, JobType
from formai.services.job_store import BaseJobStore, get_job_store

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]


class PermanentJobError(Exception):
    """Handler failure that retrying cannot fix (e.g. missing configuration).

    The job is failed immediately without consuming its retry budget.
    """

    pass


@dataclass
class EnqueueResult:
    """Outcome of an enqueue call.

    In background mode job_id is set. In immediate mode the handler ran
    inline and its return value is in result.
    """

    job_id: Optional[str] = None
    immediate: bool = False
    result: Any = None


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def retry_delay_seconds(retry_count: int) -> float:
    """Backoff before retry attempt ``retry_count``: min(2^n * 60s, 600s)."""
    return float(min((2 ** retry_count) * JobRunner.RETRY_BASE_DELAY, JobRunner.RETRY_MAX_DELAY))


class JobRunner:
    """Polls the job store and executes jobs with retry/backoff."""

    # Default configuration
    DEFAULT_MAX_CONCURRENT = 3
    DEFAULT_STUCK_TIMEOUT = 600.0
    DEFAULT_HEARTBEAT = 30.0
    DEFAULT_REARM_DELAY = 5.0
    DEFAULT_ENQUEUE_DELAY = 5.0
    RETRY_BASE_DELAY = 60
    RETRY_MAX_DELAY = 600
    LOOPBACK_TIMEOUT = 1.0

    def __init__(
        self,
        store: Optional[BaseJobStore] = None,
        background_enabled: Optional[bool] = None,
        max_concurrent: Optional[int] = None,
        stuck_timeout: Optional[float] = None,
        heartbeat_interval: Optional[float] = None,
        rearm_delay: Optional[float] = None,
        default_delay: Optional[float] = None,
        loopback_url: Optional[str] = None,
    ):
        self._store = store
        self._handlers: dict[JobType, JobHandler] = {}
        self._background_enabled = (
            background_enabled
            if background_enabled is not None
            else _env_bool("JOB_BACKGROUND_ENABLED", True)
        )
        self._max_concurrent = (
            max_concurrent
            if max_concurrent is not None
            else int(os.environ.get("JOB_MAX_CONCURRENT", self.DEFAULT_MAX_CONCURRENT))
        )
        self._stuck_timeout = (
            stuck_timeout
            if stuck_timeout is not None
            else float(os.environ.get("JOB_STUCK_TIMEOUT_SECONDS", self.DEFAULT_STUCK_TIMEOUT))
        )
        self._heartbeat_interval = (
            heartbeat_interval
            if heartbeat_interval is not None
            else float(os.environ.get("JOB_HEARTBEAT_SECONDS", self.DEFAULT_HEARTBEAT))
        )
        self._rearm_delay = (
            rearm_delay
            if rearm_delay is not None
            else float(os.environ.get("JOB_REARM_DELAY_SECONDS", self.DEFAULT_REARM_DELAY))
        )
        self._default_delay = (
            default_delay
            if default_delay is not None
            else float(os.environ.get("JOB_DEFAULT_DELAY_SECONDS", self.DEFAULT_ENQUEUE_DELAY))
        )
        self._loopback_url = loopback_url or os.environ.get("JOB_LOOPBACK_URL")

        self._last_tick_at: Optional[datetime] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._wake_handle: Optional[asyncio.TimerHandle] = None
        self._tick_tasks: set[asyncio.Task] = set()

    @property
    def store(self) -> BaseJobStore:
        return self._store or get_job_store()

    @property
    def background_enabled(self) -> bool:
        return self._background_enabled

    @property
    def last_tick_at(self) -> Optional[datetime]:
        """When the last tick started (for external liveness monitoring)."""
        return self._last_tick_at

    def register_handler(self, job_type: JobType, handler: JobHandler) -> None:
        """Register the handler for a job type."""
        self._handlers[job_type] = handler

    async def enqueue(
        self,
        target_id: str,
        form_id: Optional[str] = None,
        entry_id: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
        delay_seconds: Optional[float] = None,
        priority: int = 0,
        job_type: JobType = JobType.ai_form_processing,
    ) -> EnqueueResult:
        """Queue a job, or run it inline when background processing is off.

        If the store write fails the job runs inline rather than being lost.
        Inline errors propagate to the caller.
        """
        delay = self._default_delay if delay_seconds is None else delay_seconds

        if not self._background_enabled:
            logger.info(f"Background processing disabled, running {job_type.value} inline")
            result = await self._run_inline(job_type, target_id, form_id, entry_id, payload)
            return EnqueueResult(immediate=True, result=result)

        try:
            job_id = await self.store.enqueue(
                target_id=target_id,
                form_id=form_id,
                entry_id=entry_id,
                payload=payload,
                delay_seconds=delay,
                priority=priority,
                job_type=job_type,
            )
        except Exception as e:
            logger.error(f"Job store unavailable ({e}), running {job_type.value} inline")
            result = await self._run_inline(job_type, target_id, form_id, entry_id, payload)
            return EnqueueResult(immediate=True, result=result)

        logger.info(f"Enqueued job {job_id} (target={target_id}, entry={entry_id}, delay={delay}s)")
        self.wake(delay)
        return EnqueueResult(job_id=job_id)

    async def tick(self) -> Optional[str]:
        """Run one scheduling pass.

        Returns:
            The ID of the job processed, or None if nothing ran.
        """
        now = _utcnow()
        self._last_tick_at = now
        store = self.store

        await store.reset_stuck(self._stuck_timeout, now=now)

        processing = await store.count_processing()
        if processing >= self._max_concurrent:
            logger.info(f"Concurrency ceiling reached ({processing}/{self._max_concurrent}), skipping tick")
            return None

        job = await store.claim_next(now)
        if job is None:
            if await store.has_pending():
                self.wake(self._rearm_delay)
            return None

        logger.info(f"Claimed job {job.job_id} (attempt {job.retry_count + 1}/{job.max_retries + 1})")
        await self._execute(job)

        if await store.has_pending():
            self.wake(self._rearm_delay)
        return job.job_id

    async def _execute(self, job: Job) -> None:
        """Dispatch a claimed job and record the outcome."""
        handler = self._handlers.get(job.job_type)
        if handler is None:
            await self.store.mark_failed(job.job_id, f"No handler registered for {job.job_type.value}")
            logger.error(f"Job {job.job_id} failed: no handler for {job.job_type.value}")
            return

        try:
            result = await handler(job)
        except PermanentJobError as e:
            await self.store.mark_failed(job.job_id, str(e))
            logger.error(f"Job {job.job_id} failed permanently: {e}")
            return
        except Exception as e:
            logger.exception(f"Job {job.job_id} handler raised")
            await self._handle_failure(job, str(e) or type(e).__name__)
            return

        if result:
            await self.store.mark_completed(job.job_id)
            logger.info(f"Job {job.job_id} completed")
        else:
            await self._handle_failure(job, "Handler returned no result")

    async def _handle_failure(self, job: Job, error: str) -> None:
        """Schedule a retry while budget remains, otherwise fail the job."""
        if job.can_retry():
            delay = retry_delay_seconds(job.retry_count)
            next_attempt_at = _utcnow() + timedelta(seconds=delay)
            if await self.store.mark_retry(job.job_id, error, next_attempt_at):
                logger.warning(
                    f"Job {job.job_id} failed ({error}); retry {job.retry_count + 1}/"
                    f"{job.max_retries} in {delay:.0f}s"
                )
                return
            # Budget left but the job is no longer ours, e.g. the stuck-job sweep requeued it
            logger.warning(f"Job {job.job_id} left processing before its failure was recorded: {error}")
            return

        if await self.store.mark_failed(job.job_id, error):
            logger.error(f"Job {job.job_id} failed after {job.retry_count} retries: {error}")
        else:
            logger.warning(f"Job {job.job_id} left processing before it could be failed: {error}")

    async def _run_inline(
        self,
        job_type: JobType,
        target_id: str,
        form_id: Optional[str],
        entry_id: Optional[str],
        payload: Optional[dict[str, Any]],
    ) -> Any:
        handler = self._handlers.get(job_type)
        if handler is None:
            raise PermanentJobError(f"No handler registered for {job_type.value}")
        job = Job(
            job_id=str(uuid4()),
            job_type=job_type,
            target_id=target_id,
            form_id=form_id,
            entry_id=entry_id,
            payload=payload or {},
            max_retries=DEFAULT_MAX_RETRIES,
        )
        return await handler(job)

    def wake(self, delay: float) -> None:
        """Request a tick after ``delay`` seconds (best effort).

        Falls back to the loopback trigger if no timer can be armed.
        """
        try:
            loop = asyncio.get_running_loop()
            delay = max(delay, 0)
            if self._wake_handle is not None and not self._wake_handle.cancelled():
                # An earlier wake-up already covers this request
                if self._wake_handle.when() <= loop.time() + delay:
                    return
                self._wake_handle.cancel()
            self._wake_handle = loop.call_later(delay, self._spawn_tick)
        except RuntimeError as e:
            logger.warning(f"Could not schedule wake-up ({e}), using loopback trigger")
            self._trigger_loopback()

    def _spawn_tick(self) -> None:
        self._wake_handle = None
        task = asyncio.create_task(self._safe_tick(), name="job-runner-tick")
        self._tick_tasks.add(task)
        task.add_done_callback(self._tick_tasks.discard)

    async def _safe_tick(self) -> None:
        try:
            await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Job runner tick failed")

    def _trigger_loopback(self) -> None:
        """Fire-and-forget POST to the tick endpoint."""
        if not self._loopback_url:
            logger.warning("No JOB_LOOPBACK_URL configured; relying on heartbeat")
            return

        url = self._loopback_url

        def _post() -> None:
            try:
                httpx.post(url, timeout=self.LOOPBACK_TIMEOUT)
            except httpx.HTTPError as e:
                logger.warning(f"Loopback trigger to {url} failed: {e}")

        threading.Thread(target=_post, name="job-runner-loopback", daemon=True).start()

    async def start(self) -> None:
        """Start the heartbeat loop."""
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="job-runner-heartbeat")
            logger.info(f"Job runner heartbeat started ({self._heartbeat_interval}s)")

    async def stop(self) -> None:
        """Stop the heartbeat, pending wake-ups and in-flight ticks."""
        if self._wake_handle is not None:
            self._wake_handle.cancel()
            self._wake_handle = None

        tasks = list(self._tick_tasks)
        if self._heartbeat_task and not self._heartbeat_task.done():
            tasks.append(self._heartbeat_task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._heartbeat_task = None
        logger.info("Job runner stopped")

    async def _heartbeat_loop(self) -> None:
        """Spawn a tick every heartbeat interval without waiting for it."""
        while True:
            try:
                await asyncio.sleep(self._heartbeat_interval)
                self._spawn_tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in job runner heartbeat: {e}")


# Module-level singleton instance
_default_runner: Optional[JobRunner] = None


def get_job_runner() -> JobRunner:
    """Get the default job runner with the AI form handler registered."""
    global _default_runner
    if _default_runner is None:
        from formai.services.form_processing import FormProcessingHandler

        _default_runner = JobRunner()
        _default_runner.register_handler(JobType.ai_form_processing, FormProcessingHandler())
    return _default_runner


def set_job_runner(runner: Optional[JobRunner]) -> None:
    """Set the job runner instance (for testing)."""
    global _default_runner
    _default_runner = runner
