"""Scraper job orchestrator: state machine and control loop.

One orchestrator runs at most one job at a time. Items are dispatched
strictly sequentially so the rate limiter's minimum spacing holds. Every
suspension point goes through ``_wait`` which blocks on the handle's wake
event, so pause/resume/stop take effect promptly even during multi-hour
quota or window waits. In-flight fetches are never aborted.
"""

import asyncio
import logging
import random
from collections import deque
from collections.abc import Callable
from uuid import uuid4

from catalog_scraper.core.exceptions import (
    FetchError,
    InvalidJobStateError,
    ItemNotFoundError,
    JobAlreadyRunningError,
    JobNotFoundError,
    JobStoreError,
)
from catalog_scraper.core.logging import job_id_var
from catalog_scraper.db.repositories.scraper import AUTO_RESUMABLE_PAUSE_REASONS
from catalog_scraper.services.circuit_breaker import CircuitBreaker
from catalog_scraper.services.clock import SystemClock
from catalog_scraper.services.health_reporter import HealthReporter
from catalog_scraper.services.protocols import (
    ClockProtocol,
    ContentFetcherProtocol,
    HealthSinkProtocol,
    IdentityProviderProtocol,
    JobStoreProtocol,
    RecordSinkProtocol,
)
from catalog_scraper.services.rate_limiter import RateLimiter
from catalog_scraper.services.scraper_types import (
    ALLOWED_TRANSITIONS,
    HealthSnapshot,
    Job,
    ScraperLimits,
)

logger = logging.getLogger(__name__)

# Rolling window for the average processing time
DURATION_WINDOW = 100


class PassBudgetExhausted(Exception):
    """The time budget of a serverless pass is spent."""


class LeaseLost(Exception):
    """Another worker took over the job lease while this run was live."""


class JobHandle:
    """Control handle for one run of a job.

    Callers signal the run through the events here; only the orchestrator
    task mutates ``job``.
    """

    def __init__(self, job: Job, worker_id: str, deadline: float | None = None) -> None:
        self.job = job
        self.job_id = job.id
        self.worker_id = worker_id
        self.deadline = deadline
        self.stop_event = asyncio.Event()
        self.pause_event = asyncio.Event()
        self.wake = asyncio.Event()
        self.task: asyncio.Task | None = None
        self.error: BaseException | None = None
        self.breaker: CircuitBreaker | None = None
        self.durations: deque[float] = deque(maxlen=DURATION_WINDOW)
        if job.avg_processing_ms:
            self.durations.append(job.avg_processing_ms)
        self.since_checkpoint = 0
        self.first_dispatch = True
        self.renewed_at = 0.0
        self.lease_lost = False

    @property
    def stop_requested(self) -> bool:
        return self.stop_event.is_set()

    @property
    def pause_requested(self) -> bool:
        return self.pause_event.is_set()

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    def has_signal(self) -> bool:
        return self.stop_requested or self.pause_requested

    def request_stop(self) -> None:
        self.stop_event.set()
        self.wake.set()

    def request_pause(self) -> None:
        self.pause_event.set()
        self.wake.set()

    def request_resume(self) -> None:
        self.pause_event.clear()
        self.wake.set()

    async def wait(self) -> Job:
        """Wait for the run to end and return the final Job."""
        if self.task is not None:
            await self.task
        return self.job


class JobOrchestrator:
    """Owns the job state machine and composes limiter, breaker, store and fetcher."""

    def __init__(
        self,
        store: JobStoreProtocol,
        fetcher: ContentFetcherProtocol,
        identities: IdentityProviderProtocol,
        limits: ScraperLimits | None = None,
        health_sinks: list[HealthSinkProtocol] | None = None,
        health_interval_seconds: float = 30.0,
        success_rate_warning: float = 90.0,
        success_rate_critical: float = 70.0,
        record_sink: RecordSinkProtocol | None = None,
        clock: ClockProtocol | None = None,
        worker_id: str | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.identities = identities
        self.limits = limits or ScraperLimits()
        self.record_sink = record_sink
        self.clock = clock or SystemClock()
        self.worker_id = worker_id or f"scraper-{uuid4().hex[:8]}"
        self._rng = rng
        self._health_sinks = list(health_sinks or [])
        self._health_options = (health_interval_seconds, success_rate_warning, success_rate_critical)
        self._rate_limiter: RateLimiter | None = None
        self._reporter: HealthReporter | None = None
        self._active: JobHandle | None = None

    # --- Components ---

    def _prepare(self) -> None:
        """Validate limits and build limiter/reporter on first use.

        Raises:
            ConfigurationError: If the limits are inconsistent
        """
        if self._rate_limiter is not None:
            return
        self.limits.validate()
        self._rate_limiter = RateLimiter(self.limits, self._rng)
        interval, warning, critical = self._health_options
        self._reporter = HealthReporter(
            self._rate_limiter,
            sinks=self._health_sinks,
            interval_seconds=interval,
            success_rate_warning=warning,
            success_rate_critical=critical,
            clock=self.clock,
        )

    @property
    def rate_limiter(self) -> RateLimiter:
        self._prepare()
        return self._rate_limiter

    @property
    def reporter(self) -> HealthReporter:
        self._prepare()
        return self._reporter

    @property
    def active(self) -> JobHandle | None:
        if self._active is not None and self._active.done:
            return None
        return self._active

    def _handle_for(self, job_id: str | None) -> JobHandle | None:
        active = self.active
        if active is not None and (job_id is None or job_id == active.job_id):
            return active
        return None

    # --- Control surface ---

    async def start(self, identifiers: list[str]) -> JobHandle:
        """Create a job for ``identifiers`` and start processing it.

        Raises:
            ConfigurationError: Invalid limits or no identifiers (nothing persisted)
            JobAlreadyRunningError: A job is already processing here
        """
        self._prepare()
        if self.active is not None:
            raise JobAlreadyRunningError(
                f"Job {self.active.job_id} is already running",
                context={"job_id": self.active.job_id},
            )
        job = self.store.create_job(
            identifiers,
            batch_size=self.limits.batch_size,
            max_attempts=self.limits.max_attempts,
            config=self.limits.to_config(),
        )
        logger.info(
            f"[SCRAPE] Starting job {job.id}: {job.total_items} items in {job.total_batches} batches"
        )
        return self._launch(job)

    async def pause(self, job_id: str | None = None) -> Job:
        handle = self._handle_for(job_id)
        if handle is not None:
            handle.request_pause()
            logger.info(f"[SCRAPE] Pause requested for job {handle.job_id}")
            return handle.job

        job = self._load_required(job_id)
        if job.status == "paused" and job.pause_reason == "operator":
            return job
        if job.status != "paused":
            job.transition("paused")
        if self._leased_elsewhere(job.id):
            return self._request(job.id, "pause")
        return self.store.set_status(
            job.id,
            "paused",
            pause_reason="operator",
            paused_at=self.clock.now(),
            requested_action=None,
        )

    async def resume(self, job_id: str | None = None) -> JobHandle:
        """Resume a paused in-process run, or start a new run from the store.

        Works after a restart: the job is reloaded and processing continues
        from the remaining pending items. A job paused inside a run that
        another worker holds is resumed there; the returned handle then has
        no task of its own.
        """
        self._prepare()
        handle = self._handle_for(job_id)
        if handle is not None:
            handle.request_resume()
            logger.info(f"[SCRAPE] Resume requested for job {handle.job_id}")
            return handle
        if self.active is not None:
            raise JobAlreadyRunningError(
                f"Job {self.active.job_id} is already running",
                context={"job_id": self.active.job_id},
            )

        job = self._load_required(job_id)
        if job.status == "completed":
            raise InvalidJobStateError(
                f"Job {job.id} is already completed", context={"job_id": job.id}
            )
        holder = self._leased_elsewhere(job.id)
        if holder is not None and job.status == "paused":
            self._request(job.id, "resume")
            return JobHandle(job, holder)
        logger.info(
            f"[SCRAPE] Resuming job {job.id} from {job.status}: "
            f"{job.processed}/{job.total_items} processed"
        )
        return self._launch(job)

    async def stop(self, job_id: str | None = None) -> Job:
        handle = self._handle_for(job_id)
        if handle is not None:
            handle.request_stop()
            logger.info(f"[SCRAPE] Stop requested for job {handle.job_id}")
            return handle.job

        job = self._load_required(job_id)
        if job.status == "stopped":
            return job
        job.transition("stopped")
        if self._leased_elsewhere(job.id):
            return self._request(job.id, "stop")
        return self.store.set_status(
            job.id,
            "stopped",
            pause_reason=None,
            completed_at=self.clock.now(),
            requested_action=None,
        )

    async def status(self, job_id: str | None = None) -> HealthSnapshot:
        """Health snapshot for a job; safe to call with no job active."""
        self._prepare()
        now = self.clock.now()
        handle = self._handle_for(job_id)
        if handle is not None:
            return self.reporter.snapshot(handle.job, now)
        if job_id is not None:
            return self.reporter.snapshot(self._load_required(job_id), now)
        return self.reporter.snapshot(self.store.find_resumable_job(), now)

    async def run_pass(
        self,
        job_id: str | None = None,
        budget_seconds: float = 50.0,
    ) -> Job | None:
        """Run the loop inline for at most ``budget_seconds``.

        Used by cron triggers on hosts that kill the process between
        invocations. Picks the given job, or the latest job that should keep
        progressing on its own. Jobs stopped, failed or paused by an
        operator are left alone.
        """
        self._prepare()
        if self.active is not None:
            raise JobAlreadyRunningError(
                f"Job {self.active.job_id} is already running",
                context={"job_id": self.active.job_id},
            )
        job = self._load_required(job_id) if job_id else self.store.find_resumable_job()
        if job is None:
            logger.debug("[SCRAPE] No job to process in this pass")
            return None
        if job.status in ("completed", "stopped", "failed") or (
            job.status == "paused" and job.pause_reason not in AUTO_RESUMABLE_PAUSE_REASONS
        ):
            logger.info(f"[SCRAPE] Job {job.id} is {job.status}, skipping pass")
            return job

        deadline = self.clock.monotonic() + budget_seconds
        handle = self._acquire(job, deadline)
        handle.task = asyncio.current_task()
        return await self._run(handle)

    async def shutdown(self) -> None:
        """Cancel the active run; its progress is checkpointed for auto-resume."""
        handle = self.active
        if handle is None or handle.task is None:
            return
        handle.task.cancel()
        try:
            await handle.task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(f"[SCRAPE] Job {handle.job_id} ended with error during shutdown: {e}")

    # --- Run lifecycle ---

    def _load_required(self, job_id: str | None) -> Job:
        job = self.store.load_job(job_id) if job_id else self.store.latest_job()
        if job is None:
            raise JobNotFoundError(
                f"Scraper job {job_id} not found" if job_id else "No scraper job found",
                context={"job_id": job_id},
            )
        return job

    def _leased_elsewhere(self, job_id: str) -> str | None:
        """Worker id of another process running the job, if any."""
        holder = self.store.lease_holder(job_id)
        return holder if holder not in (None, self.worker_id) else None

    def _request(self, job_id: str, action: str) -> Job:
        self.store.request_action(job_id, action)
        logger.info(f"[SCRAPE] {action.capitalize()} requested for job {job_id} running elsewhere")
        return self._load_required(job_id)

    def _acquire(self, job: Job, deadline: float | None = None) -> JobHandle:
        if not self.store.acquire_lease(job.id, self.worker_id, self.limits.lease_duration_minutes):
            raise JobAlreadyRunningError(
                f"Job {job.id} is leased by another worker", context={"job_id": job.id}
            )
        # Claims left by a crashed run would otherwise block until they go stale
        self.store.release_claims(job.id)
        handle = JobHandle(job, self.worker_id, deadline)
        handle.breaker = CircuitBreaker.from_job(
            job,
            self.limits.breaker_threshold,
            self.limits.breaker_cooldown_seconds,
            self.limits.breaker_half_open_probe,
            now=self.clock.now(),
        )
        handle.renewed_at = self.clock.monotonic()
        self._active = handle
        return handle

    def _launch(self, job: Job) -> JobHandle:
        handle = self._acquire(job)
        # An explicit start or resume supersedes requests left for an earlier run
        self.store.request_action(job.id, None)
        handle.task = asyncio.create_task(self._run(handle), name=f"scraper-job-{job.id}")
        return handle

    async def _run(self, handle: JobHandle) -> Job:
        token = job_id_var.set(handle.job_id)
        await self.reporter.start(lambda: handle.job)
        try:
            try:
                self._begin(handle)
                await self._loop(handle)
            except PassBudgetExhausted:
                job = handle.job
                logger.info(
                    f"[SCRAPE] Pass budget spent for job {job.id}: "
                    f"{job.processed}/{job.total_items} processed"
                )
                self._checkpoint(handle)
        except LeaseLost:
            handle.lease_lost = True
            logger.warning(
                f"[SCRAPE] Lost the lease on job {handle.job_id} to another worker, "
                f"ending this run without saving its state"
            )
        except asyncio.CancelledError:
            logger.warning(f"[SCRAPE] Job {handle.job_id} cancelled, saving progress")
            try:
                self._checkpoint(handle)
            except LeaseLost:
                handle.lease_lost = True
            except JobStoreError as e:
                logger.error(f"[SCRAPE] Could not save progress for job {handle.job_id}: {e}")
            raise
        except JobStoreError as e:
            logger.error(f"[SCRAPE] Persistence failed for job {handle.job_id}: {e}")
            self._fail(handle, e)
        except Exception as e:
            logger.exception(f"[SCRAPE] Unexpected error in job {handle.job_id}: {e}")
            self._fail(handle, e)
        finally:
            await self.reporter.stop()
            self._release(handle)
            if self._active is handle:
                self._active = None
            job_id_var.reset(token)
        return handle.job

    def _begin(self, handle: JobHandle) -> None:
        job = handle.job
        now = self.clock.now()
        if job.status != "running":
            job.transition("running")
        job.pause_reason = None
        job.paused_at = None
        job.completed_at = None
        job.error_message = None
        job.started_at = job.started_at or now
        job.last_activity_at = now
        self._checkpoint(handle)
        logger.info(
            f"[SCRAPE] Job {job.id} running: {job.processed}/{job.total_items} processed, "
            f"breaker {job.breaker_state}"
        )

    def _finish(self, handle: JobHandle, status: str) -> None:
        job = handle.job
        job.transition(status)
        job.pause_reason = None
        job.completed_at = self.clock.now()
        if status == "completed":
            job.current_batch = job.total_batches
        self._checkpoint(handle)
        logger.info(
            f"[SCRAPE] Job {job.id} {status}: {job.succeeded} succeeded, "
            f"{job.failed} failed, {job.skipped} skipped"
        )

    def _fail(self, handle: JobHandle, error: Exception) -> None:
        job = handle.job
        handle.error = error
        message = str(error) or type(error).__name__
        job.error_message = message[:500]
        job.push_error(message)
        if "failed" in ALLOWED_TRANSITIONS.get(job.status, frozenset()):
            job.transition("failed")
        try:
            self.store.update_job_counters(job)
        except JobStoreError as e:
            logger.error(f"[SCRAPE] Could not record failure of job {job.id}: {e}")

    def _release(self, handle: JobHandle) -> None:
        if handle.lease_lost:
            return
        try:
            self.store.release_claims(handle.job_id)
            self.store.release_lease(handle.job_id, handle.worker_id)
        except JobStoreError as e:
            logger.warning(f"[SCRAPE] Could not release job {handle.job_id}: {e}")

    def _checkpoint(self, handle: JobHandle) -> None:
        self._renew(handle)
        if handle.breaker is not None:
            handle.breaker.to_job(handle.job)
        self.store.update_job_counters(handle.job)
        handle.since_checkpoint = 0

    @property
    def _renew_interval(self) -> float:
        return self.limits.lease_duration_minutes * 60 / 3

    def _renew(self, handle: JobHandle) -> None:
        """Extend the lease.

        Raises:
            LeaseLost: If another worker holds the job now
        """
        renewed = self.store.renew_lease(
            handle.job_id, handle.worker_id, self.limits.lease_duration_minutes
        )
        if not renewed:
            raise LeaseLost(handle.job_id)
        handle.renewed_at = self.clock.monotonic()

    def _sync(self, handle: JobHandle) -> None:
        """Renew the lease when due and apply control requests left by other processes."""
        if self.clock.monotonic() - handle.renewed_at >= self._renew_interval:
            self._renew(handle)
        action = self.store.take_requested_action(handle.job_id)
        if action is None:
            return
        logger.info(f"[SCRAPE] Applying {action} request for job {handle.job_id}")
        if action == "stop":
            handle.request_stop()
        elif action == "pause":
            handle.request_pause()
        elif action == "resume":
            handle.request_resume()

    # --- Main loop ---

    async def _loop(self, handle: JobHandle) -> None:
        job = handle.job
        while True:
            await self._gate(handle)
            if handle.stop_requested:
                self._finish(handle, "stopped")
                return

            size = 1 if handle.breaker.is_half_open else self.limits.batch_size
            batch = self.store.claim_next_batch(job.id, size)
            if not batch:
                self._finish(handle, "completed")
                return

            job = handle.job
            job.current_batch = min(job.processed // job.batch_size + 1, job.total_batches)
            logger.debug(
                f"[SCRAPE] Batch {job.current_batch}/{job.total_batches}: {len(batch)} items"
            )
            if not await self._process_batch(handle, batch):
                self.store.release_claims(job.id)

    async def _gate(self, handle: JobHandle) -> None:
        """Block until the job may claim another batch or a stop is requested."""
        limiter = self.rate_limiter
        while True:
            self._sync(handle)
            if handle.stop_requested:
                return
            if handle.pause_requested:
                await self._hold_paused(handle)
                continue

            job = handle.job
            breaker = handle.breaker
            now = self.clock.now()

            if not limiter.is_within_window(now):
                wait = limiter.time_until_window_opens(now)
                self._pause(handle, "window")
                logger.info(f"[SCRAPE] Outside allowed window, waiting {wait:.0f}s")
                await self._wait(handle, wait, handle.has_signal)
                continue

            limiter.roll_counters(job, now)
            if limiter.daily_exhausted(job):
                wait = limiter.seconds_until_day_reset(now)
                self._pause(handle, "daily_quota")
                logger.info(
                    f"[SCRAPE] Daily quota of {self.limits.max_per_day} reached, "
                    f"waiting {wait:.0f}s"
                )
                await self._wait(handle, wait, handle.has_signal)
                continue

            if limiter.hourly_exhausted(job):
                wait = limiter.seconds_until_hour_reset(now)
                logger.info(
                    f"[SCRAPE] Hourly quota of {self.limits.max_per_hour} reached, "
                    f"waiting {wait:.0f}s"
                )
                self._checkpoint(handle)
                await self._wait(handle, wait, handle.has_signal)
                continue

            if breaker.is_open:
                remaining = breaker.remaining_cooldown(now)
                if remaining > 0:
                    logger.warning(f"[SCRAPE] Circuit breaker open, cooling down {remaining:.0f}s")
                    await self._wait(handle, remaining, handle.has_signal)
                    continue
                breaker.after_cooldown()
                logger.info(f"[SCRAPE] Circuit breaker cooldown elapsed, now {breaker.state}")
                self._checkpoint(handle)

            if job.status == "paused":
                self._unpause(handle)
            return

    async def _hold_paused(self, handle: JobHandle) -> None:
        self._pause(handle, "operator")
        while handle.pause_requested and not handle.stop_requested:
            await self._wait(
                handle,
                self.limits.pause_poll_seconds,
                lambda: not handle.pause_requested or handle.stop_requested,
            )
        if handle.stop_requested:
            return

        # Reload so edits made while paused (or by another process) are honoured
        fresh = self.store.load_job(handle.job_id)
        if fresh is not None:
            handle.job = fresh
            handle.breaker = CircuitBreaker.from_job(
                fresh,
                self.limits.breaker_threshold,
                self.limits.breaker_cooldown_seconds,
                self.limits.breaker_half_open_probe,
                now=self.clock.now(),
            )
        if handle.job.status == "paused":
            self._unpause(handle)
        logger.info(f"[SCRAPE] Job {handle.job_id} resumed")

    def _pause(self, handle: JobHandle, reason: str) -> None:
        job = handle.job
        if job.status == "paused" and job.pause_reason == reason:
            return
        if job.status != "paused":
            job.transition("paused")
            job.paused_at = self.clock.now()
        job.pause_reason = reason
        self._checkpoint(handle)
        logger.info(f"[SCRAPE] Job {job.id} paused ({reason})")

    def _unpause(self, handle: JobHandle) -> None:
        job = handle.job
        job.transition("running")
        job.pause_reason = None
        job.paused_at = None
        self._checkpoint(handle)

    async def _process_batch(self, handle: JobHandle, batch: list[str]) -> bool:
        """Dispatch a claimed batch in order.

        Returns False when the batch was broken off (signal, quota or
        breaker trip) and its unprocessed claims must be released.
        """
        limiter = self.rate_limiter
        for identifier in batch:
            self._sync(handle)
            if handle.has_signal():
                return False
            job = handle.job
            limiter.roll_counters(job, self.clock.now())
            if limiter.daily_exhausted(job) or limiter.hourly_exhausted(job):
                return False

            if not handle.first_dispatch:
                delay = limiter.jittered(limiter.next_delay())
                await self._wait(handle, delay, handle.has_signal)
                if handle.has_signal():
                    return False
            elif handle.deadline is not None and self.clock.monotonic() >= handle.deadline:
                raise PassBudgetExhausted()

            handle.first_dispatch = False
            if await self._dispatch(handle, identifier):
                return False
        return True

    async def _dispatch(self, handle: JobHandle, identifier: str) -> bool:
        """Fetch one item and record its outcome. Returns True if the breaker tripped."""
        job = handle.job
        breaker = handle.breaker
        now = self.clock.now()
        identity = self.identities.next_identity()
        self.rate_limiter.record_request(job)
        job.last_activity_at = now

        status = "success"
        error = None
        started = self.clock.monotonic()
        try:
            result = await self.fetcher.fetch(identifier, identity)
            if not result.available:
                status = "skipped"
                error = result.reason or "not available"
            elif result.record is not None and self.record_sink is not None:
                await self.record_sink.save(result.record)
        except ItemNotFoundError as e:
            status = "skipped"
            error = str(e)
        except FetchError as e:
            status = "failed"
            error = f"{e.kind}: {e}"
        except Exception as e:
            logger.warning(f"[SCRAPE] Unexpected error fetching {identifier}: {e}")
            status = "failed"
            error = f"unknown: {e}"
        duration_ms = int((self.clock.monotonic() - started) * 1000)

        record = self.store.record_outcome(job.id, identifier, status, duration_ms, error)
        job.apply_outcome(record.status)
        handle.durations.append(duration_ms)
        job.avg_processing_ms = sum(handle.durations) / len(handle.durations)

        tripped = False
        if status == "failed":
            job.push_error(f"{identifier}: {error}")
            logger.info(
                f"[SCRAPE] {identifier} failed (attempt {record.attempts}/{job.max_attempts}): "
                f"{error}"
            )
            tripped = breaker.record_failure(now)
            if tripped:
                logger.warning(
                    f"[SCRAPE] Circuit breaker tripped after {breaker.consecutive_failures} "
                    f"consecutive failures"
                )
        else:
            breaker.record_success()

        handle.since_checkpoint += 1
        if tripped or handle.since_checkpoint >= self.limits.checkpoint_every:
            self._checkpoint(handle)
        return tripped

    async def _wait(self, handle: JobHandle, seconds: float, interrupt: Callable[[], bool]) -> bool:
        """Wait ``seconds`` unless ``interrupt()`` becomes true. Returns True if interrupted.

        Long waits are split into slices shorter than the lease; the lease is
        renewed and control requests are read between slices.

        Raises:
            PassBudgetExhausted: If the wait would run past the pass deadline
            LeaseLost: If another worker took the job over during the wait
        """
        clock = self.clock
        if handle.deadline is not None and clock.monotonic() + seconds > handle.deadline:
            raise PassBudgetExhausted()
        end = clock.monotonic() + seconds
        while True:
            if interrupt():
                return True
            remaining = end - clock.monotonic()
            if remaining <= 0:
                return False
            handle.wake.clear()
            if interrupt():
                return True
            await clock.wait(min(remaining, self._renew_interval), handle.wake)
            self._sync(handle)
