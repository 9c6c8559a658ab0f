"""Durable job service: SQLite-backed queue with retries and a worker pool."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

from gitwhisper import config
from gitwhisper.errors import is_retryable
from gitwhisper.jobs.queue import (
    DEFAULT_POLICIES,
    NOTIFY,
    FailureHook,
    Handler,
    JobContext,
    Schedule,
    Stage,
    StagePolicy,
    backoff_delay,
)
from gitwhisper.storage.sqlite_store import ACTIVE_JOB_STATES, SqliteStore

logger = logging.getLogger(__name__)


class JobService:
    """Runs registered stages for jobs persisted in the ``jobs`` table.

    Constructed once per process and passed by handle to producers (the API,
    stage handlers) and consumers (the dispatcher thread or ``run_pending``).

    A job moves ``queued -> running -> completed``. A failure with retries
    left moves it to ``retrying`` with ``available_at`` pushed out by the
    stage's backoff; a terminal error or exhausted attempts move it to
    ``failed`` and run the stage's failure hook. Every failed attempt is
    recorded in ``job_attempts``.
    """

    def __init__(
        self,
        store_factory: Callable[[], SqliteStore],
        policies: dict[str, StagePolicy] | None = None,
        clock: Callable[[], float] = time.time,
        max_workers: int | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self._store_factory = store_factory
        self._policies = dict(DEFAULT_POLICIES)
        if policies:
            self._policies.update(policies)
        self._clock = clock
        self._max_workers = max_workers or config.WORKER_THREADS
        self._poll_interval = poll_interval if poll_interval is not None else config.POLL_INTERVAL_SECS
        self._stages: dict[str, Stage] = {}
        self._schedules: list[Schedule] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None

    # ── Registration ──

    def register(
        self,
        stage: str,
        handler: Handler,
        on_failed: FailureHook | None = None,
        policy: StagePolicy | None = None,
    ) -> None:
        """Register the handler for a stage."""
        policy = policy or self._policies.get(stage) or StagePolicy(attempts=1, base_delay=0)
        self._stages[stage] = Stage(name=stage, handler=handler, policy=policy, on_failed=on_failed)

    def now(self) -> float:
        return self._clock()

    def policy(self, stage: str) -> StagePolicy:
        if stage in self._stages:
            return self._stages[stage].policy
        return self._policies.get(stage) or StagePolicy(attempts=1, base_delay=0)

    def schedule_every(self, stage: str, interval: float, payload: dict | None = None) -> None:
        """Enqueue ``stage`` every ``interval`` seconds while the service runs.

        A new job is skipped while a previous one is still queued or running.
        """
        with self._lock:
            self._schedules.append(
                Schedule(stage=stage, interval=interval, payload=payload or {},
                         next_at=self._clock() + interval)
            )

    # ── Producing ──

    def enqueue(
        self,
        stage: str,
        payload: dict,
        run_id: int | None = None,
        delay: float = 0.0,
        store: SqliteStore | None = None,
    ) -> int:
        """Persist a new job and return its id."""
        policy = self.policy(stage)
        now = self._clock()
        if store is not None:
            return self._insert(store, stage, payload, run_id, policy, now + delay, now)
        own = self._store_factory()
        try:
            return self._insert(own, stage, payload, run_id, policy, now + delay, now)
        finally:
            own.close()

    @staticmethod
    def _insert(
        store: SqliteStore, stage: str, payload: dict, run_id: int | None,
        policy: StagePolicy, available_at: float, now: float,
    ) -> int:
        job_id = store.insert_job(
            stage, payload, run_id,
            max_attempts=policy.attempts, base_delay=policy.base_delay,
            available_at=available_at, now=now,
        )
        logger.debug("Enqueued job %d (%s) run=%s", job_id, stage, run_id)
        return job_id

    def start_run(self, store: SqliteStore, project_id: int, stages: list[str]) -> int:
        """Create a pipeline run and enqueue its initial stages atomically."""
        now = self._clock()
        with store.transaction():
            run_id = store.insert_run(project_id, now)
            for stage in stages:
                self._insert(store, stage, {"project_id": project_id}, run_id,
                             self.policy(stage), now, now)
        logger.info("Started run %d for project %d (%s)", run_id, project_id, ", ".join(stages))
        return run_id

    # ── Consuming ──

    def recover(self) -> int:
        """Put jobs interrupted mid-execution back on the queue."""
        store = self._store_factory()
        try:
            n = store.requeue_running_jobs()
        finally:
            store.close()
        if n:
            logger.info("Recovered %d interrupted job(s)", n)
        return n

    def run_pending(self, max_jobs: int | None = None) -> int:
        """Execute due jobs on the calling thread until none are left.

        Returns the number of jobs executed. Jobs waiting out a retry delay
        are not due until the clock passes their ``available_at``.
        """
        store = self._store_factory()
        executed = 0
        try:
            self._fire_schedules(store)
            while max_jobs is None or executed < max_jobs:
                job = store.claim_job(self._clock(), list(self._stages))
                if job is None:
                    break
                self._execute(job)
                executed += 1
        finally:
            store.close()
        return executed

    def start(self) -> None:
        """Start the dispatcher thread and the worker pool."""
        if self._thread is not None:
            return
        self._stop.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="gitwhisper-worker"
        )
        self._thread = threading.Thread(
            target=self._dispatch_loop, name="gitwhisper-dispatcher", daemon=True
        )
        self._thread.start()
        logger.info("Job service started (%d workers)", self._max_workers)

    def stop(self, wait: bool = True) -> None:
        """Stop dispatching. Running jobs finish when ``wait`` is true."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        logger.info("Job service stopped")

    def _dispatch_loop(self) -> None:
        slots = threading.BoundedSemaphore(self._max_workers)
        store = self._store_factory()
        try:
            while not self._stop.is_set():
                self._fire_schedules(store)
                if not slots.acquire(timeout=self._poll_interval):
                    continue
                job = store.claim_job(self._clock(), list(self._stages))
                if job is None:
                    slots.release()
                    self._stop.wait(self._poll_interval)
                    continue
                future = self._executor.submit(self._execute, job)  # type: ignore[union-attr]
                future.add_done_callback(lambda _f: slots.release())
        except Exception:
            logger.exception("Job dispatcher crashed")
            raise
        finally:
            store.close()

    def _fire_schedules(self, store: SqliteStore) -> None:
        now = self._clock()
        with self._lock:
            due = [s for s in self._schedules if s.next_at <= now]
            for s in due:
                s.next_at = now + s.interval
        for s in due:
            if not store.has_active_job(s.stage):
                self._insert(store, s.stage, s.payload, None, self.policy(s.stage), now, now)

    # ── Execution ──

    def _execute(self, job: dict) -> None:
        store = self._store_factory()
        try:
            self._execute_with(store, job)
        except Exception:
            # Bookkeeping itself failed; recover() requeues the job on restart
            logger.exception("Job %d (%s) bookkeeping failed", job["id"], job["stage"])
        finally:
            store.close()

    def _execute_with(self, store: SqliteStore, job: dict) -> None:
        ctx = JobContext(job=job, store=store, service=self)
        stage = self._stages.get(job["stage"])
        t0 = time.perf_counter()
        if stage is None:
            store.fail_job(job["id"], f"No handler registered for stage {job['stage']!r}", self._clock())
            return

        logger.debug("Running job %d (%s) attempt %d/%d",
                     job["id"], job["stage"], job["attempts"], job["max_attempts"])
        try:
            stage.handler(ctx)
        except Exception as e:
            self._record_failure(ctx, stage, e)
        else:
            store.complete_job(job["id"], self._clock())
            logger.debug("Job %d (%s) completed in %.2fs",
                         job["id"], job["stage"], time.perf_counter() - t0)

        if job["run_id"] is not None and job["stage"] != NOTIFY:
            self.finish_run_if_idle(store, job["run_id"])

    def _record_failure(self, ctx: JobContext, stage: Stage, exc: Exception) -> None:
        job = ctx.job
        store = ctx.store
        now = self._clock()
        attempt = job["attempts"]
        error = f"{type(exc).__name__}: {exc}"

        if is_retryable(exc) and attempt < job["max_attempts"]:
            delay = backoff_delay(job["base_delay"], attempt)
            store.insert_job_attempt(job["id"], attempt, error, delay, now)
            store.retry_job(job["id"], error, now + delay)
            logger.warning("Job %d (%s) attempt %d/%d failed, retrying in %.1fs: %s",
                           job["id"], job["stage"], attempt, job["max_attempts"], delay, exc)
            return

        store.insert_job_attempt(job["id"], attempt, error, None, now)
        store.fail_job(job["id"], error, now)
        logger.error("Job %d (%s) failed after %d attempt(s): %s",
                     job["id"], job["stage"], attempt, exc)
        if stage.on_failed is not None:
            try:
                stage.on_failed(ctx, exc)
            except Exception:
                logger.exception("Failure hook for job %d (%s) raised", job["id"], job["stage"])

    # ── Runs ──

    def finish_run_if_idle(self, store: SqliteStore, run_id: int) -> bool:
        """Complete a run with no units in flight and enqueue its notification.

        Safe to call from any number of workers: only the caller whose
        conditional update wins enqueues the ``notify`` job.
        """
        if not store.complete_run_if_idle(run_id, self._clock(), exclude_stage=NOTIFY):
            return False
        self.enqueue(NOTIFY, {"run_id": run_id}, run_id=run_id, store=store)
        logger.info("Run %d completed", run_id)
        return True

    def run_status(self, store: SqliteStore, run_id: int) -> dict | None:
        """A run row plus per-state job counts."""
        run = store.get_run(run_id)
        if run is None:
            return None
        counts = {
            state: store.count_jobs(run_id, (state,))
            for state in (*ACTIVE_JOB_STATES, "completed", "failed")
        }
        return {**run, "jobs": counts}
