"""Tests for the durable job service: retries, backoff, recovery and runs."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from gitwhisper.errors import TransientError, ValidationError
from gitwhisper.jobs.queue import (
    DEFAULT_POLICIES,
    EMBED,
    NOTIFY,
    NOTIFY_SWEEP,
    StagePolicy,
    backoff_delay,
)
from gitwhisper.jobs.service import JobService

from tests.helpers import FakeClock


def _service(store_factory, clock: FakeClock, **policies: StagePolicy) -> JobService:
    return JobService(store_factory, policies=policies or None, clock=clock)


def _flaky(failures: int, exc: type[Exception] = TransientError) -> MagicMock:
    """A handler that raises ``failures`` times and then succeeds."""
    effects = [exc(f"failure {i + 1}") for i in range(failures)] + [None]
    return MagicMock(side_effect=effects)


def _drain(service: JobService, clock: FakeClock, step: float = 1.0, limit: int = 200) -> None:
    """Run due jobs, moving the clock forward until nothing is left to do."""
    for _ in range(limit):
        if service.run_pending() == 0:
            clock.advance(step)
            if service.run_pending() == 0:
                clock.advance(60)
                if service.run_pending() == 0:
                    return


class TestBackoff:
    def test_delays_double(self) -> None:
        assert [backoff_delay(2, n) for n in (1, 2, 3)] == [2, 4, 8]

    def test_default_embed_policy(self) -> None:
        policy = DEFAULT_POLICIES[EMBED]
        assert policy.attempts == 3
        assert [backoff_delay(policy.base_delay, n) for n in range(1, policy.attempts)] == [2, 4]


class TestRetries:
    def test_retries_three_times_with_backoff_then_fails(self, store, store_factory, clock) -> None:
        service = _service(store_factory, clock, **{EMBED: StagePolicy(attempts=4, base_delay=2)})
        on_failed = MagicMock()
        handler = MagicMock(side_effect=TransientError("provider timeout"))
        service.register(EMBED, handler, on_failed=on_failed)
        job_id = service.enqueue(EMBED, {"path": "c.py"})

        for expected_delay in (2, 4, 8):
            assert service.run_pending() == 1
            job = store.get_job(job_id)
            assert job["state"] == "retrying"
            assert job["available_at"] == pytest.approx(clock() + expected_delay)
            # Not due a moment before the delay elapses
            clock.advance(expected_delay - 0.5)
            assert service.run_pending() == 0
            clock.advance(0.5)

        assert service.run_pending() == 1
        assert handler.call_count == 4
        job = store.get_job(job_id)
        assert job["state"] == "failed"
        assert job["attempts"] == 4
        assert "provider timeout" in job["last_error"]

        attempts = store.list_job_attempts(job_id)
        assert [a["retry_delay"] for a in attempts] == [2, 4, 8, None]
        on_failed.assert_called_once()
        ctx, exc = on_failed.call_args[0]
        assert ctx.payload == {"path": "c.py"}
        assert isinstance(exc, TransientError)

    def test_succeeds_after_transient_failures(self, store, store_factory, clock) -> None:
        service = _service(store_factory, clock)
        handler = _flaky(2)
        service.register(EMBED, handler)
        job_id = service.enqueue(EMBED, {})

        _drain(service, clock)

        assert handler.call_count == 3
        assert store.get_job(job_id)["state"] == "completed"
        assert [a["attempt"] for a in store.list_job_attempts(job_id)] == [1, 2]

    def test_terminal_error_not_retried(self, store, store_factory, clock) -> None:
        service = _service(store_factory, clock)
        on_failed = MagicMock()
        handler = MagicMock(side_effect=ValidationError("bad input"))
        service.register(EMBED, handler, on_failed=on_failed)
        job_id = service.enqueue(EMBED, {})

        _drain(service, clock)

        assert handler.call_count == 1
        assert store.get_job(job_id)["state"] == "failed"
        on_failed.assert_called_once()

    def test_unexpected_error_is_retried(self, store, store_factory, clock) -> None:
        service = _service(store_factory, clock)
        handler = _flaky(1, RuntimeError)
        service.register(EMBED, handler)
        job_id = service.enqueue(EMBED, {})
        _drain(service, clock)
        assert store.get_job(job_id)["state"] == "completed"

    def test_failure_hook_error_is_contained(self, store, store_factory, clock) -> None:
        service = _service(store_factory, clock)
        service.register(
            EMBED,
            MagicMock(side_effect=ValidationError("bad")),
            on_failed=MagicMock(side_effect=RuntimeError("hook broke")),
        )
        job_id = service.enqueue(EMBED, {})
        service.run_pending()
        assert store.get_job(job_id)["state"] == "failed"

    def test_unregistered_stage_not_claimed(self, store, store_factory, clock) -> None:
        service = _service(store_factory, clock)
        job_id = service.enqueue("mystery", {})
        assert service.run_pending() == 0
        assert store.get_job(job_id)["state"] == "queued"


class TestEnqueue:
    def test_delay(self, store, store_factory, clock) -> None:
        service = _service(store_factory, clock)
        handler = MagicMock()
        service.register(EMBED, handler)
        service.enqueue(EMBED, {}, delay=30)
        assert service.run_pending() == 0
        clock.advance(30)
        assert service.run_pending() == 1

    def test_policy_copied_onto_job(self, store, store_factory, clock) -> None:
        service = _service(store_factory, clock)
        job = store.get_job(service.enqueue(EMBED, {}))
        assert job["max_attempts"] == DEFAULT_POLICIES[EMBED].attempts
        assert job["base_delay"] == DEFAULT_POLICIES[EMBED].base_delay

    def test_followups_inherit_run(self, store, store_factory, clock) -> None:
        pid = store.insert_project("w", "https://github.com/acme/widgets")
        service = _service(store_factory, clock)
        service.register("first", lambda ctx: ctx.enqueue("second", {"n": 2}))
        service.register("second", MagicMock())
        run_id = service.start_run(store, pid, ["first"])

        service.run_pending()

        stages = {j["stage"]: j for j in store.list_jobs(run_id=run_id)}
        assert stages["second"]["payload"] == {"n": 2}
        assert stages["second"]["state"] == "completed"


class TestRecovery:
    def test_interrupted_job_runs_again(self, store, store_factory, clock) -> None:
        service = _service(store_factory, clock)
        handler = MagicMock()
        service.register(EMBED, handler)
        job_id = service.enqueue(EMBED, {})
        store.claim_job(clock())  # simulate a worker that died mid-job

        assert service.run_pending() == 0
        assert service.recover() == 1
        assert service.run_pending() == 1
        handler.assert_called_once()
        assert store.get_job(job_id)["state"] == "completed"


class TestRuns:
    def test_run_notifies_exactly_once(self, store, store_factory, clock) -> None:
        pid = store.insert_project("w", "https://github.com/acme/widgets")
        service = _service(store_factory, clock)
        notify = MagicMock()
        service.register("a", MagicMock())
        service.register("b", _flaky(1), policy=StagePolicy(attempts=3, base_delay=2))
        service.register(NOTIFY, notify)
        run_id = service.start_run(store, pid, ["a", "b"])

        assert service.run_pending() == 2
        # "b" is waiting out its retry, so the run stays open
        assert store.get_run(run_id)["status"] == "running"
        notify.assert_not_called()

        _drain(service, clock)

        assert store.get_run(run_id)["status"] == "completed"
        notify.assert_called_once()
        assert notify.call_args[0][0].payload == {"run_id": run_id}
        assert service.finish_run_if_idle(store, run_id) is False

    def test_run_completes_when_units_fail(self, store, store_factory, clock) -> None:
        pid = store.insert_project("w", "https://github.com/acme/widgets")
        service = _service(store_factory, clock)
        service.register("a", MagicMock(side_effect=ValidationError("bad")))
        service.register(NOTIFY, MagicMock())
        run_id = service.start_run(store, pid, ["a"])

        _drain(service, clock)

        status = service.run_status(store, run_id)
        assert status["status"] == "completed"
        assert status["jobs"]["failed"] == 1
        assert status["jobs"]["completed"] == 1  # the notify job

    def test_run_status_unknown(self, store, store_factory, clock) -> None:
        assert _service(store_factory, clock).run_status(store, 999) is None


class TestSchedules:
    def test_schedule_fires_after_interval(self, store, store_factory, clock) -> None:
        service = _service(store_factory, clock)
        sweep = MagicMock()
        service.register(NOTIFY_SWEEP, sweep)
        service.schedule_every(NOTIFY_SWEEP, 60)

        assert service.run_pending() == 0
        clock.advance(60)
        assert service.run_pending() == 1
        clock.advance(60)
        assert service.run_pending() == 1
        assert sweep.call_count == 2

    def test_schedule_skips_while_active(self, store, store_factory, clock) -> None:
        service = _service(store_factory, clock)
        service.schedule_every(NOTIFY_SWEEP, 10)
        clock.advance(10)
        # Nothing registered yet, so the first sweep stays queued
        service.run_pending()
        clock.advance(10)
        service.run_pending()
        assert len([j for j in store.list_jobs() if j["stage"] == NOTIFY_SWEEP]) == 1


class TestWorkerThreads:
    def test_start_and_stop_runs_jobs(self, store, store_factory) -> None:
        done = threading.Event()
        service = JobService(store_factory, max_workers=2, poll_interval=0.01)
        service.register(EMBED, lambda ctx: done.set())
        job_id = service.enqueue(EMBED, {})
        service.start()
        try:
            assert done.wait(5)
        finally:
            service.stop()
        assert store.get_job(job_id)["state"] == "completed"
