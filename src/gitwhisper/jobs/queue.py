"""Stage names, retry policies and the per-job execution context."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gitwhisper.jobs.service import JobService
    from gitwhisper.storage.sqlite_store import SqliteStore

FETCH_FILES = "fetch-files"
SUMMARIZE = "summarize"
EMBED = "embed"
PERSIST = "persist"
COMMIT_SYNC = "commit-sync"
NOTIFY = "notify"
NOTIFY_SWEEP = "notify-sweep"
TRANSCRIBE = "transcribe"


@dataclass(frozen=True)
class StagePolicy:
    """Retry policy for one stage.

    ``attempts`` counts every execution, the first one included.
    """

    attempts: int
    base_delay: float


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Delay before retrying after failed attempt number ``attempt`` (1-based)."""
    return base_delay * 2 ** (attempt - 1)


DEFAULT_POLICIES: dict[str, StagePolicy] = {
    FETCH_FILES: StagePolicy(attempts=3, base_delay=2),
    COMMIT_SYNC: StagePolicy(attempts=2, base_delay=1),
    SUMMARIZE: StagePolicy(attempts=3, base_delay=5),
    EMBED: StagePolicy(attempts=3, base_delay=2),
    PERSIST: StagePolicy(attempts=3, base_delay=2),
    NOTIFY: StagePolicy(attempts=3, base_delay=2),
    NOTIFY_SWEEP: StagePolicy(attempts=1, base_delay=0),
    TRANSCRIBE: StagePolicy(attempts=2, base_delay=5),
}


@dataclass
class JobContext:
    """What a stage handler sees while it runs.

    ``store`` is a connection owned by this job alone. Follow-up jobs
    enqueued through the context inherit the job's run.
    """

    job: dict
    store: SqliteStore
    service: JobService

    @property
    def payload(self) -> dict:
        return self.job["payload"]

    @property
    def run_id(self) -> int | None:
        return self.job["run_id"]

    @property
    def attempt(self) -> int:
        return self.job["attempts"]

    @property
    def is_last_attempt(self) -> bool:
        return self.job["attempts"] >= self.job["max_attempts"]

    def enqueue(self, stage: str, payload: dict) -> int:
        return self.service.enqueue(stage, payload, run_id=self.run_id, store=self.store)


Handler = Callable[[JobContext], None]
FailureHook = Callable[[JobContext, BaseException], None]


@dataclass
class Stage:
    name: str
    handler: Handler
    policy: StagePolicy
    on_failed: FailureHook | None = None


@dataclass
class Schedule:
    stage: str
    interval: float
    payload: dict = field(default_factory=dict)
    next_at: float = 0.0
