"""Ingestion pipeline stage handlers.

A run starts with ``fetch-files`` and ``commit-sync``. ``fetch-files`` stores
raw content and fans out one ``summarize -> embed -> persist`` chain per file.
When the run has nothing left in flight, the job service enqueues ``notify``.
"""

from __future__ import annotations

import logging

from gitwhisper import config
from gitwhisper.errors import GitWhisperError, NotFoundError, ValidationError
from gitwhisper.indexer.commits import CommitSynchronizer
from gitwhisper.indexer.embedder import Embedder
from gitwhisper.indexer.fetcher import RepositoryFetcher
from gitwhisper.indexer.summarizer import Summarizer
from gitwhisper.jobs.queue import (
    COMMIT_SYNC,
    EMBED,
    FETCH_FILES,
    NOTIFY,
    NOTIFY_SWEEP,
    PERSIST,
    SUMMARIZE,
    TRANSCRIBE,
    JobContext,
)
from gitwhisper.jobs.service import JobService
from gitwhisper.meetings.service import MeetingService
from gitwhisper.notify import LogNotifier, Notifier, RunReport
from gitwhisper.storage.sqlite_store import SqliteStore
from gitwhisper.storage.vector_store import VectorStore

logger = logging.getLogger(__name__)


def project_token(store: SqliteStore, project: dict) -> str | None:
    """The project's stored credential, else the process-wide token."""
    return store.get_credential(project.get("credential_ref")) or config.GITHUB_TOKEN or None


def _require_project(store: SqliteStore, project_id: int) -> dict:
    project = store.get_project(project_id, include_archived=True)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found")
    return project


def _require_artifact(store: SqliteStore, project_id: int, path: str) -> dict:
    artifact = store.get_artifact(project_id, path)
    if artifact is None:
        raise NotFoundError(f"Artifact {path!r} not found in project {project_id}")
    return artifact


class IngestionStages:
    """Registers the pipeline's stage handlers on a JobService."""

    def __init__(
        self,
        jobs: JobService,
        vector_store: VectorStore,
        fetcher: RepositoryFetcher | None = None,
        summarizer: Summarizer | None = None,
        embedder: Embedder | None = None,
        commits: CommitSynchronizer | None = None,
        notifier: Notifier | None = None,
        meetings: MeetingService | None = None,
    ) -> None:
        self._jobs = jobs
        self._vectors = vector_store
        self._fetcher = fetcher or RepositoryFetcher()
        self._summarizer = summarizer or Summarizer()
        self._embedder = embedder or Embedder()
        self._commits = commits or CommitSynchronizer(summarizer=self._summarizer)
        self._notifier = notifier or LogNotifier()
        self._meetings = meetings or MeetingService()

    def register(self) -> None:
        self._jobs.register(FETCH_FILES, self.fetch_files)
        self._jobs.register(SUMMARIZE, self.summarize, on_failed=self._mark_failed)
        self._jobs.register(EMBED, self.embed, on_failed=self._mark_failed)
        self._jobs.register(PERSIST, self.persist, on_failed=self._mark_failed)
        self._jobs.register(COMMIT_SYNC, self.commit_sync)
        self._jobs.register(NOTIFY, self.notify)
        self._jobs.register(NOTIFY_SWEEP, self.notify_sweep)
        self._jobs.register(TRANSCRIBE, self.transcribe)

    def start_run(self, store: SqliteStore, project_id: int) -> int:
        """Start an ingestion run for a project and return its id."""
        return self._jobs.start_run(store, project_id, [FETCH_FILES, COMMIT_SYNC])

    # ── Files ──

    def fetch_files(self, ctx: JobContext) -> None:
        project_id = ctx.payload["project_id"]
        project = _require_project(ctx.store, project_id)
        store = ctx.store

        def _on_error(path: str, exc: GitWhisperError) -> None:
            logger.warning("Project %d: fetch failed for %s: %s", project_id, path, exc)
            store.mark_artifact_failed(project_id, path, f"{type(exc).__name__}: {exc}")
            self._drop_vector(store, project_id, path)

        n = 0
        for file in self._fetcher.iter_files(
            project["repo_url"], token=project_token(store, project),
            branch=project["branch"], on_error=_on_error,
        ):
            store.upsert_artifact_content(project_id, file.path, file.content)
            ctx.enqueue(SUMMARIZE, {"project_id": project_id, "path": file.path})
            n += 1
        if ctx.run_id is not None:
            store.set_run_files_total(ctx.run_id, n)
        logger.info("Project %d: fetched %d files", project_id, n)

    def summarize(self, ctx: JobContext) -> None:
        project_id, path = ctx.payload["project_id"], ctx.payload["path"]
        artifact = _require_artifact(ctx.store, project_id, path)
        # The final attempt accepts an empty summary instead of failing the file
        summary = self._summarizer.summarize_code(
            path, artifact["raw_content"], strict=not ctx.is_last_attempt
        )
        ctx.store.set_artifact_summary(project_id, path, summary)
        ctx.enqueue(EMBED, {"project_id": project_id, "path": path})

    def embed(self, ctx: JobContext) -> None:
        project_id, path = ctx.payload["project_id"], ctx.payload["path"]
        artifact = _require_artifact(ctx.store, project_id, path)
        vector = self._embedder.embed(artifact["summary"], strict=True)
        if not vector:
            ctx.store.mark_artifact_unembedded(project_id, path)
            self._vectors.delete_artifact(artifact["id"])
            logger.info("Project %d: %s has no embedding", project_id, path)
            return
        ctx.enqueue(PERSIST, {"project_id": project_id, "path": path, "vector": vector})

    def persist(self, ctx: JobContext) -> None:
        project_id, path = ctx.payload["project_id"], ctx.payload["path"]
        vector = ctx.payload.get("vector") or []
        if len(vector) != self._vectors.dims:
            raise ValidationError(
                f"Vector for {path} has {len(vector)} dimensions, expected {self._vectors.dims}"
            )
        artifact = _require_artifact(ctx.store, project_id, path)
        self._vectors.upsert(project_id, artifact["id"], path, artifact["summary"], vector)
        ctx.store.mark_artifact_indexed(project_id, path, len(vector))

    def _mark_failed(self, ctx: JobContext, exc: BaseException) -> None:
        project_id, path = ctx.payload["project_id"], ctx.payload["path"]
        ctx.store.mark_artifact_failed(project_id, path, f"{type(exc).__name__}: {exc}")
        self._drop_vector(ctx.store, project_id, path)

    def _drop_vector(self, store: SqliteStore, project_id: int, path: str) -> None:
        """Take a file that lost its embedding out of similarity search."""
        artifact = store.get_artifact(project_id, path)
        if artifact is not None:
            self._vectors.delete_artifact(artifact["id"])

    # ── Commits ──

    def commit_sync(self, ctx: JobContext) -> None:
        project_id = ctx.payload["project_id"]
        project = _require_project(ctx.store, project_id)
        result = self._commits.sync(
            ctx.store, project_id, project["repo_url"],
            token=project_token(ctx.store, project), branch=project["branch"],
        )
        if ctx.run_id is not None:
            ctx.store.set_run_commits_added(ctx.run_id, result.added)

    # ── Completion ──

    def build_report(self, store: SqliteStore, run_id: int) -> RunReport:
        run = store.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        project = _require_project(store, run["project_id"])
        finished = run["completed_at"] or run["created_at"]
        return RunReport(
            run_id=run_id,
            project_id=project["id"],
            project_name=project["name"],
            repo_url=project["repo_url"],
            files_indexed=store.count_artifacts(project["id"], "indexed"),
            files_unembedded=store.count_artifacts(project["id"], "unembedded"),
            files_failed=store.count_artifacts(project["id"], "failed"),
            commits=run["commits_added"] or 0,
            elapsed_secs=max(finished - run["created_at"], 0.0),
        )

    def notify(self, ctx: JobContext) -> None:
        run_id = ctx.payload["run_id"]
        run = ctx.store.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        if run["notified_at"] is not None:
            logger.info("Run %d already notified", run_id)
            return
        self._notifier.send(self.build_report(ctx.store, run_id))
        ctx.store.mark_run_notified(run_id, ctx.service.now())

    def notify_sweep(self, ctx: JobContext) -> None:
        for run_id in ctx.store.list_running_run_ids():
            ctx.service.finish_run_if_idle(ctx.store, run_id)

    # ── Meetings ──

    def transcribe(self, ctx: JobContext) -> None:
        self._meetings.process_meeting(
            ctx.store, ctx.payload["meeting_id"], final=ctx.is_last_attempt
        )
