"""Process-wide service wiring and project lifecycle operations."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from gitwhisper import config
from gitwhisper.errors import NotFoundError
from gitwhisper.github import parse_repo_url
from gitwhisper.indexer.commits import CommitSynchronizer, SyncResult
from gitwhisper.indexer.embedder import Embedder
from gitwhisper.indexer.fetcher import RepositoryFetcher
from gitwhisper.indexer.pipeline import index_project
from gitwhisper.indexer.summarizer import Summarizer
from gitwhisper.jobs.queue import NOTIFY_SWEEP, TRANSCRIBE
from gitwhisper.jobs.service import JobService
from gitwhisper.jobs.stages import IngestionStages, project_token
from gitwhisper.meetings.service import MeetingService
from gitwhisper.notify import Notifier, notifier_from_config
from gitwhisper.providers import GeminiProvider
from gitwhisper.qa.engine import QueryEngine
from gitwhisper.storage.sqlite_store import SqliteStore
from gitwhisper.storage.vector_store import VectorStore

logger = logging.getLogger(__name__)


def sqlite_factory(db_path: Path) -> Callable[[], SqliteStore]:
    """A factory opening one SqliteStore connection per caller."""

    def _open() -> SqliteStore:
        return SqliteStore(db_path)

    return _open


class ProjectService:
    """Create, archive and list projects; refresh their commit history."""

    def __init__(
        self,
        stages: IngestionStages,
        vector_store: VectorStore,
        fetcher: RepositoryFetcher,
        summarizer: Summarizer,
        embedder: Embedder,
        commits: CommitSynchronizer,
    ) -> None:
        self._stages = stages
        self._vectors = vector_store
        self._fetcher = fetcher
        self._summarizer = summarizer
        self._embedder = embedder
        self._commits = commits

    def create_project(
        self,
        store: SqliteStore,
        name: str,
        repo_url: str,
        user_id: str,
        token: str | None = None,
        branch: str | None = None,
        sync: bool = False,
    ) -> dict:
        """Create a project and start ingesting it.

        By default ingestion is queued and this returns at once with the
        run id. With ``sync=True`` the repository is ingested inline; if that
        fails outright the project and everything written for it are removed
        and the error is re-raised.
        """
        parse_repo_url(repo_url)
        with store.transaction():
            credential_ref = store.put_credential(token) if token else None
            project_id = store.insert_project(name.strip() or repo_url, repo_url, branch, credential_ref)
            store.add_member(project_id, user_id)
            # A queued project and its first run are committed together
            run_id = None if sync else self._stages.start_run(store, project_id)
        logger.info("Created project %d (%s) for user %s", project_id, repo_url, user_id)

        if run_id is not None:
            return {"project": store.get_project(project_id), "run_id": run_id}

        try:
            counts = index_project(
                store, self._vectors, project_id, repo_url,
                token=token or config.GITHUB_TOKEN or None, branch=branch,
                fetcher=self._fetcher, summarizer=self._summarizer, embedder=self._embedder,
            )
            commits = self._commits.sync(
                store, project_id, repo_url, token=token or config.GITHUB_TOKEN or None, branch=branch,
            )
        except Exception:
            logger.exception("Ingestion of project %d failed; rolling back", project_id)
            self._vectors.delete_project(project_id)
            store.delete_project(project_id)
            raise
        return {
            "project": store.get_project(project_id),
            "ingest": {**counts, "commits_added": commits.added},
        }

    def get_project(self, store: SqliteStore, project_id: int, user_id: str | None = None) -> dict:
        """An active project, visible to ``user_id`` when given."""
        project = store.get_project(project_id)
        if project is None or (user_id is not None and not store.is_member(project_id, user_id)):
            raise NotFoundError(f"Project {project_id} not found")
        return project

    def list_projects(self, store: SqliteStore, user_id: str | None = None) -> list[dict]:
        return store.list_projects(user_id)

    def join_project(self, store: SqliteStore, project_id: int, user_id: str) -> dict:
        """Add a user to an active project's team. Joining twice is a no-op."""
        project = self.get_project(store, project_id)
        store.add_member(project_id, user_id)
        logger.info("User %s joined project %d", user_id, project_id)
        return project

    def list_members(self, store: SqliteStore, project_id: int, user_id: str | None = None) -> list[dict]:
        self.get_project(store, project_id, user_id)
        return store.list_members(project_id)

    def archive_project(self, store: SqliteStore, project_id: int, user_id: str | None = None) -> None:
        self.get_project(store, project_id, user_id)
        store.archive_project(project_id)
        logger.info("Archived project %d", project_id)

    def refresh_commits(self, store: SqliteStore, project_id: int) -> SyncResult:
        """Run the commit sync for a project now, outside the queue."""
        project = self.get_project(store, project_id)
        return self._commits.sync(
            store, project_id, project["repo_url"],
            token=project_token(store, project), branch=project["branch"],
        )


@dataclass
class Services:
    """Every long-lived component, built once at process start."""

    store_factory: Callable[[], SqliteStore]
    vector_store: VectorStore
    jobs: JobService
    stages: IngestionStages
    projects: ProjectService
    query_engine: QueryEngine
    meetings: MeetingService
    notifier: Notifier

    @classmethod
    def build(
        cls,
        store_factory: Callable[[], SqliteStore],
        vector_store: VectorStore,
        summarizer: Summarizer,
        embedder: Embedder,
        query_engine: QueryEngine,
        fetcher: RepositoryFetcher | None = None,
        commits: CommitSynchronizer | None = None,
        meetings: MeetingService | None = None,
        notifier: Notifier | None = None,
        jobs: JobService | None = None,
    ) -> Services:
        """Wire components together. Anything not given gets its default."""
        fetcher = fetcher or RepositoryFetcher()
        commits = commits or CommitSynchronizer(summarizer=summarizer)
        meetings = meetings or MeetingService()
        notifier = notifier or notifier_from_config()
        jobs = jobs or JobService(store_factory)
        stages = IngestionStages(
            jobs, vector_store, fetcher=fetcher, summarizer=summarizer, embedder=embedder,
            commits=commits, notifier=notifier, meetings=meetings,
        )
        stages.register()
        projects = ProjectService(stages, vector_store, fetcher, summarizer, embedder, commits)
        return cls(
            store_factory=store_factory,
            vector_store=vector_store,
            jobs=jobs,
            stages=stages,
            projects=projects,
            query_engine=query_engine,
            meetings=meetings,
            notifier=notifier,
        )

    @classmethod
    def from_config(cls) -> Services:
        """Build the production services from ``gitwhisper.config``."""
        config.require_gemini_key()
        store_factory = sqlite_factory(config.SQLITE_PATH)
        init = store_factory()
        try:
            init.init_db()
        finally:
            init.close()

        provider = GeminiProvider()
        vector_store = VectorStore(config.LANCEDB_PATH, dims=config.EMBEDDING_DIMS)
        embedder = Embedder(provider)
        return cls.build(
            store_factory=store_factory,
            vector_store=vector_store,
            summarizer=Summarizer(provider),
            embedder=embedder,
            query_engine=QueryEngine(vector_store, embedder=embedder, provider=provider),
        )

    def open_store(self) -> SqliteStore:
        return self.store_factory()

    def enqueue_transcription(self, store: SqliteStore, meeting_id: int) -> int:
        return self.jobs.enqueue(TRANSCRIBE, {"meeting_id": meeting_id}, store=store)

    def start_workers(self) -> None:
        """Resume interrupted jobs and start the background worker pool."""
        self.jobs.recover()
        self.jobs.schedule_every(NOTIFY_SWEEP, config.NOTIFY_SWEEP_INTERVAL_SECS)
        self.jobs.start()

    def stop_workers(self) -> None:
        self.jobs.stop()
