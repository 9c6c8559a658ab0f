"""Incremental commit-history sync: list, diff and summarize new commits."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from gitwhisper import config
from gitwhisper.errors import GitWhisperError
from gitwhisper.github import CommitInfo, GitHubClient, parse_repo_url
from gitwhisper.indexer.summarizer import Summarizer
from gitwhisper.storage.sqlite_store import SqliteStore

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    listed: int
    added: int


def filter_unprocessed(commits: Iterable[CommitInfo], stored_hashes: set[str]) -> list[CommitInfo]:
    """Commits whose hash is not yet stored, in their listed order."""
    return [c for c in commits if c.commit_hash not in stored_hashes]


class CommitSynchronizer:
    """Appends a CommitRecord for each recent commit the store hasn't seen."""

    def __init__(
        self,
        summarizer: Summarizer | None = None,
        client_factory: Callable[..., GitHubClient] = GitHubClient,
        window: int | None = None,
    ) -> None:
        self._summarizer = summarizer or Summarizer()
        self._client_factory = client_factory
        self._window = window or config.COMMIT_WINDOW

    def sync(
        self,
        store: SqliteStore,
        project_id: int,
        repo_url: str,
        token: str | None = None,
        branch: str | None = None,
    ) -> SyncResult:
        """Sync the most recent commits of a project's repository.

        Listing failures propagate so the caller can retry. Each new commit is
        handled on its own: a failed diff fetch or summary still stores the
        record, with an empty summary.
        """
        owner, repo = parse_repo_url(repo_url)
        with self._client_factory(token=token) as client:
            listed = client.list_commits(owner, repo, branch=branch, per_page=self._window)
            pending = filter_unprocessed(listed, store.get_commit_hashes(project_id))
            logger.info(
                "Project %d: %d commits listed, %d new", project_id, len(listed), len(pending)
            )

            added = 0
            for commit in pending:
                summary = ""
                try:
                    diff = client.get_commit_diff(owner, repo, commit.commit_hash)
                    summary = self._summarizer.summarize_diff(diff)
                except GitWhisperError as e:
                    logger.warning(
                        "Project %d: could not summarize commit %s: %s",
                        project_id, commit.commit_hash[:12], e,
                    )
                if store.insert_commit(
                    project_id,
                    commit_hash=commit.commit_hash,
                    message=commit.message,
                    author=commit.author,
                    author_avatar_url=commit.author_avatar_url,
                    committed_at=commit.committed_at,
                    summary=summary,
                ):
                    added += 1

        return SyncResult(listed=len(listed), added=added)
