"""Synchronous ingestion of a repository into the knowledge store.

This is the fallback path used when a project is created with ``sync=True``
and by ``scripts/index.py``. The queued pipeline in ``gitwhisper.jobs`` is
the primary path; both write through the same store operations.
"""

from __future__ import annotations

import logging
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable

from gitwhisper import config
from gitwhisper.errors import GitWhisperError
from gitwhisper.indexer.embedder import Embedder
from gitwhisper.indexer.fetcher import RepositoryFetcher, SourceFile
from gitwhisper.indexer.summarizer import Summarizer
from gitwhisper.storage.sqlite_store import SqliteStore
from gitwhisper.storage.vector_store import VectorStore

logger = logging.getLogger(__name__)


@dataclass
class _Processed:
    path: str
    summary: str
    vector: list[float]
    error: str | None = None


def _process(file: SourceFile, summarizer: Summarizer, embedder: Embedder) -> _Processed:
    summary = summarizer.summarize_code(file.path, file.content)
    try:
        vector = embedder.embed(summary, strict=True)
    except GitWhisperError as e:
        return _Processed(file.path, summary, [], error=f"{type(e).__name__}: {e}")
    return _Processed(file.path, summary, vector)


def index_project(
    store: SqliteStore,
    vector_store: VectorStore,
    project_id: int,
    repo_url: str,
    token: str | None = None,
    branch: str | None = None,
    fetcher: RepositoryFetcher | None = None,
    summarizer: Summarizer | None = None,
    embedder: Embedder | None = None,
    max_workers: int | None = None,
    on_progress: Callable[[dict], None] | None = None,
) -> dict:
    """Fetch, summarize, embed and persist every file of a repository.

    Summaries and embeddings run on a thread pool; persistence happens on the
    calling thread. A file that fails is recorded as ``failed`` and the rest
    carry on. Listing and credential failures propagate.

    Returns {"files": N, "indexed": N, "unembedded": N, "failed": N}.
    """
    fetcher = fetcher or RepositoryFetcher()
    summarizer = summarizer or Summarizer()
    embedder = embedder or Embedder()
    max_workers = max_workers or config.FETCH_CONCURRENCY
    counts = {"files": 0, "indexed": 0, "unembedded": 0, "failed": 0}
    done = 0

    def _drop_vector(path: str) -> None:
        # A file without a current embedding must not stay searchable
        artifact = store.get_artifact(project_id, path)
        if artifact is not None:
            vector_store.delete_artifact(artifact["id"])

    def _fail(path: str, error: str) -> None:
        store.mark_artifact_failed(project_id, path, error)
        _drop_vector(path)
        counts["failed"] += 1

    def _on_fetch_error(path: str, exc: GitWhisperError) -> None:
        logger.warning("Project %d: fetch failed for %s: %s", project_id, path, exc)
        _fail(path, f"{type(exc).__name__}: {exc}")

    def _persist(future: Future[_Processed], path: str) -> None:
        nonlocal done
        done += 1
        try:
            result = future.result()
        except Exception as e:
            logger.exception("Project %d: processing %s failed", project_id, path)
            _fail(path, f"{type(e).__name__}: {e}")
            return

        store.set_artifact_summary(project_id, path, result.summary)
        if result.error:
            logger.warning("Project %d: embedding failed for %s: %s", project_id, path, result.error)
            _fail(path, result.error)
        elif not result.vector:
            store.mark_artifact_unembedded(project_id, path)
            _drop_vector(path)
            counts["unembedded"] += 1
        else:
            try:
                artifact = store.get_artifact(project_id, path)
                vector_store.upsert(project_id, artifact["id"], path, result.summary, result.vector)
            except Exception as e:
                logger.exception("Project %d: storing the vector for %s failed", project_id, path)
                _fail(path, f"{type(e).__name__}: {e}")
            else:
                store.mark_artifact_indexed(project_id, path, len(result.vector))
                counts["indexed"] += 1

        if on_progress:
            on_progress({"step": "ingest", "current": done, "file": path})
        elif done % 50 == 0:
            print(f"  Ingested {done} files: {path}")

    pending: deque[tuple[str, Future[_Processed]]] = deque()
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        for file in fetcher.iter_files(repo_url, token=token, branch=branch, on_error=_on_fetch_error):
            store.upsert_artifact_content(project_id, file.path, file.content)
            pending.append((file.path, pool.submit(_process, file, summarizer, embedder)))
            counts["files"] += 1
            # Bound the number of files held in memory
            while len(pending) > max_workers * 2:
                path, future = pending.popleft()
                _persist(future, path)
        while pending:
            path, future = pending.popleft()
            _persist(future, path)

    logger.info(
        "Project %d ingested: %d files, %d indexed, %d unembedded, %d failed",
        project_id, counts["files"], counts["indexed"], counts["unembedded"], counts["failed"],
    )
    return counts
