"""Pull filtered file contents out of a GitHub repository."""

from __future__ import annotations

import fnmatch
import logging
from collections import deque
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

from gitwhisper import config
from gitwhisper.errors import AuthError, GitWhisperError
from gitwhisper.github import GitHubClient, parse_repo_url

logger = logging.getLogger(__name__)


@dataclass
class SourceFile:
    path: str
    content: str


def is_ignored(path: str, patterns: list[str]) -> bool:
    """Return True if ``path`` matches any ignore pattern.

    Matching is case-sensitive. Patterns containing ``*`` are globs against the
    basename (``*.lock``, ``.env.*``). Other patterns match a leading path
    prefix or any run of whole path segments, so ``dist`` excludes
    ``dist/app.js`` and ``web/dist/app.js`` but not ``distance.py``.
    """
    basename = path.rsplit("/", 1)[-1]
    bounded = f"/{path}/"
    for pattern in patterns:
        if "*" in pattern:
            if fnmatch.fnmatchcase(basename, pattern):
                return True
            continue
        stem = pattern.strip("/")
        if not stem:
            continue
        if path == stem or path.startswith(stem + "/") or f"/{stem}/" in bounded:
            return True
    return False


def _decode(data: bytes) -> str | None:
    """Decode file bytes as text, or None for binary content."""
    if b"\x00" in data:
        return None
    return data.decode("utf-8", errors="replace")


class RepositoryFetcher:
    """Yields (path, content) pairs for a repository, filtered before transfer.

    Content downloads run on a bounded thread pool so the host's rate limits
    are respected; results are yielded in tree order.
    """

    def __init__(
        self,
        client_factory: Callable[..., GitHubClient] = GitHubClient,
        ignore_patterns: list[str] | None = None,
        concurrency: int | None = None,
        max_file_bytes: int | None = None,
    ) -> None:
        self._client_factory = client_factory
        self._patterns = ignore_patterns if ignore_patterns is not None else config.IGNORE_PATTERNS
        self._concurrency = concurrency or config.FETCH_CONCURRENCY
        self._max_file_bytes = max_file_bytes or config.MAX_FILE_BYTES

    def list_paths(self, client: GitHubClient, owner: str, repo: str, branch: str) -> list[str]:
        """List the repository paths that survive ignore and size filtering."""
        entries = client.list_tree(owner, repo, branch)
        kept = []
        for entry in entries:
            if is_ignored(entry.path, self._patterns):
                continue
            if entry.size > self._max_file_bytes:
                logger.debug("Skipping %s (%d bytes > %d)", entry.path, entry.size, self._max_file_bytes)
                continue
            kept.append(entry.path)
        logger.info(
            "%s/%s@%s: %d files listed, %d after filtering",
            owner, repo, branch, len(entries), len(kept),
        )
        return kept

    def iter_files(
        self,
        repo_url: str,
        token: str | None = None,
        branch: str | None = None,
        on_error: Callable[[str, GitWhisperError], None] | None = None,
    ) -> Iterator[SourceFile]:
        """Lazily yield the repository's files.

        Listing failures propagate. A single file's download failure is passed
        to ``on_error`` (or logged) and iteration continues, except AuthError,
        which always propagates.
        """
        owner, repo = parse_repo_url(repo_url)
        client = self._client_factory(token=token)
        try:
            branch = branch or client.default_branch(owner, repo)
            paths = self.list_paths(client, owner, repo, branch)
            pending: deque[tuple[str, Future[bytes]]] = deque()
            remaining = iter(paths)

            with ThreadPoolExecutor(max_workers=self._concurrency) as pool:

                def _submit_next() -> None:
                    path = next(remaining, None)
                    if path is not None:
                        pending.append((path, pool.submit(client.get_file_bytes, owner, repo, path, branch)))

                for _ in range(self._concurrency * 2):
                    _submit_next()

                while pending:
                    path, future = pending.popleft()
                    _submit_next()
                    try:
                        data = future.result()
                    except AuthError:
                        for _, f in pending:
                            f.cancel()
                        raise
                    except GitWhisperError as e:
                        if on_error:
                            on_error(path, e)
                        else:
                            logger.warning("Failed to fetch %s: %s", path, e)
                        continue

                    content = _decode(data)
                    if content is None:
                        logger.debug("Skipping binary file %s", path)
                        continue
                    yield SourceFile(path=path, content=content)
        finally:
            client.close()
