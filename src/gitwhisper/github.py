"""GitHub REST client for repository trees, file contents, commits and diffs."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from urllib.parse import quote

import httpx

from gitwhisper import config
from gitwhisper.errors import AuthError, RateLimitError, TransientError, ValidationError

logger = logging.getLogger(__name__)

_URL_RE = re.compile(
    r"^(?:https?://(?:www\.)?github\.com/|git@github\.com:)?"
    r"(?P<owner>[A-Za-z0-9_.-]+)/(?P<repo>[A-Za-z0-9_.-]+?)(?:\.git)?/?$"
)


@dataclass
class TreeEntry:
    path: str
    size: int


@dataclass
class CommitInfo:
    commit_hash: str
    message: str
    author: str
    author_avatar_url: str
    committed_at: str


def parse_repo_url(url: str) -> tuple[str, str]:
    """Split a GitHub URL (or ``owner/repo``) into ``(owner, repo)``.

    Raises ValidationError if the URL is not a GitHub repository reference.
    """
    match = _URL_RE.match(url.strip())
    if not match:
        raise ValidationError(f"Not a GitHub repository URL: {url!r}")
    return match.group("owner"), match.group("repo")


class GitHubClient:
    """Thin synchronous wrapper around the GitHub REST API.

    HTTP failures are translated into the domain error taxonomy so callers
    (and the job queue) can tell terminal from retryable faults.
    """

    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "gitwhisper",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._has_token = bool(token)
        self._client = httpx.Client(
            base_url=base_url or config.GITHUB_API_URL,
            headers=headers,
            timeout=timeout if timeout is not None else config.STAGE_TIMEOUT_SECS,
            transport=transport,
        )

    def __enter__(self) -> GitHubClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    # ── Requests ──

    def _get(
        self, path: str, params: dict | None = None, accept: str | None = None,
    ) -> httpx.Response:
        headers = {"Accept": accept} if accept else None
        try:
            resp = self._client.get(path, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise TransientError(f"GitHub request timed out: GET {path}") from e
        except httpx.TransportError as e:
            raise TransientError(f"GitHub unreachable: GET {path}: {e}") from e
        self._raise_for_status(resp, path)
        return resp

    def _raise_for_status(self, resp: httpx.Response, path: str) -> None:
        if resp.is_success:
            return
        status = resp.status_code
        if status == 429 or (
            status == 403 and resp.headers.get("x-ratelimit-remaining") == "0"
        ):
            raise RateLimitError(f"GitHub rate limit hit: GET {path}")
        if status == 401:
            raise AuthError("GitHub rejected the credential")
        if status == 403:
            raise AuthError(f"GitHub denied access: GET {path}")
        if status == 404:
            if not self._has_token:
                # Private repositories answer 404 to anonymous callers
                raise AuthError(
                    f"GitHub returned 404 for {path}; private repositories need a credential"
                )
            raise ValidationError(f"GitHub resource not found: {path}")
        if status >= 500:
            raise TransientError(f"GitHub server error {status}: GET {path}")
        raise ValidationError(f"GitHub returned {status}: GET {path}")

    # ── Repository content ──

    def default_branch(self, owner: str, repo: str) -> str:
        """Return the repository's default branch name."""
        data = self._get(f"/repos/{owner}/{repo}").json()
        return data.get("default_branch") or "main"

    def list_tree(self, owner: str, repo: str, branch: str) -> list[TreeEntry]:
        """Return every blob in the branch's tree, recursively."""
        data = self._get(
            f"/repos/{owner}/{repo}/git/trees/{quote(branch, safe='')}",
            params={"recursive": "1"},
        ).json()
        if data.get("truncated"):
            logger.warning("Tree listing for %s/%s@%s was truncated by GitHub", owner, repo, branch)
        return [
            TreeEntry(path=item["path"], size=int(item.get("size") or 0))
            for item in data.get("tree", [])
            if item.get("type") == "blob"
        ]

    def get_file_bytes(self, owner: str, repo: str, path: str, ref: str) -> bytes:
        """Download a single file's raw bytes at ``ref``."""
        resp = self._get(
            f"/repos/{owner}/{repo}/contents/{quote(path)}",
            params={"ref": ref},
            accept="application/vnd.github.raw+json",
        )
        return resp.content

    # ── Commits ──

    def list_commits(
        self, owner: str, repo: str, branch: str | None = None, per_page: int = 10,
    ) -> list[CommitInfo]:
        """List the most recent commits, newest first."""
        params: dict[str, str | int] = {"per_page": per_page}
        if branch:
            params["sha"] = branch
        data = self._get(f"/repos/{owner}/{repo}/commits", params=params).json()
        commits = [
            CommitInfo(
                commit_hash=item["sha"],
                message=(item.get("commit") or {}).get("message") or "",
                author=((item.get("commit") or {}).get("author") or {}).get("name") or "",
                author_avatar_url=(item.get("author") or {}).get("avatar_url") or "",
                committed_at=((item.get("commit") or {}).get("author") or {}).get("date") or "",
            )
            for item in data
        ]
        # ISO-8601 UTC timestamps sort lexicographically
        commits.sort(key=lambda c: c.committed_at, reverse=True)
        return commits

    def get_commit_diff(self, owner: str, repo: str, commit_hash: str) -> str:
        """Return the unified diff for a single commit."""
        resp = self._get(
            f"/repos/{owner}/{repo}/commits/{commit_hash}",
            accept="application/vnd.github.v3.diff",
        )
        return resp.text
