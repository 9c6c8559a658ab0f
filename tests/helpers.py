"""Shared test helpers: a fake clock, a fake GitHub API and mock providers."""

from __future__ import annotations

import math
from unittest.mock import MagicMock

import httpx

from gitwhisper.github import GitHubClient

DIMS = 8
OWNER, REPO = "acme", "widgets"
REPO_URL = f"https://github.com/{OWNER}/{REPO}"
API_URL = "https://api.github.test"


class FakeClock:
    """Injectable clock: time only moves when a test advances it."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, secs: float) -> None:
        self.now += secs


def unit(*components: float) -> list[float]:
    """A DIMS-long vector with the given leading components."""
    vec = list(components) + [0.0] * (DIMS - len(components))
    return vec[:DIMS]


def with_similarity(s: float) -> list[float]:
    """A unit vector whose cosine similarity to unit(1.0) is exactly ``s``."""
    return unit(s, math.sqrt(1.0 - s * s))


def commit_json(sha: str, message: str = "msg", date: str = "2024-01-01T00:00:00Z") -> dict:
    return {
        "sha": sha,
        "commit": {"message": message, "author": {"name": "Dev", "date": date}},
        "author": {"avatar_url": f"https://avatars.test/{sha}"},
    }


def github_transport(
    files: dict[str, str | bytes] | None = None,
    commits: list[dict] | None = None,
    diffs: dict[str, str] | None = None,
    private: bool = False,
    failing_paths: set[str] | None = None,
    sizes: dict[str, int] | None = None,
) -> httpx.MockTransport:
    """Serve a tiny fake of the GitHub REST endpoints the client uses."""
    files = files or {}
    commits = commits or []
    diffs = diffs or {}
    failing_paths = failing_paths or set()
    sizes = sizes or {}
    prefix = f"/repos/{OWNER}/{REPO}"

    def handler(request: httpx.Request) -> httpx.Response:
        if private and "authorization" not in request.headers:
            return httpx.Response(404, json={"message": "Not Found"})
        path = request.url.path
        if path == prefix:
            return httpx.Response(200, json={"default_branch": "main"})
        if path.startswith(prefix + "/git/trees/"):
            tree = [
                {"path": p, "type": "blob", "size": sizes.get(p, len(c))}
                for p, c in files.items()
            ]
            tree.append({"path": "src", "type": "tree"})
            return httpx.Response(200, json={"tree": tree, "truncated": False})
        if path.startswith(prefix + "/contents/"):
            file_path = path[len(prefix + "/contents/"):]
            if file_path in failing_paths:
                return httpx.Response(502)
            content = files.get(file_path)
            if content is None:
                return httpx.Response(404)
            data = content if isinstance(content, bytes) else content.encode()
            return httpx.Response(200, content=data)
        if path == prefix + "/commits":
            per_page = int(request.url.params.get("per_page", "30"))
            return httpx.Response(200, json=commits[:per_page])
        if path.startswith(prefix + "/commits/"):
            sha = path.rsplit("/", 1)[-1]
            if sha not in diffs:
                return httpx.Response(500)
            return httpx.Response(200, text=diffs[sha])
        return httpx.Response(404)

    return httpx.MockTransport(handler)


def github_factory(transport: httpx.MockTransport):
    """A client_factory for the fetcher and commit synchronizer."""

    def _factory(token: str | None = None) -> GitHubClient:
        return GitHubClient(token=token, base_url=API_URL, transport=transport)

    return _factory


def make_summary_provider() -> MagicMock:
    """Generation provider whose summary names the file it was asked about."""

    def _generate(prompt: str, system: str | None = None) -> str:
        if prompt.startswith("File: "):
            return f"summary of {prompt.split(chr(10), 1)[0][len('File: '):]}"
        return "- Changed things"

    provider = MagicMock()
    provider.generate = MagicMock(side_effect=_generate)
    provider.generate_stream = MagicMock(side_effect=lambda prompt, system=None: iter(["An ", "answer."]))
    return provider
