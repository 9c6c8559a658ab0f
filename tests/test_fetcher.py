"""Tests for the GitHub client and the repository fetcher."""

from __future__ import annotations

import httpx
import pytest

from gitwhisper.config import DEFAULT_IGNORE_PATTERNS
from gitwhisper.errors import AuthError, RateLimitError, TransientError, ValidationError
from gitwhisper.github import GitHubClient, parse_repo_url
from gitwhisper.indexer.fetcher import RepositoryFetcher, is_ignored

from tests.helpers import API_URL, OWNER, REPO, REPO_URL, commit_json, github_factory, github_transport


# ── URL parsing ──


class TestParseRepoUrl:
    @pytest.mark.parametrize(
        "url",
        [
            "https://github.com/acme/widgets",
            "https://github.com/acme/widgets.git",
            "https://github.com/acme/widgets/",
            "git@github.com:acme/widgets.git",
            "acme/widgets",
        ],
    )
    def test_accepted_forms(self, url: str) -> None:
        assert parse_repo_url(url) == ("acme", "widgets")

    def test_rejects_other_hosts(self) -> None:
        with pytest.raises(ValidationError):
            parse_repo_url("https://gitlab.com/acme/widgets")


# ── Ignore patterns ──


class TestIsIgnored:
    @pytest.mark.parametrize(
        "path",
        [
            "node_modules/react/index.js",
            "web/node_modules/x.js",
            "dist/app.js",
            "package-lock.json",
            "frontend/yarn.lock",
            "Gemfile.lock",
            ".env",
            "config/.env.production",
        ],
    )
    def test_default_patterns_exclude(self, path: str) -> None:
        assert is_ignored(path, DEFAULT_IGNORE_PATTERNS)

    @pytest.mark.parametrize(
        "path",
        ["src/distance.py", "src/builder.py", "README.md", "tests/test_app.py", "envelope.py"],
    )
    def test_default_patterns_keep(self, path: str) -> None:
        assert not is_ignored(path, DEFAULT_IGNORE_PATTERNS)

    def test_case_sensitive(self) -> None:
        assert not is_ignored("Dist/app.js", ["dist"])


# ── GitHub client ──


def _client(handler, token: str | None = "tok") -> GitHubClient:
    return GitHubClient(token=token, base_url=API_URL, transport=httpx.MockTransport(handler))


class TestGitHubClientErrors:
    def test_rate_limited(self) -> None:
        client = _client(lambda r: httpx.Response(403, headers={"x-ratelimit-remaining": "0"}))
        with pytest.raises(RateLimitError):
            client.default_branch(OWNER, REPO)

    def test_429(self) -> None:
        client = _client(lambda r: httpx.Response(429))
        with pytest.raises(RateLimitError):
            client.default_branch(OWNER, REPO)

    def test_bad_credential(self) -> None:
        client = _client(lambda r: httpx.Response(401))
        with pytest.raises(AuthError):
            client.default_branch(OWNER, REPO)

    def test_private_repo_without_token(self) -> None:
        client = _client(lambda r: httpx.Response(404), token=None)
        with pytest.raises(AuthError):
            client.default_branch(OWNER, REPO)

    def test_missing_repo_with_token(self) -> None:
        client = _client(lambda r: httpx.Response(404))
        with pytest.raises(ValidationError):
            client.default_branch(OWNER, REPO)

    def test_server_error(self) -> None:
        client = _client(lambda r: httpx.Response(503))
        with pytest.raises(TransientError):
            client.default_branch(OWNER, REPO)

    def test_timeout(self) -> None:
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(TransientError):
            _client(handler).default_branch(OWNER, REPO)

    def test_sends_bearer_token(self) -> None:
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"default_branch": "trunk"})

        assert _client(handler, token="ghp_x").default_branch(OWNER, REPO) == "trunk"
        assert seen["auth"] == "Bearer ghp_x"


class TestGitHubClientCommits:
    def test_list_commits_newest_first(self) -> None:
        transport = github_transport(commits=[
            commit_json("old", date="2024-01-01T00:00:00Z"),
            commit_json("new", date="2024-02-01T00:00:00Z"),
        ])
        client = GitHubClient(base_url=API_URL, transport=transport)
        commits = client.list_commits(OWNER, REPO, per_page=10)
        assert [c.commit_hash for c in commits] == ["new", "old"]
        assert commits[0].author == "Dev"
        assert commits[0].author_avatar_url == "https://avatars.test/new"

    def test_diff_requested_as_diff(self) -> None:
        seen = {}

        def handler(request):
            seen["accept"] = request.headers.get("accept")
            return httpx.Response(200, text="diff --git a/x b/x")

        assert _client(handler).get_commit_diff(OWNER, REPO, "abc") == "diff --git a/x b/x"
        assert seen["accept"] == "application/vnd.github.v3.diff"


# ── Fetcher ──


class TestRepositoryFetcher:
    def test_filters_before_transfer(self) -> None:
        requested = []
        inner = github_transport(files={
            "src/app.py": "print('hi')",
            "node_modules/lib/index.js": "module.exports = 1",
            "yarn.lock": "lock",
            ".env": "SECRET=1",
            "README.md": "# Widgets",
        })

        def handler(request):
            requested.append(request.url.path)
            return inner.handle_request(request)

        fetcher = RepositoryFetcher(client_factory=github_factory(httpx.MockTransport(handler)))
        files = list(fetcher.iter_files(REPO_URL))

        assert [f.path for f in files] == ["src/app.py", "README.md"]
        assert files[0].content == "print('hi')"
        assert not any("node_modules" in p or ".env" in p or "yarn.lock" in p for p in requested)

    def test_skips_binary_and_oversized(self) -> None:
        transport = github_transport(
            files={"logo.png": b"\x89PNG\x00\x00", "big.json": "{}", "ok.py": "x = 1"},
            sizes={"big.json": 10_000_000},
        )
        fetcher = RepositoryFetcher(client_factory=github_factory(transport), max_file_bytes=1000)
        assert [f.path for f in fetcher.iter_files(REPO_URL)] == ["ok.py"]

    def test_file_failure_reported_and_iteration_continues(self) -> None:
        transport = github_transport(
            files={"a.py": "a", "b.py": "b", "c.py": "c"}, failing_paths={"b.py"}
        )
        errors = []
        fetcher = RepositoryFetcher(client_factory=github_factory(transport), concurrency=2)
        files = list(fetcher.iter_files(REPO_URL, on_error=lambda p, e: errors.append((p, e))))

        assert [f.path for f in files] == ["a.py", "c.py"]
        assert [p for p, _ in errors] == ["b.py"]
        assert isinstance(errors[0][1], TransientError)

    def test_private_repo_without_credential(self) -> None:
        transport = github_transport(files={"a.py": "a"}, private=True)
        fetcher = RepositoryFetcher(client_factory=github_factory(transport))
        with pytest.raises(AuthError):
            list(fetcher.iter_files(REPO_URL))

    def test_private_repo_with_credential(self) -> None:
        transport = github_transport(files={"a.py": "a"}, private=True)
        fetcher = RepositoryFetcher(client_factory=github_factory(transport))
        assert [f.path for f in fetcher.iter_files(REPO_URL, token="ghp_x")] == ["a.py"]

    def test_is_lazy(self) -> None:
        transport = github_transport(files={"a.py": "a"})
        fetcher = RepositoryFetcher(client_factory=github_factory(transport))
        it = fetcher.iter_files(REPO_URL)
        assert next(it).path == "a.py"
        with pytest.raises(StopIteration):
            next(it)
