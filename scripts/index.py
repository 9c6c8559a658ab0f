#!/usr/bin/env python3
"""CLI: Ingest a GitHub repository synchronously, sync its commits, or ask it a question."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

# Ensure the package is importable when running as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from gitwhisper import config
from gitwhisper.errors import GitWhisperError
from gitwhisper.services import Services


def _cmd_ingest(services: Services, args: argparse.Namespace) -> int:
    store = services.open_store()
    try:
        print(f"Ingesting {args.repo_url}" + (f" (branch {args.branch})" if args.branch else ""))
        start = time.time()
        result = services.projects.create_project(
            store, args.name or args.repo_url, args.repo_url, args.user,
            token=args.token or None, branch=args.branch, sync=True,
        )
        ingest = result["ingest"]
        print(f"\nProject {result['project']['id']} ingested in {time.time() - start:.1f}s")
        print(f"  Files:       {ingest['files']}")
        print(f"  Indexed:     {ingest['indexed']}")
        print(f"  Unembedded:  {ingest['unembedded']}")
        print(f"  Failed:      {ingest['failed']}")
        print(f"  Commits:     {ingest['commits_added']}")
        print(f"  Database: {config.SQLITE_PATH}")
        print(f"  LanceDB:  {config.LANCEDB_PATH}")
    finally:
        store.close()
    return 0


def _cmd_commits(services: Services, args: argparse.Namespace) -> int:
    store = services.open_store()
    try:
        result = services.projects.refresh_commits(store, args.project_id)
        print(f"{result.listed} commits listed, {result.added} new")
        for commit in store.list_commits(args.project_id)[: args.limit]:
            print(f"\n{commit['commit_hash'][:12]}  {commit['committed_at']}  {commit['author']}")
            print(f"  {commit['message'].splitlines()[0] if commit['message'] else ''}")
            if commit["summary"]:
                for line in commit["summary"].splitlines():
                    print(f"    {line}")
    finally:
        store.close()
    return 0


def _cmd_ask(services: Services, args: argparse.Namespace) -> int:
    store = services.open_store()
    try:
        failed = False
        for event in services.query_engine.ask(store, args.project_id, args.question):
            if event.type == "references":
                if event.references:
                    print("Files:", ", ".join(r["path"] for r in event.references))
                else:
                    print("Files: (none above the similarity threshold)")
                print()
            elif event.type == "chunk":
                print(event.text, end="", flush=True)
            elif event.type == "error":
                print(f"\nError: {event.text}", file=sys.stderr)
                failed = True
        print()
    finally:
        store.close()
    return 1 if failed else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Ingest and query GitHub repositories")
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Create a project and ingest it inline")
    ingest.add_argument("repo_url", help="GitHub URL or owner/repo")
    ingest.add_argument("--name", default=None, help="Project name (default: the URL)")
    ingest.add_argument("--branch", default=None, help="Branch (default: the repository default)")
    ingest.add_argument("--token", default=None, help="GitHub token (default: GITHUB_TOKEN)")
    ingest.add_argument("--user", default="cli", help="User id recorded as the project member")

    commits = sub.add_parser("commits", help="Sync and print a project's recent commits")
    commits.add_argument("project_id", type=int)
    commits.add_argument("--limit", type=int, default=config.COMMIT_WINDOW)

    ask = sub.add_parser("ask", help="Ask a question about a project")
    ask.add_argument("project_id", type=int)
    ask.add_argument("question")

    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        services = Services.from_config()
    except RuntimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    handlers = {"ingest": _cmd_ingest, "commits": _cmd_commits, "ask": _cmd_ask}
    try:
        code = handlers[args.command](services, args)
    except GitWhisperError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
