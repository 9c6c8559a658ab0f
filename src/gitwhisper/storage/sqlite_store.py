"""SQLite storage for projects, artifacts, commits, meetings, questions and jobs."""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from gitwhisper.errors import AlreadySavedError

ACTIVE_JOB_STATES = ("queued", "running", "retrying")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SqliteStore:
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        # Connections are handed between FastAPI threadpool threads
        self._conn = sqlite3.connect(str(db_path), timeout=30, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._tx_depth = 0

    def init_db(self) -> None:
        """Create all tables and indexes."""
        cur = self._conn.cursor()
        cur.executescript(
            """
            CREATE TABLE IF NOT EXISTS credentials (
                ref TEXT PRIMARY KEY,
                token TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS projects (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                repo_url TEXT NOT NULL,
                branch TEXT,
                credential_ref TEXT,
                created_at TEXT NOT NULL,
                deleted_at TEXT,
                FOREIGN KEY (credential_ref) REFERENCES credentials(ref)
            );

            CREATE TABLE IF NOT EXISTS project_members (
                id INTEGER PRIMARY KEY,
                project_id INTEGER NOT NULL,
                user_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE(project_id, user_id),
                FOREIGN KEY (project_id) REFERENCES projects(id)
            );
            CREATE INDEX IF NOT EXISTS idx_members_user ON project_members(user_id);

            CREATE TABLE IF NOT EXISTS source_artifacts (
                id INTEGER PRIMARY KEY,
                project_id INTEGER NOT NULL,
                path TEXT NOT NULL,
                raw_content TEXT NOT NULL DEFAULT '',
                summary TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'fetched',
                error TEXT,
                embedding_dims INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(project_id, path),
                FOREIGN KEY (project_id) REFERENCES projects(id)
            );
            CREATE INDEX IF NOT EXISTS idx_artifacts_project ON source_artifacts(project_id);

            CREATE TABLE IF NOT EXISTS commits (
                id INTEGER PRIMARY KEY,
                project_id INTEGER NOT NULL,
                commit_hash TEXT NOT NULL,
                message TEXT NOT NULL DEFAULT '',
                author TEXT NOT NULL DEFAULT '',
                author_avatar_url TEXT NOT NULL DEFAULT '',
                committed_at TEXT NOT NULL DEFAULT '',
                summary TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                UNIQUE(project_id, commit_hash),
                FOREIGN KEY (project_id) REFERENCES projects(id)
            );
            CREATE INDEX IF NOT EXISTS idx_commits_project ON commits(project_id);

            CREATE TABLE IF NOT EXISTS meetings (
                id INTEGER PRIMARY KEY,
                project_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                audio_url TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'processing',
                error TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (project_id) REFERENCES projects(id)
            );
            CREATE INDEX IF NOT EXISTS idx_meetings_project ON meetings(project_id);

            CREATE TABLE IF NOT EXISTS meeting_issues (
                id INTEGER PRIMARY KEY,
                project_id INTEGER NOT NULL,
                meeting_id INTEGER NOT NULL,
                start_ms INTEGER NOT NULL,
                end_ms INTEGER NOT NULL,
                headline TEXT NOT NULL DEFAULT '',
                summary TEXT NOT NULL DEFAULT '',
                gist TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                FOREIGN KEY (project_id) REFERENCES projects(id),
                FOREIGN KEY (meeting_id) REFERENCES meetings(id)
            );
            CREATE INDEX IF NOT EXISTS idx_issues_meeting ON meeting_issues(meeting_id);

            CREATE TABLE IF NOT EXISTS questions (
                id INTEGER PRIMARY KEY,
                project_id INTEGER NOT NULL,
                user_id TEXT NOT NULL,
                question TEXT NOT NULL,
                answer TEXT NOT NULL,
                file_references TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL,
                UNIQUE(project_id, user_id, question),
                FOREIGN KEY (project_id) REFERENCES projects(id)
            );

            CREATE TABLE IF NOT EXISTS pipeline_runs (
                id INTEGER PRIMARY KEY,
                project_id INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'running',
                files_total INTEGER,
                commits_added INTEGER,
                created_at REAL NOT NULL,
                completed_at REAL,
                notified_at REAL
            );
            CREATE INDEX IF NOT EXISTS idx_runs_project ON pipeline_runs(project_id);

            CREATE TABLE IF NOT EXISTS jobs (
                id INTEGER PRIMARY KEY,
                run_id INTEGER,
                stage TEXT NOT NULL,
                payload TEXT NOT NULL,
                state TEXT NOT NULL DEFAULT 'queued',
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL,
                base_delay REAL NOT NULL,
                available_at REAL NOT NULL,
                last_error TEXT,
                created_at REAL NOT NULL,
                started_at REAL,
                finished_at REAL
            );
            CREATE INDEX IF NOT EXISTS idx_jobs_due ON jobs(state, available_at);
            CREATE INDEX IF NOT EXISTS idx_jobs_run ON jobs(run_id);

            CREATE TABLE IF NOT EXISTS job_attempts (
                id INTEGER PRIMARY KEY,
                job_id INTEGER NOT NULL,
                attempt INTEGER NOT NULL,
                error TEXT NOT NULL,
                retry_delay REAL,
                created_at REAL NOT NULL,
                FOREIGN KEY (job_id) REFERENCES jobs(id)
            );
            CREATE INDEX IF NOT EXISTS idx_job_attempts_job ON job_attempts(job_id);
            """
        )
        self._conn.commit()

        # Databases created before per-run commit counts
        self._migrate_add_column("pipeline_runs", "commits_added", "INTEGER")

    def _migrate_add_column(self, table: str, column: str, col_type: str) -> None:
        """Add a column to a table if it doesn't exist."""
        cur = self._conn.execute(f"PRAGMA table_info({table})")
        if column not in {row[1] for row in cur.fetchall()}:
            self._conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")
            self._conn.commit()

    # ── Transactions ──

    @contextmanager
    def transaction(self) -> Iterator[SqliteStore]:
        """Group several writes into one atomic commit. Nests."""
        self._tx_depth += 1
        try:
            yield self
        except BaseException:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._conn.rollback()
            raise
        self._tx_depth -= 1
        if self._tx_depth == 0:
            self._conn.commit()

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self._conn.commit()

    # ── Credentials ──

    def put_credential(self, token: str) -> str:
        """Store a host credential and return its opaque reference."""
        ref = uuid.uuid4().hex
        self._conn.execute(
            "INSERT INTO credentials (ref, token, created_at) VALUES (?, ?, ?)",
            (ref, token, _now()),
        )
        self._commit()
        return ref

    def get_credential(self, ref: str | None) -> str | None:
        if not ref:
            return None
        cur = self._conn.execute("SELECT token FROM credentials WHERE ref = ?", (ref,))
        row = cur.fetchone()
        return row[0] if row else None

    # ── Projects ──

    def insert_project(
        self, name: str, repo_url: str, branch: str | None = None,
        credential_ref: str | None = None,
    ) -> int:
        """Insert a new project and return its id."""
        cur = self._conn.execute(
            """INSERT INTO projects (name, repo_url, branch, credential_ref, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (name, repo_url, branch, credential_ref, _now()),
        )
        self._commit()
        return cur.lastrowid  # type: ignore[return-value]

    def add_member(self, project_id: int, user_id: str) -> None:
        self._conn.execute(
            """INSERT OR IGNORE INTO project_members (project_id, user_id, created_at)
               VALUES (?, ?, ?)""",
            (project_id, user_id, _now()),
        )
        self._commit()

    def is_member(self, project_id: int, user_id: str) -> bool:
        cur = self._conn.execute(
            "SELECT 1 FROM project_members WHERE project_id = ? AND user_id = ?",
            (project_id, user_id),
        )
        return cur.fetchone() is not None

    def list_members(self, project_id: int) -> list[dict]:
        cur = self._conn.execute(
            "SELECT user_id, created_at FROM project_members WHERE project_id = ? ORDER BY id",
            (project_id,),
        )
        return [dict(row) for row in cur.fetchall()]

    def get_project(self, project_id: int, include_archived: bool = False) -> dict | None:
        """Get a project by id. Archived projects are hidden unless asked for."""
        sql = "SELECT * FROM projects WHERE id = ?"
        if not include_archived:
            sql += " AND deleted_at IS NULL"
        row = self._conn.execute(sql, (project_id,)).fetchone()
        return dict(row) if row else None

    def list_projects(self, user_id: str | None = None) -> list[dict]:
        """List active projects, optionally only those the user belongs to."""
        if user_id is None:
            cur = self._conn.execute(
                "SELECT * FROM projects WHERE deleted_at IS NULL ORDER BY id"
            )
        else:
            cur = self._conn.execute(
                """SELECT p.* FROM projects p
                   JOIN project_members m ON m.project_id = p.id
                   WHERE m.user_id = ? AND p.deleted_at IS NULL
                   ORDER BY p.id""",
                (user_id,),
            )
        return [dict(row) for row in cur.fetchall()]

    def archive_project(self, project_id: int) -> None:
        """Soft-delete a project."""
        self._conn.execute(
            "UPDATE projects SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
            (_now(), project_id),
        )
        self._commit()

    def delete_project(self, project_id: int) -> None:
        """Hard-delete a project and everything it owns, atomically.

        Job rows only reference the project weakly and are left alone.
        """
        with self.transaction():
            row = self._conn.execute(
                "SELECT credential_ref FROM projects WHERE id = ?", (project_id,)
            ).fetchone()
            for table in [
                "meeting_issues", "meetings", "questions", "commits",
                "source_artifacts", "project_members", "pipeline_runs",
            ]:
                self._conn.execute(
                    f"DELETE FROM {table} WHERE project_id = ?", (project_id,)  # noqa: S608
                )
            self._conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            if row and row["credential_ref"]:
                self._conn.execute(
                    "DELETE FROM credentials WHERE ref = ?", (row["credential_ref"],)
                )

    # ── Source artifacts ──

    def upsert_artifact_content(self, project_id: int, path: str, content: str) -> int:
        """Insert or refresh a file's raw content, keyed by (project_id, path).

        Re-ingestion keeps the row id, which the vector table uses as its key.
        """
        now = _now()
        self._conn.execute(
            """INSERT INTO source_artifacts
               (project_id, path, raw_content, status, created_at, updated_at)
               VALUES (?, ?, ?, 'fetched', ?, ?)
               ON CONFLICT(project_id, path) DO UPDATE SET
                   raw_content = excluded.raw_content,
                   status = 'fetched',
                   error = NULL,
                   updated_at = excluded.updated_at""",
            (project_id, path, content, now, now),
        )
        self._commit()
        row = self._conn.execute(
            "SELECT id FROM source_artifacts WHERE project_id = ? AND path = ?",
            (project_id, path),
        ).fetchone()
        return row[0]

    def set_artifact_summary(self, project_id: int, path: str, summary: str) -> None:
        self._conn.execute(
            """UPDATE source_artifacts SET summary = ?, status = 'summarized', updated_at = ?
               WHERE project_id = ? AND path = ?""",
            (summary, _now(), project_id, path),
        )
        self._commit()

    def mark_artifact_indexed(self, project_id: int, path: str, dims: int) -> None:
        self._conn.execute(
            """UPDATE source_artifacts
               SET status = 'indexed', embedding_dims = ?, error = NULL, updated_at = ?
               WHERE project_id = ? AND path = ?""",
            (dims, _now(), project_id, path),
        )
        self._commit()

    def mark_artifact_unembedded(self, project_id: int, path: str) -> None:
        """Record that a file has no vector; it stays available for path lookup."""
        self._conn.execute(
            """UPDATE source_artifacts
               SET status = 'unembedded', embedding_dims = NULL, updated_at = ?
               WHERE project_id = ? AND path = ?""",
            (_now(), project_id, path),
        )
        self._commit()

    def mark_artifact_failed(self, project_id: int, path: str, error: str) -> None:
        """Record a permanent failure for a file, creating the row if needed."""
        now = _now()
        self._conn.execute(
            """INSERT INTO source_artifacts
               (project_id, path, status, error, created_at, updated_at)
               VALUES (?, ?, 'failed', ?, ?, ?)
               ON CONFLICT(project_id, path) DO UPDATE SET
                   status = 'failed',
                   error = excluded.error,
                   updated_at = excluded.updated_at""",
            (project_id, path, error, now, now),
        )
        self._commit()

    def get_artifact(self, project_id: int, path: str) -> dict | None:
        """Exact-path lookup, regardless of embedding status."""
        row = self._conn.execute(
            "SELECT * FROM source_artifacts WHERE project_id = ? AND path = ?",
            (project_id, path),
        ).fetchone()
        return dict(row) if row else None

    def get_artifacts_by_ids(self, project_id: int, artifact_ids: list[int]) -> dict[int, dict]:
        """Batch lookup searchable artifacts by id, scoped to one project. Returns {id: row}.

        Files marked ``unembedded`` or ``failed`` are left out.
        """
        if not artifact_ids:
            return {}
        placeholders = ",".join("?" for _ in artifact_ids)
        cur = self._conn.execute(
            f"""SELECT * FROM source_artifacts
                WHERE project_id = ? AND id IN ({placeholders})
                  AND status NOT IN ('unembedded', 'failed')""",  # noqa: S608
            [project_id, *artifact_ids],
        )
        return {row["id"]: dict(row) for row in cur.fetchall()}

    def list_artifacts(self, project_id: int, status: str | None = None) -> list[dict]:
        """List a project's artifacts (without raw content) ordered by path."""
        sql = (
            "SELECT id, project_id, path, summary, status, error, embedding_dims, updated_at "
            "FROM source_artifacts WHERE project_id = ?"
        )
        params: list = [project_id]
        if status:
            sql += " AND status = ?"
            params.append(status)
        cur = self._conn.execute(sql + " ORDER BY path", params)
        return [dict(row) for row in cur.fetchall()]

    def count_artifacts(self, project_id: int, status: str | None = None) -> int:
        if status:
            cur = self._conn.execute(
                "SELECT count(*) FROM source_artifacts WHERE project_id = ? AND status = ?",
                (project_id, status),
            )
        else:
            cur = self._conn.execute(
                "SELECT count(*) FROM source_artifacts WHERE project_id = ?", (project_id,)
            )
        return cur.fetchone()[0]

    # ── Commits ──

    def get_commit_hashes(self, project_id: int) -> set[str]:
        """Return the hashes already stored for a project."""
        cur = self._conn.execute(
            "SELECT commit_hash FROM commits WHERE project_id = ?", (project_id,)
        )
        return {row[0] for row in cur.fetchall()}

    def insert_commit(
        self, project_id: int, commit_hash: str, message: str, author: str,
        author_avatar_url: str, committed_at: str, summary: str,
    ) -> bool:
        """Append a commit record. Returns False if it was already stored."""
        cur = self._conn.execute(
            """INSERT OR IGNORE INTO commits
               (project_id, commit_hash, message, author, author_avatar_url,
                committed_at, summary, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (project_id, commit_hash, message, author, author_avatar_url,
             committed_at, summary, _now()),
        )
        self._commit()
        return cur.rowcount == 1

    def list_commits(self, project_id: int) -> list[dict]:
        cur = self._conn.execute(
            "SELECT * FROM commits WHERE project_id = ? ORDER BY committed_at DESC, id DESC",
            (project_id,),
        )
        return [dict(row) for row in cur.fetchall()]

    # ── Meetings ──

    def insert_meeting(self, project_id: int, name: str, audio_url: str) -> int:
        cur = self._conn.execute(
            """INSERT INTO meetings (project_id, name, audio_url, status, created_at)
               VALUES (?, ?, ?, 'processing', ?)""",
            (project_id, name, audio_url, _now()),
        )
        self._commit()
        return cur.lastrowid  # type: ignore[return-value]

    def get_meeting(self, meeting_id: int) -> dict | None:
        row = self._conn.execute("SELECT * FROM meetings WHERE id = ?", (meeting_id,)).fetchone()
        return dict(row) if row else None

    def list_meetings(self, project_id: int) -> list[dict]:
        cur = self._conn.execute(
            "SELECT * FROM meetings WHERE project_id = ? ORDER BY created_at DESC, id DESC",
            (project_id,),
        )
        return [dict(row) for row in cur.fetchall()]

    def update_meeting(self, meeting_id: int, **kwargs: str | None) -> None:
        """Update meeting fields. Pass column=value keyword arguments."""
        if not kwargs:
            return
        set_clause = ", ".join(f"{k} = ?" for k in kwargs)
        values = list(kwargs.values()) + [meeting_id]
        self._conn.execute(
            f"UPDATE meetings SET {set_clause} WHERE id = ?", values  # noqa: S608
        )
        self._commit()

    def delete_meeting(self, meeting_id: int) -> None:
        with self.transaction():
            self._conn.execute("DELETE FROM meeting_issues WHERE meeting_id = ?", (meeting_id,))
            self._conn.execute("DELETE FROM meetings WHERE id = ?", (meeting_id,))

    def insert_issues(self, project_id: int, meeting_id: int, issues: list[dict]) -> int:
        """Bulk insert meeting issues. Each dict: start_ms, end_ms, headline, summary, gist."""
        now = _now()
        self._conn.executemany(
            """INSERT INTO meeting_issues
               (project_id, meeting_id, start_ms, end_ms, headline, summary, gist, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                (project_id, meeting_id, i["start_ms"], i["end_ms"],
                 i.get("headline", ""), i.get("summary", ""), i.get("gist", ""), now)
                for i in issues
            ],
        )
        self._commit()
        return len(issues)

    def delete_issues(self, meeting_id: int) -> None:
        self._conn.execute("DELETE FROM meeting_issues WHERE meeting_id = ?", (meeting_id,))
        self._commit()

    def list_issues(self, meeting_id: int) -> list[dict]:
        cur = self._conn.execute(
            "SELECT * FROM meeting_issues WHERE meeting_id = ? ORDER BY start_ms, id",
            (meeting_id,),
        )
        return [dict(row) for row in cur.fetchall()]

    # ── Saved questions ──

    def insert_question(
        self, project_id: int, user_id: str, question: str, answer: str,
        references_json: str,
    ) -> int:
        """Save an answered question. Raises AlreadySavedError on a duplicate."""
        try:
            cur = self._conn.execute(
                """INSERT INTO questions
                   (project_id, user_id, question, answer, file_references, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (project_id, user_id, question, answer, references_json, _now()),
            )
        except sqlite3.IntegrityError as e:
            if self._tx_depth == 0:
                self._conn.rollback()
            raise AlreadySavedError("Question already saved.") from e
        self._commit()
        return cur.lastrowid  # type: ignore[return-value]

    def _question_row(self, row: sqlite3.Row) -> dict:
        result = dict(row)
        result["file_references"] = json.loads(result["file_references"] or "[]")
        return result

    def get_question(self, question_id: int) -> dict | None:
        row = self._conn.execute("SELECT * FROM questions WHERE id = ?", (question_id,)).fetchone()
        return self._question_row(row) if row else None

    def list_questions(self, project_id: int) -> list[dict]:
        cur = self._conn.execute(
            "SELECT * FROM questions WHERE project_id = ? ORDER BY created_at DESC, id DESC",
            (project_id,),
        )
        return [self._question_row(row) for row in cur.fetchall()]

    # ── Pipeline runs ──

    def insert_run(self, project_id: int, now: float) -> int:
        cur = self._conn.execute(
            "INSERT INTO pipeline_runs (project_id, status, created_at) VALUES (?, 'running', ?)",
            (project_id, now),
        )
        self._commit()
        return cur.lastrowid  # type: ignore[return-value]

    def get_run(self, run_id: int) -> dict | None:
        row = self._conn.execute("SELECT * FROM pipeline_runs WHERE id = ?", (run_id,)).fetchone()
        return dict(row) if row else None

    def list_runs(self, project_id: int) -> list[dict]:
        cur = self._conn.execute(
            "SELECT * FROM pipeline_runs WHERE project_id = ? ORDER BY id DESC", (project_id,)
        )
        return [dict(row) for row in cur.fetchall()]

    def list_running_run_ids(self) -> list[int]:
        cur = self._conn.execute("SELECT id FROM pipeline_runs WHERE status = 'running' ORDER BY id")
        return [row[0] for row in cur.fetchall()]

    def set_run_files_total(self, run_id: int, files_total: int) -> None:
        self._conn.execute(
            "UPDATE pipeline_runs SET files_total = ? WHERE id = ?", (files_total, run_id)
        )
        self._commit()

    def set_run_commits_added(self, run_id: int, added: int) -> None:
        self._conn.execute(
            "UPDATE pipeline_runs SET commits_added = ? WHERE id = ?", (added, run_id)
        )
        self._commit()

    def complete_run_if_idle(self, run_id: int, now: float, exclude_stage: str) -> bool:
        """Mark a run completed if none of its units are still in flight.

        The check and the update are one statement, so only one caller can
        ever win. Returns True for that caller.
        """
        placeholders = ",".join("?" for _ in ACTIVE_JOB_STATES)
        cur = self._conn.execute(
            f"""UPDATE pipeline_runs SET status = 'completed', completed_at = ?
                WHERE id = ? AND status = 'running'
                AND NOT EXISTS (
                    SELECT 1 FROM jobs
                    WHERE run_id = ? AND stage != ? AND state IN ({placeholders})
                )""",  # noqa: S608
            (now, run_id, run_id, exclude_stage, *ACTIVE_JOB_STATES),
        )
        self._commit()
        return cur.rowcount == 1

    def mark_run_notified(self, run_id: int, now: float) -> bool:
        cur = self._conn.execute(
            "UPDATE pipeline_runs SET notified_at = ? WHERE id = ? AND notified_at IS NULL",
            (now, run_id),
        )
        self._commit()
        return cur.rowcount == 1

    # ── Jobs ──

    def insert_job(
        self, stage: str, payload: dict, run_id: int | None,
        max_attempts: int, base_delay: float, available_at: float, now: float,
    ) -> int:
        cur = self._conn.execute(
            """INSERT INTO jobs
               (run_id, stage, payload, state, attempts, max_attempts, base_delay,
                available_at, created_at)
               VALUES (?, ?, ?, 'queued', 0, ?, ?, ?, ?)""",
            (run_id, stage, json.dumps(payload), max_attempts, base_delay, available_at, now),
        )
        self._commit()
        return cur.lastrowid  # type: ignore[return-value]

    def _job_row(self, row: sqlite3.Row) -> dict:
        result = dict(row)
        result["payload"] = json.loads(result["payload"])
        return result

    def claim_job(self, now: float, stages: list[str] | None = None) -> dict | None:
        """Atomically move the oldest due job to 'running' and return it."""
        sql = (
            "SELECT id FROM jobs WHERE state IN ('queued', 'retrying') AND available_at <= ?"
        )
        params: list = [now]
        if stages is not None:
            if not stages:
                return None
            sql += f" AND stage IN ({','.join('?' for _ in stages)})"
            params.extend(stages)
        sql += " ORDER BY available_at, id LIMIT 5"

        for row in self._conn.execute(sql, params).fetchall():
            cur = self._conn.execute(
                """UPDATE jobs SET state = 'running', attempts = attempts + 1, started_at = ?
                   WHERE id = ? AND state IN ('queued', 'retrying')""",
                (now, row[0]),
            )
            self._commit()
            if cur.rowcount == 1:
                return self.get_job(row[0])
        return None

    def complete_job(self, job_id: int, now: float) -> None:
        self._conn.execute(
            "UPDATE jobs SET state = 'completed', finished_at = ? WHERE id = ?",
            (now, job_id),
        )
        self._commit()

    def retry_job(self, job_id: int, error: str, available_at: float) -> None:
        self._conn.execute(
            "UPDATE jobs SET state = 'retrying', last_error = ?, available_at = ? WHERE id = ?",
            (error, available_at, job_id),
        )
        self._commit()

    def fail_job(self, job_id: int, error: str, now: float) -> None:
        self._conn.execute(
            "UPDATE jobs SET state = 'failed', last_error = ?, finished_at = ? WHERE id = ?",
            (error, now, job_id),
        )
        self._commit()

    def insert_job_attempt(
        self, job_id: int, attempt: int, error: str, retry_delay: float | None, now: float,
    ) -> None:
        self._conn.execute(
            """INSERT INTO job_attempts (job_id, attempt, error, retry_delay, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (job_id, attempt, error, retry_delay, now),
        )
        self._commit()

    def get_job(self, job_id: int) -> dict | None:
        row = self._conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return self._job_row(row) if row else None

    def list_jobs(
        self, run_id: int | None = None, state: str | None = None, limit: int = 200,
    ) -> list[dict]:
        sql = "SELECT * FROM jobs WHERE 1 = 1"
        params: list = []
        if run_id is not None:
            sql += " AND run_id = ?"
            params.append(run_id)
        if state:
            sql += " AND state = ?"
            params.append(state)
        sql += " ORDER BY id LIMIT ?"
        params.append(limit)
        return [self._job_row(row) for row in self._conn.execute(sql, params).fetchall()]

    def list_job_attempts(self, job_id: int) -> list[dict]:
        cur = self._conn.execute(
            "SELECT * FROM job_attempts WHERE job_id = ? ORDER BY attempt", (job_id,)
        )
        return [dict(row) for row in cur.fetchall()]

    def count_jobs(self, run_id: int, states: tuple[str, ...], stage: str | None = None) -> int:
        placeholders = ",".join("?" for _ in states)
        sql = f"SELECT count(*) FROM jobs WHERE run_id = ? AND state IN ({placeholders})"  # noqa: S608
        params: list = [run_id, *states]
        if stage:
            sql += " AND stage = ?"
            params.append(stage)
        return self._conn.execute(sql, params).fetchone()[0]

    def has_active_job(self, stage: str) -> bool:
        placeholders = ",".join("?" for _ in ACTIVE_JOB_STATES)
        cur = self._conn.execute(
            f"SELECT 1 FROM jobs WHERE stage = ? AND state IN ({placeholders}) LIMIT 1",  # noqa: S608
            (stage, *ACTIVE_JOB_STATES),
        )
        return cur.fetchone() is not None

    def requeue_running_jobs(self) -> int:
        """Return jobs interrupted by a crash to the queue. Returns the count."""
        cur = self._conn.execute("UPDATE jobs SET state = 'queued' WHERE state = 'running'")
        self._commit()
        return cur.rowcount

    # ── Counts ──

    def count(self, table: str) -> int:
        cur = self._conn.execute(f"SELECT count(*) FROM {table}")  # noqa: S608
        return cur.fetchone()[0]

    def close(self) -> None:
        self._conn.close()
