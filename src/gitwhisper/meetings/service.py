"""Meeting lifecycle: register audio, transcribe into issues, delete."""

from __future__ import annotations

import logging
from collections.abc import Callable

from gitwhisper.errors import NotFoundError, ValidationError, is_retryable
from gitwhisper.meetings.transcription import AssemblyAIClient, format_timestamp
from gitwhisper.storage.sqlite_store import SqliteStore

logger = logging.getLogger(__name__)


class MeetingService:
    def __init__(self, transcriber_factory: Callable[[], AssemblyAIClient] = AssemblyAIClient) -> None:
        self._transcriber_factory = transcriber_factory

    def create_meeting(self, store: SqliteStore, project_id: int, name: str, audio_url: str) -> dict:
        """Register an uploaded recording. The meeting starts in ``processing``."""
        if not audio_url.startswith(("http://", "https://")):
            raise ValidationError(f"audio_url must be an http(s) URL: {audio_url!r}")
        if store.get_project(project_id) is None:
            raise NotFoundError(f"Project {project_id} not found")
        meeting_id = store.insert_meeting(project_id, name.strip() or "Untitled meeting", audio_url)
        return store.get_meeting(meeting_id)  # type: ignore[return-value]

    def process_meeting(self, store: SqliteStore, meeting_id: int, final: bool = True) -> dict:
        """Transcribe a meeting and store one issue per chapter.

        On success the meeting is renamed after the first chapter's headline
        and marked ``completed``. On failure the error is recorded and
        re-raised; the meeting is marked ``failed`` only when the error is
        terminal or ``final`` says no retry will follow.
        """
        meeting = store.get_meeting(meeting_id)
        if meeting is None:
            raise NotFoundError(f"Meeting {meeting_id} not found")
        store.update_meeting(meeting_id, status="processing", error=None)

        transcriber = None
        try:
            transcriber = self._transcriber_factory()
            chapters = transcriber.transcribe_chapters(meeting["audio_url"])
        except Exception as e:
            status = "failed" if final or not is_retryable(e) else "processing"
            store.update_meeting(meeting_id, status=status, error=str(e))
            logger.warning("Meeting %d transcription failed (%s): %s", meeting_id, status, e)
            raise
        finally:
            if transcriber is not None:
                transcriber.close()

        issues = [
            {
                "start_ms": c.start_ms,
                "end_ms": c.end_ms,
                "headline": c.headline,
                "summary": c.summary,
                "gist": c.gist,
            }
            for c in chapters
        ]
        with store.transaction():
            # A retried run replaces any issues stored by an earlier attempt
            store.delete_issues(meeting_id)
            store.insert_issues(meeting["project_id"], meeting_id, issues)
            updates = {"status": "completed"}
            if chapters and chapters[0].headline:
                updates["name"] = chapters[0].headline
            store.update_meeting(meeting_id, **updates)
        logger.info("Meeting %d processed: %d issues", meeting_id, len(issues))
        return store.get_meeting(meeting_id)  # type: ignore[return-value]

    def list_issues(self, store: SqliteStore, meeting_id: int) -> list[dict]:
        """A meeting's issues with display timestamps."""
        if store.get_meeting(meeting_id) is None:
            raise NotFoundError(f"Meeting {meeting_id} not found")
        return [
            {**issue, "start": format_timestamp(issue["start_ms"]), "end": format_timestamp(issue["end_ms"])}
            for issue in store.list_issues(meeting_id)
        ]

    def delete_meeting(self, store: SqliteStore, meeting_id: int) -> None:
        if store.get_meeting(meeting_id) is None:
            raise NotFoundError(f"Meeting {meeting_id} not found")
        store.delete_meeting(meeting_id)
