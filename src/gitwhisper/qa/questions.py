"""Saved questions and their typed file references."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from gitwhisper.errors import NotFoundError, ValidationError
from gitwhisper.storage.sqlite_store import SqliteStore


class FileReference(BaseModel):
    """A file an answer drew on, with an optional snapshot of what it said."""

    model_config = ConfigDict(extra="forbid")

    path: str
    line: int | None = None
    content: str | None = None
    summary: str | None = None


_REFERENCES = TypeAdapter(list[FileReference])


def validate_references(raw: object) -> list[FileReference]:
    """Check a reference payload's shape. Raises ValidationError on mismatch."""
    try:
        return _REFERENCES.validate_python(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid file references: {e.error_count()} error(s)") from e


def save_answer(
    store: SqliteStore,
    project_id: int,
    user_id: str,
    question: str,
    answer: str,
    references: object,
) -> dict:
    """Persist an answered question.

    Raises AlreadySavedError if this user already saved the same question
    for the project.
    """
    question = question.strip()
    if not question:
        raise ValidationError("Question must not be empty")
    if store.get_project(project_id) is None:
        raise NotFoundError(f"Project {project_id} not found")
    refs = validate_references(references)
    question_id = store.insert_question(
        project_id, user_id, question, answer,
        _REFERENCES.dump_json(refs).decode(),
    )
    return store.get_question(question_id)  # type: ignore[return-value]


def list_questions(store: SqliteStore, project_id: int) -> list[dict]:
    """Saved questions for a project, newest first."""
    return store.list_questions(project_id)
