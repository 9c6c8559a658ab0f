"""API router: projects, commits, questions, meetings, runs and jobs."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from gitwhisper.errors import NotFoundError
from gitwhisper.qa import questions
from gitwhisper.qa.engine import collect
from gitwhisper.services import Services
from gitwhisper.storage.sqlite_store import SqliteStore

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Dependencies ──


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_store(services: Services = Depends(get_services)) -> Iterator[SqliteStore]:
    """One SQLite connection per request."""
    store = services.open_store()
    try:
        yield store
    finally:
        store.close()


def get_user_id(x_user_id: str | None = Header(default=None)) -> str | None:
    return x_user_id


def require_user_id(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return x_user_id


def _public_project(project: dict) -> dict:
    return {k: v for k, v in project.items() if k != "credential_ref"}


def _meeting_project(services: Services, store: SqliteStore, meeting_id: int, user_id: str | None) -> dict:
    meeting = store.get_meeting(meeting_id)
    if meeting is None:
        raise NotFoundError(f"Meeting {meeting_id} not found")
    services.projects.get_project(store, meeting["project_id"], user_id)
    return meeting


# ── Request models ──


class CreateProjectRequest(BaseModel):
    name: str
    repo_url: str
    token: str | None = None
    branch: str | None = None
    sync: bool = False


class AskRequest(BaseModel):
    question: str


class SaveQuestionRequest(BaseModel):
    question: str
    answer: str
    references: list[Any] = []


class CreateMeetingRequest(BaseModel):
    name: str
    audio_url: str


# ── Health ──


@router.get("/health")
def health():
    return {"status": "ok"}


# ── Projects ──


@router.post("/projects", status_code=201)
def create_project(
    req: CreateProjectRequest,
    user_id: str = Depends(require_user_id),
    services: Services = Depends(get_services),
    store: SqliteStore = Depends(get_store),
):
    logger.info("POST /projects repo=%s sync=%s", req.repo_url, req.sync)
    result = services.projects.create_project(
        store, req.name, req.repo_url, user_id,
        token=req.token, branch=req.branch, sync=req.sync,
    )
    return {**result, "project": _public_project(result["project"])}


@router.get("/projects")
def list_projects(
    user_id: str | None = Depends(get_user_id),
    services: Services = Depends(get_services),
    store: SqliteStore = Depends(get_store),
):
    return {"projects": [_public_project(p) for p in services.projects.list_projects(store, user_id)]}


@router.get("/projects/{project_id}")
def get_project(
    project_id: int,
    user_id: str | None = Depends(get_user_id),
    services: Services = Depends(get_services),
    store: SqliteStore = Depends(get_store),
):
    project = services.projects.get_project(store, project_id, user_id)
    return {
        **_public_project(project),
        "files": store.count_artifacts(project_id),
        "files_indexed": store.count_artifacts(project_id, "indexed"),
        "files_failed": store.count_artifacts(project_id, "failed"),
        "runs": store.list_runs(project_id),
    }


@router.delete("/projects/{project_id}")
def archive_project(
    project_id: int,
    user_id: str | None = Depends(get_user_id),
    services: Services = Depends(get_services),
    store: SqliteStore = Depends(get_store),
):
    services.projects.archive_project(store, project_id, user_id)
    return {"archived": project_id}


@router.get("/projects/{project_id}/members")
def list_members(
    project_id: int,
    user_id: str | None = Depends(get_user_id),
    services: Services = Depends(get_services),
    store: SqliteStore = Depends(get_store),
):
    return {"members": services.projects.list_members(store, project_id, user_id)}


@router.post("/projects/{project_id}/join")
def join_project(
    project_id: int,
    user_id: str = Depends(require_user_id),
    services: Services = Depends(get_services),
    store: SqliteStore = Depends(get_store),
):
    """Join a project's team through its invite link."""
    project = services.projects.join_project(store, project_id, user_id)
    return {"project": _public_project(project), "members": store.list_members(project_id)}


@router.get("/projects/{project_id}/files")
def list_files(
    project_id: int,
    status: str | None = Query(None),
    user_id: str | None = Depends(get_user_id),
    services: Services = Depends(get_services),
    store: SqliteStore = Depends(get_store),
):
    services.projects.get_project(store, project_id, user_id)
    return {"files": store.list_artifacts(project_id, status)}


# ── Commits ──


@router.get("/projects/{project_id}/commits")
def list_commits(
    project_id: int,
    user_id: str | None = Depends(get_user_id),
    services: Services = Depends(get_services),
    store: SqliteStore = Depends(get_store),
):
    services.projects.get_project(store, project_id, user_id)
    return {"commits": store.list_commits(project_id)}


@router.post("/projects/{project_id}/commits/refresh")
def refresh_commits(
    project_id: int,
    user_id: str | None = Depends(get_user_id),
    services: Services = Depends(get_services),
    store: SqliteStore = Depends(get_store),
):
    services.projects.get_project(store, project_id, user_id)
    result = services.projects.refresh_commits(store, project_id)
    return {"listed": result.listed, "added": result.added}


# ── Questions ──


@router.post("/projects/{project_id}/ask")
def ask(
    project_id: int,
    req: AskRequest,
    stream: bool = Query(True),
    user_id: str | None = Depends(get_user_id),
    services: Services = Depends(get_services),
    store: SqliteStore = Depends(get_store),
):
    """Answer a question. Streams Server-Sent Events unless ``stream=false``."""
    services.projects.get_project(store, project_id, user_id)
    if not req.question.strip():
        raise HTTPException(status_code=400, detail="Question must not be empty")
    logger.info("POST /projects/%d/ask question=%r", project_id, req.question[:120])

    if not stream:
        answer = collect(services.query_engine.ask(store, project_id, req.question))
        return {"answer": answer.text, "references": answer.references, "error": answer.error}

    def event_generator():
        # Owns its connection; the request-scoped store can close before streaming ends
        ask_store = services.open_store()
        try:
            for event in services.query_engine.ask(ask_store, project_id, req.question):
                yield f"data: {json.dumps(event.to_dict())}\n\n"
        finally:
            ask_store.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/projects/{project_id}/questions", status_code=201)
def save_question(
    project_id: int,
    req: SaveQuestionRequest,
    user_id: str = Depends(require_user_id),
    services: Services = Depends(get_services),
    store: SqliteStore = Depends(get_store),
):
    services.projects.get_project(store, project_id, user_id)
    return questions.save_answer(
        store, project_id, user_id, req.question, req.answer, req.references
    )


@router.get("/projects/{project_id}/questions")
def list_questions(
    project_id: int,
    user_id: str | None = Depends(get_user_id),
    services: Services = Depends(get_services),
    store: SqliteStore = Depends(get_store),
):
    services.projects.get_project(store, project_id, user_id)
    return {"questions": questions.list_questions(store, project_id)}


# ── Meetings ──


@router.post("/projects/{project_id}/meetings", status_code=201)
def create_meeting(
    project_id: int,
    req: CreateMeetingRequest,
    user_id: str | None = Depends(get_user_id),
    services: Services = Depends(get_services),
    store: SqliteStore = Depends(get_store),
):
    services.projects.get_project(store, project_id, user_id)
    meeting = services.meetings.create_meeting(store, project_id, req.name, req.audio_url)
    job_id = services.enqueue_transcription(store, meeting["id"])
    return {"meeting": meeting, "job_id": job_id}


@router.get("/projects/{project_id}/meetings")
def list_meetings(
    project_id: int,
    user_id: str | None = Depends(get_user_id),
    services: Services = Depends(get_services),
    store: SqliteStore = Depends(get_store),
):
    services.projects.get_project(store, project_id, user_id)
    return {"meetings": store.list_meetings(project_id)}


@router.post("/meetings/{meeting_id}/process")
def process_meeting(
    meeting_id: int,
    user_id: str | None = Depends(get_user_id),
    services: Services = Depends(get_services),
    store: SqliteStore = Depends(get_store),
):
    """Queue (re)transcription of a meeting."""
    _meeting_project(services, store, meeting_id, user_id)
    return {"job_id": services.enqueue_transcription(store, meeting_id)}


@router.get("/meetings/{meeting_id}/issues")
def list_issues(
    meeting_id: int,
    user_id: str | None = Depends(get_user_id),
    services: Services = Depends(get_services),
    store: SqliteStore = Depends(get_store),
):
    meeting = _meeting_project(services, store, meeting_id, user_id)
    return {"meeting": meeting, "issues": services.meetings.list_issues(store, meeting_id)}


@router.delete("/meetings/{meeting_id}")
def delete_meeting(
    meeting_id: int,
    user_id: str | None = Depends(get_user_id),
    services: Services = Depends(get_services),
    store: SqliteStore = Depends(get_store),
):
    _meeting_project(services, store, meeting_id, user_id)
    services.meetings.delete_meeting(store, meeting_id)
    return {"deleted": meeting_id}


# ── Runs and jobs ──


@router.get("/runs/{run_id}")
def get_run(
    run_id: int,
    services: Services = Depends(get_services),
    store: SqliteStore = Depends(get_store),
):
    status = services.jobs.run_status(store, run_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return status


@router.get("/jobs")
def list_jobs(
    run_id: int | None = Query(None),
    state: str | None = Query(None),
    limit: int = Query(200, ge=1, le=1000),
    store: SqliteStore = Depends(get_store),
):
    return {"jobs": store.list_jobs(run_id=run_id, state=state, limit=limit)}


@router.get("/jobs/{job_id}")
def get_job(job_id: int, store: SqliteStore = Depends(get_store)):
    job = store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return {**job, "attempt_history": store.list_job_attempts(job_id)}
