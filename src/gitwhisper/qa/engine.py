"""Retrieval-augmented question answering over a project's indexed files."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from gitwhisper import config
from gitwhisper.indexer.embedder import Embedder
from gitwhisper.providers import GenerationProvider, GeminiProvider
from gitwhisper.storage.sqlite_store import SqliteStore
from gitwhisper.storage.vector_store import VectorStore

logger = logging.getLogger(__name__)

ANSWER_ERROR = "Could not generate an answer."

SYSTEM_PROMPT = """\
You are a code assistant answering questions from a developer who is new to \
this codebase. You are knowledgeable, helpful and precise.

Answer using the CONTEXT BLOCK of source files you are given. When the user \
asks about specific code or files, explain step by step and include the \
relevant code snippets. Answer in markdown.

If the context does not contain the answer, say "I'm sorry, but I don't know \
the answer to that question." Do not invent anything that is not drawn \
directly from the context."""


@dataclass
class AnswerEvent:
    """One event of an answer stream.

    ``type`` is ``references`` (always first), ``chunk``, or the terminal
    ``done`` / ``error``.
    """

    type: str
    text: str = ""
    references: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        if self.type == "references":
            return {"type": self.type, "references": self.references}
        if self.type == "done":
            return {"type": self.type}
        return {"type": self.type, "text": self.text}


@dataclass
class Answer:
    text: str
    references: list[dict]
    error: str | None = None


def collect(events: Iterable[AnswerEvent]) -> Answer:
    """Assemble a full answer from an event stream."""
    chunks: list[str] = []
    references: list[dict] = []
    error = None
    for event in events:
        if event.type == "references":
            references = event.references
        elif event.type == "chunk":
            chunks.append(event.text)
        elif event.type == "error":
            error = event.text
    return Answer(text="".join(chunks), references=references, error=error)


def build_context(artifacts: list[dict], max_chars: int) -> str:
    """Render retrieved artifacts as a bounded context block."""
    parts: list[str] = []
    used = 0
    for a in artifacts:
        block = (
            f"source: {a['path']}\n"
            f"code content:\n{a['content']}\n"
            f"summary of file: {a['summary']}\n\n"
        )
        remaining = max_chars - used
        if remaining <= 0:
            break
        if len(block) > remaining:
            parts.append(block[:remaining])
            break
        parts.append(block)
        used += len(block)
    return "".join(parts)


class QueryEngine:
    """Answers a question from a project's most similar files, streamed."""

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: Embedder | None = None,
        provider: GenerationProvider | None = None,
        top_k: int | None = None,
        threshold: float | None = None,
        max_context_chars: int | None = None,
        deadline_secs: float | None = None,
    ) -> None:
        self._vectors = vector_store
        self._embedder = embedder or Embedder()
        self._provider = provider or GeminiProvider()
        self._top_k = top_k or config.RETRIEVAL_TOP_K
        self._threshold = threshold if threshold is not None else config.SIMILARITY_THRESHOLD
        self._max_context_chars = max_context_chars or config.CONTEXT_MAX_CHARS
        self._deadline_secs = deadline_secs or config.STAGE_TIMEOUT_SECS * 2

    def retrieve(self, store: SqliteStore, project_id: int, question: str) -> list[dict]:
        """Top-K artifacts of the project most similar to the question."""
        vector = self._embedder.embed(question, strict=True)
        if not vector:
            return []
        hits = self._vectors.search(vector, project_id, k=self._top_k, threshold=self._threshold)
        rows = store.get_artifacts_by_ids(project_id, [h.artifact_id for h in hits])
        return [
            {
                "path": h.path,
                "content": rows[h.artifact_id]["raw_content"],
                "summary": rows[h.artifact_id]["summary"],
                "similarity": h.similarity,
            }
            for h in hits
            if h.artifact_id in rows
        ]

    def ask(self, store: SqliteStore, project_id: int, question: str) -> Iterator[AnswerEvent]:
        """Stream an answer: references, then chunks, then ``done`` or ``error``."""
        t0 = time.monotonic()
        try:
            artifacts = self.retrieve(store, project_id, question)
        except Exception as e:
            logger.warning("Project %d: retrieval failed: %s", project_id, e)
            yield AnswerEvent("error", text=ANSWER_ERROR)
            return

        logger.info("Project %d: %d files retrieved for %r", project_id, len(artifacts), question[:120])
        yield AnswerEvent(
            "references",
            references=[
                {"path": a["path"], "content": a["content"], "summary": a["summary"]}
                for a in artifacts
            ],
        )

        prompt = (
            f"START CONTEXT BLOCK\n{build_context(artifacts, self._max_context_chars)}"
            f"END OF CONTEXT BLOCK\n\n"
            f"START QUESTION\n{question}\nEND OF QUESTION"
        )
        stream = None
        try:
            stream = self._provider.generate_stream(prompt, system=SYSTEM_PROMPT)
            for text in stream:
                if time.monotonic() - t0 > self._deadline_secs:
                    logger.warning("Project %d: answer exceeded %.0fs deadline", project_id, self._deadline_secs)
                    yield AnswerEvent("error", text=ANSWER_ERROR)
                    return
                if text:
                    yield AnswerEvent("chunk", text=text)
        except Exception as e:
            logger.warning("Project %d: generation failed: %s", project_id, e)
            yield AnswerEvent("error", text=ANSWER_ERROR)
            return
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()
        logger.info("Project %d: answer complete in %.2fs", project_id, time.monotonic() - t0)
        yield AnswerEvent("done")
