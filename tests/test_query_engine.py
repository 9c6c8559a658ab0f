"""Tests for retrieval-augmented answering."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from gitwhisper.errors import TransientError
from gitwhisper.indexer.embedder import Embedder
from gitwhisper.qa import engine as engine_module
from gitwhisper.qa.engine import ANSWER_ERROR, AnswerEvent, QueryEngine, build_context, collect

from tests.helpers import DIMS, REPO_URL, unit, with_similarity


def _stream(*chunks: str, fail_after: bool = False):
    def _gen(prompt: str, system: str | None = None):
        yield from chunks
        if fail_after:
            raise TransientError("stream dropped")

    return _gen


@pytest.fixture
def project(store, vector_store) -> int:
    """A project with two indexed files and one unrelated file."""
    pid = store.insert_project("widgets", REPO_URL)
    for path, vec in (
        ("src/a.py", with_similarity(0.9)),
        ("src/b.py", with_similarity(0.6)),
        ("docs/c.md", with_similarity(0.1)),
    ):
        artifact_id = store.upsert_artifact_content(pid, path, f"content of {path}")
        store.set_artifact_summary(pid, path, f"summary of {path}")
        vector_store.upsert(pid, artifact_id, path, f"summary of {path}", vec)
        store.mark_artifact_indexed(pid, path, DIMS)
    return pid


def _engine(vector_store, provider=None, embed=None, **kwargs) -> QueryEngine:
    embed_provider = MagicMock(embed=MagicMock(side_effect=embed or (lambda texts: [unit(1.0)])))
    provider = provider or MagicMock(generate_stream=MagicMock(side_effect=_stream("An ", "answer.")))
    return QueryEngine(
        vector_store,
        embedder=Embedder(embed_provider, dims=DIMS),
        provider=provider,
        threshold=kwargs.pop("threshold", 0.5),
        **kwargs,
    )


class TestAsk:
    def test_event_order(self, store, vector_store, project) -> None:
        events = list(_engine(vector_store).ask(store, project, "How?"))

        assert [e.type for e in events] == ["references", "chunk", "chunk", "done"]
        assert [r["path"] for r in events[0].references] == ["src/a.py", "src/b.py"]
        assert events[0].references[0] == {
            "path": "src/a.py",
            "content": "content of src/a.py",
            "summary": "summary of src/a.py",
        }

    def test_prompt_carries_context_and_question(self, store, vector_store, project) -> None:
        provider = MagicMock(generate_stream=MagicMock(side_effect=_stream("ok")))
        list(_engine(vector_store, provider=provider).ask(store, project, "Where is the registry?"))

        prompt = provider.generate_stream.call_args[0][0]
        assert "source: src/a.py\ncode content:\ncontent of src/a.py" in prompt
        assert "START QUESTION\nWhere is the registry?\nEND OF QUESTION" in prompt
        assert "docs/c.md" not in prompt

    def test_no_matches_still_answers(self, store, vector_store) -> None:
        pid = store.insert_project("empty", REPO_URL)
        answer = collect(_engine(vector_store).ask(store, pid, "Anything?"))
        assert answer.references == []
        assert answer.text == "An answer."
        assert answer.error is None

    def test_other_project_not_retrieved(self, store, vector_store, project) -> None:
        other = store.insert_project("other", REPO_URL)
        answer = collect(_engine(vector_store).ask(store, other, "How?"))
        assert answer.references == []

    def test_stream_failure_ends_with_single_error(self, store, vector_store, project) -> None:
        provider = MagicMock(generate_stream=MagicMock(side_effect=_stream("partial", fail_after=True)))
        events = list(_engine(vector_store, provider=provider).ask(store, project, "How?"))

        assert [e.type for e in events] == ["references", "chunk", "error"]
        assert events[-1].text == ANSWER_ERROR

    def test_generation_call_failure(self, store, vector_store, project) -> None:
        provider = MagicMock(generate_stream=MagicMock(side_effect=TransientError("down")))
        events = list(_engine(vector_store, provider=provider).ask(store, project, "How?"))
        assert [e.type for e in events] == ["references", "error"]

    def test_embedding_failure_yields_error(self, store, vector_store, project) -> None:
        def _fail(texts):
            raise TransientError("embedding timeout")

        events = list(_engine(vector_store, embed=_fail).ask(store, project, "How?"))
        assert [e.to_dict() for e in events] == [{"type": "error", "text": ANSWER_ERROR}]

    def test_deadline(self, store, vector_store, project, monkeypatch) -> None:
        ticks = iter([0.0, 1.0, 50.0])
        monkeypatch.setattr(engine_module, "time", SimpleNamespace(monotonic=lambda: next(ticks)))
        provider = MagicMock(generate_stream=MagicMock(side_effect=_stream("one", "two")))

        events = list(_engine(vector_store, provider=provider, deadline_secs=10).ask(store, project, "How?"))

        assert [e.type for e in events] == ["references", "chunk", "error"]


class TestHelpers:
    def test_collect(self) -> None:
        answer = collect([
            AnswerEvent("references", references=[{"path": "a.py"}]),
            AnswerEvent("chunk", text="Hello "),
            AnswerEvent("chunk", text="world"),
            AnswerEvent("done"),
        ])
        assert answer.text == "Hello world"
        assert answer.references == [{"path": "a.py"}]
        assert answer.error is None

    def test_event_dicts(self) -> None:
        assert AnswerEvent("done").to_dict() == {"type": "done"}
        assert AnswerEvent("chunk", text="x").to_dict() == {"type": "chunk", "text": "x"}

    def test_build_context_is_bounded(self) -> None:
        artifacts = [
            {"path": f"f{i}.py", "content": "x" * 100, "summary": "s"} for i in range(10)
        ]
        context = build_context(artifacts, max_chars=250)
        assert len(context) == 250
        assert context.startswith("source: f0.py\n")

    def test_build_context_fits(self) -> None:
        context = build_context([{"path": "a.py", "content": "x = 1", "summary": "sets x"}], 10_000)
        assert context == "source: a.py\ncode content:\nx = 1\nsummary of file: sets x\n\n"
