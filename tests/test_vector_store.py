"""Tests for project-scoped similarity search in LanceDB."""

from __future__ import annotations

import pytest

from gitwhisper.storage.vector_store import VectorStore

from tests.helpers import DIMS, unit, with_similarity


class TestVectorStore:
    def test_init_creates_table(self, vector_store: VectorStore) -> None:
        assert vector_store.count() == 0

    def test_threshold_and_order(self, vector_store: VectorStore) -> None:
        vector_store.upsert(1, 10, "low.py", "low", with_similarity(0.4))
        vector_store.upsert(1, 11, "mid.py", "mid", with_similarity(0.7))
        vector_store.upsert(1, 12, "high.py", "high", with_similarity(0.9))

        results = vector_store.search(unit(1.0), project_id=1, k=10, threshold=0.5)

        assert [r.path for r in results] == ["high.py", "mid.py"]
        assert results[0].similarity == pytest.approx(0.9, abs=1e-4)
        assert results[1].similarity == pytest.approx(0.7, abs=1e-4)

    def test_projects_never_cross(self, vector_store: VectorStore) -> None:
        same = unit(1.0, 0.5)
        vector_store.upsert(1, 1, "a.py", "shared", same)
        vector_store.upsert(2, 2, "a.py", "shared", same)

        one = vector_store.search(same, project_id=1)
        two = vector_store.search(same, project_id=2)

        assert [r.artifact_id for r in one] == [1]
        assert [r.artifact_id for r in two] == [2]

    def test_ties_keep_insertion_order(self, vector_store: VectorStore) -> None:
        vec = unit(0.6, 0.8)
        vector_store.upsert(1, 7, "later.py", "", vec)
        vector_store.upsert(1, 3, "earlier.py", "", vec)
        results = vector_store.search(vec, project_id=1)
        assert [r.artifact_id for r in results] == [3, 7]

    def test_ties_beyond_first_fetch_keep_insertion_order(self, vector_store: VectorStore) -> None:
        vec = unit(0.6, 0.8)
        for artifact_id in range(60, 0, -1):
            vector_store.upsert(1, artifact_id, f"f{artifact_id}.py", "", vec)
        results = vector_store.search(vec, project_id=1, k=10)
        assert [r.artifact_id for r in results] == list(range(1, 11))

    def test_delete_artifact(self, vector_store: VectorStore) -> None:
        vector_store.upsert(1, 1, "a.py", "", unit(1.0))
        vector_store.upsert(1, 2, "b.py", "", unit(1.0))
        vector_store.delete_artifact(1)
        assert [r.artifact_id for r in vector_store.search(unit(1.0), project_id=1)] == [2]

    def test_k_limits_results(self, vector_store: VectorStore) -> None:
        for i in range(5):
            vector_store.upsert(1, i + 1, f"f{i}.py", "", unit(1.0, 0.01 * i))
        assert len(vector_store.search(unit(1.0), project_id=1, k=3)) == 3

    def test_zero_vector_matches_nothing(self, vector_store: VectorStore) -> None:
        vector_store.upsert(1, 1, "a.py", "", unit(1.0))
        assert vector_store.search([0.0] * DIMS, project_id=1) == []

    def test_empty_table(self, vector_store: VectorStore) -> None:
        assert vector_store.search(unit(1.0), project_id=1) == []

    def test_upsert_replaces_by_artifact_id(self, vector_store: VectorStore) -> None:
        vector_store.upsert(1, 1, "a.py", "old", unit(1.0))
        vector_store.upsert(1, 1, "a.py", "new", unit(0.0, 1.0))
        assert vector_store.count() == 1
        results = vector_store.search(unit(0.0, 1.0), project_id=1)
        assert results[0].summary == "new"

    def test_wrong_dimensions_rejected(self, vector_store: VectorStore) -> None:
        with pytest.raises(ValueError):
            vector_store.upsert(1, 1, "a.py", "", [1.0, 0.0])

    def test_delete_project(self, vector_store: VectorStore) -> None:
        vector_store.upsert(1, 1, "a.py", "", unit(1.0))
        vector_store.upsert(2, 2, "b.py", "", unit(1.0))
        vector_store.delete_project(1)
        assert vector_store.count(1) == 0
        assert vector_store.count(2) == 1

    def test_reopen_existing_table(self, tmp_path) -> None:
        first = VectorStore(tmp_path / "lancedb", dims=DIMS)
        first.upsert(1, 1, "a.py", "", unit(1.0))
        second = VectorStore(tmp_path / "lancedb", dims=DIMS)
        assert second.count() == 1
