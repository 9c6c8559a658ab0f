"""Vector storage using LanceDB for project-scoped similarity search."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path

import lancedb
import pyarrow as pa

# First fetch size, as a multiple of k. Widened while ties reach past it.
CANDIDATE_FACTOR = 4


@dataclass
class SearchResult:
    artifact_id: int
    project_id: int
    path: str
    summary: str
    similarity: float


class VectorStore:
    """LanceDB store of artifact summary embeddings, keyed by artifact id."""

    TABLE_NAME = "artifacts"

    def __init__(self, db_path: Path, dims: int = 768) -> None:
        self._db_path = db_path
        self._dims = dims
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = lancedb.connect(str(db_path))
        self._table: lancedb.table.Table | None = None
        self._lock = threading.Lock()

    @property
    def dims(self) -> int:
        return self._dims

    def _schema(self) -> pa.Schema:
        return pa.schema(
            [
                pa.field("vector", pa.list_(pa.float32(), self._dims)),
                pa.field("project_id", pa.int64()),
                pa.field("artifact_id", pa.int64()),
                pa.field("path", pa.utf8()),
                pa.field("summary", pa.utf8()),
            ]
        )

    def init_table(self) -> None:
        """Create the artifacts table if it doesn't exist, or open it."""
        existing = self._db.list_tables().tables
        if self.TABLE_NAME in existing:
            self._table = self._db.open_table(self.TABLE_NAME)
        else:
            self._table = self._db.create_table(
                self.TABLE_NAME, schema=self._schema()
            )

    def _get_table(self) -> lancedb.table.Table:
        if self._table is None:
            with self._lock:
                if self._table is None:
                    self.init_table()
        return self._table  # type: ignore[return-value]

    def upsert(
        self, project_id: int, artifact_id: int, path: str, summary: str,
        vector: list[float],
    ) -> None:
        """Insert or replace the vector for one artifact."""
        if len(vector) != self._dims:
            raise ValueError(f"Vector has {len(vector)} dimensions, expected {self._dims}")
        row = {
            "vector": vector,
            "project_id": project_id,
            "artifact_id": artifact_id,
            "path": path,
            "summary": summary,
        }
        table = self._get_table()
        with self._lock:
            (
                table.merge_insert("artifact_id")
                .when_matched_update_all()
                .when_not_matched_insert_all()
                .execute([row])
            )

    def search(
        self,
        query_vector: list[float],
        project_id: int,
        k: int = 10,
        threshold: float = 0.5,
    ) -> list[SearchResult]:
        """Return up to ``k`` artifacts of one project with similarity >= threshold.

        Similarity is ``1 - cosine distance``. Results are ordered by similarity
        descending, then by artifact id so equal scores keep insertion order.
        A zero query vector matches nothing.
        """
        if k <= 0 or not any(query_vector):
            return []
        table = self._get_table()
        project_filter = f"project_id = {int(project_id)}"
        total = table.count_rows(project_filter)
        if total == 0:
            return []

        limit = min(k * CANDIDATE_FACTOR, total)
        while True:
            rows = (
                table.search(query_vector)
                .distance_type("cosine")
                .where(project_filter, prefilter=True)
                .limit(limit)
                .to_list()
            )
            results = self._to_results(rows, project_id, threshold)
            if len(rows) < limit or limit >= total:
                break
            # Rows come back nearest first, so unseen rows score at most the last one
            last = 1.0 - float(rows[-1]["_distance"])
            if last < threshold or (len(results) >= k and last < results[k - 1].similarity):
                break
            limit = min(limit * 2, total)
        return results[:k]

    @staticmethod
    def _to_results(rows: list[dict], project_id: int, threshold: float) -> list[SearchResult]:
        results = []
        for r in rows:
            # Never cross project scope
            if int(r["project_id"]) != project_id:
                continue
            similarity = 1.0 - float(r["_distance"])
            if similarity < threshold:
                continue
            results.append(
                SearchResult(
                    artifact_id=int(r["artifact_id"]),
                    project_id=int(r["project_id"]),
                    path=r["path"],
                    summary=r["summary"],
                    similarity=similarity,
                )
            )
        results.sort(key=lambda res: (-res.similarity, res.artifact_id))
        return results

    def delete_project(self, project_id: int) -> None:
        """Remove every vector belonging to a project."""
        table = self._get_table()
        with self._lock:
            table.delete(f"project_id = {int(project_id)}")

    def delete_artifact(self, artifact_id: int) -> None:
        """Remove one artifact's vector, if it has one."""
        table = self._get_table()
        with self._lock:
            table.delete(f"artifact_id = {int(artifact_id)}")

    def count(self, project_id: int | None = None) -> int:
        """Return the number of rows, optionally for one project."""
        table = self._get_table()
        if project_id is None:
            return table.count_rows()
        return table.count_rows(f"project_id = {int(project_id)}")
