"""
Durable vector store: knowledge vector rows in SQLite plus an optional FAISS
ANN index built over them.

Before an index is built, search is an exact scan. Once built, the index
catches up on rows written after it (tracked by the monotonically increasing
``revision`` column) before every search, so upserts from other threads or
processes become visible without a rebuild.
"""

import sqlite3
import threading
import time
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

import numpy as np

from util.logging import logger
from ..core.config import StoreConfig
from ..core.db import get_db, immediate_transaction, init_db
from ..core.errors import PersistenceError, SearchError
from .faiss_index import FaissAnnIndex
from .index import IVectorStore, check_metric, prepare_vector, unit_normalize
from .types import KnowledgeVector, VectorHit


def _to_blob(vector: np.ndarray) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def _from_blob(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32)


class SqliteVectorStore(IVectorStore):
    """SQLite-backed knowledge vector store with a FAISS HNSW overlay."""

    def __init__(self, config: StoreConfig = None):
        self.config = config or StoreConfig()
        self.db_path = self.config.db_path
        self.model_name = self.config.model_name
        self._index: Optional[FaissAnnIndex] = None
        self._lock = threading.RLock()
        init_db(self.db_path)

    def _expected_dimension(self, conn: sqlite3.Connection) -> Optional[int]:
        row = conn.execute(
            "SELECT dimension FROM knowledge_vectors WHERE embedding_model = ? LIMIT 1",
            (self.model_name,),
        ).fetchone()
        if row:
            return row["dimension"]
        return self.config.dimension

    def upsert(self, case_id: str, catalog_item_id: str, catalog_path: str, narrative: str, vector) -> None:
        """Insert or replace the row for ``case_id``; the latest write wins."""
        now = datetime.now(timezone.utc).isoformat()
        try:
            with get_db(self.db_path) as conn:
                with immediate_transaction(conn):
                    array = prepare_vector(vector, self._expected_dimension(conn))
                    revision = conn.execute(
                        "SELECT COALESCE(MAX(revision), 0) + 1 FROM knowledge_vectors"
                    ).fetchone()[0]
                    conn.execute(
                        '''
                        INSERT INTO knowledge_vectors (
                            case_id, catalog_item_id, catalog_path, narrative_text, vector,
                            dimension, embedding_model, revision, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(case_id) DO UPDATE SET
                            catalog_item_id = excluded.catalog_item_id,
                            catalog_path = excluded.catalog_path,
                            narrative_text = excluded.narrative_text,
                            vector = excluded.vector,
                            dimension = excluded.dimension,
                            embedding_model = excluded.embedding_model,
                            revision = excluded.revision,
                            updated_at = excluded.updated_at
                        ''',
                        (case_id, catalog_item_id, catalog_path, narrative, _to_blob(array),
                         int(array.shape[0]), self.model_name, revision, now, now),
                    )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to upsert vector for case {case_id}: {e}") from e

        logger.log_vector_operation("upsert", case_id, {"revision": revision})

    def get(self, case_id: str) -> Optional[KnowledgeVector]:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM knowledge_vectors WHERE case_id = ?", (case_id,)
            ).fetchone()
        if not row:
            return None
        return KnowledgeVector(
            case_id=row["case_id"],
            catalog_item_id=row["catalog_item_id"],
            catalog_path=row["catalog_path"],
            narrative_text=row["narrative_text"],
            vector=_from_blob(row["vector"]),
            embedding_model=row["embedding_model"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def delete(self, case_id: str) -> None:
        try:
            with get_db(self.db_path) as conn:
                conn.execute("DELETE FROM knowledge_vectors WHERE case_id = ?", (case_id,))
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to delete vector for case {case_id}: {e}") from e

        with self._lock:
            if self._index is not None:
                self._index.remove(case_id)

        logger.log_vector_operation("delete", case_id)

    def count(self) -> int:
        with get_db(self.db_path) as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM knowledge_vectors WHERE embedding_model = ?", (self.model_name,)
            ).fetchone()[0]

    def _load_rows(self, conn: sqlite3.Connection, since_revision: int = 0) -> Tuple[List[str], Optional[np.ndarray], int]:
        rows = conn.execute(
            '''
            SELECT case_id, vector, revision FROM knowledge_vectors
            WHERE embedding_model = ? AND revision > ?
            ORDER BY revision
            ''',
            (self.model_name, since_revision),
        ).fetchall()
        if not rows:
            return [], None, since_revision

        case_ids = [row["case_id"] for row in rows]
        matrix = unit_normalize(np.vstack([_from_blob(row["vector"]) for row in rows]))
        return case_ids, matrix, rows[-1]["revision"]

    def build_index(self, distance_metric: str = "cosine", target_accuracy: float = None) -> None:
        """
        Drop and recreate the ANN index over all current rows.

        Args:
            distance_metric: Only "cosine" is supported
            target_accuracy: Target recall percentage; 100 builds an exact index
        """
        check_metric(distance_metric)
        if target_accuracy is None:
            target_accuracy = self.config.target_accuracy

        start_time = time.time()
        with get_db(self.db_path) as conn:
            dimension = self._expected_dimension(conn)
            case_ids, matrix, revision = self._load_rows(conn)

        if dimension is None:
            raise PersistenceError("Cannot build an index without a known vector dimension")

        index = FaissAnnIndex(dimension, target_accuracy)
        if case_ids:
            index.add(case_ids, matrix, revision)

        with self._lock:
            self._index = index

        logger.log_index_build(index.index_type, len(index), start_time, time.time(), {
            "target_accuracy": target_accuracy,
            "revision": index.revision,
        })

    def drop_index(self) -> None:
        """Discard the in-process index; search falls back to exact scan."""
        with self._lock:
            self._index = None

    def save_index(self, path: str = None) -> None:
        with self._lock:
            if self._index is None:
                raise PersistenceError("No index has been built")
            self._index.save(path or self.config.index_path)

    def load_index(self, path: str = None) -> bool:
        """Load a saved index; returns False when none exists at the path."""
        try:
            index = FaissAnnIndex.load(path or self.config.index_path)
        except FileNotFoundError:
            return False

        with self._lock:
            self._index = index
        self._sync_index()
        return True

    def index_status(self) -> dict:
        with self._lock:
            if self._index is None:
                return {"type": "exact", "vectors": None, "revision": None, "target_accuracy": None}
            return {
                "type": self._index.index_type,
                "vectors": len(self._index),
                "revision": self._index.revision,
                "target_accuracy": self._index.target_accuracy,
            }

    def _sync_index(self) -> None:
        """Add rows written since the index's revision."""
        with self._lock:
            if self._index is None:
                return
            with get_db(self.db_path) as conn:
                case_ids, matrix, revision = self._load_rows(conn, self._index.revision)
            if case_ids:
                self._index.add(case_ids, matrix, revision)

    def search(self, query_vector, k: int = 10) -> List[VectorHit]:
        """Return the k nearest rows by cosine distance, ascending."""
        if k <= 0:
            return []

        try:
            with get_db(self.db_path) as conn:
                dimension = self._expected_dimension(conn)
            query = unit_normalize(prepare_vector(query_vector, dimension))

            with self._lock:
                indexed = self._index is not None
            if indexed:
                self._sync_index()
                with self._lock:
                    scored = self._index.search(query, k)
            else:
                scored = self._exact_scores(query, k)

            return self._hydrate(scored)
        except sqlite3.Error as e:
            raise SearchError(f"Vector store read failed: {e}") from e

    def _exact_scores(self, query: np.ndarray, k: int) -> List[Tuple[str, float]]:
        with get_db(self.db_path) as conn:
            case_ids, matrix, _ = self._load_rows(conn)
        if not case_ids:
            return []

        similarities = matrix @ query
        order = sorted(range(len(case_ids)), key=lambda i: (-float(similarities[i]), case_ids[i]))
        return [(case_ids[i], float(similarities[i])) for i in order[:k]]

    def _hydrate(self, scored: Sequence[Tuple[str, float]]) -> List[VectorHit]:
        """Attach current catalog metadata; rows deleted since indexing are skipped."""
        if not scored:
            return []

        placeholders = ",".join("?" for _ in scored)
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT case_id, catalog_item_id, catalog_path FROM knowledge_vectors WHERE case_id IN ({placeholders})",
                [case_id for case_id, _ in scored],
            ).fetchall()
        metadata = {row["case_id"]: row for row in rows}

        hits = [
            VectorHit(
                case_id=case_id,
                catalog_item_id=metadata[case_id]["catalog_item_id"],
                catalog_path=metadata[case_id]["catalog_path"],
                distance=1.0 - similarity,
            )
            for case_id, similarity in scored
            if case_id in metadata
        ]
        hits.sort(key=lambda hit: (hit.distance, hit.case_id))
        return hits
