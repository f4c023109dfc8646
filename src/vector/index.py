"""
Vector store interface and an exact in-memory implementation.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

import numpy as np

from ..core.errors import DimensionMismatchError, PersistenceError, ValidationError
from .types import KnowledgeVector, VectorHit

SUPPORTED_METRICS = ("cosine",)


def prepare_vector(vector, expected_dimension: Optional[int]) -> np.ndarray:
    """Validate a vector at the write/query boundary and return it as float32."""
    array = np.asarray(vector, dtype=np.float32).reshape(-1)

    if expected_dimension is not None and array.shape[0] != expected_dimension:
        raise DimensionMismatchError(expected_dimension, array.shape[0])

    if array.shape[0] == 0 or not np.all(np.isfinite(array)):
        raise PersistenceError("Vector must be non-empty and contain only finite values")

    return array


def unit_normalize(matrix: np.ndarray) -> np.ndarray:
    """Scale rows to unit length; zero rows stay zero."""
    norms = np.linalg.norm(matrix, axis=-1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def check_metric(distance_metric: str) -> None:
    if distance_metric not in SUPPORTED_METRICS:
        raise ValidationError(f"Unsupported distance metric: {distance_metric}")


class IVectorStore(ABC):
    """Abstract interface for vector storage operations."""

    @abstractmethod
    def upsert(self, case_id: str, catalog_item_id: str, catalog_path: str, narrative: str, vector) -> None:
        """Insert or replace the vector row for a case id."""
        pass

    @abstractmethod
    def search(self, query_vector, k: int = 10) -> List[VectorHit]:
        """Return the k nearest rows by cosine distance, ascending."""
        pass

    @abstractmethod
    def build_index(self, distance_metric: str = "cosine", target_accuracy: float = 95.0) -> None:
        """Build (or rebuild) the nearest-neighbor index over all current rows."""
        pass

    @abstractmethod
    def get(self, case_id: str) -> Optional[KnowledgeVector]:
        """Fetch a single row by case id."""
        pass

    @abstractmethod
    def delete(self, case_id: str) -> None:
        """Delete a vector row by case id."""
        pass

    @abstractmethod
    def count(self) -> int:
        """Number of rows for the store's embedding model."""
        pass


class InMemoryVectorStore(IVectorStore):
    """Exact, non-durable vector store using brute-force cosine distance."""

    def __init__(self, model_name: str = "default", dimension: Optional[int] = None):
        self.model_name = model_name
        self.dimension = dimension
        self._records: Dict[str, KnowledgeVector] = {}
        self._lock = threading.Lock()

    def upsert(self, case_id: str, catalog_item_id: str, catalog_path: str, narrative: str, vector) -> None:
        with self._lock:
            expected = self.dimension
            if expected is None and self._records:
                expected = next(iter(self._records.values())).vector.shape[0]
            array = prepare_vector(vector, expected)

            now = datetime.now(timezone.utc)
            existing = self._records.get(case_id)
            self._records[case_id] = KnowledgeVector(
                case_id=case_id,
                catalog_item_id=catalog_item_id,
                catalog_path=catalog_path,
                narrative_text=narrative,
                vector=array,
                embedding_model=self.model_name,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )

    def search(self, query_vector, k: int = 10) -> List[VectorHit]:
        with self._lock:
            records = list(self._records.values())
        if not records or k <= 0:
            return []

        query = prepare_vector(query_vector, records[0].vector.shape[0])
        matrix = unit_normalize(np.vstack([r.vector for r in records]))
        similarities = matrix @ unit_normalize(query)

        # Stable sort keeps equal distances in case id order
        order = sorted(range(len(records)), key=lambda i: (-float(similarities[i]), records[i].case_id))
        return [
            VectorHit(
                case_id=records[i].case_id,
                catalog_item_id=records[i].catalog_item_id,
                catalog_path=records[i].catalog_path,
                distance=1.0 - float(similarities[i]),
            )
            for i in order[:k]
        ]

    def build_index(self, distance_metric: str = "cosine", target_accuracy: float = 95.0) -> None:
        # Exact search needs no auxiliary structure
        check_metric(distance_metric)

    def get(self, case_id: str) -> Optional[KnowledgeVector]:
        return self._records.get(case_id)

    def delete(self, case_id: str) -> None:
        with self._lock:
            self._records.pop(case_id, None)

    def count(self) -> int:
        return len(self._records)

    def clear(self) -> None:
        """Clear all records from the store."""
        with self._lock:
            self._records.clear()
