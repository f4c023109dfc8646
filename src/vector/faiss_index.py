"""
FAISS approximate nearest-neighbor index over unit-normalized vectors.

Inner product over unit vectors equals cosine similarity. The index is an
overlay: rows live in the vector store, and the index maps FAISS positions
back to case ids. FAISS HNSW graphs do not support removal, so an overwritten
case id leaves a stale position behind that is filtered at search time.
"""

import json
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import faiss
import numpy as np

HNSW_NEIGHBORS = 32


def hnsw_params_for_accuracy(target_accuracy: float) -> Optional[Tuple[int, int]]:
    """
    Map a target recall percentage to (efConstruction, efSearch).

    Returns None for 100, which selects an exact flat index.
    """
    if target_accuracy >= 100:
        return None
    if target_accuracy >= 99:
        return 200, 256
    if target_accuracy >= 95:
        return 160, 128
    if target_accuracy >= 90:
        return 120, 64
    if target_accuracy >= 80:
        return 80, 32
    return 40, 16


class FaissAnnIndex:
    """HNSW (or exact flat) inner-product index keyed by case id."""

    def __init__(self, dimension: int, target_accuracy: float = 95.0):
        self.dimension = dimension
        self.target_accuracy = target_accuracy
        self.revision = 0
        self._params = hnsw_params_for_accuracy(target_accuracy)
        self.index = self._create_index()

        # FAISS position -> case id, and case id -> live position
        self._positions: List[str] = []
        self._live: Dict[str, int] = {}

    @property
    def index_type(self) -> str:
        return "flat" if self._params is None else "hnsw"

    def _create_index(self):
        if self._params is None:
            return faiss.IndexFlatIP(self.dimension)

        ef_construction, ef_search = self._params
        index = faiss.IndexHNSWFlat(self.dimension, HNSW_NEIGHBORS, faiss.METRIC_INNER_PRODUCT)
        index.hnsw.efConstruction = ef_construction
        index.hnsw.efSearch = ef_search
        return index

    def __len__(self) -> int:
        return len(self._live)

    @property
    def stale_count(self) -> int:
        return len(self._positions) - len(self._live)

    def add(self, case_ids: Sequence[str], matrix: np.ndarray, revision: Optional[int] = None) -> None:
        """Add unit-normalized rows; a repeated case id supersedes its previous position."""
        if len(case_ids) == 0:
            return

        vectors = np.ascontiguousarray(matrix, dtype=np.float32).reshape(len(case_ids), self.dimension)
        self.index.add(vectors)

        for case_id in case_ids:
            self._live[case_id] = len(self._positions)
            self._positions.append(case_id)

        if revision is not None:
            self.revision = max(self.revision, revision)

    def remove(self, case_id: str) -> None:
        """Drop a case id from results; its graph node stays until rebuild."""
        self._live.pop(case_id, None)

    def search(self, query: np.ndarray, k: int) -> List[Tuple[str, float]]:
        """Return up to k (case_id, cosine similarity) pairs, most similar first."""
        if not self._live or k <= 0:
            return []

        fetch = min(k + self.stale_count, len(self._positions))
        if self._params is not None:
            self.index.hnsw.efSearch = max(self._params[1], fetch)

        query_array = np.ascontiguousarray(query, dtype=np.float32).reshape(1, -1)
        scores, positions = self.index.search(query_array, fetch)

        results = []
        for score, position in zip(scores[0], positions[0]):
            # FAISS pads with -1 when fewer neighbors are reachable
            if position < 0:
                continue
            case_id = self._positions[position]
            if self._live.get(case_id) != position:
                continue
            results.append((case_id, float(score)))
            if len(results) >= k:
                break
        return results

    def save(self, path: str) -> None:
        """Persist the FAISS index with a JSON sidecar holding the id map."""
        index_path = Path(path)
        index_path.parent.mkdir(parents=True, exist_ok=True)
        faiss.write_index(self.index, str(index_path))

        sidecar = {
            "dimension": self.dimension,
            "target_accuracy": self.target_accuracy,
            "revision": self.revision,
            "positions": self._positions,
            "live": [case_id for case_id, _ in sorted(self._live.items(), key=lambda item: item[1])],
        }
        index_path.with_suffix(".map.json").write_text(json.dumps(sidecar), encoding="utf-8")

    @classmethod
    def load(cls, path: str) -> "FaissAnnIndex":
        """Load an index saved by ``save``."""
        index_path = Path(path)
        map_path = index_path.with_suffix(".map.json")
        if not index_path.exists() or not map_path.exists():
            raise FileNotFoundError(f"Index not found: {index_path}")

        sidecar = json.loads(map_path.read_text(encoding="utf-8"))
        loaded = cls(sidecar["dimension"], sidecar["target_accuracy"])
        loaded.index = faiss.read_index(str(index_path))
        if loaded._params is not None:
            loaded.index.hnsw.efSearch = loaded._params[1]
        loaded.revision = sidecar["revision"]
        loaded._positions = list(sidecar["positions"])

        live = set(sidecar["live"])
        # Last occurrence of a case id is its live position
        for position, case_id in enumerate(loaded._positions):
            if case_id in live:
                loaded._live[case_id] = position
        return loaded
