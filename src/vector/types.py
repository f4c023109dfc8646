"""
Vector record types stored and returned by the vector store.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import numpy as np


@dataclass
class KnowledgeVector:
    """An embedded case narrative keyed by case id."""

    case_id: str
    """Case identifier, shared with the staging narrative"""

    catalog_item_id: str
    """Catalog item the case was resolved under"""

    catalog_path: str
    """Human-readable catalog hierarchy"""

    narrative_text: str
    """Denormalized narrative copy kept for audit"""

    vector: np.ndarray
    """Fixed-dimension embedding"""

    embedding_model: str
    """Model that produced the vector"""

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class VectorHit:
    """A nearest-neighbor search hit."""

    case_id: str
    catalog_item_id: str
    catalog_path: str

    distance: float
    """Cosine distance, 1 - cosine similarity"""

    @property
    def similarity(self) -> float:
        return 1.0 - self.distance
