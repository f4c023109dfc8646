"""
Request and response models for the recommendation API.
"""

from pydantic import BaseModel, ConfigDict
from typing import Optional, List, Dict, Any


class RecommendRequest(BaseModel):
    # Emptiness is validated by the engine so the rejection is logged with a search id
    query: Optional[str] = None
    top_k: Optional[int] = None


class RecommendationItem(BaseModel):
    rank: int
    catalog_item_id: str
    catalog_path: Optional[str] = None
    relevance_score: float
    frequency: int
    max_score: float


class RecommendResponse(BaseModel):
    search_id: str
    query: str
    timestamp: str
    recommendations: List[RecommendationItem]


class ErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error: str
    search_id: Optional[str] = None


class BacklogResponse(BaseModel):
    pending: int
    done: int
    error: int


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    vector_count: int
    index: Dict[str, Any]
    backlog: BacklogResponse
