"""
Record types for the staging feed and the search log.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


class ProcessingState:
    PENDING = "pending"
    DONE = "done"
    ERROR = "error"

    ALL = (PENDING, DONE, ERROR)


@dataclass
class StagingNarrative:
    case_id: str
    catalog_item_id: str
    catalog_path: str
    narrative_text: str
    processing_state: str = ProcessingState.PENDING
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None


@dataclass
class BatchResult:
    processed: int = 0
    errored: int = 0
    lost: int = 0
    remaining_pending: int = 0
    claimed: int = 0
    timed_out: bool = False


@dataclass
class SearchLogRecord:
    search_id: str
    query_text: str
    top_k: Optional[int]
    latency_ms: float
    result_count: int
    error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
