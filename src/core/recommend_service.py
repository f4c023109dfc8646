"""
Retrieval and ranking of catalog recommendations for a free-text query.

The query is normalized with the same function used at ingestion, embedded,
and matched against an oversampled candidate set of nearest case narratives.
Candidates are aggregated per catalog item and ranked by consensus: how many
of the nearest cases share the item first, their average similarity second.
"""

import threading
import time
import uuid
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from .config import RetrievalConfig
from .errors import (
    CaseRecallError,
    EmbeddingError,
    OperationCancelledError,
    OperationTimeoutError,
    PersistenceError,
    SearchError,
    ValidationError,
)
from .normalizer import normalize_text
from .schema import SearchLogRecord
from .search_log import ISearchLogSink, LoggerSearchLog


@dataclass
class Recommendation:
    catalog_item_id: str
    catalog_path: str
    frequency: int
    relevance_score: float
    """Average similarity over the candidates sharing this catalog item"""
    max_score: float
    rank: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rank": self.rank,
            "catalog_item_id": self.catalog_item_id,
            "catalog_path": self.catalog_path,
            "relevance_score": round(self.relevance_score, 4),
            "frequency": self.frequency,
            "max_score": round(self.max_score, 4),
        }


@dataclass
class RecommendationResult:
    search_id: str
    query: str
    timestamp: datetime
    recommendations: List[Recommendation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "search_id": self.search_id,
            "query": self.query,
            "timestamp": self.timestamp.isoformat(),
            "recommendations": [r.to_dict() for r in self.recommendations],
        }


def aggregate_hits(hits: Iterable) -> List[Recommendation]:
    """Group nearest-neighbor hits by catalog item (unranked)."""
    groups: Dict[str, Dict[str, Any]] = {}
    for hit in hits:
        group = groups.setdefault(hit.catalog_item_id, {"catalog_path": hit.catalog_path, "similarities": []})
        group["similarities"].append(1.0 - hit.distance)

    return [
        Recommendation(
            catalog_item_id=catalog_item_id,
            catalog_path=group["catalog_path"],
            frequency=len(group["similarities"]),
            relevance_score=sum(group["similarities"]) / len(group["similarities"]),
            max_score=max(group["similarities"]),
        )
        for catalog_item_id, group in groups.items()
    ]


def rank_recommendations(aggregates: List[Recommendation], top_k: int) -> List[Recommendation]:
    """Order by frequency desc, average similarity desc, catalog item id asc; keep top_k."""
    ordered = sorted(aggregates, key=lambda r: (-r.frequency, -r.relevance_score, r.catalog_item_id))
    ranked = ordered[:top_k]
    for position, recommendation in enumerate(ranked, start=1):
        recommendation.rank = position
    return ranked


class RecommendationTask:
    """Handle for a recommendation running on an executor."""

    def __init__(self, future: Future, cancel_event: threading.Event, search_id: str):
        self._future = future
        self._cancel_event = cancel_event
        self.search_id = search_id

    @property
    def future(self) -> Future:
        return self._future

    def cancel(self) -> None:
        """Stop the request at its next checkpoint; no partial results are returned."""
        self._cancel_event.set()
        self._future.cancel()

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: Optional[float] = None) -> RecommendationResult:
        try:
            return self._future.result(timeout)
        except CancelledError as e:
            raise OperationCancelledError("Recommendation cancelled", search_id=self.search_id) from e


class RecommendationEngine:
    """Embeds queries, oversamples nearest cases and ranks catalog items."""

    def __init__(self, vector_store, embedding_client, config: RetrievalConfig = None,
                 search_log: ISearchLogSink = None,
                 clock: Callable[[], float] = time.monotonic,
                 executor: ThreadPoolExecutor = None):
        self.vector_store = vector_store
        self.embedding_client = embedding_client
        self.config = config or RetrievalConfig()
        self.search_log = search_log or LoggerSearchLog()
        self._clock = clock
        self._executor = executor

    def clamp_top_k(self, top_k) -> int:
        if top_k is None:
            return self.config.default_top_k
        if isinstance(top_k, bool) or not isinstance(top_k, int):
            raise ValidationError(f"top_k must be an integer, got {top_k!r}")
        return max(self.config.min_top_k, min(self.config.max_top_k, top_k))

    def _checkpoint(self, deadline: Optional[float], cancel_event: Optional[threading.Event]) -> Optional[float]:
        """Raise on cancellation or an expired deadline; return remaining seconds."""
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("Recommendation cancelled")
        if deadline is None:
            return None
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise OperationTimeoutError("Recommendation deadline exceeded")
        return remaining

    def recommend(self, query_text: str, top_k: int = None, timeout: Optional[float] = -1,
                  cancel_event: Optional[threading.Event] = None,
                  search_id: str = None,
                  started_at: Optional[float] = None) -> RecommendationResult:
        """
        Recommend catalog items for a free-text query.

        Args:
            query_text: Raw query text
            top_k: Number of catalog items to return, clamped to the configured range
            timeout: Overall deadline in seconds; -1 uses the configured default, None disables it
            cancel_event: When set, the request aborts at its next checkpoint
            search_id: Correlation id; generated when omitted
            started_at: Engine clock reading the deadline and latency count
                from; defaults to now

        Returns:
            RecommendationResult

        Raises:
            ValidationError, SearchError, OperationTimeoutError, OperationCancelledError,
            each carrying ``search_id``
        """
        search_id = search_id or uuid.uuid4().hex
        start = started_at if started_at is not None else self._clock()
        if timeout == -1:
            timeout = self.config.timeout
        deadline = start + timeout if timeout is not None else None

        # Logged as the caller sent it, before clamping
        requested_top_k = top_k if isinstance(top_k, int) and not isinstance(top_k, bool) else None
        result_count = 0
        error = None

        try:
            top_k = self.clamp_top_k(top_k)

            if not isinstance(query_text, str) or not query_text.strip():
                raise ValidationError("Query text must not be empty")

            normalized = normalize_text(query_text)
            if not normalized:
                raise ValidationError("Query text is empty after normalization")

            remaining = self._checkpoint(deadline, cancel_event)
            try:
                query_vector = self.embedding_client.embed(normalized, timeout=remaining, cancel_event=cancel_event)
            except EmbeddingError as e:
                raise SearchError(f"Query embedding failed: {e.message}") from e

            self._checkpoint(deadline, cancel_event)
            try:
                hits = self.vector_store.search(query_vector, self.config.candidate_count)
            except PersistenceError as e:
                raise SearchError(f"Vector search failed: {e.message}") from e

            # A request cancelled or expired during the search returns nothing
            self._checkpoint(deadline, cancel_event)

            recommendations = rank_recommendations(aggregate_hits(hits), top_k)
            result_count = len(recommendations)
            return RecommendationResult(
                search_id=search_id,
                query=query_text,
                timestamp=datetime.now(timezone.utc),
                recommendations=recommendations,
            )
        except CaseRecallError as e:
            e.search_id = search_id
            error = f"{type(e).__name__}: {e.message}"
            raise
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            raise
        finally:
            self.search_log.record(SearchLogRecord(
                search_id=search_id,
                query_text=query_text if isinstance(query_text, str) else "",
                top_k=requested_top_k,
                latency_ms=(self._clock() - start) * 1000,
                result_count=result_count,
                error=error,
            ))

    def submit(self, query_text: str, top_k: int = None, timeout: Optional[float] = -1) -> RecommendationTask:
        """
        Run ``recommend`` on the executor and return a cancellable task.

        The deadline starts now, so time spent queued behind other requests
        counts against it.
        """
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="recommend")

        cancel_event = threading.Event()
        search_id = uuid.uuid4().hex
        future = self._executor.submit(
            self.recommend, query_text, top_k, timeout, cancel_event, search_id, self._clock()
        )
        return RecommendationTask(future, cancel_event, search_id)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
