"""
Tests for recommendation retrieval, consensus ranking and request lifecycle.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from src.core.config import RetrievalConfig
from src.core.errors import (
    EmbeddingExhaustedError,
    OperationCancelledError,
    OperationTimeoutError,
    PersistenceError,
    SearchError,
    ValidationError,
)
from src.core.normalizer import normalize_text
from src.core.recommend_service import (
    RecommendationEngine,
    aggregate_hits,
    rank_recommendations,
)
from src.core.search_log import ISearchLogSink, SqliteSearchLog
from src.vector.types import VectorHit


class ListSearchLog(ISearchLogSink):
    def __init__(self):
        self.entries = []

    def record(self, entry):
        self.entries.append(entry)


def _hit(case_id, catalog_item_id, distance):
    return VectorHit(case_id=case_id, catalog_item_id=catalog_item_id,
                     catalog_path=f"Services > {catalog_item_id}", distance=distance)


def _consensus_hits():
    hits = [_hit(f"P-{i}", "P", 0.2) for i in range(5)]
    hits += [_hit(f"Q-{i}", "Q", 0.05) for i in range(2)]
    hits += [_hit(f"S-{i:02d}", f"S{i:02d}", 0.3 + i * 0.001) for i in range(93)]
    return sorted(hits, key=lambda hit: (hit.distance, hit.case_id))


def _mock_store(hits):
    store = MagicMock()
    store.search.return_value = hits
    return store


@pytest.fixture
def search_log():
    return ListSearchLog()


@pytest.fixture
def engine_factory(embedding_client, retrieval_config, search_log):
    def factory(store, client=None, config=None, clock=None):
        kwargs = {"search_log": search_log}
        if clock is not None:
            kwargs["clock"] = clock
        return RecommendationEngine(store, client or embedding_client, config or retrieval_config, **kwargs)
    return factory


def test_consensus_beats_single_high_similarity(engine_factory):
    store = _mock_store(_consensus_hits())
    engine = engine_factory(store)

    result = engine.recommend("printer offline", top_k=5)

    store.search.assert_called_once()
    assert store.search.call_args[0][1] == 100

    recommendations = result.recommendations
    assert [r.catalog_item_id for r in recommendations[:2]] == ["P", "Q"]
    assert recommendations[0].frequency == 5
    assert recommendations[0].relevance_score == pytest.approx(0.8)
    assert recommendations[1].frequency == 2
    assert recommendations[1].max_score == pytest.approx(0.95)
    assert [r.rank for r in recommendations] == [1, 2, 3, 4, 5]
    # Singletons follow by similarity
    assert [r.catalog_item_id for r in recommendations[2:]] == ["S00", "S01", "S02"]


def test_tie_break_by_catalog_item_id():
    hits = [_hit("1", "ZETA", 0.1), _hit("2", "ALPHA", 0.1), _hit("3", "MID", 0.1)]

    ranked = rank_recommendations(aggregate_hits(hits), top_k=3)

    assert [r.catalog_item_id for r in ranked] == ["ALPHA", "MID", "ZETA"]


def test_aggregate_keeps_first_catalog_path():
    hits = [
        VectorHit("1", "CAT", "Hardware > Printers", 0.1),
        VectorHit("2", "CAT", "Hardware > Printers (old)", 0.3),
    ]

    [aggregate] = aggregate_hits(hits)

    assert aggregate.catalog_path == "Hardware > Printers"
    assert aggregate.frequency == 2
    assert aggregate.relevance_score == pytest.approx(0.8)
    assert aggregate.max_score == pytest.approx(0.9)


def test_identical_requests_return_identical_rankings(engine_factory):
    engine = engine_factory(_mock_store(_consensus_hits()))

    first = engine.recommend("printer offline", top_k=10).to_dict()
    second = engine.recommend("printer offline", top_k=10).to_dict()

    assert first["recommendations"] == second["recommendations"]
    assert first["search_id"] != second["search_id"]


def test_round_trip_recommends_source_catalog_item(vector_store, embedding_client, engine_factory):
    narratives = {
        "CASE-1": ("CAT-X", "Outlook crashes when opening shared calendars"),
        "CASE-2": ("CAT-Y", "VPN disconnects every hour on the home network"),
        "CASE-3": ("CAT-Z", "Printer on floor three shows offline after driver update"),
        "CASE-4": ("CAT-W", "Cannot reset password from the self service portal"),
    }
    for case_id, (catalog_item_id, text) in narratives.items():
        normalized = normalize_text(text)
        vector_store.upsert(case_id, catalog_item_id, f"Services > {catalog_item_id}",
                            normalized, embedding_client.embed(normalized))

    result = engine_factory(vector_store).recommend("Outlook crashes when opening shared calendars", top_k=3)

    top = result.recommendations[0]
    assert top.catalog_item_id == "CAT-X"
    assert top.max_score == pytest.approx(1.0, abs=1e-4)


def test_query_is_normalized_like_narratives(vector_store, embedding_client, engine_factory):
    text = normalize_text("Outlook crashes when opening shared calendars")
    vector_store.upsert("CASE-1", "CAT-X", "Services > CAT-X", text, embedding_client.embed(text))
    vector_store.upsert("CASE-2", "CAT-Y", "Services > CAT-Y", "other", embedding_client.embed("other"))

    result = engine_factory(vector_store).recommend(
        "<p>Hi team,   Outlook crashes when opening shared calendars</p>", top_k=1
    )

    assert result.recommendations[0].max_score == pytest.approx(1.0, abs=1e-4)


@pytest.mark.parametrize("query", ["", "   ", "\n\t", None, "<br/><p></p>"])
def test_empty_query_rejected_without_embedding(engine_factory, search_log, query):
    client = MagicMock()
    store = _mock_store([])
    engine = engine_factory(store, client=client)

    with pytest.raises(ValidationError) as exc_info:
        engine.recommend(query)

    client.embed.assert_not_called()
    store.search.assert_not_called()
    assert exc_info.value.search_id == search_log.entries[-1].search_id
    assert search_log.entries[-1].error.startswith("ValidationError")


@pytest.mark.parametrize("requested, expected", [(None, 5), (0, 1), (-3, 1), (3, 3), (50, 20)])
def test_top_k_clamped(engine_factory, requested, expected):
    engine = engine_factory(_mock_store(_consensus_hits()))

    result = engine.recommend("printer offline", top_k=requested)

    assert len(result.recommendations) == expected


def test_non_integer_top_k_rejected(engine_factory):
    engine = engine_factory(_mock_store([]))
    with pytest.raises(ValidationError):
        engine.recommend("printer offline", top_k="3")


def test_fewer_catalog_items_than_top_k(engine_factory):
    engine = engine_factory(_mock_store([_hit("1", "A", 0.1), _hit("2", "A", 0.2)]))

    result = engine.recommend("printer offline", top_k=5)

    assert len(result.recommendations) == 1


def test_empty_store_returns_no_recommendations(engine_factory):
    result = engine_factory(_mock_store([])).recommend("printer offline")
    assert result.recommendations == []


def test_embedding_failure_becomes_search_error(engine_factory, search_log):
    client = MagicMock()
    client.embed.side_effect = EmbeddingExhaustedError("Embedding failed after 4 attempt(s)", attempts=4)
    engine = engine_factory(_mock_store([]), client=client)

    with pytest.raises(SearchError) as exc_info:
        engine.recommend("printer offline", search_id="search-123")

    assert exc_info.value.search_id == "search-123"
    assert search_log.entries[-1].search_id == "search-123"
    assert "SearchError" in search_log.entries[-1].error


def test_storage_failure_becomes_search_error(engine_factory):
    store = MagicMock()
    store.search.side_effect = PersistenceError("disk I/O error")
    engine = engine_factory(store)

    with pytest.raises(SearchError) as exc_info:
        engine.recommend("printer offline")

    assert exc_info.value.search_id


def test_every_request_is_logged(engine_factory, search_log):
    engine = engine_factory(_mock_store(_consensus_hits()))

    result = engine.recommend("printer offline", top_k=3)
    with pytest.raises(ValidationError):
        engine.recommend("   ")

    assert len(search_log.entries) == 2
    success = search_log.entries[0]
    assert success.search_id == result.search_id
    assert success.result_count == 3
    assert success.top_k == 3
    assert success.error is None


def test_search_log_keeps_requested_top_k(engine_factory, search_log):
    engine = engine_factory(_mock_store(_consensus_hits()))

    result = engine.recommend("printer offline", top_k=50)
    engine.recommend("printer offline")

    assert len(result.recommendations) == 20
    assert [entry.top_k for entry in search_log.entries] == [50, None]


def test_search_log_persisted_to_sqlite(db_path, embedding_client, retrieval_config):
    sink = SqliteSearchLog(db_path)
    engine = RecommendationEngine(_mock_store(_consensus_hits()), embedding_client, retrieval_config,
                                  search_log=sink)

    result = engine.recommend("printer offline", top_k=2)

    [entry] = sink.recent()
    assert entry.search_id == result.search_id
    assert entry.result_count == 2


def test_cancelled_request_returns_nothing(engine_factory):
    store = _mock_store(_consensus_hits())
    engine = engine_factory(store)
    cancel_event = threading.Event()
    cancel_event.set()

    with pytest.raises(OperationCancelledError):
        engine.recommend("printer offline", cancel_event=cancel_event)
    store.search.assert_not_called()


def test_deadline_exceeded_during_embedding(engine_factory, search_log):
    now = [0.0]
    client = MagicMock()

    def slow_embed(text, timeout=None, cancel_event=None):
        now[0] += 10.0
        return [0.1] * 32

    client.embed.side_effect = slow_embed
    store = _mock_store(_consensus_hits())
    engine = engine_factory(store, client=client, clock=lambda: now[0])

    with pytest.raises(OperationTimeoutError) as exc_info:
        engine.recommend("printer offline", timeout=5.0)

    store.search.assert_not_called()
    assert exc_info.value.search_id == search_log.entries[-1].search_id
    assert client.embed.call_args[1]["timeout"] == pytest.approx(5.0)


def test_configured_timeout_used_by_default(engine_factory):
    now = [0.0]
    client = MagicMock()
    client.embed.return_value = [0.1] * 32
    config = RetrievalConfig(timeout=7.0)
    engine = engine_factory(_mock_store([]), client=client, config=config, clock=lambda: now[0])

    engine.recommend("printer offline")

    assert client.embed.call_args[1]["timeout"] == pytest.approx(7.0)


def test_submit_returns_result(engine_factory):
    engine = engine_factory(_mock_store(_consensus_hits()))
    try:
        task = engine.submit("printer offline", top_k=2)
        result = task.result(timeout=10)
    finally:
        engine.shutdown()

    assert task.done()
    assert result.search_id == task.search_id
    assert len(result.recommendations) == 2


def test_task_cancel_mid_search(engine_factory):
    started = threading.Event()
    release = threading.Event()

    def blocking_search(query_vector, k):
        started.set()
        release.wait(10)
        return _consensus_hits()

    store = MagicMock()
    store.search.side_effect = blocking_search
    engine = engine_factory(store)
    try:
        task = engine.submit("printer offline")
        assert started.wait(10)
        task.cancel()
        release.set()

        with pytest.raises(OperationCancelledError):
            task.result(timeout=10)
    finally:
        engine.shutdown()


def test_queue_wait_counts_against_deadline(embedding_client, search_log):
    now = [0.0]
    started = threading.Event()
    release = threading.Event()

    def blocking_search(query_vector, k):
        started.set()
        release.wait(10)
        return _consensus_hits()

    store = MagicMock()
    store.search.side_effect = blocking_search
    engine = RecommendationEngine(store, embedding_client, RetrievalConfig(timeout=0.3),
                                  search_log=search_log, clock=lambda: now[0],
                                  executor=ThreadPoolExecutor(max_workers=1))
    try:
        blocker = engine.submit("printer offline", timeout=None)
        assert started.wait(10)
        queued = engine.submit("printer offline")
        now[0] = 1.0
        release.set()

        assert len(blocker.result(timeout=10).recommendations) == 5
        with pytest.raises(OperationTimeoutError):
            queued.result(timeout=10)
    finally:
        engine.shutdown()

    assert store.search.call_count == 1
    [entry] = [entry for entry in search_log.entries if entry.search_id == queued.search_id]
    assert entry.latency_ms >= 1000
    assert entry.error.startswith("OperationTimeoutError")


def test_result_serialization(engine_factory):
    result = engine_factory(_mock_store(_consensus_hits())).recommend("printer offline", top_k=1)

    payload = result.to_dict()

    assert payload["query"] == "printer offline"
    assert payload["timestamp"].endswith("+00:00")
    assert payload["recommendations"] == [{
        "rank": 1,
        "catalog_item_id": "P",
        "catalog_path": "Services > P",
        "relevance_score": 0.8,
        "frequency": 5,
        "max_score": 0.8,
    }]
