"""
Shared fixtures: a throwaway SQLite database per test and a deterministic
embedding client that never touches the network.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.core.config import BatchConfig, EmbeddingConfig, RetrievalConfig, StoreConfig
from src.core.schema import StagingNarrative
from src.core.staging import StagingRepository
from src.vector.embeddings import DeterministicHashEmbedding, EmbeddingClient
from src.vector.sqlite_store import SqliteVectorStore

TEST_DIMENSION = 32
TEST_MODEL = "hash-embedding"


def no_sleep(seconds):
    pass


def make_narrative(case_id, catalog_item_id="CAT-1", text=None, catalog_path=None):
    return StagingNarrative(
        case_id=case_id,
        catalog_item_id=catalog_item_id,
        catalog_path=catalog_path or f"Services > {catalog_item_id}",
        narrative_text=text if text is not None else f"Narrative for case {case_id}: printer offline after update.",
    )


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "case_recall.db")


@pytest.fixture
def embedding_config():
    return EmbeddingConfig(
        provider="hash",
        model_name=TEST_MODEL,
        dimension=TEST_DIMENSION,
        max_retries=3,
        backoff_base=0.01,
        backoff_max=0.1,
        timeout=5.0,
    )


@pytest.fixture
def embedding_client(embedding_config):
    provider = DeterministicHashEmbedding(dimension=TEST_DIMENSION, model_name=TEST_MODEL)
    return EmbeddingClient(provider, embedding_config, sleep=no_sleep)


@pytest.fixture
def store_config(db_path, tmp_path):
    return StoreConfig(
        db_path=db_path,
        model_name=TEST_MODEL,
        dimension=TEST_DIMENSION,
        index_path=str(tmp_path / "index.faiss"),
        target_accuracy=95.0,
    )


@pytest.fixture
def vector_store(store_config):
    return SqliteVectorStore(store_config)


@pytest.fixture
def staging(db_path):
    return StagingRepository(db_path)


@pytest.fixture
def batch_config(db_path):
    return BatchConfig(db_path=db_path, batch_size=10, inter_call_delay=0.0, lease_seconds=60.0)


@pytest.fixture
def retrieval_config():
    return RetrievalConfig(candidate_count=100, default_top_k=5, max_top_k=20, timeout=None)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, db_path, tmp_path):
    """Keep tests away from any real database or API key in the environment."""
    monkeypatch.setenv("DB_PATH", db_path)
    monkeypatch.setenv("INDEX_PATH", str(tmp_path / "index.faiss"))
    monkeypatch.delenv("RECOMMEND_API_KEY", raising=False)
    monkeypatch.setenv("EMBED_PROVIDER", "hash")
    monkeypatch.setenv("EMBED_MODEL_NAME", TEST_MODEL)
    monkeypatch.setenv("EMBED_DIMENSION", str(TEST_DIMENSION))
    monkeypatch.setenv("VECTOR_PROVIDER", "sqlite")


@pytest.fixture
def narrative():
    return make_narrative
