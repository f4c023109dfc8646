"""
Runtime configuration.

Module-level values are read from the environment at import; the config
dataclasses re-read it in ``from_env()`` so components built later (and tests
that patch the environment) see current values. Components receive their
config object at construction time.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/case_recall.db")

# Vector store configuration
VECTOR_PROVIDER = os.getenv("VECTOR_PROVIDER", "sqlite")  # sqlite|memory
INDEX_PATH = os.getenv("INDEX_PATH", "./data/knowledge_vectors.faiss")

VALID_EMBED_PROVIDERS = ["http", "hash", "local"]
VALID_VECTOR_PROVIDERS = ["sqlite", "memory"]

# Model name and dimension used when EMBED_MODEL_NAME / EMBED_DIMENSION are unset
EMBED_MODEL_DEFAULTS = {
    "http": ("text-embedding-3-small", 1536),
    "local": ("all-MiniLM-L6-v2", 384),
}

# Version string
VERSION = "1.0.0"


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_embedding_model():
    """Model name and dimension from the environment, defaulted per provider."""
    provider = os.getenv("EMBED_PROVIDER", "http")
    model_name, dimension = EMBED_MODEL_DEFAULTS.get(provider, EMBED_MODEL_DEFAULTS["http"])
    return os.getenv("EMBED_MODEL_NAME", model_name), _env_int("EMBED_DIMENSION", dimension)


@dataclass
class EmbeddingConfig:
    """Embedding provider endpoint, credential and retry policy."""

    provider: str = "http"
    api_url: str = "http://localhost:8080/v1/embeddings"
    api_key: Optional[str] = None
    model_name: str = "text-embedding-3-small"
    dimension: int = 1536
    timeout: float = 30.0
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        model_name, dimension = _env_embedding_model()
        return cls(
            provider=os.getenv("EMBED_PROVIDER", "http"),
            api_url=os.getenv("EMBED_API_URL", "http://localhost:8080/v1/embeddings"),
            api_key=os.getenv("EMBED_API_KEY"),
            model_name=model_name,
            dimension=dimension,
            timeout=_env_float("EMBED_TIMEOUT_SEC", 30.0),
            max_retries=_env_int("EMBED_MAX_RETRIES", 3),
            backoff_base=_env_float("EMBED_BACKOFF_BASE_SEC", 1.0),
            backoff_max=_env_float("EMBED_BACKOFF_MAX_SEC", 30.0),
        )


@dataclass
class BatchConfig:
    """Batch processor sizing, throttling and lease settings."""

    db_path: str = DB_PATH
    batch_size: int = 50
    max_batch_size: int = 1000
    inter_call_delay: float = 0.2
    lease_seconds: float = 600.0

    @classmethod
    def from_env(cls) -> "BatchConfig":
        return cls(
            db_path=os.getenv("DB_PATH", DB_PATH),
            batch_size=_env_int("BATCH_SIZE", 50),
            max_batch_size=_env_int("BATCH_MAX_SIZE", 1000),
            inter_call_delay=_env_float("BATCH_INTER_CALL_DELAY_SEC", 0.2),
            lease_seconds=_env_float("BATCH_LEASE_SEC", 600.0),
        )


@dataclass
class RetrievalConfig:
    """Recommendation engine oversampling and result bounds."""

    candidate_count: int = 100
    default_top_k: int = 5
    min_top_k: int = 1
    max_top_k: int = 20
    timeout: Optional[float] = 30.0

    @classmethod
    def from_env(cls) -> "RetrievalConfig":
        timeout = _env_float("RECOMMEND_TIMEOUT_SEC", 30.0)
        return cls(
            candidate_count=_env_int("RECOMMEND_CANDIDATE_COUNT", 100),
            default_top_k=_env_int("RECOMMEND_DEFAULT_TOP_K", 5),
            max_top_k=_env_int("RECOMMEND_MAX_TOP_K", 20),
            timeout=timeout if timeout > 0 else None,
        )


@dataclass
class StoreConfig:
    """Vector store location, model binding and ANN index settings."""

    db_path: str = DB_PATH
    model_name: str = "text-embedding-3-small"
    dimension: Optional[int] = None
    index_path: str = INDEX_PATH
    target_accuracy: float = 95.0

    @classmethod
    def from_env(cls) -> "StoreConfig":
        model_name, dimension = _env_embedding_model()
        return cls(
            db_path=os.getenv("DB_PATH", DB_PATH),
            model_name=model_name,
            dimension=dimension,
            index_path=os.getenv("INDEX_PATH", INDEX_PATH),
            target_accuracy=_env_float("INDEX_TARGET_ACCURACY", 95.0),
        )


def get_vector_store(config: StoreConfig = None):
    """Get configured vector store implementation."""
    config = config or StoreConfig.from_env()
    provider = os.getenv("VECTOR_PROVIDER", VECTOR_PROVIDER)

    if provider == "memory":
        from src.vector.index import InMemoryVectorStore
        return InMemoryVectorStore(model_name=config.model_name, dimension=config.dimension)

    from src.vector.sqlite_store import SqliteVectorStore
    return SqliteVectorStore(config)


def get_embedding_provider(config: EmbeddingConfig = None):
    """Get configured embedding provider implementation."""
    config = config or EmbeddingConfig.from_env()

    if config.provider == "hash":
        from src.vector.embeddings import DeterministicHashEmbedding
        return DeterministicHashEmbedding(dimension=config.dimension, model_name=config.model_name)
    elif config.provider == "local":
        from src.vector.st_embeddings import SentenceTransformerEmbedding
        return SentenceTransformerEmbedding(config.model_name)
    else:
        from src.vector.embeddings import HttpEmbeddingProvider
        return HttpEmbeddingProvider(
            api_url=config.api_url,
            model_name=config.model_name,
            api_key=config.api_key,
        )


def get_embedding_client(config: EmbeddingConfig = None):
    """Get an embedding client wrapping the configured provider with retry policy."""
    config = config or EmbeddingConfig.from_env()
    from src.vector.embeddings import EmbeddingClient
    return EmbeddingClient(get_embedding_provider(config), config)


def get_recommend_api_key() -> Optional[str]:
    """API key required by the recommendation endpoint; None disables the check."""
    return os.getenv("RECOMMEND_API_KEY") or None


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def validate_config():
    """Validate runtime configuration and return any issues."""
    issues = []
    embedding = EmbeddingConfig.from_env()
    batch = BatchConfig.from_env()
    retrieval = RetrievalConfig.from_env()
    store = StoreConfig.from_env()

    if embedding.provider not in VALID_EMBED_PROVIDERS:
        issues.append(f"Invalid EMBED_PROVIDER: {embedding.provider}")

    if embedding.provider == "http" and not embedding.api_key:
        issues.append("EMBED_API_KEY is required when EMBED_PROVIDER=http")

    if embedding.provider == "local" and embedding.model_name == EMBED_MODEL_DEFAULTS["http"][0]:
        issues.append(f"EMBED_MODEL_NAME {embedding.model_name} is not a sentence-transformers model")

    if embedding.dimension < 1:
        issues.append("EMBED_DIMENSION must be >= 1")

    if embedding.max_retries < 0:
        issues.append("EMBED_MAX_RETRIES must be >= 0")

    if os.getenv("VECTOR_PROVIDER", VECTOR_PROVIDER) not in VALID_VECTOR_PROVIDERS:
        issues.append(f"Invalid VECTOR_PROVIDER: {os.getenv('VECTOR_PROVIDER')}")

    if not 1 <= batch.batch_size <= batch.max_batch_size:
        issues.append(f"BATCH_SIZE must be between 1 and {batch.max_batch_size}")

    if batch.inter_call_delay < 0:
        issues.append("BATCH_INTER_CALL_DELAY_SEC must be >= 0")

    if retrieval.candidate_count < retrieval.max_top_k:
        issues.append("RECOMMEND_CANDIDATE_COUNT must be >= RECOMMEND_MAX_TOP_K")

    if not 0 < store.target_accuracy <= 100:
        issues.append("INDEX_TARGET_ACCURACY must be in (0, 100]")

    return issues
