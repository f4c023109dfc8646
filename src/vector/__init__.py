"""
Knowledge vector storage, ANN indexing and embedding providers.
"""

# Package initialization for vector module
from .index import IVectorStore, InMemoryVectorStore
from .sqlite_store import SqliteVectorStore
from .faiss_index import FaissAnnIndex
from .types import KnowledgeVector, VectorHit
from .embeddings import IEmbeddingProvider, DeterministicHashEmbedding, HttpEmbeddingProvider, EmbeddingClient

__all__ = [
    'IVectorStore',
    'InMemoryVectorStore',
    'SqliteVectorStore',
    'FaissAnnIndex',
    'KnowledgeVector',
    'VectorHit',
    'IEmbeddingProvider',
    'DeterministicHashEmbedding',
    'HttpEmbeddingProvider',
    'EmbeddingClient',
]
