"""
Local sentence-transformers embedding provider.

Kept in its own module so the model stack is only imported when
EMBED_PROVIDER=local.
"""

from typing import List, Optional

from sentence_transformers import SentenceTransformer

from ..core.errors import EmbeddingFatalError
from .embeddings import IEmbeddingProvider


class SentenceTransformerEmbedding(IEmbeddingProvider):
    """Sentence transformers embedding provider using pre-trained models."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model = None
        self._dimension = None

    @property
    def model(self):
        if self._model is None:
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed_text(self, text: str, timeout: Optional[float] = None) -> List[float]:
        """Generate embedding vector using sentence transformers."""
        try:
            embedding = self.model.encode(text, convert_to_tensor=False, normalize_embeddings=True)
        except (RuntimeError, ValueError, OSError) as e:
            raise EmbeddingFatalError(f"Local embedding model failed: {e}") from e
        return embedding.tolist()

    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        if self._dimension is None:
            self._dimension = self.model.get_sentence_embedding_dimension()
        return self._dimension
