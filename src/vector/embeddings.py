"""
Embedding providers and the retrying embedding client.

Providers make a single call and classify its failure as transient or fatal.
``EmbeddingClient`` owns the retry/backoff policy, dimension validation and
per-call reporting.
"""

import hashlib
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

import numpy as np
import requests
from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from util.logging import logger
from ..core.config import EmbeddingConfig
from ..core.errors import (
    EmbeddingError,
    EmbeddingExhaustedError,
    EmbeddingFatalError,
    EmbeddingTransientError,
    OperationCancelledError,
    OperationTimeoutError,
)

# Request timeout, gateway/service unavailability and rate limiting
TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}


class IEmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    model_name: str = "unknown"

    @abstractmethod
    def embed_text(self, text: str, timeout: Optional[float] = None) -> List[float]:
        """Generate embedding vector for given text."""
        pass

    @abstractmethod
    def get_dimension(self) -> Optional[int]:
        """Get the dimension of the embedding vectors, if known up front."""
        pass


class DeterministicHashEmbedding(IEmbeddingProvider):
    """Deterministic hash-based embedding provider for tests and offline use.

    The text's SHA-256 digest seeds a generator that draws a unit-length
    vector, so identical text always yields an identical vector and distinct
    texts are close to orthogonal.
    """

    def __init__(self, dimension: int = 384, model_name: str = "hash-embedding"):
        self.dimension = dimension
        self.model_name = model_name

    def embed_text(self, text: str, timeout: Optional[float] = None) -> List[float]:
        """Generate deterministic embedding vector using hash function."""
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        rng = np.random.default_rng(int.from_bytes(digest[:8], "big"))
        vector = rng.standard_normal(self.dimension)
        return (vector / np.linalg.norm(vector)).tolist()

    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        return self.dimension


class HttpEmbeddingProvider(IEmbeddingProvider):
    """Calls a remote embedding endpoint over HTTP.

    Request body is ``{"model": ..., "input": ...}``; the response may be
    ``{"embedding": [...]}`` or the list form ``{"data": [{"embedding": [...]}]}``.
    """

    def __init__(self, api_url: str, model_name: str, api_key: Optional[str] = None, timeout: float = 30.0):
        self.api_url = api_url
        self.model_name = model_name
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self):
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def embed_text(self, text: str, timeout: Optional[float] = None) -> List[float]:
        try:
            response = requests.post(
                self.api_url,
                json={"model": self.model_name, "input": text},
                headers=self._headers(),
                timeout=timeout if timeout is not None else self.timeout,
            )
        except requests.Timeout as e:
            raise EmbeddingTransientError(f"Embedding request timed out: {e}") from e
        except requests.ConnectionError as e:
            raise EmbeddingTransientError(f"Embedding provider unreachable: {e}") from e
        except requests.RequestException as e:
            raise EmbeddingFatalError(f"Embedding request failed: {e}") from e

        if response.status_code in TRANSIENT_STATUS_CODES:
            raise EmbeddingTransientError(
                f"Embedding provider returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise EmbeddingFatalError(
                f"Embedding provider rejected request with HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise EmbeddingFatalError("Embedding provider returned malformed JSON") from e

        return self._extract_vector(payload)

    @staticmethod
    def _extract_vector(payload) -> List[float]:
        if isinstance(payload, dict):
            if "embedding" in payload:
                return payload["embedding"]
            data = payload.get("data")
            if isinstance(data, list) and data and isinstance(data[0], dict) and "embedding" in data[0]:
                return data[0]["embedding"]
        raise EmbeddingFatalError("Embedding provider response has no embedding vector")

    def get_dimension(self) -> Optional[int]:
        return None


class EmbeddingClient:
    """
    Wraps an embedding provider with bounded retry and exponential backoff.

    Transient failures are retried up to ``max_retries`` more times with the
    delay doubling from ``backoff_base``; fatal failures are raised on the first
    attempt. Every call is logged with its latency, attempt count and outcome.
    """

    def __init__(self, provider: IEmbeddingProvider, config: EmbeddingConfig = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.provider = provider
        self.config = config or EmbeddingConfig()
        self._sleep = sleep
        self._clock = clock

    @property
    def model_name(self) -> str:
        return getattr(self.provider, "model_name", self.config.model_name)

    @property
    def dimension(self) -> int:
        return self.config.dimension

    def embed(self, text: str, timeout: Optional[float] = None,
              cancel_event: Optional[threading.Event] = None) -> List[float]:
        """
        Embed already-normalized text.

        Args:
            text: Normalized text to embed
            timeout: Overall budget in seconds across all attempts and backoff
            cancel_event: When set, the call stops before the next attempt

        Returns:
            The embedding vector

        Raises:
            EmbeddingFatalError, EmbeddingExhaustedError, OperationTimeoutError,
            OperationCancelledError
        """
        start = self._clock()
        deadline = start + timeout if timeout is not None else None
        max_attempts = self.config.max_retries + 1
        attempts = 0
        outcome = "success"
        error_text = None
        backoff = wait_exponential(multiplier=self.config.backoff_base, max=self.config.backoff_max)

        def backoff_passes_deadline(retry_state) -> bool:
            return deadline is not None and self._clock() + backoff(retry_state) >= deadline

        def pause(seconds: float) -> None:
            if cancel_event is None:
                self._sleep(seconds)
            elif cancel_event.wait(seconds):
                raise OperationCancelledError("Embedding call cancelled")

        retrying = Retrying(
            retry=retry_if_exception_type(EmbeddingTransientError),
            stop=stop_after_attempt(max_attempts) | backoff_passes_deadline,
            wait=backoff,
            sleep=pause,
            before_sleep=self._log_retry,
        )

        try:
            try:
                for attempt in retrying:
                    with attempt:
                        if cancel_event is not None and cancel_event.is_set():
                            raise OperationCancelledError("Embedding call cancelled")
                        attempts += 1
                        vector = self._validate(
                            self.provider.embed_text(text, timeout=self._request_timeout(deadline))
                        )
            except RetryError as e:
                last_error = e.last_attempt.exception()
                if attempts < max_attempts:
                    raise OperationTimeoutError(
                        f"Embedding deadline exceeded after {attempts} attempt(s)"
                    ) from last_error
                raise EmbeddingExhaustedError(
                    f"Embedding failed after {attempts} attempt(s): {last_error}",
                    attempts=attempts,
                    last_error=last_error,
                ) from last_error
            return vector
        except EmbeddingExhaustedError as e:
            outcome, error_text = "exhausted", e.message
            raise
        except EmbeddingFatalError as e:
            outcome, error_text = "fatal", e.message
            raise
        except OperationTimeoutError as e:
            outcome, error_text = "timeout", e.message
            raise
        except OperationCancelledError as e:
            outcome, error_text = "cancelled", e.message
            raise
        except Exception as e:
            outcome, error_text = "error", str(e)
            raise
        finally:
            details = {"error": error_text} if error_text else None
            logger.log_embedding_call(
                self.model_name,
                (self._clock() - start) * 1000,
                outcome,
                attempts,
                details,
            )

    def _log_retry(self, retry_state) -> None:
        logger.log_embedding_retry(
            self.model_name,
            retry_state.attempt_number,
            retry_state.next_action.sleep,
            str(retry_state.outcome.exception()),
        )

    def _request_timeout(self, deadline: Optional[float]) -> float:
        if deadline is None:
            return self.config.timeout
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise OperationTimeoutError("Embedding deadline exceeded")
        return min(self.config.timeout, remaining)

    def _validate(self, vector) -> List[float]:
        try:
            array = np.asarray(vector, dtype=np.float32).reshape(-1)
        except (TypeError, ValueError) as e:
            raise EmbeddingFatalError("Embedding vector is not numeric") from e

        if self.config.dimension and array.shape[0] != self.config.dimension:
            raise EmbeddingFatalError(
                f"Embedding dimension {array.shape[0]} does not match configured dimension {self.config.dimension}"
            )
        if not np.all(np.isfinite(array)):
            raise EmbeddingFatalError("Embedding vector contains non-finite values")

        return array.tolist()


__all__ = [
    "IEmbeddingProvider",
    "DeterministicHashEmbedding",
    "HttpEmbeddingProvider",
    "EmbeddingClient",
    "EmbeddingError",
    "TRANSIENT_STATUS_CODES",
]
