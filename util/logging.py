"""
Structured operation logging for the embedding pipeline and recommendation engine.
"""

import logging
from typing import Any, Dict, List


class StructuredLogger:
    """Structured logger for batch, embedding, index and search operations."""

    def __init__(self, name: str = "case_recall"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        if status in ("failed", "error", "fatal", "exhausted", "timeout"):
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_embedding_call(self, model: str, latency_ms: float, outcome: str, attempts: int, details: Dict[str, Any] = None):
        """Log one embedding client call (all attempts included)."""
        log_details = {
            "model": model,
            "latency_ms": round(latency_ms, 2),
            "attempts": attempts,
        }
        if details:
            log_details.update(sanitize_payload(details))

        self.log_operation("embedding.call", outcome, log_details)

    def log_embedding_retry(self, model: str, attempt: int, delay: float, error: str):
        """Log a transient failure that will be retried."""
        self.log_operation("embedding.retry", "retrying", {
            "model": model,
            "attempt": attempt,
            "delay_seconds": round(delay, 3),
            "error": error[:100],
        })

    def log_claim(self, claim_token: str, requested: int, claimed: int):
        """Log a claim over the pending narrative set."""
        self.log_operation("batch.claim", "success", {
            "claim_token": claim_token,
            "requested": requested,
            "claimed": claimed,
        })

    def log_batch_record(self, case_id: str, status: str, details: Dict[str, Any] = None):
        """Log processing of a single staging narrative."""
        log_details = {"case_id": case_id}
        if details:
            log_details.update(sanitize_payload(details))

        self.log_operation("batch.record", status, log_details)

    def log_batch_summary(self, processed: int, errored: int, remaining_pending: int, duration_ms: float, status: str = "success"):
        """Log the outcome of one process_batch invocation."""
        self.log_operation("batch.summary", status, {
            "processed": processed,
            "errored": errored,
            "remaining_pending": remaining_pending,
            "duration_ms": round(duration_ms, 2),
        })

    def log_vector_operation(self, operation: str, record_id: str, details: Dict[str, Any] = None, status: str = "success"):
        """Log a vector operation."""
        log_details = {"record_id": record_id}
        if details:
            log_details.update(details)

        self.log_operation(f"vector.{operation}", status, log_details)

    def log_index_build(self, index_type: str, vector_count: int, start_time: float, end_time: float, details: Dict[str, Any] = None):
        """Log ANN index construction."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {
            "index_type": index_type,
            "vector_count": vector_count,
            "duration_ms": duration_ms,
        }
        if details:
            log_details.update(details)

        self.log_operation("vector.index_build", "success", log_details)

    def log_search(self, search_id: str, top_k: int, latency_ms: float, result_count: int, error: str = None):
        """Log a recommendation request."""
        log_details = {
            "search_id": search_id,
            "top_k": top_k,
            "latency_ms": round(latency_ms, 2),
            "result_count": result_count,
        }
        if error:
            log_details["error"] = error[:100]

        self.log_operation("search.recommend", "failed" if error else "success", log_details)


# Global logger instance
logger = StructuredLogger()


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for logging; free text fields are redacted or truncated."""
    if sensitive_fields is None:
        sensitive_fields = ['narrative', 'narrative_text', 'query', 'query_text', 'api_key', 'secret', 'password']

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
