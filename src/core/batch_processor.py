"""
Drains pending staging narratives into knowledge vector rows.

Each claimed record is normalized, embedded, upserted and marked done on its
own, so a failure or crash costs at most the in-flight record. Failed records
are marked error and left for an explicit reset.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from util.logging import logger
from .config import BatchConfig
from .errors import CaseRecallError, OperationTimeoutError, PersistenceError, ValidationError
from .normalizer import normalize_text
from .schema import BatchResult, StagingNarrative
from .staging import StagingRepository


class BatchProcessor:
    """Claims pending narratives and turns them into knowledge vectors."""

    def __init__(self, staging: StagingRepository, vector_store, embedding_client,
                 config: BatchConfig = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.staging = staging
        self.vector_store = vector_store
        self.embedding_client = embedding_client
        self.config = config or BatchConfig()
        self._sleep = sleep
        self._clock = clock

    def _validate_batch_size(self, batch_size) -> int:
        if batch_size is None:
            batch_size = self.config.batch_size
        if isinstance(batch_size, bool) or not isinstance(batch_size, int):
            raise ValidationError(f"batch_size must be an integer, got {batch_size!r}")
        if not 1 <= batch_size <= self.config.max_batch_size:
            raise ValidationError(f"batch_size must be between 1 and {self.config.max_batch_size}")
        return batch_size

    def _remaining(self, deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise OperationTimeoutError("Batch deadline exceeded")
        return remaining

    def process_batch(self, batch_size: int = None, timeout: float = None) -> BatchResult:
        """
        Claim and process up to ``batch_size`` pending narratives.

        Args:
            batch_size: Maximum records to claim; defaults to the configured size
            timeout: Overall deadline in seconds for the whole batch

        Returns:
            BatchResult with processed, errored and remaining-pending counts

        Raises:
            ValidationError: malformed batch_size
            OperationTimeoutError: deadline exceeded; unprocessed claims are
                released and the partial BatchResult is attached
        """
        batch_size = self._validate_batch_size(batch_size)
        start = self._clock()
        deadline = start + timeout if timeout is not None else None

        token, claimed = self.staging.claim(batch_size, self.config.lease_seconds)
        result = BatchResult(claimed=len(claimed))

        try:
            for position, record in enumerate(claimed):
                if position > 0 and self.config.inter_call_delay > 0:
                    remaining = self._remaining(deadline)
                    delay = self.config.inter_call_delay
                    self._sleep(delay if remaining is None else min(delay, remaining))

                outcome = self._process_record(token, record, self._remaining(deadline))
                if outcome is None:
                    result.lost += 1
                elif outcome:
                    result.processed += 1
                else:
                    result.errored += 1
        except OperationTimeoutError as e:
            released = self.staging.release(token)
            result.timed_out = True
            result.remaining_pending = self.staging.count_pending()
            logger.log_batch_summary(result.processed, result.errored, result.remaining_pending,
                                     (self._clock() - start) * 1000, status="timeout")
            raise OperationTimeoutError(
                f"Batch deadline exceeded; released {released} unprocessed record(s)",
                partial_result=result,
            ) from e

        result.remaining_pending = self.staging.count_pending()
        logger.log_batch_summary(result.processed, result.errored, result.remaining_pending,
                                 (self._clock() - start) * 1000)
        return result

    def _process_record(self, token: str, record: StagingNarrative, timeout: Optional[float]) -> Optional[bool]:
        """
        Embed and persist one record.

        Returns True when it reached done, False when it was marked error and
        None when the claim on it was lost to another worker.
        """
        # Heartbeat: keeps the unreached rows of this batch leased to us
        if not self.staging.renew_lease(token, record.case_id, self.config.lease_seconds):
            logger.log_batch_record(record.case_id, "claim_lost", {"stage": "renew"})
            return None

        text = normalize_text(record.narrative_text)

        try:
            if not text:
                raise ValidationError("Narrative is empty after normalization")
            vector = self.embedding_client.embed(text, timeout=timeout)
            self.vector_store.upsert(
                record.case_id, record.catalog_item_id, record.catalog_path, text, vector
            )
        except OperationTimeoutError:
            raise
        except CaseRecallError as e:
            error_message = f"{type(e).__name__}: {e.message}"
        except Exception as e:
            # Unclassified failures still only cost this record
            error_message = f"{type(e).__name__}: {e}"
        else:
            return self._transition(record.case_id, token, None)

        return self._transition(record.case_id, token, error_message)

    def _transition(self, case_id: str, token: str, error_message: Optional[str]) -> Optional[bool]:
        """Write back done (no error) or error; an unwritable row stays leased until expiry."""
        state = "error" if error_message else "done"
        try:
            if error_message:
                transitioned = self.staging.mark_error(case_id, token, error_message)
            else:
                transitioned = self.staging.mark_done(case_id, token)
        except PersistenceError as e:
            logger.log_batch_record(case_id, "error", {"error": e.message, "state": state})
            return False

        if not transitioned:
            logger.log_batch_record(case_id, "claim_lost", {"state": state})
            return None
        if error_message:
            logger.log_batch_record(case_id, "error", {"error": error_message})
        else:
            logger.log_batch_record(case_id, "done")
        return not error_message

    def reset_errors(self, case_ids=None) -> int:
        """Return error records to pending; nothing is retried without this."""
        return self.staging.reset_errors(case_ids)


def drain_backlog(processor: BatchProcessor, batch_size: int = None, workers: int = 1,
                  max_batches: int = None, timeout: float = None) -> BatchResult:
    """
    Invoke ``process_batch`` from ``workers`` threads until the backlog is empty.

    A worker stops when its claim comes back empty, remaining-pending reaches
    zero, or ``max_batches`` batches have run across all workers.
    """
    if workers < 1:
        raise ValidationError("workers must be >= 1")

    totals = BatchResult()
    lock = threading.Lock()
    batches_run = [0]

    def worker():
        while True:
            with lock:
                if max_batches is not None and batches_run[0] >= max_batches:
                    return
                batches_run[0] += 1

            result = processor.process_batch(batch_size, timeout=timeout)

            with lock:
                totals.processed += result.processed
                totals.errored += result.errored
                totals.lost += result.lost
                totals.claimed += result.claimed

            if result.claimed == 0 or result.remaining_pending == 0:
                return

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="batch-worker") as executor:
        futures = [executor.submit(worker) for _ in range(workers)]
        for future in futures:
            future.result()

    totals.remaining_pending = processor.staging.count_pending()
    return totals
