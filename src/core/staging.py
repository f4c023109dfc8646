"""
Staging narrative access: the claim primitive over the pending set and the
state transitions written back by the batch processor.

A claim stamps a fresh token and lease expiry on pending rows inside one
BEGIN IMMEDIATE transaction, so concurrent workers (threads or processes)
never receive the same row. A row whose lease expires without a state
transition (worker crash) becomes claimable again.
"""

import sqlite3
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from util.logging import logger
from .db import get_db, immediate_transaction, init_db
from .errors import PersistenceError
from .schema import ProcessingState, StagingNarrative


def _row_to_narrative(row: sqlite3.Row) -> StagingNarrative:
    processed_at = row["processed_at"]
    return StagingNarrative(
        case_id=row["case_id"],
        catalog_item_id=row["catalog_item_id"],
        catalog_path=row["catalog_path"],
        narrative_text=row["narrative_text"],
        processing_state=row["processing_state"],
        processed_at=datetime.fromisoformat(processed_at) if processed_at else None,
        error_message=row["error_message"],
    )


class StagingRepository:
    """Reads and transitions rows of the staging narrative feed."""

    def __init__(self, db_path: str = None, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self._clock = clock
        init_db(db_path)

    def insert_narratives(self, narratives: Iterable[StagingNarrative]) -> int:
        """Load rows from the upstream extraction; a re-fed case id returns to pending."""
        rows = [
            (n.case_id, n.catalog_item_id, n.catalog_path, n.narrative_text)
            for n in narratives
        ]
        if not rows:
            return 0

        with get_db(self.db_path) as conn:
            with immediate_transaction(conn):
                conn.executemany(
                    '''
                    INSERT INTO staging_narratives (case_id, catalog_item_id, catalog_path, narrative_text, processing_state)
                    VALUES (?, ?, ?, ?, 'pending')
                    ON CONFLICT(case_id) DO UPDATE SET
                        catalog_item_id = excluded.catalog_item_id,
                        catalog_path = excluded.catalog_path,
                        narrative_text = excluded.narrative_text,
                        processing_state = 'pending',
                        processed_at = NULL,
                        claim_token = NULL,
                        lease_expires_at = NULL,
                        error_message = NULL
                    ''',
                    rows,
                )
        return len(rows)

    def claim(self, batch_size: int, lease_seconds: float) -> Tuple[str, List[StagingNarrative]]:
        """
        Atomically claim up to ``batch_size`` pending, unleased rows.

        Returns:
            The claim token and the claimed rows in case id order
        """
        token = uuid.uuid4().hex
        now = self._clock()

        with get_db(self.db_path) as conn:
            with immediate_transaction(conn):
                conn.execute(
                    '''
                    UPDATE staging_narratives
                    SET claim_token = ?, lease_expires_at = ?
                    WHERE case_id IN (
                        SELECT case_id FROM staging_narratives
                        WHERE processing_state = 'pending'
                          AND (claim_token IS NULL OR lease_expires_at IS NULL OR lease_expires_at < ?)
                        ORDER BY case_id
                        LIMIT ?
                    )
                    ''',
                    (token, now + lease_seconds, now, batch_size),
                )
                rows = conn.execute(
                    "SELECT * FROM staging_narratives WHERE claim_token = ? ORDER BY case_id",
                    (token,),
                ).fetchall()

        claimed = [_row_to_narrative(row) for row in rows]
        logger.log_claim(token, batch_size, len(claimed))
        return token, claimed

    def renew_lease(self, token: str, case_id: str, lease_seconds: float) -> bool:
        """
        Extend the lease on every row still pending under ``token``.

        Returns:
            True if ``case_id`` is still held by ``token``; False if the lease
            lapsed and another worker claimed it, or it left the pending state.
        """
        with get_db(self.db_path) as conn:
            with immediate_transaction(conn):
                conn.execute(
                    '''
                    UPDATE staging_narratives SET lease_expires_at = ?
                    WHERE claim_token = ? AND processing_state = 'pending'
                    ''',
                    (self._clock() + lease_seconds, token),
                )
                row = conn.execute(
                    '''
                    SELECT 1 FROM staging_narratives
                    WHERE case_id = ? AND claim_token = ? AND processing_state = 'pending'
                    ''',
                    (case_id, token),
                ).fetchone()
        return row is not None

    def _transition(self, case_id: str, token: str, state: str, error_message: Optional[str]) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.execute(
                    '''
                    UPDATE staging_narratives
                    SET processing_state = ?, processed_at = ?, error_message = ?,
                        claim_token = NULL, lease_expires_at = NULL
                    WHERE case_id = ? AND claim_token = ? AND processing_state = 'pending'
                    ''',
                    (state, now, error_message, case_id, token),
                )
                return cursor.rowcount == 1
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to mark case {case_id} as {state}: {e}") from e

    def mark_done(self, case_id: str, token: str) -> bool:
        """Transition a claimed row to done; False if the claim was lost."""
        return self._transition(case_id, token, ProcessingState.DONE, None)

    def mark_error(self, case_id: str, token: str, error_message: str) -> bool:
        """Transition a claimed row to error; False if the claim was lost."""
        return self._transition(case_id, token, ProcessingState.ERROR, error_message[:1000])

    def release(self, token: str, case_ids: Sequence[str] = None) -> int:
        """Return still-pending claimed rows to the pool without a state change."""
        query = '''
            UPDATE staging_narratives SET claim_token = NULL, lease_expires_at = NULL
            WHERE claim_token = ? AND processing_state = 'pending'
        '''
        params: list = [token]
        if case_ids is not None:
            if not case_ids:
                return 0
            query += f" AND case_id IN ({','.join('?' for _ in case_ids)})"
            params.extend(case_ids)

        with get_db(self.db_path) as conn:
            return conn.execute(query, params).rowcount

    def reset_errors(self, case_ids: Sequence[str] = None) -> int:
        """Explicit error -> pending reset for the given (or all) error rows."""
        query = '''
            UPDATE staging_narratives
            SET processing_state = 'pending', processed_at = NULL, error_message = NULL,
                claim_token = NULL, lease_expires_at = NULL
            WHERE processing_state = 'error'
        '''
        params: list = []
        if case_ids is not None:
            if not case_ids:
                return 0
            query += f" AND case_id IN ({','.join('?' for _ in case_ids)})"
            params.extend(case_ids)

        with get_db(self.db_path) as conn:
            count = conn.execute(query, params).rowcount

        logger.log_operation("batch.reset_errors", "success", {"reset": count})
        return count

    def get(self, case_id: str) -> Optional[StagingNarrative]:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM staging_narratives WHERE case_id = ?", (case_id,)
            ).fetchone()
        return _row_to_narrative(row) if row else None

    def list_by_state(self, state: str, limit: int = 100) -> List[StagingNarrative]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM staging_narratives WHERE processing_state = ? ORDER BY case_id LIMIT ?",
                (state, limit),
            ).fetchall()
        return [_row_to_narrative(row) for row in rows]

    def count_by_state(self) -> Dict[str, int]:
        counts = {state: 0 for state in ProcessingState.ALL}
        with get_db(self.db_path) as conn:
            for row in conn.execute(
                "SELECT processing_state, COUNT(*) AS n FROM staging_narratives GROUP BY processing_state"
            ):
                counts[row["processing_state"]] = row["n"]
        return counts

    def count_pending(self) -> int:
        with get_db(self.db_path) as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM staging_narratives WHERE processing_state = 'pending'"
            ).fetchone()[0]
