"""
Append-only search request log.
"""

import sqlite3
from datetime import datetime
from abc import ABC, abstractmethod
from typing import List

from util.logging import logger
from .db import get_db, init_db
from .schema import SearchLogRecord


class ISearchLogSink(ABC):
    """Receives one record per recommendation request."""

    @abstractmethod
    def record(self, entry: SearchLogRecord) -> None:
        pass


class LoggerSearchLog(ISearchLogSink):
    """Writes search records to the structured logger only."""

    def record(self, entry: SearchLogRecord) -> None:
        logger.log_search(entry.search_id, entry.top_k, entry.latency_ms, entry.result_count, entry.error)


class SqliteSearchLog(ISearchLogSink):
    """Persists search records to the search_log table and the structured logger."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path
        init_db(db_path)

    def record(self, entry: SearchLogRecord) -> None:
        logger.log_search(entry.search_id, entry.top_k, entry.latency_ms, entry.result_count, entry.error)
        try:
            with get_db(self.db_path) as conn:
                conn.execute(
                    '''
                    INSERT INTO search_log (search_id, query_text, top_k, latency_ms, result_count, error, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ''',
                    (entry.search_id, entry.query_text, entry.top_k, entry.latency_ms,
                     entry.result_count, entry.error, entry.created_at.isoformat()),
                )
        except sqlite3.Error as e:
            # The request itself already succeeded or failed on its own terms
            logger.logger.error(f"Failed to persist search log {entry.search_id}: {e}")

    def recent(self, limit: int = 50) -> List[SearchLogRecord]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM search_log ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            SearchLogRecord(
                search_id=row["search_id"],
                query_text=row["query_text"],
                top_k=row["top_k"],
                latency_ms=row["latency_ms"],
                result_count=row["result_count"],
                error=row["error"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]
