"""
SQLite persistence for staging narratives, knowledge vectors and the search log.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator
from .config import DB_PATH, ensure_db_directory

REQUIRED_TABLES = ['staging_narratives', 'knowledge_vectors', 'search_log']


@contextmanager
def get_db(db_path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    # Autocommit; writes that must be atomic use immediate_transaction()
    conn = sqlite3.connect(db_path or DB_PATH, timeout=30.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 30000")
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def immediate_transaction(conn: sqlite3.Connection) -> Generator[sqlite3.Connection, None, None]:
    """Run a block under BEGIN IMMEDIATE, taking the write lock up front."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def init_db(db_path: str = None):
    """Initialize the database with required tables."""
    ensure_db_directory(db_path)

    with get_db(db_path) as conn:
        cursor = conn.cursor()

        # WAL lets readers proceed while a batch worker writes
        cursor.execute("PRAGMA journal_mode=WAL")

        # Staging feed, populated upstream and drained by the batch processor
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS staging_narratives (
                case_id TEXT PRIMARY KEY,
                catalog_item_id TEXT NOT NULL,
                catalog_path TEXT,
                narrative_text TEXT,
                processing_state TEXT NOT NULL DEFAULT 'pending',
                processed_at TIMESTAMP,
                claim_token TEXT,
                lease_expires_at REAL,
                error_message TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS knowledge_vectors (
                case_id TEXT PRIMARY KEY,
                catalog_item_id TEXT NOT NULL,
                catalog_path TEXT,
                narrative_text TEXT,
                vector BLOB NOT NULL,
                dimension INTEGER NOT NULL,
                embedding_model TEXT NOT NULL,
                revision INTEGER NOT NULL,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        ''')

        # Append-only request log
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS search_log (
                search_id TEXT PRIMARY KEY,
                query_text TEXT,
                top_k INTEGER,
                latency_ms REAL,
                result_count INTEGER,
                error TEXT,
                created_at TIMESTAMP NOT NULL
            )
        ''')

        # Create indexes for performance
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_staging_state ON staging_narratives(processing_state, case_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_staging_claim ON staging_narratives(claim_token)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_vectors_model_revision ON knowledge_vectors(embedding_model, revision)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_search_log_created ON search_log(created_at DESC)')


def health_check(db_path: str = None):
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            tables = cursor.fetchall()

            # Check if required tables exist
            table_names = [table[0] for table in tables]
            return all(table in table_names for table in REQUIRED_TABLES)
    except sqlite3.Error:
        return False
