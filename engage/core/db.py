"""
SQLite backing for the local durable-store emulation.
Documents are stored as JSON text keyed by (collection, id).
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from . import config


@contextmanager
def get_db(db_path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    db_path = db_path or config.DB_PATH
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: str = None):
    """Initialize the database with required tables."""
    with get_db(db_path) as conn:
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                id TEXT NOT NULL,
                data TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (collection, id)
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection)')

        conn.commit()


def health_check(db_path: str = None) -> bool:
    """Check if the database is accessible."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT 1")
            return cursor.fetchone() is not None
    except sqlite3.Error:
        return False
