import logging
import os
import sqlite3
from typing import Optional

from lending.config import settings
from lending.user import USER_TYPES

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LENDING_DB_FILE (explicit override, also read by config.py/.env)
# 2) settings.db_file
DATABASE_FILE = os.environ.get("LENDING_DB_FILE") or settings.db_file


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Every unit of work opens its own connection. ``timeout`` bounds how long a
    writer waits for another writer's lock before sqlite raises
    ``OperationalError("database is locked")``.
    """
    conn = sqlite3.connect(db_file or DATABASE_FILE, timeout=settings.db_timeout, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = %d;" % int(settings.db_timeout * 1000))
    return conn


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the books, users and loans tables if they do not exist."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        # WAL lets readers proceed while a writer holds the lock
        cursor.execute("PRAGMA journal_mode=WAL;")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT UNIQUE,
                publisher TEXT,
                year INTEGER,
                category TEXT,
                location TEXT,
                is_available INTEGER NOT NULL DEFAULT 1 CHECK (is_available IN (0, 1)),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                type TEXT NOT NULL CHECK (type IN ({", ".join(repr(t) for t in USER_TYPES)})),
                phone TEXT,
                department TEXT,
                is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0, 1)),
                password_hash TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # book_id/user_id are plain references: returned loans stay as history
        # after the book or user they point at has been deleted.
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                loan_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                returned INTEGER NOT NULL DEFAULT 0 CHECK (returned IN (0, 1)),
                is_overdue INTEGER NOT NULL DEFAULT 0 CHECK (is_overdue IN (0, 1)),
                notes TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CHECK (due_date > loan_date),
                CHECK ((returned = 0 AND return_date IS NULL) OR (returned = 1 AND return_date IS NOT NULL))
            )
        """)

        # At most one active loan per book, enforced by the store itself
        cursor.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS ux_loans_active_book ON loans(book_id) WHERE returned = 0"
        )

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_category ON books(category)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_is_available ON books(is_available)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title_author ON books(title, author)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_users_type ON users(type)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_users_is_active ON users(is_active)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_book_id ON loans(book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_user_id ON loans(user_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_returned ON loans(returned)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_due_date ON loans(due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_loan_date ON loans(loan_date)")

        conn.commit()
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialise the database, creating tables when needed."""
    create_tables(db_file)
    logger.info(f"Database ready: {db_file or DATABASE_FILE}")
