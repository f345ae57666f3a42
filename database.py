import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from config import settings

logger = logging.getLogger(__name__)

# Default database file. Library(db_file=...) and tests override this
# module attribute before any connection is opened.
DATABASE_FILE = settings.database_file


def get_db_connection() -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode; multi-statement units of work go
    through :func:`transaction`, which issues ``BEGIN IMMEDIATE`` explicitly.
    """
    conn = sqlite3.connect(DATABASE_FILE, timeout=settings.database_timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Run a block as one write transaction.

    ``BEGIN IMMEDIATE`` takes the database write lock up front, so concurrent
    borrow/return requests are serialized by the store and every
    read-check-write sequence inside the block sees a stable state.
    """
    conn = get_db_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


@contextmanager
def use_transaction(conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
    """Join the caller's transaction when one is given, otherwise open one."""
    if conn is not None:
        yield conn
        return
    with transaction() as own:
        yield own


@contextmanager
def use_connection(conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
    """Read helper: reuse ``conn`` or open a short-lived connection."""
    if conn is not None:
        yield conn
        return
    own = get_db_connection()
    try:
        yield own
    finally:
        own.close()


def create_tables() -> None:
    """Create the required tables if they don't exist."""
    conn = get_db_connection()
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE COLLATE NOCASE,
                password_hash TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'user' CHECK(role IN ('user', 'admin')),
                membership_id INTEGER REFERENCES memberships(id) ON DELETE SET NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                serial_number TEXT NOT NULL UNIQUE,
                genre TEXT,
                total_copies INTEGER NOT NULL DEFAULT 1 CHECK(total_copies >= 0),
                available_copies INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                CHECK(available_copies >= 0 AND available_copies <= total_copies)
            );

            CREATE TABLE IF NOT EXISTS membership_types (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE COLLATE NOCASE,
                description TEXT NOT NULL DEFAULT '',
                fee REAL NOT NULL DEFAULT 0,
                benefits TEXT,
                max_books INTEGER NOT NULL CHECK(max_books >= 0),
                active INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS memberships (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                membership_number TEXT NOT NULL UNIQUE,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                type TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK(status IN ('pending', 'active', 'rejected', 'expired', 'cancelled')),
                start_date TEXT NOT NULL,
                valid_until TEXT NOT NULL,
                notes TEXT,
                processed_by INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS borrowings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL REFERENCES books(id),
                user_id INTEGER NOT NULL REFERENCES users(id),
                borrow_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL DEFAULT 'borrowed' CHECK(status IN ('borrowed', 'returned')),
                fine_amount REAL NOT NULL DEFAULT 0 CHECK(fine_amount >= 0),
                fine_paid INTEGER NOT NULL DEFAULT 0,
                notes TEXT,
                processed_by INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_books_title ON books(title);
            CREATE INDEX IF NOT EXISTS idx_books_author ON books(author);
            CREATE INDEX IF NOT EXISTS idx_memberships_user_status ON memberships(user_id, status);
            CREATE INDEX IF NOT EXISTS idx_borrowings_user_status ON borrowings(user_id, status);
            CREATE INDEX IF NOT EXISTS idx_borrowings_book_status ON borrowings(book_id, status);
            CREATE INDEX IF NOT EXISTS idx_borrowings_due_status ON borrowings(due_date, status);
            CREATE INDEX IF NOT EXISTS idx_borrowings_borrow_date ON borrowings(borrow_date DESC);
        """)
    finally:
        conn.close()


def initialize_database() -> None:
    """Initialize the database, creating tables when needed."""
    logger.debug("Initializing database at %s", DATABASE_FILE)
    create_tables()
