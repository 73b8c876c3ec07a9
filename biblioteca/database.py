import logging
import sqlite3
from contextlib import contextmanager, nullcontext
from typing import ContextManager, Iterator, Optional

from biblioteca.errors import ConstraintViolation, NotFound

logger = logging.getLogger(__name__)

MEMORY = ":memory:"


def get_db_connection(db_file: str, timeout: float = 5.0) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    The connection runs in autocommit mode; every unit of work opens its own
    transaction through :func:`transaction`.
    """
    conn = sqlite3.connect(db_file, timeout=timeout, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    if db_file != MEMORY:
        # WAL lets readers keep going while a loan is being written
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection, lock: Optional[ContextManager] = None) -> Iterator[sqlite3.Connection]:
    """Run the enclosed block as one atomic unit.

    The write lock is taken up front (``BEGIN IMMEDIATE``) so two writers
    racing on the same rows serialize instead of both reading stale state.
    Any exception rolls back every change made in the block and is re-raised.
    Store constraint failures surface as :class:`ConstraintViolation`.

    ``lock`` serializes units of work issued by several threads through the
    same connection; SQLite cannot nest transactions on one connection.
    """
    with lock or nullcontext():
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except sqlite3.IntegrityError as e:
            _rollback(conn)
            logger.warning(f"Constraint violation, transaction rolled back: {e}")
            raise ConstraintViolation(str(e)) from e
        except BaseException:
            _rollback(conn)
            raise
        else:
            conn.execute("COMMIT")


def _rollback(conn: sqlite3.Connection) -> None:
    # SQLite may already have aborted the transaction on its own
    if conn.in_transaction:
        conn.execute("ROLLBACK")


def create_tables(conn: sqlite3.Connection) -> None:
    """Create the required tables in the database if they don't exist."""
    cursor = conn.cursor()
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS authors (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL CHECK(length(trim(name)) > 0)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS books (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            isbn TEXT UNIQUE NOT NULL,
            title TEXT NOT NULL,
            publisher TEXT,
            year INTEGER
        )
    """)

    # Author-book link table
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS book_authors (
            book_id INTEGER NOT NULL,
            author_id INTEGER NOT NULL,
            PRIMARY KEY (book_id, author_id),
            FOREIGN KEY (book_id) REFERENCES books(id),
            FOREIGN KEY (author_id) REFERENCES authors(id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS branches (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            city TEXT,
            address TEXT,
            phone TEXT,
            email TEXT
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS copies (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            barcode TEXT UNIQUE NOT NULL,
            book_id INTEGER NOT NULL,
            branch_id INTEGER NOT NULL,
            available INTEGER NOT NULL DEFAULT 1 CHECK(available IN (0, 1)),
            FOREIGN KEY (book_id) REFERENCES books(id),
            FOREIGN KEY (branch_id) REFERENCES branches(id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS people (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            national_id TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            phone TEXT,
            email TEXT
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS loans (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            copy_id INTEGER NOT NULL,
            person_id INTEGER NOT NULL,
            loan_date TEXT NOT NULL,
            due_date TEXT NOT NULL,
            return_date TEXT,
            active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0, 1)),
            CHECK((active = 1) = (return_date IS NULL)),
            FOREIGN KEY (copy_id) REFERENCES copies(id),
            FOREIGN KEY (person_id) REFERENCES people(id)
        )
    """)

    # At most one active loan per copy, enforced by the store itself
    cursor.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_loans_active_copy ON loans(copy_id) WHERE active = 1"
    )
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_book_authors_author_id ON book_authors(author_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_copies_book_id ON copies(book_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_copies_branch_id ON copies(branch_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_person_id ON loans(person_id)")
    cursor.close()


def initialize_database(conn: sqlite3.Connection, lock: Optional[ContextManager] = None) -> None:
    """Initialise the database, creating tables when needed."""
    with transaction(conn, lock):
        create_tables(conn)
    logger.info("Database schema ready")


def fetch_by_id(conn: sqlite3.Connection, model, record_id):
    """Load one record of ``model`` by primary key or raise :class:`NotFound`."""
    columns = ", ".join(model.COLUMNS)
    row = conn.execute(f"SELECT {columns} FROM {model.TABLE} WHERE id = ?", (record_id,)).fetchone()
    if row is None:
        raise NotFound(model.__name__, record_id)
    return model.from_dict(dict(row))
