import logging
import sqlite3
import threading
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, TypeVar, Union

from biblioteca.config import Settings, settings as default_settings
from biblioteca.database import fetch_by_id, get_db_connection, initialize_database, transaction
from biblioteca.errors import LibraryError, NotFound
from biblioteca.models import MODELS, Author, Book, Branch, Copy, Loan, Person, as_id
from biblioteca.services.author_links import AuthorLinkService
from biblioteca.services.loan_service import LoanService

# Configure logging
logging.basicConfig(level=default_settings.log_level)
logger = logging.getLogger(__name__)

M = TypeVar("M")


# Identifiers stored without surrounding whitespace
_STRIPPED = ("isbn", "national_id")


class Library:
    """Handle on one library database: entities, loans and reports.

    Every operation runs against the connection owned by this handle.  The
    handle is opened on construction and must be closed with :meth:`close`
    (or used as a context manager).
    """

    def __init__(self, db_file: Optional[str] = None, settings: Optional[Settings] = None) -> None:
        self.settings = settings or default_settings
        self.db_file = db_file or self.settings.database_file
        self._conn: Optional[sqlite3.Connection] = None
        # Units of work from threads sharing this handle run one at a time
        self._lock = threading.RLock()
        self.loans: Optional[LoanService] = None
        self.author_links: Optional[AuthorLinkService] = None
        self.open()

    # ------------------------- Lifecycle ------------------------- #
    def open(self) -> None:
        """Connect to the database and make sure the schema exists."""
        if self._conn is not None:
            return
        conn = get_db_connection(self.db_file, timeout=self.settings.database_timeout)
        try:
            initialize_database(conn, self._lock)
        except Exception:
            conn.close()
            raise
        self._conn = conn
        self.loans = LoanService(conn, default_loan_days=self.settings.default_loan_days, lock=self._lock)
        self.author_links = AuthorLinkService(conn, lock=self._lock)
        logger.info(f"Library opened on {self.db_file}")

    def close(self) -> None:
        """Release the database connection. Calling it again does nothing."""
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
            self.loans = None
            self.author_links = None
        logger.info(f"Library on {self.db_file} closed")

    def __enter__(self) -> "Library":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise LibraryError("Library is closed.")
        return self._conn

    # ------------------------- Core operations ------------------------- #
    def add_author(self, name: str) -> Author:
        if name is None or not name.strip():
            raise ValueError("Author name cannot be empty.")
        name = name.strip()
        with transaction(self.conn, self._lock) as conn:
            cursor = conn.execute("INSERT INTO authors (name) VALUES (?)", (name,))
        return Author(id=cursor.lastrowid, name=name)

    def add_book(self, isbn: str, title: str, publisher: Optional[str] = None,
                 year: Optional[int] = None) -> Book:
        """Add a book. Raises ConstraintViolation if the ISBN is already taken."""
        isbn = isbn.strip()
        title = title.strip()
        with transaction(self.conn, self._lock) as conn:
            cursor = conn.execute(
                "INSERT INTO books (isbn, title, publisher, year) VALUES (?, ?, ?, ?)",
                (isbn, title, publisher, year),
            )
        return Book(id=cursor.lastrowid, isbn=isbn, title=title, publisher=publisher, year=year)

    def add_branch(self, name: str, city: Optional[str] = None, address: Optional[str] = None,
                   phone: Optional[str] = None, email: Optional[str] = None) -> Branch:
        with transaction(self.conn, self._lock) as conn:
            cursor = conn.execute(
                "INSERT INTO branches (name, city, address, phone, email) VALUES (?, ?, ?, ?, ?)",
                (name, city, address, phone, email),
            )
        return Branch(id=cursor.lastrowid, name=name, city=city, address=address, phone=phone, email=email)

    def add_person(self, national_id: str, name: str, phone: Optional[str] = None,
                   email: Optional[str] = None) -> Person:
        """Register a borrower. Raises ConstraintViolation on a duplicate national id."""
        national_id = national_id.strip()
        with transaction(self.conn, self._lock) as conn:
            cursor = conn.execute(
                "INSERT INTO people (national_id, name, phone, email) VALUES (?, ?, ?, ?)",
                (national_id, name, phone, email),
            )
        return Person(id=cursor.lastrowid, national_id=national_id, name=name, phone=phone, email=email)

    def add_copy(self, barcode: str, book: Union[Book, int], branch: Union[Branch, int]) -> Copy:
        """Add a physical copy of ``book`` held at ``branch``. New copies are available."""
        barcode = barcode.strip()
        book_id = as_id(book, Book)
        branch_id = as_id(branch, Branch)
        with transaction(self.conn, self._lock) as conn:
            fetch_by_id(conn, Book, book_id)
            fetch_by_id(conn, Branch, branch_id)
            cursor = conn.execute(
                "INSERT INTO copies (barcode, book_id, branch_id, available) VALUES (?, ?, ?, 1)",
                (barcode, book_id, branch_id),
            )
        return Copy(id=cursor.lastrowid, barcode=barcode, book_id=book_id, branch_id=branch_id, available=True)

    def get(self, model: Type[M], record_id: int) -> M:
        """Return one record by id. Raises NotFound if it doesn't exist."""
        self._check_model(model)
        return self._fetch(model, record_id)

    def list_collection(self, model: Type[M]) -> List[M]:
        """List every stored record of ``model`` (fresh on every call)."""
        self._check_model(model)
        columns = ", ".join(model.COLUMNS)
        rows = self._query(f"SELECT {columns} FROM {model.TABLE} ORDER BY id")
        return [model.from_dict(dict(row)) for row in rows]

    def update_book(self, book_id: int, **fields: Any) -> Book:
        return self._update(Book, book_id, fields)

    def update_branch(self, branch_id: int, **fields: Any) -> Branch:
        return self._update(Branch, branch_id, fields)

    def update_person(self, person_id: int, **fields: Any) -> Person:
        return self._update(Person, person_id, fields)

    def update_author(self, author_id: int, name: str, books: Iterable[Union[Book, int]]) -> Author:
        """Rename an author and replace their set of books with ``books``."""
        return self._require_open(self.author_links).update_author(author_id, name, books)

    # ------------------------- Loans ------------------------- #
    def add_loan(self, copy: Union[Copy, int], person: Union[Person, int],
                 loan_date: Optional[date] = None, due_date: Optional[date] = None) -> Loan:
        return self._require_open(self.loans).add_loan(copy, person, loan_date, due_date)

    def register_return(self, loan_id: int, return_date: Optional[date] = None) -> Loan:
        return self._require_open(self.loans).register_return(loan_id, return_date)

    # ------------------------- Relations ------------------------- #
    def books_of_author(self, author_id: int) -> List[Book]:
        self._fetch(Author, author_id)
        rows = self._query(
            """
            SELECT b.id, b.isbn, b.title, b.publisher, b.year
            FROM books b JOIN book_authors ba ON ba.book_id = b.id
            WHERE ba.author_id = ?
            ORDER BY b.title
            """,
            (author_id,),
        )
        return [Book.from_dict(dict(row)) for row in rows]

    def authors_of_book(self, book_id: int) -> List[Author]:
        self._fetch(Book, book_id)
        rows = self._query(
            """
            SELECT a.id, a.name
            FROM authors a JOIN book_authors ba ON ba.author_id = a.id
            WHERE ba.book_id = ?
            ORDER BY a.name
            """,
            (book_id,),
        )
        return [Author.from_dict(dict(row)) for row in rows]

    # ------------------------- Reports ------------------------- #
    def find_books_with_authors(self) -> List[Book]:
        """Every book that has at least one author, with ``authors`` filled in."""
        rows = self._query(
            """
            SELECT b.id, b.isbn, b.title, b.publisher, b.year,
                   a.id AS author_id, a.name AS author_name
            FROM books b
            JOIN book_authors ba ON ba.book_id = b.id
            JOIN authors a ON a.id = ba.author_id
            ORDER BY b.id, a.id
            """
        )

        books: Dict[int, Book] = {}
        for row in rows:
            book = books.get(row["id"])
            if book is None:
                book = books[row["id"]] = Book.from_dict(dict(row))
            book.authors.append(Author(id=row["author_id"], name=row["author_name"]))
        return list(books.values())

    def find_books_with_branches(self) -> List[Tuple[str, str]]:
        """(book title, branch name) for every book/branch pair with at least one copy."""
        rows = self._query(
            """
            SELECT b.title, br.name
            FROM copies c
            JOIN books b ON b.id = c.book_id
            JOIN branches br ON br.id = c.branch_id
            GROUP BY b.id, br.id
            ORDER BY b.title, br.name
            """
        )
        return [(row[0], row[1]) for row in rows]

    def find_books_on_loan(self) -> List[Tuple[str, str]]:
        """(book title, borrower name) for every active loan."""
        rows = self._query(
            """
            SELECT b.title, p.name
            FROM loans l
            JOIN copies c ON c.id = l.copy_id
            JOIN books b ON b.id = c.book_id
            JOIN people p ON p.id = l.person_id
            WHERE l.active = 1
            ORDER BY l.loan_date, l.id
            """
        )
        return [(row[0], row[1]) for row in rows]

    def find_overdue_loans(self, today: Optional[date] = None) -> List[Tuple[str, str, date]]:
        """(book title, borrower name, due date) for active loans past their due date."""
        today = today or date.today()
        rows = self._query(
            """
            SELECT b.title, p.name, l.due_date
            FROM loans l
            JOIN copies c ON c.id = l.copy_id
            JOIN books b ON b.id = c.book_id
            JOIN people p ON p.id = l.person_id
            WHERE l.active = 1 AND l.due_date < ?
            ORDER BY l.due_date, l.id
            """,
            (today.isoformat(),),
        )
        return [(row[0], row[1], date.fromisoformat(row[2])) for row in rows]

    def get_statistics(self) -> Dict[str, Any]:
        """Get library statistics."""
        stats = {}
        for key, query in (
            ("total_books", "SELECT COUNT(*) FROM books"),
            ("total_authors", "SELECT COUNT(*) FROM authors"),
            ("total_branches", "SELECT COUNT(*) FROM branches"),
            ("total_copies", "SELECT COUNT(*) FROM copies"),
            ("available_copies", "SELECT COUNT(*) FROM copies WHERE available = 1"),
            ("total_people", "SELECT COUNT(*) FROM people"),
            ("active_loans", "SELECT COUNT(*) FROM loans WHERE active = 1"),
        ):
            stats[key] = self._query(query)[0][0]
        return stats

    # ------------------------- Helpers ------------------------- #
    _UPDATABLE = {
        Book: ("isbn", "title", "publisher", "year"),
        Branch: ("name", "city", "address", "phone", "email"),
        Person: ("national_id", "name", "phone", "email"),
    }

    def _update(self, model, record_id: int, fields: Dict[str, Any]):
        """Update some fields of a record. Returns the freshly read record."""
        if not fields:
            raise ValueError("Nothing to update.")
        unknown = set(fields) - set(self._UPDATABLE[model])
        if unknown:
            raise ValueError(f"Cannot update {model.__name__} field(s): {', '.join(sorted(unknown))}")

        for name in _STRIPPED:
            if isinstance(fields.get(name), str):
                fields[name] = fields[name].strip()

        set_clause = ", ".join([f"{name} = ?" for name in fields.keys()])
        params = list(fields.values()) + [record_id]
        with transaction(self.conn, self._lock) as conn:
            fetch_by_id(conn, model, record_id)
            conn.execute(f"UPDATE {model.TABLE} SET {set_clause} WHERE id = ?", params)
        return self._fetch(model, record_id)

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _fetch(self, model, record_id: int):
        with self._lock:
            return fetch_by_id(self.conn, model, record_id)

    @staticmethod
    def _check_model(model) -> None:
        if model not in MODELS:
            raise TypeError(f"Not a library model: {model!r}")

    def _require_open(self, service):
        if service is None:
            raise LibraryError("Library is closed.")
        return service
