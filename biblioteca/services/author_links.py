import logging
import sqlite3
from typing import Iterable, Union

from biblioteca.database import fetch_by_id, transaction
from biblioteca.models import Author, Book, as_id

logger = logging.getLogger(__name__)


class AuthorLinkService:
    """Keeps the author/book link table in step with an author's book set."""

    def __init__(self, conn: sqlite3.Connection, lock=None) -> None:
        self.conn = conn
        self.lock = lock

    def update_author(self, author_id: int, name: str, books: Iterable[Union[Book, int]]) -> Author:
        """Rename an author and make ``books`` their exact set of books.

        Links missing from ``books`` are removed, new ones are added and
        links present on both sides are left alone.  If the author or any of
        the books does not exist, ``NotFound`` is raised and nothing changes.
        """
        if name is None or not name.strip():
            raise ValueError("Author name cannot be empty.")
        name = name.strip()
        wanted = {as_id(book, Book) for book in books}

        with transaction(self.conn, self.lock) as conn:
            fetch_by_id(conn, Author, author_id)
            for book_id in wanted:
                fetch_by_id(conn, Book, book_id)

            conn.execute("UPDATE authors SET name = ? WHERE id = ?", (name, author_id))

            current = {
                row["book_id"]
                for row in conn.execute(
                    "SELECT book_id FROM book_authors WHERE author_id = ?", (author_id,)
                )
            }
            removed = current - wanted
            added = wanted - current
            conn.executemany(
                "DELETE FROM book_authors WHERE author_id = ? AND book_id = ?",
                [(author_id, book_id) for book_id in removed],
            )
            conn.executemany(
                "INSERT INTO book_authors (book_id, author_id) VALUES (?, ?)",
                [(book_id, author_id) for book_id in added],
            )

        logger.info(
            f"Author {author_id} updated: {len(added)} link(s) added, {len(removed)} removed, "
            f"{len(current & wanted)} kept"
        )
        return Author(id=author_id, name=name)
