"""Biblioteca - library lending core

This package contains the core modules including:
- Library handle and queries (library.py)
- Loan lifecycle (services/loan_service.py)
- Author/book associations (services/author_links.py)
- Data models (models.py)
- Database layer (database.py)
"""

from biblioteca.errors import (
    AlreadyReturned,
    ConstraintViolation,
    CopyUnavailable,
    LibraryError,
    NotFound,
)
from biblioteca.library import Library
from biblioteca.models import Author, Book, Branch, Copy, Loan, Person

__all__ = [
    "Library",
    "Author",
    "Book",
    "Branch",
    "Copy",
    "Loan",
    "Person",
    "LibraryError",
    "ConstraintViolation",
    "NotFound",
    "CopyUnavailable",
    "AlreadyReturned",
]
