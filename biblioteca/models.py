"""Data models for the library lending core.

Each model is a plain dataclass mirroring one table of the store.  Models
never hold references to each other: relations are expressed through ids,
and the author/book relation lives in its own link table.  ``Book.authors``
is filled only by the queries that ask for it.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import date
from typing import ClassVar, List, Optional, Tuple


def _to_date(value) -> Optional[date]:
    """Normalise ISO strings coming from SQLite into ``date`` objects."""
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


class Model:
    """Common behaviour shared by every stored record."""

    TABLE: ClassVar[str]
    COLUMNS: ClassVar[Tuple[str, ...]]

    def to_dict(self) -> dict:
        data = {}
        for name in self.COLUMNS:
            value = getattr(self, name)
            if isinstance(value, date):
                value = value.isoformat()
            data[name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict):
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in dict(data).items() if k in known})


@dataclass(unsafe_hash=True)
class Author(Model):
    """A person who wrote one or more books."""

    TABLE: ClassVar[str] = "authors"
    COLUMNS: ClassVar[Tuple[str, ...]] = ("id", "name")

    id: int
    name: str


@dataclass(unsafe_hash=True)
class Book(Model):
    """A title in the catalogue, independent of its physical copies."""

    TABLE: ClassVar[str] = "books"
    COLUMNS: ClassVar[Tuple[str, ...]] = ("id", "isbn", "title", "publisher", "year")

    id: int
    isbn: str
    title: str
    publisher: Optional[str] = None
    year: Optional[int] = None
    authors: List[Author] = field(default_factory=list, compare=False)

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} (ISBN: {self.isbn})"


@dataclass(unsafe_hash=True)
class Branch(Model):
    """A physical library location."""

    TABLE: ClassVar[str] = "branches"
    COLUMNS: ClassVar[Tuple[str, ...]] = ("id", "name", "city", "address", "phone", "email")

    id: int
    name: str
    city: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


@dataclass(unsafe_hash=True)
class Copy(Model):
    """One physical exemplar of a book held at a branch."""

    TABLE: ClassVar[str] = "copies"
    COLUMNS: ClassVar[Tuple[str, ...]] = ("id", "barcode", "book_id", "branch_id", "available")

    id: int
    barcode: str
    book_id: int
    branch_id: int
    available: bool = True

    def __post_init__(self) -> None:
        # SQLite hands booleans back as 0/1
        self.available = bool(self.available)


@dataclass(unsafe_hash=True)
class Person(Model):
    """Somebody who can borrow copies."""

    TABLE: ClassVar[str] = "people"
    COLUMNS: ClassVar[Tuple[str, ...]] = ("id", "national_id", "name", "phone", "email")

    id: int
    national_id: str
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None


@dataclass(unsafe_hash=True)
class Loan(Model):
    """A copy lent to a person for a date range."""

    TABLE: ClassVar[str] = "loans"
    COLUMNS: ClassVar[Tuple[str, ...]] = (
        "id", "copy_id", "person_id", "loan_date", "due_date", "return_date", "active",
    )

    id: int
    copy_id: int
    person_id: int
    loan_date: date
    due_date: date
    return_date: Optional[date] = None
    active: bool = True

    def __post_init__(self) -> None:
        self.loan_date = _to_date(self.loan_date)
        self.due_date = _to_date(self.due_date)
        self.return_date = _to_date(self.return_date)
        self.active = bool(self.active)

    def is_overdue(self, today: Optional[date] = None) -> bool:
        """Return True if the loan is still out and its due date has passed."""
        if not self.active:
            return False
        return self.due_date < (today or date.today())

    @property
    def status(self) -> str:
        """Human readable status: ACTIVE or RETURNED."""
        return "ACTIVE" if self.active else "RETURNED"


MODELS: Tuple[type, ...] = (Author, Book, Branch, Copy, Person, Loan)


def as_id(value, model: type) -> int:
    """Accept either a stored ``model`` instance or its bare id."""
    if isinstance(value, Model):
        if not isinstance(value, model):
            raise TypeError(f"Expected {model.__name__} or id, got {type(value).__name__}")
        return value.id
    return value
