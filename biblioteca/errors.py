"""Exceptions raised by the library core."""

from __future__ import annotations

from typing import Any


class LibraryError(Exception):
    """Base class for every error raised by the library core."""


class ConstraintViolation(LibraryError):
    """A store constraint was breached.

    Usually a uniqueness clash (ISBN, barcode, national id); missing required
    values and failed CHECK rules are reported the same way.
    """


class NotFound(LibraryError, LookupError):
    """A referenced record does not exist."""

    def __init__(self, entity: str, key: Any) -> None:
        super().__init__(f"{entity} {key!r} not found.")
        self.entity = entity
        self.key = key


class CopyUnavailable(LibraryError):
    """A loan was requested for a copy that is already on loan."""

    def __init__(self, copy_id: int) -> None:
        super().__init__(f"Copy {copy_id} is not available.")
        self.copy_id = copy_id


class AlreadyReturned(LibraryError):
    """A return was registered for a loan that is no longer active."""

    def __init__(self, loan_id: int) -> None:
        super().__init__(f"Loan {loan_id} has already been returned.")
        self.loan_id = loan_id
