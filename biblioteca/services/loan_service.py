"""Loan lifecycle: opening and closing loans.

A copy is either AVAILABLE or LOANED.  The loan record is the authority for
that state; the ``copies.available`` flag is derived from it and is only ever
written here, in the same transaction as the loan it mirrors.
"""

import logging
import sqlite3
from datetime import date, timedelta
from typing import Optional, Union

from biblioteca.database import fetch_by_id, transaction
from biblioteca.errors import AlreadyReturned, CopyUnavailable
from biblioteca.models import Copy, Loan, Person, as_id

logger = logging.getLogger(__name__)


class LoanService:
    """Opens and closes loans while keeping copy availability consistent."""

    def __init__(self, conn: sqlite3.Connection, default_loan_days: int = 14, lock=None) -> None:
        self.conn = conn
        self.lock = lock
        self.default_loan_days = default_loan_days

    def add_loan(self, copy: Union[Copy, int], person: Union[Person, int],
                 loan_date: Optional[date] = None, due_date: Optional[date] = None) -> Loan:
        """Lend ``copy`` to ``person``.

        Raises:
            NotFound: the copy or the person does not exist.
            CopyUnavailable: the copy is already on loan. Nothing is written.
        """
        copy_id = as_id(copy, Copy)
        person_id = as_id(person, Person)
        loan_date = loan_date or date.today()
        due_date = due_date or loan_date + timedelta(days=self.default_loan_days)

        with transaction(self.conn, self.lock) as conn:
            fetch_by_id(conn, Copy, copy_id)
            fetch_by_id(conn, Person, person_id)

            # Conditional flip: only one writer can move the copy out of AVAILABLE
            cursor = conn.execute(
                "UPDATE copies SET available = 0 WHERE id = ? AND available = 1",
                (copy_id,),
            )
            if cursor.rowcount == 0:
                logger.warning(f"Loan refused: copy {copy_id} is not available")
                raise CopyUnavailable(copy_id)

            cursor = conn.execute(
                """
                INSERT INTO loans (copy_id, person_id, loan_date, due_date, return_date, active)
                VALUES (?, ?, ?, ?, NULL, 1)
                """,
                (copy_id, person_id, loan_date.isoformat(), due_date.isoformat()),
            )
            loan_id = cursor.lastrowid

        if isinstance(copy, Copy):
            copy.available = False
        logger.info(f"Loan {loan_id} opened: copy {copy_id} -> person {person_id}, due {due_date}")
        return Loan(
            id=loan_id,
            copy_id=copy_id,
            person_id=person_id,
            loan_date=loan_date,
            due_date=due_date,
        )

    def register_return(self, loan_id: int, return_date: Optional[date] = None) -> Loan:
        """Close an active loan and put its copy back on the shelf.

        A loan can be returned only once; a second call raises
        :class:`AlreadyReturned` and leaves both records untouched.

        Raises:
            NotFound: no loan with ``loan_id``.
            AlreadyReturned: the loan is no longer active.
        """
        return_date = return_date or date.today()

        with transaction(self.conn, self.lock) as conn:
            loan = fetch_by_id(conn, Loan, loan_id)
            cursor = conn.execute(
                "UPDATE loans SET return_date = ?, active = 0 WHERE id = ? AND active = 1",
                (return_date.isoformat(), loan_id),
            )
            if cursor.rowcount == 0:
                logger.warning(f"Return refused: loan {loan_id} is already closed")
                raise AlreadyReturned(loan_id)
            conn.execute("UPDATE copies SET available = 1 WHERE id = ?", (loan.copy_id,))

        logger.info(f"Loan {loan_id} returned on {return_date}: copy {loan.copy_id} available")
        loan.return_date = return_date
        loan.active = False
        return loan
