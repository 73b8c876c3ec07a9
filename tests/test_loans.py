import threading
from datetime import date, timedelta

import pytest

from biblioteca.database import transaction
from biblioteca.errors import AlreadyReturned, ConstraintViolation, CopyUnavailable, NotFound
from biblioteca.library import Library
from biblioteca.models import Copy, Loan


def assert_availability_consistent(lib):
    """Every copy is available exactly when no active loan points at it."""
    active = {loan.copy_id for loan in lib.list_collection(Loan) if loan.active}
    for copy in lib.list_collection(Copy):
        assert copy.available == (copy.id not in active), copy


def test_loan_and_return_flow(lib, stocked):
    _, _, copy, person = stocked
    today = date.today()

    loan = lib.add_loan(copy, person, today, today + timedelta(days=7))
    assert loan.id is not None
    assert loan.active is True
    assert loan.return_date is None
    assert copy.available is False

    stored = next(c for c in lib.list_collection(Copy) if c.barcode == "CB-TEST-3")
    assert stored.available is False, "Copy should be on loan"
    assert_availability_consistent(lib)

    returned = lib.register_return(loan.id, today)
    assert returned.active is False
    assert returned.return_date == today

    stored = next(c for c in lib.list_collection(Copy) if c.barcode == "CB-TEST-3")
    assert stored.available is True, "Copy should be available again after the return"
    stored_loan = lib.get(Loan, loan.id)
    assert stored_loan.active is False
    assert stored_loan.status == "RETURNED"
    assert_availability_consistent(lib)


def test_default_dates(lib, stocked):
    _, _, copy, person = stocked
    loan = lib.add_loan(copy.id, person.id)
    assert loan.loan_date == date.today()
    assert loan.due_date == date.today() + timedelta(days=lib.settings.default_loan_days)


def test_loan_on_unavailable_copy_changes_nothing(lib, stocked):
    _, _, copy, person = stocked
    other = lib.add_person("X3333333C", "Una Altra", "600000009", "ua@t.test")
    first = lib.add_loan(copy, person)

    with pytest.raises(CopyUnavailable) as excinfo:
        lib.add_loan(copy.id, other)
    assert excinfo.value.copy_id == copy.id

    loans = lib.list_collection(Loan)
    assert [loan.id for loan in loans] == [first.id]
    assert lib.get(Copy, copy.id).available is False
    assert_availability_consistent(lib)


def test_loan_missing_copy_or_person(lib, stocked):
    _, _, copy, person = stocked

    with pytest.raises(NotFound):
        lib.add_loan(9999, person)
    with pytest.raises(NotFound):
        lib.add_loan(copy, 9999)

    assert lib.list_collection(Loan) == []
    assert lib.get(Copy, copy.id).available is True


def test_return_twice(lib, stocked):
    _, _, copy, person = stocked
    loan = lib.add_loan(copy, person)
    lib.register_return(loan.id)

    with pytest.raises(AlreadyReturned):
        lib.register_return(loan.id)

    assert lib.get(Loan, loan.id).active is False
    assert lib.get(Copy, copy.id).available is True
    assert_availability_consistent(lib)


def test_second_return_does_not_free_a_new_loan(lib, stocked):
    _, _, copy, person = stocked
    old = lib.add_loan(copy, person)
    lib.register_return(old.id)
    new = lib.add_loan(copy, person)

    with pytest.raises(AlreadyReturned):
        lib.register_return(old.id)

    assert lib.get(Loan, new.id).active is True
    assert lib.get(Copy, copy.id).available is False
    assert_availability_consistent(lib)


def test_return_unknown_loan(lib):
    with pytest.raises(NotFound) as excinfo:
        lib.register_return(4242)
    assert excinfo.value.entity == "Loan"


def test_copy_can_be_lent_again_after_return(lib, stocked):
    _, _, copy, person = stocked
    for _ in range(3):
        loan = lib.add_loan(copy, person)
        lib.register_return(loan.id)

    loans = lib.list_collection(Loan)
    assert len(loans) == 3
    assert not any(loan.active for loan in loans)
    assert_availability_consistent(lib)


def test_stale_copy_object_is_checked_against_store(db_file, lib, stocked):
    _, _, copy, person = stocked

    with Library(db_file=db_file) as other:
        other.add_loan(copy.id, person.id)

    # Our in-memory copy still says available, the store says otherwise
    assert copy.available is True
    with pytest.raises(CopyUnavailable):
        lib.add_loan(copy, person)
    assert len(lib.list_collection(Loan)) == 1


def test_concurrent_loans_on_one_copy(db_file, lib, stocked):
    _, _, copy, person = stocked
    workers = 6
    barrier = threading.Barrier(workers)
    results = []
    lock = threading.Lock()

    def borrow():
        handle = Library(db_file=db_file)
        try:
            barrier.wait()
            try:
                handle.add_loan(copy.id, person.id)
                outcome = "ok"
            except CopyUnavailable:
                outcome = "unavailable"
            with lock:
                results.append(outcome)
        finally:
            handle.close()

    threads = [threading.Thread(target=borrow) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == ["ok"] + ["unavailable"] * (workers - 1)
    assert len(lib.list_collection(Loan)) == 1
    assert_availability_consistent(lib)


def test_overdue(lib, stocked):
    book, _, copy, person = stocked
    loan_date = date(2024, 1, 1)
    loan = lib.add_loan(copy, person, loan_date, loan_date + timedelta(days=7))

    assert loan.is_overdue(date(2024, 1, 9)) is True
    assert loan.is_overdue(date(2024, 1, 8)) is False
    assert lib.find_overdue_loans(date(2024, 1, 9)) == [
        (book.title, person.name, date(2024, 1, 8)),
    ]

    lib.register_return(loan.id, date(2024, 1, 10))
    assert lib.find_overdue_loans(date(2024, 2, 1)) == []
    assert lib.get(Loan, loan.id).is_overdue(date(2024, 2, 1)) is False


def test_threads_sharing_one_handle(lib, stocked):
    _, _, copy, person = stocked
    workers = 4
    errors = []

    for _ in range(10):
        barrier = threading.Barrier(workers)
        results = []
        lock = threading.Lock()

        def borrow():
            barrier.wait()
            try:
                lib.add_loan(copy.id, person.id)
                outcome = "ok"
            except CopyUnavailable:
                outcome = "unavailable"
            except Exception as e:  # anything else is a bug
                outcome = "error"
                errors.append(e)
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=borrow) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sorted(results) == ["ok"] + ["unavailable"] * (workers - 1)
        active = [loan for loan in lib.list_collection(Loan) if loan.active]
        assert len(active) == 1
        lib.register_return(active[0].id)

    assert_availability_consistent(lib)


def test_failed_loan_insert_rolls_back_copy_flag(lib, stocked):
    _, _, copy, person = stocked
    # An active loan row written behind the lifecycle's back, copy flag left at 1
    with transaction(lib.conn):
        lib.conn.execute(
            "INSERT INTO loans (copy_id, person_id, loan_date, due_date, active) VALUES (?, ?, ?, ?, 1)",
            (copy.id, person.id, "2024-01-01", "2024-01-15"),
        )

    with pytest.raises(ConstraintViolation):
        lib.add_loan(copy, person)

    assert lib.get(Copy, copy.id).available is True
    assert len(lib.list_collection(Loan)) == 1


def test_store_rejects_second_active_loan(lib, stocked):
    _, _, copy, person = stocked
    lib.add_loan(copy, person)

    with pytest.raises(ConstraintViolation):
        with transaction(lib.conn):
            lib.conn.execute(
                "INSERT INTO loans (copy_id, person_id, loan_date, due_date, active) VALUES (?, ?, ?, ?, 1)",
                (copy.id, person.id, "2024-01-01", "2024-01-15"),
            )
    assert len(lib.list_collection(Loan)) == 1


def test_store_rejects_active_loan_with_return_date(lib, stocked):
    _, _, copy, person = stocked

    with pytest.raises(ConstraintViolation):
        with transaction(lib.conn):
            lib.conn.execute(
                """
                INSERT INTO loans (copy_id, person_id, loan_date, due_date, return_date, active)
                VALUES (?, ?, ?, ?, ?, 1)
                """,
                (copy.id, person.id, "2024-01-01", "2024-01-15", "2024-01-05"),
            )
    assert lib.list_collection(Loan) == []


def test_loan_rejects_wrong_model_type(lib, stocked):
    book, _, copy, person = stocked
    with pytest.raises(TypeError):
        lib.add_loan(book, person)
    with pytest.raises(TypeError):
        lib.add_loan(copy, copy)
    assert lib.list_collection(Loan) == []
