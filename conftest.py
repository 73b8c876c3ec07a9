import os
import pytest

from biblioteca.library import Library


@pytest.fixture
def db_file(tmp_path, request):
    # A unique database file per test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def lib(db_file):
    lib = Library(db_file=db_file)
    yield lib
    lib.close()
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def stocked(lib):
    """A book held at one branch with one copy, and a borrower."""
    book = lib.add_book("ISBN-TEST-4", "Titol Prestec", "Editorial", 2017)
    branch = lib.add_branch("Biblio3", "Ciutat3", "Ad3", "600000003", "b3@t.test")
    copy = lib.add_copy("CB-TEST-3", book, branch)
    person = lib.add_person("X1111111A", "Persona Prestec", "600000004", "pp@t.test")
    return book, branch, copy, person
