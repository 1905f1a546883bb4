import os

import pytest

from lending.library import Library


@pytest.fixture
def lib(tmp_path, request):
    # A fresh database file for every test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file)
    yield lib
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def book(lib):
    return lib.add_book("Dune", "Frank Herbert", isbn="978-0441013593", category="Science Fiction")


@pytest.fixture
def user(lib):
    return lib.add_user("Ada Lovelace", "ada@example.com", type="teacher")
