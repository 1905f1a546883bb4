from datetime import datetime, timedelta, timezone

import pytest

from lending.errors import ConflictError, StoreError
from lending.loan import Loan
from lending.store import EntityStore, new_id

NOW = datetime(2030, 3, 1, 12, 0, tzinfo=timezone.utc)


def _loan(book_id, user_id):
    return Loan(id=new_id("loan"), book_id=book_id, user_id=user_id,
                loan_date=NOW, due_date=NOW + timedelta(days=14))


def test_new_id_prefix():
    first, second = new_id("book"), new_id("book")
    assert first.startswith("book_")
    assert first != second


def test_store_persists_across_instances(lib, book):
    reopened = EntityStore(lib.db_file)
    assert reopened.get_book(book.id).title == "Dune"


def test_insert_refused_for_inactive_user(lib, book):
    inactive = lib.add_user("Sleepy", "sleepy@example.com", is_active=False)
    assert lib.store.insert_loan_if_allowed(_loan(book.id, inactive.id)) is False
    assert lib.store.find_active_loan(book_id=book.id) is None


def test_insert_refused_for_missing_book(lib, user):
    assert lib.store.insert_loan_if_allowed(_loan("book_missing", user.id)) is False


def test_second_active_loan_on_book_refused_by_index(lib, book, user):
    other = lib.add_user("Grace Hopper", "grace@example.com")
    assert lib.store.insert_loan_if_allowed(_loan(book.id, user.id)) is True
    assert lib.store.insert_loan_if_allowed(_loan(book.id, other.id)) is False
    assert len(lib.store.list_loans(book_id=book.id)) == 1


def test_mark_loan_returned_is_conditional(lib, book, user):
    loan = _loan(book.id, user.id)
    lib.store.insert_loan_if_allowed(loan)

    returned = lib.store.mark_loan_returned(loan.id, NOW + timedelta(days=1))
    assert returned.returned and returned.return_date == NOW + timedelta(days=1)
    assert lib.store.mark_loan_returned(loan.id, NOW + timedelta(days=2)) is None


def test_duplicate_isbn_conflict(lib, book):
    with pytest.raises(ConflictError, match="already exists"):
        lib.add_book("Dune Messiah", "Frank Herbert", isbn="9780441013593")


def test_books_without_isbn_do_not_collide(lib):
    lib.add_book("Untitled Notes", "Anonymous")
    lib.add_book("More Notes", "Anonymous")
    assert len(lib.list_books()) == 2


def test_unusable_database_path_raises_store_error(tmp_path):
    with pytest.raises(StoreError):
        EntityStore(str(tmp_path / "missing-dir" / "lending.db"))


def test_list_books_sorting(lib):
    lib.add_book("Beta", "Zed", year=2001)
    lib.add_book("alpha", "Young", year=1999)
    assert [b.title for b in lib.list_books()] == ["alpha", "Beta"]
    assert [b.title for b in lib.list_books(sort_by="year", order="desc")] == ["Beta", "alpha"]
