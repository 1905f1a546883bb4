from datetime import datetime, timezone

import pytest

from lending.errors import ConflictError, InvalidArgumentError, NotFoundError

NOW = datetime(2030, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_add_book_normalises_isbn(lib, book):
    assert book.isbn == "9780441013593"
    assert book.is_available is True
    assert lib.get_book(book.id).category == "Science Fiction"


def test_get_missing_book(lib):
    with pytest.raises(NotFoundError, match="Book not found"):
        lib.get_book("book_missing")


def test_update_book(lib, book):
    updated = lib.update_book(book.id, title="Dune (Deluxe)", year=2019)
    assert updated.title == "Dune (Deluxe)"
    assert updated.year == 2019
    assert updated.author == "Frank Herbert"


def test_update_book_cannot_set_availability(lib, book):
    with pytest.raises(InvalidArgumentError):
        lib.update_book(book.id, is_available=False)
    assert lib.get_book(book.id).is_available is True


def test_update_missing_book(lib):
    with pytest.raises(NotFoundError):
        lib.update_book("book_missing", title="Anything")


def test_list_books_filters(lib, book, user):
    emma = lib.add_book("Emma", "Jane Austen", category="Classics")
    lib.create_loan(book.id, user.id, now=NOW)

    assert [b.id for b in lib.list_books(available=True)] == [emma.id]
    assert [b.id for b in lib.list_books(available=False)] == [book.id]
    assert [b.id for b in lib.list_books(category="classics")] == [emma.id]
    assert [b.id for b in lib.search_books("herbert")] == [book.id]
    assert lib.search_books("   ") == []


def test_list_books_invalid_sort(lib):
    with pytest.raises(InvalidArgumentError):
        lib.list_books(sort_by="popularity")


def test_add_user_lowercases_email_and_hashes_password(lib):
    user = lib.add_user("Alan Turing", "Alan@Example.COM", type="Staff", password="enigma42")
    stored = lib.get_user(user.id)
    assert stored.email == "alan@example.com"
    assert stored.type == "staff"
    assert stored.password_hash and "enigma42" not in stored.password_hash
    assert stored.check_password("enigma42")
    assert not stored.check_password("wrong")
    assert "password_hash" not in stored.to_dict()


def test_duplicate_email_conflict(lib, user):
    with pytest.raises(ConflictError, match="User with this email already exists"):
        lib.add_user("Someone Else", "ADA@example.com")


def test_update_user(lib, user):
    updated = lib.update_user(user.id, department="Mathematics", is_active=False)
    assert updated.department == "Mathematics"
    assert updated.is_active is False


def test_update_user_rejects_unknown_field(lib, user):
    with pytest.raises(InvalidArgumentError):
        lib.update_user(user.id, role="admin")


def test_list_users_pagination_and_filters(lib):
    for i in range(5):
        lib.add_user(f"Student {i}", f"student{i}@example.com")
    lib.add_user("Teacher", "teacher@example.com", type="teacher", is_active=False)

    page = lib.list_users(page=2, limit=2, sort_by="name", sort_order="asc")
    assert page["total"] == 6
    assert page["total_pages"] == 3
    assert [u.name for u in page["users"]] == ["Student 2", "Student 3"]

    assert lib.list_users(type="teacher")["total"] == 1
    assert lib.list_users(active=False)["users"][0].name == "Teacher"
    assert lib.list_users(search="student3")["total"] == 1


def test_user_loans(lib, book, user):
    loan = lib.create_loan(book.id, user.id, now=NOW)
    assert [l.id for l in lib.user_loans(user.id)] == [loan.id]
    assert lib.user_loans(user.id, status="returned") == []
    with pytest.raises(NotFoundError):
        lib.user_loans("user_missing")


def test_list_loans_rejects_unknown_status(lib):
    with pytest.raises(InvalidArgumentError):
        lib.list_loans(status="lost")


def test_loan_details_embed_summaries(lib, book, user):
    loan = lib.create_loan(book.id, user.id, now=NOW)
    details = lib.loan_details(loan, NOW)
    assert details["book"] == {"id": book.id, "title": "Dune", "author": "Frank Herbert", "isbn": "9780441013593"}
    assert details["user"]["email"] == "ada@example.com"
    assert details["status"] == "active"
    assert details["is_overdue"] is False


def test_update_user_null_required_field(lib, user):
    with pytest.raises(InvalidArgumentError, match="cannot be null"):
        lib.update_user(user.id, is_active=None)
    assert lib.get_user(user.id).is_active is True
