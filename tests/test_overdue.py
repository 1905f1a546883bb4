from datetime import datetime, timedelta, timezone

from lending.services.overdue import is_overdue

NOW = datetime(2030, 3, 1, 12, 0, tzinfo=timezone.utc)


def _past_due_loan(lib, book, user, days_late=3):
    return lib.create_loan(
        book.id, user.id,
        loan_date=NOW - timedelta(days=20),
        due_date=NOW - timedelta(days=days_late),
        now=NOW,
    )


def test_past_due_active_loan_is_overdue(lib, book, user):
    loan = _past_due_loan(lib, book, user)
    assert is_overdue(loan, NOW)
    assert loan.overdue(NOW)
    assert loan.is_overdue is True


def test_returned_loan_is_never_overdue(lib, book, user):
    loan = _past_due_loan(lib, book, user)
    returned = lib.return_loan(loan.id, now=NOW)
    assert returned.overdue(NOW) is False
    assert returned.overdue(NOW + timedelta(days=365)) is False
    assert returned.is_overdue is False


def test_due_moment_itself_is_not_overdue(lib, book, user):
    loan = lib.create_loan(book.id, user.id, due_date=NOW + timedelta(days=1), now=NOW)
    assert not loan.overdue(loan.due_date)
    assert loan.overdue(loan.due_date + timedelta(microseconds=1))


def test_reads_recompute_instead_of_trusting_cache(lib, book, user):
    loan = lib.create_loan(book.id, user.id, due_date=NOW + timedelta(days=1), now=NOW)
    later = NOW + timedelta(days=5)

    stored = lib.get_loan(loan.id)
    assert stored.is_overdue is False
    assert stored.to_dict(later)["is_overdue"] is True
    assert [l.id for l in lib.overdue_loans(later)] == [loan.id]
    assert [l.id for l in lib.list_loans(overdue=True, now=later)] == [loan.id]
    assert lib.list_loans(overdue=False, now=later) == []


def test_overdue_loans_sorted_by_due_date(lib, user):
    books = [lib.add_book(f"Book {i}", "Author") for i in range(3)]
    other = lib.add_user("Grace Hopper", "grace@example.com")
    late = lib.create_loan(books[0].id, user.id, loan_date=NOW - timedelta(days=30),
                           due_date=NOW - timedelta(days=2), now=NOW)
    later = lib.create_loan(books[1].id, other.id, loan_date=NOW - timedelta(days=30),
                            due_date=NOW - timedelta(days=10), now=NOW)
    lib.create_loan(books[2].id, user.id, now=NOW)

    assert [l.id for l in lib.overdue_loans(NOW)] == [later.id, late.id]


def test_refresh_flags(lib, book, user):
    loan = lib.create_loan(book.id, user.id, due_date=NOW + timedelta(days=1), now=NOW)

    assert lib.refresh_overdue(NOW + timedelta(days=2)) == 1
    assert lib.get_loan(loan.id).is_overdue is True
    assert lib.refresh_overdue(NOW + timedelta(days=2)) == 0
    assert lib.refresh_overdue(NOW) == 1
    assert lib.get_loan(loan.id).is_overdue is False
