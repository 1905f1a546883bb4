from lending.library import Library


def assert_availability_consistent(lib: Library) -> None:
    """Every book is available exactly when no active loan references it."""
    for book in lib.list_books():
        active = lib.store.find_active_loan(book_id=book.id)
        assert book.is_available == (active is None), book.id
