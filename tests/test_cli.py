import json
from datetime import datetime, timezone

import pytest
from typer.testing import CliRunner

from lending.main import app
from lending.utils.ui_helpers import OUTPUT_MODE_ENV

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(lib, monkeypatch):
    # The CLI opens its own Library on whatever LENDING_DB_FILE points at
    monkeypatch.setenv("LENDING_DB_FILE", lib.db_file)
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")


def test_books_empty():
    result = runner.invoke(app, ["books"])
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_book_add_and_list(lib):
    result = runner.invoke(app, ["book-add", "Dune", "Frank Herbert", "--isbn", "9780441013593", "--year", "1965"])
    assert result.exit_code == 0, result.stdout
    assert "Book added:" in result.stdout

    result = runner.invoke(app, ["books"])
    assert "Dune by Frank Herbert [available]" in result.stdout
    assert lib.list_books()[0].year == 1965


def test_book_add_invalid_isbn():
    result = runner.invoke(app, ["book-add", "Dune", "Frank Herbert", "--isbn", "42"])
    assert result.exit_code == 1
    assert "Error: Please enter a valid ISBN" in result.stdout


def test_books_json_output(book):
    result = runner.invoke(app, ["--output", "json", "books"])
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload[0]["id"] == book.id
    assert payload[0]["is_available"] is True


def test_books_rich_output(book):
    result = runner.invoke(app, ["-o", "rich", "books"])
    assert result.exit_code == 0
    assert "Dune" in result.stdout


def test_unknown_output_mode():
    result = runner.invoke(app, ["--output", "yaml", "books"])
    assert result.exit_code != 0


def test_lend_return_flow(lib, book, user):
    result = runner.invoke(app, ["lend", book.id, user.id, "--days", "7"])
    assert result.exit_code == 0, result.stdout
    assert "Loan created:" in result.stdout
    loan = lib.list_loans()[0]
    assert lib.get_book(book.id).is_available is False

    result = runner.invoke(app, ["books", "--on-loan"])
    assert "[on loan]" in result.stdout

    result = runner.invoke(app, ["loans", "--status", "active"])
    assert loan.id in result.stdout

    result = runner.invoke(app, ["return", loan.id])
    assert result.exit_code == 0
    assert f"Loan {loan.id} returned." in result.stdout
    assert lib.get_book(book.id).is_available is True

    result = runner.invoke(app, ["return", loan.id])
    assert result.exit_code == 1
    assert "Error: Loan is already returned" in result.stdout


def test_lend_unavailable_book(lib, book, user):
    other = lib.add_user("Grace Hopper", "grace@example.com")
    lib.create_loan(book.id, user.id)

    result = runner.invoke(app, ["lend", book.id, other.id])
    assert result.exit_code == 1
    assert "Error: Book is already on loan" in result.stdout


def test_book_remove_guarded(lib, book, user):
    loan = lib.create_loan(book.id, user.id)

    result = runner.invoke(app, ["book-remove", book.id])
    assert result.exit_code == 1
    assert "Error: Cannot delete book with active loans" in result.stdout

    runner.invoke(app, ["loan-delete", loan.id])
    result = runner.invoke(app, ["book-remove", book.id])
    assert result.exit_code == 0
    assert f"Book {book.id} has been removed." in result.stdout


def test_user_commands(lib):
    result = runner.invoke(app, ["user-add", "Ada Lovelace", "ada@example.com", "--type", "teacher"])
    assert result.exit_code == 0, result.stdout
    user = lib.list_users()["users"][0]

    result = runner.invoke(app, ["users"])
    assert "Ada Lovelace <ada@example.com> teacher" in result.stdout

    result = runner.invoke(app, ["user-add", "Ada Again", "ADA@example.com"])
    assert result.exit_code == 1
    assert "already exists" in result.stdout

    result = runner.invoke(app, ["user-remove", user.id])
    assert result.exit_code == 0
    assert "No users found." in runner.invoke(app, ["users"]).stdout


def test_overdue_and_stats(lib, book, user):
    lib.create_loan(book.id, user.id, loan_date="2020-01-01T00:00:00Z", due_date="2020-01-15T00:00:00Z")

    result = runner.invoke(app, ["overdue"])
    assert result.exit_code == 0
    assert "[overdue]" in result.stdout

    result = runner.invoke(app, ["stats"])
    assert "Total Books: 1" in result.stdout
    assert "Overdue Loans: 1" in result.stdout


def test_reconcile_command(lib, book):
    # A claim left behind long ago without a loan
    lib.store.claim_book(book.id, datetime(2020, 1, 1, tzinfo=timezone.utc))

    result = runner.invoke(app, ["reconcile"])
    assert result.exit_code == 0
    assert "Marked unavailable: 0" in result.stdout
    assert "Released: 1" in result.stdout
    assert lib.get_book(book.id).is_available is True
