import logging
import os
import subprocess
import sys
from datetime import timedelta
from typing import Optional

import typer

from lending.config import settings
from lending.errors import LendingError
from lending.library import Library
from lending.utils.dates import utcnow
from lending.utils.ui_helpers import (
    print_books,
    print_loans,
    print_stats_result,
    print_users,
    set_output_mode,
)

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "WARNING").upper())
logger = logging.getLogger(__name__)


class LibraryManager:
    """One Library per database file; rebuilt when LENDING_DB_FILE changes (e.g. per test)."""

    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        current_db = os.environ.get("LENDING_DB_FILE") or settings.db_file
        if cls._instance is None or current_db != cls._db_file_snapshot:
            cls._instance = Library(current_db)
            cls._db_file_snapshot = current_db
        return cls._instance


def _fail(e: LendingError) -> None:
    print(f"Error: {e.message}")
    raise typer.Exit(code=1)


app = typer.Typer(help="Library lending CLI")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options for the CLI (e.g. output mode)."""
    if output:
        try:
            set_output_mode(output)
        except ValueError as e:
            raise typer.BadParameter(str(e), param_hint="--output")


# --- Books ---
@app.command("book-add")
def cli_book_add(
    title: str,
    author: str,
    isbn: Optional[str] = typer.Option(None, "--isbn"),
    publisher: Optional[str] = typer.Option(None, "--publisher"),
    year: Optional[int] = typer.Option(None, "--year"),
    category: Optional[str] = typer.Option(None, "--category", "-c"),
    location: Optional[str] = typer.Option(None, "--location", help="Shelf location"),
):
    """Add a book to the catalog."""
    try:
        book = LibraryManager.get_instance().add_book(
            title, author, isbn=isbn, publisher=publisher, year=year, category=category, location=location
        )
    except LendingError as e:
        _fail(e)
    print(f"Book added: {book.id} - {book.title} by {book.author}")


@app.command("books")
def cli_books(
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Search title, author, category or ISBN"),
    category: Optional[str] = typer.Option(None, "--category", "-c"),
    available: Optional[bool] = typer.Option(None, "--available/--on-loan", help="Filter by availability"),
    sort_by: str = typer.Option("title", "--sort-by"),
    order: str = typer.Option("asc", "--order"),
):
    """List books."""
    try:
        books = LibraryManager.get_instance().list_books(
            q=query, category=category, available=available, sort_by=sort_by, order=order
        )
    except LendingError as e:
        _fail(e)
    print_books(books)


@app.command("book-remove")
def cli_book_remove(book_id: str):
    """Delete a book. Refused while the book is on loan."""
    try:
        LibraryManager.get_instance().delete_book(book_id)
    except LendingError as e:
        _fail(e)
    print(f"Book {book_id} has been removed.")


# --- Users ---
@app.command("user-add")
def cli_user_add(
    name: str,
    email: str,
    type: str = typer.Option("student", "--type", "-t", help="student | teacher | staff"),
    phone: Optional[str] = typer.Option(None, "--phone"),
    department: Optional[str] = typer.Option(None, "--department"),
    password: Optional[str] = typer.Option(None, "--password"),
):
    """Register a user."""
    try:
        user = LibraryManager.get_instance().add_user(
            name, email, type=type, phone=phone, department=department, password=password
        )
    except LendingError as e:
        _fail(e)
    print(f"User added: {user.id} - {user.name} <{user.email}>")


@app.command("users")
def cli_users(
    search: Optional[str] = typer.Option(None, "--search", "-s"),
    type: Optional[str] = typer.Option(None, "--type", "-t"),
    active: Optional[bool] = typer.Option(None, "--active/--inactive"),
    page: int = typer.Option(1, "--page", min=1),
    limit: int = typer.Option(settings.default_page_size, "--limit", min=1),
):
    """List users, one page at a time."""
    try:
        result = LibraryManager.get_instance().list_users(
            search=search, type=type, active=active, page=page, limit=limit
        )
    except LendingError as e:
        _fail(e)
    print_users(result["users"], total=result["total"])


@app.command("user-remove")
def cli_user_remove(user_id: str):
    """Delete a user. Refused while the user has an active loan."""
    try:
        LibraryManager.get_instance().delete_user(user_id)
    except LendingError as e:
        _fail(e)
    print(f"User {user_id} has been removed.")


# --- Loans ---
@app.command("lend")
def cli_lend(
    book_id: str,
    user_id: str,
    due: Optional[str] = typer.Option(None, "--due", help="Due date (ISO 8601)"),
    days: Optional[int] = typer.Option(None, "--days", min=1, help="Loan length in days"),
    notes: Optional[str] = typer.Option(None, "--notes"),
):
    """Lend a book to a user."""
    now = utcnow()
    due_date = due
    if due_date is None and days is not None:
        due_date = now + timedelta(days=days)
    try:
        loan = LibraryManager.get_instance().create_loan(book_id, user_id, due_date=due_date, notes=notes, now=now)
    except LendingError as e:
        _fail(e)
    print(f"Loan created: {loan.id} (due {loan.due_date.date().isoformat()})")


@app.command("return")
def cli_return(loan_id: str, notes: Optional[str] = typer.Option(None, "--notes")):
    """Mark a loan as returned."""
    try:
        loan = LibraryManager.get_instance().return_loan(loan_id, notes=notes)
    except LendingError as e:
        _fail(e)
    print(f"Loan {loan.id} returned. Book {loan.book_id} is available again.")


@app.command("loan-delete")
def cli_loan_delete(loan_id: str):
    """Delete a loan record."""
    try:
        LibraryManager.get_instance().delete_loan(loan_id)
    except LendingError as e:
        _fail(e)
    print(f"Loan {loan_id} has been deleted.")


@app.command("loans")
def cli_loans(
    status: Optional[str] = typer.Option(None, "--status", help="active | returned"),
    user_id: Optional[str] = typer.Option(None, "--user"),
    book_id: Optional[str] = typer.Option(None, "--book"),
    overdue: bool = typer.Option(False, "--overdue", help="Only overdue loans"),
):
    """List loans."""
    now = utcnow()
    try:
        loans = LibraryManager.get_instance().list_loans(
            status=status, user_id=user_id, book_id=book_id, overdue=overdue or None, now=now
        )
    except LendingError as e:
        _fail(e)
    print_loans(loans, now)


@app.command("overdue")
def cli_overdue():
    """List overdue loans, soonest due first."""
    now = utcnow()
    try:
        loans = LibraryManager.get_instance().overdue_loans(now)
    except LendingError as e:
        _fail(e)
    print_loans(loans, now, empty_message="No overdue loans.")


@app.command("stats")
def cli_stats():
    """Show library statistics."""
    try:
        stats = LibraryManager.get_instance().get_statistics()
    except LendingError as e:
        _fail(e)
    print_stats_result(stats)


@app.command("reconcile")
def cli_reconcile():
    """Repair book availability flags and refresh cached overdue flags."""
    lib = LibraryManager.get_instance()
    try:
        report = lib.reconcile()
        refreshed = lib.refresh_overdue()
    except LendingError as e:
        _fail(e)
    print(f"Marked unavailable: {len(report.marked_unavailable)}")
    print(f"Released: {len(report.released)}")
    print(f"Overdue flags refreshed: {refreshed}")


@app.command("serve")
def cli_serve(
    timeout: int = typer.Option(0, "--timeout", help="Seconds to run before shutting down (0 = no timeout)"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on code changes"),
):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "lending.api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    if timeout and timeout > 0:
        proc = subprocess.Popen(args)
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
    else:
        raise typer.Exit(code=subprocess.run(args).returncode)


if __name__ == "__main__":
    app()
