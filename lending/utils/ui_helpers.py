import json
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable that carries the CLI output mode between the callback and commands.
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LENDING_CLI_OUTPUT"
OUTPUT_MODES = ("plain", "json", "rich")

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode not in OUTPUT_MODES:
        raise ValueError(f"Unknown output mode: {mode!r}. Use one of: {', '.join(OUTPUT_MODES)}")
    os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, default=str))


def print_books(books: List[Any]) -> None:
    """Print books in the current output mode.
    - plain: 'ID - Title by Author [available|on loan]' lines, or 'No books in library.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()
    if mode == "json":
        _print_json([b.to_dict() for b in books])
        return
    if not books:
        print("No books in library.")
        return
    if mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("ISBN", style="dim")
        table.add_column("Status")
        for b in books:
            status = "[green]available[/]" if b.is_available else "[yellow]on loan[/]"
            table.add_row(b.id, b.title, b.author, b.isbn or "", status)
        _console.print(table)
    else:
        for b in books:
            status = "available" if b.is_available else "on loan"
            print(f"{b.id} - {b.title} by {b.author} [{status}]")


def print_users(users: List[Any], total: Optional[int] = None) -> None:
    mode = get_output_mode()
    if mode == "json":
        _print_json([u.to_dict() for u in users])
        return
    if not users:
        print("No users found.")
        return
    if mode == "rich":
        table = Table(title="👤 Users", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Name", style="white")
        table.add_column("Email", style="white")
        table.add_column("Type")
        table.add_column("Active")
        for u in users:
            table.add_row(u.id, u.name, u.email, u.type, "yes" if u.is_active else "[red]no[/]")
        _console.print(table)
    else:
        for u in users:
            suffix = "" if u.is_active else " (inactive)"
            print(f"{u.id} - {u.name} <{u.email}> {u.type}{suffix}")
    if total is not None and total > len(users):
        print(f"Showing {len(users)} of {total} users.")


def print_loans(loans: List[Any], now: Optional[datetime] = None, empty_message: str = "No loans found.") -> None:
    """Print loans; the overdue marker is computed against ``now``."""
    mode = get_output_mode()
    if mode == "json":
        _print_json([loan.to_dict(now) for loan in loans])
        return
    if not loans:
        print(empty_message)
        return
    if mode == "rich":
        table = Table(title="🔖 Loans", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Book")
        table.add_column("User")
        table.add_column("Due")
        table.add_column("Status")
        for loan in loans:
            status = loan.status
            if loan.overdue(now):
                status = "[bold red]overdue[/]"
            table.add_row(loan.id, loan.book_id, loan.user_id, loan.due_date.date().isoformat(), status)
        _console.print(table)
    else:
        for loan in loans:
            status = "overdue" if loan.overdue(now) else loan.status
            print(f"{loan.id} - book {loan.book_id} to user {loan.user_id}, due {loan.due_date.date().isoformat()} [{status}]")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print the statistics overview in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    books = stats.get("books", {})
    users = stats.get("users", {})
    loans = stats.get("loans", {})

    if mode == "json":
        _print_json(stats)
    elif mode == "rich":
        content = (
            f"[bold]Books:[/] {books.get('total', 0)} "
            f"({books.get('available', 0)} available, {books.get('on_loan', 0)} on loan)\n"
            f"[bold]Users:[/] {users.get('total', 0)} ({users.get('active', 0)} active)\n"
            f"[bold]Active Loans:[/] {loans.get('active', 0)}\n"
            f"[bold]Overdue Loans:[/] [red]{loans.get('overdue', 0)}[/]"
        )
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        print(f"Total Books: {books.get('total', 0)}")
        print(f"Available Books: {books.get('available', 0)}")
        print(f"Total Users: {users.get('total', 0)}")
        print(f"Active Loans: {loans.get('active', 0)}")
        print(f"Overdue Loans: {loans.get('overdue', 0)}")
