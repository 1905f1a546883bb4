"""SQLite-backed entity store for books, users and loans.

Every public method is one unit of work on its own connection. Methods that
mutate shared state are single conditional statements ("update only if the
predicate still holds") and report through their return value whether the
predicate held, so callers never need a separate read-then-write.
"""

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

import lending.database as database
from lending.book import Book
from lending.database import get_db_connection, initialize_database
from lending.errors import ConflictError, InvalidArgumentError, StoreError
from lending.loan import Loan
from lending.user import User
from lending.utils.dates import to_iso, utcnow

logger = logging.getLogger(__name__)

BOOK_COLUMNS = ("title", "author", "isbn", "publisher", "year", "category", "location")
USER_COLUMNS = ("name", "email", "type", "phone", "department", "is_active", "password_hash")
LOAN_COLUMNS = ("book_id", "user_id", "loan_date", "due_date", "notes", "is_overdue")

BOOK_SORT_FIELDS = {"title": "title COLLATE NOCASE", "author": "author COLLATE NOCASE",
                    "year": "year", "created_at": "created_at"}
USER_SORT_FIELDS = {"created_at": "created_at", "name": "name COLLATE NOCASE",
                    "email": "email", "type": "type"}
LOAN_SORT_FIELDS = {"created_at": "created_at", "loan_date": "loan_date", "due_date": "due_date"}

ACTIVE_LOAN_FOR_BOOK = "SELECT 1 FROM loans WHERE loans.book_id = books.id AND loans.returned = 0"
ACTIVE_LOAN_FOR_USER = "SELECT 1 FROM loans WHERE loans.user_id = users.id AND loans.returned = 0"


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _order_clause(sort_fields: Dict[str, str], sort_by: str, order: str) -> str:
    column = sort_fields.get(sort_by)
    if column is None:
        raise ValueError(f"Invalid sort field: {sort_by}")
    direction = "DESC" if order.lower() == "desc" else "ASC"
    return f" ORDER BY {column} {direction}, id ASC"


def _book_integrity_error(e: sqlite3.IntegrityError, isbn: Optional[str]) -> Exception:
    if "books.isbn" in str(e):
        return ConflictError(f"Book with ISBN {isbn} already exists.")
    return InvalidArgumentError(f"Invalid book data: {e}")


def _user_integrity_error(e: sqlite3.IntegrityError) -> Exception:
    if "users.email" in str(e):
        return ConflictError("User with this email already exists")
    return InvalidArgumentError(f"Invalid user data: {e}")


class EntityStore:
    """Keyed storage for the three entity collections.

    The only consistency primitive the lending core relies on is the
    conditional write: ``claim_book``, ``sync_book_availability``,
    ``insert_loan_if_allowed``, ``mark_loan_returned``, ``update_active_loan``,
    ``delete_loan`` and the ``delete_*_if_unreferenced`` methods each execute a
    single atomic statement.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or database.DATABASE_FILE
        try:
            initialize_database(self.db_file)
        except sqlite3.Error as e:
            raise StoreError(f"Could not initialise database {self.db_file}: {e}") from e

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection; sqlite failures other than constraint violations become ``StoreError``."""
        try:
            conn = get_db_connection(self.db_file)
        except sqlite3.Error as e:
            logger.error(f"Could not open database {self.db_file}: {e}")
            raise StoreError(f"Could not open database: {e}") from e
        try:
            yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            logger.error(f"Store operation failed: {e}")
            raise StoreError(f"Store operation failed: {e}") from e
        finally:
            conn.close()

    def _fetch_one(self, sql: str, params: Tuple = ()) -> Optional[Dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(sql, params).fetchone()
            return dict(row) if row else None

    def _fetch_all(self, sql: str, params: Tuple = ()) -> List[Dict[str, Any]]:
        with self.connection() as conn:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]

    def _scalar(self, sql: str, params: Tuple = ()) -> Any:
        with self.connection() as conn:
            row = conn.execute(sql, params).fetchone()
            return row[0] if row else None

    def _execute(self, sql: str, params: Tuple = ()) -> int:
        """Run one write statement, commit, and return the affected row count."""
        with self.connection() as conn:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount

    # ------------------------- Books ------------------------- #
    def get_book(self, book_id: str) -> Optional[Book]:
        row = self._fetch_one("SELECT * FROM books WHERE id = ?", (book_id,))
        return Book.from_dict(row) if row else None

    def get_book_by_isbn(self, isbn: str) -> Optional[Book]:
        row = self._fetch_one("SELECT * FROM books WHERE isbn = ?", (isbn,))
        return Book.from_dict(row) if row else None

    def insert_book(self, book: Book) -> Book:
        now = to_iso(utcnow())
        book.created_at = book.created_at or now
        book.updated_at = now
        try:
            self._execute(
                """
                INSERT INTO books (id, title, author, isbn, publisher, year, category, location,
                                   is_available, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (book.id, book.title, book.author, book.isbn, book.publisher, book.year,
                 book.category, book.location, book.created_at, book.updated_at),
            )
        except sqlite3.IntegrityError as e:
            raise _book_integrity_error(e, book.isbn) from e
        book.is_available = True
        return book

    def update_book_fields(self, book_id: str, fields: Dict[str, Any]) -> bool:
        """Update descriptive fields. ``is_available`` is deliberately not accepted here."""
        unknown = set(fields) - set(BOOK_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update book fields: {', '.join(sorted(unknown))}")
        if not fields:
            return self.get_book(book_id) is not None
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = tuple(fields.values()) + (to_iso(utcnow()), book_id)
        try:
            return self._execute(f"UPDATE books SET {assignments}, updated_at = ? WHERE id = ?", params) == 1
        except sqlite3.IntegrityError as e:
            raise _book_integrity_error(e, fields.get("isbn")) from e

    def list_books(self, q: Optional[str] = None, category: Optional[str] = None,
                   available: Optional[bool] = None, sort_by: str = "title",
                   order: str = "asc") -> List[Book]:
        sql = "SELECT * FROM books WHERE 1 = 1"
        params: List[Any] = []
        if q:
            like = f"%{q.strip()}%"
            sql += " AND (title LIKE ? OR author LIKE ? OR category LIKE ? OR isbn LIKE ?)"
            params.extend([like, like, like, like])
        if category:
            sql += " AND category = ? COLLATE NOCASE"
            params.append(category)
        if available is not None:
            sql += " AND is_available = ?"
            params.append(1 if available else 0)
        sql += _order_clause(BOOK_SORT_FIELDS, sort_by, order)
        return [Book.from_dict(row) for row in self._fetch_all(sql, tuple(params))]

    # ------------------------- Availability ------------------------- #
    def claim_book(self, book_id: str, now: datetime) -> bool:
        """Mark the book unavailable only if it is currently available.

        Returns True when this call performed the transition.
        """
        return self._execute(
            "UPDATE books SET is_available = 0, updated_at = ? WHERE id = ? AND is_available = 1",
            (to_iso(now), book_id),
        ) == 1

    def sync_book_availability(self, book_id: str, now: datetime) -> Optional[bool]:
        """Set ``is_available`` from the existence of an active loan, in one statement.

        Returns the resulting availability, or None if the book does not exist.
        """
        with self.connection() as conn:
            conn.execute(
                f"""
                UPDATE books SET is_available = (NOT EXISTS ({ACTIVE_LOAN_FOR_BOOK})), updated_at = ?
                WHERE id = ? AND is_available != (NOT EXISTS ({ACTIVE_LOAN_FOR_BOOK}))
                """,
                (to_iso(now), book_id),
            )
            conn.commit()
            row = conn.execute("SELECT is_available FROM books WHERE id = ?", (book_id,)).fetchone()
        return bool(row[0]) if row else None

    def mark_loaned_books_unavailable(self, now: datetime) -> List[str]:
        """Reconciliation: available books that have an active loan become unavailable."""
        with self.connection() as conn:
            rows = conn.execute(
                f"""
                UPDATE books SET is_available = 0, updated_at = ?
                WHERE is_available = 1 AND EXISTS ({ACTIVE_LOAN_FOR_BOOK})
                RETURNING id
                """,
                (to_iso(now),),
            ).fetchall()
            conn.commit()
        return [row[0] for row in rows]

    def release_orphaned_books(self, older_than: datetime, now: datetime) -> List[str]:
        """Reconciliation: unavailable books with no active loan, untouched since ``older_than``, become available."""
        with self.connection() as conn:
            rows = conn.execute(
                f"""
                UPDATE books SET is_available = 1, updated_at = ?
                WHERE is_available = 0 AND updated_at < ? AND NOT EXISTS ({ACTIVE_LOAN_FOR_BOOK})
                RETURNING id
                """,
                (to_iso(now), to_iso(older_than)),
            ).fetchall()
            conn.commit()
        return [row[0] for row in rows]

    def delete_book_if_unreferenced(self, book_id: str) -> bool:
        """Delete the book only if it is available and no active loan references it."""
        return self._execute(
            f"DELETE FROM books WHERE id = ? AND is_available = 1 AND NOT EXISTS ({ACTIVE_LOAN_FOR_BOOK})",
            (book_id,),
        ) == 1

    # ------------------------- Users ------------------------- #
    def get_user(self, user_id: str) -> Optional[User]:
        row = self._fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))
        return User.from_dict(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        row = self._fetch_one("SELECT * FROM users WHERE email = ?", (email.strip().lower(),))
        return User.from_dict(row) if row else None

    def insert_user(self, user: User) -> User:
        now = to_iso(utcnow())
        user.created_at = user.created_at or now
        user.updated_at = now
        try:
            self._execute(
                """
                INSERT INTO users (id, name, email, type, phone, department, is_active,
                                   password_hash, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (user.id, user.name, user.email, user.type, user.phone, user.department,
                 1 if user.is_active else 0, user.password_hash, user.created_at, user.updated_at),
            )
        except sqlite3.IntegrityError as e:
            raise _user_integrity_error(e) from e
        return user

    def update_user_fields(self, user_id: str, fields: Dict[str, Any]) -> bool:
        unknown = set(fields) - set(USER_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update user fields: {', '.join(sorted(unknown))}")
        if not fields:
            return self.get_user(user_id) is not None
        values = {k: (1 if v else 0) if k == "is_active" and v is not None else v for k, v in fields.items()}
        assignments = ", ".join(f"{name} = ?" for name in values)
        params = tuple(values.values()) + (to_iso(utcnow()), user_id)
        try:
            return self._execute(f"UPDATE users SET {assignments}, updated_at = ? WHERE id = ?", params) == 1
        except sqlite3.IntegrityError as e:
            raise _user_integrity_error(e) from e

    def list_users(self, search: Optional[str] = None, type: Optional[str] = None,
                   active: Optional[bool] = None, sort_by: str = "created_at",
                   sort_order: str = "desc", limit: Optional[int] = None,
                   offset: int = 0) -> Tuple[List[User], int]:
        where = " WHERE 1 = 1"
        params: List[Any] = []
        if search:
            like = f"%{search.strip()}%"
            where += " AND (name LIKE ? OR email LIKE ? OR department LIKE ?)"
            params.extend([like, like, like])
        if type:
            where += " AND type = ?"
            params.append(type.lower())
        if active is not None:
            where += " AND is_active = ?"
            params.append(1 if active else 0)
        total = self._scalar("SELECT COUNT(*) FROM users" + where, tuple(params))
        sql = "SELECT * FROM users" + where + _order_clause(USER_SORT_FIELDS, sort_by, sort_order)
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        users = [User.from_dict(row) for row in self._fetch_all(sql, tuple(params))]
        return users, total

    def delete_user_if_unreferenced(self, user_id: str) -> bool:
        """Delete the user only if no active loan references them."""
        return self._execute(
            f"DELETE FROM users WHERE id = ? AND NOT EXISTS ({ACTIVE_LOAN_FOR_USER})",
            (user_id,),
        ) == 1

    # ------------------------- Loans ------------------------- #
    def get_loan(self, loan_id: str) -> Optional[Loan]:
        row = self._fetch_one("SELECT * FROM loans WHERE id = ?", (loan_id,))
        return Loan.from_dict(row) if row else None

    def find_active_loan(self, book_id: Optional[str] = None, user_id: Optional[str] = None) -> Optional[Loan]:
        sql = "SELECT * FROM loans WHERE returned = 0"
        params: List[Any] = []
        if book_id is not None:
            sql += " AND book_id = ?"
            params.append(book_id)
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        row = self._fetch_one(sql + " LIMIT 1", tuple(params))
        return Loan.from_dict(row) if row else None

    def insert_loan_if_allowed(self, loan: Loan) -> bool:
        """Insert an active loan only if the user is active, the book exists and the
        pair has no active loan yet. The partial unique index additionally refuses a
        second active loan on the same book. Returns False when refused.
        """
        now = to_iso(utcnow())
        loan.created_at = loan.created_at or now
        loan.updated_at = now
        try:
            inserted = self._execute(
                """
                INSERT INTO loans (id, book_id, user_id, loan_date, due_date, return_date,
                                   returned, is_overdue, notes, created_at, updated_at)
                SELECT ?, ?, ?, ?, ?, NULL, 0, ?, ?, ?, ?
                WHERE EXISTS (SELECT 1 FROM users WHERE id = ? AND is_active = 1)
                  AND EXISTS (SELECT 1 FROM books WHERE id = ?)
                  AND NOT EXISTS (SELECT 1 FROM loans WHERE book_id = ? AND user_id = ? AND returned = 0)
                """,
                (loan.id, loan.book_id, loan.user_id, to_iso(loan.loan_date), to_iso(loan.due_date),
                 1 if loan.is_overdue else 0, loan.notes, loan.created_at, loan.updated_at,
                 loan.user_id, loan.book_id, loan.book_id, loan.user_id),
            )
        except sqlite3.IntegrityError as e:
            logger.warning(f"Loan {loan.id} refused by store constraint: {e}")
            return False
        return inserted == 1

    def mark_loan_returned(self, loan_id: str, return_date: datetime, notes: Optional[str] = None) -> Optional[Loan]:
        """Active -> Returned, only if the loan is still active.

        Returns the loan as written, or None when the loan is missing or already returned.
        """
        with self.connection() as conn:
            rows = conn.execute(
                """
                UPDATE loans SET returned = 1, return_date = ?, is_overdue = 0,
                                 notes = COALESCE(?, notes), updated_at = ?
                WHERE id = ? AND returned = 0
                RETURNING *
                """,
                (to_iso(return_date), notes, to_iso(utcnow()), loan_id),
            ).fetchall()
            conn.commit()
        return Loan.from_dict(dict(rows[0])) if rows else None

    def update_active_loan(self, loan_id: str, fields: Dict[str, Any],
                           expected_book_id: Optional[str] = None,
                           require_active_user: Optional[str] = None) -> bool:
        """Update an active loan in place. Refused (False) if the loan is returned,
        its book is no longer ``expected_book_id``, or ``require_active_user`` is not
        an active user. A violated store constraint raises ``ConflictError``.
        """
        unknown = set(fields) - set(LOAN_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update loan fields: {', '.join(sorted(unknown))}")
        values = {k: to_iso(v) if isinstance(v, datetime) else v for k, v in fields.items()}
        if "is_overdue" in values:
            values["is_overdue"] = 1 if values["is_overdue"] else 0
        assignments = ", ".join([f"{name} = ?" for name in values] + ["updated_at = ?"])
        sql = f"UPDATE loans SET {assignments} WHERE id = ? AND returned = 0"
        params: List[Any] = list(values.values()) + [to_iso(utcnow()), loan_id]
        if expected_book_id is not None:
            sql += " AND book_id = ?"
            params.append(expected_book_id)
        if require_active_user is not None:
            sql += " AND EXISTS (SELECT 1 FROM users WHERE id = ? AND is_active = 1)"
            params.append(require_active_user)
        try:
            return self._execute(sql, tuple(params)) == 1
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Loan update refused by store constraint: {e}") from e

    def update_loan_notes(self, loan_id: str, notes: Optional[str]) -> bool:
        return self._execute(
            "UPDATE loans SET notes = ?, updated_at = ? WHERE id = ?",
            (notes, to_iso(utcnow()), loan_id),
        ) == 1

    def delete_loan(self, loan_id: str) -> Optional[Loan]:
        """Delete the loan and return the row as it was at deletion time."""
        with self.connection() as conn:
            rows = conn.execute("DELETE FROM loans WHERE id = ? RETURNING *", (loan_id,)).fetchall()
            conn.commit()
        return Loan.from_dict(dict(rows[0])) if rows else None

    def refresh_overdue_flags(self, now: datetime) -> int:
        """Rewrite the cached ``is_overdue`` column against ``now``."""
        stamp = to_iso(now)
        return self._execute(
            """
            UPDATE loans SET is_overdue = (returned = 0 AND due_date < ?)
            WHERE is_overdue != (returned = 0 AND due_date < ?)
            """,
            (stamp, stamp),
        )

    def list_loans(self, status: Optional[str] = None, user_id: Optional[str] = None,
                   book_id: Optional[str] = None, overdue_at: Optional[datetime] = None,
                   sort_by: str = "created_at", order: str = "desc") -> List[Loan]:
        sql = "SELECT * FROM loans WHERE 1 = 1"
        params: List[Any] = []
        if status == "active":
            sql += " AND returned = 0"
        elif status == "returned":
            sql += " AND returned = 1"
        if user_id:
            sql += " AND user_id = ?"
            params.append(user_id)
        if book_id:
            sql += " AND book_id = ?"
            params.append(book_id)
        if overdue_at is not None:
            sql += " AND returned = 0 AND due_date < ?"
            params.append(to_iso(overdue_at))
        sql += _order_clause(LOAN_SORT_FIELDS, sort_by, order)
        return [Loan.from_dict(row) for row in self._fetch_all(sql, tuple(params))]

    # ------------------------- Aggregates ------------------------- #
    def loan_counts_by_book(self, limit: int) -> List[Dict[str, Any]]:
        return self._fetch_all(
            """
            SELECT b.id AS id, b.title AS title, b.author AS author, COUNT(l.id) AS loan_count
            FROM loans l JOIN books b ON b.id = l.book_id
            GROUP BY b.id
            ORDER BY loan_count DESC, b.title COLLATE NOCASE ASC
            LIMIT ?
            """,
            (limit,),
        )

    def book_counts(self) -> Dict[str, int]:
        row = self._fetch_one(
            "SELECT COUNT(*) AS total, COALESCE(SUM(is_available), 0) AS available FROM books"
        )
        return {"total": row["total"], "available": row["available"]}

    def user_counts(self) -> Dict[str, Any]:
        row = self._fetch_one(
            "SELECT COUNT(*) AS total, COALESCE(SUM(is_active), 0) AS active FROM users"
        )
        by_type = self._fetch_all(
            "SELECT type, COUNT(*) AS count FROM users GROUP BY type ORDER BY count DESC, type ASC"
        )
        with_active_loans = self._scalar("SELECT COUNT(DISTINCT user_id) FROM loans WHERE returned = 0")
        return {
            "total": row["total"],
            "active": row["active"],
            "by_type": by_type,
            "with_active_loans": with_active_loans or 0,
        }

    def loan_counts(self, now: datetime) -> Dict[str, int]:
        row = self._fetch_one(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(returned = 0), 0) AS active,
                   COALESCE(SUM(returned = 1), 0) AS returned,
                   COALESCE(SUM(returned = 0 AND due_date < ?), 0) AS overdue
            FROM loans
            """,
            (to_iso(now),),
        )
        return dict(row)
