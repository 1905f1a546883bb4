import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from lending.book import Book
from lending.config import settings
from lending.errors import ConflictError, InvalidArgumentError, NotFoundError
from lending.loan import Loan
from lending.services.availability import AvailabilitySynchronizer, ReconcileReport
from lending.services.integrity import GuardResult, IntegrityGuard
from lending.services.loans import LoanLifecycleManager
from lending.services.overdue import OverdueClassifier
from lending.services.stats import StatsService
from lending.store import BOOK_COLUMNS, EntityStore, new_id
from lending.user import User, hash_password
from lending.utils.dates import utcnow
from lending.utils.validators import validate_book_fields, validate_user_fields

logger = logging.getLogger(__name__)

USER_UPDATABLE = ("name", "email", "type", "phone", "department", "is_active", "password")
USER_REQUIRED = ("name", "email", "type", "is_active")


class Library:
    """Catalog of books and users plus the lending core, wired over one store."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.store = EntityStore(db_file)
        self.availability = AvailabilitySynchronizer(self.store)
        self.overdue = OverdueClassifier(self.store)
        self.loans = LoanLifecycleManager(self.store, self.availability)
        self.guard = IntegrityGuard(self.store)
        self.stats = StatsService(self.store)

    @property
    def db_file(self) -> str:
        return self.store.db_file

    # ------------------------- Books ------------------------- #
    def add_book(self, title: str, author: str, isbn: Optional[str] = None,
                 publisher: Optional[str] = None, year: Optional[int] = None,
                 category: Optional[str] = None, location: Optional[str] = None) -> Book:
        data = validate_book_fields({
            "title": title, "author": author, "isbn": isbn, "publisher": publisher,
            "year": year, "category": category, "location": location,
        })
        if data.get("isbn") and self.store.get_book_by_isbn(data["isbn"]):
            raise ConflictError(f"Book with ISBN {data['isbn']} already exists.")
        book = self.store.insert_book(Book(id=new_id("book"), **data))
        logger.info(f"Book added: {book.id} '{book.title}'")
        return book

    def get_book(self, book_id: str) -> Book:
        book = self.store.get_book(book_id)
        if book is None:
            raise NotFoundError("Book not found")
        return book

    def update_book(self, book_id: str, **fields: Any) -> Book:
        """Update descriptive fields. Availability is derived from loans and cannot be set."""
        if "is_available" in fields:
            raise InvalidArgumentError("Availability is managed by loans and cannot be updated")
        unknown = set(fields) - set(BOOK_COLUMNS)
        if unknown:
            raise InvalidArgumentError(f"Cannot update book fields: {', '.join(sorted(unknown))}")
        if not fields:
            raise InvalidArgumentError("Nothing to update")
        data = validate_book_fields(fields, partial=True)
        if not self.store.update_book_fields(book_id, data):
            raise NotFoundError("Book not found")
        logger.info(f"Book updated: {book_id} ({', '.join(sorted(data))})")
        return self.get_book(book_id)

    def list_books(self, q: Optional[str] = None, category: Optional[str] = None,
                   available: Optional[bool] = None, sort_by: str = "title",
                   order: str = "asc") -> List[Book]:
        try:
            return self.store.list_books(q=q, category=category, available=available,
                                         sort_by=sort_by, order=order)
        except ValueError as e:
            raise InvalidArgumentError(str(e)) from e

    def search_books(self, query: str) -> List[Book]:
        """Search by title, author, category or ISBN (case-insensitive substring)."""
        if not query or not query.strip():
            return []
        return self.list_books(q=query)

    def can_delete_book(self, book_id: str) -> GuardResult:
        return self.guard.can_delete_book(book_id)

    def delete_book(self, book_id: str) -> None:
        self.guard.delete_book(book_id)

    # ------------------------- Users ------------------------- #
    def add_user(self, name: str, email: str, type: str = "student",
                 phone: Optional[str] = None, department: Optional[str] = None,
                 password: Optional[str] = None, is_active: bool = True) -> User:
        data = validate_user_fields({
            "name": name, "email": email, "type": type, "phone": phone,
            "department": department, "password": password,
        })
        if self.store.get_user_by_email(data["email"]):
            raise ConflictError("User with this email already exists")
        user = User(
            id=new_id("user"),
            name=data["name"],
            email=data["email"],
            type=data.get("type") or "student",
            phone=data.get("phone"),
            department=data.get("department"),
            is_active=is_active,
            password_hash=hash_password(password) if password else None,
        )
        self.store.insert_user(user)
        logger.info(f"User added: {user.id} <{user.email}>")
        return user

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def update_user(self, user_id: str, **fields: Any) -> User:
        unknown = set(fields) - set(USER_UPDATABLE)
        if unknown:
            raise InvalidArgumentError(f"Cannot update user fields: {', '.join(sorted(unknown))}")
        if not fields:
            raise InvalidArgumentError("Nothing to update")
        nulls = sorted(name for name in USER_REQUIRED if name in fields and fields[name] is None)
        if nulls:
            raise InvalidArgumentError(f"User fields cannot be null: {', '.join(nulls)}")
        data = validate_user_fields(fields, partial=True)
        password = data.pop("password", None)
        if password:
            data["password_hash"] = hash_password(password)
        if not self.store.update_user_fields(user_id, data):
            raise NotFoundError("User not found")
        logger.info(f"User updated: {user_id} ({', '.join(sorted(fields))})")
        return self.get_user(user_id)

    def list_users(self, search: Optional[str] = None, type: Optional[str] = None,
                   active: Optional[bool] = None, page: int = 1, limit: Optional[int] = None,
                   sort_by: str = "created_at", sort_order: str = "desc") -> Dict[str, Any]:
        """One page of users plus pagination metadata."""
        limit = min(limit or settings.default_page_size, settings.max_page_size)
        page = max(page, 1)
        try:
            users, total = self.store.list_users(
                search=search, type=type, active=active, sort_by=sort_by,
                sort_order=sort_order, limit=limit, offset=(page - 1) * limit,
            )
        except ValueError as e:
            raise InvalidArgumentError(str(e)) from e
        return {
            "users": users,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit) if total else 0,
        }

    def can_delete_user(self, user_id: str) -> GuardResult:
        return self.guard.can_delete_user(user_id)

    def delete_user(self, user_id: str) -> None:
        self.guard.delete_user(user_id)

    def user_loans(self, user_id: str, status: Optional[str] = None) -> List[Loan]:
        self.get_user(user_id)
        return self.list_loans(status=status, user_id=user_id)

    # ------------------------- Loans ------------------------- #
    def create_loan(self, book_id: str, user_id: str, due_date: Any = None,
                    notes: Optional[str] = None, loan_date: Any = None,
                    now: Optional[datetime] = None) -> Loan:
        return self.loans.create_loan(book_id, user_id, due_date=due_date, notes=notes,
                                      loan_date=loan_date, now=now)

    def return_loan(self, loan_id: str, notes: Optional[str] = None,
                    now: Optional[datetime] = None) -> Loan:
        return self.loans.return_loan(loan_id, notes=notes, now=now)

    def delete_loan(self, loan_id: str, now: Optional[datetime] = None) -> Loan:
        return self.loans.delete_loan(loan_id, now=now)

    def update_loan(self, loan_id: str, now: Optional[datetime] = None, **fields: Any) -> Loan:
        return self.loans.update_loan(loan_id, fields, now=now)

    def get_loan(self, loan_id: str) -> Loan:
        loan = self.store.get_loan(loan_id)
        if loan is None:
            raise NotFoundError("Loan not found")
        return loan

    def list_loans(self, status: Optional[str] = None, user_id: Optional[str] = None,
                   book_id: Optional[str] = None, overdue: Optional[bool] = None,
                   now: Optional[datetime] = None) -> List[Loan]:
        if status not in (None, "active", "returned"):
            raise InvalidArgumentError(f"Invalid loan status: {status}")
        now = now or utcnow()
        if overdue:
            loans = self.store.list_loans(status=status, user_id=user_id, book_id=book_id, overdue_at=now)
            return [loan for loan in loans if loan.overdue(now)]
        loans = self.store.list_loans(status=status, user_id=user_id, book_id=book_id)
        if overdue is False:
            loans = [loan for loan in loans if not loan.overdue(now)]
        return loans

    def overdue_loans(self, now: Optional[datetime] = None) -> List[Loan]:
        return self.overdue.overdue_loans(now)

    def loan_details(self, loan: Loan, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Loan payload with book and user summaries embedded.

        The summaries are None once the book or user has been deleted.
        """
        payload = loan.to_dict(now)
        book = self.store.get_book(loan.book_id)
        user = self.store.get_user(loan.user_id)
        payload["book"] = book.summary() if book else None
        payload["user"] = user.summary() if user else None
        return payload

    def refresh_overdue(self, now: Optional[datetime] = None) -> int:
        return self.overdue.refresh_flags(now)

    def reconcile(self, now: Optional[datetime] = None) -> ReconcileReport:
        return self.availability.reconcile(now)

    # ------------------------- Statistics ------------------------- #
    def get_statistics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return self.stats.overview(now)

    def popular_books(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return self.stats.popular_books(limit)

    def user_overview(self) -> Dict[str, Any]:
        return self.stats.user_overview()
