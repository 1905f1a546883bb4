"""Loan lifecycle: create, return, delete and update loans.

Every state transition goes through a conditional write on the store and is
followed, within the same call, by the availability synchronizer, so the
cached ``Book.is_available`` flag never disagrees with the active-loan set
once the call returns.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from lending.config import settings
from lending.errors import ConflictError, InvalidArgumentError, LendingError, NotFoundError
from lending.loan import Loan
from lending.services.availability import AvailabilitySynchronizer
from lending.services.overdue import is_overdue
from lending.store import EntityStore, new_id
from lending.utils.dates import parse_datetime, utcnow
from lending.utils.validators import MAX_NOTES_LENGTH, MIN_YEAR, TextValidator

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("due_date", "loan_date", "notes", "book_id", "user_id")

BOOK_NOT_FOUND = "Book not found"
USER_NOT_FOUND = "User not found"
LOAN_NOT_FOUND = "Loan not found"
BOOK_ON_LOAN = "Book is already on loan"
USER_INACTIVE = "User is not active"
DUPLICATE_LOAN = "User already has an active loan for this book"
ALREADY_RETURNED = "Loan is already returned"
RETURNED_IS_FROZEN = "Only notes can be changed on a returned loan"
DUE_BEFORE_LOAN = "Due date must be after loan date"


def _parse_date(value: Any, name: str) -> Optional[datetime]:
    try:
        parsed = parse_datetime(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise InvalidArgumentError(f"Invalid {name}: {value!r}") from e
    if parsed is not None and parsed.year < MIN_YEAR:
        raise InvalidArgumentError(f"Invalid {name}: year must be {MIN_YEAR} or later")
    return parsed


def _check_notes(notes: Optional[str]) -> Optional[str]:
    if notes is None:
        return None
    if not TextValidator.max_length(notes, MAX_NOTES_LENGTH):
        raise InvalidArgumentError(f"Notes cannot be more than {MAX_NOTES_LENGTH} characters")
    return notes.strip()


class LoanLifecycleManager:
    """The state machine for loans (Active -> Returned, terminal)."""

    def __init__(self, store: EntityStore, availability: Optional[AvailabilitySynchronizer] = None,
                 default_loan_days: Optional[int] = None) -> None:
        self.store = store
        self.availability = availability or AvailabilitySynchronizer(store)
        self.default_loan_days = default_loan_days or settings.default_loan_days

    # ------------------------- Create ------------------------- #
    def create_loan(self, book_id: str, user_id: str, due_date: Any = None,
                    notes: Optional[str] = None, loan_date: Any = None,
                    now: Optional[datetime] = None) -> Loan:
        now = now or utcnow()
        start = _parse_date(loan_date, "loan date") or now
        due = _parse_date(due_date, "due date")
        if due is None:
            try:
                due = start + timedelta(days=self.default_loan_days)
            except OverflowError as e:
                raise InvalidArgumentError(f"Invalid loan date: no due date fits after {start.date()}") from e
        if due <= start:
            raise InvalidArgumentError(DUE_BEFORE_LOAN)
        notes = _check_notes(notes)

        book = self.store.get_book(book_id)
        if book is None:
            raise NotFoundError(BOOK_NOT_FOUND)
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError(USER_NOT_FOUND)
        if not user.can_borrow():
            raise ConflictError(USER_INACTIVE)
        if self.store.find_active_loan(book_id=book_id, user_id=user_id) is not None:
            raise ConflictError(DUPLICATE_LOAN)
        if not book.is_available:
            raise ConflictError(BOOK_ON_LOAN)

        # The availability read above is only advisory; the claim decides.
        if not self.availability.claim(book_id, now):
            if self.store.get_book(book_id) is None:
                raise NotFoundError(BOOK_NOT_FOUND)
            raise ConflictError(BOOK_ON_LOAN)

        loan = Loan(id=new_id("loan"), book_id=book_id, user_id=user_id,
                    loan_date=start, due_date=due, notes=notes)
        loan.is_overdue = is_overdue(loan, now)
        try:
            inserted = self.store.insert_loan_if_allowed(loan)
        except LendingError:
            self._release(book_id, now)
            raise
        if not inserted:
            self._release(book_id, now)
            raise self._explain_refused_insert(book_id, user_id)

        logger.info(f"Loan {loan.id} created: book={book_id} user={user_id} due={loan.due_date.isoformat()}")
        return loan

    def _release(self, book_id: str, now: datetime) -> None:
        """Undo a claim whose loan was never written."""
        try:
            self.availability.sync(book_id, now)
        except LendingError as e:
            # Left unavailable; the reconcile pass releases it after the grace period.
            logger.error(f"Could not release claim on book {book_id}: {e}")

    def _explain_refused_insert(self, book_id: str, user_id: str) -> LendingError:
        user = self.store.get_user(user_id)
        if user is None:
            return NotFoundError(USER_NOT_FOUND)
        if not user.can_borrow():
            return ConflictError(USER_INACTIVE)
        if self.store.get_book(book_id) is None:
            return NotFoundError(BOOK_NOT_FOUND)
        if self.store.find_active_loan(book_id=book_id, user_id=user_id) is not None:
            return ConflictError(DUPLICATE_LOAN)
        return ConflictError(BOOK_ON_LOAN)

    # ------------------------- Return ------------------------- #
    def return_loan(self, loan_id: str, notes: Optional[str] = None,
                    now: Optional[datetime] = None) -> Loan:
        now = now or utcnow()
        notes = _check_notes(notes)
        loan = self.store.mark_loan_returned(loan_id, now, notes)
        if loan is None:
            if self.store.get_loan(loan_id) is None:
                raise NotFoundError(LOAN_NOT_FOUND)
            logger.warning(f"Return of loan {loan_id} refused: already returned")
            raise ConflictError(ALREADY_RETURNED)
        self.availability.sync(loan.book_id, now)
        logger.info(f"Loan {loan_id} returned: book={loan.book_id}")
        return loan

    # ------------------------- Delete ------------------------- #
    def delete_loan(self, loan_id: str, now: Optional[datetime] = None) -> Loan:
        """Remove the loan. Deleting an active loan restores availability like a return."""
        loan = self.store.delete_loan(loan_id)
        if loan is None:
            raise NotFoundError(LOAN_NOT_FOUND)
        if loan.is_active:
            self.availability.sync(loan.book_id, now or utcnow())
        logger.info(f"Loan {loan_id} deleted (was {loan.status})")
        return loan

    # ------------------------- Update ------------------------- #
    def update_loan(self, loan_id: str, fields: Dict[str, Any],
                    now: Optional[datetime] = None) -> Loan:
        """Apply a partial update. Only keys present in ``fields`` are touched."""
        now = now or utcnow()
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise InvalidArgumentError(f"Cannot update loan fields: {', '.join(sorted(unknown))}")

        loan = self.store.get_loan(loan_id)
        if loan is None:
            raise NotFoundError(LOAN_NOT_FOUND)

        if loan.returned:
            return self._update_returned_loan(loan, fields)

        changes: Dict[str, Any] = {}
        if "notes" in fields:
            changes["notes"] = _check_notes(fields["notes"])
        start = loan.loan_date
        due = loan.due_date
        if fields.get("loan_date") is not None:
            start = changes["loan_date"] = _parse_date(fields["loan_date"], "loan date")
        if fields.get("due_date") is not None:
            due = changes["due_date"] = _parse_date(fields["due_date"], "due date")
        if due <= start:
            raise InvalidArgumentError(DUE_BEFORE_LOAN)

        new_user = fields.get("user_id")
        new_book = fields.get("book_id")
        target_book = new_book or loan.book_id
        if new_user and new_user != loan.user_id:
            user = self.store.get_user(new_user)
            if user is None:
                raise NotFoundError(USER_NOT_FOUND)
            if not user.can_borrow():
                raise ConflictError(USER_INACTIVE)
            if self.store.find_active_loan(book_id=target_book, user_id=new_user) is not None:
                raise ConflictError(DUPLICATE_LOAN)
            changes["user_id"] = new_user
        else:
            new_user = None

        claimed = False
        if new_book and new_book != loan.book_id:
            if self.store.get_book(new_book) is None:
                raise NotFoundError(BOOK_NOT_FOUND)
            if not self.availability.claim(new_book, now):
                raise ConflictError(BOOK_ON_LOAN)
            claimed = True
            changes["book_id"] = new_book

        preview = Loan(id=loan.id, book_id=target_book, user_id=loan.user_id,
                       loan_date=start, due_date=due)
        changes["is_overdue"] = is_overdue(preview, now)

        try:
            updated = self.store.update_active_loan(
                loan.id, changes, expected_book_id=loan.book_id, require_active_user=new_user
            )
        except LendingError:
            if claimed:
                self._release(new_book, now)
            raise
        if not updated:
            if claimed:
                self._release(new_book, now)
            raise self._explain_refused_update(loan, new_user)

        if claimed:
            # The old book lost its active loan
            self.availability.sync(loan.book_id, now)
        logger.info(f"Loan {loan.id} updated: {', '.join(sorted(changes))}")
        return self._reload(loan.id)

    def _update_returned_loan(self, loan: Loan, fields: Dict[str, Any]) -> Loan:
        frozen = [name for name in fields if name != "notes" and fields[name] is not None]
        if frozen:
            logger.warning(f"Update of returned loan {loan.id} refused: {', '.join(sorted(frozen))}")
            raise ConflictError(RETURNED_IS_FROZEN)
        if "notes" in fields:
            if not self.store.update_loan_notes(loan.id, _check_notes(fields["notes"])):
                raise NotFoundError(LOAN_NOT_FOUND)
        return self._reload(loan.id)

    def _explain_refused_update(self, original: Loan, new_user: Optional[str]) -> LendingError:
        current = self.store.get_loan(original.id)
        if current is None:
            return NotFoundError(LOAN_NOT_FOUND)
        if current.returned:
            return ConflictError(RETURNED_IS_FROZEN)
        if new_user is not None:
            user = self.store.get_user(new_user)
            if user is None:
                return NotFoundError(USER_NOT_FOUND)
            if not user.can_borrow():
                return ConflictError(USER_INACTIVE)
        return ConflictError("Loan was modified concurrently; retry the update")

    def _reload(self, loan_id: str) -> Loan:
        loan = self.store.get_loan(loan_id)
        if loan is None:
            raise NotFoundError(LOAN_NOT_FOUND)
        return loan
