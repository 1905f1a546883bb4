from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from lending.errors import ConflictError, NotFoundError

if TYPE_CHECKING:
    from lending.store import EntityStore

logger = logging.getLogger(__name__)

BOOK_HAS_ACTIVE_LOANS = "Cannot delete book with active loans"
BOOK_BEING_LENT = "Cannot delete book while a loan for it is being created"
USER_HAS_ACTIVE_LOANS = "Cannot delete user with active loans"


@dataclass
class GuardResult:
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


class IntegrityGuard:
    """Preconditions for destructive catalog operations.

    ``can_delete_*`` answer the question for display purposes. ``delete_*``
    evaluate the guard and perform the deletion as one conditional delete, so
    an active loan created in between can never be orphaned.
    """

    def __init__(self, store: "EntityStore") -> None:
        self.store = store

    def can_delete_book(self, book_id: str) -> GuardResult:
        book = self.store.get_book(book_id)
        if book is None:
            raise NotFoundError("Book not found")
        if self.store.find_active_loan(book_id=book_id) is not None:
            return GuardResult(False, BOOK_HAS_ACTIVE_LOANS)
        if not book.is_available:
            return GuardResult(False, BOOK_BEING_LENT)
        return GuardResult(True)

    def can_delete_user(self, user_id: str) -> GuardResult:
        if self.store.get_user(user_id) is None:
            raise NotFoundError("User not found")
        if self.store.find_active_loan(user_id=user_id) is not None:
            return GuardResult(False, USER_HAS_ACTIVE_LOANS)
        return GuardResult(True)

    def delete_book(self, book_id: str) -> None:
        if self.store.delete_book_if_unreferenced(book_id):
            logger.info(f"Book {book_id} deleted")
            return
        # The conditional delete refused; explain why from a fresh read.
        result = self.can_delete_book(book_id)
        reason = result.reason or BOOK_HAS_ACTIVE_LOANS
        logger.warning(f"Delete of book {book_id} refused: {reason}")
        raise ConflictError(reason)

    def delete_user(self, user_id: str) -> None:
        if self.store.delete_user_if_unreferenced(user_id):
            logger.info(f"User {user_id} deleted")
            return
        result = self.can_delete_user(user_id)
        reason = result.reason or USER_HAS_ACTIVE_LOANS
        logger.warning(f"Delete of user {user_id} refused: {reason}")
        raise ConflictError(reason)
