from __future__ import annotations

from datetime import datetime
from typing import Optional

from lending.services.overdue import is_overdue
from lending.utils.dates import parse_datetime, to_iso, utcnow

ACTIVE = "active"
RETURNED = "returned"


class Loan:
    """A lending of one book to one user.

    A loan is Active until it is returned; Returned is terminal.
    ``is_overdue`` mirrors the persisted column and is only a cache: use
    :meth:`overdue` wherever the answer has to be correct.
    """

    def __init__(self, id: str, book_id: str, user_id: str,
                 loan_date: datetime, due_date: datetime,
                 return_date: Optional[datetime] = None, returned: bool = False,
                 is_overdue: bool = False, notes: Optional[str] = None,
                 created_at: Optional[str] = None, updated_at: Optional[str] = None) -> None:
        self.id = id
        self.book_id = book_id
        self.user_id = user_id
        self.loan_date = loan_date
        self.due_date = due_date
        self.return_date = return_date
        self.returned = bool(returned)
        self.is_overdue = bool(is_overdue)
        self.notes = notes
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"Loan {self.id}: book={self.book_id} user={self.user_id} ({self.status})"

    @property
    def is_active(self) -> bool:
        return not self.returned

    @property
    def status(self) -> str:
        return RETURNED if self.returned else ACTIVE

    def overdue(self, now: Optional[datetime] = None) -> bool:
        """Live overdue classification against ``now`` (defaults to the current time)."""
        return is_overdue(self, now or utcnow())

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "user_id": self.user_id,
            "loan_date": to_iso(self.loan_date),
            "due_date": to_iso(self.due_date),
            "return_date": to_iso(self.return_date),
            "returned": self.returned,
            "status": self.status,
            # Recomputed, never the stored flag
            "is_overdue": self.overdue(now),
            "notes": self.notes,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Loan":
        return Loan(
            id=data["id"],
            book_id=data["book_id"],
            user_id=data["user_id"],
            loan_date=parse_datetime(data["loan_date"]),
            due_date=parse_datetime(data["due_date"]),
            return_date=parse_datetime(data.get("return_date")),
            returned=bool(data.get("returned", 0)),
            is_overdue=bool(data.get("is_overdue", 0)),
            notes=data.get("notes"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
