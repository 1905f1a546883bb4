from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from lending.config import settings
from lending.utils.dates import utcnow

if TYPE_CHECKING:
    from lending.store import EntityStore

logger = logging.getLogger(__name__)


class StatsService:
    """Read-only aggregates. Nothing here is cached: counts are queried on demand."""

    def __init__(self, store: "EntityStore") -> None:
        self.store = store

    def popular_books(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return self.store.loan_counts_by_book(limit or settings.popular_books_limit)

    def user_overview(self) -> Dict[str, Any]:
        counts = self.store.user_counts()
        return {
            "total_users": counts["total"],
            "active_users": counts["active"],
            "inactive_users": counts["total"] - counts["active"],
            "users_with_active_loans": counts["with_active_loans"],
            "type_stats": counts["by_type"],
        }

    def loan_overview(self, now: Optional[datetime] = None) -> Dict[str, int]:
        # Overdue is counted against the due date, not the cached flag
        return self.store.loan_counts(now or utcnow())

    def overview(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        books = self.store.book_counts()
        loans = self.loan_overview(now)
        users = self.user_overview()
        return {
            "books": {
                "total": books["total"],
                "available": books["available"],
                "on_loan": books["total"] - books["available"],
            },
            "users": {
                "total": users["total_users"],
                "active": users["active_users"],
                "with_active_loans": users["users_with_active_loans"],
            },
            "loans": loans,
        }
