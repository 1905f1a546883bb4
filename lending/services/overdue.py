from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from lending.utils.dates import ensure_utc, utcnow

if TYPE_CHECKING:
    from lending.loan import Loan
    from lending.store import EntityStore

logger = logging.getLogger(__name__)


def is_overdue(loan: "Loan", now: datetime) -> bool:
    """A loan is overdue when it is still out and ``now`` is past its due date."""
    return not loan.returned and ensure_utc(now) > loan.due_date


class OverdueClassifier:
    """Live overdue classification plus maintenance of the persisted cache column.

    The ``is_overdue`` column only serves indexing and filtering; time moves on
    without any write happening, so every answer here is recomputed.
    """

    def __init__(self, store: "EntityStore") -> None:
        self.store = store

    def overdue_loans(self, now: Optional[datetime] = None) -> List["Loan"]:
        """Active loans past their due date, soonest due first."""
        now = now or utcnow()
        candidates = self.store.list_loans(overdue_at=now, sort_by="due_date", order="asc")
        return [loan for loan in candidates if is_overdue(loan, now)]

    def refresh_flags(self, now: Optional[datetime] = None) -> int:
        """Bring the cached column in line with ``now``. Returns the number of loans changed."""
        changed = self.store.refresh_overdue_flags(now or utcnow())
        if changed:
            logger.info(f"Refreshed overdue flag on {changed} loan(s)")
        return changed
