from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, List, Optional

from lending.config import settings
from lending.utils.dates import utcnow

if TYPE_CHECKING:
    from lending.store import EntityStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    marked_unavailable: List[str] = field(default_factory=list)
    released: List[str] = field(default_factory=list)

    @property
    def changed(self) -> int:
        return len(self.marked_unavailable) + len(self.released)

    def to_dict(self) -> dict:
        return {
            "marked_unavailable": self.marked_unavailable,
            "released": self.released,
            "changed": self.changed,
        }


class AvailabilitySynchronizer:
    """Keeps ``Book.is_available`` a faithful projection of the active-loan set.

    Only the loan lifecycle manager calls :meth:`claim` and :meth:`sync`;
    :meth:`reconcile` is a backstop for state left behind by crashed units of work.
    """

    def __init__(self, store: "EntityStore", grace_seconds: Optional[int] = None) -> None:
        self.store = store
        self.grace_seconds = settings.reconcile_grace_seconds if grace_seconds is None else grace_seconds

    def claim(self, book_id: str, now: Optional[datetime] = None) -> bool:
        """Atomically mark the book unavailable if it is available; report whether we did."""
        claimed = self.store.claim_book(book_id, now or utcnow())
        if not claimed:
            logger.warning(f"Claim refused for book {book_id}: not available")
        return claimed

    def sync(self, book_id: str, now: Optional[datetime] = None) -> Optional[bool]:
        """Recompute availability from the active loans of the book."""
        available = self.store.sync_book_availability(book_id, now or utcnow())
        logger.info(f"Book {book_id} availability synchronised: {available}")
        return available

    def reconcile(self, now: Optional[datetime] = None) -> ReconcileReport:
        """Repair flags that disagree with the loan set.

        Books marked available while loaned out are fixed unconditionally.
        Books marked unavailable without an active loan are only released when
        they have not been touched for ``grace_seconds``, so an in-flight claim
        whose loan is about to be written is left alone.
        """
        now = now or utcnow()
        report = ReconcileReport(
            marked_unavailable=self.store.mark_loaned_books_unavailable(now),
            released=self.store.release_orphaned_books(now - timedelta(seconds=self.grace_seconds), now),
        )
        if report.changed:
            logger.warning(
                f"Reconcile fixed {report.changed} book(s): "
                f"unavailable={report.marked_unavailable} released={report.released}"
            )
        return report
