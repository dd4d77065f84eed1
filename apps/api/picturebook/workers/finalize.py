"""
Book Finalize Worker

Runs once every illustration child of a book has settled and derives the
book's terminal status from the persisted page outcomes.
"""

from collections import Counter
from typing import Optional, Sequence

import structlog

from picturebook.models.dto import BookStatus, ModerationStatus
from picturebook.models.jobs import FinalizeJob
from picturebook.services.status_store import PageSnapshot, StatusStore

logger = structlog.get_logger()

NO_PAGES_REASON = "No pages found"

# Finalize may run again after a retry; any terminal status may be rewritten
FINALIZE_FROM_STATUSES = (
    BookStatus.ILLUSTRATING,
    BookStatus.COMPLETED,
    BookStatus.PARTIAL,
    BookStatus.FAILED,
)


def is_successful(page: PageSnapshot) -> bool:
    return page.moderation_status == ModerationStatus.OK.value and bool(page.generated_image_url)


def is_flagged(page: PageSnapshot) -> bool:
    return page.moderation_status == ModerationStatus.FLAGGED.value


def aggregate_book_status(pages: Sequence[PageSnapshot]) -> tuple[BookStatus, Optional[str]]:
    """Terminal book status for a set of page outcomes."""
    if not pages:
        return BookStatus.FAILED, NO_PAGES_REASON

    successful = sum(1 for page in pages if is_successful(page))
    flagged = sum(1 for page in pages if is_flagged(page))

    if successful == len(pages):
        return BookStatus.COMPLETED, None
    if successful or flagged:
        return BookStatus.PARTIAL, None
    return BookStatus.FAILED, None


class FinalizeWorker:
    def __init__(self, store: StatusStore):
        self.store = store

    async def process(self, payload: FinalizeJob, job_id: Optional[str] = None) -> dict:
        log = logger.bind(job_id=job_id, book_id=payload.book_id)

        pages = await self.store.list_page_snapshots(payload.book_id)
        status, reason = aggregate_book_status(pages)

        counts = Counter(page.moderation_status or ModerationStatus.PENDING.value for page in pages)
        log.info(
            "Finalizing book",
            pages=len(pages),
            successful=sum(1 for page in pages if is_successful(page)),
            page_statuses=dict(counts),
            status=status.value,
            reason=reason,
        )

        applied = await self.store.transition_book_status(
            payload.book_id, status, FINALIZE_FROM_STATUSES
        )
        if not applied:
            log.warning("Book status not finalized: book is not illustrating or terminal")

        return {
            "bookId": payload.book_id,
            "status": status.value,
            "reason": reason,
            "applied": applied,
            "pageCounts": dict(counts),
        }
