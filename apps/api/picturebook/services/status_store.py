"""
Status Store: Book and Page pipeline state

Every write is scoped to one row. Book status writes are conditional on the
status the caller expects to find, so a concurrent edit or a stale worker
never overwrites a status it did not observe.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional
import uuid

from sqlalchemy import select, update
from sqlalchemy.orm import selectinload
import structlog

from picturebook.core.database import AsyncSessionLocal
from picturebook.core.errors import StatusStoreError
from picturebook.models.db import Book, Page
from picturebook.models.dto import BookStatus, DraftPageInput, ModerationStatus, can_transition

logger = structlog.get_logger()

PLACEHOLDER_TITLE = "Untitled Storybook"
PLACEHOLDER_CHILD_NAME = "Child Name"


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the column defaults."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class PageSnapshot:
    """Persisted illustration outcome of one page."""

    id: str
    index: int
    page_number: int
    generated_image_url: Optional[str]
    moderation_status: Optional[str]


@dataclass(frozen=True)
class PageOutcome:
    """Terminal illustration result written to a page in one UPDATE."""

    status: ModerationStatus
    generated_image_url: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, url: str) -> "PageOutcome":
        return cls(status=ModerationStatus.OK, generated_image_url=url)

    @classmethod
    def flagged(cls, reason: str) -> "PageOutcome":
        return cls(status=ModerationStatus.FLAGGED, reason=reason)

    @classmethod
    def failed(cls, reason: str) -> "PageOutcome":
        return cls(status=ModerationStatus.FAILED, reason=reason)


class StatusStore:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal

    # ==================== Books ====================

    async def create_book_draft(
        self,
        user_id: str,
        pages: list[DraftPageInput],
        cover_asset_id: Optional[str] = None,
        art_style: Optional[str] = None,
        is_winkify_enabled: bool = False,
    ) -> Book:
        """Create a DRAFT book with one page per uploaded asset, in order."""
        book = Book(
            id=new_id(),
            user_id=user_id,
            title=PLACEHOLDER_TITLE,
            child_name=PLACEHOLDER_CHILD_NAME,
            art_style=art_style,
            is_winkify_enabled=is_winkify_enabled,
            status=BookStatus.DRAFT.value,
            status_version=0,
            page_length=len(pages),
            cover_asset_id=cover_asset_id or pages[0].asset_id,
        )
        book.pages = [
            Page(
                id=new_id(),
                index=index,
                page_number=index + 1,
                asset_id=page.asset_id,
                original_image_url=page.original_image_url,
                is_title_page=index == 0,
                text_confirmed=False,
            )
            for index, page in enumerate(pages)
        ]

        async with self._session_factory() as session:
            session.add(book)
            await session.commit()

        logger.info("Book draft created", book_id=book.id, user_id=user_id, pages=len(pages))
        return book

    async def get_book(
        self, book_id: str, user_id: Optional[str] = None, with_pages: bool = False
    ) -> Optional[Book]:
        query = select(Book).where(Book.id == book_id)
        if user_id is not None:
            query = query.where(Book.user_id == user_id)
        if with_pages:
            query = query.options(selectinload(Book.pages))

        async with self._session_factory() as session:
            result = await session.execute(query)
            return result.scalar_one_or_none()

    async def get_book_status(
        self, book_id: str, user_id: Optional[str] = None
    ) -> Optional[BookStatus]:
        """Point read of the status column only."""
        query = select(Book.status).where(Book.id == book_id)
        if user_id is not None:
            query = query.where(Book.user_id == user_id)

        async with self._session_factory() as session:
            result = await session.execute(query)
            status = result.scalar_one_or_none()
        return BookStatus(status) if status is not None else None

    async def update_book_details(self, book_id: str, user_id: str, **fields) -> Optional[Book]:
        """Apply user edits (title, child name, art style, winkify). Status is never touched."""
        fields.pop("status", None)
        fields.pop("status_version", None)

        async with self._session_factory() as session:
            result = await session.execute(
                select(Book)
                .where(Book.id == book_id, Book.user_id == user_id)
                .options(selectinload(Book.pages))
            )
            book = result.scalar_one_or_none()
            if book is None:
                return None
            for name, value in fields.items():
                setattr(book, name, value)
            book.updated_at = utcnow()
            await session.commit()
            return book

    async def transition_book_status(
        self,
        book_id: str,
        target: BookStatus,
        expected: Iterable[BookStatus],
        **values,
    ) -> bool:
        """Set ``target`` only if the book is currently in one of ``expected``.

        Returns False when the row was not in an expected status (or does not
        exist); the caller decides whether that is an error.
        """
        expected = [BookStatus(status) for status in expected]
        for current in expected:
            if not can_transition(current, target):
                raise ValueError(f"Illegal book status transition {current.value} -> {target.value}")

        async with self._session_factory() as session:
            result = await session.execute(
                update(Book)
                .where(
                    Book.id == book_id,
                    Book.status.in_([status.value for status in expected]),
                )
                .values(
                    status=target.value,
                    status_version=Book.status_version + 1,
                    updated_at=utcnow(),
                    **values,
                )
            )
            await session.commit()
            applied = result.rowcount == 1

        if applied:
            logger.info("Book status updated", book_id=book_id, status=target.value)
        else:
            logger.warning(
                "Book status not updated: unexpected current status",
                book_id=book_id,
                target=target.value,
                expected=[status.value for status in expected],
            )
        return applied

    # ==================== Pages ====================

    async def update_page_text(
        self,
        page_id: str,
        text: str,
        illustration_notes: Optional[str] = None,
    ) -> bool:
        """Write generated story text and send the page back for user review."""
        values = {"text": text, "text_confirmed": False, "updated_at": utcnow()}
        if illustration_notes is not None:
            values["illustration_notes"] = illustration_notes

        async with self._session_factory() as session:
            result = await session.execute(update(Page).where(Page.id == page_id).values(**values))
            await session.commit()
            return result.rowcount == 1

    async def record_page_outcome(self, page_id: str, outcome: PageOutcome):
        """Write URL, moderation status and reason of a page together.

        Raises:
            StatusStoreError: the page row does not exist
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(Page)
                .where(Page.id == page_id)
                .values(
                    generated_image_url=outcome.generated_image_url,
                    moderation_status=outcome.status.value,
                    moderation_reason=outcome.reason,
                    updated_at=utcnow(),
                )
            )
            await session.commit()

        if result.rowcount != 1:
            raise StatusStoreError(f"Page {page_id} not found while recording illustration outcome")

    async def list_page_snapshots(self, book_id: str) -> list[PageSnapshot]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    Page.id,
                    Page.index,
                    Page.page_number,
                    Page.generated_image_url,
                    Page.moderation_status,
                )
                .where(Page.book_id == book_id)
                .order_by(Page.index)
            )
            return [PageSnapshot(*row) for row in result.all()]
