"""
Orchestrator: starts the picture-book pipeline stages

Pipeline stages:
A. Story generation (one story-generation job per book)
B. Illustration (one flow: a finalize parent with one illustration child per page)
C. Finalize (runs after every illustration child has settled)

The orchestrator only validates, moves the book status and enqueues; the
work itself happens in the queue workers.
"""

from typing import Optional

import structlog

from picturebook.core.config import settings
from picturebook.core.errors import BookInputError, BookNotFoundError, BookStateError
from picturebook.models.db import Book
from picturebook.models.dto import BookStatus
from picturebook.models.jobs import (
    FinalizeJob,
    IllustrationJob,
    PromptContext,
    StoryJob,
    StoryPageRef,
)
from picturebook.queues.queue import Backoff, FlowJob, Job, JobOptions, JobQueue, QueueName
from picturebook.services.status_store import StatusStore
from picturebook.services.styles import is_valid_style

logger = structlog.get_logger()

STORY_START_STATUSES = (BookStatus.DRAFT, BookStatus.FAILED, BookStatus.COMPLETED)


# ==================== Job Options ====================


def retry_options(**overrides) -> JobOptions:
    """Attempts and exponential backoff shared by story and illustration jobs"""
    options = {
        "attempts": settings.job_attempts,
        "backoff": Backoff(type="exponential", delay=settings.job_backoff_ms),
        "timeout": settings.job_timeout_seconds,
        "remove_on_complete": settings.keep_completed_jobs,
        "remove_on_fail": settings.keep_failed_jobs,
    }
    options.update(overrides)
    return JobOptions(**options)


def illustration_child_options() -> JobOptions:
    return retry_options(fail_parent_on_failure=False, remove_dependency_on_failure=True)


def finalize_options() -> JobOptions:
    return retry_options(
        remove_on_complete=settings.keep_completed_parents,
        remove_on_fail=settings.keep_failed_parents,
    )


# ==================== Payload Builders ====================


def build_story_job(book: Book) -> StoryJob:
    """
    Story job for a book

    The cover page is excluded; remaining pages keep their order and are
    renumbered from 1.

    Raises:
        BookInputError: no pages left after excluding the cover
    """
    story_pages = [
        StoryPageRef(
            page_id=page.id,
            page_number=position + 1,
            asset_id=page.asset_id,
            original_image_url=page.original_image_url,
        )
        for position, page in enumerate(
            page for page in book.pages if page.asset_id != book.cover_asset_id
        )
    ]
    if not story_pages:
        raise BookInputError("No pages to write a story for after excluding the cover")

    return StoryJob(
        book_id=book.id,
        user_id=book.user_id,
        prompt_context=PromptContext(
            book_title=book.title,
            child_name=book.child_name,
            art_style=book.art_style,
            is_double_spread=False,
        ),
        story_pages=story_pages,
        is_winkify_enabled=book.is_winkify_enabled,
    )


def build_illustration_flow(book: Book) -> FlowJob:
    """Finalize parent with one illustration child per page, in page order"""
    pages = sorted(book.pages, key=lambda page: page.index)
    children = []
    for position, page in enumerate(pages):
        page_number = position + 1
        children.append(
            FlowJob(
                name=f"generate-illustration-{book.id}-p{page_number}",
                queue_name=QueueName.illustration_generation.value,
                payload=IllustrationJob(
                    user_id=book.user_id,
                    book_id=book.id,
                    page_id=page.id,
                    page_number=page_number,
                    text=page.text,
                    art_style=book.art_style,
                    book_title=book.title,
                    is_title_page=page.index == 0,
                    illustration_notes=page.illustration_notes,
                    original_image_url=page.original_image_url,
                    is_winkify_enabled=book.is_winkify_enabled,
                ),
                opts=illustration_child_options(),
            )
        )

    return FlowJob(
        name=f"finalize-book-{book.id}",
        queue_name=QueueName.book_finalize.value,
        payload=FinalizeJob(book_id=book.id, user_id=book.user_id),
        opts=finalize_options(),
        children=children,
    )


# ==================== Orchestrator ====================


class BookOrchestrator:
    def __init__(self, queue: JobQueue, store: StatusStore):
        self.queue = queue
        self.store = store

    async def _load_book(self, book_id: str, user_id: str) -> Book:
        book = await self.store.get_book(book_id, user_id=user_id, with_pages=True)
        if book is None:
            raise BookNotFoundError(book_id)
        return book

    async def enqueue_story_job(self, payload: StoryJob) -> Job:
        return await self.queue.add(
            QueueName.story_generation.value,
            f"generate-story-{payload.book_id}",
            payload,
            retry_options(),
        )

    async def enqueue_illustration_flow(self, flow: FlowJob) -> Job:
        return await self.queue.add_flow(flow)

    async def start_story_generation(self, book_id: str, user_id: str) -> Job:
        """
        Validate the book and enqueue story generation

        Raises:
            BookNotFoundError: missing or not owned by the caller
            BookInputError: title, child name or art style unset; no story pages
            BookStateError: book is not DRAFT, FAILED or COMPLETED
            QueueError: enqueue failed (book is reset to FAILED)
        """
        book = await self._load_book(book_id, user_id)

        if not (book.title or "").strip() or not (book.child_name or "").strip():
            raise BookInputError("Title and child's name must be set before writing the story")
        if not is_valid_style(book.art_style):
            raise BookInputError(f"A valid art style must be set (got {book.art_style!r})")

        payload = build_story_job(book)

        if not await self.store.transition_book_status(
            book_id, BookStatus.GENERATING, STORY_START_STATUSES
        ):
            current = await self.store.get_book_status(book_id)
            raise BookStateError(
                book_id,
                current.value if current else None,
                [status.value for status in STORY_START_STATUSES],
            )

        try:
            job = await self.enqueue_story_job(payload)
        except Exception:
            logger.error("Story job enqueue failed, resetting book", book_id=book_id)
            await self.store.transition_book_status(
                book_id, BookStatus.FAILED, [BookStatus.GENERATING]
            )
            raise

        logger.info(
            "Story generation started",
            book_id=book_id,
            job_id=job.id,
            pages=len(payload.story_pages),
        )
        return job

    async def start_illustration(self, book_id: str, user_id: str) -> Job:
        """
        Move the book to ILLUSTRATING and enqueue the illustration flow

        Raises:
            BookNotFoundError: missing or not owned by the caller
            BookStateError: book is not COMPLETED
            BookInputError: book has no pages
            QueueError: flow could not be added (book is reset to COMPLETED)
        """
        book = await self._load_book(book_id, user_id)

        if book.status != BookStatus.COMPLETED.value:
            raise BookStateError(book_id, book.status, [BookStatus.COMPLETED.value])
        if not book.pages:
            raise BookInputError("Book has no pages to illustrate")

        flow = build_illustration_flow(book)

        if not await self.store.transition_book_status(
            book_id, BookStatus.ILLUSTRATING, [BookStatus.COMPLETED]
        ):
            current = await self.store.get_book_status(book_id)
            raise BookStateError(
                book_id, current.value if current else None, [BookStatus.COMPLETED.value]
            )

        try:
            root = await self.enqueue_illustration_flow(flow)
        except Exception:
            logger.error("Illustration flow enqueue failed, resetting book", book_id=book_id)
            await self.store.transition_book_status(
                book_id, BookStatus.COMPLETED, [BookStatus.ILLUSTRATING]
            )
            raise

        logger.info(
            "Illustration flow started",
            book_id=book_id,
            job_id=root.id,
            pages=len(root.children),
        )
        return root

    async def get_status(self, book_id: str, user_id: Optional[str] = None) -> BookStatus:
        status = await self.store.get_book_status(book_id, user_id=user_id)
        if status is None:
            raise BookNotFoundError(book_id)
        return status
