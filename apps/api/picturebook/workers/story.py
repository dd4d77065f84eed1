"""
Story Generation Worker

Writes one short passage per story page from the page photos, then marks
the book COMPLETED (text ready for review) or FAILED.
"""

import json
import re
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
import structlog

from picturebook.core.errors import BookStateError, ErrorCode, StoryGenerationError
from picturebook.models.dto import BookStatus
from picturebook.models.jobs import StoryJob
from picturebook.services.llm import LLMClient
from picturebook.services.prompts import build_story_messages, story_system_prompt
from picturebook.services.status_store import StatusStore

logger = structlog.get_logger()

CODE_FENCE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL | re.IGNORECASE)

PageKey = Annotated[str, StringConstraints(pattern=r"^\d+$")]
PageText = Annotated[str, StringConstraints(min_length=1)]


class WinkifiedPage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: PageText
    illustration_notes: Optional[str] = Field(default=None, alias="illustrationNotes")


_plain_story = TypeAdapter(dict[PageKey, PageText])
_winkified_story = TypeAdapter(dict[PageKey, WinkifiedPage])

# Statuses from which a story run may (re)start
STORY_START_STATUSES = (
    BookStatus.DRAFT,
    BookStatus.FAILED,
    BookStatus.COMPLETED,
    BookStatus.GENERATING,
)


def strip_code_fences(raw: str) -> str:
    match = CODE_FENCE.match(raw)
    return match.group(1) if match else raw.strip()


def parse_story_response(raw: str, is_winkify_enabled: bool) -> dict[str, WinkifiedPage]:
    """
    Parse the model's JSON into ``{"<page number>": WinkifiedPage}``

    The plain shape ``{"1": "text"}`` is normalized to pages without notes.

    Raises:
        StoryGenerationError: not JSON or not the expected shape
    """
    cleaned = strip_code_fences(raw)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise StoryGenerationError(
            ErrorCode.LLM_JSON_INVALID, f"Story response is not valid JSON: {e}", raw_output=raw
        ) from e

    try:
        if is_winkify_enabled:
            return _winkified_story.validate_python(data)
        return {
            key: WinkifiedPage(text=text)
            for key, text in _plain_story.validate_python(data).items()
        }
    except PydanticValidationError as e:
        raise StoryGenerationError(
            ErrorCode.LLM_JSON_INVALID,
            f"Story response has an unexpected shape: {e.error_count()} error(s)",
            raw_output=raw,
        ) from e


class StoryGenerationWorker:
    def __init__(self, store: StatusStore, llm: Optional[LLMClient] = None):
        self.store = store
        self.llm = llm or LLMClient()

    async def process(self, payload: StoryJob, job_id: Optional[str] = None) -> dict:
        log = logger.bind(job_id=job_id, book_id=payload.book_id)
        log.info("Story generation started", pages=len(payload.story_pages))

        try:
            result = await self._generate(payload, log)
        except Exception as e:
            log.error("Story generation failed", error=str(e))
            await self._mark_failed(payload.book_id, log)
            raise

        log.info("Story generation finished", final_status=result["finalStatus"])
        return result

    async def record_timeout(self, payload: StoryJob, reason: str, job_id: Optional[str] = None):
        """Mark the book FAILED after an attempt was cut off by its timeout."""
        log = logger.bind(job_id=job_id, book_id=payload.book_id)
        log.error("Story generation timed out", reason=reason)
        await self._mark_failed(payload.book_id, log)

    async def _generate(self, payload: StoryJob, log) -> dict:
        if not await self.store.transition_book_status(
            payload.book_id, BookStatus.GENERATING, STORY_START_STATUSES
        ):
            current = await self.store.get_book_status(payload.book_id)
            raise BookStateError(
                payload.book_id,
                current.value if current else None,
                [status.value for status in STORY_START_STATUSES],
            )

        messages = build_story_messages(
            payload.prompt_context, payload.story_pages, payload.is_winkify_enabled
        )
        completion = await self.llm.complete(story_system_prompt(), messages)
        if not completion.content:
            raise StoryGenerationError(ErrorCode.LLM_FAILED, "Model returned no story content")

        story = parse_story_response(completion.content, payload.is_winkify_enabled)

        updated = 0
        for page in payload.story_pages:
            entry = story.get(str(page.page_number))
            if entry is None:
                log.warning(
                    "Story text missing for page", page_id=page.page_id, page_number=page.page_number
                )
                continue

            notes = None
            if payload.is_winkify_enabled and entry.illustration_notes and entry.illustration_notes.strip():
                notes = entry.illustration_notes.strip()

            if await self.store.update_page_text(page.page_id, entry.text, illustration_notes=notes):
                updated += 1
            else:
                log.warning("Page not found for story text", page_id=page.page_id)

        usage = completion.usage
        applied = await self.store.transition_book_status(
            payload.book_id,
            BookStatus.COMPLETED,
            [BookStatus.GENERATING],
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
        )
        final_status = BookStatus.COMPLETED
        if not applied:
            log.warning("Book left GENERATING before story completion was recorded")
            final_status = await self.store.get_book_status(payload.book_id) or final_status

        return {
            "message": f"Story text written for {updated} page(s)",
            "bookId": payload.book_id,
            "finalStatus": final_status.value,
            "pagesUpdated": updated,
        }

    async def _mark_failed(self, book_id: str, log):
        try:
            await self.store.transition_book_status(
                book_id, BookStatus.FAILED, [BookStatus.GENERATING]
            )
        except Exception as e:
            log.error("Failed to mark book FAILED", error=str(e))
