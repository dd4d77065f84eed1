"""
Illustration Generation Worker

Restyles one page photo with the book's art style and records the outcome on
that page only. Model refusals and upload failures are recorded as FLAGGED
and the job still succeeds; a missing source or style image fails the job.
"""

import base64
import binascii
from typing import Optional

import structlog

from picturebook.core.errors import SourceImageError
from picturebook.models.jobs import IllustrationJob
from picturebook.services.image import ImageClient, fetch_image
from picturebook.services.prompts import build_illustration_prompt
from picturebook.services.status_store import PageOutcome, StatusStore
from picturebook.services.storage import AssetStore
from picturebook.services.styles import get_style

logger = structlog.get_logger()

BLOCKED_REASON = "Image generation failed or blocked by content policy."


class _TerminalPageWrite:
    """Records a page's terminal outcome at most once per execution."""

    def __init__(self, store: StatusStore, page_id: str, log):
        self.store = store
        self.page_id = page_id
        self.log = log
        self.done = False

    async def __call__(self, outcome: PageOutcome, best_effort: bool = False):
        if self.done:
            return
        self.done = True
        try:
            await self.store.record_page_outcome(self.page_id, outcome)
        except Exception as e:
            if not best_effort:
                raise
            self.log.error("Failed to record page failure", error=str(e))
            return
        self.log.info(
            "Page outcome recorded", status=outcome.status.value, reason=outcome.reason
        )


class IllustrationWorker:
    def __init__(
        self,
        store: StatusStore,
        images: Optional[ImageClient] = None,
        assets: Optional[AssetStore] = None,
    ):
        self.store = store
        self.images = images or ImageClient()
        self.assets = assets or AssetStore()

    async def process(self, payload: IllustrationJob, job_id: Optional[str] = None) -> dict:
        log = logger.bind(
            job_id=job_id,
            book_id=payload.book_id,
            page_id=payload.page_id,
            page_number=payload.page_number,
        )
        write = _TerminalPageWrite(self.store, payload.page_id, log)

        try:
            outcome = await self._illustrate(payload, log)
        except Exception as e:
            log.error("Illustration failed", error=str(e), error_type=e.__class__.__name__)
            await write(PageOutcome.failed(str(e)), best_effort=True)
            raise

        await write(outcome)
        return {
            "pageId": payload.page_id,
            "pageNumber": payload.page_number,
            "status": outcome.status.value,
            "reason": outcome.reason,
        }

    async def record_timeout(
        self, payload: IllustrationJob, reason: str, job_id: Optional[str] = None
    ):
        """Record FAILED for a page whose attempt was cut off by its timeout."""
        log = logger.bind(job_id=job_id, book_id=payload.book_id, page_id=payload.page_id)
        write = _TerminalPageWrite(self.store, payload.page_id, log)
        await write(PageOutcome.failed(reason), best_effort=True)

    async def _illustrate(self, payload: IllustrationJob, log) -> PageOutcome:
        # A: content source
        if not payload.original_image_url:
            raise SourceImageError(f"Page {payload.page_number} has no original image")
        content_image = await fetch_image(payload.original_image_url)

        # B: style reference
        style = get_style(payload.art_style)
        if style is None:
            raise SourceImageError(f"Unknown art style: {payload.art_style}")
        style_image = await fetch_image(style.reference_image_url)

        # C-D: prompt and image model
        try:
            prompt = build_illustration_prompt(
                payload.art_style,
                payload.text,
                payload.book_title,
                is_title_page=payload.is_title_page,
                illustration_notes=payload.illustration_notes,
                is_winkify_enabled=payload.is_winkify_enabled,
            )
            generated = await self.images.edit([content_image, style_image], prompt)
        except Exception as e:
            log.warning("Image generation raised", error=str(e))
            return PageOutcome.flagged(str(e) or BLOCKED_REASON)

        if not generated:
            log.warning("Image model returned no image")
            return PageOutcome.flagged(BLOCKED_REASON)

        # E: upload
        try:
            url = await self._upload(payload, generated)
        except Exception as e:
            log.warning("Generated image upload failed", error=str(e))
            return PageOutcome.flagged(f"Upload failed: {e}")

        return PageOutcome.ok(url)

    async def _upload(self, payload: IllustrationJob, b64_image: str) -> str:
        try:
            data = base64.b64decode(b64_image, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Image model returned invalid base64 data: {e}") from e

        result = await self.assets.upload_image(
            data,
            folder=f"books/{payload.book_id}/generated",
            public_id=f"page_{payload.page_number}",
            tags=[
                f"book:{payload.book_id}",
                f"page:{payload.page_id}",
                f"pageNum:{payload.page_number}",
            ],
        )
        return result.secure_url

