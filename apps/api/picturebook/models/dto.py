from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, ConfigDict, field_validator


class BookStatus(str, Enum):
    DRAFT = "DRAFT"
    GENERATING = "GENERATING"
    COMPLETED = "COMPLETED"
    ILLUSTRATING = "ILLUSTRATING"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class ModerationStatus(str, Enum):
    PENDING = "PENDING"  # stored as NULL
    OK = "OK"
    FLAGGED = "FLAGGED"
    FAILED = "FAILED"


# Allowed status moves. Re-asserting the same status is always allowed.
BOOK_TRANSITIONS: dict[BookStatus, frozenset[BookStatus]] = {
    BookStatus.DRAFT: frozenset({BookStatus.GENERATING}),
    BookStatus.GENERATING: frozenset({BookStatus.COMPLETED, BookStatus.FAILED}),
    BookStatus.COMPLETED: frozenset(
        {BookStatus.GENERATING, BookStatus.ILLUSTRATING, BookStatus.PARTIAL, BookStatus.FAILED}
    ),
    BookStatus.ILLUSTRATING: frozenset(
        {BookStatus.COMPLETED, BookStatus.PARTIAL, BookStatus.FAILED}
    ),
    BookStatus.PARTIAL: frozenset({BookStatus.COMPLETED, BookStatus.FAILED}),
    BookStatus.FAILED: frozenset(
        {BookStatus.GENERATING, BookStatus.COMPLETED, BookStatus.PARTIAL}
    ),
}


def can_transition(current: BookStatus, target: BookStatus) -> bool:
    return current == target or target in BOOK_TRANSITIONS[current]


# ==================== Input Models ====================


class DraftPageInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    asset_id: str = Field(min_length=1, max_length=60)
    original_image_url: str = Field(min_length=1, max_length=500)


class CreateBookRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pages: List[DraftPageInput] = Field(min_length=1, max_length=32)
    cover_asset_id: Optional[str] = Field(default=None, max_length=60)
    art_style: Optional[str] = Field(default=None, max_length=40)
    is_winkify_enabled: bool = False

    @field_validator("pages")
    @classmethod
    def _assets_unique(cls, v: List[DraftPageInput]) -> List[DraftPageInput]:
        ids = [p.asset_id for p in v]
        if len(set(ids)) != len(ids):
            raise ValueError("pages.asset_id must be unique")
        return v


class UpdateBookRequest(BaseModel):
    """User edits. Never touches pipeline status."""

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1, max_length=120)
    child_name: Optional[str] = Field(default=None, min_length=1, max_length=80)
    art_style: Optional[str] = Field(default=None, max_length=40)
    is_winkify_enabled: Optional[bool] = None


# ==================== Output Models ====================


class PageResult(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    index: int
    page_number: int
    asset_id: Optional[str] = None
    original_image_url: Optional[str] = None
    generated_image_url: Optional[str] = None
    text: Optional[str] = None
    text_confirmed: bool = False
    illustration_notes: Optional[str] = None
    is_title_page: bool = False
    moderation_status: Optional[str] = None
    moderation_reason: Optional[str] = None


class BookResult(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    child_name: str
    art_style: Optional[str] = None
    is_winkify_enabled: bool
    status: BookStatus
    page_length: int
    cover_asset_id: Optional[str] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    created_at: Optional[datetime] = None
    pages: List[PageResult] = Field(default_factory=list)


class CreateBookResponse(BaseModel):
    book_id: str
    status: BookStatus


class BookStatusResponse(BaseModel):
    book_id: str
    status: BookStatus


class GenerationAcceptedResponse(BaseModel):
    book_id: str
    message: str
    job_id: str
    page_count: int
