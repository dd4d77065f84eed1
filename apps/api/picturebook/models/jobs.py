"""
Job payloads: the wire contract between the orchestrator and the workers.

Every payload is serialized with camelCase field names plus a ``kind`` tag,
and parsed back into exactly one of the variants below.
"""

from __future__ import annotations

from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from picturebook.core.errors import InvalidJobError


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ==================== Story Generation ====================


class PromptContext(WireModel):
    book_title: str = Field(min_length=1)
    child_name: str = Field(min_length=1)
    art_style: Optional[str] = None
    is_double_spread: bool = False


class StoryPageRef(WireModel):
    page_id: str = Field(min_length=1)
    page_number: int = Field(ge=1)
    asset_id: Optional[str] = None
    original_image_url: Optional[str] = None


class StoryJob(WireModel):
    kind: Literal["story"] = "story"
    book_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    prompt_context: PromptContext
    story_pages: List[StoryPageRef] = Field(min_length=1)
    is_winkify_enabled: bool = False


# ==================== Illustration Generation ====================


class IllustrationJob(WireModel):
    kind: Literal["illustration"] = "illustration"
    user_id: str = Field(min_length=1)
    book_id: str = Field(min_length=1)
    page_id: str = Field(min_length=1)
    page_number: int = Field(ge=1)
    text: Optional[str] = None
    art_style: Optional[str] = None
    book_title: Optional[str] = None
    is_title_page: bool = False
    illustration_notes: Optional[str] = None
    original_image_url: Optional[str] = None
    is_winkify_enabled: bool = False


# ==================== Finalize ====================


class FinalizeJob(WireModel):
    kind: Literal["finalize"] = "finalize"
    book_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)


JobPayload = Annotated[
    Union[StoryJob, IllustrationJob, FinalizeJob],
    Field(discriminator="kind"),
]

_payload_adapter = TypeAdapter(JobPayload)


def parse_payload(data: Any) -> Union[StoryJob, IllustrationJob, FinalizeJob]:
    """Parse raw job data into its payload variant.

    Raises:
        InvalidJobError: unknown ``kind`` or fields that do not match the variant
    """
    try:
        return _payload_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise InvalidJobError(
            f"Invalid job payload: {e.error_count()} validation error(s)",
            errors=e.errors(include_url=False, include_context=False),
        ) from e
