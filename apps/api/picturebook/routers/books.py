from fastapi import APIRouter, Depends
import structlog

from picturebook.core.dependencies import get_orchestrator, get_status_store, get_user_id
from picturebook.core.errors import (
    BookInputError,
    BookNotFoundError,
    BookStateError,
    PipelineError,
    QueueError,
)
from picturebook.core.exceptions import (
    APIError,
    ConflictError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from picturebook.models.dto import (
    BookResult,
    BookStatusResponse,
    CreateBookRequest,
    CreateBookResponse,
    GenerationAcceptedResponse,
    UpdateBookRequest,
)
from picturebook.services.orchestrator import BookOrchestrator
from picturebook.services.status_store import StatusStore
from picturebook.services.styles import is_valid_style

logger = structlog.get_logger()

router = APIRouter()


def to_api_error(error: PipelineError) -> APIError:
    """Map a pipeline error raised while starting a stage to an HTTP error"""
    if isinstance(error, BookNotFoundError):
        return NotFoundError("Book", error.details["book_id"])
    if isinstance(error, BookInputError):
        return ValidationError(error.message)
    if isinstance(error, BookStateError):
        return ConflictError(error.message, details=error.details)
    if isinstance(error, QueueError):
        return ServiceUnavailableError(error.message)
    return APIError(status_code=500, error_code=error.code.value, message=error.message)


@router.post("", response_model=CreateBookResponse, status_code=201)
async def create_book(
    request: CreateBookRequest,
    user_id: str = Depends(get_user_id),
    store: StatusStore = Depends(get_status_store),
):
    """
    Create a draft book from uploaded photos

    Pages keep the order of ``pages``; the first page is the title page.
    """
    if request.art_style is not None and not is_valid_style(request.art_style):
        raise ValidationError(f"Unknown art style: {request.art_style}")

    asset_ids = {page.asset_id for page in request.pages}
    if request.cover_asset_id is not None and request.cover_asset_id not in asset_ids:
        raise ValidationError("cover_asset_id must be one of the page assets")

    book = await store.create_book_draft(
        user_id,
        request.pages,
        cover_asset_id=request.cover_asset_id,
        art_style=request.art_style,
        is_winkify_enabled=request.is_winkify_enabled,
    )
    return CreateBookResponse(book_id=book.id, status=book.status)


@router.get("/{book_id}", response_model=BookResult)
async def get_book(
    book_id: str,
    user_id: str = Depends(get_user_id),
    store: StatusStore = Depends(get_status_store),
):
    book = await store.get_book(book_id, user_id=user_id, with_pages=True)
    if book is None:
        raise NotFoundError("Book", book_id)
    return BookResult.model_validate(book)


@router.patch("/{book_id}", response_model=BookResult)
async def update_book(
    book_id: str,
    request: UpdateBookRequest,
    user_id: str = Depends(get_user_id),
    store: StatusStore = Depends(get_status_store),
):
    """Edit title, child name, art style or the winkify flag"""
    fields = request.model_dump(exclude_unset=True)
    if "art_style" in fields and not is_valid_style(fields["art_style"]):
        raise ValidationError(f"Unknown art style: {fields['art_style']}")

    book = await store.update_book_details(book_id, user_id, **fields)
    if book is None:
        raise NotFoundError("Book", book_id)
    return BookResult.model_validate(book)


@router.get("/{book_id}/status", response_model=BookStatusResponse)
async def get_book_status(
    book_id: str,
    user_id: str = Depends(get_user_id),
    store: StatusStore = Depends(get_status_store),
):
    status = await store.get_book_status(book_id, user_id=user_id)
    if status is None:
        raise NotFoundError("Book", book_id)
    return BookStatusResponse(book_id=book_id, status=status)


@router.post("/{book_id}/story", response_model=GenerationAcceptedResponse, status_code=202)
async def generate_story(
    book_id: str,
    user_id: str = Depends(get_user_id),
    orchestrator: BookOrchestrator = Depends(get_orchestrator),
):
    """Start story generation (book moves to GENERATING)"""
    try:
        job = await orchestrator.start_story_generation(book_id, user_id)
    except PipelineError as e:
        logger.warning("Story generation not started", book_id=book_id, error=str(e))
        raise to_api_error(e) from e

    return GenerationAcceptedResponse(
        book_id=book_id,
        message="Story generation initiated",
        job_id=job.id,
        page_count=len(job.data.get("storyPages", [])),
    )


@router.post(
    "/{book_id}/illustrations", response_model=GenerationAcceptedResponse, status_code=202
)
async def generate_illustrations(
    book_id: str,
    user_id: str = Depends(get_user_id),
    orchestrator: BookOrchestrator = Depends(get_orchestrator),
):
    """Start illustration of every page (book moves to ILLUSTRATING)"""
    try:
        root = await orchestrator.start_illustration(book_id, user_id)
    except PipelineError as e:
        logger.warning("Illustration not started", book_id=book_id, error=str(e))
        raise to_api_error(e) from e

    return GenerationAcceptedResponse(
        book_id=book_id,
        message="Illustration generation initiated",
        job_id=root.id,
        page_count=len(root.children),
    )
