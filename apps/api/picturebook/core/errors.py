from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Pipeline error codes"""

    INVALID_JOB = "INVALID_JOB"  # Malformed job payload
    LLM_FAILED = "LLM_FAILED"  # Text model call failed
    LLM_JSON_INVALID = "LLM_JSON_INVALID"  # Story response could not be parsed
    SOURCE_IMAGE_FAILED = "SOURCE_IMAGE_FAILED"  # Content/style image unavailable
    IMAGE_FAILED = "IMAGE_FAILED"  # Image model call failed
    STORAGE_UPLOAD_FAILED = "STORAGE_UPLOAD_FAILED"  # Asset upload failed
    DB_WRITE_FAILED = "DB_WRITE_FAILED"  # Status store write failed
    BOOK_STATE = "BOOK_STATE"  # Book is not in the expected status
    NOT_FOUND = "NOT_FOUND"  # Book missing or not owned by the caller
    INVALID_INPUT = "INVALID_INPUT"  # Book data incomplete for the requested stage
    QUEUE_FAILED = "QUEUE_FAILED"  # Enqueue failed


class PipelineError(Exception):
    """Base pipeline error"""

    def __init__(self, code: ErrorCode, message: str, details: Optional[dict] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self):
        return f"[{self.code.value}] {self.message}"


class InvalidJobError(PipelineError):
    """Job payload does not match the wire contract"""

    def __init__(self, message: str, errors: list = None):
        super().__init__(
            code=ErrorCode.INVALID_JOB, message=message, details={"errors": errors or []}
        )


class StoryGenerationError(PipelineError):
    """Story model call or response parsing error"""

    def __init__(self, code: ErrorCode, message: str, raw_output: str = None):
        super().__init__(code=code, message=message, details={"raw_output": raw_output})


class SourceImageError(PipelineError):
    """Content source or style reference image could not be obtained"""

    def __init__(self, message: str, url: str = None):
        super().__init__(
            code=ErrorCode.SOURCE_IMAGE_FAILED, message=message, details={"url": url}
        )


class ImageError(PipelineError):
    """Image generation error"""

    def __init__(self, message: str, page: int = None):
        super().__init__(code=ErrorCode.IMAGE_FAILED, message=message, details={"page": page})


class StorageError(PipelineError):
    """Asset storage error"""

    def __init__(self, message: str):
        super().__init__(code=ErrorCode.STORAGE_UPLOAD_FAILED, message=message)


class StatusStoreError(PipelineError):
    """Status store write did not apply"""

    def __init__(self, message: str):
        super().__init__(code=ErrorCode.DB_WRITE_FAILED, message=message)


class BookStateError(PipelineError):
    """Book is not in a status that allows the requested operation"""

    def __init__(self, book_id: str, current: Optional[str], expected: list):
        super().__init__(
            code=ErrorCode.BOOK_STATE,
            message=f"Book {book_id} is {current}, expected one of {', '.join(expected)}",
            details={"book_id": book_id, "current": current, "expected": expected},
        )


class QueueError(PipelineError):
    """Job queue operation failed"""

    def __init__(self, message: str):
        super().__init__(code=ErrorCode.QUEUE_FAILED, message=message)


class QueueClosedError(QueueError):
    """Job queue used before open() or after close()"""

    def __init__(self):
        super().__init__("Job queue is not open")


class BookNotFoundError(PipelineError):
    """Book does not exist or belongs to another user"""

    def __init__(self, book_id: str):
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"Book not found or access denied: {book_id}",
            details={"book_id": book_id},
        )


class BookInputError(PipelineError):
    """Book is missing data required to start a pipeline stage"""

    def __init__(self, message: str):
        super().__init__(code=ErrorCode.INVALID_INPUT, message=message)
