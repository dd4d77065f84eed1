"""Common FastAPI dependencies."""
from fastapi import Depends, Header, HTTPException, Request

from picturebook.queues.queue import JobQueue
from picturebook.services.orchestrator import BookOrchestrator
from picturebook.services.status_store import StatusStore


def get_user_id(x_user_id: str = Header(..., description="Authenticated user id")) -> str:
    """
    Extract the caller's user id from header.

    Session handling lives in front of this API; the header carries the
    already-authenticated user id.

    Raises:
        HTTPException: If X-User-Id header is missing or blank
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def get_queue(request: Request) -> JobQueue:
    """Job queue opened by the application lifespan."""
    return request.app.state.queue


def get_status_store(request: Request) -> StatusStore:
    return request.app.state.store


def get_orchestrator(
    queue: JobQueue = Depends(get_queue),
    store: StatusStore = Depends(get_status_store),
) -> BookOrchestrator:
    return BookOrchestrator(queue, store)
