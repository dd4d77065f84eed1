import pytest
import pytest_asyncio
import os
from typing import AsyncGenerator
from unittest.mock import AsyncMock
from httpx import AsyncClient, ASGITransport
from sqlalchemy import update
from sqlalchemy.pool import NullPool
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
import fakeredis

# Test environment
os.environ["TESTING"] = "true"
os.environ["DEBUG"] = "false"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_picturebook.db"
os.environ["LLM_PROVIDER"] = "mock"
os.environ["IMAGE_PROVIDER"] = "mock"
# S3 credentials for testing (mock values)
os.environ["S3_ACCESS_KEY"] = "test-access-key"
os.environ["S3_SECRET_KEY"] = "test-secret-key"

from picturebook.main import app
from picturebook.core.database import Base
from picturebook.models.db import Book
from picturebook.models.dto import BookStatus, DraftPageInput
from picturebook.queues.queue import JobQueue
from picturebook.services.image import FetchedImage
from picturebook.services.status_store import StatusStore
from picturebook.services.storage import UploadResult


# Test DB engine
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test_picturebook.db"
test_engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)
TestSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-png-body"


@pytest_asyncio.fixture(scope="function")
async def db():
    """Create a fresh database for each test."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield TestSessionLocal

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def store(db) -> StatusStore:
    return StatusStore(session_factory=db)


@pytest_asyncio.fixture(scope="function")
async def queue() -> AsyncGenerator[JobQueue, None]:
    """Job queue on an in-memory Redis."""
    redis_client = fakeredis.FakeAsyncRedis(decode_responses=True)
    job_queue = JobQueue(prefix="test", client=redis_client)
    await job_queue.open()
    yield job_queue
    await job_queue.close()
    await redis_client.flushall()
    await redis_client.aclose()


@pytest_asyncio.fixture(scope="function")
async def client(store: StatusStore, queue: JobQueue) -> AsyncGenerator[AsyncClient, None]:
    """API client wired to the test store and queue."""
    app.state.store = store
    app.state.queue = queue

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.state.store = None
    app.state.queue = None


@pytest.fixture
def user_id():
    """Test user id."""
    return "user-test-0001"


@pytest.fixture
def auth_headers(user_id):
    return {"X-User-Id": user_id}


async def set_book_status(book_id: str, status: BookStatus):
    """Force a status without transition checks (test setup only)."""
    async with TestSessionLocal() as session:
        await session.execute(update(Book).where(Book.id == book_id).values(status=status.value))
        await session.commit()


@pytest.fixture
def book_factory(store: StatusStore, user_id: str):
    """Create a book with ``pages`` photos, details filled in, in ``status``."""

    async def create(
        pages: int = 4,
        status: BookStatus = BookStatus.DRAFT,
        art_style: str = "watercolor",
        winkify: bool = False,
        owner: str = None,
    ) -> Book:
        owner = owner or user_id
        book = await store.create_book_draft(
            owner,
            [
                DraftPageInput(
                    asset_id=f"asset-{i}",
                    original_image_url=f"https://images.test/photo-{i}.jpg",
                )
                for i in range(pages)
            ],
            art_style=art_style,
            is_winkify_enabled=winkify,
        )
        await store.update_book_details(
            book.id, owner, title="Max at the Beach", child_name="Max"
        )
        if status != BookStatus.DRAFT:
            await set_book_status(book.id, status)
        return await store.get_book(book.id, with_pages=True)

    return create


@pytest.fixture
def fetched_image():
    return FetchedImage(data=PNG_BYTES, mime_type="image/png")


@pytest.fixture
def asset_store():
    """Asset store double recording uploads."""
    assets = AsyncMock()

    async def upload_image(data, folder, public_id, tags=None, content_type="image/png"):
        key = f"{folder}/{public_id}.png"
        return UploadResult(secure_url=f"https://cdn.test/{key}", key=key)

    assets.upload_image = AsyncMock(side_effect=upload_image)
    return assets
