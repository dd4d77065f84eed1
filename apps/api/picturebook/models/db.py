from datetime import datetime
from sqlalchemy import (
    Column,
    String,
    Integer,
    Text,
    DateTime,
    Boolean,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from picturebook.core.database import Base


class Book(Base):
    __tablename__ = "books"

    id = Column(String(60), primary_key=True)
    user_id = Column(String(80), nullable=False, index=True)
    title = Column(String(120), nullable=False)
    child_name = Column(String(80), nullable=False)
    art_style = Column(String(40), nullable=True)
    is_winkify_enabled = Column(Boolean, nullable=False, default=False)
    status = Column(
        String(20), nullable=False, default="DRAFT"
    )  # DRAFT, GENERATING, COMPLETED, ILLUSTRATING, PARTIAL, FAILED
    status_version = Column(Integer, nullable=False, default=0)  # bumped on every status write
    page_length = Column(Integer, nullable=False, default=0)
    cover_asset_id = Column(String(60), nullable=True)

    # Token usage from the story model (informational)
    prompt_tokens = Column(Integer, nullable=True)
    completion_tokens = Column(Integer, nullable=True)
    total_tokens = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    pages = relationship("Page", back_populates="book", order_by="Page.index")


class Page(Base):
    __tablename__ = "pages"
    __table_args__ = (
        UniqueConstraint("book_id", "index", name="uq_page_book_index"),
    )

    id = Column(String(60), primary_key=True)
    book_id = Column(String(60), ForeignKey("books.id"), nullable=False, index=True)
    index = Column(Integer, nullable=False)  # 0-based story order
    page_number = Column(Integer, nullable=False)  # index + 1
    asset_id = Column(String(60), nullable=True)
    original_image_url = Column(String(500), nullable=True)
    generated_image_url = Column(String(500), nullable=True)
    text = Column(Text, nullable=True)
    text_confirmed = Column(Boolean, nullable=False, default=False)
    illustration_notes = Column(Text, nullable=True)
    is_title_page = Column(Boolean, nullable=False, default=False)
    moderation_status = Column(String(20), nullable=True)  # NULL (pending), OK, FLAGGED, FAILED
    moderation_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    book = relationship("Book", back_populates="pages")
