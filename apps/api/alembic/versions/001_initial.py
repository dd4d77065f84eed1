"""Initial migration

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Books table
    op.create_table(
        'books',
        sa.Column('id', sa.String(60), primary_key=True),
        sa.Column('user_id', sa.String(80), nullable=False),
        sa.Column('title', sa.String(120), nullable=False),
        sa.Column('child_name', sa.String(80), nullable=False),
        sa.Column('art_style', sa.String(40), nullable=True),
        sa.Column('is_winkify_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(20), nullable=False, server_default='DRAFT'),
        sa.Column('status_version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('page_length', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cover_asset_id', sa.String(60), nullable=True),
        sa.Column('prompt_tokens', sa.Integer(), nullable=True),
        sa.Column('completion_tokens', sa.Integer(), nullable=True),
        sa.Column('total_tokens', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_books_user_id', 'books', ['user_id'])

    # Pages table
    op.create_table(
        'pages',
        sa.Column('id', sa.String(60), primary_key=True),
        sa.Column('book_id', sa.String(60), sa.ForeignKey('books.id'), nullable=False),
        sa.Column('index', sa.Integer(), nullable=False),
        sa.Column('page_number', sa.Integer(), nullable=False),
        sa.Column('asset_id', sa.String(60), nullable=True),
        sa.Column('original_image_url', sa.String(500), nullable=True),
        sa.Column('generated_image_url', sa.String(500), nullable=True),
        sa.Column('text', sa.Text(), nullable=True),
        sa.Column('text_confirmed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('illustration_notes', sa.Text(), nullable=True),
        sa.Column('is_title_page', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('moderation_status', sa.String(20), nullable=True),
        sa.Column('moderation_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), onupdate=sa.func.now()),
        sa.UniqueConstraint('book_id', 'index', name='uq_page_book_index'),
    )
    op.create_index('ix_pages_book_id', 'pages', ['book_id'])


def downgrade() -> None:
    op.drop_index('ix_pages_book_id', table_name='pages')
    op.drop_table('pages')
    op.drop_index('ix_books_user_id', table_name='books')
    op.drop_table('books')
