"""create chats and chat_messages tables

Revision ID: 5b7e2c91f0a3
Revises:
Create Date: 2026-10-19 10:12:41.503118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '5b7e2c91f0a3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the chat log tables; tracker state lives in chat_messages.extra."""
    op.create_table(
        'chats',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False, server_default='Untitled Chat'),
        sa.Column('user_name', sa.String(), nullable=False, server_default='User'),
        sa.Column('character_name', sa.String(), nullable=False, server_default='Character'),
        sa.Column('character_info', sa.Text(), nullable=False, server_default=''),
        sa.Column('user_info', sa.Text(), nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_chats_id'), 'chats', ['id'], unique=False)

    op.create_table(
        'chat_messages',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('chat_id', sa.String(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('is_user', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('mes', sa.Text(), nullable=False),
        sa.Column('swipe_id', sa.Integer(), nullable=True),
        sa.Column('extra', sa.JSON(), nullable=False),
        sa.ForeignKeyConstraint(['chat_id'], ['chats.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('chat_id', 'position', name='uix_chat_message_position'),
    )
    op.create_index(op.f('ix_chat_messages_chat_id'), 'chat_messages', ['chat_id'], unique=False)


def downgrade() -> None:
    """Drop the chat log tables."""
    op.drop_index(op.f('ix_chat_messages_chat_id'), table_name='chat_messages')
    op.drop_table('chat_messages')
    op.drop_index(op.f('ix_chats_id'), table_name='chats')
    op.drop_table('chats')
