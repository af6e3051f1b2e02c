"""create chat threads and messages (with user/property mirrors)

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = '20261019_01'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)
    tables = set(insp.get_table_names())

    # Mirrors may already exist when the marketplace schema shares the DB
    if 'users' not in tables:
        op.create_table(
            'users',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('email', sa.String(), nullable=False),
            sa.Column('display_name', sa.String(), nullable=False),
            sa.Column('user_type', sa.Enum('BUYER', 'SELLER', name='usertype'), nullable=False),
            sa.Column('avatar_url', sa.String(), nullable=True),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_users_id', 'users', ['id'])
        op.create_index('ix_users_email', 'users', ['email'], unique=True)

    if 'properties' not in tables:
        op.create_table(
            'properties',
            sa.Column('id', sa.String(), primary_key=True),
            sa.Column('title', sa.String(), nullable=False),
            sa.Column('owner_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_properties_owner_id', 'properties', ['owner_id'])

    op.create_table(
        'chat_threads',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('buyer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('seller_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('property_id', sa.String(), sa.ForeignKey('properties.id'), nullable=True),
        sa.Column('property_key', sa.String(), nullable=False, server_default=''),
        sa.Column('buyer_unread_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('seller_unread_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_message_at', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('buyer_id', 'seller_id', 'property_key', name='uq_chat_threads_participants_property'),
        sa.CheckConstraint('buyer_id <> seller_id', name='ck_chat_threads_distinct_participants'),
        sa.CheckConstraint('buyer_unread_count >= 0', name='ck_chat_threads_buyer_unread'),
        sa.CheckConstraint('seller_unread_count >= 0', name='ck_chat_threads_seller_unread'),
    )
    op.create_index('ix_chat_threads_id', 'chat_threads', ['id'])
    op.create_index('ix_chat_threads_buyer_last', 'chat_threads', ['buyer_id', 'last_message_at'])
    op.create_index('ix_chat_threads_seller_last', 'chat_threads', ['seller_id', 'last_message_at'])

    op.create_table(
        'chat_messages',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('thread_id', sa.Integer(), sa.ForeignKey('chat_threads.id'), nullable=False),
        sa.Column('sender_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_chat_messages_thread_id_id', 'chat_messages', ['thread_id', 'id'])


def downgrade() -> None:
    op.drop_index('ix_chat_messages_thread_id_id', table_name='chat_messages')
    op.drop_table('chat_messages')
    op.drop_index('ix_chat_threads_seller_last', table_name='chat_threads')
    op.drop_index('ix_chat_threads_buyer_last', table_name='chat_threads')
    op.drop_index('ix_chat_threads_id', table_name='chat_threads')
    op.drop_table('chat_threads')
    # users/properties are mirrors owned elsewhere; leave them in place
