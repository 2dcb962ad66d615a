"""Initial schema: users, books, chapters, credit ledger

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None

book_status = postgresql.ENUM(
    'draft', 'generating', 'completed', 'failed', name='bookstatus', create_type=False
)
chapter_status = postgresql.ENUM(
    'pending', 'generating', 'completed', 'failed', name='chapterstatus', create_type=False
)
transaction_type = postgresql.ENUM(
    'purchase', 'usage', 'refund', 'usage_refund', 'free_signup',
    name='transactiontype', create_type=False,
)

PER_BOOK_TYPES = "type IN ('usage', 'usage_refund') AND book_id IS NOT NULL"


def upgrade() -> None:
    bind = op.get_bind()
    book_status.create(bind, checkfirst=True)
    chapter_status.create(bind, checkfirst=True)
    transaction_type.create(bind, checkfirst=True)

    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('username', sa.String(100), nullable=False),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('hashed_password', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), default=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_username', 'users', ['username'], unique=True)

    op.create_table(
        'books',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('source_text', sa.Text(), nullable=True),
        sa.Column('table_of_contents', sa.JSON(), nullable=True),
        sa.Column('plan', sa.JSON(), nullable=True),
        sa.Column('status', book_status, nullable=False, server_default='draft'),
        sa.Column('content', sa.Text(), nullable=False, server_default=''),
        sa.Column('current_chapter_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('streaming_checkpoint', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('generation_settings', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
    )
    op.create_index('books_user_id_idx', 'books', ['user_id'])
    op.create_index('books_status_idx', 'books', ['status'])

    op.create_table(
        'chapters',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('book_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('chapter_number', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('content', sa.Text(), nullable=False, server_default=''),
        sa.Column('outline', sa.JSON(), nullable=True),
        sa.Column('status', chapter_status, nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['book_id'], ['books.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('book_id', 'chapter_number', name='chapters_book_id_chapter_number_uq'),
    )
    op.create_index('chapters_status_idx', 'chapters', ['status'])

    op.create_table(
        'credit_balances',
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('free_credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('user_id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.CheckConstraint('balance >= 0', name='credit_balances_balance_non_negative'),
    )

    op.create_table(
        'credit_transactions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('type', transaction_type, nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        # No foreign key: ledger rows outlive deleted books
        sa.Column('book_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('external_order_id', sa.String(255), nullable=True),
        sa.Column('transaction_metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
    )
    op.create_index('credit_transactions_user_id_idx', 'credit_transactions', ['user_id'])
    op.create_index('credit_transactions_created_at_idx', 'credit_transactions', ['created_at'])
    op.create_index('ix_credit_transactions_book_id', 'credit_transactions', ['book_id'])
    op.create_index(
        'credit_transactions_book_type_uq',
        'credit_transactions',
        ['type', 'book_id'],
        unique=True,
        postgresql_where=sa.text(PER_BOOK_TYPES),
    )
    op.create_index(
        'credit_transactions_order_type_uq',
        'credit_transactions',
        ['type', 'external_order_id'],
        unique=True,
    )


def downgrade() -> None:
    op.drop_table('credit_transactions')
    op.drop_table('credit_balances')
    op.drop_table('chapters')
    op.drop_table('books')
    op.drop_index('ix_users_username', table_name='users')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')

    bind = op.get_bind()
    transaction_type.drop(bind, checkfirst=True)
    chapter_status.drop(bind, checkfirst=True)
    book_status.drop(bind, checkfirst=True)
