"""XP tables.

Creates users, user_activity and course_completions. The unique
idempotency_key on user_activity is what stops two concurrent grants for the
same (wallet, action, reference) from both landing.

Revision ID: 001_xp_tables
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_xp_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Users ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id BIGSERIAL PRIMARY KEY,
            wallet_address VARCHAR(128) UNIQUE NOT NULL,
            display_name VARCHAR(64),
            total_xp INTEGER NOT NULL DEFAULT 0 CHECK (total_xp >= 0),
            level INTEGER NOT NULL DEFAULT 1,
            is_admin BOOLEAN NOT NULL DEFAULT false,
            squad VARCHAR(64),
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # --- Activity log ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_activity (
            id BIGSERIAL PRIMARY KEY,
            wallet_address VARCHAR(128) NOT NULL
                REFERENCES users(wallet_address) ON DELETE CASCADE,
            activity_type VARCHAR(32) NOT NULL,
            action VARCHAR(64),
            reference_id VARCHAR(256),
            xp_amount INTEGER NOT NULL DEFAULT 0,
            metadata JSONB NOT NULL DEFAULT '{}',
            idempotency_key VARCHAR(512) UNIQUE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_user_activity_wallet_type_created
        ON user_activity(wallet_address, activity_type, created_at)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_user_activity_wallet_action_created
        ON user_activity(wallet_address, action, created_at)
    """)

    # --- Course completions ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS course_completions (
            id BIGSERIAL PRIMARY KEY,
            wallet_address VARCHAR(128) NOT NULL
                REFERENCES users(wallet_address) ON DELETE CASCADE,
            course_id VARCHAR(128) NOT NULL,
            course_title VARCHAR(256),
            xp_earned INTEGER NOT NULL DEFAULT 0,
            completed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_course_completion UNIQUE (wallet_address, course_id)
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS course_completions CASCADE")
    op.execute("DROP TABLE IF EXISTS user_activity CASCADE")
    op.execute("DROP TABLE IF EXISTS users CASCADE")
