"""Badge tables.

Creates badges (catalog mirror, synced from badge_definitions.json at
startup) and user_badges (append-only awards, one per user and badge).

Revision ID: 002_badge_tables
Revises: 001_core_tables
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "002_badge_tables"
down_revision: str | None = "001_core_tables"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Badges ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS badges (
            id SERIAL PRIMARY KEY,
            key VARCHAR(64) UNIQUE NOT NULL,
            name VARCHAR(128) NOT NULL,
            description TEXT NOT NULL,
            requirement TEXT NOT NULL,
            category VARCHAR(16) NOT NULL,
            rarity VARCHAR(16) NOT NULL,
            threshold INTEGER,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- User Badges ---
    # The unique constraint is what makes concurrent awards safe.
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_badges (
            id SERIAL PRIMARY KEY,
            user_id VARCHAR(36) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            badge_id INTEGER NOT NULL REFERENCES badges(id) ON DELETE CASCADE,
            earned_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT user_badges_user_id_badge_id_key UNIQUE (user_id, badge_id)
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_user_badges_user_id ON user_badges(user_id)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_user_badges_badge_id ON user_badges(badge_id)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_user_badges_earned_at ON user_badges(earned_at)")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS user_badges CASCADE")
    op.execute("DROP TABLE IF EXISTS badges CASCADE")
