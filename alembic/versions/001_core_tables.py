"""Core tables read by the badge engine.

Users, passkeys, rounds, prophecies and ratings are owned by the web
application. IF NOT EXISTS keeps this a no-op against its database and
creates them for a standalone deployment.

Revision ID: 001_core_tables
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_core_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Users ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id VARCHAR(36) PRIMARY KEY,
            username VARCHAR(64) UNIQUE NOT NULL,
            display_name VARCHAR(64),
            avatar_url TEXT,
            role VARCHAR(16) NOT NULL DEFAULT 'USER',
            status VARCHAR(16) NOT NULL DEFAULT 'PENDING',
            is_bot BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Passkeys ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS authenticators (
            id VARCHAR(36) PRIMARY KEY,
            credential_id TEXT UNIQUE NOT NULL,
            user_id VARCHAR(36) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            name VARCHAR(64) NOT NULL DEFAULT 'Mein Passkey',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Rounds ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS rounds (
            id VARCHAR(36) PRIMARY KEY,
            title VARCHAR(256) NOT NULL,
            submission_deadline TIMESTAMPTZ NOT NULL,
            rating_deadline TIMESTAMPTZ NOT NULL,
            fulfillment_date TIMESTAMPTZ NOT NULL,
            results_published_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Prophecies ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS prophecies (
            id VARCHAR(36) PRIMARY KEY,
            title VARCHAR(256) NOT NULL,
            description TEXT,
            creator_id VARCHAR(36) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            round_id VARCHAR(36) NOT NULL REFERENCES rounds(id) ON DELETE CASCADE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            fulfilled BOOLEAN,
            resolved_at TIMESTAMPTZ
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_prophecies_creator_id ON prophecies(creator_id)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_prophecies_round_id ON prophecies(round_id)")

    # --- Ratings ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS ratings (
            id VARCHAR(36) PRIMARY KEY,
            value INTEGER NOT NULL CHECK (value BETWEEN -10 AND 10),
            prophecy_id VARCHAR(36) NOT NULL REFERENCES prophecies(id) ON DELETE CASCADE,
            user_id VARCHAR(36) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT ratings_prophecy_id_user_id_key UNIQUE (prophecy_id, user_id)
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_ratings_prophecy_id ON ratings(prophecy_id)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_ratings_user_id ON ratings(user_id)")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS ratings CASCADE")
    op.execute("DROP TABLE IF EXISTS prophecies CASCADE")
    op.execute("DROP TABLE IF EXISTS rounds CASCADE")
    op.execute("DROP TABLE IF EXISTS authenticators CASCADE")
    op.execute("DROP TABLE IF EXISTS users CASCADE")
