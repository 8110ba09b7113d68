"""Relay tables: users, rounds, attempts and lineage edges.

Revision ID: 001_relay_tables
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_relay_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Users ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id BIGSERIAL PRIMARY KEY,
            external_id BIGINT UNIQUE NOT NULL,
            name VARCHAR(100) NOT NULL DEFAULT '',
            notify VARCHAR(16) NOT NULL DEFAULT 'disabled',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_users_notify CHECK (notify IN ('disabled', 'once', 'always'))
        )
    """)

    # --- Rounds ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS rounds (
            id BIGSERIAL PRIMARY KEY,
            mode VARCHAR(32) NOT NULL,
            nsfw BOOLEAN NOT NULL DEFAULT FALSE,
            round_no INTEGER NOT NULL,
            multiplex INTEGER NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            origin_attempt_id BIGINT UNIQUE,
            CONSTRAINT ck_rounds_round_no CHECK (round_no >= 0),
            CONSTRAINT ck_rounds_multiplex CHECK (multiplex >= 1)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_rounds_lookup
        ON rounds(mode, nsfw, round_no)
    """)

    # --- Attempts ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS attempts (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id),
            round_id BIGINT NOT NULL REFERENCES rounds(id),
            state_type VARCHAR(16) NOT NULL,
            active_until TIMESTAMPTZ,
            state_at TIMESTAMPTZ,
            moderator_id BIGINT REFERENCES users(id),
            image_ref VARCHAR(128),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_attempts_state_type CHECK (state_type IN
                ('active', 'cancelled', 'expired', 'uploading', 'pending', 'approved', 'rejected')),
            CONSTRAINT ck_attempts_active_until CHECK (state_type <> 'active' OR active_until IS NOT NULL),
            CONSTRAINT ck_attempts_state_at CHECK (state_type = 'active' OR state_at IS NOT NULL),
            CONSTRAINT ck_attempts_image_ref CHECK (
                state_type NOT IN ('pending', 'approved', 'rejected') OR image_ref IS NOT NULL),
            CONSTRAINT ck_attempts_moderator CHECK (
                state_type NOT IN ('approved', 'rejected') OR moderator_id IS NOT NULL)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_attempts_round_state
        ON attempts(round_id, state_type)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_attempts_user_state
        ON attempts(user_id, state_type)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_attempts_state_until
        ON attempts(state_type, active_until)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_attempts_image_ref
        ON attempts(image_ref)
    """)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_attempts_user_round_open
        ON attempts(user_id, round_id)
        WHERE state_type IN ('active', 'uploading', 'pending')
    """)

    # --- Lineage ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS lineage_edges (
            round_id BIGINT NOT NULL REFERENCES rounds(id),
            attempt_id BIGINT NOT NULL REFERENCES attempts(id),
            PRIMARY KEY (round_id, attempt_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_lineage_attempt
        ON lineage_edges(attempt_id)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS lineage_edges CASCADE")
    op.execute("DROP TABLE IF EXISTS attempts CASCADE")
    op.execute("DROP TABLE IF EXISTS rounds CASCADE")
    op.execute("DROP TABLE IF EXISTS users CASCADE")
