"""create_core_tables

Revision ID: core_001
Revises:
Create Date: 2026-09-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS app_user (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            email TEXT UNIQUE NOT NULL,
            partner_user_id UUID REFERENCES app_user(id) ON DELETE SET NULL,
            tz TEXT NOT NULL DEFAULT 'UTC',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS user_credentials (
            user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
            access_token_enc TEXT,
            refresh_token_enc TEXT,
            needs_reauth BOOLEAN NOT NULL DEFAULT false,
            last_history_id TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS invite (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
            gmail_thread_id TEXT NOT NULL,
            gmail_message_id TEXT NOT NULL,
            subject TEXT,
            parsed JSONB NOT NULL,
            shared_user_ids TEXT[] NOT NULL DEFAULT '{}'::TEXT[],
            status TEXT NOT NULL DEFAULT 'pending',
            notes TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT invite_status_check
                CHECK (status IN ('pending', 'approved', 'declined')),
            CONSTRAINT invite_gmail_thread_id_key UNIQUE (gmail_thread_id),
            CONSTRAINT invite_gmail_message_id_key UNIQUE (gmail_message_id)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS digest (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
            sent_at TIMESTAMPTZ NOT NULL,
            items JSONB NOT NULL
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS audit_log (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT,
            level TEXT NOT NULL DEFAULT 'info',
            event TEXT NOT NULL,
            details JSONB NOT NULL DEFAULT '{}'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS invite_shared_user_ids_idx
            ON invite USING GIN (shared_user_ids)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS invite_user_id_status_created_idx
            ON invite (user_id, status, created_at DESC)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS digest_user_id_sent_at_idx
            ON digest (user_id, sent_at DESC)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS audit_log_created_at_idx
            ON audit_log (created_at DESC)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS audit_log")
    op.execute("DROP TABLE IF EXISTS digest")
    op.execute("DROP TABLE IF EXISTS invite")
    op.execute("DROP TABLE IF EXISTS user_credentials")
    op.execute("DROP TABLE IF EXISTS app_user")
