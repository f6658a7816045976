"""add_reply_metadata

Revision ID: core_002
Revises: core_001
Create Date: 2026-09-20 00:00:00.000000

Adds reply-analysis metadata to invites and persists digest letter mappings.
Existing digests get a mapping derived from item order.
"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_002"
down_revision = "core_001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("""
        ALTER TABLE invite
            ADD COLUMN IF NOT EXISTS preprocessor_confidence DECIMAL(3, 2),
            ADD COLUMN IF NOT EXISTS html_formatting_detected BOOLEAN NOT NULL DEFAULT false
    """)

    op.execute("""
        ALTER TABLE digest
            ADD COLUMN IF NOT EXISTS letter_mapping JSONB NOT NULL DEFAULT '{}'::jsonb
    """)

    op.execute("""
        WITH mapping AS (
            SELECT
                d.id,
                jsonb_object_agg(
                    chr((64 + item.ordinality)::integer),
                    COALESCE(
                        item.element ->> 'invite_id',
                        chr((64 + item.ordinality)::integer)
                    )
                ) AS mapping
            FROM digest d
            CROSS JOIN LATERAL (
                SELECT element, ordinality
                FROM jsonb_array_elements(d.items) WITH ORDINALITY AS elements(element, ordinality)
            ) AS item
            WHERE jsonb_typeof(d.items) = 'array' AND item.ordinality <= 26
            GROUP BY d.id
        )
        UPDATE digest
        SET letter_mapping = mapping.mapping
        FROM mapping
        WHERE digest.id = mapping.id
          AND digest.letter_mapping = '{}'::jsonb
    """)


def downgrade() -> None:
    op.execute("ALTER TABLE digest DROP COLUMN IF EXISTS letter_mapping")
    op.execute("""
        ALTER TABLE invite
            DROP COLUMN IF EXISTS html_formatting_detected,
            DROP COLUMN IF EXISTS preprocessor_confidence
    """)
