"""Initial schema: search results

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-19

Creates the search_results table that holds pipeline task state and the
serialized synthesized answer.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the search_results table and indexes."""

    # ========================================
    # Search results table
    # ========================================
    op.create_table(
        "search_results",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("query", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("answer", postgresql.JSONB(), nullable=True),
        sa.Column("previous_query_id", sa.String(36), nullable=True),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True),
                  server_default=sa.text("NOW()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True),
                  server_default=sa.text("NOW()"), nullable=False),
    )

    op.create_index("idx_search_results_status_updated", "search_results", ["status", "updated_at"])
    op.create_index("idx_search_results_user", "search_results", ["user_id"])

    # ========================================
    # Auto-update updated_at
    # ========================================
    op.execute("""
        CREATE OR REPLACE FUNCTION update_updated_at_column()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = NOW();
            RETURN NEW;
        END;
        $$ language 'plpgsql'
    """)

    op.execute("""
        CREATE TRIGGER update_search_results_updated_at
        BEFORE UPDATE ON search_results
        FOR EACH ROW EXECUTE FUNCTION update_updated_at_column()
    """)


def downgrade() -> None:
    """Drop the search_results table."""
    op.execute("DROP TRIGGER IF EXISTS update_search_results_updated_at ON search_results")
    op.execute("DROP FUNCTION IF EXISTS update_updated_at_column()")
    op.drop_index("idx_search_results_user", table_name="search_results")
    op.drop_index("idx_search_results_status_updated", table_name="search_results")
    op.drop_table("search_results")
