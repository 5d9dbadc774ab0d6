"""
MedEvidence SQLAlchemy Models

Persistence for pipeline results. Uses SQLAlchemy 2.0 patterns with
async support. The task identifier is the primary key so status polling
and result retrieval share one lookup.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# ============================================
# Base Model
# ============================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    type_annotation_map = {
        dict[str, Any]: JSON().with_variant(JSONB(), "postgresql"),
    }


# ============================================
# Helper Mixins
# ============================================


class TimestampMixin:
    """Mixin adding created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


# ============================================
# Search Result Model
# ============================================


class SearchResult(Base, TimestampMixin):
    """One pipeline task and, once finished, its synthesized answer."""

    __tablename__ = "search_results"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    query: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Serialized SynthesizedAnswer (text, outcome, flags, evidence arrays)
    answer: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)

    previous_query_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("idx_search_results_status_updated", "status", "updated_at"),
        Index("idx_search_results_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<SearchResult(id={self.id}, status='{self.status}')>"
