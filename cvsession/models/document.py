"""Session document table.

One row per session id holding the full EnhancedSessionState as JSON plus
the sync_version used for optimistic concurrency.
"""

from sqlalchemy import JSON, CheckConstraint, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from cvsession.models.base import Base, TimestampMixin


class SessionDocument(Base, TimestampMixin):
    """Persisted session document."""

    __tablename__ = "session_documents"
    __table_args__ = (
        CheckConstraint("sync_version >= 1", name="ck_session_documents_sync_version"),
    )

    session_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )
    user_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    sync_version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )
    # JSONB on PostgreSQL, plain JSON elsewhere
    state: Mapped[dict] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
    )
