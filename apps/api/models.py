from sqlalchemy import Column, DateTime, JSON, String, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base


class Document(Base):
    """
    One stored record of a document collection.

    Every collection the session engine touches (events, assignments,
    workouts, exercises, users, workout sessions) lives in this table,
    keyed by (collection, id). The record itself is kept as JSON.
    """
    __tablename__ = "document"

    collection = Column(String(64), primary_key=True)
    id = Column(String(64), primary_key=True)
    data = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)

    # Optional per-collection uniqueness key (e.g. one active session per
    # athlete). NULL never collides.
    unique_key = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("collection", "unique_key", name="uq_document_collection_unique_key"),
        Index("ix_document_collection", "collection"),
    )
