"""
SQLAlchemy ORM Models for the local store

Three tables:
- records: decks and cards as JSON documents keyed by (kind, id)
- sync_queue: pending mutations, ordered by autoincrement id
- meta: scalar state (last pull, last error, session, selection)
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class RecordRow(Base):
    """A persisted deck or card document."""
    __tablename__ = "records"

    kind = Column(String(16), primary_key=True, nullable=False)  # "deck" or "card"
    id = Column(String(255), primary_key=True, nullable=False)
    data = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<RecordRow({self.kind}, {self.id})>"


class MutationRow(Base):
    """One queued operation. Creation order is the id order."""
    __tablename__ = "sync_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(50), nullable=False)
    entity_id = Column(String(255), nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    retry_count = Column(Integer, nullable=False, default=0)
    reason = Column(String(50), nullable=True)
    parked = Column(Boolean, nullable=False, default=False)
    last_error = Column(Text, nullable=True)
    queued_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<MutationRow(id={self.id}, {self.type}, {self.entity_id})>"


class MetaRow(Base):
    __tablename__ = "meta"

    key = Column(String(100), primary_key=True)
    value = Column(JSON, nullable=True)
