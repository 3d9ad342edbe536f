"""Database ORM models backing the SQL record store.

- Record: one JSON record of a collection (documents, chunks, jobs, queries).
- RecordIndex: (collection, field, value) entries for the declared indexed fields,
  rewritten whenever the record is written.
"""
from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, UniqueConstraint

from docindex.db import Base
from docindex.schemas import utcnow


class Record(Base):
    """A persisted record.

    `seq` preserves first-insertion order; upserts keep the row and its seq.
    """
    __tablename__ = "records"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    collection = Column(String(64), nullable=False)
    record_id = Column(String(128), nullable=False)
    body = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("collection", "record_id", name="uq_records_collection_id"),
    )


class RecordIndex(Base):
    __tablename__ = "record_index"

    id = Column(Integer, primary_key=True, autoincrement=True)
    collection = Column(String(64), nullable=False)
    record_id = Column(String(128), nullable=False)
    field = Column(String(64), nullable=False)
    value = Column(String(512), nullable=True)

    __table_args__ = (
        Index("idx_record_index_lookup", "collection", "field", "value"),
        Index("idx_record_index_record", "collection", "record_id"),
    )
