from sqlalchemy import Column, DateTime, Integer, String, Text, func
from .base import Base


class StoredDocument(Base):
    """One serialized collection (orders, memberships, ...) per row."""

    __tablename__ = "engine_document"

    collection = Column(String(64), primary_key=True)
    payload = Column(Text, nullable=False)
    record_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
