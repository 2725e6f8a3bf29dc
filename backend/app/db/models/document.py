"""
Document — metadata of an uploaded or system-created document.

File bytes live in object storage; only the reference is kept here.
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, String

from app.db.models.base import Base, generate_uuid, utcnow


class Document(Base):
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    file_name = Column(String(500), nullable=True)
    file_url = Column(String(1000), nullable=True)
    file_type = Column(String(100), nullable=True)
    # Set on sub-documents produced by a splitting node
    parent_document_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Document {self.id} name={self.file_name}>"
