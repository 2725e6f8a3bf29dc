"""
Document and definition repository.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.document import Document
from app.db.models.workflow_graph import Definition


async def get_document(db: AsyncSession, document_id: str) -> Document | None:
    return await db.get(Document, document_id)


async def create_document(
    db: AsyncSession,
    *,
    file_name: str | None,
    file_url: str | None = None,
    file_type: str | None = None,
    parent_document_id: str | None = None,
) -> Document:
    document = Document(
        file_name=file_name,
        file_url=file_url,
        file_type=file_type,
        parent_document_id=parent_document_id,
    )
    db.add(document)
    await db.flush()
    return document


async def get_definition(db: AsyncSession, kind: str, definition_id: str) -> Definition | None:
    return await db.get(Definition, (kind, definition_id))
