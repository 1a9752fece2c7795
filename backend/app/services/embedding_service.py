"""
Embedding & storage: one embedding request per chunk, one LegalChunk row per success.

A chunk whose embedding (or insert) fails is logged and skipped; the caller
only sees the lower stored count and the collected error messages.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db.models import LegalChunk
from app.services.chunking_service import DocumentChunk
from app.services.openai_service import openai_service
from app.utils.exceptions import AllModelsFailedError

logger = logging.getLogger(__name__)


@dataclass
class StorageOutcome:
    stored: int = 0
    errors: list[str] = field(default_factory=list)


class EmbeddingStorageService:

    async def store_chunks(
        self,
        db: Session,
        document_id: uuid.UUID,
        chunks: list[DocumentChunk],
        checksum: str,
        ingestion_method: str = "automated",
    ) -> StorageOutcome:
        outcome = StorageOutcome()

        for chunk in chunks:
            try:
                embedding = await openai_service.embed(chunk.chunk_text)
            except AllModelsFailedError as exc:
                logger.warning("Embedding failed for chunk %d: %s", chunk.chunk_order, exc)
                outcome.errors.append(f"chunk {chunk.chunk_order}: embedding failed ({exc})")
                continue

            row = LegalChunk(
                document_id=document_id,
                section_id=chunk.section_id,
                chunk_text=chunk.chunk_text,
                chunk_order=chunk.chunk_order,
                embedding=embedding.vector,
                chunk_metadata={**chunk.metadata, "embedding_model": embedding.model},
                citation_references=chunk.citation_references,
                legal_concepts=chunk.legal_concepts,
                provenance={
                    "created_at": datetime.utcnow().isoformat(),
                    "ingestion_method": ingestion_method,
                    "source_checksum": checksum,
                },
                confidence_score=1.0,
            )
            try:
                db.add(row)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.warning("Failed to store chunk %d: %s", chunk.chunk_order, exc)
                outcome.errors.append(f"chunk {chunk.chunk_order}: insert failed")
                continue
            outcome.stored += 1

        logger.info("Stored %d/%d chunks for document %s", outcome.stored, len(chunks), document_id)
        return outcome


# Singleton
embedding_storage_service = EmbeddingStorageService()
