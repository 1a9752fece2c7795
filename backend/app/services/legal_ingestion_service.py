"""
Orchestrates the NSW legal ingestion pipeline:
  acquire → document row (processing) → structure → chunks → citations
  → concepts → embeddings → quality validation (active | failed)

Acquisition and compliance failures happen before the document row exists,
so a rejected URL leaves nothing behind. Anything that fails after that marks
the row ``failed`` and is re-raised as IngestionError.
"""

from __future__ import annotations

import hashlib
import uuid
from typing import Optional

from sqlalchemy.orm import Session

from app.core.logger import logger
from app.db.models import LegalChunk, LegalDocument, LegalDocumentStatus
from app.db.schemas import IngestionRequest, IngestionResult
from app.services.chunking_service import chunking_service
from app.services.citation_service import citation_service
from app.services.content_acquisition import acquire_content
from app.services.embedding_service import embedding_storage_service
from app.services.structure_service import structure_service
from app.utils.exceptions import IngestionError


def content_checksum(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class LegalIngestionService:

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _set_status(
        self,
        db: Session,
        document: LegalDocument,
        status: LegalDocumentStatus,
        total_sections: Optional[int] = None,
    ) -> None:
        document.status = status
        if total_sections is not None:
            document.total_sections = total_sections
        db.commit()
        logger.info("Document %s → status=%s", document.id, status.value)

    def _create_document(
        self,
        db: Session,
        request: IngestionRequest,
        checksum: str,
        user_id: Optional[uuid.UUID],
    ) -> LegalDocument:
        meta = request.metadata
        document = LegalDocument(
            title=meta.title,
            document_type=meta.document_type,
            jurisdiction=meta.jurisdiction,
            source_type=request.source_type,
            source_url=request.source_url,
            source_authority=meta.source_authority,
            effective_date=meta.effective_date,
            checksum=checksum,
            status=LegalDocumentStatus.processing,
            ingestion_method="automated",
            scope="global",
            tags=list(meta.tags),
            created_by=user_id,
        )
        db.add(document)
        db.commit()
        db.refresh(document)
        logger.info("Created legal document %s (%s)", document.id, meta.title)
        return document

    def validate_quality(self, db: Session, document: LegalDocument) -> int:
        """Count stored chunks; zero is fatal, otherwise the document becomes active."""
        count = db.query(LegalChunk).filter(LegalChunk.document_id == document.id).count()
        if count == 0:
            raise IngestionError("No chunks were stored for this document")
        self._set_status(db, document, LegalDocumentStatus.active, total_sections=count)
        return count

    # ------------------------------------------------------------------
    # Main pipeline
    # ------------------------------------------------------------------

    async def ingest(
        self,
        db: Session,
        request: IngestionRequest,
        user_id: Optional[uuid.UUID] = None,
    ) -> IngestionResult:
        logger.info("Starting ingestion: %s (%s)", request.metadata.title, request.source_type.value)

        # Raises ComplianceError / ContentAcquisitionError before any row exists
        acquired = await acquire_content(request)
        checksum = content_checksum(acquired.text)

        document = self._create_document(db, request, checksum, user_id)
        try:
            return await self._pipeline(db, request, document, acquired.text, checksum)
        except Exception as exc:
            logger.exception("Ingestion failed for document %s: %s", document.id, exc)
            db.rollback()
            self._set_status(db, document, LegalDocumentStatus.failed)
            if isinstance(exc, IngestionError):
                raise
            raise IngestionError(str(exc)) from exc

    async def _pipeline(
        self,
        db: Session,
        request: IngestionRequest,
        document: LegalDocument,
        text: str,
        checksum: str,
    ) -> IngestionResult:
        sections = await structure_service.extract(text, request.metadata)

        chunks = await chunking_service.chunk_sections(sections, request.chunk_config, checksum)

        citations = await citation_service.extract_and_store(db, chunks, document.id)

        concepts = await citation_service.identify_concepts(chunks)
        document.legal_concepts = concepts
        db.commit()

        outcome = await embedding_storage_service.store_chunks(db, document.id, chunks, checksum)

        self.validate_quality(db, document)

        status = "completed" if outcome.stored == len(chunks) else "partial"
        logger.info(
            "Ingestion %s for document %s: %d chunks, %d citations, %d concepts",
            status, document.id, outcome.stored, citations, len(concepts),
        )
        return IngestionResult(
            document_id=document.id,
            chunks_created=outcome.stored,
            citations_extracted=citations,
            legal_concepts_identified=concepts,
            status=status,
            errors=outcome.errors or None,
        )


# Singleton
legal_ingestion_service = LegalIngestionService()
