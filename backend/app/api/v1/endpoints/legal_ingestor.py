"""
NSW legal ingestor API endpoints.

POST   /nsw-legal-ingestor                         → ingest one document (URL, stored file or text)
POST   /nsw-legal-ingestor/upload                  → store a source file in the legal-training bucket
GET    /nsw-legal-ingestor/files                   → stored files with signed download URLs
GET    /nsw-legal-ingestor/documents/{document_id} → one ingested document
"""

from __future__ import annotations

import asyncio
import re
import uuid
from typing import List, Optional

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.v1.deps import get_current_user_id, get_optional_user_id, require_openai
from app.core.logger import logger
from app.db.database import get_db
from app.db.models import LegalDocument
from app.db.schemas import IngestionRequest, IngestionResult, LegalDocumentResponse, StoredFileResponse
from app.services.legal_ingestion_service import legal_ingestion_service
from app.services.s3_service import s3_service
from app.utils.exceptions import (
    AllModelsFailedError,
    ComplianceError,
    ContentAcquisitionError,
    IngestionError,
    InvalidRequestError,
    LlmResponseError,
    NotFoundError,
)

router = APIRouter()

UPLOAD_PREFIX = "uploads/"
_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")

INGESTION_FAILURES = (
    ComplianceError,
    ContentAcquisitionError,
    IngestionError,
    AllModelsFailedError,
    LlmResponseError,
)


def _ingestion_failed(exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"error": "Ingestion failed", "details": str(exc), "status": "failed"},
    )


# ============================================================================
# Endpoints
# ============================================================================


@router.post(
    "",
    response_model=IngestionResult,
    summary="Ingest an NSW legal document",
    dependencies=[Depends(require_openai)],
)
async def ingest_document(
    request: IngestionRequest,
    db: Session = Depends(get_db),
    user_id: Optional[uuid.UUID] = Depends(get_optional_user_id),
):
    try:
        return await legal_ingestion_service.ingest(db, request, user_id=user_id)
    except INGESTION_FAILURES as exc:
        logger.error("Ingestion request failed (%s): %s", type(exc).__name__, exc)
        return _ingestion_failed(exc)


@router.post("/upload", summary="Upload a source document to blob storage")
async def upload_source_file(
    file: UploadFile = File(...),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    data = await file.read()
    if not data:
        raise InvalidRequestError("Uploaded file is empty")

    safe_name = _UNSAFE_NAME_RE.sub("_", file.filename or "document").strip("_") or "document"
    key = f"{UPLOAD_PREFIX}{uuid.uuid4().hex}/{safe_name}"
    try:
        await asyncio.to_thread(
            s3_service.upload_bytes, key, data, file.content_type or "application/octet-stream"
        )
    except (ClientError, BotoCoreError) as exc:
        logger.error("Upload by user %s failed: %s", user_id, exc)
        return JSONResponse(status_code=500, content={"error": "Upload failed", "details": str(exc)})

    return {"file_path": key, "size": len(data), "content_type": file.content_type}


@router.get("/files", response_model=List[StoredFileResponse], summary="List stored source files")
async def list_source_files(
    prefix: str = "",
    limit: int = 100,
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    try:
        files = await asyncio.to_thread(s3_service.list_files, prefix, None, min(max(limit, 1), 1000))
        urls = await asyncio.to_thread(s3_service.generate_download_urls, [f["file_path"] for f in files])
    except (ClientError, BotoCoreError) as exc:
        logger.error("Listing stored files failed: %s", exc)
        return JSONResponse(status_code=500, content={"error": "Listing files failed", "details": str(exc)})

    return [StoredFileResponse(**f, download_url=urls.get(f["file_path"])) for f in files]


@router.get(
    "/documents/{document_id}",
    response_model=LegalDocumentResponse,
    summary="Get an ingested legal document",
)
def get_document(
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    document = db.query(LegalDocument).filter(LegalDocument.id == document_id).first()
    if document is None:
        raise NotFoundError("Document not found")
    return document
