"""
Pydantic validation schemas
"""
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any, Literal
from datetime import date, datetime
from uuid import UUID

from app.db.models import LegalDocumentStatus, LegalSourceType, OrchestrationJobStatus

# ============================================================================
# Ingestion Schemas
# ============================================================================

class IngestionMetadata(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    jurisdiction: str = "NSW"
    document_type: str = Field(..., min_length=1, max_length=100)
    source_authority: Optional[str] = None
    effective_date: Optional[date] = None
    tags: List[str] = Field(default_factory=list)


class ChunkConfig(BaseModel):
    chunk_size: int = Field(1000, ge=100, le=20000)
    overlap: int = Field(100, ge=0)
    respect_boundaries: bool = True

    @model_validator(mode="after")
    def clamp_overlap(self):
        # Overlap must leave the fallback window room to advance
        if self.overlap >= self.chunk_size:
            self.overlap = self.chunk_size - 1
        return self


class IngestionRequest(BaseModel):
    """Body of POST /nsw-legal-ingestor"""
    source_type: LegalSourceType
    source_url: Optional[str] = None
    content: Optional[str] = None
    file_path: Optional[str] = None
    metadata: IngestionMetadata
    chunk_config: ChunkConfig = Field(default_factory=ChunkConfig)

    @model_validator(mode="after")
    def require_a_source(self):
        if not (self.content or self.source_url or self.file_path):
            raise ValueError("Provide one of 'content', 'source_url' or 'file_path'.")
        return self


class IngestionResult(BaseModel):
    document_id: UUID
    chunks_created: int
    citations_extracted: int
    legal_concepts_identified: List[str]
    status: Literal["completed", "partial", "failed"]
    errors: Optional[List[str]] = None


class LegalDocumentResponse(BaseModel):
    id: UUID
    title: str
    document_type: str
    jurisdiction: str
    source_type: LegalSourceType
    source_url: Optional[str]
    source_authority: Optional[str]
    effective_date: Optional[date]
    checksum: str
    status: LegalDocumentStatus
    total_sections: int
    tags: List[str]
    legal_concepts: List[str]
    created_at: datetime

    class Config:
        from_attributes = True


class StoredFileResponse(BaseModel):
    file_path: str
    size: Optional[int] = None
    last_modified: Optional[datetime] = None
    download_url: Optional[str] = None

# ============================================================================
# Assistant Chat Schemas
# ============================================================================

class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    """Body of POST /assistant-chat; at least one of prompt/messages is required (checked in the chat service)."""
    prompt: Optional[str] = None
    messages: Optional[List[ChatMessage]] = None
    mode: Optional[str] = None
    thread_id: Optional[UUID] = None

    @field_validator("prompt")
    @classmethod
    def strip_prompt(cls, v: Optional[str]) -> Optional[str]:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v


class ChatCitation(BaseModel):
    index: int
    type: Literal["legal_authority", "user_file"]
    source_id: str
    title: str
    section_id: Optional[str] = None
    seq: Optional[int] = None
    excerpt: str
    similarity: float
    citation: Optional[str] = None


class ChatResponse(BaseModel):
    response: str
    citations: List[ChatCitation]
    metadata: Dict[str, Any]

# ============================================================================
# Evidence Intelligence Schemas
# ============================================================================

class OrchestratorRequest(BaseModel):
    trigger_type: str = "manual"
    file_id: Optional[UUID] = None


class OrchestratorResponse(BaseModel):
    success: bool
    message: str
    files_to_process: int
    estimated_completion: Optional[str] = None
    job_id: Optional[UUID] = None


class OrchestrationJobResponse(BaseModel):
    id: UUID
    status: OrchestrationJobStatus
    trigger_type: str
    file_ids: List[str]
    files_processed: int
    files_failed: int
    error: Optional[str]
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True
