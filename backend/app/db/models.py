"""
SQLAlchemy ORM Models

Legal corpus (documents, chunks, citations), user evidence (files, chunks,
comprehensive analyses, timeline events), conversation state (messages,
case memory, session logs, rate-limit ledger) and orchestration jobs.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    Column,
    Date,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TIMESTAMP,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import relationship

from app.db.database import Base

EMBEDDING_DIMENSIONS = 1536

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# ============================================================================
# Enums
# ============================================================================

class LegalSourceType(str, enum.Enum):
    """Where an ingested legal document came from"""
    legislation = "legislation"
    case_law = "case_law"
    practice_direction = "practice_direction"
    regulation = "regulation"
    manual = "manual"

class LegalDocumentStatus(str, enum.Enum):
    """Ingestion status of a legal document"""
    processing = "processing"
    active = "active"
    failed = "failed"

class CitationType(str, enum.Enum):
    """Kinds of legal authority a citation can point at"""
    statute = "statute"
    case_law = "case_law"
    regulation = "regulation"
    practice_direction = "practice_direction"
    rule = "rule"

class MessageRole(str, enum.Enum):
    user = "user"
    assistant = "assistant"

class OrchestrationJobStatus(str, enum.Enum):
    """Evidence intelligence job lifecycle"""
    queued = "queued"
    running = "running"
    done = "done"
    failed = "failed"

# ============================================================================
# Legal corpus
# ============================================================================

class LegalDocument(Base):
    """
    One row per ingestion request. Created as ``processing`` and flipped to
    ``active`` once quality validation has counted its stored chunks.
    """
    __tablename__ = "legal_documents"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title = Column(String(500), nullable=False)
    document_type = Column(String(100), nullable=False)
    jurisdiction = Column(String(50), nullable=False, default="NSW")
    source_type = Column(SQLEnum(LegalSourceType), nullable=False)
    source_url = Column(Text, nullable=True)
    source_authority = Column(String(255), nullable=True)
    effective_date = Column(Date, nullable=True)
    checksum = Column(String(64), nullable=False, index=True)  # sha256 of raw content
    status = Column(SQLEnum(LegalDocumentStatus), nullable=False, default=LegalDocumentStatus.processing, index=True)
    total_sections = Column(Integer, nullable=False, default=0)
    ingestion_method = Column(String(50), nullable=False, default="automated")
    scope = Column(String(20), nullable=False, default="global")
    tags = Column(JSONType, nullable=False, default=list)
    legal_concepts = Column(JSONType, nullable=False, default=list)
    created_by = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    chunks = relationship("LegalChunk", back_populates="document", cascade="all, delete-orphan")


class LegalChunk(Base):
    """
    Embedded slice of a legal document. ``chunk_order`` is assigned across the
    whole document (0..n-1) so section order can be rebuilt from the chunks.
    """
    __tablename__ = "legal_chunks"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    document_id = Column(UUID(as_uuid=True), ForeignKey("legal_documents.id", ondelete="CASCADE"), nullable=False, index=True)
    section_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    chunk_text = Column(Text, nullable=False)
    chunk_order = Column(Integer, nullable=False)
    embedding = Column(Vector(EMBEDDING_DIMENSIONS), nullable=True)
    # "metadata" is reserved on declarative classes
    chunk_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    citation_references = Column(JSONType, nullable=False, default=list)
    legal_concepts = Column(JSONType, nullable=False, default=list)
    provenance = Column(JSONType, nullable=False, default=dict)
    confidence_score = Column(Float, nullable=False, default=1.0)
    created_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)

    document = relationship("LegalDocument", back_populates="chunks")

    __table_args__ = (
        UniqueConstraint("document_id", "chunk_order", name="uq_legal_chunks_document_order"),
    )


class LegalCitation(Base):
    """
    Citation extracted from a chunk. Upserted on (short_citation, section_id)
    so re-ingesting a document never duplicates its citations.
    """
    __tablename__ = "legal_citations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    section_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    document_id = Column(UUID(as_uuid=True), ForeignKey("legal_documents.id", ondelete="SET NULL"), nullable=True, index=True)
    citation_type = Column(SQLEnum(CitationType), nullable=False)
    short_citation = Column(String(500), nullable=False)
    full_citation = Column(Text, nullable=True)
    neutral_citation = Column(String(255), nullable=True)
    court = Column(String(255), nullable=True)
    year = Column(Integer, nullable=True)
    jurisdiction = Column(String(50), nullable=True)
    confidence_score = Column(Float, nullable=False)
    url = Column(Text, nullable=True)
    context = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("short_citation", "section_id", name="uq_legal_citations_short_section"),
    )

# ============================================================================
# User evidence
# ============================================================================

class EvidenceFile(Base):
    """Uploaded user file. Indexed by the upload pipeline, which sets status=processed."""
    __tablename__ = "evidence_files"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String(500), nullable=False)
    status = Column(String(30), nullable=False, default="uploaded", index=True)
    created_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)

    chunks = relationship(
        "EvidenceChunk",
        back_populates="file",
        cascade="all, delete-orphan",
        order_by="EvidenceChunk.seq",
    )


class EvidenceChunk(Base):
    __tablename__ = "evidence_chunks"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    file_id = Column(UUID(as_uuid=True), ForeignKey("evidence_files.id", ondelete="CASCADE"), nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    text = Column(Text, nullable=False)
    meta = Column(JSONType, nullable=False, default=dict)
    embedding = Column(Vector(EMBEDDING_DIMENSIONS), nullable=True)

    file = relationship("EvidenceFile", back_populates="chunks")


class EvidenceComprehensiveAnalysis(Base):
    """
    Five-lens analysis plus synthesis for one evidence file. Never updated in
    place; the orchestrator skips files that already have a row.
    """
    __tablename__ = "evidence_comprehensive_analysis"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    file_id = Column(UUID(as_uuid=True), ForeignKey("evidence_files.id", ondelete="CASCADE"), nullable=False, unique=True)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    analysis_passes = Column(JSONType, nullable=False, default=list)
    synthesis = Column(JSONType, nullable=False, default=dict)
    confidence_score = Column(Float, nullable=True)
    legal_strength = Column(Integer, nullable=True)  # 0-100
    case_impact = Column(JSONType, nullable=True)
    key_insights = Column(JSONType, nullable=True)
    strategic_recommendations = Column(JSONType, nullable=True)
    evidence_gaps_identified = Column(JSONType, nullable=True)
    pattern_connections = Column(JSONType, nullable=True)
    timeline_significance = Column(JSONType, nullable=True)
    created_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)


class EnhancedTimelineEvent(Base):
    __tablename__ = "enhanced_timeline_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    file_id = Column(UUID(as_uuid=True), ForeignKey("evidence_files.id", ondelete="CASCADE"), nullable=False, index=True)
    chunk_id = Column(UUID(as_uuid=True), ForeignKey("evidence_chunks.id", ondelete="SET NULL"), nullable=True)
    event_date = Column(Date, nullable=False, index=True)
    event_time = Column(String(5), nullable=True)  # HH:MM
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(50), nullable=False, default="other")
    confidence = Column(Float, nullable=True)
    legal_significance = Column(Text, nullable=True)
    evidence_type = Column(String(50), nullable=True)
    potential_witnesses = Column(JSONType, nullable=False, default=list)
    corroboration_needed = Column(Text, nullable=True)
    context = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)

# ============================================================================
# Conversation state
# ============================================================================

class Message(Base):
    """Append-only chat log; citations are attached to assistant rows only."""
    __tablename__ = "messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False)
    thread_id = Column(UUID(as_uuid=True), nullable=True)
    role = Column(SQLEnum(MessageRole), nullable=False)
    content = Column(Text, nullable=False)
    citations = Column(JSONType, nullable=False, default=list)
    created_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_messages_user_created", "user_id", "created_at"),
    )


class CaseMemory(Base):
    """
    Per-user journey state. ``version`` is the optimistic-concurrency counter:
    SQLAlchemy adds ``WHERE version = :old`` to every UPDATE and raises
    StaleDataError when another writer got there first.
    """
    __tablename__ = "case_memory"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False, unique=True)
    primary_goal = Column(Text, nullable=True)
    current_stage = Column(Integer, nullable=False, default=1)  # 1-9
    case_readiness_status = Column(String(50), nullable=True)
    key_facts = Column(JSONType, nullable=False, default=list)
    evidence_index = Column(JSONType, nullable=False, default=list)
    personalization_profile = Column(JSONType, nullable=False, default=dict)
    session_count = Column(Integer, nullable=False, default=0)
    stage_history = Column(JSONType, nullable=False, default=list)
    last_activity_type = Column(String(50), nullable=True)
    last_updated_at = Column(TIMESTAMP, nullable=True)
    updated_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class SessionLog(Base):
    """Analytics trail written after each chat turn."""
    __tablename__ = "session_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    details = Column(JSONType, nullable=False, default=dict)
    created_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)


class AssistantRequest(Base):
    """Rate-limit ledger for the assistant chat endpoint."""
    __tablename__ = "assistant_requests"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False)
    ip_address = Column(String(100), nullable=True)
    created_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_assistant_requests_user_created", "user_id", "created_at"),
    )

# ============================================================================
# Orchestration
# ============================================================================

class OrchestrationJob(Base):
    """
    Evidence intelligence batch. Written as ``queued`` before the HTTP
    response; clients poll it until ``done`` or ``failed``.
    """
    __tablename__ = "orchestration_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    trigger_type = Column(String(50), nullable=False, default="manual")
    status = Column(SQLEnum(OrchestrationJobStatus), nullable=False, default=OrchestrationJobStatus.queued, index=True)
    file_ids = Column(JSONType, nullable=False, default=list)
    files_processed = Column(Integer, nullable=False, default=0)
    files_failed = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    started_at = Column(TIMESTAMP, nullable=True)
    completed_at = Column(TIMESTAMP, nullable=True)
