"""
Retrieval for the assistant chat.

One embedding of the enhanced query feeds two similarity searches: the global
legal corpus and the user's own evidence. The hits are post-filtered (legal
hits below the threshold are dropped, then de-duplicated on
(document_id, section_id)), numbered as citations, and rendered into context
blocks in a fixed order:

    continuity → legal authority → case memory → evidence → timeline
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.logger import logger
from app.db.models import EnhancedTimelineEvent
from app.db.schemas import ChatCitation
from app.services.case_memory_service import CaseMemorySnapshot
from app.services.chat_prompts import build_enhanced_query, stage_guidance
from app.services.openai_service import openai_service
from app.services.vector_search_service import vector_search_service
from app.utils.exceptions import AllModelsFailedError

EXCERPT_CHARS = 500  # per excerpt; listing blocks are not cut so every [CITATION n] survives
BLOCK_CHARS = 600  # single-summary blocks
TIMELINE_EVENTS = 5


def truncate(text: Optional[str], limit: int) -> str:
    text = (text or "").strip()
    return text if len(text) <= limit else text[:limit].rstrip() + "..."


def dedupe_legal_hits(
    rows: List[Dict[str, Any]],
    threshold: float,
    max_unique: int,
) -> List[Dict[str, Any]]:
    """Drop hits under *threshold*, keep the best hit per (document, section), cap at *max_unique*."""
    kept: List[Dict[str, Any]] = []
    seen = set()
    for row in sorted(rows, key=lambda r: r.get("similarity") or 0.0, reverse=True):
        if (row.get("similarity") or 0.0) < threshold:
            continue
        key = (str(row.get("document_id")), str(row.get("section_id")))
        if key in seen:
            continue
        seen.add(key)
        kept.append(row)
        if len(kept) >= max_unique:
            break
    return kept


@dataclass
class RetrievalResult:
    legal_hits: List[Dict[str, Any]] = field(default_factory=list)
    evidence_hits: List[Dict[str, Any]] = field(default_factory=list)
    citations: List[ChatCitation] = field(default_factory=list)
    context_blocks: List[str] = field(default_factory=list)
    embedding_model: Optional[str] = None


class RetrievalService:

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def _search_legal(self, db: Session, embedding: List[float]) -> List[Dict[str, Any]]:
        try:
            rows = vector_search_service.match_legal_chunks(
                db,
                embedding,
                threshold=settings.LEGAL_MATCH_THRESHOLD,
                count=settings.LEGAL_MATCH_COUNT,
                jurisdiction=settings.DEFAULT_JURISDICTION,
            )
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Legal similarity search failed: %s", exc)
            return []
        return dedupe_legal_hits(rows, settings.LEGAL_MATCH_THRESHOLD, settings.LEGAL_MAX_UNIQUE_SOURCES)

    def _search_evidence(self, db: Session, embedding: List[float], user_id: uuid.UUID) -> List[Dict[str, Any]]:
        try:
            rows = vector_search_service.match_user_chunks(
                db,
                embedding,
                threshold=settings.EVIDENCE_MATCH_THRESHOLD,
                count=settings.EVIDENCE_MATCH_COUNT,
                user_id=user_id,
            )
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Evidence similarity search failed: %s", exc)
            return []
        return [r for r in rows if (r.get("similarity") or 0.0) >= settings.EVIDENCE_MATCH_THRESHOLD]

    def _recent_timeline(self, db: Session, user_id: uuid.UUID) -> List[EnhancedTimelineEvent]:
        try:
            return (
                db.query(EnhancedTimelineEvent)
                .filter(EnhancedTimelineEvent.user_id == user_id)
                .order_by(EnhancedTimelineEvent.event_date.desc())
                .limit(TIMELINE_EVENTS)
                .all()
            )
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Timeline lookup failed: %s", exc)
            return []

    # ------------------------------------------------------------------
    # Citations and blocks
    # ------------------------------------------------------------------

    def build_citations(
        self,
        legal_hits: List[Dict[str, Any]],
        evidence_hits: List[Dict[str, Any]],
    ) -> List[ChatCitation]:
        citations: List[ChatCitation] = []
        for row in legal_hits:
            meta = row.get("metadata") or {}
            citations.append(ChatCitation(
                index=len(citations) + 1,
                type="legal_authority",
                source_id=str(row.get("document_id")),
                title=row.get("title") or meta.get("act_name") or meta.get("title") or "NSW legal authority",
                section_id=str(row.get("section_id")) if row.get("section_id") else None,
                excerpt=truncate(row.get("chunk_text"), EXCERPT_CHARS),
                similarity=float(row.get("similarity") or 0.0),
                citation=meta.get("normalized_citation"),
            ))
        for row in evidence_hits:
            citations.append(ChatCitation(
                index=len(citations) + 1,
                type="user_file",
                source_id=str(row.get("file_id")),
                title=row.get("file_name") or "File",
                seq=row.get("seq"),
                excerpt=truncate(row.get("text"), EXCERPT_CHARS),
                similarity=float(row.get("similarity") or 0.0),
            ))
        return citations

    def continuity_block(self, memory: CaseMemorySnapshot) -> Optional[str]:
        if not memory.exists or memory.session_count <= 0:
            return None
        lines = [f"RETURNING USER: {memory.session_count} previous session(s)."]
        if memory.last_updated_at:
            lines.append(f"Last active {memory.last_updated_at.strftime('%d %b %Y')}.")
        if memory.primary_goal:
            lines.append(f'Pick up where you left off on: "{memory.primary_goal}".')
        return truncate(" ".join(lines), BLOCK_CHARS)

    def case_memory_block(self, memory: CaseMemorySnapshot) -> Optional[str]:
        if not memory.exists:
            return None
        facts = "; ".join(str(f) for f in memory.key_facts[:5]) or "none recorded"
        text = (
            f"CASE MEMORY: goal={memory.primary_goal or 'not set'}; "
            f"stage {memory.current_stage}/9 ({stage_guidance(memory.current_stage)}); "
            f"readiness={memory.case_readiness_status or 'collecting'}; "
            f"key facts: {facts}; evidence items indexed: {len(memory.evidence_index)}"
        )
        return truncate(text, BLOCK_CHARS)

    def timeline_block(self, events: List[EnhancedTimelineEvent]) -> Optional[str]:
        if not events:
            return None
        lines = ["RECENT TIMELINE EVENTS:"]
        for event in events:
            when = event.event_date.isoformat() if event.event_date else "undated"
            lines.append(f"- {when} [{event.category}] {event.title}")
        return truncate("\n".join(lines), BLOCK_CHARS)

    def build_context_blocks(
        self,
        memory: CaseMemorySnapshot,
        citations: List[ChatCitation],
        timeline: List[EnhancedTimelineEvent],
    ) -> List[str]:
        blocks: List[str] = []

        continuity = self.continuity_block(memory)
        if continuity:
            blocks.append(continuity)

        legal = [c for c in citations if c.type == "legal_authority"]
        if legal:
            lines = ["RELEVANT NSW LEGAL AUTHORITY:"]
            for c in legal:
                label = c.citation or c.title
                lines.append(f"[CITATION {c.index}] {label}: {c.excerpt}")
            blocks.append("\n".join(lines))

        memory_block = self.case_memory_block(memory)
        if memory_block:
            blocks.append(memory_block)

        evidence = [c for c in citations if c.type == "user_file"]
        if evidence:
            lines = ["USER EVIDENCE EXCERPTS:"]
            for c in evidence:
                lines.append(f"[CITATION {c.index}] {c.title}#{c.seq}: {c.excerpt}")
            blocks.append("\n".join(lines))

        timeline_text = self.timeline_block(timeline)
        if timeline_text:
            blocks.append(timeline_text)

        return blocks

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def retrieve(
        self,
        db: Session,
        user_id: uuid.UUID,
        query: str,
        memory: CaseMemorySnapshot,
    ) -> RetrievalResult:
        result = RetrievalResult()
        enhanced = build_enhanced_query(query, memory)

        try:
            embedding = await openai_service.embed(enhanced)
        except AllModelsFailedError as exc:
            logger.warning("Query embedding failed, answering without retrieval: %s", exc)
            embedding = None

        if embedding is not None:
            result.embedding_model = embedding.model
            result.legal_hits = self._search_legal(db, embedding.vector)
            result.evidence_hits = self._search_evidence(db, embedding.vector, user_id)

        result.citations = self.build_citations(result.legal_hits, result.evidence_hits)
        result.context_blocks = self.build_context_blocks(
            memory, result.citations, self._recent_timeline(db, user_id)
        )
        logger.info(
            "Retrieved %d legal and %d evidence hits for user %s",
            len(result.legal_hits), len(result.evidence_hits), user_id,
        )
        return result


# Singleton
retrieval_service = RetrievalService()
