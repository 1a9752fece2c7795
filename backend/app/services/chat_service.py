"""
Assistant chat turn:
  rate limit → history → case memory → retrieval → system prompt
  → completion (model fallback) → persist messages → bookkeeping

Bookkeeping (case memory session fields, session log) runs after the reply
is stored; its failures are logged and never reach the caller.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.logger import logger
from app.db.models import AssistantRequest, Message, MessageRole, SessionLog
from app.db.schemas import ChatCitation, ChatRequest, ChatResponse
from app.services.case_memory_service import case_memory_service
from app.services.chat_prompts import build_system_prompt, max_tokens_for_style
from app.services.openai_service import openai_service
from app.services.retrieval_service import retrieval_service
from app.utils.exceptions import InvalidRequestError, RateLimitExceededError

MISSING_INPUT_ERROR = "Provide 'prompt' (string) or 'messages' (array)."
QUERY_MAX_CHARS = 500
LAWYER_MAX_TOKENS = 1000

_CITATION_RE = re.compile(r"\b(s\d+|section\s+\d+|\d{4}\s+[A-Z]+)", re.IGNORECASE)
_ACT_RE = re.compile(r"(Act|Crimes|Family Law|Domestic Violence)", re.IGNORECASE)


def calculate_confidence(content: str, legal_sources: int, evidence_sources: int) -> float:
    score = 0.5
    if legal_sources > 0:
        score += 0.2
    if _CITATION_RE.search(content or ""):
        score += 0.15
    if evidence_sources > 0:
        score += 0.1
    if _ACT_RE.search(content or ""):
        score += 0.05
    return round(min(score, 1.0), 2)


class ChatService:

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    def enforce_rate_limit(self, db: Session, user_id: uuid.UUID, ip_address: Optional[str] = None) -> None:
        since = datetime.utcnow() - timedelta(minutes=1)
        count = (
            db.query(AssistantRequest)
            .filter(AssistantRequest.user_id == user_id, AssistantRequest.created_at >= since)
            .count()
        )
        if count >= settings.CHAT_RATE_LIMIT_PER_MINUTE:
            logger.info("Rate limit hit for user %s (%d requests in the last minute)", user_id, count)
            raise RateLimitExceededError()

        db.add(AssistantRequest(user_id=user_id, ip_address=ip_address))
        db.commit()

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------

    def _resolve_turn(
        self,
        db: Session,
        user_id: uuid.UUID,
        request: ChatRequest,
    ) -> tuple[str, List[Dict[str, str]]]:
        """Returns (query, history). Supplied messages replace the stored history."""
        if request.messages:
            turns = [m for m in request.messages if m.role in ("user", "assistant")]
            last_user_idx = max((i for i, m in enumerate(turns) if m.role == "user"), default=None)
            if request.prompt:
                query = request.prompt
                history = turns
            elif last_user_idx is not None and turns[last_user_idx].content.strip():
                query = turns[last_user_idx].content.strip()
                history = turns[:last_user_idx] + turns[last_user_idx + 1:]
            else:
                raise InvalidRequestError(MISSING_INPUT_ERROR)
            return query, [{"role": m.role, "content": m.content} for m in history]

        if not request.prompt:
            raise InvalidRequestError(MISSING_INPUT_ERROR)
        return request.prompt, self.load_history(db, user_id, request.thread_id)

    def load_history(
        self,
        db: Session,
        user_id: uuid.UUID,
        thread_id: Optional[uuid.UUID] = None,
    ) -> List[Dict[str, str]]:
        q = db.query(Message).filter(Message.user_id == user_id)
        if thread_id:
            q = q.filter(Message.thread_id == thread_id)
        rows = q.order_by(Message.created_at.desc()).limit(settings.CHAT_HISTORY_LIMIT).all()
        return [{"role": row.role.value, "content": row.content} for row in reversed(rows)]

    def _persist_messages(
        self,
        db: Session,
        user_id: uuid.UUID,
        thread_id: Optional[uuid.UUID],
        query: str,
        reply: str,
        citations: List[ChatCitation],
    ) -> None:
        now = datetime.utcnow()
        db.add(Message(
            user_id=user_id,
            thread_id=thread_id,
            role=MessageRole.user,
            content=query,
            citations=[],
            created_at=now,
        ))
        db.add(Message(
            user_id=user_id,
            thread_id=thread_id,
            role=MessageRole.assistant,
            content=reply,
            citations=[c.model_dump() for c in citations],
            created_at=now + timedelta(microseconds=1),
        ))
        db.commit()

    def _record_bookkeeping(self, db: Session, user_id: uuid.UUID, details: Dict[str, Any]) -> Optional[int]:
        try:
            memory = case_memory_service.record_session(db, user_id, activity_type="chat")
            db.add(SessionLog(user_id=user_id, event_type="chat_turn", details=details))
            db.commit()
            return memory.session_count
        except Exception as exc:
            db.rollback()
            logger.warning("Chat bookkeeping failed for user %s: %s", user_id, exc)
            return None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def chat(
        self,
        db: Session,
        user_id: uuid.UUID,
        request: ChatRequest,
        ip_address: Optional[str] = None,
    ) -> ChatResponse:
        query, history = self._resolve_turn(db, user_id, request)
        query = query[:QUERY_MAX_CHARS]
        self.enforce_rate_limit(db, user_id, ip_address)

        mode = "lawyer" if request.mode == "lawyer" else "user"
        memory = case_memory_service.snapshot(db, user_id)
        retrieval = await retrieval_service.retrieve(db, user_id, query, memory)

        system_prompt = build_system_prompt(memory, retrieval.context_blocks, mode=mode)
        messages = [{"role": "system", "content": system_prompt}, *history, {"role": "user", "content": query}]
        max_tokens = LAWYER_MAX_TOKENS if mode == "lawyer" else max_tokens_for_style(memory.communication_style)

        completion = await openai_service.chat_completion(
            messages,
            models=settings.chat_models_list,
            max_tokens=max_tokens,
            temperature=0.7,
        )
        logger.info("Chat reply for user %s served by %s", user_id, completion.model)

        self._persist_messages(db, user_id, request.thread_id, query, completion.content, retrieval.citations)

        legal_sources = len(retrieval.legal_hits)
        evidence_sources = len(retrieval.evidence_hits)
        confidence = calculate_confidence(completion.content, legal_sources, evidence_sources)

        session_count = self._record_bookkeeping(db, user_id, {
            "model_used": completion.model,
            "legal_sources": legal_sources,
            "evidence_sources": evidence_sources,
            "confidence_score": confidence,
            "mode": mode,
        })

        return ChatResponse(
            response=completion.content,
            citations=retrieval.citations,
            metadata={
                "model_used": completion.model,
                "current_stage": memory.current_stage,
                "legal_sources": legal_sources,
                "evidence_sources": evidence_sources,
                "session_count": session_count if session_count is not None else memory.session_count,
                "confidence_score": confidence,
                "mode": mode,
                "thread_id": str(request.thread_id) if request.thread_id else None,
            },
        )


# Singleton
chat_service = ChatService()
