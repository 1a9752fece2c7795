"""
Thin wrappers over the similarity-search stored procedures
(``backend/database/vector_search.sql``). The database does the ranking;
callers get plain dict rows.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.logger import logger

MATCH_LEGAL_CHUNKS_SQL = text(
    "SELECT * FROM match_legal_chunks("
    "CAST(:query_embedding AS vector), :match_threshold, :match_count, :jurisdiction_filter)"
)

MATCH_USER_CHUNKS_SQL = text(
    "SELECT * FROM match_user_chunks("
    "CAST(:query_embedding AS vector), :match_threshold, :match_count, :filter_user_id)"
)


def _vector_literal(embedding: List[float]) -> str:
    return "[" + ",".join(f"{v:.8f}" for v in embedding) + "]"


class VectorSearchService:

    def match_legal_chunks(
        self,
        db: Session,
        embedding: List[float],
        threshold: float,
        count: int,
        jurisdiction: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        rows = db.execute(
            MATCH_LEGAL_CHUNKS_SQL,
            {
                "query_embedding": _vector_literal(embedding),
                "match_threshold": threshold,
                "match_count": count,
                "jurisdiction_filter": jurisdiction,
            },
        ).mappings().all()
        logger.info("match_legal_chunks returned %d rows", len(rows))
        return [dict(row) for row in rows]

    def match_user_chunks(
        self,
        db: Session,
        embedding: List[float],
        threshold: float,
        count: int,
        user_id: uuid.UUID,
    ) -> List[Dict[str, Any]]:
        rows = db.execute(
            MATCH_USER_CHUNKS_SQL,
            {
                "query_embedding": _vector_literal(embedding),
                "match_threshold": threshold,
                "match_count": count,
                "filter_user_id": str(user_id),
            },
        ).mappings().all()
        logger.info("match_user_chunks returned %d rows", len(rows))
        return [dict(row) for row in rows]


# Singleton
vector_search_service = VectorSearchService()
