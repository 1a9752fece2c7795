"""
Per-user case memory.

Reads fall back to an implicit default when the user has no row yet.
Writes go through ``apply``: the mutation runs against the current row and
the UPDATE is guarded by the ``version`` column. A concurrent writer makes the
commit fail with StaleDataError; the row is reloaded and the mutation
re-applied, up to MAX_ATTEMPTS times.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.logger import logger
from app.db.models import CaseMemory

MAX_ATTEMPTS = 3

DEFAULT_PROFILE: Dict[str, Any] = {
    "communication_style": "concise",
    "experience_level": "first_time",
}


@dataclass
class CaseMemorySnapshot:
    """Read-only view used for prompt assembly."""
    exists: bool = False
    primary_goal: Optional[str] = None
    current_stage: int = 1
    case_readiness_status: Optional[str] = None
    key_facts: List[Any] = field(default_factory=list)
    evidence_index: List[Any] = field(default_factory=list)
    personalization_profile: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_PROFILE))
    session_count: int = 0
    last_updated_at: Optional[datetime] = None

    @property
    def communication_style(self) -> str:
        return self.personalization_profile.get("communication_style") or "concise"

    @property
    def experience_level(self) -> str:
        return self.personalization_profile.get("experience_level") or "first_time"


class CaseMemoryService:

    def get(self, db: Session, user_id: uuid.UUID) -> Optional[CaseMemory]:
        return db.query(CaseMemory).filter(CaseMemory.user_id == user_id).first()

    def snapshot(self, db: Session, user_id: uuid.UUID) -> CaseMemorySnapshot:
        row = self.get(db, user_id)
        if row is None:
            return CaseMemorySnapshot()
        stage = row.current_stage if row.current_stage and 1 <= row.current_stage <= 9 else 1
        return CaseMemorySnapshot(
            exists=True,
            primary_goal=row.primary_goal,
            current_stage=stage,
            case_readiness_status=row.case_readiness_status,
            key_facts=list(row.key_facts or []),
            evidence_index=list(row.evidence_index or []),
            personalization_profile={**DEFAULT_PROFILE, **(row.personalization_profile or {})},
            session_count=row.session_count or 0,
            last_updated_at=row.last_updated_at,
        )

    def apply(
        self,
        db: Session,
        user_id: uuid.UUID,
        mutate: Callable[[CaseMemory], None],
    ) -> CaseMemory:
        """
        Run *mutate* on the user's row (created if missing) and commit under
        the version guard. Raises the last conflict after MAX_ATTEMPTS.
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            row = self.get(db, user_id)
            if row is None:
                row = CaseMemory(user_id=user_id)
                db.add(row)
            mutate(row)
            try:
                db.commit()
                return row
            except (StaleDataError, IntegrityError) as exc:
                # Another writer updated (or created) the row first
                db.rollback()
                last_error = exc
                logger.warning(
                    "Case memory conflict for user %s (attempt %d/%d): %s",
                    user_id, attempt, MAX_ATTEMPTS, exc,
                )
        logger.error("Case memory update for user %s gave up after %d attempts", user_id, MAX_ATTEMPTS)
        raise last_error

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def record_session(self, db: Session, user_id: uuid.UUID, activity_type: str = "chat") -> CaseMemory:
        def _mutate(row: CaseMemory) -> None:
            row.session_count = (row.session_count or 0) + 1
            row.last_activity_type = activity_type
            row.last_updated_at = datetime.utcnow()
            if row.current_stage is None:
                row.current_stage = 1

        return self.apply(db, user_id, _mutate)

    def set_stage(self, db: Session, user_id: uuid.UUID, stage: int, reason: str = "") -> CaseMemory:
        if not 1 <= stage <= 9:
            raise ValueError("stage must be between 1 and 9")

        def _mutate(row: CaseMemory) -> None:
            if row.current_stage == stage:
                return
            history = list(row.stage_history or [])
            history.append({
                "from": row.current_stage or 1,
                "to": stage,
                "reason": reason,
                "at": datetime.utcnow().isoformat(),
            })
            row.stage_history = history
            row.current_stage = stage
            row.last_updated_at = datetime.utcnow()

        return self.apply(db, user_id, _mutate)

    def add_key_fact(self, db: Session, user_id: uuid.UUID, fact: str) -> CaseMemory:
        def _mutate(row: CaseMemory) -> None:
            facts = list(row.key_facts or [])
            if fact not in facts:
                facts.append(fact)
            row.key_facts = facts
            row.last_updated_at = datetime.utcnow()

        return self.apply(db, user_id, _mutate)


# Singleton
case_memory_service = CaseMemoryService()
