"""
Evidence intelligence orchestrator endpoints.

POST   /evidence-intelligence-orchestrator               → queue analysis of unanalyzed files
GET    /evidence-intelligence-orchestrator/jobs/{job_id} → job status for polling
"""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from app.api.v1.deps import get_current_user_id, require_openai
from app.db.database import get_db
from app.db.schemas import OrchestrationJobResponse, OrchestratorRequest, OrchestratorResponse
from app.services.evidence_orchestrator_service import evidence_orchestrator_service

router = APIRouter()


@router.post(
    "",
    response_model=OrchestratorResponse,
    response_model_exclude_none=True,
    summary="Start evidence intelligence processing",
    description=(
        "Returns immediately. Work continues in the background; poll the "
        "returned job_id for completion."
    ),
    dependencies=[Depends(require_openai)],
)
def start_orchestration(
    background_tasks: BackgroundTasks,
    body: Optional[OrchestratorRequest] = None,
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
) -> OrchestratorResponse:
    body = body or OrchestratorRequest()
    response, job = evidence_orchestrator_service.start(db, user_id, body.trigger_type, body.file_id)
    if job is not None:
        background_tasks.add_task(evidence_orchestrator_service.run_job, job.id)
    return response


@router.get(
    "/jobs/{job_id}",
    response_model=OrchestrationJobResponse,
    summary="Get evidence intelligence job status",
)
def get_job(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    return evidence_orchestrator_service.get_job(db, user_id, job_id)
