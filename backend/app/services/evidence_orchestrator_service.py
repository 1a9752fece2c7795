"""
Evidence intelligence orchestrator:
  queued → running → done | failed

Per file (strictly sequential, ORCHESTRATOR_FILE_DELAY_SECONDS apart):
  five lens analyses (concurrent) → synthesis → analysis row
  → timeline events → downstream legal-connection and case-analysis calls

A failed lens yields an ``error`` stub and synthesis runs on whatever came
back; there is no quorum. A file that blows up counts as failed and the batch
moves on. After the last file one cross-evidence call is made.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.logger import logger
from app.db.database import SessionLocal
from app.db.models import (
    EnhancedTimelineEvent,
    EvidenceChunk,
    EvidenceComprehensiveAnalysis,
    EvidenceFile,
    OrchestrationJob,
    OrchestrationJobStatus,
)
from app.db.schemas import OrchestratorResponse
from app.services.llm_schemas import LensOutput, SynthesisOutput, TimelineEventOutput, TimelinePayload
from app.services.openai_service import openai_service
from app.utils.exceptions import AllModelsFailedError, LlmResponseError, NotFoundError

LENS_TEXT_CHARS = 6000
TIMELINE_TEXT_CHARS = 8000
CONTEXT_CHARS = 500
PROCESSED_STATUS = "processed"

LENS_SYSTEM_PROMPT = (
    "You are an expert legal analyst providing comprehensive evidence analysis. "
    "Always respond with detailed JSON-formatted analysis, including a numeric 'confidence' between 0 and 1."
)
SYNTHESIS_SYSTEM_PROMPT = (
    "You are a master legal strategist creating comprehensive evidence synthesis for AI assistant understanding. "
    "Provide deep, nuanced analysis as JSON."
)


# ============================================================================
# Lens prompts
# ============================================================================

LENS_PROMPTS: Dict[str, str] = {
    "legal_significance": """You are a senior NSW family law barrister analyzing evidence for legal significance.
Examine this evidence for admissibility, relevance and strength in family court proceedings.

Evidence: {file_name}
Content: {content}

Cover: legal admissibility (hearsay, authentication, reliability), relevance to statutory elements,
probative value vs prejudicial effect, corroboration needs, relevant precedents, procedural
considerations, and how opposing counsel might attack this evidence.
Format as JSON with detailed analysis in each category.""",

    "behavioral_patterns": """You are a forensic psychologist and DV specialist analyzing evidence for behavioral patterns.

Evidence: {file_name}
Content: {content}

Analyze coercive control patterns, escalation indicators, isolation tactics, financial abuse,
monitoring and surveillance, threats and intimidation, manipulation tactics, impact on children,
victim responses and trauma indicators. Give specific examples. Respond as JSON.""",

    "chronological_analysis": """You are a case chronology expert analyzing evidence for temporal significance.

Evidence: {file_name}
Content: {content}

Identify key dates and events, sequence patterns, timeline gaps, escalation over time, legal
deadlines, frequency and communication patterns. Build a chronological narrative with legal
significance. Respond as JSON.""",

    "strategic_analysis": """You are a senior litigation strategist analyzing evidence for strategic case value.

Evidence: {file_name}
Content: {content}

Cover case narrative fit, strategic value, presentation order, corroboration strategy,
counter-arguments and rebuttal, settlement leverage, expert witness needs and risk assessment.
Respond as JSON.""",

    "gap_analysis": """You are an evidence completeness auditor identifying gaps and weaknesses in the evidence base.

Evidence: {file_name}
Content: {content}

Identify missing documentation, witness gaps, corroboration needs, temporal gaps, missing
technical or expert evidence, procedural gaps and ongoing documentation needs, with a specific
recommendation for each. Respond as JSON.""",
}

LENS_TYPES = list(LENS_PROMPTS)

SYNTHESIS_PROMPT = """Synthesize these expert analyses of one evidence file into a single assessment.

Evidence File: {file_name}

Analysis Results:
{analyses}

Return JSON with:
  "overall_confidence": number 0-1,
  "legal_strength": integer 0-100,
  "case_impact": how this evidence changes the overall case position,
  "key_insights": [..],
  "recommendations": [..],
  "gaps": [..],
  "patterns": [..],
  "timeline_importance": chronological significance in the broader case"""

TIMELINE_PROMPT = """Extract timeline events with legal significance from this evidence.

Content: {content}

For each event provide: date (YYYY-MM-DD, estimate if unclear), time (HH:MM if available),
title (2-6 words), description, category (incident|communication|legal_action|medical|financial|
threat|violation|escalation|pattern_change), confidence (0.1-1.0 in the date), legal_significance,
evidence_type (direct|circumstantial|corroborative), witnesses, corroboration_needed.
Return JSON with an 'events' array."""


class EvidenceOrchestratorService:

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _set_status(
        self,
        db: Session,
        job: OrchestrationJob,
        status: OrchestrationJobStatus,
        error: Optional[str] = None,
    ) -> None:
        job.status = status
        if status == OrchestrationJobStatus.running:
            job.started_at = datetime.utcnow()
        if status in (OrchestrationJobStatus.done, OrchestrationJobStatus.failed):
            job.completed_at = datetime.utcnow()
        if error is not None:
            job.error = error
        db.commit()
        logger.info(
            "Orchestration job %s → status=%s processed=%s failed=%s",
            job.id, status.value, job.files_processed, job.files_failed,
        )

    async def _invoke_function(self, name: str, body: Dict[str, Any]) -> None:
        """Best-effort POST to a downstream analysis function."""
        base = settings.DOWNSTREAM_FUNCTIONS_URL.rstrip("/")
        if not base:
            logger.debug("Downstream URL not configured, skipping %s", name)
            return
        headers = {}
        if settings.DOWNSTREAM_FUNCTIONS_TOKEN:
            headers["Authorization"] = f"Bearer {settings.DOWNSTREAM_FUNCTIONS_TOKEN}"
        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                resp = await client.post(f"{base}/{name}", json=body, headers=headers)
                resp.raise_for_status()
            logger.info("Downstream %s accepted (%d)", name, resp.status_code)
        except httpx.HTTPError as exc:
            logger.warning("Downstream %s failed: %s", name, exc)

    # ------------------------------------------------------------------
    # File selection and job creation
    # ------------------------------------------------------------------

    def _is_analyzed(self, db: Session, file_id: uuid.UUID) -> bool:
        return (
            db.query(EvidenceComprehensiveAnalysis.id)
            .filter(EvidenceComprehensiveAnalysis.file_id == file_id)
            .first()
        ) is not None

    def select_files(self, db: Session, user_id: uuid.UUID, file_id: Optional[uuid.UUID] = None) -> List[EvidenceFile]:
        if file_id:
            file = (
                db.query(EvidenceFile)
                .filter(
                    EvidenceFile.id == file_id,
                    EvidenceFile.user_id == user_id,
                    EvidenceFile.status == PROCESSED_STATUS,
                )
                .first()
            )
            if file is None:
                raise NotFoundError("File not found or not yet processed")
            if self._is_analyzed(db, file.id):
                logger.info("File %s already has a comprehensive analysis", file.id)
                return []
            return [file]

        analyzed = {
            row.file_id
            for row in db.query(EvidenceComprehensiveAnalysis.file_id)
            .filter(EvidenceComprehensiveAnalysis.user_id == user_id)
            .all()
        }
        files = (
            db.query(EvidenceFile)
            .filter(EvidenceFile.user_id == user_id, EvidenceFile.status == PROCESSED_STATUS)
            .order_by(EvidenceFile.created_at)
            .all()
        )
        return [f for f in files if f.id not in analyzed]

    def start(
        self,
        db: Session,
        user_id: uuid.UUID,
        trigger_type: str = "manual",
        file_id: Optional[uuid.UUID] = None,
    ) -> tuple[OrchestratorResponse, Optional[OrchestrationJob]]:
        files = self.select_files(db, user_id, file_id)
        logger.info("Found %d files to process for user %s (trigger=%s)", len(files), user_id, trigger_type)

        if not files:
            return OrchestratorResponse(success=True, message="No files need processing", files_to_process=0), None

        job = OrchestrationJob(
            user_id=user_id,
            trigger_type=trigger_type,
            status=OrchestrationJobStatus.queued,
            file_ids=[str(f.id) for f in files],
        )
        db.add(job)
        db.commit()
        db.refresh(job)

        n = len(files)
        response = OrchestratorResponse(
            success=True,
            message="Evidence intelligence processing started",
            files_to_process=n,
            estimated_completion=f"{n * 2}-{n * 4} minutes",
            job_id=job.id,
        )
        return response, job

    def get_job(self, db: Session, user_id: uuid.UUID, job_id: uuid.UUID) -> OrchestrationJob:
        job = (
            db.query(OrchestrationJob)
            .filter(OrchestrationJob.id == job_id, OrchestrationJob.user_id == user_id)
            .first()
        )
        if job is None:
            raise NotFoundError("Job not found")
        return job

    # ------------------------------------------------------------------
    # Analysis stages
    # ------------------------------------------------------------------

    async def run_lens(self, lens_type: str, text: str, file_name: str) -> Dict[str, Any]:
        prompt = LENS_PROMPTS[lens_type].format(file_name=file_name, content=text[:LENS_TEXT_CHARS])
        try:
            output = await openai_service.complete_json(
                [
                    {"role": "system", "content": LENS_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                LensOutput,
                models=settings.evidence_models_list,
                max_tokens=4000,
                json_mode=True,
            )
        except (LlmResponseError, AllModelsFailedError) as exc:
            logger.warning("Lens %s failed for %s: %s", lens_type, file_name, exc)
            return {"lens_type": lens_type, "error": str(exc), "content": {}}

        return {
            "lens_type": lens_type,
            "analysis": output.model_dump(),
            "confidence": output.confidence,
            "timestamp": datetime.utcnow().isoformat(),
        }

    async def synthesize(self, analyses: List[Dict[str, Any]], file_name: str) -> Dict[str, Any]:
        rendered = "\n\n".join(
            "{}:\n{}".format(a["lens_type"].upper(), json.dumps(a.get("analysis") or {"error": a.get("error")}, default=str))
            for a in analyses
        )
        try:
            output = await openai_service.complete_json(
                [
                    {"role": "system", "content": SYNTHESIS_SYSTEM_PROMPT},
                    {"role": "user", "content": SYNTHESIS_PROMPT.format(file_name=file_name, analyses=rendered)},
                ],
                SynthesisOutput,
                models=settings.evidence_models_list,
                max_tokens=3000,
                json_mode=True,
            )
        except (LlmResponseError, AllModelsFailedError) as exc:
            logger.warning("Synthesis failed for %s: %s", file_name, exc)
            return {"error": str(exc), "overall_confidence": 0.0, "legal_strength": None}
        return output.model_dump()

    async def extract_timeline(
        self,
        db: Session,
        user_id: uuid.UUID,
        file: EvidenceFile,
        text: str,
        chunks: List[EvidenceChunk],
    ) -> int:
        try:
            payload = await openai_service.complete_json(
                [{"role": "user", "content": TIMELINE_PROMPT.format(content=text[:TIMELINE_TEXT_CHARS])}],
                TimelinePayload,
                models=settings.evidence_models_list,
                max_tokens=3000,
                json_mode=True,
            )
        except (LlmResponseError, AllModelsFailedError) as exc:
            logger.warning("Timeline extraction failed for %s: %s", file.name, exc)
            return 0

        stored = 0
        for raw in payload.events:
            try:
                event = TimelineEventOutput.model_validate(raw)
            except ValidationError:
                logger.debug("Skipping timeline event with invalid fields: %s", raw)
                continue

            title = event.title.lower()
            description = event.description.lower()
            chunk = next(
                (
                    c for c in chunks
                    if title in c.text.lower() or (description and description in c.text.lower())
                ),
                chunks[0],
            )
            db.add(EnhancedTimelineEvent(
                user_id=user_id,
                file_id=file.id,
                chunk_id=chunk.id,
                event_date=event.date,
                event_time=event.time,
                title=event.title[:255],
                description=event.description,
                category=event.category,
                confidence=event.confidence,
                legal_significance=event.legal_significance,
                evidence_type=event.evidence_type,
                potential_witnesses=event.witnesses,
                corroboration_needed=event.corroboration_needed,
                context=chunk.text[:CONTEXT_CHARS],
            ))
            stored += 1
        db.commit()
        logger.info("Extracted %d timeline events from %s", stored, file.name)
        return stored

    async def process_file(self, db: Session, user_id: uuid.UUID, file: EvidenceFile) -> bool:
        """Returns False when the file was skipped: no chunks, or already analyzed."""
        if self._is_analyzed(db, file.id):
            logger.info("File %s already analyzed, skipping", file.id)
            return False

        chunks = list(file.chunks)
        if not chunks:
            logger.info("No chunks found for file %s, skipping", file.id)
            return False

        full_text = "\n\n".join(c.text for c in chunks)

        analyses = await asyncio.gather(*(self.run_lens(lens, full_text, file.name) for lens in LENS_TYPES))
        synthesis = await self.synthesize(list(analyses), file.name)

        if self._is_analyzed(db, file.id):
            logger.info("File %s was analyzed by another run while this one was running", file.id)
            return False

        db.add(EvidenceComprehensiveAnalysis(
            user_id=user_id,
            file_id=file.id,
            analysis_passes=list(analyses),
            synthesis=synthesis,
            confidence_score=synthesis.get("overall_confidence"),
            legal_strength=synthesis.get("legal_strength"),
            case_impact=synthesis.get("case_impact"),
            key_insights=synthesis.get("key_insights"),
            strategic_recommendations=synthesis.get("recommendations"),
            evidence_gaps_identified=synthesis.get("gaps"),
            pattern_connections=synthesis.get("patterns"),
            timeline_significance=synthesis.get("timeline_importance"),
        ))
        db.commit()

        await self.extract_timeline(db, user_id, file, full_text, chunks)

        await self._invoke_function("evidence-legal-analyzer", {
            "file_id": str(file.id),
            "analysis_types": ["legal_relevance", "case_strength", "pattern_detection"],
            "generate_connections": True,
            "synthesis_context": synthesis,
        })
        await self._invoke_function("continuous-case-analysis", {
            "file_id": str(file.id),
            "analysis_type": "evidence_integration",
            "trigger": "new_evidence_processed",
        })
        return True

    # ------------------------------------------------------------------
    # Main pipeline
    # ------------------------------------------------------------------

    async def run_job(self, job_id: uuid.UUID) -> None:
        """
        BackgroundTask entry point. Uses its own session; every exception is
        recorded on the job row.
        """
        db = SessionLocal()
        try:
            job = db.query(OrchestrationJob).filter(OrchestrationJob.id == job_id).first()
            if job is None:
                logger.error("run_job: orchestration job %s not found", job_id)
                return
            try:
                await self._pipeline(db, job)
            except Exception as exc:
                logger.exception("run_job: orchestration job %s failed: %s", job_id, exc)
                db.rollback()
                self._set_status(db, job, OrchestrationJobStatus.failed, error=str(exc))
        finally:
            db.close()

    async def _pipeline(self, db: Session, job: OrchestrationJob) -> None:
        self._set_status(db, job, OrchestrationJobStatus.running)
        user_id = job.user_id
        file_ids = [uuid.UUID(fid) for fid in job.file_ids]

        for position, file_id in enumerate(file_ids):
            file = db.query(EvidenceFile).filter(EvidenceFile.id == file_id).first()
            if file is None:
                logger.warning("File %s disappeared before processing", file_id)
                job.files_failed += 1
            else:
                try:
                    logger.info("Processing evidence intelligence for %s", file.name)
                    if await self.process_file(db, user_id, file):
                        job.files_processed += 1
                except Exception as exc:
                    logger.exception("Error processing file %s: %s", file_id, exc)
                    db.rollback()
                    job.files_failed += 1
            db.commit()

            if position < len(file_ids) - 1 and settings.ORCHESTRATOR_FILE_DELAY_SECONDS > 0:
                await asyncio.sleep(settings.ORCHESTRATOR_FILE_DELAY_SECONDS)

        await self._invoke_function("continuous-case-analysis", {
            "analysis_type": "comprehensive_synthesis",
            "trigger": "evidence_intelligence_complete",
        })
        self._set_status(db, job, OrchestrationJobStatus.done)


# Singleton
evidence_orchestrator_service = EvidenceOrchestratorService()
