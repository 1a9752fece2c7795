"""
Evidence intelligence orchestrator: file selection, job lifecycle, lens
failures and timeline extraction.
"""

import json
import uuid
from datetime import date

from httpx import AsyncClient

from app.db.models import (
    EnhancedTimelineEvent,
    EvidenceChunk,
    EvidenceComprehensiveAnalysis,
    EvidenceFile,
    OrchestrationJob,
    OrchestrationJobStatus,
)
from app.services.evidence_orchestrator_service import LENS_TYPES, evidence_orchestrator_service

LENS_MARKERS = {
    "legal_significance": "senior NSW family law barrister",
    "behavioral_patterns": "forensic psychologist",
    "chronological_analysis": "case chronology expert",
    "strategic_analysis": "senior litigation strategist",
    "gap_analysis": "evidence completeness auditor",
}
SYNTHESIS_MARKER = "Synthesize these expert analyses"
TIMELINE_MARKER = "Extract timeline events"

SYNTHESIS_REPLY = json.dumps({
    "overall_confidence": 0.82,
    "legal_strength": 0.74,
    "case_impact": "Corroborates the pattern of threats",
    "key_insights": ["Repeated threats over two weeks"],
    "recommendations": ["Obtain phone records"],
    "gaps": ["No witness statements"],
    "patterns": ["Escalation after separation"],
    "timeline_importance": "Establishes the first threat",
})

TIMELINE_REPLY = json.dumps({"events": [
    {
        "date": "2025-03-01",
        "time": "21:15:00",
        "title": "Threatening message",
        "description": "Respondent sent a threatening message",
        "category": "THREAT",
        "confidence": 0.9,
        "evidence_type": "direct",
        "witnesses": "Sister",
        "legal_significance": ["Supports AVO application", "Shows intent"],
    },
    {"date": "sometime in spring", "title": "Unclear event"},
]})


def register_all_lenses(fake_llm, skip=()):
    for lens, marker in LENS_MARKERS.items():
        if lens not in skip:
            fake_llm.on(marker, json.dumps({"confidence": 0.8, "summary": f"{lens} findings"}))
    fake_llm.on(SYNTHESIS_MARKER, SYNTHESIS_REPLY)
    fake_llm.on(TIMELINE_MARKER, TIMELINE_REPLY)


def add_file(db, user_id, name="messages.pdf", status="processed", texts=("Intro page", "The threatening message arrived at night")):
    file = EvidenceFile(user_id=user_id, name=name, status=status)
    db.add(file)
    db.flush()
    for seq, text in enumerate(texts):
        db.add(EvidenceChunk(file_id=file.id, seq=seq, text=text, meta={}))
    db.commit()
    return file


# =============================================================================
# Start
# =============================================================================

async def test_no_processed_files_schedules_nothing(client: AsyncClient, db, user_id, auth_headers, fake_llm):
    add_file(db, user_id, status="uploaded")

    response = await client.post("/api/v1/evidence-intelligence-orchestrator", json={}, headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "No files need processing", "files_to_process": 0}
    assert db.query(OrchestrationJob).count() == 0
    assert fake_llm.calls == []


async def test_start_without_body(client: AsyncClient, auth_headers, fake_llm):
    response = await client.post("/api/v1/evidence-intelligence-orchestrator", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["files_to_process"] == 0


async def test_orchestrator_requires_auth(client: AsyncClient, fake_llm):
    response = await client.post("/api/v1/evidence-intelligence-orchestrator", json={})

    assert response.status_code == 401


async def test_unknown_file_id_is_not_found(client: AsyncClient, auth_headers, fake_llm):
    response = await client.post(
        "/api/v1/evidence-intelligence-orchestrator",
        json={"file_id": str(uuid.uuid4())},
        headers=auth_headers,
    )

    assert response.status_code == 404
    assert response.json()["error"] == "File not found or not yet processed"


async def test_already_analyzed_file_id_schedules_nothing(client: AsyncClient, db, user_id, auth_headers, fake_llm):
    file = add_file(db, user_id)
    db.add(EvidenceComprehensiveAnalysis(file_id=file.id, user_id=user_id, analysis_passes=[], synthesis={}))
    db.commit()

    response = await client.post(
        "/api/v1/evidence-intelligence-orchestrator",
        json={"file_id": str(file.id)},
        headers=auth_headers,
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "No files need processing", "files_to_process": 0}
    assert db.query(OrchestrationJob).count() == 0
    assert fake_llm.calls == []


def test_select_files_skips_analyzed_and_other_users(db, user_id):
    analyzed = add_file(db, user_id, name="old.pdf")
    pending = add_file(db, user_id, name="new.pdf")
    add_file(db, uuid.uuid4(), name="someone-else.pdf")
    db.add(EvidenceComprehensiveAnalysis(file_id=analyzed.id, user_id=user_id, analysis_passes=[], synthesis={}))
    db.commit()

    assert [f.id for f in evidence_orchestrator_service.select_files(db, user_id)] == [pending.id]


# =============================================================================
# Job lifecycle
# =============================================================================

async def test_job_runs_to_done(client: AsyncClient, db, user_id, auth_headers, fake_llm):
    register_all_lenses(fake_llm)
    file = add_file(db, user_id)

    response = await client.post(
        "/api/v1/evidence-intelligence-orchestrator",
        json={"trigger_type": "upload"},
        headers=auth_headers,
    )

    assert response.status_code == 200
    data = response.json()
    assert data["files_to_process"] == 1
    assert data["estimated_completion"] == "2-4 minutes"

    job = await client.get(f"/api/v1/evidence-intelligence-orchestrator/jobs/{data['job_id']}", headers=auth_headers)
    assert job.status_code == 200
    assert job.json()["status"] == "done"
    assert job.json()["trigger_type"] == "upload"
    assert job.json()["files_processed"] == 1
    assert job.json()["files_failed"] == 0
    assert job.json()["completed_at"] is not None

    db.expire_all()
    analysis = db.query(EvidenceComprehensiveAnalysis).filter(EvidenceComprehensiveAnalysis.file_id == file.id).one()
    assert [p["lens_type"] for p in analysis.analysis_passes] == LENS_TYPES
    assert analysis.legal_strength == 74
    assert analysis.confidence_score == 0.82
    assert analysis.strategic_recommendations == ["Obtain phone records"]

    event = db.query(EnhancedTimelineEvent).filter(EnhancedTimelineEvent.file_id == file.id).one()
    assert event.event_date == date(2025, 3, 1)
    assert event.event_time == "21:15"
    assert event.category == "threat"
    assert event.potential_witnesses == ["Sister"]
    assert event.legal_significance == "Supports AVO application; Shows intent"
    assert event.context == "The threatening message arrived at night"

    again = await client.post("/api/v1/evidence-intelligence-orchestrator", json={}, headers=auth_headers)
    assert again.json()["files_to_process"] == 0


async def test_jobs_are_private(client: AsyncClient, db, user_id, auth_headers, fake_llm, token_for):
    register_all_lenses(fake_llm)
    add_file(db, user_id)
    started = await client.post("/api/v1/evidence-intelligence-orchestrator", json={}, headers=auth_headers)

    response = await client.get(
        f"/api/v1/evidence-intelligence-orchestrator/jobs/{started.json()['job_id']}",
        headers={"Authorization": f"Bearer {token_for(uuid.uuid4())}"},
    )

    assert response.status_code == 404
    assert response.json()["error"] == "Job not found"


async def test_failed_lens_leaves_error_stub(db, user_id, fake_llm):
    register_all_lenses(fake_llm, skip={"gap_analysis"})
    file = add_file(db, user_id)

    assert await evidence_orchestrator_service.process_file(db, user_id, file) is True

    analysis = db.query(EvidenceComprehensiveAnalysis).filter(EvidenceComprehensiveAnalysis.file_id == file.id).one()
    passes = {p["lens_type"]: p for p in analysis.analysis_passes}
    assert passes["gap_analysis"]["content"] == {}
    assert "error" in passes["gap_analysis"]
    assert passes["legal_significance"]["confidence"] == 0.8
    assert analysis.legal_strength == 74
    # Synthesis still saw the stub
    assert "GAP_ANALYSIS" in fake_llm.calls_matching(SYNTHESIS_MARKER)[0]["prompt"]


async def test_failed_synthesis_is_stored_as_stub(db, user_id, fake_llm):
    for marker in LENS_MARKERS.values():
        fake_llm.on(marker, '{"confidence": 0.6}')
    file = add_file(db, user_id)

    await evidence_orchestrator_service.process_file(db, user_id, file)

    analysis = db.query(EvidenceComprehensiveAnalysis).one()
    assert analysis.synthesis["overall_confidence"] == 0.0
    assert analysis.legal_strength is None
    assert db.query(EnhancedTimelineEvent).count() == 0


async def test_analyzed_file_is_not_processed_twice(db, user_id, fake_llm):
    register_all_lenses(fake_llm)
    file = add_file(db, user_id)

    assert await evidence_orchestrator_service.process_file(db, user_id, file) is True
    calls_after_first_run = len(fake_llm.calls)

    assert await evidence_orchestrator_service.process_file(db, user_id, file) is False
    assert len(fake_llm.calls) == calls_after_first_run
    assert db.query(EvidenceComprehensiveAnalysis).count() == 1
    assert db.query(EnhancedTimelineEvent).count() == 1


async def test_file_without_chunks_is_skipped(db, user_id, fake_llm):
    file = add_file(db, user_id, texts=())

    assert await evidence_orchestrator_service.process_file(db, user_id, file) is False
    assert fake_llm.calls == []


async def test_failing_file_does_not_stop_the_batch(db, user_id, fake_llm, monkeypatch):
    register_all_lenses(fake_llm)
    add_file(db, user_id, name="broken.pdf")
    good = add_file(db, user_id, name="good.pdf")
    response, job = evidence_orchestrator_service.start(db, user_id)
    assert response.files_to_process == 2

    original = evidence_orchestrator_service.process_file

    async def flaky(session, uid, file):
        if file.name == "broken.pdf":
            raise RuntimeError("corrupt file")
        return await original(session, uid, file)

    monkeypatch.setattr(evidence_orchestrator_service, "process_file", flaky)

    await evidence_orchestrator_service.run_job(job.id)

    db.expire_all()
    job = db.query(OrchestrationJob).one()
    assert job.status == OrchestrationJobStatus.done
    assert (job.files_processed, job.files_failed) == (1, 1)
    assert db.query(EvidenceComprehensiveAnalysis).one().file_id == good.id


async def test_crashed_pipeline_marks_job_failed(db, user_id, fake_llm, monkeypatch):
    add_file(db, user_id)
    _, job = evidence_orchestrator_service.start(db, user_id)

    async def crash(session, job):
        raise RuntimeError("worker crashed")

    monkeypatch.setattr(evidence_orchestrator_service, "_pipeline", crash)

    await evidence_orchestrator_service.run_job(job.id)

    db.expire_all()
    job = db.query(OrchestrationJob).one()
    assert job.status == OrchestrationJobStatus.failed
    assert job.error == "worker crashed"
    assert job.completed_at is not None


async def test_downstream_calls_are_made_when_configured(db, user_id, fake_llm, monkeypatch):
    from app.core.config import settings

    register_all_lenses(fake_llm)
    add_file(db, user_id)
    _, job = evidence_orchestrator_service.start(db, user_id)
    invoked = []

    async def record(name, body):
        invoked.append((name, body.get("analysis_type")))

    monkeypatch.setattr(settings, "DOWNSTREAM_FUNCTIONS_URL", "https://functions.example")
    monkeypatch.setattr(evidence_orchestrator_service, "_invoke_function", record)

    await evidence_orchestrator_service.run_job(job.id)

    assert invoked == [
        ("evidence-legal-analyzer", None),
        ("continuous-case-analysis", "evidence_integration"),
        ("continuous-case-analysis", "comprehensive_synthesis"),
    ]
