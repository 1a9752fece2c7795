"""
Main API router aggregator
"""
from fastapi import APIRouter

from app.api.v1.endpoints import (
    assistant_chat,
    evidence_orchestrator,
    legal_ingestor,
)

api_router = APIRouter()

api_router.include_router(assistant_chat.router, prefix="/assistant-chat", tags=["Assistant Chat"])
api_router.include_router(legal_ingestor.router, prefix="/nsw-legal-ingestor", tags=["Legal Ingestion"])
api_router.include_router(
    evidence_orchestrator.router,
    prefix="/evidence-intelligence-orchestrator",
    tags=["Evidence Intelligence"],
)
